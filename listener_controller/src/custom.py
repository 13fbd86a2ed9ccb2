from __future__ import annotations

import copy
import re
from typing import Any

from listener_controller.src.config import ConfigAccessor, ControllerConfig
from listener_controller.src.container import ContainerOption, make_container
from listener_controller.src.errors import InvalidListenerError
from listener_controller.src.informers import GroupVersionResource
from listener_controller.src.listener import CustomObjectMode, EventListener
from listener_controller.src.meta import filter_labels, generate_labels, union_maps

_POD_SPEC_FIELDS = (
    "tolerations",
    "nodeSelector",
    "serviceAccountName",
    "affinity",
    "topologySpreadConstraints",
)


def guess_resource(api_version: str, kind: str) -> GroupVersionResource:
    """Guess the plural resource for *kind* the way ``kubectl`` does for unknown kinds."""
    if not kind:
        raise InvalidListenerError("custom resource is missing kind")
    if not api_version:
        raise InvalidListenerError("custom resource is missing apiVersion")
    group, _, version = api_version.rpartition("/")
    singular = kind.lower()
    if singular.endswith("s"):
        plural = f"{singular}es"
    elif singular.endswith("y"):
        plural = f"{singular[:-1]}ies"
    else:
        plural = f"{singular}s"
    return GroupVersionResource(group=group, version=version, resource=plural)


def _custom_bits(
    listener: EventListener, template_spec: dict[str, Any], config: ControllerConfig
) -> ContainerOption:
    user_containers = template_spec.get("containers") or []

    def apply(container: dict[str, Any]) -> None:
        if len(user_containers) == 1:
            user = user_containers[0]
            container["env"].extend(copy.deepcopy(user.get("env") or []))
            container["resources"] = copy.deepcopy(user.get("resources") or {})
        container["env"].extend(
            [
                {"name": "SYSTEM_NAMESPACE", "value": listener.namespace},
                {"name": "METRICS_PROMETHEUS_PORT", "value": str(config.metrics_port)},
            ]
        )
        container["readinessProbe"] = {
            "httpGet": {"path": "/live", "scheme": "HTTP"},
            "successThreshold": 1,
        }

    return apply


def make_custom_object(
    listener: EventListener,
    accessor: ConfigAccessor,
    config: ControllerConfig,
    exclusion: re.Pattern[str] | None = None,
) -> dict[str, Any]:
    """Build the desired custom object from the listener's opaque template.

    Only the pod-carrying shape survives: ``apiVersion``, ``kind``, object
    metadata and ``spec.template``. The pod spec keeps scheduling fields
    from the template and exactly one synthesized container.
    """
    if not isinstance(listener.resources, CustomObjectMode):
        raise InvalidListenerError(f"EventListener {listener.key} has no custom resource")

    original = listener.resources.decode()
    metadata = original.get("metadata") or {}
    template = (original.get("spec") or {}).get("template") or {}
    template_metadata = template.get("metadata") or {}
    template_spec = template.get("spec") or {}

    container = make_container(
        listener, accessor, config, _custom_bits(listener, template_spec, config)
    )

    labels = union_maps(
        filter_labels(listener.labels, exclusion),
        generate_labels(listener.name, config.static_labels),
        metadata.get("labels"),
    )

    pod_template_metadata: dict[str, Any] = {}
    for key in ("name", "labels", "annotations"):
        if template_metadata.get(key):
            pod_template_metadata[key] = copy.deepcopy(template_metadata[key])

    pod_spec: dict[str, Any] = {
        key: copy.deepcopy(template_spec[key]) for key in _POD_SPEC_FIELDS if template_spec.get(key)
    }
    pod_spec["containers"] = [container]

    object_metadata: dict[str, Any] = {
        "name": metadata.get("name") or listener.generated_name,
        "namespace": listener.namespace,
        "labels": labels,
        "ownerReferences": [listener.owner_reference()],
    }
    if metadata.get("annotations"):
        object_metadata["annotations"] = dict(metadata["annotations"])

    pod_template: dict[str, Any] = {"spec": pod_spec}
    if pod_template_metadata:
        pod_template["metadata"] = pod_template_metadata

    return {
        "apiVersion": original.get("apiVersion", ""),
        "kind": original.get("kind", ""),
        "metadata": object_metadata,
        "spec": {"template": pod_template},
    }
