from __future__ import annotations

import copy
import re
from typing import Any

from listener_controller.src.config import CONTAINER_PORT, ConfigAccessor, ControllerConfig
from listener_controller.src.container import ContainerOption, make_container, secret_env_sources
from listener_controller.src.listener import EventListener
from listener_controller.src.meta import filter_labels, generate_labels, object_meta, union_maps

TLS_VOLUME_NAME = "https-connection"
TLS_MOUNT_PATH = "/etc/triggers/tls"


def deployment_bits(listener: EventListener, config: ControllerConfig) -> ContainerOption:
    """Copy user container overrides and add the metrics port and env."""

    def apply(container: dict[str, Any]) -> None:
        resource = listener.kubernetes_resource
        if resource is not None and resource.containers:
            user = resource.containers[0]
            container["resources"] = copy.deepcopy(user.get("resources") or {})
            container["env"].extend(copy.deepcopy(user.get("env") or []))
            for probe in ("readinessProbe", "livenessProbe", "startupProbe"):
                if user.get(probe):
                    container[probe] = copy.deepcopy(user[probe])

        container["ports"].append({"containerPort": config.metrics_port, "protocol": "TCP"})
        container["env"].extend(
            [
                {
                    "name": "SYSTEM_NAMESPACE",
                    "valueFrom": {
                        "fieldRef": {"apiVersion": "v1", "fieldPath": "metadata.namespace"}
                    },
                },
                {"name": "METRICS_PROMETHEUS_PORT", "value": str(config.metrics_port)},
            ]
        )

    return apply


def _default_probe(scheme: str, config: ControllerConfig) -> dict[str, Any]:
    return {
        "httpGet": {"path": "/live", "port": CONTAINER_PORT, "scheme": scheme},
        "periodSeconds": config.period_seconds,
        "failureThreshold": config.failure_threshold,
    }


def secure_connection(config: ControllerConfig) -> ContainerOption:
    """Mount TLS material and point the sink at it when TLS env vars are present."""

    def apply(container: dict[str, Any]) -> None:
        sources = secret_env_sources(container)
        cert_key = sources.get("TLS_CERT", {}).get("key")
        key_key = sources.get("TLS_KEY", {}).get("key")
        cert = f"{TLS_MOUNT_PATH}/{cert_key}" if cert_key else ""
        key = f"{TLS_MOUNT_PATH}/{key_key}" if key_key else ""

        scheme = "HTTP"
        if cert and key:
            scheme = "HTTPS"
            container.setdefault("volumeMounts", []).append(
                {"name": TLS_VOLUME_NAME, "mountPath": TLS_MOUNT_PATH, "readOnly": True}
            )
        if not container.get("livenessProbe"):
            container["livenessProbe"] = _default_probe(scheme, config)
        if not container.get("readinessProbe"):
            container["readinessProbe"] = _default_probe(scheme, config)
        container["args"].extend([f"--tls-cert={cert}", f"--tls-key={key}"])

    return apply


def make_deployment(
    listener: EventListener,
    accessor: ConfigAccessor,
    config: ControllerConfig,
    exclusion: re.Pattern[str] | None = None,
) -> dict[str, Any]:
    """Build the desired Deployment for a workload-mode listener.

    ``replicas`` stays ``None`` unless the listener pins it, so a live
    count set by an autoscaler is never fought.
    """
    container = make_container(
        listener, accessor, config, deployment_bits(listener, config), secure_connection(config)
    )
    filtered = filter_labels(listener.labels, exclusion)
    pod_labels = union_maps(filtered, generate_labels(listener.name, config.static_labels))
    pod_spec: dict[str, Any] = {
        "serviceAccountName": listener.service_account_name,
        "containers": [container],
        "securityContext": {"runAsNonRoot": True} if config.set_security_context else {},
    }
    annotations = None
    replicas = None

    tls_cert = secret_env_sources(container).get("TLS_CERT")
    if tls_cert:
        pod_spec["volumes"] = [
            {"name": TLS_VOLUME_NAME, "secret": {"secretName": tls_cert.get("name")}}
        ]

    resource = listener.kubernetes_resource
    if resource is not None:
        replicas = resource.replicas
        user_spec = resource.pod_spec
        for key in ("tolerations", "nodeSelector", "topologySpreadConstraints"):
            if user_spec.get(key):
                pod_spec[key] = copy.deepcopy(user_spec[key])
        if user_spec.get("affinity") is not None:
            pod_spec["affinity"] = copy.deepcopy(user_spec["affinity"])
        if user_spec.get("serviceAccountName"):
            pod_spec["serviceAccountName"] = user_spec["serviceAccountName"]
        annotations = resource.template_metadata.get("annotations")
        pod_labels = union_maps(pod_labels, resource.template_metadata.get("labels"))

    # Unset annotations are left to whoever owns them (e.g. rollout restarts).
    template_metadata: dict[str, Any] = {
        "labels": pod_labels,
        "annotations": dict(annotations) if annotations else None,
    }

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": object_meta(listener, filtered, config.static_labels),
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": generate_labels(listener.name, config.static_labels)},
            "template": {"metadata": template_metadata, "spec": pod_spec},
        },
    }
