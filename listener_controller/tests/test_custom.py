from __future__ import annotations

from typing import Any

import pytest

from listener_controller.src.config import ConfigAccessor, ControllerConfig
from listener_controller.src.custom import guess_resource, make_custom_object
from listener_controller.src.errors import InvalidListenerError
from listener_controller.src.informers import GroupVersionResource
from listener_controller.src.listener import CustomObjectMode, EventListener

KNATIVE_SERVICE: dict[str, Any] = {
    "apiVersion": "serving.knative.dev/v1",
    "kind": "Service",
    "metadata": {"name": "knative-el", "namespace": "elsewhere", "labels": {"serving": "yes"}},
    "spec": {
        "template": {
            "metadata": {"annotations": {"autoscaling.knative.dev/minScale": "1"}},
            "spec": {
                "serviceAccountName": "knative-sa",
                "nodeSelector": {"zone": "a"},
                "containers": [
                    {
                        "image": "ignored",
                        "env": [{"name": "EXTRA", "value": "1"}],
                        "resources": {"requests": {"memory": "64Mi"}},
                    }
                ],
            },
        },
        "traffic": [{"percent": 100}],
    },
}


def make_listener(raw: dict[str, Any] | str) -> EventListener:
    return EventListener(
        name="my-el",
        namespace="ns1",
        uid="uid-1",
        labels={"team": "a"},
        resources=CustomObjectMode(raw=raw),
    )


@pytest.mark.parametrize(
    ("api_version", "kind", "expected"),
    [
        ("serving.knative.dev/v1", "Service", GroupVersionResource("serving.knative.dev", "v1", "services")),
        ("example.dev/v1alpha1", "Policy", GroupVersionResource("example.dev", "v1alpha1", "policies")),
        ("example.dev/v1", "Ingress", GroupVersionResource("example.dev", "v1", "ingresses")),
        ("v1", "Pod", GroupVersionResource("", "v1", "pods")),
    ],
)
def test_guess_resource(api_version: str, kind: str, expected: GroupVersionResource) -> None:
    assert guess_resource(api_version, kind) == expected


def test_guess_resource_requires_kind_and_api_version() -> None:
    with pytest.raises(InvalidListenerError):
        guess_resource("v1", "")
    with pytest.raises(InvalidListenerError):
        guess_resource("", "Service")


def test_make_custom_object_keeps_only_pod_shape() -> None:
    obj = make_custom_object(make_listener(KNATIVE_SERVICE), ConfigAccessor(), ControllerConfig())

    assert obj["apiVersion"] == "serving.knative.dev/v1"
    assert obj["kind"] == "Service"
    metadata = obj["metadata"]
    assert metadata["name"] == "knative-el"
    assert metadata["namespace"] == "ns1"
    assert metadata["labels"] == {
        "team": "a",
        "app.kubernetes.io/managed-by": "EventListener",
        "app.kubernetes.io/part-of": "Triggers",
        "eventlistener": "my-el",
        "serving": "yes",
    }
    assert metadata["ownerReferences"][0]["name"] == "my-el"
    assert "traffic" not in obj["spec"]
    template = obj["spec"]["template"]
    assert template["metadata"] == {"annotations": {"autoscaling.knative.dev/minScale": "1"}}
    assert template["spec"]["serviceAccountName"] == "knative-sa"
    assert template["spec"]["nodeSelector"] == {"zone": "a"}

    (container,) = template["spec"]["containers"]
    assert container["image"] == ControllerConfig().image
    assert container["resources"] == {"requests": {"memory": "64Mi"}}
    env = {item["name"]: item.get("value") for item in container["env"]}
    assert env["EXTRA"] == "1"
    assert env["SYSTEM_NAMESPACE"] == "ns1"
    assert env["METRICS_PROMETHEUS_PORT"] == "9000"
    assert container["readinessProbe"] == {
        "httpGet": {"path": "/live", "scheme": "HTTP"},
        "successThreshold": 1,
    }


def test_make_custom_object_defaults_name_and_skips_empty_template_metadata() -> None:
    raw = {"apiVersion": "serving.knative.dev/v1", "kind": "Service"}

    obj = make_custom_object(make_listener(raw), ConfigAccessor(), ControllerConfig())

    assert obj["metadata"]["name"] == "el-my-el"
    assert "annotations" not in obj["metadata"]
    assert "metadata" not in obj["spec"]["template"]
    assert len(obj["spec"]["template"]["spec"]["containers"]) == 1


def test_make_custom_object_does_not_mutate_listener_template() -> None:
    listener = make_listener(KNATIVE_SERVICE)

    make_custom_object(listener, ConfigAccessor(), ControllerConfig())

    containers = KNATIVE_SERVICE["spec"]["template"]["spec"]["containers"]
    assert containers[0]["env"] == [{"name": "EXTRA", "value": "1"}]


def test_make_custom_object_rejects_workload_listener() -> None:
    with pytest.raises(InvalidListenerError):
        make_custom_object(
            EventListener(name="my-el", namespace="ns1"), ConfigAccessor(), ControllerConfig()
        )
