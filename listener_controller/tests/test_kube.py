from __future__ import annotations

from unittest.mock import MagicMock, patch

from kubernetes.client import V1ObjectMeta, V1Service

from listener_controller.src.kube import (
    build_clients,
    load_kube_configuration,
    patch_listener_finalizers,
    patch_listener_status,
    resource_version,
    to_dict,
)

GVR = {"group": "triggers.tekton.dev", "version": "v1beta1", "plural": "eventlisteners"}


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("listener_controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("listener_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "listener_controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("listener_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_share_one_api_client() -> None:
    with (
        patch("listener_controller.src.kube.client") as mock_client,
        patch("listener_controller.src.kube.dynamic") as mock_dynamic,
    ):
        clients = build_clients()

    api_client = mock_client.ApiClient.return_value
    mock_client.CoreV1Api.assert_called_once_with(api_client)
    mock_client.CustomObjectsApi.assert_called_once_with(api_client)
    mock_dynamic.DynamicClient.assert_called_once_with(api_client)
    assert clients.apps is mock_client.AppsV1Api.return_value
    assert clients.coordination is mock_client.CoordinationV1Api.return_value


def test_to_dict_serializes_typed_models_to_wire_names() -> None:
    service = V1Service(metadata=V1ObjectMeta(name="el-a", resource_version="5"))

    assert to_dict(service) == {"metadata": {"name": "el-a", "resourceVersion": "5"}}
    assert resource_version(service) == "5"
    assert to_dict(None) == {}
    raw = {"metadata": {}}
    assert to_dict(raw) is raw


def test_patch_listener_finalizers_sends_optimistic_lock() -> None:
    custom_api = MagicMock()
    custom_api.patch_namespaced_custom_object.return_value = {"metadata": {"name": "a"}}

    result = patch_listener_finalizers(custom_api, "ns1", "a", ["f"], "42", **GVR)

    assert result == {"metadata": {"name": "a"}}
    custom_api.patch_namespaced_custom_object.assert_called_once_with(
        namespace="ns1",
        name="a",
        body={"metadata": {"finalizers": ["f"], "resourceVersion": "42"}},
        **GVR,
    )


def test_patch_listener_finalizers_without_resource_version() -> None:
    custom_api = MagicMock()
    custom_api.patch_namespaced_custom_object.return_value = {}

    patch_listener_finalizers(custom_api, "ns1", "a", [], None, **GVR)

    body = custom_api.patch_namespaced_custom_object.call_args.kwargs["body"]
    assert body == {"metadata": {"finalizers": []}}


def test_patch_listener_status_targets_status_subresource() -> None:
    custom_api = MagicMock()
    custom_api.patch_namespaced_custom_object_status.return_value = {}

    patch_listener_status(custom_api, "ns1", "a", {"conditions": []}, **GVR)

    custom_api.patch_namespaced_custom_object.assert_not_called()
    kwargs = custom_api.patch_namespaced_custom_object_status.call_args.kwargs
    assert kwargs["body"] == {"status": {"conditions": []}}
    assert kwargs["plural"] == "eventlisteners"
