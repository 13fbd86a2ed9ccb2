from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config, dynamic
from kubernetes.client import (
    ApiClient,
    AppsV1Api,
    CoordinationV1Api,
    CoreV1Api,
    CustomObjectsApi,
)
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import ResourceInstance

LOGGER = logging.getLogger(__name__)

_SERIALIZER = ApiClient()


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    custom: CustomObjectsApi
    coordination: CoordinationV1Api
    dynamic: Any


def build_clients() -> KubeClients:
    """Return typed and dynamic API clients sharing the active kube configuration."""
    api_client = client.ApiClient()
    return KubeClients(
        core=client.CoreV1Api(api_client),
        apps=client.AppsV1Api(api_client),
        custom=client.CustomObjectsApi(api_client),
        coordination=client.CoordinationV1Api(api_client),
        dynamic=dynamic.DynamicClient(api_client),
    )


def to_dict(obj: Any) -> dict[str, Any]:
    """Convert an API response (typed model, dynamic instance or dict) to wire form."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if isinstance(obj, ResourceInstance):
        return obj.to_dict()
    return _SERIALIZER.sanitize_for_serialization(obj)


def resource_version(obj: Any) -> str | None:
    return (to_dict(obj).get("metadata") or {}).get("resourceVersion")


def patch_listener_finalizers(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    finalizers: list[str],
    resource_version: str | None,
    *,
    group: str,
    version: str,
    plural: str,
) -> dict[str, Any]:
    """Replace the listener's finalizer list with an optimistic-lock merge patch."""
    metadata: dict[str, Any] = {"finalizers": finalizers}
    if resource_version:
        metadata["resourceVersion"] = resource_version
    return to_dict(
        custom_api.patch_namespaced_custom_object(
            group=group,
            version=version,
            namespace=namespace,
            plural=plural,
            name=name,
            body={"metadata": metadata},
        )
    )


def patch_listener_status(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    status: dict[str, Any],
    *,
    group: str,
    version: str,
    plural: str,
) -> dict[str, Any]:
    return to_dict(
        custom_api.patch_namespaced_custom_object_status(
            group=group,
            version=version,
            namespace=namespace,
            plural=plural,
            name=name,
            body={"status": status},
        )
    )
