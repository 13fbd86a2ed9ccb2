from __future__ import annotations

import re
from typing import Any

from listener_controller.src.config import (
    CONTAINER_PORT,
    DEFAULT_HTTPS_PORT,
    DEFAULT_PORT,
    METRICS_SERVICE_PORT,
    ControllerConfig,
)
from listener_controller.src.container import secret_env_sources
from listener_controller.src.listener import EventListener
from listener_controller.src.meta import filter_labels, generate_labels, object_meta

SERVICE_PORT_NAME = "http-listener"
SERVICE_TLS_PORT_NAME = "https-listener"
METRICS_PORT_NAME = "http-metrics"

METRICS_PORT: dict[str, Any] = {
    "name": METRICS_PORT_NAME,
    "protocol": "TCP",
    "port": METRICS_SERVICE_PORT,
    "targetPort": METRICS_SERVICE_PORT,
}


def has_tls(listener: EventListener) -> bool:
    """True when the first user container sources TLS_CERT and TLS_KEY from secrets."""
    resource = listener.kubernetes_resource
    if resource is None or not resource.containers:
        return False
    sources = secret_env_sources(resource.containers[0])
    return bool(
        sources.get("TLS_CERT", {}).get("key") and sources.get("TLS_KEY", {}).get("key")
    )


def service_port(listener: EventListener, config: ControllerConfig) -> dict[str, Any]:
    """Return the listener's Service port.

    An explicit ``servicePort`` always wins. Otherwise TLS swaps the
    configured port for 8443, but only while it is still the default 8080.
    """
    name = SERVICE_PORT_NAME
    port = config.port
    resource = listener.kubernetes_resource
    override = resource.service_port if resource is not None else None

    if has_tls(listener):
        name = SERVICE_TLS_PORT_NAME
        if override is None and config.port == DEFAULT_PORT:
            port = DEFAULT_HTTPS_PORT
    if override is not None:
        port = override

    return {"name": name, "protocol": "TCP", "port": port, "targetPort": CONTAINER_PORT}


def listener_hostname(listener: EventListener, config: ControllerConfig) -> str:
    port = service_port(listener, config)["port"]
    return f"{listener.generated_name}.{listener.namespace}.svc.{config.cluster_domain}:{port}"


def make_service(
    listener: EventListener,
    config: ControllerConfig,
    exclusion: re.Pattern[str] | None = None,
) -> dict[str, Any]:
    resource = listener.kubernetes_resource
    service_type = (resource.service_type if resource is not None else None) or "ClusterIP"

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": object_meta(
            listener, filter_labels(listener.labels, exclusion), config.static_labels
        ),
        "spec": {
            "selector": generate_labels(listener.name, config.static_labels),
            "type": service_type,
            "ports": [service_port(listener, config), dict(METRICS_PORT)],
        },
    }
