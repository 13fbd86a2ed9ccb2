from __future__ import annotations

from collections.abc import Callable
from typing import Any

from listener_controller.src.config import (
    CONTAINER_PORT,
    PAYLOAD_VALIDATION_ANNOTATION,
    ConfigAccessor,
    ControllerConfig,
)
from listener_controller.src.listener import EventListener

CONTAINER_NAME = "event-listener"

ContainerOption = Callable[[dict[str, Any]], None]


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


def is_multi_namespace(listener: EventListener) -> bool:
    if listener.namespace_selector_names:
        return True
    return any(names for names in listener.trigger_group_namespace_names)


def payload_validation_enabled(listener: EventListener) -> bool:
    return listener.annotations.get(PAYLOAD_VALIDATION_ANNOTATION) != "false"


def container_security_context(config: ControllerConfig) -> dict[str, Any]:
    context: dict[str, Any] = {}
    if config.set_security_context:
        context = {
            "allowPrivilegeEscalation": False,
            "capabilities": {"drop": ["ALL"]},
            "runAsNonRoot": True,
            "seccompProfile": {"type": "RuntimeDefault"},
        }
    if config.run_as_user is not None:
        context["runAsUser"] = config.run_as_user
    if config.run_as_group is not None:
        context["runAsGroup"] = config.run_as_group
    return context


def make_container(
    listener: EventListener,
    accessor: ConfigAccessor,
    config: ControllerConfig,
    *options: ContainerOption,
) -> dict[str, Any]:
    """Build the sink container shared by Deployments and custom objects.

    *options* run in order against the finished baseline and may extend
    ports, env, probes, mounts or args in place.
    """
    container: dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": config.image,
        "ports": [{"containerPort": CONTAINER_PORT, "protocol": "TCP"}],
        "args": [
            f"--el-name={listener.name}",
            f"--el-namespace={listener.namespace}",
            f"--port={CONTAINER_PORT}",
            f"--readtimeout={config.read_timeout}",
            f"--writetimeout={config.write_timeout}",
            f"--idletimeout={config.idle_timeout}",
            f"--timeouthandler={config.timeout_handler}",
            f"--httpclient-readtimeout={config.http_client_read_timeout}",
            f"--httpclient-keep-alive={config.http_client_keep_alive}",
            f"--httpclient-tlshandshaketimeout={config.http_client_tls_handshake_timeout}",
            f"--httpclient-responseheadertimeout={config.http_client_response_header_timeout}",
            f"--httpclient-expectcontinuetimeout={config.http_client_expect_continue_timeout}",
            f"--is-multi-ns={_format_bool(is_multi_namespace(listener))}",
            f"--payload-validation={_format_bool(payload_validation_enabled(listener))}",
            f"--cloudevent-uri={listener.cloud_event_uri}",
        ],
        "env": [
            *accessor.to_env_vars(),
            {"name": "NAMESPACE", "value": listener.namespace},
            {"name": "NAME", "value": listener.name},
            {"name": "EL_EVENT", "value": config.set_event_listener_event},
            {"name": "K_SINK_TIMEOUT", "value": str(config.timeout_handler)},
        ],
        "securityContext": container_security_context(config),
    }

    for option in options:
        option(container)

    return container


def secret_env_sources(container: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Map env var name to its ``secretKeyRef`` for secret-sourced env vars."""
    out: dict[str, dict[str, Any]] = {}
    for env in container.get("env") or []:
        secret_ref = (env.get("valueFrom") or {}).get("secretKeyRef")
        if secret_ref:
            out[env["name"]] = secret_ref
    return out
