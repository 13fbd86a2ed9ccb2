from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

LOGGER = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEFAULT_HTTPS_PORT = 8443
CONTAINER_PORT = 8080
METRICS_SERVICE_PORT = 9000

GENERATED_RESOURCE_PREFIX = "el"
FINALIZER_NAME = "eventlisteners.triggers.tekton.dev"
PAYLOAD_VALIDATION_ANNOTATION = "tekton.dev/payload-validation"

LISTENER_GROUP = "triggers.tekton.dev"
LISTENER_VERSION = "v1beta1"
LISTENER_PLURAL = "eventlisteners"
LISTENER_KIND = "EventListener"

STATIC_RESOURCE_LABELS: dict[str, str] = {
    "app.kubernetes.io/managed-by": "EventListener",
    "app.kubernetes.io/part-of": "Triggers",
}


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(values: Mapping[str, str], name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = values.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _optional_int(values: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = values.get(name)
    if raw is None:
        return default
    if not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"failed parsing {name}: {raw!r} is not an integer") from exc


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Holds the sink image and server tuning passed to every generated
    container, plus the knobs for the controller process itself.
    """

    image: str = "ghcr.io/tektoncd/triggers/eventlistenersink:latest"
    port: int = DEFAULT_PORT
    set_security_context: bool = True
    set_event_listener_event: str = "disable"
    read_timeout: int = 5
    write_timeout: int = 40
    idle_timeout: int = 120
    timeout_handler: int = 30
    http_client_read_timeout: int = 30
    http_client_keep_alive: int = 30
    http_client_tls_handshake_timeout: int = 10
    http_client_response_header_timeout: int = 10
    http_client_expect_continue_timeout: int = 1
    period_seconds: int = 10
    failure_threshold: int = 3
    metrics_port: int = 9000
    system_namespace: str = "tekton-pipelines"
    cluster_domain: str = "cluster.local"
    default_service_account: str = "default"
    run_as_user: int | None = 65532
    run_as_group: int | None = 65532
    labels_exclusion_pattern: str = ""
    logging_config_map: str = "config-logging-triggers"
    observability_config_map: str = "config-observability-triggers"
    tracing_config_map: str = "config-tracing"
    workers: int = 2
    queue_base_delay_seconds: float = 0.5
    queue_max_delay_seconds: float = 300.0
    static_labels: dict[str, str] = field(default_factory=lambda: dict(STATIC_RESOURCE_LABELS))

    def exclusion_regex(self) -> re.Pattern[str] | None:
        if not self.labels_exclusion_pattern:
            return None
        return re.compile(self.labels_exclusion_pattern)


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Every key is optional; see :class:`ControllerConfig` for defaults.
    Raises :class:`ConfigError` on malformed values so the process fails
    at startup instead of generating broken workloads later.
    """
    values = env if env is not None else os.environ
    defaults = ControllerConfig()

    image = values.get("EL_IMAGE", defaults.image).strip()
    if not image:
        raise ConfigError("EL_IMAGE must be a non-empty string")

    system_namespace = values.get("SYSTEM_NAMESPACE", defaults.system_namespace).strip()
    if not system_namespace:
        raise ConfigError("SYSTEM_NAMESPACE must be a non-empty string")

    pattern = values.get("LABELS_EXCLUSION_PATTERN", defaults.labels_exclusion_pattern)
    if pattern:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ConfigError(f"LABELS_EXCLUSION_PATTERN is not a valid regex: {exc}") from exc

    base_delay = env_float(values, "WORKQUEUE_BASE_DELAY_SECONDS", defaults.queue_base_delay_seconds)
    max_delay = env_float(values, "WORKQUEUE_MAX_DELAY_SECONDS", defaults.queue_max_delay_seconds)
    if max_delay < base_delay:
        raise ConfigError(
            "WORKQUEUE_MAX_DELAY_SECONDS must be >= WORKQUEUE_BASE_DELAY_SECONDS"
        )

    return ControllerConfig(
        image=image,
        port=env_int(values, "EL_PORT", defaults.port, minimum=1, maximum=65535),
        set_security_context=parse_bool(values.get("EL_SECURITY_CONTEXT"), default=True),
        set_event_listener_event=values.get("EL_EVENTS", defaults.set_event_listener_event),
        read_timeout=env_int(values, "EL_READ_TIMEOUT", defaults.read_timeout, minimum=0),
        write_timeout=env_int(values, "EL_WRITE_TIMEOUT", defaults.write_timeout, minimum=0),
        idle_timeout=env_int(values, "EL_IDLE_TIMEOUT", defaults.idle_timeout, minimum=0),
        timeout_handler=env_int(values, "EL_TIMEOUT_HANDLER", defaults.timeout_handler, minimum=0),
        http_client_read_timeout=env_int(
            values, "EL_HTTPCLIENT_READ_TIMEOUT", defaults.http_client_read_timeout, minimum=0
        ),
        http_client_keep_alive=env_int(
            values, "EL_HTTPCLIENT_KEEP_ALIVE", defaults.http_client_keep_alive, minimum=0
        ),
        http_client_tls_handshake_timeout=env_int(
            values,
            "EL_HTTPCLIENT_TLS_HANDSHAKE_TIMEOUT",
            defaults.http_client_tls_handshake_timeout,
            minimum=0,
        ),
        http_client_response_header_timeout=env_int(
            values,
            "EL_HTTPCLIENT_RESPONSE_HEADER_TIMEOUT",
            defaults.http_client_response_header_timeout,
            minimum=0,
        ),
        http_client_expect_continue_timeout=env_int(
            values,
            "EL_HTTPCLIENT_EXPECT_CONTINUE_TIMEOUT",
            defaults.http_client_expect_continue_timeout,
            minimum=0,
        ),
        period_seconds=env_int(values, "EL_PERIOD_SECONDS", defaults.period_seconds, minimum=1),
        failure_threshold=env_int(
            values, "EL_FAILURE_THRESHOLD", defaults.failure_threshold, minimum=1
        ),
        metrics_port=env_int(
            values, "METRICS_PROMETHEUS_PORT", defaults.metrics_port, minimum=1, maximum=65535
        ),
        system_namespace=system_namespace,
        cluster_domain=values.get("CLUSTER_DOMAIN", defaults.cluster_domain).strip(".") or "cluster.local",
        default_service_account=values.get(
            "DEFAULT_SERVICE_ACCOUNT", defaults.default_service_account
        ),
        run_as_user=_optional_int(values, "DEFAULT_RUN_AS_USER", defaults.run_as_user),
        run_as_group=_optional_int(values, "DEFAULT_RUN_AS_GROUP", defaults.run_as_group),
        labels_exclusion_pattern=pattern,
        logging_config_map=values.get("CONFIG_LOGGING_NAME", defaults.logging_config_map),
        observability_config_map=values.get(
            "CONFIG_OBSERVABILITY_NAME", defaults.observability_config_map
        ),
        tracing_config_map=values.get("CONFIG_TRACING_NAME", defaults.tracing_config_map),
        workers=env_int(values, "WORKERS", defaults.workers, minimum=1),
        queue_base_delay_seconds=base_delay,
        queue_max_delay_seconds=max_delay,
    )


class ConfigAccessor:
    """Turns the controller's own logging/metrics/tracing ConfigMaps into env vars.

    The maps are snapshotted once, so every generated container in a
    controller run carries the same settings.
    """

    ENV_NAMES = (
        ("K_LOGGING_CONFIG", "logging"),
        ("K_METRICS_CONFIG", "observability"),
        ("K_TRACING_CONFIG", "tracing"),
    )

    def __init__(self, data: Mapping[str, Mapping[str, str]] | None = None) -> None:
        self._data = {key: dict(value) for key, value in (data or {}).items()}

    @classmethod
    def from_cluster(cls, core_api: CoreV1Api, config: ControllerConfig) -> ConfigAccessor:
        names = {
            "logging": config.logging_config_map,
            "observability": config.observability_config_map,
            "tracing": config.tracing_config_map,
        }
        data: dict[str, dict[str, str]] = {}
        for key, name in names.items():
            try:
                config_map = core_api.read_namespaced_config_map(
                    name=name, namespace=config.system_namespace
                )
            except ApiException as exc:
                if exc.status != 404:
                    raise
                LOGGER.warning(
                    "ConfigMap %s/%s not found; generated listeners get an empty %s config",
                    config.system_namespace,
                    name,
                    key,
                )
                continue
            data[key] = dict(getattr(config_map, "data", None) or {})
        return cls(data)

    def to_env_vars(self) -> list[dict[str, Any]]:
        return [
            {"name": env_name, "value": json.dumps(self._data.get(key, {}), sort_keys=True)}
            for env_name, key in self.ENV_NAMES
        ]


def default_logging_config_map_data() -> dict[str, str]:
    zap_config = {
        "level": "info",
        "development": False,
        "sampling": {"initial": 100, "thereafter": 100},
        "outputPaths": ["stdout"],
        "errorOutputPaths": ["stderr"],
        "encoding": "json",
        "encoderConfig": {
            "timeKey": "ts",
            "levelKey": "level",
            "nameKey": "logger",
            "callerKey": "caller",
            "messageKey": "msg",
            "stacktraceKey": "stacktrace",
            "lineEnding": "",
            "levelEncoder": "",
            "timeEncoder": "iso8601",
            "durationEncoder": "",
            "callerEncoder": "",
        },
    }
    return {
        "loglevel.eventlistener": "info",
        "zap-logger-config": json.dumps(zap_config, indent=2),
    }


def default_observability_config_map_data() -> dict[str, str]:
    return {
        "_example": (
            "################################\n"
            "#                              #\n"
            "#    EXAMPLE CONFIGURATION     #\n"
            "#                              #\n"
            "################################\n"
            "metrics.backend-destination: prometheus\n"
        )
    }
