from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from listener_controller.src.config import (
    ConfigAccessor,
    ConfigError,
    ControllerConfig,
    default_logging_config_map_data,
    env_int,
    load_config,
    parse_bool,
)


def test_load_config_defaults() -> None:
    config = load_config({})

    assert config == ControllerConfig()
    assert config.port == 8080
    assert config.system_namespace == "tekton-pipelines"
    assert config.static_labels == {
        "app.kubernetes.io/managed-by": "EventListener",
        "app.kubernetes.io/part-of": "Triggers",
    }
    assert config.exclusion_regex() is None


def test_load_config_reads_environment() -> None:
    config = load_config(
        {
            "EL_IMAGE": "registry.local/sink:v1",
            "EL_PORT": "9090",
            "EL_SECURITY_CONTEXT": "false",
            "EL_READ_TIMEOUT": "7",
            "SYSTEM_NAMESPACE": "triggers",
            "CLUSTER_DOMAIN": "example.org.",
            "DEFAULT_RUN_AS_USER": "",
            "LABELS_EXCLUSION_PATTERN": "^internal/",
            "WORKERS": "4",
        }
    )

    assert config.image == "registry.local/sink:v1"
    assert config.port == 9090
    assert config.set_security_context is False
    assert config.read_timeout == 7
    assert config.system_namespace == "triggers"
    assert config.cluster_domain == "example.org"
    assert config.run_as_user is None
    assert config.run_as_group == 65532
    assert config.workers == 4
    regex = config.exclusion_regex()
    assert regex is not None
    assert regex.search("internal/owner")


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"EL_PORT": "http"}, "EL_PORT must be an integer"),
        ({"EL_PORT": "70000"}, "EL_PORT must be <= 65535"),
        ({"WORKERS": "0"}, "WORKERS must be >= 1"),
        ({"EL_IMAGE": "  "}, "EL_IMAGE"),
        ({"LABELS_EXCLUSION_PATTERN": "("}, "LABELS_EXCLUSION_PATTERN"),
        ({"DEFAULT_RUN_AS_USER": "root"}, "DEFAULT_RUN_AS_USER"),
        (
            {"WORKQUEUE_BASE_DELAY_SECONDS": "10", "WORKQUEUE_MAX_DELAY_SECONDS": "1"},
            "WORKQUEUE_MAX_DELAY_SECONDS",
        ),
    ],
)
def test_load_config_rejects_invalid_values(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(env)


def test_parse_bool_and_env_int_helpers() -> None:
    assert parse_bool(None, default=True) is True
    assert parse_bool(" Yes ") is True
    assert parse_bool("0", default=True) is False
    assert env_int({}, "X", 3) == 3
    assert env_int({"X": "5"}, "X", 3, minimum=1) == 5


def test_config_accessor_renders_env_vars_as_json() -> None:
    accessor = ConfigAccessor({"logging": {"loglevel.eventlistener": "debug"}})

    env = {item["name"]: item["value"] for item in accessor.to_env_vars()}

    assert list(env) == ["K_LOGGING_CONFIG", "K_METRICS_CONFIG", "K_TRACING_CONFIG"]
    assert json.loads(env["K_LOGGING_CONFIG"]) == {"loglevel.eventlistener": "debug"}
    assert json.loads(env["K_METRICS_CONFIG"]) == {}


def test_config_accessor_from_cluster_tolerates_missing_maps() -> None:
    core_api = MagicMock()

    def read(name: str, namespace: str) -> SimpleNamespace:
        assert namespace == "tekton-pipelines"
        if name == "config-tracing":
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(data={"source": name})

    core_api.read_namespaced_config_map.side_effect = read

    accessor = ConfigAccessor.from_cluster(core_api, ControllerConfig())
    env = {item["name"]: json.loads(item["value"]) for item in accessor.to_env_vars()}

    assert env["K_LOGGING_CONFIG"] == {"source": "config-logging-triggers"}
    assert env["K_METRICS_CONFIG"] == {"source": "config-observability-triggers"}
    assert env["K_TRACING_CONFIG"] == {}


def test_config_accessor_from_cluster_raises_on_api_errors() -> None:
    core_api = MagicMock()
    core_api.read_namespaced_config_map.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        ConfigAccessor.from_cluster(core_api, ControllerConfig())


def test_default_logging_config_map_data_is_valid_zap_config() -> None:
    data = default_logging_config_map_data()

    assert data["loglevel.eventlistener"] == "info"
    assert json.loads(data["zap-logger-config"])["encoding"] == "json"
