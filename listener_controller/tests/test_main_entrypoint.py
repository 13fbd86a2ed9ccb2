from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from listener_controller.src.__main__ import (
    JSONFormatter,
    LeaderScopedRunner,
    configure_logging,
    main,
    redact,
)

MAIN = "listener_controller.src.__main__"


@pytest.fixture(autouse=True)
def restore_process_state() -> Iterator[None]:
    handlers = {sig: signal.getsignal(sig) for sig in (signal.SIGTERM, signal.SIGINT)}
    root_handlers = list(logging.root.handlers)
    root_level = logging.root.level
    yield
    for sig, handler in handlers.items():
        signal.signal(sig, handler)
    logging.root.handlers = root_handlers
    logging.root.setLevel(root_level)


def _record(msg: str = "test message", exc_info: Any = None) -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    def test_format_produces_single_line_json(self) -> None:
        output = JSONFormatter().format(_record("line one\nline two"))

        parsed = json.loads(output)
        assert output.count("\n") == 0
        assert parsed["msg"] == "line one\nline two"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_redacted_exception(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = _record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]

    def test_redact_masks_credentials(self) -> None:
        message = redact(
            "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
            "url=/healthz?access_token=qwerty"
        )

        assert "[REDACTED]" in message
        for secret in ("abc123", "hunter2", "abc.def.ghi", "qwerty"):
            assert secret not in message

    def test_redact_leaves_plain_text_alone(self) -> None:
        assert redact("Reconciled EventListener ns1/my-el") == "Reconciled EventListener ns1/my-el"


def test_configure_logging_installs_json_handler() -> None:
    configure_logging("debug")

    assert logging.root.level == logging.DEBUG
    assert len(logging.root.handlers) == 1
    assert isinstance(logging.root.handlers[0].formatter, JSONFormatter)

    configure_logging("nonsense")
    assert logging.root.level == logging.INFO


class TestLeaderScopedRunner:
    def _runner(
        self, run_forever: Callable[..., None], stop_timeout_seconds: int = 2
    ) -> tuple[LeaderScopedRunner, MagicMock]:
        controller = MagicMock()
        controller.run_forever.side_effect = run_forever
        runner = LeaderScopedRunner(
            controller, threading.Event(), threading.Event(), stop_timeout_seconds
        )
        return runner, controller

    def test_term_starts_and_stops_with_leadership(self) -> None:
        started = threading.Event()

        def run_forever(shutdown_event: threading.Event) -> None:
            started.set()
            shutdown_event.wait(timeout=5)

        runner, controller = self._runner(run_forever)

        runner.on_started_leading()
        assert started.wait(timeout=2)
        assert runner.leader_event.is_set()

        runner.on_stopped_leading()

        assert not runner.leader_event.is_set()
        controller.request_stop.assert_called_once()
        assert not runner.shutdown_event.is_set()

    def test_controller_exiting_on_its_own_shuts_down_process(self) -> None:
        runner, _ = self._runner(lambda shutdown_event: None)

        runner.on_started_leading()

        assert runner.shutdown_event.wait(timeout=2)

    def test_controller_crash_shuts_down_process(self) -> None:
        def run_forever(shutdown_event: threading.Event) -> None:
            raise RuntimeError("boom")

        runner, _ = self._runner(run_forever)

        runner.on_started_leading()

        assert runner.shutdown_event.wait(timeout=2)

    def test_stuck_term_prevents_overlapping_restart(self) -> None:
        started = threading.Event()
        release = threading.Event()

        def run_forever(shutdown_event: threading.Event) -> None:
            started.set()
            release.wait(timeout=5)

        runner, controller = self._runner(run_forever, stop_timeout_seconds=1)
        try:
            runner.on_started_leading()
            assert started.wait(timeout=2)
            runner.on_stopped_leading()
            assert runner.shutdown_event.is_set()

            runner.on_started_leading()
            controller.run_forever.assert_called_once()
        finally:
            release.set()

    def test_no_new_term_after_shutdown(self) -> None:
        runner, controller = self._runner(lambda shutdown_event: None)
        runner.shutdown_event.set()

        runner.on_started_leading()

        controller.run_forever.assert_not_called()
        assert not runner.leader_event.is_set()


def _clients() -> SimpleNamespace:
    return SimpleNamespace(core=MagicMock(), coordination=MagicMock())


def _controller(run_forever: Callable[..., None] | None = None) -> MagicMock:
    controller = MagicMock()
    controller.ready = threading.Event()

    def stop_immediately(shutdown_event: threading.Event | None = None) -> None:
        if shutdown_event is not None:
            shutdown_event.set()

    controller.run_forever.side_effect = run_forever or stop_immediately
    return controller


class TestMainEntrypoint:
    def test_main_without_leader_election(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "false")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        controller = _controller()

        with (
            patch(f"{MAIN}.load_kube_configuration") as mock_load,
            patch(f"{MAIN}.build_clients", return_value=_clients()),
            patch(f"{MAIN}.ConfigAccessor") as mock_accessor,
            patch(f"{MAIN}.build_controller_from_env", return_value=controller) as mock_build,
            patch(f"{MAIN}.start_health_server") as mock_health,
        ):
            main()

        mock_load.assert_called_once()
        mock_accessor.from_cluster.assert_called_once()
        assert mock_build.call_args.args[2] is mock_accessor.from_cluster.return_value
        controller.run_forever.assert_called_once()
        assert mock_health.call_args.args[0] is controller.ready
        assert mock_health.call_args.kwargs == {"port": 8080, "leader": None}
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_runs_controller_under_leader_election(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9090")
        monkeypatch.setenv("SYSTEM_NAMESPACE", "triggers-system")
        monkeypatch.setenv("LEADER_ELECTION_LEASE_DURATION_SECONDS", "20")
        monkeypatch.setenv("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", "12")
        monkeypatch.setenv("LEADER_ELECTION_RETRY_PERIOD_SECONDS", "3")
        monkeypatch.setenv("POD_NAME", "controller-0")

        controller_started = threading.Event()

        def run_forever(shutdown_event: threading.Event | None = None) -> None:
            assert shutdown_event is not None
            controller_started.set()
            shutdown_event.wait(timeout=2)

        controller = _controller(run_forever)
        elector = MagicMock()

        def elector_run(
            *,
            on_started_leading: Callable[[], None],
            on_stopped_leading: Callable[[], None],
            stop_event: threading.Event,
        ) -> None:
            on_started_leading()
            assert controller_started.wait(timeout=2)
            on_stopped_leading()
            # A leadership handoff is not a process shutdown.
            assert not stop_event.is_set()
            stop_event.set()

        elector.run.side_effect = elector_run
        clients = _clients()

        with (
            patch(f"{MAIN}.load_kube_configuration"),
            patch(f"{MAIN}.build_clients", return_value=clients),
            patch(f"{MAIN}.ConfigAccessor"),
            patch(f"{MAIN}.build_controller_from_env", return_value=controller),
            patch(f"{MAIN}.start_health_server") as mock_health,
            patch(f"{MAIN}.LeaseLeaderElector") as mock_elector_cls,
        ):
            mock_elector_cls.from_config.return_value = elector
            main()

        api, election = mock_elector_cls.from_config.call_args.args
        assert api is clients.coordination
        assert election.namespace == "triggers-system"
        assert election.identity == "controller-0"
        assert (
            election.lease_duration_seconds,
            election.renew_deadline_seconds,
            election.retry_period_seconds,
        ) == (20, 12, 3)
        assert isinstance(mock_health.call_args.kwargs["leader"], threading.Event)
        assert mock_health.call_args.kwargs["port"] == 9090
        controller.run_forever.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()

    def test_signal_handler_stops_controller(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "false")
        handlers: dict[int, Any] = {}

        def run_forever(shutdown_event: threading.Event | None = None) -> None:
            assert shutdown_event is not None
            handlers[signal.SIGTERM](signal.SIGTERM, None)
            assert shutdown_event.is_set()

        controller = _controller(run_forever)

        with (
            patch(f"{MAIN}.load_kube_configuration"),
            patch(f"{MAIN}.build_clients", return_value=_clients()),
            patch(f"{MAIN}.ConfigAccessor"),
            patch(f"{MAIN}.build_controller_from_env", return_value=controller),
            patch(f"{MAIN}.start_health_server"),
            patch(
                f"{MAIN}.signal.signal",
                side_effect=lambda signum, handler: handlers.__setitem__(signum, handler),
            ),
        ):
            main()

        assert set(handlers) == {signal.SIGTERM, signal.SIGINT}
        controller.request_stop.assert_called_once()

    @pytest.mark.parametrize(
        "env",
        [
            {"HEALTH_PORT": "70000"},
            {"EL_IMAGE": "   "},
            {
                "LEADER_ELECTION_LEASE_DURATION_SECONDS": "10",
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS": "10",
            },
        ],
    )
    def test_main_exits_on_invalid_configuration(
        self, monkeypatch: pytest.MonkeyPatch, env: dict[str, str]
    ) -> None:
        for name, value in env.items():
            monkeypatch.setenv(name, value)

        with (
            patch(f"{MAIN}.load_kube_configuration") as mock_load,
            patch(f"{MAIN}.start_health_server") as mock_health,
            pytest.raises(SystemExit) as excinfo,
        ):
            main()

        assert excinfo.value.code == 2
        mock_load.assert_not_called()
        mock_health.assert_not_called()
