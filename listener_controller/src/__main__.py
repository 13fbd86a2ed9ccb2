from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from listener_controller.src.config import ConfigAccessor, ConfigError, env_int, load_config
from listener_controller.src.controller import EventListenerController, build_controller_from_env
from listener_controller.src.health import start_health_server
from listener_controller.src.kube import build_clients, load_kube_configuration
from listener_controller.src.leader import LeaseLeaderElector, load_leader_election_config
from listener_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger("listener_controller")

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"), r"\1[REDACTED]"),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|tls[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact(value: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line with credentials masked."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


class LeaderScopedRunner:
    """Runs the controller on a thread only while this replica leads.

    Every leadership term gets its own stop event. A term that cannot be
    stopped within ``stop_timeout_seconds`` (or a controller that exits
    on its own) shuts the whole process down rather than risking two
    overlapping worker pools.
    """

    def __init__(
        self,
        controller: EventListenerController,
        shutdown_event: threading.Event,
        leader_event: threading.Event,
        stop_timeout_seconds: int,
    ) -> None:
        self.controller = controller
        self.shutdown_event = shutdown_event
        self.leader_event = leader_event
        self.stop_timeout_seconds = stop_timeout_seconds
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._term_stop = threading.Event()

    def _run_term(self, term_stop: threading.Event) -> None:
        try:
            self.controller.run_forever(shutdown_event=term_stop)
        except Exception:
            LOGGER.exception("Controller crashed")
            self.shutdown_event.set()
            return
        if not term_stop.is_set() and not self.shutdown_event.is_set():
            LOGGER.error("Controller exited without a stop signal; terminating process")
            self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error("Previous controller term is still running; refusing to start another")
                self.shutdown_event.set()
                return
            self._term_stop = threading.Event()
            self.leader_event.set()
            self._thread = threading.Thread(
                target=self._run_term, args=(self._term_stop,), name="controller", daemon=True
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._lock:
            self.leader_event.clear()
            self._term_stop.set()
            self.controller.request_stop()
            if self._thread is None:
                return
            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss after losing leadership; shutting down",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def main() -> None:
    """Process entry point: logging, config, clients, then the controller."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
        election = load_leader_election_config(config.system_namespace)
        health_port = env_int(os.environ, "HEALTH_PORT", 8080, minimum=0, maximum=65535)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        sys.exit(2)

    load_kube_configuration()
    clients = build_clients()
    accessor = ConfigAccessor.from_cluster(clients.core, config)
    controller = build_controller_from_env(clients, config, accessor)

    leader_event = threading.Event() if election.enabled else None
    health_server = start_health_server(controller.ready, port=health_port, leader=leader_event)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if leader_event is None:
            controller.run_forever(shutdown_event=shutdown_event)
        else:
            runner = LeaderScopedRunner(
                controller, shutdown_event, leader_event, election.stop_timeout_seconds
            )
            elector = LeaseLeaderElector.from_config(clients.coordination, election)
            elector.run(
                on_started_leading=runner.on_started_leading,
                on_stopped_leading=runner.on_stopped_leading,
                stop_event=shutdown_event,
            )
            runner.on_stopped_leading()
    finally:
        health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
