from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


def _flag(value: bool) -> str:
    return "true" if value else "false"


class ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``.

    ``/readyz`` reports ready only once the controller's caches have synced
    and, with leader election on, this replica holds the lease.
    """

    synced_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _reply(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._reply(200, b"ok")
        elif path == "/leadz":
            if self._is_leader():
                self._reply(200, b"ok")
            else:
                self._reply(503, b"not leader")
        elif path == "/readyz":
            synced = self.synced_event.is_set()
            leader = self._is_leader()
            body = f"synced={_flag(synced)} leader={_flag(leader)}".encode()
            self._reply(200 if synced and leader else 503, body)
        elif path == "/metrics":
            self._reply(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._reply(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(
    synced: threading.Event, leader: threading.Event | None = None
) -> type[ProbeHandler]:
    # HTTPServer instantiates handlers without extra arguments, so bind via a subclass.
    class _BoundProbeHandler(ProbeHandler):
        synced_event = synced
        leader_event = leader

    return _BoundProbeHandler


def start_health_server(
    synced: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the probe/metrics server on a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(synced, leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
