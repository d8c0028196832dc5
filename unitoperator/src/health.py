from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_events: Sequence[threading.Event] = ()

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            waiting = sum(1 for event in self.ready_events if not event.is_set())
            if waiting == 0:
                self._respond(200, b"ready=true")
            else:
                self._respond(503, f"ready=false waiting={waiting}".encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("unitoperator.health").debug(fmt, *args)


def make_health_handler(ready: Sequence[threading.Event]) -> type[_HealthHandler]:
    """Return a handler class bound to the controllers' readiness events.

    Readiness requires every event to be set, i.e. every controller has
    completed its initial list.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_events = tuple(ready)

    return _BoundHealthHandler


def start_health_server(ready: Sequence[threading.Event], port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
