from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

Probe = Callable[[], bool]


def _always_live() -> bool:
    return True


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serve kubelet probes and the Prometheus scrape endpoint.

    ``/healthz``  200 while the worker pool is alive, else 503.
    ``/readyz``   200 once informer caches synced and workers started, else 503.
    ``/metrics``  Prometheus text exposition.
    """

    live_probe: Probe
    ready_probe: Probe

    def _respond(
        self, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8"
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _healthz(self) -> None:
        if self.live_probe():
            self._respond(200, b"ok")
        else:
            self._respond(503, b"workers=dead")

    def _readyz(self) -> None:
        if self.ready_probe():
            self._respond(200, b"ready=true")
        else:
            self._respond(503, b"ready=false")

    def _metrics(self) -> None:
        self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)

    def do_GET(self) -> None:
        route = _ROUTES.get(self.path.split("?", 1)[0])
        if route is None:
            self._respond(404, b"not found")
            return
        route(self)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


_ROUTES: dict[str, Callable[[_ProbeHandler], None]] = {
    "/healthz": _ProbeHandler._healthz,
    "/readyz": _ProbeHandler._readyz,
    "/metrics": _ProbeHandler._metrics,
}


def make_health_handler(ready: Probe, live: Probe | None = None) -> type[_ProbeHandler]:
    """Return a handler class bound to the given probe callables.

    ``HTTPServer`` instantiates handlers without constructor arguments, so the
    probes are attached as class attributes.
    """

    class _BoundProbeHandler(_ProbeHandler):
        ready_probe = staticmethod(ready)
        live_probe = staticmethod(live or _always_live)

    return _BoundProbeHandler


def start_health_server(
    port: int, ready: Probe, live: Probe | None = None
) -> ThreadingHTTPServer:
    """Serve the probes on *port* from a daemon thread and return the server."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, live))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
