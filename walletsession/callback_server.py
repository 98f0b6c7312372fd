"""Localhost server that captures a login redirect for native sessions.

When no browser page hosts the session, the social-login provider points
the identity service's redirect at this server and waits for the first
request carrying the redirect query parameters.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qsl, urlparse


logger = logging.getLogger("walletsession.redirect")

_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title>
<style>
  body {{ font-family: system-ui, sans-serif; display: flex; align-items: center;
         justify-content: center; height: 100vh; margin: 0; }}
</style></head>
<body><div>
  <h1>{title}</h1>
  <p>{detail}</p>
</div></body></html>"""


def render_page(title: str, detail: str) -> bytes:
    """Render the small status page returned to the browser."""
    return _PAGE.format(
        title=html.escape(title, quote=True),
        detail=html.escape(detail, quote=True),
    ).encode("utf-8")


class RedirectCaptureServer:
    """Capture the first redirect hitting ``path`` on an ephemeral port.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` picks a free port).
    path : str
        Path the identity service redirects to.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0, path: str = "/callback") -> None:
        """Initialize the capture server."""
        self.host = host
        self.port = port
        self.path = path
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._params: dict[str, str] | None = None
        self._captured = threading.Event()

    @property
    def redirect_uri(self) -> str:
        """Redirect URI to register with the identity service."""
        return f"http://{self.host}:{self.port}{self.path}"

    @property
    def is_running(self) -> bool:
        """True while the server thread is serving."""
        return self._thread is not None and self._thread.is_alive()

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        owner = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                """Capture the query parameters of the first redirect."""
                parsed = urlparse(self.path)
                if parsed.path != owner.path:
                    self.send_error(404)
                    return

                params = dict(parse_qsl(parsed.query))
                first = owner._record(params)
                if "error" in params:
                    body = render_page(
                        "Login failed",
                        params.get("error_description") or params["error"],
                    )
                else:
                    body = render_page("Login complete", "You can close this window.")
                self._reply(body)
                if first:
                    threading.Thread(target=owner._shutdown, daemon=True).start()

            def _reply(self, body: bytes) -> None:
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.send_header("Cache-Control", "no-store")
                self.send_header("Content-Security-Policy", "default-src 'none'; style-src 'unsafe-inline'")
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, *args: Any) -> None:
                if args:
                    logger.debug("Redirect capture: %s", args[0] % args[1:])

        return _Handler

    def _record(self, params: dict[str, str]) -> bool:
        """Store the params of the first redirect. Returns True if stored."""
        if self._captured.is_set():
            return False
        self._params = params
        self._captured.set()
        return True

    def _shutdown(self) -> None:
        if self._server is not None:
            self._server.shutdown()

    def start(self) -> str:
        """Start serving on a daemon thread.

        Returns
        -------
        str
            The redirect URI, including the port actually bound.
        """
        self._server = HTTPServer((self.host, self.port), self._make_handler())
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("Redirect capture server listening on %s", self.redirect_uri)
        return self.redirect_uri

    def wait(self, timeout: float = 120.0) -> dict[str, str] | None:
        """Block until a redirect arrives.

        Parameters
        ----------
        timeout : float
            Seconds to wait.

        Returns
        -------
        dict or None
            The redirect's query parameters, or None on timeout.
        """
        if self._captured.wait(timeout=timeout):
            return self._params
        return None

    def stop(self) -> None:
        """Shut the server down and join its thread."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
