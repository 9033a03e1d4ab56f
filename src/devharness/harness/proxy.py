"""The dev-mode reverse proxy in front of the app."""

import html
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import httpx

from ..errors import ProcessKillError, SourceError

if TYPE_CHECKING:
    from .harness import Harness

logger = logging.getLogger(__name__)

# Never forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
# Set by this server on the way back
RESPONSE_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"server", "date"}

KILL_ERROR_TITLE = "App could not be stopped"


def render_error_page(error: SourceError) -> str:
    """Render a build error as an HTML page."""
    title = html.escape(error.title or "Error")
    parts = [
        "<!DOCTYPE html>",
        "<html><head>",
        f"<title>{title}</title>",
        "<style>body{font-family:sans-serif}pre{background:#f6f6f6;padding:8px}"
        ".error{background:#fdd;font-weight:bold}</style>",
        "</head><body>",
        f"<h1>{title}</h1>",
    ]
    if error.path:
        location = error.link or html.escape(f"{error.path}:{error.line}")
        parts.append(f"<p>In {location}</p>")
    parts.append(f"<p>{html.escape(error.description)}</p>")

    context = error.context_source()
    if context:
        parts.append("<pre>")
        for line in context:
            css = ' class="error"' if line.is_error else ""
            parts.append(f'<div{css}><span>{line.line:5d}</span>  {html.escape(line.source)}</div>')
        parts.append("</pre>")
    if error.meta_error:
        parts.append(f"<p><em>{html.escape(error.meta_error)}</em></p>")
    parts.append("</body></html>")
    return "\n".join(parts)


class ProxyRequestHandler(BaseHTTPRequestHandler):
    """Rebuild if needed, then forward the request to the app."""

    server: "ProxyServer"
    server_version = "devharness"

    def handle_request(self) -> None:
        harness = self.server.harness
        if harness.last_request_had_error and urlsplit(self.path).path == "/favicon.ico":
            # Browsers ask for this right after an error page; do not rebuild for it.
            self.send_error(404)
            return

        try:
            error = harness.notify()
        except ProcessKillError as e:
            harness.abort(e)
            page = render_error_page(SourceError(title=KILL_ERROR_TITLE, description=str(e)))
            self._send_page(500, page)
            return
        if error is not None:
            self._send_page(500, render_error_page(error))
            return
        self._forward(harness.app_url, harness.client)

    do_GET = handle_request
    do_HEAD = handle_request
    do_POST = handle_request
    do_PUT = handle_request
    do_PATCH = handle_request
    do_DELETE = handle_request
    do_OPTIONS = handle_request

    def log_message(self, format: str, *args) -> None:
        logger.debug(f"{self.address_string()} - {format % args}")

    def _forward(self, upstream: str, client: httpx.Client) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else None

        headers = [
            (key, value)
            for key, value in self.headers.items()
            if key.lower() not in HOP_BY_HOP_HEADERS
        ]
        headers.append(("X-Forwarded-For", self.client_address[0]))
        headers.append(("X-Forwarded-Host", self.headers.get("Host", "")))

        request = client.build_request(self.command, upstream + self.path, headers=headers, content=body)
        try:
            response = client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Proxy error: {e}")
            self._send_page(502, render_error_page(SourceError(title="Proxy error", description=str(e))))
            return

        try:
            self.send_response(response.status_code)
            for key, value in response.headers.multi_items():
                if key.lower() not in RESPONSE_SKIP_HEADERS:
                    self.send_header(key, value)
            self.end_headers()
            if self.command != "HEAD":
                for chunk in response.iter_raw():
                    self.wfile.write(chunk)
        except httpx.HTTPError as e:
            logger.error(f"Proxy error while streaming response: {e}")
        finally:
            response.close()

    def _send_page(self, status: int, page: str) -> None:
        body = page.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)


class ProxyServer(ThreadingHTTPServer):
    """Threaded HTTP server handing every request to ProxyRequestHandler."""

    daemon_threads = True

    def __init__(self, address: tuple[str, int], harness: "Harness"):
        self.harness = harness
        super().__init__(address, ProxyRequestHandler)
