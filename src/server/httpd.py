"""Native HTTPS server for the master.

Serves the composed handler set over REST on a single TLS port. Requests
run on worker threads; shutdown() waits for in-flight requests to finish
before the listener is released.
"""

import logging
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import urlparse

from server.handlers import MAX_BODY_SIZE, Request, Router, error_response
from server.tls import TLSConfig

logger = logging.getLogger(__name__)


class _DrainingHTTPServer(ThreadingHTTPServer):
    """Threading server whose server_close() joins request threads."""

    daemon_threads = False
    block_on_close = True
    allow_reuse_address = True

    def __init__(self, address, handler_class, router: Router):
        self.router = router
        super().__init__(address, handler_class)


class ServerHandler(BaseHTTPRequestHandler):
    """HTTP request handler delegating to the router."""

    server_version = "confmaster"

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def _read_body(self) -> Optional[bytes]:
        length = int(self.headers.get("Content-Length") or 0)
        if length > MAX_BODY_SIZE:
            return None
        return self.rfile.read(length) if length else b""

    def _dispatch(self, method: str):
        parsed = urlparse(self.path)
        body = self._read_body()
        if body is None:
            response = error_response(413, "E106", "Request body too large")
        else:
            request = Request(
                method=method,
                path=parsed.path,
                body=body,
                query=parsed.query,
                headers=dict(self.headers.items()),
            )
            response = self.server.router.dispatch(request)

        payload = response.body
        self.send_response(response.status)
        self.send_header("Content-Type", response.content_type)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if method != "HEAD":
            self.wfile.write(payload)

    def do_GET(self):
        self._dispatch("GET")

    def do_HEAD(self):
        self._dispatch("HEAD")

    def do_PUT(self):
        self._dispatch("PUT")

    def do_POST(self):
        self._dispatch("POST")


def build_ssl_context(tls_config: TLSConfig) -> ssl.SSLContext:
    """Build the server TLS context.

    Client certificates are requested but optional; they are verified
    against the CA certificate when one is known.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(
        certfile=str(tls_config.cert_path),
        keyfile=str(tls_config.key_path),
    )
    if tls_config.ca_path:
        context.load_verify_locations(cafile=str(tls_config.ca_path))
        context.verify_mode = ssl.CERT_OPTIONAL
    return context


class Server:
    """HTTPS listener for the master."""

    def __init__(
        self,
        router: Router,
        tls_config: TLSConfig,
        bind: str,
        port: int,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.router = router
        self.tls_config = tls_config
        self.ssl_context = ssl_context
        self.bind = bind
        self.port = port
        self.httpd: Optional[_DrainingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """Bind the listener and serve on a background thread.

        Raises:
            RuntimeError: If the listener cannot be bound
        """
        try:
            httpd = _DrainingHTTPServer((self.bind, self.port), ServerHandler, self.router)
        except OSError as e:
            raise RuntimeError(f"Cannot bind {self.bind}:{self.port}: {e}") from e

        try:
            context = self.ssl_context or build_ssl_context(self.tls_config)
            httpd.socket = context.wrap_socket(httpd.socket, server_side=True)
        except (ssl.SSLError, OSError) as e:
            httpd.server_close()
            raise RuntimeError(f"TLS init failed: {e}") from e

        self.httpd = httpd
        self.port = httpd.server_address[1]
        self._thread = threading.Thread(
            target=httpd.serve_forever, name="master-listener", daemon=True
        )
        self._thread.start()

        logger.info("Server listening on https://%s:%d", self.bind, self.port)
        logger.info("Certificate fingerprint: %s", self.tls_config.fingerprint)

    @property
    def running(self) -> bool:
        return self.httpd is not None

    def shutdown(self):
        """Stop accepting, drain in-flight requests, release the port."""
        if not self.httpd:
            return
        logger.info("Shutting down listener on port %d", self.port)
        self.httpd.shutdown()
        self.httpd.server_close()
        if self._thread:
            self._thread.join()
        self.httpd = None
        self._thread = None
