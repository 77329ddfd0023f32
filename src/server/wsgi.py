"""Embedded mode: WSGI adapter for an external application server.

The hosting server owns the process lifecycle; this module only turns the
composed handler set into a WSGI callable speaking both protocols:
- rest: the same routes as the native server
- xmlrpc: POST /RPC2, methods named <handler>.<method>

Entry point for application servers:

    from server.wsgi import create_application
    application = create_application()
"""

import logging
from xmlrpc.server import SimpleXMLRPCDispatcher

from server.handlers import Request, Router, error_response

logger = logging.getLogger(__name__)

XMLRPC_PATH = "/RPC2"

_REASONS = {
    200: "OK",
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    411: "Length Required",
    413: "Payload Too Large",
    500: "Internal Server Error",
}


class WSGIApplication:
    """WSGI callable exposing a handler set over REST and XML-RPC."""

    def __init__(self, router: Router, protocols=("rest", "xmlrpc")):
        self.router = router
        self.protocols = tuple(protocols)
        self.dispatcher = None
        if "xmlrpc" in self.protocols:
            self.dispatcher = SimpleXMLRPCDispatcher(allow_none=True, encoding="utf-8")
            for name, func in router.xmlrpc_methods().items():
                self.dispatcher.register_function(func, name)
            self.dispatcher.register_introspection_functions()

    def _read_body(self, environ) -> bytes:
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        if length <= 0:
            return b""
        return environ["wsgi.input"].read(length)

    def _respond(self, start_response, status: int, content_type: str, body: bytes):
        start_response(
            f"{status} {_REASONS.get(status, 'Unknown')}",
            [("Content-Type", content_type), ("Content-Length", str(len(body)))],
        )
        return [body]

    def __call__(self, environ, start_response):
        method = environ.get("REQUEST_METHOD", "GET").upper()
        path = environ.get("PATH_INFO", "/") or "/"
        body = self._read_body(environ)

        if path.rstrip("/") == XMLRPC_PATH and self.dispatcher is not None:
            if method != "POST":
                response = error_response(405, "E105", "XML-RPC requires POST")
                return self._respond(start_response, response.status, response.content_type, response.body)
            result = self.dispatcher._marshaled_dispatch(body)
            return self._respond(start_response, 200, "text/xml", result)

        if "rest" not in self.protocols:
            response = error_response(404, "E100", f"Unknown endpoint: {path}")
        else:
            headers = {
                key[5:].replace("_", "-").title(): value
                for key, value in environ.items()
                if key.startswith("HTTP_")
            }
            request = Request(
                method=method,
                path=path,
                body=body,
                query=environ.get("QUERY_STRING", ""),
                headers=headers,
            )
            response = self.router.dispatch(request)

        payload = b"" if method == "HEAD" else response.body
        return self._respond(start_response, response.status, response.content_type, payload)


def create_application(argv=None):
    """Build the master as a WSGI application.

    Runs the normal master setup with the internal --rack marker, so the
    lifecycle controller is never involved.
    """
    from master import MasterApplication

    argv = list(argv or [])
    if "--rack" not in argv:
        argv.append("--rack")
    return MasterApplication().run(argv)
