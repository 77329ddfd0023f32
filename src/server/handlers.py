"""Protocol handlers for the master.

Handlers are protocol-independent: each takes a Request and returns a
Response (payload, status, content_type), the same way for the native
HTTPS server and the WSGI adapter. Each handler can also expose
XML-RPC methods for the legacy protocol.

Routes (first path segment -> handler):
    status, health                                    Status
    file_content, file_metadata                       FileServer
    catalog, facts                                    Master
    report                                            Report
    file_bucket_file                                  FileBucket
    certificate, certificate_request,
    certificate_status                                CA
"""

import hashlib
import itertools
import json
import logging
import time
import xmlrpc.client
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import parse_qs

import yaml

from common import CompileFailure, get_version
from server.ca import CALocation
from server.tls import CertificateError, get_cert_fingerprint
from terminus import DataKind, NotFoundError, StoreError

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 10 * 1024 * 1024

STATUS = "Status"
FILE_SERVER = "FileServer"
MASTER = "Master"
REPORT = "Report"
FILE_BUCKET = "FileBucket"
CA = "CA"

# Data kinds each handler reads through the terminus bindings
HANDLER_KINDS = {
    STATUS: (),
    FILE_SERVER: (DataKind.FILE_CONTENT, DataKind.FILE_METADATA),
    MASTER: (DataKind.NODE,),
    REPORT: (),
    FILE_BUCKET: (DataKind.FILE_BUCKET,),
    CA: (),
}


class HandlerError(Exception):
    """Request failed; rendered as a JSON error body."""

    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


@dataclass
class Request:
    method: str
    path: str
    body: bytes = b""
    query: str = ""
    headers: dict = field(default_factory=dict)

    @property
    def segments(self) -> list[str]:
        return [s for s in self.path.strip("/").split("/") if s]

    @property
    def params(self) -> dict:
        return {k: v[-1] for k, v in parse_qs(self.query).items()}

    def json(self) -> Any:
        try:
            return json.loads(self.body.decode("utf-8") or "null")
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise HandlerError(400, "E102", f"Invalid JSON body: {e}") from e


@dataclass
class Response:
    payload: Any
    status: int = 200
    content_type: str = "application/json"

    @property
    def body(self) -> bytes:
        if isinstance(self.payload, bytes):
            return self.payload
        if isinstance(self.payload, str):
            return self.payload.encode("utf-8")
        return json.dumps(self.payload, indent=2).encode("utf-8")


def error_response(status: int, code: str, message: str) -> Response:
    return Response({"error": {"code": code, "message": message}}, status)


@dataclass
class ServiceContext:
    """Collaborators handed to the handlers by the composer."""

    settings: Any
    bindings: Any
    compiler: Any = None
    authority: Any = None
    ca_location: CALocation = CALocation.NONE
    status_provider: Optional[Callable[[], str]] = None


class Handler:
    """Base handler: routes are keyed by (method, first path segment)."""

    name = ""
    prefixes: tuple = ()

    def __init__(self, context: ServiceContext):
        self.context = context

    def handle(self, request: Request) -> Response:
        segments = request.segments
        verb = "get" if request.method == "HEAD" else request.method.lower()
        method = getattr(self, f"{verb}_{segments[0]}", None)
        if method is None:
            raise HandlerError(405, "E105", f"{request.method} not allowed on /{segments[0]}")
        return method(request, "/".join(segments[1:]))

    def xmlrpc_methods(self) -> dict:
        return {}


def _require_key(key: str, what: str) -> str:
    if not key:
        raise HandlerError(400, "E101", f"Missing {what}")
    return key


class StatusHandler(Handler):
    name = STATUS
    prefixes = ("status", "health")

    def _state(self) -> str:
        provider = self.context.status_provider
        return provider() if provider else "running"

    def get_status(self, request, key):
        return Response({"is_alive": True, "version": get_version(), "state": self._state()})

    def get_health(self, request, key):
        return Response({"status": "ok"})

    def xmlrpc_methods(self) -> dict:
        return {"status.status": lambda: self._state()}


class FileServerHandler(Handler):
    name = FILE_SERVER
    prefixes = ("file_content", "file_metadata")

    def _lookup(self, kind: DataKind, key: str, op: str):
        store = self.context.bindings.store(kind)
        try:
            return getattr(store, op)(_require_key(key, "file path"))
        except NotFoundError as e:
            raise HandlerError(404, "E104", str(e)) from e
        except StoreError as e:
            raise HandlerError(403, "E103", str(e)) from e

    def get_file_content(self, request, key):
        content = self._lookup(DataKind.FILE_CONTENT, key, "content")
        return Response(content, 200, "application/octet-stream")

    def get_file_metadata(self, request, key):
        return Response(self._lookup(DataKind.FILE_METADATA, key, "metadata"))

    def xmlrpc_methods(self) -> dict:
        return {
            "fileserver.describe": lambda path: self._lookup(DataKind.FILE_METADATA, path, "metadata"),
            "fileserver.retrieve": lambda path: xmlrpc.client.Binary(
                self._lookup(DataKind.FILE_CONTENT, path, "content")
            ),
        }


class MasterHandler(Handler):
    name = MASTER
    prefixes = ("catalog", "facts")

    def _catalog(self, node: str) -> dict:
        node = _require_key(node, "node name")
        try:
            catalog = self.context.compiler.find(node)
        except CompileFailure as e:
            raise HandlerError(500, "E400", e.message) from e
        except StoreError as e:
            raise HandlerError(400, "E103", str(e)) from e
        if catalog is None:
            raise HandlerError(404, "E104", f"Could not find facts for {node}")
        return catalog.to_resource()

    def _save_facts(self, node: str, data: Any) -> dict:
        node = _require_key(node, "node name")
        if not isinstance(data, dict) or not isinstance(data.get("facts", {}), dict):
            raise HandlerError(400, "E102", "Facts must be a mapping with a 'facts' key")
        record = {
            "name": node,
            "facts": data.get("facts", {}),
            "classes": list(data.get("classes", []) or []),
            "environment": data.get("environment", "production"),
            "timestamp": int(time.time()),
        }
        try:
            self.context.bindings.store(DataKind.NODE).save(node, record)
        except StoreError as e:
            raise HandlerError(400, "E103", str(e)) from e
        logger.info("Stored facts for %s", node)
        return {"name": node, "saved": True}

    def get_catalog(self, request, key):
        return Response(self._catalog(key))

    def put_facts(self, request, key):
        return Response(self._save_facts(key, request.json()))

    def xmlrpc_methods(self) -> dict:
        return {
            "master.getconfig": self._catalog,
            "master.freshness": lambda: int(time.time()),
            "master.putfacts": self._save_facts,
        }


class ReportHandler(Handler):
    name = REPORT
    prefixes = ("report",)

    def _store(self, node: str, report: Any) -> dict:
        node = _require_key(node, "node name")
        if "/" in node or node.startswith("."):
            raise HandlerError(400, "E101", f"Invalid node name: {node}")
        if not isinstance(report, dict):
            raise HandlerError(400, "E102", "Report must be a mapping")
        directory = Path(self.context.settings.reportdir) / node
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        for attempt in itertools.count():
            suffix = f"-{attempt}" if attempt else ""
            path = directory / f"{stamp}{suffix}.yaml"
            try:
                f = open(path, "x", encoding="utf-8")
            except FileExistsError:
                continue
            with f:
                yaml.safe_dump(report, f, default_flow_style=False)
            break
        logger.info("Stored report for %s in %s", node, path)
        return {"name": node, "stored": path.name}

    def put_report(self, request, key):
        return Response(self._store(key, request.json()))

    def xmlrpc_methods(self) -> dict:
        return {"report.report": self._store}


class FileBucketHandler(Handler):
    name = FILE_BUCKET
    prefixes = ("file_bucket_file",)

    def _bucket(self):
        return self.context.bindings.store(DataKind.FILE_BUCKET)

    def _get(self, checksum: str) -> bytes:
        try:
            content = self._bucket().find(_require_key(checksum, "checksum"))
        except StoreError as e:
            raise HandlerError(400, "E103", str(e)) from e
        if content is None:
            raise HandlerError(404, "E104", f"No file with checksum {checksum}")
        return content

    def _put(self, checksum: str, content: bytes, path: Optional[str]) -> str:
        try:
            return self._bucket().save(_require_key(checksum, "checksum"), content, path)
        except StoreError as e:
            raise HandlerError(400, "E103", str(e)) from e

    def get_file_bucket_file(self, request, key):
        return Response(self._get(key), 200, "application/octet-stream")

    def put_file_bucket_file(self, request, key):
        checksum = self._put(key, request.body, request.params.get("path"))
        return Response({"checksum": checksum})

    def xmlrpc_methods(self) -> dict:
        def addfile(content, path=None):
            data = content.data if isinstance(content, xmlrpc.client.Binary) else content.encode()
            return self._put(hashlib.sha256(data).hexdigest(), data, path)

        return {
            "bucket.getfile": lambda checksum: xmlrpc.client.Binary(self._get(checksum)),
            "bucket.addfile": addfile,
        }


class CAHandler(Handler):
    name = CA
    prefixes = ("certificate", "certificate_request", "certificate_status")

    @property
    def authority(self):
        """The local authority, readable only once lookups are restricted to it."""
        if self.context.authority is None:
            raise HandlerError(500, "E500", "Certificate authority not available")
        location = self.context.ca_location
        if location is not CALocation.ONLY:
            raise HandlerError(
                503, "E201", f"Certificate data not served with CA location {location.value}"
            )
        return self.context.authority

    def _call(self, func, *args):
        try:
            return func(*args)
        except CertificateError as e:
            raise HandlerError(400, "E200", str(e)) from e

    def get_certificate(self, request, key):
        name = _require_key(key, "certificate name")
        if name == "ca":
            return Response(self._call(self.authority.ca_certificate), 200, "text/plain")
        cert = self._call(self.authority.certificate, name)
        if cert is None:
            raise HandlerError(404, "E104", f"No certificate for {name}")
        return Response(cert, 200, "text/plain")

    def get_certificate_request(self, request, key):
        name = _require_key(key, "certificate name")
        csr = self._call(self.authority.request, name)
        if csr is None:
            raise HandlerError(404, "E104", f"No certificate request for {name}")
        return Response(csr, 200, "text/plain")

    def put_certificate_request(self, request, key):
        name = _require_key(key, "certificate name")
        signed = self._call(self.authority.save_request, name, request.body.decode("utf-8", "replace"))
        return Response({"name": name, "state": "signed" if signed else "requested"})

    def get_certificate_status(self, request, key):
        name = _require_key(key, "certificate name")
        state = self._call(self.authority.status, name)
        result = {"name": name, "state": state}
        if state in ("signed", "revoked"):
            path = self.authority.signed_dir / f"{name.lower()}.pem"
            result["fingerprint"] = get_cert_fingerprint(path)
        return Response(result)

    def xmlrpc_methods(self) -> dict:
        def getcert(name, csr):
            signed = self._call(self.authority.save_request, name, csr)
            return [signed or "", self._call(self.authority.ca_certificate)]

        return {"ca.getcert": getcert}


HANDLER_CLASSES = {
    cls.name: cls
    for cls in (StatusHandler, FileServerHandler, MasterHandler, ReportHandler, FileBucketHandler, CAHandler)
}


def build_handlers(names, context: ServiceContext) -> dict:
    """Instantiate the named handlers."""
    return {name: HANDLER_CLASSES[name](context) for name in names}


class Router:
    """Dispatches requests to the composed handler set."""

    def __init__(self, handlers: dict):
        self.handlers = handlers
        self.routes = {}
        for handler in handlers.values():
            for prefix in handler.prefixes:
                self.routes[prefix] = handler

    def dispatch(self, request: Request) -> Response:
        segments = request.segments
        if not segments or segments[0] not in self.routes:
            return error_response(404, "E100", f"Unknown endpoint: {request.path}")
        if len(request.body) > MAX_BODY_SIZE:
            return error_response(413, "E106", "Request body too large")
        try:
            return self.routes[segments[0]].handle(request)
        except HandlerError as e:
            if e.status >= 500:
                logger.error("%s %s failed: %s", request.method, request.path, e.message)
            return error_response(e.status, e.code, e.message)
        except Exception as e:
            logger.exception("%s %s failed", request.method, request.path)
            return error_response(500, "E500", f"Internal server error ({type(e).__name__})")

    def xmlrpc_methods(self) -> dict:
        methods = {}
        for handler in self.handlers.values():
            methods.update(handler.xmlrpc_methods())
        return methods
