"""Server composition: handler set and transport.

compose() runs these steps in order, each fatal on failure:
1. materialize the host identity certificate
2. narrow the CA location to the authority's own storage
3. drop root privileges (exit 39 on failure; no listener is ever bound)
4. check that every data kind the handlers consume has a terminus
5. build the transport: NativeDaemon or EmbeddedApplication
"""

import logging
import ssl
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import SetupFailure
from options import ServiceMode
from server.ca import CALocation, CARole, location_for, restricted_location
from server.handlers import (
    CA,
    FILE_BUCKET,
    FILE_SERVER,
    HANDLER_KINDS,
    MASTER,
    REPORT,
    STATUS,
    Router,
    ServiceContext,
    build_handlers,
)
from server.httpd import Server, build_ssl_context
from server.privileges import change_user, is_root
from server.wsgi import WSGIApplication

logger = logging.getLogger(__name__)

BASE_HANDLERS = (STATUS, FILE_SERVER, MASTER, REPORT, FILE_BUCKET)
PROTOCOLS = ("rest", "xmlrpc")


def handler_set(role: CARole) -> tuple:
    """Handlers to expose: the base set, plus CA iff an authority is hosted."""
    if role is CARole.NONE:
        return BASE_HANDLERS
    return BASE_HANDLERS + (CA,)


class ServerTransport:
    """Common interface of the two transports."""

    def start(self):
        raise NotImplementedError

    def shutdown(self):
        raise NotImplementedError


@dataclass
class NativeDaemon(ServerTransport):
    """Self-hosted HTTPS listener, run under the lifecycle controller.

    server_factory builds a fresh Server for every start(), so a restart
    goes back through the listener setup.
    """

    handlers: tuple
    server_factory: Callable[[], Server]
    ca_location: CALocation = CALocation.NONE
    server: Optional[Server] = field(default=None, repr=False)

    def start(self):
        server = self.server_factory()
        server.start()
        self.server = server

    def shutdown(self):
        if self.server is not None:
            self.server.shutdown()
            self.server = None

    @property
    def running(self) -> bool:
        return self.server is not None and self.server.running


@dataclass
class EmbeddedApplication(ServerTransport):
    """WSGI adapter handed to a hosting application server."""

    handlers: tuple
    protocols: tuple
    app: WSGIApplication = field(repr=False)
    ca_location: CALocation = CALocation.NONE

    def start(self) -> WSGIApplication:
        return self.app

    def shutdown(self):
        """Nothing to release; the host owns the process."""


def compose(
    mode: ServiceMode,
    role: CARole,
    embedded: bool,
    *,
    settings,
    bindings,
    identity,
    authority=None,
    compiler=None,
    status_provider: Optional[Callable[[], str]] = None,
) -> Any:
    """Build the transport for serve mode.

    Args:
        mode: Must be ServiceMode.SERVE
        role: Negotiated CA role
        embedded: True when hosted by a WSGI application server
        settings: Master settings
        bindings: TerminusBinding from terminus.wire()
        identity: HostIdentity to materialize
        authority: Local CertificateAuthority (used iff role is not NONE)
        compiler: Catalog compiler for the Master handler
        status_provider: Callable returning the lifecycle state name

    Returns:
        NativeDaemon or EmbeddedApplication

    Raises:
        SetupFailure: If any composition step fails
    """
    if mode is not ServiceMode.SERVE:
        raise ValueError(f"Cannot compose a server in {mode.value} mode")

    handlers = handler_set(role)
    location = location_for(role)
    issuer = authority if location is not CALocation.NONE else None
    tls_config = identity.materialize(issuer, authority_only=location is CALocation.ONLY)

    # Identity exists; from here on only the authority's storage is read
    ca_location = restricted_location(role)
    logger.debug("CA location: %s", ca_location.value)

    ssl_context = None
    if not embedded:
        try:
            ssl_context = build_ssl_context(tls_config)
        except (ssl.SSLError, OSError) as e:
            raise SetupFailure(f"TLS init failed: {e}", code="E301") from e

    if is_root():
        change_user(settings.user, settings.group)

    kinds = [kind for name in handlers for kind in HANDLER_KINDS[name]]
    bindings.require(kinds)

    service = ServiceContext(
        settings=settings,
        bindings=bindings,
        compiler=compiler,
        authority=authority if role is not CARole.NONE else None,
        ca_location=ca_location,
        status_provider=status_provider,
    )
    router = Router(build_handlers(handlers, service))
    logger.info("Handlers: %s", ", ".join(handlers))

    if embedded:
        return EmbeddedApplication(
            handlers=handlers,
            protocols=PROTOCOLS,
            app=WSGIApplication(router, PROTOCOLS),
            ca_location=ca_location,
        )

    def server_factory() -> Server:
        return Server(router, tls_config, settings.bind, settings.port, ssl_context=ssl_context)

    return NativeDaemon(handlers=handlers, server_factory=server_factory, ca_location=ca_location)
