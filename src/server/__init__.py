"""Server package for the master.

Composes the protocol handlers into either a native HTTPS daemon run by
the lifecycle controller, or a WSGI adapter for an application server.
"""

from server.ca import (
    CALocation,
    CARole,
    CertificateAuthority,
    negotiate,
)
from server.composer import (
    EmbeddedApplication,
    NativeDaemon,
    compose,
    handler_set,
)
from server.daemon import (
    Daemon,
    LifecycleState,
)
from server.httpd import Server
from server.tls import (
    CertificateError,
    HostIdentity,
    TLSConfig,
)

__all__ = [
    # CA
    "CALocation",
    "CARole",
    "CertificateAuthority",
    "negotiate",
    # Composition
    "EmbeddedApplication",
    "NativeDaemon",
    "compose",
    "handler_set",
    # Lifecycle
    "Daemon",
    "LifecycleState",
    # Server
    "Server",
    # TLS
    "CertificateError",
    "HostIdentity",
    "TLSConfig",
]
