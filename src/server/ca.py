"""Certificate authority and CA role negotiation.

The role (CARole) is decided once during setup and threaded through
terminus wiring and server composition. The CA location (CALocation)
says where this process looks up certificate data, and is narrowed to
ONLY once the host identity exists.

cadir layout:
    ca_key.pem, ca_crt.pem   authority key pair
    serial                   next serial (hex, managed by openssl)
    inventory.txt            "<serial> <not_after> /CN=<name>" per signed cert
    revoked.yaml             name -> serial of revoked certificates
    requests/<name>.pem      pending certificate requests
    signed/<name>.pem        issued certificates
"""

import enum
import logging
import os
import re
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Optional

import yaml

from common import SetupFailure
from server.tls import CertificateError, run_openssl

logger = logging.getLogger(__name__)

CERTNAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


class CARole(enum.Enum):
    """Position of this process in the trust hierarchy."""

    NONE = "none"
    LOCAL_AUTHORITY = "local"
    AUTHORITY_ONLY = "only"


class CALocation(enum.Enum):
    """Where certificate lookups of this process are directed."""

    NONE = "none"
    LOCAL = "local"
    ONLY = "only"


def validate_certname(name: str) -> str:
    """Return a normalized certificate name.

    Raises:
        CertificateError: If the name is not a valid certname
    """
    name = name.lower()
    if not CERTNAME_RE.match(name) or ".." in name:
        raise CertificateError(f"Invalid certificate name: {name!r}")
    return name


class CertificateAuthority:
    """Local certificate authority backed by the openssl binary."""

    def __init__(self, settings):
        self.settings = settings
        self.cadir = Path(settings.cadir)
        self.initialized = False
        # Serializes serial, inventory and revocation list updates
        self._lock = threading.RLock()

    @property
    def key_path(self) -> Path:
        return self.cadir / "ca_key.pem"

    @property
    def cert_path(self) -> Path:
        return self.cadir / "ca_crt.pem"

    @property
    def serial_path(self) -> Path:
        return self.cadir / "serial"

    @property
    def inventory_path(self) -> Path:
        return self.cadir / "inventory.txt"

    @property
    def revoked_path(self) -> Path:
        return self.cadir / "revoked.yaml"

    @property
    def requests_dir(self) -> Path:
        return self.cadir / "requests"

    @property
    def signed_dir(self) -> Path:
        return self.cadir / "signed"

    def is_configured(self) -> bool:
        """Whether this process should host a certificate authority.

        Requires the ca setting and a cadir that exists and is writable,
        or can be created.
        """
        if not self.settings.ca:
            return False
        path = self.cadir
        while not path.exists():
            if path.parent == path:
                return False
            path = path.parent
        return path.is_dir() and os.access(path, os.W_OK)

    def initialize(self):
        """Create the authority key pair and storage if absent.

        Raises:
            CertificateError: If storage or the CA certificate cannot be created
        """
        if self.initialized:
            return
        try:
            for d in (self.cadir, self.requests_dir, self.signed_dir):
                d.mkdir(parents=True, exist_ok=True, mode=0o750)
            if not self.cert_path.exists():
                self._generate_ca_cert()
            if not self.serial_path.exists():
                self.serial_path.write_text("01\n")
            self.inventory_path.touch(exist_ok=True)
        except OSError as e:
            raise CertificateError(f"Cannot initialize CA storage in {self.cadir}: {e}") from e
        except subprocess.CalledProcessError as e:
            raise CertificateError(f"Cannot create CA certificate: {e.stderr or e}") from e
        self.initialized = True
        logger.info("Certificate authority ready: %s", self.settings.ca_name)

    def _generate_ca_cert(self):
        logger.info("Generating CA certificate '%s'", self.settings.ca_name)
        run_openssl([
            "req", "-x509", "-nodes",
            "-newkey", f"rsa:{self.settings.key_size}",
            "-keyout", str(self.key_path),
            "-out", str(self.cert_path),
            "-days", str(self.settings.ca_ttl_days),
            "-subj", f"/CN={self.settings.ca_name}",
            "-addext", "basicConstraints=critical,CA:TRUE",
            "-addext", "keyUsage=critical,keyCertSign,cRLSign",
        ])
        os.chmod(self.key_path, 0o600)
        os.chmod(self.cert_path, 0o644)

    def _require_initialized(self):
        if not self.initialized:
            raise CertificateError("Certificate authority not initialized")

    def ca_certificate(self) -> str:
        self._require_initialized()
        return self.cert_path.read_text()

    def certificate(self, name: str) -> Optional[str]:
        """Return the signed certificate for name, or None."""
        path = self.signed_dir / f"{validate_certname(name)}.pem"
        if not path.exists():
            return None
        return path.read_text()

    def request(self, name: str) -> Optional[str]:
        path = self.requests_dir / f"{validate_certname(name)}.pem"
        if not path.exists():
            return None
        return path.read_text()

    def list_requests(self) -> list[str]:
        if not self.requests_dir.is_dir():
            return []
        return sorted(p.stem for p in self.requests_dir.glob("*.pem"))

    def _request_subject(self, csr_pem: str) -> str:
        try:
            output = run_openssl(
                ["req", "-noout", "-verify", "-subject", "-nameopt", "multiline"],
                input=csr_pem,
            )
        except subprocess.CalledProcessError as e:
            raise CertificateError(f"Invalid certificate request: {e.stderr or e}") from e
        match = re.search(r"commonName\s*=\s*(\S+)", output)
        if not match:
            raise CertificateError("Certificate request has no common name")
        return match.group(1).lower()

    def save_request(self, name: str, csr_pem: str) -> Optional[str]:
        """Store a certificate request; sign it at once when autosigning.

        Returns:
            The signed certificate if autosign is on, else None

        Raises:
            CertificateError: Invalid request, or a certificate already exists
        """
        self._require_initialized()
        name = validate_certname(name)
        if self._request_subject(csr_pem) != name:
            raise CertificateError(f"Certificate request CN does not match {name}")
        with self._lock:
            if self.certificate(name) is not None and not self.is_revoked(name):
                raise CertificateError(f"{name} already has a signed certificate")
            (self.requests_dir / f"{name}.pem").write_text(csr_pem)
            logger.info("Stored certificate request for %s", name)
            if self.settings.autosign:
                return self.sign(name)
        return None

    def sign(self, name: str, csr_pem: Optional[str] = None) -> str:
        """Sign a certificate request.

        Args:
            name: Certificate name (must match the request CN)
            csr_pem: Request to sign; defaults to the stored request

        Returns:
            Signed certificate in PEM format
        """
        self._require_initialized()
        name = validate_certname(name)
        with self._lock:
            if csr_pem is None:
                csr_pem = self.request(name)
                if csr_pem is None:
                    raise CertificateError(f"No certificate request for {name}")
            if self._request_subject(csr_pem) != name:
                raise CertificateError(f"Certificate request CN does not match {name}")
            return self._sign(name, csr_pem)

    def _sign(self, name: str, csr_pem: str) -> str:
        cert_path = self.signed_dir / f"{name}.pem"
        with tempfile.NamedTemporaryFile(mode="w", suffix=".cnf", delete=False) as ext:
            ext.write(
                "basicConstraints = CA:FALSE\n"
                "keyUsage = digitalSignature, keyEncipherment\n"
                "extendedKeyUsage = serverAuth, clientAuth\n"
                f"subjectAltName = DNS:{name}\n"
            )
            ext_path = ext.name
        try:
            run_openssl(
                [
                    "x509", "-req",
                    "-CA", str(self.cert_path),
                    "-CAkey", str(self.key_path),
                    "-CAserial", str(self.serial_path),
                    "-out", str(cert_path),
                    "-days", str(self.settings.cert_ttl_days),
                    "-sha256",
                    "-extfile", ext_path,
                ],
                input=csr_pem,
            )
        except subprocess.CalledProcessError as e:
            raise CertificateError(f"Could not sign certificate for {name}: {e.stderr or e}") from e
        finally:
            Path(ext_path).unlink(missing_ok=True)

        serial, not_after = self._cert_serial_and_expiry(cert_path)
        with open(self.inventory_path, "a", encoding="utf-8") as f:
            f.write(f"0x{serial} {not_after} /CN={name}\n")
        (self.requests_dir / f"{name}.pem").unlink(missing_ok=True)
        self._unrevoke(name)
        logger.info("Signed certificate for %s (serial 0x%s)", name, serial)
        return cert_path.read_text()

    def _cert_serial_and_expiry(self, cert_path: Path) -> tuple[str, str]:
        output = run_openssl(["x509", "-noout", "-serial", "-enddate", "-in", str(cert_path)])
        values = dict(
            line.split("=", 1) for line in output.strip().splitlines() if "=" in line
        )
        return values.get("serial", "").strip(), values.get("notAfter", "").strip()

    def _load_revoked(self) -> dict:
        if not self.revoked_path.exists():
            return {}
        with open(self.revoked_path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def _save_revoked(self, revoked: dict):
        with open(self.revoked_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(revoked, f, default_flow_style=False)

    def _unrevoke(self, name: str):
        with self._lock:
            revoked = self._load_revoked()
            if revoked.pop(name, None) is not None:
                self._save_revoked(revoked)

    def revoke(self, name: str) -> str:
        """Record the serial of name's certificate as revoked.

        Returns:
            The revoked serial
        """
        self._require_initialized()
        name = validate_certname(name)
        cert_path = self.signed_dir / f"{name}.pem"
        if not cert_path.exists():
            raise CertificateError(f"No signed certificate for {name}")
        with self._lock:
            try:
                serial, _ = self._cert_serial_and_expiry(cert_path)
            except subprocess.CalledProcessError as e:
                raise CertificateError(f"Cannot read certificate for {name}: {e.stderr or e}") from e
            revoked = self._load_revoked()
            revoked[name] = serial
            self._save_revoked(revoked)
        logger.warning("Revoked certificate for %s (serial 0x%s)", name, serial)
        return serial

    def is_revoked(self, name: str) -> bool:
        return validate_certname(name) in self._load_revoked()

    def status(self, name: str) -> str:
        """Return 'revoked', 'signed', 'requested' or 'absent'."""
        if self.is_revoked(name):
            return "revoked"
        if self.certificate(name) is not None:
            return "signed"
        if self.request(name) is not None:
            return "requested"
        return "absent"


def negotiate(settings, authority: CertificateAuthority) -> CARole:
    """Decide this process's CA role, initializing the authority if hosted.

    Raises:
        SetupFailure: If a configured authority cannot be initialized
    """
    if not authority.is_configured():
        logger.info("No local certificate authority; deferring to external authority")
        return CARole.NONE

    try:
        authority.initialize()
    except CertificateError as e:
        raise SetupFailure(str(e), code="E302") from e

    if settings.ca_only:
        logger.info("Running as certificate authority only")
        return CARole.AUTHORITY_ONLY
    return CARole.LOCAL_AUTHORITY


def location_for(role: CARole) -> CALocation:
    """CA location used while setting up the host identity."""
    if role is CARole.NONE:
        return CALocation.NONE
    if role is CARole.AUTHORITY_ONLY:
        return CALocation.ONLY
    return CALocation.LOCAL


def restricted_location(role: CARole) -> CALocation:
    """CA location once serving: the authority's own storage only."""
    if role is CARole.NONE:
        return CALocation.NONE
    return CALocation.ONLY
