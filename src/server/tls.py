"""TLS certificate management for the master.

Materializes the host identity certificate the listener serves with:
either loaded from ssldir, issued by the local certificate authority,
or self-signed when no local authority exists.

ssldir layout:
    private_keys/<certname>.pem
    certs/<certname>.pem
    certs/ca.pem
    certificate_requests/<certname>.pem
"""

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import SetupFailure

logger = logging.getLogger(__name__)

DEFAULT_CERT_DAYS = 1825
DEFAULT_KEY_SIZE = 4096


class CertificateError(Exception):
    """Certificate operation failed."""


def run_openssl(args: list[str], input: Optional[str] = None) -> str:
    """Run an openssl subcommand and return its stdout.

    Raises:
        subprocess.CalledProcessError: If openssl exits non-zero
    """
    result = subprocess.run(
        ["openssl", *args],
        input=input,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


@dataclass
class TLSConfig:
    """TLS configuration for the listener."""

    cert_path: Path
    key_path: Path
    fingerprint: str
    ca_path: Optional[Path] = None

    @classmethod
    def from_paths(
        cls,
        cert_path: Path,
        key_path: Path,
        ca_path: Optional[Path] = None,
    ) -> "TLSConfig":
        """Create config from existing certificate files.

        Raises:
            FileNotFoundError: If files don't exist
        """
        if not cert_path.exists():
            raise FileNotFoundError(f"Certificate not found: {cert_path}")
        if not key_path.exists():
            raise FileNotFoundError(f"Key not found: {key_path}")
        if ca_path is not None and not ca_path.exists():
            ca_path = None

        fingerprint = get_cert_fingerprint(cert_path)
        return cls(cert_path=cert_path, key_path=key_path, fingerprint=fingerprint, ca_path=ca_path)


def get_cert_fingerprint(cert_path: Path) -> str:
    """Get SHA256 fingerprint of a certificate.

    Returns:
        SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:...")

    Raises:
        subprocess.CalledProcessError: If openssl command fails
    """
    output = run_openssl(
        ["x509", "-in", str(cert_path), "-noout", "-fingerprint", "-sha256"]
    ).strip()
    # Output format: "sha256 Fingerprint=AB:CD:EF:..."
    if "=" in output:
        return output.split("=", 1)[1]
    return output


def verify_cert_key_match(cert_path: Path, key_path: Path) -> bool:
    """Verify that a certificate and key share the same public key."""
    try:
        cert_pub = run_openssl(["x509", "-noout", "-pubkey", "-in", str(cert_path)])
        key_pub = run_openssl(["pkey", "-pubout", "-in", str(key_path)])
    except subprocess.CalledProcessError:
        return False
    return cert_pub.strip() == key_pub.strip()


def verify_issued_by(cert_path: Path, ca_cert_path: Path) -> bool:
    """Check that a certificate chains to the given CA certificate."""
    try:
        run_openssl(["verify", "-CAfile", str(ca_cert_path), str(cert_path)])
    except subprocess.CalledProcessError:
        return False
    return True


def _write_key_permissions(key_path: Path, cert_path: Optional[Path] = None):
    os.chmod(key_path, 0o600)
    if cert_path is not None:
        os.chmod(cert_path, 0o644)


def generate_self_signed_cert(
    cert_path: Path,
    key_path: Path,
    hostname: str,
    days: int = DEFAULT_CERT_DAYS,
    key_size: int = DEFAULT_KEY_SIZE,
) -> TLSConfig:
    """Generate a self-signed leaf certificate.

    Creates a certificate with CN = hostname and SAN = DNS:hostname.

    Raises:
        subprocess.CalledProcessError: If openssl command fails
        PermissionError: If the files cannot be written
    """
    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Generating self-signed certificate for %s", hostname)

    with tempfile.NamedTemporaryFile(mode="w", suffix=".cnf", delete=False) as f:
        f.write(f"""
[req]
default_bits = {key_size}
prompt = no
default_md = sha256
distinguished_name = dn
x509_extensions = v3_ext

[dn]
CN = {hostname}

[v3_ext]
basicConstraints = CA:FALSE
keyUsage = digitalSignature, keyEncipherment
extendedKeyUsage = serverAuth, clientAuth
subjectAltName = DNS:{hostname}
""")
        config_path = f.name

    try:
        run_openssl([
            "req", "-x509", "-nodes",
            "-newkey", f"rsa:{key_size}",
            "-keyout", str(key_path),
            "-out", str(cert_path),
            "-days", str(days),
            "-config", config_path,
        ])
        _write_key_permissions(key_path, cert_path)
    finally:
        Path(config_path).unlink(missing_ok=True)

    fingerprint = get_cert_fingerprint(cert_path)
    logger.info("Certificate fingerprint (SHA256): %s", fingerprint)
    return TLSConfig(cert_path=cert_path, key_path=key_path, fingerprint=fingerprint)


def generate_request(key_path: Path, csr_path: Path, certname: str, key_size: int) -> str:
    """Generate a private key and certificate signing request.

    Returns:
        The CSR in PEM format
    """
    key_path.parent.mkdir(parents=True, exist_ok=True)
    csr_path.parent.mkdir(parents=True, exist_ok=True)
    run_openssl([
        "req", "-new", "-nodes",
        "-newkey", f"rsa:{key_size}",
        "-keyout", str(key_path),
        "-out", str(csr_path),
        "-subj", f"/CN={certname}",
    ])
    _write_key_permissions(key_path)
    return csr_path.read_text()


class HostIdentity:
    """The certificate this master presents to clients."""

    def __init__(self, ssldir: Path, certname: str, key_size: int = DEFAULT_KEY_SIZE,
                 days: int = DEFAULT_CERT_DAYS):
        self.ssldir = Path(ssldir)
        self.certname = certname
        self.key_size = key_size
        self.days = days

    @property
    def key_path(self) -> Path:
        return self.ssldir / "private_keys" / f"{self.certname}.pem"

    @property
    def cert_path(self) -> Path:
        return self.ssldir / "certs" / f"{self.certname}.pem"

    @property
    def ca_path(self) -> Path:
        return self.ssldir / "certs" / "ca.pem"

    @property
    def request_path(self) -> Path:
        return self.ssldir / "certificate_requests" / f"{self.certname}.pem"

    def materialize(self, authority=None, authority_only: bool = False) -> TLSConfig:
        """Load the host certificate, creating it if needed.

        Args:
            authority: Local CertificateAuthority to issue the certificate,
                or None to self-sign.
            authority_only: Only accept a certificate issued by authority;
                an existing certificate from any other issuer is replaced.

        Raises:
            SetupFailure: If the identity cannot be loaded or created
        """
        try:
            return self._materialize(authority, authority_only)
        except (OSError, subprocess.CalledProcessError, CertificateError) as e:
            detail = getattr(e, "stderr", None) or e
            raise SetupFailure(
                f"Could not materialize host certificate for {self.certname}: {detail}",
                code="E301",
            ) from e

    def _materialize(self, authority, authority_only: bool) -> TLSConfig:
        if self.cert_path.exists() and self.key_path.exists():
            if not verify_cert_key_match(self.cert_path, self.key_path):
                raise SetupFailure(
                    f"Certificate {self.cert_path} does not match key {self.key_path}",
                    code="E301",
                )
            if authority_only and authority is not None and not verify_issued_by(
                self.cert_path, authority.cert_path
            ):
                logger.warning(
                    "Certificate %s was not issued by the local authority; replacing it",
                    self.cert_path,
                )
            else:
                logger.info("Using existing certificate: %s", self.cert_path)
                return TLSConfig.from_paths(self.cert_path, self.key_path, self.ca_path)

        if authority is None:
            config = generate_self_signed_cert(
                self.cert_path, self.key_path, self.certname,
                days=self.days, key_size=self.key_size,
            )
            return config

        logger.info("Requesting certificate for %s from local authority", self.certname)
        csr = generate_request(self.key_path, self.request_path, self.certname, self.key_size)
        cert_pem = authority.sign(self.certname, csr)
        self.cert_path.parent.mkdir(parents=True, exist_ok=True)
        self.cert_path.write_text(cert_pem)
        os.chmod(self.cert_path, 0o644)
        self.ca_path.write_text(authority.ca_certificate())
        self.request_path.unlink(missing_ok=True)
        return TLSConfig.from_paths(self.cert_path, self.key_path, self.ca_path)
