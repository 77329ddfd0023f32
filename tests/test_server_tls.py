"""Tests for server/tls.py - host identity certificates."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common import SetupFailure
from server.ca import CertificateAuthority
from server.tls import (
    CertificateError,
    HostIdentity,
    TLSConfig,
    generate_request,
    generate_self_signed_cert,
    get_cert_fingerprint,
    verify_cert_key_match,
    verify_issued_by,
)


def openssl_cert(cert_path, key_path, cn="test"):
    subprocess.run(
        [
            "openssl", "req",
            "-x509", "-nodes",
            "-newkey", "rsa:2048",
            "-keyout", str(key_path),
            "-out", str(cert_path),
            "-days", "1",
            "-subj", f"/CN={cn}",
        ],
        check=True,
        capture_output=True,
    )


def cert_text(cert_path):
    return subprocess.run(
        ["openssl", "x509", "-in", str(cert_path), "-noout", "-text"],
        capture_output=True,
        text=True,
        check=True,
    ).stdout


class TestTLSConfig:
    """Tests for TLSConfig dataclass."""

    def test_from_paths_cert_not_found(self, tmp_path):
        """TLSConfig.from_paths raises FileNotFoundError for missing cert."""
        key_path = tmp_path / "test.key"
        key_path.touch()

        with pytest.raises(FileNotFoundError) as exc_info:
            TLSConfig.from_paths(tmp_path / "nonexistent.crt", key_path)
        assert "Certificate not found" in str(exc_info.value)

    def test_from_paths_key_not_found(self, tmp_path):
        """TLSConfig.from_paths raises FileNotFoundError for missing key."""
        cert_path = tmp_path / "test.crt"
        cert_path.touch()

        with pytest.raises(FileNotFoundError) as exc_info:
            TLSConfig.from_paths(cert_path, tmp_path / "nonexistent.key")
        assert "Key not found" in str(exc_info.value)

    @pytest.mark.requires_openssl
    def test_from_paths_drops_missing_ca(self, tmp_path):
        """A missing CA file is ignored rather than fatal."""
        cert_path = tmp_path / "test.crt"
        key_path = tmp_path / "test.key"
        openssl_cert(cert_path, key_path)

        config = TLSConfig.from_paths(cert_path, key_path, tmp_path / "ca.pem")
        assert config.ca_path is None
        assert ":" in config.fingerprint


@pytest.mark.requires_openssl
class TestCertificateHelpers:
    """Tests for the openssl helpers."""

    def test_fingerprint_format(self, tmp_path):
        """Fingerprint has correct format (hex with colons)."""
        cert_path = tmp_path / "test.crt"
        openssl_cert(cert_path, tmp_path / "test.key")

        fingerprint = get_cert_fingerprint(cert_path)

        # SHA256 fingerprint should have 64 hex chars + 31 colons
        assert len(fingerprint) == 95
        assert fingerprint.count(":") == 31
        for part in fingerprint.split(":"):
            int(part, 16)

    def test_fingerprint_invalid_cert(self, tmp_path):
        cert_path = tmp_path / "invalid.crt"
        cert_path.write_text("not a certificate")

        with pytest.raises(subprocess.CalledProcessError):
            get_cert_fingerprint(cert_path)

    def test_mismatched_cert_and_key(self, tmp_path):
        """verify_cert_key_match returns False for mismatched pair."""
        openssl_cert(tmp_path / "cert1.crt", tmp_path / "key1.key")
        openssl_cert(tmp_path / "cert2.crt", tmp_path / "key2.key")

        assert verify_cert_key_match(tmp_path / "cert1.crt", tmp_path / "key1.key") is True
        assert verify_cert_key_match(tmp_path / "cert1.crt", tmp_path / "key2.key") is False

    def test_self_signed_cert(self, tmp_path):
        """Self-signed certs carry the hostname as SAN and tight key permissions."""
        config = generate_self_signed_cert(
            tmp_path / "certs" / "m.pem",
            tmp_path / "keys" / "m.pem",
            "master.test",
            days=1,
            key_size=2048,
        )

        assert config.cert_path.exists()
        assert config.key_path.stat().st_mode & 0o777 == 0o600
        assert config.cert_path.stat().st_mode & 0o777 == 0o644
        assert "DNS:master.test" in cert_text(config.cert_path)

    def test_generate_request(self, tmp_path):
        csr = generate_request(tmp_path / "k.pem", tmp_path / "r.pem", "web01", 2048)
        assert "CERTIFICATE REQUEST" in csr
        assert (tmp_path / "k.pem").stat().st_mode & 0o777 == 0o600


class TestHostIdentityPaths:
    """Tests for the ssldir layout."""

    def test_layout(self, tmp_path):
        identity = HostIdentity(tmp_path, "master.test")
        assert identity.key_path == tmp_path / "private_keys" / "master.test.pem"
        assert identity.cert_path == tmp_path / "certs" / "master.test.pem"
        assert identity.ca_path == tmp_path / "certs" / "ca.pem"
        assert identity.request_path == tmp_path / "certificate_requests" / "master.test.pem"


@pytest.mark.requires_openssl
class TestHostIdentityMaterialize:
    """Tests for HostIdentity.materialize()."""

    def test_self_signed_without_authority(self, tmp_path):
        identity = HostIdentity(tmp_path, "master.test", key_size=2048, days=1)
        config = identity.materialize()

        assert config.cert_path == identity.cert_path
        assert config.ca_path is None
        assert "Issuer: CN = master.test" in cert_text(config.cert_path)

    def test_reuses_existing(self, tmp_path):
        identity = HostIdentity(tmp_path, "master.test", key_size=2048, days=1)
        first = identity.materialize()
        second = identity.materialize()
        assert first.fingerprint == second.fingerprint

    def test_mismatched_pair_fails(self, tmp_path):
        identity = HostIdentity(tmp_path, "master.test", key_size=2048, days=1)
        identity.materialize()
        other = tmp_path / "other"
        other.mkdir()
        openssl_cert(other / "c.pem", other / "k.pem")
        identity.key_path.write_text((other / "k.pem").read_text())

        with pytest.raises(SetupFailure) as exc_info:
            identity.materialize()
        assert "does not match" in exc_info.value.message

    def test_authority_refusal_is_setup_failure(self, tmp_path):
        """Errors while issuing the identity become SetupFailure."""
        authority = MagicMock()
        authority.sign.side_effect = CertificateError("refused")
        identity = HostIdentity(tmp_path, "master.test", key_size=2048, days=1)

        with pytest.raises(SetupFailure) as exc_info:
            identity.materialize(authority)
        assert exc_info.value.code == "E301"
        assert "refused" in exc_info.value.message

    def test_issued_by_local_authority(self, settings):
        authority = CertificateAuthority(settings)
        authority.initialize()
        identity = HostIdentity(settings.ssldir, settings.certname, key_size=2048, days=1)

        config = identity.materialize(authority)

        assert config.ca_path == identity.ca_path
        assert identity.ca_path.read_text() == authority.ca_certificate()
        assert not identity.request_path.exists()
        assert authority.status(settings.certname) == "signed"
        assert settings.ca_name in cert_text(config.cert_path)

    def test_local_location_keeps_existing_certificate(self, settings):
        """With a local authority, an existing self-signed identity is reused."""
        identity = HostIdentity(settings.ssldir, settings.certname, key_size=2048, days=1)
        self_signed = identity.materialize()
        authority = CertificateAuthority(settings)
        authority.initialize()

        config = identity.materialize(authority)
        assert config.fingerprint == self_signed.fingerprint
        assert not verify_issued_by(config.cert_path, authority.cert_path)

    def test_authority_only_replaces_foreign_certificate(self, settings):
        identity = HostIdentity(settings.ssldir, settings.certname, key_size=2048, days=1)
        self_signed = identity.materialize()
        authority = CertificateAuthority(settings)
        authority.initialize()

        config = identity.materialize(authority, authority_only=True)

        assert config.fingerprint != self_signed.fingerprint
        assert verify_issued_by(config.cert_path, authority.cert_path)
        assert authority.status(settings.certname) == "signed"

    def test_authority_only_keeps_issued_certificate(self, settings):
        authority = CertificateAuthority(settings)
        authority.initialize()
        identity = HostIdentity(settings.ssldir, settings.certname, key_size=2048, days=1)

        first = identity.materialize(authority, authority_only=True)
        second = identity.materialize(authority, authority_only=True)
        assert first.fingerprint == second.fingerprint
