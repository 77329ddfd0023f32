"""Tests for server/composer.py - handler set and transport composition."""

from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common import EXIT_CHUSER_FAILURE, SetupFailure
from options import ServiceMode
from server.ca import CALocation, CARole
from server.composer import (
    BASE_HANDLERS,
    PROTOCOLS,
    EmbeddedApplication,
    NativeDaemon,
    compose,
    handler_set,
)
from server.handlers import CA, Request
from server.wsgi import WSGIApplication
from terminus import DataKind, TerminusBinding, wire


@pytest.fixture
def identity():
    identity = MagicMock()
    identity.materialize.return_value = MagicMock(name="tls_config")
    return identity


@pytest.fixture
def no_root():
    """Run composition as an unprivileged user with no TLS context."""
    with patch("server.composer.is_root", return_value=False), \
         patch("server.composer.build_ssl_context") as mock_ctx:
        yield mock_ctx


def run_compose(settings, identity, role=CARole.NONE, embedded=False, bindings=None,
                authority=None):
    return compose(
        ServiceMode.SERVE,
        role,
        embedded,
        settings=settings,
        bindings=bindings or wire(role, settings),
        identity=identity,
        authority=authority,
    )


class TestHandlerSet:
    """Tests for handler_set()."""

    def test_base_set(self):
        assert handler_set(CARole.NONE) == ("Status", "FileServer", "Master", "Report", "FileBucket")

    @pytest.mark.parametrize("role", [CARole.LOCAL_AUTHORITY, CARole.AUTHORITY_ONLY])
    def test_ca_added_for_authority_roles(self, role):
        assert handler_set(role) == BASE_HANDLERS + (CA,)


class TestCompose:
    """Tests for compose()."""

    def test_compile_mode_rejected(self, settings, identity):
        with pytest.raises(ValueError):
            compose(
                ServiceMode.COMPILE_ONCE, CARole.NONE, False,
                settings=settings, bindings=wire(CARole.NONE, settings), identity=identity,
            )
        identity.materialize.assert_not_called()

    @pytest.mark.parametrize("role", list(CARole))
    @pytest.mark.parametrize("embedded", [False, True])
    def test_ca_handler_iff_authority(self, settings, identity, no_root, role, embedded):
        """The CA handler is present exactly when a local authority is hosted."""
        transport = run_compose(settings, identity, role, embedded, authority=MagicMock())
        assert (CA in transport.handlers) == (role is not CARole.NONE)

    def test_self_signed_identity_without_authority(self, settings, identity, no_root):
        run_compose(settings, identity, CARole.NONE, authority=MagicMock())
        identity.materialize.assert_called_once_with(None, authority_only=False)

    @pytest.mark.parametrize("role,authority_only", [
        (CARole.LOCAL_AUTHORITY, False),
        (CARole.AUTHORITY_ONLY, True),
    ])
    def test_identity_issued_by_authority(self, settings, identity, no_root, role, authority_only):
        """Only the authority-only role insists on an authority-issued identity."""
        authority = MagicMock()
        run_compose(settings, identity, role, authority=authority)
        identity.materialize.assert_called_once_with(authority, authority_only=authority_only)

    @pytest.mark.parametrize("role,location", [
        (CARole.NONE, CALocation.NONE),
        (CARole.LOCAL_AUTHORITY, CALocation.ONLY),
        (CARole.AUTHORITY_ONLY, CALocation.ONLY),
    ])
    def test_ca_location_restricted(self, settings, identity, no_root, role, location):
        transport = run_compose(settings, identity, role, authority=MagicMock())
        assert transport.ca_location is location

    @pytest.mark.parametrize("role", [CARole.LOCAL_AUTHORITY, CARole.AUTHORITY_ONLY])
    def test_ca_handler_reads_restricted_location(self, settings, identity, no_root, role):
        authority = MagicMock()
        authority.certificate.return_value = "CERT PEM"
        transport = run_compose(settings, identity, role, embedded=True, authority=authority)

        handler = transport.app.router.handlers[CA]
        assert handler.context.ca_location is CALocation.ONLY
        response = transport.app.router.dispatch(Request("GET", "/certificate/web01"))
        assert response.status == 200
        assert response.body == b"CERT PEM"

    def test_native_transport(self, settings, identity, no_root):
        transport = run_compose(settings, identity)
        assert isinstance(transport, NativeDaemon)
        assert transport.server is None
        no_root.assert_called_once_with(identity.materialize.return_value)

    def test_embedded_transport(self, settings, identity, no_root):
        transport = run_compose(settings, identity, embedded=True)
        assert isinstance(transport, EmbeddedApplication)
        assert transport.protocols == PROTOCOLS
        assert isinstance(transport.start(), WSGIApplication)
        no_root.assert_not_called()

    def test_missing_binding_fails(self, settings, identity, no_root):
        bindings = TerminusBinding(settings)
        bindings.bind(DataKind.NODE, "memory")
        with pytest.raises(SetupFailure) as exc_info:
            run_compose(settings, identity, bindings=bindings)
        assert exc_info.value.code == "E303"

    def test_identity_failure_is_fatal(self, settings, identity, no_root):
        identity.materialize.side_effect = SetupFailure("no cert", code="E301")
        with patch("server.composer.Server") as mock_server:
            with pytest.raises(SetupFailure):
                run_compose(settings, identity)
        mock_server.assert_not_called()


class TestPrivilegeDrop:
    """Tests for the root privilege drop during composition."""

    def test_not_root_keeps_user(self, settings, identity, no_root):
        with patch("server.composer.change_user") as mock_change:
            run_compose(settings, identity)
        mock_change.assert_not_called()

    def test_root_changes_user_after_identity(self, settings, identity):
        """The identity is materialized while still root, then privileges drop."""
        manager = MagicMock()
        manager.attach_mock(identity.materialize, "materialize")
        with patch("server.composer.is_root", return_value=True), \
             patch("server.composer.build_ssl_context"), \
             patch("server.composer.change_user") as mock_change:
            manager.attach_mock(mock_change, "change_user")
            run_compose(settings, identity)

        assert manager.mock_calls == [
            call.materialize(None, authority_only=False),
            call.change_user(settings.user, settings.group),
        ]

    def test_drop_failure_binds_nothing(self, settings, identity):
        """If the privilege drop fails no listener is ever created."""
        failure = SetupFailure("no such user", exit_code=EXIT_CHUSER_FAILURE, code="E304")
        with patch("server.composer.is_root", return_value=True), \
             patch("server.composer.build_ssl_context"), \
             patch("server.composer.change_user", side_effect=failure), \
             patch("server.composer.Server") as mock_server:
            with pytest.raises(SetupFailure) as exc_info:
                run_compose(settings, identity)

        assert exc_info.value.exit_code == 39
        mock_server.assert_not_called()


class TestNativeDaemon:
    """Tests for the native transport."""

    def test_each_start_builds_a_new_server(self):
        servers = [MagicMock(), MagicMock()]
        transport = NativeDaemon(handlers=BASE_HANDLERS, server_factory=MagicMock(side_effect=servers))

        transport.start()
        assert transport.server is servers[0]
        transport.shutdown()
        servers[0].shutdown.assert_called_once()
        assert transport.server is None
        assert transport.running is False

        transport.start()
        assert transport.server is servers[1]

    def test_failed_start_keeps_no_server(self):
        server = MagicMock()
        server.start.side_effect = RuntimeError("address in use")
        transport = NativeDaemon(handlers=BASE_HANDLERS, server_factory=lambda: server)

        with pytest.raises(RuntimeError):
            transport.start()
        assert transport.server is None

    def test_factory_uses_settings(self, settings, identity, no_root):
        transport = run_compose(settings, identity)
        with patch("server.composer.Server") as mock_server:
            transport.start()
        args, kwargs = mock_server.call_args
        assert args[2:] == (settings.bind, settings.port)
        assert kwargs["ssl_context"] is no_root.return_value
