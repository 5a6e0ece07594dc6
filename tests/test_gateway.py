"""
Integration tests for the auth gateway composition.
"""

from datetime import timedelta

import pytest

from warden.audit import AuditQuery
from warden.errors import StoreUnavailable, ValidationError
from warden.gateway import GatewayStatus, InboundRequest
from warden.incidents import REPEATED_AUTH_FAILURE
from warden.models import Severity, UserRole
from warden.permissions import PermissionDeniedError

ORIGIN = "203.0.113.7"
USER_PASSWORD = "Password123"
ADMIN_PASSWORD = "AdminPass123"


@pytest.fixture
def alice(gateway):
    return gateway.directory.register("alice@example.com", "Alice", USER_PASSWORD)


@pytest.fixture
def admin(gateway):
    return gateway.directory.register("admin@example.com", "Admin", ADMIN_PASSWORD, role=UserRole.ADMIN)


@pytest.fixture
def token(gateway, alice):
    return gateway.login("alice@example.com", USER_PASSWORD, ORIGIN).session.token


def request(endpoint="files.list", token=None, origin=ORIGIN):
    return InboundRequest(endpoint=endpoint, origin=origin, token=token, user_agent="pytest")


def entries_for(gateway, resource_id):
    return gateway.audit.query(AuditQuery(resource_id=resource_id))


class TestHandle:
    """Per-request decisions and their audit trail."""

    def test_allowed_request_is_audited(self, gateway, alice, token):
        response = gateway.handle(request(token=token))

        assert response.allowed
        assert response.user.user_id == alice.user_id
        [entry] = entries_for(gateway, "files.list")
        assert entry.success
        assert entry.user_id == alice.user_id
        assert entry.ip_address == ORIGIN
        assert entry.user_agent == "pytest"

    def test_audit_action_follows_endpoint(self, gateway, token):
        gateway.handle(request("files.upload", token=token))
        [entry] = entries_for(gateway, "files.upload")
        assert entry.action.value == "upload"

    def test_invalid_session(self, gateway):
        response = gateway.handle(request(token="bogus"))

        assert response.status == GatewayStatus.UNAUTHENTICATED
        assert response.user is None
        [entry] = entries_for(gateway, "files.list")
        assert not entry.success
        assert entry.error == "invalid_session"
        assert entry.user_id is None

    def test_forbidden(self, gateway, alice, token):
        response = gateway.handle(request("admin.audit", token=token))

        assert response.status == GatewayStatus.FORBIDDEN
        [entry] = entries_for(gateway, "admin.audit")
        assert entry.error == "forbidden"
        assert entry.user_id == alice.user_id

    def test_admin_reaches_admin_endpoint(self, gateway, admin):
        session = gateway.login("admin@example.com", ADMIN_PASSWORD, ORIGIN).session
        assert gateway.handle(request("admin.audit", token=session.token)).allowed

    def test_rate_limited_request_skips_session_lookup(self, gateway, token, monkeypatch):
        for _ in range(5):
            assert gateway.handle(request(token=token)).allowed

        def fail(token):
            raise AssertionError("session store consulted")

        monkeypatch.setattr(gateway.sessions, "validate", fail)
        response = gateway.handle(request(token=token))

        assert response.status == GatewayStatus.RATE_LIMITED
        assert response.remaining == 0
        assert response.reset_at is not None
        assert entries_for(gateway, "files.list")[-1].error == "rate_limited"

    def test_session_store_outage_denies_without_escalating(self, gateway, channel, monkeypatch):
        def fail(token):
            raise StoreUnavailable("get_session_by_token")

        monkeypatch.setattr(gateway.sessions, "validate", fail)
        response = gateway.handle(request(token="anything"))

        assert response.status == GatewayStatus.UNAUTHENTICATED
        assert len(channel.recent("session_lookup_failed")) == 1
        assert gateway.failures.failures(ORIGIN) == 0

    def test_audit_outage_does_not_change_decision(self, gateway, channel, token, monkeypatch):
        def fail(entry):
            raise StoreUnavailable("insert_audit_entry")

        monkeypatch.setattr(gateway.audit.db, "insert_audit_entry", fail)
        assert gateway.handle(request(token=token)).allowed
        assert len(channel.recent("audit_write_failed")) == 1


class TestEscalation:
    """Repeated authentication failures raise one incident per window."""

    def test_five_failures_raise_one_incident(self, gateway, clock):
        for _ in range(5):
            gateway.handle(request(token="bogus"))
            clock.advance(timedelta(seconds=61))

        incidents = gateway.incidents.list()
        assert len(incidents) == 1
        assert incidents[0].incident_type == REPEATED_AUTH_FAILURE
        assert incidents[0].severity == Severity.MEDIUM
        assert incidents[0].reported_by == "system"
        assert incidents[0].additional_data["identifier"] == ORIGIN

        gateway.handle(request(token="bogus"))
        assert len(gateway.incidents.list()) == 1

    def test_failures_are_counted_per_identifier(self, gateway, clock):
        for i in range(5):
            gateway.handle(request(token="bogus", origin=f"198.51.100.{i}"))
        assert gateway.incidents.list() == []

    def test_incident_write_failure_goes_to_channel(self, gateway, channel, monkeypatch):
        def fail(incident):
            raise StoreUnavailable("insert_incident")

        monkeypatch.setattr(gateway.incidents.db, "insert_incident", fail)
        for _ in range(5):
            response = gateway.handle(request(token="bogus"))
        assert response.status == GatewayStatus.UNAUTHENTICATED
        assert len(channel.recent("incident_write_failed")) == 1


class TestLogin:
    """Credential checks and session lifecycle."""

    def test_successful_login(self, gateway, alice):
        result = gateway.login("Alice@Example.com", USER_PASSWORD, ORIGIN, "pytest")

        assert result.status == GatewayStatus.ALLOWED
        assert result.session.user_id == alice.user_id
        assert gateway.sessions.validate(result.session.token).user_id == alice.user_id
        assert gateway.directory.get_user(alice.user_id).last_login is not None
        [entry] = entries_for(gateway, "login")
        assert entry.success

    def test_bad_password_is_attributed_to_known_user(self, gateway, alice):
        result = gateway.login("alice@example.com", "WrongPass999", ORIGIN)

        assert result.status == GatewayStatus.UNAUTHENTICATED
        assert result.session is None
        [entry] = entries_for(gateway, "login")
        assert entry.error == "invalid_credentials"
        assert entry.user_id == alice.user_id

    def test_repeated_bad_logins_escalate(self, gateway, alice):
        for _ in range(5):
            gateway.login("alice@example.com", "WrongPass999", ORIGIN)

        [incident] = gateway.incidents.list()
        assert incident.affected_user_id == alice.user_id

    def test_login_rate_limit(self, gateway, alice):
        for _ in range(5):
            gateway.login("nobody@example.com", "whatever", ORIGIN)

        result = gateway.login("alice@example.com", USER_PASSWORD, ORIGIN)
        assert result.status == GatewayStatus.RATE_LIMITED
        assert result.remaining == 0

    def test_new_login_replaces_previous_session(self, gateway, alice):
        first = gateway.login("alice@example.com", USER_PASSWORD, ORIGIN).session
        second = gateway.login("alice@example.com", USER_PASSWORD, ORIGIN).session

        assert gateway.sessions.validate(first.token) is None
        assert gateway.sessions.validate(second.token) is not None

        [superseded] = entries_for(gateway, "logout")
        assert superseded.user_id == alice.user_id
        assert superseded.success

    def test_logout(self, gateway, token):
        assert gateway.logout(token, ORIGIN) is True
        assert gateway.sessions.validate(token) is None
        assert gateway.logout(token, ORIGIN) is False
        assert gateway.logout(None, ORIGIN) is False
        assert len(entries_for(gateway, "logout")) == 1

    def test_register(self, gateway):
        result = gateway.register("carol@example.com", "Carol", USER_PASSWORD, ORIGIN, "pytest")

        assert result.status == GatewayStatus.ALLOWED
        assert result.session is None
        assert gateway.directory.find_by_email("carol@example.com").user_id == result.user.user_id
        [entry] = entries_for(gateway, "register")
        assert entry.success
        assert entry.user_id == result.user.user_id

    def test_rejected_registration_is_audited(self, gateway, alice):
        with pytest.raises(ValidationError):
            gateway.register("alice@example.com", "Alice Again", USER_PASSWORD, ORIGIN)

        [entry] = entries_for(gateway, "register")
        assert entry.error == "rejected"

    def test_registration_rate_limit(self, gateway):
        """Three sign-ups per hour per origin."""
        for i in range(3):
            result = gateway.register(f"user{i}@example.com", "User", USER_PASSWORD, ORIGIN)
            assert result.status == GatewayStatus.ALLOWED

        result = gateway.register("user3@example.com", "User", USER_PASSWORD, ORIGIN)
        assert result.status == GatewayStatus.RATE_LIMITED
        assert gateway.directory.find_by_email("user3@example.com") is None
        assert gateway.register("user3@example.com", "User", USER_PASSWORD, "198.51.100.1").status == (
            GatewayStatus.ALLOWED
        )


class TestAdministration:
    """Operator actions go through RBAC."""

    def test_forced_revocation(self, gateway, alice, admin, token):
        assert gateway.revoke_all_for_user(alice.user_id, admin) == 1
        assert gateway.sessions.validate(token) is None

    def test_user_cannot_revoke(self, gateway, alice, token):
        with pytest.raises(PermissionDeniedError):
            gateway.revoke_all_for_user(alice.user_id, alice)

    def test_deactivation_revokes_sessions(self, gateway, alice, admin, token):
        user = gateway.set_user_active(alice.user_id, False, admin)

        assert not user.is_active
        assert gateway.sessions.validate(token) is None
        result = gateway.login("alice@example.com", USER_PASSWORD, ORIGIN)
        assert result.status == GatewayStatus.UNAUTHENTICATED

    def test_admin_cannot_deactivate_self(self, gateway, admin):
        with pytest.raises(ValidationError):
            gateway.set_user_active(admin.user_id, False, admin)

    def test_role_change(self, gateway, alice, admin):
        promoted = gateway.set_user_role(alice.user_id, UserRole.ADMIN, admin)
        assert promoted.is_admin
        with pytest.raises(ValidationError):
            gateway.set_user_role(admin.user_id, UserRole.USER, admin)


class TestMaintenance:
    """Housekeeping wiring."""

    def test_run_once_covers_all_tasks(self, gateway, token, clock):
        gateway.handle(request(token=token))
        clock.advance(timedelta(days=2))

        results = gateway.maintenance.run_once()
        assert set(results) == {"rate_limits", "client_rate_limits", "session_cache", "failure_history"}
        assert results["rate_limits"] == 2
        assert results["session_cache"] == 1

    def test_start_stop(self, gateway):
        gateway.start()
        assert gateway.maintenance.running
        gateway.stop()
        assert not gateway.maintenance.running
