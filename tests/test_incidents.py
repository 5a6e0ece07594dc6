"""
Unit tests for the security incident workflow.
"""

from datetime import timedelta

import pytest

from warden.config import IncidentPolicy
from warden.errors import IncidentClosed, IncidentNotFound, InvalidTransition, ValidationError
from warden.incidents import IncidentTracker
from warden.models import IncidentStatus, Severity
from warden.permissions import PermissionDeniedError


@pytest.fixture
def tracker(db, clock):
    return IncidentTracker(db, clock)


@pytest.fixture
def incident(tracker, admin):
    return tracker.report("suspicious_login", Severity.HIGH, "Login from new country", reporter=admin)


class TestReporting:
    """Filing new incidents."""

    def test_new_incident_is_open(self, incident, admin):
        assert incident.status == IncidentStatus.OPEN
        assert incident.reported_by == admin.user_id
        assert incident.resolved_by is None

    def test_automated_report_uses_system_principal(self, tracker):
        incident = tracker.report("repeated_auth_failure", Severity.MEDIUM, "5 failures")
        assert incident.reported_by == "system"

    def test_regular_user_cannot_report(self, tracker, alice):
        with pytest.raises(PermissionDeniedError):
            tracker.report("suspicious_login", Severity.LOW, "Looks odd", reporter=alice)

    def test_blank_fields_rejected(self, tracker):
        with pytest.raises(ValidationError):
            tracker.report("  ", Severity.LOW, "desc")
        with pytest.raises(ValidationError):
            tracker.report("type", Severity.LOW, "")

    def test_round_trip_through_store(self, tracker, admin):
        filed = tracker.report(
            "unauthorized_access_attempt", Severity.CRITICAL, "Admin endpoint probed",
            reporter=admin, ip_address="10.0.0.9", additional_data={"paths": ["/admin"]},
        )
        assert tracker.get(filed.incident_id) == filed

    def test_get_unknown(self, tracker):
        with pytest.raises(IncidentNotFound):
            tracker.get("missing")


class TestWorkflow:
    """Status transitions."""

    def test_direct_resolve_rejected_by_default(self, tracker, incident, admin):
        with pytest.raises(InvalidTransition):
            tracker.resolve(incident.incident_id, admin)
        assert tracker.get(incident.incident_id).status == IncidentStatus.OPEN

    def test_direct_resolve_allowed_by_policy(self, db, clock, admin):
        tracker = IncidentTracker(db, clock, IncidentPolicy(allow_direct_resolve=True))
        incident = tracker.report("suspicious_login", Severity.LOW, "desc", reporter=admin)
        resolved = tracker.resolve(incident.incident_id, admin)
        assert resolved.status == IncidentStatus.RESOLVED

    def test_full_lifecycle(self, tracker, incident, admin, clock):
        clock.advance(timedelta(minutes=5))
        investigating = tracker.investigate(incident.incident_id, admin, notes="Looking")
        assert investigating.updated_at == clock.now()
        assert investigating.notes == "Looking"

        clock.advance(timedelta(minutes=5))
        resolved = tracker.resolve(incident.incident_id, admin)
        assert resolved.resolved_by == admin.user_id
        assert resolved.resolved_at == clock.now()
        assert resolved.notes == "Looking"

        clock.advance(timedelta(minutes=5))
        closed = tracker.close(incident.incident_id, admin)
        assert closed.status == IncidentStatus.CLOSED
        assert closed.resolved_at == resolved.resolved_at

        stored = tracker.get(incident.incident_id)
        assert stored.status == IncidentStatus.CLOSED
        assert stored.severity == Severity.HIGH
        assert stored.reported_by == incident.reported_by

    def test_closed_is_terminal(self, tracker, incident, admin):
        tracker.investigate(incident.incident_id, admin)
        tracker.resolve(incident.incident_id, admin)
        tracker.close(incident.incident_id, admin)

        for status in IncidentStatus:
            with pytest.raises(IncidentClosed):
                tracker.transition(incident.incident_id, status, admin)
        with pytest.raises(IncidentClosed):
            tracker.reopen(incident.incident_id, admin)

    def test_reopen_clears_resolution(self, tracker, incident, admin):
        tracker.investigate(incident.incident_id, admin)
        tracker.resolve(incident.incident_id, admin)

        reopened = tracker.reopen(incident.incident_id, admin)
        assert reopened.status == IncidentStatus.INVESTIGATING
        assert reopened.resolved_by is None
        assert reopened.resolved_at is None

        back_to_open = tracker.reopen(incident.incident_id, admin)
        assert back_to_open.status == IncidentStatus.OPEN

    def test_reopen_open_incident_rejected(self, tracker, incident, admin):
        with pytest.raises(InvalidTransition):
            tracker.reopen(incident.incident_id, admin)

    def test_self_transition_rejected(self, tracker, incident, admin):
        with pytest.raises(InvalidTransition):
            tracker.transition(incident.incident_id, IncidentStatus.OPEN, admin)

    def test_cannot_close_unresolved(self, tracker, incident, admin):
        tracker.investigate(incident.incident_id, admin)
        with pytest.raises(InvalidTransition):
            tracker.close(incident.incident_id, admin)

    def test_regular_user_cannot_transition(self, tracker, incident, alice):
        with pytest.raises(PermissionDeniedError):
            tracker.investigate(incident.incident_id, alice)


class TestReclassifyAndList:
    """Severity corrections and listing."""

    def test_reclassify_files_linked_incident(self, tracker, incident, admin):
        linked = tracker.reclassify(incident.incident_id, Severity.CRITICAL, admin, "Data exfiltrated")

        assert linked.incident_id != incident.incident_id
        assert linked.severity == Severity.CRITICAL
        assert linked.additional_data["related_incident_id"] == incident.incident_id
        assert linked.additional_data["previous_severity"] == "high"
        assert tracker.get(incident.incident_id).severity == Severity.HIGH

    def test_list_filters_newest_first(self, tracker, admin, clock):
        first = tracker.report("a", Severity.LOW, "first", reporter=admin)
        clock.advance(timedelta(minutes=1))
        second = tracker.report("b", Severity.HIGH, "second", reporter=admin)
        clock.advance(timedelta(minutes=1))
        tracker.report("c", Severity.HIGH, "third", reporter=admin, affected_user_id="u9")

        assert [i.description for i in tracker.list()] == ["third", "second", "first"]
        assert len(tracker.list(severity=Severity.HIGH)) == 2
        assert [i.incident_id for i in tracker.list(severity=Severity.LOW)] == [first.incident_id]
        assert len(tracker.list(affected_user_id="u9")) == 1
        assert len(tracker.list(since=clock.now() - timedelta(minutes=1))) == 2
        assert tracker.list(limit=1)[0].description == "third"

        tracker.investigate(second.incident_id, admin)
        assert len(tracker.list(status=IncidentStatus.INVESTIGATING)) == 1
