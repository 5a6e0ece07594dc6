"""
Unit tests for security health metrics and threat detection.
"""

from datetime import timedelta

import pytest

from warden.audit import LOGIN_RESOURCE, AuditLog
from warden.incidents import MULTIPLE_FAILED_LOGINS, UNUSUAL_FILE_ACTIVITY, IncidentTracker
from warden.models import AuditAction, IncidentStatus, Severity
from warden.monitoring import SecurityMonitor


@pytest.fixture
def audit(db, channel, clock):
    return AuditLog(db, channel, clock)


@pytest.fixture
def tracker(db, clock):
    return IncidentTracker(db, clock)


@pytest.fixture
def monitor(audit, tracker, db, clock):
    return SecurityMonitor(audit, tracker, db, clock)


def failed_logins(audit, user_id, count):
    for _ in range(count):
        audit.log(AuditAction.VIEW, LOGIN_RESOURCE, False, user_id=user_id, error="invalid_credentials")


def uploads(audit, user_id, count):
    for i in range(count):
        audit.log(AuditAction.UPLOAD, f"file-{i}", True, user_id=user_id)


class TestHealthMetrics:
    """Dashboard aggregates."""

    def test_quiet_system_is_healthy(self, monitor, alice):
        metrics = monitor.health_metrics()
        assert metrics.active_users == 1
        assert metrics.login_success_rate == 100.0
        assert metrics.upload_success_rate == 100.0
        assert metrics.security_status == "healthy"

    def test_counts_and_rates(self, monitor, audit, clock):
        audit.log(AuditAction.VIEW, LOGIN_RESOURCE, True, user_id="u1")
        failed_logins(audit, "u2", 3)
        uploads(audit, "u1", 2)
        audit.log(AuditAction.UPLOAD, "big", False, user_id="u1", error="too_large")

        metrics = monitor.health_metrics()
        assert metrics.recent_logins == 1
        assert metrics.failed_logins == 3
        assert metrics.login_success_rate == 25.0
        assert metrics.recent_uploads == 2
        assert metrics.failed_uploads == 1

        # Logins age out after an hour, uploads after a day
        clock.advance(timedelta(hours=2))
        metrics = monitor.health_metrics()
        assert metrics.recent_logins == 0
        assert metrics.failed_logins == 0
        assert metrics.recent_uploads == 2

    def test_status_follows_incident_severity(self, monitor, tracker, admin):
        tracker.report("suspicious_login", Severity.HIGH, "desc")
        assert monitor.health_metrics().security_status == "warning"

        incident = tracker.report("unauthorized_access_attempt", Severity.CRITICAL, "desc")
        metrics = monitor.health_metrics()
        assert metrics.security_status == "critical"
        assert metrics.critical_incidents == 1
        assert metrics.open_incidents == 2

        tracker.investigate(incident.incident_id, admin)
        assert monitor.health_metrics().open_incidents == 1

    def test_as_dict(self, monitor):
        data = monitor.health_metrics().as_dict()
        assert set(data) == {"timestamp", "metrics", "health"}
        assert data["health"]["security_status"] == "healthy"


class TestThreatDetection:
    """Per-user anomaly thresholds."""

    def test_failed_login_thresholds(self, monitor, audit):
        failed_logins(audit, "u1", 4)
        failed_logins(audit, "u2", 5)
        failed_logins(audit, "u3", 10)

        threats = {t.affected_user_id: t for t in monitor.detect_threats()}
        assert set(threats) == {"u2", "u3"}
        assert threats["u2"].severity == Severity.MEDIUM
        assert threats["u3"].severity == Severity.HIGH
        assert threats["u3"].incident_type == MULTIPLE_FAILED_LOGINS

    def test_upload_flood(self, monitor, audit):
        uploads(audit, "u1", 20)
        [threat] = monitor.detect_threats()
        assert threat.incident_type == UNUSUAL_FILE_ACTIVITY
        assert threat.count == 20

    def test_only_last_hour_counts(self, monitor, audit, clock):
        failed_logins(audit, "u1", 5)
        clock.advance(timedelta(minutes=61))
        assert monitor.detect_threats() == []

    def test_report_files_incidents(self, monitor, audit, tracker):
        failed_logins(audit, "u1", 6)

        assert tracker.list() == []
        monitor.detect_threats(report=True)

        [incident] = tracker.list()
        assert incident.status == IncidentStatus.OPEN
        assert incident.reported_by == "system"
        assert incident.affected_user_id == "u1"
        assert incident.additional_data == {"count": 6}
