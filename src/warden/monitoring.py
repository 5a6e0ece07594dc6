"""
Security monitoring.

Aggregates the audit log and incident store into dashboard metrics and
flags users whose recent activity looks like an attack.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from loguru import logger

from .audit import LOGIN_RESOURCE, AuditLog, AuditQuery
from .clock import Clock, SystemClock
from .database import SecurityDatabase
from .errors import StoreUnavailable
from .incidents import MULTIPLE_FAILED_LOGINS, UNUSUAL_FILE_ACTIVITY, IncidentTracker
from .models import AuditAction, IncidentStatus, SecurityIncident, Severity

FAILED_LOGIN_THRESHOLD = 5
FAILED_LOGIN_HIGH = 10
UPLOAD_THRESHOLD = 20
UPLOAD_HIGH = 50


@dataclass(frozen=True)
class HealthMetrics:
    timestamp: datetime
    active_users: int
    recent_logins: int
    failed_logins: int
    recent_uploads: int
    failed_uploads: int
    open_incidents: int
    critical_incidents: int
    login_success_rate: float
    upload_success_rate: float
    security_status: str

    def as_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "metrics": {
                "active_users": self.active_users,
                "recent_logins": self.recent_logins,
                "failed_logins": self.failed_logins,
                "recent_uploads": self.recent_uploads,
                "failed_uploads": self.failed_uploads,
                "open_incidents": self.open_incidents,
                "critical_incidents": self.critical_incidents,
            },
            "health": {
                "login_success_rate": self.login_success_rate,
                "upload_success_rate": self.upload_success_rate,
                "security_status": self.security_status,
            },
        }


@dataclass(frozen=True)
class Threat:
    incident_type: str
    severity: Severity
    description: str
    affected_user_id: str
    count: int


def _success_rate(succeeded: int, failed: int) -> float:
    if succeeded == 0:
        return 100.0 if failed == 0 else 0.0
    return succeeded / (succeeded + failed) * 100


class SecurityMonitor:
    """Read-side analytics over audit entries and incidents."""

    def __init__(
        self,
        audit: AuditLog,
        incidents: IncidentTracker,
        db: SecurityDatabase,
        clock: Optional[Clock] = None,
    ):
        self.audit = audit
        self.incidents = incidents
        self.db = db
        self.clock = clock or SystemClock()

    def health_metrics(self) -> HealthMetrics:
        """
        Snapshot of authentication and upload health.

        Logins are counted over the last hour, uploads and incidents over the
        last day.
        """
        now = self.clock.now()
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(days=1)

        logins = self.audit.query(AuditQuery(resource_id=LOGIN_RESOURCE, since=hour_ago))
        uploads = self.audit.query(AuditQuery(action=AuditAction.UPLOAD, since=day_ago))
        incidents = self.incidents.list(since=day_ago, limit=None)

        recent_logins = sum(1 for e in logins if e.success)
        failed_logins = len(logins) - recent_logins
        recent_uploads = sum(1 for e in uploads if e.success)
        failed_uploads = len(uploads) - recent_uploads
        critical = sum(1 for i in incidents if i.severity == Severity.CRITICAL)
        high = sum(1 for i in incidents if i.severity == Severity.HIGH)

        if critical:
            status = "critical"
        elif high:
            status = "warning"
        else:
            status = "healthy"

        return HealthMetrics(
            timestamp=now,
            active_users=self.db.count_active_users(),
            recent_logins=recent_logins,
            failed_logins=failed_logins,
            recent_uploads=recent_uploads,
            failed_uploads=failed_uploads,
            open_incidents=sum(1 for i in incidents if i.status == IncidentStatus.OPEN),
            critical_incidents=critical,
            login_success_rate=_success_rate(recent_logins, failed_logins),
            upload_success_rate=_success_rate(recent_uploads, failed_uploads),
            security_status=status,
        )

    def detect_threats(self, report: bool = False) -> List[Threat]:
        """
        Scan the last hour for failed-login bursts and upload floods.

        Args:
            report: File each threat as an incident from the system principal

        Returns:
            Detected threats
        """
        hour_ago = self.clock.now() - timedelta(hours=1)
        threats: List[Threat] = []

        failed_logins = self.audit.failures_by_user(hour_ago, resource_id=LOGIN_RESOURCE)
        for user_id, count in failed_logins.items():
            if count >= FAILED_LOGIN_THRESHOLD:
                threats.append(Threat(
                    incident_type=MULTIPLE_FAILED_LOGINS,
                    severity=Severity.HIGH if count >= FAILED_LOGIN_HIGH else Severity.MEDIUM,
                    description=f"User {user_id} has {count} failed login attempts in the last hour",
                    affected_user_id=user_id,
                    count=count,
                ))

        uploads = self.audit.query(AuditQuery(action=AuditAction.UPLOAD, since=hour_ago))
        for user_id, count in Counter(e.user_id for e in uploads if e.user_id).items():
            if count >= UPLOAD_THRESHOLD:
                threats.append(Threat(
                    incident_type=UNUSUAL_FILE_ACTIVITY,
                    severity=Severity.HIGH if count >= UPLOAD_HIGH else Severity.MEDIUM,
                    description=f"User {user_id} has uploaded {count} files in the last hour",
                    affected_user_id=user_id,
                    count=count,
                ))

        if threats:
            logger.warning(f"Threat detection found {len(threats)} threat(s)")
        if report:
            for threat in threats:
                self._file(threat)
        return threats

    def _file(self, threat: Threat) -> Optional[SecurityIncident]:
        try:
            return self.incidents.report(
                incident_type=threat.incident_type,
                severity=threat.severity,
                description=threat.description,
                affected_user_id=threat.affected_user_id,
                additional_data={"count": threat.count},
            )
        except StoreUnavailable as e:
            logger.error(f"Could not file threat for {threat.affected_user_id}: {e}")
            return None
