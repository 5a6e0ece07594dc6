"""
Security incident tracking.

Incidents move through open -> investigating -> resolved -> closed, with two
backward edges for correcting workflow mistakes:

    open          -> investigating
    investigating -> resolved | open
    resolved      -> closed | investigating
    closed        (terminal)

``open -> resolved`` is allowed only when IncidentPolicy.allow_direct_resolve
is set. Severity and reporter never change after creation.
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from loguru import logger

from .clock import Clock, SystemClock
from .config import IncidentPolicy
from .database import SecurityDatabase
from .errors import IncidentClosed, IncidentNotFound, InvalidTransition, ValidationError
from .models import IncidentStatus, SecurityIncident, Severity, User
from .permissions import Permission, require_permission

REPEATED_AUTH_FAILURE = "repeated_auth_failure"
MULTIPLE_FAILED_LOGINS = "multiple_failed_logins"
UNUSUAL_FILE_ACTIVITY = "unusual_file_activity"
SUSPICIOUS_LOGIN = "suspicious_login"
UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"

_TRANSITIONS: Dict[IncidentStatus, FrozenSet[IncidentStatus]] = {
    IncidentStatus.OPEN: frozenset({IncidentStatus.INVESTIGATING}),
    IncidentStatus.INVESTIGATING: frozenset({IncidentStatus.RESOLVED, IncidentStatus.OPEN}),
    IncidentStatus.RESOLVED: frozenset({IncidentStatus.CLOSED, IncidentStatus.INVESTIGATING}),
    IncidentStatus.CLOSED: frozenset(),
}


class IncidentTracker:
    """
    Files security incidents and drives their workflow.

    Operator actions require Permission.MANAGE_INCIDENTS. Incidents filed
    without a reporter are attributed to the system principal.
    """

    def __init__(
        self,
        db: SecurityDatabase,
        clock: Optional[Clock] = None,
        policy: Optional[IncidentPolicy] = None,
        system_principal_id: str = "system",
    ):
        """
        Initialize tracker.

        Args:
            db: Durable store for incidents
            clock: Time source
            policy: Workflow policy (direct resolve on/off)
            system_principal_id: reported_by for automated reports
        """
        self.db = db
        self.clock = clock or SystemClock()
        self.policy = policy or IncidentPolicy()
        self.system_principal_id = system_principal_id
        self._lock = threading.Lock()

    def allowed_transitions(self, status: IncidentStatus) -> FrozenSet[IncidentStatus]:
        allowed = _TRANSITIONS[status]
        if status == IncidentStatus.OPEN and self.policy.allow_direct_resolve:
            allowed = allowed | {IncidentStatus.RESOLVED}
        return allowed

    def report(
        self,
        incident_type: str,
        severity: Severity,
        description: str,
        reporter: Optional[User] = None,
        affected_user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> SecurityIncident:
        """
        File a new incident in the open state.

        Args:
            incident_type: e.g. "repeated_auth_failure"
            severity: Incident severity (immutable afterwards)
            description: Human-readable description
            reporter: Operator filing the incident; None for automated reports
            affected_user_id: User the incident concerns
            ip_address: Associated network origin
            user_agent: Associated user agent
            additional_data: JSON-serializable context

        Returns:
            The stored SecurityIncident

        Raises:
            PermissionDeniedError: If the reporter may not manage incidents
            ValidationError: If type or description is empty
            StoreUnavailable: If the incident could not be written
        """
        if reporter is not None:
            require_permission(reporter, Permission.MANAGE_INCIDENTS)
        if not incident_type or not incident_type.strip():
            raise ValidationError("Incident type is required")
        if not description or not description.strip():
            raise ValidationError("Incident description is required")

        now = self.clock.now()
        incident = SecurityIncident(
            incident_id=str(uuid.uuid4()),
            incident_type=incident_type.strip(),
            severity=Severity(severity),
            description=description.strip(),
            reported_by=reporter.user_id if reporter is not None else self.system_principal_id,
            created_at=now,
            updated_at=now,
            status=IncidentStatus.OPEN,
            affected_user_id=affected_user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            additional_data=additional_data,
        )
        self.db.insert_incident(incident)

        logger.warning(
            f"Security incident {incident.incident_id} reported: "
            f"{incident.incident_type} ({incident.severity.value})"
        )
        return incident

    def get(self, incident_id: str) -> SecurityIncident:
        incident = self.db.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)
        return incident

    def transition(
        self,
        incident_id: str,
        status: IncidentStatus,
        actor: User,
        notes: Optional[str] = None,
    ) -> SecurityIncident:
        """
        Move an incident to ``status``.

        Entering resolved stamps resolved_by/resolved_at; reopening a resolved
        incident clears them. updated_at is refreshed on every transition.

        Raises:
            PermissionDeniedError: If the actor may not manage incidents
            IncidentNotFound: If the incident does not exist
            IncidentClosed: If the incident is closed
            InvalidTransition: If the workflow does not allow the move
        """
        require_permission(actor, Permission.MANAGE_INCIDENTS)
        status = IncidentStatus(status)

        with self._lock:
            current = self.get(incident_id)
            if current.status == IncidentStatus.CLOSED:
                raise IncidentClosed(incident_id)
            if status not in self.allowed_transitions(current.status):
                raise InvalidTransition(incident_id, current.status.value, status.value)

            now = self.clock.now()
            updated = replace(
                current,
                status=status,
                updated_at=now,
                notes=notes if notes is not None else current.notes,
            )
            if status == IncidentStatus.RESOLVED:
                updated.resolved_by = actor.user_id
                updated.resolved_at = now
            elif status in (IncidentStatus.OPEN, IncidentStatus.INVESTIGATING):
                updated.resolved_by = None
                updated.resolved_at = None

            if not self.db.update_incident_workflow(updated, expected_status=current.status):
                # Another writer moved it first
                latest = self.get(incident_id)
                if latest.status == IncidentStatus.CLOSED:
                    raise IncidentClosed(incident_id)
                raise InvalidTransition(incident_id, latest.status.value, status.value)

        logger.info(
            f"Incident {incident_id}: {current.status.value} -> {status.value} by {actor.user_id}"
        )
        return updated

    def investigate(self, incident_id: str, actor: User, notes: Optional[str] = None) -> SecurityIncident:
        return self.transition(incident_id, IncidentStatus.INVESTIGATING, actor, notes)

    def resolve(self, incident_id: str, actor: User, notes: Optional[str] = None) -> SecurityIncident:
        return self.transition(incident_id, IncidentStatus.RESOLVED, actor, notes)

    def close(self, incident_id: str, actor: User, notes: Optional[str] = None) -> SecurityIncident:
        return self.transition(incident_id, IncidentStatus.CLOSED, actor, notes)

    def reopen(self, incident_id: str, actor: User, notes: Optional[str] = None) -> SecurityIncident:
        """Step an incident back one state (resolved -> investigating, investigating -> open)."""
        current = self.get(incident_id)
        if current.status == IncidentStatus.RESOLVED:
            target = IncidentStatus.INVESTIGATING
        elif current.status == IncidentStatus.INVESTIGATING:
            target = IncidentStatus.OPEN
        elif current.status == IncidentStatus.CLOSED:
            raise IncidentClosed(incident_id)
        else:
            raise InvalidTransition(incident_id, current.status.value, "reopen")
        return self.transition(incident_id, target, actor, notes)

    def reclassify(
        self,
        incident_id: str,
        severity: Severity,
        actor: User,
        reason: str,
    ) -> SecurityIncident:
        """
        File a new incident linked to an existing one with a different severity.

        The original incident is left untouched.
        """
        original = self.get(incident_id)
        data = dict(original.additional_data or {})
        data.update({
            "related_incident_id": original.incident_id,
            "previous_severity": original.severity.value,
            "reason": reason,
        })
        return self.report(
            incident_type=original.incident_type,
            severity=severity,
            description=f"{original.description} (reclassified: {reason})",
            reporter=actor,
            affected_user_id=original.affected_user_id,
            ip_address=original.ip_address,
            user_agent=original.user_agent,
            additional_data=data,
        )

    def list(
        self,
        severity: Optional[Severity] = None,
        status: Optional[IncidentStatus] = None,
        affected_user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = 50,
    ) -> List[SecurityIncident]:
        """Incidents matching all given filters, newest first."""
        return self.db.list_incidents(
            severity=severity,
            status=status,
            affected_user_id=affected_user_id,
            since=since,
            limit=limit,
        )
