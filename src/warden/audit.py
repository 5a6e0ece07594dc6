"""
Append-only audit log.

Audit completeness is secondary to availability: a failed write is reported
to the operational error channel and the caller carries on.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional

from .clock import Clock, SystemClock
from .database import SecurityDatabase
from .errors import StoreUnavailable
from .models import AuditAction, AuditLogEntry
from .ops import OperationalErrorChannel

LOGIN_RESOURCE = "login"


@dataclass(frozen=True)
class AuditQuery:
    """
    Audit log filter.

    ``since`` is inclusive and ``until`` exclusive. Results are in write order,
    oldest first unless ``descending`` is set.
    """
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    action: Optional[AuditAction] = None
    success: Optional[bool] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    descending: bool = False
    limit: Optional[int] = None


@dataclass(frozen=True)
class ActivitySummary:
    user_id: str
    total_actions: int
    successful_actions: int
    failed_actions: int
    last_activity: Optional[datetime]
    action_counts: Dict[str, int]


class AuditLog:
    """Records and queries audit entries."""

    def __init__(
        self,
        db: SecurityDatabase,
        channel: OperationalErrorChannel,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.channel = channel
        self.clock = clock or SystemClock()

    def record(self, entry: AuditLogEntry) -> Optional[AuditLogEntry]:
        """
        Append an entry.

        Args:
            entry: Entry to append (its entry_id is ignored)

        Returns:
            The stored entry with its entry_id, or None if the store failed
        """
        try:
            entry_id = self.db.insert_audit_entry(entry)
        except StoreUnavailable as e:
            self.channel.report(
                "audit_write_failed",
                e,
                resource_id=entry.resource_id,
                action=entry.action.value,
                user_id=entry.user_id,
            )
            return None
        return replace(entry, entry_id=entry_id)

    def log(
        self,
        action: AuditAction,
        resource_id: str,
        success: bool,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        """Build an entry stamped with the current time and record it."""
        entry = AuditLogEntry(
            user_id=user_id,
            resource_id=resource_id,
            action=action,
            success=success,
            timestamp=self.clock.now(),
            ip_address=ip_address,
            user_agent=user_agent,
            error=error,
        )
        return self.record(entry)

    def query(self, filters: Optional[AuditQuery] = None) -> List[AuditLogEntry]:
        """
        Read entries matching ``filters``.

        Raises:
            StoreUnavailable: If the store cannot be read
        """
        filters = filters or AuditQuery()
        return self.db.query_audit_entries(
            user_id=filters.user_id,
            resource_id=filters.resource_id,
            action=filters.action,
            success=filters.success,
            since=filters.since,
            until=filters.until,
            descending=filters.descending,
            limit=filters.limit,
        )

    def activity_summary(self, user_id: str) -> ActivitySummary:
        entries = self.query(AuditQuery(user_id=user_id))
        counts: Dict[str, int] = {}
        for entry in entries:
            counts[entry.action.value] = counts.get(entry.action.value, 0) + 1
        successes = sum(1 for entry in entries if entry.success)
        return ActivitySummary(
            user_id=user_id,
            total_actions=len(entries),
            successful_actions=successes,
            failed_actions=len(entries) - successes,
            last_activity=entries[-1].timestamp if entries else None,
            action_counts=counts,
        )

    def failures_by_user(
        self,
        since: datetime,
        action: Optional[AuditAction] = None,
        resource_id: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Count failed entries per user since ``since``.

        Args:
            since: Inclusive lower bound
            action: Only count this action
            resource_id: Only count this resource

        Returns:
            Mapping of user_id to failure count
        """
        return self.db.count_failures_by_user(since, action=action, resource_id=resource_id)
