"""
Security data models.

Data classes for principals, sessions, audit entries, and security incidents.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class UserRole(str, Enum):
    """Principal role."""
    USER = "user"
    ADMIN = "admin"


class AuditAction(str, Enum):
    """Actions recorded in the audit log."""
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"
    VIEW = "view"
    UPDATE = "update"


class Severity(str, Enum):
    """Security incident severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, Enum):
    """Security incident workflow state."""
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


@dataclass
class User:
    """
    Platform principal.

    Attributes:
        user_id: Unique user identifier (UUID)
        email: Lower-cased email address, used as login name
        name: Display name
        role: Principal role
        is_active: Whether the account may authenticate
        email_verified: Whether the email address has been verified
        created_at: Account creation timestamp
        last_login: Timestamp of last successful login
        password_hash: Hash produced by the configured PasswordHasher
    """
    user_id: str
    email: str
    name: str
    role: UserRole = UserRole.USER
    is_active: bool = True
    email_verified: bool = False
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    password_hash: str = field(default="", repr=False)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class Session:
    """
    Authentication session.

    Sessions are immutable snapshots; revocation produces a new snapshot with
    ``is_active=False``. They are never deleted.

    Attributes:
        session_id: Unique session identifier
        user_id: User who owns this session
        token: Opaque bearer token
        created_at: Session creation timestamp
        expires_at: Session expiration timestamp
        is_active: False once logged out or revoked
    """
    session_id: str
    user_id: str
    token: str = field(repr=False)
    created_at: datetime
    expires_at: datetime
    is_active: bool = True

    def is_valid_at(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at


@dataclass(frozen=True)
class AuditLogEntry:
    """
    Append-only record of an action against a resource.

    ``error`` is present iff ``success`` is False.
    """
    user_id: Optional[str]
    resource_id: str
    action: AuditAction
    success: bool
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error: Optional[str] = None
    entry_id: Optional[int] = None

    def __post_init__(self):
        if self.success and self.error is not None:
            raise ValueError("Successful audit entries cannot carry an error")
        if not self.success and not self.error:
            raise ValueError("Failed audit entries must carry an error")


@dataclass
class SecurityIncident:
    """
    Security incident under investigation.

    Attributes:
        incident_id: Unique incident identifier
        incident_type: Free-form type, e.g. "repeated_auth_failure"
        severity: Immutable after creation
        description: Human-readable description
        reported_by: Principal who filed the incident (immutable)
        affected_user_id: User the incident concerns, if any
        ip_address: Network origin associated with the incident
        user_agent: User agent associated with the incident
        additional_data: Structured context (JSON-serializable)
        status: Workflow state
        created_at: Report timestamp
        updated_at: Last transition timestamp
        resolved_by: Operator who resolved the incident
        resolved_at: Resolution timestamp
        notes: Operator notes
    """
    incident_id: str
    incident_type: str
    severity: Severity
    description: str
    reported_by: str
    created_at: datetime
    updated_at: datetime
    status: IncidentStatus = IncidentStatus.OPEN
    affected_user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None
