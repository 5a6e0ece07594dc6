"""
Exception hierarchy for the security subsystem.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .rate_limiter import RateLimitDecision


class WardenError(Exception):
    """Base class for all subsystem errors."""


class PrincipalInvalid(WardenError):
    """Session requested for a principal that does not exist or is inactive."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Principal {user_id} is missing or inactive")


class InvalidSession(WardenError):
    """
    Token is missing, expired, revoked, or was never issued.

    The message never says which.
    """

    def __init__(self):
        super().__init__("Invalid or expired session")


class RateLimited(WardenError):
    """
    Quota exceeded for an (identifier, endpoint) pair.

    Attributes:
        decision: The denying RateLimitDecision (remaining, reset_at)
    """

    def __init__(self, decision: "RateLimitDecision"):
        self.decision = decision
        super().__init__(
            f"Rate limit exceeded; retry after {decision.reset_at.isoformat()}"
        )


class IncidentNotFound(WardenError):
    def __init__(self, incident_id: str):
        self.incident_id = incident_id
        super().__init__(f"Incident not found: {incident_id}")


class InvalidTransition(WardenError):
    """Incident status change not permitted by the workflow."""

    def __init__(self, incident_id: str, current: str, requested: str):
        self.incident_id = incident_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Incident {incident_id}: cannot move from {current} to {requested}"
        )


class IncidentClosed(WardenError):
    """Incident is closed; no further mutation is permitted."""

    def __init__(self, incident_id: str):
        self.incident_id = incident_id
        super().__init__(f"Incident {incident_id} is closed")


class StoreUnavailable(WardenError):
    """Durable store I/O failure (timeout, locked database, disk error)."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Store unavailable during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class ValidationError(WardenError):
    """Rejected user input (registration, incident reports)."""
