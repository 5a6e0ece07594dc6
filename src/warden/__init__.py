"""
Warden: session, rate limit, audit and incident handling for the platform API.

Provides opaque-token sessions, fixed-window rate limiting, an append-only
audit log and a security incident workflow behind a single AuthGateway.
"""

from .models import (
    AuditAction,
    AuditLogEntry,
    IncidentStatus,
    SecurityIncident,
    Session,
    Severity,
    User,
    UserRole,
)
from .clock import Clock, ManualClock, SystemClock
from .config import EscalationPolicy, IncidentPolicy, RateLimitRule, WardenConfig
from .errors import (
    IncidentClosed,
    IncidentNotFound,
    InvalidSession,
    InvalidTransition,
    PrincipalInvalid,
    RateLimited,
    StoreUnavailable,
    ValidationError,
    WardenError,
)
from .database import SecurityDatabase
from .identity import BcryptHasher, IdentityProvider, PasswordHasher, UserDirectory
from .sessions import SessionStore
from .rate_limiter import RateLimitDecision, RateLimiter
from .audit import ActivitySummary, AuditLog, AuditQuery
from .incidents import IncidentTracker
from .escalation import FailureTracker
from .monitoring import HealthMetrics, SecurityMonitor, Threat
from .ops import OperationalErrorChannel, OperationalEvent
from .permissions import (
    Permission,
    PermissionDeniedError,
    ROLE_PERMISSIONS,
    can_access_endpoint,
    has_permission,
    require_permission,
)
from .gateway import AuthGateway, GatewayResponse, GatewayStatus, InboundRequest, LoginResult

__all__ = [
    # Models
    "AuditAction",
    "AuditLogEntry",
    "IncidentStatus",
    "SecurityIncident",
    "Session",
    "Severity",
    "User",
    "UserRole",
    # Time and configuration
    "Clock",
    "ManualClock",
    "SystemClock",
    "EscalationPolicy",
    "IncidentPolicy",
    "RateLimitRule",
    "WardenConfig",
    # Errors
    "IncidentClosed",
    "IncidentNotFound",
    "InvalidSession",
    "InvalidTransition",
    "PrincipalInvalid",
    "RateLimited",
    "StoreUnavailable",
    "ValidationError",
    "WardenError",
    # Components
    "SecurityDatabase",
    "BcryptHasher",
    "IdentityProvider",
    "PasswordHasher",
    "UserDirectory",
    "SessionStore",
    "RateLimitDecision",
    "RateLimiter",
    "ActivitySummary",
    "AuditLog",
    "AuditQuery",
    "IncidentTracker",
    "FailureTracker",
    "HealthMetrics",
    "SecurityMonitor",
    "Threat",
    "OperationalErrorChannel",
    "OperationalEvent",
    # RBAC
    "Permission",
    "PermissionDeniedError",
    "ROLE_PERMISSIONS",
    "can_access_endpoint",
    "has_permission",
    "require_permission",
    # Gateway
    "AuthGateway",
    "GatewayResponse",
    "GatewayStatus",
    "InboundRequest",
    "LoginResult",
]
