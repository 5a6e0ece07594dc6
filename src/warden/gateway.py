"""
Auth gateway.

Request-facing composition root. Each request is decided first (rate limit,
session, permission) and the audit and incident writes happen afterwards;
a failed write never changes the decision.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from loguru import logger

from .audit import LOGIN_RESOURCE, AuditLog
from .clock import Clock, SystemClock
from .config import WardenConfig
from .database import SecurityDatabase
from .errors import StoreUnavailable, ValidationError
from .escalation import FailureTracker
from .identity import PasswordHasher, UserDirectory
from .incidents import REPEATED_AUTH_FAILURE, IncidentTracker
from .maintenance import MaintenanceTimer
from .models import AuditAction, Session, Severity, User, UserRole
from .monitoring import SecurityMonitor
from .ops import OperationalErrorChannel
from .permissions import Permission, can_access_endpoint, require_permission
from .rate_limiter import RateLimiter
from .sessions import SessionStore
from .validation import clean_ip_address, clean_user_agent

LOGIN_ENDPOINT = LOGIN_RESOURCE
REGISTER_ENDPOINT = "register"


class GatewayStatus(str, Enum):
    ALLOWED = "allowed"
    RATE_LIMITED = "rate_limited"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class InboundRequest:
    """
    A request presented to the gateway.

    Attributes:
        endpoint: Endpoint name (selects rate limit rule, permission, audit action)
        origin: Caller network origin
        token: Bearer token, if any
        user_agent: Caller user agent
        principal_id: Already-known principal; used as the rate limit key
        resource_id: Resource acted on (default: the endpoint name)
    """
    endpoint: str
    origin: str
    token: Optional[str] = None
    user_agent: Optional[str] = None
    principal_id: Optional[str] = None
    resource_id: Optional[str] = None

    @property
    def identifier(self) -> str:
        return self.principal_id or self.origin


@dataclass(frozen=True)
class GatewayResponse:
    status: GatewayStatus
    user: Optional[User] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return self.status == GatewayStatus.ALLOWED


@dataclass(frozen=True)
class LoginResult:
    status: GatewayStatus
    session: Optional[Session] = None
    user: Optional[User] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None


class AuthGateway:
    """
    Rate limit, validate, authorize, then record.

    Combines the session store, rate limiter, audit log and incident
    tracker to provide:
    - Per-request access decisions
    - Login/logout and registration
    - Forced revocation and account administration
    """

    def __init__(
        self,
        config: WardenConfig,
        directory: UserDirectory,
        sessions: SessionStore,
        limiter: RateLimiter,
        audit: AuditLog,
        incidents: IncidentTracker,
        failures: FailureTracker,
        channel: OperationalErrorChannel,
        clock: Optional[Clock] = None,
        client_limiter: Optional[RateLimiter] = None,
    ):
        self.config = config
        self.directory = directory
        self.sessions = sessions
        self.limiter = limiter
        self.audit = audit
        self.incidents = incidents
        self.failures = failures
        self.channel = channel
        self.clock = clock or SystemClock()
        # Counts reported through the rate-limit API, separate from enforced quotas
        self.client_limiter = client_limiter or RateLimiter(
            config.rate_limits, self.clock, grace_windows=config.reap_grace_windows
        )
        self.monitor = SecurityMonitor(audit, incidents, directory.db, self.clock)
        self.maintenance = MaintenanceTimer(
            config.reap_interval_seconds,
            {
                "rate_limits": limiter.purge_expired,
                "client_rate_limits": self.client_limiter.purge_expired,
                "session_cache": sessions.evict_cached,
                "failure_history": failures.purge_idle,
            },
        )

    @classmethod
    def from_config(
        cls,
        config: WardenConfig,
        clock: Optional[Clock] = None,
        hasher: Optional[PasswordHasher] = None,
        channel: Optional[OperationalErrorChannel] = None,
    ) -> "AuthGateway":
        """Build the whole subsystem from configuration."""
        clock = clock or SystemClock()
        channel = channel or OperationalErrorChannel(clock)
        db = SecurityDatabase(config.database_path, timeout=config.store_timeout_seconds)
        directory = UserDirectory(db, hasher=hasher, clock=clock)
        return cls(
            config=config,
            directory=directory,
            sessions=SessionStore(db, directory, config.session_ttl, clock),
            limiter=RateLimiter(config.rate_limits, clock, grace_windows=config.reap_grace_windows),
            audit=AuditLog(db, channel, clock),
            incidents=IncidentTracker(db, clock, config.incidents, config.system_principal_id),
            failures=FailureTracker(config.escalation, clock),
            channel=channel,
            clock=clock,
        )

    def start(self) -> None:
        self.maintenance.start()

    def stop(self) -> None:
        self.maintenance.stop()

    def action_for(self, endpoint: str) -> AuditAction:
        return self.config.endpoint_actions.get(endpoint, AuditAction.VIEW)

    # ========================================================================
    # Request decisions
    # ========================================================================

    def handle(self, request: InboundRequest) -> GatewayResponse:
        """
        Decide an inbound request.

        Args:
            request: The request to decide

        Returns:
            GatewayResponse; rate-limited responses carry remaining/reset_at
        """
        ip_address = clean_ip_address(request.origin)
        user_agent = clean_user_agent(request.user_agent)
        action = self.action_for(request.endpoint)
        resource_id = request.resource_id or request.endpoint

        decision = self.limiter.check(request.identifier, request.endpoint)
        if not decision.allowed:
            self.audit.log(
                action, resource_id, False,
                user_id=request.principal_id,
                ip_address=ip_address,
                user_agent=user_agent,
                error="rate_limited",
            )
            return GatewayResponse(
                GatewayStatus.RATE_LIMITED,
                remaining=decision.remaining,
                reset_at=decision.reset_at,
            )

        try:
            user = self.sessions.validate(request.token)
        except StoreUnavailable as e:
            # Cannot prove the session; deny without counting it as an attack
            self.channel.report("session_lookup_failed", e, endpoint=request.endpoint)
            return GatewayResponse(GatewayStatus.UNAUTHENTICATED)

        if user is None:
            logger.warning(f"Invalid session presented by {request.identifier} for {request.endpoint}")
            self.audit.log(
                action, resource_id, False,
                user_id=request.principal_id,
                ip_address=ip_address,
                user_agent=user_agent,
                error="invalid_session",
            )
            self._record_auth_failure(request.identifier, ip_address, user_agent)
            return GatewayResponse(GatewayStatus.UNAUTHENTICATED)

        if not can_access_endpoint(user.role, request.endpoint):
            logger.warning(f"User {user.user_id} forbidden on {request.endpoint}")
            self.audit.log(
                action, resource_id, False,
                user_id=user.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                error="forbidden",
            )
            return GatewayResponse(GatewayStatus.FORBIDDEN, user=user)

        self.audit.log(
            action, resource_id, True,
            user_id=user.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return GatewayResponse(GatewayStatus.ALLOWED, user=user)

    def _record_auth_failure(
        self,
        identifier: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        affected_user_id: Optional[str] = None,
    ) -> None:
        count = self.failures.record_failure(identifier)
        if count is None:
            return

        policy = self.config.escalation
        minutes = policy.window_ms // 60000
        try:
            self.incidents.report(
                incident_type=REPEATED_AUTH_FAILURE,
                severity=Severity.MEDIUM,
                description=f"{count} authentication failures from {identifier} within {minutes} minutes",
                affected_user_id=affected_user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                additional_data={
                    "identifier": identifier,
                    "failure_count": count,
                    "window_ms": policy.window_ms,
                },
            )
        except StoreUnavailable as e:
            self.channel.report("incident_write_failed", e, identifier=identifier)

    # ========================================================================
    # Session lifecycle
    # ========================================================================

    def login(
        self,
        email: str,
        password: str,
        origin: str,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """
        Authenticate credentials and open a session.

        Args:
            email: Login email
            password: Plain text password
            origin: Caller network origin (rate limit key)
            user_agent: Caller user agent

        Returns:
            LoginResult with the new session on success

        Raises:
            StoreUnavailable: If the user directory cannot be read
        """
        ip_address = clean_ip_address(origin)
        user_agent = clean_user_agent(user_agent)

        decision = self.limiter.check(origin, LOGIN_ENDPOINT)
        if not decision.allowed:
            self.audit.log(
                AuditAction.VIEW, LOGIN_ENDPOINT, False,
                ip_address=ip_address, user_agent=user_agent, error="rate_limited",
            )
            return LoginResult(
                GatewayStatus.RATE_LIMITED,
                remaining=decision.remaining,
                reset_at=decision.reset_at,
            )

        user = self.directory.authenticate(email, password)
        if user is None:
            known = self.directory.find_by_email(email)
            known_id = known.user_id if known else None
            self.audit.log(
                AuditAction.VIEW, LOGIN_ENDPOINT, False,
                user_id=known_id,
                ip_address=ip_address,
                user_agent=user_agent,
                error="invalid_credentials",
            )
            self._record_auth_failure(origin, ip_address, user_agent, affected_user_id=known_id)
            return LoginResult(GatewayStatus.UNAUTHENTICATED)

        if self.config.single_session:
            superseded = self.sessions.revoke_all_for_user(user.user_id)
            if superseded:
                self.audit.log(
                    AuditAction.UPDATE, "logout", True,
                    user_id=user.user_id, ip_address=ip_address, user_agent=user_agent,
                )

        session = self.sessions.create(user.user_id)
        self.directory.record_login(user)
        self.audit.log(
            AuditAction.VIEW, LOGIN_ENDPOINT, True,
            user_id=user.user_id, ip_address=ip_address, user_agent=user_agent,
        )

        logger.success(f"User logged in: {user.email}")
        return LoginResult(GatewayStatus.ALLOWED, session=session, user=user)

    def logout(self, token: Optional[str], origin: str, user_agent: Optional[str] = None) -> bool:
        """
        Revoke the presented session. Unknown or inactive tokens are a no-op.

        Returns:
            True if a session was revoked
        """
        session = self.sessions.get(token) if token else None
        if session is None or not self.sessions.revoke(token):
            return False

        self.audit.log(
            AuditAction.UPDATE, "logout", True,
            user_id=session.user_id,
            ip_address=clean_ip_address(origin),
            user_agent=clean_user_agent(user_agent),
        )
        return True

    def register(
        self,
        email: str,
        name: str,
        password: str,
        origin: str,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """
        Self-service sign-up, rate limited per origin.

        Returns:
            LoginResult carrying the new user (no session is opened)

        Raises:
            ValidationError: If the input is rejected or the email is taken
        """
        ip_address = clean_ip_address(origin)
        user_agent = clean_user_agent(user_agent)

        decision = self.limiter.check(origin, REGISTER_ENDPOINT)
        if not decision.allowed:
            self.audit.log(
                AuditAction.UPDATE, REGISTER_ENDPOINT, False,
                ip_address=ip_address, user_agent=user_agent, error="rate_limited",
            )
            return LoginResult(
                GatewayStatus.RATE_LIMITED,
                remaining=decision.remaining,
                reset_at=decision.reset_at,
            )

        try:
            user = self.directory.register(email, name, password)
        except ValidationError:
            self.audit.log(
                AuditAction.UPDATE, REGISTER_ENDPOINT, False,
                ip_address=ip_address, user_agent=user_agent, error="rejected",
            )
            raise

        self.audit.log(
            AuditAction.UPDATE, REGISTER_ENDPOINT, True,
            user_id=user.user_id, ip_address=ip_address, user_agent=user_agent,
        )
        return LoginResult(GatewayStatus.ALLOWED, user=user)

    def revoke_all_for_user(self, user_id: str, actor: User) -> int:
        """
        Forced revocation of every session a user holds.

        Raises:
            PermissionDeniedError: If the actor may not revoke sessions
        """
        require_permission(actor, Permission.REVOKE_SESSIONS)
        revoked = self.sessions.revoke_all_for_user(user_id)
        self.audit.log(AuditAction.UPDATE, f"user:{user_id}", True, user_id=actor.user_id)
        return revoked

    def set_user_active(self, user_id: str, active: bool, actor: User) -> User:
        """
        Activate or deactivate an account; deactivation revokes its sessions.

        Raises:
            PermissionDeniedError: If the actor may not manage users
            ValidationError: If the user is unknown or the actor targets itself
        """
        require_permission(actor, Permission.MANAGE_USERS)
        if actor.user_id == user_id and not active:
            raise ValidationError("Cannot deactivate your own account")

        user = self.directory.set_active(user_id, active)
        if user is None:
            raise ValidationError("User not found")
        if not active:
            self.sessions.revoke_all_for_user(user_id)

        self.audit.log(AuditAction.UPDATE, f"user:{user_id}", True, user_id=actor.user_id)
        return user

    def set_user_role(self, user_id: str, role: UserRole, actor: User) -> User:
        """
        Change a user's role.

        Raises:
            PermissionDeniedError: If the actor may not manage users
            ValidationError: If the user is unknown or an admin demotes itself
        """
        require_permission(actor, Permission.MANAGE_USERS)
        if actor.user_id == user_id and role != UserRole.ADMIN:
            raise ValidationError("Cannot change your own admin role")

        user = self.directory.set_role(user_id, role)
        if user is None:
            raise ValidationError("User not found")

        self.audit.log(AuditAction.UPDATE, f"user:{user_id}", True, user_id=actor.user_id)
        return user
