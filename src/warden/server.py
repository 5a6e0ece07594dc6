"""
HTTP API for the auth gateway.

Exposes login/logout, session validation, rate limit checks, audit queries
and incident management over aiohttp. Every protected route goes through
AuthGateway.handle, so it is rate limited and audited like any other
endpoint.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web
from loguru import logger

from .audit import AuditQuery
from .clock import to_ms
from .errors import (
    IncidentClosed,
    IncidentNotFound,
    InvalidSession,
    InvalidTransition,
    RateLimited,
    StoreUnavailable,
    ValidationError,
)
from .gateway import AuthGateway, GatewayStatus, InboundRequest
from .models import (
    AuditAction,
    AuditLogEntry,
    IncidentStatus,
    SecurityIncident,
    Session,
    Severity,
    User,
)
from .permissions import Permission, PermissionDeniedError, require_permission
from .rate_limiter import RateLimitDecision

GATEWAY_KEY = web.AppKey("gateway", AuthGateway)


# ============================================================================
# Serialization
# ============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        'user_id': user.user_id,
        'email': user.email,
        'name': user.name,
        'role': user.role.value,
        'is_admin': user.is_admin,
        'is_active': user.is_active,
        'email_verified': user.email_verified,
        'last_login': _iso(user.last_login),
    }


def session_to_dict(session: Session) -> Dict[str, Any]:
    return {
        'session_id': session.session_id,
        'token': session.token,
        'created_at': _iso(session.created_at),
        'expires_at': _iso(session.expires_at),
    }


def entry_to_dict(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        'entry_id': entry.entry_id,
        'user_id': entry.user_id,
        'resource_id': entry.resource_id,
        'action': entry.action.value,
        'success': entry.success,
        'timestamp': _iso(entry.timestamp),
        'ip_address': entry.ip_address,
        'user_agent': entry.user_agent,
        'error': entry.error,
    }


def incident_to_dict(incident: SecurityIncident) -> Dict[str, Any]:
    return {
        'incident_id': incident.incident_id,
        'incident_type': incident.incident_type,
        'severity': incident.severity.value,
        'status': incident.status.value,
        'description': incident.description,
        'reported_by': incident.reported_by,
        'affected_user_id': incident.affected_user_id,
        'ip_address': incident.ip_address,
        'user_agent': incident.user_agent,
        'additional_data': incident.additional_data,
        'created_at': _iso(incident.created_at),
        'updated_at': _iso(incident.updated_at),
        'resolved_by': incident.resolved_by,
        'resolved_at': _iso(incident.resolved_at),
        'notes': incident.notes,
    }


def _rate_limited_response(gateway: AuthGateway, decision: RateLimitDecision) -> web.Response:
    retry_ms = max(to_ms(decision.reset_at - gateway.clock.now()), 0)
    return web.json_response({
        'success': False,
        'error': 'rate_limited',
        'remaining': decision.remaining,
        'reset_at': _iso(decision.reset_at),
        'retry_after_ms': retry_ms,
    }, status=429, headers={'Retry-After': str((retry_ms + 999) // 1000)})


# ============================================================================
# Request helpers
# ============================================================================

def _origin(request: web.Request) -> str:
    return request.remote or "unknown"


def _bearer_token(request: web.Request) -> Optional[str]:
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    return auth_header[7:].strip() or None


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _parse_datetime(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: expected ISO 8601 timestamp") from e
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_bool(value: Optional[str], name: str) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.lower()
    if lowered in ('true', '1', 'yes'):
        return True
    if lowered in ('false', '0', 'no'):
        return False
    raise ValidationError(f"Invalid {name}: expected true or false")


def _parse_int(value: Optional[str], name: str, default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: expected an integer") from e
    if parsed <= 0:
        raise ValidationError(f"Invalid {name}: must be positive")
    return parsed


def _parse_enum(enum_cls, value: Optional[str], name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: {value}") from e


async def _authorize(request: web.Request, endpoint: str, resource_id: Optional[str] = None) -> User:
    """
    Run the request through the gateway.

    Raises:
        RateLimited, InvalidSession, PermissionDeniedError: mapped to 429/401/403
    """
    gateway = request.app[GATEWAY_KEY]
    response = await asyncio.to_thread(gateway.handle, InboundRequest(
        endpoint=endpoint,
        origin=_origin(request),
        token=_bearer_token(request),
        user_agent=request.headers.get('User-Agent'),
        resource_id=resource_id,
    ))

    if response.status == GatewayStatus.RATE_LIMITED:
        rule = gateway.limiter.rule_for(endpoint)
        raise RateLimited(RateLimitDecision(False, response.remaining, response.reset_at, rule.max_requests))
    if response.status == GatewayStatus.UNAUTHENTICATED:
        raise InvalidSession()
    if response.status == GatewayStatus.FORBIDDEN:
        raise PermissionDeniedError(response.user.user_id, endpoint)
    return response.user


# ============================================================================
# Handlers
# ============================================================================

async def handle_login(request: web.Request) -> web.Response:
    """
    Handle login request.

    POST /api/auth/login
    Body: {"email": "...", "password": "..."}
    Returns: {"success": true, "session": {...}, "user": {...}}
    """
    gateway = request.app[GATEWAY_KEY]
    data = await _json_body(request)
    email = str(data.get('email', '')).strip()
    password = str(data.get('password', ''))

    if not email or not password:
        raise ValidationError("Email and password required")

    result = await asyncio.to_thread(
        gateway.login, email, password, _origin(request), request.headers.get('User-Agent')
    )

    if result.status == GatewayStatus.RATE_LIMITED:
        rule = gateway.limiter.rule_for("login")
        return _rate_limited_response(
            gateway, RateLimitDecision(False, result.remaining, result.reset_at, rule.max_requests)
        )
    if result.status != GatewayStatus.ALLOWED:
        return web.json_response({
            'success': False,
            'error': 'Invalid email or password'
        }, status=401)

    return web.json_response({
        'success': True,
        'session': session_to_dict(result.session),
        'user': user_to_dict(result.user),
    })


async def handle_register(request: web.Request) -> web.Response:
    """
    Handle registration request.

    POST /api/auth/register
    Body: {"email": "...", "name": "...", "password": "..."}
    Returns: {"success": true, "user": {...}} with status 201
    """
    gateway = request.app[GATEWAY_KEY]
    data = await _json_body(request)

    result = await asyncio.to_thread(
        gateway.register,
        str(data.get('email', '')),
        str(data.get('name', '')),
        str(data.get('password', '')),
        _origin(request),
        request.headers.get('User-Agent'),
    )

    if result.status == GatewayStatus.RATE_LIMITED:
        rule = gateway.limiter.rule_for("register")
        return _rate_limited_response(
            gateway, RateLimitDecision(False, result.remaining, result.reset_at, rule.max_requests)
        )
    return web.json_response({'success': True, 'user': user_to_dict(result.user)}, status=201)


async def handle_logout(request: web.Request) -> web.Response:
    """
    Handle logout request.

    POST /api/auth/logout
    Headers: Authorization: Bearer <token>
    Returns: {"success": true}
    """
    gateway = request.app[GATEWAY_KEY]
    token = _bearer_token(request)
    if token is None:
        raise InvalidSession()

    revoked = await asyncio.to_thread(
        gateway.logout, token, _origin(request), request.headers.get('User-Agent')
    )
    return web.json_response({'success': True, 'revoked': revoked})


async def handle_validate(request: web.Request) -> web.Response:
    """
    Resolve the presented bearer token to its user.

    POST /api/auth/validate
    Returns: {"success": true, "user": {...}} or 401
    """
    user = await _authorize(request, "auth.validate")
    return web.json_response({'success': True, 'user': user_to_dict(user)})


async def handle_rate_limit(request: web.Request) -> web.Response:
    """
    Count one request against the caller's own quota.

    POST /api/rate-limit
    Body: {"endpoint": "..."}

    The caller's address is always the identifier, and the count lands in the
    client table, never in the quotas the gateway enforces.
    """
    gateway = request.app[GATEWAY_KEY]
    data = await _json_body(request)
    endpoint = str(data.get('endpoint', '')).strip()
    if not endpoint:
        raise ValidationError("endpoint is required")

    decision = gateway.client_limiter.enforce(_origin(request), endpoint)
    return web.json_response({
        'success': True,
        'allowed': True,
        'remaining': decision.remaining,
        'limit': decision.limit,
        'reset_at': _iso(decision.reset_at),
    })


async def handle_audit_query(request: web.Request) -> web.Response:
    """GET /api/audit?user_id=&resource_id=&action=&success=&since=&until=&limit="""
    await _authorize(request, "admin.audit")
    gateway = request.app[GATEWAY_KEY]
    params = request.query

    filters = AuditQuery(
        user_id=params.get('user_id'),
        resource_id=params.get('resource_id'),
        action=_parse_enum(AuditAction, params.get('action'), 'action'),
        success=_parse_bool(params.get('success'), 'success'),
        since=_parse_datetime(params.get('since'), 'since'),
        until=_parse_datetime(params.get('until'), 'until'),
        descending=True,
        limit=_parse_int(params.get('limit'), 'limit', 100),
    )
    entries = await asyncio.to_thread(gateway.audit.query, filters)
    return web.json_response({
        'success': True,
        'entries': [entry_to_dict(e) for e in entries],
    })


async def handle_audit_summary(request: web.Request) -> web.Response:
    """GET /api/audit/summary/{user_id}; users may read their own summary."""
    target = request.match_info['user_id']
    user = await _authorize(request, "audit.own")
    if user.user_id != target:
        require_permission(user, Permission.VIEW_AUDIT_LOG)

    summary = await asyncio.to_thread(request.app[GATEWAY_KEY].audit.activity_summary, target)
    return web.json_response({
        'success': True,
        'summary': {
            'user_id': summary.user_id,
            'total_actions': summary.total_actions,
            'successful_actions': summary.successful_actions,
            'failed_actions': summary.failed_actions,
            'last_activity': _iso(summary.last_activity),
            'action_counts': summary.action_counts,
        },
    })


async def handle_list_incidents(request: web.Request) -> web.Response:
    """GET /api/incidents?severity=&status=&affected_user_id=&limit="""
    await _authorize(request, "admin.incidents")
    params = request.query

    incidents = await asyncio.to_thread(
        request.app[GATEWAY_KEY].incidents.list,
        severity=_parse_enum(Severity, params.get('severity'), 'severity'),
        status=_parse_enum(IncidentStatus, params.get('status'), 'status'),
        affected_user_id=params.get('affected_user_id'),
        limit=_parse_int(params.get('limit'), 'limit', 50),
    )
    return web.json_response({
        'success': True,
        'incidents': [incident_to_dict(i) for i in incidents],
    })


async def handle_report_incident(request: web.Request) -> web.Response:
    """
    File an incident as the calling operator.

    POST /api/incidents
    Body: {"incident_type", "severity", "description", "affected_user_id"?, "additional_data"?}
    """
    user = await _authorize(request, "admin.incidents")
    data = await _json_body(request)
    severity = _parse_enum(Severity, data.get('severity'), 'severity')
    if severity is None:
        raise ValidationError("severity is required")

    additional = data.get('additional_data')
    if additional is not None and not isinstance(additional, dict):
        raise ValidationError("additional_data must be an object")

    incident = await asyncio.to_thread(
        request.app[GATEWAY_KEY].incidents.report,
        incident_type=str(data.get('incident_type', '')),
        severity=severity,
        description=str(data.get('description', '')),
        reporter=user,
        affected_user_id=data.get('affected_user_id'),
        ip_address=_origin(request),
        user_agent=request.headers.get('User-Agent'),
        additional_data=additional,
    )
    return web.json_response({'success': True, 'incident': incident_to_dict(incident)}, status=201)


async def handle_incident_status(request: web.Request) -> web.Response:
    """
    POST /api/incidents/{incident_id}/status
    Body: {"status": "...", "notes": "..."}
    """
    incident_id = request.match_info['incident_id']
    user = await _authorize(request, "admin.incidents", resource_id=f"incident:{incident_id}")
    data = await _json_body(request)
    status = _parse_enum(IncidentStatus, data.get('status'), 'status')
    if status is None:
        raise ValidationError("status is required")

    incident = await asyncio.to_thread(
        request.app[GATEWAY_KEY].incidents.transition,
        incident_id, status, user, notes=data.get('notes'),
    )
    return web.json_response({'success': True, 'incident': incident_to_dict(incident)})


async def handle_security_health(request: web.Request) -> web.Response:
    """GET /api/security/health"""
    await _authorize(request, "admin.security")
    metrics = await asyncio.to_thread(request.app[GATEWAY_KEY].monitor.health_metrics)
    return web.json_response({'success': True, **metrics.as_dict()})


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({'status': 'ok'})


# ============================================================================
# Middleware
# ============================================================================

@web.middleware
async def error_middleware(request, handler):
    """Map subsystem errors to JSON responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except RateLimited as e:
        return _rate_limited_response(request.app[GATEWAY_KEY], e.decision)
    except InvalidSession:
        return web.json_response({'success': False, 'error': 'unauthenticated'}, status=401)
    except PermissionDeniedError:
        return web.json_response({'success': False, 'error': 'forbidden'}, status=403)
    except ValidationError as e:
        return web.json_response({'success': False, 'error': str(e)}, status=400)
    except IncidentNotFound as e:
        return web.json_response({'success': False, 'error': str(e)}, status=404)
    except (IncidentClosed, InvalidTransition) as e:
        return web.json_response({'success': False, 'error': str(e)}, status=409)
    except StoreUnavailable as e:
        logger.error(f"{request.method} {request.path} failed: {e}")
        return web.json_response({'success': False, 'error': 'Service unavailable'}, status=503)


@web.middleware
async def cors_middleware(request, handler):
    """Add CORS headers for configured origins."""
    if request.method == 'OPTIONS':
        # Preflight request
        response = web.Response()
    else:
        response = await handler(request)

    allowed = request.app[GATEWAY_KEY].config.cors_origins
    origin = request.headers.get('Origin')
    if '*' in allowed:
        response.headers['Access-Control-Allow-Origin'] = '*'
    elif origin and origin in allowed:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Vary'] = 'Origin'
    else:
        return response

    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
    return response


# ============================================================================
# Application
# ============================================================================

async def _start_maintenance(app: web.Application) -> None:
    app[GATEWAY_KEY].start()


async def _stop_maintenance(app: web.Application) -> None:
    app[GATEWAY_KEY].stop()


def create_app(gateway: AuthGateway) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        gateway: Fully wired AuthGateway

    Returns:
        web.Application with routes and maintenance hooks installed
    """
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[GATEWAY_KEY] = gateway

    app.router.add_post('/api/auth/login', handle_login)
    app.router.add_post('/api/auth/register', handle_register)
    app.router.add_post('/api/auth/logout', handle_logout)
    app.router.add_post('/api/auth/validate', handle_validate)
    app.router.add_post('/api/rate-limit', handle_rate_limit)
    app.router.add_get('/api/audit', handle_audit_query)
    app.router.add_get('/api/audit/summary/{user_id}', handle_audit_summary)
    app.router.add_get('/api/incidents', handle_list_incidents)
    app.router.add_post('/api/incidents', handle_report_incident)
    app.router.add_post('/api/incidents/{incident_id}/status', handle_incident_status)
    app.router.add_get('/api/security/health', handle_security_health)
    app.router.add_get('/health', handle_health)

    app.on_startup.append(_start_maintenance)
    app.on_cleanup.append(_stop_maintenance)
    return app


def run(gateway: AuthGateway) -> None:
    """Serve until interrupted."""
    config = gateway.config
    logger.info(f"Starting auth API on {config.host}:{config.port}")
    web.run_app(create_app(gateway), host=config.host, port=config.port, print=None)
