"""
Role-based access control.

This module provides:
- Permission definitions for platform endpoints and operator features
- Role-to-permission mapping for the two platform roles
- Endpoint-to-permission mapping consulted by the gateway
"""

from enum import Enum
from typing import Dict, Optional, Set

from .models import User, UserRole


class Permission(str, Enum):
    """
    Enum of all permissions.

    Each permission controls access to a specific endpoint group or feature.
    """
    # Files
    VIEW_FILES = "view_files"
    UPLOAD_FILES = "upload_files"
    DOWNLOAD_FILES = "download_files"
    DELETE_FILES = "delete_files"

    # Own account
    VIEW_PROFILE = "view_profile"
    EDIT_PROFILE = "edit_profile"
    VIEW_OWN_AUDIT = "view_own_audit"

    # Admin functions
    VIEW_AUDIT_LOG = "view_audit_log"       # Read everyone's audit trail
    MANAGE_INCIDENTS = "manage_incidents"   # Report and work security incidents
    MANAGE_USERS = "manage_users"           # Roles, activation
    REVOKE_SESSIONS = "revoke_sessions"     # Forced logout
    VIEW_SECURITY_HEALTH = "view_security_health"


_USER_PERMISSIONS: Set[Permission] = {
    Permission.VIEW_FILES,
    Permission.UPLOAD_FILES,
    Permission.DOWNLOAD_FILES,
    Permission.DELETE_FILES,
    Permission.VIEW_PROFILE,
    Permission.EDIT_PROFILE,
    Permission.VIEW_OWN_AUDIT,
}

# Map each role to its permissions
ROLE_PERMISSIONS: Dict[UserRole, Set[Permission]] = {
    UserRole.USER: _USER_PERMISSIONS,
    # Admin has everything a user has plus operator functions
    UserRole.ADMIN: _USER_PERMISSIONS | {
        Permission.VIEW_AUDIT_LOG,
        Permission.MANAGE_INCIDENTS,
        Permission.MANAGE_USERS,
        Permission.REVOKE_SESSIONS,
        Permission.VIEW_SECURITY_HEALTH,
    },
}


# Map endpoint names to required permissions; endpoints not listed only
# require a valid session.
ENDPOINT_PERMISSIONS: Dict[str, Permission] = {
    "files.list": Permission.VIEW_FILES,
    "files.upload": Permission.UPLOAD_FILES,
    "files.download": Permission.DOWNLOAD_FILES,
    "files.delete": Permission.DELETE_FILES,
    "profile.view": Permission.VIEW_PROFILE,
    "profile.update": Permission.EDIT_PROFILE,
    "audit.own": Permission.VIEW_OWN_AUDIT,
    "admin.audit": Permission.VIEW_AUDIT_LOG,
    "admin.incidents": Permission.MANAGE_INCIDENTS,
    "admin.users": Permission.MANAGE_USERS,
    "admin.sessions": Permission.REVOKE_SESSIONS,
    "admin.security": Permission.VIEW_SECURITY_HEALTH,
}


class PermissionDeniedError(Exception):
    """
    Raised when a user attempts an action they don't have permission for.

    Attributes:
        user_id: The user who was denied
        action: The action that was denied
        required_permission: The permission that was required
    """

    def __init__(
        self,
        user_id: str,
        action: str,
        required_permission: Optional[Permission] = None,
    ):
        self.user_id = user_id
        self.action = action
        self.required_permission = required_permission

        message = f"User {user_id} denied permission for action: {action}"
        if required_permission:
            message += f" (requires: {required_permission.value})"

        super().__init__(message)


def has_permission(role: UserRole, permission: Permission) -> bool:
    """
    Check if a role has a specific permission.

    Args:
        role: The user's role
        permission: The permission to check

    Returns:
        bool: True if the role has the permission, False otherwise
    """
    return permission in ROLE_PERMISSIONS.get(role, set())


def can_access_endpoint(role: UserRole, endpoint: str) -> bool:
    """Endpoints without a mapped permission are open to any valid session."""
    required = ENDPOINT_PERMISSIONS.get(endpoint)
    if required is None:
        return True
    return has_permission(role, required)


def require_permission(user: User, permission: Permission) -> None:
    """
    Require a permission, raising PermissionDeniedError if not authorized.

    Raises:
        PermissionDeniedError: If the user doesn't have the permission
    """
    if not user.is_active or not has_permission(user.role, permission):
        raise PermissionDeniedError(
            user_id=user.user_id,
            action=permission.value,
            required_permission=permission,
        )
