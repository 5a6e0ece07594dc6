"""
Input validation and sanitisation.

Checks applied to registration input and to the request context (IP address,
user agent) before it is written into the audit log.
"""

import ipaddress
import re
from typing import Optional

from .errors import ValidationError

MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 100
MAX_USER_AGENT_LENGTH = 500
MIN_PASSWORD_LENGTH = 8

_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_UNSAFE_CHARS_RE = re.compile(r"[<>\"'&\n\r\t]")
_SCRIPT_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def normalise_email(value: str) -> str:
    """
    Return the canonical (trimmed, lower-case) form of an email address.

    Raises:
        ValidationError: If the address is empty, too long, or malformed
    """
    candidate = (value or "").strip().lower()
    if not candidate:
        raise ValidationError("Email is required")
    if len(candidate) > MAX_EMAIL_LENGTH:
        raise ValidationError("Email address is too long")
    if not _EMAIL_RE.match(candidate):
        raise ValidationError("Invalid email format")
    return candidate


def sanitise_name(value: str) -> str:
    """Trim a display name and strip markup characters."""
    name = (value or "").strip()
    if not name:
        raise ValidationError("Name cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name is too long (max {MAX_NAME_LENGTH} characters)")
    sanitised = _UNSAFE_CHARS_RE.sub("", name)
    if any(pattern.search(sanitised) for pattern in _SCRIPT_PATTERNS):
        raise ValidationError("Name contains invalid content")
    return sanitised


def check_password_strength(password: str) -> None:
    """
    Enforce the password policy.

    Raises:
        ValidationError: Describing the first rule the password breaks
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        raise ValidationError("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        raise ValidationError("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        raise ValidationError("Password must contain at least one number")


def clean_ip_address(value: Optional[str]) -> Optional[str]:
    """
    Normalise an IP address, or return None if it is absent or malformed.

    Proxies may append a chain ("client, proxy1"); only the first hop is kept.
    """
    if not value:
        return None
    candidate = value.split(",")[0].strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def clean_user_agent(value: Optional[str]) -> Optional[str]:
    """Strip control characters and cap the length of a user-agent string."""
    if not value:
        return None
    cleaned = _CONTROL_CHARS_RE.sub("", value).strip()
    if not cleaned:
        return None
    return cleaned[:MAX_USER_AGENT_LENGTH]


def token_hint(token: Optional[str]) -> str:
    """Short, non-secret prefix of a token for log lines."""
    if not token:
        return "<none>"
    return f"{token[:8]}..."
