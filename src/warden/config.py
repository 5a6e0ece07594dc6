"""
Runtime configuration.

Loaded from YAML, then overridden by ``WARDEN_*`` environment variables for
the handful of deployment-specific scalars.
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import AuditAction


class RateLimitRule(BaseModel):
    """Fixed-window quota for one endpoint."""

    window_ms: int = Field(gt=0)
    max_requests: int = Field(gt=0)

    @property
    def window(self) -> timedelta:
        return timedelta(milliseconds=self.window_ms)


class EscalationPolicy(BaseModel):
    """Repeated-failure threshold that raises a security incident."""

    count: int = Field(default=5, gt=0)
    window_ms: int = Field(default=15 * 60 * 1000, gt=0)

    @property
    def window(self) -> timedelta:
        return timedelta(milliseconds=self.window_ms)


class IncidentPolicy(BaseModel):
    allow_direct_resolve: bool = False


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    minute = 60 * 1000
    return {
        "login": RateLimitRule(window_ms=15 * minute, max_requests=5),
        "auth.validate": RateLimitRule(window_ms=minute, max_requests=10),
        "register": RateLimitRule(window_ms=60 * minute, max_requests=3),
        "files.upload": RateLimitRule(window_ms=60 * minute, max_requests=20),
        "files.download": RateLimitRule(window_ms=60 * minute, max_requests=100),
        "default": RateLimitRule(window_ms=minute, max_requests=60),
    }


def _default_endpoint_actions() -> Dict[str, AuditAction]:
    return {
        "files.upload": AuditAction.UPLOAD,
        "files.download": AuditAction.DOWNLOAD,
        "files.delete": AuditAction.DELETE,
        "files.update": AuditAction.UPDATE,
        "profile.update": AuditAction.UPDATE,
    }


class WardenConfig(BaseModel):
    """
    Top-level configuration.

    Attributes:
        database_path: SQLite file holding sessions, audit log and incidents
        store_timeout_seconds: SQLite busy timeout before StoreUnavailable
        session_ttl_minutes: Lifetime of a new session
        single_session: Deactivate a user's earlier sessions on login
        rate_limits: Endpoint name -> quota; must contain "default"
        reap_interval_seconds: How often expired windows are purged
        reap_grace_windows: Window durations an elapsed window is kept for
        escalation: Repeated authentication failure threshold
        incidents: Incident workflow policy
        endpoint_actions: Endpoint name -> audit action (default "view")
        system_principal_id: reported_by for automatically raised incidents
    """

    database_path: Path = Path("data/warden.db")
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    session_ttl_minutes: int = Field(default=24 * 60, gt=0)
    single_session: bool = True
    rate_limits: Dict[str, RateLimitRule] = Field(default_factory=_default_rate_limits)
    reap_interval_seconds: float = Field(default=300.0, gt=0)
    reap_grace_windows: int = Field(default=2, ge=0)
    escalation: EscalationPolicy = Field(default_factory=EscalationPolicy)
    incidents: IncidentPolicy = Field(default_factory=IncidentPolicy)
    endpoint_actions: Dict[str, AuditAction] = Field(default_factory=_default_endpoint_actions)
    system_principal_id: str = "system"
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    host: str = "127.0.0.1"
    port: int = 8080
    cors_origins: List[str] = Field(default_factory=list)

    @field_validator("rate_limits")
    @classmethod
    def _require_default_rule(cls, value: Dict[str, RateLimitRule]) -> Dict[str, RateLimitRule]:
        if "default" not in value:
            raise ValueError("rate_limits must define a 'default' entry")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        return value.upper()

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.session_ttl_minutes)

    @classmethod
    def from_yaml(
        cls,
        path: Union[str, Path],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "WardenConfig":
        """
        Load configuration from a YAML file.

        Args:
            path: YAML file; a top-level ``warden:`` key is unwrapped if present
            environ: Environment for overrides (default: os.environ)

        Returns:
            Validated WardenConfig
        """
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if "warden" in data:
            data = data["warden"]
        return cls.from_mapping(data, environ)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "WardenConfig":
        merged = dict(data)
        env = os.environ if environ is None else environ
        for field_name in ("database_path", "log_level", "host", "port"):
            key = f"WARDEN_{field_name.upper()}"
            if key in env:
                merged[field_name] = env[key]

        if "rate_limits" in merged:
            # A partial mapping extends the built-in quotas rather than replacing them.
            limits = {name: rule for name, rule in _default_rate_limits().items()}
            limits.update(merged["rate_limits"] or {})
            merged["rate_limits"] = limits

        return cls.model_validate(merged)
