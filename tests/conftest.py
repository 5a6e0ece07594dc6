"""
Shared fixtures: a manual clock, a throwaway SQLite file and cheap bcrypt.
"""

import pytest

from warden.clock import ManualClock
from warden.config import WardenConfig
from warden.database import SecurityDatabase
from warden.gateway import AuthGateway
from warden.identity import BcryptHasher, UserDirectory
from warden.models import UserRole
from warden.ops import OperationalErrorChannel

USER_PASSWORD = "Password123"
ADMIN_PASSWORD = "AdminPass123"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def hasher():
    return BcryptHasher(rounds=4)


@pytest.fixture
def config(tmp_path):
    return WardenConfig.from_mapping({
        "database_path": str(tmp_path / "warden.db"),
        "session_ttl_minutes": 60,
        "rate_limits": {
            "default": {"window_ms": 60000, "max_requests": 5},
        },
    }, environ={})


@pytest.fixture
def channel(clock):
    return OperationalErrorChannel(clock)


@pytest.fixture
def db(config):
    return SecurityDatabase(config.database_path)


@pytest.fixture
def directory(db, hasher, clock):
    return UserDirectory(db, hasher=hasher, clock=clock)


@pytest.fixture
def alice(directory):
    return directory.register("alice@example.com", "Alice", USER_PASSWORD)


@pytest.fixture
def admin(directory):
    return directory.register("admin@example.com", "Admin", ADMIN_PASSWORD, role=UserRole.ADMIN)


@pytest.fixture
def gateway(config, clock, hasher, channel):
    return AuthGateway.from_config(config, clock=clock, hasher=hasher, channel=channel)
