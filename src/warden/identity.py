"""
Identity provider.

The core consumes only the provider's verdict (user or no user) and the
principal's role. ``UserDirectory`` is the bundled SQLite-backed provider;
password hashing is pluggable through ``PasswordHasher``.
"""

import sqlite3
import uuid
from typing import List, Optional, Protocol, Tuple

import bcrypt
from loguru import logger

from .clock import Clock, SystemClock
from .database import SecurityDatabase
from .errors import ValidationError
from .models import User, UserRole
from .validation import check_password_strength, normalise_email, sanitise_name


class IdentityProvider(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def authenticate(self, email: str, password: str) -> Optional[User]:
        ...


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str:
        ...

    def verify(self, password: str, password_hash: str) -> bool:
        ...


class BcryptHasher:
    """
    bcrypt password hashing.

    Args:
        rounds: bcrypt cost factor (tests use the minimum, 4)
    """

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash(self, password: str) -> str:
        return bcrypt.hashpw(
            password.encode('utf-8'),
            bcrypt.gensalt(rounds=self.rounds)
        ).decode('utf-8')

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(
                password.encode('utf-8'),
                password_hash.encode('utf-8')
            )
        except ValueError:
            # Malformed stored hash
            return False


class UserDirectory:
    """
    User accounts backed by the security database.

    Handles registration, credential checks and account administration.
    """

    def __init__(
        self,
        db: SecurityDatabase,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize directory.

        Args:
            db: Security database
            hasher: Password hasher (default: BcryptHasher)
            clock: Time source for created_at / last_login
        """
        self.db = db
        self.hasher = hasher or BcryptHasher()
        self.clock = clock or SystemClock()

    def register(
        self,
        email: str,
        name: str,
        password: str,
        role: UserRole = UserRole.USER,
        email_verified: bool = False,
    ) -> User:
        """
        Create a new user after validating input.

        Args:
            email: Email address (login name)
            name: Display name
            password: Plain text password (will be hashed)
            role: Principal role
            email_verified: Whether the address is already verified

        Returns:
            Created User object

        Raises:
            ValidationError: If input is invalid or the email is taken
        """
        email = normalise_email(email)
        name = sanitise_name(name)
        check_password_strength(password)

        if self.db.get_user_by_email(email) is not None:
            raise ValidationError("User with this email already exists")

        user = User(
            user_id=str(uuid.uuid4()),
            email=email,
            name=name,
            role=role,
            is_active=True,
            email_verified=email_verified,
            created_at=self.clock.now(),
            password_hash=self.hasher.hash(password),
        )

        try:
            self.db.insert_user(user)
        except sqlite3.IntegrityError as e:
            raise ValidationError("User with this email already exists") from e

        logger.info(f"User created: {email} ({user.user_id}) with role: {role.value}")
        return user

    def create_first_admin(self, email: str, name: str, password: str) -> User:
        """
        Create the initial admin account.

        Raises:
            ValidationError: If an admin already exists or input is invalid
        """
        if self.db.has_admin():
            raise ValidationError("Admin user already exists")
        return self.register(email, name, password, role=UserRole.ADMIN, email_verified=True)

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get_user_by_id(user_id)

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """
        Check credentials.

        Returns:
            The active User if email and password match, None otherwise
        """
        try:
            email = normalise_email(email)
        except ValidationError:
            return None

        user = self.db.get_user_by_email(email)
        if not user:
            logger.warning(f"Login failed: no user for '{email}'")
            return None

        if not user.is_active:
            logger.warning(f"Login failed: user '{email}' is inactive")
            return None

        if not self.hasher.verify(password, user.password_hash):
            logger.warning(f"Login failed: invalid password for '{email}'")
            return None

        return user

    def find_by_email(self, email: str) -> Optional[User]:
        try:
            return self.db.get_user_by_email(normalise_email(email))
        except ValidationError:
            return None

    def record_login(self, user: User) -> None:
        user.last_login = self.clock.now()
        self.db.update_user(user)

    def set_active(self, user_id: str, active: bool) -> Optional[User]:
        user = self.db.get_user_by_id(user_id)
        if user is None:
            return None
        user.is_active = active
        self.db.update_user(user)
        logger.info(f"User {user.email} {'activated' if active else 'deactivated'}")
        return user

    def set_role(self, user_id: str, role: UserRole) -> Optional[User]:
        user = self.db.get_user_by_id(user_id)
        if user is None:
            return None
        user.role = role
        self.db.update_user(user)
        logger.info(f"User {user.email} role set to {role.value}")
        return user

    def list_users(self, limit: int = 50, offset: int = 0) -> Tuple[List[User], int]:
        return self.db.list_users(limit=limit, offset=offset)
