"""
Session lifecycle.

Issues opaque bearer tokens, validates them against expiry and revocation,
and revokes them one at a time or per user. The store does not write audit
entries; callers do.
"""

import secrets
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import List, Optional

from loguru import logger

from .clock import Clock, SystemClock
from .database import SecurityDatabase
from .errors import InvalidSession, PrincipalInvalid
from .identity import IdentityProvider
from .locking import LockTable
from .models import Session, User
from .validation import token_hint

TOKEN_BYTES = 32


def generate_token() -> str:
    """256-bit URL-safe random token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


class SessionStore:
    """
    Session store with an in-memory token index over the durable store.

    The index holds immutable Session snapshots. A revoke swaps the snapshot
    under the token's shard lock, so a concurrent validate sees either the
    old or the new one, never a mix.
    """

    def __init__(
        self,
        db: SecurityDatabase,
        identity: IdentityProvider,
        ttl: timedelta,
        clock: Optional[Clock] = None,
        shards: int = 64,
    ):
        """
        Initialize store.

        Args:
            db: Durable store for sessions
            identity: Resolves user ids to principals
            ttl: Lifetime of new sessions (must be positive)
            clock: Time source
            shards: Number of lock stripes for the token index
        """
        if ttl <= timedelta(0):
            raise ValueError("Session TTL must be positive")
        self.db = db
        self.identity = identity
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self._index: LockTable[Session] = LockTable(shards)

    def create(self, user_id: str) -> Session:
        """
        Create a session for an active user.

        Args:
            user_id: Principal the session belongs to

        Returns:
            The new Session

        Raises:
            PrincipalInvalid: If the user is missing or inactive
        """
        user = self.identity.get_user(user_id)
        if user is None or not user.is_active:
            logger.warning(f"Session refused: principal {user_id} missing or inactive")
            raise PrincipalInvalid(user_id)

        now = self.clock.now()
        session = Session(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            token=generate_token(),
            created_at=now,
            expires_at=now + self.ttl,
            is_active=True,
        )

        shard = self._index.shard_for(session.token)
        with shard.lock:
            self.db.insert_session(session)
            shard.entries[session.token] = session

        logger.debug(f"Session created for {user_id} ({token_hint(session.token)})")
        return session

    def get(self, token: str) -> Optional[Session]:
        """Current snapshot for a token, active or not."""
        shard = self._index.shard_for(token)
        with shard.lock:
            session = shard.entries.get(token)
            if session is None:
                session = self.db.get_session_by_token(token)
                if session is not None:
                    shard.entries[token] = session
            return session

    def validate(self, token: Optional[str]) -> Optional[User]:
        """
        Resolve a token to its user.

        Returns:
            The User iff the session is active, unexpired and its principal is
            still active; None otherwise, without saying which check failed
        """
        if not token:
            return None

        session = self.get(token)
        if session is None or not session.is_valid_at(self.clock.now()):
            return None

        user = self.identity.get_user(session.user_id)
        if user is None or not user.is_active:
            return None
        return user

    def require(self, token: Optional[str]) -> User:
        """
        validate() for callers that want an exception.

        Raises:
            InvalidSession: If the token does not validate
        """
        user = self.validate(token)
        if user is None:
            raise InvalidSession()
        return user

    def revoke(self, token: Optional[str]) -> bool:
        """
        Deactivate a session. Idempotent.

        Returns:
            True if an active session was deactivated by this call
        """
        if not token:
            return False

        shard = self._index.shard_for(token)
        with shard.lock:
            session = shard.entries.get(token)
            if session is None:
                session = self.db.get_session_by_token(token)
            if session is None or not session.is_active:
                return False

            self.db.deactivate_session(token)
            shard.entries[token] = replace(session, is_active=False)

        logger.info(f"Session revoked for {session.user_id} ({token_hint(token)})")
        return True

    def revoke_all_for_user(self, user_id: str) -> int:
        """
        Deactivate every active session a user holds.

        Returns:
            Number of sessions deactivated
        """
        revoked = 0
        for session in self.db.list_sessions_for_user(user_id, active_only=True):
            if self.revoke(session.token):
                revoked += 1

        if revoked:
            logger.info(f"Revoked {revoked} session(s) for {user_id}")
        return revoked

    def list_for_user(self, user_id: str, active_only: bool = False) -> List[Session]:
        sessions = self.db.list_sessions_for_user(user_id, active_only=active_only)
        if active_only:
            now = self.clock.now()
            sessions = [s for s in sessions if s.is_valid_at(now)]
        return sessions

    def evict_cached(self) -> int:
        """
        Drop index entries that can never validate again.

        Rows stay in the durable store; only the in-memory cache shrinks.

        Returns:
            Number of cache entries dropped
        """
        now = self.clock.now()
        dropped = 0
        for shard in self._index.shards():
            with shard.lock:
                dead = [t for t, s in shard.entries.items() if not s.is_valid_at(now)]
                for token in dead:
                    del shard.entries[token]
                dropped += len(dead)
        return dropped
