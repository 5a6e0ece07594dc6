"""
SQLite durable store for the security subsystem.

Thread-safe storage for users, sessions, audit log entries and security
incidents. Every SQLite failure surfaces as StoreUnavailable.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from loguru import logger

from .errors import StoreUnavailable
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


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO strings so lexical order equals time order in indexes.
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SecurityDatabase:
    """
    Thread-safe security database.

    Manages users, sessions, audit entries and incidents using SQLite.
    All operations are protected by threading.RLock for thread safety.
    """

    def __init__(self, db_path: Path, timeout: float = 5.0):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._lock = threading.RLock()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a connection under the lock, commit on success, always close."""
        with self._lock:
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
            except sqlite3.Error as e:
                raise StoreUnavailable(operation, e) from e
            try:
                conn.row_factory = sqlite3.Row
                yield conn
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                raise
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreUnavailable(operation, e) from e
            finally:
                conn.close()

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._connection("init") as conn:
            cursor = conn.cursor()

            # Users table
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    email TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    email_verified INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    last_login TEXT
                )
            """)

            # Sessions table (rows are never deleted)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token TEXT UNIQUE NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """)

            # Audit log (append-only)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    resource_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT,
                    error TEXT
                )
            """)

            # Security incidents
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS security_incidents (
                    incident_id TEXT PRIMARY KEY,
                    incident_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    description TEXT NOT NULL,
                    reported_by TEXT NOT NULL,
                    affected_user_id TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    additional_data TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    resolved_by TEXT,
                    resolved_at TEXT,
                    notes TEXT
                )
            """)

            # Indexes for the access paths the services query by
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_logs(user_id, timestamp)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_resource ON audit_logs(resource_id, timestamp)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_logs(timestamp)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_incidents_created ON security_incidents(created_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_incidents_severity ON security_incidents(severity)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_incidents_status ON security_incidents(status)")
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_incidents_affected ON security_incidents(affected_user_id)"
            )

        logger.info(f"Security database initialized: {self.db_path}")

    # ========================================================================
    # User Operations
    # ========================================================================

    def insert_user(self, user: User) -> User:
        """
        Insert a new user.

        Raises:
            sqlite3.IntegrityError: If the email already exists
        """
        with self._connection("insert_user") as conn:
            conn.execute("""
                INSERT INTO users (user_id, email, name, password_hash, role,
                                   is_active, email_verified, created_at, last_login)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                user.user_id,
                user.email,
                user.name,
                user.password_hash,
                user.role.value,
                1 if user.is_active else 0,
                1 if user.email_verified else 0,
                _ts(user.created_at),
                _ts(user.last_login),
            ))
        return user

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._connection("get_user_by_id") as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connection("get_user_by_email") as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 50, offset: int = 0) -> Tuple[List[User], int]:
        """
        Page through users, newest first.

        Returns:
            (users, total) tuple
        """
        with self._connection("list_users") as conn:
            total = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [self._row_to_user(row) for row in rows], total

    def has_admin(self) -> bool:
        with self._connection("has_admin") as conn:
            row = conn.execute("SELECT 1 FROM users WHERE role = ? LIMIT 1", (UserRole.ADMIN.value,)).fetchone()
        return row is not None

    def count_active_users(self) -> int:
        with self._connection("count_active_users") as conn:
            return conn.execute("SELECT COUNT(*) FROM users WHERE is_active = 1").fetchone()[0]

    def update_user(self, user: User) -> bool:
        """
        Update mutable user fields (name, role, active flags, last login).

        Returns:
            True if a row was updated
        """
        with self._connection("update_user") as conn:
            cursor = conn.execute("""
                UPDATE users
                SET name = ?, role = ?, is_active = ?, email_verified = ?, last_login = ?
                WHERE user_id = ?
            """, (
                user.name,
                user.role.value,
                1 if user.is_active else 0,
                1 if user.email_verified else 0,
                _ts(user.last_login),
                user.user_id,
            ))
            success = cursor.rowcount > 0

        if success:
            logger.info(f"User updated: {user.email}")
        return success

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            user_id=row["user_id"],
            email=row["email"],
            name=row["name"],
            role=UserRole(row["role"]),
            is_active=bool(row["is_active"]),
            email_verified=bool(row["email_verified"]),
            created_at=_dt(row["created_at"]),
            last_login=_dt(row["last_login"]),
            password_hash=row["password_hash"],
        )

    # ========================================================================
    # Session Operations
    # ========================================================================

    def insert_session(self, session: Session) -> None:
        with self._connection("insert_session") as conn:
            conn.execute("""
                INSERT INTO sessions (session_id, user_id, token, created_at, expires_at, is_active)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                session.session_id,
                session.user_id,
                session.token,
                _ts(session.created_at),
                _ts(session.expires_at),
                1 if session.is_active else 0,
            ))

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connection("get_session_by_token") as conn:
            row = conn.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions_for_user(self, user_id: str, active_only: bool = False) -> List[Session]:
        query = "SELECT * FROM sessions WHERE user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at"
        with self._connection("list_sessions_for_user") as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._row_to_session(row) for row in rows]

    def deactivate_session(self, token: str) -> bool:
        """
        Flip a session to inactive.

        Returns:
            True if an active session was deactivated
        """
        with self._connection("deactivate_session") as conn:
            cursor = conn.execute(
                "UPDATE sessions SET is_active = 0 WHERE token = ? AND is_active = 1",
                (token,),
            )
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            session_id=row["session_id"],
            user_id=row["user_id"],
            token=row["token"],
            created_at=_dt(row["created_at"]),
            expires_at=_dt(row["expires_at"]),
            is_active=bool(row["is_active"]),
        )

    # ========================================================================
    # Audit Operations
    # ========================================================================

    def insert_audit_entry(self, entry: AuditLogEntry) -> int:
        """
        Append an audit entry.

        Returns:
            The assigned entry_id (monotonically increasing)
        """
        with self._connection("insert_audit_entry") as conn:
            cursor = conn.execute("""
                INSERT INTO audit_logs (user_id, resource_id, action, success, timestamp,
                                        ip_address, user_agent, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.user_id,
                entry.resource_id,
                entry.action.value,
                1 if entry.success else 0,
                _ts(entry.timestamp),
                entry.ip_address,
                entry.user_agent,
                entry.error,
            ))
            return cursor.lastrowid

    def query_audit_entries(
        self,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        """
        Filtered read of the audit log.

        ``since`` is inclusive and ``until`` exclusive. Entries come back in
        write order; timestamps only bound the range.
        """
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if resource_id is not None:
            clauses.append("resource_id = ?")
            params.append(resource_id)
        if action is not None:
            clauses.append("action = ?")
            params.append(action.value)
        if success is not None:
            clauses.append("success = ?")
            params.append(1 if success else 0)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append("timestamp < ?")
            params.append(_ts(until))

        query = "SELECT * FROM audit_logs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        direction = "DESC" if descending else "ASC"
        query += f" ORDER BY entry_id {direction}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connection("query_audit_entries") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_audit_entry(row) for row in rows]

    def count_failures_by_user(
        self,
        since: datetime,
        action: Optional[AuditAction] = None,
        resource_id: Optional[str] = None,
    ) -> Dict[str, int]:
        """Failed entries since ``since`` grouped by user. Anonymous entries are skipped."""
        query = (
            "SELECT user_id, COUNT(*) AS failures FROM audit_logs"
            " WHERE success = 0 AND user_id IS NOT NULL AND timestamp >= ?"
        )
        params: List[Any] = [_ts(since)]
        if action is not None:
            query += " AND action = ?"
            params.append(action.value)
        if resource_id is not None:
            query += " AND resource_id = ?"
            params.append(resource_id)
        query += " GROUP BY user_id"

        with self._connection("count_failures_by_user") as conn:
            rows = conn.execute(query, params).fetchall()
        return {row["user_id"]: row["failures"] for row in rows}

    @staticmethod
    def _row_to_audit_entry(row: sqlite3.Row) -> AuditLogEntry:
        return AuditLogEntry(
            entry_id=row["entry_id"],
            user_id=row["user_id"],
            resource_id=row["resource_id"],
            action=AuditAction(row["action"]),
            success=bool(row["success"]),
            timestamp=_dt(row["timestamp"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            error=row["error"],
        )

    # ========================================================================
    # Incident Operations
    # ========================================================================

    def insert_incident(self, incident: SecurityIncident) -> None:
        with self._connection("insert_incident") as conn:
            conn.execute("""
                INSERT INTO security_incidents (
                    incident_id, incident_type, severity, description, reported_by,
                    affected_user_id, ip_address, user_agent, additional_data, status,
                    created_at, updated_at, resolved_by, resolved_at, notes
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                incident.incident_id,
                incident.incident_type,
                incident.severity.value,
                incident.description,
                incident.reported_by,
                incident.affected_user_id,
                incident.ip_address,
                incident.user_agent,
                json.dumps(incident.additional_data) if incident.additional_data is not None else None,
                incident.status.value,
                _ts(incident.created_at),
                _ts(incident.updated_at),
                incident.resolved_by,
                _ts(incident.resolved_at),
                incident.notes,
            ))

    def get_incident(self, incident_id: str) -> Optional[SecurityIncident]:
        with self._connection("get_incident") as conn:
            row = conn.execute(
                "SELECT * FROM security_incidents WHERE incident_id = ?", (incident_id,)
            ).fetchone()
        return self._row_to_incident(row) if row else None

    def update_incident_workflow(self, incident: SecurityIncident, expected_status: IncidentStatus) -> bool:
        """
        Persist a status transition.

        Only workflow columns are written; severity, reporter and description
        are never updated. The write is conditional on the stored status still
        being ``expected_status``.

        Returns:
            True if the row was updated
        """
        with self._connection("update_incident_workflow") as conn:
            cursor = conn.execute("""
                UPDATE security_incidents
                SET status = ?, updated_at = ?, resolved_by = ?, resolved_at = ?, notes = ?
                WHERE incident_id = ? AND status = ?
            """, (
                incident.status.value,
                _ts(incident.updated_at),
                incident.resolved_by,
                _ts(incident.resolved_at),
                incident.notes,
                incident.incident_id,
                expected_status.value,
            ))
            return cursor.rowcount > 0

    def list_incidents(
        self,
        severity: Optional[Severity] = None,
        status: Optional[IncidentStatus] = None,
        affected_user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityIncident]:
        clauses: List[str] = []
        params: List[Any] = []
        if severity is not None:
            clauses.append("severity = ?")
            params.append(severity.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if affected_user_id is not None:
            clauses.append("affected_user_id = ?")
            params.append(affected_user_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(since))

        query = "SELECT * FROM security_incidents"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connection("list_incidents") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_incident(row) for row in rows]

    @staticmethod
    def _row_to_incident(row: sqlite3.Row) -> SecurityIncident:
        additional = row["additional_data"]
        return SecurityIncident(
            incident_id=row["incident_id"],
            incident_type=row["incident_type"],
            severity=Severity(row["severity"]),
            description=row["description"],
            reported_by=row["reported_by"],
            affected_user_id=row["affected_user_id"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            additional_data=json.loads(additional) if additional else None,
            status=IncidentStatus(row["status"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            resolved_by=row["resolved_by"],
            resolved_at=_dt(row["resolved_at"]),
            notes=row["notes"],
        )
