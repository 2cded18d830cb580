from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from reportguard.logging import get_logger
from reportguard.storage.common import grant_needs_change, next_mfa_failure_state
from reportguard.storage.errors import ConstraintViolation
from reportguard.storage.models import (
    GRANT_TYPES,
    Credential,
    DeviceFingerprint,
    MfaEnrollment,
    Permission,
    PermissionGrant,
    RefreshToken,
    Role,
    Session,
    User,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'Viewer',
        role_id TEXT,
        department_id TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        max_concurrent_sessions INTEGER,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_idx ON app_user (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id),
        password_hash TEXT NOT NULL,
        salt TEXT,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_mfa (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id),
        encrypted_secret TEXT NOT NULL,
        encrypted_backup_codes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        enabled_at TIMESTAMPTZ,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        session_id TEXT,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_by_ip TEXT,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoked_by_ip TEXT,
        reason_revoked TEXT,
        replaced_by_token TEXT REFERENCES refresh_token(token) ON DELETE SET NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id) WHERE NOT revoked",
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        created_at TIMESTAMPTZ NOT NULL,
        last_accessed_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        device_fingerprint TEXT,
        ip_address TEXT,
        user_agent TEXT,
        device_type TEXT NOT NULL DEFAULT 'Unknown',
        device_name TEXT,
        location TEXT,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revocation_reason TEXT,
        is_suspicious BOOLEAN NOT NULL DEFAULT FALSE,
        suspicious_reason TEXT,
        last_mfa_verification TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_session_active_idx ON user_session (user_id) WHERE is_active AND NOT is_revoked",
    """
    CREATE TABLE IF NOT EXISTS device_fingerprint (
        user_id TEXT NOT NULL REFERENCES app_user(id),
        fingerprint TEXT NOT NULL,
        first_seen TIMESTAMPTZ NOT NULL,
        last_seen TIMESTAMPTZ NOT NULL,
        device_name TEXT,
        device_type TEXT NOT NULL DEFAULT 'Unknown',
        is_trusted BOOLEAN NOT NULL DEFAULT FALSE,
        is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
        blocked_reason TEXT,
        PRIMARY KEY (user_id, fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id TEXT NOT NULL UNIQUE,
        name TEXT PRIMARY KEY,
        resource TEXT NOT NULL,
        action TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_role_name_idx ON app_role (lower(name))",
    """
    CREATE TABLE IF NOT EXISTS permission_grant (
        kind TEXT NOT NULL CHECK (kind IN ('user', 'role', 'department')),
        principal_id TEXT NOT NULL,
        permission TEXT NOT NULL REFERENCES permission(name),
        is_granted BOOLEAN NOT NULL,
        granted_at TIMESTAMPTZ NOT NULL,
        granted_by TEXT,
        expires_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ,
        revoked_by TEXT,
        PRIMARY KEY (kind, principal_id, permission)
    )
    """,
]

_SESSION_COLUMNS = (
    "id, user_id, created_at, last_accessed_at, expires_at, device_fingerprint, ip_address, "
    "user_agent, device_type, device_name, location, remember_me, is_active, is_revoked, "
    "revoked_at, revocation_reason, is_suspicious, suspicious_reason, last_mfa_verification"
)


class PostgresStore:
    """Postgres-backed store for identity, session and permission state.

    Single-row state transitions run inside one transaction with the row locked
    (``SELECT ... FOR UPDATE``) or as one conditional ``UPDATE``, so concurrent
    request handlers never double-apply a transition.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn, conn.transaction():
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            role=row["role"],
            role_id=row.get("role_id"),
            department_id=row.get("department_id"),
            is_active=row["is_active"],
            max_concurrent_sessions=row.get("max_concurrent_sessions"),
            created_at=row["created_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _mfa_from_row(row: Dict[str, Any]) -> MfaEnrollment:
        return MfaEnrollment(
            user_id=row["user_id"],
            encrypted_secret=row["encrypted_secret"],
            encrypted_backup_codes=list(row.get("encrypted_backup_codes") or []),
            created_at=row["created_at"],
            enabled_at=row.get("enabled_at"),
            failed_attempts=row.get("failed_attempts") or 0,
            locked_until=row.get("locked_until"),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=row["user_id"],
            session_id=row.get("session_id"),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            created_by_ip=row.get("created_by_ip"),
            revoked=row["revoked"],
            revoked_at=row.get("revoked_at"),
            revoked_by_ip=row.get("revoked_by_ip"),
            reason_revoked=row.get("reason_revoked"),
            replaced_by_token=row.get("replaced_by_token"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
            expires_at=row["expires_at"],
            device_fingerprint=row.get("device_fingerprint"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_type=row.get("device_type") or "Unknown",
            device_name=row.get("device_name"),
            location=row.get("location"),
            remember_me=row.get("remember_me", False),
            is_active=row["is_active"],
            is_revoked=row["is_revoked"],
            revoked_at=row.get("revoked_at"),
            revocation_reason=row.get("revocation_reason"),
            is_suspicious=row.get("is_suspicious", False),
            suspicious_reason=row.get("suspicious_reason"),
            last_mfa_verification=row.get("last_mfa_verification"),
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> DeviceFingerprint:
        return DeviceFingerprint(
            fingerprint=row["fingerprint"],
            user_id=row["user_id"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            device_name=row.get("device_name"),
            device_type=row.get("device_type") or "Unknown",
            is_trusted=row["is_trusted"],
            is_blocked=row["is_blocked"],
            blocked_reason=row.get("blocked_reason"),
        )

    @staticmethod
    def _grant_from_row(row: Dict[str, Any]) -> PermissionGrant:
        grant_cls = GRANT_TYPES[row["kind"]]
        return grant_cls(
            principal_id=row["principal_id"],
            permission=row["permission"],
            is_granted=row["is_granted"],
            granted_at=row["granted_at"],
            granted_by=row.get("granted_by"),
            expires_at=row.get("expires_at"),
            revoked_at=row.get("revoked_at"),
            revoked_by=row.get("revoked_by"),
        )

    # users / credentials
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "Viewer",
        role_id: Optional[str] = None,
        department_id: Optional[str] = None,
        is_active: bool = True,
        max_concurrent_sessions: Optional[int] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, role, role_id, department_id, is_active, max_concurrent_sessions)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email, role, role_id, department_id, is_active, max_concurrent_sessions),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username or email already exists", {"field": "username"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s", (is_active, user_id)
            )
            return result.rowcount > 0

    def set_user_role(self, user_id: str, *, role: str, role_id: Optional[str]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET role = %s, role_id = %s WHERE id = %s",
                (role, role_id, user_id),
            )
            return result.rowcount > 0

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id))

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        salt: Optional[str],
        password_algo: str,
        *,
        at: Optional[datetime] = None,
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, salt, password_algo)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        salt = EXCLUDED.salt,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = %s
                    """,
                    (user_id, password_hash, salt, password_algo, at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return Credential(
            user_id=row["user_id"],
            password_hash=row["password_hash"],
            salt=row.get("salt"),
            password_algo=row["password_algo"],
            created_at=row["created_at"],
            last_updated_at=row.get("last_updated_at"),
        )

    # mfa
    def get_mfa_enrollment(self, user_id: str) -> Optional[MfaEnrollment]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM user_mfa WHERE user_id = %s", (user_id,)).fetchone()
        return self._mfa_from_row(row) if row else None

    def save_pending_mfa(self, enrollment: MfaEnrollment) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_mfa (user_id, encrypted_secret, encrypted_backup_codes, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET encrypted_secret = EXCLUDED.encrypted_secret,
                    encrypted_backup_codes = EXCLUDED.encrypted_backup_codes,
                    created_at = EXCLUDED.created_at,
                    failed_attempts = 0,
                    locked_until = NULL
                WHERE user_mfa.enabled_at IS NULL
                RETURNING user_id
                """,
                (
                    enrollment.user_id,
                    enrollment.encrypted_secret,
                    list(enrollment.encrypted_backup_codes),
                    enrollment.created_at,
                ),
            ).fetchone()
        return row is not None

    def enable_mfa(self, user_id: str, enabled_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_mfa SET enabled_at = %s, failed_attempts = 0, locked_until = NULL
                WHERE user_id = %s AND enabled_at IS NULL
                """,
                (enabled_at, user_id),
            )
            return result.rowcount > 0

    def record_mfa_failure(
        self, user_id: str, *, now: datetime, threshold: int, lockout: timedelta
    ) -> Optional[MfaEnrollment]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM user_mfa WHERE user_id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return None
            attempts, locked_until = next_mfa_failure_state(
                row.get("failed_attempts") or 0,
                row.get("locked_until"),
                now=now,
                threshold=threshold,
                lockout=lockout,
            )
            updated = conn.execute(
                """
                UPDATE user_mfa SET failed_attempts = %s, locked_until = %s
                WHERE user_id = %s RETURNING *
                """,
                (attempts, locked_until, user_id),
            ).fetchone()
        return self._mfa_from_row(updated)

    def reset_mfa_failures(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_mfa SET failed_attempts = 0, locked_until = NULL WHERE user_id = %s",
                (user_id,),
            )

    def consume_backup_code(self, user_id: str, encrypted_code: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_mfa
                SET encrypted_backup_codes = array_remove(encrypted_backup_codes, %s)
                WHERE user_id = %s AND %s = ANY(encrypted_backup_codes)
                RETURNING cardinality(encrypted_backup_codes) AS remaining
                """,
                (encrypted_code, user_id, encrypted_code),
            ).fetchone()
        return row["remaining"] if row else None

    def replace_backup_codes(self, user_id: str, encrypted_codes: List[str]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_mfa SET encrypted_backup_codes = %s WHERE user_id = %s",
                (list(encrypted_codes), user_id),
            )
            return result.rowcount > 0

    def delete_mfa_enrollment(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM user_mfa WHERE user_id = %s", (user_id,))
            return result.rowcount > 0

    # refresh tokens
    def _insert_refresh_token(self, conn, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (token, user_id, session_id, issued_at, expires_at, created_by_ip)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                record.token,
                record.user_id,
                record.session_id,
                record.issued_at,
                record.expires_at,
                record.created_by_ip,
            ),
        )

    def add_refresh_token(self, record: RefreshToken) -> None:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": record.user_id})

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM refresh_token WHERE token = %s", (token,)).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        old_token: str,
        new_record: RefreshToken,
        *,
        revoked_at: datetime,
        revoked_by_ip: Optional[str],
        reason: str,
    ) -> bool:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "SELECT * FROM refresh_token WHERE token = %s FOR UPDATE", (old_token,)
                ).fetchone()
                if not row or not self._refresh_from_row(row).is_active(revoked_at):
                    return False
                # the new row must exist before the old one can reference it
                self._insert_refresh_token(conn, new_record)
                conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, revoked_at = %s, revoked_by_ip = %s,
                        reason_revoked = %s, replaced_by_token = %s
                    WHERE token = %s
                    """,
                    (revoked_at, revoked_by_ip, reason, new_record.token, old_token),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return True

    def revoke_refresh_token(
        self,
        token: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: Optional[str],
        reason: str,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_by_ip = %s, reason_revoked = %s
                WHERE token = %s AND NOT revoked
                """,
                (revoked_at, revoked_by_ip, reason, token),
            )
            return result.rowcount > 0

    def list_refresh_tokens(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        include_revoked: bool = False,
    ) -> List[RefreshToken]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if session_id is not None:
            clauses.append("session_id = %s")
            params.append(session_id)
        if not include_revoked:
            clauses.append("NOT revoked")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM refresh_token {where} ORDER BY issued_at", params
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (expired_before,)
            )
            return result.rowcount

    # sessions
    def add_session(self, session: Session) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO user_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.last_accessed_at,
                        session.expires_at,
                        session.device_fingerprint,
                        session.ip_address,
                        session.user_agent,
                        session.device_type,
                        session.device_name,
                        session.location,
                        session.remember_me,
                        session.is_active,
                        session.is_revoked,
                        session.revoked_at,
                        session.revocation_reason,
                        session.is_suspicious,
                        session.suspicious_reason,
                        session.last_mfa_verification,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", {"field": "id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        query = f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active AND NOT is_revoked"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def list_expired_active_sessions(self, now: datetime, limit: int = 500) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM user_session
                WHERE is_active AND NOT is_revoked AND expires_at <= %s
                ORDER BY expires_at LIMIT %s
                """,
                (now, limit),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def list_suspicious_sessions(self) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM user_session
                WHERE is_suspicious AND is_active AND NOT is_revoked
                """
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def revoke_session(self, session_id: str, *, reason: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_session
                SET is_active = FALSE, is_revoked = TRUE, revoked_at = %s, revocation_reason = %s
                WHERE id = %s AND is_active AND NOT is_revoked
                """,
                (revoked_at, reason, session_id),
            )
            return result.rowcount > 0

    def touch_session(
        self,
        session_id: str,
        *,
        last_accessed_at: datetime,
        expires_at: datetime,
        is_suspicious: bool,
        suspicious_reason: Optional[str],
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_session
                SET last_accessed_at = %s, expires_at = %s, is_suspicious = %s, suspicious_reason = %s
                WHERE id = %s AND is_active AND NOT is_revoked
                """,
                (last_accessed_at, expires_at, is_suspicious, suspicious_reason, session_id),
            )
            return result.rowcount > 0

    def set_session_mfa_verified(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_session SET last_mfa_verification = %s
                WHERE id = %s AND NOT is_revoked
                """,
                (at, session_id),
            )
            return result.rowcount > 0

    # devices
    def get_device(self, user_id: str, fingerprint: str) -> Optional[DeviceFingerprint]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device_fingerprint WHERE user_id = %s AND fingerprint = %s",
                (user_id, fingerprint),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def touch_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        seen_at: datetime,
        device_name: Optional[str] = None,
        device_type: str = "Unknown",
    ) -> DeviceFingerprint:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO device_fingerprint (user_id, fingerprint, first_seen, last_seen, device_name, device_type)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, fingerprint) DO UPDATE SET last_seen = EXCLUDED.last_seen
                RETURNING *
                """,
                (user_id, fingerprint, seen_at, seen_at, device_name, device_type),
            ).fetchone()
        return self._device_from_row(row)

    def set_device_flags(
        self,
        user_id: str,
        fingerprint: str,
        *,
        is_trusted: Optional[bool] = None,
        is_blocked: Optional[bool] = None,
        blocked_reason: Optional[str] = None,
    ) -> Optional[DeviceFingerprint]:
        assignments: List[str] = []
        params: List[Any] = []
        if is_trusted is not None:
            assignments.append("is_trusted = %s")
            params.append(is_trusted)
        if is_blocked is not None:
            assignments.append("is_blocked = %s")
            assignments.append("blocked_reason = %s")
            params.extend([is_blocked, blocked_reason if is_blocked else None])
        if not assignments:
            return self.get_device(user_id, fingerprint)
        params.extend([user_id, fingerprint])
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE device_fingerprint SET {', '.join(assignments)}
                WHERE user_id = %s AND fingerprint = %s RETURNING *
                """,
                params,
            ).fetchone()
        return self._device_from_row(row) if row else None

    def list_devices(self, user_id: str) -> List[DeviceFingerprint]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM device_fingerprint WHERE user_id = %s ORDER BY last_seen DESC",
                (user_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    # permissions / roles
    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        permission = Permission(name=name, resource=resource, action=action, description=description)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO permission (id, name, resource, action, description, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        permission.id,
                        name,
                        resource,
                        action,
                        description,
                        permission.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return permission

    def get_permission(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM permission WHERE name = %s", (name,)).fetchone()
        if not row:
            return None
        return Permission(
            id=row["id"],
            name=row["name"],
            resource=row["resource"],
            action=row["action"],
            description=row.get("description"),
            created_at=row["created_at"],
        )

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        role = Role(name=name, description=description)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_role (id, name, description, created_at) VALUES (%s, %s, %s, %s)",
                    (role.id, name, description, role.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return role

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            is_active=row["is_active"],
            created_at=row["created_at"],
        )

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_role WHERE lower(name) = lower(%s)", (name,)
            ).fetchone()
        return self._role_from_row(row) if row else None

    def get_grant(self, kind: str, principal_id: str, permission: str) -> Optional[PermissionGrant]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM permission_grant
                WHERE kind = %s AND principal_id = %s AND permission = %s
                """,
                (kind, principal_id, permission),
            ).fetchone()
        return self._grant_from_row(row) if row else None

    def list_grants(self, kind: str, principal_id: str) -> List[PermissionGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission_grant WHERE kind = %s AND principal_id = %s",
                (kind, principal_id),
            ).fetchall()
        return [self._grant_from_row(row) for row in rows]

    def upsert_grant(
        self,
        kind: str,
        principal_id: str,
        permission: str,
        *,
        is_granted: bool,
        at: datetime,
        actor: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        if kind not in GRANT_TYPES:
            raise ValueError(f"unknown grant kind: {kind}")
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    SELECT * FROM permission_grant
                    WHERE kind = %s AND principal_id = %s AND permission = %s
                    FOR UPDATE
                    """,
                    (kind, principal_id, permission),
                ).fetchone()
                existing = self._grant_from_row(row) if row else None
                if not grant_needs_change(existing, is_granted=is_granted, expires_at=expires_at):
                    return False
                if existing is None:
                    conn.execute(
                        """
                        INSERT INTO permission_grant (kind, principal_id, permission, is_granted, granted_at, granted_by, expires_at)
                        VALUES (%s, %s, %s, TRUE, %s, %s, %s)
                        """,
                        (kind, principal_id, permission, at, actor, expires_at),
                    )
                elif is_granted:
                    conn.execute(
                        """
                        UPDATE permission_grant
                        SET is_granted = TRUE, granted_at = %s, granted_by = %s, expires_at = %s,
                            revoked_at = NULL, revoked_by = NULL
                        WHERE kind = %s AND principal_id = %s AND permission = %s
                        """,
                        (at, actor, expires_at, kind, principal_id, permission),
                    )
                else:
                    conn.execute(
                        """
                        UPDATE permission_grant
                        SET is_granted = FALSE, revoked_at = %s, revoked_by = %s
                        WHERE kind = %s AND principal_id = %s AND permission = %s
                        """,
                        (at, actor, kind, principal_id, permission),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown permission", {"permission": permission})
        return True
