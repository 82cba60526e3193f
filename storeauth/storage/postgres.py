from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from storeauth.logging import get_logger
from storeauth.storage.common import (
    build_mfa_cipher,
    decrypt_mfa_secret,
    encrypt_mfa_secret,
)
from storeauth.storage.errors import ConstraintViolation
from storeauth.storage.models import (
    DEFAULT_ROLE,
    Account,
    Device,
    EmailVerificationToken,
    LoginHistory,
    PasswordResetToken,
    RefreshToken,
    Role,
    SecurityAuditLog,
    UserSession,
    new_id,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        is_active BOOLEAN NOT NULL DEFAULT true,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        mfa_enabled BOOLEAN NOT NULL DEFAULT false,
        mfa_secret TEXT,
        mfa_backup_codes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_account_role (
        user_id TEXT NOT NULL REFERENCES auth_account(id),
        role_id TEXT NOT NULL REFERENCES auth_role(id),
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_token (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES auth_account(id),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT false,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_user_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES auth_account(id),
        session_token TEXT NOT NULL UNIQUE,
        refresh_token_id TEXT,
        device_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        country TEXT,
        city TEXT,
        is_active BOOLEAN NOT NULL DEFAULT true,
        last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES auth_account(id),
        device_id TEXT NOT NULL UNIQUE,
        device_type TEXT NOT NULL DEFAULT 'unknown',
        device_name TEXT,
        os TEXT,
        browser TEXT,
        user_agent TEXT,
        ip_address TEXT,
        country TEXT,
        city TEXT,
        is_trusted BOOLEAN NOT NULL DEFAULT false,
        is_active BOOLEAN NOT NULL DEFAULT true,
        last_used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        first_seen_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_login_history (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        device_id TEXT,
        country TEXT,
        city TEXT,
        status TEXT NOT NULL CHECK (status IN ('success', 'failed', 'blocked')),
        failure_reason TEXT,
        is_suspicious BOOLEAN NOT NULL DEFAULT false,
        suspicious_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_security_audit_log (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_password_reset_token (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES auth_account(id),
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_email_verification_token (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES auth_account(id),
        expires_at TIMESTAMPTZ NOT NULL,
        verified BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_login_history_user_idx ON auth_login_history (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS auth_login_history_ip_idx ON auth_login_history (ip_address, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS auth_user_session_user_idx ON auth_user_session (user_id, is_active)",
]


class PostgresStore:
    """Postgres-backed store for accounts, tokens, sessions and audit rows.

    Compare-and-set operations are single statements guarded by a ``WHERE``
    on the current state, so concurrent callers are serialized by row locks
    rather than by anything held in this process.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._ensure_schema()
        self.ensure_role(DEFAULT_ROLE, "Default customer role")

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------------

    def _account_from_row(self, row: Dict[str, Any], roles: List[str]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            email_verified=bool(row["email_verified"]),
            is_active=bool(row["is_active"]),
            failed_login_attempts=int(row["failed_login_attempts"] or 0),
            locked_until=row.get("locked_until"),
            mfa_enabled=bool(row["mfa_enabled"]),
            mfa_secret=decrypt_mfa_secret(self._mfa_cipher, row.get("mfa_secret")),
            mfa_backup_codes=list(row.get("mfa_backup_codes") or []),
            roles=roles,
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            token=row["token"],
            user_id=row["user_id"],
            expires_at=row["expires_at"],
            revoked=bool(row["revoked"]),
            revoked_at=row.get("revoked_at"),
            created_at=row.get("created_at", utcnow()),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> UserSession:
        return UserSession(
            id=row["id"],
            user_id=row["user_id"],
            session_token=row["session_token"],
            expires_at=row["expires_at"],
            refresh_token_id=row.get("refresh_token_id"),
            device_id=row.get("device_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            country=row.get("country"),
            city=row.get("city"),
            is_active=bool(row["is_active"]),
            last_activity_at=row.get("last_activity_at", utcnow()),
            created_at=row.get("created_at", utcnow()),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> Device:
        return Device(
            id=row["id"],
            user_id=row["user_id"],
            device_id=row["device_id"],
            device_type=row.get("device_type") or "unknown",
            device_name=row.get("device_name"),
            os=row.get("os"),
            browser=row.get("browser"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            country=row.get("country"),
            city=row.get("city"),
            is_trusted=bool(row["is_trusted"]),
            is_active=bool(row["is_active"]),
            last_used_at=row.get("last_used_at", utcnow()),
            first_seen_at=row.get("first_seen_at", utcnow()),
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
        )

    @staticmethod
    def _history_from_row(row: Dict[str, Any]) -> LoginHistory:
        return LoginHistory(
            id=row["id"],
            status=row["status"],
            user_id=row.get("user_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_id=row.get("device_id"),
            country=row.get("country"),
            city=row.get("city"),
            failure_reason=row.get("failure_reason"),
            is_suspicious=bool(row.get("is_suspicious")),
            suspicious_reason=row.get("suspicious_reason"),
            created_at=row.get("created_at", utcnow()),
        )

    # -- accounts -----------------------------------------------------------

    def create_account(
        self, email: str, password_hash: str, *, roles: Optional[List[str]] = None
    ) -> Account:
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_account (id, email, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate("email", "email")
        for role_name in roles or []:
            self.assign_role(user_id, role_name)
        return self._account_from_row(row, list(roles or []))

    def _get_account_where(self, clause: str, value: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_account WHERE {clause} = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(row, self.get_roles_for_user(row["id"]))

    def get_account(self, user_id: str) -> Optional[Account]:
        return self._get_account_where("id", user_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._get_account_where("email", email)

    def increment_failed_logins(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET failed_login_attempts = failed_login_attempts + 1, updated_at = now()
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation.missing_account(user_id)
        return int(row["failed_login_attempts"])

    def _update_account(self, user_id: str, assignments: str, params: tuple = ()) -> None:
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE auth_account SET {assignments}, updated_at = now() WHERE id = %s",
                (*params, user_id),
            )
        if result.rowcount == 0:
            raise ConstraintViolation.missing_account(user_id)

    def lock_account(self, user_id: str, locked_until: datetime) -> None:
        self._update_account(user_id, "locked_until = %s", (locked_until,))

    def reset_failed_logins(self, user_id: str) -> None:
        self._update_account(user_id, "failed_login_attempts = 0, locked_until = NULL")

    def update_password(self, user_id: str, password_hash: str) -> None:
        self._update_account(user_id, "password_hash = %s", (password_hash,))

    def mark_email_verified(self, user_id: str) -> None:
        self._update_account(user_id, "email_verified = true")

    def deactivate_account(self, user_id: str) -> None:
        self._update_account(user_id, "is_active = false")

    def set_mfa(self, user_id: str, secret: str, backup_code_hashes: List[str]) -> None:
        self._update_account(
            user_id,
            "mfa_secret = %s, mfa_backup_codes = %s, mfa_enabled = true",
            (encrypt_mfa_secret(self._mfa_cipher, secret), list(backup_code_hashes)),
        )

    def clear_mfa(self, user_id: str) -> None:
        self._update_account(
            user_id, "mfa_secret = NULL, mfa_backup_codes = '{}', mfa_enabled = false"
        )

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET mfa_backup_codes = array_remove(mfa_backup_codes, %s), updated_at = now()
                WHERE id = %s AND %s = ANY(mfa_backup_codes)
                RETURNING id
                """,
                (code_hash, user_id, code_hash),
            ).fetchone()
        return row is not None

    # -- roles --------------------------------------------------------------

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_role WHERE name = %s", (name,)
            ).fetchone()
        if not row:
            return None
        return Role(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            created_at=row.get("created_at", utcnow()),
        )

    def ensure_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_role (id, name, description)
                VALUES (%s, %s, %s)
                ON CONFLICT (name) DO NOTHING
                """,
                (new_id(), name, description),
            )
        role = self.get_role(name)
        if role is None:
            raise ConstraintViolation("role could not be created", {"role": name})
        return role

    def assign_role(self, user_id: str, role_name: str) -> None:
        role = self.get_role(role_name)
        if role is None:
            raise ConstraintViolation("role does not exist", {"role": role_name})
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_account_role (user_id, role_id)
                    VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (user_id, role.id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_account(user_id)

    def get_roles_for_user(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.name FROM auth_role r
                JOIN auth_account_role ar ON ar.role_id = r.id
                WHERE ar.user_id = %s
                ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [row["name"] for row in rows]

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_refresh_token (id, token, user_id, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), token, user_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate("refresh token", "token")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_account(user_id)
        return self._refresh_from_row(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token_if_active(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_refresh_token
                SET revoked = true, revoked_at = now()
                WHERE token = %s AND revoked = false
                RETURNING id
                """,
                (token,),
            ).fetchone()
        return row is not None

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_refresh_token
                SET revoked = true, revoked_at = now()
                WHERE user_id = %s AND revoked = false
                """,
                (user_id,),
            )
        return result.rowcount

    # -- sessions -----------------------------------------------------------

    def create_user_session(
        self,
        user_id: str,
        session_token: str,
        expires_at: datetime,
        *,
        refresh_token_id: Optional[str] = None,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
    ) -> UserSession:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_user_session (
                        id, user_id, session_token, refresh_token_id, device_id,
                        ip_address, user_agent, country, city, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        user_id,
                        session_token,
                        refresh_token_id,
                        device_id,
                        ip_address,
                        user_agent,
                        country,
                        city,
                        expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate("session token", "session_token")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_account(user_id)
        return self._session_from_row(row)

    def _get_session_where(self, clause: str, params: tuple) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_user_session WHERE {clause}", params
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_user_session(self, session_id: str) -> Optional[UserSession]:
        return self._get_session_where("id = %s", (session_id,))

    def get_user_session_by_token(self, session_token: str) -> Optional[UserSession]:
        return self._get_session_where("session_token = %s", (session_token,))

    def get_user_session_by_refresh_token(
        self, refresh_token_id: str
    ) -> Optional[UserSession]:
        return self._get_session_where(
            "refresh_token_id = %s", (refresh_token_id,)
        )

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[UserSession]:
        query = "SELECT * FROM auth_user_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active = true"
        query += " ORDER BY last_activity_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def relink_session_refresh_token(
        self, session_id: str, refresh_token_id: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_user_session
                SET refresh_token_id = %s, last_activity_at = now()
                WHERE id = %s
                """,
                (refresh_token_id, session_id),
            )

    def touch_user_session(self, session_token: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user_session SET last_activity_at = now()
                WHERE session_token = %s AND is_active = true
                RETURNING *
                """,
                (session_token,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def _revoke_sessions_where(self, clause: str, params: tuple) -> int:
        with self._connect() as conn:
            result = conn.execute(
                f"""
                UPDATE auth_user_session SET is_active = false, revoked_at = now()
                WHERE is_active = true AND {clause}
                """,
                params,
            )
        return result.rowcount

    def revoke_user_session(self, session_id: str) -> None:
        self._revoke_sessions_where("id = %s", (session_id,))

    def revoke_all_user_sessions(self, user_id: str) -> int:
        return self._revoke_sessions_where("user_id = %s", (user_id,))

    def revoke_other_user_sessions(self, user_id: str, keep_session_token: str) -> int:
        return self._revoke_sessions_where(
            "user_id = %s AND session_token <> %s", (user_id, keep_session_token)
        )

    def revoke_sessions_by_device(self, user_id: str, device_id: str) -> int:
        return self._revoke_sessions_where(
            "user_id = %s AND device_id = %s", (user_id, device_id)
        )

    def cleanup_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_user_session SET is_active = false
                WHERE is_active = true AND expires_at < %s
                """,
                (now or utcnow(),),
            )
        return result.rowcount

    # -- devices ------------------------------------------------------------

    def upsert_device(
        self,
        user_id: str,
        device_id: str,
        *,
        device_type: str = "unknown",
        device_name: Optional[str] = None,
        os: Optional[str] = None,
        browser: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
    ) -> Device:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_device (
                        id, user_id, device_id, device_type, device_name, os, browser,
                        user_agent, ip_address, country, city
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (device_id) DO UPDATE SET
                        last_used_at = now(),
                        updated_at = now(),
                        ip_address = EXCLUDED.ip_address,
                        country = EXCLUDED.country,
                        city = EXCLUDED.city,
                        is_active = true
                    WHERE auth_device.user_id = EXCLUDED.user_id
                    RETURNING *
                    """,
                    (
                        new_id(),
                        user_id,
                        device_id,
                        device_type,
                        device_name,
                        os,
                        browser,
                        user_agent,
                        ip_address,
                        country,
                        city,
                    ),
                ).fetchone()
                if row is None:
                    # fingerprint owned by another account; leave it as is
                    row = conn.execute(
                        "SELECT * FROM auth_device WHERE device_id = %s", (device_id,)
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_account(user_id)
        return self._device_from_row(row)

    def get_device(self, device_pk: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_device WHERE id = %s", (device_pk,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def get_device_by_fingerprint(self, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_device WHERE device_id = %s", (device_id,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def list_devices(
        self, user_id: str, *, include_inactive: bool = False
    ) -> List[Device]:
        query = "SELECT * FROM auth_device WHERE user_id = %s"
        if not include_inactive:
            query += " AND is_active = true"
        query += " ORDER BY last_used_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._device_from_row(row) for row in rows]

    def update_device(
        self,
        device_pk: str,
        *,
        device_name: Optional[str] = None,
        is_trusted: Optional[bool] = None,
    ) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_device SET
                    device_name = COALESCE(%s, device_name),
                    is_trusted = COALESCE(%s, is_trusted),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (device_name, is_trusted, device_pk),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def deactivate_device(self, device_pk: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_device SET is_active = false, updated_at = now() WHERE id = %s",
                (device_pk,),
            )

    # -- audit / history ----------------------------------------------------

    def record_login(self, entry: LoginHistory) -> LoginHistory:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_login_history (
                    id, user_id, ip_address, user_agent, device_id, country, city,
                    status, failure_reason, is_suspicious, suspicious_reason, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.ip_address,
                    entry.user_agent,
                    entry.device_id,
                    entry.country,
                    entry.city,
                    entry.status,
                    entry.failure_reason,
                    entry.is_suspicious,
                    entry.suspicious_reason,
                    entry.created_at,
                ),
            ).fetchone()
        return self._history_from_row(row)

    @staticmethod
    def _history_filters(
        user_id: str, status: Optional[str], is_suspicious: Optional[bool]
    ) -> tuple[str, list]:
        clauses = ["user_id = %s"]
        params: list = [user_id]
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        if is_suspicious is not None:
            clauses.append("is_suspicious = %s")
            params.append(is_suspicious)
        return " AND ".join(clauses), params

    def list_login_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        status: Optional[str] = None,
        is_suspicious: Optional[bool] = None,
    ) -> List[LoginHistory]:
        where, params = self._history_filters(user_id, status, is_suspicious)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM auth_login_history WHERE {where}
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            ).fetchall()
        return [self._history_from_row(row) for row in rows]

    def count_login_history(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        is_suspicious: Optional[bool] = None,
    ) -> int:
        where, params = self._history_filters(user_id, status, is_suspicious)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS total FROM auth_login_history WHERE {where}",
                tuple(params),
            ).fetchone()
        return int(row["total"]) if row else 0

    def recent_successful_ips(self, user_id: str, limit: int = 10) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ip_address FROM auth_login_history
                WHERE user_id = %s AND status = 'success'
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [row["ip_address"] for row in rows if row.get("ip_address")]

    def count_recent_failed_attempts(
        self, user_id: str, ip_address: str, since: datetime
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total FROM auth_login_history
                WHERE user_id = %s AND ip_address = %s AND status = 'failed' AND created_at >= %s
                """,
                (user_id, ip_address, since),
            ).fetchone()
        return int(row["total"]) if row else 0

    def record_security_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityAuditLog:
        entry = SecurityAuditLog(
            id=new_id(),
            action=action,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_security_audit_log (
                    id, user_id, action, ip_address, user_agent, metadata, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.metadata, default=str),
                    entry.created_at,
                ),
            )
        return entry

    def list_security_events(
        self, user_id: str, *, limit: int = 50
    ) -> List[SecurityAuditLog]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_security_audit_log WHERE user_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [
            SecurityAuditLog(
                id=row["id"],
                action=row["action"],
                user_id=row.get("user_id"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                metadata=row.get("metadata") or {},
                created_at=row.get("created_at", utcnow()),
            )
            for row in rows
        ]

    # -- reset / verification tokens ----------------------------------------

    def _replace_token(
        self, table: str, user_id: str, token: str, expires_at: datetime
    ) -> Dict[str, Any]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(f"DELETE FROM {table} WHERE user_id = %s", (user_id,))
                    row = conn.execute(
                        f"""
                        INSERT INTO {table} (id, token, user_id, expires_at)
                        VALUES (%s, %s, %s, %s)
                        RETURNING *
                        """,
                        (new_id(), token, user_id, expires_at),
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_account(user_id)
        return row

    def _get_token_row(self, table: str, token: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            return conn.execute(
                f"SELECT * FROM {table} WHERE token = %s", (token,)
            ).fetchone()

    def _flip_token_flag(self, table: str, flag: str, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE {table} SET {flag} = true
                WHERE token = %s AND {flag} = false
                RETURNING id
                """,
                (token,),
            ).fetchone()
        return row is not None

    def replace_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        row = self._replace_token("auth_password_reset_token", user_id, token, expires_at)
        return PasswordResetToken(
            id=row["id"],
            token=row["token"],
            user_id=row["user_id"],
            expires_at=row["expires_at"],
            used=bool(row["used"]),
            created_at=row.get("created_at", utcnow()),
        )

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        row = self._get_token_row("auth_password_reset_token", token)
        if not row:
            return None
        return PasswordResetToken(
            id=row["id"],
            token=row["token"],
            user_id=row["user_id"],
            expires_at=row["expires_at"],
            used=bool(row["used"]),
            created_at=row.get("created_at", utcnow()),
        )

    def mark_reset_token_used(self, token: str) -> bool:
        return self._flip_token_flag("auth_password_reset_token", "used", token)

    def replace_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken:
        row = self._replace_token(
            "auth_email_verification_token", user_id, token, expires_at
        )
        return EmailVerificationToken(
            id=row["id"],
            token=row["token"],
            user_id=row["user_id"],
            expires_at=row["expires_at"],
            verified=bool(row["verified"]),
            created_at=row.get("created_at", utcnow()),
        )

    def get_email_verification_token(
        self, token: str
    ) -> Optional[EmailVerificationToken]:
        row = self._get_token_row("auth_email_verification_token", token)
        if not row:
            return None
        return EmailVerificationToken(
            id=row["id"],
            token=row["token"],
            user_id=row["user_id"],
            expires_at=row["expires_at"],
            verified=bool(row["verified"]),
            created_at=row.get("created_at", utcnow()),
        )

    def mark_verification_token_verified(self, token: str) -> bool:
        return self._flip_token_flag("auth_email_verification_token", "verified", token)


__all__ = ["PostgresStore"]
