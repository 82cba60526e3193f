from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from storeauth.storage.models import (
    Account,
    Device,
    EmailVerificationToken,
    LoginHistory,
    PasswordResetToken,
    RefreshToken,
    Role,
    SecurityAuditLog,
    UserSession,
)


class AccountStore(Protocol):
    def create_account(
        self, email: str, password_hash: str, *, roles: Optional[List[str]] = None
    ) -> Account: ...

    def get_account(self, user_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def increment_failed_logins(self, user_id: str) -> int: ...

    def lock_account(self, user_id: str, locked_until: datetime) -> None: ...

    def reset_failed_logins(self, user_id: str) -> None: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, user_id: str) -> None: ...

    def deactivate_account(self, user_id: str) -> None: ...

    def set_mfa(
        self, user_id: str, secret: str, backup_code_hashes: List[str]
    ) -> None: ...

    def clear_mfa(self, user_id: str) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...


class RoleStore(Protocol):
    def get_role(self, name: str) -> Optional[Role]: ...

    def ensure_role(self, name: str, description: Optional[str] = None) -> Role: ...

    def assign_role(self, user_id: str, role_name: str) -> None: ...

    def get_roles_for_user(self, user_id: str) -> List[str]: ...


class RefreshTokenStore(Protocol):
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token_if_active(self, token: str) -> bool: ...

    def revoke_all_refresh_tokens(self, user_id: str) -> int: ...


class SessionStore(Protocol):
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
    ) -> UserSession: ...

    def get_user_session(self, session_id: str) -> Optional[UserSession]: ...

    def get_user_session_by_token(self, session_token: str) -> Optional[UserSession]: ...

    def get_user_session_by_refresh_token(
        self, refresh_token_id: str
    ) -> Optional[UserSession]: ...

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[UserSession]: ...

    def relink_session_refresh_token(
        self, session_id: str, refresh_token_id: str
    ) -> None: ...

    def touch_user_session(self, session_token: str) -> Optional[UserSession]: ...

    def revoke_user_session(self, session_id: str) -> None: ...

    def revoke_all_user_sessions(self, user_id: str) -> int: ...

    def revoke_other_user_sessions(self, user_id: str, keep_session_token: str) -> int: ...

    def revoke_sessions_by_device(self, user_id: str, device_id: str) -> int: ...

    def cleanup_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


class DeviceStore(Protocol):
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
    ) -> Device: ...

    def get_device(self, device_pk: str) -> Optional[Device]: ...

    def get_device_by_fingerprint(self, device_id: str) -> Optional[Device]: ...

    def list_devices(
        self, user_id: str, *, include_inactive: bool = False
    ) -> List[Device]: ...

    def update_device(
        self,
        device_pk: str,
        *,
        device_name: Optional[str] = None,
        is_trusted: Optional[bool] = None,
    ) -> Optional[Device]: ...

    def deactivate_device(self, device_pk: str) -> None: ...


class AuditLogStore(Protocol):
    def record_login(self, entry: LoginHistory) -> LoginHistory: ...

    def list_login_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        status: Optional[str] = None,
        is_suspicious: Optional[bool] = None,
    ) -> List[LoginHistory]: ...

    def count_login_history(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        is_suspicious: Optional[bool] = None,
    ) -> int: ...

    def recent_successful_ips(self, user_id: str, limit: int = 10) -> List[str]: ...

    def count_recent_failed_attempts(
        self, user_id: str, ip_address: str, since: datetime
    ) -> int: ...

    def record_security_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityAuditLog: ...

    def list_security_events(
        self, user_id: str, *, limit: int = 50
    ) -> List[SecurityAuditLog]: ...


class VerificationTokenStore(Protocol):
    def replace_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def mark_reset_token_used(self, token: str) -> bool: ...

    def replace_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken: ...

    def get_email_verification_token(
        self, token: str
    ) -> Optional[EmailVerificationToken]: ...

    def mark_verification_token_verified(self, token: str) -> bool: ...


class AuthStore(
    AccountStore,
    RoleStore,
    RefreshTokenStore,
    SessionStore,
    DeviceStore,
    AuditLogStore,
    VerificationTokenStore,
    Protocol,
):
    """Everything the auth use cases need from a single backend."""


__all__ = [
    "AccountStore",
    "AuditLogStore",
    "AuthStore",
    "DeviceStore",
    "RefreshTokenStore",
    "RoleStore",
    "SessionStore",
    "VerificationTokenStore",
]
