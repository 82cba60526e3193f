from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

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


class MemoryStore:
    """In-process backing store for development and tests.

    Every mutating method takes the data lock for its whole read-modify-write,
    so the compare-and-set primitives (failed-login increment, refresh token
    revocation, reset token use, backup code consumption) are atomic across
    threads. Reads hand out copies; callers never mutate stored records.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, List[str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.devices: Dict[str, Device] = {}
        self.login_history: List[LoginHistory] = []
        self.security_events: List[SecurityAuditLog] = []
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.verification_tokens: Dict[str, EmailVerificationToken] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self.ensure_role(DEFAULT_ROLE, "Default customer role")

    def _account_view(self, account: Account) -> Account:
        return replace(
            account,
            mfa_secret=decrypt_mfa_secret(self._mfa_cipher, account.mfa_secret),
            mfa_backup_codes=list(account.mfa_backup_codes),
            roles=list(self.user_roles.get(account.id, [])),
        )

    def _require_account(self, user_id: str) -> Account:
        account = self.accounts.get(user_id)
        if not account:
            raise ConstraintViolation.missing_account(user_id)
        return account

    # -- accounts -----------------------------------------------------------

    def create_account(
        self, email: str, password_hash: str, *, roles: Optional[List[str]] = None
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation.duplicate("email", "email")
            account = Account(id=new_id(), email=email, password_hash=password_hash)
            self.accounts[account.id] = account
            for role_name in roles or []:
                self.assign_role(account.id, role_name)
            return self._account_view(account)

    def get_account(self, user_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(user_id)
            return self._account_view(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == email), None
            )
            return self._account_view(account) if account else None

    def increment_failed_logins(self, user_id: str) -> int:
        with self._data_lock:
            account = self._require_account(user_id)
            account.failed_login_attempts += 1
            account.updated_at = utcnow()
            return account.failed_login_attempts

    def lock_account(self, user_id: str, locked_until: datetime) -> None:
        with self._data_lock:
            account = self._require_account(user_id)
            account.locked_until = locked_until
            account.updated_at = utcnow()

    def reset_failed_logins(self, user_id: str) -> None:
        with self._data_lock:
            account = self._require_account(user_id)
            account.failed_login_attempts = 0
            account.locked_until = None
            account.updated_at = utcnow()

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            account = self._require_account(user_id)
            account.password_hash = password_hash
            account.updated_at = utcnow()

    def mark_email_verified(self, user_id: str) -> None:
        with self._data_lock:
            account = self._require_account(user_id)
            account.email_verified = True
            account.updated_at = utcnow()

    def deactivate_account(self, user_id: str) -> None:
        with self._data_lock:
            account = self._require_account(user_id)
            account.is_active = False
            account.updated_at = utcnow()

    def set_mfa(self, user_id: str, secret: str, backup_code_hashes: List[str]) -> None:
        with self._data_lock:
            account = self._require_account(user_id)
            account.mfa_secret = encrypt_mfa_secret(self._mfa_cipher, secret)
            account.mfa_backup_codes = list(backup_code_hashes)
            account.mfa_enabled = True
            account.updated_at = utcnow()

    def clear_mfa(self, user_id: str) -> None:
        with self._data_lock:
            account = self._require_account(user_id)
            account.mfa_secret = None
            account.mfa_backup_codes = []
            account.mfa_enabled = False
            account.updated_at = utcnow()

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(user_id)
            if not account or code_hash not in account.mfa_backup_codes:
                return False
            account.mfa_backup_codes.remove(code_hash)
            account.updated_at = utcnow()
            return True

    # -- roles --------------------------------------------------------------

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(name)

    def ensure_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            role = self.roles.get(name)
            if role is None:
                role = Role(id=new_id(), name=name, description=description)
                self.roles[name] = role
            return role

    def assign_role(self, user_id: str, role_name: str) -> None:
        with self._data_lock:
            self._require_account(user_id)
            if role_name not in self.roles:
                raise ConstraintViolation("role does not exist", {"role": role_name})
            assigned = self.user_roles.setdefault(user_id, [])
            if role_name not in assigned:
                assigned.append(role_name)

    def get_roles_for_user(self, user_id: str) -> List[str]:
        with self._data_lock:
            return list(self.user_roles.get(user_id, []))

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            self._require_account(user_id)
            if token in self.refresh_tokens:
                raise ConstraintViolation.duplicate("refresh token", "token")
            record = RefreshToken(
                id=new_id(), token=token, user_id=user_id, expires_at=expires_at
            )
            self.refresh_tokens[token] = record
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def revoke_refresh_token_if_active(self, token: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = utcnow()
            return True

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = now
                    count += 1
            return count

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
        with self._data_lock:
            self._require_account(user_id)
            if any(s.session_token == session_token for s in self.sessions.values()):
                raise ConstraintViolation.duplicate("session token", "session_token")
            sess = UserSession(
                id=new_id(),
                user_id=user_id,
                session_token=session_token,
                expires_at=expires_at,
                refresh_token_id=refresh_token_id,
                device_id=device_id,
                ip_address=ip_address,
                user_agent=user_agent,
                country=country,
                city=city,
            )
            self.sessions[sess.id] = sess
            return replace(sess)

    def get_user_session(self, session_id: str) -> Optional[UserSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_user_session_by_token(self, session_token: str) -> Optional[UserSession]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.session_token == session_token),
                None,
            )
            return replace(sess) if sess else None

    def get_user_session_by_refresh_token(
        self, refresh_token_id: str
    ) -> Optional[UserSession]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_id == refresh_token_id
                ),
                None,
            )
            return replace(sess) if sess else None

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[UserSession]:
        with self._data_lock:
            results = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]
            return sorted(results, key=lambda s: s.last_activity_at, reverse=True)

    def relink_session_refresh_token(
        self, session_id: str, refresh_token_id: str
    ) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.refresh_token_id = refresh_token_id
            sess.last_activity_at = utcnow()

    def touch_user_session(self, session_token: str) -> Optional[UserSession]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.session_token == session_token and s.is_active
                ),
                None,
            )
            if not sess:
                return None
            sess.last_activity_at = utcnow()
            return replace(sess)

    def _revoke(self, sess: UserSession, now: datetime) -> None:
        sess.is_active = False
        sess.revoked_at = now

    def revoke_user_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.is_active:
                self._revoke(sess, utcnow())

    def _revoke_matching(self, predicate) -> int:
        with self._data_lock:
            now = utcnow()
            count = 0
            for sess in self.sessions.values():
                if sess.is_active and predicate(sess):
                    self._revoke(sess, now)
                    count += 1
            return count

    def revoke_all_user_sessions(self, user_id: str) -> int:
        return self._revoke_matching(lambda s: s.user_id == user_id)

    def revoke_other_user_sessions(self, user_id: str, keep_session_token: str) -> int:
        return self._revoke_matching(
            lambda s: s.user_id == user_id and s.session_token != keep_session_token
        )

    def revoke_sessions_by_device(self, user_id: str, device_id: str) -> int:
        return self._revoke_matching(
            lambda s: s.user_id == user_id and s.device_id == device_id
        )

    def cleanup_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            cutoff = now or utcnow()
            count = 0
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at < cutoff:
                    sess.is_active = False
                    count += 1
            return count

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
        with self._data_lock:
            self._require_account(user_id)
            now = utcnow()
            device = next(
                (d for d in self.devices.values() if d.device_id == device_id), None
            )
            if device is None:
                device = Device(
                    id=new_id(),
                    user_id=user_id,
                    device_id=device_id,
                    device_type=device_type,
                    device_name=device_name,
                    os=os,
                    browser=browser,
                    user_agent=user_agent,
                    ip_address=ip_address,
                    country=country,
                    city=city,
                )
                self.devices[device.id] = device
                return replace(device)
            # A fingerprint registered to another account is left untouched
            if device.user_id != user_id:
                return replace(device)
            device.last_used_at = now
            device.updated_at = now
            device.is_active = True
            device.ip_address = ip_address
            device.country = country
            device.city = city
            return replace(device)

    def get_device(self, device_pk: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_pk)
            return replace(device) if device else None

    def get_device_by_fingerprint(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = next(
                (d for d in self.devices.values() if d.device_id == device_id), None
            )
            return replace(device) if device else None

    def list_devices(
        self, user_id: str, *, include_inactive: bool = False
    ) -> List[Device]:
        with self._data_lock:
            results = [
                replace(d)
                for d in self.devices.values()
                if d.user_id == user_id and (d.is_active or include_inactive)
            ]
            return sorted(results, key=lambda d: d.last_used_at, reverse=True)

    def update_device(
        self,
        device_pk: str,
        *,
        device_name: Optional[str] = None,
        is_trusted: Optional[bool] = None,
    ) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_pk)
            if not device:
                return None
            if device_name is not None:
                device.device_name = device_name
            if is_trusted is not None:
                device.is_trusted = is_trusted
            device.updated_at = utcnow()
            return replace(device)

    def deactivate_device(self, device_pk: str) -> None:
        with self._data_lock:
            device = self.devices.get(device_pk)
            if device:
                device.is_active = False
                device.updated_at = utcnow()

    # -- audit / history ----------------------------------------------------

    def record_login(self, entry: LoginHistory) -> LoginHistory:
        with self._data_lock:
            stored = replace(entry)
            self.login_history.append(stored)
            return replace(stored)

    def _history_for(
        self,
        user_id: str,
        status: Optional[str],
        is_suspicious: Optional[bool],
    ) -> List[LoginHistory]:
        return [
            h
            for h in self.login_history
            if h.user_id == user_id
            and (status is None or h.status == status)
            and (is_suspicious is None or h.is_suspicious == is_suspicious)
        ]

    def list_login_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        status: Optional[str] = None,
        is_suspicious: Optional[bool] = None,
    ) -> List[LoginHistory]:
        with self._data_lock:
            rows = sorted(
                self._history_for(user_id, status, is_suspicious),
                key=lambda h: h.created_at,
                reverse=True,
            )
            return [replace(h) for h in rows[offset : offset + limit]]

    def count_login_history(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        is_suspicious: Optional[bool] = None,
    ) -> int:
        with self._data_lock:
            return len(self._history_for(user_id, status, is_suspicious))

    def recent_successful_ips(self, user_id: str, limit: int = 10) -> List[str]:
        with self._data_lock:
            rows = sorted(
                self._history_for(user_id, "success", None),
                key=lambda h: h.created_at,
                reverse=True,
            )[:limit]
            return [h.ip_address for h in rows if h.ip_address]

    def count_recent_failed_attempts(
        self, user_id: str, ip_address: str, since: datetime
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for h in self.login_history
                if h.user_id == user_id
                and h.ip_address == ip_address
                and h.status == "failed"
                and h.created_at >= since
            )

    def record_security_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityAuditLog:
        with self._data_lock:
            entry = SecurityAuditLog(
                id=new_id(),
                action=action,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=dict(metadata or {}),
            )
            self.security_events.append(entry)
            return replace(entry)

    def list_security_events(
        self, user_id: str, *, limit: int = 50
    ) -> List[SecurityAuditLog]:
        with self._data_lock:
            rows = [e for e in self.security_events if e.user_id == user_id]
            rows.sort(key=lambda e: e.created_at, reverse=True)
            return [replace(e) for e in rows[:limit]]

    # -- reset / verification tokens ----------------------------------------

    def replace_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            self._require_account(user_id)
            for key, existing in list(self.reset_tokens.items()):
                if existing.user_id == user_id:
                    self.reset_tokens.pop(key, None)
            record = PasswordResetToken(
                id=new_id(), token=token, user_id=user_id, expires_at=expires_at
            )
            self.reset_tokens[token] = record
            return replace(record)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            return replace(record) if record else None

    def mark_reset_token_used(self, token: str) -> bool:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if not record or record.used:
                return False
            record.used = True
            return True

    def replace_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken:
        with self._data_lock:
            self._require_account(user_id)
            for key, existing in list(self.verification_tokens.items()):
                if existing.user_id == user_id:
                    self.verification_tokens.pop(key, None)
            record = EmailVerificationToken(
                id=new_id(), token=token, user_id=user_id, expires_at=expires_at
            )
            self.verification_tokens[token] = record
            return replace(record)

    def get_email_verification_token(
        self, token: str
    ) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            return replace(record) if record else None

    def mark_verification_token_verified(self, token: str) -> bool:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            if not record or record.verified:
                return False
            record.verified = True
            return True


__all__ = ["MemoryStore"]
