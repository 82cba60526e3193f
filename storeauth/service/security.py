from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.service import mfa
from storeauth.service.audit import AuditTrail, ClientContext
from storeauth.service.errors import (
    AlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailedError,
)
from storeauth.service.passwords import PasswordHasher
from storeauth.service.suspicious import SuspiciousLoginDetection, score_login
from storeauth.storage.interfaces import AuthStore
from storeauth.storage.models import (
    LOGIN_STATUSES,
    Account,
    Device,
    LoginHistory,
    UserSession,
)

logger = get_logger(__name__)


@dataclass
class LoginHistoryPage:
    total: int
    history: List[LoginHistory] = field(default_factory=list)


class SecurityService:
    """Device, session and MFA management for an authenticated account.

    Every operation that touches a record by id checks that the record
    belongs to the caller before changing it.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        hasher: PasswordHasher,
        audit: AuditTrail,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.audit = audit

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _require_account(self, user_id: str) -> Account:
        account = self.store.get_account(user_id)
        if account is None:
            raise NotFoundError("user")
        return account

    # -- devices ------------------------------------------------------------

    def record_device(self, user_id: str, client: ClientContext) -> Optional[Device]:
        """Upsert the device behind ``client``; ``None`` without a fingerprint."""
        if not client.device_id:
            return None
        return self.store.upsert_device(
            user_id,
            client.device_id,
            device_type=client.device_type,
            device_name=client.device_name,
            os=client.os,
            browser=client.browser,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
            country=client.country,
            city=client.city,
        )

    def list_devices(self, user_id: str, *, include_inactive: bool = False) -> List[Device]:
        return self.store.list_devices(user_id, include_inactive=include_inactive)

    def _owned_device(self, device_pk: str, user_id: str) -> Device:
        device = self.store.get_device(device_pk)
        if device is None:
            raise NotFoundError("device")
        if device.user_id != user_id:
            logger.warning("device_ownership_mismatch", device_pk=device_pk, user_id=user_id)
            raise UnauthorizedError()
        return device

    def update_device(
        self,
        device_pk: str,
        user_id: str,
        *,
        device_name: Optional[str] = None,
        is_trusted: Optional[bool] = None,
    ) -> Device:
        self._owned_device(device_pk, user_id)
        updated = self.store.update_device(
            device_pk, device_name=device_name, is_trusted=is_trusted
        )
        if updated is None:
            raise NotFoundError("device")
        return updated

    def revoke_device(
        self, device_pk: str, user_id: str, *, client: Optional[ClientContext] = None
    ) -> int:
        """Deactivate a device and revoke every session opened from it."""
        device = self._owned_device(device_pk, user_id)
        self.store.deactivate_device(device_pk)
        revoked = self.store.revoke_sessions_by_device(user_id, device.device_id)
        self.audit.security_event(
            "device_revoked",
            user_id=user_id,
            client=client,
            metadata={"deviceId": device.device_id, "sessionsRevoked": revoked},
        )
        logger.info("device_revoked", user_id=user_id, sessions_revoked=revoked)
        return revoked

    # -- sessions -----------------------------------------------------------

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        return self.store.list_user_sessions(user_id, active_only=active_only)

    def revoke_session(
        self, session_id: str, user_id: str, *, client: Optional[ClientContext] = None
    ) -> None:
        session = self.store.get_user_session(session_id)
        if session is None:
            raise NotFoundError("session")
        if session.user_id != user_id:
            logger.warning(
                "session_ownership_mismatch", session_id=session_id, user_id=user_id
            )
            raise UnauthorizedError()
        self.store.revoke_user_session(session_id)
        self.audit.security_event(
            "session_revoked",
            user_id=user_id,
            client=client,
            metadata={"sessionId": session_id},
        )

    def revoke_all_sessions(
        self,
        user_id: str,
        *,
        current_session_token: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> int:
        """Revoke every active session, or all but ``current_session_token``."""
        if current_session_token:
            revoked = self.store.revoke_other_user_sessions(user_id, current_session_token)
        else:
            revoked = self.store.revoke_all_user_sessions(user_id)
        self.audit.security_event(
            "sessions_revoked",
            user_id=user_id,
            client=client,
            metadata={"count": revoked, "keptCurrent": bool(current_session_token)},
        )
        return revoked

    def touch_session(self, session_token: str) -> Optional[UserSession]:
        return self.store.touch_user_session(session_token)

    def cleanup_expired_sessions(self) -> int:
        count = self.store.cleanup_expired_sessions(self._now())
        if count:
            logger.info("expired_sessions_cleaned", count=count)
        return count

    # -- history / heuristics -----------------------------------------------

    def get_login_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        status: Optional[str] = None,
        is_suspicious: Optional[bool] = None,
    ) -> LoginHistoryPage:
        if status is not None and status not in LOGIN_STATUSES:
            raise ValidationFailedError(f"Unknown login status: {status}")
        if limit < 1 or offset < 0:
            raise ValidationFailedError("limit must be positive and offset non-negative")
        history = self.store.list_login_history(
            user_id, limit=limit, offset=offset, status=status, is_suspicious=is_suspicious
        )
        total = self.store.count_login_history(
            user_id, status=status, is_suspicious=is_suspicious
        )
        return LoginHistoryPage(total=total, history=history)

    def detect_suspicious_login(
        self,
        user_id: str,
        client: ClientContext,
        *,
        now: Optional[datetime] = None,
    ) -> SuspiciousLoginDetection:
        current = now or self._now()
        device = (
            self.store.get_device_by_fingerprint(client.device_id)
            if client.device_id
            else None
        )
        failed = 0
        if client.ip_address:
            failed = self.store.count_recent_failed_attempts(
                user_id, client.ip_address, current - timedelta(hours=1)
            )
        return score_login(
            user_id=user_id,
            ip_address=client.ip_address,
            known_ips=self.store.recent_successful_ips(user_id, limit=10),
            device=device,
            recent_failed_from_ip=failed,
            # Server wall-clock hour
            local_hour=current.astimezone().hour,
        )

    # -- MFA ----------------------------------------------------------------

    def enable_mfa(self, user_id: str) -> mfa.MFAEnrollment:
        """Enroll the account; the plaintext backup codes are only returned here."""
        account = self._require_account(user_id)
        if account.mfa_enabled:
            raise AlreadyExistsError("MFA is already enabled")
        enrollment = mfa.enroll(account.email, self.settings.mfa_issuer)
        self.store.set_mfa(user_id, enrollment.secret, enrollment.backup_code_hashes)
        self.audit.security_event("mfa_enabled", user_id=user_id)
        logger.info("mfa_enabled", user_id=user_id)
        return enrollment

    def verify_mfa(
        self, user_id: str, code: str, *, at: Optional[float] = None
    ) -> mfa.MFAVerification:
        account = self._require_account(user_id)
        if not account.mfa_enabled or not account.mfa_secret:
            raise ValidationFailedError("MFA not enabled for user")

        if mfa.verify_totp(account.mfa_secret, code.strip(), at=at):
            return mfa.MFAVerification(valid=True, is_backup_code=False)

        matched = mfa.match_backup_code(code, account.mfa_backup_codes)
        if matched is None:
            logger.info("mfa_verification_failed", user_id=user_id)
            return mfa.MFAVerification(valid=False)
        if self.settings.consume_backup_codes and not self.store.consume_backup_code(
            user_id, matched
        ):
            # Another request spent this code first
            logger.warning("mfa_backup_code_reuse", user_id=user_id)
            return mfa.MFAVerification(valid=False)
        logger.info("mfa_backup_code_used", user_id=user_id)
        return mfa.MFAVerification(valid=True, is_backup_code=True)

    async def disable_mfa(
        self, user_id: str, password: str, *, client: Optional[ClientContext] = None
    ) -> None:
        account = self._require_account(user_id)
        if not account.mfa_enabled:
            raise ValidationFailedError("MFA not enabled for user")
        if not await self.hasher.verify(account.password_hash, password):
            raise InvalidCredentialsError("Password is incorrect")
        self.store.clear_mfa(user_id)
        self.audit.security_event("mfa_disabled", user_id=user_id, client=client)
        logger.info("mfa_disabled", user_id=user_id)


__all__ = ["LoginHistoryPage", "SecurityService"]
