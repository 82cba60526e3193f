from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.service import events
from storeauth.service.audit import AuditTrail, ClientContext
from storeauth.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    AlreadyExistsError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    TokenRevokedError,
)
from storeauth.service.events import EventDispatcher
from storeauth.service.lockout import LockoutPolicy
from storeauth.service.passwords import PasswordHasher
from storeauth.service.security import SecurityService
from storeauth.service.suspicious import SuspiciousLoginDetection
from storeauth.service.tokens import TokenIssuer, TokenPair
from storeauth.storage.errors import ConstraintViolation
from storeauth.storage.interfaces import AuthStore
from storeauth.storage.models import (
    DEFAULT_ROLE,
    Account,
    EmailVerificationToken,
    RefreshToken,
    UserSession,
)

logger = get_logger(__name__)


@dataclass
class AuthIdentity:
    """Account fields that are safe to hand back to a client."""

    id: str
    email: str
    roles: List[str] = field(default_factory=list)
    email_verified: bool = False
    mfa_enabled: bool = False

    @classmethod
    def from_account(cls, account: Account) -> "AuthIdentity":
        return cls(
            id=account.id,
            email=account.email,
            roles=list(account.roles),
            email_verified=account.email_verified,
            mfa_enabled=account.mfa_enabled,
        )


@dataclass
class AuthResult:
    user: AuthIdentity
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    session_token: Optional[str] = None
    suspicious: Optional[SuspiciousLoginDetection] = None


@dataclass
class AuthContext:
    user_id: str
    email: str
    roles: List[str] = field(default_factory=list)


class AuthService:
    """Credential, token and account-lifecycle use cases.

    Collaborators are passed in explicitly; ``storeauth.service.runtime``
    wires the production set. Expected failures surface as ``AuthError``
    subclasses. Audit rows and domain events are best-effort and never fail
    the use case that produced them.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        lockout: LockoutPolicy,
        audit: AuditTrail,
        dispatcher: EventDispatcher,
        security: SecurityService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.lockout = lockout
        self.audit = audit
        self.dispatcher = dispatcher
        self.security = security

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _publish(self, topic: str, account: Account, **context: Any) -> None:
        payload = events.event_payload(account.id, account.email, **context)
        self.dispatcher.dispatch(topic, payload)

    # -- token plumbing -----------------------------------------------------

    def _persist_refresh(self, account: Account, pair: TokenPair) -> RefreshToken:
        return self.store.create_refresh_token(
            account.id, pair.refresh_token, pair.refresh_expires_at
        )

    def _open_session(
        self,
        account: Account,
        record: RefreshToken,
        client: ClientContext,
    ) -> UserSession:
        return self.store.create_user_session(
            account.id,
            secrets.token_urlsafe(32),
            self._now() + timedelta(hours=self.settings.session_ttl_hours),
            refresh_token_id=record.id,
            device_id=client.device_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            country=client.country,
            city=client.city,
        )

    def _grant(
        self,
        account: Account,
        client: ClientContext,
        *,
        suspicious: Optional[SuspiciousLoginDetection] = None,
    ) -> AuthResult:
        """Mint a pair, record the refresh token and open a session for it."""
        pair = self.tokens.issue_pair(account.id, account.email, account.roles)
        record = self._persist_refresh(account, pair)
        session = self._open_session(account, record, client)
        return self._result(account, pair, session, suspicious)

    def _result(
        self,
        account: Account,
        pair: TokenPair,
        session: Optional[UserSession],
        suspicious: Optional[SuspiciousLoginDetection] = None,
    ) -> AuthResult:
        return AuthResult(
            user=AuthIdentity.from_account(account),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            refresh_expires_at=pair.refresh_expires_at,
            session_token=session.session_token if session else None,
            suspicious=suspicious,
        )

    def _revoke_everything(self, user_id: str) -> None:
        tokens = self.store.revoke_all_refresh_tokens(user_id)
        sessions = self.store.revoke_all_user_sessions(user_id)
        logger.info(
            "credentials_revoked", user_id=user_id, tokens=tokens, sessions=sessions
        )

    # -- registration -------------------------------------------------------

    async def register(
        self, email: str, password: str, client: Optional[ClientContext] = None
    ) -> AuthResult:
        client = client or ClientContext()
        if self.store.get_account_by_email(email) is not None:
            raise AlreadyExistsError("Email already registered")
        password_hash = await self.hasher.hash(password)
        try:
            account = self.store.create_account(
                email, password_hash, roles=[DEFAULT_ROLE]
            )
        except ConstraintViolation as exc:
            # Concurrent registration with the same address
            logger.info("register_conflict", detail=exc.detail)
            raise AlreadyExistsError("Email already registered") from exc

        result = self._grant(account, client)
        verification = self._mint_verification_token(account)
        self._publish(events.USER_CREATED, account)
        self._publish(
            events.EMAIL_VERIFICATION_REQUESTED,
            account,
            verificationToken=verification.token,
            expiresAt=verification.expires_at.isoformat(),
        )
        logger.info("user_registered", user_id=account.id)
        return result

    # -- login --------------------------------------------------------------

    async def login(
        self, email: str, password: str, client: Optional[ClientContext] = None
    ) -> AuthResult:
        client = client or ClientContext()
        now = self._now()
        account = self.store.get_account_by_email(email)
        if account is None:
            self.audit.security_event(
                "login_failed",
                client=client,
                metadata={"email": email, "reason": "user_not_found"},
            )
            self.audit.login_attempt(
                "failed", client=client, failure_reason="user_not_found"
            )
            raise InvalidCredentialsError()

        if self.lockout.is_locked(account.locked_until, now):
            assert account.locked_until is not None
            self.audit.security_event(
                "login_blocked",
                user_id=account.id,
                client=client,
                metadata={
                    "reason": "account_locked",
                    "lockedUntil": account.locked_until.isoformat(),
                },
            )
            self.audit.login_attempt(
                "blocked", user_id=account.id, client=client, failure_reason="account_locked"
            )
            raise AccountLockedError(
                self.lockout.remaining_minutes(account.locked_until, now)
            )

        if not account.is_active:
            self.audit.security_event(
                "login_blocked",
                user_id=account.id,
                client=client,
                metadata={"reason": "account_deactivated"},
            )
            self.audit.login_attempt(
                "blocked",
                user_id=account.id,
                client=client,
                failure_reason="account_deactivated",
            )
            raise AccountDeactivatedError()

        if not await self.hasher.verify(account.password_hash, password):
            self._register_failure(account, client, now)

        if account.failed_login_attempts > 0 or account.locked_until is not None:
            self.store.reset_failed_logins(account.id)
        self.audit.security_event("login_success", user_id=account.id, client=client)

        # Score against history as it stood before this login is recorded
        detection = self._assess_login(account, client, now)
        self.security.record_device(account.id, client)
        self.audit.login_attempt(
            "success",
            user_id=account.id,
            client=client,
            is_suspicious=detection.is_suspicious,
            suspicious_reason=", ".join(detection.reasons) or None,
        )
        if detection.is_suspicious:
            logger.warning(
                "suspicious_login",
                user_id=account.id,
                risk_score=detection.risk_score,
                reasons=detection.reasons,
            )
        return self._grant(account, client, suspicious=detection)

    def _assess_login(
        self, account: Account, client: ClientContext, now: datetime
    ) -> SuspiciousLoginDetection:
        # Advisory only; a scoring failure lets the login through unflagged
        try:
            return self.security.detect_suspicious_login(account.id, client, now=now)
        except Exception as exc:
            logger.warning(
                "suspicious_login_check_failed", user_id=account.id, error=str(exc)
            )
            return SuspiciousLoginDetection(is_suspicious=False, risk_score=0)

    def _register_failure(
        self, account: Account, client: ClientContext, now: datetime
    ) -> None:
        """Count a wrong password and raise the matching error; never returns."""
        attempts = self.store.increment_failed_logins(account.id)
        decision = self.lockout.register_failure(attempts, now)
        self.audit.login_attempt(
            "failed", user_id=account.id, client=client, failure_reason="invalid_password"
        )
        if decision.locked:
            assert decision.locked_until is not None
            self.store.lock_account(account.id, decision.locked_until)
            self.audit.security_event(
                "account_locked",
                user_id=account.id,
                client=client,
                metadata={
                    "reason": "max_login_attempts_exceeded",
                    "failedAttempts": attempts,
                    "lockedUntil": decision.locked_until.isoformat(),
                },
            )
            logger.warning("account_locked", user_id=account.id, failed_attempts=attempts)
            minutes = self.lockout.lockout_minutes
            raise AccountLockedError(
                minutes,
                f"Too many failed login attempts. Account locked for {minutes} minutes.",
            )
        self.audit.security_event(
            "login_failed",
            user_id=account.id,
            client=client,
            metadata={
                "reason": "invalid_password",
                "failedAttempts": attempts,
                "maxAttempts": decision.max_attempts,
            },
        )
        raise InvalidCredentialsError()

    # -- token exchange -----------------------------------------------------

    async def refresh(
        self, refresh_token: str, client: Optional[ClientContext] = None
    ) -> AuthResult:
        """Rotate ``refresh_token`` into a new pair; the old token dies here."""
        client = client or ClientContext()
        claims = self.tokens.verify_refresh_token(refresh_token)
        now = self._now()

        record = self.store.get_refresh_token(refresh_token)
        if record is None:
            raise InvalidTokenError("Refresh token not recognised")
        if record.revoked:
            logger.warning("refresh_token_reuse", user_id=record.user_id)
            raise TokenRevokedError()
        if record.expires_at <= now:
            raise TokenExpiredError()

        account = self.store.get_account(record.user_id)
        if account is None or account.id != claims.user_id:
            raise InvalidTokenError()
        if not account.is_active:
            raise AccountDeactivatedError()

        session = self.store.get_user_session_by_refresh_token(record.id)
        if session is not None:
            if not session.is_active and session.revoked_at is not None:
                self.store.revoke_refresh_token_if_active(refresh_token)
                raise TokenRevokedError("Session has been revoked")
            if session.expires_at <= now:
                raise TokenExpiredError("Session has expired")

        pair = self.tokens.issue_pair(account.id, account.email, account.roles)
        if not self.store.revoke_refresh_token_if_active(refresh_token):
            # Lost the race to a concurrent rotation or logout
            logger.warning("refresh_rotation_conflict", user_id=account.id)
            raise TokenRevokedError()
        new_record = self._persist_refresh(account, pair)
        if session is not None:
            self.store.relink_session_refresh_token(session.id, new_record.id)
        else:
            session = self._open_session(account, new_record, client)
        logger.info("refresh_token_rotated", user_id=account.id)
        return self._result(account, pair, session)

    async def logout(self, refresh_token: str) -> None:
        record = self.store.get_refresh_token(refresh_token)
        if record is None:
            return
        self.store.revoke_refresh_token_if_active(refresh_token)
        session = self.store.get_user_session_by_refresh_token(record.id)
        if session is not None and session.is_active:
            self.store.revoke_user_session(session.id)
        logger.info("logout", user_id=record.user_id)

    def authenticate(self, access_token: str) -> AuthContext:
        claims = self.tokens.verify_access_token(access_token)
        account = self.store.get_account(claims.user_id)
        if account is None:
            raise InvalidTokenError()
        if not account.is_active:
            raise AccountDeactivatedError()
        return AuthContext(user_id=account.id, email=account.email, roles=list(account.roles))

    # -- password reset -----------------------------------------------------

    async def forgot_password(self, email: str) -> None:
        account = self.store.get_account_by_email(email)
        if account is None or not account.is_active:
            # Same outcome either way so the endpoint cannot enumerate accounts
            logger.info("password_reset_skipped")
            return
        token = secrets.token_hex(32)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.replace_password_reset_token(account.id, token, expires_at)
        self._publish(
            events.PASSWORD_RESET_REQUESTED,
            account,
            resetToken=token,
            expiresAt=expires_at.isoformat(),
        )
        logger.info("password_reset_requested", user_id=account.id)

    async def reset_password(
        self, token: str, new_password: str, client: Optional[ClientContext] = None
    ) -> None:
        record = self.store.get_password_reset_token(token)
        if record is None:
            raise InvalidTokenError("Invalid or unknown reset token")
        if record.expires_at <= self._now():
            raise TokenExpiredError("Reset token has expired")
        if record.used:
            raise TokenRevokedError("Reset token has already been used")
        account = self.store.get_account(record.user_id)
        if account is None or not account.is_active:
            raise NotFoundError("user")

        password_hash = await self.hasher.hash(new_password)
        if not self.store.mark_reset_token_used(token):
            raise TokenRevokedError("Reset token has already been used")
        self.store.update_password(account.id, password_hash)
        self._revoke_everything(account.id)
        self.store.reset_failed_logins(account.id)
        self.audit.security_event("password_reset", user_id=account.id, client=client)
        logger.info("password_reset_completed", user_id=account.id)

    # -- email verification -------------------------------------------------

    def _mint_verification_token(self, account: Account) -> EmailVerificationToken:
        token = secrets.token_hex(32)
        expires_at = self._now() + timedelta(hours=self.settings.email_verification_ttl_hours)
        return self.store.replace_email_verification_token(account.id, token, expires_at)

    async def verify_email(self, token: str) -> AuthIdentity:
        record = self.store.get_email_verification_token(token)
        if record is None:
            raise InvalidTokenError("Invalid or unknown verification token")
        if record.expires_at <= self._now():
            raise TokenExpiredError("Verification token has expired")
        if record.verified:
            raise AlreadyExistsError("Email already verified")
        account = self.store.get_account(record.user_id)
        if account is None or not account.is_active:
            raise NotFoundError("user")
        if not self.store.mark_verification_token_verified(token):
            raise AlreadyExistsError("Email already verified")
        self.store.mark_email_verified(account.id)
        logger.info("email_verified", user_id=account.id)
        account.email_verified = True
        return AuthIdentity.from_account(account)

    async def resend_verification(self, email: str) -> None:
        account = self.store.get_account_by_email(email)
        if account is None or not account.is_active:
            raise NotFoundError("user")
        if account.email_verified:
            raise AlreadyExistsError("Email already verified")
        verification = self._mint_verification_token(account)
        self._publish(
            events.EMAIL_VERIFICATION_REQUESTED,
            account,
            verificationToken=verification.token,
            expiresAt=verification.expires_at.isoformat(),
        )

    # -- account changes ----------------------------------------------------

    async def _confirm_password(self, user_id: str, password: str, message: str) -> Account:
        account = self.store.get_account(user_id)
        if account is None or not account.is_active:
            raise NotFoundError("user")
        if not await self.hasher.verify(account.password_hash, password):
            raise InvalidCredentialsError(message)
        return account

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        client: Optional[ClientContext] = None,
    ) -> None:
        account = await self._confirm_password(
            user_id, current_password, "Current password is incorrect"
        )
        self.store.update_password(account.id, await self.hasher.hash(new_password))
        self.audit.security_event("password_changed", user_id=account.id, client=client)
        logger.info("password_changed", user_id=account.id)

    async def deactivate_account(
        self, user_id: str, password: str, client: Optional[ClientContext] = None
    ) -> None:
        account = await self._confirm_password(user_id, password, "Password is incorrect")
        self.store.deactivate_account(account.id)
        self._revoke_everything(account.id)
        self.audit.security_event("account_deactivated", user_id=account.id, client=client)
        self._publish(events.USER_DEACTIVATED, account)
        logger.info("account_deactivated", user_id=account.id)


__all__ = ["AuthContext", "AuthIdentity", "AuthResult", "AuthService"]
