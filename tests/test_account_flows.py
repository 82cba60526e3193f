"""Registration, password reset, email verification and account changes."""

from datetime import datetime, timedelta, timezone

import pytest

from storeauth.service import events
from storeauth.service.errors import (
    AccountDeactivatedError,
    AlreadyExistsError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    TokenRevokedError,
)

PASSWORD = "Correct-Horse-9"
NEW_PASSWORD = "Battery-Staple-42"


def _published(runtime, topic):
    return [payload for _, payload in runtime.publisher.get_events(topic)]


class TestRegister:
    async def test_creates_account_with_default_role(self, runtime, auth, store, client_ctx):
        result = await auth.register("new.buyer@example.com", PASSWORD, client_ctx)

        account = store.get_account(result.user.id)
        assert account.email == "new.buyer@example.com"
        assert account.roles == ["user"]
        assert account.email_verified is False
        assert account.password_hash != PASSWORD
        assert result.access_token and result.refresh_token and result.session_token

    async def test_publishes_created_and_verification_events(self, runtime, auth, store):
        result = await auth.register("new.buyer@example.com", PASSWORD)
        await runtime.dispatcher.drain()

        created = _published(runtime, events.USER_CREATED)
        verification = _published(runtime, events.EMAIL_VERIFICATION_REQUESTED)
        assert created[0]["userId"] == result.user.id
        assert created[0]["source"] == "auth-service"
        token = verification[0]["verificationToken"]
        assert store.get_email_verification_token(token).user_id == result.user.id

    async def test_duplicate_email(self, auth, account):
        with pytest.raises(AlreadyExistsError):
            await auth.register(account.email, PASSWORD)

    async def test_registered_user_can_log_in(self, auth):
        await auth.register("new.buyer@example.com", PASSWORD)

        result = await auth.login("new.buyer@example.com", PASSWORD)

        assert result.user.email == "new.buyer@example.com"

    async def test_failing_publisher_does_not_fail_registration(self, runtime, auth, monkeypatch):
        """Event delivery problems are logged, never surfaced."""

        async def _down(topic, payload):
            raise ConnectionError("broker unavailable")

        monkeypatch.setattr(runtime.publisher, "publish", _down)

        result = await auth.register("new.buyer@example.com", PASSWORD)
        await runtime.dispatcher.drain()

        assert result.user.email == "new.buyer@example.com"


class TestPasswordReset:
    async def _request_token(self, runtime, auth, email):
        await auth.forgot_password(email)
        await runtime.dispatcher.drain()
        return _published(runtime, events.PASSWORD_RESET_REQUESTED)[-1]["resetToken"]

    async def test_unknown_email_is_silent(self, runtime, auth, store):
        await auth.forgot_password("nobody@example.com")
        await runtime.dispatcher.drain()

        assert _published(runtime, events.PASSWORD_RESET_REQUESTED) == []
        assert store.reset_tokens == {}

    async def test_inactive_account_gets_no_token(self, runtime, auth, store, account):
        """A deactivated account is treated like an unknown email."""
        store.deactivate_account(account.id)

        await auth.forgot_password(account.email)
        await runtime.dispatcher.drain()

        assert [t for t in store.reset_tokens.values() if t.user_id == account.id] == []
        assert _published(runtime, events.PASSWORD_RESET_REQUESTED) == []

    async def test_new_request_replaces_old_token(self, runtime, auth, store, account):
        first = await self._request_token(runtime, auth, account.email)
        second = await self._request_token(runtime, auth, account.email)

        assert first != second
        assert store.get_password_reset_token(first) is None
        assert store.get_password_reset_token(second) is not None

    async def test_reset_changes_password_and_revokes_sessions(
        self, runtime, auth, store, account, client_ctx
    ):
        """A reset invalidates every refresh token and session of the account."""
        logged_in = await auth.login(account.email, PASSWORD, client_ctx)
        token = await self._request_token(runtime, auth, account.email)

        await auth.reset_password(token, NEW_PASSWORD)

        with pytest.raises(TokenRevokedError):
            await auth.refresh(logged_in.refresh_token)
        assert store.get_user_session_by_token(logged_in.session_token).is_active is False
        with pytest.raises(InvalidCredentialsError):
            await auth.login(account.email, PASSWORD)
        assert (await auth.login(account.email, NEW_PASSWORD)).access_token

    async def test_reset_clears_lockout(self, runtime, auth, store, account):
        store.increment_failed_logins(account.id)
        store.lock_account(account.id, datetime.now(timezone.utc) + timedelta(minutes=30))
        token = await self._request_token(runtime, auth, account.email)

        await auth.reset_password(token, NEW_PASSWORD)

        refreshed = store.get_account(account.id)
        assert refreshed.failed_login_attempts == 0
        assert refreshed.locked_until is None

    async def test_token_is_single_use(self, runtime, auth, account):
        token = await self._request_token(runtime, auth, account.email)
        await auth.reset_password(token, NEW_PASSWORD)

        with pytest.raises(TokenRevokedError):
            await auth.reset_password(token, "Another-Pass-77")

    async def test_expired_token(self, runtime, auth, store, account):
        token = await self._request_token(runtime, auth, account.email)
        store.reset_tokens[token].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )

        with pytest.raises(TokenExpiredError):
            await auth.reset_password(token, NEW_PASSWORD)

    async def test_unknown_token(self, auth):
        with pytest.raises(InvalidTokenError):
            await auth.reset_password("f" * 64, NEW_PASSWORD)


class TestEmailVerification:
    async def _registered(self, runtime, auth):
        result = await auth.register("new.buyer@example.com", PASSWORD)
        await runtime.dispatcher.drain()
        token = _published(runtime, events.EMAIL_VERIFICATION_REQUESTED)[-1][
            "verificationToken"
        ]
        return result, token

    async def test_verify_marks_account(self, runtime, auth, store):
        result, token = await self._registered(runtime, auth)

        identity = await auth.verify_email(token)

        assert identity.email_verified is True
        assert store.get_account(result.user.id).email_verified is True

    async def test_verify_twice_conflicts(self, runtime, auth):
        _, token = await self._registered(runtime, auth)
        await auth.verify_email(token)

        with pytest.raises(AlreadyExistsError):
            await auth.verify_email(token)

    async def test_expired_verification_token(self, runtime, auth, store):
        _, token = await self._registered(runtime, auth)
        store.verification_tokens[token].expires_at = datetime.now(
            timezone.utc
        ) - timedelta(seconds=1)

        with pytest.raises(TokenExpiredError):
            await auth.verify_email(token)

    async def test_unknown_verification_token(self, auth):
        with pytest.raises(InvalidTokenError):
            await auth.verify_email("0" * 64)

    async def test_resend_replaces_token(self, runtime, auth, store):
        _, first = await self._registered(runtime, auth)

        await auth.resend_verification("new.buyer@example.com")
        await runtime.dispatcher.drain()

        second = _published(runtime, events.EMAIL_VERIFICATION_REQUESTED)[-1][
            "verificationToken"
        ]
        assert second != first
        assert store.get_email_verification_token(first) is None
        with pytest.raises(InvalidTokenError):
            await auth.verify_email(first)
        await auth.verify_email(second)

    async def test_resend_for_verified_account(self, runtime, auth):
        _, token = await self._registered(runtime, auth)
        await auth.verify_email(token)

        with pytest.raises(AlreadyExistsError):
            await auth.resend_verification("new.buyer@example.com")

    async def test_resend_for_unknown_account(self, auth):
        with pytest.raises(NotFoundError):
            await auth.resend_verification("nobody@example.com")


class TestAccountChanges:
    async def test_change_password(self, auth, account):
        await auth.change_password(account.id, PASSWORD, NEW_PASSWORD)

        with pytest.raises(InvalidCredentialsError):
            await auth.login(account.email, PASSWORD)
        assert (await auth.login(account.email, NEW_PASSWORD)).access_token

    async def test_change_password_wrong_current(self, auth, store, account):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth.change_password(account.id, "Wrong-Password-1", NEW_PASSWORD)

        assert exc_info.value.message == "Current password is incorrect"
        assert "password_changed" not in [
            e.action for e in store.list_security_events(account.id)
        ]

    async def test_deactivate_revokes_and_publishes(
        self, runtime, auth, store, account, client_ctx
    ):
        logged_in = await auth.login(account.email, PASSWORD, client_ctx)

        await auth.deactivate_account(account.id, PASSWORD)
        await runtime.dispatcher.drain()

        assert store.get_account(account.id).is_active is False
        assert store.get_refresh_token(logged_in.refresh_token).revoked is True
        assert store.list_user_sessions(account.id) == []
        payloads = _published(runtime, events.USER_DEACTIVATED)
        assert payloads[0]["userId"] == account.id
        with pytest.raises(AccountDeactivatedError):
            await auth.login(account.email, PASSWORD)

    async def test_deactivate_needs_password(self, auth, store, account):
        with pytest.raises(InvalidCredentialsError):
            await auth.deactivate_account(account.id, "Wrong-Password-1")

        assert store.get_account(account.id).is_active is True
