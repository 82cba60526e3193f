from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from storeauth.storage.errors import ConstraintViolation
from storeauth.storage.memory import MemoryStore
from storeauth.storage.models import LoginHistory, new_id


@pytest.fixture
def mem():
    return MemoryStore(mfa_encryption_key="memory-store-test-key")


@pytest.fixture
def user(mem):
    return mem.create_account("buyer@example.com", "hash", roles=["user"])


def _future(**delta):
    return datetime.now(timezone.utc) + timedelta(**delta)


def test_default_role_seeded(mem):
    assert mem.get_role("user") is not None


def test_duplicate_email_violates_constraint(mem, user):
    with pytest.raises(ConstraintViolation) as exc_info:
        mem.create_account("buyer@example.com", "hash2")

    assert exc_info.value.message == "email already exists"
    assert exc_info.value.detail == {"field": "email"}


def test_reads_return_copies(mem, user):
    """Mutating a returned record does not change what is stored."""
    view = mem.get_account(user.id)
    view.failed_login_attempts = 99
    view.roles.append("admin")

    fresh = mem.get_account(user.id)
    assert fresh.failed_login_attempts == 0
    assert fresh.roles == ["user"]


def test_assign_unknown_role(mem, user):
    with pytest.raises(ConstraintViolation):
        mem.assign_role(user.id, "superuser")


def test_assign_role_idempotent(mem, user):
    mem.ensure_role("admin", "Store administrator")
    mem.assign_role(user.id, "admin")
    mem.assign_role(user.id, "admin")

    assert mem.get_roles_for_user(user.id) == ["user", "admin"]


def test_concurrent_failed_login_increments_are_not_lost(mem, user):
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: mem.increment_failed_logins(user.id), range(50)))

    assert mem.get_account(user.id).failed_login_attempts == 50


def test_refresh_token_revoked_only_once(mem, user):
    """Of many concurrent revocations exactly one wins."""
    mem.create_refresh_token(user.id, "rt-1", _future(days=7))

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: mem.revoke_refresh_token_if_active("rt-1"), range(20)))

    assert outcomes.count(True) == 1
    assert mem.get_refresh_token("rt-1").revoked_at is not None


def test_revoke_all_refresh_tokens(mem, user):
    for token in ("rt-1", "rt-2"):
        mem.create_refresh_token(user.id, token, _future(days=7))
    mem.revoke_refresh_token_if_active("rt-1")

    assert mem.revoke_all_refresh_tokens(user.id) == 1
    assert all(t.revoked for t in mem.refresh_tokens.values())


def test_backup_code_consumed_once(mem, user):
    mem.set_mfa(user.id, "JBSWY3DPEHPK3PXP", ["h1", "h2"])

    assert mem.consume_backup_code(user.id, "h1") is True
    assert mem.consume_backup_code(user.id, "h1") is False
    assert mem.get_account(user.id).mfa_backup_codes == ["h2"]


def test_mfa_secret_unreadable_with_other_key(mem, user):
    """Secrets at rest are Fernet ciphertext tied to the configured key."""
    mem.set_mfa(user.id, "JBSWY3DPEHPK3PXP", [])
    other = MemoryStore(mfa_encryption_key="a-different-key")
    other.accounts = mem.accounts

    assert mem.get_account(user.id).mfa_secret == "JBSWY3DPEHPK3PXP"
    assert other.get_account(user.id).mfa_secret is None


def test_session_token_unique(mem, user):
    mem.create_user_session(user.id, "sess-1", _future(hours=1))

    with pytest.raises(ConstraintViolation):
        mem.create_user_session(user.id, "sess-1", _future(hours=1))


def test_session_for_missing_account(mem):
    with pytest.raises(ConstraintViolation) as exc_info:
        mem.create_user_session("ghost", "sess-1", _future(hours=1))

    assert exc_info.value.detail == {"user_id": "ghost"}


def test_relink_session(mem, user):
    old = mem.create_refresh_token(user.id, "rt-1", _future(days=7))
    new = mem.create_refresh_token(user.id, "rt-2", _future(days=7))
    sess = mem.create_user_session(user.id, "sess-1", _future(hours=1), refresh_token_id=old.id)

    mem.relink_session_refresh_token(sess.id, new.id)

    assert mem.get_user_session_by_refresh_token(new.id).id == sess.id
    assert mem.get_user_session_by_refresh_token(old.id) is None


def test_touch_ignores_inactive_sessions(mem, user):
    sess = mem.create_user_session(user.id, "sess-1", _future(hours=1))
    mem.revoke_user_session(sess.id)

    assert mem.touch_user_session("sess-1") is None


def test_reset_token_single_use(mem, user):
    mem.replace_password_reset_token(user.id, "reset-1", _future(hours=1))

    assert mem.mark_reset_token_used("reset-1") is True
    assert mem.mark_reset_token_used("reset-1") is False
    assert mem.mark_reset_token_used("unknown") is False


def test_verification_token_replaced(mem, user):
    mem.replace_email_verification_token(user.id, "verify-1", _future(hours=24))
    mem.replace_email_verification_token(user.id, "verify-2", _future(hours=24))

    assert mem.get_email_verification_token("verify-1") is None
    assert mem.mark_verification_token_verified("verify-2") is True
    assert mem.mark_verification_token_verified("verify-2") is False


def test_login_history_newest_first(mem, user):
    base = datetime.now(timezone.utc)
    for minutes, ip in ((3, "10.0.0.1"), (2, "10.0.0.2"), (1, "10.0.0.3")):
        mem.record_login(
            LoginHistory(
                id=new_id(),
                status="success",
                user_id=user.id,
                ip_address=ip,
                created_at=base - timedelta(minutes=minutes),
            )
        )

    assert mem.recent_successful_ips(user.id, limit=2) == ["10.0.0.3", "10.0.0.2"]
    assert mem.count_login_history(user.id) == 3
