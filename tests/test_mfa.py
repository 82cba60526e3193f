"""TOTP primitives and the MFA enroll/verify/disable flow."""

import time

import pytest

from storeauth.service import mfa
from storeauth.service.errors import (
    AlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationFailedError,
)

PASSWORD = "Correct-Horse-9"

# RFC 6238 appendix B seed ("12345678901234567890") in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestTotp:
    @pytest.mark.parametrize(
        "timestamp, expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924")],
    )
    def test_rfc_vectors(self, timestamp, expected):
        """Six-digit truncations of the RFC 6238 SHA-1 vectors."""
        assert mfa.generate_totp(RFC_SECRET, timestamp) == expected

    def test_adjacent_steps_accepted(self):
        """Codes from one step before or after still verify."""
        secret = mfa.generate_secret()
        now = 1_700_000_000.0
        for offset in (-30, 0, 30):
            code = mfa.generate_totp(secret, now + offset)
            assert mfa.verify_totp(secret, code, at=now)

    def test_codes_outside_window_rejected(self):
        secret = mfa.generate_secret()
        now = 1_700_000_000.0
        for offset in (-90, -60, 60, 90):
            code = mfa.generate_totp(secret, now + offset)
            if code == mfa.generate_totp(secret, now):
                continue
            assert not mfa.verify_totp(secret, code, at=now)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_codes_rejected(self, code):
        assert not mfa.verify_totp(mfa.generate_secret(), code)

    def test_secret_is_base32_without_padding(self):
        secret = mfa.generate_secret()
        assert len(secret) == 32
        assert "=" not in secret
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")


class TestEnrollment:
    def test_enroll_returns_codes_and_uri(self):
        enrollment = mfa.enroll("shopper@example.com", "E-Commerce Platform")

        assert len(enrollment.backup_codes) == mfa.BACKUP_CODE_COUNT == 10
        assert all(len(c) == 8 and c == c.upper() for c in enrollment.backup_codes)
        assert enrollment.provisioning_uri.startswith("otpauth://totp/")
        assert f"secret={enrollment.secret}" in enrollment.provisioning_uri

    def test_backup_codes_stored_hashed(self):
        """Only one-way hashes of the codes are meant for storage."""
        enrollment = mfa.enroll("shopper@example.com", "Shop")

        for code, hashed in zip(enrollment.backup_codes, enrollment.backup_code_hashes):
            assert hashed != code
            assert hashed == mfa.hash_backup_code(code)

    def test_match_backup_code_case_insensitive(self):
        code = "ABCD1234"
        stored = [mfa.hash_backup_code(code)]

        assert mfa.match_backup_code(" abcd1234 ", stored) == stored[0]
        assert mfa.match_backup_code("FFFF0000", stored) is None


class TestMfaFlow:
    def test_enable_persists_encrypted_secret(self, security, store, account):
        """The store keeps the secret encrypted but hands it back decrypted."""
        enrollment = security.enable_mfa(account.id)

        raw = store.accounts[account.id].mfa_secret
        assert raw != enrollment.secret
        loaded = store.get_account(account.id)
        assert loaded.mfa_enabled is True
        assert loaded.mfa_secret == enrollment.secret
        assert loaded.mfa_backup_codes == enrollment.backup_code_hashes

    def test_enable_twice_conflicts(self, security, account):
        security.enable_mfa(account.id)

        with pytest.raises(AlreadyExistsError):
            security.enable_mfa(account.id)

    def test_enable_unknown_user(self, security):
        with pytest.raises(NotFoundError):
            security.enable_mfa("missing-user")

    def test_verify_totp_code(self, security, account):
        enrollment = security.enable_mfa(account.id)
        now = time.time()

        result = security.verify_mfa(
            account.id, mfa.generate_totp(enrollment.secret, now), at=now
        )

        assert result.valid is True
        assert result.is_backup_code is False

    def test_verify_without_mfa(self, security, account):
        with pytest.raises(ValidationFailedError):
            security.verify_mfa(account.id, "123456")

    def test_backup_code_single_use(self, security, store, account):
        """A backup code works once and is removed from the account."""
        enrollment = security.enable_mfa(account.id)
        code = enrollment.backup_codes[0]

        first = security.verify_mfa(account.id, code)
        second = security.verify_mfa(account.id, code)

        assert first.valid is True and first.is_backup_code is True
        assert second.valid is False
        assert len(store.get_account(account.id).mfa_backup_codes) == 9

    def test_backup_code_reuse_when_consumption_disabled(
        self, runtime, security, store, account
    ):
        """With consumption off a matched code stays valid."""
        runtime.settings.consume_backup_codes = False
        enrollment = security.enable_mfa(account.id)
        code = enrollment.backup_codes[0]

        assert security.verify_mfa(account.id, code).valid is True
        assert security.verify_mfa(account.id, code).valid is True
        assert len(store.get_account(account.id).mfa_backup_codes) == 10

    def test_wrong_code_invalid(self, security, account):
        security.enable_mfa(account.id)

        result = security.verify_mfa(account.id, "ZZZZ9999")

        assert result.valid is False

    async def test_disable_requires_password(self, security, store, account):
        security.enable_mfa(account.id)

        with pytest.raises(InvalidCredentialsError):
            await security.disable_mfa(account.id, "Wrong-Password-1")
        assert store.get_account(account.id).mfa_enabled is True

    async def test_disable_clears_secret_and_codes(self, security, store, account):
        security.enable_mfa(account.id)

        await security.disable_mfa(account.id, PASSWORD)

        loaded = store.get_account(account.id)
        assert loaded.mfa_enabled is False
        assert loaded.mfa_secret is None
        assert loaded.mfa_backup_codes == []
        actions = [e.action for e in store.list_security_events(account.id)]
        assert "mfa_enabled" in actions and "mfa_disabled" in actions
