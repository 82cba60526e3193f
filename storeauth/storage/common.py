"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from storeauth.logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# MFA SECRET ENCRYPTION
# ============================================================================

def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: Optional[str]) -> Fernet:
    """Build the Fernet cipher that protects MFA secrets at rest.

    Falls back to ``MFA_SECRET_KEY`` then ``JWT_SECRET`` from the environment.
    Without either, a process-local key is generated; secrets written with it
    cannot be read after a restart.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        logger.warning("mfa_cipher_ephemeral_key")
        material = secrets.token_urlsafe(64)
    try:
        return Fernet(derive_cipher_key(material))
    except Exception as exc:
        raise RuntimeError("Unable to initialize MFA cipher") from exc


def encrypt_mfa_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_mfa_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        logger.warning("mfa_secret_decrypt_failed")
        return None


__all__ = [
    "build_mfa_cipher",
    "decrypt_mfa_secret",
    "derive_cipher_key",
    "encrypt_mfa_secret",
]
