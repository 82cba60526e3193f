from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import struct
import time
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote

from storeauth.logging import get_logger

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10
TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1


@dataclass
class MFAEnrollment:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)
    backup_code_hashes: List[str] = field(default_factory=list)


@dataclass
class MFAVerification:
    valid: bool
    is_backup_code: bool = False


def generate_secret() -> str:
    """20 random bytes as unpadded base32, the format authenticator apps expect."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = f"{quote(issuer)}:{quote(account_name)}"
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"


def _decode_secret(secret: str) -> Optional[bytes]:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code for ``timestamp``: HMAC-SHA1 over the big-endian step counter."""
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = struct.pack(">Q", int(timestamp // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept the code for the current step or one step either side."""
    if not code or not code.isdigit() or len(code) != TOTP_DIGITS:
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def enroll(account_name: str, issuer: str) -> MFAEnrollment:
    secret = generate_secret()
    codes = generate_backup_codes()
    return MFAEnrollment(
        secret=secret,
        provisioning_uri=provisioning_uri(secret, account_name, issuer),
        backup_codes=codes,
        backup_code_hashes=[hash_backup_code(c) for c in codes],
    )


def match_backup_code(code: str, stored_hashes: List[str]) -> Optional[str]:
    """Return the stored hash ``code`` matches, if any."""
    if not code:
        return None
    candidate = hash_backup_code(code.strip().upper())
    for stored in stored_hashes:
        if hmac.compare_digest(candidate, stored):
            return stored
    return None


__all__ = [
    "BACKUP_CODE_COUNT",
    "MFAEnrollment",
    "MFAVerification",
    "enroll",
    "generate_backup_codes",
    "generate_secret",
    "generate_totp",
    "hash_backup_code",
    "match_backup_code",
    "provisioning_uri",
    "verify_totp",
]
