from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenClaims:
    user_id: str
    email: str
    type: str
    iat: int
    exp: int
    jti: str
    roles: List[str] = field(default_factory=list)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime


class TokenIssuer:
    """Mints and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``type`` claim, so neither can stand in for the other even if one secret
    leaks.
    """

    def __init__(self, settings: Settings, *, leeway_seconds: int = 0) -> None:
        self.settings = settings
        self._secrets = {
            ACCESS: settings.jwt_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._ttls = {
            ACCESS: settings.access_token_ttl_seconds,
            REFRESH: settings.refresh_token_ttl_seconds,
        }
        self.leeway_seconds = leeway_seconds

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, token_type: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, token_type: str, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(token_type, signing_input)}"

    def _mint(
        self, token_type: str, user_id: str, email: str, roles: List[str], now: float
    ) -> tuple[str, int]:
        iat = int(now)
        exp = iat + self._ttls[token_type]
        payload = {
            "sub": user_id,
            "userId": user_id,
            "email": email,
            "roles": list(roles),
            "type": token_type,
            "iat": iat,
            "exp": exp,
            # jti keeps two tokens minted in the same second distinct
            "jti": uuid.uuid4().hex,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        return self._encode(token_type, payload), exp

    def issue_pair(self, user_id: str, email: str, roles: List[str]) -> TokenPair:
        now = time.time()
        access, _ = self._mint(ACCESS, user_id, email, roles, now)
        refresh, refresh_exp = self._mint(REFRESH, user_id, email, roles, now)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self._ttls[ACCESS],
            refresh_expires_at=datetime.fromtimestamp(refresh_exp, tz=timezone.utc),
        )

    def _decode(self, token: str, expected_type: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError()

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.info("jwt_header_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict):
            raise InvalidTokenError()
        if header.get("alg") != "HS256":
            logger.info("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError()

        expected_sig = self._sign(expected_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
        ):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.info("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("type") != expected_type:
            raise InvalidTokenError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        if exp_ts <= time.time() - self.leeway_seconds:
            raise TokenExpiredError()
        if not payload.get("sub"):
            raise InvalidTokenError()
        return payload

    def _claims(self, payload: dict[str, Any]) -> TokenClaims:
        roles = payload.get("roles") or []
        return TokenClaims(
            user_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
            type=payload["type"],
            iat=int(payload.get("iat", 0)),
            exp=int(payload["exp"]),
            jti=str(payload.get("jti", "")),
            roles=[str(r) for r in roles] if isinstance(roles, list) else [],
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._claims(self._decode(token, ACCESS))

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._claims(self._decode(token, REFRESH))


__all__ = ["ACCESS", "REFRESH", "TokenClaims", "TokenIssuer", "TokenPair"]
