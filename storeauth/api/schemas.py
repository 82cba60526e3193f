from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters.

    Those characters render invisibly, so two addresses that look identical
    could otherwise map to different accounts.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "account_deactivated",
    "invalid_token",
    "token_revoked",
    "token_expired",
})


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of a fixed set of stable values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # Lookups below this layer are case-sensitive; lower-case here only
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """At least 8 characters with upper case, lower case and a digit."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value) or not re.search(r"[A-Z]", value):
        raise ValueError("password must contain upper and lower case letters")
    if not re.search(r"\d", value):
        raise ValueError("password must contain a digit")
    return value


class DeviceInfo(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=255)
    device_type: str = Field(default="unknown", max_length=32)
    device_name: Optional[str] = Field(default=None, max_length=255)
    os: Optional[str] = Field(default=None, max_length=128)
    browser: Optional[str] = Field(default=None, max_length=128)


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    # Existing passwords may predate the strength rules; only bound the size
    password: str = Field(..., min_length=1, max_length=128)
    device: Optional[DeviceInfo] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class ResendVerificationRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _reject_same_password(self):
        if self.current_password == self.new_password:
            raise ValueError("new password must differ from the current password")
        return self


class PasswordConfirmation(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class DeviceUpdateRequest(BaseModel):
    device_name: Optional[str] = Field(default=None, max_length=255)
    is_trusted: Optional[bool] = None

    @model_validator(mode="after")
    def _require_change(self):
        if self.device_name is None and self.is_trusted is None:
            raise ValueError("device_name or is_trusted is required")
        return self


class RevokeSessionsRequest(BaseModel):
    keep_current: bool = True


class UserResponse(BaseModel):
    id: str
    email: str
    roles: List[str] = Field(default_factory=list)
    email_verified: bool = False
    mfa_enabled: bool = False


class SuspiciousLoginResponse(BaseModel):
    is_suspicious: bool
    risk_score: int
    reasons: List[str] = Field(default_factory=list)


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: Literal["Bearer"] = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    session_token: Optional[str] = None
    suspicious_login: Optional[SuspiciousLoginResponse] = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    is_active: bool
    last_activity_at: datetime
    expires_at: datetime
    created_at: datetime
    is_current: bool = False


class DeviceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    device_id: str
    device_type: str
    device_name: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    is_trusted: bool
    is_active: bool
    last_used_at: datetime
    first_seen_at: datetime


class LoginHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    failure_reason: Optional[str] = None
    is_suspicious: bool = False
    suspicious_reason: Optional[str] = None
    created_at: datetime


class LoginHistoryResponse(BaseModel):
    history: List[LoginHistoryEntry]
    total: int
    limit: int
    offset: int


class MFAEnrollResponse(BaseModel):
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


class MFAVerifyResponse(BaseModel):
    valid: bool
    is_backup_code: bool = False
