from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


LOGIN_STATUSES = ("success", "failed", "blocked")
DEFAULT_ROLE = "user"


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    email_verified: bool = False
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_backup_codes: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSession:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    refresh_token_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    is_active: bool = True
    last_activity_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None


@dataclass
class Device:
    id: str
    user_id: str
    device_id: str
    device_type: str = "unknown"
    device_name: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    is_trusted: bool = False
    is_active: bool = True
    last_used_at: datetime = field(default_factory=utcnow)
    first_seen_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginHistory:
    id: str
    status: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    failure_reason: Optional[str] = None
    is_suspicious: bool = False
    suspicious_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityAuditLog:
    id: str
    action: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailVerificationToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
