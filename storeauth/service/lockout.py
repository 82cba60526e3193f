from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class LockoutDecision:
    failed_attempts: int
    max_attempts: int
    locked_until: Optional[datetime] = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class LockoutPolicy:
    """Decides when repeated password failures lock an account, and for how long."""

    def __init__(self, max_attempts: int, lockout_minutes: int) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.lockout_duration = timedelta(minutes=lockout_minutes)

    def is_locked(self, locked_until: Optional[datetime], now: datetime) -> bool:
        return locked_until is not None and locked_until > now

    def remaining_minutes(self, locked_until: datetime, now: datetime) -> int:
        seconds = (locked_until - now).total_seconds()
        return max(1, math.ceil(seconds / 60))

    def register_failure(self, failed_attempts: int, now: datetime) -> LockoutDecision:
        """``failed_attempts`` is the counter after the failed attempt was recorded."""
        if failed_attempts >= self.max_attempts:
            return LockoutDecision(
                failed_attempts=failed_attempts,
                max_attempts=self.max_attempts,
                locked_until=now + self.lockout_duration,
            )
        return LockoutDecision(
            failed_attempts=failed_attempts, max_attempts=self.max_attempts
        )

    @property
    def lockout_minutes(self) -> int:
        return int(self.lockout_duration.total_seconds() // 60)


__all__ = ["LockoutDecision", "LockoutPolicy"]
