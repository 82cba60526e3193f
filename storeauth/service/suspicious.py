from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from storeauth.storage.models import Device

SUSPICIOUS_THRESHOLD = 30
FAILED_ATTEMPTS_THRESHOLD = 3
USUAL_HOURS = range(6, 24)

NEW_IP_SCORE = 20
NEW_DEVICE_SCORE = 30
UNTRUSTED_DEVICE_SCORE = 15
FAILED_ATTEMPTS_SCORE = 25
UNUSUAL_TIME_SCORE = 10


@dataclass
class SuspiciousLoginDetection:
    is_suspicious: bool
    risk_score: int
    reasons: List[str] = field(default_factory=list)


def score_login(
    *,
    user_id: str,
    ip_address: Optional[str],
    known_ips: Iterable[str],
    device: Optional[Device],
    recent_failed_from_ip: int,
    local_hour: int,
) -> SuspiciousLoginDetection:
    """Score one login attempt from what is already known about the account.

    ``known_ips`` are the addresses of the account's recent successful logins
    and ``device`` is whatever the store returned for the presented
    fingerprint. The result is advisory: nothing here blocks a login.
    """
    reasons: List[str] = []
    score = 0

    if ip_address not in set(known_ips):
        reasons.append("New IP address")
        score += NEW_IP_SCORE

    if device is None or device.user_id != user_id:
        reasons.append("New device")
        score += NEW_DEVICE_SCORE
    elif not device.is_trusted:
        reasons.append("Untrusted device")
        score += UNTRUSTED_DEVICE_SCORE

    if recent_failed_from_ip >= FAILED_ATTEMPTS_THRESHOLD:
        reasons.append("Multiple failed attempts from same IP")
        score += FAILED_ATTEMPTS_SCORE

    if local_hour not in USUAL_HOURS:
        reasons.append("Unusual login time")
        score += UNUSUAL_TIME_SCORE

    score = max(0, min(100, score))
    return SuspiciousLoginDetection(
        is_suspicious=score >= SUSPICIOUS_THRESHOLD,
        risk_score=score,
        reasons=reasons,
    )


__all__ = ["SUSPICIOUS_THRESHOLD", "SuspiciousLoginDetection", "score_login"]
