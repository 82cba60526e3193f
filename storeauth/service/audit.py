from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from storeauth.logging import get_logger
from storeauth.storage.interfaces import AuditLogStore
from storeauth.storage.models import LoginHistory, new_id

logger = get_logger(__name__)


@dataclass
class ClientContext:
    """Network and device details the boundary knows about a request."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    device_type: str = "unknown"
    device_name: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None


class AuditTrail:
    """Best-effort writer for login history and security audit rows.

    A failed write is logged and dropped; the action being audited goes ahead.
    """

    def __init__(self, store: AuditLogStore) -> None:
        self.store = store

    def security_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        client: Optional[ClientContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        client = client or ClientContext()
        try:
            self.store.record_security_event(
                action,
                user_id=user_id,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                metadata=metadata,
            )
        except Exception as exc:
            logger.warning(
                "audit_write_failed", action=action, user_id=user_id, error=str(exc)
            )

    def login_attempt(
        self,
        status: str,
        *,
        user_id: Optional[str] = None,
        client: Optional[ClientContext] = None,
        failure_reason: Optional[str] = None,
        is_suspicious: bool = False,
        suspicious_reason: Optional[str] = None,
    ) -> None:
        client = client or ClientContext()
        entry = LoginHistory(
            id=new_id(),
            status=status,
            user_id=user_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            device_id=client.device_id,
            country=client.country,
            city=client.city,
            failure_reason=failure_reason,
            is_suspicious=is_suspicious,
            suspicious_reason=suspicious_reason,
        )
        try:
            self.store.record_login(entry)
        except Exception as exc:
            logger.warning(
                "login_history_write_failed",
                status=status,
                user_id=user_id,
                error=str(exc),
            )


__all__ = ["AuditTrail", "ClientContext"]
