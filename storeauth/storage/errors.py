from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write the auth schema refuses: a duplicate key or a missing owner.

    ``detail`` names the offending field or id and is passed through to the
    error envelope's ``details``.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @classmethod
    def duplicate(cls, label: str, field: str) -> "ConstraintViolation":
        return cls(f"{label} already exists", {"field": field})

    @classmethod
    def missing_account(cls, user_id: str) -> "ConstraintViolation":
        return cls("account does not exist", {"user_id": user_id})


__all__ = ["ConstraintViolation"]
