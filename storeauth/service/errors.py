from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes both an HTTP ``status_code`` and a stable
    ``error_code`` so the boundary can translate it without inspecting the
    message:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthError(ServiceError):
    """Expected, user-facing outcome of an auth use case."""


class InvalidCredentialsError(AuthError):
    """Unknown email or wrong password (401). Never says which."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthError):
    """Login refused while the lockout window is open (403)."""
    status_code = 403
    error_code = "account_locked"

    def __init__(self, remaining_minutes: int, message: Optional[str] = None) -> None:
        self.remaining_minutes = remaining_minutes
        super().__init__(
            message
            or f"Account is locked. Please try again in {remaining_minutes} minute(s).",
            detail={"remaining_minutes": remaining_minutes},
        )


class AccountDeactivatedError(AuthError):
    """Account has been soft-deactivated (403)."""
    status_code = 403
    error_code = "account_deactivated"

    def __init__(self, message: str = "Account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthError):
    """Token is malformed, forged, of the wrong type or unknown (401)."""
    status_code = 401
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedError(AuthError):
    """Token was already revoked or used (401)."""
    status_code = 401
    error_code = "token_revoked"

    def __init__(self, message: str = "Token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthError):
    """Token is past its expiry (401)."""
    status_code = 401
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(AuthError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"

    def __init__(self, resource: str, message: Optional[str] = None) -> None:
        self.resource = resource
        super().__init__(
            message or f"{resource.capitalize()} not found",
            detail={"resource": resource},
        )


class UnauthorizedError(AuthError):
    """Caller does not own the resource (403)."""
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "Unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AlreadyExistsError(AuthError):
    """Duplicate email, repeated MFA enrollment, or an already verified address (409)."""
    status_code = 409
    error_code = "conflict"


class ValidationFailedError(AuthError):
    """Request is well-formed but not acceptable in the current state (400)."""
    status_code = 400
    error_code = "validation_error"


__all__ = [
    "AccountDeactivatedError",
    "AccountLockedError",
    "AlreadyExistsError",
    "AuthError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "NotFoundError",
    "ServiceError",
    "TokenExpiredError",
    "TokenRevokedError",
    "UnauthorizedError",
    "ValidationFailedError",
]
