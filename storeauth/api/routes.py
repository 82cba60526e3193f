from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from storeauth.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    DeviceInfo,
    DeviceResponse,
    DeviceUpdateRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginHistoryEntry,
    LoginHistoryResponse,
    LoginRequest,
    MFAEnrollResponse,
    MFAVerifyRequest,
    MFAVerifyResponse,
    PasswordConfirmation,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    RevokeSessionsRequest,
    SessionResponse,
    SuspiciousLoginResponse,
    UserResponse,
    VerifyEmailRequest,
)
from storeauth.logging import get_logger
from storeauth.service.audit import ClientContext
from storeauth.service.auth import AuthContext, AuthResult
from storeauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_context(request: Request, device: Optional[DeviceInfo] = None) -> ClientContext:
    device = device or DeviceInfo(device_id=request.headers.get("X-Device-Id"))
    return ClientContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        device_id=device.device_id,
        device_type=device.device_type,
        device_name=device.device_name,
        os=device.os,
        browser=device.browser,
    )


async def get_user(
    authorization: Optional[str] = Header(None),
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
) -> AuthContext:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    runtime = get_runtime()
    principal = runtime.auth.authenticate(token.strip())
    if x_session_token:
        runtime.security.touch_session(x_session_token)
    return principal


def _apply_refresh_cookie(response: Response, result: AuthResult) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
        domain=settings.cookie_domain,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        REFRESH_COOKIE,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
        domain=settings.cookie_domain,
    )


def _presented_refresh_token(request: Request, body: Optional[RefreshRequest]) -> str:
    token = (
        request.cookies.get(REFRESH_COOKIE)
        or (body.refresh_token if body else None)
        or request.headers.get("X-Refresh-Token")
    )
    if not token:
        raise _http_error("validation_error", "refresh token is required", status_code=400)
    return token


def _auth_envelope(result: AuthResult) -> Envelope:
    suspicious = None
    if result.suspicious is not None:
        suspicious = SuspiciousLoginResponse(
            is_suspicious=result.suspicious.is_suspicious,
            risk_score=result.suspicious.risk_score,
            reasons=result.suspicious.reasons,
        )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse(**vars(result.user)),
            access_token=result.access_token,
            expires_in=result.expires_in,
            refresh_token=result.refresh_token,
            refresh_expires_at=result.refresh_expires_at,
            session_token=result.session_token,
            suspicious_login=suspicious,
        ),
    )


# -- auth ---------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account, sign it in and send the verification email.

    Raises:
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email, body.password, _client_context(request)
    )
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    The refresh token is set as an HTTP-only cookie and also returned in the
    body for clients without a cookie jar.

    Raises:
        401: Unknown email or wrong password
        403: Account locked or deactivated
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, _client_context(request, body.device)
    )
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request, response: Response, body: Optional[RefreshRequest] = None
):
    runtime = get_runtime()
    token = _presented_refresh_token(request, body)
    result = await runtime.auth.refresh(token, _client_context(request))
    _apply_refresh_cookie(response, result)
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, body: Optional[RefreshRequest] = None
):
    runtime = get_runtime()
    await runtime.auth.logout(_presented_refresh_token(request, body))
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    # Same response whether or not the account exists
    await get_runtime().auth.forgot_password(body.email)
    return Envelope(
        status="ok",
        data={"message": "If the email exists, a password reset link has been sent"},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    await get_runtime().auth.reset_password(
        body.token, body.new_password, _client_context(request)
    )
    return Envelope(status="ok", data={"status": "password_reset"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    identity = await get_runtime().auth.verify_email(body.token)
    return Envelope(status="ok", data=UserResponse(**vars(identity)))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    await get_runtime().auth.resend_verification(body.email)
    return Envelope(status="ok", data={"status": "verification_sent"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    await get_runtime().auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        _client_context(request),
    )
    return Envelope(status="ok", data={"status": "password_changed"})


@router.post("/auth/deactivate", response_model=Envelope, tags=["auth"])
async def deactivate(
    body: PasswordConfirmation,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await get_runtime().auth.deactivate_account(
        principal.user_id, body.password, _client_context(request)
    )
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"status": "deactivated"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=vars(principal))


# -- security -----------------------------------------------------------------


@router.get("/security/devices", response_model=Envelope, tags=["security"])
async def list_devices(
    include_inactive: bool = Query(False),
    principal: AuthContext = Depends(get_user),
):
    devices = get_runtime().security.list_devices(
        principal.user_id, include_inactive=include_inactive
    )
    return Envelope(
        status="ok",
        data={"devices": [DeviceResponse.model_validate(d) for d in devices]},
    )


@router.put("/security/devices/{device_pk}", response_model=Envelope, tags=["security"])
async def update_device(
    device_pk: str,
    body: DeviceUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    device = get_runtime().security.update_device(
        device_pk,
        principal.user_id,
        device_name=body.device_name,
        is_trusted=body.is_trusted,
    )
    return Envelope(status="ok", data=DeviceResponse.model_validate(device))


@router.post(
    "/security/devices/{device_pk}/revoke", response_model=Envelope, tags=["security"]
)
async def revoke_device(
    device_pk: str, request: Request, principal: AuthContext = Depends(get_user)
):
    revoked = get_runtime().security.revoke_device(
        device_pk, principal.user_id, client=_client_context(request)
    )
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.get("/security/login-history", response_model=Envelope, tags=["security"])
async def login_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    status: Optional[str] = Query(None),
    is_suspicious: Optional[bool] = Query(None),
    principal: AuthContext = Depends(get_user),
):
    page = get_runtime().security.get_login_history(
        principal.user_id,
        limit=limit,
        offset=offset,
        status=status,
        is_suspicious=is_suspicious,
    )
    return Envelope(
        status="ok",
        data=LoginHistoryResponse(
            history=[LoginHistoryEntry.model_validate(h) for h in page.history],
            total=page.total,
            limit=limit,
            offset=offset,
        ),
    )


@router.get("/security/sessions", response_model=Envelope, tags=["security"])
async def list_sessions(
    active_only: bool = Query(True),
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
    principal: AuthContext = Depends(get_user),
):
    sessions = get_runtime().security.list_sessions(
        principal.user_id, active_only=active_only
    )
    items = []
    for session in sessions:
        item = SessionResponse.model_validate(session)
        item.is_current = bool(x_session_token) and session.session_token == x_session_token
        items.append(item)
    return Envelope(status="ok", data={"sessions": items})


@router.post(
    "/security/sessions/revoke-all", response_model=Envelope, tags=["security"]
)
async def revoke_all_sessions(
    request: Request,
    body: Optional[RevokeSessionsRequest] = None,
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
    principal: AuthContext = Depends(get_user),
):
    keep_current = body.keep_current if body else True
    revoked = get_runtime().security.revoke_all_sessions(
        principal.user_id,
        current_session_token=x_session_token if keep_current else None,
        client=_client_context(request),
    )
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.post(
    "/security/sessions/{session_id}/revoke", response_model=Envelope, tags=["security"]
)
async def revoke_session(
    session_id: str, request: Request, principal: AuthContext = Depends(get_user)
):
    get_runtime().security.revoke_session(
        session_id, principal.user_id, client=_client_context(request)
    )
    return Envelope(status="ok", data={"status": "revoked"})


@router.post("/security/mfa/enable", response_model=Envelope, tags=["security"])
async def enable_mfa(principal: AuthContext = Depends(get_user)):
    """Enroll in MFA. The backup codes in this response are never shown again."""
    enrollment = get_runtime().security.enable_mfa(principal.user_id)
    return Envelope(
        status="ok",
        data=MFAEnrollResponse(
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/security/mfa/verify", response_model=Envelope, tags=["security"])
async def verify_mfa(body: MFAVerifyRequest, principal: AuthContext = Depends(get_user)):
    result = get_runtime().security.verify_mfa(principal.user_id, body.code)
    return Envelope(
        status="ok",
        data=MFAVerifyResponse(valid=result.valid, is_backup_code=result.is_backup_code),
    )


@router.post("/security/mfa/disable", response_model=Envelope, tags=["security"])
async def disable_mfa(
    body: PasswordConfirmation,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    await get_runtime().security.disable_mfa(
        principal.user_id, body.password, client=_client_context(request)
    )
    return Envelope(status="ok", data={"status": "disabled"})


@router.post(
    "/security/suspicious-login/detect", response_model=Envelope, tags=["security"]
)
async def detect_suspicious_login(
    request: Request,
    body: Optional[DeviceInfo] = None,
    principal: AuthContext = Depends(get_user),
):
    detection = get_runtime().security.detect_suspicious_login(
        principal.user_id, _client_context(request, body)
    )
    return Envelope(
        status="ok",
        data=SuspiciousLoginResponse(
            is_suspicious=detection.is_suspicious,
            risk_score=detection.risk_score,
            reasons=detection.reasons,
        ),
    )
