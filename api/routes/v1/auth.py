"""
api/routes/v1/auth.py -- Login, logout, session management and password endpoints.

Routes:
  POST   /api/v1/auth/login                      -- password login; sets the session cookie
  POST   /api/v1/auth/logout                     -- invalidates the current session
  GET    /api/v1/auth/me                         -- the request's Identity
  GET    /api/v1/auth/sessions                   -- caller's active sessions
  DELETE /api/v1/auth/sessions/{session_id}      -- revoke one of the caller's other sessions
  POST   /api/v1/auth/sessions/invalidate-others -- revoke every session except this one
  POST   /api/v1/auth/password                   -- change own password (revokes all sessions)
  POST   /api/v1/auth/password-reset/request     -- issue a reset token (public)
  POST   /api/v1/auth/password-reset/confirm     -- set a new password with a token (public)

Security:
  Login and reset requests are rate-limited per client address.
  AuthService.authenticate() equalizes timing -- never inline lookup + verify.
  Login responses carry Cache-Control: no-store.
  The reset request answers identically for known and unknown emails.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit, password_reset_rate_limit
from api.models import (
    InvalidatedResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetIssued,
    PasswordResetRequest,
    SessionResponse,
    UserResponse,
)
from auth.dependencies import authenticate, client_info
from auth.models import ClientInfo, Identity
from auth.service import (
    AuthService,
    InvalidCurrentPassword,
    InvalidResetToken,
    PasswordPolicyError,
    PasswordReuseError,
)
from core.config import Settings

# Auth policy:
# - POST /auth/login, /auth/password-reset/*: public, rate limited
# - everything else: requires a valid session (authenticate)
router = APIRouter()

_RESET_ACK = "If your email is registered, you will receive password reset instructions"


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _password_error(exc: Exception, settings: Settings) -> HTTPException:
    if isinstance(exc, PasswordPolicyError):
        return HTTPException(
            status_code=400,
            detail={
                "code": "weak_password",
                "message": "Password does not meet complexity requirements",
                "feedback": exc.feedback,
                "score": exc.score,
            },
        )
    if isinstance(exc, PasswordReuseError):
        return HTTPException(
            status_code=400,
            detail={
                "code": "password_reused",
                "message": (
                    "New password cannot be the same as any of your last "
                    f"{settings.password_history_size} passwords"
                ),
            },
        )
    if isinstance(exc, InvalidCurrentPassword):
        return HTTPException(
            status_code=400,
            detail={"code": "invalid_current_password", "message": "Current password is incorrect"},
        )
    return HTTPException(status_code=400, detail={"code": "invalid_token", "message": "Invalid or expired token"})


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, client: ClientInfo = Depends(client_info)) -> JSONResponse:
    """Check email + password and open a session.

    Unknown email, wrong password and inactive account all produce the same
    401 so the response does not reveal which one it was.
    """
    settings = _settings(request)
    result = _service(request).authenticate(body.email, body.password, client)
    if not result.ok:
        resp = JSONResponse(status_code=401, content={"message": "Invalid credentials"})
        resp.headers["Cache-Control"] = "no-store"
        return resp

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=UserResponse.model_validate(result.user),
            expires_at=result.session.expires_at,
        ).model_dump(),
    )
    resp.set_cookie(
        key=settings.session_cookie_name,
        value=result.session.id,
        max_age=settings.session_lifetime_seconds,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(password_reset_rate_limit)
@router.post("/auth/password-reset/request", response_model=PasswordResetIssued)
def request_password_reset(request: Request, body: PasswordResetRequest) -> PasswordResetIssued:
    """Issue a reset token. The token is only echoed back in DEBUG mode."""
    token = _service(request).request_password_reset(body.email)
    if token is not None and _settings(request).debug:
        return PasswordResetIssued(
            message="Password reset requested. In production, an email would be sent.",
            reset_token=token,
        )
    return PasswordResetIssued(message=_RESET_ACK)


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(
    request: Request,
    body: PasswordResetConfirm,
    client: ClientInfo = Depends(client_info),
) -> MessageResponse:
    try:
        _service(request).reset_password(body.token, body.new_password, client)
    except (InvalidResetToken, PasswordPolicyError, PasswordReuseError) as exc:
        raise _password_error(exc, _settings(request)) from exc
    return MessageResponse(message="Password has been reset successfully")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    identity: Identity = Depends(authenticate),
    client: ClientInfo = Depends(client_info),
) -> JSONResponse:
    """Invalidate the current session and clear the cookie."""
    _service(request).logout(identity.session_id, identity.user_id, client)
    resp = JSONResponse(content={"message": "Logged out successfully"})
    resp.delete_cookie(_settings(request).session_cookie_name, path="/")
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(identity: Identity = Depends(authenticate)) -> MeResponse:
    """Return the authenticated user, role label and permission snapshot."""
    return MeResponse(
        user=UserResponse.model_validate(identity.user),
        role=identity.role,
        permissions=[p.token for p in identity.permissions],
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, identity: Identity = Depends(authenticate)) -> list[SessionResponse]:
    """List the caller's valid, unexpired sessions, newest first."""
    sessions = _service(request).list_active_sessions(identity.user_id)
    return [
        SessionResponse(
            id=s.id,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            created_at=s.created_at,
            expires_at=s.expires_at,
            current=s.id == identity.session_id,
        )
        for s in sessions
    ]


@router.delete("/auth/sessions/{session_id}", response_model=MessageResponse)
def invalidate_session(
    request: Request,
    session_id: str,
    identity: Identity = Depends(authenticate),
) -> MessageResponse:
    """Revoke another session of the caller. Ownership is checked server-side."""
    service = _service(request)
    if not service.is_session_owned_by(identity.user_id, session_id):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You can only invalidate your own sessions"},
        )
    if session_id == identity.session_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "current_session", "message": "Cannot invalidate current session. Use logout instead."},
        )
    service.invalidate_session(session_id)
    return MessageResponse(message="Session invalidated successfully")


@router.post("/auth/sessions/invalidate-others", response_model=InvalidatedResponse)
def invalidate_other_sessions(request: Request, identity: Identity = Depends(authenticate)) -> InvalidatedResponse:
    count = _service(request).invalidate_other_sessions(identity.user_id, identity.session_id)
    return InvalidatedResponse(message="All other sessions invalidated successfully", invalidated=count)


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    identity: Identity = Depends(authenticate),
    client: ClientInfo = Depends(client_info),
) -> JSONResponse:
    """Change the caller's password. Every session, this one included, ends."""
    settings = _settings(request)
    try:
        _service(request).change_password(identity.user_id, body.current_password, body.new_password, client)
    except (InvalidCurrentPassword, PasswordPolicyError, PasswordReuseError) as exc:
        raise _password_error(exc, settings) from exc
    resp = JSONResponse(content={"message": "Password updated successfully"})
    resp.delete_cookie(settings.session_cookie_name, path="/")
    return resp
