"""
api/routes/v1/auth.py -- Registration, login, refresh, verification and reset endpoints.

Routes:
  POST /api/v1/auth/register          -- create account; e-mails a verification link
  POST /api/v1/auth/login             -- password login; sets cookies or asks for MFA
  GET  /api/v1/auth/refresh           -- new access token (rotates refresh token near expiry)
  POST /api/v1/auth/verify/email      -- redeem e-mail verification code
  POST /api/v1/auth/verify/resend     -- re-send the verification e-mail
  POST /api/v1/auth/password/forgot   -- e-mail a reset code (per-account throttled)
  POST /api/v1/auth/password/reset    -- redeem reset code; revokes every session
  POST /api/v1/auth/logout            -- delete the caller's session; clears cookies
  GET  /api/v1/auth/me                -- current account (requires auth)

Security:
  [H2] POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  [C1] Credential checks go through AuthService -> CredentialVerifier, which
       equalizes timing. Never inline a lookup + password compare here.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Enumeration: forgot-password and resend answer identically whether or not
       the e-mail belongs to an account.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountResponse,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    VerifyEmailRequest,
)
from auth.dependencies import AuthContext, get_auth_service, get_current_auth
from auth.service import AuthService, LoginResult
from auth.tokens import (
    REFRESH_COOKIE,
    clear_auth_cookies,
    set_access_cookie,
    set_auth_cookies,
    set_refresh_cookie,
)
from core.config import get_settings

# Auth policy:
# - POST /auth/register, /auth/login, /auth/verify/*, /auth/password/*: public
# - GET  /auth/refresh: public, but requires the refreshToken cookie
# - POST /auth/logout, GET /auth/me: requires auth (get_current_auth)
router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


def login_response(request: Request, result: LoginResult) -> JSONResponse:
    """Build the login response shared by password login and the MFA login step."""
    account = AccountResponse.from_account(result.account)
    if result.mfa_required:
        return JSONResponse(
            status_code=200,
            content=LoginResponse(
                message="Verify MFA authentication.",
                account=account,
                mfa_required=True,
                mfa_token=result.mfa_token,
            ).model_dump(),
            headers={"Cache-Control": "no-store"},
        )
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            message="Logged in successfully.",
            account=account,
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        ).model_dump(),
    )
    set_auth_cookies(resp, result.tokens.access_token, result.tokens.refresh_token, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(body: RegisterRequest, service: AuthService = Depends(get_auth_service)) -> RegisterResponse:
    """Create an account and e-mail its verification link.

    If the e-mail cannot be sent the account still exists; the client gets
    notification_failed (500) and can call /auth/verify/resend.
    """
    account = service.register(body.email, body.password, name=body.name)
    return RegisterResponse(message="Account registered successfully.", account=AccountResponse.from_account(account))


@router.post("/auth/verify/email", response_model=MessageResponse)
def verify_email(body: VerifyEmailRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    service.verify_email(body.code)
    return MessageResponse(message="E-mail verified successfully.")


@router.post("/auth/verify/resend", response_model=MessageResponse)
def resend_verification(body: EmailRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    service.resend_verification(body.email)
    return MessageResponse(message="If the account exists and is unverified, a verification e-mail has been sent.")


# ---------------------------------------------------------------------------
# Login / refresh / logout
# ---------------------------------------------------------------------------


@limiter.limit(_login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with e-mail and password.

    Accounts with MFA enabled get mfa_required=true, no tokens, and a
    short-lived mfa_token; the client then calls POST /mfa/verify-login with
    that mfa_token and a TOTP code.
    """
    service: AuthService = get_auth_service(request)
    result = service.login(body.email, body.password, user_agent=request.headers.get("user-agent"))
    return login_response(request, result)


@router.get("/auth/refresh", response_model=MessageResponse)
def refresh(request: Request) -> JSONResponse:
    """Mint a new access token from the refreshToken cookie.

    A new refresh cookie is only set when the session was close enough to
    expiry to rotate. On any failure the error handler clears both cookies.
    """
    service: AuthService = get_auth_service(request)
    result = service.refresh(request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=MessageResponse(message="Access token refreshed.").model_dump())
    settings = request.app.state.settings
    set_access_cookie(resp, result.access_token, settings)
    if result.refresh_token is not None:
        set_refresh_cookie(resp, result.refresh_token, settings)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, auth: AuthContext = Depends(get_current_auth)) -> JSONResponse:
    """Delete the session bound to the caller's access token and clear cookies."""
    get_auth_service(request).logout(auth.session.id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/me", response_model=AccountResponse)
def me(auth: AuthContext = Depends(get_current_auth)) -> AccountResponse:
    return AccountResponse.from_account(auth.account)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password/forgot", response_model=MessageResponse)
def forgot_password(body: EmailRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    """E-mail a reset code. Throttled per account (RateLimitExceededError -> 429)."""
    service.forgot_password(body.email)
    return MessageResponse(message="If the account exists, a password reset e-mail has been sent.")


@router.post("/auth/password/reset", response_model=MessageResponse)
def reset_password(body: ResetPasswordRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Set a new password and log the account out everywhere."""
    service.reset_password(body.verification_code, body.password)
    resp = JSONResponse(content=MessageResponse(message="Password reset successfully.").model_dump())
    clear_auth_cookies(resp)
    return resp
