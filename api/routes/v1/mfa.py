"""
api/routes/v1/mfa.py -- TOTP multi-factor authentication endpoints.

Routes:
  GET  /api/v1/mfa/setup         -- pending secret + otpauth:// URI (requires auth)
  POST /api/v1/mfa/verify        -- confirm a code against that secret; enables MFA (requires auth)
  PUT  /api/v1/mfa/revoke        -- disable MFA and drop the secret (requires auth)
  POST /api/v1/mfa/verify-login  -- second login step; issues session + cookies

The provisioning URI is returned as text; the client renders the QR image.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginResponse, MfaLoginRequest, MfaSetupResponse, MfaStatusResponse, MfaVerifySetupRequest
from api.routes.v1.auth import login_response
from auth.dependencies import AuthContext, get_auth_service, get_current_auth
from auth.service import AuthService
from core.config import get_settings

router = APIRouter()


def _mfa_login_limit() -> str:
    return get_settings().login_rate_limit


@router.get("/mfa/setup", response_model=MfaSetupResponse)
def begin_setup(
    auth: AuthContext = Depends(get_current_auth),
    service: AuthService = Depends(get_auth_service),
) -> MfaSetupResponse:
    """Return the pending TOTP secret. Repeated calls return the same secret."""
    setup = service.begin_mfa_setup(auth.account)
    if setup.already_enabled:
        return MfaSetupResponse(message="MFA is already enabled.", already_enabled=True)
    return MfaSetupResponse(
        message="Scan the QR code or enter the setup key.",
        already_enabled=False,
        secret=setup.secret,
        provisioning_uri=setup.provisioning_uri,
    )


@router.post("/mfa/verify", response_model=MfaStatusResponse)
def complete_setup(
    body: MfaVerifySetupRequest,
    auth: AuthContext = Depends(get_current_auth),
    service: AuthService = Depends(get_auth_service),
) -> MfaStatusResponse:
    """Enable MFA once a code generated from the setup secret checks out."""
    service.complete_mfa_setup(auth.account, body.code, body.secret_key)
    return MfaStatusResponse(message="MFA setup completed.", mfa_enabled=True)


@router.put("/mfa/revoke", response_model=MfaStatusResponse)
def revoke(
    auth: AuthContext = Depends(get_current_auth),
    service: AuthService = Depends(get_auth_service),
) -> MfaStatusResponse:
    service.disable_mfa(auth.account)
    return MfaStatusResponse(message="MFA revoked.", mfa_enabled=False)


@limiter.limit(_mfa_login_limit)  # six-digit codes are brute-forceable without an IP limit
@router.post("/mfa/verify-login", response_model=LoginResponse)
def verify_login(request: Request, body: MfaLoginRequest) -> JSONResponse:
    service: AuthService = get_auth_service(request)
    result = service.verify_mfa_login(
        body.email, body.code, body.mfa_token, user_agent=request.headers.get("user-agent")
    )
    return login_response(request, result)
