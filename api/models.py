"""
API request and response models for Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two,
field by field -- never asdict(account), which would include the password hash.

Validation of request shape happens here, so auth/ only ever sees typed,
already-validated values.
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints, model_validator

from auth.models import Account, Session
from auth.passwords import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: deliverability is proven by the verification e-mail,
# not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
TOTP_PATTERN = r"^\d{6}$"


def _within_bcrypt_limit(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


# Passwords are taken exactly as typed; every other text field is stripped.
_Password = Annotated[str, Field(min_length=6), AfterValidator(_within_bcrypt_limit)]
_LoginPassword = Annotated[str, Field(min_length=1), AfterValidator(_within_bcrypt_limit)]
_Email = Annotated[str, StringConstraints(strip_whitespace=True, pattern=EMAIL_PATTERN, max_length=320)]
_Code = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
_Totp = Annotated[str, StringConstraints(strip_whitespace=True, pattern=TOTP_PATTERN)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    name: Annotated[str, StringConstraints(strip_whitespace=True, max_length=255)] = ""
    email: _Email
    password: _Password
    confirm_password: _Password

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("password and confirm_password do not match")
        return self


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: _Email
    password: _LoginPassword


class EmailRequest(BaseModel):
    """Request body for forgot-password and resend-verification."""

    email: _Email


class VerifyEmailRequest(BaseModel):
    code: _Code


class ResetPasswordRequest(BaseModel):
    password: _Password
    verification_code: _Code


class MfaVerifySetupRequest(BaseModel):
    """Request body for POST /api/v1/mfa/verify."""

    code: _Totp
    secret_key: Annotated[str, StringConstraints(strip_whitespace=True, min_length=16, max_length=64)]


class MfaLoginRequest(BaseModel):
    """Request body for POST /api/v1/mfa/verify-login.

    mfa_token is the challenge returned by POST /auth/login.
    """

    code: _Totp
    email: _Email
    mfa_token: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=2048)]


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an account. No password hash, no TOTP secret."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    is_email_verified: bool
    mfa_enabled: bool
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            is_email_verified=account.is_email_verified,
            mfa_enabled=account.mfa_enabled,
            created_at=account.created_at.isoformat() if account.created_at else "",
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    account: AccountResponse


class LoginResponse(BaseModel):
    """Response for POST /login and POST /mfa/verify-login.

    When mfa_required is True no session tokens are present and no cookies are
    set; mfa_token carries the challenge for the MFA login step instead.
    Tokens are echoed in the body for non-browser clients; browsers use the
    httpOnly cookies.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    account: AccountResponse
    mfa_required: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    mfa_token: Optional[str] = None


class MfaSetupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    already_enabled: bool
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None


class MfaStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    mfa_enabled: bool


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_agent: Optional[str]
    created_at: str
    expired_at: str
    is_current: bool = False

    @classmethod
    def from_session(cls, session: Session, is_current: bool = False) -> "SessionResponse":
        return cls(
            id=session.id,
            user_agent=session.user_agent,
            created_at=session.created_at.isoformat(),
            expired_at=session.expired_at.isoformat(),
            is_current=is_current,
        )


class SessionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sessions: list[SessionResponse]


class CurrentSessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    session: SessionResponse
    account: AccountResponse


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
