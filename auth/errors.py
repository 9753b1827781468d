"""
auth/errors.py -- Typed failures for the authentication subsystem.

Every business-rule violation is raised as one of these at the point where it
is detected and travels unchanged to api/main.py, whose exception handler
turns it into the ErrorResponse envelope. Each class carries:

  status_code -- HTTP status the boundary should use
  code        -- stable machine-readable identifier
  message     -- user-safe text; never contains internals

Anything that is NOT an AuthServiceError reaching the boundary is by
definition unexpected and is normalized to internal_error there.

Outcomes that are not failures (MFA already enabled, MFA required at login,
refresh without rotation) are result values in auth/service.py and
auth/mfa.py, not exceptions.
"""

from __future__ import annotations


class AuthServiceError(Exception):
    status_code: int = 400
    code: str = "bad_request"
    message: str = "The request could not be processed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        if message is not None:
            self.message = message
        self.detail = detail
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(AuthServiceError):
    status_code = 422
    code = "validation_error"
    message = "Request validation failed."

    def __init__(self, message: str | None = None, *, fields: dict[str, str] | None = None) -> None:
        self.fields = fields or {}
        detail = "; ".join(f"{k}: {v}" for k, v in self.fields.items()) or None
        super().__init__(message, detail=detail)


class EmailAlreadyExistsError(ValidationError):
    status_code = 409
    code = "email_already_exists"
    message = "An account with this email already exists."


# ---------------------------------------------------------------------------
# Authentication -- rendered to clients as one generic "unauthorized"
# ---------------------------------------------------------------------------


class AuthenticationError(AuthServiceError):
    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class InvalidCredentialsError(AuthenticationError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class TokenInvalidError(AuthenticationError):
    code = "token_invalid"
    message = "Token is invalid or expired."


class TokenNotFoundError(AuthenticationError):
    code = "token_not_found"
    message = "Token is missing."


# ---------------------------------------------------------------------------
# Sessions -- the boundary clears auth cookies on these
# ---------------------------------------------------------------------------


class SessionError(AuthServiceError):
    status_code = 401
    code = "session_error"
    message = "Session is no longer valid. Please log in again."


class SessionNotFoundError(SessionError):
    code = "session_not_found"
    message = "Session not found. Please log in again."


class SessionExpiredError(SessionError):
    code = "session_expired"
    message = "Session expired. Please log in again."


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class MfaError(AuthServiceError):
    status_code = 400
    code = "mfa_error"


class MfaInvalidCodeError(MfaError):
    code = "mfa_invalid_code"
    message = "Invalid MFA code. Please try again."


class MfaNotEnabledError(MfaError):
    code = "mfa_not_enabled"
    message = "MFA is not enabled for this account."


# ---------------------------------------------------------------------------
# Throttling, lookups, internals
# ---------------------------------------------------------------------------


class RateLimitExceededError(AuthServiceError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests. Try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, detail=f"retry after {self.retry_after}s")


class NotFoundError(AuthServiceError):
    status_code = 404
    code = "not_found"
    message = "Not found."


class InternalError(AuthServiceError):
    status_code = 500
    code = "internal_error"
    message = "An unexpected error occurred."


class NotificationError(InternalError):
    """The primary action committed; only the e-mail dispatch failed."""

    code = "notification_failed"
    message = "The request succeeded but the e-mail could not be sent. Please retry sending it."
