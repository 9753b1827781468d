"""
auth/tokens.py -- TokenCodec (JWT sign/verify) and auth cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       different secrets and carry audience "user". A refresh token therefore
       never verifies as an access token and vice versa, even though both are
       structurally JWTs.

       Access token payload:  {"account_id", "session_id"}  TTL in minutes
       Refresh token payload: {"session_id"}                TTL in days

       A third kind, the MFA challenge {"account_id"}, is handed out when a
       password check succeeds on an MFA account and must accompany the TOTP
       code in the second login step. It is signed with the access secret
       under its own audience "mfa", so it never verifies as an access token,
       and it lives for minutes.

  Verification returns None on ANY failure -- bad signature, wrong audience,
       wrong kind, malformed payload, or expiry. Callers raise
       TokenInvalidError; nobody downstream learns which check failed.

  Expiry is checked against the codec's injected clock instead of jose's
       internal wall clock, so the codec and the session store agree on "now".

  Cookies: both tokens travel as httpOnly cookies. The refresh cookie is
       path-scoped to REFRESH_PATH so browsers only ever send it to the refresh
       endpoint.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from jose import JWTError, jwt

from core.config import Settings
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatehouse.auth.tokens")

_ALGORITHM = "HS256"
AUDIENCE = "user"
MFA_AUDIENCE = "mfa"

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
# Well-known refresh endpoint. The refresh cookie is scoped to this path and
# the API error handler clears cookies on any failure here.
REFRESH_PATH = "/api/v1/auth/refresh"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    MFA_CHALLENGE = "mfa_challenge"


@dataclass(frozen=True)
class AccessPayload:
    account_id: int
    session_id: str


@dataclass(frozen=True)
class RefreshPayload:
    session_id: str


@dataclass(frozen=True)
class MfaChallengePayload:
    account_id: int


class TokenCodec:
    """Signs and verifies access, refresh, and MFA challenge tokens.

    Pure: neither sign() nor verify() touches storage.
    """

    def __init__(self, settings: Settings, clock: Clock = utc_now) -> None:
        self._secrets = {
            TokenKind.ACCESS: settings.access_token_secret,
            TokenKind.REFRESH: settings.refresh_token_secret,
            TokenKind.MFA_CHALLENGE: settings.access_token_secret,
        }
        self._audiences = {
            TokenKind.ACCESS: AUDIENCE,
            TokenKind.REFRESH: AUDIENCE,
            TokenKind.MFA_CHALLENGE: MFA_AUDIENCE,
        }
        self._ttls = {
            TokenKind.ACCESS: timedelta(seconds=settings.access_token_expire_seconds),
            TokenKind.REFRESH: timedelta(seconds=settings.refresh_token_expire_seconds),
            TokenKind.MFA_CHALLENGE: timedelta(seconds=settings.mfa_challenge_expire_seconds),
        }
        self._clock = clock

    def sign(self, payload: AccessPayload | RefreshPayload | MfaChallengePayload, kind: TokenKind) -> str:
        """Encode payload as a JWT of the given kind."""
        if kind is TokenKind.ACCESS and not isinstance(payload, AccessPayload):
            raise TypeError("access tokens require an AccessPayload")
        if kind is TokenKind.REFRESH and not isinstance(payload, RefreshPayload):
            raise TypeError("refresh tokens require a RefreshPayload")
        if kind is TokenKind.MFA_CHALLENGE and not isinstance(payload, MfaChallengePayload):
            raise TypeError("MFA challenges require an MfaChallengePayload")

        now = self._clock()
        claims: dict = {
            "aud": self._audiences[kind],
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttls[kind]).timestamp()),
        }
        if not isinstance(payload, MfaChallengePayload):
            claims["session_id"] = payload.session_id
        if not isinstance(payload, RefreshPayload):
            claims["account_id"] = payload.account_id
        return jwt.encode(claims, self._secrets[kind], algorithm=_ALGORITHM)

    def verify(
        self, token: str, kind: TokenKind
    ) -> AccessPayload | RefreshPayload | MfaChallengePayload | None:
        """Decode and verify a token of the given kind. Returns None on any failure.

        Expiry is judged against the injected clock, not the wall clock.
        """
        try:
            claims = jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[_ALGORITHM],
                audience=self._audiences[kind],
                # python-jose turns verify_exp back on when require_exp is set.
                options={"verify_exp": False, "require_aud": True},
            )
        except JWTError:
            return None

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock().timestamp():
            return None

        account_id = claims.get("account_id")
        valid_account_id = isinstance(account_id, int) and not isinstance(account_id, bool)
        if kind is TokenKind.MFA_CHALLENGE:
            return MfaChallengePayload(account_id=account_id) if valid_account_id else None

        session_id = claims.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            return None
        if kind is TokenKind.REFRESH:
            return RefreshPayload(session_id=session_id)
        if not valid_account_id:
            return None
        return AccessPayload(account_id=account_id, session_id=session_id)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _samesite(settings: Settings) -> str:
    # strict in production; lax keeps local cross-port development working.
    return "strict" if settings.secure_cookies else "lax"


def set_access_cookie(response, token: str, settings: Settings) -> None:
    """Write the access token cookie. max_age matches the JWT expiry."""
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        httponly=True,
        samesite=_samesite(settings),
        secure=settings.secure_cookies,
        max_age=settings.access_token_expire_seconds,
        path="/",
    )


def set_refresh_cookie(response, token: str, settings: Settings) -> None:
    """Write the refresh token cookie, scoped to the refresh endpoint only."""
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        httponly=True,
        samesite=_samesite(settings),
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
        path=REFRESH_PATH,
    )


def set_auth_cookies(response, access_token: str, refresh_token: str, settings: Settings) -> None:
    set_access_cookie(response, access_token, settings)
    set_refresh_cookie(response, refresh_token, settings)


def clear_auth_cookies(response) -> None:
    """Delete both auth cookies. Path must match the one they were set with."""
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_PATH)
