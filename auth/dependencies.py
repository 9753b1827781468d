"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is read from, in priority order:
  1. The "accessToken" cookie -- set by the login and refresh endpoints.
  2. Authorization: Bearer <token> -- API clients that keep tokens themselves.

get_current_auth() resolves the token to the caller's Account and live
Session via AuthService.authenticate(); any failure raises the typed auth
error, which api/main.py renders as 401 (and, for session errors, clears
the cookies).

Layer rule: this is the only auth/ module that imports fastapi, because it is
part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from auth.models import Account, Session
from auth.service import AuthService
from auth.tokens import ACCESS_COOKIE


@dataclass(frozen=True)
class AuthContext:
    account: Account
    session: Session


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def read_access_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_current_auth(request: Request) -> AuthContext:
    """Require a valid access token bound to a live session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(auth: AuthContext = Depends(get_current_auth)): ...
    """
    account, session = get_auth_service(request).authenticate(read_access_token(request))
    return AuthContext(account=account, session=session)
