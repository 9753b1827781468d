"""
api/routes/v1/sessions.py -- Session management for the signed-in account.

Routes:
  GET    /api/v1/sessions/       -- the caller's current session and account
  GET    /api/v1/sessions/all    -- every live session of the account, current one flagged
  DELETE /api/v1/sessions/{id}   -- revoke one of the account's own sessions

IDOR guard: DELETE passes the caller's account id down to the store, whose
WHERE clause requires both to match. Another account's session id answers 404.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import AccountResponse, CurrentSessionResponse, MessageResponse, SessionListResponse, SessionResponse
from auth.dependencies import AuthContext, get_auth_service, get_current_auth
from auth.service import AuthService

router = APIRouter()


@router.get("/sessions/", response_model=CurrentSessionResponse)
def current_session(auth: AuthContext = Depends(get_current_auth)) -> CurrentSessionResponse:
    return CurrentSessionResponse(
        message="Session retrieved.",
        session=SessionResponse.from_session(auth.session, is_current=True),
        account=AccountResponse.from_account(auth.account),
    )


@router.get("/sessions/all", response_model=SessionListResponse)
def all_sessions(
    auth: AuthContext = Depends(get_current_auth),
    service: AuthService = Depends(get_auth_service),
) -> SessionListResponse:
    views = service.list_sessions(auth.account.id, current_session_id=auth.session.id)
    return SessionListResponse(
        message="Sessions retrieved.",
        sessions=[SessionResponse.from_session(v.session, is_current=v.is_current) for v in views],
    )


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
def revoke_session(
    session_id: str,
    auth: AuthContext = Depends(get_current_auth),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.revoke_session(auth.account.id, session_id)
    return MessageResponse(message="Session removed.")
