"""
auth/rotation.py -- Sliding-expiration refresh with conditional rotation.

State machine for one refresh request:

  refresh token --verify--> session id          else TokenInvalidError
  session id   --load-->    Session             else SessionNotFoundError
  now >= expired_at                             -> SessionExpiredError (terminal)
  expired_at - now <= rotation threshold        -> rotation event:
        expired_at := now + refresh TTL, new refresh token for the SAME session
  otherwise                                     -> no write, no new refresh token
  always                                        -> fresh access token

Rotating only near expiry keeps long-lived sessions alive under continued use
without a write on every refresh. The old refresh token keeps resolving to the
same session after a rotation: rotation replaces the token, not the session.

Race: two refreshes near the threshold both read the same expired_at. The
write is SessionStore.extend(..., expected_expiry=<what we read>), so only
one of them moves the expiry and mints a refresh token. The loser re-reads
the session and returns just an access token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth.errors import SessionExpiredError, SessionNotFoundError, TokenInvalidError
from auth.models import Session
from auth.store import SessionStore
from auth.tokens import AccessPayload, RefreshPayload, TokenCodec, TokenKind
from core.config import Settings
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatehouse.auth.rotation")


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of a successful refresh.

    refresh_token is None unless this request performed the rotation.
    """

    access_token: str
    session: Session
    refresh_token: str | None = None

    @property
    def rotated(self) -> bool:
        return self.refresh_token is not None


class RefreshRotationPolicy:
    def __init__(self, sessions: SessionStore, codec: TokenCodec, settings: Settings, clock: Clock = utc_now) -> None:
        self._sessions = sessions
        self._codec = codec
        self._refresh_ttl = timedelta(seconds=settings.refresh_token_expire_seconds)
        self._threshold = timedelta(seconds=settings.rotation_threshold_seconds)
        self._clock = clock

    def refresh(self, refresh_token: str) -> RefreshResult:
        payload = self._codec.verify(refresh_token, TokenKind.REFRESH)
        if payload is None:
            raise TokenInvalidError()

        session = self._sessions.find_by_id(payload.session_id)
        if session is None:
            raise SessionNotFoundError()

        now = self._clock()
        if session.is_expired(now):
            raise SessionExpiredError()

        new_refresh_token: str | None = None
        if session.expired_at - now <= self._threshold:
            new_expiry = now + self._refresh_ttl
            if self._sessions.extend(session.id, new_expiry, expected_expiry=session.expired_at):
                session.expired_at = new_expiry
                new_refresh_token = self._codec.sign(RefreshPayload(session_id=session.id), TokenKind.REFRESH)
                logger.info("Rotated refresh token for session %s", session.id)
            else:
                # Lost the race (or the session was deleted meanwhile).
                current = self._sessions.find_by_id(session.id)
                if current is None:
                    raise SessionNotFoundError()
                session = current

        access_token = self._codec.sign(
            AccessPayload(account_id=session.account_id, session_id=session.id),
            TokenKind.ACCESS,
        )
        return RefreshResult(access_token=access_token, session=session, refresh_token=new_refresh_token)
