"""Unit tests for auth/rotation.py -- sliding expiration and conditional rotation.

Covers:
- refresh far from expiry: access token only, no write
- refresh inside the rotation threshold: expiry slides, new refresh token
- the old refresh token still resolves to the same session after rotation
- expired / deleted sessions and bad tokens are rejected with distinct errors
- two refreshes racing on the same session: exactly one rotates
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from auth.errors import SessionExpiredError, SessionNotFoundError, TokenInvalidError
from auth.rotation import RefreshRotationPolicy
from auth.store import SessionStore
from auth.tokens import AccessPayload, RefreshPayload, TokenCodec, TokenKind


@pytest.fixture
def sessions(engine, settings, clock) -> SessionStore:
    return SessionStore(engine, settings, clock)


@pytest.fixture
def codec(settings, clock) -> TokenCodec:
    return TokenCodec(settings, clock)


@pytest.fixture
def policy(sessions, codec, settings, clock) -> RefreshRotationPolicy:
    return RefreshRotationPolicy(sessions, codec, settings, clock)


def _refresh_token(codec: TokenCodec, session_id: str) -> str:
    return codec.sign(RefreshPayload(session_id=session_id), TokenKind.REFRESH)


class TestNoRotation:
    def test_fresh_session_gets_access_token_only(self, policy, sessions, codec, clock) -> None:
        session = sessions.create(42)
        clock.advance(days=1)
        result = policy.refresh(_refresh_token(codec, session.id))

        assert result.rotated is False
        assert result.refresh_token is None
        assert result.session.expired_at == session.expired_at
        assert sessions.find_by_id(session.id).expired_at == session.expired_at
        assert codec.verify(result.access_token, TokenKind.ACCESS) == AccessPayload(account_id=42, session_id=session.id)

    def test_just_outside_threshold_does_not_rotate(self, policy, sessions, codec, clock) -> None:
        session = sessions.create(1)
        clock.advance(days=29, seconds=-1)
        assert policy.refresh(_refresh_token(codec, session.id)).rotated is False


class TestRotation:
    def test_inside_threshold_slides_expiry(self, policy, sessions, codec, clock) -> None:
        session = sessions.create(1)
        token = _refresh_token(codec, session.id)
        clock.advance(days=29, hours=1)

        result = policy.refresh(token)

        assert result.rotated is True
        assert result.session.expired_at == clock() + timedelta(days=30)
        assert sessions.find_by_id(session.id).expired_at == clock() + timedelta(days=30)
        assert codec.verify(result.refresh_token, TokenKind.REFRESH) == RefreshPayload(session_id=session.id)

    def test_exactly_at_threshold_rotates(self, policy, sessions, codec, clock) -> None:
        session = sessions.create(1)
        clock.advance(days=29)
        assert policy.refresh(_refresh_token(codec, session.id)).rotated is True

    def test_old_refresh_token_survives_rotation(self, policy, sessions, codec, clock) -> None:
        """Rotation replaces the token, not the session."""
        session = sessions.create(1)
        clock.advance(days=29, hours=12)
        old_token = _refresh_token(codec, session.id)
        assert policy.refresh(old_token).rotated is True

        clock.advance(minutes=5)
        again = policy.refresh(old_token)
        assert again.rotated is False
        assert again.session.id == session.id

    def test_session_kept_alive_by_continued_use(self, policy, sessions, codec, clock) -> None:
        session = sessions.create(1)
        token = _refresh_token(codec, session.id)
        for _ in range(3):
            clock.advance(days=29, hours=6)
            result = policy.refresh(token)
            assert result.rotated is True
            token = result.refresh_token
        # Ninety days after login the session is still alive.
        assert sessions.find_by_id(session.id).is_expired(clock()) is False


class TestRejections:
    def test_invalid_token(self, policy) -> None:
        with pytest.raises(TokenInvalidError):
            policy.refresh("not-a-token")

    def test_access_token_is_not_accepted(self, policy, sessions, codec) -> None:
        session = sessions.create(1)
        access = codec.sign(AccessPayload(account_id=1, session_id=session.id), TokenKind.ACCESS)
        with pytest.raises(TokenInvalidError):
            policy.refresh(access)

    def test_deleted_session(self, policy, sessions, codec) -> None:
        session = sessions.create(1)
        token = _refresh_token(codec, session.id)
        sessions.delete_by_id(session.id)
        with pytest.raises(SessionNotFoundError):
            policy.refresh(token)

    def test_expired_session(self, policy, sessions, codec, clock) -> None:
        session = sessions.create(1)
        # The token outlives the session when the token is minted later.
        clock.advance(days=15)
        token = _refresh_token(codec, session.id)
        clock.advance(days=15)
        with pytest.raises(SessionExpiredError):
            policy.refresh(token)
        # Not silently revived.
        assert sessions.find_by_id(session.id).expired_at == session.expired_at


class _RacingSessionStore(SessionStore):
    """SessionStore whose extend() lets a competing request win first."""

    def extend(self, session_id: str, new_expiry: datetime, expected_expiry: datetime) -> bool:
        super().extend(session_id, new_expiry + timedelta(seconds=1), expected_expiry)
        return super().extend(session_id, new_expiry, expected_expiry)


class TestConcurrentRotation:
    def test_loser_gets_access_token_only(self, engine, settings, codec, clock) -> None:
        sessions = _RacingSessionStore(engine, settings, clock)
        policy = RefreshRotationPolicy(sessions, codec, settings, clock)
        session = sessions.create(1)
        clock.advance(days=29, hours=1)

        result = policy.refresh(_refresh_token(codec, session.id))

        assert result.rotated is False
        winner_expiry = clock() + timedelta(days=30, seconds=1)
        assert result.session.expired_at == winner_expiry
        assert sessions.find_by_id(session.id).expired_at == winner_expiry
        assert codec.verify(result.access_token, TokenKind.ACCESS) is not None
