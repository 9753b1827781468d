"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - FakeClock: a frozen, manually advanced clock injected into every component
  - RecordingNotifier: captures outgoing e-mails, can be told to fail
  - settings / engine / service: a fully wired AuthService on an in-memory DB
  - api_client: TestClient against the real FastAPI app with a patched lifespan

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

The token secrets must be in the environment before any api/ import, because
api/main.py loads Settings at import time and Settings has no default secrets.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before importing api/ or calling get_settings().
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-0123456789abcdef0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-fedcba9876543210fedcba98765")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.notify import EmailMessage
from auth.service import AuthService
from auth.store import AccountStore, SessionStore, VerificationCodeStore, create_auth_engine
from core.config import Settings, get_settings

# The per-IP login limit would trip across a test module; the per-account
# reset throttle (a business rule) stays active.
limiter.enabled = False

_CODE_RE = re.compile(r"code=([0-9a-f]{32})")


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock frozen at `start` until advance() is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """Notifier that keeps every message. Set fail=True to simulate an outage."""

    def __init__(self) -> None:
        self.messages: list[EmailMessage] = []
        self.fail = False

    def send(self, message: EmailMessage) -> None:
        if self.fail:
            raise ConnectionError("mail transport unavailable")
        self.messages.append(message)

    def last_code(self) -> str:
        """Extract the verification/reset code from the most recent e-mail link."""
        match = _CODE_RE.search(self.messages[-1].text)
        assert match is not None, f"no code in e-mail: {self.messages[-1].text!r}"
        return match.group(1)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Explicit settings with the documented defaults; never read from the environment."""
    return Settings(
        access_token_secret="unit-access-secret-0123456789abcdef01234567",
        refresh_token_secret="unit-refresh-secret-76543210fedcba9876543210",
        access_token_expire_seconds=15 * 60,
        refresh_token_expire_seconds=30 * 24 * 60 * 60,
        rotation_threshold_seconds=24 * 60 * 60,
        reset_window_seconds=3 * 60,
        reset_max_attempts=2,
        app_origin="https://app.example.com",
    )


@pytest.fixture
def engine():
    eng = create_auth_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(settings: Settings, engine, notifier: RecordingNotifier, clock: FakeClock) -> AuthService:
    return AuthService(
        settings,
        AccountStore(engine, clock),
        SessionStore(engine, settings, clock),
        VerificationCodeStore(engine, clock),
        notifier,
        clock,
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService, engine, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the test AuthService and stores into app.state so TestClient routes
    hit an isolated database. The purge_task is a long-sleeping coroutine so
    shutdown has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.settings = settings
        app.state.account_store = service.accounts
        app.state.session_store = service.sessions
        app.state.code_store = service.codes
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await app.state.purge_task

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, AuthService, RecordingNotifier], None, None]:
    """Yield (client, service, notifier) for HTTP integration tests.

    One fresh shared-memory database per test, so cookie jars and rate-limit
    windows never leak between tests. Uses the real wall clock.
    """
    settings = get_settings()
    engine = create_auth_engine(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    notifier = RecordingNotifier()
    service = AuthService(
        settings,
        AccountStore(engine),
        SessionStore(engine, settings),
        VerificationCodeStore(engine),
        notifier,
    )
    app.router.lifespan_context = _patch_lifespan(service, engine, settings)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service, notifier

    engine.dispose()
