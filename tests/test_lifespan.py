"""
tests/test_lifespan.py -- Startup and shutdown of the real application lifespan.

Runs api.main.lifespan directly (not through TestClient) against an in-memory
database, so the housekeeping task it starts is the real purge loop.
"""

from __future__ import annotations

import asyncio

import pytest

from api import main
from core.config import Settings


@pytest.fixture
def lifespan_settings(monkeypatch) -> Settings:
    settings = Settings(
        access_token_secret="lifespan-access-secret-0123456789abcdef0123",
        refresh_token_secret="lifespan-refresh-secret-fedcba9876543210fedc",
        database_url="sqlite:///:memory:",
        resend_api_key="",
    )
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    return settings


def test_startup_wires_app_state(lifespan_settings) -> None:
    async def run() -> None:
        async with main.lifespan(main.app):
            assert main.app.state.settings is lifespan_settings
            assert main.app.state.auth_service.settings is lifespan_settings
            assert not main.app.state.purge_task.done()

    asyncio.run(run())


def test_shutdown_waits_for_purge_task(lifespan_settings) -> None:
    async def run() -> asyncio.Task:
        async with main.lifespan(main.app):
            task = main.app.state.purge_task
        # No further loop iteration: the task must already be finished here.
        assert task.done()
        return task

    assert asyncio.run(run()).cancelled()
