"""
core/timeutil.py -- UTC clock and timestamp helpers shared by every store.

Timestamps are persisted as ISO 8601 strings with a fixed microsecond
precision and an explicit +00:00 offset. With a fixed width, plain string
comparison in SQL orders them chronologically, which the expiry and
rate-limit-window queries rely on.

Components take a `clock` callable (default utc_now) instead of calling
datetime.now() directly so tests can freeze and advance time.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize an aware datetime to the fixed-width UTC storage format."""
    if moment.tzinfo is None:
        raise ValueError("naive datetime passed to to_iso(); use an aware UTC datetime")
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
