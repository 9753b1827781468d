"""
auth/throttle.py -- Per-account limit on password-reset code issuance.

Rule: at most reset_max_attempts PasswordReset codes per account created in
the trailing reset_window_seconds. The window slides with every call (no
fixed buckets), so an account regains capacity the moment its oldest code
ages out rather than at a clock boundary.

The issued codes themselves are the counter. issue() delegates to
VerificationCodeStore.create_within_limit(), which counts and inserts in one
statement, so two concurrent requests cannot both squeeze past the limit.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta

from auth.errors import RateLimitExceededError
from auth.models import VerificationCode, VerificationKind
from auth.store import VerificationCodeStore
from core.config import Settings
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatehouse.auth.throttle")


class PasswordResetThrottler:
    def __init__(self, codes: VerificationCodeStore, settings: Settings, clock: Clock = utc_now) -> None:
        self._codes = codes
        self._window = timedelta(seconds=settings.reset_window_seconds)
        self._max_attempts = settings.reset_max_attempts
        self._ttl = timedelta(seconds=settings.password_reset_expire_seconds)
        self._clock = clock

    def issue(self, account_id: int) -> VerificationCode:
        """Check the limit and create a reset code as one atomic step."""
        code = self._codes.create_within_limit(
            account_id,
            VerificationKind.PASSWORD_RESET,
            ttl=self._ttl,
            window=self._window,
            max_count=self._max_attempts,
        )
        if code is None:
            raise self._exceeded(account_id)
        return code

    def _exceeded(self, account_id: int) -> RateLimitExceededError:
        now = self._clock()
        oldest = self._codes.oldest_since(account_id, VerificationKind.PASSWORD_RESET, now - self._window)
        if oldest is None:
            retry_after = self._window.total_seconds()
        else:
            retry_after = (oldest + self._window - now).total_seconds()
        logger.warning("Password reset throttled for account %s", account_id)
        return RateLimitExceededError(
            retry_after=math.ceil(retry_after),
            message="Too many password reset requests. Try again later.",
        )
