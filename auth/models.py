"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these records carry no persistence hooks and no transform logic.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class VerificationKind(str, Enum):
    """Purpose a single-use code was issued for."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class Account:
    """An identity that can log in.

    email is stored lower-cased and stripped; the UNIQUE index on it is what
    makes registration race-safe.

    hashed_password never leaves auth/ -- API response models are built from
    explicit fields, never from asdict(account).

    totp_secret is written as soon as MFA setup begins (before the first code
    is verified) so a repeated setup call reuses it. mfa_enabled only flips to
    True after a code has been verified against that secret.
    """

    email: str
    hashed_password: str
    name: str = ""
    id: int | None = None
    is_email_verified: bool = False
    mfa_enabled: bool = False
    totp_secret: str | None = None
    created_at: datetime | None = None


@dataclass
class Session:
    """One logged-in device or browser.

    Valid iff now < expired_at. Only RefreshRotationPolicy moves expired_at.
    """

    account_id: int
    created_at: datetime
    expired_at: datetime
    id: str = ""
    user_agent: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expired_at


@dataclass
class VerificationCode:
    """A single-use code bound to one account and one purpose.

    code is 128 random bits rendered as hex and is UNIQUE at the DB level.
    Redemption goes through VerificationCodeStore.consume(), which deletes the
    row as part of the lookup.
    """

    account_id: int
    code: str
    kind: VerificationKind
    created_at: datetime
    expires_at: datetime
    id: int | None = None
