"""
auth/mfa.py -- TOTP multi-factor authentication via pyotp.

Setup is two-phase:
  begin_setup()    generates a base32 secret and persists it immediately, before
                   any code is verified. A repeated call returns the SAME secret
                   (no churn, no orphaned secrets). Already enabled -> a no-op
                   result, never a fresh secret.
  complete_setup() verifies a code against the submitted secret and only then
                   flips mfa_enabled. A wrong code changes nothing.

verify_for_login() is the read-only check used during login: no writes, no
secret regeneration.

TOTP parameters are the RFC 6238 defaults authenticator apps expect: SHA1,
6 digits, 30-second step. Verification accepts the current step and one step
either side (valid_window=1) to absorb clock drift.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

import pyotp

from auth.errors import MfaInvalidCodeError, MfaNotEnabledError, NotFoundError
from auth.models import Account
from auth.store import AccountStore
from core.config import Settings
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatehouse.auth.mfa")

_VALID_WINDOW = 1


@dataclass(frozen=True)
class MfaSetup:
    """Result of begin_setup(). secret/provisioning_uri are None when already enabled."""

    already_enabled: bool
    secret: str | None = None
    provisioning_uri: str | None = None


class MfaManager:
    def __init__(self, accounts: AccountStore, settings: Settings, clock: Clock = utc_now) -> None:
        self._accounts = accounts
        self._issuer = settings.mfa_issuer
        self._clock = clock

    def begin_setup(self, account: Account) -> MfaSetup:
        if account.mfa_enabled:
            return MfaSetup(already_enabled=True)

        secret = account.totp_secret
        if not secret:
            if not self._accounts.set_totp_secret_if_absent(account.id, pyotp.random_base32()):
                logger.info("Concurrent MFA setup for account %s; reusing stored secret", account.id)
            stored = self._accounts.get_by_id(account.id)
            if stored is None:
                raise NotFoundError("Account not found.")
            secret = stored.totp_secret
            account.totp_secret = secret

        uri = pyotp.TOTP(secret).provisioning_uri(name=account.email, issuer_name=self._issuer)
        return MfaSetup(already_enabled=False, secret=secret, provisioning_uri=uri)

    def complete_setup(self, account: Account, code: str, secret: str) -> bool:
        """Enable MFA if code is valid for secret. Returns True once enabled.

        The submitted secret must be the pending one stored by begin_setup();
        otherwise the account would end up enabled against a secret the server
        never issued.
        """
        if account.mfa_enabled:
            return True
        if not account.totp_secret or not hmac.compare_digest(account.totp_secret, secret):
            logger.warning("MFA setup for account %s submitted a secret that was not issued", account.id)
            raise MfaInvalidCodeError()
        if not self._check(secret, code):
            logger.warning("Invalid MFA setup code for account %s", account.id)
            raise MfaInvalidCodeError()

        self._accounts.update(account.id, mfa_enabled=True)
        account.mfa_enabled = True
        logger.info("MFA enabled for account %s", account.id)
        return True

    def verify_for_login(self, account: Account, code: str) -> bool:
        if not account.mfa_enabled or not account.totp_secret:
            return False
        valid = self._check(account.totp_secret, code)
        if not valid:
            logger.warning("Invalid MFA login code for account %s", account.id)
        return valid

    def disable(self, account: Account) -> None:
        """Turn MFA off and discard the secret so a later setup starts fresh."""
        if not account.mfa_enabled:
            raise MfaNotEnabledError()
        self._accounts.update(account.id, mfa_enabled=False, totp_secret=None)
        account.mfa_enabled = False
        account.totp_secret = None
        logger.info("MFA disabled for account %s", account.id)

    def _check(self, secret: str, code: str) -> bool:
        code = code.strip()
        if not code.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(code, for_time=self._clock(), valid_window=_VALID_WINDOW)
        except (TypeError, ValueError):
            # Secret that is not valid base32.
            return False
