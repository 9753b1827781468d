"""
auth/passwords.py -- Password hashing and the CredentialVerifier.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute-forcing low-entropy secrets expensive, and bcrypt.checkpw compares
       digests in constant time.

  Timing equalization [C1]: CredentialVerifier always runs one bcrypt check,
       against _DUMMY_HASH when the email is unknown, so response time does not
       reveal whether an account exists. Unknown email and wrong password also
       raise the same InvalidCredentialsError.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import InvalidCredentialsError, ValidationError
from auth.models import Account
from auth.store import AccountStore

logger = logging.getLogger("gatehouse.auth")

# bcrypt refuses longer input instead of truncating it.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValidationError for passwords longer than 72 bytes once UTF-8
    encoded. The request models reject those first; this guards other callers.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValidationError(fields={"password": f"must be at most {MAX_PASSWORD_BYTES} bytes"})
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash; treat as a mismatch rather than a 500.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


class CredentialVerifier:
    """Checks an email/password pair against the stored hash."""

    def __init__(self, accounts: AccountStore) -> None:
        self._accounts = accounts

    def verify(self, email: str, password: str) -> Account:
        """Return the matching account or raise InvalidCredentialsError.

        Do NOT inline get_by_email() + verify_password() elsewhere -- that
        re-introduces the timing side channel this method closes.
        """
        account = self._accounts.get_by_email(email)
        if account is None:
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentialsError()
        if not verify_password(password, account.hashed_password):
            logger.info("Failed password login for account %s", account.id)
            raise InvalidCredentialsError()
        return account
