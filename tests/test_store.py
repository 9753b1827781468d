"""Unit tests for auth/store.py -- the three repositories.

Covers:
- email normalization and the UNIQUE(email) guard
- set_totp_secret_if_absent() first-writer-wins
- session expiry, listing, ownership-checked delete, cascade delete
- extend() conditional update (the rotation race guard)
- consume() exactly-once redemption, expiry and kind checks
- create_within_limit() sliding-window counting
- purge_expired()
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Account, VerificationKind
from auth.store import AccountStore, SessionStore, VerificationCodeStore


@pytest.fixture
def accounts(engine, clock) -> AccountStore:
    return AccountStore(engine, clock)


@pytest.fixture
def sessions(engine, settings, clock) -> SessionStore:
    return SessionStore(engine, settings, clock)


@pytest.fixture
def codes(engine, clock) -> VerificationCodeStore:
    return VerificationCodeStore(engine, clock)


class TestAccountStore:
    def test_email_is_normalized(self, accounts: AccountStore) -> None:
        account_id = accounts.create(Account(email="  Alice@Example.COM ", hashed_password="h"))
        account = accounts.get_by_email("alice@example.com")
        assert account is not None
        assert account.id == account_id
        assert account.email == "alice@example.com"
        assert accounts.get_by_email("ALICE@example.com ").id == account_id

    def test_duplicate_email_rejected(self, accounts: AccountStore) -> None:
        accounts.create(Account(email="bob@example.com", hashed_password="h"))
        with pytest.raises(IntegrityError):
            accounts.create(Account(email="BOB@example.com", hashed_password="h2"))

    def test_update_flags(self, accounts: AccountStore) -> None:
        account_id = accounts.create(Account(email="c@example.com", hashed_password="h"))
        assert accounts.update(account_id, is_email_verified=True, mfa_enabled=True)
        account = accounts.get_by_id(account_id)
        assert account.is_email_verified is True
        assert account.mfa_enabled is True
        assert accounts.update(9999, mfa_enabled=True) is False

    def test_totp_secret_first_writer_wins(self, accounts: AccountStore) -> None:
        account_id = accounts.create(Account(email="d@example.com", hashed_password="h"))
        assert accounts.set_totp_secret_if_absent(account_id, "FIRSTSECRETBASE32") is True
        assert accounts.set_totp_secret_if_absent(account_id, "SECONDSECRETBASE3") is False
        assert accounts.get_by_id(account_id).totp_secret == "FIRSTSECRETBASE32"


class TestSessionStore:
    def test_create_sets_expiry_to_refresh_ttl(self, sessions: SessionStore, clock) -> None:
        session = sessions.create(1, "pytest-agent")
        assert session.expired_at == clock() + timedelta(days=30)
        stored = sessions.find_by_id(session.id)
        assert stored == session
        assert stored.expired_at > stored.created_at

    def test_list_excludes_expired_and_foreign(self, sessions: SessionStore, clock) -> None:
        old = sessions.create(1)
        clock.advance(days=20)
        new = sessions.create(1)
        sessions.create(2)
        assert [s.id for s in sessions.list_by_account(1)] == [new.id, old.id]
        clock.advance(days=11)
        assert [s.id for s in sessions.list_by_account(1)] == [new.id]

    def test_delete_checks_owner(self, sessions: SessionStore) -> None:
        session = sessions.create(1)
        assert sessions.delete_by_id(session.id, account_id=2) is False
        assert sessions.find_by_id(session.id) is not None
        assert sessions.delete_by_id(session.id, account_id=1) is True
        assert sessions.find_by_id(session.id) is None

    def test_delete_all_by_account(self, sessions: SessionStore) -> None:
        sessions.create(1)
        sessions.create(1)
        keep = sessions.create(2)
        assert sessions.delete_all_by_account(1) == 2
        assert sessions.list_by_account(1) == []
        assert sessions.find_by_id(keep.id) is not None

    def test_extend_is_conditional_on_observed_expiry(self, sessions: SessionStore, clock) -> None:
        session = sessions.create(1)
        observed = session.expired_at
        first = observed + timedelta(days=1)
        assert sessions.extend(session.id, first, expected_expiry=observed) is True
        # A second writer that read the same, now stale, value loses.
        assert sessions.extend(session.id, observed + timedelta(days=2), expected_expiry=observed) is False
        assert sessions.find_by_id(session.id).expired_at == first

    def test_purge_expired(self, sessions: SessionStore, clock) -> None:
        expired = sessions.create(1)
        clock.advance(days=31)
        live = sessions.create(1)
        assert sessions.purge_expired() == 1
        assert sessions.find_by_id(expired.id) is None
        assert sessions.find_by_id(live.id) is not None


class TestVerificationCodeStore:
    def test_codes_are_unique_and_random(self, codes: VerificationCodeStore) -> None:
        issued = {codes.create(1, VerificationKind.EMAIL_VERIFICATION, timedelta(minutes=45)).code for _ in range(20)}
        assert len(issued) == 20
        assert all(len(c) == 32 for c in issued)

    def test_consume_is_single_use(self, codes: VerificationCodeStore) -> None:
        code = codes.create(1, VerificationKind.EMAIL_VERIFICATION, timedelta(minutes=45))
        redeemed = codes.consume(code.code, VerificationKind.EMAIL_VERIFICATION)
        assert redeemed is not None
        assert redeemed.account_id == 1
        assert codes.consume(code.code, VerificationKind.EMAIL_VERIFICATION) is None

    def test_consume_rejects_expired(self, codes: VerificationCodeStore, clock) -> None:
        code = codes.create(1, VerificationKind.PASSWORD_RESET, timedelta(hours=1))
        clock.advance(hours=1)
        assert codes.consume(code.code, VerificationKind.PASSWORD_RESET) is None

    def test_consume_rejects_other_purpose(self, codes: VerificationCodeStore) -> None:
        code = codes.create(1, VerificationKind.EMAIL_VERIFICATION, timedelta(minutes=45))
        assert codes.consume(code.code, VerificationKind.PASSWORD_RESET) is None
        # Still redeemable for its real purpose.
        assert codes.consume(code.code, VerificationKind.EMAIL_VERIFICATION) is not None

    def test_create_within_limit_counts_trailing_window(self, codes: VerificationCodeStore, clock) -> None:
        kwargs = dict(ttl=timedelta(hours=1), window=timedelta(minutes=3), max_count=2)
        assert codes.create_within_limit(1, VerificationKind.PASSWORD_RESET, **kwargs) is not None
        clock.advance(minutes=1)
        assert codes.create_within_limit(1, VerificationKind.PASSWORD_RESET, **kwargs) is not None
        assert codes.create_within_limit(1, VerificationKind.PASSWORD_RESET, **kwargs) is None
        # Other accounts and other kinds are unaffected.
        assert codes.create_within_limit(2, VerificationKind.PASSWORD_RESET, **kwargs) is not None
        assert codes.create_within_limit(1, VerificationKind.EMAIL_VERIFICATION, **kwargs) is not None
        # The first code ages out of the window; one slot frees up.
        clock.advance(minutes=2)
        assert codes.create_within_limit(1, VerificationKind.PASSWORD_RESET, **kwargs) is not None
        assert codes.create_within_limit(1, VerificationKind.PASSWORD_RESET, **kwargs) is None

    def test_find_valid_for_account_returns_newest_unexpired(self, codes: VerificationCodeStore, clock) -> None:
        codes.create(1, VerificationKind.EMAIL_VERIFICATION, timedelta(minutes=45))
        clock.advance(minutes=1)
        newest = codes.create(1, VerificationKind.EMAIL_VERIFICATION, timedelta(minutes=45))
        assert codes.find_valid_for_account(1, VerificationKind.EMAIL_VERIFICATION).code == newest.code
        clock.advance(minutes=45)
        assert codes.find_valid_for_account(1, VerificationKind.EMAIL_VERIFICATION) is None

    def test_purge_expired(self, codes: VerificationCodeStore, clock) -> None:
        codes.create(1, VerificationKind.PASSWORD_RESET, timedelta(hours=1))
        clock.advance(minutes=30)
        live = codes.create(1, VerificationKind.PASSWORD_RESET, timedelta(hours=1))
        clock.advance(minutes=31)
        assert codes.purge_expired() == 1
        assert codes.consume(live.code, VerificationKind.PASSWORD_RESET) is not None
