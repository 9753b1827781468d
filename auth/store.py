"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AccountStore, SessionStore and
VerificationCodeStore are the repositories; the _row_to_* functions are the
mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency -- each race the lifecycle can hit is closed inside one statement
or one transaction rather than by a read in Python followed by a write:

  SessionStore.extend()       conditional UPDATE keyed on the expiry the caller
                              observed. Two concurrent rotations of the same
                              session: exactly one sees rowcount == 1.
  VerificationCodeStore.consume()
                              SELECT + DELETE by id in one transaction; only the
                              caller whose DELETE removed the row gets the code.
  VerificationCodeStore.create_within_limit()
                              INSERT ... SELECT ... WHERE (SELECT COUNT(*)) < max,
                              so count-then-create is a single statement.
  AccountStore.create()       UNIQUE(email); the loser of a registration race
                              gets IntegrityError.
  AccountStore.set_totp_secret_if_absent()
                              UPDATE ... WHERE totp_secret IS NULL, so two
                              concurrent MFA setups cannot orphan a secret.

Timestamps are fixed-width UTC ISO strings (core.timeutil.to_iso), so SQL
string comparison is chronological comparison.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine

from auth.models import Account, Session, VerificationCode, VerificationKind
from core.config import Settings
from core.timeutil import Clock, from_iso, to_iso, utc_now

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # lower-cased
    Column("name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text, nullable=False),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("totp_secret", String(64)),  # base32, set when MFA setup begins
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("account_id", Integer, nullable=False, index=True),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("expired_at", String(32), nullable=False),
)

_codes = Table(
    "verification_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("kind", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

# Count-then-create as one statement. The subquery and the insert run under
# the same write lock, so two concurrent requests cannot both observe
# "count < max" and then both insert.
_INSERT_CODE_WITHIN_LIMIT = text(
    """
    INSERT INTO verification_codes (account_id, code, kind, created_at, expires_at)
    SELECT :account_id, :code, :kind, :created_at, :expires_at
    WHERE (
        SELECT COUNT(*) FROM verification_codes
        WHERE account_id = :account_id AND kind = :kind AND created_at > :since
    ) < :max_count
    """
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str) -> Engine:
    """Create the engine shared by all three repositories and ensure the schema exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def normalize_email(email: str) -> str:
    return email.strip().lower()


def generate_code() -> str:
    """128 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(16)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records.

    Usage:
        engine = create_auth_engine("sqlite:///gatehouse.db")
        accounts = AccountStore(engine)
        account_id = accounts.create(Account(email="a@example.com", hashed_password=hash_password("pw")))
    """

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def create(self, account: Account) -> int:
        """Insert a new account and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        AuthService translates that into EmailAlreadyExistsError.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=normalize_email(account.email),
                    name=account.name,
                    hashed_password=account.hashed_password,
                    is_email_verified=1 if account.is_email_verified else 0,
                    mfa_enabled=1 if account.mfa_enabled else 0,
                    totp_secret=account.totp_secret,
                    created_at=to_iso(self._clock()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email. Case and surrounding whitespace are ignored."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def update(self, account_id: int, **fields) -> bool:
        """Update mutable fields. Booleans are converted to 0/1.

        Returns True if a row was updated, False if account_id was not found.
        """
        for flag in ("is_email_verified", "mfa_enabled"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_totp_secret_if_absent(self, account_id: int, secret: str) -> bool:
        """Store a pending TOTP secret unless one is already present.

        Returns True if this call stored it. On False the caller must re-read
        the account and use whatever secret won.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.totp_secret.is_(None)))
                .values(totp_secret=secret)
            )
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for Session records.

    New sessions expire refresh_token_expire_seconds after creation, the same
    lifetime as the refresh token minted alongside them.
    """

    def __init__(self, engine: Engine, settings: Settings, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._ttl = timedelta(seconds=settings.refresh_token_expire_seconds)
        self._clock = clock

    def create(self, account_id: int, user_agent: str | None = None) -> Session:
        now = self._clock()
        session = Session(
            id=uuid.uuid4().hex,
            account_id=account_id,
            user_agent=user_agent,
            created_at=now,
            expired_at=now + self._ttl,
        )
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    account_id=account_id,
                    user_agent=user_agent,
                    created_at=to_iso(session.created_at),
                    expired_at=to_iso(session.expired_at),
                )
            )
            conn.commit()
        return session

    def find_by_id(self, session_id: str) -> Session | None:
        """Return the session regardless of expiry; callers decide what expired means."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_by_account(self, account_id: int) -> list[Session]:
        """Return the account's unexpired sessions, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.account_id == account_id) & (_sessions.c.expired_at > to_iso(self._clock())))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def extend(self, session_id: str, new_expiry: datetime, expected_expiry: datetime) -> bool:
        """Move expired_at forward only if it still equals expected_expiry.

        Returns False when another request already rotated the session (or it
        was deleted) between the caller's read and this write.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.expired_at == to_iso(expected_expiry)))
                .values(expired_at=to_iso(new_expiry))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_by_id(self, session_id: str, account_id: int | None = None) -> bool:
        """Delete one session. When account_id is given, only a session it owns is deleted.

        The ownership check lives in the WHERE clause so a caller who knows
        another account's session id cannot revoke it [IDOR guard].
        """
        condition = _sessions.c.id == session_id
        if account_id is not None:
            condition = condition & (_sessions.c.account_id == account_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(condition))
            conn.commit()
        return result.rowcount > 0

    def delete_all_by_account(self, account_id: int) -> int:
        """Delete every session of an account. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
            conn.commit()
        return result.rowcount

    def purge_expired(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expired_at <= to_iso(self._clock())))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Verification codes
# ---------------------------------------------------------------------------


class VerificationCodeStore:
    """Repository for single-use e-mail verification and password-reset codes."""

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def create(self, account_id: int, kind: VerificationKind, ttl: timedelta) -> VerificationCode:
        now = self._clock()
        code = VerificationCode(
            account_id=account_id,
            code=generate_code(),
            kind=kind,
            created_at=now,
            expires_at=now + ttl,
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                _codes.insert().values(
                    account_id=account_id,
                    code=code.code,
                    kind=kind.value,
                    created_at=to_iso(code.created_at),
                    expires_at=to_iso(code.expires_at),
                )
            )
            conn.commit()
            code.id = result.inserted_primary_key[0]
        return code

    def create_within_limit(
        self,
        account_id: int,
        kind: VerificationKind,
        ttl: timedelta,
        window: timedelta,
        max_count: int,
    ) -> VerificationCode | None:
        """Create a code unless max_count codes of this kind exist inside the trailing window.

        Returns None when the limit is already reached. Nothing is written in
        that case.
        """
        now = self._clock()
        value = generate_code()
        with self.engine.connect() as conn:
            result = conn.execute(
                _INSERT_CODE_WITHIN_LIMIT,
                {
                    "account_id": account_id,
                    "code": value,
                    "kind": kind.value,
                    "created_at": to_iso(now),
                    "expires_at": to_iso(now + ttl),
                    "since": to_iso(now - window),
                    "max_count": max_count,
                },
            )
            conn.commit()
            if result.rowcount == 0:
                return None
            row = conn.execute(_codes.select().where(_codes.c.code == value)).fetchone()
        return _row_to_code(row)

    def oldest_since(self, account_id: int, kind: VerificationKind, since: datetime) -> datetime | None:
        """Creation time of the oldest code inside the window, for Retry-After."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _codes.select()
                .where(
                    (_codes.c.account_id == account_id)
                    & (_codes.c.kind == kind.value)
                    & (_codes.c.created_at > to_iso(since))
                )
                .order_by(_codes.c.created_at.asc())
                .limit(1)
            ).fetchone()
        return from_iso(row.created_at) if row is not None else None

    def find_valid_for_account(self, account_id: int, kind: VerificationKind) -> VerificationCode | None:
        """Return the newest unexpired code of this kind for the account, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _codes.select()
                .where(
                    (_codes.c.account_id == account_id)
                    & (_codes.c.kind == kind.value)
                    & (_codes.c.expires_at > to_iso(self._clock()))
                )
                .order_by(_codes.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_code(row) if row is not None else None

    def consume(self, code: str, kind: VerificationKind) -> VerificationCode | None:
        """Atomically redeem a code: find the unexpired row and delete it.

        Returns the redeemed code, or None if it does not exist, has expired,
        belongs to another purpose, or a concurrent caller redeemed it first.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _codes.select().where(
                    (_codes.c.code == code)
                    & (_codes.c.kind == kind.value)
                    & (_codes.c.expires_at > to_iso(self._clock()))
                )
            ).fetchone()
            if row is None:
                return None
            deleted = conn.execute(_codes.delete().where(_codes.c.id == row.id))
            if deleted.rowcount == 0:
                return None
        return _row_to_code(row)

    def purge_expired(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_codes.delete().where(_codes.c.expires_at <= to_iso(self._clock())))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        is_email_verified=bool(row.is_email_verified),
        mfa_enabled=bool(row.mfa_enabled),
        totp_secret=row.totp_secret,
        created_at=from_iso(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        account_id=row.account_id,
        user_agent=row.user_agent,
        created_at=from_iso(row.created_at),
        expired_at=from_iso(row.expired_at),
    )


def _row_to_code(row) -> VerificationCode:
    return VerificationCode(
        id=row.id,
        account_id=row.account_id,
        code=row.code,
        kind=VerificationKind(row.kind),
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
    )
