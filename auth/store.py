"""
auth/store.py -- SQLAlchemy Core persistence layer for credentials.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_account / _row_to_refresh_token are the mappers. The session service
never touches SQL directly.

Concurrency:
  Registration uniqueness is the UNIQUE index on accounts.email -- two
  concurrent inserts for the same email cannot both commit. The loser gets
  DuplicateAccountError, never a second row.

  Lockout bookkeeping goes through update_login_state(..., expected=...), a
  conditional UPDATE that only matches when the stored (login_attempts,
  locked_until) pair still equals what the caller read. rowcount == 0 means
  another request got there first; the caller re-reads and re-decides.

Errors:
  IntegrityError on account insert -> DuplicateAccountError.
  Any other SQLAlchemyError        -> StoreUnavailableError (logged at WARNING).
  The store never retries.

Security:
  All queries use bound parameters. Refresh tokens are stored by HMAC digest
  only (see auth/tokens.py).

Timestamps are written as ISO 8601 UTC strings with fixed microsecond
precision so lexicographic order matches chronological order in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import DuplicateAccountError, StoreUnavailableError
from auth.models import Account, LoginState, RefreshToken

logger = logging.getLogger("sessionguard.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("email", String(255), nullable=False, unique=True),  # normalized by the caller
    Column("name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),  # NULL = no lock recorded
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("account_id", String(32), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _to_iso_or_none(value: datetime | None) -> str | None:
    return _to_iso(value) if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into StoreUnavailableError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.warning("Credential store %s failed: %s", operation, exc.__class__.__name__)
        raise StoreUnavailableError() from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Account and RefreshToken records.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        account = store.create_account(Account(email="a@x.com", name="Ann", password_hash=digest))
        store.find_account_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str, timeout_seconds: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Busy timeout: a writer waits at most this long for the lock,
            # then the driver raises OperationalError.
            connect_args["timeout"] = timeout_seconds
        with _store_errors("initialize"):
            self.engine: Engine = create_engine(db_url, connect_args=connect_args)
            if db_url.startswith("sqlite"):
                event.listen(self.engine, "connect", _set_wal_mode)
            _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        """Insert a new account and return it with id and created_at assigned.

        Raises DuplicateAccountError if the email is already taken, including
        when a concurrent request committed the same email first.
        """
        account_id = uuid.uuid4().hex
        created_at = _now_iso()
        with _store_errors("create_account"):
            try:
                with self.engine.connect() as conn:
                    conn.execute(
                        _accounts.insert().values(
                            id=account_id,
                            email=account.email,
                            name=account.name,
                            password_hash=account.password_hash,
                            login_attempts=0,
                            locked_until=None,
                            created_at=created_at,
                        )
                    )
                    conn.commit()
            except IntegrityError as exc:
                raise DuplicateAccountError() from exc
        return dataclasses.replace(
            account, id=account_id, created_at=created_at, login_attempts=0, locked_until=None
        )

    def find_account_by_email(self, email: str) -> Account | None:
        """Look up an account by exact (already normalized) email."""
        with _store_errors("find_account_by_email"):
            with self.engine.connect() as conn:
                row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_account_by_id(self, account_id: str) -> Account | None:
        with _store_errors("find_account_by_id"):
            with self.engine.connect() as conn:
                row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_login_state(
        self,
        account_id: str,
        state: LoginState,
        expected: LoginState | None = None,
    ) -> bool:
        """Write (login_attempts, locked_until) for an account.

        With expected=None the write is unconditional. Otherwise it is a
        compare-and-set: the row is only updated if its current pair equals
        expected. Returns True if a row was updated.
        """
        stmt = _accounts.update().where(_accounts.c.id == account_id)
        if expected is not None:
            stmt = stmt.where(_accounts.c.login_attempts == expected.attempts)
            if expected.locked_until is None:
                stmt = stmt.where(_accounts.c.locked_until.is_(None))
            else:
                stmt = stmt.where(_accounts.c.locked_until == _to_iso(expected.locked_until))
        stmt = stmt.values(
            login_attempts=state.attempts,
            locked_until=_to_iso_or_none(state.locked_until),
        )
        with _store_errors("update_login_state"):
            with self.engine.connect() as conn:
                result = conn.execute(stmt)
                conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token_hash: str, account_id: str, expires_at: datetime) -> None:
        with _store_errors("create_refresh_token"):
            with self.engine.connect() as conn:
                conn.execute(
                    _refresh_tokens.insert().values(
                        token_hash=token_hash,
                        account_id=account_id,
                        expires_at=_to_iso(expires_at),
                        created_at=_now_iso(),
                    )
                )
                conn.commit()

    def find_refresh_token(self, token_hash: str) -> RefreshToken | None:
        """Return the stored record for token_hash, expired or not. Expiry is the caller's check."""
        with _store_errors("find_refresh_token"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
                ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_refresh_token(self, token_hash: str) -> bool:
        """Hard-delete a refresh token. Returns True if a record was removed."""
        with _store_errors("delete_refresh_token"):
            with self.engine.connect() as conn:
                result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_hash == token_hash))
                conn.commit()
        return result.rowcount > 0

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        """Delete every refresh token whose expiry is at or before now. Returns rows removed."""
        with _store_errors("purge_expired_refresh_tokens"):
            with self.engine.connect() as conn:
                result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _to_iso(now)))
                conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        login_attempts=row.login_attempts,
        locked_until=_from_iso(row.locked_until),
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        token_hash=row.token_hash,
        account_id=row.account_id,
        expires_at=_from_iso(row.expires_at),
        created_at=row.created_at,
    )
