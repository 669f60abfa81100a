"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and sessions.

Pattern: Repository + Data Mapper. AccountRepository holds every query and is
bound to one connection; _row_to_account / _row_to_session are the mappers.
The auth service never touches SQL directly.

Units of work:
  AccountStore.transaction() opens engine.begin() and yields a repository
  bound to that transaction. Everything done through it commits together on
  normal exit and rolls back together if anything raises -- e.g. an account
  row is never left behind when creating its session fails.

Security:
  All queries use bound parameters. No f-strings in SQL.
  email and display_name carry UNIQUE constraints. The service checks them
  first to give a precise error, and the constraint catches the race where
  two registrations pass the check concurrently (IntegrityError).

Sessions:
  account_sessions.account_id is UNIQUE: one live session per account.
  upsert_session() replaces the whole row (secret, expiry, updated_at) in one
  statement, so concurrent logins for the same account resolve as
  last-writer-wins and never interleave fields.

DB path: idgate.db at the project root unless DATABASE_URL is set.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, SmallInteger, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Connection, Engine

from auth.models import Account, SessionRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(128), nullable=False, unique=True),
    Column("display_name", String(64), nullable=False, unique=True),
    Column("password_hash", String(100), nullable=False),
    Column("password_salt", String(64), nullable=False),
    Column("avatar_url", String(255), nullable=False, server_default=""),
    Column("avatar_base64", Text, nullable=False, server_default=""),
    Column("country", String(64), nullable=False, server_default=""),
    Column("gender", SmallInteger, nullable=False, server_default="0"),
    Column("status", SmallInteger, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "account_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, unique=True),
    Column("secret", String(128), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountRepository:
    """Account and session queries bound to a single connection."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def insert(self, account: Account) -> int:
        """Insert a new account and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email or display name is
        already taken.
        """
        now = _now_iso()
        result = self._conn.execute(
            _accounts.insert().values(
                email=account.email,
                display_name=account.display_name,
                password_hash=account.password_hash,
                password_salt=account.password_salt,
                avatar_url=account.avatar_url,
                avatar_base64=account.avatar_base64,
                country=account.country,
                gender=int(account.gender),
                status=int(account.status),
                created_at=now,
                updated_at=now,
            )
        )
        return result.inserted_primary_key[0]

    def update(self, account: Account) -> bool:
        """Write every mutable field of account. Returns False if the id is unknown."""
        result = self._conn.execute(
            _accounts.update()
            .where(_accounts.c.id == account.id)
            .values(
                email=account.email,
                display_name=account.display_name,
                password_hash=account.password_hash,
                password_salt=account.password_salt,
                avatar_url=account.avatar_url,
                avatar_base64=account.avatar_base64,
                country=account.country,
                gender=int(account.gender),
                status=int(account.status),
                updated_at=_now_iso(),
            )
        )
        return result.rowcount > 0

    def find_by_id(self, account_id: int) -> Account | None:
        row = self._conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_email(self, email: str) -> Account | None:
        """Exact, case-sensitive match."""
        row = self._conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_display_name(self, display_name: str) -> Account | None:
        row = self._conn.execute(_accounts.select().where(_accounts.c.display_name == display_name)).fetchone()
        return _row_to_account(row) if row is not None else None

    def exists_by_email(self, email: str) -> bool:
        row = self._conn.execute(select(_accounts.c.id).where(_accounts.c.email == email).limit(1)).fetchone()
        return row is not None

    def exists_by_display_name(self, display_name: str) -> bool:
        row = self._conn.execute(
            select(_accounts.c.id).where(_accounts.c.display_name == display_name).limit(1)
        ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def find_session(self, account_id: int) -> SessionRecord | None:
        row = self._conn.execute(_sessions.select().where(_sessions.c.account_id == account_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def upsert_session(self, record: SessionRecord) -> None:
        """Create the account's session or replace it wholesale.

        SQLite and PostgreSQL get a single INSERT ... ON CONFLICT DO UPDATE.
        Other dialects fall back to UPDATE, then INSERT when no row matched.
        """
        now = _now_iso()
        values = {
            "account_id": record.account_id,
            "secret": record.secret,
            "expires_at": record.expires_at,
            "created_at": now,
            "updated_at": now,
        }
        replace = {"secret": record.secret, "expires_at": record.expires_at, "updated_at": now}
        dialect = self._conn.dialect.name
        if dialect in ("sqlite", "postgresql"):
            if dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert
            else:
                from sqlalchemy.dialects.postgresql import insert
            stmt = insert(_sessions).values(**values)
            self._conn.execute(stmt.on_conflict_do_update(index_elements=[_sessions.c.account_id], set_=replace))
            return
        result = self._conn.execute(
            _sessions.update().where(_sessions.c.account_id == record.account_id).values(**replace)
        )
        if result.rowcount == 0:
            self._conn.execute(_sessions.insert().values(**values))

    def delete_session(self, account_id: int) -> bool:
        """Delete the account's session. Returns True if one existed."""
        result = self._conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
        return result.rowcount > 0


class AccountStore:
    """Engine owner and unit-of-work factory.

    Usage:
        store = AccountStore()
        with store.transaction() as repo:
            account_id = repo.insert(account)
            repo.upsert_session(SessionRecord(account_id=account_id, ...))
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[AccountRepository]:
        """Yield a repository whose writes commit or roll back together."""
        with self.engine.begin() as conn:
            yield AccountRepository(conn)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        password_hash=row.password_hash,
        password_salt=row.password_salt,
        avatar_url=row.avatar_url or "",
        avatar_base64=row.avatar_base64 or "",
        country=row.country or "",
        gender=row.gender,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        account_id=row.account_id,
        secret=row.secret,
        expires_at=row.expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
