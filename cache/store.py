"""
cache/store.py -- Key/value backends for short-lived verification codes.

Both backends implement the same capability (CodeCache):

    get(key) -> CodeEntry | None
    set_with_ttl(key, code, ttl_seconds)
    delete(key)
    take(key, code) -> bool      check-and-delete; True for exactly one caller

SqlCodeCache is the primary tier: durable, shared between processes, and
reachable over the network when code_cache_url points at a database server.
Expired rows are invisible to get() (TTL semantics), so callers never see a
stale code from it. Any backend failure is raised as CacheUnavailableError.

MemoryCodeCache is the in-process fallback tier. It does NOT expire entries on
read; every entry carries its expires_at and the caller decides. purge_expired()
bounds memory and is driven by the sweep task in api/main.py.

Composition, not inheritance: cache/codes.py holds one of each and decides
which to consult.

Usage:
    primary = SqlCodeCache("sqlite:///codes.db")
    primary.set_with_ttl("email:verify:a@b.c", "123456", 300)
    entry = primary.get("email:verify:a@b.c")   # CodeEntry or None
    primary.delete("email:verify:a@b.c")
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import Column, Float, MetaData, String, Table, create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.errors import CacheUnavailableError

Clock = Callable[[], float]


@dataclass(frozen=True)
class CodeEntry:
    code: str
    expires_at: float  # epoch seconds

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class CodeCache(Protocol):
    def get(self, key: str) -> CodeEntry | None: ...

    def set_with_ttl(self, key: str, code: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def take(self, key: str, code: str) -> bool: ...


# ---------------------------------------------------------------------------
# Primary tier (SQLAlchemy)
# ---------------------------------------------------------------------------

_metadata = MetaData()

_codes = Table(
    "verification_codes",
    _metadata,
    Column("cache_key", String(255), primary_key=True),
    Column("code", String(16), nullable=False),
    Column("expires_at", Float, nullable=False),
)

_PROBE_KEY = "probe:connection"


class SqlCodeCache:
    """Primary verification-code store backed by any SQLAlchemy URL.

    The engine is created lazily on first use so that an unreachable server
    at startup shows up as CacheUnavailableError from ping() rather than as an
    import-time crash.
    """

    def __init__(self, db_url: str, clock: Clock = time.time) -> None:
        self._db_url = db_url
        self._clock = clock
        self._engine: Engine | None = None
        self._engine_lock = threading.Lock()

    def _get_engine(self) -> Engine:
        if self._engine is None:
            with self._engine_lock:
                if self._engine is None:
                    connect_args: dict = {}
                    if self._db_url.startswith("sqlite"):
                        connect_args["check_same_thread"] = False
                    engine = create_engine(self._db_url, connect_args=connect_args, pool_pre_ping=True)
                    _metadata.create_all(engine)
                    self._engine = engine
        return self._engine

    def get(self, key: str) -> CodeEntry | None:
        try:
            with self._get_engine().connect() as conn:
                row = conn.execute(
                    select(_codes.c.code, _codes.c.expires_at).where(
                        (_codes.c.cache_key == key) & (_codes.c.expires_at >= self._clock())
                    )
                ).fetchone()
        except SQLAlchemyError as e:
            raise CacheUnavailableError(str(e)) from e
        return CodeEntry(code=row.code, expires_at=row.expires_at) if row is not None else None

    def set_with_ttl(self, key: str, code: str, ttl_seconds: int) -> None:
        expires_at = self._clock() + ttl_seconds
        try:
            # Delete + insert in one transaction: a portable upsert.
            with self._get_engine().begin() as conn:
                conn.execute(delete(_codes).where(_codes.c.cache_key == key))
                conn.execute(_codes.insert().values(cache_key=key, code=code, expires_at=expires_at))
        except SQLAlchemyError as e:
            raise CacheUnavailableError(str(e)) from e

    def delete(self, key: str) -> None:
        try:
            with self._get_engine().begin() as conn:
                conn.execute(delete(_codes).where(_codes.c.cache_key == key))
        except SQLAlchemyError as e:
            raise CacheUnavailableError(str(e)) from e

    def take(self, key: str, code: str) -> bool:
        """Delete the row only if it still holds this unexpired code."""
        try:
            with self._get_engine().begin() as conn:
                result = conn.execute(
                    delete(_codes).where(
                        (_codes.c.cache_key == key) & (_codes.c.code == code) & (_codes.c.expires_at >= self._clock())
                    )
                )
        except SQLAlchemyError as e:
            raise CacheUnavailableError(str(e)) from e
        return result.rowcount == 1

    def purge_expired(self) -> int:
        """Delete expired rows. Returns number of rows removed."""
        try:
            with self._get_engine().begin() as conn:
                result = conn.execute(delete(_codes).where(_codes.c.expires_at < self._clock()))
        except SQLAlchemyError as e:
            raise CacheUnavailableError(str(e)) from e
        return result.rowcount

    def ping(self) -> None:
        """Write and delete a probe key. Raises CacheUnavailableError on failure."""
        self.set_with_ttl(_PROBE_KEY, "probe", 1)
        self.delete(_PROBE_KEY)

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()


# ---------------------------------------------------------------------------
# Fallback tier (in-process)
# ---------------------------------------------------------------------------


class MemoryCodeCache:
    """In-process fallback store. Safe for concurrent insert/remove/sweep."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, CodeEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CodeEntry | None:
        """Return the entry as stored, expired or not."""
        with self._lock:
            return self._entries.get(key)

    def set_with_ttl(self, key: str, code: str, ttl_seconds: int) -> None:
        entry = CodeEntry(code=code, expires_at=self._clock() + ttl_seconds)
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def take(self, key: str, code: str) -> bool:
        """Pop the entry if it holds code. Expiry is the caller's decision."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.code != code:
                return False
            del self._entries[key]
            return True

    def purge_expired(self) -> int:
        """Remove entries past their expiry. Returns number of entries removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
