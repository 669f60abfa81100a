"""
tests/conftest.py -- Shared test fixtures for idgate tests.

This module provides:
  - FakeClock: a settable time source for code-expiry tests
  - rsa_pair / cipher: one RSA key pair per session (generation is slow)
  - _make_test_stores(): isolated in-memory account store + primary code cache
  - make_service(): an AuthService over test stores with minimum bcrypt cost
  - _patch_lifespan(): wires test collaborators into app.state
  - api_client: TestClient plus the handles tests need to drive it

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any idgate import so get_settings()
accepts the dev-mode defaults.
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any idgate import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.cipher import TransportCipher
from auth.keygen import generate_key_pair
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import AccountStore
from cache.codes import VerificationCodeStore
from cache.store import MemoryCodeCache, SqlCodeCache

# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_pair() -> tuple[str, str]:
    """(public_pem, private_pem), generated once for the whole run."""
    return generate_key_pair()


@pytest.fixture(scope="session")
def cipher(rsa_pair) -> TransportCipher:
    return TransportCipher.from_pem(*rsa_pair)


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    """Minimum bcrypt cost keeps the suite fast."""
    return PasswordHasher(rounds=4)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str | None = None) -> tuple[AccountStore, SqlCodeCache]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB names so tests don't share
                   state. A random one is used when omitted.
    """
    suffix = db_suffix or uuid.uuid4().hex
    store = AccountStore(_memory_url(f"test_accounts_{suffix}"))
    code_cache = SqlCodeCache(_memory_url(f"test_codes_{suffix}"))
    return store, code_cache


def _last_mailed_code(mailer: MagicMock) -> str:
    """Return the 6-digit code from the most recent mailer.send() body."""
    _to, _subject, body = mailer.send.call_args.args
    match = re.search(r"\b(\d{6})\b", body)
    assert match is not None, body
    return match.group(1)


@dataclass
class ServiceHarness:
    service: AuthService
    store: AccountStore
    codes: VerificationCodeStore
    mailer: MagicMock

    def last_code(self) -> str:
        return _last_mailed_code(self.mailer)


def make_service(cipher: TransportCipher, hasher: PasswordHasher, db_suffix: str | None = None) -> ServiceHarness:
    store, code_cache = _make_test_stores(db_suffix)
    codes = VerificationCodeStore(code_cache, MemoryCodeCache())
    mailer = MagicMock()
    mailer.enabled = True
    mailer.send.return_value = True
    service = AuthService(store, cipher, hasher, codes, mailer)
    return ServiceHarness(service=service, store=store, codes=codes, mailer=mailer)


@pytest.fixture
def harness(cipher, hasher) -> Generator[ServiceHarness, None, None]:
    h = make_service(cipher, hasher)
    yield h
    h.store.close()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def _patch_lifespan(h: ServiceHarness):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = h.store
        app.state.codes = h.codes
        app.state.auth_service = h.service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    cipher: TransportCipher
    codes: VerificationCodeStore
    mailer: MagicMock
    store: AccountStore

    def last_code(self) -> str:
        return _last_mailed_code(self.mailer)


@pytest.fixture(scope="module")
def api_client(cipher, hasher) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for HTTP integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores. The mailer is a
    MagicMock; tests read verification codes from its last send() call.
    """
    h = make_service(cipher, hasher)
    app.router.lifespan_context = _patch_lifespan(h)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield ApiHarness(client=client, cipher=cipher, codes=h.codes, mailer=h.mailer, store=h.store)

    h.store.close()
