"""
tests/test_codes.py -- Verification code store and its cache tiers.

Coverage:
  - issue + redeem succeeds exactly once
  - a wrong code does not consume the stored one
  - expired codes fail in both tiers
  - primary outage at issue time, between issue and redeem, and at probe
  - a primary miss falls through to the fallback tier
  - reinstate() makes a redeemed code usable again
  - concurrent redeems of one code succeed exactly once, in process and
    across stores sharing a primary tier
  - sweep() purges expired entries
  - SqlCodeCache maps driver errors to CacheUnavailableError
"""

from __future__ import annotations

import re
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from cache.codes import VerificationCodeStore, generate_code
from cache.store import MemoryCodeCache, SqlCodeCache
from core.errors import CacheUnavailableError

EMAIL = "alice@example.com"


class FlakyCache:
    """Wraps a real cache; every call raises CacheUnavailableError while down."""

    def __init__(self, inner: SqlCodeCache) -> None:
        self.inner = inner
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise CacheUnavailableError("connection refused")

    def get(self, key):
        self._check()
        return self.inner.get(key)

    def set_with_ttl(self, key, code, ttl_seconds):
        self._check()
        self.inner.set_with_ttl(key, code, ttl_seconds)

    def delete(self, key):
        self._check()
        self.inner.delete(key)

    def take(self, key, code):
        self._check()
        return self.inner.take(key, code)

    def ping(self):
        self._check()
        self.inner.ping()


@pytest.fixture
def primary(clock) -> FlakyCache:
    url = f"sqlite:///file:test_codes_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    cache = SqlCodeCache(url, clock=clock)
    yield FlakyCache(cache)
    cache.close()


@pytest.fixture
def fallback(clock) -> MemoryCodeCache:
    return MemoryCodeCache(clock=clock)


@pytest.fixture
def codes(primary, fallback, clock) -> VerificationCodeStore:
    return VerificationCodeStore(primary, fallback, ttl_seconds=300, clock=clock)


def test_generate_code_is_six_digits():
    for _ in range(200):
        code = generate_code()
        assert re.fullmatch(r"[1-9]\d{5}", code)


class TestIssueRedeem:
    def test_redeem_succeeds_once(self, codes):
        code = codes.issue(EMAIL)
        assert codes.redeem(EMAIL, code) is True
        assert codes.redeem(EMAIL, code) is False

    def test_wrong_code_does_not_consume(self, codes):
        code = codes.issue(EMAIL)
        wrong = "000000" if code != "000000" else "111111"
        assert codes.redeem(EMAIL, wrong) is False
        assert codes.redeem(EMAIL, code) is True

    def test_input_is_trimmed(self, codes):
        code = codes.issue(EMAIL)
        assert codes.redeem(EMAIL, f"  {code}\n") is True

    def test_blank_input_rejected(self, codes):
        codes.issue(EMAIL)
        assert codes.redeem(EMAIL, "   ") is False
        assert codes.redeem(EMAIL, None) is False
        assert codes.redeem("", "123456") is False

    def test_codes_are_per_email(self, codes):
        code = codes.issue(EMAIL)
        assert codes.redeem("bob@example.com", code) is False
        assert codes.redeem(EMAIL, code) is True

    def test_reissue_replaces_previous_code(self, codes):
        first = codes.issue(EMAIL)
        second = codes.issue(EMAIL)
        if first != second:
            assert codes.redeem(EMAIL, first) is False
        assert codes.redeem(EMAIL, second) is True

    def test_expired_code_fails(self, codes, clock):
        code = codes.issue(EMAIL)
        clock.advance(301)
        assert codes.redeem(EMAIL, code) is False

    def test_code_valid_until_ttl(self, codes, clock):
        code = codes.issue(EMAIL)
        clock.advance(299)
        assert codes.redeem(EMAIL, code) is True

    def test_reinstate_after_redeem(self, codes):
        code = codes.issue(EMAIL)
        assert codes.redeem(EMAIL, code) is True
        codes.reinstate(EMAIL, code)
        assert codes.redeem(EMAIL, code) is True


class TestPrimaryOutage:
    def test_probe_reports_reachable_primary(self, codes):
        assert codes.probe() is True
        assert codes.primary_available is True

    def test_probe_marks_primary_down(self, codes, primary):
        primary.down = True
        assert codes.probe() is False
        assert codes.primary_available is False

    def test_issue_during_outage_uses_fallback(self, codes, primary, fallback):
        primary.down = True
        code = codes.issue(EMAIL)
        assert codes.primary_available is False
        assert len(fallback) == 1
        assert codes.redeem(EMAIL, code) is True

    def test_outage_between_issue_and_redeem(self, codes, primary):
        code = codes.issue(EMAIL)
        primary.down = True
        assert codes.redeem(EMAIL, code) is True
        assert codes.primary_available is False

    def test_primary_stays_down_after_first_failure(self, codes, primary):
        primary.down = True
        codes.issue(EMAIL)
        primary.down = False
        codes.issue("carol@example.com")
        assert codes.primary_available is False
        assert primary.inner.get("email:verify:carol@example.com") is None

    def test_primary_miss_falls_back(self, codes, primary):
        code = codes.issue(EMAIL)
        primary.inner.delete(f"email:verify:{EMAIL}")
        assert codes.redeem(EMAIL, code) is True

    def test_expired_fallback_entry_removed(self, codes, primary, fallback, clock):
        primary.down = True
        code = codes.issue(EMAIL)
        clock.advance(600)
        assert codes.redeem(EMAIL, code) is False
        assert len(fallback) == 0


class TestSweep:
    def test_sweep_purges_expired(self, codes, fallback, clock):
        codes.issue(EMAIL)
        codes.issue("bob@example.com")
        clock.advance(301)
        codes.issue("carol@example.com")
        assert codes.sweep() >= 2
        assert len(fallback) == 1

    def test_sweep_keeps_live_entries(self, codes, fallback):
        code = codes.issue(EMAIL)
        codes.sweep()
        assert codes.redeem(EMAIL, code) is True


class TestBackends:
    def test_memory_cache_returns_expired_entries(self, fallback, clock):
        fallback.set_with_ttl("k", "123456", 10)
        clock.advance(11)
        entry = fallback.get("k")
        assert entry is not None
        assert entry.is_expired(clock())

    def test_sql_cache_hides_expired_entries(self, primary, clock):
        primary.inner.set_with_ttl("k", "123456", 10)
        assert primary.inner.get("k").code == "123456"
        clock.advance(11)
        assert primary.inner.get("k") is None
        assert primary.inner.purge_expired() == 1

    def test_sql_cache_unreachable_raises_cache_unavailable(self, tmp_path):
        cache = SqlCodeCache(f"sqlite:///{tmp_path / 'missing-dir' / 'codes.db'}")
        with pytest.raises(CacheUnavailableError):
            cache.ping()
        with pytest.raises(CacheUnavailableError):
            cache.get("k")

    def test_sql_take_consumes_matching_code_once(self, primary):
        primary.inner.set_with_ttl("k", "123456", 300)
        assert primary.inner.take("k", "654321") is False
        assert primary.inner.take("k", "123456") is True
        assert primary.inner.take("k", "123456") is False

    def test_sql_take_ignores_expired_row(self, primary, clock):
        primary.inner.set_with_ttl("k", "123456", 300)
        clock.advance(301)
        assert primary.inner.take("k", "123456") is False

    def test_memory_take_consumes_matching_code_once(self, fallback):
        fallback.set_with_ttl("k", "123456", 300)
        assert fallback.take("k", "654321") is False
        assert fallback.take("k", "123456") is True
        assert len(fallback) == 0


class GatedCache(FlakyCache):
    """Holds every get() at a barrier so concurrent redeems overlap."""

    def __init__(self, inner: SqlCodeCache, parties: int) -> None:
        super().__init__(inner)
        self.barrier = threading.Barrier(parties, timeout=5)

    def get(self, key):
        entry = super().get(key)
        self.barrier.wait()
        return entry


class TestConcurrentRedeem:
    def test_parallel_redeems_in_one_process_succeed_once(self, codes):
        code = codes.issue(EMAIL)
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: codes.redeem(EMAIL, code), range(8)))
        assert results.count(True) == 1

    def test_stores_sharing_a_primary_redeem_once(self, tmp_path, clock):
        shared = SqlCodeCache(f"sqlite:///{tmp_path / 'codes.db'}", clock=clock)
        gated = GatedCache(shared, parties=2)
        first = VerificationCodeStore(gated, MemoryCodeCache(clock=clock), clock=clock)
        second = VerificationCodeStore(gated, MemoryCodeCache(clock=clock), clock=clock)
        code = generate_code()
        shared.set_with_ttl(f"email:verify:{EMAIL}", code, 300)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda store: store.redeem(EMAIL, code), [first, second]))

        assert sorted(results) == [False, True]
        assert shared.get(f"email:verify:{EMAIL}") is None
        shared.close()
