"""
cache/codes.py -- One-time email verification codes over two cache tiers.

Policy (fail-fast / fail-open, availability over durability):

  issue():  write to the primary tier if it is believed reachable, then ALWAYS
            write the same code to the fallback tier. If the primary goes away
            between issue and redeem, the code is still redeemable.

  redeem(): primary first while reachable. A hit decides the outcome (match ->
            delete from both tiers; mismatch -> keep the entry so the user can
            retry). A miss falls through to the fallback, where expiry is
            checked explicitly because the fallback tier never expires entries
            by itself. Only a successful match consumes a code.

  Redeem and store run under one lock so both tiers change together within
  the process. Across processes the primary tier's check-and-delete decides.

  Reachability is a local flag. probe() sets it once at startup; after that
  it only ever goes down, on the first observed primary failure, and stays
  down until the process restarts. There is no inline retry.

Codes are 6-digit strings (100000-999999) drawn from the secrets module and
compared exactly after trimming the caller's input.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time

from cache.store import Clock, CodeCache, MemoryCodeCache
from core.errors import CacheUnavailableError

logger = logging.getLogger("idgate.codes")

_KEY_PREFIX = "email:verify:"
_DEFAULT_TTL = 5 * 60  # seconds


def _key(email: str) -> str:
    return f"{_KEY_PREFIX}{email}"


def generate_code() -> str:
    """Return a uniformly random 6-digit code."""
    return str(100000 + secrets.randbelow(900000))


class VerificationCodeStore:
    """Usage:
    codes = VerificationCodeStore(SqlCodeCache(url), MemoryCodeCache())
    codes.probe()
    code = codes.issue("a@example.com")
    codes.redeem("a@example.com", code)   # True once, then False
    """

    def __init__(
        self,
        primary: CodeCache,
        fallback: MemoryCodeCache,
        ttl_seconds: int = _DEFAULT_TTL,
        clock: Clock = time.time,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._primary_available = True

    @property
    def primary_available(self) -> bool:
        return self._primary_available

    def _mark_primary_down(self, operation: str, exc: Exception) -> None:
        if self._primary_available:
            logger.warning("Primary code cache failed during %s, using in-process fallback: %s", operation, exc)
        self._primary_available = False

    def probe(self) -> bool:
        """One reachability check, run at startup. Returns the resulting flag."""
        ping = getattr(self._primary, "ping", None)
        if ping is None:
            self._primary_available = True
            return True
        try:
            ping()
        except CacheUnavailableError as e:
            self._mark_primary_down("startup probe", e)
        else:
            self._primary_available = True
            logger.info("Primary code cache reachable")
        return self._primary_available

    # ------------------------------------------------------------------
    # Issue / redeem
    # ------------------------------------------------------------------

    def issue(self, email: str) -> str:
        """Generate, store in both tiers, and return a fresh code for email."""
        code = generate_code()
        with self._lock:
            self._store(email, code)
        return code

    def reinstate(self, email: str, code: str) -> None:
        """Store a previously redeemed code again with a fresh expiry.

        Used when an operation fails after its code was consumed, so the
        caller can retry with the code they already received.
        """
        with self._lock:
            self._store(email, code)
        logger.info("Verification code reinstated for %s", email)

    def _store(self, email: str, code: str) -> None:
        key = _key(email)
        stored_in_primary = False
        if self._primary_available:
            try:
                self._primary.set_with_ttl(key, code, self._ttl)
                stored_in_primary = True
            except CacheUnavailableError as e:
                self._mark_primary_down("set", e)
        self._fallback.set_with_ttl(key, code, self._ttl)
        logger.info(
            "Verification code stored for %s (%s, ttl=%ds)",
            email,
            "primary+fallback" if stored_in_primary else "fallback only",
            self._ttl,
        )

    def redeem(self, email: str, code: str | None) -> bool:
        """Return True and consume the code if it matches; False otherwise.

        Consumption is a check-and-delete in the deciding tier, so concurrent
        redeems of one code succeed at most once.
        """
        if not email or code is None or not code.strip():
            logger.warning("Verification rejected: empty email or code")
            return False
        supplied = code.strip()
        key = _key(email)

        with self._lock:
            if self._primary_available:
                try:
                    entry = self._primary.get(key)
                    if entry is not None:
                        if entry.code != supplied:
                            logger.warning("Verification code mismatch for %s", email)
                            return False
                        if not self._primary.take(key, supplied):
                            self._fallback.delete(key)
                            logger.warning("Verification code for %s was already redeemed", email)
                            return False
                        self._fallback.delete(key)
                        logger.info("Verification code redeemed for %s (primary)", email)
                        return True
                except CacheUnavailableError as e:
                    self._mark_primary_down("redeem", e)

            entry = self._fallback.get(key)
            if entry is None:
                logger.warning("Verification code not found for %s", email)
                return False
            if entry.is_expired(self._clock()):
                self._fallback.delete(key)
                logger.warning("Verification code expired for %s", email)
                return False
            if not self._fallback.take(key, supplied):
                logger.warning("Verification code mismatch for %s", email)
                return False
            logger.info("Verification code redeemed for %s (fallback)", email)
            return True


    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Purge expired entries from both tiers. Returns number removed."""
        removed = self._fallback.purge_expired()
        purge = getattr(self._primary, "purge_expired", None)
        if self._primary_available and purge is not None:
            try:
                removed += purge()
            except CacheUnavailableError as e:
                self._mark_primary_down("sweep", e)
        if removed:
            logger.info("Swept %d expired verification codes", removed)
        return removed
