"""Unit tests for auth/passwords.py -- salted bcrypt hashing.

Covers:
- verify() is True for the same password and salt, False for a different salt
- salts are 32 hex characters and unique
- passwords whose salted form exceeds bcrypt's 72-byte limit still hash and
  still distinguish their trailing bytes
- a malformed stored hash is a mismatch, not an error
"""

import re

import pytest

from auth.passwords import PasswordHasher


@pytest.fixture
def salt(hasher: PasswordHasher) -> str:
    return hasher.generate_salt()


def test_same_password_same_salt_verifies(hasher, salt):
    hashed = hasher.hash("hunter2!", salt)
    assert hasher.verify("hunter2!", hashed, salt)


def test_different_salt_fails(hasher, salt):
    hashed = hasher.hash("hunter2!", salt)
    assert not hasher.verify("hunter2!", hashed, hasher.generate_salt())


def test_wrong_password_fails(hasher, salt):
    hashed = hasher.hash("hunter2!", salt)
    assert not hasher.verify("hunter3!", hashed, salt)


def test_hash_is_bcrypt_with_configured_cost(hasher, salt):
    hashed = hasher.hash("pw", salt)
    assert hashed.startswith("$2b$04$")


def test_salt_format_and_uniqueness(hasher):
    salts = {hasher.generate_salt() for _ in range(50)}
    assert len(salts) == 50
    assert all(re.fullmatch(r"[0-9a-f]{32}", s) for s in salts)


def test_long_password_is_accepted(hasher, salt):
    long_pw = "x" * 200
    hashed = hasher.hash(long_pw, salt)
    assert hasher.verify(long_pw, hashed, salt)


def test_long_passwords_differing_only_at_the_end(hasher, salt):
    """Bytes past position 72 must still matter."""
    base = "a" * 100
    hashed = hasher.hash(base + "1", salt)
    assert not hasher.verify(base + "2", hashed, salt)


def test_malformed_hash_is_mismatch(hasher, salt):
    assert hasher.verify("pw", "not-a-bcrypt-hash", salt) is False
