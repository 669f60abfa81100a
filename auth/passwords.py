"""
auth/passwords.py -- Per-account salted password hashing (bcrypt).

Each account carries its own random salt next to the bcrypt hash. The salt is
appended to the plaintext before hashing, so the stored pair (hash, salt) is
always written together; changing either means rewriting both.

bcrypt is used directly rather than through passlib (same reasoning as the
rest of auth/: passlib's wrap-bug probe trips bcrypt 4.x's 72-byte check).
bcrypt 5 rejects inputs longer than 72 bytes outright, and password + 32-char
salt crosses that line for passwords above 40 bytes. Salted inputs over the
limit are therefore reduced to base64(SHA-256(input)) -- 44 bytes -- before
hashing, so every byte of password and salt still contributes.

The work factor is a deployment constant (BCRYPT_ROUNDS, default 12), not a
per-call argument. Tests construct a PasswordHasher with the minimum cost.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

import bcrypt

_BCRYPT_MAX_BYTES = 72


def _salted(plain: str, salt: str) -> bytes:
    data = (plain + salt).encode("utf-8")
    if len(data) > _BCRYPT_MAX_BYTES:
        data = base64.b64encode(hashlib.sha256(data).digest())
    return data


class PasswordHasher:
    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    @staticmethod
    def generate_salt() -> str:
        """Return 128 random bits as 32 hex characters."""
        return secrets.token_hex(16)

    def hash(self, plain: str, salt: str) -> str:
        """Return the bcrypt hash of plain + salt."""
        return bcrypt.hashpw(_salted(plain, salt), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str, salt: str) -> bool:
        """Return True if plain + salt matches the stored hash.

        bcrypt.checkpw compares in constant time. A malformed stored hash
        counts as a mismatch rather than an error.
        """
        try:
            return bcrypt.checkpw(_salted(plain, salt), hashed.encode("utf-8"))
        except ValueError:
            return False
