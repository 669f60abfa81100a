"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
auth service do the work; these only own the shape.

Layer rule: no imports from api/, cache/, or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class AccountStatus(IntEnum):
    INACTIVE = 0
    ACTIVE = 1


class Gender(IntEnum):
    UNSPECIFIED = 0
    MALE = 1
    FEMALE = 2


@dataclass
class Account:
    """A registered identity.

    email and display_name are each unique across all accounts. Both are
    stored and compared exactly as given (case-sensitive).

    password_hash and password_salt are always written together. Neither is
    ever returned by the API or written to a log.
    """

    email: str
    display_name: str
    password_hash: str
    password_salt: str
    id: int | None = None
    avatar_url: str = ""
    avatar_base64: str = ""
    country: str = ""
    gender: int = Gender.UNSPECIFIED
    status: int = AccountStatus.ACTIVE
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class SessionRecord:
    """The single live session of an account.

    secret is the signing key material for every token issued in this session.
    Replacing or deleting the record therefore revokes all of those tokens at
    once, before their embedded expiry. It is never sent to the client.
    """

    account_id: int
    secret: str
    expires_at: str  # ISO 8601 UTC
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class SessionCredential:
    """The two halves a session is proven with: server-side secret + bearer token.

    Neither half authenticates alone. auth.tokens.verify_credential() checks
    the token against the secret it was signed with.
    """

    secret: str
    token: str


@dataclass(frozen=True)
class UnverifiedAccountId:
    """An account id read from a token WITHOUT checking its signature.

    Only good for one thing: choosing which SessionRecord to load so the token
    can then be verified. Deliberately not an int, so it cannot be passed
    where a verified account id is expected.
    """

    value: int
