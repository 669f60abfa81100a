"""
auth/tokens.py -- Session tokens signed with per-session secrets.

Security design decisions:
  JWT: python-jose with HS256. Unlike a service-wide SECRET_KEY, the signing
       key of every token is derived from the secret stored in that account's
       SessionRecord. Deleting or replacing the record (logout, password
       reset, a newer login) makes every token signed with the old secret
       unverifiable immediately, before its own exp claim. No denylist.

  Key derivation: the secret is repeated until it is at least 32 bytes
       (HS256's minimum key size) and then used as-is. No extra hashing --
       session secrets are already 256-bit random values.

  Verification returns None on any failure; "expired" and "malformed" differ
       only in the log line. The route layer turns None into an invalid result.

  Unverified lookup: to know WHICH secret to verify against, the account id
       has to be read from the token before its signature can be checked.
       peek_account_id() does that and wraps the result in UnverifiedAccountId
       so it can never be mistaken for an authenticated identity. It is only
       used by authenticate_token(), which then runs the full check:

         1. peek the account id (unverified)
         2. load that account's SessionRecord
         3. reject if the record itself has expired
         4. verify the signature with the record's secret, and require the
            verified account id to equal the peeked one

       Any failed step means "not authenticated".

Layer rule: no imports from api/, cache/, or mail/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import SessionCredential, SessionRecord, UnverifiedAccountId

if TYPE_CHECKING:
    from auth.store import AccountRepository

logger = logging.getLogger("idgate.auth")

_ALGORITHM = "HS256"
_MIN_KEY_BYTES = 32
# Account ids are 64-bit signed database integers.
_MAX_ACCOUNT_ID = 2**63 - 1
DEFAULT_TOKEN_TTL = timedelta(hours=24)

# ---------------------------------------------------------------------------
# Session secrets
# ---------------------------------------------------------------------------


def new_session_secret() -> str:
    """Return a fresh opaque session secret (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


def session_expiry(days: int, now: datetime | None = None) -> str:
    """Return the ISO 8601 expiry instant for a session created now."""
    now = now or datetime.now(timezone.utc)
    return (now + timedelta(days=days)).isoformat()


def session_expired(record: SessionRecord, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    expires_at = datetime.fromisoformat(record.expires_at)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at < now


def signing_key(secret: str) -> str:
    """Stretch secret to HS256 key length by repetition."""
    if not secret:
        raise ValueError("session secret must not be empty")
    key = secret
    while len(key.encode("utf-8")) < _MIN_KEY_BYTES:
        key += secret
    return key


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def issue_token(
    account_id: int,
    email: str,
    display_name: str,
    secret: str,
    ttl: timedelta | None = None,
) -> str:
    """Encode a signed JWT for one session.

    Args:
        account_id:   Numeric account ID, also stored as the sub claim.
        email:        Account email at issue time.
        display_name: Account display name at issue time.
        secret:       The SessionRecord secret this token is bound to.
        ttl:          Token lifetime. Defaults to 24 hours. The session
                      record has its own, longer expiry; whichever comes
                      first ends the token's validity.
    """
    now = datetime.now(timezone.utc)
    expire = now + (ttl if ttl is not None else DEFAULT_TOKEN_TTL)
    payload = {
        "sub": str(account_id),
        "account_id": account_id,
        "email": email,
        "display_name": display_name,
        "iat": now,
        "exp": expire,
    }
    token = jwt.encode(payload, signing_key(secret), algorithm=_ALGORITHM)
    logger.debug("Issued token for account_id=%s, expires_at=%s", account_id, expire.isoformat())
    return token


def verify_token(token: str, secret: str) -> int | None:
    """Verify signature and expiry. Returns the account id or None."""
    try:
        payload = jwt.decode(token, signing_key(secret), algorithms=[_ALGORITHM])
    except ExpiredSignatureError:
        logger.info("Token rejected: expired")
        return None
    except (JWTError, ValueError) as e:
        logger.info("Token rejected: %s", e)
        return None

    account_id = payload.get("account_id")
    exp = payload.get("exp")
    if not isinstance(account_id, int) or isinstance(account_id, bool) or not isinstance(exp, (int, float)):
        logger.info("Token rejected: missing claims")
        return None
    if exp < datetime.now(timezone.utc).timestamp():
        logger.info("Token rejected: expired")
        return None
    return account_id


def verify_credential(credential: SessionCredential) -> int | None:
    """Verify a {secret, token} pair. Returns the account id or None."""
    return verify_token(credential.token, credential.secret)


def peek_account_id(token: str) -> UnverifiedAccountId | None:
    """Read account_id from the token payload WITHOUT verifying the signature.

    Only for selecting the SessionRecord whose secret verifies this token.
    Never treat the result as authentication.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        logger.info("Token rejected: unparseable")
        return None
    account_id = claims.get("account_id")
    if not isinstance(account_id, int) or isinstance(account_id, bool):
        logger.info("Token rejected: no account_id claim")
        return None
    if not 1 <= account_id <= _MAX_ACCOUNT_ID:
        logger.info("Token rejected: account_id out of range")
        return None
    return UnverifiedAccountId(account_id)


# ---------------------------------------------------------------------------
# Bearer authentication (four-step check)
# ---------------------------------------------------------------------------


def parse_authorization(value: str | None) -> str | None:
    """Return the token from "Bearer <token>" or a raw token; None if blank."""
    if not value:
        return None
    parts = value.split(None, 1)
    if parts and parts[0].lower() == "bearer":
        parts = parts[1:]
    return parts[0].strip() if parts else None


def authenticate_token(repo: AccountRepository, token: str, now: datetime | None = None) -> int | None:
    """Return the authenticated account id for token, or None.

    Runs all four steps described in the module docstring. Store errors are
    not caught: an unreachable database is an infrastructure failure, not an
    invalid token.
    """
    peeked = peek_account_id(token)
    if peeked is None:
        return None
    record = repo.find_session(peeked.value)
    if record is None:
        logger.info("Token rejected: no session for account_id=%s", peeked.value)
        return None
    if session_expired(record, now):
        logger.info("Token rejected: session expired for account_id=%s", peeked.value)
        return None
    verified = verify_credential(SessionCredential(secret=record.secret, token=token))
    if verified is None or verified != peeked.value:
        return None
    return verified
