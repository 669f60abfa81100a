"""
auth/service.py -- Account authentication flows.

AuthService orchestrates the transport cipher, password hasher, verification
code store and session token codec against the account store:

  send_verification_code  issue a one-time code and mail it
  register                code -> uniqueness -> decrypt -> hash -> account -> session -> token
  login                   email or display name -> active? -> decrypt -> verify -> session -> token
  verify                  four-step token check -> public profile, or valid=False
  authenticate            same check, raising UnauthorizedError
  reset_password          account -> code -> decrypt -> rehash -> drop session
  logout                  drop session
  get_account             public profile lookup

Transactions:
  Every flow that writes runs in one AccountStore.transaction(); any exception
  rolls back all of its writes. Verification codes live outside the database,
  so when a flow fails after its code was redeemed, the code is reinstated
  before the error propagates -- the caller gets the error and can retry
  with the same code.

Errors:
  Business failures raise ServiceError subclasses (core/errors.py). A lost
  database connection becomes InfrastructureError. CryptoError from the
  cipher becomes UnreadableCredentialError; the cipher's own message is logged,
  never returned.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError, OperationalError

from auth.cipher import TransportCipher
from auth.models import Account, AccountStatus, Gender, SessionRecord
from auth.passwords import PasswordHasher
from auth.store import AccountRepository, AccountStore
from auth.tokens import (
    authenticate_token,
    issue_token,
    new_session_secret,
    parse_authorization,
    session_expiry,
)
from cache.codes import VerificationCodeStore
from core.errors import (
    ConflictError,
    CryptoError,
    ForbiddenError,
    InfrastructureError,
    NotFoundError,
    UnauthorizedError,
    UnreadableCredentialError,
    ValidationError,
)
from mail.sender import SmtpMailer

logger = logging.getLogger("idgate.auth")

_CODE_SUBJECT = "Your verification code"
_CODE_BODY = (
    "Your verification code is: {code}\n\n"
    "The code is valid for {minutes} minutes. Do not share it with anyone.\n\n"
    "If you did not request this code, you can ignore this email."
)


@dataclass
class RegisterCommand:
    email: str
    display_name: str
    encrypted_password: str
    verification_code: str
    avatar_url: str = ""
    avatar_base64: str = ""
    country: str = ""
    gender: int = 0


@dataclass
class IssuedSession:
    """A freshly opened session: the account and its bearer token."""

    account: Account
    token: str


@dataclass
class VerifyResult:
    valid: bool
    account_id: int | None = None
    email: str | None = None
    display_name: str | None = None


def _validate_registration(cmd: RegisterCommand) -> None:
    """Domain checks the transport schema cannot express.

    Login resolves an identifier as an email first, so a display name that
    looks like an email could shadow another account's login.
    """
    errors = []
    if "@" in cmd.display_name:
        errors.append({"field": "display_name", "message": "Display name must not contain '@'."})
    if not cmd.display_name.strip():
        errors.append({"field": "display_name", "message": "Display name must not be blank."})
    if cmd.gender not in {g.value for g in Gender}:
        errors.append({"field": "gender", "message": "Gender must be 0, 1 or 2."})
    if errors:
        raise ValidationError(detail=errors)


class AuthService:
    def __init__(
        self,
        store: AccountStore,
        cipher: TransportCipher,
        hasher: PasswordHasher,
        codes: VerificationCodeStore,
        mailer: SmtpMailer,
        *,
        token_ttl: timedelta = timedelta(hours=24),
        session_days: int = 7,
        code_ttl_seconds: int = 300,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._hasher = hasher
        self._codes = codes
        self._mailer = mailer
        self._token_ttl = token_ttl
        self._session_days = session_days
        self._code_ttl_seconds = code_ttl_seconds

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[AccountRepository]:
        try:
            with self._store.transaction() as repo:
                yield repo
        except OperationalError as e:
            logger.error("Account store unavailable: %s", e)
            raise InfrastructureError() from e

    def _decrypt(self, ciphertext: str, who: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext)
        except CryptoError as e:
            logger.warning("Credential decryption failed for %s: %s", who, e)
            raise UnreadableCredentialError() from e

    def _open_session(self, repo: AccountRepository, account: Account) -> str:
        """Replace the account's session with a fresh secret and return a token for it."""
        secret = new_session_secret()
        repo.upsert_session(
            SessionRecord(
                account_id=account.id,
                secret=secret,
                expires_at=session_expiry(self._session_days),
            )
        )
        return issue_token(account.id, account.email, account.display_name, secret, ttl=self._token_ttl)

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def public_key_pem(self) -> str:
        return self._cipher.public_key_pem()

    def send_verification_code(self, email: str) -> None:
        """Issue a code for email and try to deliver it.

        Delivery failure is logged only; the code stays valid either way.
        """
        code = self._codes.issue(email)
        if not self._mailer.enabled:
            logger.info("Mail delivery disabled -- verification code for %s: %s", email, code)
            return
        body = _CODE_BODY.format(code=code, minutes=max(1, self._code_ttl_seconds // 60))
        if not self._mailer.send(email, _CODE_SUBJECT, body):
            logger.warning("Verification code for %s was not delivered; it remains valid", email)

    def register(self, cmd: RegisterCommand) -> IssuedSession:
        email = cmd.email
        logger.info("Registration started: email=%s, display_name=%s", email, cmd.display_name)
        _validate_registration(cmd)
        if not self._codes.redeem(email, cmd.verification_code):
            raise UnauthorizedError("Verification code is invalid or expired.")

        try:
            with self._transaction() as repo:
                if repo.exists_by_email(email):
                    raise ConflictError("Email is already registered.")
                if repo.exists_by_display_name(cmd.display_name):
                    raise ConflictError("Display name is already taken.")

                plain = self._decrypt(cmd.encrypted_password, email)
                salt = self._hasher.generate_salt()
                account = Account(
                    email=email,
                    display_name=cmd.display_name,
                    password_hash=self._hasher.hash(plain, salt),
                    password_salt=salt,
                    avatar_url=cmd.avatar_url or "",
                    avatar_base64=cmd.avatar_base64 or "",
                    country=cmd.country or "",
                    gender=cmd.gender or 0,
                    status=AccountStatus.ACTIVE,
                )
                try:
                    account_id = repo.insert(account)
                except IntegrityError as e:
                    # Lost a race with a concurrent registration.
                    raise ConflictError("Email or display name is already taken.") from e

                saved = repo.find_by_id(account_id)
                token = self._open_session(repo, saved)
        except Exception:
            self._codes.reinstate(email, cmd.verification_code.strip())
            raise

        logger.info("Registration completed: account_id=%s, email=%s", saved.id, saved.email)
        return IssuedSession(account=saved, token=token)

    def login(self, identifier: str, encrypted_password: str) -> IssuedSession:
        """Log in by email or, failing that, by display name."""
        logger.info("Login started: identifier=%s", identifier)
        with self._transaction() as repo:
            account = repo.find_by_email(identifier) or repo.find_by_display_name(identifier)
            if account is None:
                raise NotFoundError()
            if not account.is_active:
                raise ForbiddenError()

            plain = self._decrypt(encrypted_password, identifier)
            if not self._hasher.verify(plain, account.password_hash, account.password_salt):
                logger.warning("Login rejected: bad password for account_id=%s", account.id)
                raise UnauthorizedError("Invalid credentials.")

            token = self._open_session(repo, account)

        logger.info("Login completed: account_id=%s", account.id)
        return IssuedSession(account=account, token=token)

    def verify(self, authorization: str | None) -> VerifyResult:
        """Introspect a bearer value. Never raises for a merely invalid token."""
        token = parse_authorization(authorization)
        if token is None:
            return VerifyResult(valid=False)
        with self._transaction() as repo:
            account_id = authenticate_token(repo, token)
            account = repo.find_by_id(account_id) if account_id is not None else None
        if account is None:
            return VerifyResult(valid=False)
        return VerifyResult(
            valid=True,
            account_id=account.id,
            email=account.email,
            display_name=account.display_name,
        )

    def authenticate(self, authorization: str | None) -> Account:
        """Return the account behind a bearer value or raise UnauthorizedError."""
        token = parse_authorization(authorization)
        if token is None:
            raise UnauthorizedError("Authentication required.")
        with self._transaction() as repo:
            account_id = authenticate_token(repo, token)
            account = repo.find_by_id(account_id) if account_id is not None else None
        if account is None:
            raise UnauthorizedError("Token is invalid or expired.")
        return account

    def reset_password(self, email: str, verification_code: str, encrypted_new_password: str) -> None:
        """Set a new password after proving control of email; ends the session."""
        logger.info("Password reset started: email=%s", email)
        redeemed = False
        try:
            with self._transaction() as repo:
                account = repo.find_by_email(email)
                if account is None:
                    raise NotFoundError()
                if not self._codes.redeem(email, verification_code):
                    raise UnauthorizedError("Verification code is invalid or expired.")
                redeemed = True

                plain = self._decrypt(encrypted_new_password, email)
                account.password_salt = self._hasher.generate_salt()
                account.password_hash = self._hasher.hash(plain, account.password_salt)
                repo.update(account)
                repo.delete_session(account.id)
        except Exception:
            if redeemed:
                self._codes.reinstate(email, verification_code.strip())
            raise

        logger.info("Password reset completed: account_id=%s", account.id)

    def logout(self, account_id: int) -> None:
        """Delete the account's session. The caller must have authenticated it."""
        with self._transaction() as repo:
            deleted = repo.delete_session(account_id)
        logger.info("Logout: account_id=%s (session %s)", account_id, "deleted" if deleted else "absent")

    def get_account(self, account_id: int) -> Account:
        with self._transaction() as repo:
            account = repo.find_by_id(account_id)
        if account is None:
            raise NotFoundError()
        return account
