"""
core/errors.py -- Typed error hierarchy for idgate.

Two families:

  ServiceError subclasses are business-rule violations. Each carries a stable
  numeric code and a message that is safe to show to the client. The API
  layer renders them into the {code, message, data} envelope with HTTP 200.

  CryptoError and CacheUnavailableError are internal signals raised by the
  transport cipher and the cache backends. Their messages may contain library
  detail, so they never reach a client: the auth flow translates CryptoError
  into UnreadableCredentialError, and the code store absorbs
  CacheUnavailableError by switching to the fallback tier.

Layer rule: no imports from api/, auth/, cache/, or mail/.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for errors whose code and message may be shown to a client."""

    code: int = 500
    default_message: str = "Request failed."

    def __init__(self, message: str | None = None, *, detail: list[dict] | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(ServiceError):
    code = 400
    default_message = "Validation failed"


class UnreadableCredentialError(ServiceError):
    code = 400
    default_message = "Credential could not be read."


class UnauthorizedError(ServiceError):
    code = 401
    default_message = "Not authenticated."


class ForbiddenError(ServiceError):
    code = 403
    default_message = "Account is not active."


class NotFoundError(ServiceError):
    code = 404
    default_message = "Account not found."


class ConflictError(ServiceError):
    code = 409
    default_message = "Resource already exists."


class InfrastructureError(ServiceError):
    """A dependency (database, mail, cache) could not be reached.

    The message is replaced with a generic one at the API boundary; the
    original cause is kept on __cause__ for the log.
    """

    code = 500
    default_message = "Internal server error."


class CryptoError(Exception):
    """Transport decryption failed (bad base64, wrong key, corrupt padding)."""


class CacheUnavailableError(Exception):
    """A verification-code cache backend failed an operation."""
