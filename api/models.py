"""
API request and response models for idgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response, success or business failure, is wrapped in ApiResult:

    {"code": 200, "message": "Success", "data": ...}

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Account
from auth.service import IssuedSession, VerifyResult

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CODE_PATTERN = r"^\d{6}$"

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ApiResult(BaseModel, Generic[T]):
    """Uniform response envelope.

    code mirrors the HTTP semantics of the outcome (200, 400, 401, ...), but
    business failures are still delivered with HTTP status 200; clients read
    code, not the status line.
    """

    model_config = ConfigDict(frozen=True)

    code: int = 200
    message: str = "Success"
    data: Optional[T] = None

    @classmethod
    def success(cls, data: Any = None) -> "ApiResult":
        return cls(code=200, message="Success", data=data)

    @classmethod
    def error(cls, code: int, message: str, data: Any = None) -> "ApiResult":
        return cls(code=code, message=message, data=data)


class FieldError(BaseModel):
    """One failed request field in a 400 response's data list."""

    model_config = ConfigDict(frozen=True)

    field: str
    message: str


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SendCodeRequest(BaseModel):
    """Request body for POST /email/send-verification-code."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class RegisterRequest(BaseModel):
    """Request body for POST /register.

    encrypted_password is the base64 RSA ciphertext produced with the key from
    GET /public-key. The plaintext never travels in the clear.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr = Field(max_length=128)
    display_name: str = Field(min_length=2, max_length=64)
    encrypted_password: str = Field(min_length=1)
    verification_code: str = Field(pattern=CODE_PATTERN)
    avatar_url: Optional[str] = Field(default=None, max_length=255)
    avatar_base64: Optional[str] = None
    country: Optional[str] = Field(default=None, max_length=64)
    gender: int = Field(default=0, ge=0, le=2)


class LoginRequest(BaseModel):
    """Request body for POST /login. username is an email or a display name."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=128)
    encrypted_password: str = Field(min_length=1)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /reset-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr = Field(max_length=128)
    verification_code: str = Field(pattern=CODE_PATTERN)
    encrypted_new_password: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountProfile(BaseModel):
    """Public view of an account. Never carries hash, salt or session data."""

    model_config = ConfigDict(frozen=True)

    account_id: int
    email: str
    display_name: str
    avatar_url: str
    country: str
    gender: int
    status: int
    created_at: Optional[str]

    @classmethod
    def from_account(cls, account: Account) -> "AccountProfile":
        """Factory Method -- the domain-to-contract mapping lives with the contract."""
        return cls(
            account_id=account.id,
            email=account.email,
            display_name=account.display_name,
            avatar_url=account.avatar_url,
            country=account.country,
            gender=int(account.gender),
            status=int(account.status),
            created_at=account.created_at,
        )


class RegisterResponse(AccountProfile):
    token: str

    @classmethod
    def from_session(cls, issued: IssuedSession) -> "RegisterResponse":
        profile = AccountProfile.from_account(issued.account)
        return cls(**profile.model_dump(), token=issued.token)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: int
    email: str
    display_name: str
    avatar_url: str
    token: str

    @classmethod
    def from_session(cls, issued: IssuedSession) -> "LoginResponse":
        return cls(
            account_id=issued.account.id,
            email=issued.account.email,
            display_name=issued.account.display_name,
            avatar_url=issued.account.avatar_url,
            token=issued.token,
        )


class VerifyResponse(BaseModel):
    """Token introspection result. Only valid is set when the token is rejected."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    account_id: Optional[int] = None
    email: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_result(cls, result: VerifyResult) -> "VerifyResponse":
        return cls(
            valid=result.valid,
            account_id=result.account_id,
            email=result.email,
            display_name=result.display_name,
        )


class HealthResponse(BaseModel):
    """Response data for GET /health.

    components maps each dependency to its state: "ok" / "unavailable" for the
    database, "primary" / "fallback" for the verification code cache.
    """

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
