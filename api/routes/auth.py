"""
api/routes/auth.py -- Registration, login and session endpoints.

Routes:
  GET  /public-key        -- RSA public key (PEM) for encrypting passwords
  POST /register          -- create account with a verification code; returns token
  POST /login             -- email or display name + encrypted password; returns token
  GET  /verify            -- introspect the Authorization header
  POST /reset-password    -- new password with a verification code; ends the session
  POST /logout            -- delete the caller's session (requires auth)

Security:
  Passwords arrive RSA-encrypted and are decrypted only inside AuthService.
  Cache-Control: no-store on every response that carries a token.
  /reset-password ignores any Authorization header: the one-time code is the
  proof of ownership.

Handlers are plain def (not async): every flow does blocking bcrypt and
database work, so FastAPI runs them in its thread pool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Response

from api.models import (
    ApiResult,
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    VerifyResponse,
)
from auth.dependencies import get_auth_service, get_current_account
from auth.models import Account
from auth.service import AuthService, RegisterCommand

# Auth policy:
# - GET  /public-key:      public
# - POST /register:        public -- verification code is the proof
# - POST /login:           public
# - GET  /verify:          reads Authorization itself; invalid -> valid=false, not an error
# - POST /reset-password:  public -- verification code is the proof
# - POST /logout:          requires auth (get_current_account)
router = APIRouter()


@router.get("/public-key", response_model=ApiResult[str])
def public_key(service: AuthService = Depends(get_auth_service)) -> ApiResult:
    """Return the PEM-encoded RSA public key clients encrypt passwords with."""
    return ApiResult.success(service.public_key_pem())


@router.post("/register", response_model=ApiResult[RegisterResponse])
def register(
    body: RegisterRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
) -> ApiResult:
    issued = service.register(
        RegisterCommand(
            email=body.email,
            display_name=body.display_name,
            encrypted_password=body.encrypted_password,
            verification_code=body.verification_code,
            avatar_url=body.avatar_url or "",
            avatar_base64=body.avatar_base64 or "",
            country=body.country or "",
            gender=body.gender,
        )
    )
    response.headers["Cache-Control"] = "no-store"
    return ApiResult.success(RegisterResponse.from_session(issued))


@router.post("/login", response_model=ApiResult[LoginResponse])
def login(
    body: LoginRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
) -> ApiResult:
    """Authenticate with email or display name and an encrypted password.

    A successful login replaces any previous session of the account, so
    tokens issued earlier stop verifying.
    """
    issued = service.login(body.username, body.encrypted_password)
    response.headers["Cache-Control"] = "no-store"
    return ApiResult.success(LoginResponse.from_session(issued))


@router.get("/verify", response_model=ApiResult[VerifyResponse])
def verify(
    authorization: str | None = Header(default=None),
    service: AuthService = Depends(get_auth_service),
) -> ApiResult:
    """Report whether the bearer token is currently valid.

    Missing, malformed, expired or revoked tokens all produce valid=false
    inside a successful envelope.
    """
    return ApiResult.success(VerifyResponse.from_result(service.verify(authorization)))


@router.post("/reset-password", response_model=ApiResult[None])
def reset_password(body: ResetPasswordRequest, service: AuthService = Depends(get_auth_service)) -> ApiResult:
    service.reset_password(body.email, body.verification_code, body.encrypted_new_password)
    return ApiResult.success()


@router.post("/logout", response_model=ApiResult[None])
def logout(
    account: Account = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
) -> ApiResult:
    """End the caller's session. Every token of that session stops verifying."""
    service.logout(account.id)
    return ApiResult.success()
