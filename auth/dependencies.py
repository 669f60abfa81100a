"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

One auth method: the Authorization header, either "Bearer <token>" or the raw
token. Verification is the four-step session check in auth/tokens.py, run by
AuthService.authenticate().

get_current_account() lets UnauthorizedError propagate, which the API layer renders
into the standard envelope with code 401.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import Account
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService wired into app.state by the lifespan."""
    return request.app.state.auth_service


def get_current_account(request: Request) -> Account:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.post("/logout")
        def route(account: Account = Depends(get_current_account)): ...
    """
    service = get_auth_service(request)
    return service.authenticate(request.headers.get("Authorization"))
