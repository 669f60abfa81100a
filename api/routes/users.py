"""
api/routes/users.py -- Account profile lookup.

Routes:
  GET /user/{account_id}  -- public profile of any account (requires auth)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from api.models import AccountProfile, ApiResult
from auth.dependencies import get_auth_service, get_current_account
from auth.models import Account
from auth.service import AuthService

router = APIRouter()


@router.get("/user/{account_id}", response_model=ApiResult[AccountProfile])
def get_user(
    account_id: int = Path(ge=1),
    current: Account = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
) -> ApiResult:
    return ApiResult.success(AccountProfile.from_account(service.get_account(account_id)))
