"""
api/routes/email.py -- Verification code delivery.

Routes:
  POST /email/send-verification-code  -- issue a 6-digit code for an address

The response does not say whether the email actually left the server. A
delivery failure is logged by AuthService and the code stays redeemable.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import ApiResult, SendCodeRequest
from auth.dependencies import get_auth_service
from auth.service import AuthService

router = APIRouter()


@router.post("/email/send-verification-code", response_model=ApiResult[None])
def send_verification_code(body: SendCodeRequest, service: AuthService = Depends(get_auth_service)) -> ApiResult:
    service.send_verification_code(body.email)
    return ApiResult.success()
