"""
api/routes/v1/auth.py -- Account, password and OTP REST endpoints.

Routes:
  POST /api/v1/auth/signup           -- create account, email registration OTP
  POST /api/v1/auth/login            -- password login; one of three result shapes
  POST /api/v1/auth/otp/send         -- resend an OTP for an email
  POST /api/v1/auth/otp/verify       -- consume OTP, mark verified, issue token
  GET  /api/v1/auth/me               -- current account (requires auth)
  POST /api/v1/auth/change-password  -- change password (requires auth)

Security:
  [C1] AccountDirectory.authenticate_password() provides timing equalization.
  [M5] Cache-Control: no-store on every response that carries a token or OTP.
  Typed AuthErrors raised below are turned into the error envelope by the
  handler registered in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    AccountResponse,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OtpSendRequest,
    OtpSendResponse,
    OtpVerifyRequest,
    SignupRequest,
    SignupResponse,
    TokenResponse,
)
from auth.dependencies import get_current_account
from auth.models import Account
from auth.service import AuthService, DeviceInfo, LoginResult
from auth.tokens import set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/signup, /login, /otp/send, /otp/verify: public
# - GET  /api/v1/auth/me:              requires auth (get_current_account)
# - POST /api/v1/auth/change-password: requires auth (get_current_account)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _device(request: Request, token: str | None, device_type) -> DeviceInfo | None:
    if not token:
        return None
    return DeviceInfo(
        device_token=token,
        device_type=getattr(device_type, "value", device_type) or "other",
        device_name=request.headers.get("user-agent", "unknown"),
    )


def login_response(result: LoginResult) -> JSONResponse:
    """Render a LoginResult. Shared with the passkey login route."""
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            status=result.status.value,
            account=AccountResponse.from_account(result.account),
            access_token=result.token,
            expires_in=get_settings().token_expire_seconds if result.token else None,
            otp=result.otp,
        ).model_dump(),
    )
    if result.token:
        set_auth_cookie(resp, result.token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=SignupResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Register an account and email it a registration OTP."""
    result = _service(request).signup(
        body.email,
        body.password,
        device=_device(request, body.device_token, body.device_type),
    )
    resp = JSONResponse(
        status_code=201,
        content=SignupResponse(account=AccountResponse.from_account(result.account), otp=result.otp).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    An unverified account gets a fresh OTP and no token
    (status=verification_required).
    """
    result = _service(request).login(
        body.email,
        body.password,
        device=_device(request, body.device_token, body.device_type),
    )
    return login_response(result)


@router.post("/auth/otp/send", response_model=OtpSendResponse)
def send_otp(request: Request, body: OtpSendRequest) -> JSONResponse:
    """Issue a new OTP for the account; any earlier code stops working."""
    account, code = _service(request).resend_otp(body.email)
    resp = JSONResponse(
        content=OtpSendResponse(email=account.email, account_id=account.id, otp=code).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/otp/verify", response_model=TokenResponse)
def verify_otp(request: Request, body: OtpVerifyRequest) -> JSONResponse:
    account, token = _service(request).verify_otp(body.account_id, body.otp)
    resp = JSONResponse(
        content=TokenResponse(
            access_token=token,
            expires_in=get_settings().token_expire_seconds,
            account=AccountResponse.from_account(account),
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(account: Account = Depends(get_current_account)) -> AccountResponse:
    return AccountResponse.from_account(account)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
) -> MessageResponse:
    _service(request).change_password(account.id, body.old_password, body.new_password)
    return MessageResponse(message="Password changed successfully.")
