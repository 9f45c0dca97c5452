"""
api/routes/v1/passkeys.py -- Passkey enrollment, login and management.

Routes:
  POST   /api/v1/auth/passkeys/register/options  -- begin enrollment (requires auth)
  POST   /api/v1/auth/passkeys/register/verify   -- complete enrollment (requires auth)
  POST   /api/v1/auth/passkeys/login/options     -- begin passkey login (public, by email)
  POST   /api/v1/auth/passkeys/login/verify      -- complete passkey login, issue token
  GET    /api/v1/auth/passkeys                   -- list own passkeys (requires auth)
  PATCH  /api/v1/auth/passkeys/{id}              -- rename (requires auth, ownership checked)
  DELETE /api/v1/auth/passkeys/{id}              -- remove (requires auth, ownership checked)

IDOR guard: rename/remove pass the caller's account id to the store, which
matches on (id, account_id). Another account's passkey looks like a missing one.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    PasskeyLoginOptionsRequest,
    PasskeyLoginVerifyRequest,
    PasskeyOptionsResponse,
    PasskeyRegisterVerifyRequest,
    PasskeyRename,
    PasskeyResponse,
)
from api.routes.v1.auth import login_response
from auth.dependencies import get_current_account
from auth.models import Account
from auth.service import AuthService

router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------


@router.post("/auth/passkeys/register/options", response_model=PasskeyOptionsResponse)
def register_options(request: Request, account: Account = Depends(get_current_account)) -> PasskeyOptionsResponse:
    """Return PublicKeyCredentialCreationOptions for navigator.credentials.create()."""
    return PasskeyOptionsResponse(options=_service(request).begin_enrollment(account.id))


@router.post("/auth/passkeys/register/verify", response_model=PasskeyResponse, status_code=201)
def register_verify(
    request: Request,
    body: PasskeyRegisterVerifyRequest,
    account: Account = Depends(get_current_account),
) -> PasskeyResponse:
    passkey = _service(request).complete_enrollment(account.id, body.credential, body.name, body.device_type)
    return PasskeyResponse(
        id=passkey.id,
        name=passkey.name,
        device_type=passkey.device_type,
        created_at=passkey.created_at,
    )


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.post("/auth/passkeys/login/options", response_model=PasskeyOptionsResponse)
def login_options(request: Request, body: PasskeyLoginOptionsRequest) -> PasskeyOptionsResponse:
    """Return PublicKeyCredentialRequestOptions for navigator.credentials.get()."""
    _, options = _service(request).begin_passkey_login(body.email)
    return PasskeyOptionsResponse(options=options)


@router.post("/auth/passkeys/login/verify")
def login_verify(request: Request, body: PasskeyLoginVerifyRequest):
    result = _service(request).complete_passkey_login(
        body.email,
        body.credential,
        device_token=body.device_token,
        device_type=body.device_type.value if body.device_type else None,
    )
    return login_response(result)


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------


@router.get("/auth/passkeys", response_model=list[PasskeyResponse])
def list_passkeys(request: Request, account: Account = Depends(get_current_account)) -> list[PasskeyResponse]:
    return [PasskeyResponse.from_summary(s) for s in _service(request).registry.list(account.id)]


@router.patch("/auth/passkeys/{passkey_id}", status_code=204)
def rename_passkey(
    request: Request,
    passkey_id: int,
    body: PasskeyRename,
    account: Account = Depends(get_current_account),
) -> Response:
    _service(request).registry.rename(account.id, passkey_id, body.name)
    return Response(status_code=204)


@router.delete("/auth/passkeys/{passkey_id}", status_code=204)
def remove_passkey(request: Request, passkey_id: int, account: Account = Depends(get_current_account)) -> Response:
    """Remove a passkey. Removing the last one turns biometric login off."""
    _service(request).registry.remove(account.id, passkey_id)
    return Response(status_code=204)
