"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- mobile and API clients.
  2. JWT cookie ("access_token") -- browser clients.

Both converge on an Account loaded fresh from the store, so a token for a
deleted account stops working immediately.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for
Request/HTTPException) because it is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Account
from auth.store import AuthStore
from auth.tokens import decode_access_token


def try_get_current_account(request: Request) -> Account | None:
    """Return the authenticated Account, or None. Never raises."""
    store: AuthStore = request.app.state.store

    token: str | None = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
    if not token:
        token = request.cookies.get("access_token")
    if not token:
        return None

    payload = decode_access_token(token)
    if not payload:
        return None
    try:
        account_id = int(payload["account_id"])
    except (TypeError, ValueError):
        return None
    return store.get_account(account_id)


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return account
