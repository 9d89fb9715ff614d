"""
api/routes/v1/accounts.py -- Account administration REST endpoints (admin only).

Routes:
  POST   /api/v1/accounts        -- create provider account + users/{uid} profile
  PATCH  /api/v1/accounts/{uid}  -- update username, name, role and/or password
  DELETE /api/v1/accounts/{uid}  -- delete provider account and profile

Every route depends on require_roles(Role.ADMIN), which resolves the caller's
role on each request (claims first, then profiles). A cached or stale role
never authorizes anything here.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import AccountCreate, AccountPatch, AccountResponse
from auth.accounts import AccountAdmin, AccountAdminError, UsernameTakenError
from auth.dependencies import Caller, require_roles
from auth.models import Role
from auth.provider import AccountNotFoundError

router = APIRouter()

_require_admin = require_roles(Role.ADMIN)


def _admin(request: Request) -> AccountAdmin:
    return AccountAdmin(request.app.state.provider, request.app.state.docstore)


def _raise_for(exc: Exception) -> None:
    if isinstance(exc, UsernameTakenError):
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "That username is already taken."},
        ) from exc
    if isinstance(exc, AccountNotFoundError):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Account not found."},
        ) from exc
    raise HTTPException(
        status_code=400,
        detail={"code": "invalid_argument", "message": str(exc)},
    ) from exc


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    request: Request,
    body: AccountCreate,
    caller: Caller = Depends(_require_admin),
) -> AccountResponse:
    """Create a user who will sign in with username + password."""
    try:
        uid = _admin(request).create_user_account(body.username, body.password, body.name, body.role.value)
    except AccountAdminError as exc:
        _raise_for(exc)
    return AccountResponse(uid=uid)


@router.patch("/accounts/{uid}", response_model=AccountResponse)
def update_account(
    request: Request,
    uid: str,
    body: AccountPatch,
    caller: Caller = Depends(_require_admin),
) -> AccountResponse:
    if body.username is None and body.password is None and body.name is None and body.role is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    try:
        _admin(request).update_user_account(
            uid,
            username=body.username,
            name=body.name,
            role=body.role.value if body.role else None,
            password=body.password,
        )
    except (AccountAdminError, AccountNotFoundError) as exc:
        _raise_for(exc)
    return AccountResponse(uid=uid)


@router.delete("/accounts/{uid}", response_model=AccountResponse)
def delete_account(
    request: Request,
    uid: str,
    caller: Caller = Depends(_require_admin),
) -> AccountResponse:
    try:
        _admin(request).delete_user_account(uid)
    except (AccountAdminError, AccountNotFoundError) as exc:
        _raise_for(exc)
    return AccountResponse(uid=uid)
