"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and roles.

Identity for a request comes from the session token, checked in order:
  1. JWT cookie ("access_token") -- set by the web UI login flow.
  2. Authorization: Bearer <token> header -- API clients.

The session token only says who the caller is. The role is never read from
it: every protected request runs the role resolver again, so a role change
or a revoked profile takes effect on the next request. Provider-mode sessions
get a TokenBearer so the resolver can force-refresh the caller's claims.

try_get_caller() is the soft variant (never raises).
get_caller() raises HTTP 401 when there is no identity at all.
require_roles(*roles) runs a one-shot AccessGuard and raises 401 for
no identity, 403 for a denial. The 403 body is the same whether the role
was wrong or missing.

Layer rule: no imports from web/ or cache/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from fastapi import HTTPException, Request

from auth.guard import AccessGuard, GuardDecision, GuardState
from auth.models import AuthMode, Identity, IdentitySource, Role, SessionRecord, normalize_role
from auth.provider import TokenBearer
from auth.tokens import SESSION_COOKIE, decode_session_token


@dataclass
class Caller:
    """The authenticated party behind a request."""

    session: Optional[SessionRecord]
    identity: Identity
    bearer: Optional[TokenBearer] = None
    role: Optional[Role] = None


def session_from_request(request: Request) -> Optional[SessionRecord]:
    token: Optional[str] = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None
    return decode_session_token(token)


def try_get_caller(request: Request) -> Caller:
    """Build the Caller for this request. An unauthenticated request gets an empty identity."""
    session = session_from_request(request)
    if session is None:
        return Caller(session=None, identity=Identity(source=IdentitySource.TOKEN))

    bearer = None
    if session.mode is AuthMode.PROVIDER:
        bearer = request.app.state.provider.bearer(session.uid)
        source = IdentitySource.TOKEN
    else:
        source = IdentitySource.STORE
    identity = Identity(
        source=source,
        uid=session.uid or None,
        email=session.email or None,
        username_lower=(session.username_lower or session.username or "").lower() or None,
    )
    return Caller(session=session, identity=identity, bearer=bearer)


def get_caller(request: Request) -> Caller:
    caller = try_get_caller(request)
    if caller.identity.is_empty:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return caller


async def check_roles(request: Request, roles: tuple[Union[Role, str], ...]) -> tuple[Caller, GuardDecision]:
    """Run one access check for this request and return the settled decision."""
    caller = try_get_caller(request)
    guard = AccessGuard(request.app.state.resolver, roles)
    decision = await guard.evaluate(caller.identity, caller.bearer)
    if decision is None:
        # Only one check runs on a fresh guard; fall back to its published state.
        decision = guard.decision
    caller.role = decision.role
    return caller, decision


def require_roles(*roles: Union[Role, str]):
    """Dependency factory: allow only callers whose resolved role is in roles.

    Use as a FastAPI dependency:
        @router.delete("/parliament/dates/{date_id}")
        async def route(caller: Caller = Depends(require_roles(Role.ADMIN))): ...
    """
    for raw in roles:
        if normalize_role(raw) is None:
            raise ValueError(f"Unknown role: {raw!r}")

    async def dependency(request: Request) -> Caller:
        caller, decision = await check_roles(request, roles)
        if decision.state is GuardState.NO_IDENTITY:
            raise HTTPException(
                status_code=401,
                detail={"code": "unauthorized", "message": "Authentication required."},
            )
        if decision.state is not GuardState.ALLOWED:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You are not authorized to access this resource."},
            )
        return caller

    return dependency
