"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login   -- email or username login; sets session cookie
  POST /api/v1/auth/logout  -- clears cookie; 200
  GET  /api/v1/auth/me      -- caller identity and freshly resolved role

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] Both login flows burn a bcrypt check on unknown accounts.
  [M5] Login responses are never cached (Cache-Control: no-store).
  Every login failure returns the same code and message; the real reason
  (unknown account, bad password, no role) is only logged.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, LoginResponse, MeResponse
from auth.dependencies import Caller, get_caller
from auth.login import GENERIC_LOGIN_ERROR, LoginError, LoginService
from auth.provider import LocalIdentityProvider
from auth.tokens import SESSION_COOKIE, create_session_token, set_auth_cookie
from core.config import get_settings

logger = logging.getLogger("schoolgate.api.auth")

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/login:   public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:  public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:      requires identity (get_caller)
router = APIRouter()


def login_service(request: Request) -> LoginService:
    """One LoginService per attempt.

    Each attempt gets its own provider session over the shared account store,
    so concurrent logins never see each other's signed-in user.
    """
    state = request.app.state
    return LoginService(
        provider=LocalIdentityProvider(state.account_store),
        store=state.docstore,
        resolver=state.resolver,
    )


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate and set the session cookie.

    The response carries the resolved role and the dashboard path for it.
    """
    try:
        result = await login_service(request).login(body.identifier, body.password)
    except LoginError as exc:
        logger.info("Login rejected reason=%s", exc.code)
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": GENERIC_LOGIN_ERROR}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    token = create_session_token(result.session)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            uid=result.session.uid,
            display_name=result.session.display_name,
            mode=result.session.mode,
            role=result.role,
            destination=result.destination,
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the session cookie."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, caller: Caller = Depends(get_caller)) -> MeResponse:
    """Return the caller's identity and the role resolved right now.

    role is null when nothing grants one. This endpoint does not deny; the
    guarded routes do.
    """
    resolution = await request.app.state.resolver.resolve(caller.identity, caller.bearer)
    session = caller.session
    return MeResponse(
        uid=session.uid,
        display_name=session.display_name,
        mode=session.mode,
        role=resolution.role,
        email=session.email,
        username=session.username,
    )
