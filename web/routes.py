"""
web/routes.py -- Jinja2 template routes for the SchoolGate web UI.

Server-rendered pages. They use the same app.state services as the API
routes (same document store, account store and resolver) but return HTML and
redirects instead of JSON.

Every dashboard runs a one-shot access check (auth.dependencies.check_roles)
on each request:
  no identity  -> 302 /login?next={path}
  denied       -> 302 /unauthorized   (same redirect for wrong role and no role)
  allowed      -> the page

Routes:
  GET  /                                         -- redirect to the caller's dashboard
  GET  /login                                    -- login form
  POST /login                                    -- handle email or username login
  POST /logout                                   -- clear cookie, redirect /login
  GET  /unauthorized                             -- generic access-denied page
  GET  /admin                                    -- admin dashboard (admin)
  POST /admin/parliament/dates/{date_id}/delete  -- cascade delete, back to /admin
  GET  /teacher                                  -- teacher dashboard (teacher, admin)
  GET  /student                                  -- student dashboard (student, admin)
  GET  /display                                  -- kiosk display (kiosk, admin)
"""

import logging
from pathlib import Path
from typing import Optional, Union

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.dependencies import Caller, check_roles, try_get_caller
from auth.guard import GuardState
from auth.login import LoginError, LoginService
from auth.models import Role, dashboard_path_for_role
from auth.provider import LocalIdentityProvider
from auth.tokens import SESSION_COOKIE, create_session_token, set_auth_cookie
from core.config import get_settings
from docstore.cascade import PARENT_COLLECTION, CascadeDeleter

logger = logging.getLogger("schoolgate.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_settings = get_settings()

# ?error= on /login is a lookup key, never echoed [M3]. Unknown keys show nothing.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid username or password.",
}

_NOTICES: dict[str, str] = {
    "deleted": "Date deleted with all its subjects and notes.",
    "delete_failed": "Deletion stopped part way. Delete the date again to finish.",
}

_DASHBOARDS: dict[str, tuple[str, tuple[Role, ...]]] = {
    "/admin": ("Admin dashboard", (Role.ADMIN,)),
    "/teacher": ("Teacher dashboard", (Role.TEACHER, Role.ADMIN)),
    "/student": ("Student dashboard", (Role.STUDENT, Role.ADMIN)),
    "/display": ("Display", (Role.KIOSK, Role.ADMIN)),
}


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------


def _safe_next(next_url: Optional[str]) -> Optional[str]:
    """Return next_url if it is a same-site path, else None [C2].

    Rejects absolute URLs and protocol-relative "//host" URLs, both of which
    would send the user off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return None


async def _guard_page(request: Request, roles: tuple[Role, ...]) -> Union[Caller, RedirectResponse]:
    """Return the Caller if allowed, otherwise the redirect to send instead.

    Usage at the top of a protected handler:
        caller = await _guard_page(request, (Role.ADMIN,))
        if isinstance(caller, RedirectResponse):
            return caller
    """
    caller, decision = await check_roles(request, roles)
    if decision.state is GuardState.NO_IDENTITY:
        return RedirectResponse(f"{decision.redirect_to}?next={request.url.path}", status_code=302)
    if decision.state is not GuardState.ALLOWED:
        return RedirectResponse(decision.redirect_to or _settings.unauthorized_path, status_code=302)
    return caller


def _login_service(request: Request) -> LoginService:
    state = request.app.state
    return LoginService(
        provider=LocalIdentityProvider(state.account_store),
        store=state.docstore,
        resolver=state.resolver,
    )


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
async def home(request: Request) -> RedirectResponse:
    """Send the caller to the dashboard for their current role."""
    caller = try_get_caller(request)
    if caller.identity.is_empty:
        return RedirectResponse(_settings.login_path, status_code=302)
    resolution = await request.app.state.resolver.resolve(caller.identity, caller.bearer)
    return RedirectResponse(
        dashboard_path_for_role(resolution.role, _settings.unauthorized_path), status_code=302
    )


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""), None)
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "next": _safe_next(request.query_params.get("next")) or "",
        },
    )


@router.post("/login", response_class=HTMLResponse)
async def login_post(
    request: Request,
    identifier: str = Form(...),
    password: str = Form(...),
    next: str = Form(""),
) -> RedirectResponse:
    """Handle the login form. Email goes to the provider, anything else is a username."""
    try:
        result = await _login_service(request).login(identifier, password)
    except LoginError as exc:
        logger.info("Web login rejected reason=%s", exc.code)
        return RedirectResponse(f"{_settings.login_path}?error=bad_credentials", status_code=302)

    target = _safe_next(next) or result.destination  # [C2]
    resp = RedirectResponse(target, status_code=302)
    set_auth_cookie(resp, create_session_token(result.session))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    resp = RedirectResponse(_settings.login_path, status_code=302)
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/unauthorized", response_class=HTMLResponse)
def unauthorized(request: Request) -> HTMLResponse:
    """One page for every denial; it never says why."""
    return templates.TemplateResponse(request, "unauthorized.html", {})


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


def _render_dashboard(request: Request, caller: Caller, extra: Optional[dict] = None) -> HTMLResponse:
    title, _roles = _DASHBOARDS[request.url.path]
    context = {
        "title": title,
        "display_name": caller.session.display_name if caller.session else "",
        "role": caller.role.value if caller.role else "",
    }
    context.update(extra or {})
    return templates.TemplateResponse(request, "dashboard.html", context)


@router.get("/admin", response_class=HTMLResponse)
async def admin_dashboard(request: Request) -> HTMLResponse:
    caller = await _guard_page(request, _DASHBOARDS["/admin"][1])
    if isinstance(caller, RedirectResponse):
        return caller
    dates = request.app.state.docstore.list_collection(PARENT_COLLECTION, order_by="date", descending=True)
    notice = _NOTICES.get(request.query_params.get("notice", ""), None)
    return _render_dashboard(request, caller, {"dates": dates, "notice": notice})


@router.post("/admin/parliament/dates/{date_id}/delete")
async def admin_delete_date(request: Request, date_id: str) -> RedirectResponse:
    caller = await _guard_page(request, (Role.ADMIN,))
    if isinstance(caller, RedirectResponse):
        return caller
    outcome = CascadeDeleter(request.app.state.docstore).delete(date_id)
    notice = "deleted" if outcome.ok else "delete_failed"
    return RedirectResponse(f"/admin?notice={notice}", status_code=302)


@router.get("/teacher", response_class=HTMLResponse)
async def teacher_dashboard(request: Request) -> HTMLResponse:
    caller = await _guard_page(request, _DASHBOARDS["/teacher"][1])
    if isinstance(caller, RedirectResponse):
        return caller
    return _render_dashboard(request, caller)


@router.get("/student", response_class=HTMLResponse)
async def student_dashboard(request: Request) -> HTMLResponse:
    caller = await _guard_page(request, _DASHBOARDS["/student"][1])
    if isinstance(caller, RedirectResponse):
        return caller
    return _render_dashboard(request, caller)


@router.get("/display", response_class=HTMLResponse)
async def display(request: Request) -> HTMLResponse:
    caller = await _guard_page(request, _DASHBOARDS["/display"][1])
    if isinstance(caller, RedirectResponse):
        return caller
    return _render_dashboard(request, caller)
