"""
api/main.py -- SchoolGate HTTP application.

Serves sign-in, role lookups, account administration and cascade deletion
under /api/v1. asgi.py attaches the HTML routes from web/routes.py to this
same app object.

Start it with:
  python main.py serve
  uvicorn asgi:app --reload

Request path through the middleware (first to last):
  TrustedHostMiddleware  Host header must match settings.allowed_hosts
  CORSMiddleware         browser origins permitted to call the API
  SlowAPIMiddleware      rate limits declared with @limiter.limit

On startup the lifespan opens both stores and builds the provider and the
resolver on top of them; on shutdown it closes the stores.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.accounts import router as accounts_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.parliament import router as parliament_router
from auth.dependencies import Caller, get_caller
from auth.provider import LocalIdentityProvider
from auth.resolver import RoleResolver
from auth.store import AccountStore
from core.config import get_settings
from docstore.store import DocumentStore

VERSION = "0.1.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("schoolgate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Startup and shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the stores and hang the shared services off app.state."""
    docstore = DocumentStore()
    account_store = AccountStore()
    app.state.docstore = docstore
    app.state.account_store = account_store
    app.state.provider = LocalIdentityProvider(account_store)
    app.state.resolver = RoleResolver.default(docstore)
    logger.info("SchoolGate %s ready (managed=%s legacy=%s)", VERSION,
                _settings.managed_collection, _settings.legacy_collection)
    try:
        yield
    finally:
        docstore.close()
        account_store.close()
        logger.info("Stores closed")


app = FastAPI(
    title="SchoolGate API",
    description="Role-based access control and record administration for the school portal.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# add_middleware wraps the app, so the last one added runs first. Added in
# reverse so requests meet TrustedHost, then CORS, then SlowAPI.
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:8000", "http://127.0.0.1:8000"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
    max_age=600,
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - started) * 1000
    client = request.client.host if request.client else "-"
    logger.info("%s %s -> %d (%.1f ms) from %s",
                request.method, request.url.path, response.status_code, elapsed, client)
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(accounts_router, prefix="/api/v1", tags=["Accounts"])
app.include_router(parliament_router, prefix="/api/v1", tags=["Parliament"])


# ---------------------------------------------------------------------------
# API docs (signed-in callers only)
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def swagger_ui(caller: Caller = Depends(get_caller)):
    return get_swagger_ui_html(openapi_url=app.openapi_url, title=f"{app.title} docs")


@app.get("/redoc", include_in_schema=False)
async def redoc_ui(caller: Caller = Depends(get_caller)):
    return get_redoc_html(openapi_url=app.openapi_url, title=f"{app.title} reference")


# ---------------------------------------------------------------------------
# Error envelope
#
# Every failure leaves the API as {"error": {"code", "message", "detail"}}.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(RateLimitExceeded)
async def on_rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = _error(429, "rate_limited", "Too many attempts. Try again later.", str(exc.detail))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def on_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return _error(422, "validation_error", "The request body or parameters are invalid.", fields or None)


@app.exception_handler(HTTPException)
async def on_http_error(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException(detail={"code": ..., "message": ...}); plain strings get an http_ code."""
    if isinstance(exc.detail, dict):
        detail = ErrorDetail(**exc.detail)
        response = _error(exc.status_code, detail.code, detail.message, detail.detail)
    else:
        response = _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(Exception)
async def on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error during %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "Something went wrong on our side.")


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Liveness probe. Not rate limited."""
    return HealthResponse(version=VERSION)
