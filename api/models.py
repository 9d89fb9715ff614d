"""
API request and response models for SchoolGate REST endpoints.

Pydantic v2 request and response bodies for the /api/v1 routes.
They are intentionally separate from the dataclasses in auth/models.py and
docstore/cascade.py, which own the internal domain representation. Route
handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthMode, Role

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """code is stable for clients to branch on; message is for people."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Body of every non-2xx API response."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """GET /api/v1/health"""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Email (provider account) or username (managed account) plus password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    uid: str
    display_name: str
    mode: AuthMode
    role: Role
    destination: str


class MeResponse(BaseModel):
    """Caller identity plus the role resolved for this request."""

    uid: str
    display_name: str
    mode: AuthMode
    role: Optional[Role] = None
    email: Optional[str] = None
    username: Optional[str] = None


# ---------------------------------------------------------------------------
# Account administration
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=8, max_length=256)
    name: str = Field(min_length=1, max_length=255)
    role: Role


class AccountPatch(BaseModel):
    """Every field optional; only the ones supplied are changed."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    password: Optional[str] = Field(default=None, min_length=8, max_length=256)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    role: Optional[Role] = None


class AccountResponse(BaseModel):
    uid: str


# ---------------------------------------------------------------------------
# Cascade deletion
# ---------------------------------------------------------------------------


class CascadeResponse(BaseModel):
    """Result of DELETE /api/v1/parliament/dates/{date_id}."""

    parent_id: str
    stage: str
    dependents_deleted: int
    nested_items_deleted: int
    batches_committed: int
