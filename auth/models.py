"""
auth/models.py -- Domain dataclasses for authentication and authorization.

Pattern: Data class (pure data container, near-zero logic). Stores, the
resolver and the guard do the work; these types only carry shape.

Layer rule: no imports from api/, web/, docstore/, or cache/.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    """The closed set of roles the application knows about."""

    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"
    KIOSK = "kiosk"


def normalize_role(value: Any) -> Optional[Role]:
    """Trim and lower-case a raw role value; anything outside the set is None.

    Never raises: non-strings (None, numbers, dicts from a malformed document)
    normalize to "no role" like any unknown string.
    """
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None


# Landing page per role after a successful login.
_DASHBOARDS: dict[Role, str] = {
    Role.ADMIN: "/admin",
    Role.TEACHER: "/teacher",
    Role.STUDENT: "/student",
    Role.KIOSK: "/display",
}


def dashboard_path_for_role(role: Optional[Role], unauthorized_path: str = "/unauthorized") -> str:
    return _DASHBOARDS.get(role, unauthorized_path) if role is not None else unauthorized_path


class AuthMode(str, Enum):
    """How the session was established.

    provider -- email + password against the identity provider (claims token).
    store    -- username + password checked against a managed-account document.
    """

    PROVIDER = "provider"
    STORE = "store"


class IdentitySource(str, Enum):
    TOKEN = "token"
    STORE = "store"
    CACHE = "cache"


@dataclass(frozen=True)
class Identity:
    """Who the caller claims to be, assembled fresh for each resolution attempt.

    Every field is optional; which lookups the resolver performs depends on
    which fields are present. source records where the fields came from.
    """

    source: IdentitySource
    uid: Optional[str] = None
    email: Optional[str] = None
    username_lower: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.uid or self.email or self.username_lower)


@dataclass
class SessionRecord:
    """The locally cached login session.

    role is a display hint only (e.g. for a header). Access decisions always
    re-resolve the role; they never trust this field.
    """

    uid: str
    display_name: str
    mode: AuthMode
    role: Optional[Role] = None
    email: Optional[str] = None
    username: Optional[str] = None
    username_lower: Optional[str] = None
    logged_in_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["role"] = self.role.value if self.role else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        """Build from a decoded dict. Raises KeyError/ValueError/TypeError on bad shape."""
        return cls(
            uid=str(data["uid"]),
            display_name=str(data.get("display_name") or ""),
            mode=AuthMode(data["mode"]),
            role=normalize_role(data.get("role")),
            email=data.get("email") or None,
            username=data.get("username") or None,
            username_lower=data.get("username_lower") or None,
            logged_in_at=float(data.get("logged_in_at") or 0.0),
        )


@dataclass
class Account:
    """An identity-provider account (the credential side, not the profile).

    custom_claims is the provider's claims map; a "role" entry there takes
    precedence over every document-store profile during role resolution.
    """

    uid: str
    email: str
    display_name: str = ""
    hashed_password: Optional[str] = None
    custom_claims: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    last_login: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class ProviderUser:
    """The signed-in user as reported by the identity provider."""

    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    NO_ROLE = "no_role"
    NO_IDENTITY = "no_identity"


@dataclass(frozen=True)
class Resolution:
    """Outcome of one role resolution attempt.

    no_identity is distinct from no_role: the former sends the caller to sign
    in, the latter to the generic unauthorized page.
    """

    status: ResolutionStatus
    role: Optional[Role] = None
    source: Optional[str] = None  # which strategy produced the role, for logs

    @classmethod
    def resolved(cls, role: Role, source: str) -> "Resolution":
        return cls(ResolutionStatus.RESOLVED, role, source)

    @classmethod
    def no_role(cls) -> "Resolution":
        return cls(ResolutionStatus.NO_ROLE)

    @classmethod
    def no_identity(cls) -> "Resolution":
        return cls(ResolutionStatus.NO_IDENTITY)
