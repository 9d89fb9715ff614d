"""
auth/resolver.py -- Effective-role resolution.

Precedence is an explicit, ordered list of strategies; the first one that
yields a valid role wins:

  1. ClaimsStrategy            -- "role" claim from a force-refreshed provider token
                                  (only when a token bearer is supplied).
  2. ProfileStrategy(appUsers) -- managed-account profile documents.
  3. ProfileStrategy(users)    -- legacy / break-glass profiles, where an
                                  isAdmin: true flag stands in for role "admin".

Each ProfileStrategy tries up to four single-result lookups, each only when
its identity field is present:
  document keyed by uid -> uid field == uid -> email field == email
  -> usernameLower field == username

A lookup that raises (store unreachable, malformed data) is logged and counts
as a miss; resolution moves on. If something unexpected escapes the chain the
outcome is no_role, i.e. a denial -- never a grant.

An identity with no usable field at all short-circuits to no_identity, which
the guard turns into a sign-in redirect instead of "unauthorized".

Store and provider calls are synchronous; they run via asyncio.to_thread so
every one of them is a suspension point for the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

from auth.models import (
    Identity,
    IdentitySource,
    ProviderUser,
    Resolution,
    Role,
    SessionRecord,
    normalize_role,
)
from auth.provider import TokenBearer
from core.config import get_settings
from docstore.models import Document
from docstore.store import DocumentStore

logger = logging.getLogger("schoolgate.auth.resolver")


class RoleStrategy(Protocol):
    name: str

    async def resolve(self, identity: Identity, bearer: Optional[TokenBearer]) -> Optional[Role]: ...


class ClaimsStrategy:
    name = "claims"

    async def resolve(self, identity: Identity, bearer: Optional[TokenBearer]) -> Optional[Role]:
        if bearer is None:
            return None
        try:
            # Always force: a cached token may predate a role change.
            claims = await asyncio.to_thread(bearer.get_claims, True)
        except Exception as e:
            logger.warning("Claims refresh failed for uid=%s: %s", bearer.uid, e)
            return None
        return normalize_role(claims.get("role"))


def _first(docs: list[Document]) -> Optional[Document]:
    return docs[0] if docs else None


class ProfileStrategy:
    """Looks the identity up in one profile collection."""

    def __init__(self, store: DocumentStore, collection: str, admin_flag: bool = False) -> None:
        self.store = store
        self.collection = collection
        self.admin_flag = admin_flag
        self.name = f"profile:{collection}"

    def role_of(self, data: dict) -> Optional[Role]:
        role = normalize_role(data.get("role"))
        if role is None and self.admin_flag and data.get("isAdmin") is True:
            return Role.ADMIN
        return role

    def _lookups(self, identity: Identity) -> list[tuple[str, Callable[[], Optional[Document]]]]:
        store, coll = self.store, self.collection
        lookups: list[tuple[str, Callable[[], Optional[Document]]]] = []
        if identity.uid:
            uid = identity.uid
            lookups.append(("doc id", lambda: store.get(coll, uid)))
            lookups.append(("uid", lambda: _first(store.where(coll, "uid", uid, limit=1))))
        if identity.email:
            email = identity.email
            lookups.append(("email", lambda: _first(store.where(coll, "email", email, limit=1))))
        if identity.username_lower:
            username = identity.username_lower
            lookups.append(("usernameLower", lambda: _first(store.where(coll, "usernameLower", username, limit=1))))
        return lookups

    async def resolve(self, identity: Identity, bearer: Optional[TokenBearer]) -> Optional[Role]:
        for label, lookup in self._lookups(identity):
            try:
                doc = await asyncio.to_thread(lookup)
            except Exception as e:
                logger.warning("%s lookup by %s failed, treating as miss: %s", self.collection, label, e)
                continue
            if doc is None:
                logger.debug("%s lookup by %s: no match", self.collection, label)
                continue
            role = self.role_of(doc.data)
            if role is not None:
                return role
        return None


class RoleResolver:
    def __init__(self, strategies: list[RoleStrategy]) -> None:
        self.strategies = strategies

    @classmethod
    def default(cls, store: DocumentStore) -> "RoleResolver":
        settings = get_settings()
        return cls(
            [
                ClaimsStrategy(),
                ProfileStrategy(store, settings.managed_collection),
                ProfileStrategy(store, settings.legacy_collection, admin_flag=True),
            ]
        )

    async def resolve(self, identity: Identity, bearer: Optional[TokenBearer] = None) -> Resolution:
        if identity.is_empty:
            return Resolution.no_identity()
        try:
            for strategy in self.strategies:
                role = await strategy.resolve(identity, bearer)
                if role is not None:
                    logger.debug("Resolved role %s via %s (source=%s)", role.value, strategy.name, identity.source.value)
                    return Resolution.resolved(role, strategy.name)
        except Exception:
            logger.exception("Role resolution failed unexpectedly; denying")
            return Resolution.no_role()
        return Resolution.no_role()


async def resolve_role(identity: Identity, store: DocumentStore, bearer: Optional[TokenBearer] = None) -> Resolution:
    """Resolve with the default strategy chain."""
    return await RoleResolver.default(store).resolve(identity, bearer)


def build_identity(user: Optional[ProviderUser], session: Optional[SessionRecord]) -> Identity:
    """Merge the provider's signed-in user with the cached session.

    Provider fields win where both are present. The lowercase username only
    ever comes from the session (the provider knows emails, not usernames).
    """
    username = None
    if session is not None:
        username = session.username_lower or session.username
    return Identity(
        source=IdentitySource.TOKEN if user is not None else IdentitySource.CACHE,
        uid=(user.uid if user else None) or (session.uid if session else None) or None,
        email=(user.email if user else None) or (session.email if session else None) or None,
        username_lower=username.lower() if username else None,
    )
