"""
auth/login.py -- The two sign-in flows and session creation.

Every attempt starts clean: the provider is signed out and the cached session
cleared before anything else, so a failed login never leaves the previous
user's session behind.

Email identifiers go to the identity provider:
    provider sign-in -> forced claims refresh -> "role" claim, else the
    document-store profiles by uid/email. Session mode "provider".

Anything else is a username for a managed account document:
    lookup by usernameLower, exact username, displayNameLower, then email
    (only if the identifier looks like one) -> bcrypt or legacy salted
    SHA-256 check -> role from the document store. Session mode "store".

A successful login produces a SessionRecord and the dashboard path for the
resolved role. Every failure raises LoginError; its code is for logs and
tests, its message is the same generic text whatever went wrong.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

from auth.models import AuthMode, Identity, IdentitySource, Role, SessionRecord, dashboard_path_for_role
from auth.provider import InvalidCredentialsError, LocalIdentityProvider
from auth.resolver import RoleResolver
from auth.tokens import burn_password_check, verify_stored_password
from cache.store import SessionCache
from core.config import get_settings
from docstore.models import Document
from docstore.store import DocumentStore

logger = logging.getLogger("schoolgate.auth.login")

_EMAIL_RE = re.compile(r"\S+@\S+\.\S+")

GENERIC_LOGIN_ERROR = "Invalid username or password."


def is_email(value: str) -> bool:
    return bool(_EMAIL_RE.fullmatch(value.strip()))


class LoginError(Exception):
    """Login failed. code: bad_credentials | user_not_found | missing_password | no_role."""

    def __init__(self, code: str) -> None:
        super().__init__(GENERIC_LOGIN_ERROR)
        self.code = code


@dataclass
class LoginResult:
    session: SessionRecord
    role: Role
    destination: str


class LoginService:
    def __init__(
        self,
        provider: LocalIdentityProvider,
        store: DocumentStore,
        resolver: RoleResolver,
        session_cache: Optional[SessionCache] = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.resolver = resolver
        self.session_cache = session_cache
        self.managed_collection = get_settings().managed_collection

    async def login(self, identifier: str, password: str) -> LoginResult:
        self.logout()
        identifier = identifier.strip()
        if not identifier or not password:
            raise LoginError("bad_credentials")
        if is_email(identifier):
            result = await self._login_with_email(identifier, password)
        else:
            result = await self._login_with_username(identifier, password)
        if self.session_cache is not None:
            self.session_cache.save(result.session)
        logger.info("Login uid=%s mode=%s role=%s", result.session.uid, result.session.mode.value, result.role.value)
        return result

    def logout(self) -> None:
        self.provider.sign_out()
        if self.session_cache is not None:
            self.session_cache.clear()

    # ------------------------------------------------------------------
    # Provider (email) flow
    # ------------------------------------------------------------------

    async def _login_with_email(self, email: str, password: str) -> LoginResult:
        try:
            user = self.provider.sign_in(email, password)
        except InvalidCredentialsError:
            logger.info("Provider login failed for %s", email)
            raise LoginError("bad_credentials") from None

        identity = Identity(source=IdentitySource.TOKEN, uid=user.uid, email=user.email or email)
        resolution = await self.resolver.resolve(identity, self.provider.bearer(user))
        if resolution.role is None:
            self.provider.sign_out()
            logger.warning("No role found for provider user uid=%s", user.uid)
            raise LoginError("no_role")

        session = SessionRecord(
            uid=user.uid,
            display_name=user.display_name or user.email or email,
            mode=AuthMode.PROVIDER,
            role=resolution.role,
            email=user.email or email,
        )
        return LoginResult(session, resolution.role, dashboard_path_for_role(resolution.role))

    # ------------------------------------------------------------------
    # Managed-account (username) flow
    # ------------------------------------------------------------------

    def find_managed_account(self, identifier: str) -> Optional[Document]:
        lower = identifier.lower()
        coll = self.managed_collection
        candidates = [
            ("usernameLower", lower),
            ("username", identifier),
            ("displayNameLower", lower),
        ]
        if is_email(identifier):
            candidates.append(("email", identifier))
        for field, value in candidates:
            docs = self.store.where(coll, field, value, limit=1)
            if docs:
                return docs[0]
        return None

    async def _login_with_username(self, identifier: str, password: str) -> LoginResult:
        doc = await asyncio.to_thread(self.find_managed_account, identifier)
        if doc is None:
            burn_password_check(password)
            raise LoginError("user_not_found")

        stored_hash = doc.get("passwordHash")
        if not stored_hash:
            burn_password_check(password)
            raise LoginError("missing_password")
        if not verify_stored_password(password, stored_hash, doc.get("salt")):
            raise LoginError("bad_credentials")

        username = doc.get("username") or None
        username_lower = str(doc.get("usernameLower") or username or "").lower() or None
        full_name = f"{doc.get('firstName') or ''} {doc.get('lastName') or ''}".strip()
        session = SessionRecord(
            uid=doc.id,
            display_name=doc.get("displayName") or username or full_name or identifier,
            mode=AuthMode.STORE,
            email=doc.get("email") or None,
            username=username,
            username_lower=username_lower,
        )
        identity = Identity(
            source=IdentitySource.STORE, uid=session.uid, email=session.email, username_lower=username_lower
        )
        resolution = await self.resolver.resolve(identity)
        if resolution.role is None:
            logger.warning("No role found for managed account %s", doc.id)
            raise LoginError("no_role")
        session.role = resolution.role
        return LoginResult(session, resolution.role, dashboard_path_for_role(resolution.role))
