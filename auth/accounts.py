"""
auth/accounts.py -- Administrative account management.

Creates, updates and deletes a user across both halves of identity:
  - the provider account (credentials), using a synthetic email
    "<username>@school.local" since users sign in by username;
  - the legacy profile document users/{uid} holding username, name and role,
    which the role resolver reads.

Usernames are unique case-insensitively across profiles. The caller must
already be authorized as admin; routes enforce that with
auth.dependencies.require_roles(Role.ADMIN).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Role, normalize_role
from auth.provider import LocalIdentityProvider
from core.config import get_settings
from docstore.models import SERVER_TIMESTAMP
from docstore.store import DocumentStore

logger = logging.getLogger("schoolgate.auth.accounts")

SYNTHETIC_EMAIL_DOMAIN = "school.local"


def synthetic_email(username: str) -> str:
    return f"{username.strip().lower()}@{SYNTHETIC_EMAIL_DOMAIN}"


class AccountAdminError(Exception):
    code = "invalid_argument"


class UsernameTakenError(AccountAdminError):
    code = "already_exists"


class AccountAdmin:
    def __init__(self, provider: LocalIdentityProvider, store: DocumentStore) -> None:
        self.provider = provider
        self.store = store
        self.profiles = get_settings().legacy_collection

    def username_exists(self, username: str, exclude_uid: Optional[str] = None) -> bool:
        docs = self.store.where(self.profiles, "username", username.strip().lower())
        return any(doc.id != exclude_uid for doc in docs)

    @staticmethod
    def _role(raw: Any) -> Role:
        role = normalize_role(raw)
        if role is None:
            raise AccountAdminError(f"unknown role: {raw!r}")
        return role

    def create_user_account(self, username: str, password: str, name: str, role: str) -> str:
        if not (username and username.strip() and password and name and role):
            raise AccountAdminError("username, password, name and role are required")
        checked_role = self._role(role)
        if self.username_exists(username):
            raise UsernameTakenError("username taken")
        try:
            user = self.provider.create_account(synthetic_email(username), password, display_name=name)
        except IntegrityError:
            raise UsernameTakenError("username taken") from None
        lower = username.strip().lower()
        self.store.set(
            self.profiles,
            user.uid,
            {
                "username": lower,
                "usernameLower": lower,
                "name": name,
                "role": checked_role.value,
                "createdAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )
        logger.info("Account created uid=%s role=%s", user.uid, checked_role.value)
        return user.uid

    def update_user_account(
        self,
        uid: str,
        username: Optional[str] = None,
        name: Optional[str] = None,
        role: Optional[str] = None,
        password: Optional[str] = None,
    ) -> str:
        if not uid:
            raise AccountAdminError("uid required")
        profile: dict[str, Any] = {}
        email = None
        if username:
            if self.username_exists(username, exclude_uid=uid):
                raise UsernameTakenError("username taken")
            email = synthetic_email(username)
            profile["username"] = profile["usernameLower"] = username.strip().lower()
        if name:
            profile["name"] = name
        if role:
            profile["role"] = self._role(role).value

        if email or name or password:
            self.provider.update_account(uid, email=email, password=password, display_name=name)
        if profile:
            profile["updatedAt"] = SERVER_TIMESTAMP
            self.store.set(self.profiles, uid, profile, merge=True)
        logger.info("Account updated uid=%s fields=%s", uid, sorted(profile))
        return uid

    def delete_user_account(self, uid: str) -> str:
        if not uid:
            raise AccountAdminError("uid required")
        self.provider.delete_account(uid)
        self.store.delete(self.profiles, uid)
        logger.info("Account deleted uid=%s", uid)
        return uid
