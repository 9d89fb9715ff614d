"""
auth/provider.py -- Local identity token service.

The rest of the system treats the identity provider as an external service
reached through a narrow surface:

  sign_in(email, password)        -> ProviderUser (subject id + profile fields)
  sign_out()
  subscribe(listener)             -> push notification on every identity change
  bearer(user).get_claims(force)  -> claims map from a (re)issued claims token
  set_custom_claims(uid, claims)  -> admin-side claim management

LocalIdentityProvider implements that surface over AccountStore and signs
claims tokens with python-jose (auth/tokens.py). Claims are read from the
account at issue time, so a bearer holding an old token keeps seeing old
claims until it refreshes -- which is why role resolution always forces one.

Listeners are called synchronously, in registration order, with the new
ProviderUser (or None after sign-out). A failing listener is logged and does
not stop the others.

Layer rule: no imports from api/, web/, docstore/, or cache/.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Union

from auth.models import Account, ProviderUser
from auth.store import AccountStore
from auth.tokens import (
    burn_password_check,
    create_claims_token,
    decode_claims_token,
    hash_password,
    verify_password,
)

logger = logging.getLogger("schoolgate.auth.provider")

IdentityListener = Callable[[Optional[ProviderUser]], None]


class IdentityProviderError(Exception):
    pass


class InvalidCredentialsError(IdentityProviderError):
    """Wrong email, wrong password, or disabled account. Deliberately not more specific."""


class AccountNotFoundError(IdentityProviderError):
    pass


class TokenBearer:
    """Holds a claims token for one signed-in subject and refreshes it on demand."""

    def __init__(self, provider: "LocalIdentityProvider", uid: str) -> None:
        self._provider = provider
        self.uid = uid
        self._token: Optional[str] = None

    def get_token(self, force_refresh: bool = False) -> str:
        if force_refresh or self._token is None or decode_claims_token(self._token) is None:
            self._token = self._provider.issue_token(self.uid)
        return self._token

    def get_claims(self, force_refresh: bool = False) -> dict[str, Any]:
        """Return the decoded claims map. force_refresh=True always re-issues the token."""
        claims = decode_claims_token(self.get_token(force_refresh))
        if claims is None:
            raise IdentityProviderError("issued claims token failed verification")
        return claims


def _to_user(account: Account) -> ProviderUser:
    return ProviderUser(uid=account.uid, email=account.email, display_name=account.display_name or None)


class LocalIdentityProvider:
    def __init__(self, accounts: AccountStore) -> None:
        self.accounts = accounts
        self._current: Optional[ProviderUser] = None
        self._listeners: list[IdentityListener] = []

    # ------------------------------------------------------------------
    # Identity-change notifications
    # ------------------------------------------------------------------

    @property
    def current_user(self) -> Optional[ProviderUser]:
        return self._current

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Register listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._current)
            except Exception:
                logger.exception("Identity listener %r failed", listener)

    # ------------------------------------------------------------------
    # Sign-in / sign-out
    # ------------------------------------------------------------------

    def sign_in(self, email: str, password: str) -> ProviderUser:
        """Authenticate by email and password with timing equalization [C1]."""
        account = self.accounts.get_by_email(email)
        if account is None or account.hashed_password is None:
            burn_password_check(password)
            raise InvalidCredentialsError("invalid credentials")
        if not verify_password(password, account.hashed_password) or not account.is_active:
            raise InvalidCredentialsError("invalid credentials")
        self.accounts.update_last_login(account.uid)
        self._current = _to_user(account)
        logger.info("Provider sign-in uid=%s", account.uid)
        self._notify()
        return self._current

    def sign_out(self) -> None:
        if self._current is None:
            return
        logger.info("Provider sign-out uid=%s", self._current.uid)
        self._current = None
        self._notify()

    # ------------------------------------------------------------------
    # Tokens and claims
    # ------------------------------------------------------------------

    def bearer(self, user: Union[ProviderUser, str]) -> TokenBearer:
        uid = user if isinstance(user, str) else user.uid
        return TokenBearer(self, uid)

    def issue_token(self, uid: str) -> str:
        account = self.accounts.get_by_uid(uid)
        if account is None or not account.is_active:
            raise IdentityProviderError(f"cannot issue token: account {uid} missing or disabled")
        return create_claims_token(account.uid, account.email, account.custom_claims)

    def set_custom_claims(self, uid: str, claims: dict[str, Any]) -> None:
        if not self.accounts.set_custom_claims(uid, claims):
            raise AccountNotFoundError(uid)
        logger.info("Custom claims updated uid=%s keys=%s", uid, sorted(claims))
        if self._current is not None and self._current.uid == uid:
            # Token change for the signed-in user counts as an identity change.
            self._notify()

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def create_account(self, email: str, password: str, display_name: str = "") -> ProviderUser:
        uid = self.accounts.create_account(
            Account(uid="", email=email, display_name=display_name, hashed_password=hash_password(password))
        )
        return ProviderUser(uid=uid, email=email.strip().lower(), display_name=display_name or None)

    def update_account(
        self,
        uid: str,
        email: Optional[str] = None,
        password: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> None:
        fields: dict[str, Any] = {}
        if email:
            fields["email"] = email
        if password:
            fields["hashed_password"] = hash_password(password)
        if display_name:
            fields["display_name"] = display_name
        if not self.accounts.update_account(uid, **fields):
            raise AccountNotFoundError(uid)

    def delete_account(self, uid: str) -> None:
        if not self.accounts.delete_account(uid):
            raise AccountNotFoundError(uid)
        if self._current is not None and self._current.uid == uid:
            self.sign_out()
