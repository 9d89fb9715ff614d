"""
tests/conftest.py -- Shared test fixtures for SchoolGate.

This module provides:
  - docstore / account_store / session_cache: isolated stores in tmp_path
  - provider / resolver: the real identity provider and default role resolver
  - seed: helpers that write managed accounts, legacy profiles and provider
    accounts with one call
  - session_headers: Authorization header for a session token
  - break_docstore: drops the documents table to cause real driver errors
  - client: TestClient over the full app (API + web UI) with a patched
    lifespan, follow_redirects=False so redirect locations can be asserted

Design: file-backed SQLite databases under tmp_path rather than ":memory:".
The resolver runs store lookups in worker threads and TestClient runs route
handlers in a thread pool; a plain in-memory database is per-connection and
would look empty from any other thread.

Environment variables must be set before any auth/core import so
get_settings() picks them up:
  DEBUG=true              -- auto-generate SECRET_KEY instead of raising
  LOGIN_RATE_LIMIT        -- high enough that tests never hit the limiter
  ALLOWED_HOSTS           -- TestClient sends Host: testserver
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Any, Optional

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from asgi import app
from auth.models import Account, AuthMode, SessionRecord
from auth.provider import LocalIdentityProvider
from auth.resolver import RoleResolver
from auth.store import AccountStore
from auth.tokens import create_session_token, hash_password
from cache.store import SessionCache
from docstore.store import DocumentStore

# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def docstore(tmp_path) -> Generator[DocumentStore, None, None]:
    store = DocumentStore(db_url=f"sqlite:///{tmp_path / 'docs.db'}")
    yield store
    store.close()


@pytest.fixture()
def account_store(tmp_path) -> Generator[AccountStore, None, None]:
    store = AccountStore(db_url=f"sqlite:///{tmp_path / 'accounts.db'}")
    yield store
    store.close()


@pytest.fixture()
def session_cache(tmp_path) -> Generator[SessionCache, None, None]:
    cache = SessionCache(db_path=tmp_path / "session.db")
    yield cache
    cache.close()


@pytest.fixture()
def provider(account_store: AccountStore) -> LocalIdentityProvider:
    return LocalIdentityProvider(account_store)


@pytest.fixture()
def resolver(docstore: DocumentStore) -> RoleResolver:
    return RoleResolver.default(docstore)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


class Seed:
    """Writes test identities into the stores."""

    def __init__(self, docstore: DocumentStore, account_store: AccountStore) -> None:
        self.docstore = docstore
        self.account_store = account_store

    def managed(self, doc_id: str, username: str, password: Optional[str] = "pw", **fields: Any) -> str:
        """A managed account in appUsers with a bcrypt password hash."""
        data: dict[str, Any] = {"username": username, "usernameLower": username.lower()}
        if password is not None:
            data["passwordHash"] = hash_password(password)
        data.update(fields)
        self.docstore.set("appUsers", doc_id, data)
        return doc_id

    def legacy(self, doc_id: str, **fields: Any) -> str:
        """A profile in the legacy users collection."""
        self.docstore.set("users", doc_id, dict(fields))
        return doc_id

    def provider_account(self, email: str, password: str = "pw", claims: Optional[dict] = None) -> str:
        return self.account_store.create_account(
            Account(uid="", email=email, hashed_password=hash_password(password), custom_claims=claims or {})
        )


@pytest.fixture()
def seed(docstore: DocumentStore, account_store: AccountStore) -> Seed:
    return Seed(docstore, account_store)


@pytest.fixture()
def break_docstore(docstore: DocumentStore):
    """Return a function that drops the documents table, so every later read or write fails in the driver."""

    def drop() -> None:
        with docstore.engine.begin() as conn:
            conn.execute(text("DROP TABLE documents"))

    return drop


def session_token(uid: str, mode: AuthMode = AuthMode.STORE, **fields: Any) -> str:
    record = SessionRecord(uid=uid, display_name=fields.pop("display_name", uid), mode=mode, **fields)
    return create_session_token(record, expire_seconds=3600)


@pytest.fixture()
def session_headers():
    """Return a function building an Authorization header for a session."""

    def build(uid: str, mode: AuthMode = AuthMode.STORE, **fields: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {session_token(uid, mode, **fields)}"}

    return build


# ---------------------------------------------------------------------------
# App client
# ---------------------------------------------------------------------------


def _patch_lifespan(docstore: DocumentStore, account_store: AccountStore):
    """Return a lifespan that wires the test stores into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.docstore = docstore
        app.state.account_store = account_store
        app.state.provider = LocalIdentityProvider(account_store)
        app.state.resolver = RoleResolver.default(docstore)
        yield

    return test_lifespan


@pytest.fixture()
def client(docstore: DocumentStore, account_store: AccountStore) -> Generator[TestClient, None, None]:
    """TestClient over the real app with isolated stores.

    follow_redirects=False: web tests assert on redirect locations, which are
    invisible once the client follows them.
    """
    app.router.lifespan_context = _patch_lifespan(docstore, account_store)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c
