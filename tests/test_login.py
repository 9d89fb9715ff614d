"""
tests/test_login.py -- Tests for the email and username login flows.

Coverage:
  - username flow: usernameLower / username / displayNameLower lookups,
    bcrypt and legacy salted SHA-256 hashes, session mode "store"
  - email flow: provider sign-in, claims role, profile fallback, mode "provider"
  - every failure raises LoginError with the same generic message
  - each attempt clears the previous session first
"""

from __future__ import annotations

import asyncio

import pytest

from auth.login import GENERIC_LOGIN_ERROR, LoginError, LoginService, is_email
from auth.models import AuthMode, Role, SessionRecord
from auth.provider import LocalIdentityProvider
from auth.resolver import RoleResolver
from auth.tokens import legacy_hash
from cache.store import SessionCache
from docstore.store import DocumentStore


@pytest.fixture()
def service(
    provider: LocalIdentityProvider, docstore: DocumentStore, resolver: RoleResolver, session_cache: SessionCache
) -> LoginService:
    return LoginService(provider, docstore, resolver, session_cache=session_cache)


def _login(service: LoginService, identifier: str, password: str):
    return asyncio.run(service.login(identifier, password))


def _failure_code(service: LoginService, identifier: str, password: str) -> str:
    with pytest.raises(LoginError) as info:
        _login(service, identifier, password)
    assert str(info.value) == GENERIC_LOGIN_ERROR
    return info.value.code


class TestIsEmail:
    @pytest.mark.parametrize("value", ["a@b.co", " admin@school.local "])
    def test_emails(self, value: str) -> None:
        assert is_email(value)

    @pytest.mark.parametrize("value", ["alice", "alice@school", "@x.y", "a b@c.d"])
    def test_not_emails(self, value: str) -> None:
        assert not is_email(value)


class TestUsernameFlow:
    def test_bcrypt_account(self, service: LoginService, seed, session_cache: SessionCache) -> None:
        seed.managed("m1", "Alice", password="s3cret", role="teacher")
        result = _login(service, "ALICE", "s3cret")
        assert result.role is Role.TEACHER
        assert result.destination == "/teacher"
        assert result.session.mode is AuthMode.STORE
        assert result.session.uid == "m1"
        assert result.session.username_lower == "alice"
        assert session_cache.load() == result.session

    def test_legacy_salted_hash(self, service: LoginService, docstore: DocumentStore) -> None:
        docstore.set(
            "appUsers",
            "m2",
            {"username": "bob", "passwordHash": legacy_hash("pw", "NaCl"), "salt": "NaCl", "role": "student"},
        )
        result = _login(service, "bob", "pw")
        assert result.role is Role.STUDENT
        assert result.destination == "/student"

    def test_legacy_hash_without_salt(self, service: LoginService, docstore: DocumentStore) -> None:
        docstore.set("appUsers", "m3", {"username": "kiosk1", "passwordHash": legacy_hash("pw"), "role": "kiosk"})
        assert _login(service, "kiosk1", "pw").destination == "/display"

    def test_display_name_lookup(self, service: LoginService, docstore: DocumentStore, seed) -> None:
        seed.managed("m4", "ignored", displayNameLower="ms smith", displayName="Ms Smith", role="teacher")
        docstore.update("appUsers", "m4", {"usernameLower": "other", "username": "other"})
        result = _login(service, "Ms Smith", "pw")
        assert result.session.display_name == "Ms Smith"

    def test_role_from_legacy_profile(self, service: LoginService, seed) -> None:
        seed.managed("m5", "carol")
        seed.legacy("m5", isAdmin=True)
        assert _login(service, "carol", "pw").role is Role.ADMIN

    def test_wrong_password(self, service: LoginService, seed) -> None:
        seed.managed("m1", "alice", role="teacher")
        assert _failure_code(service, "alice", "nope") == "bad_credentials"

    def test_unknown_user(self, service: LoginService) -> None:
        assert _failure_code(service, "nobody", "pw") == "user_not_found"

    def test_missing_password_hash(self, service: LoginService, seed) -> None:
        seed.managed("m1", "alice", password=None, role="teacher")
        assert _failure_code(service, "alice", "pw") == "missing_password"

    def test_no_role(self, service: LoginService, seed, session_cache: SessionCache) -> None:
        seed.managed("m1", "alice", role="janitor")
        assert _failure_code(service, "alice", "pw") == "no_role"
        assert session_cache.load() is None


class TestEmailFlow:
    def test_claims_role(self, service: LoginService, seed) -> None:
        uid = seed.provider_account("head@school.local", password="pw", claims={"role": "admin"})
        result = _login(service, "Head@School.local", "pw")
        assert result.role is Role.ADMIN
        assert result.destination == "/admin"
        assert result.session.mode is AuthMode.PROVIDER
        assert result.session.uid == uid
        assert result.session.email == "head@school.local"

    def test_profile_fallback(self, service: LoginService, seed) -> None:
        uid = seed.provider_account("t@school.local", password="pw")
        seed.legacy(uid, role="teacher")
        assert _login(service, "t@school.local", "pw").role is Role.TEACHER

    def test_bad_password(self, service: LoginService, seed) -> None:
        seed.provider_account("t@school.local", password="pw", claims={"role": "teacher"})
        assert _failure_code(service, "t@school.local", "wrong") == "bad_credentials"

    def test_unknown_email(self, service: LoginService) -> None:
        assert _failure_code(service, "ghost@school.local", "pw") == "bad_credentials"

    def test_no_role_signs_out(self, service: LoginService, provider: LocalIdentityProvider, seed) -> None:
        seed.provider_account("t@school.local", password="pw")
        assert _failure_code(service, "t@school.local", "pw") == "no_role"
        assert provider.current_user is None


class TestCleanStart:
    def test_failed_login_clears_previous_session(self, service: LoginService, session_cache: SessionCache) -> None:
        session_cache.save(SessionRecord(uid="old", display_name="Old", mode=AuthMode.STORE))
        _failure_code(service, "nobody", "pw")
        assert session_cache.load() is None

    def test_blank_identifier(self, service: LoginService) -> None:
        assert _failure_code(service, "   ", "pw") == "bad_credentials"
