"""
tests/test_resolver.py -- Tests for effective-role resolution.

Async resolver calls are driven with asyncio.run() inside plain test functions.

Coverage:
  - uid lookups against the managed and legacy collections
  - isAdmin fallback (legacy only, boolean true only)
  - managed collection beats legacy whichever field matched
  - claims beat every profile, and are always force-refreshed
  - failing lookups count as misses, escaping errors deny
  - empty identity is no_identity, not no_role
  - build_identity merging
"""

from __future__ import annotations

import asyncio
from typing import Optional
from unittest.mock import patch

from auth.models import (
    AuthMode,
    Identity,
    IdentitySource,
    ProviderUser,
    Resolution,
    ResolutionStatus,
    Role,
    SessionRecord,
)
from auth.provider import LocalIdentityProvider, TokenBearer
from auth.resolver import RoleResolver, build_identity, resolve_role
from docstore.store import DocumentStore


def _uid(uid: str) -> Identity:
    return Identity(source=IdentitySource.TOKEN, uid=uid)


def _resolve(resolver: RoleResolver, identity: Identity, bearer: Optional[TokenBearer] = None) -> Resolution:
    return asyncio.run(resolver.resolve(identity, bearer))


class TestProfileLookups:
    def test_managed_doc_keyed_by_uid(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        """identity {uid: u1}, appUsers/u1 {role: teacher} -> teacher."""
        docstore.set("appUsers", "u1", {"role": "teacher"})
        result = _resolve(resolver, _uid("u1"))
        assert result.status is ResolutionStatus.RESOLVED
        assert result.role is Role.TEACHER
        assert result.source == "profile:appUsers"

    def test_legacy_is_admin_flag(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        """identity {uid: u2} absent from appUsers, users/u2 {isAdmin: true} -> admin."""
        docstore.set("users", "u2", {"isAdmin": True})
        result = _resolve(resolver, _uid("u2"))
        assert result.role is Role.ADMIN
        assert result.source == "profile:users"

    def test_is_admin_must_be_boolean_true(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        docstore.set("users", "u2", {"isAdmin": "true"})
        assert _resolve(resolver, _uid("u2")).status is ResolutionStatus.NO_ROLE

    def test_is_admin_ignored_in_managed_collection(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        docstore.set("appUsers", "u3", {"isAdmin": True})
        assert _resolve(resolver, _uid("u3")).status is ResolutionStatus.NO_ROLE

    def test_lookup_by_uid_field(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        docstore.set("appUsers", "random-id", {"uid": "u4", "role": "student"})
        assert _resolve(resolver, _uid("u4")).role is Role.STUDENT

    def test_lookup_by_email(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        docstore.set("users", "x", {"email": "k@school.local", "role": "kiosk"})
        identity = Identity(source=IdentitySource.TOKEN, email="k@school.local")
        assert _resolve(resolver, identity).role is Role.KIOSK

    def test_lookup_by_username_lower(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        docstore.set("appUsers", "x", {"usernameLower": "bob", "role": "Teacher "})
        identity = Identity(source=IdentitySource.CACHE, username_lower="bob")
        assert _resolve(resolver, identity).role is Role.TEACHER

    def test_invalid_role_falls_through_to_legacy(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        docstore.set("appUsers", "u5", {"role": "superuser"})
        docstore.set("users", "u5", {"role": "teacher"})
        assert _resolve(resolver, _uid("u5")).role is Role.TEACHER

    def test_managed_wins_over_legacy_regardless_of_field(
        self, docstore: DocumentStore, resolver: RoleResolver
    ) -> None:
        """Managed match by email (its last lookup) still beats legacy match by doc id (its first)."""
        docstore.set("appUsers", "other", {"email": "m@school.local", "role": "student"})
        docstore.set("users", "u6", {"role": "admin"})
        identity = Identity(source=IdentitySource.TOKEN, uid="u6", email="m@school.local")
        result = _resolve(resolver, identity)
        assert result.role is Role.STUDENT
        assert result.source == "profile:appUsers"

    def test_no_documents_is_no_role(self, resolver: RoleResolver) -> None:
        result = _resolve(resolver, _uid("ghost"))
        assert result.status is ResolutionStatus.NO_ROLE
        assert result.role is None


class TestFailureHandling:
    def test_empty_identity_is_no_identity(self, resolver: RoleResolver) -> None:
        for identity in (Identity(source=IdentitySource.CACHE), Identity(source=IdentitySource.TOKEN, uid="")):
            assert _resolve(resolver, identity).status is ResolutionStatus.NO_IDENTITY

    def test_failing_lookup_is_a_miss(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        """A point lookup that raises must not stop the uid-field query after it."""
        docstore.set("appUsers", "other", {"uid": "u7", "role": "teacher"})
        with patch.object(docstore, "get", side_effect=RuntimeError("store unreachable")):
            assert _resolve(resolver, _uid("u7")).role is Role.TEACHER

    def test_every_lookup_failing_is_no_role(self, docstore: DocumentStore, resolver: RoleResolver) -> None:
        with (
            patch.object(docstore, "get", side_effect=RuntimeError("down")),
            patch.object(docstore, "where", side_effect=RuntimeError("down")),
        ):
            assert _resolve(resolver, _uid("u8")).status is ResolutionStatus.NO_ROLE

    def test_escaping_error_denies(self) -> None:
        class Broken:
            name = "broken"

            async def resolve(self, identity, bearer):
                raise RuntimeError("bug")

        assert _resolve(RoleResolver([Broken()]), _uid("u9")).status is ResolutionStatus.NO_ROLE


class TestClaims:
    def test_claim_beats_profiles(self, docstore: DocumentStore, provider: LocalIdentityProvider, seed) -> None:
        uid = seed.provider_account("t@school.local", claims={"role": "admin"})
        docstore.set("appUsers", uid, {"role": "student"})
        result = asyncio.run(resolve_role(_uid(uid), docstore, provider.bearer(uid)))
        assert result.role is Role.ADMIN
        assert result.source == "claims"

    def test_claims_are_force_refreshed(
        self, docstore: DocumentStore, resolver: RoleResolver, provider: LocalIdentityProvider, seed
    ) -> None:
        """A bearer holding an old token must still see a role granted after it was issued."""
        uid = seed.provider_account("t@school.local")
        bearer = provider.bearer(uid)
        assert "role" not in bearer.get_claims()
        provider.set_custom_claims(uid, {"role": "teacher"})
        assert _resolve(resolver, _uid(uid), bearer).role is Role.TEACHER

    def test_bad_claim_falls_back_to_profile(
        self, docstore: DocumentStore, resolver: RoleResolver, provider: LocalIdentityProvider, seed
    ) -> None:
        uid = seed.provider_account("t@school.local", claims={"role": "overlord"})
        docstore.set("users", uid, {"role": "teacher"})
        assert _resolve(resolver, _uid(uid), provider.bearer(uid)).role is Role.TEACHER

    def test_refresh_failure_falls_back_to_profile(
        self, docstore: DocumentStore, resolver: RoleResolver, provider: LocalIdentityProvider
    ) -> None:
        """No provider account behind the bearer: the claims step is a miss, not a failure."""
        docstore.set("users", "gone", {"role": "student"})
        assert _resolve(resolver, _uid("gone"), provider.bearer("gone")).role is Role.STUDENT

    def test_no_bearer_skips_claims(self, resolver: RoleResolver, provider: LocalIdentityProvider, seed) -> None:
        uid = seed.provider_account("t@school.local", claims={"role": "admin"})
        assert _resolve(resolver, _uid(uid)).status is ResolutionStatus.NO_ROLE


class TestBuildIdentity:
    def test_provider_fields_win(self) -> None:
        user = ProviderUser(uid="p1", email="p@school.local")
        session = SessionRecord(uid="s1", display_name="S", mode=AuthMode.STORE, email="s@school.local", username="Sam")
        identity = build_identity(user, session)
        assert identity.source is IdentitySource.TOKEN
        assert (identity.uid, identity.email, identity.username_lower) == ("p1", "p@school.local", "sam")

    def test_session_only(self) -> None:
        session = SessionRecord(uid="s1", display_name="S", mode=AuthMode.STORE, username_lower="sam")
        identity = build_identity(None, session)
        assert identity.source is IdentitySource.CACHE
        assert identity.uid == "s1"
        assert identity.email is None

    def test_nothing_is_empty(self) -> None:
        assert build_identity(None, None).is_empty
