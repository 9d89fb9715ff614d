"""
tests/test_roles.py -- Unit tests for the role set and the auth data classes.

Coverage:
  - normalize_role: case and whitespace folding, unknown values, non-strings
  - dashboard_path_for_role: every role plus the no-role fallback
  - Identity.is_empty
  - SessionRecord.to_dict / from_dict, including malformed input
"""

from __future__ import annotations

import pytest

from auth.models import (
    AuthMode,
    Identity,
    IdentitySource,
    Role,
    SessionRecord,
    dashboard_path_for_role,
    normalize_role,
)


class TestNormalizeRole:
    @pytest.mark.parametrize("raw", ["teacher", "Teacher", "  TEACHER ", "\tteacher\n"])
    def test_case_and_whitespace_fold_to_same_role(self, raw: str) -> None:
        assert normalize_role(raw) is Role.TEACHER

    @pytest.mark.parametrize("raw", ["superuser", "", "   ", "admins", "teach er"])
    def test_unknown_strings_are_no_role(self, raw: str) -> None:
        assert normalize_role(raw) is None

    @pytest.mark.parametrize("raw", [None, 1, True, {"role": "admin"}, ["admin"]])
    def test_non_strings_are_no_role(self, raw) -> None:
        """Malformed documents must not raise during normalization."""
        assert normalize_role(raw) is None

    def test_role_instance_passes_through(self) -> None:
        assert normalize_role(Role.KIOSK) is Role.KIOSK


class TestDashboardPath:
    @pytest.mark.parametrize(
        ("role", "path"),
        [
            (Role.ADMIN, "/admin"),
            (Role.TEACHER, "/teacher"),
            (Role.STUDENT, "/student"),
            (Role.KIOSK, "/display"),
        ],
    )
    def test_each_role_has_a_dashboard(self, role: Role, path: str) -> None:
        assert dashboard_path_for_role(role) == path

    def test_no_role_goes_to_unauthorized(self) -> None:
        assert dashboard_path_for_role(None) == "/unauthorized"
        assert dashboard_path_for_role(None, "/denied") == "/denied"


class TestIdentity:
    def test_no_fields_is_empty(self) -> None:
        assert Identity(source=IdentitySource.CACHE).is_empty

    def test_blank_strings_are_empty(self) -> None:
        assert Identity(source=IdentitySource.CACHE, uid="", email="", username_lower="").is_empty

    @pytest.mark.parametrize("field", ["uid", "email", "username_lower"])
    def test_any_single_field_is_enough(self, field: str) -> None:
        assert not Identity(source=IdentitySource.TOKEN, **{field: "x"}).is_empty


class TestSessionRecord:
    def test_dict_round_trip_keeps_enums(self) -> None:
        record = SessionRecord(
            uid="u1", display_name="Alice", mode=AuthMode.STORE, role=Role.TEACHER, username="Alice"
        )
        restored = SessionRecord.from_dict(record.to_dict())
        assert restored == record
        assert record.to_dict()["mode"] == "store"
        assert record.to_dict()["role"] == "teacher"

    def test_unknown_role_in_dict_becomes_none(self) -> None:
        restored = SessionRecord.from_dict({"uid": "u1", "mode": "provider", "role": "wizard"})
        assert restored.role is None
        assert restored.mode is AuthMode.PROVIDER

    def test_missing_uid_raises_key_error(self) -> None:
        with pytest.raises(KeyError):
            SessionRecord.from_dict({"mode": "store"})

    def test_unknown_mode_raises_value_error(self) -> None:
        with pytest.raises(ValueError):
            SessionRecord.from_dict({"uid": "u1", "mode": "magic"})
