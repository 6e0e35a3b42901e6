"""Tests for the row-scoping policy and sync schema."""

import pytest

from classcomm_sync.exceptions import ForbiddenError, ValidationError
from classcomm_sync.scoping import DEFAULT_SCHEMA, RowScopingPolicy, SyncSchema, TableSchema


@pytest.fixture
def policy():
    return RowScopingPolicy(DEFAULT_SCHEMA)


class TestTableSchema:
    """Tests for the per-table predicate."""

    def test_owner_allowed(self):
        students = DEFAULT_SCHEMA.table("students")
        decision = students.check({"id": "s1", "userId": "t1"}, "t1")
        assert decision.allowed
        assert decision.reason == "owner"

    def test_other_tenant_denied(self):
        students = DEFAULT_SCHEMA.table("students")
        assert not students.check({"id": "s1", "userId": "t2"}, "t1").allowed

    def test_shared_template_visible_to_everyone(self):
        templates = DEFAULT_SCHEMA.table("templates")
        decision = templates.check({"id": "tpl", "userId": "system", "isDefault": True}, "t1")
        assert decision.allowed
        assert decision.reason == "shared"

    def test_shared_flag_must_be_true(self):
        templates = DEFAULT_SCHEMA.table("templates")
        assert not templates.check({"id": "tpl", "userId": "t2", "isDefault": "true"}, "t1").allowed

    def test_settings_owned_by_id(self):
        settings = DEFAULT_SCHEMA.table("settings")
        assert settings.check({"id": "t1", "theme": "dark"}, "t1").allowed
        assert not settings.check({"id": "t2", "theme": "dark"}, "t1").allowed

    def test_unknown_columns_rejected(self):
        students = DEFAULT_SCHEMA.table("students")
        with pytest.raises(ValidationError) as exc_info:
            students.validate_columns({"id": "s1", "userId": "t1", "ssn": "123"})
        assert exc_info.value.value == "ssn"

    def test_metadata_columns_accepted(self):
        students = DEFAULT_SCHEMA.table("students")
        students.validate_columns(
            {"id": "s1", "userId": "t1", "_version": 1, "_updatedAt": 1, "_clientId": "c", "_isDeleted": False}
        )

    def test_no_columns_accepts_anything(self):
        notes = TableSchema(name="notes")
        notes.validate_columns({"id": "n1", "anything": 1})


class TestSyncSchema:
    """Tests for table lookup."""

    def test_default_tables(self):
        assert set(DEFAULT_SCHEMA.table_names) == {
            "students", "contacts", "communications", "templates", "reminders", "settings",
        }
        assert DEFAULT_SCHEMA.primary_keys()["students"] == "id"

    def test_unknown_table(self):
        with pytest.raises(ValidationError):
            DEFAULT_SCHEMA.table("grades")
        assert "grades" not in DEFAULT_SCHEMA


class TestRowScopingPolicy:
    """Tests for push and pull enforcement."""

    def test_can_read_unknown_table(self, policy):
        assert not policy.can_read("grades", {"userId": "t1"}, "t1")

    def test_write_own_record(self, policy):
        policy.check_write("students", "s1", {"id": "s1", "userId": "t1"}, None, "t1")

    def test_write_foreign_candidate_forbidden(self, policy):
        with pytest.raises(ForbiddenError):
            policy.check_write("students", "s1", {"id": "s1", "userId": "t2"}, None, "t1")

    def test_takeover_of_foreign_row_forbidden(self, policy):
        """A copy carrying the caller's own owner id cannot overwrite another tenant's row."""
        with pytest.raises(ForbiddenError) as exc_info:
            policy.check_write(
                "students",
                "s1",
                {"id": "s1", "userId": "t1"},
                {"id": "s1", "userId": "t2"},
                "t1",
            )
        assert exc_info.value.record_id == "s1"

    def test_shared_row_editable_in_place(self, policy):
        stored = {"id": "tpl-1", "userId": "system", "isDefault": True, "body": "Hi"}
        candidate = dict(stored, body="Hello")
        policy.check_write("templates", "tpl-1", candidate, stored, "t1")

    @pytest.mark.parametrize(
        "changes",
        [
            {"userId": "t1", "isDefault": False},
            {"userId": "t1"},
            {"isDefault": False},
        ],
    )
    def test_shared_row_cannot_be_claimed_or_unshared(self, policy, changes):
        stored = {"id": "tpl-1", "userId": "system", "isDefault": True}
        candidate = dict(stored, **changes)
        with pytest.raises(ForbiddenError):
            policy.check_write("templates", "tpl-1", candidate, stored, "t1")

    def test_owner_may_unshare_own_row(self, policy):
        stored = {"id": "tpl-1", "userId": "t1", "isDefault": True}
        policy.check_write("templates", "tpl-1", dict(stored, isDefault=False), stored, "t1")

    def test_custom_schema(self):
        schema = SyncSchema([TableSchema(name="notes", owner_field="ownerId")])
        policy = RowScopingPolicy(schema)
        assert policy.can_read("notes", {"ownerId": "t1"}, "t1")
        assert not policy.can_read("notes", {"userId": "t1"}, "t1")
