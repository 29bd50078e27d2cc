"""
Entry builder: operation consistency rules and checksum coverage.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from audit_kernel.domain.dtos import AuditContext, AuditOperation, FieldChange
from audit_kernel.domain.entry_builder import (
    AUDIT_FORMAT_VERSION,
    build_audit_record,
    check_operation_states,
)
from audit_kernel.domain.policies import REDACTION_MARKER
from audit_kernel.exceptions import InvalidSnapshotError
from audit_kernel.utils.hashing import compute_entry_checksum

NOW = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
ACTOR = UUID("00000000-0000-0000-0000-00000000a11c")


def _build(operation="update", before=None, after=None, **overrides):
    kwargs = dict(
        table_name="users",
        record_id="u-1",
        operation=operation,
        before=before,
        after=after,
        context=AuditContext(actor_id=ACTOR, actor_email="a@example.com", reason="fix typo"),
        occurred_at=NOW,
    )
    kwargs.update(overrides)
    return build_audit_record(**kwargs)


class TestOperationStates:
    @pytest.mark.parametrize(
        "operation,before,after",
        [
            ("create", None, {"a": 1}),
            ("update", {"a": 1}, {"a": 2}),
            ("delete", {"a": 1}, None),
            ("soft_delete", {"a": 1}, None),
            ("soft_delete", {"a": 1}, {"a": 1, "deleted": True}),
            ("restore", None, {"a": 1}),
            ("restore", {"deleted": True}, {"deleted": False}),
        ],
    )
    def test_valid_combinations(self, operation, before, after):
        check_operation_states(AuditOperation(operation), before, after)

    @pytest.mark.parametrize(
        "operation,before,after,field",
        [
            ("create", {"a": 1}, {"a": 1}, "before_state"),
            ("create", None, None, "after_state"),
            ("update", None, {"a": 1}, "before_state"),
            ("update", {"a": 1}, None, "after_state"),
            ("delete", None, None, "before_state"),
            ("delete", {"a": 1}, {"a": 1}, "after_state"),
            ("soft_delete", None, {"a": 1}, "before_state"),
            ("restore", {"a": 1}, None, "after_state"),
        ],
    )
    def test_invalid_combinations(self, operation, before, after, field):
        with pytest.raises(InvalidSnapshotError) as exc_info:
            check_operation_states(AuditOperation(operation), before, after)
        assert exc_info.value.field == field


class TestBuildAuditRecord:
    def test_update_record(self):
        record = _build(before={"name": "A", "age": 3}, after={"name": "B", "age": 3})

        assert record.operation is AuditOperation.UPDATE
        assert record.diff == (FieldChange("name", "A", "B"),)
        assert record.actor_id == ACTOR
        assert record.actor_email_backup == "a@example.com"
        assert record.reason == "fix typo"
        assert record.occurred_at == NOW
        assert record.audit_version == AUDIT_FORMAT_VERSION
        assert len(record.checksum) == 64

    def test_create_has_no_diff(self):
        record = _build("create", after={"name": "A"})
        assert record.before_state is None
        assert record.diff == ()

    def test_delete_keeps_full_before_state(self):
        record = _build("delete", before={"name": "A", "email": "a@x"})
        assert record.before_state == {"name": "A", "email": "a@x"}
        assert record.after_state is None
        assert record.diff == ()

    def test_record_id_is_stringified(self):
        assert _build("create", after={"a": 1}, record_id=42).record_id == "42"

    @pytest.mark.parametrize("bad", [None, ""])
    def test_empty_record_id_rejected(self, bad):
        with pytest.raises(InvalidSnapshotError) as exc_info:
            _build("create", after={"a": 1}, record_id=bad)
        assert exc_info.value.field == "record_id"

    def test_empty_table_name_rejected(self):
        with pytest.raises(InvalidSnapshotError) as exc_info:
            _build("create", after={"a": 1}, table_name="")
        assert exc_info.value.field == "table_name"

    def test_unknown_operation_rejected(self):
        with pytest.raises(ValueError):
            _build("truncate", after={"a": 1})

    def test_invalid_snapshot_reports_side_and_path(self):
        with pytest.raises(InvalidSnapshotError) as exc_info:
            _build(before={"a": 1}, after={"meta": {"x": float("nan")}})
        assert exc_info.value.field == "after_state.meta.x"

    def test_non_mapping_snapshot_reports_side(self):
        with pytest.raises(InvalidSnapshotError) as exc_info:
            _build(before=["not", "a", "mapping"], after={"a": 1})
        assert exc_info.value.field == "before_state"

    def test_redaction_happens_before_diff(self):
        record = _build(
            before={"name": "A", "password": "old-secret"},
            after={"name": "A", "password": "new-secret"},
        )
        assert record.before_state["password"] == REDACTION_MARKER
        assert record.after_state["password"] == REDACTION_MARKER
        # both sides redact to the marker, so the change is invisible
        assert record.diff == ()
        assert "secret" not in str(record.canonical_content())

    def test_naive_occurred_at_treated_as_utc(self):
        record = _build("create", after={"a": 1}, occurred_at=datetime(2024, 5, 1, 9, 30))
        assert record.occurred_at == NOW

    def test_explicit_entry_id(self):
        entry_id = uuid4()
        assert _build("create", after={"a": 1}, entry_id=entry_id).id == entry_id


class TestChecksum:
    def test_checksum_matches_canonical_content(self):
        record = _build(before={"a": 1}, after={"a": 2})
        assert record.checksum == compute_entry_checksum(record.canonical_content())

    def test_same_content_same_checksum(self):
        entry_id = uuid4()
        first = _build(before={"a": 1, "b": 2}, after={"a": 2, "b": 2}, entry_id=entry_id)
        second = _build(before={"b": 2, "a": 1}, after={"b": 2, "a": 2}, entry_id=entry_id)
        assert first.checksum == second.checksum

    def test_fresh_ids_give_distinct_checksums(self):
        assert _build("create", after={"a": 1}).checksum != _build("create", after={"a": 1}).checksum

    @pytest.mark.parametrize(
        "change",
        [
            {"table_name": "accounts"},
            {"record_id": "u-2"},
            {"after_state": {"a": 3}},
            {"before_state": {"a": 0}},
            {"actor_id": uuid4()},
            {"actor_email_backup": "b@example.com"},
            {"reason": "other"},
            {"ip_address": "10.0.0.1"},
            {"occurred_at": NOW + timedelta(microseconds=1)},
            {"audit_version": "2.0"},
        ],
    )
    def test_any_field_change_changes_checksum(self, change):
        record = _build(before={"a": 1}, after={"a": 2})
        tampered = replace(record, **change)
        assert compute_entry_checksum(tampered.canonical_content()) != record.checksum

    def test_diff_change_changes_checksum(self):
        record = _build(before={"a": 1}, after={"a": 2})
        tampered = replace(record, diff=(FieldChange("a", 1, 5),))
        assert compute_entry_checksum(tampered.canonical_content()) != record.checksum
