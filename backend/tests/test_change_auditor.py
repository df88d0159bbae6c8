"""
Change auditor tests
Testing: field diffs, entry shape per action, suspicious activity, summary, CSV export
"""
from datetime import datetime, timedelta

import pytest

from audit_service import AuditService
from consistency_core import InMemoryDocumentStore
from consistency_core.change_auditor import AuditImmutableError, ChangeAuditor, CSV_COLUMNS

NOW = datetime(2024, 3, 15, 12, 0, 0)


def txn_state(**overrides):
    state = {
        "_id": "t1",
        "owner_id": "u1",
        "type": "expense",
        "amount": 80.0,
        "currency": "USD",
        "category_id": "restaurants",
        "date": datetime(2024, 3, 10),
        "description": "Dinner",
        "is_deleted": False,
        "version": 1,
        "updated_at": NOW,
    }
    state.update(overrides)
    return state


def audit_entry(action, actor="u1", minutes_ago=5, changes=None):
    return {
        "_id": f"{action}-{minutes_ago}-{actor}",
        "timestamp": NOW - timedelta(minutes=minutes_ago),
        "actor_id": actor,
        "action": action,
        "entity_id": "t1",
        "changes": changes or [],
        "metadata": {"source": "api"},
    }


@pytest.fixture
def auditor():
    return ChangeAuditor(clock=lambda: NOW)


class TestDiff:
    """Field-level diffs over mutable fields"""

    def test_only_changed_mutable_fields(self, auditor):
        previous = txn_state()
        new = txn_state(amount=95.5, version=2, updated_at=NOW + timedelta(minutes=1))

        changes = auditor.diff(previous, new)

        assert changes == [{"field": "amount", "old_value": 80.0, "new_value": 95.5}]

    def test_dates_are_serialized(self, auditor):
        changes = auditor.diff(txn_state(), txn_state(date=datetime(2024, 3, 11)))
        assert changes[0]["old_value"] == "2024-03-10T00:00:00"
        assert changes[0]["new_value"] == "2024-03-11T00:00:00"


class TestRecord:
    """Entry shape per action"""

    def test_create_keeps_new_state_only(self, auditor):
        entry = auditor.record("CREATE", "u1", "t1", new_state=txn_state())
        assert entry["action"] == "CREATE"
        assert entry["previous_state"] is None
        assert entry["new_state"]["amount"] == 80.0
        assert entry["changes"] == []
        assert entry["owner_id"] == "u1"
        assert entry["timestamp"] == NOW

    def test_delete_keeps_previous_state_only(self, auditor):
        entry = auditor.record("DELETE", "u1", "t1", previous_state=txn_state())
        assert entry["new_state"] is None
        assert entry["previous_state"]["description"] == "Dinner"

    def test_update_keeps_changes_and_both_states(self, auditor):
        entry = auditor.record(
            "UPDATE", "u2", "t1",
            previous_state=txn_state(),
            new_state=txn_state(description="Team dinner"),
            metadata={"source": "api", "reason": "typo"},
        )
        assert entry["changes"] == [
            {"field": "description", "old_value": "Dinner", "new_value": "Team dinner"}
        ]
        assert entry["previous_state"] is not None
        assert entry["new_state"] is not None
        assert entry["metadata"]["reason"] == "typo"

    def test_unknown_action_is_rejected(self, auditor):
        with pytest.raises(ValueError):
            auditor.record("PURGE", "u1", "t1")


class TestSuspiciousActivity:
    """Advisory signals per actor"""

    def test_bulk_delete(self, auditor):
        entries = [audit_entry("DELETE", minutes_ago=i) for i in range(1, 6)]
        signals = auditor.detect_suspicious_activity(entries)
        assert len(signals) == 1
        assert signals[0]["type"] == "bulk_delete"
        assert signals[0]["message"] == "User u1 deleted 5 transactions in the last hour"

    def test_four_deletes_is_not_suspicious(self, auditor):
        entries = [audit_entry("DELETE", minutes_ago=i) for i in range(1, 5)]
        assert auditor.detect_suspicious_activity(entries) == []

    def test_entries_outside_window_are_ignored(self, auditor):
        entries = [audit_entry("DELETE", minutes_ago=90 + i) for i in range(6)]
        assert auditor.detect_suspicious_activity(entries) == []

    def test_bulk_update_counted_per_actor(self, auditor):
        entries = [audit_entry("UPDATE", actor="u1", minutes_ago=i) for i in range(1, 11)]
        entries += [audit_entry("UPDATE", actor="u2", minutes_ago=i) for i in range(1, 4)]
        signals = auditor.detect_suspicious_activity(entries)
        assert [(s["actor_id"], s["type"]) for s in signals] == [("u1", "bulk_update")]

    def test_large_net_amount_change(self, auditor):
        entries = [
            audit_entry("UPDATE", minutes_ago=1, changes=[
                {"field": "amount", "old_value": 100.0, "new_value": 9100.0}
            ]),
            audit_entry("UPDATE", minutes_ago=2, changes=[
                {"field": "amount", "old_value": 50.0, "new_value": 2050.0}
            ]),
        ]
        signals = auditor.detect_suspicious_activity(entries)
        assert len(signals) == 1
        assert signals[0]["type"] == "large_amount_change"
        assert signals[0]["amount"] == 11000.0

    def test_offsetting_amount_changes_are_not_flagged(self, auditor):
        entries = [
            audit_entry("UPDATE", minutes_ago=1, changes=[
                {"field": "amount", "old_value": 100.0, "new_value": 20100.0}
            ]),
            audit_entry("UPDATE", minutes_ago=2, changes=[
                {"field": "amount", "old_value": 20100.0, "new_value": 100.0}
            ]),
        ]
        assert auditor.detect_suspicious_activity(entries) == []


class TestSummaryAndExport:
    """Summary counts and CSV export"""

    def test_summary(self, auditor):
        entries = [
            audit_entry("CREATE", minutes_ago=30),
            audit_entry("UPDATE", minutes_ago=20),
            audit_entry("UPDATE", actor="u2", minutes_ago=10),
        ]
        summary = auditor.generate_summary(entries, limit=2)
        assert summary["total_entries"] == 3
        assert summary["by_action"] == {"CREATE": 1, "UPDATE": 2, "DELETE": 0, "RESTORE": 0}
        assert summary["by_actor"] == {"u1": 2, "u2": 1}
        assert [e["actor_id"] for e in summary["recent"]] == ["u2", "u1"]

    def test_csv_export(self, auditor):
        entry = audit_entry("UPDATE", changes=[
            {"field": "amount", "old_value": 80.0, "new_value": 95.5},
            {"field": "description", "old_value": "Dinner", "new_value": "Team dinner"},
        ])
        csv_text = auditor.export_csv([entry])
        lines = csv_text.strip().split("\n")

        assert lines[0] == ",".join(f'"{c}"' for c in CSV_COLUMNS)
        assert '"u1","UPDATE","t1"' in lines[1]
        assert '"amount: 80.0 → 95.5; description: Dinner → Team dinner"' in lines[1]
        assert lines[1].endswith('"api"')


class TestAppendOnlyGuard:
    """Stored audit entries are never modified or removed"""

    @pytest.mark.parametrize("action", ["UPDATE", "DELETE"])
    def test_blocked_actions_raise(self, action):
        service = AuditService(InMemoryDocumentStore())
        with pytest.raises(AuditImmutableError) as exc_info:
            service.enforce_append_only(action, "audit-1")
        assert exc_info.value.audit_id == "audit-1"
        assert exc_info.value.action == action
        assert str(exc_info.value) == f"Audit entry audit-1 is append-only. {action} is blocked."

    def test_reads_pass(self):
        AuditService(InMemoryDocumentStore()).enforce_append_only("READ", "audit-1")
