"""
CHANGE AUDITOR

Builds immutable audit entries for accepted mutations and analyses audit
history:
- Field-level diff derived from the entity type's mutable field set
- Suspicious activity signals (bulk deletes, bulk updates, large net amount
  changes) - advisory only, never blocks
- Summary and CSV export

Entries are insert-only; persistence lives in AuditService.
"""

from datetime import datetime, timedelta, date
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Callable
import csv
import io
import json
import logging

from .entities import AuditAction, AuditEntry, ChangeRecord, EntityType, mutable_fields_for
from .financial_precision import to_decimal, safe_sum, to_float

logger = logging.getLogger(__name__)

CSV_COLUMNS = ["Timestamp", "ActorId", "Action", "EntityId", "Changes", "Source"]


class AuditImmutableError(Exception):
    """Raised on any attempt to modify or remove a stored audit entry"""
    def __init__(self, audit_id: str, action: str):
        self.audit_id = audit_id
        self.action = action
        super().__init__(f"Audit entry {audit_id} is append-only. {action} is blocked.")


def serialize_value(value: Any) -> Any:
    """JSON-safe form used for snapshots, diffs and comparisons"""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def values_equal(a: Any, b: Any) -> bool:
    """Deep equality on the JSON-safe form"""
    return json.dumps(serialize_value(a), sort_keys=True) == json.dumps(serialize_value(b), sort_keys=True)


def _timestamp(entry: Dict[str, Any]) -> datetime:
    ts = entry.get("timestamp")
    if isinstance(ts, str):
        return datetime.fromisoformat(ts)
    return ts


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


class ChangeAuditor:
    """
    Produces audit entries and audit analytics.

    Thresholds are per actor within the analysis window.
    """

    DEFAULT_WINDOW_MS = 60 * 60 * 1000
    SUSPICIOUS_DELETE_COUNT = 5
    SUSPICIOUS_UPDATE_COUNT = 10
    SUSPICIOUS_AMOUNT_DELTA = Decimal('10000')
    DEFAULT_SUMMARY_LIMIT = 10

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or datetime.utcnow

    # =========================================================================
    # DIFF
    # =========================================================================

    def diff(
        self,
        previous_state: Optional[Dict[str, Any]],
        new_state: Optional[Dict[str, Any]],
        entity_type: str = EntityType.TRANSACTION.value
    ) -> List[Dict[str, Any]]:
        """Changed mutable fields only, values in JSON-safe form."""
        previous_state = previous_state or {}
        new_state = new_state or {}
        changes = []
        for field_name in mutable_fields_for(entity_type):
            old_value = previous_state.get(field_name)
            new_value = new_state.get(field_name)
            if not values_equal(old_value, new_value):
                changes.append({
                    "field": field_name,
                    "old_value": serialize_value(old_value),
                    "new_value": serialize_value(new_value),
                })
        return changes

    # =========================================================================
    # RECORD
    # =========================================================================

    def record(
        self,
        action: str,
        actor_id: str,
        entity_id: str,
        previous_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        entity_type: str = EntityType.TRANSACTION.value,
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Build the audit document for one accepted mutation.

        CREATE keeps the new state, DELETE keeps the previous state, UPDATE and
        RESTORE keep both plus the field-level changes.
        """
        action = AuditAction(action).value
        changes: List[Dict[str, Any]] = []
        snapshot_previous = None
        snapshot_new = None

        if action == AuditAction.CREATE.value:
            snapshot_new = serialize_value(new_state) if new_state else None
        elif action == AuditAction.DELETE.value:
            snapshot_previous = serialize_value(previous_state) if previous_state else None
        else:
            changes = self.diff(previous_state, new_state, entity_type)
            snapshot_previous = serialize_value(previous_state) if previous_state else None
            snapshot_new = serialize_value(new_state) if new_state else None

        if owner_id is None:
            owner_id = (new_state or previous_state or {}).get("owner_id")

        entry = AuditEntry(
            timestamp=self.clock(),
            actor_id=actor_id,
            owner_id=owner_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=[ChangeRecord(**c) for c in changes],
            previous_state=snapshot_previous,
            new_state=snapshot_new,
            metadata=dict(metadata or {}),
        )
        logger.debug(f"[AUDIT] {action} {entity_type}:{entity_id} by {actor_id} ({len(changes)} changes)")
        return entry.dict(by_alias=True)

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    def detect_suspicious_activity(
        self,
        entries: List[Dict[str, Any]],
        window_ms: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """
        Advisory signals per actor within the window:
        - at least 5 deletions
        - at least 10 updates
        - absolute net amount change above 10,000
        """
        window_ms = window_ms or self.DEFAULT_WINDOW_MS
        now = now or self.clock()
        window_start = now - timedelta(milliseconds=window_ms)
        window_label = self._describe_window(window_ms)

        by_actor: Dict[str, List[Dict[str, Any]]] = {}
        for entry in entries:
            ts = _timestamp(entry)
            if ts is None or ts < window_start or ts > now:
                continue
            by_actor.setdefault(entry.get("actor_id"), []).append(entry)

        signals = []
        for actor_id, actor_entries in by_actor.items():
            deletes = [e for e in actor_entries if e.get("action") == AuditAction.DELETE.value]
            updates = [e for e in actor_entries if e.get("action") == AuditAction.UPDATE.value]

            if len(deletes) >= self.SUSPICIOUS_DELETE_COUNT:
                signals.append({
                    "actor_id": actor_id,
                    "type": "bulk_delete",
                    "count": len(deletes),
                    "message": f"User {actor_id} deleted {len(deletes)} transactions in {window_label}",
                })

            if len(updates) >= self.SUSPICIOUS_UPDATE_COUNT:
                signals.append({
                    "actor_id": actor_id,
                    "type": "bulk_update",
                    "count": len(updates),
                    "message": f"User {actor_id} modified {len(updates)} transactions in {window_label}",
                })

            deltas = []
            for e in updates:
                for change in e.get("changes", []):
                    if change.get("field") == "amount":
                        deltas.append(to_decimal(change.get("new_value")) - to_decimal(change.get("old_value")))
            net_change = abs(safe_sum(deltas))
            if deltas and net_change > self.SUSPICIOUS_AMOUNT_DELTA:
                signals.append({
                    "actor_id": actor_id,
                    "type": "large_amount_change",
                    "count": len(deltas),
                    "amount": to_float(net_change),
                    "message": (
                        f"User {actor_id} changed transaction amounts by a net "
                        f"{to_float(net_change):,.2f} in {window_label}"
                    ),
                })

        if signals:
            logger.warning(f"[AUDIT] {len(signals)} suspicious activity signal(s) detected")
        return signals

    def _describe_window(self, window_ms: int) -> str:
        if window_ms == self.DEFAULT_WINDOW_MS:
            return "the last hour"
        minutes = window_ms // 60000
        if minutes >= 1:
            return f"the last {minutes} minutes"
        return f"the last {window_ms // 1000} seconds"

    def generate_summary(
        self,
        entries: List[Dict[str, Any]],
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """Counts by action and actor plus the most recent entries."""
        limit = limit or self.DEFAULT_SUMMARY_LIMIT
        by_action = {a.value: 0 for a in AuditAction}
        by_actor: Dict[str, int] = {}
        for entry in entries:
            action = entry.get("action")
            by_action[action] = by_action.get(action, 0) + 1
            actor = entry.get("actor_id")
            by_actor[actor] = by_actor.get(actor, 0) + 1

        ordered = sorted(entries, key=_timestamp, reverse=True)
        return {
            "total_entries": len(entries),
            "by_action": by_action,
            "by_actor": by_actor,
            "recent": ordered[:limit],
        }

    # =========================================================================
    # EXPORT
    # =========================================================================

    def format_changes(self, entry: Dict[str, Any]) -> str:
        return "; ".join(
            f"{c['field']}: {_format_value(c.get('old_value'))} → {_format_value(c.get('new_value'))}"
            for c in entry.get("changes", [])
        )

    def export_csv(self, entries: List[Dict[str, Any]]) -> str:
        output = io.StringIO()
        writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for entry in entries:
            ts = _timestamp(entry)
            writer.writerow([
                ts.isoformat() if ts else "",
                entry.get("actor_id", ""),
                entry.get("action", ""),
                entry.get("entity_id", ""),
                self.format_changes(entry),
                (entry.get("metadata") or {}).get("source", ""),
            ])
        return output.getvalue()
