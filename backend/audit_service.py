from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from consistency_core.change_auditor import AuditImmutableError, ChangeAuditor
from consistency_core.document_store import DocumentStore

logger = logging.getLogger(__name__)

# ARCHITECTURAL GUARD: audit entries are append-only
BLOCKED_AUDIT_ACTIONS = ["UPDATE", "DELETE"]


class AuditService:
    """Service for immutable audit log queries and exports"""

    COLLECTION = "audit_logs"

    def __init__(self, store: DocumentStore, auditor: Optional[ChangeAuditor] = None):
        self.store = store
        self.auditor = auditor or ChangeAuditor()

    def enforce_append_only(self, action_type: str, audit_id: str):
        """
        ARCHITECTURAL GUARD: Audit entries are written once by the mutation
        that produced them and never modified or removed.

        Raises AuditImmutableError for any UPDATE/DELETE attempt.
        """
        if action_type in BLOCKED_AUDIT_ACTIONS:
            logger.warning(f"[AUDIT] Blocked {action_type} on audit entry {audit_id}")
            raise AuditImmutableError(audit_id, action_type)

    async def get_audit_logs(
        self,
        owner_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Retrieve audit logs (READ ONLY), newest first"""
        query: Dict[str, Any] = {"owner_id": owner_id}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id
        if action:
            query["action"] = action
        if actor_id:
            query["actor_id"] = actor_id
        time_range = {}
        if start:
            time_range["$gte"] = start
        if end:
            time_range["$lte"] = end
        if time_range:
            query["timestamp"] = time_range

        logs = await self.store.query(self.COLLECTION, query, order_by=[("timestamp", -1)], limit=limit)

        for log in logs:
            log["audit_id"] = log.pop("_id")

        return logs

    async def get_summary(self, owner_id: str, limit: int = 10) -> Dict[str, Any]:
        logs = await self.get_audit_logs(owner_id, limit=10000)
        return self.auditor.generate_summary(logs, limit)

    async def detect_suspicious_activity(self, owner_id: str, window_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        logs = await self.get_audit_logs(owner_id, limit=10000)
        return self.auditor.detect_suspicious_activity(logs, window_ms)

    async def export_csv(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> str:
        logs = await self.get_audit_logs(owner_id, start=start, end=end, limit=10000)
        logger.info(f"[AUDIT] Exporting {len(logs)} audit entries for owner:{owner_id}")
        return self.auditor.export_csv(logs)
