"""
DUPLICATE TRANSACTION DETECTION

Flags possible duplicate entries:
- Same owner + type + category
- Amount equal within 1 cent
- Dated within 24 hours of each other

Advisory only: used by the impact preview, never blocks a write.
"""

from datetime import timedelta
from typing import Optional, Dict, Any, List
import logging

from .document_store import DocumentStore
from .financial_precision import amounts_equal

logger = logging.getLogger(__name__)


class DuplicateTransactionDetector:
    """
    Service for spotting likely double-entered transactions.
    """

    WINDOW = timedelta(hours=24)

    def __init__(self, store: DocumentStore):
        self.store = store

    async def find_possible_duplicates(
        self,
        candidate: Dict[str, Any],
        exclude_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Return existing non-deleted transactions that look like candidate.

        Args:
            candidate: Transaction fields (owner_id, type, category_id, amount, date)
            exclude_id: Transaction ID to ignore (the candidate itself on update)
        """
        txn_date = candidate.get("date")
        if txn_date is None:
            return []

        query = {
            "owner_id": candidate.get("owner_id"),
            "type": candidate.get("type"),
            "category_id": candidate.get("category_id"),
            "is_deleted": False,
            "date": {"$gte": txn_date - self.WINDOW, "$lte": txn_date + self.WINDOW},
        }
        if exclude_id:
            query["_id"] = {"$ne": exclude_id}

        existing = await self.store.query("transactions", query)
        matches = [t for t in existing if amounts_equal(t.get("amount"), candidate.get("amount"))]

        if matches:
            logger.info(
                f"[DUPLICATE] {len(matches)} possible duplicate(s) for owner={candidate.get('owner_id')} "
                f"amount={candidate.get('amount')} category={candidate.get('category_id')}"
            )
        return matches
