"""
BUDGET INTEGRITY JOB

Verifies that stored budget category totals match the transactions.

For each active budget:
1. Recalculate every category's spent from transactions (FullRecompute rule)
2. Check stored remaining / is_over_budget against stored spent/allocated
3. Report mismatches (NO auto-fix)

Usage:
    job = BudgetIntegrityJob(store)
    report = await job.run()
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional
import logging

from .document_store import DocumentStore
from .budget_impact_engine import FullRecompute
from .integrity_verifier import IntegrityVerifier

logger = logging.getLogger(__name__)


class BudgetIntegrityJob:
    """
    Background job to verify budget aggregate integrity.

    Compares stored category values against values recalculated from the
    transactions collection. Reports mismatches but does NOT auto-fix.
    """

    # Tolerance for floating point comparison (0.01 = 1 cent)
    TOLERANCE = Decimal('0.01')

    def __init__(self, store: DocumentStore, verifier: Optional[IntegrityVerifier] = None):
        self.store = store
        self.recompute = FullRecompute(store)
        self.verifier = verifier or IntegrityVerifier()
        self.mismatches: List[Dict[str, Any]] = []
        self.checked_count = 0
        self.mismatch_count = 0

    async def run(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run the integrity check job.

        Returns:
            Report with check results and any mismatches found
        """
        start_time = datetime.utcnow()
        self.mismatches = []
        self.checked_count = 0
        self.mismatch_count = 0

        logger.info("[INTEGRITY_JOB] Starting budget integrity check...")

        filters: Dict[str, Any] = {"is_active": True}
        if owner_id:
            filters["owner_id"] = owner_id

        for budget in await self.store.query("budgets", filters):
            await self._check_budget(budget)

        end_time = datetime.utcnow()
        duration_ms = (end_time - start_time).total_seconds() * 1000

        report = {
            "job_name": "BudgetIntegrityJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round(duration_ms, 2),
            "budgets_checked": self.checked_count,
            "mismatches_found": self.mismatch_count,
            "mismatches": self.mismatches
        }

        if self.mismatch_count > 0:
            logger.warning(
                f"[INTEGRITY_JOB] Completed with {self.mismatch_count} mismatches "
                f"out of {self.checked_count} budgets"
            )
        else:
            logger.info(
                f"[INTEGRITY_JOB] Completed successfully. "
                f"All {self.checked_count} budgets verified."
            )

        return report

    async def _check_budget(self, budget: Dict[str, Any]):
        """Check a single budget against the transactions collection."""
        self.checked_count += 1

        transactions = await self.recompute.load_transactions(budget)
        discrepancies = self.verifier.detect_balance_discrepancies(budget, transactions)

        if discrepancies:
            self.mismatch_count += 1
            self.mismatches.append({
                "budget_id": budget["_id"],
                "owner_id": budget.get("owner_id"),
                "checked_at": datetime.utcnow().isoformat(),
                "discrepancies": discrepancies
            })

            logger.warning(
                f"[INTEGRITY_JOB] MISMATCH found: budget={budget['_id']}, "
                f"discrepancies={len(discrepancies)}"
            )
            for d in discrepancies:
                logger.warning(
                    f"  - {d['category_id']}.{d['field']}: stored={d['stored']}, "
                    f"calculated={d['calculated']}, diff={d['difference']}"
                )


async def run_integrity_check(store: DocumentStore, owner_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to run budget integrity check.
    """
    job = BudgetIntegrityJob(store)
    return await job.run(owner_id)
