"""
INTEGRITY VERIFIER

Checksums and consistency checks over transaction sets:
- Per-transaction checksum of (id, type, amount, category, date, description)
- Order-independent collection checksum (entities sorted by id)
- Duplicate ids (hard issue regardless of checksum)
- Date anomalies and budget spent discrepancies

RULES:
- Reports only. Never repairs data.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable
import hashlib
import logging

from .entities import counts_toward_budget, category_matches
from .financial_precision import to_decimal, round_financial, safe_sum, to_float

logger = logging.getLogger(__name__)


class IntegrityError(Exception):
    """Raised when a transaction set fails verification"""
    def __init__(self, message: str, issues: Optional[List[str]] = None):
        self.issues = issues or []
        super().__init__(message)


@dataclass
class IntegrityReport:
    is_valid: bool
    actual_checksum: str
    expected_checksum: Optional[str] = None
    issues: List[str] = field(default_factory=list)
    duplicate_ids: List[str] = field(default_factory=list)
    transaction_count: int = 0
    date_anomalies: List[Dict[str, Any]] = field(default_factory=list)


def _format_date(value) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value) if value is not None else ""


class IntegrityVerifier:
    """
    Deterministic checksums over transactions.

    The entity encoding is fixed; changing it invalidates every stored
    checksum.
    """

    ENTITY_CHECKSUM_LENGTH = 16
    COLLECTION_CHECKSUM_LENGTH = 32
    TOLERANCE = Decimal('0.01')
    MAX_AGE = timedelta(days=365 * 100)

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or datetime.utcnow

    # =========================================================================
    # CHECKSUMS
    # =========================================================================

    def canonical_encoding(self, transaction: Dict[str, Any]) -> str:
        amount = round_financial(to_decimal(transaction.get("amount")))
        return "|".join([
            str(transaction.get("_id", "")),
            str(transaction.get("type", "")),
            f"{amount:.2f}",
            str(transaction.get("category_id", "")),
            _format_date(transaction.get("date")),
            str(transaction.get("description") or ""),
        ])

    def checksum(self, transaction: Dict[str, Any]) -> str:
        """Compute SHA-256 checksum of the canonical encoding (truncated)"""
        encoded = self.canonical_encoding(transaction)
        return hashlib.sha256(encoded.encode()).hexdigest()[:self.ENTITY_CHECKSUM_LENGTH]

    def collection_checksum(self, transactions: List[Dict[str, Any]]) -> str:
        ordered = sorted(transactions, key=lambda t: str(t.get("_id", "")))
        combined = "".join(self.checksum(t) for t in ordered)
        return hashlib.sha256(combined.encode()).hexdigest()[:self.COLLECTION_CHECKSUM_LENGTH]

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify_collection(
        self,
        transactions: List[Dict[str, Any]],
        expected_checksum: Optional[str] = None
    ) -> IntegrityReport:
        issues = []

        seen = set()
        duplicates = []
        for t in transactions:
            txn_id = t.get("_id")
            if txn_id in seen and txn_id not in duplicates:
                duplicates.append(txn_id)
            seen.add(txn_id)
        for txn_id in duplicates:
            issues.append(f"Duplicate transaction ID found: {txn_id}")

        actual = self.collection_checksum(transactions)
        if expected_checksum is not None and expected_checksum != actual:
            issues.append("Checksum mismatch - data may have been tampered with")

        report = IntegrityReport(
            is_valid=not issues,
            actual_checksum=actual,
            expected_checksum=expected_checksum,
            issues=issues,
            duplicate_ids=duplicates,
            transaction_count=len(transactions),
        )
        if issues:
            logger.warning(f"[INTEGRITY] Verification failed: {len(issues)} issue(s)")
        return report

    def assert_valid(self, transactions: List[Dict[str, Any]], expected_checksum: Optional[str] = None) -> str:
        """Raise IntegrityError when verification fails; return the checksum otherwise."""
        report = self.verify_collection(transactions, expected_checksum)
        if not report.is_valid:
            raise IntegrityError("; ".join(report.issues), report.issues)
        return report.actual_checksum

    def detect_date_anomalies(
        self,
        transactions: List[Dict[str, Any]],
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        now = now or self.clock()
        anomalies = []
        for t in transactions:
            txn_date = t.get("date")
            if not isinstance(txn_date, datetime):
                anomalies.append({"transaction_id": t.get("_id"), "issue": "missing_or_invalid_date"})
            elif txn_date > now:
                anomalies.append({"transaction_id": t.get("_id"), "issue": "future_date"})
            elif txn_date < now - self.MAX_AGE:
                anomalies.append({"transaction_id": t.get("_id"), "issue": "implausibly_old_date"})
        return anomalies

    def detect_balance_discrepancies(
        self,
        budget: Dict[str, Any],
        transactions: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """
        Compare each category's stored spent against the sum of matching
        transactions, and the stored derived fields against spent/allocated.
        """
        discrepancies = []
        counted = [t for t in transactions if counts_toward_budget(t, budget)]
        for category in budget.get("categories", []):
            expected_spent = round_financial(safe_sum(
                t["amount"] for t in counted if category_matches(category, t.get("category_id"))
            ))
            stored_spent = to_decimal(category.get("spent"))
            allocated = to_decimal(category.get("allocated"))

            if abs(expected_spent - stored_spent) > self.TOLERANCE:
                discrepancies.append({
                    "category_id": category.get("id"),
                    "field": "spent",
                    "stored": to_float(stored_spent),
                    "calculated": to_float(expected_spent),
                    "difference": to_float(stored_spent - expected_spent),
                })

            expected_remaining = allocated - stored_spent
            if abs(to_decimal(category.get("remaining")) - expected_remaining) > self.TOLERANCE:
                discrepancies.append({
                    "category_id": category.get("id"),
                    "field": "remaining",
                    "stored": category.get("remaining"),
                    "calculated": to_float(expected_remaining),
                    "difference": to_float(to_decimal(category.get("remaining")) - expected_remaining),
                })

            if bool(category.get("is_over_budget")) != (stored_spent > allocated):
                discrepancies.append({
                    "category_id": category.get("id"),
                    "field": "is_over_budget",
                    "stored": category.get("is_over_budget"),
                    "calculated": stored_spent > allocated,
                    "difference": None,
                })
        return discrepancies
