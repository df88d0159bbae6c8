"""
RECONCILIATION SERVICE

Balance reconciliation and point-in-time snapshots:
- reconcile() against an expected balance, per account type
- Balance snapshots with checksum (immutable once stored)
- Period reports (opening / closing snapshot + counts)
- Matching against an external statement to find missing entries

RULES:
- Discrepancies are report items, not exceptions
- Stored snapshots are IMMUTABLE (no update/delete)
- Soft-deleted transactions never participate
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Callable
import hashlib
import logging

from .document_store import DocumentStore
from .entities import BalanceSnapshot, TransactionType, new_id
from .financial_precision import to_decimal, to_float, safe_sum, round_financial
from .integrity_verifier import IntegrityVerifier, IntegrityError
from .transaction_validation import normalize_datetime

logger = logging.getLogger(__name__)


class AccountType(str, Enum):
    CASH = "cash"
    ASSETS = "assets"
    LIABILITIES = "liabilities"
    NET_WORTH = "net_worth"


class IssueType(str, Enum):
    BALANCE_DISCREPANCY = "BALANCE_DISCREPANCY"
    DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"
    MISSING_TRANSACTION = "MISSING_TRANSACTION"
    DATE_INCONSISTENCY = "DATE_INCONSISTENCY"


class IssueSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SnapshotImmutableError(Exception):
    """Raised when trying to modify an immutable snapshot"""
    def __init__(self, snapshot_id: str, action: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot {snapshot_id} is immutable. {action} is blocked.")


class SnapshotNotFoundError(Exception):
    """Raised when snapshot not found"""
    pass


@dataclass
class ReconciliationDiscrepancy:
    """One structured finding; never raised"""
    type: str
    severity: str
    description: str
    suggested_fix: Optional[str] = None
    amount: Optional[float] = None
    affected_transactions: List[str] = field(default_factory=list)


@dataclass
class ReconciliationResult:
    is_reconciled: bool
    calculated_balance: float
    expected_balance: Optional[float] = None
    discrepancy: Optional[float] = None
    issues: List[ReconciliationDiscrepancy] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    transaction_count: int = 0
    account_type: str = AccountType.NET_WORTH.value
    reconciled_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ReconciliationReport:
    period_start: datetime
    period_end: datetime
    opening_balance: BalanceSnapshot
    closing_balance: BalanceSnapshot
    transaction_counts: Dict[str, int]
    reconciliation: ReconciliationResult


def _amount(t: Dict[str, Any]) -> Decimal:
    return to_decimal(t.get("amount"))


def _sum_type(transactions: List[Dict[str, Any]], txn_type: TransactionType) -> Decimal:
    return safe_sum(_amount(t) for t in transactions if t.get("type") == txn_type.value)


def _active(transactions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [t for t in transactions if not t.get("is_deleted", False)]


class ReconciliationService:
    """
    Reconciliation over a set of transactions.

    The pure methods take transactions explicitly; the store is only needed
    for snapshot persistence.
    """

    TOLERANCE = Decimal('0.01')
    CRITICAL_THRESHOLD = Decimal('1000')
    HIGH_THRESHOLD = Decimal('100')
    LARGE_TRANSACTION_THRESHOLD = Decimal('10000')
    MISSING_HIGH_THRESHOLD = Decimal('1000')
    DATE_TOLERANCE = timedelta(days=3)

    def __init__(self, store: Optional[DocumentStore] = None,
                 verifier: Optional[IntegrityVerifier] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.verifier = verifier or IntegrityVerifier(clock=clock)
        self.clock = clock or datetime.utcnow

    # =========================================================================
    # BALANCE
    # =========================================================================

    def calculate_balance(self, transactions: List[Dict[str, Any]],
                          account_type: str = AccountType.NET_WORTH.value) -> Decimal:
        account_type = AccountType(account_type)
        income = _sum_type(transactions, TransactionType.INCOME)
        expenses = _sum_type(transactions, TransactionType.EXPENSE)
        assets = _sum_type(transactions, TransactionType.ASSET)
        liabilities = _sum_type(transactions, TransactionType.LIABILITY)

        if account_type == AccountType.CASH:
            return income - expenses
        if account_type == AccountType.ASSETS:
            return assets
        if account_type == AccountType.LIABILITIES:
            return liabilities
        return (income + assets) - (expenses + liabilities)

    def _severity_for(self, discrepancy: Decimal) -> str:
        if discrepancy > self.CRITICAL_THRESHOLD:
            return IssueSeverity.CRITICAL.value
        if discrepancy > self.HIGH_THRESHOLD:
            return IssueSeverity.HIGH.value
        return IssueSeverity.MEDIUM.value

    # =========================================================================
    # RECONCILE
    # =========================================================================

    def reconcile(
        self,
        transactions: List[Dict[str, Any]],
        expected_balance: Optional[float] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        account_type: str = AccountType.NET_WORTH.value
    ) -> ReconciliationResult:
        now = self.clock()
        filtered = _active(transactions)
        if start_date is not None:
            start_date = normalize_datetime(start_date)
            filtered = [t for t in filtered if t.get("date") and t["date"] >= start_date]
        if end_date is not None:
            end_date = normalize_datetime(end_date)
            filtered = [t for t in filtered if t.get("date") and t["date"] <= end_date]

        issues: List[ReconciliationDiscrepancy] = []
        recommendations: List[str] = []

        integrity = self.verifier.verify_collection(filtered)
        for txn_id in integrity.duplicate_ids:
            issues.append(ReconciliationDiscrepancy(
                type=IssueType.DUPLICATE_TRANSACTION.value,
                severity=IssueSeverity.HIGH.value,
                description=f"Duplicate transaction ID found: {txn_id}",
                suggested_fix="Remove the duplicated entry",
                affected_transactions=[txn_id],
            ))

        calculated = round_financial(self.calculate_balance(filtered, account_type))
        is_reconciled = True
        discrepancy = None

        if expected_balance is not None:
            expected = to_decimal(expected_balance)
            delta = abs(calculated - expected)
            discrepancy = to_float(delta)
            if delta > self.TOLERANCE:
                is_reconciled = False
                issues.append(ReconciliationDiscrepancy(
                    type=IssueType.BALANCE_DISCREPANCY.value,
                    severity=self._severity_for(delta),
                    description=f"Balance mismatch: calculated {calculated:.2f}, expected {round_financial(expected):.2f}",
                    suggested_fix="Review recent transactions for missing or incorrect entries",
                    amount=discrepancy,
                ))
                if calculated < expected:
                    recommendations.append("Check for missing income transactions")
                    recommendations.append("Look for expense transactions that may have been recorded as higher amounts")
                else:
                    recommendations.append("Check for duplicate income entries")
                    recommendations.append("Look for missing expense transactions")

        future_dated = [t for t in filtered if t.get("date") and t["date"] > now]
        if future_dated:
            issues.append(ReconciliationDiscrepancy(
                type=IssueType.DATE_INCONSISTENCY.value,
                severity=IssueSeverity.LOW.value,
                description=f"Found {len(future_dated)} future-dated transactions",
                suggested_fix="Review and correct transaction dates",
                affected_transactions=[t["_id"] for t in future_dated],
            ))

        large = [t for t in filtered if _amount(t) > self.LARGE_TRANSACTION_THRESHOLD]
        if large:
            recommendations.append(f"Review {len(large)} large transactions (>10,000) for accuracy")

        if issues:
            recommendations.append("Address the identified issues to complete reconciliation")
        else:
            recommendations.append("All transactions appear to be in order")

        logger.info(
            f"[RECONCILE] {AccountType(account_type).value}: calculated={calculated:.2f} "
            f"expected={expected_balance} issues={len(issues)}"
        )
        return ReconciliationResult(
            is_reconciled=is_reconciled,
            calculated_balance=to_float(calculated),
            expected_balance=to_float(expected_balance) if expected_balance is not None else None,
            discrepancy=discrepancy,
            issues=issues,
            recommendations=recommendations,
            transaction_count=len(filtered),
            account_type=AccountType(account_type).value,
            reconciled_at=now,
        )

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def _snapshot_checksum(self, snapshot_date: datetime, income, expenses, assets, liabilities) -> str:
        payload = "|".join([
            snapshot_date.isoformat(),
            f"{round_financial(income):.2f}",
            f"{round_financial(expenses):.2f}",
            f"{round_financial(assets):.2f}",
            f"{round_financial(liabilities):.2f}",
        ])
        return hashlib.sha256(payload.encode()).hexdigest()[:32]

    def create_balance_snapshot(self, transactions: List[Dict[str, Any]], date: datetime,
                                owner_id: Optional[str] = None) -> BalanceSnapshot:
        """Balances from every active transaction dated on or before date."""
        date = normalize_datetime(date)
        included = [t for t in _active(transactions) if t.get("date") and t["date"] <= date]

        income = _sum_type(included, TransactionType.INCOME)
        expenses = _sum_type(included, TransactionType.EXPENSE)
        assets = _sum_type(included, TransactionType.ASSET)
        liabilities = _sum_type(included, TransactionType.LIABILITY)

        return BalanceSnapshot(
            owner_id=owner_id,
            date=date,
            income=to_float(income),
            expenses=to_float(expenses),
            assets=to_float(assets),
            liabilities=to_float(liabilities),
            net_worth=to_float(assets - liabilities),
            cash_flow=to_float(income - expenses),
            transaction_count=len(included),
            checksum=self._snapshot_checksum(date, income, expenses, assets, liabilities),
            created_at=self.clock(),
        )

    def verify_snapshot(self, snapshot: BalanceSnapshot) -> bool:
        expected = self._snapshot_checksum(
            snapshot.date, snapshot.income, snapshot.expenses, snapshot.assets, snapshot.liabilities
        )
        return expected == snapshot.checksum

    # =========================================================================
    # REPORTS
    # =========================================================================

    def generate_reconciliation_report(
        self,
        transactions: List[Dict[str, Any]],
        period_start: datetime,
        period_end: datetime,
        expected_closing_balance: Optional[float] = None,
        owner_id: Optional[str] = None
    ) -> ReconciliationReport:
        period_start = normalize_datetime(period_start)
        period_end = normalize_datetime(period_end)

        opening = self.create_balance_snapshot(transactions, period_start - timedelta(days=1), owner_id)
        closing = self.create_balance_snapshot(transactions, period_end, owner_id)

        in_period = [
            t for t in _active(transactions)
            if t.get("date") and period_start <= t["date"] <= period_end
        ]
        counts = {"total": len(in_period)}
        for txn_type in TransactionType:
            counts[txn_type.value] = len([t for t in in_period if t.get("type") == txn_type.value])

        reconciliation = self.reconcile(
            transactions,
            expected_balance=expected_closing_balance,
            start_date=period_start,
            end_date=period_end,
        )
        return ReconciliationReport(
            period_start=period_start,
            period_end=period_end,
            opening_balance=opening,
            closing_balance=closing,
            transaction_counts=counts,
            reconciliation=reconciliation,
        )

    def find_missing_transactions(
        self,
        recorded: List[Dict[str, Any]],
        external: List[Dict[str, Any]]
    ) -> List[ReconciliationDiscrepancy]:
        """
        Match statement lines to recorded transactions one-to-one: amounts
        within 1 cent (statement sign ignored), dates within 3 days. Each
        unmatched line is a MISSING_TRANSACTION.
        """
        candidates = [t for t in _active(recorded) if t.get("date")]
        used = set()
        issues = []

        for line in external:
            line_date = normalize_datetime(line["date"])
            line_amount = abs(to_decimal(line.get("amount")))
            match = None
            for t in candidates:
                if t["_id"] in used:
                    continue
                if abs(t["date"] - line_date) > self.DATE_TOLERANCE:
                    continue
                if abs(_amount(t) - line_amount) <= self.TOLERANCE:
                    match = t
                    break

            if match is not None:
                used.add(match["_id"])
                continue

            description = line.get("description") or "no description"
            issues.append(ReconciliationDiscrepancy(
                type=IssueType.MISSING_TRANSACTION.value,
                severity=(IssueSeverity.HIGH.value if line_amount > self.MISSING_HIGH_THRESHOLD
                          else IssueSeverity.MEDIUM.value),
                description=f"Unmatched bank transaction: {description} ({line_amount:.2f} on {line_date.date().isoformat()})",
                suggested_fix="Record this transaction or confirm it belongs to another account",
                amount=to_float(line_amount),
            ))

        if issues:
            logger.warning(f"[RECONCILE] {len(issues)} statement line(s) without a recorded transaction")
        return issues

    # =========================================================================
    # SNAPSHOT PERSISTENCE
    # =========================================================================

    async def store_snapshot(self, snapshot: BalanceSnapshot) -> str:
        if self.store is None:
            raise RuntimeError("Snapshot persistence requires a document store")
        snapshot_id = snapshot.snapshot_id or new_id()
        doc = snapshot.dict(by_alias=True)
        doc["_id"] = snapshot_id
        await self.store.put("balance_snapshots", snapshot_id, doc)
        logger.info(f"[RECONCILE] Stored balance snapshot {snapshot_id} checksum={snapshot.checksum}")
        return snapshot_id

    async def get_snapshot(self, snapshot_id: str) -> BalanceSnapshot:
        """Load a stored snapshot, verifying its checksum."""
        if self.store is None:
            raise RuntimeError("Snapshot persistence requires a document store")
        doc = await self.store.get("balance_snapshots", snapshot_id)
        if not doc:
            raise SnapshotNotFoundError(f"Snapshot {snapshot_id} not found")
        snapshot = BalanceSnapshot(**doc)
        if not self.verify_snapshot(snapshot):
            raise IntegrityError(
                f"Snapshot {snapshot_id} checksum mismatch",
                ["Checksum mismatch - data may have been tampered with"]
            )
        return snapshot

    def block_update(self, snapshot_id: str):
        raise SnapshotImmutableError(snapshot_id, "UPDATE")

    def block_delete(self, snapshot_id: str):
        raise SnapshotImmutableError(snapshot_id, "DELETE")
