"""
BUDGET IMPACT ENGINE

Maps transactions to budget categories and derives spent / remaining /
over-budget, plus the alerts a mutation produces.

Recompute strategies:
- FullRecompute: spent = sum of every matching transaction, with the pending
  mutation overlaid. Used for all mutation types by default.
- DeltaRecompute: spent = stored spent - old contribution + new contribution.

Both use the same membership rule (entities.counts_toward_budget +
category mapping), so they agree whenever stored spent is not drifted.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable, Tuple
import copy
import logging

from .document_store import DocumentStore
from .entities import (
    AlertSeverity, AlertType, BudgetAlert, TransactionType,
    counts_toward_budget, category_matches, matching_categories, refresh_category,
)
from .financial_precision import (
    to_decimal, to_float, safe_sum, safe_subtract, percentage_of, round_financial, ZERO,
)
from .transaction_validation import (
    assert_valid_transaction, normalize_datetime, require_actor,
)

logger = logging.getLogger(__name__)


@dataclass
class BudgetImpact:
    budget_id: str
    budget_category_id: str
    category_name: str
    allocated: float
    previous_spent: float
    amount_used: float
    percentage_used: float
    remaining_budget: float
    is_over_budget: bool


@dataclass
class ImpactPreview:
    impacts: List[BudgetImpact] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


def contribution(transaction: Optional[Dict[str, Any]], budget: Dict[str, Any],
                 category: Dict[str, Any]) -> Decimal:
    """Amount a transaction adds to a category's spent (zero when it does not count)."""
    if not counts_toward_budget(transaction, budget):
        return ZERO
    if not category_matches(category, transaction.get("category_id")):
        return ZERO
    return to_decimal(transaction.get("amount"))


def build_impact(budget: Dict[str, Any], category: Dict[str, Any], new_spent: Decimal) -> BudgetImpact:
    new_spent = max(round_financial(new_spent), ZERO)
    allocated = to_decimal(category.get("allocated"))
    return BudgetImpact(
        budget_id=budget["_id"],
        budget_category_id=category["id"],
        category_name=category["name"],
        allocated=to_float(allocated),
        previous_spent=to_float(to_decimal(category.get("spent"))),
        amount_used=to_float(new_spent),
        percentage_used=float(percentage_of(new_spent, allocated)),
        remaining_budget=to_float(safe_subtract(allocated, new_spent)),
        is_over_budget=new_spent > allocated,
    )


# =============================================================================
# RECOMPUTE STRATEGIES
# =============================================================================

class RecomputeStrategy(ABC):
    """Derives a category's new spent for one pending mutation"""

    name = "abstract"

    @abstractmethod
    async def compute_spent(
        self,
        budget: Dict[str, Any],
        category: Dict[str, Any],
        previous: Optional[Dict[str, Any]],
        current: Optional[Dict[str, Any]]
    ) -> Decimal:
        pass


class DeltaRecompute(RecomputeStrategy):
    name = "delta"

    async def compute_spent(self, budget, category, previous, current) -> Decimal:
        spent = to_decimal(category.get("spent"))
        spent = spent - contribution(previous, budget, category) + contribution(current, budget, category)
        return max(spent, ZERO)


class FullRecompute(RecomputeStrategy):
    name = "full"

    def __init__(self, store: DocumentStore):
        self.store = store

    async def load_transactions(self, budget: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.store.query(
            "transactions",
            {
                "owner_id": budget["owner_id"],
                "type": TransactionType.EXPENSE.value,
                "is_deleted": False,
                "date": {"$gte": budget["period_start"], "$lte": budget["period_end"]},
            }
        )

    async def compute_spent(self, budget, category, previous, current) -> Decimal:
        transactions = await self.load_transactions(budget)
        return self.sum_with_pending(transactions, budget, category, previous, current)

    def sum_with_pending(self, transactions, budget, category, previous, current) -> Decimal:
        pending_id = (current or previous or {}).get("_id")
        total = safe_sum(
            contribution(t, budget, category)
            for t in transactions
            if pending_id is None or t.get("_id") != pending_id
        )
        return max(total + contribution(current, budget, category), ZERO)


def strategy_from_name(name: Optional[str], store: DocumentStore) -> RecomputeStrategy:
    if not name or name == FullRecompute.name:
        return FullRecompute(store)
    if name == DeltaRecompute.name:
        return DeltaRecompute()
    raise ValueError(f"Unknown recompute strategy: {name}")


# =============================================================================
# ENGINE
# =============================================================================

class BudgetImpactEngine:
    """
    Budget impact computation, alert generation and read-only preview.
    """

    APPROACHING_LIMIT_PERCENT = Decimal('80')

    def __init__(self, store: DocumentStore, strategy: Optional[RecomputeStrategy] = None,
                 duplicate_detector=None, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.strategy = strategy or FullRecompute(store)
        self.duplicate_detector = duplicate_detector
        self.clock = clock or datetime.utcnow

    async def active_budgets(self, owner_id: str) -> List[Dict[str, Any]]:
        return await self.store.query("budgets", {"owner_id": owner_id, "is_active": True},
                                      order_by=[("period_start", -1)])

    async def budgets_affected(
        self,
        owner_id: str,
        previous: Optional[Dict[str, Any]],
        current: Optional[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Active budgets that either state of the transaction counts toward."""
        budgets = await self.active_budgets(owner_id)
        return [
            b for b in budgets
            if counts_toward_budget(previous, b) or counts_toward_budget(current, b)
        ]

    def compute_impact(self, transaction: Dict[str, Any], budget: Dict[str, Any],
                       action: str = "CREATE") -> List[BudgetImpact]:
        """
        Impacts of adding (CREATE/RESTORE) or removing (DELETE) one transaction
        from stored spent. Only expenses inside the budget period have impacts.
        """
        if transaction.get("type") != TransactionType.EXPENSE.value:
            return []
        probe = dict(transaction, is_deleted=False, owner_id=budget.get("owner_id"))
        if not counts_toward_budget(probe, budget):
            return []

        amount = to_decimal(transaction.get("amount"))
        sign = Decimal('-1') if action == "DELETE" else Decimal('1')
        impacts = []
        for category in matching_categories(budget, transaction.get("category_id")):
            new_spent = to_decimal(category.get("spent")) + sign * amount
            impacts.append(build_impact(budget, category, new_spent))
        return impacts

    async def recompute_budget(
        self,
        budget: Dict[str, Any],
        previous: Optional[Dict[str, Any]],
        current: Optional[Dict[str, Any]]
    ) -> Tuple[List[Dict[str, Any]], List[BudgetImpact]]:
        """
        New category documents for budget after the pending mutation, plus the
        impacts on categories the transaction touches.
        """
        touched_ids = set()
        for state in (previous, current):
            if state and counts_toward_budget(state, budget):
                touched_ids.update(c["id"] for c in matching_categories(budget, state.get("category_id")))

        categories = []
        impacts = []
        for category in budget.get("categories", []):
            if category["id"] not in touched_ids:
                categories.append(copy.deepcopy(category))
                continue
            new_spent = await self.strategy.compute_spent(budget, category, previous, current)
            impact = build_impact(budget, category, new_spent)
            impacts.append(impact)
            categories.append(refresh_category(category, spent=impact.amount_used))

        logger.info(
            f"[IMPACT] Budget {budget['_id']} recomputed ({self.strategy.name}): "
            f"{len(impacts)} categor{'y' if len(impacts) == 1 else 'ies'} affected"
        )
        return categories, impacts

    def build_alerts(
        self,
        budget: Dict[str, Any],
        impacts: List[BudgetImpact],
        action: str,
        transaction_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        At most one alert per category per mutation: over-budget (error) takes
        precedence over approaching-limit (warning). Deletes produce none.
        """
        if action == "DELETE":
            return []

        alerts = []
        for impact in impacts:
            if impact.is_over_budget:
                over_by = safe_subtract(impact.amount_used, impact.allocated)
                alert = BudgetAlert(
                    owner_id=budget["owner_id"],
                    budget_id=budget["_id"],
                    category_id=impact.budget_category_id,
                    transaction_id=transaction_id,
                    type=AlertType.OVER_BUDGET,
                    severity=AlertSeverity.ERROR,
                    message=f"You've exceeded your {impact.category_name} budget by {to_float(over_by):.2f}",
                    threshold=impact.allocated,
                    current_amount=impact.amount_used,
                    created_at=self.clock(),
                )
            elif to_decimal(impact.percentage_used) >= self.APPROACHING_LIMIT_PERCENT:
                threshold = to_decimal(impact.allocated) * self.APPROACHING_LIMIT_PERCENT / Decimal('100')
                alert = BudgetAlert(
                    owner_id=budget["owner_id"],
                    budget_id=budget["_id"],
                    category_id=impact.budget_category_id,
                    transaction_id=transaction_id,
                    type=AlertType.APPROACHING_LIMIT,
                    severity=AlertSeverity.WARNING,
                    message=(
                        f"You've used {impact.percentage_used:.0f}% of your "
                        f"{impact.category_name} budget"
                    ),
                    threshold=to_float(threshold),
                    current_amount=impact.amount_used,
                    created_at=self.clock(),
                )
            else:
                continue
            alerts.append(alert.dict(by_alias=True))
        return alerts

    # =========================================================================
    # PREVIEW (read only)
    # =========================================================================

    async def preview_impact(self, partial: Dict[str, Any], user_id: Optional[str]) -> ImpactPreview:
        """
        What a proposed transaction would do to the user's budgets.

        Raises ValidationError only for invalid input; every business-rule
        finding is returned as a warning.
        """
        require_actor(user_id)

        proposal = dict(partial)
        proposal.setdefault("type", TransactionType.EXPENSE.value)
        if proposal.get("date") is None:
            proposal["date"] = self.clock()
        assert_valid_transaction(proposal, is_update=False, now=self.clock())

        proposal["type"] = str(proposal["type"]).lower()
        proposal["date"] = normalize_datetime(proposal["date"])
        proposal["owner_id"] = user_id
        proposal["is_deleted"] = False
        amount = to_decimal(proposal["amount"])

        preview = ImpactPreview()

        if proposal["date"] > self.clock():
            preview.warnings.append("Transaction date is in the future")

        if self.duplicate_detector is not None:
            duplicates = await self.duplicate_detector.find_possible_duplicates(proposal)
            if duplicates:
                preview.warnings.append(
                    f"Possible duplicate: {len(duplicates)} similar transaction(s) already recorded"
                )

        if proposal["type"] != TransactionType.EXPENSE.value:
            return preview

        budgets = [b for b in await self.active_budgets(user_id) if counts_toward_budget(proposal, b)]
        if not budgets:
            preview.warnings.append("No active budget covers this transaction date")
            return preview

        category_id = proposal["category_id"]
        for budget in budgets:
            impacts = self.compute_impact(proposal, budget, "CREATE")
            if not impacts:
                preview.warnings.append(
                    f'The category "{category_id}" is not mapped to any budget category in {budget["name"]}'
                )
                preview.suggestions.append("This transaction will not affect your budget tracking.")
                continue

            preview.impacts.extend(impacts)
            affected = {i.budget_category_id for i in impacts}
            for impact in impacts:
                if impact.is_over_budget:
                    preview.warnings.append(f"This will put you over budget for {impact.category_name}")
                    spare = [
                        c["name"] for c in budget.get("categories", [])
                        if c["id"] not in affected
                        and safe_subtract(c.get("allocated"), c.get("spent")) > amount
                    ]
                    if spare:
                        preview.suggestions.append(f"Consider using budget from: {', '.join(spare)}")
                elif to_decimal(impact.percentage_used) >= self.APPROACHING_LIMIT_PERCENT:
                    preview.warnings.append(
                        f"This will use {impact.percentage_used:.0f}% of your {impact.category_name} budget"
                    )
        return preview
