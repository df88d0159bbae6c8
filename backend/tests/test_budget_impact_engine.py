"""
Budget impact engine tests
Testing: membership, impacts, recompute strategies, alerts, read-only preview
"""
from datetime import datetime
from decimal import Decimal

import pytest

from consistency_core.budget_impact_engine import (
    BudgetImpactEngine,
    DeltaRecompute,
    FullRecompute,
    build_impact,
    contribution,
    strategy_from_name,
)
from consistency_core.transaction_validation import ValidationError

from conftest import NOW, USER, OTHER_USER, dining_budget_payload, expense, fixed_clock


def budget_doc(spent=150.0):
    return {
        "_id": "b1",
        "owner_id": USER,
        "name": "March",
        "period_start": datetime(2024, 3, 1),
        "period_end": datetime(2024, 3, 31, 23, 59, 59),
        "is_active": True,
        "categories": [{
            "id": "cat-dining",
            "name": "Dining",
            "type": "expense",
            "transaction_categories": ["restaurants", "coffee"],
            "allocated": 200.0,
            "spent": spent,
            "remaining": 200.0 - spent,
            "is_over_budget": spent > 200.0,
        }],
    }


def stored_txn(txn_id, amount, **overrides):
    data = expense(amount)
    data.update({"_id": txn_id, "owner_id": USER, "is_deleted": False})
    data.update(overrides)
    return data


class TestContribution:
    """Which transactions count toward a category"""

    def test_matching_expense_counts(self):
        budget = budget_doc()
        assert contribution(stored_txn("t1", 80), budget, budget["categories"][0]) == Decimal("80")

    @pytest.mark.parametrize("overrides", [
        {"is_deleted": True},
        {"type": "income"},
        {"owner_id": OTHER_USER},
        {"date": datetime(2024, 4, 1)},
        {"category_id": "travel"},
    ])
    def test_non_counting_transactions(self, overrides):
        budget = budget_doc()
        assert contribution(stored_txn("t1", 80, **overrides), budget, budget["categories"][0]) == 0

    def test_period_bounds_are_inclusive(self):
        budget = budget_doc()
        category = budget["categories"][0]
        assert contribution(stored_txn("t1", 5, date=datetime(2024, 3, 1)), budget, category) == 5
        assert contribution(stored_txn("t2", 5, date=datetime(2024, 3, 31, 23, 59, 59)), budget, category) == 5

    def test_build_impact(self):
        budget = budget_doc()
        impact = build_impact(budget, budget["categories"][0], Decimal("230"))
        assert impact.amount_used == 230.0
        assert impact.previous_spent == 150.0
        assert impact.percentage_used == 115.0
        assert impact.remaining_budget == -30.0
        assert impact.is_over_budget


class TestRecomputeStrategies:
    """Delta and full recompute agree on consistent data"""

    @pytest.mark.asyncio
    async def test_strategies_agree(self, store):
        budget = budget_doc(spent=150.0)
        await store.put("transactions", "t1", stored_txn("t1", 100))
        await store.put("transactions", "t2", stored_txn("t2", 50, category_id="coffee"))
        category = budget["categories"][0]

        previous = stored_txn("t1", 100)
        current = stored_txn("t1", 120)

        full = await FullRecompute(store).compute_spent(budget, category, previous, current)
        delta = await DeltaRecompute().compute_spent(budget, category, previous, current)

        assert full == delta == Decimal("170")

    @pytest.mark.asyncio
    async def test_full_recompute_repairs_drift(self, store):
        budget = budget_doc(spent=999.0)
        await store.put("transactions", "t1", stored_txn("t1", 100))
        category = budget["categories"][0]

        full = await FullRecompute(store).compute_spent(budget, category, None, stored_txn("t9", 20))
        assert full == Decimal("120")

    @pytest.mark.asyncio
    async def test_delete_removes_contribution(self, store):
        budget = budget_doc(spent=100.0)
        await store.put("transactions", "t1", stored_txn("t1", 100))
        category = budget["categories"][0]
        deleted = stored_txn("t1", 100, is_deleted=True)

        full = await FullRecompute(store).compute_spent(budget, category, stored_txn("t1", 100), deleted)
        delta = await DeltaRecompute().compute_spent(budget, category, stored_txn("t1", 100), deleted)
        assert full == delta == 0

    def test_strategy_from_name(self, store):
        assert strategy_from_name(None, store).name == "full"
        assert strategy_from_name("delta", store).name == "delta"
        with pytest.raises(ValueError):
            strategy_from_name("sometimes", store)


class TestAlerts:
    """Alert thresholds"""

    def test_over_budget_alert(self, store):
        engine = BudgetImpactEngine(store, clock=fixed_clock)
        budget = budget_doc()
        impact = build_impact(budget, budget["categories"][0], Decimal("230"))

        alerts = engine.build_alerts(budget, [impact], "CREATE", "t1")

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert["type"] == "over-budget"
        assert alert["severity"] == "error"
        assert alert["message"] == "You've exceeded your Dining budget by 30.00"
        assert alert["threshold"] == 200.0
        assert alert["current_amount"] == 230.0
        assert alert["transaction_id"] == "t1"
        assert alert["created_at"] == NOW

    def test_approaching_limit_alert(self, store):
        engine = BudgetImpactEngine(store, clock=fixed_clock)
        budget = budget_doc()
        impact = build_impact(budget, budget["categories"][0], Decimal("160"))

        alerts = engine.build_alerts(budget, [impact], "UPDATE")

        assert [a["type"] for a in alerts] == ["approaching-limit"]
        assert alerts[0]["severity"] == "warning"
        assert alerts[0]["threshold"] == 160.0

    def test_below_threshold_and_delete_produce_none(self, store):
        engine = BudgetImpactEngine(store, clock=fixed_clock)
        budget = budget_doc()
        below = build_impact(budget, budget["categories"][0], Decimal("150"))
        over = build_impact(budget, budget["categories"][0], Decimal("500"))

        assert engine.build_alerts(budget, [below], "CREATE") == []
        assert engine.build_alerts(budget, [over], "DELETE") == []


class TestPreview:
    """Read-only impact preview"""

    async def _seed(self, facade):
        await facade.create_budget(dining_budget_payload(), USER)
        await facade.create_transaction(expense(150), USER)

    @pytest.mark.asyncio
    async def test_over_budget_preview_with_suggestion(self, facade, store):
        await self._seed(facade)
        budgets_before = await store.query("budgets")
        transactions_before = await store.query("transactions")

        preview = await facade.preview_budget_impact(
            {"amount": 80, "category_id": "restaurants", "date": datetime(2024, 3, 14)}, USER
        )

        assert len(preview.impacts) == 1
        assert preview.impacts[0].amount_used == 230.0
        assert preview.impacts[0].is_over_budget
        assert "This will put you over budget for Dining" in preview.warnings
        assert preview.suggestions == ["Consider using budget from: Groceries"]

        assert await store.query("budgets") == budgets_before
        assert await store.query("transactions") == transactions_before

    @pytest.mark.asyncio
    async def test_approaching_limit_preview(self, facade):
        await self._seed(facade)
        preview = await facade.preview_budget_impact({"amount": 10, "category_id": "coffee"}, USER)
        assert preview.warnings == ["This will use 80% of your Dining budget"]

    @pytest.mark.asyncio
    async def test_unmapped_category(self, facade):
        await self._seed(facade)
        preview = await facade.preview_budget_impact({"amount": 10, "category_id": "travel"}, USER)
        assert preview.impacts == []
        assert preview.warnings == [
            'The category "travel" is not mapped to any budget category in March'
        ]
        assert preview.suggestions == ["This transaction will not affect your budget tracking."]

    @pytest.mark.asyncio
    async def test_no_budget_for_date(self, facade):
        await self._seed(facade)
        preview = await facade.preview_budget_impact(
            {"amount": 10, "category_id": "restaurants", "date": datetime(2024, 5, 1)}, USER
        )
        assert preview.warnings == [
            "Transaction date is in the future",
            "No active budget covers this transaction date",
        ]

    @pytest.mark.asyncio
    async def test_possible_duplicate(self, facade):
        await self._seed(facade)
        preview = await facade.preview_budget_impact(
            {"amount": 150, "category_id": "restaurants", "date": datetime(2024, 3, 11, 9, 0)}, USER
        )
        assert "Possible duplicate: 1 similar transaction(s) already recorded" in preview.warnings

    @pytest.mark.asyncio
    async def test_invalid_input_raises(self, facade):
        with pytest.raises(ValidationError) as exc_info:
            await facade.preview_budget_impact({"category_id": "restaurants"}, USER)
        assert exc_info.value.field == "amount"

        with pytest.raises(ValidationError) as exc_info:
            await facade.preview_budget_impact({"amount": 5, "category_id": "restaurants"}, None)
        assert exc_info.value.code == "UNAUTHENTICATED"
