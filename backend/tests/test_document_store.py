"""
Document store contract tests (in-memory implementation)
Testing: get/put, filtered queries, atomic batches, version preconditions, listeners
"""
from datetime import datetime

import pytest

from consistency_core.document_store import (
    ElementUpdate,
    InMemoryDocumentStore,
    StaleWriteError,
    CommitFailedError,
    matches_filter,
)


class TestFilters:
    """Mongo-style filter subset"""

    def test_equality_and_operators(self):
        doc = {"owner_id": "u1", "amount": 50, "date": datetime(2024, 3, 10)}
        assert matches_filter(doc, {"owner_id": "u1"})
        assert not matches_filter(doc, {"owner_id": "u2"})
        assert matches_filter(doc, {"amount": {"$gte": 50, "$lt": 51}})
        assert matches_filter(doc, {"date": {"$lte": datetime(2024, 3, 31)}})
        assert matches_filter(doc, {"owner_id": {"$in": ["u1", "u3"]}})
        assert not matches_filter(doc, {"owner_id": {"$nin": ["u1"]}})

    def test_missing_field_never_satisfies_range(self):
        assert not matches_filter({"amount": 5}, {"date": {"$gte": datetime(2024, 1, 1)}})


class TestInMemoryStore:
    """Basic reads and writes"""

    @pytest.mark.asyncio
    async def test_put_get_returns_copies(self):
        store = InMemoryDocumentStore()
        await store.put("things", "a", {"value": [1, 2]})

        doc = await store.get("things", "a")
        doc["value"].append(3)

        again = await store.get("things", "a")
        assert again == {"_id": "a", "value": [1, 2]}

    @pytest.mark.asyncio
    async def test_put_merge(self):
        store = InMemoryDocumentStore()
        await store.put("things", "a", {"x": 1, "y": 2})
        await store.put("things", "a", {"y": 3}, merge=True)
        assert await store.get("things", "a") == {"_id": "a", "x": 1, "y": 3}

    @pytest.mark.asyncio
    async def test_query_order_and_limit(self):
        store = InMemoryDocumentStore()
        for i, amount in enumerate([30, 10, 20]):
            await store.put("txns", f"t{i}", {"owner_id": "u1", "amount": amount})
        await store.put("txns", "other", {"owner_id": "u2", "amount": 99})

        results = await store.query("txns", {"owner_id": "u1"}, order_by=[("amount", -1)], limit=2)
        assert [r["amount"] for r in results] == [30, 20]

        ascending = await store.query("txns", {"owner_id": "u1"}, order_by="amount")
        assert [r["amount"] for r in ascending] == [10, 20, 30]


class TestWriteBatch:
    """All-or-nothing batch semantics"""

    @pytest.mark.asyncio
    async def test_batch_applies_all_writes(self):
        store = InMemoryDocumentStore()
        await store.put("docs", "a", {"version": 1, "value": "old"})

        batch = store.batch()
        batch.update("docs", "a", {"value": "new"}, expected_version=1, increment={"version": 1})
        batch.set("log", "l1", {"msg": "changed"})
        await batch.commit()

        assert await store.get("docs", "a") == {"_id": "a", "version": 2, "value": "new"}
        assert await store.get("log", "l1") == {"_id": "l1", "msg": "changed"}

    @pytest.mark.asyncio
    async def test_stale_version_rejects_whole_batch(self):
        store = InMemoryDocumentStore()
        await store.put("docs", "a", {"version": 2, "value": "current"})

        batch = store.batch()
        batch.set("log", "l1", {"msg": "should not exist"})
        batch.update("docs", "a", {"value": "stale"}, expected_version=1)

        with pytest.raises(StaleWriteError) as exc_info:
            await batch.commit()

        assert exc_info.value.doc_id == "a"
        assert (await store.get("docs", "a"))["value"] == "current"
        assert await store.get("log", "l1") is None

    @pytest.mark.asyncio
    async def test_update_of_missing_document_fails(self):
        store = InMemoryDocumentStore()
        batch = store.batch()
        batch.update("docs", "missing", {"value": 1})
        with pytest.raises(StaleWriteError):
            await batch.commit()

    @pytest.mark.asyncio
    async def test_element_update_touches_only_matching_elements(self):
        store = InMemoryDocumentStore()
        await store.put("budgets", "b1", {"version": 1, "categories": [
            {"id": "c1", "allocated": 100, "spent": 0},
            {"id": "c2", "allocated": 900, "spent": 0},
        ]})

        batch = store.batch()
        batch.update("budgets", "b1", {"note": "synced"}, increment={"version": 1}, elements=[
            ElementUpdate("categories", {"id": "c1", "allocated": 100}, {"spent": 40}),
            ElementUpdate("categories", {"id": "c2", "allocated": 500}, {"spent": 70}),
        ])
        await batch.commit()

        doc = await store.get("budgets", "b1")
        assert doc["version"] == 2
        assert doc["note"] == "synced"
        assert doc["categories"] == [
            {"id": "c1", "allocated": 100, "spent": 40},
            {"id": "c2", "allocated": 900, "spent": 0},
        ]

    @pytest.mark.asyncio
    async def test_element_update_rolls_back_with_batch(self):
        store = InMemoryDocumentStore()
        await store.put("budgets", "b1", {"version": 1, "categories": [{"id": "c1", "spent": 0}]})
        await store.put("docs", "a", {"version": 3})

        batch = store.batch()
        batch.update("budgets", "b1", {}, elements=[ElementUpdate("categories", {"id": "c1"}, {"spent": 5})])
        batch.update("docs", "a", {"value": "stale"}, expected_version=2)

        with pytest.raises(StaleWriteError):
            await batch.commit()
        assert (await store.get("budgets", "b1"))["categories"] == [{"id": "c1", "spent": 0}]

    @pytest.mark.asyncio
    async def test_batch_cannot_commit_twice(self):
        store = InMemoryDocumentStore()
        batch = store.batch()
        batch.set("docs", "a", {"value": 1})
        await batch.commit()
        with pytest.raises(CommitFailedError):
            await batch.commit()


class TestListeners:
    """Change listeners"""

    @pytest.mark.asyncio
    async def test_listener_receives_initial_and_updated_results(self):
        store = InMemoryDocumentStore()
        await store.put("alerts", "a1", {"owner_id": "u1"})
        snapshots = []

        unsubscribe = store.listen("alerts", {"owner_id": "u1"}, snapshots.append)
        await store.put("alerts", "a2", {"owner_id": "u1"})
        await store.put("alerts", "a3", {"owner_id": "u2"})
        unsubscribe()
        await store.put("alerts", "a4", {"owner_id": "u1"})

        assert [len(s) for s in snapshots] == [1, 2, 2]

    @pytest.mark.asyncio
    async def test_listener_errors_are_routed(self):
        store = InMemoryDocumentStore()
        errors = []

        def broken(_):
            raise RuntimeError("boom")

        store.listen("alerts", None, broken, errors.append)
        assert len(errors) == 1
        assert str(errors[0]) == "boom"
