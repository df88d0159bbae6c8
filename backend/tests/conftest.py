"""
Shared fixtures for the consistency engine tests.

All engine tests run against InMemoryDocumentStore with a fixed clock.
"""
import asyncio
from datetime import datetime

import pytest

from consistency_core import (
    AlertChannel,
    DeltaRecompute,
    InMemoryDocumentStore,
    TransactionMutationFacade,
)
from consistency_core.document_store import InMemoryWriteBatch

NOW = datetime(2024, 3, 15, 12, 0, 0)
USER = "user-1"
OTHER_USER = "user-2"


def fixed_clock():
    return NOW


def dining_budget_payload(allocated: float = 200.0):
    """March budget with a Dining category mapped from restaurants/coffee"""
    return {
        "name": "March",
        "period_start": datetime(2024, 3, 1),
        "period_end": datetime(2024, 3, 31, 23, 59, 59),
        "categories": [
            {
                "id": "cat-dining",
                "name": "Dining",
                "allocated": allocated,
                "transaction_categories": ["restaurants", "coffee"],
            },
            {
                "id": "cat-groceries",
                "name": "Groceries",
                "allocated": 500.0,
                "transaction_categories": ["groceries"],
            },
        ],
    }


def expense(amount, category_id="restaurants", date=None, **extra):
    data = {
        "type": "expense",
        "amount": amount,
        "category_id": category_id,
        "date": date or datetime(2024, 3, 10, 19, 30),
        "description": extra.pop("description", "Dinner"),
    }
    data.update(extra)
    return data


def category(budget_doc, category_id):
    return next(c for c in budget_doc["categories"] if c["id"] == category_id)


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def alert_channel():
    return AlertChannel()


@pytest.fixture
def received_alerts(alert_channel):
    received = []
    alert_channel.subscribe(received.append)
    return received


@pytest.fixture
def facade(store, alert_channel):
    return TransactionMutationFacade(
        store,
        alert_channel=alert_channel,
        enable_post_commit_jobs=False,
        clock=fixed_clock,
    )


@pytest.fixture
def delta_facade(store, alert_channel):
    return TransactionMutationFacade(
        store,
        alert_channel=alert_channel,
        recompute_strategy=DeltaRecompute(),
        enable_post_commit_jobs=False,
        clock=fixed_clock,
    )


def build_facade(store, alert_channel=None):
    return TransactionMutationFacade(
        store,
        alert_channel=alert_channel or AlertChannel(),
        enable_post_commit_jobs=False,
        clock=fixed_clock,
    )


class YieldingStore(InMemoryDocumentStore):
    """Suspends on every read so concurrent writers interleave like they do against Mongo"""

    async def get(self, collection, doc_id):
        await asyncio.sleep(0)
        return await super().get(collection, doc_id)

    async def query(self, collection, filters=None, order_by=None, limit=None):
        await asyncio.sleep(0)
        return await super().query(collection, filters, order_by, limit)


class InterleavingBatch(InMemoryWriteBatch):

    async def _apply(self):
        hook = self.store.take_hook({op.collection for op in self._operations})
        if hook:
            await hook()
        await super()._apply()


class InterleavingStore(InMemoryDocumentStore):
    """
    Runs a coroutine once, right before the next batch that writes to a given
    collection commits: the other writer lands after this one has read.
    """

    def __init__(self):
        super().__init__()
        self._hooks = {}

    def before_commit_to(self, collection, hook):
        self._hooks[collection] = hook

    def take_hook(self, collections):
        for name in collections:
            if name in self._hooks:
                return self._hooks.pop(name)
        return None

    def batch(self):
        return InterleavingBatch(self)


@pytest.fixture
def yielding_store():
    return YieldingStore()


@pytest.fixture
def interleaving_store():
    return InterleavingStore()
