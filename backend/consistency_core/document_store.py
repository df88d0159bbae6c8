"""
DOCUMENT STORE ADAPTER

Abstract document store used by every engine in this package:
- get / put(merge) / query(filters, order_by, limit)
- batch() with set / update / commit (all-or-nothing)
- listen(collection, filters, on_next, on_error) -> unsubscribe

Two implementations:
- MotorDocumentStore: MongoDB via motor, batches run in a session transaction
- InMemoryDocumentStore: in-process store with the same contract (tests, local dev)

RULES:
- A batch update may carry an expected version; if the stored version differs
  the whole batch is rejected with StaleWriteError and nothing is written.
- Element updates set fields on matching array elements only (Mongo
  array_filters); elements that no longer match are left untouched.
- Store failures surface as CommitFailedError with no partial writes.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Tuple, Union
import asyncio
import copy
import logging

logger = logging.getLogger(__name__)


class StaleWriteError(Exception):
    """Raised when a versioned batch write finds a different stored version"""
    def __init__(self, collection: str, doc_id: str, expected_version: Optional[int]):
        self.collection = collection
        self.doc_id = doc_id
        self.expected_version = expected_version
        if expected_version is None:
            message = f"{collection}/{doc_id} does not exist"
        else:
            message = f"{collection}/{doc_id} is no longer at version {expected_version}"
        super().__init__(message)


class CommitFailedError(Exception):
    """Raised when the store rejects a batch for reasons other than a stale version"""
    pass


OrderBy = Union[str, List[Tuple[str, int]], None]


# =============================================================================
# FILTER EVALUATION (Mongo-style subset)
# =============================================================================

def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "$eq":
        return actual == expected
    if op == "$ne":
        return actual != expected
    if op == "$in":
        return actual in expected
    if op == "$nin":
        return actual not in expected
    if actual is None:
        return False
    if op == "$gt":
        return actual > expected
    if op == "$gte":
        return actual >= expected
    if op == "$lt":
        return actual < expected
    if op == "$lte":
        return actual <= expected
    raise ValueError(f"Unsupported filter operator: {op}")


def matches_filter(doc: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """Evaluate the operator subset shared by both store implementations."""
    if not filters:
        return True
    for key, condition in filters.items():
        actual = doc.get(key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, expected in condition.items():
                if not _compare(op, actual, expected):
                    return False
        elif actual != condition:
            return False
    return True


def _normalize_order(order_by: OrderBy) -> List[Tuple[str, int]]:
    if not order_by:
        return []
    if isinstance(order_by, str):
        if order_by.startswith("-"):
            return [(order_by[1:], -1)]
        return [(order_by, 1)]
    return list(order_by)


# =============================================================================
# CONTRACT
# =============================================================================

@dataclass
class ElementUpdate:
    """Set fields on the elements of an array field whose values equal every key in match"""
    array: str
    match: Dict[str, Any]
    fields: Dict[str, Any]

    def matches(self, element: Any) -> bool:
        return isinstance(element, dict) and all(element.get(k) == v for k, v in self.match.items())


@dataclass
class BatchOperation:
    kind: str
    collection: str
    doc_id: str
    document: Dict[str, Any] = field(default_factory=dict)
    expected_version: Optional[int] = None
    increment: Optional[Dict[str, int]] = None
    elements: List[ElementUpdate] = field(default_factory=list)


class WriteBatch(ABC):
    """Collects writes and applies them atomically on commit()."""

    def __init__(self):
        self._operations: List[BatchOperation] = []
        self._committed = False

    def set(self, collection: str, doc_id: str, document: Dict[str, Any]) -> "WriteBatch":
        doc = dict(document)
        doc["_id"] = doc_id
        self._operations.append(BatchOperation("set", collection, doc_id, doc))
        return self

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
        increment: Optional[Dict[str, int]] = None,
        elements: Optional[List[ElementUpdate]] = None
    ) -> "WriteBatch":
        fields = {k: v for k, v in fields.items() if k != "_id"}
        self._operations.append(
            BatchOperation("update", collection, doc_id, fields, expected_version, increment,
                           [e for e in (elements or []) if e.fields])
        )
        return self

    @property
    def operations(self) -> List[BatchOperation]:
        return list(self._operations)

    def __len__(self):
        return len(self._operations)

    async def commit(self):
        if self._committed:
            raise CommitFailedError("Batch already committed")
        if not self._operations:
            self._committed = True
            return
        await self._apply()
        self._committed = True

    @abstractmethod
    async def _apply(self):
        pass


class DocumentStore(ABC):
    """Abstract async document store"""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def put(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False):
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def batch(self) -> WriteBatch:
        pass

    @abstractmethod
    def listen(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]],
        on_next: Callable[[List[Dict[str, Any]]], Any],
        on_error: Optional[Callable[[Exception], Any]] = None
    ) -> Callable[[], None]:
        pass


# =============================================================================
# MONGODB (MOTOR)
# =============================================================================

class MotorWriteBatch(WriteBatch):

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        super().__init__()
        self.client = client
        self.db = db

    async def _apply(self):
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    for op in self._operations:
                        await self._apply_operation(op, session)
                    # Transaction commits here
        except StaleWriteError:
            raise
        except PyMongoError as e:
            logger.error(f"[STORE] Batch commit failed: {str(e)}")
            raise CommitFailedError(str(e)) from e

    async def _apply_operation(self, op: BatchOperation, session):
        collection = self.db[op.collection]
        if op.kind == "set":
            await collection.replace_one({"_id": op.doc_id}, op.document, upsert=True, session=session)
            return

        query: Dict[str, Any] = {"_id": op.doc_id}
        if op.expected_version is not None:
            query["version"] = op.expected_version

        update: Dict[str, Any] = {}
        to_set = dict(op.document)
        array_filters = []
        for i, element in enumerate(op.elements):
            identifier = f"e{i}"
            for name, value in element.fields.items():
                to_set[f"{element.array}.$[{identifier}].{name}"] = value
            array_filters.append({f"{identifier}.{k}": v for k, v in element.match.items()})
        if to_set:
            update["$set"] = to_set
        if op.increment:
            update["$inc"] = op.increment
        if not update:
            return

        result = await collection.update_one(
            query, update, array_filters=array_filters or None, session=session
        )
        if result.matched_count == 0:
            # Raising inside start_transaction aborts every write in the batch
            raise StaleWriteError(op.collection, op.doc_id, op.expected_version)


class MotorDocumentStore(DocumentStore):
    """
    MongoDB-backed store.

    Requires a replica set (or mongos) for multi-document transactions.
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    async def create_indexes(self):
        """Create indexes used by the engine queries"""
        await self.db.transactions.create_index([("owner_id", 1), ("date", -1)])
        await self.db.transactions.create_index([("owner_id", 1), ("category_id", 1)])
        await self.db.budgets.create_index([("owner_id", 1), ("is_active", 1)])
        await self.db.audit_logs.create_index([("owner_id", 1), ("timestamp", -1)])
        await self.db.audit_logs.create_index([("entity_id", 1), ("timestamp", -1)])
        await self.db.budget_alerts.create_index([("owner_id", 1), ("created_at", -1)])
        await self.db.transaction_versions.create_index([("entity_id", 1), ("version_number", -1)])
        await self.db.budget_versions.create_index([("entity_id", 1), ("version_number", -1)])
        logger.info("[STORE] Indexes created")

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[collection].find_one({"_id": doc_id})

    async def put(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False):
        fields = {k: v for k, v in fields.items() if k != "_id"}
        try:
            if merge:
                await self.db[collection].update_one({"_id": doc_id}, {"$set": fields}, upsert=True)
            else:
                await self.db[collection].replace_one({"_id": doc_id}, fields, upsert=True)
        except PyMongoError as e:
            raise CommitFailedError(str(e)) from e

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filters or {})
        order = _normalize_order(order_by)
        if order:
            cursor = cursor.sort(order)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=limit)

    def batch(self) -> WriteBatch:
        return MotorWriteBatch(self.client, self.db)

    def listen(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]],
        on_next: Callable[[List[Dict[str, Any]]], Any],
        on_error: Optional[Callable[[Exception], Any]] = None
    ) -> Callable[[], None]:
        """Watch a collection via change streams and deliver the refreshed result set."""

        async def _watch():
            try:
                on_next(await self.query(collection, filters))
                async with self.db[collection].watch(full_document="updateLookup") as stream:
                    async for change in stream:
                        document = change.get("fullDocument")
                        if document is not None and not matches_filter(document, filters):
                            continue
                        on_next(await self.query(collection, filters))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[STORE] Listener on {collection} failed: {str(e)}")
                if on_error:
                    on_error(e)

        task = asyncio.ensure_future(_watch())

        def unsubscribe():
            task.cancel()

        return unsubscribe


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryWriteBatch(WriteBatch):

    def __init__(self, store: "InMemoryDocumentStore"):
        super().__init__()
        self.store = store

    async def _apply(self):
        await self.store._apply_batch(self._operations)


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store implementing the DocumentStore contract.

    Documents are deep-copied on the way in and out so callers never share
    state with the store.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: List[Tuple[str, Optional[Dict[str, Any]], Callable, Optional[Callable]]] = []
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def put(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False):
        async with self._lock:
            docs = self._collection(collection)
            if merge and doc_id in docs:
                docs[doc_id].update(copy.deepcopy(fields))
            else:
                docs[doc_id] = copy.deepcopy(fields)
            docs[doc_id]["_id"] = doc_id
        self._notify({collection})

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self._query_sync(collection, filters, order_by, limit)

    def _query_sync(self, collection, filters=None, order_by=None, limit=None) -> List[Dict[str, Any]]:
        results = [
            copy.deepcopy(doc)
            for doc in self._collection(collection).values()
            if matches_filter(doc, filters)
        ]
        # Stable multi-key sort: apply keys in reverse order
        for key, direction in reversed(_normalize_order(order_by)):
            results.sort(
                key=lambda d: (d.get(key) is not None, d.get(key)),
                reverse=direction < 0
            )
        if limit:
            results = results[:limit]
        return results

    def batch(self) -> WriteBatch:
        return InMemoryWriteBatch(self)

    async def _apply_batch(self, operations: List[BatchOperation]):
        async with self._lock:
            # Validate every precondition before touching any document
            for op in operations:
                if op.kind != "update":
                    continue
                current = self._collection(op.collection).get(op.doc_id)
                if current is None:
                    raise StaleWriteError(op.collection, op.doc_id, op.expected_version)
                if op.expected_version is not None and current.get("version") != op.expected_version:
                    raise StaleWriteError(op.collection, op.doc_id, op.expected_version)

            staged = {
                name: copy.deepcopy(self._collection(name))
                for name in {op.collection for op in operations}
            }
            for op in operations:
                docs = staged[op.collection]
                if op.kind == "set":
                    docs[op.doc_id] = copy.deepcopy(op.document)
                    continue
                target = docs[op.doc_id]
                target.update(copy.deepcopy(op.document))
                for element_update in op.elements:
                    for element in target.get(element_update.array) or []:
                        if element_update.matches(element):
                            element.update(copy.deepcopy(element_update.fields))
                for key, amount in (op.increment or {}).items():
                    target[key] = target.get(key, 0) + amount

            self._collections.update(staged)
        self._notify(set(staged))

    def listen(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]],
        on_next: Callable[[List[Dict[str, Any]]], Any],
        on_error: Optional[Callable[[Exception], Any]] = None
    ) -> Callable[[], None]:
        listener = (collection, filters, on_next, on_error)
        self._listeners.append(listener)
        self._deliver(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, collections):
        for listener in list(self._listeners):
            if listener[0] in collections:
                self._deliver(listener)

    def _deliver(self, listener):
        collection, filters, on_next, on_error = listener
        try:
            on_next(self._query_sync(collection, filters))
        except Exception as e:
            logger.error(f"[STORE] Listener on {collection} failed: {str(e)}")
            if on_error:
                on_error(e)
