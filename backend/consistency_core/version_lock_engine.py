"""
VERSION & LOCK ENGINE

Provides:
1. Version-stamped read-modify-write (OptimisticLockManager.mutate)
2. Full snapshot of every accepted version in a version collection
3. Pluggable conflict resolvers (field merge, reject)
4. Advisory soft locks with expiry (AdvisoryLock)

RULES:
- The version precondition inside the atomic batch is the correctness
  mechanism. Soft locks only tell other actors to back off.
- Version increases by exactly one per accepted mutation.
- An accepted mutation clears the soft lock fields.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Callable, Awaitable, Iterable
import copy
import json
import logging

from .document_store import DocumentStore, WriteBatch, StaleWriteError
from .change_auditor import values_equal

logger = logging.getLogger(__name__)


class ConflictError(Exception):
    """Raised when the presented version is stale and cannot be merged"""
    def __init__(self, entity_id: str, current_version: Optional[int], attempted_version: Optional[int],
                 unresolved_fields: Optional[List[str]] = None, suggestion: Optional[str] = None):
        self.entity_id = entity_id
        self.current_version = current_version
        self.attempted_version = attempted_version
        self.unresolved_fields = unresolved_fields or []
        self.suggestion = suggestion or "Reload the latest version and reapply your changes."
        detail = f" (conflicting fields: {', '.join(self.unresolved_fields)})" if self.unresolved_fields else ""
        super().__init__(
            f"Version conflict on {entity_id}: attempted v{attempted_version}, "
            f"current v{current_version}{detail}"
        )


class LockHeldError(Exception):
    """Raised when another actor holds an unexpired soft lock"""
    def __init__(self, entity_id: str, locked_by: str, lock_expiry: Optional[datetime]):
        self.entity_id = entity_id
        self.locked_by = locked_by
        self.lock_expiry = lock_expiry
        super().__init__(f"{entity_id} is locked by {locked_by} until {lock_expiry}")


class NotFoundError(Exception):
    """Raised when the target document does not exist"""
    def __init__(self, collection: str, entity_id: str):
        self.collection = collection
        self.entity_id = entity_id
        super().__init__(f"{collection} {entity_id} not found")


# =============================================================================
# CONFLICT RESOLUTION
# =============================================================================

@dataclass
class MergeResult:
    """Outcome of resolving a stale write"""
    merged: Dict[str, Any]
    unresolved: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def is_resolved(self) -> bool:
        return not self.unresolved


Resolver = Callable[[Dict[str, Any], Dict[str, Any], Optional[Dict[str, Any]]], MergeResult]


def field_merge_resolver(fields: Iterable[str], last_writer_wins: bool = False) -> Resolver:
    """
    Field-level three-way merge over the given fields.

    Per field: take incoming when current did not change it since base, keep
    current when incoming did not change it. When both changed it to different
    values the field is unresolved, or incoming wins with an audit note when
    last_writer_wins is set.
    """
    fields = tuple(fields)

    def resolve(current: Dict[str, Any], incoming: Dict[str, Any],
                base: Optional[Dict[str, Any]]) -> MergeResult:
        merged = copy.deepcopy(current)
        unresolved = []
        notes = []
        for name in fields:
            current_value = current.get(name)
            incoming_value = incoming.get(name)
            if values_equal(current_value, incoming_value):
                continue
            if base is None:
                current_changed = incoming_changed = True
            else:
                current_changed = not values_equal(current_value, base.get(name))
                incoming_changed = not values_equal(incoming_value, base.get(name))

            if not incoming_changed:
                continue
            if not current_changed:
                merged[name] = copy.deepcopy(incoming_value)
                continue
            if last_writer_wins:
                merged[name] = copy.deepcopy(incoming_value)
                notes.append(f"last-writer-wins applied to '{name}'")
            else:
                unresolved.append(name)
        return MergeResult(merged=merged, unresolved=unresolved, notes=notes)

    return resolve


def reject_resolver(current: Dict[str, Any], incoming: Dict[str, Any],
                    base: Optional[Dict[str, Any]]) -> MergeResult:
    """Never merge: any stale write is a conflict."""
    return MergeResult(merged=current, unresolved=["version"])


# =============================================================================
# ADVISORY LOCK
# =============================================================================

class AdvisoryLock:
    """
    Soft lock stored on the document (locked_by / lock_expiry).

    Blocks other actors until expiry; expired locks are ignored and may be
    reclaimed. Acquiring does not change the document version.
    """

    DEFAULT_DURATION_SECONDS = 300

    def __init__(self, store: DocumentStore, collection: str = "transactions",
                 clock: Optional[Callable[[], datetime]] = None,
                 default_duration_seconds: Optional[int] = None):
        self.store = store
        self.collection = collection
        self.clock = clock or datetime.utcnow
        self.default_duration_seconds = default_duration_seconds or self.DEFAULT_DURATION_SECONDS

    @staticmethod
    def blocked_by_other(doc: Dict[str, Any], actor_id: str, now: datetime) -> bool:
        locked_by = doc.get("locked_by")
        expiry = doc.get("lock_expiry")
        if not locked_by or locked_by == actor_id:
            return False
        return expiry is not None and expiry > now

    async def _load(self, entity_id: str) -> Dict[str, Any]:
        doc = await self.store.get(self.collection, entity_id)
        if not doc:
            raise NotFoundError(self.collection, entity_id)
        return doc

    async def check(self, entity_id: str, actor_id: str) -> Dict[str, Any]:
        """Raise LockHeldError if another actor holds the lock; return the document."""
        doc = await self._load(entity_id)
        if self.blocked_by_other(doc, actor_id, self.clock()):
            raise LockHeldError(entity_id, doc["locked_by"], doc.get("lock_expiry"))
        return doc

    async def acquire(self, entity_id: str, actor_id: str,
                      duration_seconds: Optional[int] = None) -> Dict[str, Any]:
        doc = await self.check(entity_id, actor_id)
        expiry = self.clock() + timedelta(seconds=duration_seconds or self.default_duration_seconds)

        batch = self.store.batch()
        batch.update(
            self.collection,
            entity_id,
            {"locked_by": actor_id, "lock_expiry": expiry},
            expected_version=doc.get("version")
        )
        try:
            await batch.commit()
        except StaleWriteError:
            # Someone mutated or locked it in between; re-check against fresh state
            fresh = await self.check(entity_id, actor_id)
            raise ConflictError(entity_id, fresh.get("version"), doc.get("version"),
                                suggestion="Document changed while acquiring the lock. Retry.")

        logger.info(f"[LOCK] Acquired {self.collection}/{entity_id} by {actor_id} until {expiry}")
        return {"entity_id": entity_id, "locked_by": actor_id, "lock_expiry": expiry}

    async def release(self, entity_id: str, actor_id: str) -> bool:
        """Release a lock held by actor_id. Returns False if actor_id is not the holder."""
        doc = await self._load(entity_id)
        if doc.get("locked_by") != actor_id:
            return False

        batch = self.store.batch()
        batch.update(
            self.collection,
            entity_id,
            {"locked_by": None, "lock_expiry": None},
            expected_version=doc.get("version")
        )
        try:
            await batch.commit()
        except StaleWriteError:
            # A committed mutation already cleared it
            return False

        logger.info(f"[LOCK] Released {self.collection}/{entity_id} by {actor_id}")
        return True


# =============================================================================
# OPTIMISTIC LOCK MANAGER
# =============================================================================

@dataclass
class MutationResult:
    previous: Dict[str, Any]
    document: Dict[str, Any]
    version: int
    merged: bool = False
    notes: List[str] = field(default_factory=list)


Mutator = Callable[[Dict[str, Any]], Dict[str, Any]]
ExtraWrites = Callable[[WriteBatch, Dict[str, Any], Dict[str, Any]], Awaitable[None]]
Precondition = Callable[[Dict[str, Any]], None]


class OptimisticLockManager:
    """
    Version control and lock enforcement for mutable documents.
    """

    VERSION_COLLECTIONS = {
        "transactions": "transaction_versions",
        "budgets": "budget_versions",
    }

    def __init__(self, store: DocumentStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or datetime.utcnow

    def _get_version_collection(self, collection: str) -> str:
        if collection not in self.VERSION_COLLECTIONS:
            raise ValueError(f"No version collection configured for: {collection}")
        return self.VERSION_COLLECTIONS[collection]

    def _clean_snapshot(self, data: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = copy.deepcopy(data)
        snapshot.pop("_id", None)
        return snapshot

    def stage_version_snapshot(
        self,
        batch: WriteBatch,
        collection: str,
        document: Dict[str, Any],
        action: str,
        user_id: str
    ):
        """
        Add the full snapshot of document's current version to the batch.
        """
        entity_id = document["_id"]
        version_number = document.get("version", 1)
        clean_snapshot = self._clean_snapshot(document)
        batch.set(
            self._get_version_collection(collection),
            f"{entity_id}:{version_number}",
            {
                "entity_id": entity_id,
                "version_number": version_number,
                "snapshot_data": clean_snapshot,
                "snapshot_json": json.dumps(clean_snapshot, default=str, sort_keys=True),
                "action": action,
                "created_by": user_id,
                "created_at": self.clock(),
            }
        )

    async def get_version(self, collection: str, entity_id: str, version_number: int) -> Optional[Dict[str, Any]]:
        doc = await self.store.get(self._get_version_collection(collection), f"{entity_id}:{version_number}")
        return doc["snapshot_data"] if doc else None

    async def get_version_history(self, collection: str, entity_id: str) -> List[Dict[str, Any]]:
        return await self.store.query(
            self._get_version_collection(collection),
            {"entity_id": entity_id},
            order_by=[("version_number", -1)]
        )

    async def mutate(
        self,
        collection: str,
        entity_id: str,
        expected_version: Optional[int],
        mutator: Mutator,
        actor_id: str,
        resolver: Optional[Resolver] = None,
        extra_writes: Optional[ExtraWrites] = None,
        action: str = "UPDATE",
        precondition: Optional[Precondition] = None
    ) -> MutationResult:
        """
        Apply mutator to the document at expected_version.

        precondition is checked against the stored document, never the stale
        base, and may raise to refuse the mutation. A stale expected_version is
        resolved against the stored snapshot of that version; an unresolved
        merge raises ConflictError. extra_writes may add co-located writes to
        the same batch before it commits.
        """
        current = await self.store.get(collection, entity_id)
        if not current:
            raise NotFoundError(collection, entity_id)
        if precondition:
            precondition(current)

        now = self.clock()
        if AdvisoryLock.blocked_by_other(current, actor_id, now):
            raise LockHeldError(entity_id, current["locked_by"], current.get("lock_expiry"))

        current_version = current.get("version", 1)
        notes: List[str] = []
        merged = False

        if expected_version is None or expected_version == current_version:
            candidate = mutator(copy.deepcopy(current))
        else:
            if expected_version > current_version:
                raise ConflictError(entity_id, current_version, expected_version,
                                    suggestion="Presented version is newer than stored. Reload.")
            base = await self.get_version(collection, entity_id, expected_version)
            incoming = mutator(copy.deepcopy(base if base is not None else current))
            result = (resolver or reject_resolver)(current, incoming, base)
            if not result.is_resolved:
                logger.warning(
                    f"[LOCK] Conflict on {collection}/{entity_id}: v{expected_version} vs "
                    f"v{current_version}, unresolved={result.unresolved}"
                )
                raise ConflictError(
                    entity_id, current_version, expected_version,
                    unresolved_fields=result.unresolved,
                    suggestion=(
                        f"Fields changed by another writer: {', '.join(result.unresolved)}. "
                        f"Reload version {current_version} and choose the values to keep."
                    )
                )
            candidate = result.merged
            notes = result.notes
            merged = True
            logger.info(f"[LOCK] Merged stale write on {collection}/{entity_id} v{expected_version}->v{current_version}")

        new_version = current_version + 1
        candidate["_id"] = entity_id
        candidate["version"] = new_version
        candidate["updated_at"] = now
        candidate["last_modified_by"] = actor_id
        candidate["locked_by"] = None
        candidate["lock_expiry"] = None

        batch = self.store.batch()
        batch.update(collection, entity_id, candidate, expected_version=current_version)
        self.stage_version_snapshot(batch, collection, candidate, action, actor_id)

        if extra_writes:
            await extra_writes(batch, current, candidate)

        try:
            await batch.commit()
        except StaleWriteError as e:
            if e.collection != collection or e.doc_id != entity_id:
                raise
            fresh = await self.store.get(collection, entity_id)
            raise ConflictError(
                entity_id,
                fresh.get("version") if fresh else None,
                expected_version if expected_version is not None else current_version,
                suggestion="Another writer committed first. Reload and retry."
            ) from e

        logger.info(f"[LOCK] {collection}/{entity_id} committed v{new_version} by {actor_id}")
        return MutationResult(previous=current, document=candidate, version=new_version,
                              merged=merged, notes=notes)
