"""
TRANSACTION MUTATION FACADE

Single entry point for transaction and budget writes.

Every transaction mutation runs the same stages:
    VALIDATE -> LOCK_CHECK -> IMPACT_COMPUTE -> ATOMIC_COMMIT -> POST_COMMIT

RULES:
- Any failure before ATOMIC_COMMIT aborts with nothing written
- ATOMIC_COMMIT writes transaction + version snapshot + budget categories +
  audit entry + alerts + sync log in one batch
- POST_COMMIT (alert delivery, historical recalculation job) is
  fire-and-forget and never rolls back the commit
- ConflictError is surfaced to the caller with a merge suggestion; no
  automatic retry
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Callable
import copy
import logging

from .background_job_engine import BackgroundJobEngine, JobType
from .budget_impact_engine import (
    BudgetImpactEngine, BudgetImpact, FullRecompute, ImpactPreview, RecomputeStrategy, build_impact,
)
from .change_auditor import ChangeAuditor
from .document_store import DocumentStore, WriteBatch
from .domain_events import AlertChannel, BudgetAlertEvent, PendingAlerts
from .duplicate_protection import DuplicateTransactionDetector
from .entities import (
    AuditAction, Budget, BudgetCategory, EntityType, Transaction,
    BUDGET_MUTABLE_FIELDS, TRANSACTION_MUTABLE_FIELDS, category_from_document, derived_fields_update,
    new_id, refresh_category,
)
from .financial_precision import to_decimal, validate_non_negative, NegativeValueError
from .integrity_verifier import IntegrityVerifier, IntegrityReport
from .reconciliation_service import ReconciliationService, ReconciliationResult, ReconciliationReport
from .transaction_validation import (
    ValidationError, assert_valid_transaction, normalize_datetime, require_actor, sanitize_transaction,
)
from .version_lock_engine import (
    AdvisoryLock, NotFoundError, OptimisticLockManager, Resolver, field_merge_resolver,
)

logger = logging.getLogger(__name__)


class MutationStage(str, Enum):
    VALIDATE = "VALIDATE"
    LOCK_CHECK = "LOCK_CHECK"
    IMPACT_COMPUTE = "IMPACT_COMPUTE"
    ATOMIC_COMMIT = "ATOMIC_COMMIT"
    POST_COMMIT = "POST_COMMIT"


@dataclass
class MutationContext:
    """Per-mutation state carried through the stages"""
    action: str
    actor_id: str
    entity_id: Optional[str] = None
    stage: MutationStage = MutationStage.VALIDATE
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    impacts: List[BudgetImpact] = field(default_factory=list)
    alerts: List[Dict[str, Any]] = field(default_factory=list)

    def advance(self, stage: MutationStage):
        self.stage = stage
        logger.debug(f"[FACADE] {self.action} {self.entity_id or '<new>'} -> {stage.value}")


class TransactionMutationFacade:
    """
    Orchestrates validation, locking, budget impact, audit and alerts.
    """

    TRANSACTIONS = "transactions"
    BUDGETS = "budgets"

    def __init__(
        self,
        store: DocumentStore,
        alert_channel: Optional[AlertChannel] = None,
        recompute_strategy: Optional[RecomputeStrategy] = None,
        job_engine: Optional[BackgroundJobEngine] = None,
        enable_post_commit_jobs: bool = True,
        soft_lock_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.clock = clock or datetime.utcnow
        self.alert_channel = alert_channel or AlertChannel()
        self.auditor = ChangeAuditor(clock=self.clock)
        self.verifier = IntegrityVerifier(clock=self.clock)
        self.lock_manager = OptimisticLockManager(store, clock=self.clock)
        self.locks = AdvisoryLock(store, self.TRANSACTIONS, clock=self.clock,
                                  default_duration_seconds=soft_lock_seconds)
        self.duplicates = DuplicateTransactionDetector(store)
        self.impact_engine = BudgetImpactEngine(
            store, strategy=recompute_strategy, duplicate_detector=self.duplicates, clock=self.clock
        )
        self.reconciliation = ReconciliationService(store, verifier=self.verifier, clock=self.clock)
        self.job_engine = job_engine or BackgroundJobEngine(store, self.reconciliation, clock=self.clock)
        self.enable_post_commit_jobs = enable_post_commit_jobs

    # =========================================================================
    # SHARED STAGES
    # =========================================================================

    async def _stage_budget_writes(
        self,
        ctx: MutationContext,
        batch: WriteBatch,
        owner_id: str,
        previous: Optional[Dict[str, Any]],
        current: Optional[Dict[str, Any]]
    ):
        """IMPACT_COMPUTE: recompute touched budgets and stage their writes."""
        ctx.advance(MutationStage.IMPACT_COMPUTE)
        budgets = await self.impact_engine.budgets_affected(owner_id, previous, current)
        now = self.clock()

        for budget in budgets:
            categories, impacts = await self.impact_engine.recompute_budget(budget, previous, current)
            if not impacts:
                continue
            alerts = self.impact_engine.build_alerts(budget, impacts, ctx.action, ctx.entity_id)

            # No precondition on the budget version: concurrent writers to the same
            # category may drift, repaired by the historical recalculation job.
            # Only derived totals of touched categories are written; allocations
            # and untouched categories stay as the last committed writer left them.
            touched = {i.budget_category_id for i in impacts}
            batch.update(
                self.BUDGETS,
                budget["_id"],
                {"updated_at": now, "last_modified_by": ctx.actor_id},
                increment={"version": 1},
                elements=[derived_fields_update(c) for c in categories if c["id"] in touched]
            )
            for alert in alerts:
                batch.set("budget_alerts", alert["_id"], alert)

            batch.set("budget_sync_log", new_id(), {
                "transaction_id": ctx.entity_id,
                "budget_id": budget["_id"],
                "owner_id": owner_id,
                "event_type": ctx.action,
                "strategy": self.impact_engine.strategy.name,
                "impacts": [vars(i).copy() for i in impacts],
                "alert_ids": [a["_id"] for a in alerts],
                "synced_at": now,
            })
            ctx.impacts.extend(impacts)
            ctx.alerts.extend(alerts)

    def _stage_audit(self, ctx: MutationContext, batch: WriteBatch,
                     previous: Optional[Dict[str, Any]], current: Optional[Dict[str, Any]]):
        metadata = dict(ctx.metadata)
        if ctx.warnings:
            metadata["warnings"] = list(ctx.warnings)
        if current is not None:
            metadata["version"] = current.get("version")
        entry = self.auditor.record(
            ctx.action,
            ctx.actor_id,
            ctx.entity_id,
            previous_state=previous,
            new_state=current,
            metadata=metadata,
        )
        batch.set("audit_logs", entry["_id"], entry)

    async def _post_commit(self, ctx: MutationContext, owner_id: str, pending: PendingAlerts):
        """Fire-and-forget: failures are logged, the commit stands."""
        ctx.advance(MutationStage.POST_COMMIT)
        try:
            await pending.emit()
        except Exception as e:
            logger.error(f"[FACADE] Alert delivery failed for {ctx.entity_id}: {str(e)}")

        if not self.enable_post_commit_jobs:
            return
        try:
            job_id = await self.job_engine.schedule_job(
                JobType.HISTORICAL_RECALCULATION,
                {"trigger": ctx.action, "transaction_id": ctx.entity_id},
                owner_id,
                scheduled_by=ctx.actor_id
            )
            await self.job_engine.run_job_async(job_id)
        except Exception as e:
            logger.error(f"[FACADE] Post-commit job scheduling failed for {ctx.entity_id}: {str(e)}")

    def _require_live(self, current: Dict[str, Any]):
        """Deleted transactions only accept RESTORE, whatever version the caller presents."""
        if current.get("is_deleted"):
            raise NotFoundError(self.TRANSACTIONS, current["_id"])

    def _queue_alerts(self, ctx: MutationContext) -> PendingAlerts:
        pending = self.alert_channel.pending()
        for alert in ctx.alerts:
            pending.queue(BudgetAlertEvent.from_alert(alert))
        return pending

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_transaction(self, data: Dict[str, Any], actor_id: str,
                                 metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Create a transaction owned by actor_id. Returns the new transaction id.
        """
        ctx = MutationContext(action=AuditAction.CREATE.value, actor_id=actor_id,
                              metadata=dict(metadata or {}))

        require_actor(actor_id)
        ctx.warnings = assert_valid_transaction(data, is_update=False, now=self.clock())
        fields = sanitize_transaction(
            {k: v for k, v in data.items()
             if k in TRANSACTION_MUTABLE_FIELDS and k != "is_deleted" and v is not None}
        )
        now = self.clock()
        document = Transaction(
            owner_id=actor_id,
            created_by=actor_id,
            last_modified_by=actor_id,
            created_at=now,
            updated_at=now,
            **fields
        ).to_document()
        ctx.entity_id = document["_id"]

        # New entity: nothing to lock against
        ctx.advance(MutationStage.LOCK_CHECK)

        batch = self.store.batch()
        batch.set(self.TRANSACTIONS, document["_id"], document)
        self.lock_manager.stage_version_snapshot(batch, self.TRANSACTIONS, document, ctx.action, actor_id)
        await self._stage_budget_writes(ctx, batch, actor_id, None, document)
        self._stage_audit(ctx, batch, None, document)

        ctx.advance(MutationStage.ATOMIC_COMMIT)
        pending = self._queue_alerts(ctx)
        try:
            await batch.commit()
        except Exception:
            pending.clear()
            raise

        logger.info(
            f"[FACADE] Created transaction {document['_id']} "
            f"({document['type']} {document['amount']:.2f}) alerts={len(ctx.alerts)}"
        )
        await self._post_commit(ctx, actor_id, pending)
        return document["_id"]

    # =========================================================================
    # UPDATE / DELETE / RESTORE
    # =========================================================================

    async def _mutate_transaction(
        self,
        ctx: MutationContext,
        transaction_id: str,
        expected_version: Optional[int],
        apply_fn: Callable[[Dict[str, Any]], Dict[str, Any]],
        precondition: Callable[[Dict[str, Any]], None],
        resolver: Optional[Resolver] = None
    ) -> Dict[str, Any]:
        ctx.entity_id = transaction_id
        ctx.advance(MutationStage.LOCK_CHECK)

        async def extra_writes(batch: WriteBatch, previous: Dict[str, Any], candidate: Dict[str, Any]):
            # Re-validate the resolved state: a merge may combine fields from two writers
            assert_valid_transaction(candidate, is_update=False, now=self.clock())
            await self._stage_budget_writes(ctx, batch, previous["owner_id"], previous, candidate)
            self._stage_audit(ctx, batch, previous, candidate)
            ctx.advance(MutationStage.ATOMIC_COMMIT)

        result = await self.lock_manager.mutate(
            self.TRANSACTIONS,
            transaction_id,
            expected_version,
            apply_fn,
            ctx.actor_id,
            resolver=resolver or field_merge_resolver(TRANSACTION_MUTABLE_FIELDS),
            extra_writes=extra_writes,
            action=ctx.action,
            precondition=precondition
        )
        if result.notes:
            logger.warning(f"[FACADE] {transaction_id} merged with notes: {result.notes}")

        pending = self._queue_alerts(ctx)
        logger.info(
            f"[FACADE] {ctx.action} transaction {transaction_id} -> v{result.version} "
            f"alerts={len(ctx.alerts)}"
        )
        await self._post_commit(ctx, result.document["owner_id"], pending)
        return result.document

    async def update_transaction(
        self,
        transaction_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int],
        actor_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        resolver: Optional[Resolver] = None
    ) -> bool:
        ctx = MutationContext(action=AuditAction.UPDATE.value, actor_id=actor_id,
                              entity_id=transaction_id, metadata=dict(metadata or {}))
        require_actor(actor_id)

        editable = [f for f in TRANSACTION_MUTABLE_FIELDS if f != "is_deleted"]
        ignored = sorted(k for k in updates if k not in editable)
        changes = {k: v for k, v in updates.items() if k in editable and v is not None}
        if ignored:
            raise ValidationError(f"Fields cannot be updated: {', '.join(ignored)}",
                                  field=ignored[0], code="IMMUTABLE_FIELD")
        ctx.warnings = assert_valid_transaction(changes, is_update=True, now=self.clock())
        changes = sanitize_transaction(changes)

        def apply_changes(doc: Dict[str, Any]) -> Dict[str, Any]:
            doc.update(copy.deepcopy(changes))
            return doc

        await self._mutate_transaction(ctx, transaction_id, expected_version, apply_changes,
                                       self._require_live, resolver)
        return True

    async def delete_transaction(
        self,
        transaction_id: str,
        expected_version: Optional[int],
        actor_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Soft delete; the transaction leaves budget totals and reconciliation."""
        ctx = MutationContext(action=AuditAction.DELETE.value, actor_id=actor_id,
                              entity_id=transaction_id, metadata=dict(metadata or {}))
        require_actor(actor_id)

        def mark_deleted(doc: Dict[str, Any]) -> Dict[str, Any]:
            doc["is_deleted"] = True
            return doc

        await self._mutate_transaction(ctx, transaction_id, expected_version, mark_deleted,
                                       self._require_live)
        return True

    async def restore_transaction(
        self,
        transaction_id: str,
        expected_version: Optional[int],
        actor_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        ctx = MutationContext(action=AuditAction.RESTORE.value, actor_id=actor_id,
                              entity_id=transaction_id, metadata=dict(metadata or {}))
        require_actor(actor_id)

        def require_deleted(current: Dict[str, Any]):
            if not current.get("is_deleted"):
                raise ValidationError("Transaction is not deleted", field="is_deleted",
                                      code="NOT_DELETED")

        def mark_restored(doc: Dict[str, Any]) -> Dict[str, Any]:
            doc["is_deleted"] = False
            return doc

        await self._mutate_transaction(ctx, transaction_id, expected_version, mark_restored, require_deleted)
        return True

    # =========================================================================
    # READS & LOCKS
    # =========================================================================

    async def get_transaction(self, transaction_id: str, include_deleted: bool = False) -> Dict[str, Any]:
        doc = await self.store.get(self.TRANSACTIONS, transaction_id)
        if not doc or (doc.get("is_deleted") and not include_deleted):
            raise NotFoundError(self.TRANSACTIONS, transaction_id)
        return doc

    async def list_transactions(
        self,
        owner_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {"owner_id": owner_id}
        if not include_deleted:
            filters["is_deleted"] = False
        date_filter = {}
        if start_date is not None:
            date_filter["$gte"] = normalize_datetime(start_date)
        if end_date is not None:
            date_filter["$lte"] = normalize_datetime(end_date)
        if date_filter:
            filters["date"] = date_filter
        return await self.store.query(self.TRANSACTIONS, filters, order_by=[("date", -1)], limit=limit)

    async def acquire_lock(self, transaction_id: str, actor_id: str,
                           duration_seconds: Optional[int] = None) -> Dict[str, Any]:
        require_actor(actor_id)
        return await self.locks.acquire(transaction_id, actor_id, duration_seconds)

    async def release_lock(self, transaction_id: str, actor_id: str) -> bool:
        require_actor(actor_id)
        return await self.locks.release(transaction_id, actor_id)

    async def get_version_history(self, transaction_id: str) -> List[Dict[str, Any]]:
        return await self.lock_manager.get_version_history(self.TRANSACTIONS, transaction_id)

    # =========================================================================
    # BUDGETS
    # =========================================================================

    async def create_budget(self, data: Dict[str, Any], actor_id: str) -> str:
        """Create a budget; category spent is derived from existing transactions."""
        require_actor(actor_id)
        if not data.get("name"):
            raise ValidationError("Budget name is required", field="name", code="REQUIRED")
        try:
            period_start = normalize_datetime(data["period_start"])
            period_end = normalize_datetime(data["period_end"])
        except (KeyError, ValueError, TypeError):
            raise ValidationError("Budget period is required", field="period_start", code="INVALID_DATE")
        if period_end < period_start:
            raise ValidationError("Budget period end is before its start", field="period_end",
                                  code="INVALID_PERIOD")

        categories = []
        for raw in data.get("categories", []):
            try:
                validate_non_negative(raw.get("allocated", 0), "allocated")
            except NegativeValueError as e:
                raise ValidationError(str(e), field="allocated", code="NEGATIVE_AMOUNT")
            categories.append(BudgetCategory(
                name=raw["name"],
                type=raw.get("type", "expense"),
                transaction_categories=list(raw.get("transaction_categories", [])),
                allocated=raw.get("allocated", 0),
                **({"id": raw["id"]} if raw.get("id") else {})
            ))

        now = self.clock()
        document = Budget(
            owner_id=actor_id,
            name=data["name"],
            period_start=period_start,
            period_end=period_end,
            is_active=data.get("is_active", True),
            categories=categories,
            created_at=now,
            updated_at=now,
            created_by=actor_id,
            last_modified_by=actor_id,
        ).to_document()

        recompute = FullRecompute(self.store)
        derived = []
        for category in document["categories"]:
            spent = await recompute.compute_spent(document, category, None, None)
            derived.append(refresh_category(category, spent=spent))
        document["categories"] = derived

        batch = self.store.batch()
        batch.set(self.BUDGETS, document["_id"], document)
        self.lock_manager.stage_version_snapshot(batch, self.BUDGETS, document, AuditAction.CREATE.value, actor_id)
        entry = self.auditor.record(AuditAction.CREATE.value, actor_id, document["_id"],
                                    new_state=document, entity_type=EntityType.BUDGET.value)
        batch.set("audit_logs", entry["_id"], entry)
        await batch.commit()

        logger.info(f"[FACADE] Created budget {document['_id']} with {len(derived)} categories")
        return document["_id"]

    async def get_budget(self, budget_id: str) -> Dict[str, Any]:
        doc = await self.store.get(self.BUDGETS, budget_id)
        if not doc:
            raise NotFoundError(self.BUDGETS, budget_id)
        return doc

    async def update_category_allocation(
        self,
        budget_id: str,
        category_id: str,
        allocated: float,
        expected_version: Optional[int],
        actor_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Versioned change of one category's allocation. A budget version bumped
        by transaction writes since the caller read it yields ConflictError.
        """
        require_actor(actor_id)
        try:
            validate_non_negative(allocated, "allocated")
        except NegativeValueError as e:
            raise ValidationError(str(e), field="allocated", code="NEGATIVE_AMOUNT")

        ctx = MutationContext(action=AuditAction.UPDATE.value, actor_id=actor_id,
                              entity_id=budget_id, metadata=dict(metadata or {}))

        def apply_allocation(doc: Dict[str, Any]) -> Dict[str, Any]:
            found = False
            categories = []
            for category in doc.get("categories", []):
                if category["id"] == category_id:
                    found = True
                    model = category_from_document(category)
                    model.allocated = float(allocated)
                    category = model.to_document()
                categories.append(category)
            if not found:
                raise NotFoundError("budget_categories", category_id)
            doc["categories"] = categories
            return doc

        async def extra_writes(batch: WriteBatch, previous: Dict[str, Any], candidate: Dict[str, Any]):
            ctx.advance(MutationStage.IMPACT_COMPUTE)
            updated = next(c for c in candidate["categories"] if c["id"] == category_id)
            impact = build_impact(candidate, updated, to_decimal(updated["spent"]))
            ctx.alerts = self.impact_engine.build_alerts(candidate, [impact], ctx.action)
            for alert in ctx.alerts:
                batch.set("budget_alerts", alert["_id"], alert)
            entry = self.auditor.record(ctx.action, actor_id, budget_id, previous_state=previous,
                                        new_state=candidate, metadata=ctx.metadata,
                                        entity_type=EntityType.BUDGET.value)
            batch.set("audit_logs", entry["_id"], entry)
            ctx.advance(MutationStage.ATOMIC_COMMIT)

        result = await self.lock_manager.mutate(
            self.BUDGETS,
            budget_id,
            expected_version,
            apply_allocation,
            actor_id,
            resolver=field_merge_resolver(BUDGET_MUTABLE_FIELDS),
            extra_writes=extra_writes,
            action=ctx.action
        )

        pending = self._queue_alerts(ctx)
        ctx.advance(MutationStage.POST_COMMIT)
        await pending.emit()
        logger.info(f"[FACADE] Budget {budget_id} category {category_id} allocation -> {allocated} (v{result.version})")
        return result.document

    # =========================================================================
    # READ-ONLY OPERATIONS
    # =========================================================================

    async def preview_budget_impact(self, partial: Dict[str, Any], user_id: str) -> ImpactPreview:
        return await self.impact_engine.preview_impact(partial, user_id)

    async def reconcile(
        self,
        owner_id: str,
        expected_balance: Optional[float] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        account_type: str = "net_worth"
    ) -> ReconciliationResult:
        transactions = await self.list_transactions(owner_id)
        return self.reconciliation.reconcile(transactions, expected_balance, start_date, end_date, account_type)

    async def generate_reconciliation_report(
        self,
        owner_id: str,
        period_start: datetime,
        period_end: datetime,
        expected_closing_balance: Optional[float] = None
    ) -> ReconciliationReport:
        transactions = await self.list_transactions(owner_id)
        return self.reconciliation.generate_reconciliation_report(
            transactions, period_start, period_end, expected_closing_balance, owner_id
        )

    async def find_missing_transactions(self, owner_id: str, external: List[Dict[str, Any]]):
        transactions = await self.list_transactions(owner_id)
        return self.reconciliation.find_missing_transactions(transactions, external)

    async def verify_integrity(self, owner_id: str, expected_checksum: Optional[str] = None) -> IntegrityReport:
        transactions = await self.list_transactions(owner_id)
        report = self.verifier.verify_collection(transactions, expected_checksum)
        # Reported alongside, never counted against is_valid
        report.date_anomalies = self.verifier.detect_date_anomalies(transactions)
        if report.date_anomalies:
            logger.warning(f"[FACADE] {len(report.date_anomalies)} date anomalies for owner:{owner_id}")
        return report

    async def wait_for_background_jobs(self):
        await self.job_engine.wait_idle()
