from fastapi import FastAPI, APIRouter, HTTPException, status, Depends, Query
from fastapi.responses import Response
from dotenv import load_dotenv
from pydantic import BaseModel
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from dataclasses import asdict, is_dataclass
import os
import logging
from pathlib import Path
from typing import List, Optional, Dict, Any
from datetime import datetime

from models import (
    TransactionCreate, TransactionUpdate, TransactionVersionRequest, LockRequest,
    BudgetCreate, AllocationUpdate, ImpactPreviewRequest,
    ReconcileRequest, ReconciliationReportRequest, MissingTransactionsRequest,
    IntegrityVerifyRequest, AuditLog
)
from auth import get_current_user
from audit_service import AuditService
from consistency_core import (
    TransactionMutationFacade, MotorDocumentStore, InMemoryDocumentStore, AlertChannel,
    BudgetIntegrityJob, strategy_from_name,
    ValidationError, ConflictError, LockHeldError, NotFoundError, IntegrityError,
    StaleWriteError, CommitFailedError, AuditImmutableError, SnapshotImmutableError, SnapshotNotFoundError,
    field_merge_resolver,
)
from consistency_core.entities import TRANSACTION_MUTABLE_FIELDS

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def serialize_doc(doc: Any) -> Any:
    """Serialize documents and engine results for JSON responses"""
    if doc is None:
        return None
    if is_dataclass(doc):
        doc = asdict(doc)
    elif isinstance(doc, BaseModel):
        doc = doc.dict(by_alias=True)
    if isinstance(doc, list):
        return [serialize_doc(item) for item in doc]
    if not isinstance(doc, dict):
        if isinstance(doc, datetime):
            return doc.isoformat()
        return doc
    result = {}
    for key, value in doc.items():
        if isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, (dict, list, BaseModel)) or is_dataclass(value):
            result[key] = serialize_doc(value)
        else:
            result[key] = value
    return result


def present_transaction(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc["transaction_id"] = doc.pop("_id")
    return serialize_doc(doc)


def present_budget(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc["budget_id"] = doc.pop("_id")
    return serialize_doc(doc)


def domain_error_to_http(e: Exception) -> HTTPException:
    """Map engine exceptions to HTTP errors"""
    if isinstance(e, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": e.message, "field": e.field, "code": e.code, "errors": e.errors}
        )
    if isinstance(e, (AuditImmutableError, SnapshotImmutableError)):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"ARCHITECTURAL GUARD: {str(e)}")
    if isinstance(e, (NotFoundError, SnapshotNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "VERSION_CONFLICT",
                "current_version": e.current_version,
                "attempted_version": e.attempted_version,
                "conflicting_fields": e.unresolved_fields,
                "suggestion": e.suggestion,
            }
        )
    if isinstance(e, LockHeldError):
        return HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail={
                "error": "LOCKED",
                "locked_by": e.locked_by,
                "lock_expiry": e.lock_expiry.isoformat() if e.lock_expiry else None,
            }
        )
    if isinstance(e, IntegrityError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"error": str(e), "issues": e.issues})
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable, nothing was written")


DOMAIN_ERRORS = (ValidationError, NotFoundError, ConflictError, LockHeldError, IntegrityError,
                 AuditImmutableError, SnapshotImmutableError, SnapshotNotFoundError,
                 StaleWriteError, CommitFailedError)


def create_app(facade: TransactionMutationFacade, audit_service: AuditService, client=None,
               job_poll_seconds: Optional[float] = None) -> FastAPI:
    """Build the API around an engine instance; job_poll_seconds enables the due-job poller"""
    app = FastAPI(
        title="Budget Consistency Engine",
        version="1.0.0",
        description="Transaction mutation, budget impact, audit and reconciliation API"
    )

    # Create router with /api prefix
    api_router = APIRouter(prefix="/api")

    async def load_owned_transaction(transaction_id: str, user_id: str, include_deleted: bool = False):
        doc = await facade.get_transaction(transaction_id, include_deleted=include_deleted)
        if doc["owner_id"] != user_id:
            raise NotFoundError("transactions", transaction_id)
        return doc

    async def load_owned_budget(budget_id: str, user_id: str):
        doc = await facade.get_budget(budget_id)
        if doc["owner_id"] != user_id:
            raise NotFoundError("budgets", budget_id)
        return doc

    # ============================================
    # TRANSACTION ENDPOINTS
    # ============================================

    @api_router.post("/transactions", status_code=status.HTTP_201_CREATED)
    async def create_transaction(
        data: TransactionCreate,
        current_user: dict = Depends(get_current_user)
    ):
        """Create a transaction and apply its budget impact"""
        payload = data.dict(exclude={"source"})
        try:
            transaction_id = await facade.create_transaction(
                payload, current_user["user_id"], metadata={"source": data.source or current_user["source"]}
            )
            doc = await facade.get_transaction(transaction_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return present_transaction(doc)

    @api_router.get("/transactions")
    async def list_transactions(
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        include_deleted: bool = False,
        limit: int = Query(default=500, le=5000),
        current_user: dict = Depends(get_current_user)
    ):
        docs = await facade.list_transactions(
            current_user["user_id"], start_date, end_date, include_deleted, limit
        )
        return [present_transaction(d) for d in docs]

    @api_router.get("/transactions/{transaction_id}")
    async def get_transaction(transaction_id: str, current_user: dict = Depends(get_current_user)):
        try:
            doc = await load_owned_transaction(transaction_id, current_user["user_id"])
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return present_transaction(doc)

    @api_router.put("/transactions/{transaction_id}")
    async def update_transaction(
        transaction_id: str,
        data: TransactionUpdate,
        current_user: dict = Depends(get_current_user)
    ):
        """
        Update a transaction at expected_version.

        A stale version is merged field by field; overlapping edits return 409
        with the conflicting fields unless last_writer_wins is set.
        """
        updates = data.dict(
            exclude={"expected_version", "source", "reason", "last_writer_wins"},
            exclude_none=True
        )
        resolver = field_merge_resolver(TRANSACTION_MUTABLE_FIELDS, last_writer_wins=data.last_writer_wins)
        try:
            await load_owned_transaction(transaction_id, current_user["user_id"])
            await facade.update_transaction(
                transaction_id, updates, data.expected_version, current_user["user_id"],
                metadata={"source": data.source or current_user["source"], "reason": data.reason},
                resolver=resolver
            )
            doc = await facade.get_transaction(transaction_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return present_transaction(doc)

    @api_router.delete("/transactions/{transaction_id}")
    async def delete_transaction(
        transaction_id: str,
        expected_version: int,
        reason: Optional[str] = None,
        current_user: dict = Depends(get_current_user)
    ):
        """Soft delete"""
        try:
            await load_owned_transaction(transaction_id, current_user["user_id"])
            await facade.delete_transaction(
                transaction_id, expected_version, current_user["user_id"],
                metadata={"source": current_user["source"], "reason": reason}
            )
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return {"status": "deleted", "transaction_id": transaction_id}

    @api_router.post("/transactions/{transaction_id}/restore")
    async def restore_transaction(
        transaction_id: str,
        data: TransactionVersionRequest,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            await load_owned_transaction(transaction_id, current_user["user_id"], include_deleted=True)
            await facade.restore_transaction(
                transaction_id, data.expected_version, current_user["user_id"],
                metadata={"source": data.source or current_user["source"], "reason": data.reason}
            )
            doc = await facade.get_transaction(transaction_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return present_transaction(doc)

    @api_router.get("/transactions/{transaction_id}/versions")
    async def get_transaction_versions(transaction_id: str, current_user: dict = Depends(get_current_user)):
        try:
            await load_owned_transaction(transaction_id, current_user["user_id"], include_deleted=True)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        history = await facade.get_version_history(transaction_id)
        return serialize_doc([
            {"version_number": v["version_number"], "action": v["action"],
             "created_by": v["created_by"], "created_at": v["created_at"],
             "snapshot": v["snapshot_data"]}
            for v in history
        ])

    @api_router.post("/transactions/{transaction_id}/lock")
    async def lock_transaction(
        transaction_id: str,
        data: LockRequest,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            await load_owned_transaction(transaction_id, current_user["user_id"])
            lock = await facade.acquire_lock(transaction_id, current_user["user_id"], data.duration_seconds)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return serialize_doc(lock)

    @api_router.delete("/transactions/{transaction_id}/lock")
    async def unlock_transaction(transaction_id: str, current_user: dict = Depends(get_current_user)):
        try:
            await load_owned_transaction(transaction_id, current_user["user_id"])
            released = await facade.release_lock(transaction_id, current_user["user_id"])
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        if not released:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Lock is not held by this user")
        return {"status": "released", "transaction_id": transaction_id}

    # ============================================
    # BUDGET ENDPOINTS
    # ============================================

    @api_router.post("/budgets", status_code=status.HTTP_201_CREATED)
    async def create_budget(data: BudgetCreate, current_user: dict = Depends(get_current_user)):
        payload = data.dict()
        try:
            budget_id = await facade.create_budget(payload, current_user["user_id"])
            doc = await facade.get_budget(budget_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return present_budget(doc)

    @api_router.get("/budgets")
    async def list_budgets(current_user: dict = Depends(get_current_user)):
        docs = await facade.store.query("budgets", {"owner_id": current_user["user_id"]},
                                        order_by=[("period_start", -1)])
        return [present_budget(d) for d in docs]

    @api_router.get("/budgets/{budget_id}")
    async def get_budget(budget_id: str, current_user: dict = Depends(get_current_user)):
        try:
            doc = await load_owned_budget(budget_id, current_user["user_id"])
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return present_budget(doc)

    @api_router.patch("/budgets/{budget_id}/categories/{category_id}/allocation")
    async def update_allocation(
        budget_id: str,
        category_id: str,
        data: AllocationUpdate,
        current_user: dict = Depends(get_current_user)
    ):
        try:
            await load_owned_budget(budget_id, current_user["user_id"])
            doc = await facade.update_category_allocation(
                budget_id, category_id, data.allocated, data.expected_version,
                current_user["user_id"], metadata={"source": current_user["source"], "reason": data.reason}
            )
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return present_budget(doc)

    @api_router.post("/budgets/preview-impact")
    async def preview_budget_impact(data: ImpactPreviewRequest, current_user: dict = Depends(get_current_user)):
        """Read-only: impacts, warnings and suggestions for a proposed transaction"""
        try:
            preview = await facade.preview_budget_impact(data.dict(exclude_none=True), current_user["user_id"])
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return serialize_doc(preview)

    @api_router.get("/alerts")
    async def list_alerts(unread_only: bool = False, current_user: dict = Depends(get_current_user)):
        filters: Dict[str, Any] = {"owner_id": current_user["user_id"]}
        if unread_only:
            filters["is_read"] = False
        alerts = await facade.store.query("budget_alerts", filters, order_by=[("created_at", -1)], limit=200)
        for alert in alerts:
            alert["alert_id"] = alert.pop("_id")
        return serialize_doc(alerts)

    # ============================================
    # RECONCILIATION & INTEGRITY ENDPOINTS
    # ============================================

    @api_router.post("/reconciliation/reconcile")
    async def reconcile(data: ReconcileRequest, current_user: dict = Depends(get_current_user)):
        try:
            result = await facade.reconcile(
                current_user["user_id"], data.expected_balance, data.start_date, data.end_date, data.account_type
            )
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return serialize_doc(result)

    @api_router.post("/reconciliation/report")
    async def reconciliation_report(data: ReconciliationReportRequest, current_user: dict = Depends(get_current_user)):
        if data.period_end < data.period_start:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="period_end is before period_start")
        report = await facade.generate_reconciliation_report(
            current_user["user_id"], data.period_start, data.period_end, data.expected_closing_balance
        )
        return serialize_doc(report)

    @api_router.post("/reconciliation/missing")
    async def find_missing(data: MissingTransactionsRequest, current_user: dict = Depends(get_current_user)):
        issues = await facade.find_missing_transactions(
            current_user["user_id"], [line.dict() for line in data.statement]
        )
        return {"missing_count": len(issues), "issues": serialize_doc(issues)}

    @api_router.post("/integrity/verify")
    async def verify_integrity(data: IntegrityVerifyRequest, current_user: dict = Depends(get_current_user)):
        report = await facade.verify_integrity(current_user["user_id"], data.expected_checksum)
        return serialize_doc(report)

    @api_router.get("/integrity/budgets")
    async def check_budget_integrity(current_user: dict = Depends(get_current_user)):
        """Recompute budget totals from transactions and report drift (no auto-fix)"""
        return await BudgetIntegrityJob(facade.store).run(current_user["user_id"])

    @api_router.get("/reconciliation/snapshots/{snapshot_id}")
    async def get_balance_snapshot(snapshot_id: str, current_user: dict = Depends(get_current_user)):
        """Stored balance snapshot, checksum-verified on read"""
        try:
            snapshot = await facade.reconciliation.get_snapshot(snapshot_id)
            if snapshot.owner_id != current_user["user_id"]:
                raise NotFoundError("balance_snapshots", snapshot_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)
        return serialize_doc(snapshot)

    @api_router.put("/reconciliation/snapshots/{snapshot_id}")
    async def update_balance_snapshot(snapshot_id: str, current_user: dict = Depends(get_current_user)):
        try:
            facade.reconciliation.block_update(snapshot_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)

    @api_router.delete("/reconciliation/snapshots/{snapshot_id}")
    async def delete_balance_snapshot(snapshot_id: str, current_user: dict = Depends(get_current_user)):
        try:
            facade.reconciliation.block_delete(snapshot_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)

    # ============================================
    # AUDIT ENDPOINTS
    # ============================================

    @api_router.get("/audit-logs", response_model=List[AuditLog])
    async def get_audit_logs(
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = Query(default=100, le=1000),
        current_user: dict = Depends(get_current_user)
    ):
        return await audit_service.get_audit_logs(
            current_user["user_id"], entity_type=entity_type, entity_id=entity_id, action=action, limit=limit
        )

    @api_router.get("/audit-logs/summary")
    async def audit_summary(limit: int = 10, current_user: dict = Depends(get_current_user)):
        return serialize_doc(await audit_service.get_summary(current_user["user_id"], limit))

    @api_router.get("/audit-logs/suspicious")
    async def suspicious_activity(window_ms: Optional[int] = None, current_user: dict = Depends(get_current_user)):
        return await audit_service.detect_suspicious_activity(current_user["user_id"], window_ms)

    @api_router.get("/audit-logs/export")
    async def export_audit_logs(
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        current_user: dict = Depends(get_current_user)
    ):
        csv_text = await audit_service.export_csv(current_user["user_id"], start, end)
        return Response(
            content=csv_text,
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=audit-log.csv"}
        )

    @api_router.put("/audit-logs/{audit_id}")
    async def update_audit_log(audit_id: str, current_user: dict = Depends(get_current_user)):
        try:
            audit_service.enforce_append_only("UPDATE", audit_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)

    @api_router.delete("/audit-logs/{audit_id}")
    async def delete_audit_log(audit_id: str, current_user: dict = Depends(get_current_user)):
        try:
            audit_service.enforce_append_only("DELETE", audit_id)
        except DOMAIN_ERRORS as e:
            raise domain_error_to_http(e)

    @api_router.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": "1.0.0",
            "store": type(facade.store).__name__,
            "recompute_strategy": facade.impact_engine.strategy.name
        }

    # Include router in main app
    app.include_router(api_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_engine():
        if isinstance(facade.store, MotorDocumentStore):
            await facade.store.create_indexes()
        if job_poll_seconds:
            facade.job_engine.start_polling(job_poll_seconds)

    @app.on_event("shutdown")
    async def shutdown_db_client():
        await facade.job_engine.stop_polling()
        await facade.wait_for_background_jobs()
        if client is not None:
            client.close()

    return app


def build_facade_from_env():
    """Wire the engine from MONGO_URL / DB_NAME; falls back to an in-memory store."""
    mongo_url = os.environ.get('MONGO_URL')
    client = None
    if mongo_url:
        client = AsyncIOMotorClient(mongo_url)
        store = MotorDocumentStore(client, client[os.environ.get('DB_NAME', 'budget_consistency')])
    else:
        logger.warning("MONGO_URL not set - using in-memory document store (data is not persisted)")
        store = InMemoryDocumentStore()

    alert_channel = AlertChannel()
    alert_channel.subscribe(
        lambda event: logger.info(f"[ALERT] {event.severity} {event.type}: {event.message}")
    )
    facade = TransactionMutationFacade(
        store,
        alert_channel=alert_channel,
        recompute_strategy=strategy_from_name(os.environ.get("RECOMPUTE_STRATEGY", "full"), store),
        soft_lock_seconds=int(os.environ.get("SOFT_LOCK_SECONDS", "300")),
    )
    return facade, client


engine_facade, mongo_client = build_facade_from_env()
app = create_app(engine_facade, AuditService(engine_facade.store, engine_facade.auditor), mongo_client,
                 job_poll_seconds=float(os.environ.get("JOB_POLL_SECONDS", "30")))
