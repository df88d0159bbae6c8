"""
BACKGROUND JOB ENGINE

Implements the async job runner behind the POST_COMMIT stage:
1. Historical Recalculation - recompute an owner's budget totals from
   transactions (repairing drift) and store a fresh balance snapshot
2. Financial Integrity - report budget drift without fixing it

RULES:
- Jobs must NOT block the mutation that scheduled them
- Job failures never roll back a committed mutation
- A rerun of the same job converges on the same budget totals
- Every transition is logged with its job id
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable
import asyncio
import logging
import traceback

from .document_store import DocumentStore
from .budget_impact_engine import FullRecompute
from .entities import derived_fields_update, new_id, refresh_category
from .financial_integrity_job import BudgetIntegrityJob
from .financial_precision import to_decimal, to_float
from .reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


class JobStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class JobType:
    HISTORICAL_RECALCULATION = "HISTORICAL_RECALCULATION"
    FINANCIAL_INTEGRITY = "FINANCIAL_INTEGRITY"


class BackgroundJobEngine:
    """
    Background Job Engine for non-blocking async tasks.

    Features:
    - Async job execution
    - Retry scheduling with exponential backoff
    - Job logging and tracking
    """

    MAX_RETRY_ATTEMPTS = 5
    BASE_RETRY_DELAY = 60  # seconds
    TOLERANCE = Decimal('0.01')

    def __init__(self, store: DocumentStore,
                 reconciliation: Optional[ReconciliationService] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.recompute = FullRecompute(store)
        self.reconciliation = reconciliation or ReconciliationService(store)
        self.clock = clock or datetime.utcnow
        self._running_jobs: Dict[str, asyncio.Task] = {}
        self._poller: Optional[asyncio.Task] = None

    # =========================================================================
    # JOB SCHEDULING
    # =========================================================================

    async def schedule_job(
        self,
        job_type: str,
        params: Dict[str, Any],
        owner_id: str,
        scheduled_by: Optional[str] = None,
        run_at: Optional[datetime] = None
    ) -> str:
        """Persist a job document; it runs once started and run_at has passed"""
        job_id = new_id()
        job_doc = {
            "job_type": job_type,
            "params": params,
            "owner_id": owner_id,
            "status": JobStatus.PENDING,
            "scheduled_by": scheduled_by or "SYSTEM",
            "scheduled_at": self.clock(),
            "run_at": run_at or self.clock(),
            "started_at": None,
            "completed_at": None,
            "retry_count": 0,
            "error_message": None,
            "result": None
        }

        await self.store.put("background_jobs", job_id, job_doc)
        logger.info(f"[JOB] Scheduled: {job_id} type={job_type}")

        return job_id

    async def run_job_async(self, job_id: str) -> Dict[str, str]:
        """Start the job as a task and return immediately"""
        if job_id in self._running_jobs:
            return {"status": "running", "job_id": job_id}
        task = asyncio.create_task(self._execute_job(job_id))
        self._running_jobs[job_id] = task
        task.add_done_callback(lambda _: self._running_jobs.pop(job_id, None))
        return {"status": "started", "job_id": job_id}

    async def wait_idle(self):
        """Wait for every job started by this engine to finish"""
        while self._running_jobs:
            await asyncio.gather(*list(self._running_jobs.values()), return_exceptions=True)

    async def run_due_jobs(self) -> List[str]:
        """Start pending/retrying jobs whose run_at has passed"""
        jobs = await self.get_pending_jobs()
        started = []
        for job in jobs:
            if job["job_id"] in self._running_jobs:
                continue
            await self.run_job_async(job["job_id"])
            started.append(job["job_id"])
        return started

    @property
    def is_polling(self) -> bool:
        return self._poller is not None and not self._poller.done()

    def start_polling(self, interval_seconds: float):
        """Run due jobs every interval_seconds until stop_polling(); retries wait here for their run_at"""
        if self.is_polling:
            return
        self._poller = asyncio.create_task(self._poll(interval_seconds))
        logger.info(f"[JOB] Polling for due jobs every {interval_seconds}s")

    async def stop_polling(self):
        poller, self._poller = self._poller, None
        if poller is None:
            return
        poller.cancel()
        try:
            await poller
        except asyncio.CancelledError:
            pass

    async def _poll(self, interval_seconds: float):
        while True:
            try:
                started = await self.run_due_jobs()
                if started:
                    logger.info(f"[JOB] Started {len(started)} due job(s)")
            except Exception as e:
                logger.error(f"[JOB] Due job poll failed: {str(e)}")
            await asyncio.sleep(interval_seconds)

    async def _execute_job(self, job_id: str):
        try:
            job = await self.store.get("background_jobs", job_id)

            if not job:
                logger.error(f"[JOB] Not found: {job_id}")
                return
            if job.get("status") not in (JobStatus.PENDING, JobStatus.RETRYING):
                logger.info(f"[JOB] Skipping {job_id}: already {job.get('status')}")
                return

            await self.store.put(
                "background_jobs", job_id,
                {"status": JobStatus.RUNNING, "started_at": self.clock()},
                merge=True
            )

            job_type = job["job_type"]
            params = job["params"]
            owner_id = job["owner_id"]

            if job_type == JobType.HISTORICAL_RECALCULATION:
                result = await self._run_historical_recalculation(owner_id, params)
            elif job_type == JobType.FINANCIAL_INTEGRITY:
                result = await BudgetIntegrityJob(self.store).run(owner_id)
            else:
                raise ValueError(f"Unknown job type: {job_type}")

            await self.store.put(
                "background_jobs", job_id,
                {
                    "status": JobStatus.COMPLETED,
                    "completed_at": self.clock(),
                    "result": result
                },
                merge=True
            )

            logger.info(f"[JOB] Completed: {job_id}")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            error_msg = str(e)
            logger.error(f"[JOB] Failed: {job_id} - {error_msg}")
            logger.error(traceback.format_exc())
            await self._record_failure(job_id, error_msg)

    async def _record_failure(self, job_id: str, error_msg: str):
        job = await self.store.get("background_jobs", job_id)
        if not job:
            return
        retry_count = job.get("retry_count", 0)

        if retry_count < self.MAX_RETRY_ATTEMPTS:
            # Schedule retry with exponential backoff
            delay = self.BASE_RETRY_DELAY * (2 ** retry_count)
            await self.store.put(
                "background_jobs", job_id,
                {
                    "status": JobStatus.RETRYING,
                    "error_message": error_msg,
                    "run_at": self.clock() + timedelta(seconds=delay),
                    "retry_count": retry_count + 1
                },
                merge=True
            )
            logger.info(f"[JOB] Scheduled retry {retry_count + 1} for {job_id} in {delay}s")
        else:
            await self.store.put(
                "background_jobs", job_id,
                {
                    "status": JobStatus.FAILED,
                    "completed_at": self.clock(),
                    "error_message": error_msg
                },
                merge=True
            )

    # =========================================================================
    # JOB 1: HISTORICAL RECALCULATION
    # =========================================================================

    async def _run_historical_recalculation(self, owner_id: str, params: Dict) -> Dict:
        """
        Recompute every active budget of the owner from transactions and
        rewrite categories whose stored totals drifted.
        """
        repaired = []
        budgets = await self.store.query("budgets", {"owner_id": owner_id, "is_active": True})

        for budget in budgets:
            transactions = await self.recompute.load_transactions(budget)
            categories = []
            drifted = []
            for category in budget.get("categories", []):
                spent = self.recompute.sum_with_pending(transactions, budget, category, None, None)
                refreshed = refresh_category(category, spent=spent)
                stale_totals = (
                    abs(spent - to_decimal(category.get("spent"))) > self.TOLERANCE
                    or abs(to_decimal(refreshed["remaining"]) - to_decimal(category.get("remaining"))) > self.TOLERANCE
                    or refreshed["is_over_budget"] != category.get("is_over_budget")
                )
                if stale_totals:
                    drifted.append({
                        "category_id": category["id"],
                        "stored": category.get("spent"),
                        "recalculated": to_float(spent),
                    })
                categories.append(refreshed)

            if drifted:
                batch = self.store.batch()
                drifted_ids = {d["category_id"] for d in drifted}
                batch.update(
                    "budgets", budget["_id"],
                    {"updated_at": self.clock()},
                    increment={"version": 1},
                    elements=[derived_fields_update(c) for c in categories if c["id"] in drifted_ids]
                )
                await batch.commit()
                repaired.append({"budget_id": budget["_id"], "categories": drifted})
                logger.warning(f"[JOB] Repaired drift in budget {budget['_id']}: {len(drifted)} categories")

        all_transactions = await self.store.query("transactions", {"owner_id": owner_id})
        snapshot = self.reconciliation.create_balance_snapshot(all_transactions, self.clock(), owner_id)
        snapshot_id = await self.reconciliation.store_snapshot(snapshot)

        return {
            "trigger": params.get("trigger"),
            "budgets_checked": len(budgets),
            "budgets_repaired": repaired,
            "snapshot_id": snapshot_id,
        }

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_job_status(self, job_id: str) -> Optional[Dict]:
        """Job document with its id under job_id, or None"""
        job = await self.store.get("background_jobs", job_id)
        if job:
            job["job_id"] = job.pop("_id")
        return job

    async def get_pending_jobs(self, owner_id: Optional[str] = None) -> List[Dict]:
        """Due jobs for an owner, oldest first"""
        filters: Dict[str, Any] = {
            "status": {"$in": [JobStatus.PENDING, JobStatus.RETRYING]},
            "run_at": {"$lte": self.clock()}
        }
        if owner_id:
            filters["owner_id"] = owner_id
        jobs = await self.store.query("background_jobs", filters, order_by=[("run_at", 1)], limit=100)

        for job in jobs:
            job["job_id"] = job.pop("_id")

        return jobs
