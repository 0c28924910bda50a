"""Process-wide coordinator for the recurring sync jobs.

One :class:`OrderSyncScheduler` is constructed at process start. It fires
NEW_ORDERS within the daily active window, STATUS_SYNC on a coarser grid and
CLEANUP once a day, accepts manual triggers, and guarantees at most one
in-flight run per (job type, store). Time comes from an injected clock so
tests can drive ``run_pending`` with virtual time.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.orm import Session

from ordersync.config import Settings, settings as default_settings
from ordersync.models_sqlalchemy import SessionLocal
from ordersync.models_sqlalchemy.models import JobType, Order, RunOutcome
from ordersync.models_sqlalchemy.sync import SchedulerJob, SyncCursor, SyncRun
from ordersync.services.store_registry import StoreConfig, store_registry
from ordersync.utils.clock import Clock, ensure_utc, system_clock
from ordersync.utils.logger import logger

from . import cursors
from .base_worker import StoreRunResult
from .cleanup import CleanupJob
from .new_orders_worker import NewOrdersWorker
from .runs import ALL_STORES, list_runs, run_to_dict
from .schedule import next_daily_fire, next_new_orders_fire, next_status_sync_fire
from .status_sync_worker import StatusSyncWorker

JOB_TYPES = (JobType.NEW_ORDERS.value, JobType.STATUS_SYNC.value, JobType.CLEANUP.value)
JOB_WIDE = "*"


@dataclass
class JobResult:
    job_type: str
    triggered_by: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[StoreRunResult] = field(default_factory=list)
    error: Optional[str] = None

    def outcome_counts(self) -> Dict[str, int]:
        counts = {"success": 0, "partial": 0, "failed": 0, "aborted": 0, "skipped": 0}
        for result in self.results:
            key = result.outcome.value if result.outcome else "skipped"
            counts[key] = counts.get(key, 0) + 1
        return counts

    def as_dict(self) -> Dict[str, Any]:
        return {
            "job_type": self.job_type,
            "triggered_by": self.triggered_by,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcomes": self.outcome_counts(),
            "stores": {
                r.store_identifier: (r.outcome.value if r.outcome else f"skipped:{r.skipped_reason}")
                for r in self.results
            },
            "error": self.error,
        }


@dataclass
class TriggerResult:
    accepted: bool
    job_type: str
    store_identifier: Optional[str] = None
    reason: Optional[str] = None
    task: Optional[asyncio.Task] = None


@dataclass
class _JobState:
    next_fire_at: Optional[datetime] = None
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_result: Optional[JobResult] = None
    last_error: Optional[str] = None


class OrderSyncScheduler:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock,
        cfg: Optional[Settings] = None,
        client_factory: Optional[Callable[[StoreConfig], Any]] = None,
        provider_factory: Optional[Callable[[StoreConfig], Any]] = None,
        new_orders_worker: Optional[NewOrdersWorker] = None,
        status_sync_worker: Optional[StatusSyncWorker] = None,
        cleanup_job: Optional[CleanupJob] = None,
        max_concurrent_stores: Optional[int] = None,
    ):
        self.cfg = cfg or default_settings
        self.session_factory = session_factory
        self.clock = clock
        self.tz = ZoneInfo(self.cfg.SCHEDULER_TIMEZONE)

        self.new_orders_worker = new_orders_worker or NewOrdersWorker(
            session_factory=session_factory, clock=clock, client_factory=client_factory
        )
        self.status_sync_worker = status_sync_worker or StatusSyncWorker(
            session_factory=session_factory, clock=clock, provider_factory=provider_factory
        )
        self.cleanup_job = cleanup_job or CleanupJob(
            session_factory=session_factory, clock=clock, client_factory=client_factory
        )

        self._pool = asyncio.Semaphore(max_concurrent_stores or self.cfg.MAX_CONCURRENT_STORES)
        self._jobs: Dict[str, _JobState] = {job: _JobState() for job in JOB_TYPES}
        self._in_flight: Dict[Tuple[str, str], datetime] = {}
        self._deferred: Dict[Tuple[str, str], datetime] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

        self.is_running = False
        self.started_at: Optional[datetime] = None
        self.stopped_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------
    def compute_next_fire(self, job_type: str, after: Optional[datetime] = None) -> datetime:
        after = after or self.clock.now()
        if job_type == JobType.NEW_ORDERS.value:
            local = next_new_orders_fire(
                after,
                tz=self.tz,
                interval_minutes=self.cfg.NEW_ORDERS_INTERVAL_MINUTES,
                start_hour=self.cfg.NEW_ORDERS_WINDOW_START_HOUR,
                end_hour=self.cfg.NEW_ORDERS_WINDOW_END_HOUR,
            )
        elif job_type == JobType.STATUS_SYNC.value:
            local = next_status_sync_fire(after, tz=self.tz, interval_hours=self.cfg.STATUS_SYNC_INTERVAL_HOURS)
        elif job_type == JobType.CLEANUP.value:
            local = next_daily_fire(after, tz=self.tz, hour=self.cfg.CLEANUP_HOUR)
        else:
            raise ValueError(f"Unknown job type {job_type!r}")
        return ensure_utc(local)

    def next_fire_times(self) -> Dict[str, str]:
        now = self.clock.now()
        times = {}
        for job_type in JOB_TYPES:
            scheduled = self._jobs[job_type].next_fire_at
            times[job_type] = (scheduled or self.compute_next_fire(job_type, now)).isoformat()
        return times

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        self.started_at = self.clock.now()
        self.stopped_at = None
        for job_type, state in self._jobs.items():
            state.next_fire_at = self.compute_next_fire(job_type, self.started_at)
            self._save_job_row(job_type, next_fire_at=state.next_fire_at)
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(f"Order sync scheduler started; next fires: {self.next_fire_times()}")

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.stopped_at = self.clock.now()
        logger.info(f"Order sync scheduler stopped; cancelled {len(tasks)} in-flight tasks")

    async def _loop(self) -> None:
        while self.is_running:
            try:
                await self.run_pending()
            except Exception as exc:
                logger.error("Scheduler tick failed: %s", exc, exc_info=True)
            await self.clock.sleep(self.cfg.SCHEDULER_POLL_SECONDS)

    async def run_pending(self) -> List[str]:
        """Fire every job whose next fire time has passed; returns the fired job types.

        Also re-runs stores whose rate-limit deferral has expired. Jobs run as
        background tasks; use :meth:`wait_idle` to wait for them.
        """
        now = self.clock.now()
        fired: List[str] = []
        for job_type in JOB_TYPES:
            state = self._jobs[job_type]
            if state.next_fire_at is None:
                state.next_fire_at = self.compute_next_fire(job_type, now)
            if state.next_fire_at <= now:
                state.next_fire_at = self.compute_next_fire(job_type, now)
                result = self.trigger(job_type, triggered_by="scheduler")
                if result.accepted:
                    fired.append(job_type)
                else:
                    logger.info(f"Scheduled {job_type} skipped: {result.reason}")
                self._save_job_row(job_type, next_fire_at=state.next_fire_at)

        for key, due in list(self._deferred.items()):
            if due <= now:
                job_type, store_identifier = key
                self._deferred.pop(key, None)
                self.trigger(job_type, store_identifier, triggered_by="scheduler")
        return fired

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    def trigger(
        self,
        job_type: str,
        store_identifier: Optional[str] = None,
        *,
        triggered_by: str = "manual",
    ) -> TriggerResult:
        """Start a job now unless the same (job, store) is already in flight.

        Duplicate triggers are rejected, never queued. CLEANUP ignores
        ``store_identifier``.
        """
        job_type = JobType(job_type).value
        if not self.cfg.SYNC_ENABLED:
            return TriggerResult(False, job_type, store_identifier, reason="sync_disabled")

        if job_type == JobType.CLEANUP.value:
            key = (job_type, ALL_STORES)
            if key in self._in_flight:
                return TriggerResult(False, job_type, ALL_STORES, reason="already_running")
            self._in_flight[key] = self.clock.now()
            task = self._spawn(self._run_cleanup(key, triggered_by))
            return TriggerResult(True, job_type, ALL_STORES, task=task)

        if store_identifier:
            key = (job_type, store_identifier)
            if key in self._in_flight:
                return TriggerResult(False, job_type, store_identifier, reason="already_running")
            self._in_flight[key] = self.clock.now()
            task = self._spawn(self._run_single(job_type, store_identifier, triggered_by))
            return TriggerResult(True, job_type, store_identifier, task=task)

        job_key = (job_type, JOB_WIDE)
        if job_key in self._in_flight:
            return TriggerResult(False, job_type, None, reason="already_running")
        self._in_flight[job_key] = self.clock.now()
        task = self._spawn(self._run_job_guarded(job_type, triggered_by))
        return TriggerResult(True, job_type, None, task=task)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _worker_for(self, job_type: str):
        if job_type == JobType.NEW_ORDERS.value:
            return self.new_orders_worker
        if job_type == JobType.STATUS_SYNC.value:
            return self.status_sync_worker
        raise ValueError(f"{job_type} is not a per-store job")

    async def _run_store(self, job_type: str, store_identifier: str, triggered_by: str) -> StoreRunResult:
        worker = self._worker_for(job_type)
        try:
            async with self._pool:
                result = await worker.run_for_store(store_identifier, triggered_by=triggered_by)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s run for store=%s crashed: %s", job_type, store_identifier, exc, exc_info=True)
            return StoreRunResult(
                job_type,
                store_identifier,
                outcome=RunOutcome.FAILED,
                error={"code": "unexpected_error", "message": str(exc)},
            )
        if result.retry_after is not None:
            due = self.clock.now() + timedelta(seconds=result.retry_after)
            self._deferred[(job_type, store_identifier)] = due
            logger.warning(
                f"{job_type} for store={store_identifier} rate limited; deferred until {due.isoformat()}"
            )
        return result

    async def _run_single(self, job_type: str, store_identifier: str, triggered_by: str) -> StoreRunResult:
        key = (job_type, store_identifier)
        try:
            return await self._run_store(job_type, store_identifier, triggered_by)
        finally:
            self._in_flight.pop(key, None)

    async def _run_cleanup(self, key: Tuple[str, str], triggered_by: str) -> JobResult:
        job = JobResult(job_type=key[0], triggered_by=triggered_by, started_at=self.clock.now())
        self._job_started(key[0], job)
        try:
            job.results.append(await self.cleanup_job.run(triggered_by=triggered_by))
        except Exception as exc:
            job.error = str(exc)
            logger.error("Cleanup job crashed: %s", exc, exc_info=True)
        finally:
            self._in_flight.pop(key, None)
            self._job_finished(key[0], job)
        return job

    async def _run_job_guarded(self, job_type: str, triggered_by: str) -> JobResult:
        try:
            return await self.run_job(job_type, triggered_by=triggered_by)
        finally:
            self._in_flight.pop((job_type, JOB_WIDE), None)

    async def run_job(self, job_type: str, *, triggered_by: str = "scheduler") -> JobResult:
        """Run a per-store job for every active store with bounded parallelism.

        One store's failure never affects the others. A job-level failure
        (e.g. the store list cannot be read) is logged and the job waits for
        its next fire.
        """
        job = JobResult(job_type=job_type, triggered_by=triggered_by, started_at=self.clock.now())
        self._job_started(job_type, job)
        try:
            db = self.session_factory()
            try:
                stores = store_registry.list_active_stores(db)
            finally:
                db.close()

            if not stores:
                logger.info(f"{job_type}: no active stores")

            now = self.clock.now()
            launched: List[Tuple[Tuple[str, str], Any]] = []
            for store in stores:
                key = (job_type, store.identifier)
                if key in self._in_flight:
                    job.results.append(StoreRunResult(job_type, store.identifier, skipped_reason="in_flight"))
                    continue
                deferred_until = self._deferred.get(key)
                if deferred_until is not None and deferred_until > now:
                    job.results.append(StoreRunResult(job_type, store.identifier, skipped_reason="rate_limited"))
                    continue
                self._in_flight[key] = now
                launched.append((key, self._run_store(job_type, store.identifier, triggered_by)))

            async def _run_tracked(key, coro) -> StoreRunResult:
                try:
                    return await coro
                finally:
                    self._in_flight.pop(key, None)

            results = await asyncio.gather(*[_run_tracked(key, coro) for key, coro in launched])
            job.results.extend(results)
        except asyncio.CancelledError:
            job.error = "cancelled"
            raise
        except Exception as exc:
            job.error = str(exc)
            logger.error("%s job failed: %s", job_type, exc, exc_info=True)
        finally:
            self._job_finished(job_type, job)
        return job

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _job_started(self, job_type: str, job: JobResult) -> None:
        state = self._jobs[job_type]
        state.last_started_at = job.started_at
        self._save_job_row(job_type, started=job.started_at)

    def _job_finished(self, job_type: str, job: JobResult) -> None:
        job.finished_at = self.clock.now()
        state = self._jobs[job_type]
        state.last_finished_at = job.finished_at
        state.last_result = job
        state.last_error = job.error
        ok = job.error is None
        self._save_job_row(job_type, finished=job.finished_at, ok=ok, error=job.error)
        logger.info(f"{job_type} job finished: {job.outcome_counts()} error={job.error}")

    def _save_job_row(
        self,
        job_type: str,
        *,
        started: Optional[datetime] = None,
        finished: Optional[datetime] = None,
        ok: Optional[bool] = None,
        error: Optional[str] = None,
        next_fire_at: Optional[datetime] = None,
    ) -> None:
        db = self.session_factory()
        try:
            row = db.get(SchedulerJob, job_type)
            if row is None:
                row = SchedulerJob(job_type=job_type, runs_ok_in_row=0, runs_error_in_row=0)
                db.add(row)
            if started is not None:
                row.last_started_at = started
                row.last_status = "running"
                row.last_error_message = None
            if finished is not None:
                row.last_finished_at = finished
                if ok:
                    row.last_status = "ok"
                    row.runs_ok_in_row = (row.runs_ok_in_row or 0) + 1
                    row.runs_error_in_row = 0
                else:
                    row.last_status = "error"
                    row.last_error_message = (error or "")[:2000]
                    row.runs_error_in_row = (row.runs_error_in_row or 0) + 1
                    row.runs_ok_in_row = 0
            if next_fire_at is not None:
                row.next_fire_at = next_fire_at
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.error("Failed to record scheduler heartbeat for %s: %s", job_type, exc)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Introspection / control surface
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        jobs: Dict[str, Any] = {}
        next_fires = self.next_fire_times()
        for job_type, state in self._jobs.items():
            running_stores = sorted(store for (job, store), _ in self._in_flight.items() if job == job_type)
            jobs[job_type] = {
                "next_fire_at": next_fires[job_type],
                "running": bool(running_stores),
                "in_flight": running_stores,
                "last_started_at": state.last_started_at.isoformat() if state.last_started_at else None,
                "last_finished_at": state.last_finished_at.isoformat() if state.last_finished_at else None,
                "last_result": state.last_result.as_dict() if state.last_result else None,
                "last_error": state.last_error,
            }

        db = self.session_factory()
        try:
            active_runs = [
                {
                    "run_id": run.id,
                    "job_type": run.job_type,
                    "store": run.store_identifier,
                    "started_at": run.started_at.isoformat() if run.started_at else None,
                    "heartbeat_at": run.heartbeat_at.isoformat() if run.heartbeat_at else None,
                }
                for run in db.query(SyncRun).filter(SyncRun.outcome == RunOutcome.RUNNING.value).all()
            ]
        finally:
            db.close()

        return {
            "is_running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "sync_enabled": self.cfg.SYNC_ENABLED,
            "jobs": jobs,
            "active_runs": active_runs,
            "deferred": {f"{job}:{store}": due.isoformat() for (job, store), due in self._deferred.items()},
        }

    def run_history(
        self,
        job_type: Optional[str] = None,
        store_identifier: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            runs = list_runs(db, job_type=job_type, store_identifier=store_identifier, limit=limit)
            return [run_to_dict(run) for run in runs]
        finally:
            db.close()

    def reset_cursor(self, store_identifier: str, job_type: str, value: Optional[str]) -> Dict[str, Any]:
        """Operator action: move a cursor (possibly backward), or clear it for a full resync."""
        job_type = JobType(job_type).value
        db = self.session_factory()
        try:
            store_registry.require_store(db, store_identifier)
            cursor = cursors.reset(db, store_identifier, job_type, value, reason="manual", clock=self.clock)
            return {"store": store_identifier, "job_type": job_type, "last_external_id": cursor.last_external_id}
        finally:
            db.close()

    async def check_drift(self, store_identifier: str, *, auto_heal: Optional[bool] = None) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            store = store_registry.require_store(db, store_identifier)
            client = self.new_orders_worker.client_factory(store)
            try:
                report = await cursors.check_drift(
                    db, store_identifier, client, auto_heal=auto_heal, clock=self.clock
                )
            finally:
                close = getattr(client, "aclose", None)
                if close is not None:
                    await close()
            return report.as_dict()
        finally:
            db.close()

    def store_overview(self) -> Dict[str, Any]:
        """Per-store sync state plus order totals, for health/status pages."""
        now = self.clock.now()
        db = self.session_factory()
        try:
            stores = store_registry.list_stores(db)
            totals = dict(
                db.query(Order.store_identifier, func.count(Order.id))
                .group_by(Order.store_identifier)
                .all()
            )
            latest = dict(
                db.query(Order.store_identifier, func.max(Order.created_at))
                .group_by(Order.store_identifier)
                .all()
            )
            recent = (
                db.query(func.count(Order.id))
                .filter(Order.created_at >= now - timedelta(hours=24))
                .scalar()
            )
            cursor_rows = (
                db.query(SyncCursor)
                .filter(SyncCursor.job_type == JobType.NEW_ORDERS.value)
                .all()
            )
            by_store = {c.store_identifier: c for c in cursor_rows}

            per_store = []
            for store in stores:
                cursor = by_store.get(store.identifier)
                last_created = latest.get(store.identifier)
                per_store.append({
                    "store": store.identifier,
                    "name": store.name,
                    "is_active": store.is_active,
                    "total_orders": int(totals.get(store.identifier, 0)),
                    "last_order_created": ensure_utc(last_created).isoformat() if last_created else None,
                    "last_sync": ensure_utc(cursor.last_run_at).isoformat() if cursor and cursor.last_run_at else None,
                    "cursor": cursor.last_external_id if cursor else None,
                    "last_error": cursor.last_error if cursor else None,
                    "drift_flagged": bool(cursor.drift_flagged) if cursor else False,
                })

            return {
                "active_stores": sum(1 for s in stores if s.is_active),
                "total_orders": int(sum(totals.values())),
                "orders_last_24h": int(recent or 0),
                "stores": per_store,
            }
        finally:
            db.close()
