"""Daily CLEANUP job.

Marks stale running runs as aborted, purges old run history, and runs the
advisory high-water-mark drift check for each active store.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ordersync.config import settings
from ordersync.models_sqlalchemy import SessionLocal
from ordersync.models_sqlalchemy.models import JobType, RunOutcome
from ordersync.models_sqlalchemy.sync import SyncRun, SyncRunEvent
from ordersync.services.store_api_client import StoreOrdersClient
from ordersync.services.store_registry import StoreConfig, store_registry
from ordersync.utils.clock import Clock, system_clock
from ordersync.utils.logger import logger

from . import cursors
from .base_worker import StoreRunResult, TriggeredBy, _error_payload
from .errors import OrderSyncError
from .logger import log_done, log_drift, log_start
from .runs import ALL_STORES, abort_run, abort_stale_runs, complete_run, fail_run, get_active_run, start_run
from .stats import RunStats


def purge_history(db: Session, *, retention_days: int, clock: Clock = system_clock) -> Dict[str, int]:
    cutoff = clock.now() - timedelta(days=retention_days)
    old_run_ids = [
        row.id
        for row in db.query(SyncRun.id)
        .filter(SyncRun.outcome != RunOutcome.RUNNING.value, SyncRun.finished_at < cutoff)
        .all()
    ]

    events = (
        db.query(SyncRunEvent)
        .filter(SyncRunEvent.timestamp < cutoff)
        .delete(synchronize_session=False)
    )
    runs = 0
    for start in range(0, len(old_run_ids), 500):
        chunk = old_run_ids[start:start + 500]
        events += (
            db.query(SyncRunEvent)
            .filter(SyncRunEvent.run_id.in_(chunk))
            .delete(synchronize_session=False)
        )
        runs += (
            db.query(SyncRun)
            .filter(SyncRun.id.in_(chunk))
            .delete(synchronize_session=False)
        )
    db.commit()
    logger.info(f"Purged {runs} sync runs and {events} run events older than {retention_days} days")
    return {"runs_deleted": runs, "events_deleted": events}


class CleanupJob:
    job_type = JobType.CLEANUP.value

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock,
        client_factory: Optional[Callable[[StoreConfig], Any]] = None,
        retention_days: Optional[int] = None,
        drift_check: bool = True,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.client_factory = client_factory or (lambda store: StoreOrdersClient(store, clock=clock))
        self.retention_days = retention_days or settings.HISTORY_RETENTION_DAYS
        self.drift_check = drift_check
        self.timeout = settings.SYNC_RUN_TIMEOUT_SECONDS if timeout is None else timeout

    async def _check_store(self, db: Session, store: StoreConfig, run_id: str, stats: RunStats) -> Dict[str, Any]:
        active = get_active_run(
            db,
            job_type=JobType.NEW_ORDERS.value,
            store_identifier=store.identifier,
            clock=self.clock,
        )
        if active is not None:
            return {"store": store.identifier, "skipped": "new_orders_running"}

        client = self.client_factory(store)
        try:
            report = await asyncio.wait_for(
                cursors.check_drift(db, store.identifier, client, clock=self.clock),
                timeout=self.timeout,
            )
        except (OrderSyncError, asyncio.TimeoutError) as exc:
            db.rollback()
            payload = _error_payload(exc) if isinstance(exc, OrderSyncError) else {
                "code": "timeout",
                "message": f"Drift check for {store.identifier} timed out",
            }
            payload["store"] = store.identifier
            stats.issues.append(payload)
            return {"store": store.identifier, "error": payload["code"]}
        finally:
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()

        stats.api_calls += getattr(client, "requests_made", 0)
        if report.error is not None:
            stats.record_issue(report.error)
            log_drift(db, run_id=run_id, store_identifier=store.identifier, job_type=self.job_type,
                      details=report.as_dict())
        return report.as_dict()

    async def run(self, triggered_by: TriggeredBy = "unknown") -> StoreRunResult:
        result = StoreRunResult(job_type=self.job_type, store_identifier=ALL_STORES)
        db = self.session_factory()
        try:
            run = start_run(
                db,
                job_type=self.job_type,
                store_identifier=ALL_STORES,
                triggered_by=triggered_by,
                clock=self.clock,
            )
            if run is None:
                result.skipped_reason = "already_running"
                return result
            result.run_id = run.id
            log_start(db, run_id=run.id, store_identifier=ALL_STORES, job_type=self.job_type,
                      cursor=None, triggered_by=triggered_by)

            stats = RunStats()
            start_time = self.clock.monotonic()
            try:
                summary: Dict[str, Any] = {"stale_runs_aborted": abort_stale_runs(db, clock=self.clock)}
                summary.update(purge_history(db, retention_days=self.retention_days, clock=self.clock))
                if self.drift_check:
                    summary["drift"] = [
                        await self._check_store(db, store, run.id, stats)
                        for store in store_registry.list_active_stores(db)
                    ]
            except asyncio.CancelledError:
                db.rollback()
                abort_run(db, run.id, reason="Cancelled (shutdown)", stats=stats, clock=self.clock)
                raise
            except Exception as exc:
                db.rollback()
                payload = _error_payload(exc)
                fail_run(db, run.id, error=payload, stats=stats, clock=self.clock)
                logger.error(f"Cleanup job failed: {exc}", exc_info=True)
                result.outcome = RunOutcome.FAILED
                result.error = payload
                return result

            log_done(db, run_id=run.id, store_identifier=ALL_STORES, job_type=self.job_type,
                     counts=stats.counts(),
                     duration_ms=int((self.clock.monotonic() - start_time) * 1000), cursor=None)
            complete_run(db, run.id, stats=stats, summary=summary, clock=self.clock)
            result.outcome = RunOutcome.PARTIAL if stats.issues else RunOutcome.SUCCESS
            result.counts = stats.counts()
            return result
        finally:
            db.close()
