from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Optional

from sqlalchemy.orm import Session

from ordersync.config import settings
from ordersync.models_sqlalchemy import SessionLocal
from ordersync.models_sqlalchemy.models import RunOutcome
from ordersync.services.store_registry import StoreConfig, store_registry
from ordersync.utils.clock import Clock, system_clock
from ordersync.utils.logger import logger

from . import cursors
from .errors import OrderSyncError, RateLimitError
from .logger import log_done, log_error, log_start
from .runs import abort_run, complete_run, fail_run, finalize_run, start_run
from .stats import RunStats

TriggeredBy = Literal["manual", "scheduler", "unknown"]


@dataclass
class StoreRunResult:
    """Outcome of one (job, store) execution as seen by the scheduler.

    ``outcome`` is None when the run was skipped before a SyncRun row was
    created (store inactive, cursor disabled, another run in flight).
    """

    job_type: str
    store_identifier: str
    run_id: Optional[str] = None
    outcome: Optional[RunOutcome] = None
    skipped_reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    retry_after: Optional[float] = None
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.outcome is None


def _error_payload(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, OrderSyncError):
        return exc.to_summary()
    return {"code": "unexpected_error", "message": f"{type(exc).__name__}: {exc}"}


class BaseWorker:
    job_type: str = ""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.timeout = settings.SYNC_RUN_TIMEOUT_SECONDS if timeout is None else timeout

    async def execute_sync(
        self,
        db: Session,
        store: StoreConfig,
        run_id: str,
        stats: RunStats,
    ) -> Dict[str, Any]:
        """Execute the job for one store.

        Fills ``stats`` and returns a JSON-serializable summary. Raising any
        exception fails the run; the cursor must be left untouched.
        """
        raise NotImplementedError

    async def run_for_store(
        self,
        store_identifier: str,
        triggered_by: TriggeredBy = "unknown",
    ) -> StoreRunResult:
        """Run the job for a single store and record the SyncRun outcome.

        Never raises for store-level failures (they are recorded on the run);
        only cancellation propagates, after the run is marked aborted.
        """
        result = StoreRunResult(job_type=self.job_type, store_identifier=store_identifier)
        db: Session = self.session_factory()
        try:
            if not settings.SYNC_ENABLED:
                logger.info(f"{self.job_type} run skipped for store={store_identifier}: SYNC_ENABLED=false")
                result.skipped_reason = "sync_disabled"
                return result

            store = store_registry.get_store(db, store_identifier)
            if not store or not store.is_active:
                logger.warning(f"{self.job_type} run: store {store_identifier} not found or inactive")
                result.skipped_reason = "store_inactive"
                return result

            cursor = cursors.get_cursor(db, store_identifier, self.job_type)
            if cursor is not None and not cursor.enabled:
                logger.info(f"{self.job_type} sync disabled for store={store_identifier}")
                result.skipped_reason = "cursor_disabled"
                return result
            cursor_value = cursor.last_external_id if cursor is not None else None

            run = start_run(
                db,
                job_type=self.job_type,
                store_identifier=store_identifier,
                triggered_by=triggered_by,
                clock=self.clock,
            )
            if not run:
                result.skipped_reason = "already_running"
                return result

            run_id = run.id
            result.run_id = run_id
            log_start(
                db,
                run_id=run_id,
                store_identifier=store_identifier,
                job_type=self.job_type,
                cursor=cursor_value,
                triggered_by=triggered_by,
            )

            stats = RunStats()
            start_time = self.clock.monotonic()
            try:
                summary = await asyncio.wait_for(
                    self.execute_sync(db, store, run_id, stats),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                db.rollback()
                message = f"Run exceeded {self.timeout}s and was aborted"
                abort_run(db, run_id, reason=message, stats=stats, clock=self.clock)
                self._record_failure(db, run_id, store_identifier, message, "timeout")
                result.outcome = RunOutcome.ABORTED
                result.error = {"code": "timeout", "message": message}
                return result
            except asyncio.CancelledError:
                db.rollback()
                abort_run(db, run_id, reason="Cancelled (shutdown)", stats=stats, clock=self.clock)
                result.outcome = RunOutcome.ABORTED
                raise
            except RateLimitError as exc:
                db.rollback()
                payload = _error_payload(exc)
                finalize_run(db, run_id, RunOutcome.PARTIAL, stats=stats, error=payload, clock=self.clock)
                self._record_failure(db, run_id, store_identifier, str(exc), "rate_limited")
                result.outcome = RunOutcome.PARTIAL
                result.error = payload
                result.retry_after = exc.retry_after
                return result
            except Exception as exc:
                db.rollback()
                payload = _error_payload(exc)
                fail_run(db, run_id, error=payload, stats=stats, clock=self.clock)
                self._record_failure(db, run_id, store_identifier, str(exc), self.job_type)
                logger.error(
                    f"{self.job_type} run for store={store_identifier} failed: {exc}",
                    exc_info=not isinstance(exc, OrderSyncError),
                )
                result.outcome = RunOutcome.FAILED
                result.error = payload
                return result

            duration_ms = int((self.clock.monotonic() - start_time) * 1000)
            summary = dict(summary or {})
            summary["duration_ms"] = duration_ms
            summary["api_calls"] = stats.api_calls
            if stats.dropped_issues:
                summary["dropped_issues"] = stats.dropped_issues

            log_done(
                db,
                run_id=run_id,
                store_identifier=store_identifier,
                job_type=self.job_type,
                counts=stats.counts(),
                duration_ms=duration_ms,
                cursor=summary.get("cursor_after", summary.get("cursor")),
            )
            complete_run(db, run_id, stats=stats, summary=summary, clock=self.clock)
            cursor = cursors.get_cursor(db, store_identifier, self.job_type)
            if cursor is not None:
                cursors.mark_run_result(db, cursor, error=None, clock=self.clock)

            result.outcome = RunOutcome.PARTIAL if stats.issues or stats.dropped_issues else RunOutcome.SUCCESS
            result.counts = stats.counts()
            return result
        finally:
            db.close()

    def _record_failure(
        self,
        db: Session,
        run_id: str,
        store_identifier: str,
        message: str,
        stage: str,
    ) -> None:
        log_error(
            db,
            run_id=run_id,
            store_identifier=store_identifier,
            job_type=self.job_type,
            message=message,
            stage=stage,
        )
        cursor = cursors.get_cursor(db, store_identifier, self.job_type)
        if cursor is not None:
            cursors.mark_run_result(db, cursor, error=message, clock=self.clock)
