from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

from ordersync.config import settings
from ordersync.models_sqlalchemy.models import RunOutcome
from ordersync.models_sqlalchemy.sync import SyncCursor, SyncRun
from ordersync.utils.clock import Clock, system_clock
from ordersync.utils.logger import logger

from .errors import RunFinalizedError
from .stats import RunStats

ALL_STORES = "all"


def get_active_run(
    db: Session,
    *,
    job_type: str,
    store_identifier: str,
    clock: Clock = system_clock,
) -> Optional[SyncRun]:
    """Return a currently active run if it is fresh.

    A run is active if outcome='running' and its heartbeat is not older than
    RUN_STALE_MINUTES. Stale running rows stay visible in history until the
    cleanup job marks them aborted.
    """
    cutoff = clock.now() - timedelta(minutes=settings.RUN_STALE_MINUTES)
    return (
        db.query(SyncRun)
        .filter(
            SyncRun.job_type == job_type,
            SyncRun.store_identifier == store_identifier,
            SyncRun.outcome == RunOutcome.RUNNING.value,
            SyncRun.heartbeat_at >= cutoff,
        )
        .order_by(SyncRun.started_at.desc())
        .first()
    )


def start_run(
    db: Session,
    *,
    job_type: str,
    store_identifier: str,
    triggered_by: str = "scheduler",
    clock: Clock = system_clock,
) -> Optional[SyncRun]:
    """Start a new run if there is no fresh active run for (job, store).

    Locks the cursor row (where the backend supports it) so two processes
    cannot both observe "no active run". Returns None when a run is active.
    """
    _ = (
        db.query(SyncCursor)
        .filter(
            SyncCursor.store_identifier == store_identifier,
            SyncCursor.job_type == job_type,
        )
        .with_for_update()
        .first()
    )

    active = get_active_run(db, job_type=job_type, store_identifier=store_identifier, clock=clock)
    if active:
        logger.info(
            f"Sync run already active for store={store_identifier} job={job_type} run_id={active.id}"
        )
        db.commit()
        return None

    now = clock.now()
    run = SyncRun(
        id=str(uuid4()),
        job_type=job_type,
        store_identifier=store_identifier,
        triggered_by=triggered_by,
        outcome=RunOutcome.RUNNING.value,
        started_at=now,
        heartbeat_at=now,
        fetched=0,
        created=0,
        updated=0,
        status_changed=0,
        skipped=0,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    logger.info(f"Started sync run id={run.id} store={store_identifier} job={job_type} by={triggered_by}")
    return run


def heartbeat(db: Session, run_id: str, *, clock: Clock = system_clock) -> None:
    db.execute(
        update(SyncRun)
        .where(SyncRun.id == run_id, SyncRun.outcome == RunOutcome.RUNNING.value)
        .values(heartbeat_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def finalize_run(
    db: Session,
    run_id: str,
    outcome: RunOutcome,
    *,
    stats: Optional[RunStats] = None,
    error: Optional[Dict[str, Any]] = None,
    summary: Optional[Dict[str, Any]] = None,
    clock: Clock = system_clock,
) -> None:
    """Write the terminal outcome of a run. A run can be finalized only once."""
    if outcome == RunOutcome.RUNNING:
        raise ValueError("finalize_run requires a terminal outcome")

    issues: List[Dict[str, Any]] = list(stats.issues) if stats else []
    if error:
        issues.insert(0, error)

    now = clock.now()
    values: Dict[str, Any] = {
        "outcome": outcome.value,
        "finished_at": now,
        "heartbeat_at": now,
        "error_summary": issues or None,
        "summary_json": summary,
    }
    if stats is not None:
        values.update(stats.counts())

    result = db.execute(
        update(SyncRun)
        .where(SyncRun.id == run_id, SyncRun.outcome == RunOutcome.RUNNING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) == 0:
        db.rollback()
        raise RunFinalizedError(f"Sync run {run_id} is already finalized")
    db.commit()

    log = logger.error if outcome in (RunOutcome.FAILED, RunOutcome.ABORTED) else logger.info
    log(f"Sync run id={run_id} finished outcome={outcome.value}")


def complete_run(db: Session, run_id: str, *, stats: RunStats, summary: Optional[dict] = None,
                 clock: Clock = system_clock) -> None:
    outcome = RunOutcome.PARTIAL if stats.issues or stats.dropped_issues else RunOutcome.SUCCESS
    finalize_run(db, run_id, outcome, stats=stats, summary=summary, clock=clock)


def fail_run(db: Session, run_id: str, *, error: Dict[str, Any], stats: Optional[RunStats] = None,
             summary: Optional[dict] = None, clock: Clock = system_clock) -> None:
    finalize_run(db, run_id, RunOutcome.FAILED, stats=stats, error=error, summary=summary, clock=clock)


def abort_run(db: Session, run_id: str, *, reason: str, stats: Optional[RunStats] = None,
              clock: Clock = system_clock) -> None:
    finalize_run(
        db,
        run_id,
        RunOutcome.ABORTED,
        stats=stats,
        error={"code": "aborted", "message": reason},
        clock=clock,
    )


def abort_stale_runs(db: Session, *, clock: Clock = system_clock) -> int:
    """Mark running rows whose heartbeat is older than RUN_STALE_MINUTES as aborted."""
    now = clock.now()
    cutoff = now - timedelta(minutes=settings.RUN_STALE_MINUTES)
    result = db.execute(
        update(SyncRun)
        .where(SyncRun.outcome == RunOutcome.RUNNING.value, SyncRun.heartbeat_at < cutoff)
        .values(
            outcome=RunOutcome.ABORTED.value,
            finished_at=now,
            error_summary=[{"code": "stale", "message": "No heartbeat; marked aborted by cleanup"}],
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    count = result.rowcount or 0
    if count:
        logger.warning(f"Marked {count} stale sync runs as aborted")
    return count


def list_runs(
    db: Session,
    *,
    job_type: Optional[str] = None,
    store_identifier: Optional[str] = None,
    limit: int = 50,
) -> List[SyncRun]:
    query = db.query(SyncRun)
    if job_type:
        query = query.filter(SyncRun.job_type == job_type)
    if store_identifier:
        query = query.filter(SyncRun.store_identifier == store_identifier)
    return query.order_by(SyncRun.started_at.desc()).limit(limit).all()


def run_to_dict(run: SyncRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "job_type": run.job_type,
        "store": run.store_identifier,
        "triggered_by": run.triggered_by,
        "outcome": run.outcome,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "fetched": run.fetched,
        "created": run.created,
        "updated": run.updated,
        "status_changed": run.status_changed,
        "skipped": run.skipped,
        "error_summary": run.error_summary or [],
        "summary": run.summary_json or {},
    }
