from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ordersync.models_sqlalchemy.sync import SyncRunEvent


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def log_event(
    db: Session,
    *,
    run_id: str,
    store_identifier: str,
    job_type: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
) -> SyncRunEvent:
    entry = SyncRunEvent(
        id=str(uuid4()),
        run_id=run_id,
        store_identifier=store_identifier,
        job_type=job_type,
        event_type=event_type,
        timestamp=_now_utc(),
        details_json=details or {},
    )
    db.add(entry)
    db.commit()
    return entry


def log_start(db: Session, *, run_id: str, store_identifier: str, job_type: str,
              cursor: Optional[str], triggered_by: str) -> None:
    log_event(
        db,
        run_id=run_id,
        store_identifier=store_identifier,
        job_type=job_type,
        event_type="start",
        details={"cursor": cursor, "triggered_by": triggered_by},
    )


def log_page(db: Session, *, run_id: str, store_identifier: str, job_type: str, phase: str,
             token: Any, records: int, skipped: int, min_id: Optional[int], max_id: Optional[int]) -> None:
    log_event(
        db,
        run_id=run_id,
        store_identifier=store_identifier,
        job_type=job_type,
        event_type="page",
        details={
            "phase": phase,
            "token": token,
            "records": records,
            "skipped": skipped,
            "min_id": min_id,
            "max_id": max_id,
        },
    )


def log_retry(db: Session, *, run_id: str, store_identifier: str, job_type: str,
              attempt: int, delay: float, message: str) -> None:
    log_event(
        db,
        run_id=run_id,
        store_identifier=store_identifier,
        job_type=job_type,
        event_type="retry",
        details={"attempt": attempt, "delay_seconds": delay, "message": message},
    )


def log_drift(db: Session, *, run_id: str, store_identifier: str, job_type: str,
              details: Dict[str, Any]) -> None:
    log_event(
        db,
        run_id=run_id,
        store_identifier=store_identifier,
        job_type=job_type,
        event_type="drift",
        details=details,
    )


def log_done(db: Session, *, run_id: str, store_identifier: str, job_type: str,
             counts: Dict[str, int], duration_ms: int, cursor: Optional[str]) -> None:
    log_event(
        db,
        run_id=run_id,
        store_identifier=store_identifier,
        job_type=job_type,
        event_type="done",
        details={**counts, "duration_ms": duration_ms, "cursor": cursor},
    )


def log_error(db: Session, *, run_id: str, store_identifier: str, job_type: str,
              message: str, stage: Optional[str] = None) -> None:
    log_event(
        db,
        run_id=run_id,
        store_identifier=store_identifier,
        job_type=job_type,
        event_type="error",
        details={"message": message, "stage": stage},
    )
