"""High-water-mark cursors and drift reconciliation.

A cursor's ``last_external_id`` only moves forward through :func:`advance`.
The only way back is :func:`reset`, either by an operator or by a confirmed
drift check with auto-heal enabled.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

from ordersync.config import settings
from ordersync.models_sqlalchemy.models import Order
from ordersync.models_sqlalchemy.sync import SyncCursor
from ordersync.utils.clock import Clock, system_clock
from ordersync.utils.logger import logger

from .errors import CursorConflictError, DriftDetectedError
from .external_ids import extract_numeric_id, max_external_id


def get_cursor(db: Session, store_identifier: str, job_type: str) -> Optional[SyncCursor]:
    return (
        db.query(SyncCursor)
        .filter(SyncCursor.store_identifier == store_identifier, SyncCursor.job_type == job_type)
        .one_or_none()
    )


def get_or_create_cursor(
    db: Session,
    store_identifier: str,
    job_type: str,
    *,
    initial_value: Optional[str] = None,
    clock: Clock = system_clock,
) -> SyncCursor:
    cursor = get_cursor(db, store_identifier, job_type)
    if cursor:
        return cursor

    now = clock.now()
    cursor = SyncCursor(
        id=str(uuid4()),
        store_identifier=store_identifier,
        job_type=job_type,
        last_external_id=initial_value,
        enabled=True,
        created_at=now,
        updated_at=now,
    )
    db.add(cursor)
    db.commit()
    db.refresh(cursor)
    return cursor


def local_max_external_id(db: Session, store_identifier: str) -> Optional[str]:
    """Largest external id (by numeric core) stored locally for a store."""
    ids = (
        row.external_id
        for row in db.query(Order.external_id)
        .filter(Order.store_identifier == store_identifier)
        .yield_per(1000)
    )
    return max_external_id(ids)


def advance(
    db: Session,
    cursor: SyncCursor,
    new_max: Optional[str],
    *,
    expected_updated_at: Optional[datetime] = None,
    clock: Clock = system_clock,
) -> bool:
    """Move the cursor forward to ``new_max``.

    A value that is not strictly greater than the current one is a no-op.
    The write is a compare-and-set on ``updated_at``; if the row changed since
    ``expected_updated_at`` was read, :class:`CursorConflictError` is raised.
    Does not commit.
    """
    new_num = extract_numeric_id(new_max)
    if new_num is None:
        return False
    current_num = extract_numeric_id(cursor.last_external_id)
    if current_num is not None and new_num <= current_num:
        return False

    expected = expected_updated_at if expected_updated_at is not None else cursor.updated_at
    now = clock.now()
    result = db.execute(
        update(SyncCursor)
        .where(SyncCursor.id == cursor.id, SyncCursor.updated_at == expected)
        .values(last_external_id=new_max, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) == 0:
        raise CursorConflictError(
            f"Cursor {cursor.store_identifier}/{cursor.job_type} changed concurrently; "
            f"refusing to advance to {new_max}"
        )
    db.expire(cursor)
    return True


def reset(
    db: Session,
    store_identifier: str,
    job_type: str,
    value: Optional[str],
    *,
    reason: str = "manual",
    clock: Clock = system_clock,
) -> SyncCursor:
    """Explicitly set a cursor to ``value`` (may move it backward, or clear it).

    Clearing the NEW_ORDERS cursor makes the next run bootstrap again.
    """
    cursor = get_or_create_cursor(db, store_identifier, job_type, clock=clock)
    previous = cursor.last_external_id
    cursor.last_external_id = value
    cursor.updated_at = clock.now()
    cursor.drift_flagged = False
    cursor.drift_detail = {
        "last_reset": {
            "from": previous,
            "to": value,
            "reason": reason,
            "at": clock.now().isoformat(),
        }
    }
    db.commit()
    db.refresh(cursor)
    logger.warning(
        "Cursor reset store=%s job=%s from=%s to=%s reason=%s",
        store_identifier,
        job_type,
        previous,
        value,
        reason,
    )
    return cursor


def mark_run_result(
    db: Session,
    cursor: SyncCursor,
    *,
    error: Optional[str],
    clock: Clock = system_clock,
) -> None:
    """Record the run timestamp and last error; never touches the high-water mark."""
    db.execute(
        update(SyncCursor)
        .where(SyncCursor.id == cursor.id)
        .values(last_run_at=clock.now(), last_error=error[:2000] if error else None)
        .execution_options(synchronize_session=False)
    )
    db.commit()


@dataclass
class DriftReport:
    store_identifier: str
    local_max: Optional[str] = None
    upstream_max: Optional[str] = None
    drift_detected: bool = False
    confirmed_missing: bool = False
    healed: bool = False
    marked_missing: List[str] = field(default_factory=list)
    error: Optional[DriftDetectedError] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "store": self.store_identifier,
            "local_max": self.local_max,
            "upstream_max": self.upstream_max,
            "drift_detected": self.drift_detected,
            "confirmed_missing": self.confirmed_missing,
            "healed": self.healed,
            "marked_missing": len(self.marked_missing),
        }


async def check_drift(
    db: Session,
    store_identifier: str,
    client,
    *,
    job_type: str = "NEW_ORDERS",
    auto_heal: Optional[bool] = None,
    clock: Clock = system_clock,
) -> DriftReport:
    """Compare the local maximum external id with the upstream's newest id.

    Costs one newest-first page request, plus a single-record lookup when the
    local maximum looks missing upstream. A confirmed drift flags the cursor
    and marks the local orders above the upstream maximum; the cursor is only
    rewritten when auto-heal is enabled.
    """
    auto_heal = settings.DRIFT_AUTO_HEAL if auto_heal is None else auto_heal
    cursor = get_or_create_cursor(db, store_identifier, job_type, clock=clock)
    local_max = max_external_id([cursor.last_external_id, local_max_external_id(db, store_identifier)])
    report = DriftReport(store_identifier=store_identifier, local_max=local_max)
    if local_max is None:
        return report

    page = await client.fetch_page(None)
    upstream_max = max_external_id(r.id for r in page.records)
    report.upstream_max = upstream_max

    local_num = extract_numeric_id(local_max)
    upstream_num = extract_numeric_id(upstream_max)
    if upstream_num is not None and local_num <= upstream_num:
        if cursor.drift_flagged:
            cursor.drift_flagged = False
            cursor.drift_detail = {"resolved_at": clock.now().isoformat(), "upstream_max": upstream_max}
            db.commit()
        return report

    # Newest-first listing says local is ahead; confirm the specific id is gone.
    confirmed = await client.fetch_order(local_max)
    if confirmed is not None:
        logger.info(
            "Drift check store=%s: local max %s still exists upstream (listing max %s)",
            store_identifier,
            local_max,
            upstream_max,
        )
        return report

    report.drift_detected = True
    report.confirmed_missing = True
    report.error = DriftDetectedError(store_identifier, local_max, upstream_max)
    logger.warning(str(report.error))

    now = clock.now()
    floor = upstream_num if upstream_num is not None else 0
    rows = (
        db.query(Order)
        .filter(Order.store_identifier == store_identifier, Order.upstream_missing_at.is_(None))
        .all()
    )
    for row in rows:
        num = extract_numeric_id(row.external_id)
        if num is not None and num > floor:
            row.upstream_missing_at = now
            report.marked_missing.append(row.external_id)

    cursor.drift_flagged = True
    cursor.drift_detail = {
        "detected_at": now.isoformat(),
        "local_max": local_max,
        "upstream_max": upstream_max,
        "marked_missing": len(report.marked_missing),
    }
    db.commit()

    if auto_heal:
        reset(db, store_identifier, job_type, upstream_max, reason="drift_auto_heal", clock=clock)
        report.healed = True

    return report
