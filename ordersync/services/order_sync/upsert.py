"""Idempotent writes of upstream orders into the local ``orders`` table.

New orders go through ``INSERT .. ON CONFLICT (store_identifier, external_id)
DO NOTHING``; if a concurrent writer won the insert, the record falls through
to the update branch. Updates only touch fields that actually differ, so
applying the same record twice leaves one row in the same final state.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import insert as generic_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ordersync.models.store_orders import RawOrder
from ordersync.models_sqlalchemy.models import Order
from ordersync.utils.clock import Clock, ensure_utc, system_clock

from . import identity
from .errors import UnknownStatusError
from .identity import Resolution
from .stats import RunStats
from .status_map import map_external_status

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


def build_order_values(record: RawOrder) -> Dict[str, Any]:
    """Local column values for an upstream record (excluding identity columns)."""
    status, recognized = map_external_status(record.status)
    return {
        "reference": record.reference,
        "status": status.value,
        "external_status": record.status,
        "status_unknown": not recognized,
        "total": record.total,
        "customer_name": record.full_name,
        "customer_phone": record.telephone,
        "customer_region": record.wilaya,
        "customer_city": record.commune,
        "items": [item.model_dump(mode="json") for item in record.items],
        "raw_payload": record.model_dump(mode="json"),
        "ordered_at": record.created_at,
        "upstream_missing_at": None,
    }


def _same(current: Any, new: Any) -> bool:
    if isinstance(current, datetime) or isinstance(new, datetime):
        return ensure_utc(current) == ensure_utc(new)
    if isinstance(current, Decimal) or isinstance(new, Decimal):
        if current is None or new is None:
            return current is new
        return Decimal(current) == Decimal(new)
    return current == new


def _insert_new(db: Session, store_identifier: str, external_id: str, values: Dict[str, Any],
                now: datetime) -> bool:
    """Insert a new order row. Returns False if the row already existed."""
    row = {
        "id": str(uuid.uuid4()),
        "store_identifier": store_identifier,
        "external_id": external_id,
        "created_at": now,
        "updated_at": now,
        **values,
    }
    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(Order).values(**row).on_conflict_do_nothing(
            index_elements=["store_identifier", "external_id"]
        )
        result = db.execute(stmt)
        return (result.rowcount or 0) > 0

    savepoint = db.begin_nested()
    try:
        db.execute(generic_insert(Order).values(**row))
        savepoint.commit()
        return True
    except IntegrityError:
        savepoint.rollback()
        return False


def _update_existing(db: Session, order_id: str, values: Dict[str, Any], stats: RunStats,
                     now: datetime) -> str:
    row: Optional[Order] = db.get(Order, order_id)
    if row is None:
        return UNCHANGED

    changed = {k: v for k, v in values.items() if not _same(getattr(row, k), v)}
    if not changed:
        stats.skipped += 1
        return UNCHANGED

    if "status" in changed:
        stats.status_changed += 1
    for key, value in changed.items():
        setattr(row, key, value)
    row.updated_at = now
    db.flush()
    stats.updated += 1
    return UPDATED


def upsert_order(
    db: Session,
    store_identifier: str,
    record: RawOrder,
    stats: RunStats,
    resolution: Optional[Resolution] = None,
    clock: Clock = system_clock,
) -> str:
    """Write one upstream record for a store; returns created/updated/unchanged.

    Does not commit; the caller commits once the whole batch is applied.
    """
    if resolution is None:
        resolution = identity.resolve(db, store_identifier, record.external_id)
    if resolution.ambiguity is not None:
        stats.record_issue(resolution.ambiguity)

    now = clock.now()
    values = build_order_values(record)
    if values["status_unknown"]:
        stats.record_issue(UnknownStatusError(store_identifier, record.external_id, record.status))

    if not resolution.found:
        if _insert_new(db, store_identifier, record.external_id, values, now):
            stats.created += 1
            return CREATED
        # Lost a race with another writer; apply as an update instead.
        resolution = identity.resolve(db, store_identifier, record.external_id)
        if not resolution.found:
            return UNCHANGED

    return _update_existing(db, resolution.order_id, values, stats, now)
