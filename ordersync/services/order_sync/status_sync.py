"""Delivery status reconciliation for one store.

Polls the logistics API for orders whose shipment is not in a terminal
state and records delivery status changes. Lookups are gathered in memory and
written every ``commit_every`` orders, so a run cut short keeps the changes
already committed.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ordersync.config import settings
from ordersync.models_sqlalchemy.models import JobType, Order
from ordersync.services.delivery.base import DeliveryStatus, DeliveryStatusProvider
from ordersync.services.delivery.status_codes import TERMINAL_DELIVERY_CODES
from ordersync.services.store_registry import StoreConfig
from ordersync.utils.clock import Clock, system_clock
from ordersync.utils.logger import logger

from . import cursors
from .errors import TransportError
from .external_ids import max_external_id

MAX_CONSECUTIVE_LOOKUP_ERRORS = 5


class DeliveryStatusSync:
    job_type = JobType.STATUS_SYNC.value

    def __init__(
        self,
        db: Session,
        store: StoreConfig,
        provider: DeliveryStatusProvider,
        stats,
        *,
        clock: Clock = system_clock,
        batch_limit: Optional[int] = None,
        commit_every: Optional[int] = None,
    ):
        self.db = db
        self.store = store
        self.provider = provider
        self.stats = stats
        self.clock = clock
        self.batch_limit = batch_limit or settings.STATUS_SYNC_BATCH_LIMIT
        self.commit_every = max(1, commit_every or settings.STATUS_SYNC_COMMIT_EVERY)

    def pending_orders(self) -> List[Tuple[str, str, str, Optional[int]]]:
        rows = (
            self.db.query(Order.id, Order.external_id, Order.reference, Order.delivery_status_code)
            .filter(
                Order.store_identifier == self.store.identifier,
                Order.reference.isnot(None),
                Order.upstream_missing_at.is_(None),
                or_(
                    Order.delivery_status_code.is_(None),
                    Order.delivery_status_code.notin_(sorted(TERMINAL_DELIVERY_CODES)),
                ),
            )
            .order_by(Order.created_at.desc())
            .limit(self.batch_limit)
            .all()
        )
        return [(r.id, r.external_id, r.reference, r.delivery_status_code) for r in rows]

    def _apply(self, cursor, changes: List[Tuple[str, Optional[int], DeliveryStatus]], checked: List[str]) -> None:
        now = self.clock.now()
        for order_id, previous_code, status in changes:
            row = self.db.get(Order, order_id)
            if row is None:
                continue
            row.delivery_status_code = status.code
            row.delivery_status = status.label
            if status.tracking_number:
                row.tracking_number = status.tracking_number
            row.delivery_checked_at = now
            self.stats.updated += 1
            self.stats.status_changed += 1
            logger.info(
                "Store %s order %s delivery status %s -> %s (%s)",
                self.store.identifier,
                row.external_id,
                previous_code,
                status.code,
                status.label,
            )
        cursors.advance(self.db, cursor, max_external_id(checked), clock=self.clock)
        self.db.commit()

    async def run(self) -> Dict[str, Any]:
        orders = self.pending_orders()
        cursor = cursors.get_or_create_cursor(self.db, self.store.identifier, self.job_type, clock=self.clock)
        self.db.commit()

        pending: List[Tuple[str, Optional[int], DeliveryStatus]] = []
        checked: List[str] = []
        changed = 0
        consecutive_errors = 0
        for order_id, external_id, reference, current_code in orders:
            try:
                status = await self.provider.fetch_status(reference)
            except TransportError as exc:
                consecutive_errors += 1
                self.stats.skipped += 1
                self.stats.record_issue(exc)
                if consecutive_errors >= MAX_CONSECUTIVE_LOOKUP_ERRORS:
                    raise
                continue
            consecutive_errors = 0
            self.stats.fetched += 1
            checked.append(external_id)
            if status is None or status.code == current_code:
                self.stats.skipped += 1
            else:
                pending.append((order_id, current_code, status))
                changed += 1
            if len(checked) % self.commit_every == 0:
                self._apply(cursor, pending, checked)
                pending = []

        self._apply(cursor, pending, checked)

        return {
            "checked": len(orders),
            "changed": changed,
            "cursor": cursor.last_external_id,
        }
