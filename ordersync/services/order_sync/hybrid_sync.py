"""Per-store hybrid sync: forward scan for new orders plus a bounded backward
re-scan for status changes on orders that are already stored locally.

Phases run strictly in order (FETCH_NEW, SCAN_DRIFT, UPSERT, ADVANCE_CURSOR);
nothing is written until every page has been fetched, and the upserts and the
cursor move are committed together.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ordersync.config import settings
from ordersync.models.store_orders import RawOrder
from ordersync.models_sqlalchemy.models import JobType, Order
from ordersync.services.store_registry import StoreConfig
from ordersync.utils.clock import Clock, system_clock
from ordersync.utils.logger import logger

from . import cursors
from .errors import PaginationExhaustedError, TransportError
from .external_ids import extract_numeric_id, max_external_id
from .logger import log_drift, log_page, log_retry
from .runs import heartbeat
from .stats import RunStats
from .status_map import map_external_status
from .upsert import upsert_order


class SyncPhase(str, enum.Enum):
    FETCH_NEW = "FETCH_NEW"
    SCAN_DRIFT = "SCAN_DRIFT"
    UPSERT = "UPSERT"
    ADVANCE_CURSOR = "ADVANCE_CURSOR"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class HybridSyncResult:
    store_identifier: str
    cursor_before: Optional[str]
    cursor_after: Optional[str]
    new_ids: List[str] = field(default_factory=list)
    drift_ids: List[str] = field(default_factory=list)
    bootstrap: bool = False
    pages: int = 0
    drift_pages: int = 0
    drift_window: Optional[Tuple[int, int]] = None
    drift_scan_truncated: bool = False

    def summary(self) -> Dict[str, Any]:
        return {
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "new_orders": len(self.new_ids),
            "drift_orders": self.drift_ids[:100],
            "bootstrap": self.bootstrap,
            "pages": self.pages,
            "drift_pages": self.drift_pages,
            "drift_window": list(self.drift_window) if self.drift_window else None,
            "drift_scan_truncated": self.drift_scan_truncated,
        }


class HybridSync:
    job_type = JobType.NEW_ORDERS.value

    def __init__(
        self,
        db: Session,
        store: StoreConfig,
        client,
        *,
        run_id: Optional[str] = None,
        stats: Optional[RunStats] = None,
        clock: Clock = system_clock,
        drift_enabled: Optional[bool] = None,
        drift_local_orders: Optional[int] = None,
        drift_max_id_range: Optional[int] = None,
        drift_max_api_calls: Optional[int] = None,
        initial_backfill_pages: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        self.db = db
        self.store = store
        self.client = client
        self.run_id = run_id
        self.stats = stats or RunStats()
        self.clock = clock
        self.drift_enabled = settings.DRIFT_SCAN_ENABLED if drift_enabled is None else drift_enabled
        self.drift_local_orders = drift_local_orders or settings.DRIFT_SCAN_LOCAL_ORDERS
        self.drift_max_id_range = drift_max_id_range or settings.DRIFT_SCAN_MAX_ID_RANGE
        self.drift_max_api_calls = (
            settings.DRIFT_SCAN_MAX_API_CALLS if drift_max_api_calls is None else drift_max_api_calls
        )
        self.initial_backfill_pages = initial_backfill_pages or settings.INITIAL_BACKFILL_PAGES
        self.max_retries = settings.FETCH_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = settings.FETCH_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff

        self.phase = SyncPhase.FETCH_NEW
        self.failed_phase: Optional[SyncPhase] = None
        self._seen: Dict[str, RawOrder] = {}
        self._lowest_seen: Optional[int] = None
        self._resume_token: Any = None

    def _is_retriable(self, exc: BaseException) -> bool:
        return isinstance(exc, TransportError) and (exc.status_code is None or exc.status_code >= 500)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        attempt = retry_state.attempt_number
        logger.warning(
            "Store %s: fetch failed (attempt %s/%s), retrying in %.1fs: %s",
            self.store.identifier,
            attempt,
            self.max_retries,
            delay,
            exc,
        )
        if self.run_id:
            log_retry(
                self.db,
                run_id=self.run_id,
                store_identifier=self.store.identifier,
                job_type=self.job_type,
                attempt=attempt,
                delay=delay,
                message=str(exc),
            )

    async def _fetch(self, token: Any):
        """Fetch one page with bounded retry on transport failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_backoff, min=0),
            retry=retry_if_exception(self._is_retriable),
            before_sleep=self._before_sleep,
            sleep=self.clock.sleep,
            reraise=True,
        )
        return await retrying(self.client.fetch_page, token)

    def _observe(self, page) -> None:
        self.stats.fetched += len(page.records)
        self.stats.skipped += page.skipped
        for record in page.records:
            num = extract_numeric_id(record.id)
            if num is None:
                self.stats.skipped += 1
                continue
            self._seen.setdefault(record.id, record)
            if self._lowest_seen is None or num < self._lowest_seen:
                self._lowest_seen = num
        if self.run_id:
            heartbeat(self.db, self.run_id, clock=self.clock)
            log_page(
                self.db,
                run_id=self.run_id,
                store_identifier=self.store.identifier,
                job_type=self.job_type,
                phase=self.phase.value,
                token=page.token,
                records=len(page.records),
                skipped=page.skipped,
                min_id=page.min_numeric_id,
                max_id=page.max_numeric_id,
            )

    async def fetch_new(self, cursor_value: Optional[str], bootstrap: bool) -> Tuple[Dict[str, RawOrder], int]:
        """Page newest-first, collecting records with an id above the cursor.

        Stops as soon as a page reaches the cursor. Without a cursor, reads at
        most ``initial_backfill_pages`` pages and treats everything as new.
        """
        cursor_num = extract_numeric_id(cursor_value) or 0
        new: Dict[str, RawOrder] = {}
        token: Any = None
        pages = 0

        while True:
            if bootstrap and pages >= self.initial_backfill_pages:
                self._resume_token = token
                break

            page = await self._fetch(token)
            pages += 1
            self._observe(page)

            for record in page.records:
                num = extract_numeric_id(record.id)
                if num is not None and (bootstrap or num > cursor_num):
                    new[record.id] = record

            min_num = page.min_numeric_id
            if not bootstrap and min_num is not None and min_num <= cursor_num:
                self._resume_token = page.next_token
                break
            if page.next_token is None:
                self._resume_token = None
                break
            token = page.next_token

        return new, pages

    def _local_window(self, cursor_num: int) -> Tuple[Optional[Tuple[int, int]], Dict[int, Tuple[str, Optional[str]]]]:
        rows = (
            self.db.query(Order.external_id, Order.status, Order.external_status)
            .filter(Order.store_identifier == self.store.identifier)
            .order_by(Order.created_at.desc())
            .limit(self.drift_local_orders)
            .all()
        )
        local: Dict[int, Tuple[str, Optional[str]]] = {}
        for row in rows:
            num = extract_numeric_id(row.external_id)
            if num is not None and num <= cursor_num:
                local.setdefault(num, (row.status, row.external_status))
        if not local:
            return None, {}

        low = max(1, cursor_num - self.drift_max_id_range, min(local))
        high = cursor_num
        local = {num: value for num, value in local.items() if low <= num <= high}
        return (low, high), local

    def _budget_spent(self) -> bool:
        max_requests = getattr(self.client, "max_requests", None)
        if max_requests is None:
            return False
        return getattr(self.client, "requests_made", 0) >= max_requests

    def _truncate_drift(self, result: HybridSyncResult, calls: int, low: int, high: int) -> None:
        result.drift_scan_truncated = True
        logger.info(
            "Store %s: drift scan stopped after %s calls (window %s-%s, reached %s)",
            self.store.identifier,
            calls,
            low,
            high,
            self._lowest_seen,
        )

    async def scan_drift(self, cursor_value: Optional[str], result: HybridSyncResult) -> Dict[str, RawOrder]:
        """Re-examine recently synced ids and collect those whose status moved."""
        cursor_num = extract_numeric_id(cursor_value)
        if not cursor_num:
            return {}

        window, local = self._local_window(cursor_num)
        if window is None or not local:
            return {}
        low, high = window
        result.drift_window = window

        calls = 0
        while (
            self._resume_token is not None
            and (self._lowest_seen is None or self._lowest_seen > low)
        ):
            if calls >= self.drift_max_api_calls or self._budget_spent():
                self._truncate_drift(result, calls, low, high)
                break
            try:
                page = await self._fetch(self._resume_token)
            except PaginationExhaustedError:
                self._truncate_drift(result, calls, low, high)
                break
            calls += 1
            self._observe(page)
            self._resume_token = page.next_token
        result.drift_pages = calls

        drift: Dict[str, RawOrder] = {}
        for external_id, record in self._seen.items():
            num = extract_numeric_id(external_id)
            if num is None or num < low or num > high or num not in local:
                continue
            stored_status, stored_label = local[num]
            mapped, _ = map_external_status(record.status)
            if mapped.value != stored_status or (record.status or None) != (stored_label or None):
                drift[external_id] = record

        if drift and self.run_id:
            log_drift(
                self.db,
                run_id=self.run_id,
                store_identifier=self.store.identifier,
                job_type=self.job_type,
                details={"window": [low, high], "changed": sorted(drift, key=extract_numeric_id)[:100]},
            )
        return drift

    async def run(self) -> HybridSyncResult:
        try:
            return await self._run()
        except BaseException:
            self.failed_phase = self.phase
            self.phase = SyncPhase.FAILED
            self.db.rollback()
            raise

    async def _run(self) -> HybridSyncResult:
        store_id = self.store.identifier

        # FETCH_NEW
        self.phase = SyncPhase.FETCH_NEW
        cursor = cursors.get_cursor(self.db, store_id, self.job_type)
        if cursor is None:
            seed = cursors.local_max_external_id(self.db, store_id)
            cursor = cursors.get_or_create_cursor(
                self.db, store_id, self.job_type, initial_value=seed, clock=self.clock
            )
            if seed:
                logger.info(f"Store {store_id}: seeded cursor from local orders at {seed}")
        cursor_before = cursor.last_external_id
        expected_updated_at = cursor.updated_at
        bootstrap = extract_numeric_id(cursor_before) is None

        result = HybridSyncResult(
            store_identifier=store_id,
            cursor_before=cursor_before,
            cursor_after=cursor_before,
            bootstrap=bootstrap,
        )

        new, pages = await self.fetch_new(cursor_before, bootstrap)
        result.pages = pages

        # SCAN_DRIFT
        drift: Dict[str, RawOrder] = {}
        if self.drift_enabled and not bootstrap:
            self.phase = SyncPhase.SCAN_DRIFT
            drift = await self.scan_drift(cursor_before, result)

        # UPSERT (new first, then drift records not already covered)
        self.phase = SyncPhase.UPSERT
        ordered_new = sorted(new.values(), key=lambda r: extract_numeric_id(r.id))
        for record in ordered_new:
            upsert_order(self.db, store_id, record, self.stats, clock=self.clock)
        drift_only = [r for key, r in drift.items() if key not in new]
        for record in sorted(drift_only, key=lambda r: extract_numeric_id(r.id)):
            upsert_order(self.db, store_id, record, self.stats, clock=self.clock)

        result.new_ids = [r.id for r in ordered_new]
        result.drift_ids = [r.id for r in drift_only]

        # ADVANCE_CURSOR (new orders only)
        self.phase = SyncPhase.ADVANCE_CURSOR
        new_max = max_external_id(new.keys())
        if cursors.advance(
            self.db,
            cursor,
            new_max,
            expected_updated_at=expected_updated_at,
            clock=self.clock,
        ):
            result.cursor_after = new_max
        self.db.commit()

        self.stats.api_calls = getattr(self.client, "requests_made", 0)
        self.phase = SyncPhase.DONE
        logger.info(
            "Store %s: hybrid sync done new=%s drift=%s cursor %s -> %s",
            store_id,
            len(result.new_ids),
            len(result.drift_ids),
            cursor_before,
            result.cursor_after,
        )
        return result
