"""Rate-limited client for one store's order-management API.

One instance is created per sync run. It paces requests to the store
(minimum delay between consecutive requests), bounds in-flight requests,
and enforces a hard request budget so inconsistent upstream pagination
cannot loop forever. It never retries; callers decide what to retry.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import ValidationError

from ordersync.config import settings
from ordersync.models.store_orders import RawOrder
from ordersync.services.order_sync.errors import (
    PaginationExhaustedError,
    RateLimitError,
    TransportError,
    UpstreamError,
)
from ordersync.services.order_sync.external_ids import extract_numeric_id
from ordersync.services.store_registry import StoreConfig
from ordersync.utils.clock import Clock, system_clock
from ordersync.utils.logger import logger

PageToken = Union[int, str, None]


@dataclass
class OrderPage:
    """One page of validated records plus the continuation token.

    ``next_token`` is None when the upstream has no more pages.
    """

    records: List[RawOrder]
    next_token: PageToken = None
    skipped: int = 0
    token: PageToken = None
    raw_count: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def min_numeric_id(self) -> Optional[int]:
        nums = [n for n in (extract_numeric_id(r.id) for r in self.records) if n is not None]
        return min(nums) if nums else None

    @property
    def max_numeric_id(self) -> Optional[int]:
        nums = [n for n in (extract_numeric_id(r.id) for r in self.records) if n is not None]
        return max(nums) if nums else None


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return float(settings.RATE_LIMIT_DEFAULT_RETRY_SECONDS)
    try:
        return max(0.0, float(value))
    except ValueError:
        return float(settings.RATE_LIMIT_DEFAULT_RETRY_SECONDS)


def _extract_rows(body: Any) -> List[Any]:
    """Return the list of raw order dicts from either supported envelope.

    ``{"data": [...]}`` (flat) or ``{"data": {"data": [...]}}`` (paginator).
    """
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return []
    data = body.get("data")
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        return data["data"]
    return []


def _pagination_meta(body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        return {}
    meta = body.get("meta")
    if isinstance(meta, dict):
        return meta
    data = body.get("data")
    if isinstance(data, dict):
        return {k: v for k, v in data.items() if k != "data"}
    return {}


class StoreOrdersClient:
    def __init__(
        self,
        store: StoreConfig,
        *,
        clock: Clock = system_clock,
        min_delay: Optional[float] = None,
        max_requests: Optional[int] = None,
        max_in_flight: Optional[int] = None,
        max_page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.clock = clock
        self.min_delay = settings.store_request_min_delay if min_delay is None else min_delay
        self.max_requests = settings.STORE_MAX_REQUESTS_PER_RUN if max_requests is None else max_requests
        cap = settings.STORE_MAX_PAGE_SIZE if max_page_size is None else max_page_size
        self.page_size = max(1, min(store.page_size, cap))

        self._semaphore = asyncio.Semaphore(max_in_flight or settings.STORE_MAX_IN_FLIGHT)
        self._pace_lock = asyncio.Lock()
        self._last_request_at: Optional[float] = None
        self._requests_made = 0

        self._client = httpx.AsyncClient(
            base_url=store.base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {store.api_token}",
                "Accept": "application/json",
            },
            timeout=timeout or settings.STORE_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def requests_made(self) -> int:
        return self._requests_made

    async def __aenter__(self) -> "StoreOrdersClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _wait_turn(self) -> None:
        # Reserve the next request slot for this store, honouring the minimum delay.
        async with self._pace_lock:
            if self._requests_made >= self.max_requests:
                raise PaginationExhaustedError(
                    f"Request budget of {self.max_requests} exhausted for store={self.store.identifier}",
                    requests_made=self._requests_made,
                )
            if self._last_request_at is not None:
                elapsed = self.clock.monotonic() - self._last_request_at
                if elapsed < self.min_delay:
                    await self.clock.sleep(self.min_delay - elapsed)
            self._requests_made += 1
            self._last_request_at = self.clock.monotonic()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        async with self._semaphore:
            await self._wait_turn()
            try:
                resp = await self._client.get(path, params=params)
            except httpx.TimeoutException as exc:
                raise TransportError(
                    f"Timeout calling {path} for store={self.store.identifier}: {exc}",
                    store_identifier=self.store.identifier,
                ) from exc
            except httpx.RequestError as exc:
                raise TransportError(
                    f"Request to {path} failed for store={self.store.identifier}: {exc}",
                    store_identifier=self.store.identifier,
                ) from exc

        if resp.status_code == 429:
            retry_after = _parse_retry_after(resp.headers.get("retry-after"))
            raise RateLimitError(
                f"Store {self.store.identifier} throttled request to {path}",
                store_identifier=self.store.identifier,
                retry_after=retry_after,
            )
        if resp.status_code == 404:
            return resp
        if not (200 <= resp.status_code < 300):
            body_preview = resp.text[:300] if resp.text else ""
            raise UpstreamError(
                f"Store {self.store.identifier} returned HTTP {resp.status_code} for {path}: {body_preview}",
                store_identifier=self.store.identifier,
                status_code=resp.status_code,
            )
        return resp

    def _json(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(
                f"Store {self.store.identifier} returned invalid JSON",
                store_identifier=self.store.identifier,
                status_code=resp.status_code,
            ) from exc

    def _validate(self, rows: List[Any]) -> tuple[List[RawOrder], List[Dict[str, Any]]]:
        records: List[RawOrder] = []
        errors: List[Dict[str, Any]] = []
        for row in rows:
            try:
                records.append(RawOrder.model_validate(row))
            except ValidationError as exc:
                row_id = row.get("id") if isinstance(row, dict) else None
                errors.append({"id": row_id, "error": exc.errors(include_url=False)[:3]})
        if errors:
            logger.warning(
                "Store %s: skipped %s invalid order records",
                self.store.identifier,
                len(errors),
            )
        return records, errors

    async def fetch_page(self, token: PageToken = None) -> OrderPage:
        """Fetch one newest-first page.

        ``token`` is a page number in "page" mode (defaults to 1) or an opaque
        cursor in "cursor" mode (None for the first page).
        """
        params: Dict[str, Any] = {"per_page": self.page_size, "sort": "-id"}
        if self.store.pagination_mode == "cursor":
            if token is not None:
                params["cursor"] = token
        else:
            page_number = int(token or 1)
            params["page"] = page_number

        resp = await self._get("/orders", params=params)
        if resp.status_code == 404:
            raise UpstreamError(
                f"Store {self.store.identifier} orders endpoint not found",
                store_identifier=self.store.identifier,
                status_code=404,
            )
        body = self._json(resp)
        rows = _extract_rows(body)
        meta = _pagination_meta(body)
        records, errors = self._validate(rows)

        next_token: PageToken = None
        if self.store.pagination_mode == "cursor":
            next_token = meta.get("next_cursor") or (body.get("next_cursor") if isinstance(body, dict) else None)
        elif rows:
            last_page = meta.get("last_page")
            if last_page is not None:
                next_token = page_number + 1 if page_number < int(last_page) else None
            elif len(rows) >= self.page_size:
                next_token = page_number + 1

        return OrderPage(
            records=records,
            next_token=next_token,
            skipped=len(errors),
            token=token,
            raw_count=len(rows),
            errors=errors,
        )

    async def fetch_order(self, external_id: str) -> Optional[RawOrder]:
        """Fetch a single order by id; None when the upstream reports 404."""
        resp = await self._get(f"/orders/{external_id}")
        if resp.status_code == 404:
            return None
        body = self._json(resp)
        payload = body.get("data", body) if isinstance(body, dict) else body
        if not isinstance(payload, dict) or not payload:
            return None
        records, _ = self._validate([payload])
        return records[0] if records else None

    async def probe(self) -> Dict[str, Any]:
        """Connection check: fetch a single newest order."""
        try:
            resp = await self._get("/orders", params={"per_page": 1, "page": 1, "sort": "-id"})
            rows = _extract_rows(self._json(resp)) if resp.status_code != 404 else []
            return {
                "store": self.store.identifier,
                "ok": resp.status_code != 404,
                "status_code": resp.status_code,
                "latest_id": rows[0].get("id") if rows and isinstance(rows[0], dict) else None,
            }
        except (TransportError, RateLimitError, PaginationExhaustedError) as exc:
            return {"store": self.store.identifier, "ok": False, "error": str(exc)}
