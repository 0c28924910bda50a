from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx

from ordersync.config import settings
from ordersync.services.order_sync.errors import RateLimitError, TransportError, UpstreamError
from ordersync.utils.clock import Clock, system_clock
from ordersync.utils.logger import logger

from .base import DeliveryStatus, DeliveryStatusProvider
from .credentials import DeliveryCredential
from .status_codes import delivery_status_label


def _parse_status(reference: str, row: Dict[str, Any]) -> DeliveryStatus:
    code = row.get("status")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    return DeliveryStatus(
        reference=reference,
        code=code,
        label=delivery_status_label(code),
        tracking_number=row.get("tracking_number") or row.get("display_id"),
        alerted_at=row.get("alerted_at"),
        alert_reason=row.get("alert_reason"),
        abort_reason=row.get("abort_reason"),
        raw=row,
    )


class HttpDeliveryStatusClient(DeliveryStatusProvider):
    """Looks up shipments by the order's display reference."""

    def __init__(
        self,
        credential: DeliveryCredential,
        *,
        base_url: Optional[str] = None,
        clock: Clock = system_clock,
        min_delay: Optional[float] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credential = credential
        self.clock = clock
        self.min_delay = settings.delivery_request_min_delay if min_delay is None else min_delay
        self._lock = asyncio.Lock()
        self._last_request_at: Optional[float] = None
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.DELIVERY_API_BASE_URL).rstrip("/"),
            headers={"Authorization": f"Token {credential.api_key}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_status(self, reference: str) -> Optional[DeliveryStatus]:
        async with self._lock:
            if self._last_request_at is not None:
                elapsed = self.clock.monotonic() - self._last_request_at
                if elapsed < self.min_delay:
                    await self.clock.sleep(self.min_delay - elapsed)
            self._last_request_at = self.clock.monotonic()
            try:
                resp = await self._client.get(
                    "/api/stores/orders/",
                    params={"external_order_id": reference},
                )
            except httpx.RequestError as exc:
                raise TransportError(f"Delivery lookup for {reference} failed: {exc}") from exc

        if resp.status_code == 429:
            retry_after = resp.headers.get("retry-after")
            try:
                delay = float(retry_after) if retry_after else float(settings.RATE_LIMIT_DEFAULT_RETRY_SECONDS)
            except ValueError:
                delay = float(settings.RATE_LIMIT_DEFAULT_RETRY_SECONDS)
            raise RateLimitError(f"Delivery API throttled lookup for {reference}", retry_after=delay)
        if resp.status_code == 404:
            return None
        if not (200 <= resp.status_code < 300):
            raise UpstreamError(
                f"Delivery API returned HTTP {resp.status_code} for {reference}",
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamError("Delivery API returned invalid JSON", status_code=resp.status_code) from exc

        listing = body.get("list", body) if isinstance(body, dict) else {}
        results = listing.get("results") if isinstance(listing, dict) else None
        if not results:
            logger.debug("No shipment found for reference %s (credential=%s)", reference, self.credential.name)
            return None
        return _parse_status(reference, results[0])
