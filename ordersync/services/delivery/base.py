from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class DeliveryStatus:
    """Delivery state of one order as reported by the logistics API."""

    reference: str
    code: Optional[int]
    label: str
    tracking_number: Optional[str] = None
    alerted_at: Optional[str] = None
    alert_reason: Optional[str] = None
    abort_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class DeliveryStatusProvider:
    """Interface for delivery status lookups.

    Implementations raise ``TransportError`` / ``RateLimitError`` from
    ``ordersync.services.order_sync.errors`` on failure, and return None when
    the logistics API has no shipment for the reference.
    """

    async def fetch_status(self, reference: str) -> Optional[DeliveryStatus]:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
