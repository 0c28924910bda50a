from __future__ import annotations

import unicodedata
from typing import Dict, Optional, Tuple

from ordersync.models_sqlalchemy.models import OrderStatus


# Upstream order-management labels (French storefront vocabulary).
EXTERNAL_STATUS_MAP: Dict[str, OrderStatus] = {
    "nouvelle": OrderStatus.PENDING,
    "en attente": OrderStatus.PENDING,
    "confirme": OrderStatus.CONFIRMED,
    "en cours": OrderStatus.IN_PROGRESS,
    "en dispatch": OrderStatus.DISPATCHED,
    "expedie": OrderStatus.SHIPPED,
    "livre": OrderStatus.DELIVERED,
    "annule": OrderStatus.CANCELLED,
    "retourne": OrderStatus.RETURNED,
}


def _fold(label: str) -> str:
    decomposed = unicodedata.normalize("NFKD", label)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def map_external_status(label: Optional[str]) -> Tuple[OrderStatus, bool]:
    """Map an upstream status label to the internal enum.

    Returns ``(status, recognized)``. Unrecognized or empty labels map to
    ``OrderStatus.UNKNOWN`` with ``recognized=False``; this never raises.
    Internal enum names ("DISPATCHED") are accepted as-is.
    """
    if not label:
        return OrderStatus.UNKNOWN, False

    folded = _fold(label)
    mapped = EXTERNAL_STATUS_MAP.get(folded)
    if mapped is not None:
        return mapped, True

    candidate = folded.upper().replace(" ", "_")
    if candidate in OrderStatus.__members__ and candidate != OrderStatus.UNKNOWN.name:
        return OrderStatus[candidate], True

    return OrderStatus.UNKNOWN, False
