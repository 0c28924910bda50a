"""Identity resolution for upstream orders.

Every lookup is scoped by (store_identifier, external_id). External ids are
only unique inside one store, so a lookup by external id alone is never valid.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from ordersync.models_sqlalchemy.models import Order
from ordersync.utils.clock import ensure_utc
from ordersync.utils.logger import logger

from .errors import IdentityAmbiguityError
from .external_ids import lookup_keys


@dataclass
class Resolution:
    order_id: Optional[str]
    external_id: str
    store_identifier: str
    candidates: List[str] = field(default_factory=list)
    ambiguity: Optional[IdentityAmbiguityError] = None

    @property
    def found(self) -> bool:
        return self.order_id is not None

    @property
    def ambiguous(self) -> bool:
        return self.ambiguity is not None


def resolve(db: Session, store_identifier: str, external_id: str) -> Resolution:
    """Map (store, external id) to the local order id, or a not-found Resolution.

    Legacy rows may carry the store-prefixed spelling of the same id. If more
    than one row matches, the most recently created row wins (ties broken by
    id) and the ambiguity is returned for the run's error summary.
    """
    keys = lookup_keys(store_identifier, external_id)
    rows = (
        db.query(Order.id, Order.external_id, Order.created_at)
        .filter(
            Order.store_identifier == store_identifier,
            Order.external_id.in_(keys),
        )
        .all()
    )

    if not rows:
        return Resolution(order_id=None, external_id=external_id, store_identifier=store_identifier)

    if len(rows) == 1:
        return Resolution(
            order_id=rows[0].id,
            external_id=external_id,
            store_identifier=store_identifier,
            candidates=[rows[0].id],
        )

    ordered = sorted(rows, key=lambda r: (ensure_utc(r.created_at), r.id), reverse=True)
    chosen = ordered[0]
    candidate_ids = [r.id for r in ordered]
    ambiguity = IdentityAmbiguityError(store_identifier, external_id, candidate_ids, chosen.id)
    logger.warning(str(ambiguity))
    return Resolution(
        order_id=chosen.id,
        external_id=external_id,
        store_identifier=store_identifier,
        candidates=candidate_ids,
        ambiguity=ambiguity,
    )
