from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ordersync.models_sqlalchemy.models import JobType
from ordersync.services.store_api_client import StoreOrdersClient
from ordersync.services.store_registry import StoreConfig

from .base_worker import BaseWorker, StoreRunResult, TriggeredBy
from .hybrid_sync import HybridSync
from .stats import RunStats


class NewOrdersWorker(BaseWorker):
    """NEW_ORDERS job: hybrid forward scan + drift re-scan for one store."""

    job_type = JobType.NEW_ORDERS.value

    def __init__(self, *, client_factory: Optional[Callable[[StoreConfig], Any]] = None, **kwargs):
        super().__init__(**kwargs)
        self.client_factory = client_factory or (lambda store: StoreOrdersClient(store, clock=self.clock))

    async def execute_sync(
        self,
        db: Session,
        store: StoreConfig,
        run_id: str,
        stats: RunStats,
    ) -> Dict[str, Any]:
        client = self.client_factory(store)
        try:
            sync = HybridSync(db, store, client, run_id=run_id, stats=stats, clock=self.clock)
            result = await sync.run()
            return result.summary()
        finally:
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()


async def run_new_orders_worker_for_store(
    store_identifier: str,
    triggered_by: TriggeredBy = "unknown",
) -> StoreRunResult:
    worker = NewOrdersWorker()
    return await worker.run_for_store(store_identifier, triggered_by=triggered_by)
