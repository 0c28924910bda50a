from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ordersync.models_sqlalchemy.models import JobType
from ordersync.services.delivery import DeliveryCredentialMap, DeliveryStatusProvider, load_credential_map
from ordersync.services.delivery.client import HttpDeliveryStatusClient
from ordersync.services.store_registry import StoreConfig

from .base_worker import BaseWorker, StoreRunResult, TriggeredBy
from .errors import DeliveryCredentialMissingError
from .stats import RunStats
from .status_sync import DeliveryStatusSync


class StatusSyncWorker(BaseWorker):
    """STATUS_SYNC job: refresh delivery status of a store's open orders."""

    job_type = JobType.STATUS_SYNC.value

    def __init__(
        self,
        *,
        provider_factory: Optional[Callable[[StoreConfig], Optional[DeliveryStatusProvider]]] = None,
        credential_map: Optional[DeliveryCredentialMap] = None,
        commit_every: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.commit_every = commit_every
        self.credential_map = credential_map
        self.provider_factory = provider_factory or self._default_provider

    def _default_provider(self, store: StoreConfig) -> Optional[DeliveryStatusProvider]:
        if self.credential_map is None:
            self.credential_map = load_credential_map()
        credential = self.credential_map.for_store(store.identifier, store.delivery_credential)
        if credential is None:
            return None
        return HttpDeliveryStatusClient(credential, clock=self.clock)

    async def execute_sync(
        self,
        db: Session,
        store: StoreConfig,
        run_id: str,
        stats: RunStats,
    ) -> Dict[str, Any]:
        provider = self.provider_factory(store)
        if provider is None:
            raise DeliveryCredentialMissingError(
                f"No delivery credential configured for store={store.identifier}"
            )
        try:
            return await DeliveryStatusSync(
                db, store, provider, stats, clock=self.clock, commit_every=self.commit_every
            ).run()
        finally:
            await provider.aclose()


async def run_status_sync_worker_for_store(
    store_identifier: str,
    triggered_by: TriggeredBy = "unknown",
) -> StoreRunResult:
    worker = StatusSyncWorker()
    return await worker.run_for_store(store_identifier, triggered_by=triggered_by)
