import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep the module-level engine away from any real database during tests.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ordersync.models.store_orders import RawOrder
from ordersync.models_sqlalchemy import Base
from ordersync.models_sqlalchemy import models as _models  # noqa: F401
from ordersync.models_sqlalchemy import sync as _sync  # noqa: F401
from ordersync.models_sqlalchemy.models import Store
from ordersync.services.store_api_client import OrderPage
from ordersync.utils.clock import Clock


class FakeClock(Clock):
    """Virtual time: ``sleep`` advances the clock instead of waiting."""

    def __init__(self, start: datetime):
        self._now = start
        self._mono = 1000.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds

    def set(self, when: datetime) -> None:
        delta = (when - self._now).total_seconds()
        self.advance(delta)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.advance(seconds)
        await asyncio.sleep(0)


def order_payload(order_id, status: str = "En attente", **extra) -> Dict[str, Any]:
    payload = {
        "id": order_id,
        "reference": f"REF-{order_id}",
        "order_state_name": status,
        "full_name": "Customer",
        "telephone": "0550000000",
        "wilaya": "Alger",
        "commune": "Bab Ezzouar",
        "items": [{"product_id": 1, "title": "Item", "quantity": 1, "unit_price": "1500", "total_price": "1500"}],
        "total": "1500",
        "created_at": "2026-10-01T10:00:00+00:00",
    }
    payload.update(extra)
    return payload


def raw_order(order_id, status: str = "En attente", **extra) -> RawOrder:
    return RawOrder.model_validate(order_payload(order_id, status, **extra))


class FakeStoreClient:
    """Stand-in for StoreOrdersClient serving pre-built newest-first pages.

    Tokens are 1-based page numbers, like the real client's "page" mode.
    """

    def __init__(
        self,
        pages: List[List[Dict[str, Any]]],
        *,
        singles: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
        fail_with: Optional[BaseException] = None,
        fail_times: Optional[int] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.pages = pages
        self.singles = singles or {}
        self.fail_with = fail_with
        self.fail_times = fail_times
        self.gate = gate
        self.calls: List[Any] = []
        self.single_calls: List[str] = []
        self.closed = False

    @property
    def requests_made(self) -> int:
        return len(self.calls) + len(self.single_calls)

    async def fetch_page(self, token=None) -> OrderPage:
        self.calls.append(token)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None and (self.fail_times is None or len(self.calls) <= self.fail_times):
            raise self.fail_with
        index = int(token or 1) - 1
        if index >= len(self.pages):
            return OrderPage(records=[], next_token=None, token=token)
        records = [RawOrder.model_validate(row) for row in self.pages[index]]
        next_token = index + 2 if index + 1 < len(self.pages) else None
        return OrderPage(records=records, next_token=next_token, token=token, raw_count=len(records))

    async def fetch_order(self, external_id: str):
        self.single_calls.append(external_id)
        row = self.singles.get(external_id)
        return RawOrder.model_validate(row) if row else None

    async def aclose(self) -> None:
        self.closed = True


def pages_of(ids: Iterable[int], *, page_size: int = 5, statuses: Optional[Dict[int, str]] = None) -> List[List[Dict[str, Any]]]:
    statuses = statuses or {}
    rows = [order_payload(i, statuses.get(i, "En attente")) for i in ids]
    return [rows[i:i + page_size] for i in range(0, len(rows), page_size)]


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'order_sync_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_store(db):
    def _make(identifier: str, *, is_active: bool = True, page_size: int = 5, delivery_credential=None) -> Store:
        row = Store(
            id=f"store-{identifier}",
            identifier=identifier,
            name=f"Store {identifier}",
            base_url=f"https://{identifier.lower()}.example.test/api/shop",
            api_token=f"token-{identifier}-secret",
            is_active=is_active,
            page_size=page_size,
            pagination_mode="page",
            delivery_credential=delivery_credential,
        )
        db.add(row)
        db.commit()
        return row

    return _make
