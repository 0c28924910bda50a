import asyncio

import httpx
import pytest

from ordersync.models_sqlalchemy.models import RunOutcome
from ordersync.models_sqlalchemy.sync import SyncCursor, SyncRun, SyncRunEvent
from ordersync.services.order_sync import cursors
from ordersync.services.order_sync.errors import RateLimitError, RunFinalizedError, TransportError
from ordersync.services.order_sync.new_orders_worker import NewOrdersWorker
from ordersync.services.order_sync.runs import complete_run, fail_run, start_run
from ordersync.services.order_sync.stats import RunStats
from ordersync.services.store_api_client import StoreOrdersClient

from conftest import FakeStoreClient, order_payload, pages_of


def _worker(session_factory, clock, client, **kwargs):
    return NewOrdersWorker(
        session_factory=session_factory,
        clock=clock,
        client_factory=lambda store: client,
        **kwargs,
    )


def _runs(db):
    db.expire_all()
    return db.query(SyncRun).all()


@pytest.mark.asyncio
async def test_successful_run_is_recorded(db, session_factory, make_store, clock):
    make_store("ALPH")
    client = FakeStoreClient(pages_of(range(105, 100, -1)))

    result = await _worker(session_factory, clock, client).run_for_store("ALPH", triggered_by="manual")

    assert result.outcome == RunOutcome.SUCCESS
    assert result.counts["created"] == 5
    assert client.closed is True

    (run,) = _runs(db)
    assert run.outcome == "success"
    assert run.triggered_by == "manual"
    assert run.created == 5
    assert run.finished_at is not None
    assert run.summary_json["cursor_after"] == "105"
    assert run.summary_json["api_calls"] == 1

    events = {e.event_type for e in db.query(SyncRunEvent).filter(SyncRunEvent.run_id == run.id).all()}
    assert {"start", "page", "done"} <= events

    cursor = db.query(SyncCursor).one()
    assert cursor.last_external_id == "105"
    assert cursor.last_run_at is not None
    assert cursor.last_error is None


@pytest.mark.asyncio
async def test_unknown_status_makes_run_partial(db, session_factory, make_store, clock):
    make_store("ALPH")
    client = FakeStoreClient(pages_of(range(103, 100, -1), statuses={102: "Perdu"}))

    result = await _worker(session_factory, clock, client).run_for_store("ALPH")

    assert result.outcome == RunOutcome.PARTIAL
    (run,) = _runs(db)
    assert run.outcome == "partial"
    assert run.error_summary[0]["code"] == "unknown_status"


@pytest.mark.asyncio
async def test_failed_run_keeps_cursor(db, session_factory, make_store, clock):
    make_store("ALPH")
    cursors.get_or_create_cursor(db, "ALPH", "NEW_ORDERS", initial_value="100", clock=clock)
    client = FakeStoreClient([], fail_with=TransportError("connection refused"))

    worker = _worker(session_factory, clock, client)
    result = await worker.run_for_store("ALPH")

    assert result.outcome == RunOutcome.FAILED
    assert result.error["code"] == "transport_error"
    (run,) = _runs(db)
    assert run.outcome == "failed"
    assert run.error_summary[0]["message"] == "connection refused"

    db.expire_all()
    cursor = db.query(SyncCursor).one()
    assert cursor.last_external_id == "100"
    assert cursor.last_error == "connection refused"


@pytest.mark.asyncio
async def test_timeout_aborts_run(db, session_factory, make_store, clock):
    make_store("ALPH")
    client = FakeStoreClient(pages_of([3, 2, 1]), gate=asyncio.Event())

    result = await _worker(session_factory, clock, client, timeout=0.05).run_for_store("ALPH")

    assert result.outcome == RunOutcome.ABORTED
    assert result.error["code"] == "timeout"
    (run,) = _runs(db)
    assert run.outcome == "aborted"
    assert client.closed is True


@pytest.mark.asyncio
async def test_rate_limit_records_partial_with_retry_after(db, session_factory, make_store, clock):
    make_store("ALPH")
    client = FakeStoreClient([], fail_with=RateLimitError("slow down", retry_after=120))

    result = await _worker(session_factory, clock, client).run_for_store("ALPH")

    assert result.outcome == RunOutcome.PARTIAL
    assert result.retry_after == 120
    (run,) = _runs(db)
    assert run.outcome == "partial"
    assert run.error_summary[0]["code"] == "rate_limited"


@pytest.mark.asyncio
async def test_fresh_running_run_blocks_new_one(db, session_factory, make_store, clock):
    make_store("ALPH")
    db.add(SyncRun(
        id="existing",
        job_type="NEW_ORDERS",
        store_identifier="ALPH",
        triggered_by="scheduler",
        outcome="running",
        started_at=clock.now(),
        heartbeat_at=clock.now(),
    ))
    db.commit()
    client = FakeStoreClient(pages_of([1]))

    result = await _worker(session_factory, clock, client).run_for_store("ALPH")

    assert result.skipped
    assert result.skipped_reason == "already_running"
    assert client.calls == []
    assert len(_runs(db)) == 1


@pytest.mark.asyncio
async def test_stale_running_run_does_not_block(db, session_factory, make_store, clock):
    make_store("ALPH")
    db.add(SyncRun(
        id="stale",
        job_type="NEW_ORDERS",
        store_identifier="ALPH",
        outcome="running",
        started_at=clock.now(),
        heartbeat_at=clock.now(),
    ))
    db.commit()
    clock.advance(60 * 60)

    result = await _worker(session_factory, clock, FakeStoreClient(pages_of([1]))).run_for_store("ALPH")

    assert result.outcome == RunOutcome.SUCCESS
    assert len(_runs(db)) == 2


@pytest.mark.asyncio
async def test_inactive_or_unknown_store_is_skipped(db, session_factory, make_store, clock):
    make_store("ALPH", is_active=False)
    worker = _worker(session_factory, clock, FakeStoreClient(pages_of([1])))

    assert (await worker.run_for_store("ALPH")).skipped_reason == "store_inactive"
    assert (await worker.run_for_store("NOPE")).skipped_reason == "store_inactive"
    assert _runs(db) == []


@pytest.mark.asyncio
async def test_disabled_cursor_is_skipped(db, session_factory, make_store, clock):
    make_store("ALPH")
    cursor = cursors.get_or_create_cursor(db, "ALPH", "NEW_ORDERS", clock=clock)
    cursor.enabled = False
    db.commit()

    result = await _worker(session_factory, clock, FakeStoreClient(pages_of([1]))).run_for_store("ALPH")

    assert result.skipped_reason == "cursor_disabled"


@pytest.mark.asyncio
async def test_global_kill_switch(db, session_factory, make_store, clock, monkeypatch):
    from ordersync.config import settings

    make_store("ALPH")
    monkeypatch.setattr(settings, "SYNC_ENABLED", False)

    result = await _worker(session_factory, clock, FakeStoreClient(pages_of([1]))).run_for_store("ALPH")

    assert result.skipped_reason == "sync_disabled"


@pytest.mark.asyncio
async def test_request_budget_exhaustion_fails_run(db, session_factory, make_store, clock):
    make_store("ALPH")
    cursors.get_or_create_cursor(db, "ALPH", "NEW_ORDERS", initial_value="10", clock=clock)

    def handler(request):
        page = int(request.url.params["page"])
        top = 200 - (page - 1) * 5
        return httpx.Response(200, json={"data": [order_payload(n) for n in range(top, top - 5, -1)]})

    worker = NewOrdersWorker(
        session_factory=session_factory,
        clock=clock,
        client_factory=lambda store: StoreOrdersClient(
            store, clock=clock, min_delay=0, max_requests=2, transport=httpx.MockTransport(handler)
        ),
    )
    result = await worker.run_for_store("ALPH")

    assert result.outcome == RunOutcome.FAILED
    assert result.error["code"] == "pagination_exhausted"

    (run,) = _runs(db)
    assert run.outcome == "failed"
    assert run.error_summary[0]["code"] == "pagination_exhausted"
    assert run.created == 0
    assert cursors.get_cursor(db, "ALPH", "NEW_ORDERS").last_external_id == "10"


def test_finalized_run_cannot_be_finalized_again(db, clock):
    run = start_run(db, job_type="NEW_ORDERS", store_identifier="ALPH", triggered_by="manual", clock=clock)
    complete_run(db, run.id, stats=RunStats(), clock=clock)

    with pytest.raises(RunFinalizedError):
        fail_run(db, run.id, error={"code": "late", "message": "too late"}, clock=clock)

    (stored,) = _runs(db)
    assert stored.outcome == "success"
    assert stored.error_summary is None
