import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from ordersync.config import Settings
from ordersync.models_sqlalchemy.models import RunOutcome
from ordersync.models_sqlalchemy.sync import SchedulerJob, SyncCursor, SyncRun
from ordersync.services.order_sync import cursors
from ordersync.services.order_sync.errors import RateLimitError, TransportError
from ordersync.services.order_sync.schedule import (
    next_daily_fire,
    next_new_orders_fire,
    next_status_sync_fire,
)
from ordersync.services.order_sync.scheduler import OrderSyncScheduler

from conftest import FakeClock, FakeStoreClient, pages_of

UTC = ZoneInfo("UTC")


def _at(hour, minute=0, day=5):
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


class ParkedClock(FakeClock):
    """Scheduler loop sleeps never return, so only explicit triggers run."""

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.Event().wait()


def _scheduler(session_factory, clock, client_factory, **cfg):
    cfg.setdefault("SCHEDULER_TIMEZONE", "UTC")
    return OrderSyncScheduler(
        session_factory=session_factory,
        clock=clock,
        cfg=Settings(**cfg),
        client_factory=client_factory,
        max_concurrent_stores=2,
    )


def _runs(db, **filters):
    db.expire_all()
    query = db.query(SyncRun)
    for key, value in filters.items():
        query = query.filter(getattr(SyncRun, key) == value)
    return query.all()


def test_new_orders_fire_times_stay_inside_window():
    kwargs = dict(tz=UTC, interval_minutes=60, start_hour=8, end_hour=20)
    assert next_new_orders_fire(_at(9, 30), **kwargs) == _at(10)
    assert next_new_orders_fire(_at(8), **kwargs) == _at(9)
    assert next_new_orders_fire(_at(7), **kwargs) == _at(8)
    assert next_new_orders_fire(_at(19, 59), **kwargs) == _at(20)
    assert next_new_orders_fire(_at(20), **kwargs) == _at(8, day=6)
    assert next_new_orders_fire(_at(23, 15), **kwargs) == _at(8, day=6)


def test_status_sync_fires_on_midnight_aligned_grid():
    assert next_status_sync_fire(_at(9), tz=UTC, interval_hours=6) == _at(12)
    assert next_status_sync_fire(_at(18), tz=UTC, interval_hours=6) == _at(0, day=6)
    assert next_status_sync_fire(_at(0), tz=UTC, interval_hours=6) == _at(6)


def test_cleanup_fires_once_a_day():
    assert next_daily_fire(_at(1), tz=UTC, hour=2) == _at(2)
    assert next_daily_fire(_at(2), tz=UTC, hour=2) == _at(2, day=6)


@pytest.mark.asyncio
async def test_window_hours_are_local_wall_clock(session_factory, clock):
    scheduler = _scheduler(session_factory, clock, None, SCHEDULER_TIMEZONE="Africa/Algiers")
    # 07:30 UTC is 08:30 in Algiers (UTC+1); next hourly slot is 09:00 local.
    fire = scheduler.compute_next_fire("NEW_ORDERS", _at(7, 30))
    assert fire == _at(8)
    assert fire.tzinfo == timezone.utc


@pytest.mark.asyncio
async def test_duplicate_trigger_is_rejected(db, session_factory, make_store, clock):
    make_store("ALPH")
    gate = asyncio.Event()
    client = FakeStoreClient(pages_of(range(5, 0, -1)), gate=gate)
    scheduler = _scheduler(session_factory, clock, lambda store: client)

    first = scheduler.trigger("NEW_ORDERS", "ALPH")
    second = scheduler.trigger("NEW_ORDERS", "ALPH")
    job_wide = scheduler.trigger("NEW_ORDERS")

    assert first.accepted is True
    assert second.accepted is False
    assert second.reason == "already_running"
    assert job_wide.accepted is True
    assert scheduler.status()["jobs"]["NEW_ORDERS"]["in_flight"] == ["*", "ALPH"]

    job = await job_wide.task
    assert job.results[0].skipped_reason == "in_flight"

    gate.set()
    result = await first.task
    await scheduler.wait_idle()

    assert result.outcome == RunOutcome.SUCCESS
    assert len(_runs(db, job_type="NEW_ORDERS", store_identifier="ALPH")) == 1
    assert scheduler.trigger("NEW_ORDERS", "ALPH").accepted is True
    await scheduler.wait_idle()


@pytest.mark.asyncio
async def test_one_store_failure_does_not_affect_others(db, session_factory, make_store, clock):
    for identifier in ("ALPH", "BETA", "GAMA"):
        make_store(identifier)

    def client_factory(store):
        if store.identifier == "BETA":
            return FakeStoreClient([], fail_with=TransportError("BETA is down"))
        return FakeStoreClient(pages_of(range(3, 0, -1)))

    scheduler = _scheduler(session_factory, clock, client_factory)
    job = await scheduler.trigger("NEW_ORDERS").task

    outcomes = {r.store_identifier: r.outcome for r in job.results}
    assert outcomes == {
        "ALPH": RunOutcome.SUCCESS,
        "BETA": RunOutcome.FAILED,
        "GAMA": RunOutcome.SUCCESS,
    }
    assert job.outcome_counts()["failed"] == 1
    assert job.error is None

    by_store = {run.store_identifier: run.outcome for run in _runs(db)}
    assert by_store == {"ALPH": "success", "BETA": "failed", "GAMA": "success"}
    assert cursors.get_cursor(db, "GAMA", "NEW_ORDERS").last_external_id == "3"


@pytest.mark.asyncio
async def test_run_pending_fires_due_jobs_with_virtual_time(db, session_factory, make_store, clock):
    make_store("ALPH")
    scheduler = _scheduler(session_factory, clock, lambda store: FakeStoreClient(pages_of([2, 1])))

    assert await scheduler.run_pending() == []

    clock.set(_at(10))
    assert await scheduler.run_pending() == ["NEW_ORDERS"]
    await scheduler.wait_idle()

    (run,) = _runs(db)
    assert run.triggered_by == "scheduler"
    assert run.outcome == "success"
    assert scheduler.next_fire_times()["NEW_ORDERS"] == _at(11).isoformat()

    row = db.get(SchedulerJob, "NEW_ORDERS")
    assert row.last_status == "ok"
    assert row.runs_ok_in_row == 1

    clock.set(_at(10, 30))
    assert await scheduler.run_pending() == []


@pytest.mark.asyncio
async def test_stop_aborts_in_flight_runs_and_keeps_cursor(db, session_factory, make_store):
    make_store("ALPH")
    clock = ParkedClock(_at(9))
    cursors.get_or_create_cursor(db, "ALPH", "NEW_ORDERS", initial_value="100", clock=clock)
    client = FakeStoreClient(pages_of(range(110, 100, -1)), gate=asyncio.Event())
    scheduler = _scheduler(session_factory, clock, lambda store: client)

    await scheduler.start()
    assert scheduler.trigger("NEW_ORDERS", "ALPH").accepted is True
    while not client.calls:
        await asyncio.sleep(0)

    await scheduler.stop()

    assert scheduler.is_running is False
    (run,) = _runs(db)
    assert run.outcome == "aborted"
    assert run.error_summary[0]["code"] == "aborted"
    db.expire_all()
    assert db.query(SyncCursor).one().last_external_id == "100"
    assert scheduler.status()["jobs"]["NEW_ORDERS"]["in_flight"] == []


@pytest.mark.asyncio
async def test_rate_limited_store_is_deferred_then_retried(db, session_factory, make_store, clock):
    make_store("ALPH")
    clients = [
        FakeStoreClient([], fail_with=RateLimitError("slow down", retry_after=120)),
        FakeStoreClient(pages_of([2, 1])),
    ]
    scheduler = _scheduler(session_factory, clock, lambda store: clients.pop(0))

    result = await scheduler.trigger("NEW_ORDERS", "ALPH").task
    assert result.outcome == RunOutcome.PARTIAL
    assert "NEW_ORDERS:ALPH" in scheduler.status()["deferred"]

    job = await scheduler.trigger("NEW_ORDERS").task
    assert job.results[0].skipped_reason == "rate_limited"

    clock.advance(60)
    await scheduler.run_pending()
    await scheduler.wait_idle()
    assert len(_runs(db)) == 1

    clock.advance(61)
    await scheduler.run_pending()
    await scheduler.wait_idle()

    runs = sorted(_runs(db), key=lambda r: r.started_at)
    assert [r.outcome for r in runs] == ["partial", "success"]
    assert scheduler.status()["deferred"] == {}


@pytest.mark.asyncio
async def test_kill_switch_rejects_triggers(session_factory, clock):
    scheduler = _scheduler(session_factory, clock, None, SYNC_ENABLED=False)
    result = scheduler.trigger("NEW_ORDERS", "ALPH")
    assert result.accepted is False
    assert result.reason == "sync_disabled"


@pytest.mark.asyncio
async def test_reset_cursor_and_history(db, session_factory, make_store, clock):
    make_store("ALPH")
    scheduler = _scheduler(session_factory, clock, lambda store: FakeStoreClient(pages_of([12, 11, 10])))

    await scheduler.trigger("NEW_ORDERS", "ALPH").task
    history = scheduler.run_history(store_identifier="ALPH")
    assert len(history) == 1
    assert history[0]["outcome"] == "success"
    assert history[0]["created"] == 3

    reset = scheduler.reset_cursor("ALPH", "NEW_ORDERS", "5")
    assert reset == {"store": "ALPH", "job_type": "NEW_ORDERS", "last_external_id": "5"}

    overview = scheduler.store_overview()
    assert overview["total_orders"] == 3
    assert overview["orders_last_24h"] == 3
    assert overview["active_stores"] == 1
    assert overview["stores"][0]["cursor"] == "5"
    assert overview["stores"][0]["last_sync"] is not None
