from datetime import timedelta

import pytest

from ordersync.models_sqlalchemy.models import RunOutcome
from ordersync.models_sqlalchemy.sync import SyncRun, SyncRunEvent
from ordersync.services.order_sync import cursors
from ordersync.services.order_sync.cleanup import CleanupJob, purge_history
from ordersync.services.order_sync.errors import TransportError
from ordersync.services.order_sync.stats import RunStats
from ordersync.services.order_sync.upsert import upsert_order

from conftest import FakeStoreClient, pages_of, raw_order


def _run(db, run_id, *, outcome, started, finished=None, heartbeat=None, job_type="NEW_ORDERS", store="ALPH"):
    db.add(SyncRun(
        id=run_id,
        job_type=job_type,
        store_identifier=store,
        outcome=outcome,
        started_at=started,
        finished_at=finished,
        heartbeat_at=heartbeat or started,
    ))
    db.commit()


def _event(db, event_id, run_id, when):
    db.add(SyncRunEvent(
        id=event_id,
        run_id=run_id,
        store_identifier="ALPH",
        job_type="NEW_ORDERS",
        event_type="page",
        timestamp=when,
        details_json={},
    ))
    db.commit()


def test_purge_history_removes_only_old_finished_runs(db, clock):
    now = clock.now()
    old = now - timedelta(days=40)
    _run(db, "old-done", outcome="success", started=old, finished=old)
    _run(db, "old-running", outcome="running", started=old)
    _run(db, "recent", outcome="failed", started=now, finished=now)
    _event(db, "e-old", "old-done", old)
    _event(db, "e-recent", "recent", now)

    result = purge_history(db, retention_days=30, clock=clock)

    assert result == {"runs_deleted": 1, "events_deleted": 1}
    db.expire_all()
    assert sorted(r.id for r in db.query(SyncRun).all()) == ["old-running", "recent"]
    assert [e.id for e in db.query(SyncRunEvent).all()] == ["e-recent"]


@pytest.mark.asyncio
async def test_cleanup_job_aborts_stale_runs_and_checks_drift(db, session_factory, make_store, clock):
    make_store("ALPH")
    make_store("BETA")
    stats = RunStats()
    for order_id in (95, 96, 150):
        upsert_order(db, "ALPH", raw_order(order_id), stats)
    upsert_order(db, "BETA", raw_order(10), stats)
    db.commit()
    cursors.get_or_create_cursor(db, "ALPH", "NEW_ORDERS", initial_value="150", clock=clock)
    _run(db, "stuck", outcome="running", started=clock.now() - timedelta(hours=2))

    def client_factory(store):
        if store.identifier == "BETA":
            return FakeStoreClient([], fail_with=TransportError("BETA unreachable"))
        return FakeStoreClient(pages_of(range(97, 92, -1)))

    job = CleanupJob(session_factory=session_factory, clock=clock, client_factory=client_factory)
    result = await job.run(triggered_by="scheduler")

    assert result.store_identifier == "all"
    assert result.outcome == RunOutcome.PARTIAL

    db.expire_all()
    assert db.get(SyncRun, "stuck").outcome == "aborted"
    run = db.get(SyncRun, result.run_id)
    assert run.job_type == "CLEANUP"
    assert run.outcome == "partial"
    assert run.summary_json["stale_runs_aborted"] == 1
    codes = sorted(issue["code"] for issue in run.error_summary)
    assert codes == ["drift_detected", "transport_error"]

    alph = cursors.get_cursor(db, "ALPH", "NEW_ORDERS")
    assert alph.drift_flagged is True
    assert alph.last_external_id == "150"


@pytest.mark.asyncio
async def test_cleanup_skips_drift_check_while_new_orders_runs(db, session_factory, make_store, clock):
    make_store("ALPH")
    upsert_order(db, "ALPH", raw_order(5), RunStats())
    db.commit()
    _run(db, "active", outcome="running", started=clock.now())
    client = FakeStoreClient(pages_of([5]))

    job = CleanupJob(session_factory=session_factory, clock=clock, client_factory=lambda store: client)
    result = await job.run()

    assert result.outcome == RunOutcome.SUCCESS
    assert client.calls == []
    db.expire_all()
    run = db.get(SyncRun, result.run_id)
    assert run.summary_json["drift"] == [{"store": "ALPH", "skipped": "new_orders_running"}]


@pytest.mark.asyncio
async def test_second_cleanup_is_rejected_while_first_runs(db, session_factory, clock):
    _run(db, "cleanup-running", outcome="running", started=clock.now(), job_type="CLEANUP", store="all")

    result = await CleanupJob(session_factory=session_factory, clock=clock).run()

    assert result.skipped_reason == "already_running"
    assert result.outcome is None
