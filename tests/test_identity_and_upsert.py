from datetime import datetime, timedelta, timezone

from ordersync.models_sqlalchemy.models import Order, OrderStatus
from ordersync.services.order_sync import identity
from ordersync.services.order_sync.identity import Resolution
from ordersync.services.order_sync.stats import RunStats
from ordersync.services.order_sync.upsert import CREATED, UNCHANGED, UPDATED, upsert_order
from ordersync.utils.clock import ensure_utc

from conftest import raw_order


def _orders(db, store=None):
    query = db.query(Order)
    if store:
        query = query.filter(Order.store_identifier == store)
    return query.all()


def test_same_record_twice_leaves_one_row(db, make_store):
    make_store("ALPH")
    stats = RunStats()

    assert upsert_order(db, "ALPH", raw_order(101), stats) == CREATED
    db.commit()
    assert upsert_order(db, "ALPH", raw_order(101), stats) == UNCHANGED
    db.commit()

    rows = _orders(db)
    assert len(rows) == 1
    assert rows[0].external_id == "101"
    assert rows[0].status == OrderStatus.PENDING.value
    assert stats.created == 1
    assert stats.updated == 0
    assert stats.skipped == 1


def test_status_change_updates_in_place(db, make_store):
    make_store("ALPH")
    stats = RunStats()
    upsert_order(db, "ALPH", raw_order(101), stats)
    db.commit()
    first_id = _orders(db)[0].id

    assert upsert_order(db, "ALPH", raw_order(101, "En dispatch"), stats) == UPDATED
    db.commit()

    rows = _orders(db)
    assert len(rows) == 1
    assert rows[0].id == first_id
    assert rows[0].status == OrderStatus.DISPATCHED.value
    assert rows[0].external_status == "En dispatch"
    assert stats.status_changed == 1


def test_lost_insert_race_falls_back_to_update(db, make_store):
    make_store("ALPH")
    stats = RunStats()
    upsert_order(db, "ALPH", raw_order(101), stats)
    db.commit()

    # A stale "not found" resolution, as if another writer inserted in between.
    stale = Resolution(order_id=None, external_id="101", store_identifier="ALPH")
    assert upsert_order(db, "ALPH", raw_order(101, "Confirmé"), stats, resolution=stale) == UPDATED
    db.commit()

    rows = _orders(db)
    assert len(rows) == 1
    assert rows[0].status == OrderStatus.CONFIRMED.value


def test_same_external_id_in_two_stores_are_distinct(db, make_store):
    make_store("ALPH")
    make_store("BETA")
    stats = RunStats()

    upsert_order(db, "ALPH", raw_order(500), stats)
    upsert_order(db, "BETA", raw_order(500), stats)
    db.commit()
    assert len(_orders(db)) == 2

    upsert_order(db, "BETA", raw_order(500, "Livré"), stats)
    db.commit()

    assert _orders(db, "ALPH")[0].status == OrderStatus.PENDING.value
    assert _orders(db, "BETA")[0].status == OrderStatus.DELIVERED.value


def test_resolution_never_crosses_stores(db, make_store):
    make_store("ALPH")
    make_store("BETA")
    upsert_order(db, "ALPH", raw_order(500), RunStats())
    db.commit()

    assert identity.resolve(db, "BETA", "500").found is False
    assert identity.resolve(db, "ALPH", "500").found is True


def test_ambiguous_legacy_rows_pick_newest_and_report(db, make_store):
    make_store("ALPH")
    now = datetime(2026, 10, 1, tzinfo=timezone.utc)
    db.add(Order(id="old-row", store_identifier="ALPH", external_id="ALPH20525", status="PENDING",
                 created_at=now - timedelta(days=30), updated_at=now - timedelta(days=30)))
    db.add(Order(id="new-row", store_identifier="ALPH", external_id="20525", status="PENDING",
                 created_at=now, updated_at=now))
    db.commit()

    resolution = identity.resolve(db, "ALPH", "20525")
    assert resolution.ambiguous
    assert resolution.order_id == "new-row"
    assert set(resolution.candidates) == {"old-row", "new-row"}

    stats = RunStats()
    assert upsert_order(db, "ALPH", raw_order(20525, "Expédié"), stats) == UPDATED
    db.commit()

    assert db.get(Order, "new-row").status == OrderStatus.SHIPPED.value
    assert db.get(Order, "old-row").status == OrderStatus.PENDING.value
    assert stats.issue_count("identity_ambiguity") == 1
    issue = stats.issues[0]
    assert issue["chosen"] == "new-row"


def test_unknown_status_is_flagged_not_fatal(db, make_store):
    make_store("ALPH")
    stats = RunStats()

    assert upsert_order(db, "ALPH", raw_order(77, "Perdu en mer"), stats) == CREATED
    db.commit()

    row = _orders(db)[0]
    assert row.status == OrderStatus.UNKNOWN.value
    assert row.status_unknown is True
    assert row.external_status == "Perdu en mer"
    assert stats.issue_count("unknown_status") == 1
    assert stats.issues[0]["label"] == "Perdu en mer"


def test_issue_list_is_capped():
    from ordersync.services.order_sync.errors import UnknownStatusError
    from ordersync.services.order_sync.stats import MAX_RECORDED_ISSUES

    stats = RunStats()
    for n in range(MAX_RECORDED_ISSUES + 5):
        stats.record_issue(UnknownStatusError("ALPH", str(n), "??"))
    assert len(stats.issues) == MAX_RECORDED_ISSUES
    assert stats.dropped_issues == 5


def test_order_timestamps_follow_the_injected_clock(db, make_store, clock):
    make_store("ALPH")
    stats = RunStats()
    upsert_order(db, "ALPH", raw_order(101), stats, clock=clock)
    db.commit()
    created_at = clock.now()

    clock.advance(3600)
    upsert_order(db, "ALPH", raw_order(101, "En dispatch"), stats, clock=clock)
    db.commit()

    (row,) = _orders(db)
    assert ensure_utc(row.created_at) == created_at
    assert ensure_utc(row.updated_at) == created_at + timedelta(hours=1)
