"""SqlStore against an in-memory SQLite database."""
from decimal import Decimal

import pytest

from jobmarket.db import SqlStore
from jobmarket.deps import build_services
from jobmarket.errors import AlreadyAssigned, ConcurrentUpdate, NotFound
from jobmarket.escrow import RetryPolicy
from jobmarket.models import Bid, BidStatus, ChangeOrderStatus, Decision, Event, EventKind, Job, JobStatus

from conftest import CUSTOMER, GOOD_MESSAGE, MECHANIC, MECHANIC_2, line_item


@pytest.fixture
def sql_store():
    return SqlStore.from_url("sqlite://")


def _job(**kw):
    return Job(customer_id=CUSTOMER, category="brakes", **kw)


def test_insert_and_read_back(sql_store):
    (job,) = sql_store.commit(_job(price=Decimal("120.50")))
    assert job.version == 1
    loaded = sql_store.get_job(job.id)
    assert loaded == job
    assert loaded.price == Decimal("120.50")

    with pytest.raises(NotFound):
        sql_store.get_job("missing")


def test_stale_version_is_refused(sql_store):
    (job,) = sql_store.commit(_job())
    sql_store.commit(job.model_copy(update={"description": "first"}))
    with pytest.raises(ConcurrentUpdate):
        sql_store.commit(job.model_copy(update={"description": "second"}))
    assert sql_store.get_job(job.id).description == "first"


def test_duplicate_insert_is_a_conflict(sql_store):
    (job,) = sql_store.commit(_job())
    with pytest.raises(ConcurrentUpdate):
        sql_store.commit(job.model_copy(update={"version": 0}))


def test_multi_record_commit_is_atomic(sql_store):
    (job,) = sql_store.commit(_job())
    bid = Bid(job_id=job.id, mechanic_id=MECHANIC, amount=Decimal("85"), message=GOOD_MESSAGE, estimated_duration=60)
    stale_job = job.model_copy(update={"version": 7})

    with pytest.raises(ConcurrentUpdate):
        sql_store.commit(bid, stale_job)

    assert sql_store.list_bids(job.id) == []


def test_list_filters(sql_store):
    (a,) = sql_store.commit(_job())
    sql_store.commit(_job(status=JobStatus.SCHEDULED, mechanic_id=MECHANIC))
    assert [j.id for j in sql_store.list_jobs(status=JobStatus.OPEN)] == [a.id]
    assert len(sql_store.list_jobs(customer_id=CUSTOMER)) == 2
    assert len(sql_store.list_jobs(mechanic_id=MECHANIC)) == 1

    bid = Bid(job_id=a.id, mechanic_id=MECHANIC, amount=Decimal("85"), message=GOOD_MESSAGE, estimated_duration=60)
    sql_store.commit(bid)
    assert [b.id for b in sql_store.list_bids(a.id, BidStatus.PENDING)] == [bid.id]
    assert sql_store.list_bids(a.id, BidStatus.ACCEPTED) == []


def test_events_get_sequence_numbers_and_are_idempotent(sql_store):
    first = sql_store.add_event(Event(user_id=CUSTOMER, kind=EventKind.JOB_UPDATED, job_id="j1"))
    second = sql_store.add_event(Event(user_id=CUSTOMER, kind=EventKind.BID_SUBMITTED, job_id="j1"))
    assert second.seq > first.seq
    assert sql_store.add_event(first).seq == first.seq
    assert sql_store.get_event(second.id) == second
    assert sql_store.list_events(CUSTOMER, after_seq=first.seq) == [second]
    assert sql_store.list_events("nobody") == []


def test_ping(sql_store):
    assert sql_store.ping() is True


def test_marketplace_flow_on_sql(sql_store, gateway, clock):
    services = build_services(sql_store, gateway, policy=RetryPolicy(2, 0), clock=clock, sleep=lambda s: None)
    job = services.jobs.create_job(customer_id=CUSTOMER, category="brakes", payment_method_id="pm_1")
    b1 = services.bids.submit_bid(job.id, MECHANIC, Decimal("85"), GOOD_MESSAGE, 120)
    b2 = services.bids.submit_bid(job.id, MECHANIC_2, Decimal("90"), GOOD_MESSAGE, 60)

    services.bids.accept_bid(job.id, b1.id)
    with pytest.raises(AlreadyAssigned):
        services.bids.accept_bid(job.id, b2.id)

    services.jobs.confirm_schedule(job.id, actor_id=MECHANIC)
    services.jobs.start_work(job.id, actor_id=MECHANIC)
    order = services.change_orders.propose_change_order(job.id, "Rotors", "", [line_item()])
    assert sql_store.get_change_order(order.id).total_amount == Decimal("45")

    services.change_orders.respond(order.id, Decision.APPROVE)
    services.jobs.complete_job(job.id, actor_id=MECHANIC)

    assert sql_store.get_change_order(order.id).status == ChangeOrderStatus.PAID
    assert sql_store.get_job(job.id).status == JobStatus.COMPLETED
    assert services.notifications.refresh(MECHANIC) >= 1


def test_expect_guards_a_record_that_is_not_written(sql_store):
    (job,) = sql_store.commit(_job())
    bid = Bid(job_id=job.id, mechanic_id=MECHANIC, amount=Decimal("85"), message=GOOD_MESSAGE, estimated_duration=60)
    sql_store.commit(job.model_copy(update={"status": JobStatus.CANCELLED}))

    with pytest.raises(ConcurrentUpdate):
        sql_store.commit(bid, expect=[job])
    assert sql_store.list_bids(job.id) == []

    (bid,) = sql_store.commit(bid, expect=[sql_store.get_job(job.id)])
    assert sql_store.get_job(job.id).version == 2


def test_watermark_only_moves_forward(sql_store):
    assert sql_store.get_watermark(CUSTOMER) == 0
    assert sql_store.advance_watermark(CUSTOMER, 5) == 5
    assert sql_store.advance_watermark(CUSTOMER, 2) == 5
    assert sql_store.advance_watermark(CUSTOMER, 7) == 7
    assert sql_store.get_watermark(CUSTOMER) == 7
    assert sql_store.get_watermark(MECHANIC) == 0


def test_seen_watermark_survives_a_restart(tmp_path, gateway):
    db_url = f"sqlite:///{tmp_path / 'market.db'}"
    services = build_services(SqlStore.from_url(db_url), gateway, sleep=lambda s: None)
    for _ in range(3):
        services.events.publish(CUSTOMER, EventKind.JOB_UPDATED, "job-1", status="scheduled")
    assert services.notifications.mark_all_seen(CUSTOMER) == 0

    restarted = build_services(SqlStore.from_url(db_url), gateway, sleep=lambda s: None)
    assert restarted.notifications.watermark(CUSTOMER) == 3
    assert restarted.notifications.refresh(CUSTOMER) == 0

    restarted.events.publish(CUSTOMER, EventKind.JOB_UPDATED, "job-1", status="confirmed")
    assert restarted.notifications.refresh(CUSTOMER) == 1
