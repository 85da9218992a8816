"""Tests for the job service lifecycle steps."""
from decimal import Decimal

import pytest

from jobmarket.errors import IllegalTransition, NotFound, ValidationError
from jobmarket.models import BidStatus, EventKind, JobAction, JobStatus, LineItemCategory

from conftest import CUSTOMER, GOOD_MESSAGE, MECHANIC, MECHANIC_2, line_item


def test_create_job_starts_open_and_unassigned(services, clock, open_job):
    assert open_job.status == JobStatus.OPEN
    assert open_job.mechanic_id is None
    assert open_job.timeline == []
    assert open_job.created_at == clock.now
    assert open_job.version == 1
    assert services.jobs.get_job(open_job.id) == open_job


def test_get_unknown_job(services):
    with pytest.raises(NotFound):
        services.jobs.get_job("missing")


def test_full_lifecycle_records_timeline(services, in_progress_job):
    job = services.jobs.put_on_hold(in_progress_job.id, actor_id=MECHANIC, note="waiting on parts")
    assert job.status == JobStatus.ON_HOLD
    job = services.jobs.resume(job.id, actor_id=MECHANIC)
    job = services.jobs.complete_job(job.id, actor_id=MECHANIC)

    assert job.status == JobStatus.COMPLETED
    assert [e.to_status for e in job.timeline] == [
        JobStatus.SCHEDULED,
        JobStatus.CONFIRMED,
        JobStatus.IN_PROGRESS,
        JobStatus.ON_HOLD,
        JobStatus.IN_PROGRESS,
        JobStatus.COMPLETED,
    ]
    assert job.timeline[3].note == "waiting on parts"
    assert services.jobs.available_actions(job.id) == [
        JobAction.VIEW, JobAction.RATE, JobAction.REBOOK, JobAction.MESSAGE,
    ]


def test_illegal_step_leaves_job_untouched(services, open_job):
    with pytest.raises(IllegalTransition):
        services.jobs.start_work(open_job.id, actor_id=MECHANIC)
    assert services.jobs.get_job(open_job.id) == open_job


def test_cancel_open_job_rejects_pending_bids(services, store, open_job):
    b1 = services.bids.submit_bid(open_job.id, MECHANIC, Decimal("85"), GOOD_MESSAGE, 120)
    b2 = services.bids.submit_bid(open_job.id, MECHANIC_2, Decimal("90"), GOOD_MESSAGE, 90)

    job = services.jobs.cancel_job(open_job.id, actor_id=CUSTOMER, reason="sold the car")

    assert job.status == JobStatus.CANCELLED
    assert job.timeline[-1].note == "sold the car"
    assert {store.get_bid(b.id).status for b in (b1, b2)} == {BidStatus.REJECTED}
    assert [e.kind for e in services.notifications.unread(MECHANIC)] == [EventKind.BID_REJECTED]


def test_cancel_scheduled_job_unassigns_and_tells_the_mechanic(services, store, open_job):
    bid = services.bids.submit_bid(open_job.id, MECHANIC, Decimal("85"), GOOD_MESSAGE, 120)
    services.bids.accept_bid(open_job.id, bid.id, actor_id=CUSTOMER)
    services.notifications.mark_all_seen(MECHANIC)

    job = services.jobs.cancel_job(open_job.id, actor_id=CUSTOMER)

    assert job.mechanic_id is None
    assert store.get_bid(bid.id).status == BidStatus.REJECTED
    unread = services.notifications.unread(MECHANIC)
    assert [(e.kind, e.status) for e in unread] == [(EventKind.JOB_UPDATED, "cancelled")]


def test_cannot_cancel_work_in_progress(services, in_progress_job):
    with pytest.raises(IllegalTransition):
        services.jobs.cancel_job(in_progress_job.id, actor_id=CUSTOMER)
    assert services.jobs.get_job(in_progress_job.id).status == JobStatus.IN_PROGRESS


def test_list_jobs_orders_by_status_priority(services, clock, in_progress_job):
    clock.advance(minutes=5)
    newer_open = services.jobs.create_job(customer_id=CUSTOMER, category="oil change")
    clock.advance(minutes=5)
    cancelled = services.jobs.create_job(customer_id=CUSTOMER, category="tyres")
    services.jobs.cancel_job(cancelled.id, actor_id=CUSTOMER)

    listed = services.jobs.list_jobs(customer_id=CUSTOMER)
    assert [j.id for j in listed] == [in_progress_job.id, newer_open.id, cancelled.id]

    assert [j.id for j in services.jobs.list_jobs(mechanic_id=MECHANIC)] == [in_progress_job.id]
    assert [j.id for j in services.jobs.list_jobs(status=JobStatus.OPEN)] == [newer_open.id]


def test_lifecycle_steps_notify_the_other_party(services, open_job):
    bid = services.bids.submit_bid(open_job.id, MECHANIC, Decimal("85"), GOOD_MESSAGE, 120)
    services.bids.accept_bid(open_job.id, bid.id, actor_id=CUSTOMER)
    services.notifications.mark_all_seen(CUSTOMER)

    services.jobs.confirm_schedule(open_job.id, actor_id=MECHANIC)

    assert [e.status for e in services.notifications.unread(CUSTOMER)] == ["confirmed"]
    assert services.notifications.unread(MECHANIC)[-1].kind == EventKind.BID_ACCEPTED


def test_create_job_with_line_items(services):
    job = services.jobs.create_job(
        customer_id=CUSTOMER,
        category="brakes",
        line_items=[line_item("Pads", quantity=2, unit_price="30", category=LineItemCategory.PARTS)],
    )
    (item,) = job.line_items
    assert item.total_price == Decimal("60")
    assert services.jobs.get_job(job.id).line_items == job.line_items


def test_create_job_refuses_bad_line_items(services, store):
    with pytest.raises(ValidationError) as err:
        services.jobs.create_job(customer_id=CUSTOMER, category="brakes", line_items=[line_item(quantity=0)])
    assert "line_items[0].quantity" in err.value.errors
    assert store.list_jobs() == []
