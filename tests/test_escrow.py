from decimal import Decimal

import pytest

from jobmarket.errors import PaymentError
from jobmarket.escrow import EscrowClient, Hold, PaymentFailure, PaymentTimeout, RetryPolicy, hold_key, release_key
from jobmarket.models import ChangeOrder, ChangeOrderStatus, Job, LineItem

from conftest import FakeGateway


@pytest.fixture
def job():
    return Job(customer_id="cust-1", category="brakes", payment_customer_id="cus_1", payment_method_id="pm_1")


@pytest.fixture
def order(job):
    item = LineItem(service_name="Pads", quantity=1, unit_price=Decimal("12.345"))
    return ChangeOrder(job_id=job.id, title="Pads", line_items=[item], status=ChangeOrderStatus.APPROVED)


def _client(gateway, sleeps, attempts=4):
    return EscrowClient(gateway, currency="eur", policy=RetryPolicy(attempts, 0.25), sleep=sleeps.append)


def test_keys_are_stable_per_change_order():
    assert hold_key("co-1") == "change-order-hold-co-1"
    assert release_key("co-1") == "change-order-release-co-1"


def test_hold_sends_cents_currency_and_metadata(job, order):
    gateway = FakeGateway()
    hold = _client(gateway, []).hold(order, job)
    assert hold == Hold("pi_1", "requires_capture", 1235)
    assert hold.held and not hold.captured
    assert gateway.by_key == {hold_key(order.id): "pi_1"}


def test_backoff_doubles_until_budget_is_spent(job, order):
    gateway = FakeGateway()
    gateway.hold_script = [PaymentTimeout("timed out")] * 4
    sleeps = []

    with pytest.raises(PaymentError) as err:
        _client(gateway, sleeps).hold(order, job)

    assert sleeps == [0.25, 0.5, 1.0]
    assert gateway.hold_calls == 4
    assert err.value.retryable is True
    assert err.value.status == "approved"


def test_requery_failure_counts_as_a_failed_attempt(job, order, monkeypatch):
    gateway = FakeGateway()
    gateway.hold_script = [PaymentTimeout("timed out")]

    def lookup_down(change_order_id):
        raise PaymentFailure("search unavailable")

    monkeypatch.setattr(gateway, "find_hold", lookup_down)
    sleeps = []
    hold = _client(gateway, sleeps).hold(order, job)
    assert hold.held
    assert sleeps == [0.25]


def test_release_without_a_hold_is_not_retryable(order):
    gateway = FakeGateway()
    with pytest.raises(PaymentError) as err:
        _client(gateway, []).release(order)
    assert err.value.retryable is False
    assert gateway.capture_calls == 0


def test_release_requery_ignores_an_uncaptured_intent(job, order):
    gateway = FakeGateway()
    sleeps = []
    escrow = _client(gateway, sleeps)
    held = escrow.hold(order, job)
    escrowed = order.model_copy(update={"status": ChangeOrderStatus.ESCROW, "payment_intent_id": held.intent_id})

    gateway.capture_script = [PaymentTimeout("timed out")]
    result = escrow.release(escrowed)

    assert result.captured
    assert gateway.capture_calls == 2
    assert gateway.captures == 1
    assert sleeps == [0.25]
