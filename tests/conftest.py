"""Shared fixtures: in-memory store, controllable clock, scripted payment gateway."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from jobmarket.deps import build_services
from jobmarket.escrow import Hold, PaymentGateway, RetryPolicy
from jobmarket.models import LineItemIn
from jobmarket.store import MemoryStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

CUSTOMER = "cust-1"
MECHANIC = "mech-1"
MECHANIC_2 = "mech-2"
GOOD_MESSAGE = "I can fix this today and guarantee the work"


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGateway):
    """Stripe-shaped fake: idempotent by key, with scripted failures.

    Push exceptions onto ``hold_script`` / ``capture_script`` to make the
    next calls fail in order; an empty script means success.
    """

    def __init__(self, hold_status: str = "requires_capture"):
        self.hold_status = hold_status
        self.hold_script: List[Exception] = []
        self.capture_script: List[Exception] = []
        self.intents: Dict[str, dict] = {}
        self.by_key: Dict[str, str] = {}
        self.hold_calls = 0
        self.capture_calls = 0
        self.captures = 0  # captures that actually moved money
        self.land_on_timeout = False

    def _create(self, key, amount_cents, metadata) -> dict:
        if key in self.by_key:
            return self.intents[self.by_key[key]]
        intent = {
            "id": f"pi_{len(self.intents) + 1}",
            "status": self.hold_status,
            "amount": amount_cents,
            "metadata": dict(metadata),
        }
        self.intents[intent["id"]] = intent
        self.by_key[key] = intent["id"]
        return intent

    def hold(self, idempotency_key, amount_cents, currency, customer_id, payment_method_id, metadata) -> Hold:
        self.hold_calls += 1
        if self.hold_script:
            exc = self.hold_script.pop(0)
            if self.land_on_timeout:
                self._create(idempotency_key, amount_cents, metadata)
            raise exc
        intent = self._create(idempotency_key, amount_cents, metadata)
        return Hold(intent["id"], intent["status"], intent["amount"])

    def find_hold(self, change_order_id: str) -> Optional[Hold]:
        for intent in self.intents.values():
            if intent["metadata"].get("change_order_id") == change_order_id:
                return Hold(intent["id"], intent["status"], intent["amount"])
        return None

    def capture(self, intent_id: str, idempotency_key: str) -> Hold:
        self.capture_calls += 1
        intent = self.intents[intent_id]
        if self.capture_script:
            exc = self.capture_script.pop(0)
            if self.land_on_timeout and intent["status"] != "succeeded":
                intent["status"] = "succeeded"
                self.captures += 1
            raise exc
        if intent["status"] != "succeeded":
            intent["status"] = "succeeded"
            self.captures += 1
        return Hold(intent["id"], intent["status"], intent["amount"])

    def retrieve(self, intent_id: str) -> Hold:
        intent = self.intents[intent_id]
        return Hold(intent["id"], intent["status"], intent["amount"])


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def services(store, gateway, clock, sleeps):
    return build_services(
        store,
        gateway,
        policy=RetryPolicy(max_attempts=3, backoff_seconds=0.5),
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def open_job(services):
    return services.jobs.create_job(
        customer_id=CUSTOMER,
        category="brakes",
        description="Squealing front brakes",
        location="12 Elm St",
        payment_customer_id="cus_123",
        payment_method_id="pm_card_visa",
    )


@pytest.fixture
def in_progress_job(services, open_job):
    bid = services.bids.submit_bid(open_job.id, MECHANIC, Decimal("85"), GOOD_MESSAGE, 120)
    services.bids.accept_bid(open_job.id, bid.id, actor_id=CUSTOMER)
    services.jobs.confirm_schedule(open_job.id, actor_id=MECHANIC)
    return services.jobs.start_work(open_job.id, actor_id=MECHANIC)


def line_item(service_name="Rotor resurfacing", quantity=1, unit_price="45", **kw) -> LineItemIn:
    return LineItemIn(service_name=service_name, quantity=quantity, unit_price=Decimal(unit_price), **kw)
