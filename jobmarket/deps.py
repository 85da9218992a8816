# jobmarket/deps.py
import os
import time
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import HTTPException

from .bids import BidLedger
from .change_orders import ChangeOrderController
from .escrow import EscrowClient, PaymentGateway, RetryPolicy
from .jobs import JobService
from .models import Job
from .notifications import EventLog, NotificationCounter
from .payments import get_gateway
from .store import MemoryStore, Store

logger = logging.getLogger("uvicorn")


@dataclass
class Services:
    store: Store
    events: EventLog
    notifications: NotificationCounter
    bids: BidLedger
    change_orders: ChangeOrderController
    jobs: JobService


def build_services(
    store: Store,
    gateway: PaymentGateway,
    currency: str = "usd",
    policy: Optional[RetryPolicy] = None,
    clock: Optional[Callable[[], datetime]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Services:
    """Wire the marketplace core around one store and one payment gateway."""
    timed = {"clock": clock} if clock else {}
    escrow = EscrowClient(gateway, currency=currency, policy=policy, sleep=sleep)

    events = EventLog(store)
    notifications = NotificationCounter(store)
    events.subscribe(notifications.handle)

    bids = BidLedger(store, events, **timed)
    change_orders = ChangeOrderController(store, escrow, events, **timed)
    jobs = JobService(store, bids, change_orders, events, **timed)
    return Services(store, events, notifications, bids, change_orders, jobs)


def _store_from_env() -> Store:
    db_url = os.environ.get("JOBMARKET_DB_URL")
    if not db_url:
        logger.warning("JOBMARKET_DB_URL not set; using the in-memory store")
        return MemoryStore()
    from .db import SqlStore
    return SqlStore.from_url(db_url)


def _retry_policy_from_env() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=int(os.environ.get("ESCROW_MAX_ATTEMPTS", "4")),
        backoff_seconds=float(os.environ.get("ESCROW_BACKOFF_SECONDS", "0.5")),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(
            _store_from_env(),
            get_gateway(),
            currency=os.environ.get("STRIPE_CURRENCY", "usd"),
            policy=_retry_policy_from_env(),
        )
    return _services


# ──────────────────────────────────────────────────────────────────────────────
# Ownership checks used by the routers
# ──────────────────────────────────────────────────────────────────────────────
def require_customer(job: Job, user: Dict[str, Any]) -> Job:
    if job.customer_id != user["id"]:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def require_mechanic(job: Job, user: Dict[str, Any]) -> Job:
    if not job.mechanic_id or job.mechanic_id != user["id"]:
        raise HTTPException(status_code=403, detail="Only the assigned mechanic can do this")
    return job


def require_participant(job: Job, user: Dict[str, Any]) -> Job:
    if user["id"] not in job.participants():
        raise HTTPException(status_code=404, detail="Job not found")
    return job
