# jobmarket/bids.py
"""Competing mechanic bids on an open job.

Every write here carries the job's version. ``accept_bid`` commits the job
and every sibling bid together, and ``submit_bid`` bumps the job version
with the new bid, so an accept never commits over a bid list it did not
see. Of two racing accepts exactly one commits; the other re-reads a job
that is no longer ``open`` and reports ``AlreadyAssigned``.
"""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from . import policy
from .errors import AlreadyAssigned, ConcurrentUpdate, InvalidState, NotFound, ValidationError
from .models import Bid, BidStatus, EventKind, Job, JobEvent, JobStatus, utcnow
from .notifications import EventLog
from .store import Store

logger = logging.getLogger("uvicorn")

MIN_MESSAGE_LENGTH = 10
SUBMIT_ATTEMPTS = 5
ACCEPT_ATTEMPTS = 5


def check_bid(amount: Any, message: Any, estimated_duration: Any) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    try:
        value = Decimal(str(amount)) if not isinstance(amount, bool) else None
    except (InvalidOperation, ValueError):
        value = None
    if value is None or not value.is_finite() or value <= 0:
        errors["amount"] = "Please enter a valid bid amount"

    if not isinstance(message, str) or len(message.strip()) < MIN_MESSAGE_LENGTH:
        errors["message"] = f"Please provide a detailed message (at least {MIN_MESSAGE_LENGTH} characters)"

    if (
        isinstance(estimated_duration, bool)
        or not isinstance(estimated_duration, int)
        or estimated_duration <= 0
    ):
        errors["estimated_duration"] = "Please enter estimated duration in minutes"
    return errors


class BidLedger:
    def __init__(self, store: Store, events: EventLog, clock: Callable = utcnow):
        self.store = store
        self.events = events
        self.clock = clock

    def get(self, bid_id: str) -> Bid:
        return self.store.get_bid(bid_id)

    def list_for_job(self, job_id: str, status: Optional[BidStatus] = None) -> List[Bid]:
        return self.store.list_bids(job_id, status)

    def submit_bid(
        self,
        job_id: str,
        mechanic_id: str,
        amount: Any,
        message: Any,
        estimated_duration: Any,
    ) -> Bid:
        errors = check_bid(amount, message, estimated_duration)
        if errors:
            raise ValidationError(errors)

        job = self.store.get_job(job_id)
        if mechanic_id == job.customer_id:
            raise ValidationError({"mechanic_id": "You cannot bid on your own job"})

        bid = Bid(
            job_id=job_id,
            mechanic_id=mechanic_id,
            amount=Decimal(str(amount)),
            message=message.strip(),
            estimated_duration=estimated_duration,
            created_at=self.clock(),
        )
        for _ in range(SUBMIT_ATTEMPTS):
            if job.status != JobStatus.OPEN:
                raise InvalidState(f"Job {job_id} is not accepting bids", status=job.status.value)
            try:
                # bumping the job version makes a racing accept or cancel re-read the bids
                bid, job = self.store.commit(bid, job)
                break
            except ConcurrentUpdate:
                job = self.store.get_job(job_id)
        else:
            raise InvalidState(f"Job {job_id} kept changing while the bid was submitted", status=job.status.value)
        logger.info(f"Bid {bid.id} submitted on job {job_id} by mechanic {mechanic_id}")
        self.events.publish(job.customer_id, EventKind.BID_SUBMITTED, job_id, ref_id=bid.id)
        return bid

    def accept_bid(self, job_id: str, bid_id: str, actor_id: Optional[str] = None) -> Job:
        for _ in range(ACCEPT_ATTEMPTS):
            job = self.store.get_job(job_id)
            self._ensure_open(job)

            bids = self.store.list_bids(job_id)
            chosen = next((b for b in bids if b.id == bid_id), None)
            if chosen is None:
                raise NotFound("Bid", bid_id)
            if chosen.status != BidStatus.PENDING:
                # a racing accept may have closed this bid after our job read
                self._ensure_open(self.store.get_job(job_id))
                raise InvalidState(f"Bid {bid_id} is not pending", status=chosen.status.value)

            updated_job = policy.transition(
                job, JobEvent.BID_ACCEPTED, at=self.clock(), actor_id=actor_id,
                mechanic_id=chosen.mechanic_id,
            )
            accepted = chosen.model_copy(update={"status": BidStatus.ACCEPTED})
            rejected = [
                b.model_copy(update={"status": BidStatus.REJECTED, "closed_by_bid_id": bid_id})
                for b in bids
                if b.id != bid_id and b.status == BidStatus.PENDING
            ]
            try:
                written = self.store.commit(updated_job, accepted, *rejected)
                break
            except ConcurrentUpdate:
                # lost to another accept or cancel, or a new bid arrived: re-read and decide again
                continue
        else:
            self._ensure_open(self.store.get_job(job_id))
            raise InvalidState(f"Job {job_id} kept changing while bid {bid_id} was accepted")

        updated_job = written[0]
        logger.info(f"Bid {bid_id} accepted on job {job_id}; {len(rejected)} other bids rejected")
        self.events.publish(accepted.mechanic_id, EventKind.BID_ACCEPTED, job_id, ref_id=bid_id)
        for bid in rejected:
            self.events.publish(bid.mechanic_id, EventKind.BID_REJECTED, job_id, ref_id=bid.id)
        return updated_job

    def withdraw_bid(self, bid_id: str) -> Bid:
        bid = self.store.get_bid(bid_id)
        if bid.status != BidStatus.PENDING:
            raise InvalidState(f"Bid {bid_id} can no longer be withdrawn", status=bid.status.value)
        try:
            (bid,) = self.store.commit(bid.model_copy(update={"status": BidStatus.WITHDRAWN}))
        except ConcurrentUpdate:
            latest = self.store.get_bid(bid_id)
            raise InvalidState(f"Bid {bid_id} can no longer be withdrawn", status=latest.status.value)
        logger.info(f"Bid {bid_id} withdrawn")
        return bid

    def decline_assignment(self, job_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Job:
        """Assigned mechanic declines the schedule: job back to open.

        The declined bid is withdrawn and the bids its acceptance rejected
        return to pending, so the customer can pick another offer.
        """
        job = self.store.get_job(job_id)
        updated_job = policy.transition(
            job, JobEvent.SCHEDULE_DECLINED, at=self.clock(), actor_id=actor_id, note=note,
        )
        bids = self.store.list_bids(job_id)
        accepted = next((b for b in bids if b.status == BidStatus.ACCEPTED), None)
        changes: List[Bid] = []
        if accepted is not None:
            changes.append(accepted.model_copy(update={"status": BidStatus.WITHDRAWN}))
            changes.extend(
                b.model_copy(update={"status": BidStatus.PENDING, "closed_by_bid_id": None})
                for b in bids
                if b.status == BidStatus.REJECTED and b.closed_by_bid_id == accepted.id
            )
        written = self.store.commit(updated_job, *changes)
        reopened = changes[1:]
        logger.info(f"Job {job_id} schedule declined; {len(reopened)} bids reopened")
        for bid in reopened:
            self.events.publish(bid.mechanic_id, EventKind.BID_REOPENED, job_id, ref_id=bid.id)
        return written[0]

    def closeout(self, job_id: str) -> List[Bid]:
        """Bids to reject when the job is cancelled (not committed here)."""
        return [
            b.model_copy(update={"status": BidStatus.REJECTED})
            for b in self.store.list_bids(job_id)
            if b.status in (BidStatus.PENDING, BidStatus.ACCEPTED)
        ]

    def _ensure_open(self, job: Job) -> None:
        if job.status == JobStatus.OPEN:
            return
        if job.mechanic_id:
            raise AlreadyAssigned(job.id, job.mechanic_id)
        raise InvalidState(f"Job {job.id} is not open for bid acceptance", status=job.status.value)
