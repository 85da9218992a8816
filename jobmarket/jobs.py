# jobmarket/jobs.py
import logging
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from . import policy
from .bids import BidLedger
from .change_orders import ChangeOrderController
from .line_items import LineItemLedger
from .models import EventKind, Job, JobAction, JobEvent, JobStatus, LineItemIn, Urgency, utcnow
from .notifications import EventLog
from .store import Store

logger = logging.getLogger("uvicorn")


class JobService:
    """Job creation and the lifecycle steps that are not bid acceptance."""

    def __init__(
        self,
        store: Store,
        bids: BidLedger,
        change_orders: ChangeOrderController,
        events: EventLog,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.bids = bids
        self.change_orders = change_orders
        self.events = events
        self.clock = clock

    def create_job(
        self,
        customer_id: str,
        category: str,
        urgency: Urgency = Urgency.NORMAL,
        description: Optional[str] = None,
        price: Optional[Decimal] = None,
        scheduled_date: Optional[date] = None,
        scheduled_time: Optional[str] = None,
        location: Optional[str] = None,
        images: Optional[List[str]] = None,
        line_items: Iterable[LineItemIn] = (),
        payment_customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> Job:
        ledger = LineItemLedger.from_inputs(line_items)
        job = Job(
            customer_id=customer_id,
            category=category,
            urgency=urgency,
            description=description,
            price=price,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            location=location,
            images=list(images or []),
            line_items=ledger.items,
            payment_customer_id=payment_customer_id,
            payment_method_id=payment_method_id,
            created_at=self.clock(),
        )
        (job,) = self.store.commit(job)
        logger.info(f"Job {job.id} created by customer {customer_id}")
        return job

    def get_job(self, job_id: str) -> Job:
        return self.store.get_job(job_id)

    def list_jobs(
        self,
        customer_id: Optional[str] = None,
        mechanic_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Job]:
        jobs = self.store.list_jobs(customer_id=customer_id, mechanic_id=mechanic_id, status=status)
        # stable sort keeps newest-first within a status
        return sorted(jobs, key=lambda j: policy.status_priority(j.status))

    def available_actions(self, job_id: str) -> List[JobAction]:
        return policy.available_actions(self.store.get_job(job_id).status)

    # ── lifecycle ────────────────────────────────────────────────────────────
    def confirm_schedule(self, job_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Job:
        return self._advance(job_id, JobEvent.SCHEDULE_CONFIRMED, actor_id, note)

    def decline_schedule(self, job_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Job:
        job = self.bids.decline_assignment(job_id, actor_id=actor_id, note=note)
        self._announce(job, actor_id)
        return job

    def start_work(self, job_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Job:
        return self._advance(job_id, JobEvent.WORK_STARTED, actor_id, note)

    def complete_job(self, job_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Job:
        job = self._advance(job_id, JobEvent.WORK_COMPLETED, actor_id, note)
        self.change_orders.release_for_job(job_id)
        return job

    def put_on_hold(self, job_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Job:
        return self._advance(job_id, JobEvent.PUT_ON_HOLD, actor_id, note)

    def resume(self, job_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Job:
        return self._advance(job_id, JobEvent.RESUMED, actor_id, note)

    def cancel_job(self, job_id: str, actor_id: Optional[str] = None, reason: Optional[str] = None) -> Job:
        job = self.store.get_job(job_id)
        assigned = job.mechanic_id
        # fail before touching change orders if the job cannot be cancelled at all
        cancelled = policy.transition(job, JobEvent.CANCELLED, at=self.clock(), actor_id=actor_id, note=reason)

        self.change_orders.settle_for_cancellation(job_id)
        closed = self.bids.closeout(job_id)
        written = self.store.commit(cancelled, *closed)
        job = written[0]
        logger.info(f"Job {job_id} cancelled; {len(closed)} bids closed")
        for bid in closed:
            if bid.mechanic_id != assigned:
                self.events.publish(bid.mechanic_id, EventKind.BID_REJECTED, job_id, ref_id=bid.id)
        self._announce(job, actor_id, extra=[assigned])
        return job

    def _advance(self, job_id: str, event: JobEvent, actor_id: Optional[str], note: Optional[str]) -> Job:
        job = self.store.get_job(job_id)
        moved = policy.transition(job, event, at=self.clock(), actor_id=actor_id, note=note)
        (job,) = self.store.commit(moved)
        logger.info(f"Job {job_id}: {event.value} -> {job.status.value}")
        self._announce(job, actor_id)
        return job

    def _announce(self, job: Job, actor_id: Optional[str], extra: Optional[List[str]] = None) -> None:
        recipients = []
        for uid in [*job.participants(), *(extra or [])]:
            if uid and uid != actor_id and uid not in recipients:
                recipients.append(uid)
        for uid in recipients:
            self.events.publish(uid, EventKind.JOB_UPDATED, job.id, status=job.status.value)
