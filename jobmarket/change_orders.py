# jobmarket/change_orders.py
"""Supplemental work requests raised on a job that is already in progress.

Lifecycle::

    pending ──approve──> approved ──hold confirmed──> escrow ──release──> paid
       │
       ├──reject──> rejected
       ├──cancel──> cancelled
       └──expires_at passed──> expired

No lock is held while the payment gateway is called. ``approved`` is the
state a change order sits in between committing the customer's decision
and the hold coming back; every commit after a gateway call is a fresh
compare-and-swap against whatever the store holds by then.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from .errors import ConcurrentUpdate, InvalidState, PaymentError, ValidationError
from .escrow import EscrowClient
from .line_items import LineItemLedger
from .models import (
    ChangeOrder,
    ChangeOrderStatus,
    ChangeOrderTotals,
    Decision,
    EventKind,
    JobStatus,
    LineItemIn,
    Urgency,
    utcnow,
)
from .notifications import EventLog
from .store import Store

logger = logging.getLogger("uvicorn")

CO = ChangeOrderStatus

# who hears about a change order entering each status
TO_CUSTOMER = frozenset({CO.PENDING, CO.CANCELLED, CO.EXPIRED, CO.ESCROW, CO.PAID})
TO_MECHANIC = frozenset({CO.APPROVED, CO.REJECTED, CO.EXPIRED, CO.ESCROW, CO.PAID})


class ChangeOrderController:
    def __init__(
        self,
        store: Store,
        escrow: EscrowClient,
        events: EventLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.escrow = escrow
        self.events = events
        self.clock = clock

    # ── reads (lazy expiry sweep) ────────────────────────────────────────────
    def get(self, change_order_id: str) -> ChangeOrder:
        order = self.store.get_change_order(change_order_id)
        return self._expire_if_due(order, self.clock())

    def list_for_job(self, job_id: str) -> List[ChangeOrder]:
        now = self.clock()
        return [self._expire_if_due(o, now) for o in self.store.list_change_orders(job_id=job_id)]

    # ── mechanic ─────────────────────────────────────────────────────────────
    def propose_change_order(
        self,
        job_id: str,
        title: str,
        description: str,
        line_items: Iterable[LineItemIn],
        urgency: Urgency = Urgency.NORMAL,
        expires_at: Optional[datetime] = None,
    ) -> ChangeOrder:
        job = self.store.get_job(job_id)
        if job.status != JobStatus.IN_PROGRESS:
            raise InvalidState(
                f"Change orders can only be raised on jobs in progress (job {job_id})",
                status=job.status.value,
            )

        now = self.clock()
        errors = {}
        if not title or not title.strip():
            errors["title"] = "Title is required"
        line_items = list(line_items)
        if not line_items:
            errors["line_items"] = "At least one line item is required"
        if expires_at is not None and expires_at <= now:
            errors["expires_at"] = "Expiry must be in the future"
        try:
            ledger = LineItemLedger.from_inputs(line_items)
        except ValidationError as exc:
            errors.update(exc.errors)
        if errors:
            raise ValidationError(errors)

        urgency = Urgency(urgency)
        order = ChangeOrder(
            job_id=job_id,
            mechanic_id=job.mechanic_id,
            title=title.strip(),
            description=(description or "").strip(),
            line_items=ledger.items,
            urgency=urgency,
            requires_immediate_approval=urgency == Urgency.URGENT,
            created_at=now,
            expires_at=expires_at,
        )
        try:
            (order,) = self.store.commit(order, expect=[job])
        except ConcurrentUpdate:
            latest = self.store.get_job(job_id)
            if latest.status != JobStatus.IN_PROGRESS:
                raise InvalidState(
                    f"Change orders can only be raised on jobs in progress (job {job_id})",
                    status=latest.status.value,
                )
            (order,) = self.store.commit(order, expect=[latest])
        logger.info(f"Change order {order.id} proposed on job {job_id} for {order.total_amount}")
        self._notify(order, job.customer_id)
        return order

    def cancel(self, change_order_id: str) -> ChangeOrder:
        """Mechanic withdraws a change order the customer has not answered."""
        order = self.get(change_order_id)
        self._require(order, CO.PENDING, "cancel")
        return self._move(order, CO.CANCELLED)

    # ── line items (pending orders only) ─────────────────────────────────────
    def add_line_item(self, change_order_id: str, item: LineItemIn) -> ChangeOrder:
        def edit(ledger: LineItemLedger) -> None:
            ledger.add(
                item.service_name,
                item.unit_price,
                quantity=item.quantity,
                category=item.category,
                description=item.description,
                is_required=item.is_required,
            )

        return self._edit_line_items(change_order_id, edit)

    def update_line_item(self, change_order_id: str, item_id: str, **changes) -> ChangeOrder:
        return self._edit_line_items(change_order_id, lambda ledger: ledger.update(item_id, **changes))

    def remove_line_item(self, change_order_id: str, item_id: str) -> ChangeOrder:
        def edit(ledger: LineItemLedger) -> None:
            ledger.remove(item_id)
            if not len(ledger):
                raise ValidationError({"line_items": "At least one line item is required"})

        return self._edit_line_items(change_order_id, edit)

    def totals(self, change_order_id: str) -> ChangeOrderTotals:
        ledger = LineItemLedger(self.get(change_order_id).line_items)
        return ChangeOrderTotals(
            total=ledger.total(),
            required_total=ledger.required_total(),
            by_category=ledger.by_category(),
            total_cents=ledger.total_cents(),
        )

    # ── customer ─────────────────────────────────────────────────────────────
    def respond(self, change_order_id: str, decision: Decision) -> ChangeOrder:
        order = self.get(change_order_id)
        self._require(order, CO.PENDING, "respond to")

        if Decision(decision) == Decision.REJECT:
            return self._move(order, CO.REJECTED)

        approved = self._move(order, CO.APPROVED)
        return self._secure(approved)

    def secure_escrow(self, change_order_id: str) -> ChangeOrder:
        """Retry the escrow hold for an approved change order (same idempotency key)."""
        order = self.get(change_order_id)
        if order.status == CO.ESCROW:
            return order
        self._require(order, CO.APPROVED, "hold funds for")
        return self._secure(order)

    def confirm_hold(self, change_order_id: str, intent_id: str) -> ChangeOrder:
        """Hold confirmed out of band (webhook): approved -> escrow."""
        order = self.store.get_change_order(change_order_id)
        if order.status == CO.ESCROW:
            return order
        self._require(order, CO.APPROVED, "confirm a hold for")
        try:
            return self._move(order, CO.ESCROW, payment_intent_id=intent_id)
        except ConcurrentUpdate:
            return self._settled_or_raise(change_order_id, CO.ESCROW)

    def release(self, change_order_id: str) -> ChangeOrder:
        order = self.get(change_order_id)
        if order.status == CO.PAID:
            return order
        self._require(order, CO.ESCROW, "release")

        result = self.escrow.release(order)
        if not result.captured:
            raise PaymentError(
                f"Capture for change order {order.id} ended in '{result.status}'",
                status=order.status.value,
            )
        try:
            return self._move(order, CO.PAID)
        except ConcurrentUpdate:
            return self._settled_or_raise(change_order_id, CO.PAID)

    def release_for_job(self, job_id: str) -> List[ChangeOrder]:
        """Release every escrowed change order of a completed job.

        Failures are logged and left in escrow for an explicit retry.
        """
        released = []
        for order in self.store.list_change_orders(job_id=job_id, status=CO.ESCROW):
            try:
                released.append(self.release(order.id))
            except (PaymentError, InvalidState) as exc:
                logger.error(f"Release of change order {order.id} on job {job_id} failed: {exc}")
        return released

    # ── sweeps ───────────────────────────────────────────────────────────────
    def sweep_expired(self, now: Optional[datetime] = None) -> List[ChangeOrder]:
        now = now or self.clock()
        expired = []
        for order in self.store.list_change_orders(status=CO.PENDING):
            if order.is_expired(now):
                moved = self._expire_if_due(order, now)
                if moved.status == CO.EXPIRED:
                    expired.append(moved)
        return expired

    def settle_for_cancellation(self, job_id: str) -> List[ChangeOrder]:
        """Resolve non-terminal change orders before their job is cancelled.

        Pending ones are cancelled. Approved or escrowed ones have money
        authorized against them, so they are flagged, not dropped.
        """
        now = self.clock()
        settled = []
        for order in self.store.list_change_orders(job_id=job_id):
            order = self._expire_if_due(order, now)
            if order.status == CO.PENDING:
                settled.append(self._move(order, CO.CANCELLED))
            elif order.status in (CO.APPROVED, CO.ESCROW) and not order.funds_flagged:
                (flagged,) = self.store.commit(order.model_copy(update={"funds_flagged": True}))
                logger.warning(
                    f"Job {job_id} cancelled with change order {order.id} in {order.status.value}; "
                    f"funds flagged for settlement"
                )
                settled.append(flagged)
        return settled

    # ── internals ────────────────────────────────────────────────────────────
    def _secure(self, order: ChangeOrder) -> ChangeOrder:
        job = self.store.get_job(order.job_id)
        hold = self.escrow.hold(order, job)
        if not hold.held:
            # customer action pending (e.g. 3DS); the webhook finishes the move
            if order.payment_intent_id != hold.intent_id:
                (order,) = self.store.commit(order.model_copy(update={"payment_intent_id": hold.intent_id}))
            logger.info(f"Hold for change order {order.id} is {hold.status}; waiting for confirmation")
            return order
        try:
            return self._move(order, CO.ESCROW, payment_intent_id=hold.intent_id)
        except ConcurrentUpdate:
            return self._settled_or_raise(order.id, CO.ESCROW)

    def _edit_line_items(self, change_order_id: str, edit: Callable[[LineItemLedger], None]) -> ChangeOrder:
        order = self.get(change_order_id)
        self._require(order, CO.PENDING, "edit line items of")
        ledger = LineItemLedger(order.line_items)
        edit(ledger)
        try:
            (edited,) = self.store.commit(order.model_copy(update={"line_items": ledger.items}))
        except ConcurrentUpdate:
            # the customer answered (or it expired) while the edit was being made
            latest = self.store.get_change_order(change_order_id)
            raise InvalidState(
                f"Change order {change_order_id} changed while its line items were edited",
                status=latest.status.value,
            )
        logger.info(f"Change order {edited.id} line items edited; total now {edited.total_amount}")
        self._notify(edited)
        return edited

    def _move(self, order: ChangeOrder, status: ChangeOrderStatus, **changes) -> ChangeOrder:
        (moved,) = self.store.commit(order.model_copy(update={"status": status, **changes}))
        logger.info(f"Change order {order.id}: {order.status.value} -> {status.value}")
        self._notify(moved)
        return moved

    def _expire_if_due(self, order: ChangeOrder, now: datetime) -> ChangeOrder:
        if not order.is_expired(now):
            return order
        try:
            return self._move(order, CO.EXPIRED)
        except ConcurrentUpdate:
            return self.store.get_change_order(order.id)

    def _settled_or_raise(self, change_order_id: str, wanted: ChangeOrderStatus) -> ChangeOrder:
        latest = self.store.get_change_order(change_order_id)
        if latest.status == wanted:
            return latest
        raise InvalidState(
            f"Change order {change_order_id} moved to {latest.status.value} concurrently",
            status=latest.status.value,
        )

    def _require(self, order: ChangeOrder, status: ChangeOrderStatus, verb: str) -> None:
        if order.status != status:
            raise InvalidState(
                f"Cannot {verb} change order {order.id} in status {order.status.value}",
                status=order.status.value,
            )

    def _notify(self, order: ChangeOrder, customer_id: Optional[str] = None) -> None:
        recipients = []
        if order.status in TO_CUSTOMER:
            recipients.append(customer_id or self.store.get_job(order.job_id).customer_id)
        if order.status in TO_MECHANIC:
            recipients.append(order.mechanic_id)
        for uid in recipients:
            self.events.publish(
                uid, EventKind.CHANGE_ORDER_UPDATED, order.job_id,
                ref_id=order.id, status=order.status.value,
            )
