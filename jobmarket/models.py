# jobmarket/models.py
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, computed_field


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────────────────────
# Enums (str-valued so they compare to and serialize as plain strings)
# ──────────────────────────────────────────────────────────────────────────────
class JobStatus(str, Enum):
    OPEN = "open"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


class JobAction(str, Enum):
    VIEW = "view"
    SCHEDULE = "schedule"
    RATE = "rate"
    CANCEL = "cancel"
    REBOOK = "rebook"
    MESSAGE = "message"


class JobEvent(str, Enum):
    BID_ACCEPTED = "bid_accepted"
    SCHEDULE_CONFIRMED = "schedule_confirmed"
    SCHEDULE_DECLINED = "schedule_declined"
    WORK_STARTED = "work_started"
    WORK_COMPLETED = "work_completed"
    CANCELLED = "cancelled"
    PUT_ON_HOLD = "put_on_hold"
    RESUMED = "resumed"


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class LineItemCategory(str, Enum):
    LABOR = "labor"
    PARTS = "parts"
    MATERIALS = "materials"
    OTHER = "other"


class ChangeOrderStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ESCROW = "escrow"
    PAID = "paid"
    EXPIRED = "expired"


TERMINAL_CHANGE_ORDER_STATUSES = frozenset({
    ChangeOrderStatus.PAID,
    ChangeOrderStatus.REJECTED,
    ChangeOrderStatus.CANCELLED,
    ChangeOrderStatus.EXPIRED,
})


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class EventKind(str, Enum):
    BID_SUBMITTED = "bid.submitted"
    BID_ACCEPTED = "bid.accepted"
    BID_REJECTED = "bid.rejected"
    BID_REOPENED = "bid.reopened"
    CHANGE_ORDER_UPDATED = "change_order.updated"
    JOB_UPDATED = "job.updated"


# ──────────────────────────────────────────────────────────────────────────────
# Aggregates
# ──────────────────────────────────────────────────────────────────────────────
class TimelineEntry(BaseModel):
    at: datetime
    event: JobEvent
    from_status: JobStatus
    to_status: JobStatus
    actor_id: Optional[str] = None
    note: Optional[str] = None


class LineItem(BaseModel):
    id: str = Field(default_factory=new_id)
    service_name: str
    description: Optional[str] = None
    category: LineItemCategory = LineItemCategory.LABOR
    quantity: int
    unit_price: Decimal
    is_required: bool = False

    @computed_field
    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity


class Job(BaseModel):
    id: str = Field(default_factory=new_id)
    status: JobStatus = JobStatus.OPEN
    customer_id: str
    mechanic_id: Optional[str] = None
    category: str
    urgency: Urgency = Urgency.NORMAL
    description: Optional[str] = None
    price: Optional[Decimal] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None
    location: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    line_items: List[LineItem] = Field(default_factory=list)
    timeline: List[TimelineEntry] = Field(default_factory=list)
    # Stripe customer / saved card used for change-order escrow holds
    payment_customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def participants(self) -> List[str]:
        return [uid for uid in (self.customer_id, self.mechanic_id) if uid]


class Bid(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    mechanic_id: str
    amount: Decimal
    message: str
    estimated_duration: int  # minutes
    status: BidStatus = BidStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    # the accepted bid whose acceptance closed this one
    closed_by_bid_id: Optional[str] = None
    version: int = 0


class ChangeOrder(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    mechanic_id: Optional[str] = None
    title: str
    description: str = ""
    line_items: List[LineItem] = Field(default_factory=list)
    urgency: Urgency = Urgency.NORMAL
    requires_immediate_approval: bool = False
    status: ChangeOrderStatus = ChangeOrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    payment_intent_id: Optional[str] = None
    # set when a job is cancelled while funds are authorized or held
    funds_flagged: bool = False
    version: int = 0

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return sum((item.total_price for item in self.line_items), Decimal("0"))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CHANGE_ORDER_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return (
            self.status == ChangeOrderStatus.PENDING
            and self.expires_at is not None
            and self.expires_at < now
        )


class Event(BaseModel):
    id: str = Field(default_factory=new_id)
    seq: Optional[int] = None  # assigned by the store on publish
    user_id: str
    kind: EventKind
    job_id: str
    ref_id: Optional[str] = None
    status: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# Request bodies
# ──────────────────────────────────────────────────────────────────────────────
# Bid and line item bodies stay loosely typed; the ledgers do field validation.
class BidIn(BaseModel):
    amount: Decimal
    message: str
    estimated_duration: int


class LineItemIn(BaseModel):
    service_name: str
    description: Optional[str] = None
    category: LineItemCategory = LineItemCategory.LABOR
    quantity: int
    unit_price: Decimal
    is_required: bool = False


class LineItemUpdate(BaseModel):
    service_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[LineItemCategory] = None
    quantity: Optional[int] = None
    unit_price: Optional[Decimal] = None
    is_required: Optional[bool] = None


class JobIn(BaseModel):
    category: str = Field(..., min_length=1)
    urgency: Urgency = Urgency.NORMAL
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, gt=0)
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None
    location: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    line_items: List[LineItemIn] = Field(default_factory=list)
    payment_customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None


class TransitionIn(BaseModel):
    note: Optional[str] = None


class ChangeOrderIn(BaseModel):
    title: str
    description: str = ""
    line_items: List[LineItemIn] = Field(default_factory=list)
    urgency: Urgency = Urgency.NORMAL
    expires_at: Optional[datetime] = None


class DecisionIn(BaseModel):
    decision: Decision


class ActionsOut(BaseModel):
    status: JobStatus
    actions: List[JobAction]


class ChangeOrderTotals(BaseModel):
    total: Decimal
    required_total: Decimal
    by_category: Dict[LineItemCategory, Decimal]
    total_cents: int


class UnreadOut(BaseModel):
    unread: int


class CustomerIn(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    phone: Optional[str] = None


class PaymentIntentIn(BaseModel):
    amount: Decimal = Field(..., gt=0)  # major units; converted to cents
    currency: str = "usd"
    customer: Optional[str] = None
    payment_method: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class PaymentIntentConfirm(BaseModel):
    payment_intent_id: str
    payment_method_id: Optional[str] = None


class PaymentMethodAttach(BaseModel):
    payment_method_id: str
    customer_id: str
