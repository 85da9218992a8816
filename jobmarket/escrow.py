# jobmarket/escrow.py
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import PaymentError
from .line_items import LineItemLedger
from .models import ChangeOrder, Job

logger = logging.getLogger("uvicorn")


class PaymentTimeout(Exception):
    """The gateway did not answer in time; the call may or may not have landed."""


class PaymentFailure(Exception):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class Hold:
    intent_id: str
    status: str
    amount_cents: Optional[int] = None

    @property
    def held(self) -> bool:
        return self.status == "requires_capture"

    @property
    def captured(self) -> bool:
        return self.status == "succeeded"


class PaymentGateway(ABC):
    """What the escrow flow needs from a payment provider."""

    @abstractmethod
    def hold(
        self,
        idempotency_key: str,
        amount_cents: int,
        currency: str,
        customer_id: Optional[str],
        payment_method_id: Optional[str],
        metadata: Dict[str, str],
    ) -> Hold: ...

    @abstractmethod
    def find_hold(self, change_order_id: str) -> Optional[Hold]: ...

    @abstractmethod
    def capture(self, intent_id: str, idempotency_key: str) -> Hold: ...

    @abstractmethod
    def retrieve(self, intent_id: str) -> Hold: ...


@dataclass
class RetryPolicy:
    """Retry budget for escrow hold/release calls."""
    max_attempts: int = 4
    backoff_seconds: float = 0.5


def hold_key(change_order_id: str) -> str:
    return f"change-order-hold-{change_order_id}"


def release_key(change_order_id: str) -> str:
    return f"change-order-release-{change_order_id}"


class EscrowClient:
    def __init__(
        self,
        gateway: PaymentGateway,
        currency: str = "usd",
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.currency = currency
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def hold(self, change_order: ChangeOrder, job: Job) -> Hold:
        key = hold_key(change_order.id)
        amount = LineItemLedger(change_order.line_items).total_cents()
        metadata = {"change_order_id": change_order.id, "job_id": change_order.job_id}

        def call() -> Hold:
            return self.gateway.hold(
                key, amount, self.currency,
                job.payment_customer_id, job.payment_method_id, metadata,
            )

        def requery() -> Optional[Hold]:
            return self.gateway.find_hold(change_order.id)

        return self._with_retries("hold", change_order, call, requery)

    def release(self, change_order: ChangeOrder) -> Hold:
        if not change_order.payment_intent_id:
            raise PaymentError(
                f"Change order {change_order.id} has no held payment to release",
                status=change_order.status.value,
                retryable=False,
            )
        intent_id = change_order.payment_intent_id

        def call() -> Hold:
            return self.gateway.capture(intent_id, release_key(change_order.id))

        def requery() -> Optional[Hold]:
            found = self.gateway.retrieve(intent_id)
            return found if found.captured else None

        return self._with_retries("release", change_order, call, requery)

    def _with_retries(self, label, change_order, call, requery) -> Hold:
        last_err: Optional[Exception] = None
        for attempt in range(self.policy.max_attempts):
            try:
                result = call()
                logger.info(f"Escrow {label} for change order {change_order.id}: {result.status}")
                return result
            except PaymentTimeout as exc:
                last_err = exc
                logger.warning(f"Escrow {label} timed out for change order {change_order.id}; re-querying")
                try:
                    found = requery()
                except (PaymentTimeout, PaymentFailure) as lookup_err:
                    found = None
                    logger.warning(f"Escrow {label} re-query failed: {lookup_err}")
                if found is not None:
                    return found
            except PaymentFailure as exc:
                last_err = exc
                if not exc.retryable:
                    break
            if attempt + 1 < self.policy.max_attempts:
                self._sleep(self.policy.backoff_seconds * (2 ** attempt))

        retryable = not isinstance(last_err, PaymentFailure) or last_err.retryable
        logger.error(f"Escrow {label} failed for change order {change_order.id}: {last_err}")
        raise PaymentError(
            f"Escrow {label} failed for change order {change_order.id}: {last_err}",
            status=change_order.status.value,
            retryable=retryable,
        )
