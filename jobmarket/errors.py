# jobmarket/errors.py
from typing import Any, Dict, Optional


class MarketError(Exception):
    """Base for every error the marketplace core reports to its caller."""

    code = "market_error"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.message}
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class ValidationError(MarketError):
    """Input rejected before anything was written. `errors` maps field -> message."""

    code = "validation_error"
    status_code = 422

    def __init__(self, errors: Dict[str, str]):
        fields = ", ".join(sorted(errors))
        super().__init__(f"Invalid fields: {fields}", errors=dict(errors))
        self.errors = dict(errors)


class IllegalTransition(MarketError):
    code = "illegal_transition"
    status_code = 409

    def __init__(self, current: str, event: str):
        super().__init__(
            f"Cannot apply '{event}' to a job in status '{current}'",
            current=current,
            event=event,
        )
        self.current = current
        self.event = event


class InvalidState(MarketError):
    code = "invalid_state"
    status_code = 409

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message, status=status)
        self.status = status


class AlreadyAssigned(MarketError):
    code = "already_assigned"
    status_code = 409

    def __init__(self, job_id: str, mechanic_id: Optional[str] = None):
        super().__init__(f"Job {job_id} already has an accepted bid", job_id=job_id)
        self.job_id = job_id
        self.mechanic_id = mechanic_id


class PaymentError(MarketError):
    """Escrow hold/release gave up after its retry budget.

    `status` is the change order's last known good status, which is left
    untouched in the store.
    """

    code = "payment_error"
    status_code = 502

    def __init__(self, message: str, status: Optional[str] = None, retryable: bool = True):
        super().__init__(message, status=status, retryable=retryable)
        self.status = status
        self.retryable = retryable


class NotFound(MarketError):
    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} {ident} not found", kind=kind, id=ident)
        self.kind = kind
        self.ident = ident


class ConcurrentUpdate(MarketError):
    """A compare-and-swap commit lost to a concurrent writer; nothing was written."""

    code = "concurrent_update"
    status_code = 409

    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} {ident} was modified concurrently", kind=kind, id=ident)
        self.kind = kind
        self.ident = ident
