# jobmarket/payments.py
import os
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query

from .auth import get_user
from .escrow import Hold, PaymentFailure, PaymentGateway, PaymentTimeout
from .line_items import to_cents
from .models import CustomerIn, PaymentIntentConfirm, PaymentIntentIn, PaymentMethodAttach

# Stripe config from env
stripe.api_key = os.environ.get("STRIPE_SECRET_KEY")

logger = logging.getLogger("uvicorn")

CURRENCY = os.environ.get("STRIPE_CURRENCY", "usd")


@contextmanager
def stripe_errors():
    """Translate Stripe SDK errors into the escrow retry contract."""
    try:
        yield
    except stripe.APIConnectionError as e:
        raise PaymentTimeout(str(e)) from e
    except (stripe.RateLimitError, stripe.APIError) as e:
        raise PaymentFailure(str(e), retryable=True) from e
    except stripe.StripeError as e:
        raise PaymentFailure(getattr(e, "user_message", None) or str(e), retryable=False) from e


def _hold(intent: Any) -> Hold:
    return Hold(intent_id=intent["id"], status=intent["status"], amount_cents=intent.get("amount"))


class StripeGateway(PaymentGateway):
    """Stripe-backed payment collaborator.

    Escrow holds are PaymentIntents with manual capture; release is the
    capture. Every mutating call carries an idempotency key so a retry
    after a timeout cannot double-charge.
    """

    # ---- customers / intents / payment methods (client passthrough) ----------
    def create_customer(self, email: str, name: Optional[str] = None, phone: Optional[str] = None) -> Dict[str, Any]:
        with stripe_errors():
            customer = stripe.Customer.create(email=email, name=name, phone=phone)
        return {"id": customer["id"], "email": customer.get("email"), "name": customer.get("name")}

    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        with stripe_errors():
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
            )
        return {
            "id": intent["id"],
            "amount": intent["amount"],
            "currency": intent["currency"],
            "status": intent["status"],
            "client_secret": intent["client_secret"],
        }

    def confirm_payment_intent(self, intent_id: str, payment_method_id: Optional[str] = None) -> Dict[str, Any]:
        with stripe_errors():
            intent = stripe.PaymentIntent.confirm(intent_id, payment_method=payment_method_id)
        return {"id": intent["id"], "status": intent["status"], "payment_method": intent.get("payment_method")}

    def list_payment_methods(self, customer_id: str, kind: str = "card") -> List[Dict[str, Any]]:
        with stripe_errors():
            methods = stripe.PaymentMethod.list(customer=customer_id, type=kind)
        return list(methods["data"])

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> Dict[str, Any]:
        with stripe_errors():
            method = stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
        return {"id": method["id"], "customer": method.get("customer")}

    def detach_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        with stripe_errors():
            method = stripe.PaymentMethod.detach(payment_method_id)
        return {"id": method["id"], "customer": method.get("customer")}

    # ---- escrow --------------------------------------------------------------
    def hold(self, idempotency_key, amount_cents, currency, customer_id, payment_method_id, metadata) -> Hold:
        with stripe_errors():
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                payment_method_types=["card"],
                capture_method="manual",
                confirm=bool(payment_method_id),
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        return _hold(intent)

    def find_hold(self, change_order_id: str) -> Optional[Hold]:
        with stripe_errors():
            found = stripe.PaymentIntent.search(query=f"metadata['change_order_id']:'{change_order_id}'")
        data = found["data"]
        return _hold(data[0]) if data else None

    def capture(self, intent_id: str, idempotency_key: str) -> Hold:
        with stripe_errors():
            intent = stripe.PaymentIntent.capture(intent_id, idempotency_key=idempotency_key)
        return _hold(intent)

    def retrieve(self, intent_id: str) -> Hold:
        with stripe_errors():
            intent = stripe.PaymentIntent.retrieve(intent_id)
        return _hold(intent)


_gateway: Optional[StripeGateway] = None


def get_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway


# ──────────────────────────────────────────────────────────────────────────────
# Payment passthrough endpoints (auth required)
# ──────────────────────────────────────────────────────────────────────────────
router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/ping")
async def ping():
    return {"ok": True, "has_secret_key": bool(stripe.api_key)}


@router.post("/customers")
def create_customer(body: CustomerIn, user=Depends(get_user), gateway: StripeGateway = Depends(get_gateway)):
    try:
        return gateway.create_customer(body.email, body.name, body.phone)
    except (PaymentFailure, PaymentTimeout) as e:
        logger.error(f"Stripe customer creation failed for user {user['id']}: {e}")
        raise HTTPException(status_code=400, detail="Failed to create customer")


@router.post("/payment-intents")
def create_payment_intent(body: PaymentIntentIn, user=Depends(get_user), gateway: StripeGateway = Depends(get_gateway)):
    try:
        intent = gateway.create_payment_intent(
            to_cents(body.amount), body.currency, body.customer, body.payment_method,
            {**body.metadata, "user_id": user["id"]},
        )
    except (PaymentFailure, PaymentTimeout) as e:
        logger.error(f"Stripe payment intent create failed: {e}")
        raise HTTPException(status_code=400, detail="Failed to process payment intent")
    logger.info(f"Created payment intent {intent['id']} for user {user['id']}")
    return intent


@router.put("/payment-intents")
def confirm_payment_intent(body: PaymentIntentConfirm, user=Depends(get_user), gateway: StripeGateway = Depends(get_gateway)):
    try:
        return gateway.confirm_payment_intent(body.payment_intent_id, body.payment_method_id)
    except (PaymentFailure, PaymentTimeout) as e:
        logger.error(f"Stripe payment intent confirm failed for {body.payment_intent_id}: {e}")
        raise HTTPException(status_code=400, detail="Failed to confirm payment intent")


@router.get("/payment-methods")
def list_payment_methods(customer_id: str = Query(...), user=Depends(get_user), gateway: StripeGateway = Depends(get_gateway)):
    try:
        return gateway.list_payment_methods(customer_id)
    except (PaymentFailure, PaymentTimeout) as e:
        logger.error(f"Stripe payment method list failed: {e}")
        raise HTTPException(status_code=400, detail="Failed to list payment methods")


@router.post("/payment-methods")
def attach_payment_method(body: PaymentMethodAttach, user=Depends(get_user), gateway: StripeGateway = Depends(get_gateway)):
    try:
        return gateway.attach_payment_method(body.payment_method_id, body.customer_id)
    except (PaymentFailure, PaymentTimeout) as e:
        logger.error(f"Stripe payment method attach failed: {e}")
        raise HTTPException(status_code=400, detail="Failed to attach payment method")


@router.delete("/payment-methods")
def detach_payment_method(payment_method_id: str = Query(...), user=Depends(get_user), gateway: StripeGateway = Depends(get_gateway)):
    try:
        return gateway.detach_payment_method(payment_method_id)
    except (PaymentFailure, PaymentTimeout) as e:
        logger.error(f"Stripe payment method detach failed: {e}")
        raise HTTPException(status_code=400, detail="Failed to detach payment method")
