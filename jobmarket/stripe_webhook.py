# jobmarket/stripe_webhook.py
import os
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request

from .deps import Services, get_services
from .errors import MarketError

router = APIRouter(prefix="/stripe", tags=["stripe"])

logger = logging.getLogger("uvicorn")


def webhook_secret() -> str:
    return os.environ.get("STRIPE_WEBHOOK_SECRET", "")


@router.post("/webhook")
async def webhook(req: Request, services: Services = Depends(get_services)):
    secret = webhook_secret()
    if not secret:
        logger.error("Stripe webhook secret missing (STRIPE_WEBHOOK_SECRET)")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await req.body()
    sig = req.headers.get("stripe-signature")
    try:
        event = stripe.Webhook.construct_event(payload, sig, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Stripe webhook verify FAILED: {e}; sig_header_present={bool(sig)}")
        raise HTTPException(status_code=400, detail="signature verification failed")

    etype = event["type"]
    logger.info(f"Stripe webhook received: {etype}")

    if etype == "payment_intent.amount_capturable_updated":
        intent = event["data"]["object"]
        change_order_id = (intent.get("metadata") or {}).get("change_order_id")
        if change_order_id:
            try:
                order = services.change_orders.confirm_hold(change_order_id, intent["id"])
                logger.info(f"Hold confirmed for change order {change_order_id}: {order.status.value}")
            except MarketError as e:
                # acknowledged either way; the order keeps its current status
                logger.error(f"Hold confirmation for change order {change_order_id} skipped: {e}")

    return {"ok": True}
