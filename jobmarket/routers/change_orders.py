# routers/change_orders.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..auth import get_user
from ..deps import Services, get_services, require_customer, require_mechanic, require_participant
from ..models import (
    ChangeOrder,
    ChangeOrderIn,
    ChangeOrderTotals,
    DecisionIn,
    JobStatus,
    LineItemIn,
    LineItemUpdate,
)

router = APIRouter(tags=["change-orders"])


@router.post("/jobs/{job_id}/change-orders", response_model=ChangeOrder)
def propose_change_order(job_id: str, payload: ChangeOrderIn, user=Depends(get_user), services: Services = Depends(get_services)):
    require_mechanic(services.jobs.get_job(job_id), user)
    return services.change_orders.propose_change_order(
        job_id,
        payload.title,
        payload.description,
        payload.line_items,
        urgency=payload.urgency,
        expires_at=payload.expires_at,
    )


@router.get("/jobs/{job_id}/change-orders", response_model=List[ChangeOrder])
def list_change_orders(job_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    require_participant(services.jobs.get_job(job_id), user)
    return services.change_orders.list_for_job(job_id)


@router.post("/change-orders/sweep", response_model=List[ChangeOrder])
def sweep_expired(services: Services = Depends(get_services), user=Depends(get_user)):
    return services.change_orders.sweep_expired()


@router.get("/change-orders/{change_order_id}", response_model=ChangeOrder)
def get_change_order(change_order_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    require_participant(services.jobs.get_job(order.job_id), user)
    return order


@router.get("/change-orders/{change_order_id}/totals", response_model=ChangeOrderTotals)
def change_order_totals(change_order_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    require_participant(services.jobs.get_job(order.job_id), user)
    return services.change_orders.totals(change_order_id)


# ──────────────────────────────────────────────────────────────────────────────
# Line items: the assigned mechanic edits them while the order is pending
# ──────────────────────────────────────────────────────────────────────────────
@router.post("/change-orders/{change_order_id}/line-items", response_model=ChangeOrder)
def add_line_item(change_order_id: str, payload: LineItemIn, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    require_mechanic(services.jobs.get_job(order.job_id), user)
    return services.change_orders.add_line_item(change_order_id, payload)


@router.patch("/change-orders/{change_order_id}/line-items/{item_id}", response_model=ChangeOrder)
def update_line_item(change_order_id: str, item_id: str, payload: LineItemUpdate, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    require_mechanic(services.jobs.get_job(order.job_id), user)
    return services.change_orders.update_line_item(change_order_id, item_id, **payload.model_dump(exclude_unset=True))


@router.delete("/change-orders/{change_order_id}/line-items/{item_id}", response_model=ChangeOrder)
def remove_line_item(change_order_id: str, item_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    require_mechanic(services.jobs.get_job(order.job_id), user)
    return services.change_orders.remove_line_item(change_order_id, item_id)


# ──────────────────────────────────────────────────────────────────────────────
# Decisions and money
# ──────────────────────────────────────────────────────────────────────────────
@router.post("/change-orders/{change_order_id}/respond", response_model=ChangeOrder)
def respond(change_order_id: str, body: DecisionIn, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    require_customer(services.jobs.get_job(order.job_id), user)
    return services.change_orders.respond(change_order_id, body.decision)


@router.post("/change-orders/{change_order_id}/cancel", response_model=ChangeOrder)
def cancel_change_order(change_order_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    require_mechanic(services.jobs.get_job(order.job_id), user)
    return services.change_orders.cancel(change_order_id)


@router.post("/change-orders/{change_order_id}/secure-escrow", response_model=ChangeOrder)
def secure_escrow(change_order_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    require_customer(services.jobs.get_job(order.job_id), user)
    return services.change_orders.secure_escrow(change_order_id)


@router.post("/change-orders/{change_order_id}/release", response_model=ChangeOrder)
def release(change_order_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    order = services.change_orders.get(change_order_id)
    job = require_participant(services.jobs.get_job(order.job_id), user)
    # the customer may release at any time; the mechanic only retries after completion
    if user["id"] != job.customer_id and job.status != JobStatus.COMPLETED:
        raise HTTPException(status_code=403, detail="Funds are released when the job is completed")
    return services.change_orders.release(change_order_id)
