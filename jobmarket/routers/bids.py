# routers/bids.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..auth import get_user
from ..deps import Services, get_services, require_customer
from ..models import Bid, BidIn, Job

router = APIRouter(tags=["bids"])


@router.post("/jobs/{job_id}/bids", response_model=Bid)
def submit_bid(job_id: str, payload: BidIn, user=Depends(get_user), services: Services = Depends(get_services)):
    return services.bids.submit_bid(
        job_id, user["id"], payload.amount, payload.message, payload.estimated_duration,
    )


@router.get("/jobs/{job_id}/bids", response_model=List[Bid])
def list_bids(job_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    job = services.jobs.get_job(job_id)
    bids = services.bids.list_for_job(job_id)
    if job.customer_id == user["id"]:
        return bids
    # mechanics only see their own offers
    return [b for b in bids if b.mechanic_id == user["id"]]


@router.post("/jobs/{job_id}/bids/{bid_id}/accept", response_model=Job)
def accept_bid(job_id: str, bid_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    require_customer(services.jobs.get_job(job_id), user)
    return services.bids.accept_bid(job_id, bid_id, actor_id=user["id"])


@router.post("/bids/{bid_id}/withdraw", response_model=Bid)
def withdraw_bid(bid_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    bid = services.bids.get(bid_id)
    if bid.mechanic_id != user["id"]:
        raise HTTPException(status_code=404, detail="Bid not found")
    return services.bids.withdraw_bid(bid_id)
