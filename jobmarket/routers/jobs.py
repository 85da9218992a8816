# routers/jobs.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..auth import get_user
from ..deps import Services, get_services, require_customer, require_mechanic, require_participant
from ..models import ActionsOut, Job, JobIn, JobStatus, TransitionIn
from .. import policy

router = APIRouter(prefix="/jobs", tags=["jobs"])


# ──────────────────────────────────────────────────────────────────────────────
# POST /jobs: customer posts a job (status open)
# ──────────────────────────────────────────────────────────────────────────────
@router.post("", response_model=Job)
def create_job(payload: JobIn, user=Depends(get_user), services: Services = Depends(get_services)):
    return services.jobs.create_job(
        customer_id=user["id"],
        line_items=payload.line_items,
        **payload.model_dump(exclude={"line_items"}),
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /jobs: my jobs (as customer or mechanic), or the open-job feed
# ──────────────────────────────────────────────────────────────────────────────
@router.get("", response_model=List[Job])
def list_jobs(
    status: Optional[JobStatus] = Query(default=None),
    scope: str = Query(default="mine", pattern="^(mine|open)$"),
    user=Depends(get_user),
    services: Services = Depends(get_services),
):
    if scope == "open":
        return services.jobs.list_jobs(status=JobStatus.OPEN)
    as_customer = services.jobs.list_jobs(customer_id=user["id"], status=status)
    as_mechanic = services.jobs.list_jobs(mechanic_id=user["id"], status=status)
    seen = {j.id for j in as_customer}
    merged = as_customer + [j for j in as_mechanic if j.id not in seen]
    return sorted(merged, key=lambda j: policy.status_priority(j.status))


@router.get("/{job_id}", response_model=Job)
def get_job(job_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    job = services.jobs.get_job(job_id)
    if job.status == JobStatus.OPEN:
        return job
    return require_participant(job, user)


@router.get("/{job_id}/actions", response_model=ActionsOut)
def job_actions(job_id: str, user=Depends(get_user), services: Services = Depends(get_services)):
    job = require_participant(services.jobs.get_job(job_id), user)
    return ActionsOut(status=job.status, actions=policy.available_actions(job.status))


# ──────────────────────────────────────────────────────────────────────────────
# Lifecycle: assigned mechanic drives the work, customer may cancel
# ──────────────────────────────────────────────────────────────────────────────
@router.post("/{job_id}/confirm", response_model=Job)
def confirm_schedule(job_id: str, body: TransitionIn = TransitionIn(), user=Depends(get_user), services: Services = Depends(get_services)):
    require_mechanic(services.jobs.get_job(job_id), user)
    return services.jobs.confirm_schedule(job_id, actor_id=user["id"], note=body.note)


@router.post("/{job_id}/decline", response_model=Job)
def decline_schedule(job_id: str, body: TransitionIn = TransitionIn(), user=Depends(get_user), services: Services = Depends(get_services)):
    require_mechanic(services.jobs.get_job(job_id), user)
    return services.jobs.decline_schedule(job_id, actor_id=user["id"], note=body.note)


@router.post("/{job_id}/start", response_model=Job)
def start_work(job_id: str, body: TransitionIn = TransitionIn(), user=Depends(get_user), services: Services = Depends(get_services)):
    require_mechanic(services.jobs.get_job(job_id), user)
    return services.jobs.start_work(job_id, actor_id=user["id"], note=body.note)


@router.post("/{job_id}/complete", response_model=Job)
def complete_job(job_id: str, body: TransitionIn = TransitionIn(), user=Depends(get_user), services: Services = Depends(get_services)):
    require_mechanic(services.jobs.get_job(job_id), user)
    return services.jobs.complete_job(job_id, actor_id=user["id"], note=body.note)


@router.post("/{job_id}/hold", response_model=Job)
def put_on_hold(job_id: str, body: TransitionIn = TransitionIn(), user=Depends(get_user), services: Services = Depends(get_services)):
    require_participant(services.jobs.get_job(job_id), user)
    return services.jobs.put_on_hold(job_id, actor_id=user["id"], note=body.note)


@router.post("/{job_id}/resume", response_model=Job)
def resume(job_id: str, body: TransitionIn = TransitionIn(), user=Depends(get_user), services: Services = Depends(get_services)):
    require_participant(services.jobs.get_job(job_id), user)
    return services.jobs.resume(job_id, actor_id=user["id"], note=body.note)


@router.post("/{job_id}/cancel", response_model=Job)
def cancel_job(job_id: str, body: TransitionIn = TransitionIn(), user=Depends(get_user), services: Services = Depends(get_services)):
    require_customer(services.jobs.get_job(job_id), user)
    return services.jobs.cancel_job(job_id, actor_id=user["id"], reason=body.note)
