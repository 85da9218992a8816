# jobmarket/policy.py
"""Job lifecycle state machine.

Both tables below are closed: any (status, action) or (status, event) pair
missing from them is illegal. Adding a status means adding it to
``JobStatus`` and to these two tables, nowhere else.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import IllegalTransition
from .models import Job, JobAction, JobEvent, JobStatus, TimelineEntry, utcnow

S = JobStatus

ACTION_RULES: Dict[JobAction, FrozenSet[JobStatus]] = {
    JobAction.VIEW: frozenset(JobStatus),
    JobAction.MESSAGE: frozenset(JobStatus),
    JobAction.SCHEDULE: frozenset({S.OPEN}),
    JobAction.RATE: frozenset({S.COMPLETED}),
    JobAction.CANCEL: frozenset({S.OPEN, S.SCHEDULED}),
    JobAction.REBOOK: frozenset({S.COMPLETED}),
}

TRANSITIONS: Dict[Tuple[JobStatus, JobEvent], JobStatus] = {
    (S.OPEN, JobEvent.BID_ACCEPTED): S.SCHEDULED,
    (S.SCHEDULED, JobEvent.SCHEDULE_CONFIRMED): S.CONFIRMED,
    (S.SCHEDULED, JobEvent.SCHEDULE_DECLINED): S.OPEN,
    (S.CONFIRMED, JobEvent.WORK_STARTED): S.IN_PROGRESS,
    (S.IN_PROGRESS, JobEvent.WORK_COMPLETED): S.COMPLETED,
    (S.OPEN, JobEvent.CANCELLED): S.CANCELLED,
    (S.SCHEDULED, JobEvent.CANCELLED): S.CANCELLED,
    (S.IN_PROGRESS, JobEvent.PUT_ON_HOLD): S.ON_HOLD,
    (S.ON_HOLD, JobEvent.RESUMED): S.IN_PROGRESS,
}

# Lower sorts first in job lists.
STATUS_PRIORITY: Dict[JobStatus, int] = {
    S.IN_PROGRESS: 1,
    S.SCHEDULED: 2,
    S.CONFIRMED: 3,
    S.ON_HOLD: 4,
    S.OPEN: 5,
    S.COMPLETED: 6,
    S.CANCELLED: 7,
}

# statuses in which a job has no assigned mechanic
UNASSIGNED = frozenset({S.OPEN, S.CANCELLED})


def can_perform_action(status: JobStatus, action: JobAction) -> bool:
    try:
        status, action = JobStatus(status), JobAction(action)
    except ValueError:
        return False
    return status in ACTION_RULES[action]


def available_actions(status: JobStatus) -> List[JobAction]:
    return [action for action in JobAction if can_perform_action(status, action)]


def status_priority(status: JobStatus) -> int:
    return STATUS_PRIORITY.get(JobStatus(status), len(STATUS_PRIORITY) + 1)


def next_status(status: JobStatus, event: JobEvent) -> Optional[JobStatus]:
    return TRANSITIONS.get((JobStatus(status), JobEvent(event)))


def transition(
    job: Job,
    event: JobEvent,
    at: Optional[datetime] = None,
    actor_id: Optional[str] = None,
    note: Optional[str] = None,
    mechanic_id: Optional[str] = None,
) -> Job:
    """Return a new Job moved along `event`, with one timeline entry appended.

    The input job is never modified. `mechanic_id` is required for
    BID_ACCEPTED; moving into an unassigned status clears it.
    """
    target = next_status(job.status, event)
    if target is None:
        raise IllegalTransition(JobStatus(job.status).value, JobEvent(event).value)

    if event == JobEvent.BID_ACCEPTED:
        if not mechanic_id:
            raise ValueError("bid acceptance needs the winning mechanic_id")
        assigned = mechanic_id
    elif target in UNASSIGNED:
        assigned = None
    else:
        assigned = job.mechanic_id

    entry = TimelineEntry(
        at=at or utcnow(),
        event=event,
        from_status=job.status,
        to_status=target,
        actor_id=actor_id,
        note=note,
    )
    return job.model_copy(update={
        "status": target,
        "mechanic_id": assigned,
        "timeline": [*job.timeline, entry],
    })
