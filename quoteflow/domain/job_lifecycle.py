# quoteflow/domain/job_lifecycle.py
from __future__ import annotations

from enum import Enum
from typing import Iterable, Mapping, Optional

from ..errors import InvalidJobStateError, InvalidTransitionError, ValidationError


class JobStatus(str, Enum):
    ACCEPTED = "accepted"
    DEPOSIT_PAID = "deposit_paid"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"
    ON_HOLD = "on_hold"
    PAUSED = "paused"
    CANCELED = "canceled"


class AreaStatus(str, Enum):
    NOT_STARTED = "not_started"
    PREPPED = "prepped"
    IN_PROGRESS = "in_progress"
    TOUCH_UPS = "touch_ups"
    COMPLETED = "completed"


class FinalPaymentStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PAID = "paid"
    NOT_REQUIRED = "not_required"


SIDE_BRANCHES = frozenset({JobStatus.ON_HOLD, JobStatus.PAUSED, JobStatus.CANCELED})
TERMINAL = frozenset({JobStatus.CLOSED, JobStatus.CANCELED})

# where a held/paused job may come back to
RESUMABLE = frozenset({JobStatus.ACCEPTED, JobStatus.DEPOSIT_PAID, JobStatus.SCHEDULED, JobStatus.IN_PROGRESS})

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.ACCEPTED: frozenset({JobStatus.DEPOSIT_PAID}) | SIDE_BRANCHES,
    JobStatus.DEPOSIT_PAID: frozenset({JobStatus.SCHEDULED}) | SIDE_BRANCHES,
    JobStatus.SCHEDULED: frozenset({JobStatus.IN_PROGRESS}) | SIDE_BRANCHES,
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED}) | SIDE_BRANCHES,
    JobStatus.COMPLETED: frozenset({JobStatus.CLOSED}),
    JobStatus.ON_HOLD: RESUMABLE | frozenset({JobStatus.PAUSED, JobStatus.CANCELED}),
    JobStatus.PAUSED: RESUMABLE | frozenset({JobStatus.ON_HOLD, JobStatus.CANCELED}),
    JobStatus.CLOSED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}

# edges only a payment reconciler may drive
RECONCILER_ONLY = frozenset(
    {
        (JobStatus.ACCEPTED, JobStatus.DEPOSIT_PAID),
        (JobStatus.COMPLETED, JobStatus.CLOSED),
    }
)

# leaving hold/pause for the main line only happens through resume, back to held_from
HELD = frozenset({JobStatus.ON_HOLD, JobStatus.PAUSED})

AREA_PROGRESS_STATUSES = frozenset({JobStatus.SCHEDULED, JobStatus.IN_PROGRESS})
RESCHEDULE_STATUSES = frozenset({JobStatus.SCHEDULED, JobStatus.IN_PROGRESS})


def parse_job_status(raw: str) -> JobStatus:
    try:
        return JobStatus((raw or "").strip().lower())
    except ValueError:
        raise InvalidJobStateError(str(raw), "read status", "unknown status") from None


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in JOB_TRANSITIONS.get(current, frozenset())


def assert_job_transition(
    current: JobStatus,
    target: JobStatus,
    *,
    by_reconciler: bool = False,
    resume_to: Optional[JobStatus] = None,
) -> None:
    """
    resume_to is the recorded held_from status; only a resume passes it, and
    only that status is reachable from on_hold/paused on the main line.
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value, entity="job")
    if (current, target) in RECONCILER_ONLY and not by_reconciler:
        raise InvalidTransitionError(current.value, target.value, entity="job")
    if current in HELD and target in RESUMABLE and target != resume_to:
        raise InvalidTransitionError(current.value, target.value, entity="job")


def assert_area_progress_allowed(current: JobStatus) -> None:
    if current not in AREA_PROGRESS_STATUSES:
        raise InvalidJobStateError(current.value, "update area progress", "job must be scheduled or in progress")


def parse_area_status(raw: str) -> AreaStatus:
    try:
        return AreaStatus((raw or "").strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in AreaStatus)
        raise ValidationError("status", f"must be one of {allowed}") from None


def initial_area_progress(area_ids: Iterable[str]) -> dict[str, str]:
    return {str(a): AreaStatus.NOT_STARTED.value for a in area_ids}


def progress_summary(progress: Mapping[str, str]) -> dict:
    counts = {s.value: 0 for s in AreaStatus}
    for v in progress.values():
        if v in counts:
            counts[v] += 1
    total = len(progress)
    done = counts[AreaStatus.COMPLETED.value]
    return {
        "total": total,
        "counts": counts,
        "pct_completed": round(100.0 * done / total, 1) if total else 0.0,
    }
