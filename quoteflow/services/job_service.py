# quoteflow/services/job_service.py
from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..db import unit_of_work
from ..domain.audit import audit_write
from ..domain.events import NotificationType, emit_notification
from ..domain.job_lifecycle import (
    RESCHEDULE_STATUSES,
    RESUMABLE,
    FinalPaymentStatus,
    JobStatus,
    assert_area_progress_allowed,
    assert_job_transition,
    initial_area_progress,
    parse_area_status,
    parse_job_status,
    progress_summary,
)
from ..domain.pricing import money
from ..errors import ConcurrentModificationError, InvalidJobStateError, NotFoundError, ValidationError
from ..models import Job, Quote
from .numbering import insert_job_with_number

log = logging.getLogger("quoteflow.jobs")

# -----------------------------------------------------------------------------
# Job state machine
# -----------------------------------------------------------------------------
# Every status write goes through apply_job_transition: table check, one
# audit entry, flush. The flush runs the version check, so a job changed by a
# payment callback since it was loaded is rejected, not overwritten.
# -----------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.utcnow()


def _loads(s: Optional[str], default: Any) -> Any:
    if not s:
        return default
    return json.loads(s)


def _dumps(v: Any) -> str:
    return json.dumps(v, sort_keys=True, default=str)


class CustomerSelection(BaseModel):
    model_config = ConfigDict(frozen=True)

    area_id: str
    product: str
    color: str = ""
    sheen: str = ""
    notes: Optional[str] = None


def job_snapshot(job: Job) -> dict[str, Any]:
    return {
        "status": job.status,
        "total_amount": str(job.total_amount),
        "deposit_amount": str(job.deposit_amount),
        "deposit_paid": bool(job.deposit_paid),
        "balance_remaining": str(job.balance_remaining),
        "final_payment_status": job.final_payment_status,
        "scheduled_start_date": job.scheduled_start_date.isoformat() if job.scheduled_start_date else None,
        "scheduled_end_date": job.scheduled_end_date.isoformat() if job.scheduled_end_date else None,
        "portal_open": bool(job.portal_open),
    }


def job_to_dict(job: Job) -> dict[str, Any]:
    progress = _loads(job.area_progress_json, {})
    return {
        "id": job.id,
        "tenant_id": job.tenant_id,
        "quote_id": job.quote_id,
        "job_number": job.job_number,
        **job_snapshot(job),
        "held_from_status": job.held_from_status,
        "hold_reason": job.hold_reason,
        "currency": job.currency,
        "crew": _loads(job.crew_json, []),
        "area_progress": progress,
        "progress_summary": progress_summary(progress),
        "completion_notes": job.completion_notes,
        "portal_expires_at": job.portal_expires_at.isoformat() if job.portal_expires_at else None,
        "customer_selections": _loads(job.customer_selections_json, []),
        "customer_selections_complete": bool(job.customer_selections_complete),
        "version": job.version,
    }


# ---- Loading ----


def get_job(db: Session, *, tenant_id: int, job_id: int, for_update: bool = False) -> Job:
    q = select(Job).where(Job.id == int(job_id), Job.tenant_id == int(tenant_id))
    if for_update:
        q = q.with_for_update()
    job = db.scalar(q.execution_options(populate_existing=True))
    if job is None:
        raise NotFoundError("job", job_id)
    return job


def get_job_for_quote(db: Session, *, tenant_id: int, quote_id: int) -> Optional[Job]:
    return db.scalar(
        select(Job)
        .where(Job.quote_id == int(quote_id), Job.tenant_id == int(tenant_id))
        .execution_options(populate_existing=True)
    )


def list_jobs(db: Session, *, tenant_id: int, status: Optional[str] = None, limit: int = 100) -> list[Job]:
    q = select(Job).where(Job.tenant_id == int(tenant_id))
    if status:
        q = q.where(Job.status == parse_job_status(status).value)
    return list(db.scalars(q.order_by(Job.id.desc()).limit(max(1, min(int(limit), 500)))).all())


# ---- Core transition ----


def apply_job_transition(
    db: Session,
    job: Job,
    target: JobStatus,
    *,
    actor_user_id: Optional[int],
    action: str,
    by_reconciler: bool = False,
    resume_to: Optional[JobStatus] = None,
    metadata: Optional[dict[str, Any]] = None,
    before: Optional[dict[str, Any]] = None,
) -> Job:
    """
    Check the transition table against the job's current status, apply it,
    write one audit entry. Does not commit.
    """
    current = parse_job_status(job.status)
    assert_job_transition(current, target, by_reconciler=by_reconciler, resume_to=resume_to)

    before = before if before is not None else job_snapshot(job)
    job.status = target.value
    job.updated_at = _now()
    db.add(job)

    try:
        db.flush()
    except StaleDataError as e:
        raise ConcurrentModificationError("job", job.id) from e

    audit_write(
        db,
        tenant_id=job.tenant_id,
        actor_user_id=actor_user_id,
        action=action,
        entity_type="job",
        entity_id=job.id,
        before=before,
        after=job_snapshot(job),
        metadata={"from": current.value, "to": target.value, **(metadata or {})},
    )
    log.info(
        "job_transition",
        extra={"event": action, "tenant_id": job.tenant_id, "job_id": job.id, "user_id": actor_user_id},
    )
    return job


def _flush_update(db: Session, job: Job) -> None:
    job.updated_at = _now()
    db.add(job)
    try:
        db.flush()
    except StaleDataError as e:
        raise ConcurrentModificationError("job", job.id) from e


# ---- Creation (called from quote acceptance / deposit reconciliation) ----


def ensure_job_for_quote(db: Session, quote: Quote, *, actor_user_id: Optional[int]) -> Job:
    """
    One job per accepted quote. Returns the existing job when there is one.
    Does not commit.
    """
    existing = get_job_for_quote(db, tenant_id=quote.tenant_id, quote_id=quote.id)
    if existing is not None:
        return existing

    areas = _loads(quote.areas_json, [])
    now = _now()

    def build(number: str) -> Job:
        return Job(
            tenant_id=quote.tenant_id,
            quote_id=quote.id,
            job_number=number,
            status=JobStatus.ACCEPTED.value,
            total_amount=money(quote.total),
            deposit_amount=money(quote.deposit_amount),
            deposit_paid=False,
            balance_remaining=money(quote.total),
            final_payment_status=FinalPaymentStatus.NONE.value,
            currency=quote.currency,
            area_progress_json=_dumps(initial_area_progress(a.get("id") for a in areas)),
            created_at=now,
            updated_at=now,
        )

    job = insert_job_with_number(db, tenant_id=quote.tenant_id, build=build)
    audit_write(
        db,
        tenant_id=job.tenant_id,
        actor_user_id=actor_user_id,
        action="job_created",
        entity_type="job",
        entity_id=job.id,
        after=job_snapshot(job),
        metadata={"quote_id": quote.id, "job_number": job.job_number, "quote_number": quote.quote_number},
    )
    return job


# ---- Scheduling ----


def _check_dates(start: Optional[date], end: Optional[date]) -> None:
    if start is None:
        raise ValidationError("scheduled_start_date", "required")
    if end is not None and start > end:
        raise ValidationError("scheduled_end_date", "must be on or after scheduled_start_date")


def schedule_job(
    db: Session,
    *,
    tenant_id: int,
    job_id: int,
    start_date: Optional[date],
    end_date: Optional[date] = None,
    crew: Optional[Sequence[str]] = None,
    actor_user_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> Job:
    """
    deposit_paid -> scheduled, or a reschedule (same status) while scheduled
    or in progress. A reschedule needs a reason; it is recorded in the audit log.
    """
    _check_dates(start_date, end_date)

    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        current = parse_job_status(job.status)
        before = job_snapshot(job)

        job.scheduled_start_date = start_date
        job.scheduled_end_date = end_date
        if crew is not None:
            job.crew_json = _dumps([str(c) for c in crew])

        if current in RESCHEDULE_STATUSES:
            if not (reason or "").strip():
                raise ValidationError("reason", "required when rescheduling")
            _flush_update(db, job)
            audit_write(
                db,
                tenant_id=job.tenant_id,
                actor_user_id=actor_user_id,
                action="job_rescheduled",
                entity_type="job",
                entity_id=job.id,
                before=before,
                after=job_snapshot(job),
                metadata={"reason": reason.strip()},
            )
        else:
            apply_job_transition(
                db,
                job,
                JobStatus.SCHEDULED,
                actor_user_id=actor_user_id,
                action="job_scheduled",
                before=before,
            )

        emit_notification(
            db,
            tenant_id=job.tenant_id,
            event_type=NotificationType.JOB_SCHEDULED,
            entity_type="job",
            entity_id=job.id,
            payload={
                "job_number": job.job_number,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat() if end_date else None,
                "rescheduled": current in RESCHEDULE_STATUSES,
            },
        )
    return job


def start_job(db: Session, *, tenant_id: int, job_id: int, actor_user_id: Optional[int] = None) -> Job:
    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        job.actual_start_at = _now()
        apply_job_transition(db, job, JobStatus.IN_PROGRESS, actor_user_id=actor_user_id, action="job_started")
    return job


# ---- Progress ----


def update_area_progress(
    db: Session,
    *,
    tenant_id: int,
    job_id: int,
    area_id: str,
    status: str,
    actor_user_id: Optional[int] = None,
) -> Job:
    new_status = parse_area_status(status)

    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        assert_area_progress_allowed(parse_job_status(job.status))

        progress: dict[str, str] = _loads(job.area_progress_json, {})
        key = str(area_id)
        if key not in progress:
            raise ValidationError("area_id", f"area '{area_id}' is not part of job {job.job_number}")

        previous = progress[key]
        progress[key] = new_status.value
        job.area_progress_json = _dumps(progress)
        _flush_update(db, job)

        audit_write(
            db,
            tenant_id=job.tenant_id,
            actor_user_id=actor_user_id,
            action="area_progress_updated",
            entity_type="job",
            entity_id=job.id,
            before={"area_id": key, "status": previous},
            after={"area_id": key, "status": new_status.value},
            metadata=progress_summary(progress),
        )
    return job


# ---- Completion / close ----


def complete_job(
    db: Session,
    *,
    tenant_id: int,
    job_id: int,
    completion_notes: str,
    final_invoice_amount: Optional[Decimal] = None,
    actor_user_id: Optional[int] = None,
) -> Job:
    if not (completion_notes or "").strip():
        raise ValidationError("completion_notes", "required")
    if final_invoice_amount is not None and Decimal(str(final_invoice_amount)) < 0:
        raise ValidationError("final_invoice_amount", "must not be negative")

    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        before = job_snapshot(job)

        if final_invoice_amount is not None:
            job.total_amount = money(final_invoice_amount)

        balance = money(job.total_amount) - money(job.deposit_amount)
        if balance <= 0:
            job.balance_remaining = Decimal("0.00")
            job.final_payment_status = FinalPaymentStatus.NOT_REQUIRED.value
        else:
            job.balance_remaining = balance
            job.final_payment_status = FinalPaymentStatus.PENDING.value

        job.completion_notes = completion_notes.strip()
        job.completed_at = _now()

        apply_job_transition(
            db,
            job,
            JobStatus.COMPLETED,
            actor_user_id=actor_user_id,
            action="job_completed",
            before=before,
            metadata={
                "final_invoice_amount": str(final_invoice_amount) if final_invoice_amount is not None else None,
                "computed_balance": str(balance),
            },
        )
        emit_notification(
            db,
            tenant_id=job.tenant_id,
            event_type=NotificationType.JOB_COMPLETED,
            entity_type="job",
            entity_id=job.id,
            payload={
                "job_number": job.job_number,
                "balance_remaining": str(job.balance_remaining),
                "final_payment_status": job.final_payment_status,
            },
        )
    return job


def close_job(db: Session, *, tenant_id: int, job_id: int, actor_user_id: Optional[int] = None) -> Job:
    """Closes a completed job that owes nothing. Paid balances close through final-payment reconciliation."""
    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        status = parse_job_status(job.status)
        if status == JobStatus.COMPLETED and job.final_payment_status != FinalPaymentStatus.NOT_REQUIRED.value:
            raise InvalidJobStateError(status.value, "close job", "final payment is still outstanding")
        job.closed_at = _now()
        apply_job_transition(
            db,
            job,
            JobStatus.CLOSED,
            actor_user_id=actor_user_id,
            action="job_closed",
            by_reconciler=True,
        )
    return job


# ---- Side branches ----


def _side_branch(
    db: Session,
    *,
    tenant_id: int,
    job_id: int,
    target: JobStatus,
    reason: Optional[str],
    actor_user_id: Optional[int],
    action: str,
) -> Job:
    if not (reason or "").strip():
        raise ValidationError("reason", "required")

    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        current = parse_job_status(job.status)
        if current in RESUMABLE:
            job.held_from_status = current.value
        job.hold_reason = reason.strip()
        if target == JobStatus.CANCELED:
            job.canceled_at = _now()
        apply_job_transition(
            db,
            job,
            target,
            actor_user_id=actor_user_id,
            action=action,
            metadata={"reason": reason.strip()},
        )
    return job


def hold_job(db: Session, *, tenant_id: int, job_id: int, reason: str, actor_user_id: Optional[int] = None) -> Job:
    return _side_branch(
        db, tenant_id=tenant_id, job_id=job_id, target=JobStatus.ON_HOLD,
        reason=reason, actor_user_id=actor_user_id, action="job_put_on_hold",
    )


def pause_job(db: Session, *, tenant_id: int, job_id: int, reason: str, actor_user_id: Optional[int] = None) -> Job:
    return _side_branch(
        db, tenant_id=tenant_id, job_id=job_id, target=JobStatus.PAUSED,
        reason=reason, actor_user_id=actor_user_id, action="job_paused",
    )


def cancel_job(db: Session, *, tenant_id: int, job_id: int, reason: str, actor_user_id: Optional[int] = None) -> Job:
    return _side_branch(
        db, tenant_id=tenant_id, job_id=job_id, target=JobStatus.CANCELED,
        reason=reason, actor_user_id=actor_user_id, action="job_canceled",
    )


def resume_job(db: Session, *, tenant_id: int, job_id: int, actor_user_id: Optional[int] = None) -> Job:
    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        current = parse_job_status(job.status)
        if current not in (JobStatus.ON_HOLD, JobStatus.PAUSED):
            raise InvalidJobStateError(current.value, "resume job", "job is not on hold or paused")
        if not job.held_from_status:
            raise InvalidJobStateError(current.value, "resume job", "no status to return to")

        target = parse_job_status(job.held_from_status)
        job.held_from_status = None
        job.hold_reason = None
        apply_job_transition(
            db, job, target, actor_user_id=actor_user_id, action="job_resumed", resume_to=target,
        )
    return job


# ---- Customer portal selections ----


def _assert_portal_open(job: Job, operation: str) -> None:
    if not job.portal_open:
        raise InvalidJobStateError(job.status, operation, "customer portal is closed")
    if job.portal_expires_at is not None and job.portal_expires_at <= _now():
        raise InvalidJobStateError(job.status, operation, "customer portal has expired")
    if job.customer_selections_complete:
        raise InvalidJobStateError(job.status, operation, "selections were already submitted")


def _area_ids(job: Job) -> set[str]:
    return set(_loads(job.area_progress_json, {}).keys())


def save_customer_selections(
    db: Session,
    *,
    tenant_id: int,
    job_id: int,
    selections: Sequence[CustomerSelection],
    actor_user_id: Optional[int] = None,
) -> Job:
    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        _assert_portal_open(job, "save selections")

        known = _area_ids(job)
        merged: dict[str, dict[str, Any]] = {
            s["area_id"]: s for s in _loads(job.customer_selections_json, [])
        }
        for i, sel in enumerate(selections):
            if sel.area_id not in known:
                raise ValidationError(f"selections[{i}].area_id", f"unknown area '{sel.area_id}'")
            if not sel.product.strip():
                raise ValidationError(f"selections[{i}].product", "required")
            merged[sel.area_id] = sel.model_dump()

        job.customer_selections_json = _dumps(sorted(merged.values(), key=lambda s: s["area_id"]))
        _flush_update(db, job)
        audit_write(
            db,
            tenant_id=job.tenant_id,
            actor_user_id=actor_user_id,
            action="customer_selections_saved",
            category="portal",
            entity_type="job",
            entity_id=job.id,
            metadata={"areas": sorted(s.area_id for s in selections)},
        )
    return job


def submit_customer_selections(
    db: Session,
    *,
    tenant_id: int,
    job_id: int,
    actor_user_id: Optional[int] = None,
) -> Job:
    with unit_of_work(db, entity="job", entity_id=job_id):
        job = get_job(db, tenant_id=tenant_id, job_id=job_id)
        _assert_portal_open(job, "submit selections")

        chosen = {s["area_id"] for s in _loads(job.customer_selections_json, [])}
        missing = sorted(_area_ids(job) - chosen)
        if missing:
            raise ValidationError("selections", f"missing selections for areas: {', '.join(missing)}")

        now = _now()
        job.customer_selections_complete = True
        job.customer_selections_submitted_at = now
        job.portal_open = False
        _flush_update(db, job)

        quote = db.get(Quote, job.quote_id)
        if quote is not None and quote.portal_open:
            quote.portal_open = False
            quote.updated_at = now
            db.add(quote)

        audit_write(
            db,
            tenant_id=job.tenant_id,
            actor_user_id=actor_user_id,
            action="customer_selections_submitted",
            category="portal",
            entity_type="job",
            entity_id=job.id,
            after={"customer_selections_complete": True, "portal_open": False},
        )
    return job


def area_progress_summary(db: Session, *, tenant_id: int, job_id: int) -> dict[str, Any]:
    job = get_job(db, tenant_id=tenant_id, job_id=job_id)
    progress = _loads(job.area_progress_json, {})
    return {"job_id": job.id, "area_progress": progress, **progress_summary(progress)}

