# quoteflow/services/portal_lock_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import unit_of_work
from ..domain.events import NotificationType, emit_notification
from ..domain.job_lifecycle import JobStatus
from ..errors import ConcurrentModificationError
from ..models import Job, Quote
from .job_service import apply_job_transition, get_job, job_snapshot

log = logging.getLogger("quoteflow.portal_lock")

LOCK_REASON = "customer selections not submitted before the portal expired"


def _now() -> datetime:
    return datetime.utcnow()


@dataclass(frozen=True)
class PortalLockReport:
    locked: list[int]
    skipped: list[int]

    def as_dict(self) -> dict:
        return {"locked": self.locked, "skipped": self.skipped}


def _expired(job: Job, now: datetime) -> bool:
    return (
        job.portal_open
        and job.portal_expires_at is not None
        and job.portal_expires_at <= now
        and not job.customer_selections_complete
        and job.status == JobStatus.DEPOSIT_PAID.value
    )


def find_expired_portals(
    db: Session, *, now: Optional[datetime] = None, tenant_id: Optional[int] = None
) -> list[tuple[int, int]]:
    """(job_id, tenant_id) for every open portal past its expiry."""
    now = now or _now()
    q = select(Job.id, Job.tenant_id).where(
        Job.portal_open.is_(True),
        Job.portal_expires_at.is_not(None),
        Job.portal_expires_at <= now,
        Job.customer_selections_complete.is_(False),
        Job.status == JobStatus.DEPOSIT_PAID.value,
    )
    if tenant_id is not None:
        q = q.where(Job.tenant_id == int(tenant_id))
    return [(int(jid), int(tid)) for jid, tid in db.execute(q.order_by(Job.id.asc())).all()]


def lock_expired_portals(
    db: Session,
    *,
    now: Optional[datetime] = None,
    tenant_id: Optional[int] = None,
) -> PortalLockReport:
    """
    Close expired customer portals and put their jobs on hold.
    One transaction per job; a job that changed under us is skipped and
    picked up by the next sweep.
    """
    now = now or _now()
    candidates = find_expired_portals(db, now=now, tenant_id=tenant_id)
    db.rollback()

    locked: list[int] = []
    skipped: list[int] = []
    for job_id, job_tenant in candidates:
        try:
            with unit_of_work(db, entity="job", entity_id=job_id):
                job = get_job(db, tenant_id=job_tenant, job_id=job_id)
                if not _expired(job, now):
                    skipped.append(job_id)
                    continue

                before = job_snapshot(job)
                job.portal_open = False
                job.portal_locked_at = now
                job.held_from_status = job.status
                job.hold_reason = LOCK_REASON
                apply_job_transition(
                    db,
                    job,
                    JobStatus.ON_HOLD,
                    actor_user_id=None,
                    action="portal_locked",
                    before=before,
                    metadata={"portal_expires_at": job.portal_expires_at.isoformat(), "reason": LOCK_REASON},
                )

                quote = db.get(Quote, job.quote_id)
                if quote is not None and quote.portal_open:
                    quote.portal_open = False
                    quote.updated_at = now
                    db.add(quote)

                emit_notification(
                    db,
                    tenant_id=job.tenant_id,
                    event_type=NotificationType.PORTAL_LOCKED,
                    entity_type="job",
                    entity_id=job.id,
                    payload={"job_number": job.job_number, "reason": LOCK_REASON},
                )
                locked.append(job_id)
        except ConcurrentModificationError:
            log.warning("portal_lock_conflict", extra={"event": "portal_lock_conflict", "job_id": job_id})
            skipped.append(job_id)

    if locked:
        log.info("portals_locked", extra={"event": "portals_locked", "tenant_id": tenant_id})
    return PortalLockReport(locked=locked, skipped=skipped)
