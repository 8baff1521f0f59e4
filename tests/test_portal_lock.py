# tests/test_portal_lock.py
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select

from factories import accepted_quote, pay_deposit
from quoteflow.domain.audit import list_audit_entries
from quoteflow.models import NotificationEvent
from quoteflow.services.job_service import get_job, resume_job
from quoteflow.services.portal_lock_service import find_expired_portals, lock_expired_portals
from quoteflow.services.quote_service import get_quote


def _paid(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    return pay_deposit(db, tenant_id, res.quote).job


def test_open_portal_is_left_alone_before_expiry(db, tenant_id):
    job = _paid(db, tenant_id)
    report = lock_expired_portals(db, now=datetime.utcnow(), tenant_id=tenant_id)
    assert report.locked == []
    assert get_job(db, tenant_id=tenant_id, job_id=job.id).portal_open is True


def test_expired_portal_locks_and_holds_job(db, tenant_id):
    job = _paid(db, tenant_id)
    later = job.portal_expires_at + timedelta(minutes=1)

    assert find_expired_portals(db, now=later, tenant_id=tenant_id) == [(job.id, tenant_id)]
    report = lock_expired_portals(db, now=later, tenant_id=tenant_id)
    assert report.locked == [job.id]

    job = get_job(db, tenant_id=tenant_id, job_id=job.id)
    assert job.status == "on_hold"
    assert job.held_from_status == "deposit_paid"
    assert job.portal_open is False
    assert job.portal_locked_at == later
    assert get_quote(db, tenant_id=tenant_id, quote_id=job.quote_id).portal_open is False

    locked = list_audit_entries(db, tenant_id=tenant_id, entity_type="job", entity_id=str(job.id), action="portal_locked")
    assert len(locked) == 1
    events = db.scalars(
        select(NotificationEvent.event_type).where(
            NotificationEvent.tenant_id == tenant_id, NotificationEvent.event_type == "PortalLocked"
        )
    ).all()
    assert len(events) == 1

    # a second sweep finds nothing to do
    again = lock_expired_portals(db, now=later + timedelta(hours=1), tenant_id=tenant_id)
    assert again.locked == []

    job = resume_job(db, tenant_id=tenant_id, job_id=job.id)
    assert job.status == "deposit_paid"
