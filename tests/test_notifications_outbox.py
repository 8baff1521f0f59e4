# tests/test_notifications_outbox.py
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select

from factories import make_quote, setup_tenant
from quoteflow.config import settings
from quoteflow.models import NotificationEvent
from quoteflow.services.notifications import claim_event, dispatch_pending
from quoteflow.services.quote_service import get_quote, send_quote


def _tenant_events(db, tenant_id):
    db.expire_all()
    return db.scalars(
        select(NotificationEvent).where(NotificationEvent.tenant_id == tenant_id).order_by(NotificationEvent.id)
    ).all()


def _sent_quote(db, tenant_id):
    scheme_id = setup_tenant(db, tenant_id)
    q = make_quote(db, tenant_id, scheme_id)
    return send_quote(db, tenant_id=tenant_id, quote_id=q.id)


def test_sender_failure_never_undoes_the_transition(db, tenant_id):
    q = _sent_quote(db, tenant_id)

    def broken(ev):
        raise ConnectionError("smtp down")

    report = dispatch_pending(db, broken, limit=1000)
    assert report.failed >= 1

    assert get_quote(db, tenant_id=tenant_id, quote_id=q.id).status == "sent"
    (ev,) = _tenant_events(db, tenant_id)
    assert ev.event_type == "QuoteSent"
    assert ev.delivered_at is None
    assert ev.attempts == 1
    assert "smtp down" in ev.last_error


def test_delivered_events_are_not_sent_twice(db, tenant_id):
    _sent_quote(db, tenant_id)
    seen = []

    def record(ev):
        if ev.tenant_id == tenant_id:
            seen.append(ev.event_type)

    dispatch_pending(db, record, limit=1000)
    dispatch_pending(db, record, limit=1000)

    assert seen == ["QuoteSent"]
    (ev,) = _tenant_events(db, tenant_id)
    assert ev.delivered_at is not None
    assert ev.last_error is None


def test_claimed_event_is_skipped_by_a_second_dispatcher(db, tenant_id):
    _sent_quote(db, tenant_id)
    (ev,) = _tenant_events(db, tenant_id)
    assert claim_event(db, ev.id) is True

    seen = []

    def record(e):
        if e.tenant_id == tenant_id:
            seen.append(e.event_type)

    dispatch_pending(db, record, limit=1000)
    assert seen == []
    assert claim_event(db, ev.id) is False

    (ev,) = _tenant_events(db, tenant_id)
    assert ev.delivered_at is None


def test_stale_claim_is_taken_over(db, tenant_id, monkeypatch):
    _sent_quote(db, tenant_id)
    (ev,) = _tenant_events(db, tenant_id)
    ev.claimed_at = datetime.utcnow() - timedelta(hours=1)
    db.commit()
    monkeypatch.setattr(settings, "notification_claim_seconds", 60)

    seen = []

    def record(e):
        if e.tenant_id == tenant_id:
            seen.append(e.event_type)

    dispatch_pending(db, record, limit=1000)
    assert seen == ["QuoteSent"]
