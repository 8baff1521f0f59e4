# quoteflow/services/notifications.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..models import NotificationEvent

log = logging.getLogger("quoteflow.notifications")

MAX_ATTEMPTS = 10

Sender = Callable[[NotificationEvent], None]


def _now() -> datetime:
    return datetime.utcnow()


@dataclass(frozen=True)
class DispatchReport:
    delivered: int
    failed: int

    def as_dict(self) -> dict:
        return {"delivered": self.delivered, "failed": self.failed}


def event_to_dict(ev: NotificationEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "tenant_id": ev.tenant_id,
        "event_type": ev.event_type,
        "entity_type": ev.entity_type,
        "entity_id": ev.entity_id,
        "payload": json.loads(ev.payload_json or "{}"),
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
    }


def webhook_sender(ev: NotificationEvent) -> None:
    """POSTs the event to the configured notification service; logs only when none is set."""
    url = settings.notification_webhook_url
    if not url:
        log.info(
            "notification_not_configured",
            extra={"event": ev.event_type, "tenant_id": ev.tenant_id},
        )
        return
    with httpx.Client(timeout=10.0) as client:
        r = client.post(url, json=event_to_dict(ev))
        r.raise_for_status()


def _claimable(now: datetime):
    lease_start = now - timedelta(seconds=int(settings.notification_claim_seconds))
    return (
        NotificationEvent.delivered_at.is_(None),
        NotificationEvent.attempts < MAX_ATTEMPTS,
        or_(NotificationEvent.claimed_at.is_(None), NotificationEvent.claimed_at < lease_start),
    )


def pending_events(db: Session, *, limit: Optional[int] = None) -> list[NotificationEvent]:
    n = int(limit or settings.notification_batch_size)
    q = (
        select(NotificationEvent)
        .where(*_claimable(_now()))
        .order_by(NotificationEvent.id.asc())
        .limit(max(1, n))
    )
    return list(db.scalars(q).all())


def claim_event(db: Session, event_id: int) -> bool:
    """Take delivery ownership of one row. False when another dispatcher holds or finished it."""
    now = _now()
    res = db.execute(
        update(NotificationEvent)
        .where(NotificationEvent.id == event_id, *_claimable(now))
        .values(claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def dispatch_pending(db: Session, sender: Optional[Sender] = None, *, limit: Optional[int] = None) -> DispatchReport:
    """
    Deliver undelivered outbox rows, committing after each one.

    Only the outbox row is written here. Each row is claimed with a
    conditional update first, so a concurrent dispatcher skips it. A sender
    failure is recorded on the row (attempts, last_error), the claim is
    released, and the row is retried on a later run.
    """
    sender = sender or webhook_sender
    delivered = 0
    failed = 0

    for ev in pending_events(db, limit=limit):
        if not claim_event(db, ev.id):
            continue
        db.refresh(ev)
        try:
            sender(ev)
        except Exception as e:
            ev.attempts = int(ev.attempts or 0) + 1
            ev.last_error = f"{type(e).__name__}: {e}"[:2000]
            ev.claimed_at = None
            failed += 1
            log.warning(
                "notification_delivery_failed",
                extra={"event": ev.event_type, "tenant_id": ev.tenant_id},
            )
        else:
            ev.attempts = int(ev.attempts or 0) + 1
            ev.delivered_at = _now()
            ev.last_error = None
            delivered += 1
        db.add(ev)
        db.commit()

    return DispatchReport(delivered=delivered, failed=failed)


def dispatch_in_new_session() -> DispatchReport:
    """Entry point for post-response hooks and workers: owns its session."""
    db = SessionLocal()
    try:
        return dispatch_pending(db)
    finally:
        db.close()
