# quoteflow/workers/tasks.py
from __future__ import annotations

import logging
import random
from typing import Any

from ..db import SessionLocal
from ..errors import ConcurrentModificationError
from ..services import notifications, portal_lock_service
from ..services.payment_reconciliation import (
    PaymentFailed,
    PaymentSucceeded,
    reconcile_payment_failure,
    reconcile_success,
)
from .celery_app import celery_app

log = logging.getLogger("quoteflow.workers")


def _backoff_seconds(retries: int, *, base: int = 2, cap: int = 60) -> int:
    """Exponential backoff with +/- 20% jitter."""
    delay = min(cap, base * (2 ** max(0, int(retries))))
    jitter = int(delay * 0.2)
    if jitter > 0:
        delay = max(1, delay + random.randint(-jitter, jitter))
    return delay


@celery_app.task(name="quoteflow.workers.tasks.lock_expired_portals")
def lock_expired_portals() -> dict:
    db = SessionLocal()
    try:
        report = portal_lock_service.lock_expired_portals(db)
        return report.as_dict()
    finally:
        db.close()


@celery_app.task(name="quoteflow.workers.tasks.dispatch_notifications")
def dispatch_notifications() -> dict:
    return notifications.dispatch_in_new_session().as_dict()


@celery_app.task(
    bind=True,
    max_retries=5,
    default_retry_delay=2,
    name="quoteflow.workers.tasks.reconcile_payment_event",
)
def reconcile_payment_event(self, kind: str, event: dict[str, Any]) -> dict:
    """
    Queue-driven reconciliation for gateways that deliver events in bulk.

    Only a lost optimistic-concurrency race is retried; any other error is a
    permanent rejection and is left to the task result.
    """
    db = SessionLocal()
    try:
        if kind == "succeeded":
            res = reconcile_success(db, PaymentSucceeded(**event))
        elif kind == "failed":
            res = reconcile_payment_failure(db, PaymentFailed(**event))
        else:
            return {"ok": False, "reason": f"unknown event kind {kind!r}"}
    except ConcurrentModificationError as e:
        retries = int(getattr(self.request, "retries", 0) or 0)
        log.warning(
            "payment_event_conflict",
            extra={"event": "payment_event_conflict", "reference_id": event.get("reference_id"), "attempt": retries},
        )
        raise self.retry(exc=e, countdown=_backoff_seconds(retries))
    finally:
        db.close()

    if res.applied:
        notifications.dispatch_in_new_session()
    return {
        "ok": True,
        "applied": res.applied,
        "idempotent_replay": res.idempotent_replay,
        "reference_id": res.payment.reference_id,
    }
