# quoteflow/workers/celery_app.py
from __future__ import annotations

import os

from celery import Celery

from ..config import settings

BROKER = settings.celery_broker_url or os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
BACKEND = settings.celery_result_backend or os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

celery_app = Celery(
    "quoteflow",
    broker=BROKER,
    backend=BACKEND,
    include=["quoteflow.workers.tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    timezone="UTC",
)

celery_app.conf.task_routes = {
    "quoteflow.workers.tasks.reconcile_payment_event": {"queue": "payments"},
    "quoteflow.workers.tasks.*": {"queue": "maintenance"},
}

celery_app.conf.beat_schedule = {
    "lock-expired-portals": {
        "task": "quoteflow.workers.tasks.lock_expired_portals",
        "schedule": float(settings.portal_lock_interval_seconds),
    },
    "dispatch-notifications": {
        "task": "quoteflow.workers.tasks.dispatch_notifications",
        "schedule": float(settings.notification_dispatch_interval_seconds),
    },
}
