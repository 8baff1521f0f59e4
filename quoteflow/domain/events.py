# events.py - notification outbox writer. Rows are added in the same transaction as the state change and delivered after commit.
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..models import NotificationEvent


class NotificationType(str, Enum):
    QUOTE_SENT = "QuoteSent"
    QUOTE_ACCEPTED = "QuoteAccepted"
    QUOTE_DECLINED = "QuoteDeclined"
    DEPOSIT_VERIFIED = "DepositVerified"
    JOB_SCHEDULED = "JobScheduled"
    JOB_COMPLETED = "JobCompleted"
    FINAL_PAYMENT_RECEIVED = "FinalPaymentReceived"
    PORTAL_LOCKED = "PortalLocked"


def emit_notification(
    db: Session,
    *,
    tenant_id: int,
    event_type: NotificationType,
    entity_type: str,
    entity_id: Any,
    payload: Optional[dict[str, Any]] = None,
) -> NotificationEvent:
    """
    NOTE:
    - Does NOT commit. Adds + flushes only.
    - Delivery happens later (services.notifications.dispatch_pending), so a
      failing sender can never undo the transition that produced the event.
    """
    ev = NotificationEvent(
        tenant_id=int(tenant_id),
        event_type=NotificationType(event_type).value,
        entity_type=str(entity_type),
        entity_id=str(entity_id),
        payload_json=json.dumps(payload or {}, ensure_ascii=False, default=str),
        created_at=datetime.utcnow(),
    )
    db.add(ev)
    db.flush()
    return ev
