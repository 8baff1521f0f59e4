from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal, verify_webhook_secret
from ..db import get_db
from ..schemas import PendingPaymentCreate, ReconciliationOut
from ..services.job_service import job_to_dict
from ..services.notifications import dispatch_in_new_session
from ..services.payment_reconciliation import (
    PaymentFailed,
    PaymentSucceeded,
    ReconciliationResult,
    payment_to_dict,
    reconcile_payment_failure,
    reconcile_success,
    register_pending_payment,
)

router = APIRouter(prefix="/payments", tags=["payments"])


def _out(res: ReconciliationResult) -> dict[str, Any]:
    return {
        "applied": res.applied,
        "idempotent_replay": res.idempotent_replay,
        "payment": payment_to_dict(res.payment),
        "job": job_to_dict(res.job) if res.job is not None else None,
    }


@router.post("", response_model=dict)
def post_pending(payload: PendingPaymentCreate, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    rec = register_pending_payment(
        db,
        tenant_id=p.tenant_id,
        kind=payload.kind,
        reference_id=payload.reference_id,
        quote_id=payload.quote_id,
        job_id=payload.job_id,
        amount=payload.amount,
        currency=payload.currency,
        actor_user_id=p.user_id,
    )
    return payment_to_dict(rec)


# Gateway callbacks. No principal: the tenant comes from the stored payment record.


@router.post("/webhooks/succeeded", response_model=ReconciliationOut, dependencies=[Depends(verify_webhook_secret)])
def webhook_succeeded(event: PaymentSucceeded, background: BackgroundTasks, db: Session = Depends(get_db)):
    res = reconcile_success(db, event)
    if res.applied:
        background.add_task(dispatch_in_new_session)
    return _out(res)


@router.post("/webhooks/failed", response_model=ReconciliationOut, dependencies=[Depends(verify_webhook_secret)])
def webhook_failed(event: PaymentFailed, db: Session = Depends(get_db)):
    return _out(reconcile_payment_failure(db, event))
