# quoteflow/services/payment_reconciliation.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..clients.payment_gateway import PaymentGatewayClient
from ..config import settings
from ..db import unit_of_work
from ..domain.audit import audit_write
from ..domain.events import NotificationType, emit_notification
from ..domain.job_lifecycle import HELD, FinalPaymentStatus, JobStatus, parse_job_status
from ..domain.pricing import money
from ..domain.quote_lifecycle import QuoteStatus
from ..errors import (
    AmountMismatchError,
    ConcurrentModificationError,
    InvalidJobStateError,
    InvalidTransitionError,
    NotFoundError,
    PaymentRecordNotFoundError,
    ValidationError,
)
from ..models import Job, PaymentRecord, Quote
from .job_service import apply_job_transition, ensure_job_for_quote, get_job, job_snapshot
from .quote_service import get_quote

log = logging.getLogger("quoteflow.payments")

# -----------------------------------------------------------------------------
# Payment reconciliation
# -----------------------------------------------------------------------------
# The gateway reference id is the idempotency key (unique at the storage
# layer). Each reconcile is one transaction holding the payment row lock:
#   1. find the pending record        -> PaymentRecordNotFoundError
#   2. already paid                   -> success, nothing re-applied
#   3. amount/currency within tolerance -> else AmountMismatchError
#   4. mark paid + advance the job + audit, all or nothing
# -----------------------------------------------------------------------------

DEPOSIT = "deposit"
FINAL = "final"
PAYMENT_KINDS = (DEPOSIT, FINAL)


def _now() -> datetime:
    return datetime.utcnow()


class PaymentSucceeded(BaseModel):
    reference_id: str
    amount: Decimal
    currency: str = "usd"
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentFailed(BaseModel):
    reference_id: str
    reason: str = ""


@dataclass(frozen=True)
class ReconciliationResult:
    job: Optional[Job]
    payment: PaymentRecord
    applied: bool
    idempotent_replay: bool = False


def payment_to_dict(p: PaymentRecord) -> dict[str, Any]:
    return {
        "id": p.id,
        "tenant_id": p.tenant_id,
        "quote_id": p.quote_id,
        "job_id": p.job_id,
        "kind": p.kind,
        "reference_id": p.reference_id,
        "amount": str(p.amount),
        "currency": p.currency,
        "status": p.status,
        "received_amount": str(p.received_amount) if p.received_amount is not None else None,
        "paid_at": p.paid_at.isoformat() if p.paid_at else None,
        "failure_reason": p.failure_reason,
    }


# ---- Pending records ----


def register_pending_payment(
    db: Session,
    *,
    tenant_id: int,
    kind: str,
    reference_id: str,
    quote_id: Optional[int] = None,
    job_id: Optional[int] = None,
    amount: Optional[Decimal] = None,
    currency: Optional[str] = None,
    actor_user_id: Optional[int] = None,
) -> PaymentRecord:
    """
    Record the checkout session a customer is about to pay against.
    Registering the same reference twice returns the existing record.
    """
    kind = (kind or "").strip().lower()
    if kind not in PAYMENT_KINDS:
        raise ValidationError("kind", "must be 'deposit' or 'final'")
    reference_id = (reference_id or "").strip()
    if not reference_id:
        raise ValidationError("reference_id", "required")

    with unit_of_work(db, entity="payment_record"):
        existing = db.scalar(select(PaymentRecord).where(PaymentRecord.reference_id == reference_id))
        if existing is not None:
            if existing.tenant_id != int(tenant_id) or existing.kind != kind:
                raise ValidationError("reference_id", "already registered for another payment")
            return existing

        if kind == DEPOSIT:
            if quote_id is None:
                raise ValidationError("quote_id", "required for a deposit")
            quote = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
            if quote.status != QuoteStatus.ACCEPTED.value:
                raise InvalidTransitionError(quote.status, QuoteStatus.ACCEPTED.value, entity="quote")
            if not quote.is_active:
                raise ValidationError("quote_id", f"quote {quote.quote_number} has been withdrawn")
            job = ensure_job_for_quote(db, quote, actor_user_id=actor_user_id)
            if job.status != JobStatus.ACCEPTED.value:
                reason = "deposit already settled" if job.deposit_paid else "job is not awaiting a deposit"
                raise InvalidJobStateError(job.status, "take a deposit", reason)
            expected = money(quote.deposit_amount)
        else:
            if job_id is None:
                raise ValidationError("job_id", "required for a final payment")
            job = get_job(db, tenant_id=tenant_id, job_id=job_id)
            if job.status != JobStatus.COMPLETED.value or job.final_payment_status != FinalPaymentStatus.PENDING.value:
                raise InvalidJobStateError(job.status, "take a final payment", "no balance is pending")
            quote = db.get(Quote, job.quote_id)
            expected = money(job.balance_remaining)

        if expected <= 0:
            raise ValidationError("amount", "nothing to collect")
        if amount is not None and money(amount) != expected:
            raise ValidationError("amount", f"expected {expected}")

        rec = PaymentRecord(
            tenant_id=int(tenant_id),
            quote_id=quote.id,
            job_id=job.id,
            kind=kind,
            reference_id=reference_id,
            amount=expected,
            currency=(currency or job.currency or settings.default_currency).lower(),
            status="pending",
            created_at=_now(),
            updated_at=_now(),
        )
        db.add(rec)
        db.flush()
        audit_write(
            db,
            tenant_id=rec.tenant_id,
            actor_user_id=actor_user_id,
            action="payment_registered",
            category="payment",
            entity_type="payment",
            entity_id=rec.id,
            after={"kind": kind, "reference_id": reference_id, "amount": str(expected), "currency": rec.currency},
            metadata={"job_id": job.id, "quote_id": quote.id},
        )
    return rec


# ---- Shared steps ----


def verify_with_gateway(event: PaymentSucceeded, gateway: Optional[PaymentGatewayClient] = None) -> None:
    """
    Optional re-verification of the checkout session. Runs before the
    reconcile transaction opens; never inside it.
    """
    gateway = gateway or PaymentGatewayClient()
    if not (settings.payment_gateway_verify_sessions and gateway.enabled()):
        return
    session = gateway.get_session(event.reference_id)
    if not session.paid:
        raise ValidationError("reference_id", f"gateway reports session status '{session.status}'")


def _lock_record(db: Session, reference_id: str) -> PaymentRecord:
    rec = db.scalar(
        select(PaymentRecord)
        .where(PaymentRecord.reference_id == reference_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if rec is None:
        raise PaymentRecordNotFoundError(reference_id)
    return rec


def _check_metadata(rec: PaymentRecord, event: PaymentSucceeded) -> None:
    # metadata that names a different tenant/quote is a mismatch, not a hint
    md = event.metadata or {}
    tenant = md.get("tenant_id") or md.get("tenantId")
    quote = md.get("quote_id") or md.get("quoteId")
    if tenant is not None and str(tenant) != str(rec.tenant_id):
        raise PaymentRecordNotFoundError(rec.reference_id)
    if quote is not None and str(quote) != str(rec.quote_id):
        raise PaymentRecordNotFoundError(rec.reference_id)


def _check_amount(rec: PaymentRecord, event: PaymentSucceeded) -> Decimal:
    received = money(event.amount)
    currency = (event.currency or "").strip().lower()
    tolerance = Decimal(str(settings.payment_amount_tolerance))
    if currency != rec.currency.lower() or abs(received - money(rec.amount)) > tolerance:
        log.warning(
            "payment_amount_mismatch",
            extra={
                "event": "payment_amount_mismatch",
                "tenant_id": rec.tenant_id,
                "reference_id": rec.reference_id,
            },
        )
        raise AmountMismatchError(
            reference_id=rec.reference_id,
            expected=money(rec.amount),
            received=received,
            expected_currency=rec.currency,
            received_currency=currency,
        )
    return received


def _replay(rec: PaymentRecord, job: Optional[Job]) -> ReconciliationResult:
    log.info(
        "payment_already_reconciled",
        extra={
            "event": "payment_already_reconciled",
            "tenant_id": rec.tenant_id,
            "reference_id": rec.reference_id,
            "job_id": rec.job_id,
        },
    )
    return ReconciliationResult(job=job, payment=rec, applied=False, idempotent_replay=True)


def _mark_paid(db: Session, rec: PaymentRecord, received: Decimal, now: datetime) -> None:
    """Flushed before any job write: the record version check decides which delivery applies."""
    rec.status = "paid"
    rec.paid_at = now
    rec.received_amount = received
    rec.updated_at = now
    db.add(rec)
    try:
        db.flush()
    except StaleDataError as e:
        raise ConcurrentModificationError("payment_record", rec.reference_id) from e


# ---- Deposit ----


def reconcile_deposit(
    db: Session,
    event: PaymentSucceeded,
    *,
    gateway: Optional[PaymentGatewayClient] = None,
) -> ReconciliationResult:
    verify_with_gateway(event, gateway)

    with unit_of_work(db, entity="payment_record", entity_id=event.reference_id):
        rec = _lock_record(db, event.reference_id)
        if rec.kind != DEPOSIT:
            raise ValidationError("reference_id", f"payment '{rec.reference_id}' is a {rec.kind} payment")
        _check_metadata(rec, event)

        if rec.status == "paid":
            job = db.scalar(select(Job).where(Job.quote_id == rec.quote_id))
            return _replay(rec, job)

        received = _check_amount(rec, event)
        now = _now()
        _mark_paid(db, rec, received, now)

        quote = get_quote(db, tenant_id=rec.tenant_id, quote_id=rec.quote_id)
        job = ensure_job_for_quote(db, quote, actor_user_id=None)
        status = parse_job_status(job.status)
        # a job held before the deposit landed stays held; resume returns it to deposit_paid
        held = status in HELD and job.held_from_status == JobStatus.ACCEPTED.value
        if status != JobStatus.ACCEPTED and not held:
            raise InvalidJobStateError(status.value, "reconcile a deposit", "job is not awaiting a deposit")
        rec.job_id = job.id

        before = job_snapshot(job)
        job.deposit_amount = money(rec.amount)
        job.deposit_paid = True
        job.deposit_paid_at = now
        job.balance_remaining = money(job.total_amount) - money(rec.amount)
        job.portal_open = True
        job.portal_opened_at = now
        job.portal_expires_at = now + timedelta(days=int(settings.portal_open_days))

        audit_md = {
            "reference_id": rec.reference_id,
            "amount": str(received),
            "currency": rec.currency,
            "quote_id": quote.id,
        }
        if held:
            job.held_from_status = JobStatus.DEPOSIT_PAID.value
            job.updated_at = now
            db.add(job)
            try:
                db.flush()
            except StaleDataError as e:
                raise ConcurrentModificationError("job", job.id) from e
            audit_write(
                db,
                tenant_id=job.tenant_id,
                actor_user_id=None,
                action="deposit_verified",
                entity_type="job",
                entity_id=job.id,
                before=before,
                after=job_snapshot(job),
                metadata={**audit_md, "held": True},
            )
        else:
            apply_job_transition(
                db,
                job,
                JobStatus.DEPOSIT_PAID,
                actor_user_id=None,
                action="deposit_verified",
                by_reconciler=True,
                before=before,
                metadata=audit_md,
            )

        quote.portal_open = True
        quote.updated_at = now
        db.add(quote)

        emit_notification(
            db,
            tenant_id=job.tenant_id,
            event_type=NotificationType.DEPOSIT_VERIFIED,
            entity_type="job",
            entity_id=job.id,
            payload={
                "job_number": job.job_number,
                "quote_number": quote.quote_number,
                "amount": str(received),
                "portal_expires_at": job.portal_expires_at.isoformat(),
            },
        )

    log.info(
        "deposit_reconciled",
        extra={"event": "deposit_verified", "tenant_id": job.tenant_id, "job_id": job.id, "reference_id": rec.reference_id},
    )
    return ReconciliationResult(job=job, payment=rec, applied=True)


# ---- Final payment ----


def reconcile_final_payment(
    db: Session,
    event: PaymentSucceeded,
    *,
    gateway: Optional[PaymentGatewayClient] = None,
) -> ReconciliationResult:
    """
    The paid amount is credited to the job's running paid total and the
    balance is set to zero outright, never decremented.
    """
    verify_with_gateway(event, gateway)

    with unit_of_work(db, entity="payment_record", entity_id=event.reference_id):
        rec = _lock_record(db, event.reference_id)
        if rec.kind != FINAL:
            raise ValidationError("reference_id", f"payment '{rec.reference_id}' is a {rec.kind} payment")
        _check_metadata(rec, event)

        if rec.job_id is None:
            raise NotFoundError("job", None)
        job = get_job(db, tenant_id=rec.tenant_id, job_id=rec.job_id)

        if rec.status == "paid":
            return _replay(rec, job)

        received = _check_amount(rec, event)
        now = _now()
        _mark_paid(db, rec, received, now)

        status = parse_job_status(job.status)
        if status != JobStatus.COMPLETED or job.final_payment_status != FinalPaymentStatus.PENDING.value:
            raise InvalidJobStateError(status.value, "apply final payment", "no balance is pending")

        before = job_snapshot(job)
        job.deposit_amount = money(job.deposit_amount) + received
        job.balance_remaining = Decimal("0.00")
        job.final_payment_status = FinalPaymentStatus.PAID.value
        job.final_payment_paid_at = now
        job.closed_at = now

        apply_job_transition(
            db,
            job,
            JobStatus.CLOSED,
            actor_user_id=None,
            action="final_payment_received",
            by_reconciler=True,
            before=before,
            metadata={"reference_id": rec.reference_id, "amount": str(received), "currency": rec.currency},
        )
        emit_notification(
            db,
            tenant_id=job.tenant_id,
            event_type=NotificationType.FINAL_PAYMENT_RECEIVED,
            entity_type="job",
            entity_id=job.id,
            payload={"job_number": job.job_number, "amount": str(received)},
        )

    log.info(
        "final_payment_reconciled",
        extra={"event": "final_payment_received", "tenant_id": job.tenant_id, "job_id": job.id, "reference_id": rec.reference_id},
    )
    return ReconciliationResult(job=job, payment=rec, applied=True)


# ---- Failures ----


def reconcile_payment_failure(db: Session, event: PaymentFailed) -> ReconciliationResult:
    """Marks the pending record failed. Quote and job status never change here."""
    with unit_of_work(db, entity="payment_record", entity_id=event.reference_id):
        rec = _lock_record(db, event.reference_id)
        job = db.get(Job, rec.job_id) if rec.job_id is not None else None

        if rec.status in ("paid", "failed"):
            return _replay(rec, job)

        now = _now()
        rec.status = "failed"
        rec.failed_at = now
        rec.failure_reason = (event.reason or "").strip() or None
        rec.updated_at = now
        db.add(rec)
        db.flush()

        audit_write(
            db,
            tenant_id=rec.tenant_id,
            actor_user_id=None,
            action="payment_failed",
            category="payment",
            entity_type="payment",
            entity_id=rec.id,
            before={"status": "pending"},
            after={"status": "failed"},
            metadata={"reference_id": rec.reference_id, "kind": rec.kind, "reason": rec.failure_reason},
        )

    log.warning(
        "payment_failed",
        extra={"event": "payment_failed", "tenant_id": rec.tenant_id, "reference_id": rec.reference_id},
    )
    return ReconciliationResult(job=job, payment=rec, applied=True)


def reconcile_success(
    db: Session,
    event: PaymentSucceeded,
    *,
    gateway: Optional[PaymentGatewayClient] = None,
) -> ReconciliationResult:
    """Routes a success event to the deposit or final reconciler by the record's kind."""
    kind = db.scalar(select(PaymentRecord.kind).where(PaymentRecord.reference_id == event.reference_id))
    # end the read so the gateway check below runs outside any transaction
    db.rollback()
    if kind is None:
        raise PaymentRecordNotFoundError(event.reference_id)
    if kind == FINAL:
        return reconcile_final_payment(db, event, gateway=gateway)
    return reconcile_deposit(db, event, gateway=gateway)
