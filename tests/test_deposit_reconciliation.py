# tests/test_deposit_reconciliation.py
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from factories import accepted_quote, make_quote, pay_deposit, setup_tenant
from quoteflow.db import SessionLocal
from quoteflow.domain.audit import list_audit_entries
from quoteflow.errors import (
    AmountMismatchError,
    ConcurrentModificationError,
    InvalidJobStateError,
    InvalidTransitionError,
    PaymentRecordNotFoundError,
    ValidationError,
)
from quoteflow.models import Job, PaymentRecord
from quoteflow.services import payment_reconciliation
from quoteflow.services.job_service import get_job, hold_job
from quoteflow.services.payment_reconciliation import (
    PaymentFailed,
    PaymentSucceeded,
    reconcile_deposit,
    reconcile_payment_failure,
    reconcile_success,
    register_pending_payment,
)
from quoteflow.services.quote_service import deactivate_quote, get_quote


def test_deposit_moves_job_to_deposit_paid_with_one_audit_entry(db, tenant_id):
    res = accepted_quote(db, tenant_id)

    out = pay_deposit(db, tenant_id, res.quote)

    assert out.applied is True
    job = out.job
    assert job.status == "deposit_paid"
    assert job.deposit_paid is True
    assert job.deposit_amount == Decimal("1500.00")
    assert job.balance_remaining == Decimal("1500.00")
    assert job.portal_open is True
    assert job.portal_expires_at - job.deposit_paid_at == timedelta(days=14)
    assert out.payment.status == "paid"
    assert get_quote(db, tenant_id=tenant_id, quote_id=res.quote.id).portal_open is True

    verified = list_audit_entries(
        db, tenant_id=tenant_id, entity_type="job", entity_id=str(job.id), action="deposit_verified"
    )
    assert len(verified) == 1
    assert verified[0].actor_user_id is None


def test_replayed_deposit_changes_nothing(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    first = pay_deposit(db, tenant_id, res.quote, reference_id=f"cs_replay_{tenant_id}")
    version = first.job.version

    event = PaymentSucceeded(reference_id=f"cs_replay_{tenant_id}", amount=Decimal("1500.00"), currency="usd")
    second = reconcile_deposit(db, event)

    assert second.applied is False
    assert second.idempotent_replay is True
    assert second.job.id == first.job.id
    assert second.job.status == "deposit_paid"
    assert second.job.deposit_amount == Decimal("1500.00")
    assert second.job.version == version

    jobs = db.scalars(select(Job).where(Job.quote_id == res.quote.id)).all()
    assert len(jobs) == 1
    verified = list_audit_entries(
        db, tenant_id=tenant_id, entity_type="job", entity_id=str(first.job.id), action="deposit_verified"
    )
    assert len(verified) == 1


def test_amount_mismatch_leaves_job_accepted(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_short_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)

    with pytest.raises(AmountMismatchError) as ei:
        reconcile_deposit(db, PaymentSucceeded(reference_id=ref, amount=Decimal("1499.50"), currency="usd"))
    assert ei.value.expected == Decimal("1500.00")

    job = get_job(db, tenant_id=tenant_id, job_id=res.job.id)
    assert job.status == "accepted"
    assert job.deposit_paid is False
    rec = db.scalar(select(PaymentRecord).where(PaymentRecord.reference_id == ref))
    assert rec.status == "pending"


def test_amount_within_tolerance_is_accepted(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    out = pay_deposit(db, tenant_id, res.quote, amount=Decimal("1499.99"))
    assert out.job.status == "deposit_paid"
    assert out.payment.received_amount == Decimal("1499.99")


def test_currency_mismatch_rejected(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_cad_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)
    with pytest.raises(AmountMismatchError):
        reconcile_deposit(db, PaymentSucceeded(reference_id=ref, amount=Decimal("1500.00"), currency="cad"))


def test_unknown_reference_is_not_found(db, tenant_id):
    with pytest.raises(PaymentRecordNotFoundError):
        reconcile_deposit(db, PaymentSucceeded(reference_id=f"cs_nope_{tenant_id}", amount=Decimal("1")))


def test_metadata_naming_another_tenant_is_not_found(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_meta_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)
    event = PaymentSucceeded(
        reference_id=ref, amount=Decimal("1500.00"), metadata={"tenant_id": tenant_id + 1}
    )
    with pytest.raises(PaymentRecordNotFoundError):
        reconcile_deposit(db, event)
    assert get_job(db, tenant_id=tenant_id, job_id=res.job.id).status == "accepted"


def test_register_rejects_wrong_amount_and_unaccepted_quote(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    with pytest.raises(ValidationError):
        register_pending_payment(
            db,
            tenant_id=tenant_id,
            kind="deposit",
            reference_id=f"cs_bad_{tenant_id}",
            quote_id=res.quote.id,
            amount=Decimal("10.00"),
        )
    with pytest.raises(ValidationError):
        register_pending_payment(db, tenant_id=tenant_id, kind="tip", reference_id="cs_x", quote_id=res.quote.id)


def test_register_is_idempotent_per_reference(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_twice_{tenant_id}"
    a = register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)
    b = register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)
    assert a.id == b.id


def test_second_deposit_after_settlement_rejected(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    pay_deposit(db, tenant_id, res.quote)
    with pytest.raises(InvalidJobStateError):
        register_pending_payment(
            db, tenant_id=tenant_id, kind="deposit", reference_id=f"cs_again_{tenant_id}", quote_id=res.quote.id
        )


def test_payment_failure_marks_record_only(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_fail_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)

    out = reconcile_payment_failure(db, PaymentFailed(reference_id=ref, reason="card_declined"))
    assert out.applied is True
    assert out.payment.status == "failed"
    assert out.payment.failure_reason == "card_declined"
    assert get_job(db, tenant_id=tenant_id, job_id=res.job.id).status == "accepted"

    again = reconcile_payment_failure(db, PaymentFailed(reference_id=ref, reason="card_declined"))
    assert again.idempotent_replay is True


def test_success_router_dispatches_by_record_kind(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_route_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)

    out = reconcile_success(db, PaymentSucceeded(reference_id=ref, amount=Decimal("1500.00")))
    assert out.job.status == "deposit_paid"


def test_deposit_for_draft_quote_rejected(db, tenant_id):
    scheme_id = setup_tenant(db, tenant_id)
    q = make_quote(db, tenant_id, scheme_id)
    with pytest.raises(InvalidTransitionError):
        register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=f"cs_d_{tenant_id}", quote_id=q.id)


def test_concurrent_redelivery_applies_once(db, tenant_id, monkeypatch):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_race_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)
    event = PaymentSucceeded(reference_id=ref, amount=Decimal("1500.00"), currency="usd")

    other = SessionLocal()
    try:
        # the second delivery read the pending record and the job before the first committed
        stale_rec = other.scalar(select(PaymentRecord).where(PaymentRecord.reference_id == ref))
        get_job(other, tenant_id=tenant_id, job_id=res.job.id)
        other.commit()

        first = reconcile_deposit(db, event)
        assert first.applied is True

        monkeypatch.setattr(payment_reconciliation, "_lock_record", lambda session, reference_id: stale_rec)
        with pytest.raises(ConcurrentModificationError):
            reconcile_deposit(other, event)
    finally:
        other.close()

    db.expire_all()
    job = get_job(db, tenant_id=tenant_id, job_id=res.job.id)
    assert job.status == "deposit_paid"
    assert job.balance_remaining == Decimal("1500.00")
    verified = list_audit_entries(
        db, tenant_id=tenant_id, entity_type="job", entity_id=str(job.id), action="deposit_verified"
    )
    assert len(verified) == 1


def test_withdrawn_quote_takes_no_deposit(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    deactivate_quote(db, tenant_id=tenant_id, quote_id=res.quote.id)
    with pytest.raises(ValidationError):
        register_pending_payment(
            db, tenant_id=tenant_id, kind="deposit", reference_id=f"cs_gone_{tenant_id}", quote_id=res.quote.id
        )


def test_deposit_registration_on_held_job_reports_status(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    hold_job(db, tenant_id=tenant_id, job_id=res.job.id, reason="permit")
    with pytest.raises(InvalidJobStateError) as ei:
        register_pending_payment(
            db, tenant_id=tenant_id, kind="deposit", reference_id=f"cs_hold_{tenant_id}", quote_id=res.quote.id
        )
    assert "on_hold" in str(ei.value)
    assert "already settled" not in str(ei.value)
