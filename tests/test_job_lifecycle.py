# tests/test_job_lifecycle.py
from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from factories import TWO_ROOMS, accepted_quote, pay_deposit
from quoteflow.db import SessionLocal
from quoteflow.domain.audit import list_audit_entries
from quoteflow.domain.job_lifecycle import JOB_TRANSITIONS, JobStatus, assert_job_transition
from quoteflow.errors import (
    AmountMismatchError,
    ConcurrentModificationError,
    InvalidJobStateError,
    InvalidTransitionError,
    ValidationError,
)
from quoteflow.services.job_service import (
    CustomerSelection,
    apply_job_transition,
    area_progress_summary,
    cancel_job,
    close_job,
    complete_job,
    get_job,
    hold_job,
    pause_job,
    resume_job,
    save_customer_selections,
    schedule_job,
    start_job,
    submit_customer_selections,
    update_area_progress,
)
from quoteflow.services.payment_reconciliation import (
    PaymentSucceeded,
    reconcile_deposit,
    reconcile_final_payment,
    register_pending_payment,
)
from quoteflow.services.quote_service import get_quote


def _paid_job(db, tenant_id, *, areas=None):
    res = accepted_quote(db, tenant_id, areas=areas)
    return pay_deposit(db, tenant_id, res.quote).job


def _started_job(db, tenant_id, *, areas=None):
    job = _paid_job(db, tenant_id, areas=areas)
    schedule_job(db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 11, 2), crew=["Ana", "Lee"])
    return start_job(db, tenant_id=tenant_id, job_id=job.id, actor_user_id=1)


def test_transition_table_shape():
    assert JOB_TRANSITIONS[JobStatus.CLOSED] == frozenset()
    assert JOB_TRANSITIONS[JobStatus.CANCELED] == frozenset()
    with pytest.raises(InvalidTransitionError):
        assert_job_transition(JobStatus.ACCEPTED, JobStatus.SCHEDULED)
    # deposit and close edges belong to payment reconciliation
    with pytest.raises(InvalidTransitionError):
        assert_job_transition(JobStatus.ACCEPTED, JobStatus.DEPOSIT_PAID)
    assert_job_transition(JobStatus.ACCEPTED, JobStatus.DEPOSIT_PAID, by_reconciler=True)


def test_complete_then_final_payment_closes_job(db, tenant_id):
    job = _started_job(db, tenant_id)
    assert job.deposit_amount == Decimal("1500.00")

    job = complete_job(
        db,
        tenant_id=tenant_id,
        job_id=job.id,
        completion_notes="Two coats, touch-ups done",
        final_invoice_amount=Decimal("5000.00"),
        actor_user_id=1,
    )
    assert job.status == "completed"
    assert job.total_amount == Decimal("5000.00")
    assert job.balance_remaining == Decimal("3500.00")
    assert job.final_payment_status == "pending"

    ref = f"cs_final_{tenant_id}"
    rec = register_pending_payment(db, tenant_id=tenant_id, kind="final", reference_id=ref, job_id=job.id)
    assert rec.amount == Decimal("3500.00")

    out = reconcile_final_payment(db, PaymentSucceeded(reference_id=ref, amount=Decimal("3500.00")))
    job = out.job
    assert job.status == "closed"
    assert job.balance_remaining == Decimal("0.00")
    assert job.final_payment_status == "paid"
    assert job.deposit_amount == Decimal("5000.00")

    replay = reconcile_final_payment(db, PaymentSucceeded(reference_id=ref, amount=Decimal("3500.00")))
    assert replay.idempotent_replay is True


def test_partial_final_payment_rejected(db, tenant_id):
    job = _started_job(db, tenant_id)
    complete_job(db, tenant_id=tenant_id, job_id=job.id, completion_notes="done", final_invoice_amount=Decimal("5000"))
    ref = f"cs_part_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="final", reference_id=ref, job_id=job.id)

    with pytest.raises(AmountMismatchError):
        reconcile_final_payment(db, PaymentSucceeded(reference_id=ref, amount=Decimal("1000.00")))
    job = get_job(db, tenant_id=tenant_id, job_id=job.id)
    assert job.status == "completed"
    assert job.balance_remaining == Decimal("3500.00")


def test_fully_paid_job_closes_without_final_payment(db, tenant_id):
    job = _started_job(db, tenant_id)
    job = complete_job(
        db, tenant_id=tenant_id, job_id=job.id, completion_notes="done", final_invoice_amount=Decimal("1500.00")
    )
    assert job.balance_remaining == Decimal("0.00")
    assert job.final_payment_status == "not_required"

    job = close_job(db, tenant_id=tenant_id, job_id=job.id)
    assert job.status == "closed"


def test_close_with_balance_outstanding_rejected(db, tenant_id):
    job = _started_job(db, tenant_id)
    complete_job(db, tenant_id=tenant_id, job_id=job.id, completion_notes="done")
    with pytest.raises(InvalidJobStateError):
        close_job(db, tenant_id=tenant_id, job_id=job.id)


def test_complete_requires_notes(db, tenant_id):
    job = _started_job(db, tenant_id)
    with pytest.raises(ValidationError):
        complete_job(db, tenant_id=tenant_id, job_id=job.id, completion_notes="  ")


def test_schedule_needs_deposit(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    with pytest.raises(InvalidTransitionError):
        schedule_job(db, tenant_id=tenant_id, job_id=res.job.id, start_date=date(2026, 11, 2))
    assert get_job(db, tenant_id=tenant_id, job_id=res.job.id).status == "accepted"


def test_reschedule_requires_reason_and_is_audited(db, tenant_id):
    job = _paid_job(db, tenant_id)
    schedule_job(db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 11, 2))

    with pytest.raises(ValidationError):
        schedule_job(db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 11, 9))

    job = schedule_job(
        db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 11, 9), reason="rain delay"
    )
    assert job.status == "scheduled"
    assert job.scheduled_start_date == date(2026, 11, 9)
    entries = list_audit_entries(
        db, tenant_id=tenant_id, entity_type="job", entity_id=str(job.id), action="job_rescheduled"
    )
    assert len(entries) == 1


def test_schedule_rejects_end_before_start(db, tenant_id):
    job = _paid_job(db, tenant_id)
    with pytest.raises(ValidationError):
        schedule_job(
            db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 11, 9), end_date=date(2026, 11, 2)
        )


def test_area_progress(db, tenant_id):
    job = _paid_job(db, tenant_id, areas=TWO_ROOMS)
    with pytest.raises(InvalidJobStateError):
        update_area_progress(db, tenant_id=tenant_id, job_id=job.id, area_id="living", status="prepped")

    schedule_job(db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 11, 2))
    start_job(db, tenant_id=tenant_id, job_id=job.id)
    update_area_progress(db, tenant_id=tenant_id, job_id=job.id, area_id="living", status="completed")
    update_area_progress(db, tenant_id=tenant_id, job_id=job.id, area_id="hall", status="touch_ups")

    summary = area_progress_summary(db, tenant_id=tenant_id, job_id=job.id)
    assert summary["total"] == 2
    assert summary["pct_completed"] == 50.0
    assert summary["area_progress"] == {"living": "completed", "hall": "touch_ups"}

    with pytest.raises(ValidationError):
        update_area_progress(db, tenant_id=tenant_id, job_id=job.id, area_id="garage", status="prepped")
    with pytest.raises(ValidationError):
        update_area_progress(db, tenant_id=tenant_id, job_id=job.id, area_id="hall", status="half_done")


def test_hold_and_resume_returns_to_prior_status(db, tenant_id):
    job = _started_job(db, tenant_id)

    job = hold_job(db, tenant_id=tenant_id, job_id=job.id, reason="homeowner traveling")
    assert job.status == "on_hold"
    assert job.held_from_status == "in_progress"

    job = pause_job(db, tenant_id=tenant_id, job_id=job.id, reason="waiting on drywall repair")
    assert job.status == "paused"
    assert job.held_from_status == "in_progress"

    job = resume_job(db, tenant_id=tenant_id, job_id=job.id)
    assert job.status == "in_progress"
    assert job.held_from_status is None


def test_hold_requires_reason(db, tenant_id):
    job = _paid_job(db, tenant_id)
    with pytest.raises(ValidationError):
        hold_job(db, tenant_id=tenant_id, job_id=job.id, reason="")


def test_canceled_is_terminal(db, tenant_id):
    job = _paid_job(db, tenant_id)
    job = cancel_job(db, tenant_id=tenant_id, job_id=job.id, reason="customer moved")
    assert job.status == "canceled"
    assert job.canceled_at is not None

    with pytest.raises(InvalidJobStateError):
        resume_job(db, tenant_id=tenant_id, job_id=job.id)
    with pytest.raises(InvalidTransitionError):
        schedule_job(db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 12, 1))


def test_customer_selections_submit_closes_portal(db, tenant_id):
    job = _paid_job(db, tenant_id, areas=TWO_ROOMS)
    assert job.portal_open is True

    save_customer_selections(
        db,
        tenant_id=tenant_id,
        job_id=job.id,
        selections=[CustomerSelection(area_id="living", product="Acme Select", color="Swiss Coffee", sheen="eggshell")],
    )
    with pytest.raises(ValidationError):
        submit_customer_selections(db, tenant_id=tenant_id, job_id=job.id)

    save_customer_selections(
        db,
        tenant_id=tenant_id,
        job_id=job.id,
        selections=[CustomerSelection(area_id="hall", product="Acme Trim Enamel", sheen="semi-gloss")],
    )
    job = submit_customer_selections(db, tenant_id=tenant_id, job_id=job.id)

    assert job.customer_selections_complete is True
    assert job.portal_open is False
    assert get_quote(db, tenant_id=tenant_id, quote_id=job.quote_id).portal_open is False

    with pytest.raises(InvalidJobStateError):
        save_customer_selections(
            db,
            tenant_id=tenant_id,
            job_id=job.id,
            selections=[CustomerSelection(area_id="hall", product="Other")],
        )


def test_selection_for_unknown_area_rejected(db, tenant_id):
    job = _paid_job(db, tenant_id)
    with pytest.raises(ValidationError):
        save_customer_selections(
            db,
            tenant_id=tenant_id,
            job_id=job.id,
            selections=[CustomerSelection(area_id="basement", product="Acme Select")],
        )


def test_stale_job_write_is_rejected(db, tenant_id):
    job = _paid_job(db, tenant_id)

    other = SessionLocal()
    try:
        stale = get_job(other, tenant_id=tenant_id, job_id=job.id)
        other.commit()

        schedule_job(db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 11, 2))

        stale.hold_reason = "racing write"
        with pytest.raises(ConcurrentModificationError):
            apply_job_transition(other, stale, JobStatus.ON_HOLD, actor_user_id=None, action="job_on_hold")
        other.rollback()
    finally:
        other.close()

    assert get_job(db, tenant_id=tenant_id, job_id=job.id).status == "scheduled"


def test_held_job_cannot_be_scheduled_without_a_deposit(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    hold_job(db, tenant_id=tenant_id, job_id=res.job.id, reason="permit")

    with pytest.raises(InvalidTransitionError):
        schedule_job(db, tenant_id=tenant_id, job_id=res.job.id, start_date=date(2026, 11, 2))

    job = get_job(db, tenant_id=tenant_id, job_id=res.job.id)
    assert job.status == "on_hold"
    assert job.deposit_paid is False
    assert job.scheduled_start_date is None


def test_paused_job_cannot_be_started_without_a_schedule(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    pause_job(db, tenant_id=tenant_id, job_id=res.job.id, reason="color consult")

    with pytest.raises(InvalidTransitionError):
        start_job(db, tenant_id=tenant_id, job_id=res.job.id)
    assert get_job(db, tenant_id=tenant_id, job_id=res.job.id).status == "paused"


def test_leaving_hold_only_returns_to_held_from():
    with pytest.raises(InvalidTransitionError):
        assert_job_transition(JobStatus.ON_HOLD, JobStatus.SCHEDULED)
    with pytest.raises(InvalidTransitionError):
        assert_job_transition(JobStatus.PAUSED, JobStatus.SCHEDULED, resume_to=JobStatus.DEPOSIT_PAID)
    assert_job_transition(JobStatus.PAUSED, JobStatus.DEPOSIT_PAID, resume_to=JobStatus.DEPOSIT_PAID)
    assert_job_transition(JobStatus.ON_HOLD, JobStatus.CANCELED)


def test_deposit_landing_on_held_job_keeps_the_hold(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_held_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)
    hold_job(db, tenant_id=tenant_id, job_id=res.job.id, reason="permit")

    reconcile_deposit(db, PaymentSucceeded(reference_id=ref, amount=Decimal("1500.00"), currency="usd"))

    job = get_job(db, tenant_id=tenant_id, job_id=res.job.id)
    assert job.status == "on_hold"
    assert job.deposit_paid is True
    assert job.held_from_status == "deposit_paid"
    assert job.hold_reason == "permit"

    job = resume_job(db, tenant_id=tenant_id, job_id=job.id)
    assert job.status == "deposit_paid"
    job = schedule_job(db, tenant_id=tenant_id, job_id=job.id, start_date=date(2026, 11, 2))
    assert job.status == "scheduled"


def test_deposit_on_canceled_job_rejected(db, tenant_id):
    res = accepted_quote(db, tenant_id)
    ref = f"cs_cancel_{tenant_id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=res.quote.id)
    cancel_job(db, tenant_id=tenant_id, job_id=res.job.id, reason="customer moved")

    with pytest.raises(InvalidJobStateError):
        reconcile_deposit(db, PaymentSucceeded(reference_id=ref, amount=Decimal("1500.00"), currency="usd"))

    job = get_job(db, tenant_id=tenant_id, job_id=res.job.id)
    assert job.status == "canceled"
    assert job.deposit_paid is False
