# quoteflow/models.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

Money = Numeric(12, 2)


# -----------------------------
# Tenant pricing configuration
# -----------------------------
class PricingScheme(Base):
    __tablename__ = "pricing_schemes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)

    name: Mapped[str] = mapped_column(String(160), nullable=False)
    scheme_type: Mapped[str] = mapped_column(String(40), nullable=False)  # turnkey|flat_rate_unit|...
    definition_json: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class ContractorSettings(Base):
    __tablename__ = "contractor_settings"
    __table_args__ = (UniqueConstraint("tenant_id", name="uq_contractor_settings_tenant"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)

    markup_percent: Mapped[Decimal] = mapped_column(Numeric(7, 3), nullable=False, default=Decimal("0"))
    tax_percent: Mapped[Decimal] = mapped_column(Numeric(7, 3), nullable=False, default=Decimal("0"))
    deposit_percent: Mapped[Decimal] = mapped_column(Numeric(7, 3), nullable=False, default=Decimal("50"))
    zip_markups_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # {"981": 5.0, ...}
    allow_zero_price: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Quotes
# -----------------------------
class Quote(Base):
    __tablename__ = "quotes"
    __table_args__ = (
        UniqueConstraint("tenant_id", "quote_number", name="uq_quotes_tenant_number"),
        Index("ix_quotes_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    created_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    quote_number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    job_address: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    zip_code: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)

    pricing_scheme_id: Mapped[int] = mapped_column(Integer, ForeignKey("pricing_schemes.id"), nullable=False)
    product_strategy: Mapped[str] = mapped_column(String(10), nullable=False, default="single")

    areas_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    product_selections_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    totals_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    markup_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    zip_markup_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    deposit_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    selected_tier: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    portal_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    revision_of_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("quotes.id"), nullable=True)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


# -----------------------------
# Jobs
# -----------------------------
class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        UniqueConstraint("quote_id", name="uq_jobs_quote"),
        UniqueConstraint("tenant_id", "job_number", name="uq_jobs_tenant_number"),
        Index("ix_jobs_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    quote_id: Mapped[int] = mapped_column(Integer, ForeignKey("quotes.id"), nullable=False)

    job_number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="accepted")
    held_from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    hold_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    deposit_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    deposit_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deposit_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    balance_remaining: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    final_payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    final_payment_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    scheduled_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    scheduled_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    crew_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actual_start_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completion_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    area_progress_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    portal_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    portal_opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    portal_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    portal_locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    customer_selections_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_selections_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    customer_selections_submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


# -----------------------------
# Payments
# -----------------------------
class PaymentRecord(Base):
    """
    One row per gateway checkout session. `reference_id` is the gateway's
    opaque id and the idempotency key for reconciliation.
    """

    __tablename__ = "payment_records"
    __table_args__ = (
        UniqueConstraint("reference_id", name="uq_payment_records_reference"),
        Index("ix_payment_records_tenant_quote", "tenant_id", "quote_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quote_id: Mapped[int] = mapped_column(Integer, ForeignKey("quotes.id"), nullable=False)
    job_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("jobs.id"), nullable=True)

    kind: Mapped[str] = mapped_column(String(10), nullable=False)  # deposit|final
    reference_id: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="pending")  # pending|paid|failed

    received_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


# -----------------------------
# Audit + outbox
# -----------------------------
class AuditLogEntry(Base):
    __tablename__ = "audit_log_entries"
    __table_args__ = (
        Index("ix_audit_log_entity", "tenant_id", "entity_type", "entity_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    action: Mapped[str] = mapped_column(String(80), nullable=False)
    category: Mapped[str] = mapped_column(String(40), nullable=False, default="workflow")
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(80), nullable=False)

    before_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    after_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_immutable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class NotificationEvent(Base):
    __tablename__ = "notification_events"
    __table_args__ = (Index("ix_notification_events_pending", "delivered_at", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)

    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(80), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # set by the dispatcher that owns delivery; a stale claim is retaken after the lease
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
