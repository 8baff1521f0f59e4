# quoteflow/schemas.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# -------------------- Pricing configuration --------------------

class PricingSchemeCreate(BaseModel):
    name: str
    definition: dict[str, Any]


class PricingSchemeOut(BaseModel):
    id: int
    name: str
    scheme_type: str
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


class ContractorSettingsIn(BaseModel):
    markup_percent: Optional[Decimal] = None
    tax_percent: Optional[Decimal] = None
    deposit_percent: Optional[Decimal] = None
    zip_markups: Optional[dict[str, Decimal]] = None
    allow_zero_price: Optional[bool] = None
    currency: Optional[str] = None


# -------------------- Quotes --------------------

class CustomerIn(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    zip_code: Optional[str] = None


class QuoteCreate(BaseModel):
    pricing_scheme_id: int
    product_strategy: str = "single"
    areas: list[dict[str, Any]] = Field(default_factory=list)
    product_selections: list[dict[str, Any]] = Field(default_factory=list)
    customer: CustomerIn = Field(default_factory=CustomerIn)


class QuoteAreasUpdate(BaseModel):
    areas: list[dict[str, Any]]
    product_selections: Optional[list[dict[str, Any]]] = None
    customer: Optional[CustomerIn] = None


class QuoteAccept(BaseModel):
    tier: Optional[str] = None


class QuoteDecline(BaseModel):
    reason: Optional[str] = None


# -------------------- Jobs --------------------

class JobSchedule(BaseModel):
    scheduled_start_date: date
    scheduled_end_date: Optional[date] = None
    crew: Optional[list[str]] = None
    reason: Optional[str] = None


class AreaProgressUpdate(BaseModel):
    status: str


class JobComplete(BaseModel):
    completion_notes: str
    final_invoice_amount: Optional[Decimal] = None


class JobReason(BaseModel):
    reason: str


class CustomerSelectionIn(BaseModel):
    area_id: str
    product: str
    color: str = ""
    sheen: str = ""
    notes: Optional[str] = None


class CustomerSelectionsSave(BaseModel):
    selections: list[CustomerSelectionIn]


# -------------------- Payments --------------------

class PendingPaymentCreate(BaseModel):
    kind: str
    reference_id: str
    quote_id: Optional[int] = None
    job_id: Optional[int] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class ReconciliationOut(BaseModel):
    applied: bool
    idempotent_replay: bool
    payment: dict[str, Any]
    job: Optional[dict[str, Any]] = None


# -------------------- Audit --------------------

class AuditLogEntryOut(BaseModel):
    id: int
    tenant_id: int
    actor_user_id: Optional[int] = None
    action: str
    category: str
    entity_type: str
    entity_id: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
