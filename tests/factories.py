# tests/factories.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from quoteflow.services.payment_reconciliation import (
    PaymentSucceeded,
    reconcile_deposit,
    register_pending_payment,
)
from quoteflow.services.pricing_config import create_scheme, upsert_contractor_settings
from quoteflow.services.quote_service import CustomerInfo, accept_quote, create_quote, send_quote

# Living room walls at 7.50/sqft turnkey: 3000.00 total, 1500.00 deposit at 50%.
TURNKEY = {"type": "turnkey", "rates": {"walls": "7.50", "trim": "2.00"}}

LIVING_ROOM = [
    {
        "id": "living",
        "name": "Living Room",
        "surfaces": [{"id": "walls", "category": "walls", "quantity": "400"}],
    }
]

TWO_ROOMS = LIVING_ROOM + [
    {
        "id": "hall",
        "name": "Hallway",
        "surfaces": [{"id": "trim", "category": "trim", "quantity": "50", "unit": "linear_ft"}],
    }
]

CUSTOMER = CustomerInfo(name="Dana Whitfield", email="dana@example.com", zip_code="48201")


def setup_tenant(
    db,
    tenant_id: int,
    *,
    definition: Optional[dict] = None,
    markup: str = "0",
    tax: str = "0",
    deposit: str = "50",
    zip_markups: Optional[dict] = None,
) -> int:
    """Contractor settings plus one active scheme; returns the scheme id."""
    upsert_contractor_settings(
        db,
        tenant_id=tenant_id,
        markup_percent=markup,
        tax_percent=tax,
        deposit_percent=deposit,
        zip_markups=zip_markups or {},
    )
    row = create_scheme(db, tenant_id=tenant_id, name="Standard", definition=definition or TURNKEY)
    return int(row.id)


def make_quote(
    db,
    tenant_id: int,
    scheme_id: int,
    *,
    areas: Optional[list[dict[str, Any]]] = None,
    strategy: str = "single",
    selections: Optional[list[dict[str, Any]]] = None,
    customer: Optional[CustomerInfo] = CUSTOMER,
):
    return create_quote(
        db,
        tenant_id=tenant_id,
        actor_user_id=1,
        areas=areas if areas is not None else LIVING_ROOM,
        pricing_scheme_id=scheme_id,
        product_strategy=strategy,
        product_selections=selections or [],
        customer=customer,
    )


def accepted_quote(db, tenant_id: int, *, areas=None):
    """Draft -> sent -> accepted; returns the AcceptResult."""
    scheme_id = setup_tenant(db, tenant_id)
    q = make_quote(db, tenant_id, scheme_id, areas=areas)
    send_quote(db, tenant_id=tenant_id, quote_id=q.id, actor_user_id=1)
    return accept_quote(db, tenant_id=tenant_id, quote_id=q.id)


def pay_deposit(db, tenant_id: int, quote, *, reference_id: Optional[str] = None, amount: Optional[Decimal] = None):
    ref = reference_id or f"cs_dep_{tenant_id}_{quote.id}"
    register_pending_payment(db, tenant_id=tenant_id, kind="deposit", reference_id=ref, quote_id=quote.id)
    event = PaymentSucceeded(
        reference_id=ref,
        amount=amount if amount is not None else quote.deposit_amount,
        currency="usd",
        metadata={"tenant_id": tenant_id, "quote_id": quote.id},
    )
    return reconcile_deposit(db, event)
