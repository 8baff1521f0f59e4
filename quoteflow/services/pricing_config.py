# quoteflow/services/pricing_config.py
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..db import unit_of_work
from ..domain.aggregation import TenantRates, zip_markup_for
from ..domain.pricing import SCHEME_TYPES, SchemeDefinition, parse_scheme, scheme_to_dict
from ..errors import NotFoundError, ValidationError
from ..models import ContractorSettings, PricingScheme


def _now() -> datetime:
    return datetime.utcnow()


def _dec(v: Any, field: str) -> Decimal:
    try:
        return Decimal(str(v))
    except (ArithmeticError, ValueError) as e:
        raise ValidationError(field, "must be a number") from e


# ---- Schemes ----


def create_scheme(
    db: Session,
    *,
    tenant_id: int,
    name: str,
    definition: Mapping[str, Any],
) -> PricingScheme:
    scheme = parse_scheme(definition)
    if not (name or "").strip():
        raise ValidationError("name", "required")
    with unit_of_work(db, entity="pricing_scheme"):
        row = PricingScheme(
            tenant_id=int(tenant_id),
            name=name.strip(),
            scheme_type=scheme.type,
            definition_json=json.dumps(scheme_to_dict(scheme), sort_keys=True),
            is_active=True,
            created_at=_now(),
            updated_at=_now(),
        )
        db.add(row)
        db.flush()
    return row


def get_scheme_row(db: Session, *, tenant_id: int, scheme_id: int) -> PricingScheme:
    row = db.scalar(
        select(PricingScheme).where(PricingScheme.id == int(scheme_id), PricingScheme.tenant_id == int(tenant_id))
    )
    if row is None:
        raise NotFoundError("pricing_scheme", scheme_id)
    return row


def load_scheme(row: PricingScheme) -> SchemeDefinition:
    scheme = parse_scheme(json.loads(row.definition_json or "{}"))
    if scheme.type != row.scheme_type:
        raise ValidationError("pricing_scheme.type", f"stored type {row.scheme_type} != definition {scheme.type}")
    return scheme


def list_schemes(db: Session, *, tenant_id: int, active_only: bool = True) -> list[PricingScheme]:
    q = select(PricingScheme).where(PricingScheme.tenant_id == int(tenant_id))
    if active_only:
        q = q.where(PricingScheme.is_active.is_(True))
    return list(db.scalars(q.order_by(PricingScheme.id.asc())).all())


# ---- Contractor settings ----


def get_contractor_settings(db: Session, *, tenant_id: int) -> Optional[ContractorSettings]:
    return db.scalar(select(ContractorSettings).where(ContractorSettings.tenant_id == int(tenant_id)))


def upsert_contractor_settings(
    db: Session,
    *,
    tenant_id: int,
    markup_percent: Any = None,
    tax_percent: Any = None,
    deposit_percent: Any = None,
    zip_markups: Optional[Mapping[str, Any]] = None,
    allow_zero_price: Optional[bool] = None,
    currency: Optional[str] = None,
) -> ContractorSettings:
    with unit_of_work(db, entity="contractor_settings"):
        row = get_contractor_settings(db, tenant_id=tenant_id)
        if row is None:
            row = ContractorSettings(
                tenant_id=int(tenant_id),
                deposit_percent=_dec(settings.default_deposit_percent, "deposit_percent"),
                allow_zero_price=bool(settings.allow_zero_price),
                currency=settings.default_currency,
                created_at=_now(),
            )
            db.add(row)

        for field, value in (
            ("markup_percent", markup_percent),
            ("tax_percent", tax_percent),
        ):
            if value is not None:
                d = _dec(value, field)
                if d < 0:
                    raise ValidationError(field, "must not be negative")
                setattr(row, field, d)

        if deposit_percent is not None:
            d = _dec(deposit_percent, "deposit_percent")
            if not (Decimal("0") < d <= Decimal("100")):
                raise ValidationError("deposit_percent", "must be greater than 0 and at most 100")
            row.deposit_percent = d

        if zip_markups is not None:
            clean: dict[str, str] = {}
            for prefix, pct in zip_markups.items():
                p = str(prefix).strip()
                if not p.isdigit():
                    raise ValidationError(f"zip_markups.{prefix}", "prefix must be digits")
                d = _dec(pct, f"zip_markups.{prefix}")
                if d < 0:
                    raise ValidationError(f"zip_markups.{prefix}", "must not be negative")
                clean[p] = str(d)
            row.zip_markups_json = json.dumps(clean, sort_keys=True)

        if allow_zero_price is not None:
            row.allow_zero_price = bool(allow_zero_price)
        if currency:
            row.currency = currency.strip().lower()

        row.updated_at = _now()
        db.flush()
    return row


def tenant_rates(
    db: Session,
    *,
    tenant_id: int,
    scheme: SchemeDefinition,
    zip_code: Optional[str],
) -> TenantRates:
    cs = get_contractor_settings(db, tenant_id=tenant_id)
    if cs is None:
        return TenantRates(
            scheme=scheme,
            deposit_percent=_dec(settings.default_deposit_percent, "deposit_percent"),
            allow_zero_price=bool(settings.allow_zero_price),
        )
    zip_markups = json.loads(cs.zip_markups_json) if cs.zip_markups_json else {}
    return TenantRates(
        scheme=scheme,
        markup_percent=Decimal(cs.markup_percent or 0),
        zip_markup_percent=zip_markup_for(zip_markups, zip_code),
        tax_percent=Decimal(cs.tax_percent or 0),
        deposit_percent=Decimal(cs.deposit_percent or 0),
        allow_zero_price=bool(cs.allow_zero_price),
    )


def tenant_currency(db: Session, *, tenant_id: int) -> str:
    cs = get_contractor_settings(db, tenant_id=tenant_id)
    return (cs.currency if cs is not None else settings.default_currency).lower()


# ---- Seed ----

DEFAULT_SCHEMES: dict[str, dict[str, Any]] = {
    "turnkey": {
        "type": "turnkey",
        "rates": {"walls": "3.50", "ceiling": "3.00", "trim": "2.25", "doors": "95.00"},
    },
    "flat_rate_unit": {
        "type": "flat_rate_unit",
        "unit_prices": {"doors": "85.00", "windows": "45.00", "cabinets": "120.00", "rooms": "450.00"},
    },
    "hourly_time_materials": {
        "type": "hourly_time_materials",
        "hourly_rate": "55.00",
        "crew_size": 2,
        "hours_per_unit": {"walls": "0.010", "ceiling": "0.012", "trim": "0.05"},
        "materials": {"coverage": "350", "cost_per_gallon": "40.00", "coats": 2},
    },
    "production_based": {
        "type": "production_based",
        "hourly_rate": "50.00",
        "production_rates": {"walls": "150", "ceiling": "120", "trim": "40"},
        "materials": {"coverage": "350", "cost_per_gallon": "40.00", "coats": 2},
    },
    "rate_based_sqft": {
        "type": "rate_based_sqft",
        "labor_rates": {"walls": "1.25", "ceiling": "1.10", "trim": "1.75"},
        "materials": {"coverage": "350", "cost_per_gallon": "40.00", "coats": 2},
    },
}


def seed_default_schemes(db: Session, *, tenant_id: int) -> list[PricingScheme]:
    """Idempotent: a scheme kind the tenant already has is left alone."""
    existing = {r.scheme_type for r in list_schemes(db, tenant_id=tenant_id, active_only=False)}
    out: list[PricingScheme] = []
    for kind in SCHEME_TYPES:
        if kind in existing:
            continue
        name = kind.replace("_", " ").title()
        out.append(create_scheme(db, tenant_id=tenant_id, name=name, definition=DEFAULT_SCHEMES[kind]))
    if get_contractor_settings(db, tenant_id=tenant_id) is None:
        upsert_contractor_settings(db, tenant_id=tenant_id)
    return out
