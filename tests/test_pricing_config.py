# tests/test_pricing_config.py
from __future__ import annotations

from decimal import Decimal

import pytest

from quoteflow.domain.pricing import RateBasedSqftScheme, TurnkeyScheme
from quoteflow.errors import NotFoundError, ValidationError
from quoteflow.services.pricing_config import (
    create_scheme,
    get_scheme_row,
    list_schemes,
    load_scheme,
    seed_default_schemes,
    tenant_rates,
    upsert_contractor_settings,
)


def test_seed_is_idempotent(db, tenant_id):
    first = seed_default_schemes(db, tenant_id=tenant_id)
    second = seed_default_schemes(db, tenant_id=tenant_id)

    assert len(first) == 5
    assert second == []
    kinds = sorted(r.scheme_type for r in list_schemes(db, tenant_id=tenant_id))
    assert kinds == sorted(
        ["turnkey", "flat_rate_unit", "hourly_time_materials", "production_based", "rate_based_sqft"]
    )


def test_scheme_round_trips_as_typed_model(db, tenant_id):
    row = create_scheme(
        db,
        tenant_id=tenant_id,
        name="Interior",
        definition={
            "type": "rate_based_sqft",
            "labor_rates": {"walls": "1.25"},
            "materials": {"coverage": "350", "cost_per_gallon": "40"},
        },
    )
    scheme = load_scheme(get_scheme_row(db, tenant_id=tenant_id, scheme_id=row.id))
    assert isinstance(scheme, RateBasedSqftScheme)
    assert scheme.labor_rates["walls"] == Decimal("1.25")

    with pytest.raises(NotFoundError):
        get_scheme_row(db, tenant_id=tenant_id + 1, scheme_id=row.id)


def test_invalid_scheme_rejected(db, tenant_id):
    with pytest.raises(ValidationError):
        create_scheme(db, tenant_id=tenant_id, name="Bad", definition={"type": "turnkey"})
    with pytest.raises(ValidationError):
        create_scheme(db, tenant_id=tenant_id, name=" ", definition={"type": "turnkey", "rates": {}})


def test_settings_validation(db, tenant_id):
    with pytest.raises(ValidationError):
        upsert_contractor_settings(db, tenant_id=tenant_id, deposit_percent="0")
    with pytest.raises(ValidationError):
        upsert_contractor_settings(db, tenant_id=tenant_id, deposit_percent="120")
    with pytest.raises(ValidationError):
        upsert_contractor_settings(db, tenant_id=tenant_id, markup_percent="-1")
    with pytest.raises(ValidationError):
        upsert_contractor_settings(db, tenant_id=tenant_id, zip_markups={"48x": "2"})


def test_tenant_rates_pick_zip_markup(db, tenant_id):
    upsert_contractor_settings(
        db, tenant_id=tenant_id, markup_percent="12", tax_percent="6", deposit_percent="40", zip_markups={"48": "3"}
    )
    scheme = TurnkeyScheme(rates={"walls": Decimal("3")})

    rates = tenant_rates(db, tenant_id=tenant_id, scheme=scheme, zip_code="48226")
    assert rates.markup_percent == Decimal("12")
    assert rates.zip_markup_percent == Decimal("3")
    assert rates.deposit_percent == Decimal("40")

    elsewhere = tenant_rates(db, tenant_id=tenant_id, scheme=scheme, zip_code="10001")
    assert elsewhere.zip_markup_percent == Decimal("0")
