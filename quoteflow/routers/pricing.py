from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Principal, require_contractor
from ..db import get_db
from ..schemas import ContractorSettingsIn, PricingSchemeCreate, PricingSchemeOut
from ..services.pricing_config import (
    create_scheme,
    list_schemes,
    seed_default_schemes,
    upsert_contractor_settings,
)

router = APIRouter(prefix="/pricing", tags=["pricing"])


@router.get("/schemes", response_model=list[PricingSchemeOut])
def get_schemes(db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return list_schemes(db, tenant_id=p.tenant_id)


@router.post("/schemes", response_model=PricingSchemeOut)
def post_scheme(
    payload: PricingSchemeCreate,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    return create_scheme(db, tenant_id=p.tenant_id, name=payload.name, definition=payload.definition)


@router.post("/schemes/seed", response_model=list[PricingSchemeOut])
def seed_schemes(db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    seed_default_schemes(db, tenant_id=p.tenant_id)
    return list_schemes(db, tenant_id=p.tenant_id)


@router.put("/settings", response_model=dict)
def put_settings(
    payload: ContractorSettingsIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    row = upsert_contractor_settings(db, tenant_id=p.tenant_id, **payload.model_dump())
    return {
        "tenant_id": row.tenant_id,
        "markup_percent": str(row.markup_percent),
        "tax_percent": str(row.tax_percent),
        "deposit_percent": str(row.deposit_percent),
        "allow_zero_price": bool(row.allow_zero_price),
        "currency": row.currency,
    }
