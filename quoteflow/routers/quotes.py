from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal, require_contractor
from ..db import get_db
from ..schemas import QuoteAccept, QuoteAreasUpdate, QuoteCreate, QuoteDecline
from ..services.job_service import job_to_dict
from ..services.notifications import dispatch_in_new_session
from ..services.quote_service import (
    CustomerInfo,
    accept_quote,
    archive_quote,
    create_quote,
    deactivate_quote,
    decline_quote,
    get_quote,
    list_quotes,
    quote_to_dict,
    record_customer_view,
    revise_quote,
    send_quote,
    update_quote_areas,
)

router = APIRouter(prefix="/quotes", tags=["quotes"])


def _customer(c) -> CustomerInfo | None:
    if c is None:
        return None
    return CustomerInfo(name=c.name, email=c.email, phone=c.phone, address=c.address, zip_code=c.zip_code)


@router.post("", response_model=dict)
def post_quote(payload: QuoteCreate, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    q = create_quote(
        db,
        tenant_id=p.tenant_id,
        actor_user_id=p.user_id,
        areas=payload.areas,
        pricing_scheme_id=payload.pricing_scheme_id,
        product_strategy=payload.product_strategy,
        product_selections=payload.product_selections,
        customer=_customer(payload.customer),
    )
    return quote_to_dict(q)


@router.get("", response_model=list[dict])
def get_quotes(
    status: str | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    rows = list_quotes(db, tenant_id=p.tenant_id, status=status, include_inactive=include_inactive, limit=limit)
    return [quote_to_dict(q) for q in rows]


@router.get("/{quote_id}", response_model=dict)
def get_one(quote_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return quote_to_dict(get_quote(db, tenant_id=p.tenant_id, quote_id=quote_id))


@router.put("/{quote_id}/areas", response_model=dict)
def put_areas(
    quote_id: int,
    payload: QuoteAreasUpdate,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    q = update_quote_areas(
        db,
        tenant_id=p.tenant_id,
        quote_id=quote_id,
        areas=payload.areas,
        product_selections=payload.product_selections,
        customer=_customer(payload.customer),
        actor_user_id=p.user_id,
    )
    return quote_to_dict(q)


@router.post("/{quote_id}/send", response_model=dict)
def post_send(
    quote_id: int,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_contractor),
):
    q = send_quote(db, tenant_id=p.tenant_id, quote_id=quote_id, actor_user_id=p.user_id)
    background.add_task(dispatch_in_new_session)
    return quote_to_dict(q)


@router.post("/{quote_id}/view", response_model=dict)
def post_view(quote_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return quote_to_dict(record_customer_view(db, tenant_id=p.tenant_id, quote_id=quote_id))


@router.post("/{quote_id}/accept", response_model=dict)
def post_accept(
    quote_id: int,
    payload: QuoteAccept,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    res = accept_quote(db, tenant_id=p.tenant_id, quote_id=quote_id, tier=payload.tier, actor_user_id=p.user_id)
    background.add_task(dispatch_in_new_session)
    return {"quote": quote_to_dict(res.quote), "job": job_to_dict(res.job)}


@router.post("/{quote_id}/decline", response_model=dict)
def post_decline(
    quote_id: int,
    payload: QuoteDecline,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    q = decline_quote(db, tenant_id=p.tenant_id, quote_id=quote_id, reason=payload.reason, actor_user_id=p.user_id)
    background.add_task(dispatch_in_new_session)
    return quote_to_dict(q)


@router.post("/{quote_id}/archive", response_model=dict)
def post_archive(quote_id: int, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return quote_to_dict(archive_quote(db, tenant_id=p.tenant_id, quote_id=quote_id, actor_user_id=p.user_id))


@router.post("/{quote_id}/revise", response_model=dict)
def post_revise(quote_id: int, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return quote_to_dict(revise_quote(db, tenant_id=p.tenant_id, quote_id=quote_id, actor_user_id=p.user_id))


@router.delete("/{quote_id}", response_model=dict)
def delete_quote(quote_id: int, db: Session = Depends(get_db), p: Principal = Depends(require_contractor)):
    return quote_to_dict(deactivate_quote(db, tenant_id=p.tenant_id, quote_id=quote_id, actor_user_id=p.user_id))
