# quoteflow/services/quote_service.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..db import unit_of_work
from ..domain.aggregation import ProductSelection, QuoteTotals, aggregate
from ..domain.audit import audit_write
from ..domain.events import NotificationType, emit_notification
from ..domain.pricing import Area, ProductStrategy, Tier, parse_areas
from ..domain.quote_lifecycle import (
    EDITABLE_STATUSES,
    PAST_VIEW,
    QuoteStatus,
    assert_quote_transition,
    parse_quote_status,
)
from ..errors import ConcurrentModificationError, NotFoundError, QuoteNotEditableError, ValidationError
from ..models import Job, Quote
from .job_service import ensure_job_for_quote
from .numbering import insert_quote_with_number
from .pricing_config import get_scheme_row, load_scheme, tenant_currency, tenant_rates

log = logging.getLogger("quoteflow.quotes")

_selections_adapter: TypeAdapter = TypeAdapter(list[ProductSelection])


def _now() -> datetime:
    return datetime.utcnow()


@dataclass(frozen=True)
class CustomerInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    zip_code: Optional[str] = None


@dataclass(frozen=True)
class AcceptResult:
    quote: Quote
    job: Job


# ---- (de)serialization of the stored aggregate ----


def parse_selections(data: Sequence[Mapping[str, Any]]) -> list[ProductSelection]:
    try:
        return _selections_adapter.validate_python(list(data))
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(x) for x in first.get("loc", ()))
        raise ValidationError(f"product_selections.{loc}" if loc else "product_selections", str(first.get("msg"))) from e


def _parse_strategy(raw: Any) -> ProductStrategy:
    try:
        return ProductStrategy(str(raw).strip().lower())
    except ValueError:
        raise ValidationError("product_strategy", "must be 'gbb' or 'single'") from None


def _areas_of(q: Quote) -> list[Area]:
    return parse_areas(json.loads(q.areas_json or "[]"))


def _selections_of(q: Quote) -> list[ProductSelection]:
    return parse_selections(json.loads(q.product_selections_json or "[]"))


def _check_area_ids(areas: Sequence[Area]) -> None:
    seen: set[str] = set()
    for ai, a in enumerate(areas):
        if a.id in seen:
            raise ValidationError(f"areas[{ai}].id", f"duplicate area id '{a.id}'")
        seen.add(a.id)
        sids: set[str] = set()
        for si, s in enumerate(a.surfaces):
            if s.id in sids:
                raise ValidationError(f"areas[{ai}].surfaces[{si}].id", f"duplicate surface id '{s.id}'")
            sids.add(s.id)


def quote_snapshot(q: Quote) -> dict[str, Any]:
    return {
        "status": q.status,
        "subtotal": str(q.subtotal),
        "markup_amount": str(q.markup_amount),
        "zip_markup_amount": str(q.zip_markup_amount),
        "tax_amount": str(q.tax_amount),
        "total": str(q.total),
        "deposit_amount": str(q.deposit_amount),
        "selected_tier": q.selected_tier,
        "is_active": bool(q.is_active),
    }


def quote_to_dict(q: Quote) -> dict[str, Any]:
    return {
        "id": q.id,
        "tenant_id": q.tenant_id,
        "quote_number": q.quote_number,
        **quote_snapshot(q),
        "currency": q.currency,
        "customer_name": q.customer_name,
        "customer_email": q.customer_email,
        "customer_phone": q.customer_phone,
        "job_address": q.job_address,
        "zip_code": q.zip_code,
        "pricing_scheme_id": q.pricing_scheme_id,
        "product_strategy": q.product_strategy,
        "areas": json.loads(q.areas_json or "[]"),
        "product_selections": json.loads(q.product_selections_json or "[]"),
        "totals": json.loads(q.totals_json) if q.totals_json else None,
        "portal_open": bool(q.portal_open),
        "revision_of_id": q.revision_of_id,
        "sent_at": q.sent_at.isoformat() if q.sent_at else None,
        "viewed_at": q.viewed_at.isoformat() if q.viewed_at else None,
        "accepted_at": q.accepted_at.isoformat() if q.accepted_at else None,
        "declined_at": q.declined_at.isoformat() if q.declined_at else None,
        "archived_at": q.archived_at.isoformat() if q.archived_at else None,
        "version": q.version,
    }


# ---- Pricing ----


def price_quote(db: Session, q: Quote, *, require_complete: bool = True) -> QuoteTotals:
    row = get_scheme_row(db, tenant_id=q.tenant_id, scheme_id=q.pricing_scheme_id)
    if not row.is_active:
        raise ValidationError("pricing_scheme_id", f"pricing scheme {row.id} is inactive")
    rates = tenant_rates(db, tenant_id=q.tenant_id, scheme=load_scheme(row), zip_code=q.zip_code)
    return aggregate(
        rates,
        _areas_of(q),
        _parse_strategy(q.product_strategy),
        _selections_of(q),
        require_complete=require_complete,
    )


def _store_totals(q: Quote, totals: QuoteTotals, tier: Optional[Tier] = None) -> None:
    tt = totals.for_tier(tier)
    q.totals_json = json.dumps(totals.as_dict(), sort_keys=True)
    if tt is None:
        zero = Decimal("0.00")
        q.subtotal = q.markup_amount = q.zip_markup_amount = q.tax_amount = zero
        q.total = q.deposit_amount = zero
        return
    q.subtotal = tt.subtotal
    q.markup_amount = tt.markup
    q.zip_markup_amount = tt.zip_markup
    q.tax_amount = tt.tax
    q.total = tt.total
    q.deposit_amount = tt.deposit


def _flush(db: Session, q: Quote) -> None:
    q.updated_at = _now()
    db.add(q)
    try:
        db.flush()
    except StaleDataError as e:
        raise ConcurrentModificationError("quote", q.id) from e


def _transition(
    db: Session,
    q: Quote,
    target: QuoteStatus,
    *,
    actor_user_id: Optional[int],
    action: str,
    before: Optional[dict[str, Any]] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Quote:
    current = parse_quote_status(q.status)
    assert_quote_transition(current, target)
    before = before if before is not None else quote_snapshot(q)
    q.status = target.value
    _flush(db, q)
    audit_write(
        db,
        tenant_id=q.tenant_id,
        actor_user_id=actor_user_id,
        action=action,
        entity_type="quote",
        entity_id=q.id,
        before=before,
        after=quote_snapshot(q),
        metadata={"from": current.value, "to": target.value, "quote_number": q.quote_number, **(metadata or {})},
    )
    log.info(
        "quote_transition",
        extra={"event": action, "tenant_id": q.tenant_id, "quote_id": q.id, "user_id": actor_user_id},
    )
    return q


def _assert_active(q: Quote) -> None:
    if not q.is_active:
        raise ValidationError("quote_id", f"quote {q.quote_number} has been withdrawn")


# ---- Loading ----


def get_quote(db: Session, *, tenant_id: int, quote_id: int) -> Quote:
    q = db.scalar(
        select(Quote)
        .where(Quote.id == int(quote_id), Quote.tenant_id == int(tenant_id))
        .execution_options(populate_existing=True)
    )
    if q is None:
        raise NotFoundError("quote", quote_id)
    return q


def list_quotes(
    db: Session,
    *,
    tenant_id: int,
    status: Optional[str] = None,
    include_inactive: bool = False,
    limit: int = 100,
) -> list[Quote]:
    stmt = select(Quote).where(Quote.tenant_id == int(tenant_id))
    if status:
        stmt = stmt.where(Quote.status == parse_quote_status(status).value)
    if not include_inactive:
        stmt = stmt.where(Quote.is_active.is_(True))
    return list(db.scalars(stmt.order_by(Quote.id.desc()).limit(max(1, min(int(limit), 500)))).all())


# ---- Operations ----


def create_quote(
    db: Session,
    *,
    tenant_id: int,
    actor_user_id: Optional[int],
    areas: Sequence[Mapping[str, Any]],
    pricing_scheme_id: int,
    product_strategy: str,
    product_selections: Sequence[Mapping[str, Any]] = (),
    customer: Optional[CustomerInfo] = None,
) -> Quote:
    parsed_areas = parse_areas(areas)
    _check_area_ids(parsed_areas)
    strategy = _parse_strategy(product_strategy)
    selections = parse_selections(product_selections)
    customer = customer or CustomerInfo()

    with unit_of_work(db, entity="quote"):
        # fail fast on a foreign or missing scheme before allocating a number
        get_scheme_row(db, tenant_id=tenant_id, scheme_id=pricing_scheme_id)
        currency = tenant_currency(db, tenant_id=tenant_id)
        now = _now()

        def build(number: str) -> Quote:
            return Quote(
                tenant_id=int(tenant_id),
                created_by_user_id=actor_user_id,
                quote_number=number,
                status=QuoteStatus.DRAFT.value,
                customer_name=customer.name,
                customer_email=customer.email,
                customer_phone=customer.phone,
                job_address=customer.address,
                zip_code=customer.zip_code,
                pricing_scheme_id=int(pricing_scheme_id),
                product_strategy=strategy.value,
                areas_json=json.dumps([a.model_dump(mode="json") for a in parsed_areas]),
                product_selections_json=json.dumps([s.model_dump(mode="json") for s in selections]),
                currency=currency,
                created_at=now,
                updated_at=now,
            )

        q = insert_quote_with_number(db, tenant_id=tenant_id, build=build)
        _store_totals(q, price_quote(db, q, require_complete=False))
        _flush(db, q)

        audit_write(
            db,
            tenant_id=q.tenant_id,
            actor_user_id=actor_user_id,
            action="quote_created",
            entity_type="quote",
            entity_id=q.id,
            after=quote_snapshot(q),
            metadata={"quote_number": q.quote_number},
        )
    log.info("quote_created", extra={"event": "quote_created", "tenant_id": q.tenant_id, "quote_id": q.id})
    return q


def update_quote_areas(
    db: Session,
    *,
    tenant_id: int,
    quote_id: int,
    areas: Sequence[Mapping[str, Any]],
    product_selections: Optional[Sequence[Mapping[str, Any]]] = None,
    customer: Optional[CustomerInfo] = None,
    actor_user_id: Optional[int] = None,
) -> Quote:
    parsed_areas = parse_areas(areas)
    _check_area_ids(parsed_areas)
    selections = parse_selections(product_selections) if product_selections is not None else None

    with unit_of_work(db, entity="quote", entity_id=quote_id):
        q = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
        _assert_active(q)
        status = parse_quote_status(q.status)
        if status not in EDITABLE_STATUSES:
            raise QuoteNotEditableError(status.value)

        before = quote_snapshot(q)
        q.areas_json = json.dumps([a.model_dump(mode="json") for a in parsed_areas])
        if selections is not None:
            q.product_selections_json = json.dumps([s.model_dump(mode="json") for s in selections])
        if customer is not None:
            q.customer_name = customer.name
            q.customer_email = customer.email
            q.customer_phone = customer.phone
            q.job_address = customer.address
            q.zip_code = customer.zip_code

        _store_totals(q, price_quote(db, q, require_complete=False))
        _flush(db, q)
        audit_write(
            db,
            tenant_id=q.tenant_id,
            actor_user_id=actor_user_id,
            action="quote_updated",
            entity_type="quote",
            entity_id=q.id,
            before=before,
            after=quote_snapshot(q),
        )
    return q


def _check_sendable(q: Quote, totals: QuoteTotals) -> None:
    if not (q.customer_name or "").strip():
        raise ValidationError("customer_name", "required before sending")
    if not ((q.customer_email or "").strip() or (q.customer_phone or "").strip()):
        raise ValidationError("customer_email", "an email or phone number is required before sending")

    areas = _areas_of(q)
    if not any(a.surfaces for a in areas):
        raise ValidationError("areas", "at least one area with a surface is required before sending")
    if totals.default is None or (totals.default.total <= 0 and not totals.allow_zero_price):
        raise ValidationError("total", "quote total must be greater than 0")


def send_quote(db: Session, *, tenant_id: int, quote_id: int, actor_user_id: Optional[int] = None) -> Quote:
    with unit_of_work(db, entity="quote", entity_id=quote_id):
        q = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
        _assert_active(q)
        assert_quote_transition(parse_quote_status(q.status), QuoteStatus.SENT)

        before = quote_snapshot(q)
        # priced again against current rates: the sent snapshot is what the customer accepts
        totals = price_quote(db, q)
        _check_sendable(q, totals)
        _store_totals(q, totals)
        q.sent_at = _now()

        _transition(db, q, QuoteStatus.SENT, actor_user_id=actor_user_id, action="quote_sent", before=before)
        emit_notification(
            db,
            tenant_id=q.tenant_id,
            event_type=NotificationType.QUOTE_SENT,
            entity_type="quote",
            entity_id=q.id,
            payload={
                "quote_number": q.quote_number,
                "customer_email": q.customer_email,
                "total": str(q.total),
            },
        )
    return q


def record_customer_view(db: Session, *, tenant_id: int, quote_id: int) -> Quote:
    """First portal open moves sent -> viewed. Later opens change nothing."""
    with unit_of_work(db, entity="quote", entity_id=quote_id):
        q = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
        _assert_active(q)
        status = parse_quote_status(q.status)
        if q.viewed_at is not None or status in PAST_VIEW:
            log.info("quote_view_repeat", extra={"event": "quote_view_repeat", "quote_id": q.id})
            return q

        q.viewed_at = _now()
        _transition(db, q, QuoteStatus.VIEWED, actor_user_id=None, action="quote_viewed")
    return q


def accept_quote(
    db: Session,
    *,
    tenant_id: int,
    quote_id: int,
    tier: Optional[str] = None,
    actor_user_id: Optional[int] = None,
) -> AcceptResult:
    """
    Customer accepts. Records the chosen tier and creates the job in the same
    transaction; there is no separate step for the caller to remember.
    """
    with unit_of_work(db, entity="quote", entity_id=quote_id):
        q = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
        _assert_active(q)
        assert_quote_transition(parse_quote_status(q.status), QuoteStatus.ACCEPTED)

        totals_raw = json.loads(q.totals_json or "{}")
        priced_tiers = {Tier(t) for t in (totals_raw.get("tiers") or {})}
        strategy = _parse_strategy(q.product_strategy)

        if tier is None:
            if strategy == ProductStrategy.GBB:
                raise ValidationError("tier", "choose good, better or best")
            chosen = next(iter(priced_tiers)) if priced_tiers else None
        else:
            try:
                chosen = Tier(str(tier).strip().lower())
            except ValueError:
                raise ValidationError("tier", "must be good, better or best") from None
        if chosen is None or chosen not in priced_tiers:
            raise ValidationError("tier", f"'{tier}' is not priced on this quote")

        before = quote_snapshot(q)
        tt = totals_raw["tiers"][chosen.value]
        q.selected_tier = chosen.value
        q.subtotal = Decimal(tt["subtotal"])
        q.markup_amount = Decimal(tt["markup"])
        q.zip_markup_amount = Decimal(tt["zip_markup"])
        q.tax_amount = Decimal(tt["tax"])
        q.total = Decimal(tt["total"])
        q.deposit_amount = Decimal(tt["deposit"])
        q.accepted_at = _now()

        _transition(
            db, q, QuoteStatus.ACCEPTED,
            actor_user_id=actor_user_id, action="quote_accepted",
            before=before, metadata={"tier": chosen.value},
        )
        job = ensure_job_for_quote(db, q, actor_user_id=actor_user_id)

        emit_notification(
            db,
            tenant_id=q.tenant_id,
            event_type=NotificationType.QUOTE_ACCEPTED,
            entity_type="quote",
            entity_id=q.id,
            payload={
                "quote_number": q.quote_number,
                "job_number": job.job_number,
                "tier": chosen.value,
                "deposit_amount": str(q.deposit_amount),
            },
        )
    return AcceptResult(quote=q, job=job)


def decline_quote(
    db: Session,
    *,
    tenant_id: int,
    quote_id: int,
    reason: Optional[str] = None,
    actor_user_id: Optional[int] = None,
) -> Quote:
    with unit_of_work(db, entity="quote", entity_id=quote_id):
        q = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
        _assert_active(q)
        assert_quote_transition(parse_quote_status(q.status), QuoteStatus.DECLINED)
        q.declined_at = _now()
        q.decline_reason = (reason or "").strip() or None
        _transition(
            db, q, QuoteStatus.DECLINED,
            actor_user_id=actor_user_id, action="quote_declined",
            metadata={"reason": q.decline_reason},
        )
        emit_notification(
            db,
            tenant_id=q.tenant_id,
            event_type=NotificationType.QUOTE_DECLINED,
            entity_type="quote",
            entity_id=q.id,
            payload={"quote_number": q.quote_number, "reason": q.decline_reason},
        )
    return q


def archive_quote(db: Session, *, tenant_id: int, quote_id: int, actor_user_id: Optional[int] = None) -> Quote:
    with unit_of_work(db, entity="quote", entity_id=quote_id):
        q = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
        assert_quote_transition(parse_quote_status(q.status), QuoteStatus.ARCHIVED)
        q.archived_at = _now()
        q.portal_open = False
        _transition(db, q, QuoteStatus.ARCHIVED, actor_user_id=actor_user_id, action="quote_archived")
    return q


def deactivate_quote(db: Session, *, tenant_id: int, quote_id: int, actor_user_id: Optional[int] = None) -> Quote:
    """Soft delete. The row stays as the record of a priced offer."""
    with unit_of_work(db, entity="quote", entity_id=quote_id):
        q = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
        if not q.is_active:
            return q
        before = quote_snapshot(q)
        q.is_active = False
        _flush(db, q)
        audit_write(
            db,
            tenant_id=q.tenant_id,
            actor_user_id=actor_user_id,
            action="quote_deactivated",
            entity_type="quote",
            entity_id=q.id,
            before=before,
            after=quote_snapshot(q),
        )
    return q


def revise_quote(db: Session, *, tenant_id: int, quote_id: int, actor_user_id: Optional[int] = None) -> Quote:
    """
    Copy a sent quote into a new draft with a new number. An open offer
    (sent/viewed) is archived so only the revision can be accepted.
    """
    with unit_of_work(db, entity="quote", entity_id=quote_id):
        src = get_quote(db, tenant_id=tenant_id, quote_id=quote_id)
        _assert_active(src)
        status = parse_quote_status(src.status)
        if status == QuoteStatus.DRAFT:
            raise ValidationError("quote_id", "draft quotes are edited in place, not revised")

        now = _now()

        def build(number: str) -> Quote:
            return Quote(
                tenant_id=src.tenant_id,
                created_by_user_id=actor_user_id,
                quote_number=number,
                status=QuoteStatus.DRAFT.value,
                customer_name=src.customer_name,
                customer_email=src.customer_email,
                customer_phone=src.customer_phone,
                job_address=src.job_address,
                zip_code=src.zip_code,
                pricing_scheme_id=src.pricing_scheme_id,
                product_strategy=src.product_strategy,
                areas_json=src.areas_json,
                product_selections_json=src.product_selections_json,
                currency=src.currency,
                revision_of_id=src.id,
                created_at=now,
                updated_at=now,
            )

        new = insert_quote_with_number(db, tenant_id=src.tenant_id, build=build)
        _store_totals(new, price_quote(db, new, require_complete=False))
        _flush(db, new)

        audit_write(
            db,
            tenant_id=new.tenant_id,
            actor_user_id=actor_user_id,
            action="quote_revised",
            entity_type="quote",
            entity_id=new.id,
            after=quote_snapshot(new),
            metadata={"revision_of_id": src.id, "revision_of_number": src.quote_number},
        )
        if status in (QuoteStatus.SENT, QuoteStatus.VIEWED):
            src.archived_at = now
            _transition(
                db, src, QuoteStatus.ARCHIVED,
                actor_user_id=actor_user_id, action="quote_archived",
                metadata={"superseded_by": new.id},
            )
    return new
