# quoteflow/domain/aggregation.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from ..errors import ValidationError
from .pricing import (
    GBB_TIERS,
    Area,
    CostBreakdown,
    Product,
    ProductStrategy,
    SchemeDefinition,
    SurfaceKey,
    Tier,
    consumes_paint,
    evaluate,
    material_settings,
    money,
)

# -----------------------------------------------------------------------------
# Quote aggregation
# -----------------------------------------------------------------------------
# subtotal -> markup -> zip markup -> tax, each on the running total, each
# rounded to cents before the next step reads it. Totals are re-verified
# after computing so a drifted breakdown is rejected rather than stored.
# -----------------------------------------------------------------------------

TOLERANCE = Decimal("0.01")
SINGLE_DEFAULT_TIER = Tier.BETTER


def _pct(v: Any) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v))


class ProductSelection(BaseModel):
    model_config = ConfigDict(frozen=True)

    area_id: str
    surface_id: str
    good: Optional[Product] = None
    better: Optional[Product] = None
    best: Optional[Product] = None

    def for_tier(self, tier: Tier) -> Optional[Product]:
        return getattr(self, tier.value)

    def populated_tiers(self) -> list[Tier]:
        return [t for t in GBB_TIERS if self.for_tier(t) is not None]


@dataclass(frozen=True)
class TenantRates:
    scheme: SchemeDefinition
    markup_percent: Decimal = Decimal("0")
    zip_markup_percent: Decimal = Decimal("0")
    tax_percent: Decimal = Decimal("0")
    deposit_percent: Decimal = Decimal("50")
    allow_zero_price: bool = False


@dataclass(frozen=True)
class TierTotals:
    tier: Tier
    breakdown: CostBreakdown
    subtotal: Decimal
    markup: Decimal
    zip_markup: Decimal
    tax: Decimal
    total: Decimal
    deposit: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "subtotal": str(self.subtotal),
            "markup": str(self.markup),
            "zip_markup": str(self.zip_markup),
            "tax": str(self.tax),
            "total": str(self.total),
            "deposit": str(self.deposit),
            "breakdown": self.breakdown.as_dict(),
        }


@dataclass(frozen=True)
class QuoteTotals:
    strategy: ProductStrategy
    tiers: dict[Tier, TierTotals]
    allow_zero_price: bool = False

    def for_tier(self, tier: Optional[Tier]) -> Optional[TierTotals]:
        if tier is None:
            return self.default
        if tier not in self.tiers:
            raise ValidationError("tier", f"'{tier.value}' is not priced on this quote")
        return self.tiers[tier]

    @property
    def default(self) -> Optional[TierTotals]:
        if not self.tiers:
            return None
        if self.strategy == ProductStrategy.GBB and Tier.BETTER in self.tiers:
            return self.tiers[Tier.BETTER]
        return next(iter(self.tiers.values()))

    @property
    def single_tier(self) -> Optional[Tier]:
        if self.strategy == ProductStrategy.SINGLE:
            return next(iter(self.tiers))
        return None

    def as_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "tiers": {t.value: tt.as_dict() for t, tt in self.tiers.items()},
        }


def zip_markup_for(zip_markups: Mapping[str, Any], zip_code: Optional[str]) -> Decimal:
    """Longest matching zip prefix wins; no match means no zip markup."""
    z = (zip_code or "").strip()
    if not z or not zip_markups:
        return Decimal("0")
    best_len = -1
    best = Decimal("0")
    for prefix, pct in zip_markups.items():
        p = str(prefix).strip()
        if p and z.startswith(p) and len(p) > best_len:
            best_len = len(p)
            best = Decimal(str(pct))
    return best


def apply_adjustments(subtotal: Decimal, rates: TenantRates) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    """Returns (markup, zip_markup, tax, total) in the fixed order."""
    running = money(subtotal)
    markup = money(running * _pct(rates.markup_percent) / 100)
    running += markup
    zip_markup = money(running * _pct(rates.zip_markup_percent) / 100)
    running += zip_markup
    tax = money(running * _pct(rates.tax_percent) / 100)
    running += tax
    return markup, zip_markup, tax, running


def verify_totals(tt: TierTotals, rates: TenantRates) -> None:
    """Amounts and percentages must reconcile to within a cent."""
    surface_sum = sum((s.total for s in tt.breakdown.surfaces), Decimal("0"))
    if abs(surface_sum - tt.subtotal) >= TOLERANCE:
        raise ValidationError("subtotal", f"{tt.subtotal} does not match surface costs {surface_sum}")

    recomposed = tt.subtotal + tt.markup + tt.zip_markup + tt.tax
    if abs(tt.total - recomposed) >= TOLERANCE:
        raise ValidationError("total", f"{tt.total} does not match components {recomposed}")

    running = tt.subtotal
    for name, amount, pct in (
        ("markup", tt.markup, rates.markup_percent),
        ("zip_markup", tt.zip_markup, rates.zip_markup_percent),
        ("tax", tt.tax, rates.tax_percent),
    ):
        expected = running * _pct(pct) / 100
        if abs(amount - expected) >= TOLERANCE:
            raise ValidationError(name, f"{amount} is not {pct}% of {running}")
        running += amount


def _check_inputs(rates: TenantRates, areas: Sequence[Area]) -> None:
    for key, pct in (
        ("markup_percent", rates.markup_percent),
        ("zip_markup_percent", rates.zip_markup_percent),
        ("tax_percent", rates.tax_percent),
    ):
        if _pct(pct) < 0:
            raise ValidationError(key, "must not be negative")
    if not (Decimal("0") <= _pct(rates.deposit_percent) <= Decimal("100")):
        raise ValidationError("deposit_percent", "must be between 0 and 100")

    for ai, area in enumerate(areas):
        for si, s in enumerate(area.surfaces):
            if s.quantity < 0:
                raise ValidationError(f"areas[{ai}].surfaces[{si}].quantity", "must not be negative")


def _check_product(field: str, p: Product, allow_zero_price: bool) -> None:
    if p.coverage <= 0:
        raise ValidationError(f"{field}.coverage", "must be greater than 0")
    if p.price_per_gallon < 0:
        raise ValidationError(f"{field}.price_per_gallon", "must not be negative")
    if p.price_per_gallon == 0 and not allow_zero_price:
        raise ValidationError(f"{field}.price_per_gallon", "zero-priced products are not allowed")


def _resolve_tiers(
    strategy: ProductStrategy,
    selections: Sequence[ProductSelection],
) -> tuple[Tier, ...]:
    if strategy == ProductStrategy.GBB:
        return GBB_TIERS

    populated = {t for sel in selections for t in sel.populated_tiers()}
    if len(populated) > 1:
        names = ", ".join(sorted(t.value for t in populated))
        raise ValidationError("product_selections", f"single-product quotes use one tier, got {names}")
    if populated:
        return (populated.pop(),)
    return (SINGLE_DEFAULT_TIER,)


def aggregate(
    rates: TenantRates,
    areas: Sequence[Area],
    product_strategy: ProductStrategy,
    tier_selections: Sequence[ProductSelection],
    *,
    require_complete: bool = True,
) -> QuoteTotals:
    """
    Prices every tier the strategy calls for.

    With require_complete=False (draft previews) a good/better/best tier that
    is missing products and has no scheme default paint is left unpriced
    instead of failing; sending a quote always prices with require_complete.
    """
    _check_inputs(rates, areas)

    surfaces_by_key = {(a.id, s.id): s for a in areas for s in a.surfaces}
    by_key: dict[SurfaceKey, ProductSelection] = {}
    for i, sel in enumerate(tier_selections):
        key = (sel.area_id, sel.surface_id)
        if key not in surfaces_by_key:
            raise ValidationError(f"product_selections[{i}]", f"unknown surface {sel.area_id}/{sel.surface_id}")
        by_key[key] = sel
        for t in sel.populated_tiers():
            _check_product(f"product_selections[{i}].{t.value}", sel.for_tier(t), rates.allow_zero_price)

    tiers = _resolve_tiers(product_strategy, tier_selections)

    incomplete: set[Tier] = set()
    if product_strategy == ProductStrategy.GBB:
        for area in areas:
            for s in area.surfaces:
                if not consumes_paint(s):
                    continue
                sel = by_key.get((area.id, s.id))
                for t in GBB_TIERS:
                    if sel is None or sel.for_tier(t) is None:
                        if require_complete:
                            raise ValidationError(
                                f"product_selections[{area.id}/{s.id}].{t.value}",
                                "good/better/best quotes need a product for every tier",
                            )
                        incomplete.add(t)

    ms = material_settings(rates.scheme)
    fallback = ms.default_product() if ms is not None else None
    if fallback is not None:
        _check_product("pricing_scheme.materials", fallback, rates.allow_zero_price)

    results: dict[Tier, TierTotals] = {}
    for tier in tiers:
        if tier in incomplete and ms is not None and fallback is None:
            continue
        products = {k: sel.for_tier(tier) for k, sel in by_key.items() if sel.for_tier(tier) is not None}
        breakdown = evaluate(rates.scheme, areas, products)
        subtotal = money(breakdown.subtotal)
        markup, zip_markup, tax, total = apply_adjustments(subtotal, rates)
        tt = TierTotals(
            tier=tier,
            breakdown=breakdown,
            subtotal=subtotal,
            markup=markup,
            zip_markup=zip_markup,
            tax=tax,
            total=total,
            deposit=money(total * _pct(rates.deposit_percent) / 100),
        )
        verify_totals(tt, rates)
        results[tier] = tt

    return QuoteTotals(strategy=product_strategy, tiers=results, allow_zero_price=rates.allow_zero_price)
