# quoteflow/domain/pricing.py
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from enum import Enum
from functools import singledispatch
from typing import Annotated, Any, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import SchemeCoverageError, ValidationError

# -----------------------------------------------------------------------------
# Pricing scheme evaluator
# -----------------------------------------------------------------------------
# Pure: (scheme definition, areas, per-surface products) -> CostBreakdown.
# No I/O, no tenant lookups. Every scheme kind is its own typed model and the
# labor rule is picked by type, never by comparing scheme names at call sites.
# -----------------------------------------------------------------------------

CENT = Decimal("0.01")
ZERO = Decimal("0")


def money(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        d = value
    else:
        d = Decimal(str(value))
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def _norm(category: str) -> str:
    return (category or "").strip().lower()


class SurfaceUnit(str, Enum):
    SQFT = "sqft"
    LINEAR_FT = "linear_ft"
    UNIT = "unit"
    HOURS = "hours"


class Tier(str, Enum):
    GOOD = "good"
    BETTER = "better"
    BEST = "best"


GBB_TIERS: tuple[Tier, ...] = (Tier.GOOD, Tier.BETTER, Tier.BEST)


class ProductStrategy(str, Enum):
    GBB = "gbb"
    SINGLE = "single"


# -----------------------------
# Inputs
# -----------------------------
class Product(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: Optional[str] = None
    brand: str = ""
    name: str
    sheen: str = ""
    color: str = ""
    price_per_gallon: Decimal
    coverage: Decimal  # sqft per gallon

    def combination_key(self) -> tuple[str, str, str, str]:
        return (_norm(self.brand), _norm(self.name), _norm(self.color), _norm(self.sheen))

    @property
    def label(self) -> str:
        parts = [self.brand, self.name, self.color, self.sheen]
        return " / ".join(p for p in parts if p)


class Surface(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: str
    quantity: Decimal
    unit: SurfaceUnit = SurfaceUnit.SQFT
    estimated_hours: Optional[Decimal] = None


class Area(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    surfaces: list[Surface] = Field(default_factory=list)


class MaterialSettings(BaseModel):
    """
    Scheme-level paint defaults. A product selected for a surface overrides
    coverage and price per gallon.
    """

    model_config = ConfigDict(frozen=True)

    include_materials: bool = True
    coats: int = Field(default=1, ge=1)
    coverage: Optional[Decimal] = Field(default=None, gt=0)
    cost_per_gallon: Optional[Decimal] = Field(default=None, ge=0)
    product_name: str = "house paint"

    def default_product(self) -> Optional[Product]:
        if self.coverage is None or self.cost_per_gallon is None:
            return None
        return Product(name=self.product_name, price_per_gallon=self.cost_per_gallon, coverage=self.coverage)


class TurnkeyScheme(BaseModel):
    """One all-in rate per category; labor and materials are baked in."""

    model_config = ConfigDict(frozen=True)

    type: Literal["turnkey"] = "turnkey"
    rates: dict[str, Decimal]


class FlatRateUnitScheme(BaseModel):
    """Fixed price per item; quantity is an item count."""

    model_config = ConfigDict(frozen=True)

    type: Literal["flat_rate_unit"] = "flat_rate_unit"
    unit_prices: dict[str, Decimal]


class HourlyTimeMaterialsScheme(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["hourly_time_materials"] = "hourly_time_materials"
    hourly_rate: Decimal = Field(gt=0)
    crew_size: int = Field(default=1, ge=1)
    # estimated crew hours per unit of quantity, used when a surface carries no estimate
    hours_per_unit: dict[str, Decimal] = Field(default_factory=dict)
    materials: MaterialSettings = Field(default_factory=MaterialSettings)


class ProductionBasedScheme(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["production_based"] = "production_based"
    hourly_rate: Decimal = Field(gt=0)
    production_rates: dict[str, Decimal]  # quantity per hour
    materials: MaterialSettings = Field(default_factory=MaterialSettings)


class RateBasedSqftScheme(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["rate_based_sqft"] = "rate_based_sqft"
    labor_rates: dict[str, Decimal]
    materials: MaterialSettings = Field(default_factory=MaterialSettings)


SchemeDefinition = Annotated[
    Union[
        TurnkeyScheme,
        FlatRateUnitScheme,
        HourlyTimeMaterialsScheme,
        ProductionBasedScheme,
        RateBasedSqftScheme,
    ],
    Field(discriminator="type"),
]

SCHEME_VARIANTS: tuple[type, ...] = (
    TurnkeyScheme,
    FlatRateUnitScheme,
    HourlyTimeMaterialsScheme,
    ProductionBasedScheme,
    RateBasedSqftScheme,
)
SCHEME_TYPES: tuple[str, ...] = tuple(v.model_fields["type"].default for v in SCHEME_VARIANTS)

_scheme_adapter: TypeAdapter = TypeAdapter(SchemeDefinition)
_areas_adapter: TypeAdapter = TypeAdapter(list[Area])


def parse_scheme(data: Mapping[str, Any]) -> SchemeDefinition:
    try:
        return _scheme_adapter.validate_python(dict(data))
    except PydanticValidationError as e:
        raise ValidationError("pricing_scheme", _first_error(e)) from e


def parse_areas(data: Sequence[Mapping[str, Any]]) -> list[Area]:
    try:
        return _areas_adapter.validate_python(list(data))
    except PydanticValidationError as e:
        raise ValidationError("areas", _first_error(e)) from e


def scheme_to_dict(scheme: SchemeDefinition) -> dict[str, Any]:
    return scheme.model_dump(mode="json")


def _first_error(e: PydanticValidationError) -> str:
    errs = e.errors()
    if not errs:
        return str(e)
    first = errs[0]
    loc = ".".join(str(x) for x in first.get("loc", ()))
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


# -----------------------------
# Outputs
# -----------------------------
@dataclass(frozen=True)
class SurfaceCost:
    area_id: str
    area_name: str
    surface_id: str
    category: str
    quantity: Decimal
    unit: str
    labor_cost: Decimal
    material_cost: Decimal
    hours: Optional[Decimal] = None

    @property
    def total(self) -> Decimal:
        return self.labor_cost + self.material_cost

    def as_dict(self) -> dict[str, Any]:
        return {
            "area_id": self.area_id,
            "area_name": self.area_name,
            "surface_id": self.surface_id,
            "category": self.category,
            "quantity": str(self.quantity),
            "unit": self.unit,
            "labor_cost": str(self.labor_cost),
            "material_cost": str(self.material_cost),
            "hours": str(self.hours) if self.hours is not None else None,
        }


@dataclass(frozen=True)
class MaterialLine:
    product: str
    combination: tuple[str, str, str, str]
    paint_sqft: Decimal
    coverage: Decimal
    gallons: int
    cost_per_gallon: Decimal
    cost: Decimal
    surface_ids: tuple[str, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "product": self.product,
            "paint_sqft": str(self.paint_sqft),
            "coverage": str(self.coverage),
            "gallons": self.gallons,
            "cost_per_gallon": str(self.cost_per_gallon),
            "cost": str(self.cost),
            "surface_ids": list(self.surface_ids),
        }


@dataclass(frozen=True)
class CostBreakdown:
    scheme_type: str
    surfaces: tuple[SurfaceCost, ...]
    materials: tuple[MaterialLine, ...]

    @property
    def labor_total(self) -> Decimal:
        return sum((s.labor_cost for s in self.surfaces), ZERO)

    @property
    def material_total(self) -> Decimal:
        return sum((s.material_cost for s in self.surfaces), ZERO)

    @property
    def subtotal(self) -> Decimal:
        return self.labor_total + self.material_total

    @property
    def gallons(self) -> int:
        return sum(m.gallons for m in self.materials)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scheme_type": self.scheme_type,
            "labor_total": str(self.labor_total),
            "material_total": str(self.material_total),
            "subtotal": str(self.subtotal),
            "gallons": self.gallons,
            "surfaces": [s.as_dict() for s in self.surfaces],
            "materials": [m.as_dict() for m in self.materials],
        }


SurfaceKey = tuple[str, str]  # (area_id, surface_id)


# -----------------------------
# Labor rules (one per scheme kind)
# -----------------------------
def _rate_for(table: Mapping[str, Decimal], category: str, scheme_type: str) -> Decimal:
    key = _norm(category)
    for k, v in table.items():
        if _norm(k) == key:
            return Decimal(v)
    raise SchemeCoverageError(category, scheme_type)


@singledispatch
def _labor(scheme: Any, surface: Surface) -> tuple[Decimal, Optional[Decimal]]:
    raise TypeError(f"no labor rule for pricing scheme {type(scheme).__name__}")


@_labor.register(TurnkeyScheme)
def _turnkey_labor(scheme: TurnkeyScheme, surface: Surface) -> tuple[Decimal, Optional[Decimal]]:
    rate = _rate_for(scheme.rates, surface.category, scheme.type)
    return rate * surface.quantity, None


@_labor.register(FlatRateUnitScheme)
def _flat_rate_labor(scheme: FlatRateUnitScheme, surface: Surface) -> tuple[Decimal, Optional[Decimal]]:
    price = _rate_for(scheme.unit_prices, surface.category, scheme.type)
    return price * surface.quantity, None


@_labor.register(HourlyTimeMaterialsScheme)
def _hourly_labor(scheme: HourlyTimeMaterialsScheme, surface: Surface) -> tuple[Decimal, Optional[Decimal]]:
    if surface.estimated_hours is not None:
        hours = Decimal(surface.estimated_hours)
    elif surface.unit == SurfaceUnit.HOURS:
        hours = surface.quantity
    else:
        hours = _rate_for(scheme.hours_per_unit, surface.category, scheme.type) * surface.quantity
    return scheme.hourly_rate * Decimal(scheme.crew_size) * hours, hours


@_labor.register(ProductionBasedScheme)
def _production_labor(scheme: ProductionBasedScheme, surface: Surface) -> tuple[Decimal, Optional[Decimal]]:
    rate = _rate_for(scheme.production_rates, surface.category, scheme.type)
    if rate <= 0:
        raise ValidationError(f"production_rates.{_norm(surface.category)}", "must be greater than 0")
    hours = surface.quantity / rate
    return hours * scheme.hourly_rate, hours


@_labor.register(RateBasedSqftScheme)
def _rate_based_labor(scheme: RateBasedSqftScheme, surface: Surface) -> tuple[Decimal, Optional[Decimal]]:
    rate = _rate_for(scheme.labor_rates, surface.category, scheme.type)
    return rate * surface.quantity, None


_unhandled = [v.__name__ for v in SCHEME_VARIANTS if _labor.dispatch(v) is _labor.dispatch(object)]
if _unhandled:
    raise RuntimeError(f"pricing schemes without a labor rule: {', '.join(_unhandled)}")


def material_settings(scheme: SchemeDefinition) -> Optional[MaterialSettings]:
    """Materials priced by coverage, or None when the rate already includes them."""
    ms = getattr(scheme, "materials", None)
    if ms is None or not ms.include_materials:
        return None
    return ms


def gallons_needed(paint_sqft: Decimal, coverage: Decimal) -> int:
    """Whole gallons, rounded up, never less than one for a non-empty combination."""
    if coverage <= 0:
        raise ValidationError("coverage", "must be greater than 0")
    g = (Decimal(paint_sqft) / Decimal(coverage)).to_integral_value(rounding=ROUND_CEILING)
    return max(1, int(g))


# -----------------------------
# Evaluate
# -----------------------------
def _check_surface(ai: int, si: int, surface: Surface) -> None:
    if surface.quantity < 0:
        raise ValidationError(f"areas[{ai}].surfaces[{si}].quantity", "must not be negative")
    if surface.estimated_hours is not None and surface.estimated_hours < 0:
        raise ValidationError(f"areas[{ai}].surfaces[{si}].estimated_hours", "must not be negative")


def consumes_paint(surface: Surface) -> bool:
    return surface.unit == SurfaceUnit.SQFT and surface.quantity > 0


def evaluate(
    scheme: SchemeDefinition,
    areas: Sequence[Area],
    products: Optional[Mapping[SurfaceKey, Product]] = None,
) -> CostBreakdown:
    products = products or {}
    ms = material_settings(scheme)

    labor_rows: list[tuple[Area, Surface, Decimal, Optional[Decimal]]] = []
    groups: "OrderedDict[tuple[str, str, str, str], dict[str, Any]]" = OrderedDict()

    for ai, area in enumerate(areas):
        for si, surface in enumerate(area.surfaces):
            _check_surface(ai, si, surface)
            labor, hours = _labor(scheme, surface)
            labor_rows.append((area, surface, money(labor), hours))

            if ms is None or not consumes_paint(surface):
                continue

            product = products.get((area.id, surface.id)) or ms.default_product()
            if product is None:
                raise SchemeCoverageError(f"{surface.category} (materials)", scheme.type)

            g = groups.setdefault(
                product.combination_key(),
                {"product": product, "sqft": Decimal("0"), "surfaces": []},
            )
            paint = surface.quantity * Decimal(ms.coats)
            g["sqft"] += paint
            g["surfaces"].append(((area.id, surface.id), paint))

    material_lines: list[MaterialLine] = []
    material_by_surface: dict[SurfaceKey, Decimal] = {}

    for key, g in groups.items():
        product: Product = g["product"]
        gallons = gallons_needed(g["sqft"], product.coverage)
        cost = money(Decimal(gallons) * product.price_per_gallon)

        # allocate the combination cost back to its surfaces by painted area
        allocated = ZERO
        members = g["surfaces"]
        for i, (skey, paint) in enumerate(members):
            if i == len(members) - 1:
                share = cost - allocated
            else:
                share = money(cost * paint / g["sqft"])
                allocated += share
            material_by_surface[skey] = material_by_surface.get(skey, ZERO) + share

        material_lines.append(
            MaterialLine(
                product=product.label,
                combination=key,
                paint_sqft=g["sqft"],
                coverage=product.coverage,
                gallons=gallons,
                cost_per_gallon=product.price_per_gallon,
                cost=cost,
                surface_ids=tuple(s for (_, s), _p in members),
            )
        )

    surfaces = tuple(
        SurfaceCost(
            area_id=area.id,
            area_name=area.name,
            surface_id=surface.id,
            category=surface.category,
            quantity=surface.quantity,
            unit=surface.unit.value,
            labor_cost=labor,
            material_cost=material_by_surface.get((area.id, surface.id), ZERO),
            hours=hours,
        )
        for area, surface, labor, hours in labor_rows
    )

    return CostBreakdown(scheme_type=scheme.type, surfaces=surfaces, materials=tuple(material_lines))
