"""
PricingEngine — applies markup tactics to BOQ items.

Covers:
  - BOQ item-type taxonomy and material/work axes
  - Tender pricing distribution (where base and markup parts land)
  - Per-item commercial cost with subcontract growth exclusions
  - Recalculation check against stored commercial costs
  - Per-type coefficients and tender-wide aggregation by markup parameter
  - Coefficient vs direct evaluation consistency check
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from app.config import FALLBACK_MARKUP_PARAMETERS, RECALC_TOLERANCE
from app.services.markup_engine import (
    MarkupStep,
    StepDetail,
    compute_coefficient,
    evaluate_sequence,
    evaluate_sequence_detailed,
    filter_sequence_for_exclusions,
    parse_sequences,
)

logger = logging.getLogger("tender-pricing")


# ---------------------------------------------------------------------------
# Item types
# ---------------------------------------------------------------------------

class BoqItemType(str, Enum):
    MATERIAL = "мат"
    SUBCONTRACT_MATERIAL = "суб-мат"
    MATERIAL_COMPONENT = "мат-комп."
    WORK = "раб"
    SUBCONTRACT_WORK = "суб-раб"
    WORK_COMPONENT = "раб-комп."


class CostAxis(str, Enum):
    MATERIAL = "material"
    WORK = "work"


MATERIAL_ITEM_TYPES = frozenset({
    BoqItemType.MATERIAL.value,
    BoqItemType.SUBCONTRACT_MATERIAL.value,
    BoqItemType.MATERIAL_COMPONENT.value,
})


def is_material_type(item_type: str) -> bool:
    return item_type in MATERIAL_ITEM_TYPES


@dataclass(frozen=True)
class ItemCost:
    material_cost: float
    work_cost: float
    coefficient: float = 1.0

    @property
    def total(self) -> float:
        return self.material_cost + self.work_cost


def apply_to_item(item_type: str, base_amount: float, coefficient: float) -> ItemCost:
    """Put ``base × coefficient`` wholly on the item type's own axis."""
    commercial = base_amount * coefficient
    if is_material_type(item_type):
        return ItemCost(material_cost=commercial, work_cost=0.0, coefficient=coefficient)
    return ItemCost(material_cost=0.0, work_cost=commercial, coefficient=coefficient)


# ---------------------------------------------------------------------------
# Pricing distribution
# ---------------------------------------------------------------------------

# Distribution category per item type. Subcontracted work is priced as work.
_PRICING_CATEGORY: Dict[str, str] = {
    BoqItemType.MATERIAL.value: "basic_material",
    BoqItemType.MATERIAL_COMPONENT.value: "component_material",
    BoqItemType.SUBCONTRACT_MATERIAL.value: "subcontract_basic_material",
    BoqItemType.WORK.value: "work",
    BoqItemType.WORK_COMPONENT.value: "component_work",
    BoqItemType.SUBCONTRACT_WORK.value: "work",
}

_CATEGORY_FALLBACK: Dict[str, str] = {
    "component_material": "auxiliary_material",
    "component_work": "work",
}


@dataclass(frozen=True)
class PricingDistribution:
    """Target axis for the base part and the markup part of each category."""
    basic_material_base_target: CostAxis = CostAxis.MATERIAL
    basic_material_markup_target: CostAxis = CostAxis.MATERIAL
    auxiliary_material_base_target: CostAxis = CostAxis.MATERIAL
    auxiliary_material_markup_target: CostAxis = CostAxis.MATERIAL
    component_material_base_target: Optional[CostAxis] = None
    component_material_markup_target: Optional[CostAxis] = None
    subcontract_basic_material_base_target: Optional[CostAxis] = None
    subcontract_basic_material_markup_target: Optional[CostAxis] = None
    subcontract_auxiliary_material_base_target: Optional[CostAxis] = None
    subcontract_auxiliary_material_markup_target: Optional[CostAxis] = None
    work_base_target: CostAxis = CostAxis.WORK
    work_markup_target: CostAxis = CostAxis.WORK
    component_work_base_target: Optional[CostAxis] = None
    component_work_markup_target: Optional[CostAxis] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "PricingDistribution":
        values = {}
        for name in cls.__dataclass_fields__:
            value = raw.get(name)
            if value:
                values[name] = CostAxis(value)
        return cls(**values)

    def targets(self, category: str) -> Optional[Tuple[CostAxis, CostAxis]]:
        base = getattr(self, f"{category}_base_target", None)
        markup = getattr(self, f"{category}_markup_target", None)
        if base is None or markup is None:
            return None
        return CostAxis(base), CostAxis(markup)


def apply_pricing_distribution(
    base_amount: float,
    commercial_cost: float,
    item_type: str,
    distribution: Optional[PricingDistribution],
) -> Tuple[float, float]:
    """
    Split a commercial cost into (material_cost, work_cost).

    The commercial cost is split into the base part and the markup part
    (``commercial - base``), and each part goes to the axis configured for the
    item's category. Without a distribution the whole commercial cost lands on
    the item type's own axis.
    """
    if distribution is None:
        if is_material_type(item_type):
            return commercial_cost, 0.0
        return 0.0, commercial_cost

    category = _PRICING_CATEGORY.get(item_type)
    if category is None:
        logger.warning("Unknown BOQ item type '%s'; commercial cost put on work axis", item_type)
        return 0.0, commercial_cost

    targets = distribution.targets(category)
    if targets is None and category in _CATEGORY_FALLBACK:
        targets = distribution.targets(_CATEGORY_FALLBACK[category])
    if targets is None:
        # Subcontracted material without its own settings
        return 0.0, commercial_cost

    base_target, markup_target = targets
    markup = commercial_cost - base_amount
    material = work = 0.0
    if base_target is CostAxis.MATERIAL:
        material += base_amount
    else:
        work += base_amount
    if markup_target is CostAxis.MATERIAL:
        material += markup
    else:
        work += markup
    return material, work


# ---------------------------------------------------------------------------
# Tactics and items
# ---------------------------------------------------------------------------

@dataclass
class Tactic:
    """A named set of parsed step sequences keyed by BOQ item type."""
    name: str = ""
    sequences: Dict[str, List[MarkupStep]] = field(default_factory=dict)
    base_costs: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw_sequences: Optional[Mapping[str, Any]], name: str = "",
                     base_costs: Optional[Mapping[str, float]] = None) -> "Tactic":
        """Parse and validate all sequences. Raises MarkupConfigError."""
        return cls(
            name=name,
            sequences=parse_sequences(raw_sequences),
            base_costs=dict(base_costs or {}),
        )

    def sequence_for(self, item_type: str) -> List[MarkupStep]:
        return self.sequences.get(item_type) or []


@dataclass
class BoqItemSnapshot:
    """The BOQ item fields the pricing functions read."""
    id: str
    boq_item_type: str
    total_amount: Optional[float] = None
    detail_cost_category_id: Optional[str] = None
    total_commercial_material_cost: Optional[float] = None
    total_commercial_work_cost: Optional[float] = None
    commercial_markup: Optional[float] = None

    @property
    def base_amount(self) -> float:
        return float(self.total_amount or 0.0)

    @property
    def stored_commercial_cost(self) -> Optional[float]:
        if is_material_type(self.boq_item_type):
            return self.total_commercial_material_cost
        return self.total_commercial_work_cost


@dataclass(frozen=True)
class GrowthExclusions:
    """Detail cost categories excluded from subcontract cost growth."""
    works: frozenset = frozenset()
    materials: frozenset = frozenset()

    def is_excluded(self, item: BoqItemSnapshot) -> bool:
        if not item.detail_cost_category_id:
            return False
        if item.boq_item_type == BoqItemType.SUBCONTRACT_WORK.value:
            return item.detail_cost_category_id in self.works
        if item.boq_item_type == BoqItemType.SUBCONTRACT_MATERIAL.value:
            return item.detail_cost_category_id in self.materials
        return False


def resolve_markup_values(tender_values: Optional[Mapping[str, float]]) -> Dict[str, float]:
    """
    Percentages keyed by parameter. ``None`` means nothing is stored and
    selects the fallback set; an empty mapping stays empty, so every key
    resolves to 0.
    """
    if tender_values is None:
        logger.warning("No markup percentages stored; using fallback parameters")
        return dict(FALLBACK_MARKUP_PARAMETERS)
    return {k: float(v) for k, v in tender_values.items() if v is not None}


# ---------------------------------------------------------------------------
# Per-item calculation
# ---------------------------------------------------------------------------

def calculate_boq_item_cost(
    item: BoqItemSnapshot,
    tactic: Tactic,
    markup_values: Mapping[str, float],
    distribution: Optional[PricingDistribution] = None,
    excluded: bool = False,
) -> Optional[ItemCost]:
    """
    Commercial cost of one BOQ item, or None when the tactic has no sequence
    for its type. Items with a non-positive base keep it unchanged.
    """
    steps = tactic.sequence_for(item.boq_item_type)
    if not steps:
        return None

    base = item.base_amount
    if base <= 0:
        material, work = apply_pricing_distribution(base, base, item.boq_item_type, distribution)
        return ItemCost(material_cost=material, work_cost=work, coefficient=1.0)

    if excluded:
        steps = filter_sequence_for_exclusions(steps, item.boq_item_type)

    result = evaluate_sequence_detailed(steps, base, markup_values, item.boq_item_type)
    material, work = apply_pricing_distribution(
        base, result.final_value, item.boq_item_type, distribution,
    )
    return ItemCost(material_cost=material, work_cost=work, coefficient=result.coefficient)


def needs_recalculation(item: BoqItemSnapshot) -> bool:
    if not item.total_amount:
        return False
    commercial = item.stored_commercial_cost
    if not commercial:
        return True
    if item.commercial_markup:
        expected = item.total_amount * item.commercial_markup
        return abs(expected - commercial) > RECALC_TOLERANCE
    return True


def compute_coefficients(tactic: Tactic, markup_values: Mapping[str, float]) -> Dict[str, float]:
    """Coefficient per item type that has a sequence in the tactic."""
    return {
        item_type: compute_coefficient(steps, markup_values, item_type)
        for item_type, steps in tactic.sequences.items()
        if steps
    }


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

_DIRECT_COST_FIELD: Dict[str, str] = {
    BoqItemType.SUBCONTRACT_WORK.value: "subcontract_works",
    BoqItemType.SUBCONTRACT_MATERIAL.value: "subcontract_materials",
    BoqItemType.WORK.value: "works",
    BoqItemType.MATERIAL.value: "materials",
    BoqItemType.WORK_COMPONENT.value: "works_comp",
    BoqItemType.MATERIAL_COMPONENT.value: "materials_comp",
}


@dataclass
class DirectCosts:
    subcontract_works: float = 0.0
    subcontract_materials: float = 0.0
    works: float = 0.0
    materials: float = 0.0
    works_comp: float = 0.0
    materials_comp: float = 0.0

    @property
    def total(self) -> float:
        return (self.subcontract_works + self.subcontract_materials + self.works
                + self.materials + self.works_comp + self.materials_comp)


@dataclass
class ParameterAggregate:
    parameter_key: str
    total_markup_amount: float = 0.0
    item_count: int = 0
    steps_count: int = 0
    by_item_type: Dict[str, float] = field(default_factory=dict)


@dataclass
class ItemMarkupDetail:
    item_id: str
    boq_item_type: str
    base_amount: float
    commercial_cost: float
    step_details: Tuple[StepDetail, ...]


@dataclass
class TenderAggregation:
    by_parameter: Dict[str, ParameterAggregate] = field(default_factory=dict)
    direct_costs: DirectCosts = field(default_factory=DirectCosts)
    total_base_amount: float = 0.0
    total_commercial_cost: float = 0.0
    item_details: List[ItemMarkupDetail] = field(default_factory=list)

    @property
    def total_markup_amount(self) -> float:
        return self.total_commercial_cost - self.total_base_amount

    def markup_for(self, *parameter_keys: str) -> float:
        return sum(
            self.by_parameter[k].total_markup_amount
            for k in parameter_keys if k in self.by_parameter
        )


def aggregate_tender_markup(
    items: Iterable[BoqItemSnapshot],
    tactic: Tactic,
    markup_values: Mapping[str, float],
    exclusions: Optional[GrowthExclusions] = None,
    include_item_details: bool = False,
) -> TenderAggregation:
    """
    Sum direct costs, commercial costs and per-parameter markup over a tender.

    A step's markup amount is credited to every markup parameter the step
    uses. Items with a non-positive base are skipped; items whose type has no
    sequence count at their base amount.
    """
    exclusions = exclusions or GrowthExclusions()
    agg = TenderAggregation()

    for item in items:
        base = item.base_amount
        if base <= 0:
            continue

        direct_field = _DIRECT_COST_FIELD.get(item.boq_item_type)
        if direct_field:
            setattr(agg.direct_costs, direct_field, getattr(agg.direct_costs, direct_field) + base)
        agg.total_base_amount += base

        steps = tactic.sequence_for(item.boq_item_type)
        if not steps:
            agg.total_commercial_cost += base
            continue
        if exclusions.is_excluded(item):
            steps = filter_sequence_for_exclusions(steps, item.boq_item_type)

        result = evaluate_sequence_detailed(steps, base, markup_values, item.boq_item_type)
        agg.total_commercial_cost += result.final_value

        seen = set()
        for detail in result.step_details:
            for key in detail.parameter_keys:
                entry = agg.by_parameter.setdefault(key, ParameterAggregate(parameter_key=key))
                entry.total_markup_amount += detail.markup_amount
                entry.steps_count += 1
                if key not in seen:
                    entry.item_count += 1
                    seen.add(key)
                entry.by_item_type[item.boq_item_type] = (
                    entry.by_item_type.get(item.boq_item_type, 0.0) + detail.markup_amount
                )

        if include_item_details:
            agg.item_details.append(ItemMarkupDetail(
                item_id=item.id,
                boq_item_type=item.boq_item_type,
                base_amount=base,
                commercial_cost=result.final_value,
                step_details=result.step_details,
            ))

    logger.debug(
        "Markup aggregation: base=%.2f commercial=%.2f markup=%.2f parameters=%d",
        agg.total_base_amount, agg.total_commercial_cost,
        agg.total_markup_amount, len(agg.by_parameter),
    )
    return agg


# ---------------------------------------------------------------------------
# Consistency
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConsistencyMismatch:
    item_id: str
    boq_item_type: str
    base_amount: float
    via_coefficient: float
    via_sequence: float

    @property
    def difference(self) -> float:
        return abs(self.via_coefficient - self.via_sequence)


def check_consistency(
    items: Iterable[BoqItemSnapshot],
    tactic: Tactic,
    markup_values: Mapping[str, float],
) -> List[ConsistencyMismatch]:
    """
    Compare ``coefficient(type) × base`` with a direct evaluation per item.

    Differences above the recalculation tolerance are reported; they only
    occur for sequences that are not scale-invariant.
    """
    coefficients = compute_coefficients(tactic, markup_values)
    mismatches: List[ConsistencyMismatch] = []
    for item in items:
        base = item.base_amount
        coefficient = coefficients.get(item.boq_item_type)
        if base <= 0 or coefficient is None:
            continue
        via_coefficient = base * coefficient
        via_sequence = evaluate_sequence(
            tactic.sequence_for(item.boq_item_type), base, markup_values, item.boq_item_type,
        )
        if abs(via_coefficient - via_sequence) > RECALC_TOLERANCE:
            mismatches.append(ConsistencyMismatch(
                item_id=item.id,
                boq_item_type=item.boq_item_type,
                base_amount=base,
                via_coefficient=via_coefficient,
                via_sequence=via_sequence,
            ))
    if mismatches:
        logger.warning("%d BOQ items disagree between coefficient and sequence", len(mismatches))
    return mismatches
