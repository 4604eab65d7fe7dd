"""
TenderStore — loads the inputs of the markup engines from the database and
writes recalculated commercial costs back.

Everything here is async and takes an AsyncSession; the engines themselves
stay pure.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.orm_models import (
    BoqItem,
    ClientPosition,
    MarkupParameter,
    MarkupTactic,
    SubcontractGrowthExclusion,
    Tender,
    TenderMarkupPercentage,
    TenderPricingDistribution,
)
from app.services.position_matcher import ClientPositionSnapshot
from app.services.pricing_engine import (
    BoqItemSnapshot,
    GrowthExclusions,
    PricingDistribution,
    Tactic,
    calculate_boq_item_cost,
    resolve_markup_values,
)

logger = logging.getLogger("tender-store")


class TenderNotFoundError(LookupError):
    pass


@dataclass
class TenderContext:
    tender_id: str
    tactic: Tactic
    markup_values: Dict[str, float]
    distribution: Optional[PricingDistribution] = None
    exclusions: GrowthExclusions = field(default_factory=GrowthExclusions)
    items: List[BoqItemSnapshot] = field(default_factory=list)


@dataclass
class RecalculationSummary:
    tender_id: str
    updated: int = 0
    skipped: int = 0
    positions_updated: int = 0


def _num(value) -> Optional[float]:
    return float(value) if value is not None else None


def snapshot_item(row: BoqItem) -> BoqItemSnapshot:
    return BoqItemSnapshot(
        id=row.id,
        boq_item_type=row.boq_item_type,
        total_amount=_num(row.total_amount),
        detail_cost_category_id=row.detail_cost_category_id,
        total_commercial_material_cost=_num(row.total_commercial_material_cost),
        total_commercial_work_cost=_num(row.total_commercial_work_cost),
        commercial_markup=_num(row.commercial_markup),
    )


def snapshot_position(row: ClientPosition) -> ClientPositionSnapshot:
    return ClientPositionSnapshot(
        id=row.id,
        item_no=row.item_no,
        work_name=row.work_name,
        unit_code=row.unit_code,
        volume=_num(row.volume),
        is_additional=bool(row.is_additional),
        position_number=float(row.position_number or 0),
        hierarchy_level=row.hierarchy_level or 0,
        parent_position_id=row.parent_position_id,
    )


async def _get_tender(db: AsyncSession, tender_id: str) -> Tender:
    tender = (await db.execute(select(Tender).where(Tender.id == tender_id))).scalar_one_or_none()
    if tender is None:
        raise TenderNotFoundError(f"Tender {tender_id} not found")
    return tender


async def load_markup_values(db: AsyncSession, tender_id: str) -> Dict[str, float]:
    """Tender percentages keyed by parameter key (fallback set when none stored)."""
    await _get_tender(db, tender_id)
    rows = (await db.execute(
        select(MarkupParameter.key, TenderMarkupPercentage.value)
        .join(MarkupParameter, MarkupParameter.id == TenderMarkupPercentage.markup_parameter_id)
        .where(TenderMarkupPercentage.tender_id == tender_id)
    )).all()
    return resolve_markup_values({key: value for key, value in rows} if rows else None)


async def load_tender_context(db: AsyncSession, tender_id: str, with_items: bool = True) -> TenderContext:
    """
    Tactic, percentages, pricing distribution, growth exclusions and BOQ items
    of a tender. Raises TenderNotFoundError when the tender or its tactic is
    missing, MarkupConfigError when the tactic's sequences are malformed.
    """
    tender = await _get_tender(db, tender_id)
    if not tender.markup_tactic_id:
        raise TenderNotFoundError(f"Tender {tender_id} has no markup tactic")
    tactic_row = (await db.execute(
        select(MarkupTactic).where(MarkupTactic.id == tender.markup_tactic_id)
    )).scalar_one_or_none()
    if tactic_row is None:
        raise TenderNotFoundError(f"Markup tactic {tender.markup_tactic_id} not found")

    tactic = Tactic.from_mapping(tactic_row.sequences, name=tactic_row.name or "", base_costs=tactic_row.base_costs)
    markup_values = await load_markup_values(db, tender_id)

    dist_row = (await db.execute(
        select(TenderPricingDistribution).where(TenderPricingDistribution.tender_id == tender_id)
    )).scalar_one_or_none()
    distribution = PricingDistribution.from_mapping(dist_row.to_mapping()) if dist_row else None
    if distribution is None:
        logger.info("No pricing distribution for tender %s, using item-type axes", tender_id,
                    extra={"tender_id": tender_id})

    excl_rows = (await db.execute(
        select(SubcontractGrowthExclusion).where(SubcontractGrowthExclusion.tender_id == tender_id)
    )).scalars().all()
    exclusions = GrowthExclusions(
        works=frozenset(r.detail_cost_category_id for r in excl_rows if r.exclusion_type == "works"),
        materials=frozenset(r.detail_cost_category_id for r in excl_rows if r.exclusion_type == "materials"),
    )

    items: List[BoqItemSnapshot] = []
    if with_items:
        rows = (await db.execute(select(BoqItem).where(BoqItem.tender_id == tender_id))).scalars().all()
        items = [snapshot_item(r) for r in rows]

    return TenderContext(tender_id, tactic, markup_values, distribution, exclusions, items)


async def load_client_positions(db: AsyncSession, tender_id: str) -> List[ClientPositionSnapshot]:
    await _get_tender(db, tender_id)
    rows = (await db.execute(
        select(ClientPosition)
        .where(ClientPosition.tender_id == tender_id)
        .order_by(ClientPosition.position_number)
    )).scalars().all()
    return [snapshot_position(r) for r in rows]


async def recalculate_tender(db: AsyncSession, tender_id: str) -> RecalculationSummary:
    """
    Recompute and store commercial costs for every BOQ item of a tender, then
    roll them up onto the client positions. Engine errors abort the run.
    """
    ctx = await load_tender_context(db, tender_id, with_items=False)
    rows = (await db.execute(select(BoqItem).where(BoqItem.tender_id == tender_id))).scalars().all()
    summary = RecalculationSummary(tender_id=tender_id)
    totals: Dict[str, List[float]] = {}

    for row in rows:
        item = snapshot_item(row)
        cost = calculate_boq_item_cost(
            item, ctx.tactic, ctx.markup_values, ctx.distribution,
            excluded=ctx.exclusions.is_excluded(item),
        )
        if cost is None:
            summary.skipped += 1
            continue
        row.total_commercial_material_cost = round(cost.material_cost, 2)
        row.total_commercial_work_cost = round(cost.work_cost, 2)
        row.commercial_markup = cost.coefficient
        summary.updated += 1
        acc = totals.setdefault(row.client_position_id, [0.0, 0.0])
        acc[0] += cost.material_cost
        acc[1] += cost.work_cost

    if totals:
        positions = (await db.execute(
            select(ClientPosition).where(ClientPosition.id.in_(list(totals)))
        )).scalars().all()
        for position in positions:
            material, work = totals[position.id]
            position.total_commercial_material = round(material, 2)
            position.total_commercial_work = round(work, 2)
        summary.positions_updated = len(positions)

    await db.flush()
    logger.info(
        "Recalculated tender %s: %d items updated, %d skipped",
        tender_id, summary.updated, summary.skipped,
        extra={"tender_id": tender_id},
    )
    return summary
