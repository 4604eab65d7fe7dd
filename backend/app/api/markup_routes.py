"""
Markup API Routes

POST /api/markup/validate                         — validate a raw step sequence
POST /api/markup/evaluate                         — evaluate a sequence for a base value
POST /api/markup/coefficients                     — coefficient per item type of a tactic
GET  /api/markup/tenders/{id}/parameters          — resolved markup percentages
POST /api/markup/tenders/{id}/recalculate         — store commercial costs (admin)
GET  /api/markup/tenders/{id}/aggregation         — markup totals per parameter
GET  /api/markup/tenders/{id}/consistency         — coefficient vs sequence check
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.api.deps import get_current_user, require_admin
from app.models.orm_models import User
from app.services.markup_engine import (
    MarkupConfigError,
    MarkupEngineError,
    calculate_markup_percentage,
    evaluate_sequence_detailed,
    is_scale_invariant,
    parse_sequence,
    parse_step,
    validate_sequence,
)
from app.services.pricing_engine import (
    Tactic,
    aggregate_tender_markup,
    check_consistency,
    compute_coefficients,
    resolve_markup_values,
)
from app.services.tender_store import (
    TenderNotFoundError,
    load_markup_values,
    load_tender_context,
    recalculate_tender,
)

router = APIRouter(prefix="/api/markup", tags=["Markup"])
logger = logging.getLogger("tender-markup-routes")


# ── Pydantic Models ─────────────────────────────────────────────────────────

class SequenceRequest(BaseModel):
    name: str = "sequence"
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class EvaluateRequest(SequenceRequest):
    base_value: float
    markup_values: Optional[Dict[str, float]] = None   # None -> fallback parameters


class CoefficientsRequest(BaseModel):
    sequences: Dict[str, List[Dict[str, Any]]]
    markup_values: Optional[Dict[str, float]] = None


# ── Helpers ──────────────────────────────────────────────────────────────────

def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, TenderNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, MarkupConfigError):
        return HTTPException(status_code=422, detail=exc.message)
    # division by zero, non-finite results
    return HTTPException(status_code=400, detail=str(exc))


def _step_detail_dict(detail) -> dict:
    return {
        "step_index": detail.step_index,
        "step_name": detail.step_name,
        "parameter_keys": list(detail.parameter_keys),
        "base_value": detail.base_value,
        "result": detail.result,
        "markup_amount": detail.markup_amount,
    }


# ── Stateless engine endpoints ───────────────────────────────────────────────

@router.post("/validate")
async def validate(req: SequenceRequest, user: User = Depends(get_current_user)):
    """Every problem in the sequence; parse errors first, then reference checks."""
    errors: List[str] = []
    steps = []
    for i, raw in enumerate(req.steps):
        try:
            steps.append(parse_step(raw, req.name, i))
        except MarkupConfigError as exc:
            errors.append(exc.message)
    if not errors:
        errors = validate_sequence(steps, req.name)
    return {"name": req.name, "valid": not errors, "errors": errors}


@router.post("/evaluate")
async def evaluate(req: EvaluateRequest, user: User = Depends(get_current_user)):
    markup_values = resolve_markup_values(req.markup_values)
    try:
        steps = parse_sequence(req.steps, req.name)
        result = evaluate_sequence_detailed(steps, req.base_value, markup_values, req.name)
    except MarkupEngineError as exc:
        raise _http_error(exc) from exc

    return {
        "name": req.name,
        "base_value": result.base_value,
        "final_value": result.final_value,
        "coefficient": result.coefficient,
        "markup_percentage": calculate_markup_percentage(result.base_value, result.final_value),
        "scale_invariant": is_scale_invariant(steps),
        "step_results": list(result.step_results),
        "step_details": [_step_detail_dict(d) for d in result.step_details],
    }


@router.post("/coefficients")
async def coefficients(req: CoefficientsRequest, user: User = Depends(get_current_user)):
    markup_values = resolve_markup_values(req.markup_values)
    try:
        tactic = Tactic.from_mapping(req.sequences)
        result = compute_coefficients(tactic, markup_values)
    except MarkupEngineError as exc:
        raise _http_error(exc) from exc
    return {
        "coefficients": result,
        "scale_invariant": {t: is_scale_invariant(s) for t, s in tactic.sequences.items() if s},
    }


# ── Tender endpoints ─────────────────────────────────────────────────────────

@router.get("/tenders/{tender_id}/parameters")
async def tender_parameters(
    tender_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        values = await load_markup_values(db, tender_id)
    except TenderNotFoundError as exc:
        raise _http_error(exc) from exc
    return {"tender_id": tender_id, "parameters": values}


@router.post("/tenders/{tender_id}/recalculate")
async def recalculate(
    tender_id: str,
    background: bool = Query(False, description="Queue on the Celery worker instead of running inline"),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    if background:
        try:
            from app.workers.tasks import recalculate_tender_task
            task = recalculate_tender_task.delay(tender_id)
            return {"tender_id": tender_id, "status": "queued", "task_id": task.id}
        except Exception as exc:
            logger.warning(f"Celery unavailable ({exc}); recalculating inline.")

    try:
        summary = await recalculate_tender(db, tender_id)
    except (TenderNotFoundError, MarkupEngineError) as exc:
        raise _http_error(exc) from exc
    return {
        "tender_id": tender_id,
        "status": "completed",
        "updated": summary.updated,
        "skipped": summary.skipped,
        "positions_updated": summary.positions_updated,
    }


@router.get("/tenders/{tender_id}/aggregation")
async def aggregation(
    tender_id: str,
    include_items: bool = False,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        ctx = await load_tender_context(db, tender_id)
        agg = aggregate_tender_markup(
            ctx.items, ctx.tactic, ctx.markup_values, ctx.exclusions, include_item_details=include_items,
        )
    except (TenderNotFoundError, MarkupEngineError) as exc:
        raise _http_error(exc) from exc

    dc = agg.direct_costs
    body = {
        "tender_id": tender_id,
        "direct_costs": {
            "subcontract_works": dc.subcontract_works,
            "subcontract_materials": dc.subcontract_materials,
            "works": dc.works,
            "materials": dc.materials,
            "works_comp": dc.works_comp,
            "materials_comp": dc.materials_comp,
            "total": dc.total,
        },
        "total_base_amount": agg.total_base_amount,
        "total_commercial_cost": agg.total_commercial_cost,
        "total_markup_amount": agg.total_markup_amount,
        "by_parameter": {
            key: {
                "total_markup_amount": p.total_markup_amount,
                "item_count": p.item_count,
                "steps_count": p.steps_count,
                "by_item_type": p.by_item_type,
            }
            for key, p in agg.by_parameter.items()
        },
    }
    if include_items:
        body["items"] = [
            {
                "item_id": d.item_id,
                "boq_item_type": d.boq_item_type,
                "base_amount": d.base_amount,
                "commercial_cost": d.commercial_cost,
                "step_details": [_step_detail_dict(s) for s in d.step_details],
            }
            for d in agg.item_details
        ]
    return body


@router.get("/tenders/{tender_id}/consistency")
async def consistency(
    tender_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        ctx = await load_tender_context(db, tender_id)
        mismatches = check_consistency(ctx.items, ctx.tactic, ctx.markup_values)
    except (TenderNotFoundError, MarkupEngineError) as exc:
        raise _http_error(exc) from exc
    return {
        "tender_id": tender_id,
        "consistent": not mismatches,
        "mismatches": [
            {
                "item_id": m.item_id,
                "boq_item_type": m.boq_item_type,
                "base_amount": m.base_amount,
                "via_coefficient": m.via_coefficient,
                "via_sequence": m.via_sequence,
            }
            for m in mismatches
        ],
    }
