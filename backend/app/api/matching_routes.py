"""
Version Matching API Routes

POST /api/matching/match                  — match given old positions against parsed rows
POST /api/matching/tenders/{id}/match     — match a tender's stored positions against parsed rows
POST /api/matching/transfers              — plan re-parenting of supplementary positions
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import MATCH_AUTO_THRESHOLD
from app.db import get_db
from app.api.deps import get_current_user
from app.models.orm_models import User
from app.services.position_matcher import (
    ClientPositionSnapshot,
    ParsedRow,
    calculate_matching_statistics,
    find_best_matches,
    format_match_score,
    get_unmatched_new_indices,
    get_unmatched_old_positions,
)
from app.services.tender_store import TenderNotFoundError, load_client_positions
from app.services.version_transfer import plan_additional_transfers

router = APIRouter(prefix="/api/matching", tags=["Version Matching"])
logger = logging.getLogger("tender-matching-routes")


# ── Pydantic Models ─────────────────────────────────────────────────────────

class PositionIn(BaseModel):
    id: str
    item_no: Optional[str] = None
    work_name: Optional[str] = None
    unit_code: Optional[str] = None
    volume: Optional[float] = None
    is_additional: bool = False
    position_number: float = 0.0
    hierarchy_level: int = 0
    parent_position_id: Optional[str] = None


class RowIn(BaseModel):
    item_no: Optional[str] = None
    work_name: Optional[str] = None
    unit_code: Optional[str] = None
    volume: Optional[float] = None
    hierarchy_level: int = 0
    client_note: Optional[str] = None


class RowsRequest(BaseModel):
    new_rows: List[RowIn]
    threshold: float = Field(MATCH_AUTO_THRESHOLD, ge=0, le=100)


class MatchRequest(RowsRequest):
    old_positions: List[PositionIn]


class TransferRequest(BaseModel):
    additional: List[PositionIn]
    match_map: Dict[str, str]           # old position id -> new position id
    old_positions: List[PositionIn]
    new_positions: List[PositionIn]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _position(p: PositionIn) -> ClientPositionSnapshot:
    return ClientPositionSnapshot(**p.model_dump())


def _row(r: RowIn) -> ParsedRow:
    return ParsedRow(**r.model_dump())


def _match_response(old: List[ClientPositionSnapshot], rows: List[ParsedRow], threshold: float) -> dict:
    matches = find_best_matches(old, rows, threshold)
    stats = calculate_matching_statistics(old, rows, matches)
    return {
        "matches": [
            {
                "old_position_id": m.old_position_id,
                "new_row_index": m.new_row_index,
                "match_type": m.match_type,
                "score": {
                    "item_no": m.score.item_no,
                    "name": m.score.name,
                    "unit": m.score.unit,
                    "volume": m.score.volume,
                    "total": m.score.total,
                },
                "label": format_match_score(m.score),
            }
            for m in matches
        ],
        "unmatched_old_position_ids": [p.id for p in get_unmatched_old_positions(old, matches)],
        "unmatched_new_row_indices": get_unmatched_new_indices(rows, matches),
        "additional_position_ids": [p.id for p in old if p.is_additional],
        "statistics": {
            "total_old": stats.total_old,
            "total_new": stats.total_new,
            "auto_matched": stats.auto_matched,
            "low_confidence": stats.low_confidence,
            "deleted": stats.deleted,
            "new": stats.new,
            "additional_works": stats.additional_works,
        },
    }


# ── Endpoints ────────────────────────────────────────────────────────────────

@router.post("/match")
async def match_positions(req: MatchRequest, user: User = Depends(get_current_user)):
    return _match_response(
        [_position(p) for p in req.old_positions],
        [_row(r) for r in req.new_rows],
        req.threshold,
    )


@router.post("/tenders/{tender_id}/match")
async def match_tender_positions(
    tender_id: str,
    req: RowsRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        old = await load_client_positions(db, tender_id)
    except TenderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logger.info(f"Matching {len(req.new_rows)} rows against tender {tender_id}",
                extra={"tender_id": tender_id})
    return {"tender_id": tender_id, **_match_response(old, [_row(r) for r in req.new_rows], req.threshold)}


@router.post("/transfers")
async def plan_transfers(req: TransferRequest, user: User = Depends(get_current_user)):
    plan = plan_additional_transfers(
        [_position(p) for p in req.additional],
        req.match_map,
        [_position(p) for p in req.old_positions],
        [_position(p) for p in req.new_positions],
    )
    return {
        "transfers": [
            {
                "position_id": t.position_id,
                "original_parent_id": t.original_parent_id,
                "new_parent_id": t.new_parent_id,
                "reason": t.reason,
                "position_number": t.position_number,
                "success": t.success,
            }
            for t in plan
        ],
    }
