"""
Version transfer of supplementary ("ДОП") positions.

Supplementary positions are added by the contractor under a client position
and are skipped by the matcher. After the old and new versions are matched,
each one is re-parented:

  1. parent matched          -> the parent's counterpart in the new version
  2. parent deleted          -> nearest new position of the same section
                                (item_no), searching upward, then downward
  3. nothing of the section  -> no_parent_found

Supplementary positions are numbered after their parent: 5 -> 5.1, 5.2, ...
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from app.services.position_matcher import ClientPositionSnapshot

logger = logging.getLogger("tender-transfer")

REASON_PARENT_MATCHED = "parent_matched"
REASON_ALTERNATIVE = "parent_deleted_found_alternative"
REASON_NO_PARENT = "no_parent_found"


@dataclass(frozen=True)
class AdditionalTransfer:
    position_id: str
    original_parent_id: Optional[str]
    new_parent_id: Optional[str]
    reason: str
    position_number: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.new_parent_id is not None


def find_alternative_parent(
    deleted_parent: ClientPositionSnapshot,
    new_positions: Iterable[ClientPositionSnapshot],
) -> Optional[ClientPositionSnapshot]:
    if not deleted_parent.item_no:
        return None
    target = deleted_parent.position_number
    same_section = [p for p in new_positions if p.item_no == deleted_parent.item_no]

    above = [p for p in same_section if p.position_number < target]
    if above:
        return max(above, key=lambda p: p.position_number)
    below = [p for p in same_section if p.position_number > target]
    if below:
        return min(below, key=lambda p: p.position_number)
    return None


def next_additional_number(parent_number: float, existing_numbers: Iterable[float] = ()) -> float:
    """
    Next free ``parent.N`` number given the parent's existing supplementary numbers.

    Numbers step by 0.1 up to ``parent.9``. Past that they halve the gap to
    the next whole number (5.95, 5.975, ...), so a supplementary position
    never takes the number of the following regular position.
    """
    existing = list(existing_numbers)
    if not existing:
        return parent_number + 0.1
    last = max(existing)
    whole = math.floor(last)
    candidate = whole + round((last - whole + 0.1) * 10) / 10
    if candidate >= whole + 1:
        return (last + whole + 1) / 2
    return candidate


def plan_additional_transfers(
    additional: Sequence[ClientPositionSnapshot],
    match_map: Mapping[str, str],
    old_positions: Iterable[ClientPositionSnapshot],
    new_positions: Sequence[ClientPositionSnapshot],
) -> List[AdditionalTransfer]:
    """
    Decide the new parent and number of every supplementary position.

    ``match_map`` maps old position ids to new position ids. Numbers already
    taken by supplementary positions of the new version, and numbers handed
    out earlier in this plan, are not reused.
    """
    old_by_id = {p.id: p for p in old_positions}
    new_by_id = {p.id: p for p in new_positions}
    taken: Dict[str, List[float]] = {}
    for p in new_positions:
        if p.is_additional and p.parent_position_id:
            taken.setdefault(p.parent_position_id, []).append(p.position_number)

    plan: List[AdditionalTransfer] = []
    for position in additional:
        parent_id = position.parent_position_id
        new_parent_id: Optional[str] = None
        reason = REASON_NO_PARENT

        if parent_id and parent_id in match_map:
            new_parent_id = match_map[parent_id]
            reason = REASON_PARENT_MATCHED
        elif parent_id and parent_id in old_by_id:
            alternative = find_alternative_parent(old_by_id[parent_id], new_positions)
            if alternative is not None:
                new_parent_id = alternative.id
                reason = REASON_ALTERNATIVE

        parent = new_by_id.get(new_parent_id) if new_parent_id else None
        if parent is None:
            if new_parent_id is not None:
                logger.warning("Matched parent %s of %s is not in the new version", new_parent_id, position.id)
            plan.append(AdditionalTransfer(position.id, parent_id, None, REASON_NO_PARENT))
            continue

        number = next_additional_number(parent.position_number, taken.get(parent.id, []))
        taken.setdefault(parent.id, []).append(number)
        plan.append(AdditionalTransfer(position.id, parent_id, parent.id, reason, number))

    logger.info(
        "Planned %d supplementary transfers, %d without parent",
        len(plan), sum(1 for t in plan if not t.success),
    )
    return plan
