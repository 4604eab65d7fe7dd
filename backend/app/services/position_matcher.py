"""
PositionMatcher — reconciles an old tender version's client positions with
the rows parsed from a new version of the client's spreadsheet.

Score per (old position, new row), 0-100:
  item_no equality    30
  name similarity     50   (normalized Levenshtein)
  unit equality       10
  volume proximity    10

Assignment is greedy in new-row order: each new row takes the best unclaimed
old position. A match needs a score above 50; at or above the auto threshold
it is applied without confirmation.

Supplementary ("ДОП") positions are never matched here; see version_transfer.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from app.config import (
    MATCH_AUTO_THRESHOLD,
    MATCH_MIN_SCORE,
    MATCH_WEIGHT_ITEM_NO,
    MATCH_WEIGHT_NAME,
    MATCH_WEIGHT_UNIT,
    MATCH_WEIGHT_VOLUME,
    VOLUME_LOOSE_BAND,
    VOLUME_TIGHT_BAND,
)

logger = logging.getLogger("tender-matcher")

MATCH_AUTO = "auto"
MATCH_LOW_CONFIDENCE = "low_confidence"

_WHITESPACE_RE = re.compile(r"\s+")
# ASCII word chars, whitespace and Cyrillic survive
_PUNCTUATION_RE = re.compile(r"[^a-z0-9_\s\u0400-\u04ff]")


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------

@dataclass
class ClientPositionSnapshot:
    """A client position of the old tender version."""
    id: str
    item_no: Optional[str] = None
    work_name: Optional[str] = None
    unit_code: Optional[str] = None
    volume: Optional[float] = None
    is_additional: bool = False
    position_number: float = 0.0
    hierarchy_level: int = 0
    parent_position_id: Optional[str] = None


@dataclass
class ParsedRow:
    """A row of the new version, as parsed from the spreadsheet."""
    item_no: Optional[str] = None
    work_name: Optional[str] = None
    unit_code: Optional[str] = None
    volume: Optional[float] = None
    hierarchy_level: int = 0
    client_note: Optional[str] = None


@dataclass(frozen=True)
class MatchScore:
    item_no: float
    name: float
    unit: float
    volume: float

    @property
    def total(self) -> float:
        return self.item_no + self.name + self.unit + self.volume


@dataclass(frozen=True)
class MatchResult:
    old_position_id: str
    new_row_index: int
    score: MatchScore
    match_type: str


@dataclass(frozen=True)
class MatchingStatistics:
    total_old: int
    total_new: int
    auto_matched: int
    low_confidence: int
    deleted: int
    new: int
    additional_works: int


# ---------------------------------------------------------------------------
# Similarity metrics
# ---------------------------------------------------------------------------

def normalize_string(value: Optional[str]) -> str:
    """Lowercase, trim, collapse whitespace, then strip punctuation."""
    text = _WHITESPACE_RE.sub(" ", (value or "").lower().strip())
    return _PUNCTUATION_RE.sub("", text)


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance on the lowercased, trimmed strings."""
    s1 = a.lower().strip()
    s2 = b.lower().strip()
    if not s1:
        return len(s2)
    if not s2:
        return len(s1)

    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            cost = 0 if c1 == c2 else 1
            current.append(min(
                previous[j] + 1,          # deletion
                current[j - 1] + 1,       # insertion
                previous[j - 1] + cost,   # substitution
            ))
        previous = current
    return previous[-1]


def calculate_string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """1 - distance / max_len over normalized strings; 0 when either is empty."""
    if not a or not b:
        return 0.0
    n1 = normalize_string(a)
    n2 = normalize_string(b)
    max_len = max(len(n1), len(n2))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein_distance(n1, n2) / max_len


def calculate_volume_proximity(v1: Optional[float], v2: Optional[float]) -> float:
    """
    Closeness of two quantities in [0, 1].

    Relative difference is measured against the mean of the absolute values;
    under 5 % scores 1, over 50 % scores 0, linear in between. Absence or zero
    on one side only is a strong mismatch and scores 0.
    """
    if v1 is None and v2 is None:
        return 1.0
    if v1 is None or v2 is None:
        return 0.0
    if v1 == 0 and v2 == 0:
        return 1.0
    if v1 == 0 or v2 == 0:
        return 0.0

    mean = (abs(v1) + abs(v2)) / 2
    relative = abs(v1 - v2) / mean
    if relative < VOLUME_TIGHT_BAND:
        return 1.0
    if relative > VOLUME_LOOSE_BAND:
        return 0.0
    return 1.0 - (relative - VOLUME_TIGHT_BAND) / (VOLUME_LOOSE_BAND - VOLUME_TIGHT_BAND)


def _exact_key(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def calculate_match_score(old: ClientPositionSnapshot, new: ParsedRow) -> MatchScore:
    return MatchScore(
        item_no=MATCH_WEIGHT_ITEM_NO if _exact_key(old.item_no) == _exact_key(new.item_no) else 0.0,
        name=calculate_string_similarity(old.work_name, new.work_name) * MATCH_WEIGHT_NAME,
        unit=MATCH_WEIGHT_UNIT if _exact_key(old.unit_code) == _exact_key(new.unit_code) else 0.0,
        volume=calculate_volume_proximity(old.volume, new.volume) * MATCH_WEIGHT_VOLUME,
    )


def is_auto_match(score: MatchScore, threshold: float = MATCH_AUTO_THRESHOLD) -> bool:
    return score.total >= threshold


def format_match_score(score: MatchScore) -> str:
    """e.g. ``95.5% (раздел: 30, название: 48.0, ед.: 10, кол.: 7.5)``"""
    return (
        f"{score.total:.1f}% (раздел: {score.item_no:.0f}, "
        f"название: {score.name:.1f}, ед.: {score.unit:.0f}, кол.: {score.volume:.1f})"
    )


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

def find_best_matches(
    old_positions: Sequence[ClientPositionSnapshot],
    new_rows: Sequence[ParsedRow],
    threshold: float = MATCH_AUTO_THRESHOLD,
) -> List[MatchResult]:
    """
    Greedy assignment in new-row order.

    Ties keep the earliest old position. Each old position is claimed at most
    once per call.
    """
    candidates = [p for p in old_positions if not p.is_additional]
    claimed: set = set()
    results: List[MatchResult] = []

    for index, row in enumerate(new_rows):
        best: Optional[ClientPositionSnapshot] = None
        best_score: Optional[MatchScore] = None
        for old in candidates:
            if old.id in claimed:
                continue
            score = calculate_match_score(old, row)
            if best_score is None or score.total > best_score.total:
                best, best_score = old, score

        if best is None or best_score is None or best_score.total <= MATCH_MIN_SCORE:
            continue
        claimed.add(best.id)
        results.append(MatchResult(
            old_position_id=best.id,
            new_row_index=index,
            score=best_score,
            match_type=MATCH_AUTO if is_auto_match(best_score, threshold) else MATCH_LOW_CONFIDENCE,
        ))

    logger.info(
        "Matched %d of %d new rows against %d old positions (threshold %.1f)",
        len(results), len(new_rows), len(candidates), threshold,
    )
    return results


def get_unmatched_old_positions(
    old_positions: Iterable[ClientPositionSnapshot], matches: Iterable[MatchResult],
) -> List[ClientPositionSnapshot]:
    """Deletion candidates. Supplementary positions are never listed."""
    matched = {m.old_position_id for m in matches}
    return [p for p in old_positions if p.id not in matched and not p.is_additional]


def get_unmatched_new_indices(new_rows: Sequence[ParsedRow], matches: Iterable[MatchResult]) -> List[int]:
    """Creation candidates."""
    matched = {m.new_row_index for m in matches}
    return [i for i in range(len(new_rows)) if i not in matched]


def calculate_matching_statistics(
    old_positions: Sequence[ClientPositionSnapshot],
    new_rows: Sequence[ParsedRow],
    matches: Sequence[MatchResult],
) -> MatchingStatistics:
    return MatchingStatistics(
        total_old=sum(1 for p in old_positions if not p.is_additional),
        total_new=len(new_rows),
        auto_matched=sum(1 for m in matches if m.match_type == MATCH_AUTO),
        low_confidence=sum(1 for m in matches if m.match_type == MATCH_LOW_CONFIDENCE),
        deleted=len(get_unmatched_old_positions(old_positions, matches)),
        new=len(get_unmatched_new_indices(new_rows, matches)),
        additional_works=sum(1 for p in old_positions if p.is_additional),
    )


def build_match_map(matches: Iterable[MatchResult]) -> Dict[str, int]:
    """old position id -> new row index"""
    return {m.old_position_id: m.new_row_index for m in matches}
