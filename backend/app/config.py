"""
Markup and matching configuration — single source of truth for probe values,
match weights, thresholds and fallback markup parameters.

Import from here in services and routes rather than hardcoding values.
"""
from __future__ import annotations

import os

# ── Markup engine ─────────────────────────────────────────────────────────────

# Normalized probe value used to derive a coefficient from a step sequence
COEFFICIENT_PROBE_BASE: float = 100.0

# Sentinel step index meaning "the original input to the whole sequence"
BASE_SENTINEL_INDEX: int = -1

# Max (action, operand) pairs in a single step
MAX_OPERATIONS_PER_STEP: int = 3

# Tolerance (currency units) when checking stored commercial costs
RECALC_TOLERANCE: float = 0.01

# Growth parameter removed from a sequence when the item's detail cost
# category is excluded from subcontract growth
GROWTH_PARAMETER_BY_ITEM_TYPE: dict[str, str] = {
    "суб-раб": "subcontract_works_cost_growth",
    "суб-мат": "subcontract_materials_cost_growth",
}

# Fallback percentages used when a tender has no stored markup values
FALLBACK_MARKUP_PARAMETERS: dict[str, float] = {
    "mechanization_service":             5.0,
    "mbp_gsm":                           5.0,
    "warranty_period":                   5.0,
    "works_16_markup":                   60.0,
    "works_cost_growth":                 10.0,
    "material_cost_growth":              10.0,
    "subcontract_works_cost_growth":     10.0,
    "subcontract_materials_cost_growth": 10.0,
    "contingency_costs":                 3.0,
    "overhead_own_forces":               10.0,
    "overhead_subcontract":              10.0,
    "general_costs_without_subcontract": 20.0,
    "profit_own_forces":                 10.0,
    "profit_subcontract":                16.0,
}


# ── Position matcher ──────────────────────────────────────────────────────────

# Score weights (sum = 100)
MATCH_WEIGHT_ITEM_NO: float = 30.0
MATCH_WEIGHT_NAME: float = 50.0
MATCH_WEIGHT_UNIT: float = 10.0
MATCH_WEIGHT_VOLUME: float = 10.0

# A candidate must score strictly above this to be accepted at all
MATCH_MIN_SCORE: float = 50.0

# Accepted matches at or above this are applied without confirmation
MATCH_AUTO_THRESHOLD: float = float(os.getenv("MATCH_AUTO_THRESHOLD", "80"))

# Relative volume difference bands
VOLUME_TIGHT_BAND: float = 0.05
VOLUME_LOOSE_BAND: float = 0.50
