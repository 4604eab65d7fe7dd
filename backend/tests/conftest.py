"""
conftest.py — Shared pytest fixtures for the tender markup backend test suite.

No database or external service fixtures are defined here. Engine tests are
pure unit tests; route tests use FastAPI's TestClient with the auth and DB
dependencies overridden.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

os.environ.setdefault("LOG_FORMAT", "text")


def mul_step(base_index, key, fmt="addOne", name=None):
    """Raw camelCase step: ``base × markup(key)``."""
    step = {
        "baseIndex": base_index,
        "action1": "multiply",
        "operand1Type": "markup",
        "operand1Key": key,
        "operand1MultiplyFormat": fmt,
    }
    if name:
        step["name"] = name
    return step


# ---------------------------------------------------------------------------
# Markup fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def markup_values():
    """
    Tender percentages matching the fallback parameter set.

    Own-forces work chain: 1.6 × 1.1 × 1.03 × 1.1 × 1.1 = 2.193...
    """
    from app.config import FALLBACK_MARKUP_PARAMETERS
    return dict(FALLBACK_MARKUP_PARAMETERS)


@pytest.fixture(scope="session")
def raw_sequences():
    """Purely multiplicative sequences for four item types (two left unset)."""
    return {
        "раб": [
            mul_step(-1, "works_16_markup", name="Работы 1,6"),
            mul_step(0, "works_cost_growth"),
            mul_step(1, "contingency_costs"),
            mul_step(2, "overhead_own_forces"),
            mul_step(3, "profit_own_forces"),
        ],
        "мат": [
            mul_step(-1, "material_cost_growth"),
            mul_step(0, "contingency_costs"),
        ],
        "суб-раб": [
            mul_step(-1, "subcontract_works_cost_growth"),
            mul_step(0, "overhead_subcontract"),
            mul_step(1, "profit_subcontract"),
        ],
        "суб-мат": [
            mul_step(-1, "subcontract_materials_cost_growth"),
            mul_step(0, "profit_subcontract"),
        ],
    }


@pytest.fixture(scope="session")
def tactic(raw_sequences):
    from app.services.pricing_engine import Tactic
    return Tactic.from_mapping(raw_sequences, name="Базовая")


# ---------------------------------------------------------------------------
# Matching fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def old_positions():
    """Three regular positions and one supplementary (ДОП) position under A."""
    from app.services.position_matcher import ClientPositionSnapshot as P
    return [
        P(id="A", item_no="1.1", work_name="Кладка кирпича", unit_code="м3", volume=450.5, position_number=1),
        P(id="B", item_no="1.2", work_name="Штукатурка стен", unit_code="м2", volume=1200.0, position_number=2),
        P(id="C", item_no="2.1", work_name="Устройство кровли", unit_code="м2", volume=800.0, position_number=3),
        P(id="D", item_no=None, work_name="Доп. армирование", unit_code="т", volume=2.0,
          position_number=1.1, is_additional=True, parent_position_id="A"),
    ]
