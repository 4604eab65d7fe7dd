"""
test_tender_store.py — Recalculation write-back through an in-memory session.

The session replays canned query results in the order the store issues them,
so the full load -> price -> write -> roll-up path runs without a database.
"""

import asyncio
from types import SimpleNamespace

import pytest

from app.config import FALLBACK_MARKUP_PARAMETERS
from app.services.tender_store import TenderNotFoundError, load_markup_values, recalculate_tender


class FakeResult:

    def __init__(self, value):
        self._value = value

    def scalar_one_or_none(self):
        return self._value

    def scalars(self):
        return self

    def all(self):
        return list(self._value)


class FakeSession:
    """Returns queued results one per ``execute`` call."""

    def __init__(self, *results):
        self._results = list(results)
        self.executed = 0
        self.flushed = False

    async def execute(self, statement):
        self.executed += 1
        return FakeResult(self._results.pop(0))

    async def flush(self):
        self.flushed = True


def _item(item_id, item_type, amount, position_id, category=None):
    return SimpleNamespace(
        id=item_id, boq_item_type=item_type, total_amount=amount,
        detail_cost_category_id=category, client_position_id=position_id,
        total_commercial_material_cost=None, total_commercial_work_cost=None, commercial_markup=None,
    )


@pytest.fixture
def tender():
    return SimpleNamespace(id="t-1", markup_tactic_id="tac-1")


@pytest.fixture
def items():
    return [
        _item("b1", "раб", 1000.0, "P1"),
        _item("b2", "мат", 500.0, "P1"),
        _item("b3", "раб-комп.", 300.0, "P2"),
        _item("b4", "суб-раб", 1000.0, "P2", category="cat-x"),
    ]


@pytest.fixture
def positions():
    return [
        SimpleNamespace(id="P1", total_commercial_material=None, total_commercial_work=None),
        SimpleNamespace(id="P2", total_commercial_material=None, total_commercial_work=None),
    ]


@pytest.fixture
def session(tender, raw_sequences, markup_values, items, positions):
    tactic = SimpleNamespace(sequences=raw_sequences, name="Базовая", base_costs=None)
    exclusions = [SimpleNamespace(exclusion_type="works", detail_cost_category_id="cat-x")]
    return FakeSession(
        tender,
        tactic,
        tender,
        list(markup_values.items()),
        None,
        exclusions,
        items,
        positions,
    )


class TestRecalculateTender:

    def test_summary(self, session):
        summary = asyncio.run(recalculate_tender(session, "t-1"))
        assert summary.tender_id == "t-1"
        assert summary.updated == 3
        assert summary.skipped == 1
        assert summary.positions_updated == 2
        assert session.executed == 8
        assert session.flushed

    def test_item_columns_written(self, session, items):
        """раб 1000 × 1.6 × 1.1 × 1.03 × 1.1 × 1.1; мат 500 × 1.1 × 1.03"""
        asyncio.run(recalculate_tender(session, "t-1"))
        work, material, untouched, subcontract = items
        assert work.total_commercial_work_cost == pytest.approx(2193.49)
        assert work.total_commercial_material_cost == 0.0
        assert work.commercial_markup == pytest.approx(1.6 * 1.1 * 1.03 * 1.1 * 1.1)
        assert material.total_commercial_material_cost == pytest.approx(566.5)
        assert material.total_commercial_work_cost == 0.0
        assert untouched.total_commercial_work_cost is None
        assert untouched.commercial_markup is None

    def test_excluded_growth_dropped(self, session, items):
        """Category cat-x skips the subcontract growth step: 1000 × 1.1 × 1.16"""
        asyncio.run(recalculate_tender(session, "t-1"))
        assert items[3].total_commercial_work_cost == pytest.approx(1276.0)

    def test_positions_rolled_up(self, session, positions):
        asyncio.run(recalculate_tender(session, "t-1"))
        first, second = positions
        assert first.total_commercial_material == pytest.approx(566.5)
        assert first.total_commercial_work == pytest.approx(2193.49)
        assert second.total_commercial_material == 0.0
        assert second.total_commercial_work == pytest.approx(1276.0)

    def test_unknown_tender(self):
        with pytest.raises(TenderNotFoundError):
            asyncio.run(recalculate_tender(FakeSession(None), "t-404"))


class TestLoadMarkupValues:

    def test_no_stored_rows_uses_fallback(self, tender):
        values = asyncio.run(load_markup_values(FakeSession(tender, []), "t-1"))
        assert values == dict(FALLBACK_MARKUP_PARAMETERS)

    def test_stored_rows_used(self, tender):
        session = FakeSession(tender, [("profit_own_forces", 12), ("mbp_gsm", None)])
        assert asyncio.run(load_markup_values(session, "t-1")) == {"profit_own_forces": 12.0}
