"""
test_pricing_engine.py — Unit tests for PricingEngine.

Tests cover:
  - Putting a coefficient on the item type's own axis
  - Pricing distribution of base and markup parts, with category fallbacks
  - Per-item commercial cost (missing sequence, non-positive base, exclusions)
  - Recalculation check against stored commercial costs
  - Fallback markup parameters
  - Tender-wide aggregation by markup parameter
  - Coefficient vs direct evaluation consistency

All tests are pure unit tests; no database or external services required.
"""

import pytest

from app.services.pricing_engine import (
    BoqItemSnapshot,
    CostAxis,
    GrowthExclusions,
    ItemCost,
    PricingDistribution,
    Tactic,
    aggregate_tender_markup,
    apply_pricing_distribution,
    apply_to_item,
    calculate_boq_item_cost,
    check_consistency,
    compute_coefficients,
    is_material_type,
    needs_recalculation,
    resolve_markup_values,
)

_WORK_COEFFICIENT = 1.6 * 1.1 * 1.03 * 1.1 * 1.1
_MATERIAL_COEFFICIENT = 1.1 * 1.03


def _item(item_id, item_type, amount, **kwargs):
    return BoqItemSnapshot(id=item_id, boq_item_type=item_type, total_amount=amount, **kwargs)


# ===========================================================================
# Class 1: Item axes
# ===========================================================================

class TestItemAxes:

    @pytest.mark.parametrize("item_type", ["мат", "суб-мат", "мат-комп."])
    def test_material_types(self, item_type):
        assert is_material_type(item_type)

    @pytest.mark.parametrize("item_type", ["раб", "суб-раб", "раб-комп.", "unknown"])
    def test_work_types(self, item_type):
        assert not is_material_type(item_type)

    def test_apply_to_material_item(self):
        cost = apply_to_item("мат", 1000.0, 1.1)
        assert cost.material_cost == pytest.approx(1100.0)
        assert cost.work_cost == 0.0
        assert cost.total == pytest.approx(1100.0)

    def test_apply_to_work_component(self):
        cost = apply_to_item("раб-комп.", 200.0, 2.0)
        assert cost == ItemCost(material_cost=0.0, work_cost=400.0, coefficient=2.0)


# ===========================================================================
# Class 2: Pricing distribution
# ===========================================================================

class TestPricingDistribution:

    def test_no_distribution_uses_own_axis(self):
        assert apply_pricing_distribution(100.0, 150.0, "мат", None) == (150.0, 0.0)
        assert apply_pricing_distribution(100.0, 150.0, "суб-раб", None) == (0.0, 150.0)

    def test_defaults_keep_work_on_work(self):
        assert apply_pricing_distribution(100.0, 150.0, "раб", PricingDistribution()) == (0.0, 150.0)

    def test_work_markup_moved_to_material(self):
        dist = PricingDistribution(work_markup_target=CostAxis.MATERIAL)
        material, work = apply_pricing_distribution(1000.0, 1500.0, "раб", dist)
        assert material == pytest.approx(500.0)
        assert work == pytest.approx(1000.0)

    def test_subcontract_work_priced_as_work(self):
        dist = PricingDistribution(work_base_target=CostAxis.MATERIAL)
        assert apply_pricing_distribution(100.0, 150.0, "суб-раб", dist) == (100.0, 50.0)

    def test_component_material_falls_back_to_auxiliary(self):
        dist = PricingDistribution(auxiliary_material_markup_target=CostAxis.WORK)
        assert apply_pricing_distribution(100.0, 150.0, "мат-комп.", dist) == (100.0, 50.0)

    def test_component_material_own_settings_win(self):
        dist = PricingDistribution(
            auxiliary_material_markup_target=CostAxis.WORK,
            component_material_base_target=CostAxis.MATERIAL,
            component_material_markup_target=CostAxis.MATERIAL,
        )
        assert apply_pricing_distribution(100.0, 150.0, "мат-комп.", dist) == (150.0, 0.0)

    def test_component_work_falls_back_to_work(self):
        dist = PricingDistribution(work_markup_target=CostAxis.MATERIAL)
        assert apply_pricing_distribution(100.0, 150.0, "раб-комп.", dist) == (50.0, 100.0)

    def test_subcontract_material_without_settings_goes_to_work(self):
        assert apply_pricing_distribution(100.0, 150.0, "суб-мат", PricingDistribution()) == (0.0, 150.0)

    def test_subcontract_material_with_settings(self):
        dist = PricingDistribution(
            subcontract_basic_material_base_target=CostAxis.MATERIAL,
            subcontract_basic_material_markup_target=CostAxis.WORK,
        )
        assert apply_pricing_distribution(100.0, 150.0, "суб-мат", dist) == (100.0, 50.0)

    def test_unknown_type_goes_to_work(self):
        assert apply_pricing_distribution(100.0, 150.0, "прочее", PricingDistribution()) == (0.0, 150.0)

    def test_from_mapping_ignores_empty_columns(self):
        dist = PricingDistribution.from_mapping({
            "work_markup_target": "material",
            "component_work_base_target": None,
            "tender_id": "t-1",
        })
        assert dist.work_markup_target is CostAxis.MATERIAL
        assert dist.work_base_target is CostAxis.WORK
        assert dist.targets("component_work") is None
        assert dist.targets("work") == (CostAxis.WORK, CostAxis.MATERIAL)


# ===========================================================================
# Class 3: Per-item commercial cost
# ===========================================================================

class TestBoqItemCost:

    def test_work_item(self, tactic, markup_values):
        cost = calculate_boq_item_cost(_item("1", "раб", 1000.0), tactic, markup_values)
        assert cost.material_cost == 0.0
        assert cost.work_cost == pytest.approx(1000.0 * _WORK_COEFFICIENT)
        assert cost.coefficient == pytest.approx(_WORK_COEFFICIENT)

    def test_material_item(self, tactic, markup_values):
        cost = calculate_boq_item_cost(_item("1", "мат", 500.0), tactic, markup_values)
        assert cost.material_cost == pytest.approx(566.5)
        assert cost.work_cost == 0.0

    def test_type_without_sequence_returns_none(self, tactic, markup_values):
        assert calculate_boq_item_cost(_item("1", "раб-комп.", 300.0), tactic, markup_values) is None

    def test_zero_base_kept(self, tactic, markup_values):
        cost = calculate_boq_item_cost(_item("1", "раб", 0.0), tactic, markup_values)
        assert cost == ItemCost(material_cost=0.0, work_cost=0.0, coefficient=1.0)

    def test_missing_amount_is_zero_base(self, tactic, markup_values):
        cost = calculate_boq_item_cost(_item("1", "мат", None), tactic, markup_values)
        assert cost.total == 0.0
        assert cost.coefficient == 1.0

    def test_negative_base_kept_unchanged(self, tactic, markup_values):
        cost = calculate_boq_item_cost(_item("1", "мат", -50.0), tactic, markup_values)
        assert cost.material_cost == -50.0
        assert cost.coefficient == 1.0

    def test_subcontract_with_growth(self, tactic, markup_values):
        cost = calculate_boq_item_cost(_item("1", "суб-раб", 1000.0), tactic, markup_values)
        assert cost.work_cost == pytest.approx(1000.0 * 1.1 * 1.1 * 1.16)

    def test_subcontract_excluded_from_growth(self, tactic, markup_values):
        cost = calculate_boq_item_cost(_item("1", "суб-раб", 1000.0), tactic, markup_values, excluded=True)
        assert cost.work_cost == pytest.approx(1276.0)
        assert cost.coefficient == pytest.approx(1.276)

    def test_distribution_applied(self, tactic, markup_values):
        dist = PricingDistribution(work_markup_target=CostAxis.MATERIAL)
        cost = calculate_boq_item_cost(_item("1", "раб", 1000.0), tactic, markup_values, dist)
        assert cost.work_cost == pytest.approx(1000.0)
        assert cost.material_cost == pytest.approx(1000.0 * (_WORK_COEFFICIENT - 1.0))


class TestGrowthExclusions:

    def test_subcontract_work_in_excluded_category(self):
        exclusions = GrowthExclusions(works=frozenset({"cat-1"}))
        assert exclusions.is_excluded(_item("1", "суб-раб", 1.0, detail_cost_category_id="cat-1"))

    def test_exclusion_lists_are_separate(self):
        exclusions = GrowthExclusions(works=frozenset({"cat-1"}))
        assert not exclusions.is_excluded(_item("1", "суб-мат", 1.0, detail_cost_category_id="cat-1"))

    def test_own_forces_never_excluded(self):
        exclusions = GrowthExclusions(works=frozenset({"cat-1"}), materials=frozenset({"cat-1"}))
        assert not exclusions.is_excluded(_item("1", "раб", 1.0, detail_cost_category_id="cat-1"))

    def test_item_without_category(self):
        exclusions = GrowthExclusions(works=frozenset({"cat-1"}))
        assert not exclusions.is_excluded(_item("1", "суб-раб", 1.0))


# ===========================================================================
# Class 4: Recalculation check and fallback parameters
# ===========================================================================

class TestNeedsRecalculation:

    def test_no_base_amount(self):
        assert not needs_recalculation(_item("1", "раб", None))
        assert not needs_recalculation(_item("1", "раб", 0.0))

    def test_no_stored_commercial_cost(self):
        assert needs_recalculation(_item("1", "раб", 1000.0))

    def test_stored_cost_without_coefficient(self):
        assert needs_recalculation(_item("1", "раб", 1000.0, total_commercial_work_cost=1100.0))

    def test_consistent_stored_cost(self):
        item = _item("1", "раб", 1000.0, total_commercial_work_cost=1100.005, commercial_markup=1.1)
        assert not needs_recalculation(item)

    def test_stale_stored_cost(self):
        item = _item("1", "раб", 1000.0, total_commercial_work_cost=1100.5, commercial_markup=1.1)
        assert needs_recalculation(item)

    def test_material_item_reads_material_column(self):
        item = _item("1", "мат", 1000.0, total_commercial_work_cost=1100.0, commercial_markup=1.1)
        assert needs_recalculation(item)


class TestMarkupValues:

    def test_none_uses_fallback(self, markup_values):
        assert resolve_markup_values(None) == markup_values

    def test_empty_mapping_stays_empty(self):
        assert resolve_markup_values({}) == {}
        assert resolve_markup_values({"profit_own_forces": None}) == {}

    def test_empty_mapping_means_zero_markup(self, tactic):
        """Every key resolves to 0, so addOne steps multiply by 1."""
        values = resolve_markup_values({})
        assert compute_coefficients(tactic, values)["раб"] == pytest.approx(1.0)

    def test_stored_values_used_as_is(self):
        assert resolve_markup_values({"profit_own_forces": 12, "mbp_gsm": None}) == {"profit_own_forces": 12.0}

    def test_coefficients_per_type(self, tactic, markup_values):
        coefficients = compute_coefficients(tactic, markup_values)
        assert set(coefficients) == {"раб", "мат", "суб-раб", "суб-мат"}
        assert coefficients["раб"] == pytest.approx(_WORK_COEFFICIENT)
        assert coefficients["мат"] == pytest.approx(_MATERIAL_COEFFICIENT)
        assert coefficients["суб-мат"] == pytest.approx(1.1 * 1.16)


# ===========================================================================
# Class 5: Aggregation
# ===========================================================================

@pytest.fixture
def tender_items():
    return [
        _item("w1", "раб", 1000.0),
        _item("m1", "мат", 500.0),
        _item("s1", "суб-раб", 2000.0, detail_cost_category_id="cat-x"),
        _item("c1", "раб-комп.", 300.0),
        _item("z1", "мат", 0.0),
    ]


class TestAggregation:

    def test_direct_costs(self, tender_items, tactic, markup_values):
        agg = aggregate_tender_markup(tender_items, tactic, markup_values)
        dc = agg.direct_costs
        assert dc.works == 1000.0
        assert dc.materials == 500.0
        assert dc.subcontract_works == 2000.0
        assert dc.works_comp == 300.0
        assert dc.total == pytest.approx(3800.0)
        assert agg.total_base_amount == pytest.approx(3800.0)

    def test_commercial_total_with_exclusion(self, tender_items, tactic, markup_values):
        exclusions = GrowthExclusions(works=frozenset({"cat-x"}))
        agg = aggregate_tender_markup(tender_items, tactic, markup_values, exclusions)
        expected = 1000.0 * _WORK_COEFFICIENT + 566.5 + 2552.0 + 300.0
        assert agg.total_commercial_cost == pytest.approx(expected)
        assert "subcontract_works_cost_growth" not in agg.by_parameter

    def test_markup_credited_per_parameter(self, tender_items, tactic, markup_values):
        exclusions = GrowthExclusions(works=frozenset({"cat-x"}))
        agg = aggregate_tender_markup(tender_items, tactic, markup_values, exclusions)
        assert agg.by_parameter["works_16_markup"].total_markup_amount == pytest.approx(600.0)

        contingency = agg.by_parameter["contingency_costs"]
        assert contingency.total_markup_amount == pytest.approx(52.8 + 16.5)
        assert contingency.item_count == 2
        assert contingency.by_item_type == pytest.approx({"раб": 52.8, "мат": 16.5})

        assert agg.markup_for("overhead_subcontract", "profit_subcontract") == pytest.approx(552.0)
        assert agg.markup_for("not_a_parameter") == 0.0

    def test_parameter_totals_add_up_to_total_markup(self, tender_items, tactic, markup_values):
        agg = aggregate_tender_markup(tender_items, tactic, markup_values)
        parameter_sum = sum(p.total_markup_amount for p in agg.by_parameter.values())
        assert parameter_sum == pytest.approx(agg.total_markup_amount)

    def test_item_details(self, tender_items, tactic, markup_values):
        agg = aggregate_tender_markup(tender_items, tactic, markup_values, include_item_details=True)
        assert [d.item_id for d in agg.item_details] == ["w1", "m1", "s1"]
        assert len(agg.item_details[0].step_details) == 5

    def test_item_details_off_by_default(self, tender_items, tactic, markup_values):
        assert aggregate_tender_markup(tender_items, tactic, markup_values).item_details == []


# ===========================================================================
# Class 6: Consistency
# ===========================================================================

class TestConsistency:

    def test_multiplicative_tactic_is_consistent(self, tender_items, tactic, markup_values):
        assert check_consistency(tender_items, tactic, markup_values) == []

    def test_flat_addition_is_reported(self):
        flat = Tactic.from_mapping({
            "раб": [{"baseIndex": -1, "action1": "add", "operand1Type": "number", "operand1Key": "100"}],
        })
        items = [_item("w1", "раб", 1000.0), _item("w2", "раб", 100.0), _item("w3", "раб", 0.0)]
        mismatches = check_consistency(items, flat, {})
        # 100 is the coefficient base itself, so only w1 disagrees
        assert [m.item_id for m in mismatches] == ["w1"]
        assert mismatches[0].via_coefficient == pytest.approx(2000.0)
        assert mismatches[0].via_sequence == pytest.approx(1100.0)
        assert mismatches[0].difference == pytest.approx(900.0)
