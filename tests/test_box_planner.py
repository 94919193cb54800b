"""
Tests for src/box_planner.py — box recommendation.
"""

import pytest

from box_planner import (
    ECONOMICAL,
    SPACIOUS,
    economical_plan,
    recommend,
    recommend_by_weight,
    spacious_plan,
)
from exceptions import PackingInfeasible
from models import BoxDefinition, ExpandedItem


def make_box(marking, qnt_from, qnt_to, overflow=0, weight=0.0, is_active=True):
    return BoxDefinition(name=f"Box {marking}", marking=marking, qnt_from=qnt_from, qnt_to=qnt_to,
                         overflow=overflow, weight=weight, is_active=is_active)


# ============================================================================
# Spacious mode
# ============================================================================

class TestSpaciousPlan:

    def test_single_box_within_range(self, boxes):
        plan = recommend(20, boxes)

        assert plan.feasible
        assert plan.mode == SPACIOUS
        assert plan.box_count == 1
        assert plan.box.marking == 'M-25'
        assert plan.portions_per_box == 20
        assert plan.total_capacity == 25
        assert not plan.has_overflow

    def test_smallest_fitting_range_wins(self, boxes):
        plan = recommend(5, boxes)
        assert plan.box.marking == 'S-10'

    def test_uniform_split_across_identical_boxes(self, boxes):
        plan = spacious_plan(60, boxes)

        assert plan.box.marking == 'M-25'
        assert plan.box_count == 3
        assert plan.portions_per_box == pytest.approx(20)
        assert plan.total_capacity == 75
        assert len(plan.boxes) == 3

    def test_gap_between_ranges_uses_one_larger_box(self, boxes):
        # 12 is above S-10 and below the M-25 minimum; one box beats two
        plan = spacious_plan(12, boxes)
        assert plan.box.marking == 'M-25'
        assert plan.box_count == 1

    def test_uniform_split_preferred_when_no_single_box_fits(self):
        plan = spacious_plan(30, [make_box('L', 10, 20)])
        assert plan.box_count == 2
        assert plan.portions_per_box == 15

    def test_details_per_box(self, boxes):
        plan = spacious_plan(60, boxes)
        assert plan.details == ["Box M-25: 20.00 of 25 portions"] * 3

    def test_inactive_boxes_are_ignored(self):
        catalog = [make_box('A', 1, 10, is_active=False), make_box('B', 1, 20)]
        assert spacious_plan(5, catalog).box.marking == 'B'

    def test_many_boxes_filled_to_the_top(self):
        plan = spacious_plan(100, [make_box('A', 5, 10)])
        assert plan.box_count == 10
        assert plan.portions_per_box == 10

    def test_below_every_minimum_uses_smallest_box(self):
        plan = spacious_plan(7, [make_box('A', 8, 10), make_box('B', 20, 30)])
        assert plan.box.marking == 'A'
        assert plan.box_count == 1

    def test_no_uniform_split_and_no_single_box(self):
        plan = spacious_plan(25, [make_box('A', 20, 20)])
        assert not plan.feasible
        assert "25 portions" in str(plan.error)

    def test_empty_catalog_is_infeasible(self):
        plan = recommend(10, [])

        assert not plan.feasible
        assert plan.boxes == []
        assert isinstance(plan.error, PackingInfeasible)
        assert plan.error.blocking
        assert plan.error.portions == 10


# ============================================================================
# Economical mode
# ============================================================================

class TestEconomicalPlan:

    def test_overflow_reduces_box_count(self):
        catalog = [make_box('E-20', 10, 20, overflow=2)]
        plan = recommend(42, catalog, mode=ECONOMICAL)

        assert plan.mode == ECONOMICAL
        assert plan.box_count == 2
        assert plan.portions_per_box == pytest.approx(21)
        assert plan.has_overflow
        assert plan.overflow_warning
        assert "over by 1.00" in plan.details[0]

    def test_without_overflow_needs_more_boxes(self):
        catalog = [make_box('E-20', 10, 20, overflow=0)]
        plan = economical_plan(42, catalog)
        assert plan.box_count == 3
        assert not plan.has_overflow

    def test_fewest_boxes_wins(self, boxes):
        plan = economical_plan(42, boxes)
        assert plan.box.marking == 'M-25'
        assert plan.box_count == 2
        assert not plan.has_overflow

    def test_tie_goes_to_smaller_box(self, boxes):
        plan = economical_plan(8, boxes)
        assert plan.box.marking == 'S-10'
        assert plan.box_count == 1

    def test_zero_capacity_boxes_are_skipped(self):
        plan = economical_plan(5, [make_box('Z', 0, 0), make_box('A', 1, 10)])
        assert plan.box.marking == 'A'

    def test_no_boxes(self):
        plan = economical_plan(5, [])
        assert not plan.feasible
        assert plan.error.mode == ECONOMICAL


# ============================================================================
# Input validation
# ============================================================================

class TestRecommend:

    @pytest.mark.parametrize("portions", [0, -3])
    def test_non_positive_portions(self, boxes, portions):
        plan = recommend(portions, boxes)
        assert not plan.feasible
        assert isinstance(plan.error, PackingInfeasible)
        assert plan.box_count == 0

    def test_unknown_mode_falls_back_to_spacious(self, boxes):
        plan = recommend(20, boxes, mode='whatever')
        assert plan.mode == SPACIOUS


# ============================================================================
# Weight-based recommendation
# ============================================================================

class TestRecommendByWeight:

    def _items(self, total_kg):
        return [ExpandedItem(name='Bulk', sku='B', barcode='B', quantity=10, unit_weight=total_kg / 10)]

    def test_light_order_gets_one_smallest_box(self, boxes):
        plan = recommend_by_weight(self._items(5.0), boxes)

        assert [b.marking for b in plan.boxes] == ['S-10']
        assert plan.total_weight == pytest.approx(5.0)
        assert plan.remaining_weight == 0

    def test_heavy_order_repeats_smallest_box(self, boxes):
        plan = recommend_by_weight(self._items(20.0), boxes)
        assert [b.marking for b in plan.boxes] == ['S-10'] * 3

    def test_boxes_without_weight_are_ignored(self):
        plan = recommend_by_weight(self._items(1.0), [make_box('A', 1, 10, weight=0.0)])
        assert plan.boxes == []
        assert plan.remaining_weight == pytest.approx(1.0)
