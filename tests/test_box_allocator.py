"""
Tests for src/box_allocator.py — splitting items over several boxes.
"""

import pytest

from assembly_config import PackingSettings
from box_allocator import BoxAllocator
from exceptions import UnallocatedPortions
from models import ExpandedItem


def make_item(name, unit_weight, quantity):
    return ExpandedItem(name=name, sku=name.upper(), barcode=name.upper(),
                        quantity=quantity, unit_weight=unit_weight)


def quantities(result):
    return {(row.item.name, row.box_index): row.quantity for row in result.rows}


class TestBoxAllocator:

    def test_heavy_items_are_spread_evenly(self):
        soup = make_item('Soup', 0.5, 4)
        salad = make_item('Salad', 0.3, 4)

        result = BoxAllocator().allocate([soup, salad], box_count=2, portions_per_box=4)

        assert result.complete
        assert result.error is None
        assert quantities(result) == {
            ('Soup', 0): 2, ('Soup', 1): 2,
            ('Salad', 0): 2, ('Salad', 1): 2,
        }
        assert result.box_portions == [4, 4]
        assert result.box_weights == pytest.approx([1.6, 1.6])

    def test_uneven_heavy_split_gives_extra_to_first_boxes(self):
        soup = make_item('Soup', 0.5, 5)
        result = BoxAllocator().allocate([soup], box_count=2, portions_per_box=3)
        assert quantities(result) == {('Soup', 0): 3, ('Soup', 1): 2}

    def test_light_items_fill_the_lightest_box(self):
        bread = make_item('Bread', 0.3, 3)
        sauce = make_item('Sauce', 0.2, 3)

        result = BoxAllocator().allocate([sauce, bread], box_count=2, portions_per_box=5)

        # Heaviest first: bread opens box 0, sauce goes to the then lighter box 1
        assert quantities(result) == {('Bread', 0): 3, ('Sauce', 1): 3}

    def test_capacity_is_ceiling_of_portions_per_box(self):
        item = make_item('Tea', 0.1, 9)
        result = BoxAllocator().allocate([item], box_count=2, portions_per_box=4.5)

        assert result.complete
        assert max(result.box_portions) == 5
        assert sum(result.box_portions) == 9

    def test_rows_are_ordered_by_box_then_item(self):
        items = [make_item('A', 0.5, 2), make_item('B', 0.5, 2)]
        result = BoxAllocator().allocate(items, box_count=2, portions_per_box=2)

        assert [(row.box_index, row.item.name) for row in result.rows] == [
            (0, 'A'), (0, 'B'), (1, 'A'), (1, 'B'),
        ]
        assert [row.quantity for row in result.rows_for_box(1)] == [1, 1]

    def test_row_expected_weight(self):
        result = BoxAllocator().allocate([make_item('A', 0.25, 4)], box_count=2, portions_per_box=2)
        assert result.rows[0].expected_weight == pytest.approx(0.5)

    def test_weight_ceiling_leaves_units_unallocated(self):
        brick = make_item('Brick', 1.0, 5)

        result = BoxAllocator(max_box_weight=2.0).allocate([brick], box_count=2, portions_per_box=3)

        assert not result.complete
        assert result.unallocated == [('Brick', 1)]
        assert result.unallocated_portions == 1
        assert isinstance(result.error, UnallocatedPortions)
        assert result.error.total == 1
        assert 'Brick: 1' in result.error.get_display_message()

    def test_box_tare_counts_against_ceiling(self):
        item = make_item('Jar', 0.5, 6)

        fits = BoxAllocator(max_box_weight=2.0).allocate([item], 2, 10, box_tare=0.5)
        assert fits.complete

        too_heavy = BoxAllocator(max_box_weight=2.0).allocate([item], 2, 10, box_tare=0.6)
        assert too_heavy.unallocated_portions == 2

    def test_portion_capacity_leaves_units_unallocated(self):
        result = BoxAllocator().allocate([make_item('A', 0.2, 7)], box_count=2, portions_per_box=3)
        assert result.unallocated == [('A', 1)]

    def test_zero_weight_items_are_bounded_by_portions_only(self):
        result = BoxAllocator(max_box_weight=0.1).allocate([make_item('Card', 0.0, 4)], 2, 2)
        assert result.complete
        assert result.box_portions == [2, 2]

    def test_from_settings(self):
        allocator = BoxAllocator.from_settings(PackingSettings(heavy_item_threshold_kg=1.0,
                                                               max_box_weight_kg=20.0))
        assert allocator.heavy_item_threshold == 1.0
        assert allocator.max_box_weight == 20.0
