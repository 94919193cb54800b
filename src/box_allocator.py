"""
Distribution of expanded items across the planned boxes.

Used only when the plan calls for more than one box. Heavy items are
spread evenly first so no single box ends up with all of them, then the
rest goes greedily into whichever box is currently lightest. Every box is
bounded by its portion capacity and by the gross weight ceiling.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from exceptions import UnallocatedPortions
from logger import get_logger
from models import ExpandedItem

logger = get_logger(__name__)

HEAVY_ITEM_THRESHOLD = 0.4  # kg per unit
MAX_BOX_WEIGHT = 15.0  # kg

_EPSILON = 1e-9


@dataclass(frozen=True)
class AllocationRow:
    item: ExpandedItem
    box_index: int
    quantity: int

    @property
    def expected_weight(self) -> float:
        return self.item.unit_weight * self.quantity


@dataclass
class AllocationResult:
    rows: List[AllocationRow] = field(default_factory=list)
    unallocated: List[Tuple[str, int]] = field(default_factory=list)
    box_weights: List[float] = field(default_factory=list)
    box_portions: List[int] = field(default_factory=list)
    error: Optional[UnallocatedPortions] = None

    @property
    def unallocated_portions(self) -> int:
        return sum(quantity for _, quantity in self.unallocated)

    @property
    def complete(self) -> bool:
        return not self.unallocated

    def rows_for_box(self, box_index: int) -> List[AllocationRow]:
        return [row for row in self.rows if row.box_index == box_index]


class BoxAllocator:
    """
    Splits item quantities over ``box_count`` boxes.

    Args:
        heavy_item_threshold: Unit weight (kg) above which an item is spread evenly
        max_box_weight: Gross weight ceiling per box (kg), tare included
    """

    def __init__(self, heavy_item_threshold: float = HEAVY_ITEM_THRESHOLD,
                 max_box_weight: float = MAX_BOX_WEIGHT):
        self.heavy_item_threshold = heavy_item_threshold
        self.max_box_weight = max_box_weight

    @classmethod
    def from_settings(cls, settings) -> 'BoxAllocator':
        return cls(settings.heavy_item_threshold_kg, settings.max_box_weight_kg)

    def _units_that_fit(self, unit_weight: float, box_weight: float) -> int:
        if unit_weight <= 0:
            return math.inf
        free = self.max_box_weight - box_weight
        if free < 0:
            return 0
        return int(math.floor(free / unit_weight + _EPSILON))

    def allocate(self, items: Sequence[ExpandedItem], box_count: int, portions_per_box: float,
                 box_tare: float = 0.0) -> AllocationResult:
        """
        Allocate item quantities to boxes.

        Args:
            items: Expanded items
            box_count: Number of boxes in the plan (> 1)
            portions_per_box: Planned portions per box; capacity is its ceiling
            box_tare: Empty box weight counted against the weight ceiling

        Returns:
            AllocationResult; ``error`` is set when some units fit nowhere
        """
        capacity = int(math.ceil(portions_per_box - _EPSILON))
        box_weights = [box_tare] * box_count
        box_portions = [0] * box_count
        placed: Dict[Tuple[int, int], int] = {}

        logger.info(
            f"Allocating {sum(i.quantity for i in items)} portions into {box_count} boxes "
            f"(capacity {capacity}, ceiling {self.max_box_weight} kg)"
        )

        def place(item_index: int, item: ExpandedItem, box: int, quantity: int):
            key = (item_index, box)
            placed[key] = placed.get(key, 0) + quantity
            box_portions[box] += quantity
            box_weights[box] += item.unit_weight * quantity

        ordered = sorted(enumerate(items), key=lambda pair: -pair[1].unit_weight)
        remaining = {index: item.quantity for index, item in ordered}

        # Even spread of heavy items
        for index, item in ordered:
            if item.unit_weight <= self.heavy_item_threshold or item.quantity < box_count:
                continue
            share, extra = divmod(item.quantity, box_count)
            for box in range(box_count):
                wanted = share + (1 if box < extra else 0)
                fits = min(wanted, capacity - box_portions[box],
                           self._units_that_fit(item.unit_weight, box_weights[box]))
                if fits > 0:
                    place(index, item, box, fits)
                    remaining[index] -= fits

        # Greedy fill of the lightest box
        for index, item in ordered:
            while remaining[index] > 0:
                candidates = [
                    box for box in range(box_count)
                    if box_portions[box] < capacity
                    and self._units_that_fit(item.unit_weight, box_weights[box]) >= 1
                ]
                if not candidates:
                    break
                box = min(candidates, key=lambda b: (box_weights[b], b))
                fits = min(remaining[index], capacity - box_portions[box],
                           self._units_that_fit(item.unit_weight, box_weights[box]))
                place(index, item, box, fits)
                remaining[index] -= fits

        rows = [
            AllocationRow(items[item_index], box, quantity)
            for (item_index, box), quantity in sorted(placed.items(), key=lambda kv: (kv[0][1], kv[0][0]))
            if quantity > 0
        ]
        unallocated = [(items[index].name, left) for index, left in remaining.items() if left > 0]

        result = AllocationResult(
            rows=rows,
            unallocated=unallocated,
            box_weights=box_weights,
            box_portions=box_portions,
        )
        if unallocated:
            result.error = UnallocatedPortions(
                f"{result.unallocated_portions} portion(s) could not be allocated", unallocated,
            )
            logger.error(f"Unallocated portions: {unallocated}")
        else:
            logger.debug(f"Box portions: {box_portions}, weights: {[round(w, 3) for w in box_weights]}")
        return result
