"""
Box recommendation for an order's portion count.

Two planning modes:
- spacious: one box whose [qnt_from, qnt_to] range holds the order, else
  the fewest identical boxes each filled within its range
- economical: the fewest identical boxes, allowing each box to exceed
  qnt_to by at most its own ``overflow``

Planning never raises. When nothing fits, the returned BoxPlan has
feasible=False and carries a PackingInfeasible instance in ``error``.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from exceptions import PackingInfeasible
from logger import get_logger
from models import BoxDefinition, ExpandedItem

logger = get_logger(__name__)

SPACIOUS = 'spacious'
ECONOMICAL = 'economical'


@dataclass
class BoxPlan:
    mode: str
    total_portions: float
    box_count: int = 0
    box: Optional[BoxDefinition] = None
    portions_per_box: float = 0.0
    total_capacity: int = 0
    has_overflow: bool = False
    overflow_warning: bool = False
    details: List[str] = field(default_factory=list)
    error: Optional[PackingInfeasible] = None

    @property
    def feasible(self) -> bool:
        return self.box is not None and self.error is None

    @property
    def boxes(self) -> List[BoxDefinition]:
        return [self.box] * self.box_count if self.box is not None else []


@dataclass
class WeightPlan:
    """Result of the weight-based recommendation."""
    boxes: List[BoxDefinition]
    total_weight: float
    remaining_weight: float


@dataclass(frozen=True)
class _Solution:
    box: BoxDefinition
    box_count: int
    portions_per_box: float


def _active_sorted(boxes: Iterable[BoxDefinition]) -> List[BoxDefinition]:
    return sorted((b for b in boxes if b.is_active), key=lambda b: b.qnt_to)


def _format_plan(mode: str, portions: float, solution: Optional[_Solution]) -> BoxPlan:
    if solution is None:
        message = f"No box configuration fits {portions:g} portions"
        logger.warning(f"{message} (mode: {mode})")
        return BoxPlan(mode=mode, total_portions=portions,
                       error=PackingInfeasible(message, portions=portions, mode=mode))

    box = solution.box
    per_box = solution.portions_per_box
    exceeds = per_box > box.qnt_to

    details = []
    for _ in range(solution.box_count):
        detail = f"Box {box.marking}: {per_box:.2f} of {box.qnt_to} portions"
        if exceeds:
            detail += f" (over by {per_box - box.qnt_to:.2f}, allowed up to {box.overflow or 1})"
        details.append(detail)

    overflow = mode == ECONOMICAL and exceeds
    plan = BoxPlan(
        mode=mode,
        total_portions=portions,
        box_count=solution.box_count,
        box=box,
        portions_per_box=per_box,
        total_capacity=solution.box_count * box.qnt_to,
        has_overflow=overflow,
        overflow_warning=overflow,
        details=details,
    )
    logger.info(f"Plan ({mode}): {plan.box_count} x {box.marking}, {per_box:.2f} portions per box")
    return plan


def _find_uniform_solution(portions: float, boxes: Sequence[BoxDefinition]) -> Optional[_Solution]:
    best = None
    for box in boxes:
        if box.qnt_to <= 0:
            continue
        count = math.ceil(portions / box.qnt_to)
        if count <= 1:
            continue
        per_box = portions / count
        if box.qnt_from <= per_box <= box.qnt_to:
            if best is None or count < best.box_count:
                best = _Solution(box, count, per_box)
    return best


def _find_economical_solution(portions: float, boxes: Sequence[BoxDefinition]) -> Optional[_Solution]:
    best = None
    for box in boxes:
        capacity = box.qnt_to + box.overflow
        if capacity <= 0:
            continue
        count = math.ceil(portions / capacity)
        if count <= 0:
            continue
        per_box = portions / count
        if per_box - box.qnt_to <= box.overflow:
            if best is None or count < best.box_count or (
                    count == best.box_count and box.qnt_to < best.box.qnt_to):
                best = _Solution(box, count, per_box)
    return best


def spacious_plan(portions: float, boxes: Iterable[BoxDefinition]) -> BoxPlan:
    candidates = _active_sorted(boxes)

    for box in candidates:
        if box.qnt_from <= portions <= box.qnt_to:
            return _format_plan(SPACIOUS, portions, _Solution(box, 1, portions))

    uniform = _find_uniform_solution(portions, candidates)
    largest = next((b for b in candidates if portions <= b.qnt_to), None)
    single = _Solution(largest, 1, portions) if largest is not None else None

    if uniform is not None and (single is None or uniform.box_count <= single.box_count):
        return _format_plan(SPACIOUS, portions, uniform)
    return _format_plan(SPACIOUS, portions, single)


def economical_plan(portions: float, boxes: Iterable[BoxDefinition]) -> BoxPlan:
    return _format_plan(ECONOMICAL, portions, _find_economical_solution(portions, _active_sorted(boxes)))


def recommend(portions: float, boxes: Iterable[BoxDefinition], mode: str = SPACIOUS) -> BoxPlan:
    """
    Recommend boxes for a portion count.

    Args:
        portions: Total portions of the expanded order
        boxes: Box catalog; inactive boxes are ignored
        mode: 'spacious' (default) or 'economical'

    Returns:
        BoxPlan; check ``feasible`` before using it
    """
    if portions <= 0:
        message = f"Portion count must be positive, got {portions:g}"
        logger.warning(message)
        return BoxPlan(mode=mode, total_portions=portions,
                       error=PackingInfeasible(message, portions=portions, mode=mode))

    if mode == ECONOMICAL:
        return economical_plan(portions, boxes)
    return spacious_plan(portions, boxes)


def recommend_by_weight(items: Iterable[ExpandedItem], boxes: Iterable[BoxDefinition]) -> WeightPlan:
    """
    Pick boxes by total gross weight instead of portions.

    Boxes are tried in ascending ``weight`` (capacity) order: the first box
    that holds the whole order is used once; otherwise the first box is
    repeated as many times as the weight requires.
    """
    total = sum(item.expected_weight for item in items)
    candidates = sorted((b for b in boxes if b.is_active and b.weight > 0), key=lambda b: b.weight)

    chosen: List[BoxDefinition] = []
    remaining = total
    for box in candidates:
        if remaining <= 0:
            break
        if remaining <= box.weight:
            chosen.append(box)
        else:
            chosen.extend([box] * math.ceil(remaining / box.weight))
        remaining = 0.0
        break

    logger.debug(f"Weight recommendation: {total:.3f} kg -> {len(chosen)} box(es)")
    return WeightPlan(boxes=chosen, total_weight=total, remaining_weight=remaining)
