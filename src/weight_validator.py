"""
Scale reading validation for the row under test.

The scale weighs everything on the platform, so a product is verified
against the cumulative expectation for its box: the box tare (once the box
itself was weighed), every product already verified in that box, and the
row being weighed now. The tolerance grows the same way: a box term for
the tare plus an item term for the portions on the platform.

Units: weights and tolerances are kilograms at the API surface;
calc_tolerance() works in grams per portion, as the tolerance settings do.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from exceptions import InvalidTransitionError, WeightOutOfTolerance
from logger import get_logger
from models import WEIGHED_BOX_STATUSES, ChecklistItem, ItemStatus, ToleranceSettings
from checklist_model import box_row, products_in_box, sort_items, transition

logger = get_logger(__name__)

SETTLE_DELAY = 1.5  # seconds a verified row stays in success before done
RETRY_DELAY = 2.0  # seconds a failed row stays in error before it is weighed again

MIN_BOX_TOLERANCE = 0.010  # kg
BOX_TOLERANCE_RATIO = 0.1

_EPSILON = 1e-9

# Status strings
WEIGHT_OK = "WEIGHT_OK"
WEIGHT_OUT_OF_RANGE = "WEIGHT_OUT_OF_RANGE"
ZERO_IGNORED = "ZERO_IGNORED"
NOTHING_TO_WEIGH = "NOTHING_TO_WEIGH"


def calc_tolerance(portions: float, max_tolerance: float = 30, min_tolerance: float = 10,
                   min_portions: float = 1, max_portions: float = 12) -> float:
    """
    Per-portion tolerance in grams.

    Linearly interpolated from ``max_tolerance`` at ``min_portions`` (or fewer)
    down to ``min_tolerance`` at ``max_portions`` (or more), rounded to 2 decimals.

    Examples:
        calc_tolerance(1) -> 30
        calc_tolerance(6.5) -> 20.0
        calc_tolerance(20) -> 10
    """
    if portions <= min_portions:
        return max_tolerance
    if portions >= max_portions:
        return min_tolerance
    t = (portions - min_portions) / (max_portions - min_portions)
    return round(max_tolerance - t * (max_tolerance - min_tolerance), 2)


def calc_box_tolerance(weight: float) -> float:
    """Box tolerance in kg: 10% of the box weight, at least 10 g."""
    return max(weight * BOX_TOLERANCE_RATIO, MIN_BOX_TOLERANCE)


def calc_cumulative_tolerance(box_weight: float, portions: float, product_weight: float = 0.0,
                              settings: Optional[ToleranceSettings] = None) -> float:
    """
    Tolerance in kg for everything on the platform.

    Args:
        box_weight: Weighed box tare (kg); 0 when the box is not on the scale,
            which still contributes the 10 g box tolerance floor
        portions: Product portions on the platform, the row under test included
        product_weight: Expected product weight on the platform (kg)
        settings: ToleranceSettings; ``type`` selects the item term
    """
    settings = settings or ToleranceSettings()
    box_term = calc_box_tolerance(box_weight)

    if settings.type == 'percentage':
        item_term = settings.percentage / 100.0 * product_weight
    elif settings.type == 'absolute':
        item_term = settings.absolute / 1000.0
    else:
        per_portion = calc_tolerance(portions, settings.max_tolerance, settings.min_tolerance,
                                     settings.min_portions, settings.max_portions)
        item_term = per_portion * portions / 1000.0

    return box_term + item_term


@dataclass(frozen=True)
class FollowUp:
    """A delayed transition requested by a weighing outcome."""
    item_id: str
    target: ItemStatus
    delay: float
    expected_status: ItemStatus
    box_index: int = 0


@dataclass
class WeightCheck:
    status: str
    item_id: Optional[str] = None
    measured: Optional[float] = None
    expected: float = 0.0
    tolerance: float = 0.0
    items: Optional[Tuple[ChecklistItem, ...]] = None
    follow_ups: List[FollowUp] = field(default_factory=list)
    error: Optional[WeightOutOfTolerance] = None

    @property
    def passed(self) -> bool:
        return self.status == WEIGHT_OK


@dataclass(frozen=True)
class WeightPreview:
    """What the scale should read once the next row is on the platform."""
    item_id: Optional[str]
    expected: float
    tolerance: float

    @property
    def min_weight(self) -> float:
        return self.expected - self.tolerance

    @property
    def max_weight(self) -> float:
        return self.expected + self.tolerance


class WeightValidator:
    """
    Evaluates scale readings against the checklist.

    Args:
        tolerance: ToleranceSettings for product rows
        settle_delay: Seconds before a success row becomes done
        retry_delay: Seconds before an error row is weighed again
    """

    def __init__(self, tolerance: Optional[ToleranceSettings] = None,
                 settle_delay: float = SETTLE_DELAY, retry_delay: float = RETRY_DELAY):
        self.tolerance = tolerance or ToleranceSettings()
        self.settle_delay = settle_delay
        self.retry_delay = retry_delay

    def _platform(self, items: Sequence[ChecklistItem], box_index: int,
                  row: ChecklistItem) -> Tuple[float, float]:
        """Expected weight and tolerance with ``row`` added to the box's verified contents."""
        box = box_row(items, box_index)
        tare = box.expected_weight if box is not None and box.status in WEIGHED_BOX_STATUSES else 0.0

        verified = [
            item for item in products_in_box(items, box_index)
            if item.id != row.id and item.status in (ItemStatus.DONE, ItemStatus.SUCCESS)
        ]
        product_weight = sum(item.expected_weight for item in verified) + row.expected_weight
        portions = sum(item.quantity or 1 for item in verified) + (row.quantity or 1)

        tolerance = calc_cumulative_tolerance(tare, portions, product_weight, self.tolerance)
        return tare + product_weight, tolerance

    def _row_under_test(self, items: Sequence[ChecklistItem], box_index: int):
        box = box_row(items, box_index)
        if box is not None and box.status in (ItemStatus.PENDING, ItemStatus.AWAITING_CONFIRMATION):
            return box
        return next(
            (item for item in products_in_box(items, box_index) if item.status == ItemStatus.PENDING),
            None,
        )

    def expectation(self, items: Sequence[ChecklistItem], box_index: int,
                    row: ChecklistItem) -> Tuple[float, float]:
        if row.is_box:
            return row.expected_weight, calc_box_tolerance(row.expected_weight)
        return self._platform(items, box_index, row)

    def evaluate(self, weight: Optional[float], items: Sequence[ChecklistItem],
                 active_box: int = 0) -> WeightCheck:
        """
        Check a stable reading against the row under test in the active box.

        Returns:
            WeightCheck with the next checklist and the delayed follow-up
            transition, or a status explaining why nothing changed
        """
        if weight is None or weight <= 0:
            return WeightCheck(status=ZERO_IGNORED, measured=weight)

        row = self._row_under_test(items, active_box)
        if row is None:
            return WeightCheck(status=NOTHING_TO_WEIGH, measured=weight)

        expected, tolerance = self.expectation(items, active_box, row)
        in_band = expected - tolerance - _EPSILON <= weight <= expected + tolerance + _EPSILON

        check = WeightCheck(
            status=WEIGHT_OK if in_band else WEIGHT_OUT_OF_RANGE,
            item_id=row.id,
            measured=weight,
            expected=expected,
            tolerance=tolerance,
        )

        try:
            if in_band:
                check.items = transition(items, row.id, ItemStatus.SUCCESS)
                check.follow_ups.append(FollowUp(
                    row.id, ItemStatus.DONE, self.settle_delay, ItemStatus.SUCCESS, active_box,
                ))
                logger.info(f"{row.id} weight OK: {weight:.3f} kg (expected {expected:.3f} ± {tolerance:.3f})")
            else:
                retry_status = ItemStatus.AWAITING_CONFIRMATION if row.is_box else ItemStatus.PENDING
                check.items = transition(items, row.id, ItemStatus.ERROR)
                check.follow_ups.append(FollowUp(
                    row.id, retry_status, self.retry_delay, ItemStatus.ERROR, active_box,
                ))
                check.error = WeightOutOfTolerance(
                    f"{row.name}: {weight:.3f} kg outside {expected:.3f} ± {tolerance:.3f} kg",
                    item_id=row.id, measured=weight, expected=expected, tolerance=tolerance,
                )
                logger.warning(str(check.error))
        except InvalidTransitionError as e:
            logger.error(f"Weight transition rejected for {row.id}: {e}")
            return WeightCheck(status=NOTHING_TO_WEIGH, item_id=row.id, measured=weight)

        return check

    def preview(self, items: Sequence[ChecklistItem], active_box: int = 0) -> Optional[WeightPreview]:
        """
        Expected reading for the row the operator will put on the scale next.

        Falls back to an error row and then to the next default product when
        nothing is pending; None when the box has nothing left to weigh.
        """
        box = box_row(items, active_box)
        if box is not None and box.status not in WEIGHED_BOX_STATUSES:
            return WeightPreview(box.id, box.expected_weight, calc_box_tolerance(box.expected_weight))

        products = sort_items(products_in_box(items, active_box))
        row = None
        for status in (ItemStatus.PENDING, ItemStatus.ERROR, ItemStatus.DEFAULT):
            row = next((item for item in products if item.status == status), None)
            if row is not None:
                break
        if row is None:
            return None

        expected, tolerance = self._platform(items, active_box, row)
        return WeightPreview(row.id, expected, tolerance)
