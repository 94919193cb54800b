"""
Barcode scan routing against the checklist.

A scan means different things depending on the phase of the active box:
while the box row is still ``default`` only that box's own barcode is
accepted; once the box is weighed (``done``/``confirmed``) product codes
select product rows for weighing. Everything else is rejected with a
status string and a ScanRejected instance, without touching the checklist.

The router keeps only the last processed code and its time, to drop the
repeated reads a handheld scanner produces when the trigger is held.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from exceptions import InvalidTransitionError, ScanRejected
from logger import get_logger
from models import FINAL_STATUSES, ChecklistItem, ItemStatus
from checklist_model import box_row, find_item, products_in_box, sort_items, transition

logger = get_logger(__name__)

SCAN_COOLDOWN = 2.0  # seconds

# Status strings
BOX_SCANNED = "BOX_SCANNED"
BOX_NOT_FOUND = "BOX_NOT_FOUND"
ITEM_SELECTED = "ITEM_SELECTED"
WRONG_BOX = "WRONG_BOX"
ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
ITEM_ALREADY_DONE = "ITEM_ALREADY_DONE"
ITEM_BEING_VERIFIED = "ITEM_BEING_VERIFIED"
BOX_ALREADY_SCANNED = "BOX_ALREADY_SCANNED"
BOX_NOT_WEIGHED = "BOX_NOT_WEIGHED"
DUPLICATE_SCAN = "DUPLICATE_SCAN"

ACCEPTED_STATUSES = (BOX_SCANNED, ITEM_SELECTED)


@dataclass
class ScanResult:
    status: str
    item_id: Optional[str] = None
    items: Optional[Tuple[ChecklistItem, ...]] = None
    message: str = ''
    error: Optional[ScanRejected] = None

    @property
    def accepted(self) -> bool:
        return self.status in ACCEPTED_STATUSES


def normalize_code(code: Any) -> str:
    """
    Normalize a barcode or SKU for tolerant comparison.

    Scanners and spreadsheets disagree about spaces, dashes and case, so
    comparison falls back to the lowercase alphanumeric characters only.

    Examples:
        "SKU-123-A" -> "sku123a"
        "7290 0186 6410 0" -> "72900186641100"
    """
    return ''.join(filter(str.isalnum, str(code))).lower()


def _find_in(rows: Sequence[ChecklistItem], code: str) -> Optional[ChecklistItem]:
    """Match by exact barcode, then SKU, then normalized code; undone rows first."""
    normalized = normalize_code(code)
    tiers = (
        lambda r: r.barcode is not None and str(r.barcode) == code,
        lambda r: r.sku is not None and str(r.sku) == code,
        lambda r: bool(normalized) and (
            (r.barcode is not None and normalize_code(r.barcode) == normalized)
            or (r.sku is not None and normalize_code(r.sku) == normalized)
        ),
    )
    for matches in tiers:
        found = [r for r in rows if matches(r)]
        if found:
            return next((r for r in found if r.status != ItemStatus.DONE), found[0])
    return None


def _box_code_matches(box: ChecklistItem, code: str) -> bool:
    expected = box.box_barcode
    if not expected:
        return False
    return str(expected) == code or normalize_code(expected) == normalize_code(code)


class ScanRouter:
    """
    Resolves scanned codes to checklist transitions.

    Args:
        clock: Object with now() -> epoch seconds
        cooldown_seconds: Window in which the same code is ignored
        debug_mode: Disable the duplicate-scan window
    """

    def __init__(self, clock, cooldown_seconds: float = SCAN_COOLDOWN, debug_mode: bool = False):
        self.clock = clock
        self.cooldown_seconds = cooldown_seconds
        self.debug_mode = debug_mode
        self.last_code: Optional[str] = None
        self.last_scan_at: Optional[float] = None

    @classmethod
    def from_settings(cls, clock, settings) -> 'ScanRouter':
        return cls(clock, settings.scan_cooldown_seconds, settings.debug_mode)

    def reset(self):
        """Forget the last code so the next scan is always processed."""
        self.last_code = None
        self.last_scan_at = None

    def _is_duplicate(self, code: str, now: float) -> bool:
        if self.debug_mode or self.last_code != code or self.last_scan_at is None:
            return False
        return now - self.last_scan_at < self.cooldown_seconds

    def _reject(self, code: str, status: str, message: str, item_id: Optional[str] = None) -> ScanResult:
        logger.info(f"Scan {code!r} rejected: {status} - {message}")
        return ScanResult(
            status=status,
            item_id=item_id,
            message=message,
            error=ScanRejected(message, code=code, status=status, item_id=item_id),
        )

    def route(self, code: str, items: Sequence[ChecklistItem], active_box: int = 0,
              check_duplicate: bool = True) -> ScanResult:
        """
        Route one scanned code.

        Args:
            code: Raw scanner content
            items: Current checklist snapshot
            active_box: Index of the box being assembled
            check_duplicate: False when re-routing the same scan after a commit conflict

        Returns:
            ScanResult; ``items`` holds the next checklist when the scan was
            accepted and None otherwise
        """
        code = str(code).strip()
        now = self.clock.now()

        if check_duplicate and self._is_duplicate(code, now):
            logger.debug(f"Duplicate scan ignored: {code}")
            return ScanResult(
                status=DUPLICATE_SCAN,
                message=f"Code {code} was just scanned",
                error=ScanRejected("Duplicate scan", code=code, status=DUPLICATE_SCAN),
            )

        self.last_code = code
        self.last_scan_at = now

        if not code:
            return self._reject(code, ITEM_NOT_FOUND, "Empty scan")

        box = box_row(items, active_box)
        if box is not None:
            box_match = _box_code_matches(box, code)

            if box.status == ItemStatus.DEFAULT:
                if not box_match:
                    return self._reject(code, BOX_NOT_FOUND,
                                        f"Scan the barcode of {box.name} first", box.id)
                next_items = transition(items, box.id, ItemStatus.PENDING)
                logger.info(f"Box {box.id} scanned, awaiting weight")
                return ScanResult(BOX_SCANNED, box.id, next_items, f"{box.name} scanned, put it on the scale")

            if box_match:
                return self._reject(code, BOX_ALREADY_SCANNED, f"{box.name} has already been scanned", box.id)

            if box.status not in FINAL_STATUSES:
                return self._reject(code, BOX_NOT_WEIGHED,
                                    f"Weigh {box.name} before scanning products", box.id)

        return self._route_product(code, items, active_box)

    def _route_product(self, code: str, items: Sequence[ChecklistItem], active_box: int) -> ScanResult:
        found = _find_in(sort_items(products_in_box(items, active_box)), code)

        if found is None:
            elsewhere = _find_in(sort_items(i for i in items if i.is_product and i.box_index != active_box), code)
            if elsewhere is not None:
                return self._reject(code, WRONG_BOX,
                                    f"{elsewhere.name} belongs to box {elsewhere.box_index + 1}", elsewhere.id)
            return self._reject(code, ITEM_NOT_FOUND, f"Barcode {code} matches no product")

        if found.status == ItemStatus.DONE:
            return self._reject(code, ITEM_ALREADY_DONE, f"{found.name} is already done", found.id)
        if found.status == ItemStatus.SUCCESS:
            return self._reject(code, ITEM_BEING_VERIFIED, f"{found.name} is being verified", found.id)

        if found.status == ItemStatus.PENDING:
            return ScanResult(ITEM_SELECTED, found.id, None, f"{found.name} is already selected")

        try:
            next_items = select_product(items, found.id)
        except InvalidTransitionError as e:
            logger.error(f"Could not select {found.id}: {e}")
            return self._reject(code, ITEM_NOT_FOUND, str(e), found.id)

        logger.info(f"Product {found.id} ({found.name}) selected for weighing")
        return ScanResult(ITEM_SELECTED, found.id, next_items, f"{found.name} selected")


def select_product(items: Sequence[ChecklistItem], item_id: str) -> Tuple[ChecklistItem, ...]:
    """
    Make one product row pending and put the box's other pending or
    failed product rows back to default.
    """
    target = find_item(items, item_id)
    if target is None:
        raise InvalidTransitionError(f"Unknown checklist row {item_id}", item_id=item_id)
    result = tuple(items)
    others: List[str] = [
        i.id for i in items
        if i.is_product and i.box_index == target.box_index and i.id != item_id
        and i.status in (ItemStatus.PENDING, ItemStatus.ERROR)
    ]
    for other_id in others:
        result = transition(result, other_id, ItemStatus.DEFAULT)
    return transition(result, item_id, ItemStatus.PENDING)
