"""
The assembly checklist: box rows and product rows with their statuses.

The checklist is held as an immutable tuple of ChecklistItems plus a
version counter. Readers take a snapshot; writers compute the next tuple
from a snapshot and commit it with the version they started from. A commit
against a version that has moved on raises StaleSnapshotError, and
update() retries the computation on the fresh snapshot.

Status changes go through transition(), which enforces the allowed
transition table below. Everything else in this module is a pure helper
over item tuples, shared by the scan router and the weight validator.
"""

import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from exceptions import InvalidTransitionError, StaleSnapshotError
from logger import get_logger
from models import (
    ACTIVE_STATUSES,
    DEFAULT_MANUAL_ORDER,
    FINAL_STATUSES,
    ChecklistItem,
    ExpandedItem,
    ItemStatus,
    ItemType,
)

logger = get_logger(__name__)

S = ItemStatus

PRODUCT_TRANSITIONS = {
    S.DEFAULT: {S.PENDING},
    S.PENDING: {S.DEFAULT, S.SUCCESS, S.ERROR},
    S.ERROR: {S.PENDING, S.DEFAULT},
    S.SUCCESS: {S.DONE, S.PENDING},
    S.DONE: set(),
}

BOX_TRANSITIONS = {
    S.DEFAULT: {S.PENDING, S.AWAITING_CONFIRMATION},
    S.PENDING: {S.SUCCESS, S.ERROR},
    S.AWAITING_CONFIRMATION: {S.SUCCESS, S.ERROR},
    S.ERROR: {S.AWAITING_CONFIRMATION},
    S.SUCCESS: {S.DONE, S.AWAITING_CONFIRMATION},
    S.DONE: set(),
    S.CONFIRMED: set(),
}

MAX_COMMIT_RETRIES = 5

Items = Tuple[ChecklistItem, ...]


# === Pure helpers over item tuples ===

def find_item(items: Iterable[ChecklistItem], item_id: str) -> Optional[ChecklistItem]:
    return next((item for item in items if item.id == item_id), None)


def box_row(items: Iterable[ChecklistItem], box_index: int) -> Optional[ChecklistItem]:
    return next((item for item in items if item.is_box and item.box_index == box_index), None)


def products_in_box(items: Iterable[ChecklistItem], box_index: int) -> List[ChecklistItem]:
    return [item for item in items if item.is_product and item.box_index == box_index]


def box_indices(items: Iterable[ChecklistItem]) -> List[int]:
    return sorted({item.box_index for item in items})


def active_item(items: Iterable[ChecklistItem], box_index: int) -> Optional[ChecklistItem]:
    """The row of this box currently pending or awaiting confirmation, if any."""
    return next(
        (item for item in items if item.box_index == box_index and item.status in ACTIVE_STATUSES),
        None,
    )


def can_transition(item: ChecklistItem, target: ItemStatus) -> bool:
    table = BOX_TRANSITIONS if item.is_box else PRODUCT_TRANSITIONS
    return ItemStatus(target) in table.get(item.status, set())


def transition(items: Sequence[ChecklistItem], item_id: str, target: ItemStatus) -> Items:
    """
    Return a new item tuple with one row moved to ``target``.

    A transition to the row's current status returns the tuple unchanged.

    Raises:
        InvalidTransitionError: Unknown row or a transition the table forbids
    """
    target = ItemStatus(target)
    item = find_item(items, item_id)
    if item is None:
        raise InvalidTransitionError(f"Unknown checklist row {item_id}", item_id=item_id,
                                     target=target.value)
    if item.status == target:
        return tuple(items)
    if not can_transition(item, target):
        raise InvalidTransitionError(
            f"{item.type.value} {item_id}: {item.status.value} -> {target.value} is not allowed",
            item_id=item_id, current=item.status.value, target=target.value,
        )
    return tuple(item.with_status(target) if item.id == item_id else item for item in items)


def sort_key(item: ChecklistItem):
    manual_order = item.manual_order if item.manual_order is not None else DEFAULT_MANUAL_ORDER
    return (manual_order, 0 if item.is_box else 1, item.name)


def sort_items(items: Iterable[ChecklistItem]) -> List[ChecklistItem]:
    """Order rows by manual order, boxes before products, then name."""
    return sorted(items, key=sort_key)


def next_default(items: Iterable[ChecklistItem], box_index: int) -> Optional[ChecklistItem]:
    """First product of the box still in ``default``, in display order."""
    for item in sort_items(products_in_box(items, box_index)):
        if item.status == ItemStatus.DEFAULT:
            return item
    return None


def is_box_complete(items: Sequence[ChecklistItem], box_index: int) -> bool:
    box = box_row(items, box_index)
    if box is not None and box.status not in FINAL_STATUSES:
        return False
    products = products_in_box(items, box_index)
    return bool(products or box) and all(item.status == ItemStatus.DONE for item in products)


def is_order_complete(items: Sequence[ChecklistItem]) -> bool:
    return bool(items) and all(item.status in FINAL_STATUSES for item in items)


# === Building ===

def _box_rows(plan, box_initial_status: ItemStatus) -> List[ChecklistItem]:
    if plan is None or not plan.feasible:
        return []
    rows = []
    for index in range(plan.box_count):
        box = plan.box
        rows.append(ChecklistItem(
            id=f"box_{index + 1}",
            type=ItemType.BOX,
            name=box.name or f"Box {index + 1}",
            quantity=1,
            expected_weight=float(box.tare),
            status=box_initial_status,
            box_index=index,
            barcode=box.barcode,
            box_settings=box,
            portions_per_box=int(round(plan.portions_per_box)),
        ))
    return rows


def _product_row(item_id: str, item: ExpandedItem, quantity: int, box_index: int,
                 status: ItemStatus) -> ChecklistItem:
    return ChecklistItem(
        id=item_id,
        type=ItemType.PRODUCT,
        name=item.name,
        quantity=quantity,
        expected_weight=item.unit_weight * quantity,
        status=status,
        box_index=box_index,
        sku=item.sku,
        barcode=item.barcode,
        manual_order=item.manual_order,
    )


class ChecklistModel:
    """
    Versioned checklist for one assembly session.

    All mutation goes through commit() or update(); the lock guards only
    the version check and the swap, never the computation.
    """

    def __init__(self, items: Iterable[ChecklistItem] = ()):
        self._lock = threading.Lock()
        self._items: Items = tuple(items)
        self._version = 0

    @classmethod
    def build(cls, items: Sequence[ExpandedItem], plan=None, allocation=None,
              box_initial_status: str = 'default', ready_to_ship: bool = False) -> 'ChecklistModel':
        """
        Build the checklist from expanded items and the box plan.

        Args:
            items: Expanded items
            plan: BoxPlan, or None for a checklist without box rows
            allocation: AllocationResult when the plan has several boxes
            box_initial_status: Starting status of box rows
            ready_to_ship: Order already assembled; boxes confirmed, products done

        Returns:
            ChecklistModel at version 0
        """
        box_status = S.CONFIRMED if ready_to_ship else S(box_initial_status)
        product_status = S.DONE if ready_to_ship else S.DEFAULT

        rows = _box_rows(plan, box_status)

        split = (
            not ready_to_ship
            and allocation is not None
            and plan is not None
            and plan.box_count > 1
        )
        if split:
            index_of = {id(item): n for n, item in enumerate(items, start=1)}
            for alloc_row in allocation.rows:
                n = index_of.get(id(alloc_row.item), 0)
                rows.append(_product_row(
                    f"product_{alloc_row.box_index}_{n}", alloc_row.item,
                    alloc_row.quantity, alloc_row.box_index, product_status,
                ))
        else:
            for n, item in enumerate(items, start=1):
                rows.append(_product_row(f"product_{n}", item, item.quantity, 0, product_status))

        logger.info(
            f"Checklist built: {sum(1 for r in rows if r.is_box)} box rows, "
            f"{sum(1 for r in rows if r.is_product)} product rows"
        )
        return cls(rows)

    @property
    def version(self) -> int:
        return self._version

    @property
    def items(self) -> Items:
        return self._items

    def snapshot(self) -> Tuple[int, Items]:
        with self._lock:
            return self._version, self._items

    def commit(self, expected_version: int, items: Iterable[ChecklistItem]) -> int:
        """
        Replace the whole item tuple if nobody committed since ``expected_version``.

        Returns:
            The new version

        Raises:
            StaleSnapshotError: The checklist changed after the snapshot was taken
        """
        new_items = tuple(items)
        with self._lock:
            if self._version != expected_version:
                raise StaleSnapshotError(
                    f"Checklist moved from version {expected_version} to {self._version}",
                    expected_version=expected_version, actual_version=self._version,
                )
            self._items = new_items
            self._version += 1
            return self._version

    def update(self, fn: Callable[[Items], Tuple[Optional[Sequence[ChecklistItem]], Any]]) -> Any:
        """
        Read-compute-commit with retry.

        ``fn`` receives the current items and returns ``(next_items, value)``;
        next_items None means nothing to commit. Returns ``value`` from the
        call whose result was committed.
        """
        for attempt in range(MAX_COMMIT_RETRIES):
            version, items = self.snapshot()
            next_items, value = fn(items)
            if next_items is None:
                return value
            try:
                self.commit(version, next_items)
                return value
            except StaleSnapshotError as e:
                logger.debug(f"Commit conflict (attempt {attempt + 1}): {e}")
        raise StaleSnapshotError(f"Checklist update failed after {MAX_COMMIT_RETRIES} attempts",
                                 actual_version=self._version)

    def find(self, item_id: str) -> Optional[ChecklistItem]:
        return find_item(self._items, item_id)

    def next_default(self, box_index: int) -> Optional[ChecklistItem]:
        return next_default(self._items, box_index)

    def sorted_items(self) -> List[ChecklistItem]:
        return sort_items(self._items)

    sort_items = staticmethod(sort_items)

    def is_complete(self) -> bool:
        return is_order_complete(self._items)

    def to_records(self) -> List[Dict[str, Any]]:
        """Plain dicts in display order for persistence or export."""
        return [item.to_record() for item in sort_items(self._items)]
