"""
Data types shared by the Order Assembly components.

ChecklistItem is immutable: a status change produces a new item via
with_status(), and the checklist swaps whole tuples of items. The other
types are plain records describing catalog entries and inputs.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional

DEFAULT_MANUAL_ORDER = 999


class ItemStatus(str, Enum):
    DEFAULT = 'default'
    PENDING = 'pending'
    SUCCESS = 'success'
    ERROR = 'error'
    DONE = 'done'
    AWAITING_CONFIRMATION = 'awaiting_confirmation'
    CONFIRMED = 'confirmed'


class ItemType(str, Enum):
    BOX = 'box'
    PRODUCT = 'product'


# Statuses in which a row is the one currently being verified on the scale
ACTIVE_STATUSES = (ItemStatus.PENDING, ItemStatus.AWAITING_CONFIRMATION)

# A box row in one of these statuses has its tare on the scale
WEIGHED_BOX_STATUSES = (ItemStatus.DONE, ItemStatus.SUCCESS, ItemStatus.CONFIRMED)

FINAL_STATUSES = (ItemStatus.DONE, ItemStatus.CONFIRMED)


def _pick(record: Dict[str, Any], *keys, default=None):
    """Return the first present, non-None value among keys (snake or camel case)."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return default


@dataclass(frozen=True)
class BoxDefinition:
    """A shipping box from the box catalog. Weights are in kilograms."""
    name: str
    marking: str
    qnt_from: int
    qnt_to: int
    overflow: int = 0
    weight: float = 0.0
    self_weight: float = 0.0
    barcode: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'BoxDefinition':
        marking = str(_pick(record, 'marking', 'Marking', default=''))
        return cls(
            name=str(_pick(record, 'name', 'Name', default=marking)),
            marking=marking,
            qnt_from=int(_pick(record, 'qnt_from', 'qntFrom', 'Qnt_From', default=0)),
            qnt_to=int(_pick(record, 'qnt_to', 'qntTo', 'Qnt_To', default=0)),
            overflow=int(_pick(record, 'overflow', 'Overflow', default=0)),
            weight=float(_pick(record, 'weight', 'Weight', default=0.0)),
            self_weight=float(_pick(record, 'self_weight', 'selfWeight', 'Self_Weight', default=0.0)),
            barcode=_pick(record, 'barcode', 'Barcode') or None,
            is_active=bool(_pick(record, 'is_active', 'isActive', 'Is_Active', default=True)),
        )

    @property
    def tare(self) -> float:
        """Empty-box weight used for scale validation."""
        return self.self_weight or self.weight


@dataclass(frozen=True)
class SetComponent:
    id: str
    quantity: int


@dataclass(frozen=True)
class ProductRecord:
    """
    Result of a product lookup.

    ``weight`` is in grams, as product catalogs store it; ``set`` is None
    for ordinary products and a list of components for kits.
    """
    sku: str
    name: str
    weight: Optional[float] = None
    category_id: Optional[int] = None
    manual_order: Optional[int] = None
    barcode: Optional[str] = None
    set: Optional[List[Any]] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'ProductRecord':
        weight = _pick(record, 'weight', 'Weight')
        category_id = _pick(record, 'category_id', 'categoryId', 'Category_Id')
        manual_order = _pick(record, 'manual_order', 'manualOrder', 'Manual_Order')
        return cls(
            sku=str(_pick(record, 'sku', 'SKU', default='')),
            name=str(_pick(record, 'name', 'Name', default='')),
            weight=float(weight) if weight is not None else None,
            category_id=int(category_id) if category_id is not None else None,
            manual_order=int(manual_order) if manual_order is not None else None,
            barcode=_pick(record, 'barcode', 'Barcode') or None,
            set=_pick(record, 'set', 'Set'),
        )

    @property
    def is_kit(self) -> bool:
        return isinstance(self.set, (list, tuple)) and len(self.set) > 0


@dataclass(frozen=True)
class OrderLine:
    sku: str
    quantity: int
    name: Optional[str] = None


@dataclass
class ExpandedItem:
    """An atomic item after kit expansion; unit_weight in kilograms."""
    name: str
    sku: Optional[str]
    barcode: Optional[str]
    quantity: int
    unit_weight: float
    manual_order: int = DEFAULT_MANUAL_ORDER

    @property
    def expected_weight(self) -> float:
        # Always derived from the running total, never accumulated
        return self.unit_weight * self.quantity


@dataclass(frozen=True)
class ToleranceSettings:
    """
    Weight tolerance configuration.

    type:
        'combined'   - per-portion tolerance interpolated between
                       max_tolerance and min_tolerance over the portion range
        'percentage' - ``percentage`` percent of the expected product weight
        'absolute'   - fixed ``absolute`` grams
    Gram values are per portion for the interpolation and totals otherwise.
    """
    type: str = 'combined'
    percentage: float = 5.0
    absolute: float = 20.0
    max_tolerance: float = 30.0
    min_tolerance: float = 10.0
    min_portions: int = 1
    max_portions: int = 12


@dataclass(frozen=True)
class WeightSample:
    """One raw scale reading. timestamp is epoch seconds."""
    weight: Optional[float]
    raw_bytes: bytes = b''
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class ChecklistItem:
    """One row of the assembly checklist (a box or a product)."""
    id: str
    type: ItemType
    name: str
    quantity: int
    expected_weight: float
    status: ItemStatus = ItemStatus.DEFAULT
    box_index: int = 0
    sku: Optional[str] = None
    barcode: Optional[str] = None
    manual_order: Optional[int] = None
    box_settings: Optional[BoxDefinition] = None
    portions_per_box: int = 0

    @property
    def is_box(self) -> bool:
        return self.type == ItemType.BOX

    @property
    def is_product(self) -> bool:
        return self.type == ItemType.PRODUCT

    @property
    def box_barcode(self) -> Optional[str]:
        if self.barcode:
            return self.barcode
        if self.box_settings is not None:
            return self.box_settings.barcode
        return None

    def with_status(self, status: ItemStatus) -> 'ChecklistItem':
        return replace(self, status=ItemStatus(status))

    def to_record(self) -> Dict[str, Any]:
        record = {
            'id': self.id,
            'type': self.type.value,
            'name': self.name,
            'quantity': self.quantity,
            'expectedWeight': round(self.expected_weight, 6),
            'status': self.status.value,
            'boxIndex': self.box_index,
            'sku': self.sku,
            'barcode': self.barcode,
            'manualOrder': self.manual_order,
        }
        if self.is_box:
            record['portionsPerBox'] = self.portions_per_box
            if self.box_settings is not None:
                record['boxSettings'] = {
                    'name': self.box_settings.name,
                    'marking': self.box_settings.marking,
                    'qntFrom': self.box_settings.qnt_from,
                    'qntTo': self.box_settings.qnt_to,
                    'overflow': self.box_settings.overflow,
                    'weight': self.box_settings.weight,
                    'self_weight': self.box_settings.self_weight,
                    'barcode': self.box_settings.barcode,
                }
        return record
