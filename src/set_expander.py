"""
Kit (product set) expansion.

An order line may reference a kit: a product whose ``set`` lists other
products with per-kit quantities, which may themselves be kits. Before
boxes can be planned every kit has to be flattened into the atomic items
that physically go into the box, with quantities multiplied along the way.

Each recursive call returns its own branch map (leaf name -> ExpandedItem)
that the caller merges; nothing is shared between calls. The SKUs on the
current path travel down as a frozenset, so a kit can legitimately appear
in two independent branches while a kit that contains itself is caught.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from exceptions import (
    CycleDetected,
    ExpansionError,
    ExpansionLookupFailure,
    MalformedKitDefinition,
    RecursionDepthExceeded,
)
from logger import get_logger
from models import DEFAULT_MANUAL_ORDER, ExpandedItem, OrderLine, ProductRecord, SetComponent

logger = get_logger(__name__)

MAX_DEPTH = 10

# Grams per unit
CATEGORY_ONE_WEIGHT = 420
DEFAULT_WEIGHT = 330
FALLBACK_WEIGHT = 330

UNKNOWN_PRODUCT_NAME = "Unknown product ({sku})"


@dataclass(frozen=True)
class KitSummary:
    """A kit met during expansion, for display next to the checklist."""
    name: str
    sku: str
    quantity: int
    depth: int


@dataclass
class ExpansionResult:
    items: List[ExpandedItem] = field(default_factory=list)
    kits: List[KitSummary] = field(default_factory=list)
    errors: List[ExpansionError] = field(default_factory=list)

    @property
    def total_portions(self) -> int:
        return sum(item.quantity for item in self.items)


@dataclass
class _Branch:
    items: Dict[str, ExpandedItem] = field(default_factory=dict)
    kits: List[KitSummary] = field(default_factory=list)
    errors: List[ExpansionError] = field(default_factory=list)

    def add_item(self, item: ExpandedItem):
        existing = self.items.get(item.name)
        if existing is None:
            self.items[item.name] = item
        else:
            existing.quantity += item.quantity

    def merge(self, other: '_Branch'):
        for item in other.items.values():
            self.add_item(item)
        self.kits.extend(other.kits)
        self.errors.extend(other.errors)


Lookup = Union[Callable[[str], Optional[ProductRecord]], Any]


class SetExpander:
    """
    Flattens order lines into atomic ExpandedItems.

    Args:
        lookup: A callable ``lookup(sku)`` or an object with ``resolve(sku)``
            returning a ProductRecord (or a dict in catalog shape), None when
            the SKU is unknown; exceptions are treated as lookup failures
        max_depth: Deepest kit nesting that is still expanded
        lookup_workers: Threads used for top-level lines; 1 is sequential
    """

    def __init__(self, lookup: Lookup, max_depth: int = MAX_DEPTH, lookup_workers: int = 4,
                 category_one_weight: float = CATEGORY_ONE_WEIGHT,
                 default_weight: float = DEFAULT_WEIGHT,
                 fallback_weight: float = FALLBACK_WEIGHT):
        self._resolve = lookup.resolve if hasattr(lookup, 'resolve') else lookup
        self.max_depth = max_depth
        self.lookup_workers = max(1, int(lookup_workers))
        self.category_one_weight = category_one_weight
        self.default_weight = default_weight
        self.fallback_weight = fallback_weight

    @classmethod
    def from_settings(cls, lookup: Lookup, settings) -> 'SetExpander':
        """Build from an ExpansionSettings section of AssemblyConfig."""
        return cls(
            lookup,
            max_depth=settings.max_depth,
            lookup_workers=settings.lookup_workers,
            category_one_weight=settings.category_one_weight_grams,
            default_weight=settings.default_weight_grams,
            fallback_weight=settings.fallback_weight_grams,
        )

    def expand(self, order_lines: Sequence[Union[OrderLine, Tuple, Dict[str, Any]]]) -> ExpansionResult:
        """
        Expand order lines into a flat item list.

        Top-level lines are resolved concurrently; their branch results are
        merged on this thread in input order so the output does not depend
        on lookup timing.

        Returns:
            ExpansionResult with merged items (first-seen order), every kit
            met, and the failures recorded along the way
        """
        result = _Branch()
        lines = []
        for raw in order_lines:
            try:
                line = self._coerce_line(raw)
            except (TypeError, ValueError) as e:
                logger.error(f"Unreadable order line {raw!r}: {e}")
                sku = raw.get('sku', raw.get('SKU')) if isinstance(raw, dict) else None
                result.errors.append(ExpansionLookupFailure(
                    f"Order line {raw!r} skipped: {e}", sku=str(sku) if sku is not None else None,
                ))
                continue
            if line is not None:
                lines.append(line)
        logger.info(f"Expanding {len(lines)} order lines")

        if self.lookup_workers == 1 or len(lines) <= 1:
            branches = [self._expand_line(line) for line in lines]
        else:
            with ThreadPoolExecutor(max_workers=min(self.lookup_workers, len(lines))) as pool:
                branches = list(pool.map(self._expand_line, lines))

        for branch in branches:
            result.merge(branch)

        for error in result.errors:
            logger.warning(f"Expansion issue: {error}")

        expansion = ExpansionResult(
            items=list(result.items.values()),
            kits=result.kits,
            errors=result.errors,
        )
        logger.info(
            f"Expanded into {len(expansion.items)} items, {expansion.total_portions} portions, "
            f"{len(expansion.kits)} kits, {len(expansion.errors)} issues"
        )
        return expansion

    @staticmethod
    def _coerce_line(line) -> Optional[OrderLine]:
        if isinstance(line, dict):
            sku = line.get('sku', line.get('SKU'))
            quantity = line.get('quantity', line.get('Quantity', 0))
            name = line.get('name', line.get('productName', line.get('Product_Name')))
            line = OrderLine(sku=str(sku), quantity=int(quantity), name=name or None)
        elif isinstance(line, tuple) and not isinstance(line, OrderLine):
            line = OrderLine(*line)

        if line.quantity <= 0:
            logger.warning(f"Skipping order line {line.sku} with quantity {line.quantity}")
            return None
        return line

    def _lookup(self, sku: str) -> Tuple[Optional[ProductRecord], Optional[str]]:
        """Resolve a SKU; returns (record, failure reason)."""
        try:
            record = self._resolve(sku)
            if isinstance(record, dict):
                record = ProductRecord.from_record(record)
        except Exception as e:
            logger.error(f"Lookup failed for {sku}: {e}")
            return None, f"lookup failed: {e}"

        if record is None:
            return None, "not found"
        return record, None

    def _expand_line(self, line: OrderLine) -> _Branch:
        record, reason = self._lookup(line.sku)
        if record is None:
            branch = _Branch()
            name = line.name or UNKNOWN_PRODUCT_NAME.format(sku=line.sku)
            self._add_fallback(branch, name, line.sku, line.quantity, reason)
            return branch
        return self._expand_record(record, line.sku, line.quantity, 0, frozenset(), line.name)

    def _expand_record(self, record: ProductRecord, sku: str, quantity: int, depth: int,
                       path: FrozenSet[str], fallback_name: Optional[str] = None) -> _Branch:
        branch = _Branch()

        if depth > self.max_depth:
            branch.errors.append(RecursionDepthExceeded(
                f"Kit nesting deeper than {self.max_depth} at {sku}, branch skipped",
                sku=sku, depth=depth,
            ))
            return branch

        if not record.is_kit:
            branch.add_item(self._leaf(record, sku, quantity, fallback_name))
            return branch

        if sku in path:
            branch.errors.append(CycleDetected(
                f"Kit {sku} contains itself, branch skipped",
                sku=sku, path=tuple(sorted(path)),
            ))
            return branch

        components = []
        for entry in record.set:
            component = self._parse_component(entry)
            if component is None:
                branch.errors.append(MalformedKitDefinition(
                    f"Kit {sku} has an invalid component entry: {entry!r}", sku=sku,
                ))
            else:
                components.append(component)

        if not components:
            branch.errors.append(MalformedKitDefinition(
                f"Kit {record.name or sku} has no valid components, added as a product", sku=sku,
            ))
            branch.add_item(self._leaf(record, sku, quantity, fallback_name))
            return branch

        branch.kits.append(KitSummary(record.name or fallback_name or sku, sku, quantity, depth))
        child_path = path | {sku}

        for component in components:
            child_quantity = quantity * component.quantity
            child, reason = self._lookup(component.id)
            if child is None:
                self._add_fallback(branch, UNKNOWN_PRODUCT_NAME.format(sku=component.id),
                                   component.id, child_quantity, reason)
                continue
            branch.merge(self._expand_record(child, component.id, child_quantity, depth + 1, child_path))

        return branch

    @staticmethod
    def _parse_component(entry) -> Optional[SetComponent]:
        if isinstance(entry, SetComponent):
            return entry if entry.id and entry.quantity > 0 else None
        if not isinstance(entry, dict):
            return None
        component_id = entry.get('id')
        try:
            quantity = int(entry.get('quantity') or 0)
        except (TypeError, ValueError):
            return None
        if component_id in (None, '') or quantity <= 0:
            return None
        return SetComponent(id=str(component_id), quantity=quantity)

    def _unit_weight_grams(self, record: ProductRecord) -> float:
        if record.weight is not None and record.weight > 0:
            return record.weight
        if record.category_id == 1:
            return self.category_one_weight
        return self.default_weight

    def _leaf(self, record: ProductRecord, sku: str, quantity: int,
              fallback_name: Optional[str]) -> ExpandedItem:
        manual_order = record.manual_order if record.manual_order is not None else DEFAULT_MANUAL_ORDER
        return ExpandedItem(
            name=record.name or fallback_name or UNKNOWN_PRODUCT_NAME.format(sku=sku),
            sku=record.sku or sku,
            barcode=record.barcode or sku,
            quantity=quantity,
            unit_weight=self._unit_weight_grams(record) / 1000.0,
            manual_order=manual_order,
        )

    def _add_fallback(self, branch: _Branch, name: str, sku: str, quantity: int, reason: Optional[str]):
        branch.add_item(ExpandedItem(
            name=name,
            sku=sku,
            barcode=sku,
            quantity=quantity,
            unit_weight=self.fallback_weight / 1000.0,
            manual_order=DEFAULT_MANUAL_ORDER,
        ))
        branch.errors.append(ExpansionLookupFailure(
            f"Product {sku} {reason or 'not found'}, using fallback weight", sku=sku,
        ))
