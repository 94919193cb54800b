"""
pandas-backed catalogs: product lookup, box catalog and order lines.

Product and box data usually arrive as spreadsheets exported from the
warehouse system. This module reads them into the engine's record types.
Kit definitions travel in the ``Set`` column as JSON text, e.g.
``[{"id": "SKU-SOUP", "quantity": 2}]``.

Product sheet columns: SKU, Name, Weight (grams), Category_Id,
Manual_Order, Barcode, Set. Only SKU is required.
Box sheet columns: Name, Marking, Qnt_From, Qnt_To, Overflow, Weight,
Self_Weight, Barcode, Is_Active.
Order sheet columns: SKU, Quantity (required), Product_Name (optional).
"""

import json
import math
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd

from logger import get_logger
from models import BoxDefinition, OrderLine, ProductRecord
from scan_router import normalize_code

logger = get_logger(__name__)

PRODUCT_COLUMNS = ['SKU', 'Name', 'Weight', 'Category_Id', 'Manual_Order', 'Barcode', 'Set']
BOX_COLUMNS = ['Name', 'Marking', 'Qnt_From', 'Qnt_To', 'Overflow', 'Weight', 'Self_Weight',
               'Barcode', 'Is_Active']
ORDER_REQUIRED_COLUMNS = ['SKU', 'Quantity']

_TRUE_STRINGS = {'1', 'true', 'yes', 'y', 'on'}


def _clean(value: Any) -> Any:
    """Turn pandas missing values and blank strings into None."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _to_int(value: Any) -> Optional[int]:
    value = _clean(value)
    if value is None:
        return None
    return int(float(value))


def _to_float(value: Any) -> Optional[float]:
    value = _clean(value)
    if value is None:
        return None
    return float(value)


def _to_bool(value: Any, default: bool = True) -> bool:
    value = _clean(value)
    if value is None:
        return default
    if isinstance(value, str):
        return value.lower() in _TRUE_STRINGS
    return bool(value)


def _to_code(value: Any) -> Optional[str]:
    """Barcode/SKU cells read as numbers lose nothing but the trailing .0."""
    value = _clean(value)
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _parse_set(value: Any) -> Optional[List[Any]]:
    value = _clean(value)
    if value is None:
        return None
    if isinstance(value, list):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError) as e:
        logger.warning(f"Unreadable Set definition {value!r}: {e}")
        # Non-empty so the expander reports the kit as malformed
        return [value]
    return parsed if isinstance(parsed, list) else [parsed]


def _read_table(path: Union[str, Path]) -> pd.DataFrame:
    path = Path(path)
    logger.info(f"Loading table from: {path}")
    try:
        if path.suffix.lower() == '.csv':
            df = pd.read_csv(path, dtype=str)
        else:
            df = pd.read_excel(path, dtype=str)
    except Exception as e:
        logger.error(f"Failed to read {path}: {e}")
        raise ValueError(f"Could not read the file {path}: {e}")

    if df.empty:
        logger.error(f"Loaded file is empty: {path}")
        raise ValueError("The file is empty or contains no data.")

    df.columns = [str(c).strip() for c in df.columns]
    logger.debug(f"Loaded {len(df)} rows, {len(df.columns)} columns")
    return df


class ProductCatalog:
    """
    In-memory product lookup built from a DataFrame.

    resolve() matches the SKU exactly first and then by normalized code,
    so "SKU-001" and "sku 001" find the same product.
    """

    def __init__(self, records: Iterable[ProductRecord]):
        self._by_sku: Dict[str, ProductRecord] = {}
        self._by_normalized: Dict[str, ProductRecord] = {}
        for record in records:
            self._by_sku[record.sku] = record
            self._by_normalized.setdefault(normalize_code(record.sku), record)
        logger.info(f"Product catalog ready: {len(self._by_sku)} products")

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> 'ProductCatalog':
        if 'SKU' not in df.columns:
            raise ValueError("Product table is missing the required column: SKU")

        records = []
        for row in df.to_dict('records'):
            sku = _to_code(row.get('SKU'))
            if sku is None:
                continue
            try:
                records.append(ProductRecord(
                    sku=sku,
                    name=_clean(row.get('Name')) or '',
                    weight=_to_float(row.get('Weight')),
                    category_id=_to_int(row.get('Category_Id')),
                    manual_order=_to_int(row.get('Manual_Order')),
                    barcode=_to_code(row.get('Barcode')),
                    set=_parse_set(row.get('Set')),
                ))
            except ValueError as e:
                logger.warning(f"Skipping product row {sku}: {e}")
        return cls(records)

    @classmethod
    def from_excel(cls, path: Union[str, Path]) -> 'ProductCatalog':
        return cls.from_dataframe(_read_table(path))

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> 'ProductCatalog':
        return cls.from_dataframe(_read_table(path))

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> 'ProductCatalog':
        return cls(ProductRecord.from_record(record) for record in records)

    def resolve(self, sku: str) -> Optional[ProductRecord]:
        record = self._by_sku.get(str(sku))
        if record is None:
            record = self._by_normalized.get(normalize_code(sku))
        return record

    __call__ = resolve

    def __len__(self) -> int:
        return len(self._by_sku)

    def __contains__(self, sku: str) -> bool:
        return self.resolve(sku) is not None


def _box_from_row(row: Dict[str, Any]) -> BoxDefinition:
    marking = _clean(row.get('Marking')) or ''
    return BoxDefinition(
        name=_clean(row.get('Name')) or marking,
        marking=marking,
        qnt_from=_to_int(row.get('Qnt_From')) or 0,
        qnt_to=_to_int(row.get('Qnt_To')) or 0,
        overflow=_to_int(row.get('Overflow')) or 0,
        weight=_to_float(row.get('Weight')) or 0.0,
        self_weight=_to_float(row.get('Self_Weight')) or 0.0,
        barcode=_to_code(row.get('Barcode')),
        is_active=_to_bool(row.get('Is_Active')),
    )


def load_box_catalog(source: Union[str, Path, pd.DataFrame, Iterable[Dict[str, Any]]]) -> List[BoxDefinition]:
    """
    Load box definitions from an Excel/CSV file, a DataFrame or records.

    Records may use snake_case or camelCase keys (as the box settings API
    returns them); sheets use the column names in the module docstring.
    """
    if isinstance(source, (str, Path)):
        df = _read_table(source)
    elif isinstance(source, pd.DataFrame):
        df = source
    else:
        return [BoxDefinition.from_record(record) for record in source]

    missing = [c for c in ('Marking', 'Qnt_From', 'Qnt_To') if c not in df.columns]
    if missing:
        raise ValueError(f"Box table is missing required columns: {', '.join(missing)}")

    boxes = [_box_from_row(row) for row in df.to_dict('records')]
    logger.info(f"Loaded {len(boxes)} box definitions ({sum(b.is_active for b in boxes)} active)")
    return boxes


def load_order_lines(path: Union[str, Path]) -> List[OrderLine]:
    """
    Load an order sheet into OrderLines.

    Raises:
        ValueError: If the file cannot be read, is empty, misses SKU or
            Quantity, or holds a quantity that is not a whole number
    """
    df = _read_table(path)

    missing = [c for c in ORDER_REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Order file is missing required columns: {', '.join(missing)}")

    lines = []
    for position, row in enumerate(df.to_dict('records'), start=2):
        sku = _to_code(row.get('SKU'))
        if sku is None:
            continue
        try:
            quantity = _to_int(row.get('Quantity'))
        except ValueError:
            raise ValueError(f"Invalid quantity {row.get('Quantity')!r} for {sku} in row {position}")
        if quantity is None:
            raise ValueError(f"Missing quantity for {sku} in row {position}")
        lines.append(OrderLine(sku=sku, quantity=quantity, name=_clean(row.get('Product_Name'))))

    logger.info(f"Loaded {len(lines)} order lines from {path}")
    return lines
