"""
Pytest configuration file for Order Assembly tests.

This file sets up the Python path to ensure all tests can import
from both the 'src' and 'shared' directories, and provides the fixtures
most engine tests share: a virtual clock, a small box catalog and a
dict-backed product lookup.
"""

import os
import sys
from pathlib import Path

import pytest

# Run Qt headless unless the environment already picked a platform plugin
os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')

# Get the repository root directory (parent of tests directory)
repo_root = Path(__file__).parent.parent

# Add repository root to sys.path (for 'shared' module)
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

# Add src directory to sys.path (for src modules)
src_dir = repo_root / 'src'
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

from logger import clear_logging_context  # noqa: E402
from models import BoxDefinition, ProductRecord  # noqa: E402
from shared.clock import VirtualClock  # noqa: E402


class FakeLookup:
    """Product lookup backed by a dict; records every SKU it was asked for."""

    def __init__(self, products=None, failing=()):
        self.products = dict(products or {})
        self.failing = set(failing)
        self.calls = []

    def resolve(self, sku):
        self.calls.append(sku)
        if sku in self.failing:
            raise ConnectionError(f"lookup service unavailable for {sku}")
        return self.products.get(sku)


def make_product(sku, name=None, weight=None, category_id=None, manual_order=None,
                 barcode=None, components=None):
    """Build a ProductRecord; ``components`` is a list of (sku, quantity) for kits."""
    kit = [{'id': c, 'quantity': q} for c, q in components] if components else None
    return ProductRecord(
        sku=sku,
        name=name or f"Product {sku}",
        weight=weight,
        category_id=category_id,
        manual_order=manual_order,
        barcode=barcode,
        set=kit,
    )


@pytest.fixture
def clock():
    return VirtualClock(start=1_000.0)


@pytest.fixture
def boxes():
    return [
        BoxDefinition(name="Small box", marking="S-10", qnt_from=1, qnt_to=10, overflow=1,
                      weight=8.0, self_weight=0.3, barcode="BOX-S"),
        BoxDefinition(name="Medium box", marking="M-25", qnt_from=15, qnt_to=25, overflow=2,
                      weight=12.0, self_weight=0.5, barcode="BOX-M"),
    ]


@pytest.fixture
def lookup():
    return FakeLookup({
        'SOUP': make_product('SOUP', 'Borscht', weight=420, manual_order=1, barcode='4820001'),
        'MAIN': make_product('MAIN', 'Chicken Kiev', weight=330, manual_order=2, barcode='4820002'),
        'SALAD': make_product('SALAD', 'Olivier', category_id=2, barcode='4820003'),
        'LUNCH': make_product('LUNCH', 'Lunch set', components=[('SOUP', 1), ('MAIN', 1)]),
    })


@pytest.fixture(autouse=True)
def reset_logging_context():
    """Order/session ids set by one test must not stamp the next test's records."""
    yield
    clear_logging_context()
