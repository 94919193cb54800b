"""
Custom exceptions for the Order Assembly engine.

Most of these are not raised across component boundaries. Components
record them as instances in the ``errors`` list (or ``error`` field) of
the result objects they return, so a caller can log, display or act on a
named failure without a try/except around every call. The two exceptions
that are raised, InvalidTransitionError and StaleSnapshotError, stay inside
the checklist/session layer; ConfigurationError is raised while loading
config.ini.

Exception hierarchy:
    AssemblyError (base)
    ├── ExpansionError
    │   ├── ExpansionLookupFailure (product not found / lookup failed)
    │   ├── RecursionDepthExceeded (kit nesting too deep)
    │   ├── CycleDetected (kit contains itself)
    │   └── MalformedKitDefinition (unusable set entries)
    ├── PackingInfeasible (no box configuration fits)
    ├── UnallocatedPortions (allocator could not place every unit)
    ├── ScanRejected (wrong box, wrong phase, done item, cooldown)
    ├── WeightOutOfTolerance (reading outside the tolerance band)
    ├── InvalidTransitionError (state machine violation)
    ├── StaleSnapshotError (checklist version moved during a commit)
    └── ConfigurationError (unparsable config.ini value)
"""

from typing import Dict, List, Optional, Tuple


class AssemblyError(Exception):
    """
    Base exception for all Order Assembly errors.

    Every error can render itself for an operator-facing notification via
    get_display_message(); by default that is the plain message.
    """

    blocking = False

    def get_display_message(self) -> str:
        return str(self)


class ExpansionError(AssemblyError):
    """Base for failures recorded while flattening kits."""

    def __init__(self, message: str, sku: Optional[str] = None):
        super().__init__(message)
        self.sku = sku


class ExpansionLookupFailure(ExpansionError):
    """
    Product lookup failed or returned nothing for a SKU.

    The line is still added to the expansion result with the fallback
    weight; this error only reports that it happened.
    """


class RecursionDepthExceeded(ExpansionError):
    """Kit nesting went deeper than the configured maximum; branch abandoned."""

    def __init__(self, message: str, sku: Optional[str] = None, depth: int = 0):
        super().__init__(message, sku)
        self.depth = depth


class CycleDetected(ExpansionError):
    """
    A kit contains itself, directly or transitively; branch skipped.

    Attributes:
        path: SKUs on the branch that led back to ``sku``
    """

    def __init__(self, message: str, sku: Optional[str] = None, path: Tuple[str, ...] = ()):
        super().__init__(message, sku)
        self.path = tuple(path)

    def get_display_message(self) -> str:
        if not self.path:
            return str(self)
        return f"Kit {self.sku} contains itself: {' -> '.join(self.path + (self.sku,))}"


class MalformedKitDefinition(ExpansionError):
    """A kit's set entry (or every entry) is missing an id or quantity."""


class PackingInfeasible(AssemblyError):
    """
    No box configuration satisfies the portion constraints.

    Returned inside a BoxPlan with ``feasible=False``; blocks the workflow
    until the box catalog is changed.
    """

    blocking = True

    def __init__(self, message: str, portions: float = 0, mode: Optional[str] = None):
        super().__init__(message)
        self.portions = portions
        self.mode = mode


class UnallocatedPortions(AssemblyError):
    """
    The allocator could not place every unit within the box limits.

    Attributes:
        unallocated: (item name, quantity) pairs that fit in no box
    """

    blocking = True

    def __init__(self, message: str, unallocated: Optional[List[Tuple[str, int]]] = None):
        super().__init__(message)
        self.unallocated = list(unallocated or [])

    @property
    def total(self) -> int:
        return sum(quantity for _, quantity in self.unallocated)

    def get_display_message(self) -> str:
        if not self.unallocated:
            return str(self)
        lines = [f"  - {name}: {quantity}" for name, quantity in self.unallocated]
        return (
            f"{self.total} portion(s) do not fit into the planned boxes:\n"
            + "\n".join(lines)
            + "\n\nAdjust the box catalog or packing limits and rebuild the checklist."
        )


class ScanRejected(AssemblyError):
    """
    A scan was understood but not applied; informational only.

    Attributes:
        code: The scanned string
        status: Machine-readable reason (e.g. "WRONG_BOX")
        item_id: Row the code matched, when it matched one
    """

    def __init__(self, message: str, code: str = '', status: str = '', item_id: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.status = status
        self.item_id = item_id


class WeightOutOfTolerance(AssemblyError):
    """
    A scale reading fell outside the tolerance band; retried automatically.

    Attributes:
        measured, expected, tolerance: kilograms
    """

    def __init__(self, message: str, item_id: Optional[str] = None,
                 measured: float = 0.0, expected: float = 0.0, tolerance: float = 0.0):
        super().__init__(message)
        self.item_id = item_id
        self.measured = measured
        self.expected = expected
        self.tolerance = tolerance

    def get_display_message(self) -> str:
        return (
            f"Weight does not match!\n\n"
            f"Expected: {self.expected:.3f} kg ± {self.tolerance * 1000:.0f} g\n"
            f"Measured: {self.measured:.3f} kg"
        )


class InvalidTransitionError(AssemblyError):
    """Raised by the checklist state machine for a transition it does not allow."""

    def __init__(self, message: str, item_id: Optional[str] = None,
                 current: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message)
        self.item_id = item_id
        self.current = current
        self.target = target


class StaleSnapshotError(AssemblyError):
    """Raised when a checklist commit is based on an outdated snapshot version."""

    def __init__(self, message: str, expected_version: int = 0, actual_version: int = 0):
        super().__init__(message)
        self.expected_version = expected_version
        self.actual_version = actual_version


class ConfigurationError(AssemblyError):
    """
    Raised when a config.ini value cannot be parsed.

    Attributes:
        details: section/option -> offending value
    """

    def __init__(self, message: str, details: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.details = details or {}
