"""
Shared modules for the Order Assembly engine.

Components that do not belong to any single assembly step live here so
that the engine modules and any station front-end use the same clock and
timestamp handling.
"""

from .clock import SystemClock, VirtualClock, parse_timestamp, to_epoch_seconds

__all__ = [
    'SystemClock',
    'VirtualClock',
    'parse_timestamp',
    'to_epoch_seconds',
]

__version__ = '1.0.0'
