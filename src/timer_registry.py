"""
Delayed row transitions (settle and retry timers).

Entries are keyed by row id: scheduling a row again replaces its previous
entry. Each entry remembers the status the row had when it was scheduled,
and the owner checks that status before applying the transition, so a
timer that outlived a reset or a rescan does nothing.

The registry does not run anything by itself; due() is polled by
AssemblySession.tick(), which a QTimer drives in the application and
tests call directly after advancing a VirtualClock.
"""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from logger import get_logger
from models import ItemStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class TimerEntry:
    item_id: str
    target: ItemStatus
    fire_at: float
    expected_status: Optional[ItemStatus] = None
    box_index: int = 0


class TimerRegistry:
    def __init__(self, clock):
        self.clock = clock
        self._entries: Dict[str, TimerEntry] = {}
        self._lock = threading.Lock()

    def schedule(self, item_id: str, target: ItemStatus, delay: float,
                 expected_status: Optional[ItemStatus] = None, box_index: int = 0) -> TimerEntry:
        entry = TimerEntry(
            item_id=item_id,
            target=ItemStatus(target),
            fire_at=self.clock.now() + delay,
            expected_status=ItemStatus(expected_status) if expected_status is not None else None,
            box_index=box_index,
        )
        with self._lock:
            self._entries[item_id] = entry
        logger.debug(f"Timer set: {item_id} -> {entry.target.value} in {delay:.2f}s")
        return entry

    def cancel(self, item_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(item_id, None)
        if removed is not None:
            logger.debug(f"Timer cancelled: {item_id}")
        return removed is not None

    def cancel_all(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if count:
            logger.debug(f"Cancelled {count} timer(s)")
        return count

    def due(self) -> List[TimerEntry]:
        """Remove and return the entries whose time has come, earliest first."""
        now = self.clock.now()
        with self._lock:
            fired = sorted((e for e in self._entries.values() if e.fire_at <= now),
                           key=lambda e: e.fire_at)
            for entry in fired:
                del self._entries[entry.item_id]
        return fired

    def pending(self) -> List[TimerEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.fire_at)

    def get(self, item_id: str) -> Optional[TimerEntry]:
        with self._lock:
            return self._entries.get(item_id)

    def __len__(self) -> int:
        return len(self._entries)
