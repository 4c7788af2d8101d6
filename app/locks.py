"""Per-key critical sections for check-then-write operations.

Placement reads capacity and overlap state and then inserts; both must see a
stable snapshot. Callers hold the template key and the employee/day key for
the whole transaction so two placements touching the same cell or the same
employee's day are serialised. Keys are acquired in sorted order.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List, Tuple

from errors import ConcurrentModification

logger = logging.getLogger("shiftdesk.locks")

DEFAULT_TIMEOUT_SECONDS = 5.0


def template_key(template_id: int) -> Tuple[str, int]:
    return ("template", int(template_id))


def employee_day_key(employee_id: int, day_of_week: int) -> Tuple[str, int, int]:
    return ("employee-day", int(employee_id), int(day_of_week))


class KeyedLocks:
    """Registry of ``threading.Lock`` objects created on demand per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: Hashable, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Iterator[None]:
        ordered = sorted(set(keys), key=repr)
        acquired: List[threading.Lock] = []
        deadline = time.monotonic() + max(0.0, timeout)
        try:
            for key in ordered:
                lock = self._lock_for(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    logger.warning("Timed out after %.2fs waiting for %s", timeout, key)
                    raise ConcurrentModification(
                        "Another change to the same slot or employee day is in progress; retry.",
                        key=list(key) if isinstance(key, tuple) else key,
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
