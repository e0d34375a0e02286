"""Capacity accounting for the instances hosted by a node."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field


@dataclass(slots=True)
class CapacityTracker:
    """Count the remaining instance slots behind a single lock."""

    max_capacity: int
    _remaining: int = field(init=False)
    _lock: threading.Lock = field(init=False, repr=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        """Start with every slot available."""
        if self.max_capacity < 0:
            raise ValueError("Capacity must be zero or greater.")
        self._remaining = self.max_capacity

    @property
    def available(self) -> int:
        """Return the number of free slots."""
        with self._lock:
            return self._remaining

    def reserve(self) -> bool:
        """Take one slot; return ``False`` when none is left."""
        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    def force_reserve(self) -> int:
        """Take one slot unconditionally and return what remains.

        Used when accounting for instances that already exist on disk, which
        may exceed a capacity lowered since they were provisioned.
        """
        with self._lock:
            self._remaining -= 1
            return self._remaining

    def reset(self, used: int = 0) -> int:
        """Recount from *used* occupied slots and return what remains."""
        with self._lock:
            self._remaining = self.max_capacity - used
            return self._remaining

    def release(self) -> None:
        """Give one slot back, never exceeding the configured maximum."""
        with self._lock:
            if self._remaining < self.max_capacity:
                self._remaining += 1


__all__ = ["CapacityTracker"]
