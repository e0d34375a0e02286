"""Port allocation helpers for redisnode."""
from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from .errors import PortsExhaustedError


class PortPoolError(RuntimeError):
    """Raised when the port pool is configured with an invalid range."""


@dataclass(slots=True)
class PortPool:
    """Hand out ports from the fixed ``[start, end]`` range.

    The free set is private; every check-and-take and check-and-release runs
    under the pool lock, which is never held across I/O.
    """

    start: int
    end: int
    _free: set[int] = field(init=False, repr=False)
    _lock: threading.Lock = field(init=False, repr=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        """Validate the range and mark every port free."""
        if self.start < 1 or self.end > 65535:
            raise PortPoolError(
                f"Port range {self.start}-{self.end} must lie within 1-65535."
            )
        if self.start > self.end:
            raise PortPoolError(f"Port range start {self.start} exceeds end {self.end}.")
        self._free = set(range(self.start, self.end + 1))

    # ------------------------------------------------------------------
    @property
    def size(self) -> int:
        """Return the total number of ports managed by the pool."""
        return self.end - self.start + 1

    @property
    def available(self) -> int:
        """Return the number of currently free ports."""
        with self._lock:
            return len(self._free)

    def free_ports(self) -> list[int]:
        """Return a sorted snapshot of the free ports."""
        with self._lock:
            return sorted(self._free)

    def contains(self, port: int) -> bool:
        """Return ``True`` when *port* falls inside the managed range."""
        return self.start <= port <= self.end

    def allocate(self, preferred: int | None = None) -> int:
        """Take *preferred* when it is free, otherwise the lowest free port."""
        with self._lock:
            if preferred is not None and preferred in self._free:
                self._free.discard(preferred)
                return preferred
            if not self._free:
                raise PortsExhaustedError(
                    f"No free ports left in range {self.start}-{self.end}."
                )
            port = min(self._free)
            self._free.discard(port)
            return port

    def reset(self, held: Iterable[int] = ()) -> list[int]:
        """Mark every port free except *held*; return held ports outside the range."""
        held_ports = set(held)
        with self._lock:
            self._free = set(range(self.start, self.end + 1)) - held_ports
        return sorted(port for port in held_ports if not self.contains(port))

    def claim(self, port: int) -> bool:
        """Mark *port* as held; return ``False`` if it was not free."""
        with self._lock:
            if port not in self._free:
                return False
            self._free.discard(port)
            return True

    def release(self, port: int | None) -> None:
        """Return *port* to the pool; unknown or out-of-range ports are ignored."""
        if port is None or not self.contains(port):
            return
        with self._lock:
            self._free.add(port)


__all__ = ["PortPool", "PortPoolError"]
