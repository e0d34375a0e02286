"""Instance record model shared by the store, supervisor, and node."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

SNAPSHOT_FILENAME = "dump.rdb"


@dataclass(slots=True)
class InstanceRecord:
    """Persisted metadata for one provisioned Redis instance."""

    name: str
    port: int
    password: str
    plan: str
    memory: int = 0
    pid: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "port": self.port,
            "password": self.password,
            "plan": self.plan,
            "memory": self.memory,
            "pid": self.pid,
        }

    @classmethod
    def from_mapping(cls, entry: Mapping[str, Any]) -> InstanceRecord:
        """Build a record from a registry mapping, coercing scalar types."""
        name = str(entry.get("name", "")).strip()
        if not name:
            raise ValueError("Instance entry missing 'name'.")
        pid_raw = entry.get("pid")
        pid = int(pid_raw) if pid_raw not in (None, "") else None
        return cls(
            name=name,
            port=int(entry["port"]),
            password=str(entry.get("password", "")),
            plan=str(entry.get("plan", "")),
            memory=int(entry.get("memory") or 0),
            pid=pid,
        )


def credentials_port(credentials: Mapping[str, Any]) -> int | None:
    """Return the port from a credentials payload, if it carries one."""
    value = credentials.get("port")
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = ["InstanceRecord", "SNAPSHOT_FILENAME", "credentials_port"]
