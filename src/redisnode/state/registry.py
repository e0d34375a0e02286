"""Helpers for interacting with the redisnode state registry.

The registry directory (``/var/lib/redisnode/registry`` by default) stores YAML
artifacts such as ``instances.yml`` and ``node.yml``. This module provides
lightweight helpers to read and write those files using atomic operations, and
the instance store the node persists its records through.
"""
from __future__ import annotations

import os
import tempfile
import threading
import uuid
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..models import InstanceRecord


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path
    _lock: threading.RLock = field(
        default_factory=threading.RLock,
        init=False,
        repr=False,
        compare=False,
    )

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_instances(self) -> Mapping[str, object]:
        """Return the contents of ``instances.yml`` (empty mapping if missing)."""
        value = self.read("instances.yml", default={"instances": []})
        return value if isinstance(value, Mapping) else {"instances": []}

    def write_instances(self, instances: Iterable[object]) -> None:
        """Persist instance entries to ``instances.yml``."""
        self.write("instances.yml", {"instances": list(instances)})

    # Node helpers ----------------------------------------------------
    def node_secret(self) -> str:
        """Return the node quarantine secret, creating it on first use."""
        with self._lock:
            data = self.read("node.yml", default={})
            mapping = dict(data) if isinstance(data, Mapping) else {}
            secret = mapping.get("disable_password")
            if isinstance(secret, str) and secret.strip():
                return secret.strip()
            secret = f"disable-{uuid.uuid4()}"
            mapping["disable_password"] = secret
            self.write("node.yml", mapping)
            return secret

    # Instance store --------------------------------------------------
    def list_records(self) -> list[InstanceRecord]:
        """Return every persisted instance record."""
        return [InstanceRecord.from_mapping(entry) for entry in self._instance_entries()]

    def get(self, name: str) -> InstanceRecord | None:
        """Return the record for *name*, or ``None`` when absent."""
        entry = self.get_instance(name)
        return InstanceRecord.from_mapping(entry) if entry is not None else None

    def put(self, record: InstanceRecord, *, create: bool = False) -> None:
        """Insert or replace *record*; refuse duplicates when *create* is set."""
        with self._lock:
            entries = self._instance_entries()
            updated: list[dict[str, Any]] = []
            replaced = False
            for entry in entries:
                if entry.get("name") == record.name:
                    if create:
                        raise StateRegistryError(
                            f"Instance '{record.name}' already registered"
                        )
                    updated.append(record.to_dict())
                    replaced = True
                else:
                    updated.append(entry)
            if not replaced:
                updated.append(record.to_dict())
            self.write_instances(updated)

    def delete(self, name: str) -> None:
        """Remove the record named *name*."""
        self.remove_instance(name)

    # Instance helpers -------------------------------------------------
    def get_instance(self, name: str) -> dict[str, Any] | None:
        """Return the instance mapping for *name* if registered."""
        for entry in self._instance_entries():
            if entry.get("name") == name:
                return entry
        return None

    def remove_instance(self, name: str) -> None:
        """Remove the instance named *name* from the registry."""
        with self._lock:
            entries = self._instance_entries()
            filtered = [entry for entry in entries if entry.get("name") != name]
            if len(filtered) == len(entries):
                raise StateRegistryError(f"Instance '{name}' not found in registry")
            self.write_instances(filtered)

    def _instance_entries(self) -> list[dict[str, Any]]:
        data = self.read_instances()
        raw_instances = data.get("instances", [])
        entries: list[dict[str, Any]] = []
        if isinstance(raw_instances, list):
            for entry in raw_instances:
                if isinstance(entry, Mapping):
                    entries.append(dict(entry))
        return entries


__all__ = ["StateRegistry", "StateRegistryError"]
