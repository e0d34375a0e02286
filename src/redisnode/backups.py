"""Catalogue of instance snapshots taken with ``backup create``.

Every snapshot is a directory ``<root>/<instance>/<id>`` holding a single
``dump.rdb``. The JSON index records its size and SHA-256 digest so a damaged
or swapped file is rejected before a server is restarted from it.
"""
from __future__ import annotations

import hashlib
import json
import os
import re
import secrets
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .models import SNAPSHOT_FILENAME

INDEX_VERSION = 1
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


class BackupError(RuntimeError):
    """Base class for snapshot catalogue failures."""


class SnapshotIndexError(BackupError):
    """Raised when the index cannot be read, parsed, or written."""


class SnapshotCorruptError(BackupError):
    """Raised when a snapshot on disk no longer matches its index entry."""


@dataclass(frozen=True, slots=True)
class Snapshot:
    """One indexed ``dump.rdb`` copy."""

    id: str
    instance: str
    created_at: str
    directory: Path
    size_bytes: int
    sha256: str
    message: str | None = None

    @property
    def file(self) -> Path:
        return self.directory / SNAPSHOT_FILENAME

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "instance": self.instance,
            "created_at": self.created_at,
            "path": str(self.directory),
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
        }
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Snapshot:
        try:
            return cls(
                id=str(data["id"]),
                instance=str(data["instance"]),
                created_at=str(data.get("created_at", "")),
                directory=Path(str(data["path"])),
                size_bytes=int(data["size_bytes"]),
                sha256=str(data["sha256"]),
                message=str(data["message"]) if data.get("message") else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SnapshotIndexError(f"Malformed snapshot entry {dict(data)!r}: {exc}") from exc


@dataclass(slots=True)
class SnapshotCatalog:
    """Allocate snapshot directories and keep the JSON index beside them.

    Callers serialise :meth:`register` against other writers; the CLI does so
    under the node's global lock.
    """

    root: Path
    index: Path

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser()
        self.index = Path(self.index).expanduser()

    def new_directory(self, instance: str) -> tuple[str, Path]:
        """Return a fresh identifier and the directory a snapshot of *instance* goes in."""
        slug = _UNSAFE.sub("-", instance.strip()) or "instance"
        stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S")
        snapshot_id = f"{slug}-{stamp}-{secrets.token_hex(3)}"
        return snapshot_id, self.root / slug / snapshot_id

    def register(
        self,
        snapshot_id: str,
        instance: str,
        directory: Path,
        *,
        message: str | None = None,
    ) -> Snapshot:
        """Fingerprint the dump in *directory* and add it to the index."""
        dump = Path(directory) / SNAPSHOT_FILENAME
        try:
            size = dump.stat().st_size
            digest = _sha256(dump)
        except OSError as exc:
            raise SnapshotCorruptError(f"Snapshot file {dump} is unreadable: {exc}") from exc
        snapshot = Snapshot(
            id=snapshot_id,
            instance=instance,
            created_at=datetime.now(tz=UTC).isoformat(timespec="seconds"),
            directory=Path(directory),
            size_bytes=size,
            sha256=digest,
            message=message,
        )
        entries = self._load()
        if any(entry.id == snapshot_id for entry in entries):
            raise SnapshotIndexError(f"Snapshot '{snapshot_id}' is already indexed.")
        entries.append(snapshot)
        self._store(entries)
        return snapshot

    def snapshots(self, instance: str | None = None) -> list[Snapshot]:
        """Return indexed snapshots, oldest first, optionally for one *instance*."""
        entries = self._load()
        if instance is None:
            return entries
        return [entry for entry in entries if entry.instance == instance]

    def get(self, snapshot_id: str) -> Snapshot | None:
        wanted = snapshot_id.strip()
        if not wanted:
            return None
        return next((entry for entry in self._load() if entry.id == wanted), None)

    def verify(self, snapshot: Snapshot) -> Path:
        """Return the dump path of *snapshot* once its size and digest check out."""
        dump = snapshot.file
        try:
            size = dump.stat().st_size
        except FileNotFoundError:
            raise SnapshotCorruptError(f"Snapshot '{snapshot.id}' is missing {dump}.") from None
        if size != snapshot.size_bytes:
            raise SnapshotCorruptError(
                f"Snapshot '{snapshot.id}' is {size} bytes, expected {snapshot.size_bytes}."
            )
        if _sha256(dump) != snapshot.sha256:
            raise SnapshotCorruptError(f"Snapshot '{snapshot.id}' failed its checksum.")
        return dump

    # ------------------------------------------------------------------
    def _load(self) -> list[Snapshot]:
        try:
            raw = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as exc:
            raise SnapshotIndexError(f"Cannot read snapshot index {self.index}: {exc}") from exc
        items = raw.get("snapshots") if isinstance(raw, Mapping) else None
        if not isinstance(items, list):
            raise SnapshotIndexError(f"Snapshot index {self.index} has no 'snapshots' list.")
        return [Snapshot.from_mapping(item) for item in items if isinstance(item, Mapping)]

    def _store(self, entries: list[Snapshot]) -> None:
        payload = {"version": INDEX_VERSION, "snapshots": [entry.to_dict() for entry in entries]}
        try:
            self.index.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.index.parent, prefix=".snapshots-")
        except OSError as exc:
            raise SnapshotIndexError(f"Cannot write snapshot index {self.index}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.index)
        except OSError as exc:
            raise SnapshotIndexError(f"Cannot write snapshot index {self.index}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "BackupError",
    "Snapshot",
    "SnapshotCatalog",
    "SnapshotCorruptError",
    "SnapshotIndexError",
]
