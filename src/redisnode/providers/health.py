"""Liveness probing for provisioned instances."""
from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from ..models import InstanceRecord
from .redis_admin import RedisAdmin, RedisCommandError

LOGGER = logging.getLogger(__name__)

OK = "ok"
FAIL = "fail"


@dataclass(frozen=True)
class InstanceStatus:
    """Represents the probed status of one instance."""

    state: str
    detail: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the probe succeeded."""
        return self.state == OK


@dataclass(slots=True)
class HealthProbe:
    """Echo each instance over its protocol within the client timeout."""

    admin: RedisAdmin
    max_concurrency: int = 8

    def status(self, record: InstanceRecord) -> InstanceStatus:
        """Return ``ok`` when ECHO round-trips before the timeout, else ``fail``."""
        try:
            self.admin.echo(record.port, record.password, "")
        except RedisCommandError as exc:
            return InstanceStatus(state=FAIL, detail=str(exc))
        return InstanceStatus(state=OK)

    def probe_all(self, records: Sequence[InstanceRecord]) -> dict[str, InstanceStatus]:
        """Probe *records* with bounded concurrency, keyed by instance name."""
        if not records:
            return {}
        workers = max(1, min(self.max_concurrency, len(records)))
        results: dict[str, InstanceStatus] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_name = {
                executor.submit(self.status, record): record.name for record in records
            }
            for future in concurrent.futures.as_completed(future_to_name):
                name = future_to_name[future]
                try:
                    results[name] = future.result()
                except Exception as exc:  # pragma: no cover - status() traps its own errors
                    LOGGER.warning("Health probe for %s raised: %s", name, exc)
                    results[name] = InstanceStatus(state=FAIL, detail=str(exc))
        return results


__all__ = ["FAIL", "OK", "HealthProbe", "InstanceStatus"]
