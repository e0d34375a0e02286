"""Provider interfaces for redisnode."""
from __future__ import annotations

from .health import HealthProbe, InstanceStatus
from .redis_admin import RedisAdmin, RedisCommandError
from .supervisor import ProcessSupervisor

__all__ = [
    "HealthProbe",
    "InstanceStatus",
    "ProcessSupervisor",
    "RedisAdmin",
    "RedisCommandError",
]
