"""Configuration loader for redisnode.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/redisnode/config.yml`` (or an override path).
3. Environment variables prefixed with ``REDISNODE_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export REDISNODE_PORTS__START=6000
    export REDISNODE_REDIS__TIMEOUT=5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "REDISNODE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Inclusive port range handed out to instances."""

    start: int = 5000
    end: int = 5999

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class RedisConfig:
    """Settings for the managed ``redis-server`` processes."""

    server_path: str = "redis-server"
    max_memory: int = 32
    max_swap: int = 128
    max_clients: int = 500
    command_rename_prefix: str = "redisnode"
    timeout: float = 2.0
    legacy_vm: bool = False

    @property
    def config_command(self) -> str:
        """Return the renamed ``CONFIG`` command."""
        return f"{self.command_rename_prefix}-config"

    @property
    def shutdown_command(self) -> str:
        """Return the renamed ``SHUTDOWN`` command."""
        return f"{self.command_rename_prefix}-shutdown"

    @property
    def save_command(self) -> str:
        """Return the renamed ``SAVE`` command."""
        return f"{self.command_rename_prefix}-save"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "server_path": self.server_path,
            "max_memory": self.max_memory,
            "max_swap": self.max_swap,
            "max_clients": self.max_clients,
            "command_rename_prefix": self.command_rename_prefix,
            "timeout": self.timeout,
            "legacy_vm": self.legacy_vm,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Snapshot storage defaults."""

    root: Path
    index: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for redisnode."""

    config_file: Path
    base_dir: Path
    redis_log_dir: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    plan: str
    local_ip: str
    capacity: int
    settle_delay: float
    startup_timeout: float
    restore_delay: float
    probe_concurrency: int
    ports: PortsConfig
    redis: RedisConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "base_dir": str(self.base_dir),
            "redis_log_dir": str(self.redis_log_dir),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "plan": self.plan,
            "local_ip": self.local_ip,
            "capacity": self.capacity,
            "settle_delay": self.settle_delay,
            "startup_timeout": self.startup_timeout,
            "restore_delay": self.restore_delay,
            "probe_concurrency": self.probe_concurrency,
            "ports": self.ports.to_dict(),
            "redis": self.redis.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/redisnode/config.yml",
    "base_dir": "/var/vcap/store/redis",
    "redis_log_dir": "/var/log/redisnode/instances",
    "state_dir": "/var/lib/redisnode",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/redisnode",
    "runtime_dir": "/run/redisnode",
    "templates_dir": "/etc/redisnode/templates",
    "lock_timeout": 30.0,
    "plan": "free",
    "local_ip": "127.0.0.1",
    "capacity": 200,
    "settle_delay": 1.0,
    "startup_timeout": 5.0,
    "restore_delay": 1.0,
    "probe_concurrency": 8,
    "ports": {
        "start": 5000,
        "end": 5999,
    },
    "redis": {
        "server_path": "redis-server",
        "max_memory": 32,
        "max_swap": 128,
        "max_clients": 500,
        "command_rename_prefix": "redisnode",
        "timeout": 2.0,
        "legacy_vm": False,
    },
    "backups": {
        "root": "/var/lib/redisnode/backups",
        "index": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PORT_KEYS = {"start", "end"}
ALLOWED_REDIS_KEYS = {
    "server_path",
    "max_memory",
    "max_swap",
    "max_clients",
    "command_rename_prefix",
    "timeout",
    "legacy_vm",
}
ALLOWED_BACKUP_KEYS = {"root", "index"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for label, allowed in (
        ("ports", ALLOWED_PORT_KEYS),
        ("redis", ALLOWED_REDIS_KEYS),
        ("backups", ALLOWED_BACKUP_KEYS),
    ):
        section = raw.get(label)
        if section is None:
            continue
        section_map = _as_dict(section, label)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {label} configuration keys: {joined}.")

    plan = raw.get("plan")
    if plan is None or not str(plan).strip():
        raise ConfigError("plan must be a non-empty value.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    base_dir = _to_path(raw.get("base_dir"))
    redis_log_dir = _to_path(raw.get("redis_log_dir"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    capacity = _expect_int(raw.get("capacity"), "capacity", default=200)
    if capacity < 0:
        raise ConfigError("capacity must be zero or greater.")

    probe_concurrency = _expect_int(raw.get("probe_concurrency"), "probe_concurrency", default=8)
    if probe_concurrency < 1:
        raise ConfigError("probe_concurrency must be at least 1.")

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        start=_expect_int(ports_mapping.get("start"), "ports.start", default=5000),
        end=_expect_int(ports_mapping.get("end"), "ports.end", default=5999),
    )
    if ports.start < 1 or ports.end > 65535 or ports.start > ports.end:
        raise ConfigError(
            f"Invalid port range {ports.start}-{ports.end}; expected 1 <= start <= end <= 65535."
        )

    redis_mapping = _as_dict(raw.get("redis"), "redis")
    prefix = str(redis_mapping.get("command_rename_prefix", "redisnode")).strip()
    if not prefix:
        raise ConfigError("redis.command_rename_prefix must be a non-empty string.")
    redis = RedisConfig(
        server_path=str(redis_mapping.get("server_path", "redis-server")),
        max_memory=_expect_int(redis_mapping.get("max_memory"), "redis.max_memory", default=32),
        max_swap=_expect_int(redis_mapping.get("max_swap"), "redis.max_swap", default=128),
        max_clients=_expect_int(
            redis_mapping.get("max_clients"), "redis.max_clients", default=500
        ),
        command_rename_prefix=prefix,
        timeout=_expect_positive_float(redis_mapping.get("timeout"), "redis.timeout", default=2.0),
        legacy_vm=_expect_bool(redis_mapping.get("legacy_vm"), "redis.legacy_vm", default=False),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root", "/var/lib/redisnode/backups"))
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
    )

    return AppConfig(
        config_file=config_file,
        base_dir=base_dir,
        redis_log_dir=redis_log_dir,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        plan=str(raw.get("plan")).strip(),
        local_ip=str(raw.get("local_ip", "127.0.0.1")),
        capacity=capacity,
        settle_delay=_expect_non_negative_float(
            raw.get("settle_delay"), "settle_delay", default=1.0
        ),
        startup_timeout=_expect_positive_float(
            raw.get("startup_timeout"), "startup_timeout", default=5.0
        ),
        restore_delay=_expect_non_negative_float(
            raw.get("restore_delay"), "restore_delay", default=1.0
        ),
        probe_concurrency=probe_concurrency,
        ports=ports,
        redis=redis,
        backups=BackupConfig(root=backups_root, index=backups_index),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "PortsConfig",
    "RedisConfig",
    "load_config",
]
