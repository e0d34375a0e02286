"""Single-node Redis lifecycle orchestration.

:class:`Node` composes the port pool, capacity tracker, instance store,
process supervisor, and protocol client into the operations a provisioning
gateway drives: provision/unprovision, bind/unbind, restore, the migration
protocol (disable, dump, import, enable), startup reconciliation, and the
health/usage reports.

User-facing operations raise the first hard failure after best-effort
rollback. Unattended operations (``enable_instance``, ``import_instance``,
startup reconciliation, reports) log failures and return a neutral result.
"""
from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .capacity import CapacityTracker
from .config import AppConfig
from .errors import (
    CapacityExhaustedError,
    CleanupFailedError,
    DeleteInstanceFailedError,
    InstanceExistsError,
    InstanceNotFoundError,
    PlanInvalidError,
    RestoreFileNotFoundError,
    SaveInstanceFailedError,
    StartInstanceFailedError,
)
from .locking import LockManager
from .models import SNAPSHOT_FILENAME, InstanceRecord, credentials_port
from .ports import PortPool
from .providers.health import FAIL, OK, HealthProbe
from .providers.redis_admin import RedisAdmin
from .providers.supervisor import ProcessSupervisor
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

Credentials = dict[str, Any]


class Node:
    """Manage the Redis instances hosted on this machine."""

    def __init__(
        self,
        *,
        plan: str,
        local_ip: str,
        store: StateRegistry,
        ports: PortPool,
        capacity: CapacityTracker,
        supervisor: ProcessSupervisor,
        admin: RedisAdmin,
        health: HealthProbe,
        locks: LockManager,
        max_memory: int,
        disable_password: str,
        settle_delay: float = 1.0,
        startup_timeout: float = 5.0,
        restore_delay: float = 1.0,
    ) -> None:
        """Wire the collaborators; no instance is touched until asked."""
        self.plan = str(plan)
        self.local_ip = local_ip
        self.store = store
        self.ports = ports
        self.capacity = capacity
        self.supervisor = supervisor
        self.admin = admin
        self.health = health
        self.locks = locks
        self.max_memory = max_memory
        self.disable_password = disable_password
        self.settle_delay = settle_delay
        self.startup_timeout = startup_timeout
        self.restore_delay = restore_delay
        self._loaded = False

    # ------------------------------------------------------------------
    # Node lifecycle
    # ------------------------------------------------------------------
    def load(self) -> None:
        """Claim the ports and capacity held by persisted records (once)."""
        if self._loaded:
            return
        self._sync_resources(self.store.list_records())

    def start_provisioned_instances(self) -> None:
        """Restart every persisted instance that is not already serving."""
        try:
            self.load()
            records = self.store.list_records()
        except (StateRegistryError, ValueError, KeyError, OSError) as exc:
            LOGGER.warning("Cannot read persisted instances: %s", exc)
            return

        for record in records:
            if self.supervisor.is_listening(record):
                self._adopt_listener(record)
                continue
            try:
                with self.locks.mutate_instances([record.name]):
                    if self.store.get(record.name) is None:
                        continue
                    record.pid = self.supervisor.start(record)
                    self._save(record)
            except Exception as exc:
                LOGGER.warning("Error starting instance %s: %s", record.name, exc)
                self._rollback(record)

    def shutdown(self) -> bool:
        """Stop every persisted instance, keeping its data on disk."""
        try:
            records = self.store.list_records()
        except (StateRegistryError, ValueError, KeyError, OSError) as exc:
            LOGGER.warning("Cannot read persisted instances during shutdown: %s", exc)
            records = []
        for record in records:
            try:
                self.supervisor.stop(record, cleanup=False)
            except Exception as exc:
                LOGGER.warning("Error stopping instance %s: %s", record.name, exc)
        self.supervisor.close()
        return True

    def announcement(self) -> dict[str, int]:
        """Return the payload advertised to provisioners."""
        return {"available_capacity": self.capacity.available}

    def all_instances_list(self) -> list[str]:
        """Return the names of every persisted instance."""
        return [record.name for record in self.store.list_records()]

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def provision(
        self,
        plan: object,
        credentials: Mapping[str, Any] | None = None,
        data_file: Path | None = None,
    ) -> Credentials:
        """Create and start an instance, returning its connection credentials.

        Name, port, and password come from *credentials* when supplied (the
        migration import path); otherwise they are generated. *data_file* is
        copied into the new instance before its server starts.
        """
        if str(plan) != self.plan:
            raise PlanInvalidError(plan)

        preferred: int | None = None
        if credentials:
            name = str(credentials["name"])
            password = str(credentials["password"])
            preferred = credentials_port(credentials)
        else:
            name = str(uuid.uuid4())
            password = str(uuid.uuid4())

        with self.locks.mutate_instances([name]):
            self._sync_resources(self.store.list_records())
            if self.store.get(name) is not None:
                raise InstanceExistsError(name)
            if not self.capacity.reserve():
                raise CapacityExhaustedError("No capacity left on this node.")
            try:
                port = self.ports.allocate(preferred)
            except StartInstanceFailedError:
                self.capacity.release()
                raise

            record = InstanceRecord(name=name, port=port, password=password, plan=self.plan)
            try:
                record.memory = self.memory_for_instance(record)
                record.pid = self.supervisor.start(record, data_file)
                self._await_ready(record)
                self._save(record, create=True)
            except Exception:
                self._rollback(record)
                raise

        LOGGER.info("Provisioned instance %s on port %s", record.name, record.port)
        return self.gen_credentials(record)

    def unprovision(self, name: str, credentials_list: object = None) -> dict[str, Any]:
        """Stop and delete the instance named *name*."""
        with self.locks.mutate_instances([name]):
            record = self._get_instance(name)
            self.cleanup_instance(record)
        LOGGER.info("Unprovisioned instance %s", name)
        return {}

    def bind(
        self,
        name: str | None = None,
        binding_options: object = None,
        credentials: Mapping[str, Any] | None = None,
    ) -> Credentials:
        """Return the instance credentials; Redis has no per-binding users."""
        target = str(credentials["name"]) if credentials else name
        if not target:
            raise InstanceNotFoundError(str(target))
        with self.locks.instance_lock(target):
            return self.gen_credentials(self._get_instance(target))

    def unbind(self, credentials: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Nothing to revoke without per-binding users."""
        return {}

    def restore(self, name: str, backup_dir: Path | str) -> dict[str, Any]:
        """Restart *name* from ``dump.rdb`` in *backup_dir*, or flush it if empty."""
        dump_file = Path(backup_dir) / SNAPSHOT_FILENAME
        with self.locks.mutate_instances([name]):
            record = self._get_instance(name)
            if not dump_file.exists():
                raise RestoreFileNotFoundError(dump_file)
            if dump_file.stat().st_size > 0:
                if self.supervisor.is_listening(record):
                    self.supervisor.stop(record, cleanup=False)
                time.sleep(self.restore_delay)
                record.pid = self.supervisor.start(record, dump_file)
                self._save(record)
                self._await_ready(record)
            else:
                self.admin.flushall(record.port, record.password)
        return {}

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------
    def disable_instance(
        self,
        service_credentials: Mapping[str, Any],
        binding_credentials_list: object = None,
    ) -> bool:
        """Lock clients out by switching the instance to the quarantine secret."""
        name = str(service_credentials["name"])
        with self.locks.instance_lock(name):
            self.admin.set_config(
                self._credentials_port(service_credentials),
                str(service_credentials["password"]),
                "requirepass",
                self.disable_password,
            )
        LOGGER.info("Disabled instance %s", name)
        return True

    def dump_instance(
        self,
        service_credentials: Mapping[str, Any],
        binding_credentials_list: object,
        dump_dir: Path | str,
    ) -> Path:
        """Persist the instance's data and copy it to ``dump_dir/dump.rdb``."""
        name = str(service_credentials["name"])
        target_dir = Path(dump_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / SNAPSHOT_FILENAME
        with self.locks.instance_lock(name):
            self.admin.save(self._credentials_port(service_credentials), self.disable_password)
            shutil.copy2(self.supervisor.data_file(name), target)
        LOGGER.info("Dumped instance %s to %s", name, target)
        return target

    def snapshot(self, name: str, dest_dir: Path | str) -> Path:
        """Persist a live instance with its own password and copy the snapshot out."""
        target_dir = Path(dest_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / SNAPSHOT_FILENAME
        with self.locks.instance_lock(name):
            record = self._get_instance(name)
            self.admin.save(record.port, record.password)
            shutil.copy2(self.supervisor.data_file(name), target)
        return target

    def import_instance(
        self,
        service_credentials: Mapping[str, Any],
        binding_credentials_map: Mapping[str, Any] | None,
        dump_dir: Path | str,
        plan: object,
    ) -> Credentials | None:
        """Provision from a dump keeping the original credentials; ``None`` on failure."""
        data_file = Path(dump_dir) / SNAPSHOT_FILENAME
        try:
            return self.provision(plan, service_credentials, data_file)
        except Exception as exc:
            LOGGER.warning("Import of instance %s failed: %s", service_credentials.get("name"), exc)
            return None

    def enable_instance(
        self,
        service_credentials: Mapping[str, Any],
        binding_credentials_map: Mapping[str, Any] | None = None,
    ) -> tuple[Credentials, dict[str, Any]] | None:
        """Re-activate an instance after migration; ``None`` when that fails.

        If the original password still authenticates, the instance was
        rebuilt by ``import_instance`` and only the credential payloads are
        regenerated. Otherwise it is still quarantined on this node and the
        original password is put back.
        """
        bindings: dict[str, Any] = dict(binding_credentials_map or {})
        try:
            name = str(service_credentials["name"])
            with self.locks.instance_lock(name):
                record = self._get_instance(name)
                if self.admin.check_password(record.port, record.password):
                    refreshed = self.gen_credentials(record)
                    for key, value in list(bindings.items()):
                        entry = dict(value) if isinstance(value, Mapping) else {}
                        entry["credentials"] = self.gen_credentials(record)
                        bindings[key] = entry
                    return refreshed, bindings
                self.admin.set_config(
                    self._credentials_port(service_credentials),
                    self.disable_password,
                    "requirepass",
                    str(service_credentials["password"]),
                )
                return dict(service_credentials), bindings
        except Exception as exc:
            LOGGER.warning("Enable of instance %s failed: %s", service_credentials.get("name"), exc)
            return None

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def health_report(self) -> dict[str, str]:
        """Return ``ok``/``fail`` per instance plus the node's own marker."""
        try:
            records = self.store.list_records()
            statuses = self.health.probe_all(records)
            report = {"self": OK}
            for record in records:
                status = statuses.get(record.name)
                report[record.name] = status.state if status is not None else FAIL
            return report
        except Exception as exc:
            LOGGER.warning("Error while getting health details: %s", exc)
            return {"self": FAIL}

    def usage_report(self) -> dict[str, Any]:
        """Return capacity figures and per-instance usage; ``{}`` on failure."""
        try:
            instances = [self._instance_usage(record) for record in self.store.list_records()]
            return {
                "max_capacity": self.capacity.max_capacity,
                "available_capacity": self.capacity.available,
                "provisioned_instances": instances,
                "provisioned_instances_num": len(instances),
            }
        except Exception as exc:
            LOGGER.warning("Error while getting usage details: %s", exc)
            return {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def gen_credentials(self, record: InstanceRecord) -> Credentials:
        """Return the credentials payload for *record*."""
        return {
            "hostname": self.local_ip,
            "host": self.local_ip,
            "port": record.port,
            "password": record.password,
            "name": record.name,
        }

    def memory_for_instance(self, record: InstanceRecord) -> int:
        """Return the memory quota (MB) assigned to a new instance."""
        return self.max_memory

    def cleanup_instance(self, record: InstanceRecord) -> None:
        """Tear *record* down, raising :class:`CleanupFailedError` on any failure.

        The port is always released. Capacity comes back only once the record
        is gone from the store, so a record that could not be deleted keeps
        its slot.
        """
        errors: list[str] = []
        try:
            self.supervisor.stop(record)
        except Exception as exc:
            errors.append(f"stop: {exc}")

        with self.locks.global_lock():
            self.ports.release(record.port)

            removed = True
            try:
                if self.store.get(record.name) is not None:
                    self._delete(record.name)
            except (DeleteInstanceFailedError, StateRegistryError, ValueError, OSError) as exc:
                errors.append(f"delete: {exc}")
                removed = False
            if removed:
                self.capacity.release()

        if errors:
            raise CleanupFailedError(record.name, errors)

    def _sync_resources(self, records: list[InstanceRecord]) -> None:
        """Rebuild port and capacity bookkeeping from persisted *records*.

        Runs under the global lock before any reservation.
        """
        self._loaded = True
        ports = [record.port for record in records]
        for port in self.ports.reset(ports):
            LOGGER.warning("Persisted port %s lies outside the pool", port)
        shared = sorted({port for port in ports if ports.count(port) > 1})
        if shared:
            LOGGER.warning("Ports recorded for more than one instance: %s", shared)
        remaining = self.capacity.reset(len(records))
        if remaining < 0:
            LOGGER.warning("Persisted instances exceed configured capacity by %s", -remaining)

    def _adopt_listener(self, record: InstanceRecord) -> None:
        """Record the pid actually serving *record*'s port when the stored one is stale."""
        if self.supervisor.is_running(record):
            LOGGER.info("Instance %s already running on port %s", record.name, record.port)
            return
        owner = self.supervisor.listener_pid(record.port)
        LOGGER.warning(
            "Instance %s is listening on port %s but recorded pid %s is stale; adopting pid %s",
            record.name,
            record.port,
            record.pid,
            owner,
        )
        try:
            with self.locks.mutate_instances([record.name]):
                if self.store.get(record.name) is None:
                    return
                record.pid = owner
                self._save(record)
        except Exception as exc:
            LOGGER.warning("Cannot record pid of instance %s: %s", record.name, exc)

    def _rollback(self, record: InstanceRecord) -> None:
        try:
            self.cleanup_instance(record)
        except CleanupFailedError as exc:
            LOGGER.warning("Rollback of instance %s incomplete: %s", record.name, exc)

    def _await_ready(self, record: InstanceRecord) -> None:
        if self.settle_delay:
            time.sleep(self.settle_delay)
        if not self.supervisor.wait_until_listening(record, self.startup_timeout):
            raise StartInstanceFailedError(
                f"Instance '{record.name}' did not accept connections on port "
                f"{record.port} within {self.startup_timeout}s."
            )

    def _instance_usage(self, record: InstanceRecord) -> dict[str, Any]:
        info = self.admin.info(record.port, record.password)
        max_memory_bytes = float(record.memory) * 1024.0 * 1024.0
        used_memory_bytes = _number(info.get("used_memory"))
        bgsave = info.get("bgsave_in_progress", info.get("rdb_bgsave_in_progress", 0))
        last_save = info.get("last_save_time", info.get("rdb_last_save_time", 0))
        return {
            "name": record.name,
            "port": record.port,
            "plan": self.plan,
            "usage": {
                "max_memory": float(record.memory) * 1024.0,
                "used_memory": used_memory_bytes / (1024.0 * 1024.0),
                "used_memory_ratio": (
                    used_memory_bytes / max_memory_bytes if max_memory_bytes else 0.0
                ),
                "max_virtual_memory": _number(info.get("vm_conf_max_memory")) / 1024.0,
                "used_virtual_memory": (
                    _number(info.get("vm_stats_used_pages"))
                    * _number(info.get("vm_conf_page_size"))
                    / (1024.0 * 1024.0)
                ),
                "connected_clients_num": int(_number(info.get("connected_clients"))),
                "last_save_time": int(_number(last_save)),
                "bgsave_in_progress": str(bgsave) not in ("0", "False", "false", ""),
            },
        }

    def _get_instance(self, name: str) -> InstanceRecord:
        record = self.store.get(name)
        if record is None:
            raise InstanceNotFoundError(name)
        return record

    def _save(self, record: InstanceRecord, *, create: bool = False) -> None:
        try:
            with self.locks.global_lock():
                self.store.put(record, create=create)
        except (StateRegistryError, OSError) as exc:
            raise SaveInstanceFailedError(
                f"Failed to save instance '{record.name}': {exc}"
            ) from exc

    def _delete(self, name: str) -> None:
        try:
            with self.locks.global_lock():
                self.store.delete(name)
        except (StateRegistryError, OSError) as exc:
            raise DeleteInstanceFailedError(f"Failed to delete instance '{name}': {exc}") from exc

    def _credentials_port(self, credentials: Mapping[str, Any]) -> int:
        port = credentials_port(credentials)
        if port is None:
            raise InstanceNotFoundError(str(credentials.get("name")))
        return port


def _number(value: object) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def build_node(
    config: AppConfig,
    *,
    registry: StateRegistry | None = None,
    locks: LockManager | None = None,
) -> Node:
    """Assemble a :class:`Node` and its collaborators from *config*."""
    store = registry or StateRegistry(config.registry_dir)
    store.ensure_root()
    disable_password = store.node_secret()
    redis_config = config.redis
    admin = RedisAdmin(
        config_command=redis_config.config_command,
        shutdown_command=redis_config.shutdown_command,
        save_command=redis_config.save_command,
        timeout=redis_config.timeout,
    )
    supervisor = ProcessSupervisor(
        templates=TemplateEngine.with_overrides(config.templates_dir),
        admin=admin,
        base_dir=config.base_dir,
        log_dir=config.redis_log_dir,
        server_path=redis_config.server_path,
        max_swap=redis_config.max_swap,
        max_clients=redis_config.max_clients,
        legacy_vm=redis_config.legacy_vm,
        disable_password=disable_password,
        probe_timeout=redis_config.timeout,
    )
    config.base_dir.mkdir(parents=True, exist_ok=True)
    return Node(
        plan=config.plan,
        local_ip=config.local_ip,
        store=store,
        ports=PortPool(config.ports.start, config.ports.end),
        capacity=CapacityTracker(config.capacity),
        supervisor=supervisor,
        admin=admin,
        health=HealthProbe(admin=admin, max_concurrency=config.probe_concurrency),
        locks=locks or LockManager(config.runtime_dir / "locks", config.lock_timeout),
        max_memory=redis_config.max_memory,
        disable_password=disable_password,
        settle_delay=config.settle_delay,
        startup_timeout=config.startup_timeout,
        restore_delay=config.restore_delay,
    )


__all__ = ["Credentials", "Node", "build_node"]
