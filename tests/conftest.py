"""Pytest configuration helpers and in-memory fakes for node tests."""

from __future__ import annotations

import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from redisnode.capacity import CapacityTracker
from redisnode.errors import StartInstanceFailedError
from redisnode.locking import LockManager
from redisnode.models import SNAPSHOT_FILENAME, InstanceRecord
from redisnode.node import Node
from redisnode.ports import PortPool
from redisnode.providers import HealthProbe, RedisCommandError
from redisnode.state import StateRegistry


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeRedisAdmin:
    """Simulate the authenticated admin commands of the servers on one host."""

    config_command: str = "redisnode-config"
    shutdown_command: str = "redisnode-shutdown"
    save_command: str = "redisnode-save"
    passwords: dict[int, str] = field(default_factory=dict)
    snapshot_paths: dict[int, Path] = field(default_factory=dict)
    info_by_port: dict[int, dict[str, Any]] = field(default_factory=dict)
    flushed: list[int] = field(default_factory=list)
    calls: list[tuple[str, int]] = field(default_factory=list)
    fail_flush: bool = False

    def _auth(self, port: int, password: str | None) -> None:
        if port not in self.passwords:
            raise RedisCommandError(f"Connection refused on port {port}")
        if self.passwords[port] != password:
            raise RedisCommandError("WRONGPASS invalid username-password pair")

    def echo(self, port: int, password: str | None, message: str = "") -> str:
        self.calls.append(("echo", port))
        self._auth(port, password)
        return message

    def check_password(self, port: int, password: str | None) -> bool:
        self.calls.append(("check_password", port))
        if port not in self.passwords:
            raise RedisCommandError(f"Connection refused on port {port}")
        return self.passwords[port] == password

    def set_config(self, port: int, password: str | None, key: str, value: str) -> None:
        self.calls.append(("set_config", port))
        self._auth(port, password)
        if key == "requirepass":
            self.passwords[port] = value

    def save(self, port: int, password: str | None) -> None:
        self.calls.append(("save", port))
        self._auth(port, password)
        target = self.snapshot_paths[port]
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(f"REDIS0009-port-{port}".encode())

    def shutdown(self, port: int, password: str | None) -> None:
        self.calls.append(("shutdown", port))
        self._auth(port, password)
        self.passwords.pop(port, None)

    def flushall(self, port: int, password: str | None) -> None:
        self.calls.append(("flushall", port))
        if self.fail_flush:
            raise RedisCommandError("Timeout reading from socket")
        self._auth(port, password)
        self.flushed.append(port)

    def info(self, port: int, password: str | None) -> dict[str, Any]:
        self.calls.append(("info", port))
        self._auth(port, password)
        return dict(self.info_by_port.get(port, {"used_memory": 1048576, "connected_clients": 1}))


@dataclass
class FakeSupervisor:
    """Track "running" instances in memory and mirror them into the fake admin."""

    admin: FakeRedisAdmin
    base_dir: Path
    fail_start: bool = False
    never_listen: bool = False
    started: list[tuple[str, Path | None]] = field(default_factory=list)
    stopped: list[tuple[str, bool]] = field(default_factory=list)
    closed: bool = False
    owners: dict[int, int] = field(default_factory=dict)
    _next_pid: int = 40000
    _running: dict[str, int] = field(default_factory=dict)

    def data_file(self, name: str) -> Path:
        return self.base_dir / name / "data" / SNAPSHOT_FILENAME

    def start(self, record: InstanceRecord, data_file: Path | None = None) -> int:
        if self.fail_start:
            raise StartInstanceFailedError(f"Failed to start instance '{record.name}': boom")
        target = self.data_file(record.name)
        target.parent.mkdir(parents=True, exist_ok=True)
        if data_file is not None:
            shutil.copy2(data_file, target)
        self._next_pid += 1
        self.started.append((record.name, data_file))
        if not self.never_listen:
            self._running[record.name] = self._next_pid
            self.owners[record.port] = self._next_pid
            self.admin.passwords[record.port] = record.password
            self.admin.snapshot_paths[record.port] = target
        return self._next_pid

    def stop(self, record: InstanceRecord, *, cleanup: bool = True) -> None:
        self.stopped.append((record.name, cleanup))
        self._running.pop(record.name, None)
        self.owners.pop(record.port, None)
        self.admin.passwords.pop(record.port, None)
        if cleanup:
            shutil.rmtree(self.base_dir / record.name, ignore_errors=True)

    def is_listening(self, record: InstanceRecord) -> bool:
        return record.name in self._running

    def is_running(self, record: InstanceRecord) -> bool:
        return self._running.get(record.name) == record.pid

    def listener_pid(self, port: int) -> int | None:
        return self.owners.get(port)

    def wait_until_listening(self, record: InstanceRecord, timeout: float) -> bool:
        return self.is_listening(record)

    def close(self) -> None:
        self.closed = True


@dataclass
class NodeHarness:
    """Bundle a node with the fakes driving it."""

    node: Node
    admin: FakeRedisAdmin
    supervisor: FakeSupervisor
    store: StateRegistry


NodeFactory = Callable[..., NodeHarness]


@pytest.fixture
def make_node(tmp_path: Path) -> NodeFactory:
    """Return a factory building isolated nodes under *tmp_path*."""

    def factory(
        label: str = "node",
        *,
        ports: tuple[int, int] = (6000, 6009),
        capacity: int = 10,
        plan: str = "free",
        local_ip: str = "10.0.0.1",
        store: StateRegistry | None = None,
        lock_dir: Path | None = None,
    ) -> NodeHarness:
        root = tmp_path / label
        admin = FakeRedisAdmin()
        supervisor = FakeSupervisor(admin=admin, base_dir=root / "store")
        registry = store or StateRegistry(root / "registry")
        node = Node(
            plan=plan,
            local_ip=local_ip,
            store=registry,
            ports=PortPool(*ports),
            capacity=CapacityTracker(capacity),
            supervisor=supervisor,  # type: ignore[arg-type]
            admin=admin,  # type: ignore[arg-type]
            health=HealthProbe(admin=admin, max_concurrency=4),  # type: ignore[arg-type]
            locks=LockManager(lock_dir or root / "locks", default_timeout=5.0),
            max_memory=32,
            disable_password=f"disable-{label}",
            settle_delay=0,
            startup_timeout=0.1,
            restore_delay=0,
        )
        return NodeHarness(node=node, admin=admin, supervisor=supervisor, store=registry)

    return factory


@pytest.fixture
def harness(make_node: NodeFactory) -> NodeHarness:
    """Return a default node with ten ports and ten capacity slots."""
    return make_node()
