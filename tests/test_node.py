"""Behavioural tests for the node orchestrator."""
from __future__ import annotations

import logging
import threading
from pathlib import Path

import pytest

from redisnode.errors import (
    CapacityExhaustedError,
    CleanupFailedError,
    InstanceExistsError,
    InstanceNotFoundError,
    PlanInvalidError,
    PortsExhaustedError,
    RestoreFileNotFoundError,
    SaveInstanceFailedError,
    StartInstanceFailedError,
)
from redisnode.models import InstanceRecord
from redisnode.providers import RedisCommandError
from redisnode.state import StateRegistry, StateRegistryError

from conftest import NodeFactory, NodeHarness


def _snapshot(harness: NodeHarness) -> tuple[int, list[int], list[str]]:
    node = harness.node
    return node.capacity.available, node.ports.free_ports(), node.all_instances_list()


# ----------------------------------------------------------------------
# Provisioning
# ----------------------------------------------------------------------
def test_provision_returns_credentials_and_persists(harness: NodeHarness) -> None:
    """Provision starts a server, stores the record, and returns credentials."""
    node = harness.node

    credentials = node.provision("free")

    assert set(credentials) == {"hostname", "host", "port", "password", "name"}
    assert credentials["hostname"] == credentials["host"] == "10.0.0.1"
    assert 6000 <= credentials["port"] <= 6009
    record = harness.store.get(credentials["name"])
    assert record is not None
    assert record.port == credentials["port"]
    assert record.password == credentials["password"]
    assert record.memory == 32
    assert record.pid is not None
    assert node.capacity.available == 9
    assert credentials["port"] not in node.ports.free_ports()


def test_provision_rejects_unknown_plan(harness: NodeHarness) -> None:
    """A foreign plan is rejected before any resource is touched."""
    before = _snapshot(harness)

    with pytest.raises(PlanInvalidError):
        harness.node.provision("paid")

    assert _snapshot(harness) == before
    assert harness.supervisor.started == []


def test_provision_accepts_plan_in_any_scalar_form(make_node: NodeFactory) -> None:
    """Plans compare by their string form."""
    harness = make_node(plan="100")

    credentials = harness.node.provision(100)

    assert harness.store.get(credentials["name"]) is not None


def test_provisioned_ports_are_unique(harness: NodeHarness) -> None:
    """No two live instances ever share a port."""
    node = harness.node
    ports = [node.provision("free")["port"] for _ in range(5)]
    names = node.all_instances_list()
    node.unprovision(names[0])
    node.unprovision(names[2])
    ports.extend(node.provision("free")["port"] for _ in range(3))

    live = [record.port for record in harness.store.list_records()]
    assert len(live) == len(set(live)) == 6


def test_concurrent_provisions_never_share_ports(harness: NodeHarness) -> None:
    """Parallel provisions draw distinct ports and consume exact capacity."""
    node = harness.node
    results: list[dict[str, object]] = []
    errors: list[Exception] = []
    guard = threading.Lock()

    def worker() -> None:
        try:
            credentials = node.provision("free")
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            with guard:
                errors.append(exc)
            return
        with guard:
            results.append(credentials)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    ports = [entry["port"] for entry in results]
    assert len(set(ports)) == 6
    assert node.capacity.available == 4


def test_nodes_sharing_a_store_never_reuse_a_port(make_node: NodeFactory) -> None:
    """A node re-reads the store before reserving, so a second process sees the first."""
    left = make_node("left", capacity=2)
    right = make_node("right", capacity=2, store=left.store)
    left.node.load()
    right.node.load()

    first = left.node.provision("free")
    second = right.node.provision("free")

    assert first["port"] != second["port"]
    assert sorted(record.port for record in left.store.list_records()) == sorted(
        [first["port"], second["port"]]
    )
    with pytest.raises(CapacityExhaustedError):
        left.node.provision("free")


def test_concurrent_nodes_over_one_store_keep_every_record(
    make_node: NodeFactory,
    tmp_path: Path,
) -> None:
    """Provisions racing from two nodes get distinct ports and no record is lost."""
    lock_dir = tmp_path / "shared-locks"
    left = make_node("left", lock_dir=lock_dir)
    right = make_node("right", store=left.store, lock_dir=lock_dir)
    nodes = [left, right]
    results: list[dict[str, object]] = []
    errors: list[Exception] = []
    guard = threading.Lock()

    def worker(harness: NodeHarness) -> None:
        for _ in range(3):
            try:
                credentials = harness.node.provision("free")
            except Exception as exc:  # pragma: no cover - surfaced by the assertion below
                with guard:
                    errors.append(exc)
                continue
            with guard:
                results.append(credentials)

    threads = [threading.Thread(target=worker, args=(harness,)) for harness in nodes]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    ports = [entry["port"] for entry in results]
    assert len(set(ports)) == 6
    stored = left.store.list_records()
    assert sorted(record.name for record in stored) == sorted(
        str(entry["name"]) for entry in results
    )


def test_two_port_pool_third_provision_fails_without_side_effects(
    make_node: NodeFactory,
) -> None:
    """With two ports and capacity two, the third provision leaves state unchanged."""
    harness = make_node(ports=(6000, 6001), capacity=2)
    node = harness.node

    first = node.provision("free")
    assert node.capacity.available == 1
    second = node.provision("free")
    assert node.capacity.available == 0
    assert {first["port"], second["port"]} == {6000, 6001}

    before = _snapshot(harness)
    with pytest.raises(StartInstanceFailedError):
        node.provision("free")
    assert _snapshot(harness) == before


def test_ports_exhausted_returns_reserved_capacity(make_node: NodeFactory) -> None:
    """Running out of ports gives the capacity slot back."""
    harness = make_node(ports=(6000, 6000), capacity=5)
    node = harness.node
    node.provision("free")

    with pytest.raises(PortsExhaustedError):
        node.provision("free")

    assert node.capacity.available == 4


def test_capacity_exhausted_does_not_take_a_port(make_node: NodeFactory) -> None:
    """Running out of capacity never touches the port pool."""
    harness = make_node(capacity=1)
    node = harness.node
    node.provision("free")
    free_before = node.ports.free_ports()

    with pytest.raises(CapacityExhaustedError):
        node.provision("free")

    assert node.ports.free_ports() == free_before
    assert node.capacity.available == 0


def test_provision_rolls_back_when_start_fails(harness: NodeHarness) -> None:
    """A failed launch releases the port and the capacity slot."""
    before = _snapshot(harness)
    harness.supervisor.fail_start = True

    with pytest.raises(StartInstanceFailedError):
        harness.node.provision("free")

    assert _snapshot(harness) == before


def test_provision_rolls_back_when_server_never_listens(harness: NodeHarness) -> None:
    """An instance that never accepts connections is torn down and not persisted."""
    before = _snapshot(harness)
    harness.supervisor.never_listen = True

    with pytest.raises(StartInstanceFailedError, match="did not accept connections"):
        harness.node.provision("free")

    assert _snapshot(harness) == before
    assert len(harness.supervisor.stopped) == 1


def test_provision_rolls_back_when_save_fails(
    harness: NodeHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A store failure stops the started process and surfaces SaveInstanceFailedError."""
    before = _snapshot(harness)

    def fail_put(self: StateRegistry, record: InstanceRecord, *, create: bool = False) -> None:
        raise StateRegistryError("disk full")

    monkeypatch.setattr(StateRegistry, "put", fail_put)

    with pytest.raises(SaveInstanceFailedError):
        harness.node.provision("free")

    assert _snapshot(harness) == before
    assert [name for name, _ in harness.supervisor.stopped] == [
        name for name, _ in harness.supervisor.started
    ]


def test_provision_with_existing_name_is_rejected(harness: NodeHarness) -> None:
    """Supplying the name of a live instance fails before any side effect."""
    node = harness.node
    credentials = node.provision("free")
    before = _snapshot(harness)

    with pytest.raises(InstanceExistsError):
        node.provision("free", credentials)

    assert _snapshot(harness) == before
    assert len(harness.supervisor.started) == 1


def test_provision_honours_preferred_port(harness: NodeHarness) -> None:
    """Imported credentials keep their port when it is free."""
    credentials = harness.node.provision(
        "free",
        {"name": "alpha", "password": "secret", "port": 6007},
    )

    assert credentials["port"] == 6007
    assert credentials["password"] == "secret"
    assert credentials["name"] == "alpha"


def test_provision_falls_back_when_preferred_port_taken(harness: NodeHarness) -> None:
    """A busy preferred port is replaced by any free one."""
    node = harness.node
    node.provision("free", {"name": "alpha", "password": "a", "port": 6003})

    credentials = node.provision("free", {"name": "beta", "password": "b", "port": 6003})

    assert credentials["port"] != 6003


# ----------------------------------------------------------------------
# Unprovision / bind
# ----------------------------------------------------------------------
def test_unprovision_twice_reports_missing_instance(harness: NodeHarness) -> None:
    """The second unprovision fails and capacity is not released twice."""
    node = harness.node
    before = _snapshot(harness)
    credentials = node.provision("free")

    assert node.unprovision(credentials["name"]) == {}
    assert _snapshot(harness) == before

    with pytest.raises(InstanceNotFoundError):
        node.unprovision(credentials["name"])
    assert _snapshot(harness) == before
    assert harness.supervisor.stopped == [(credentials["name"], True)]


def test_unprovision_after_process_exited(harness: NodeHarness) -> None:
    """An instance whose server already died is still removed and its port freed."""
    node = harness.node
    before = _snapshot(harness)
    credentials = node.provision("free")
    harness.supervisor._running.pop(credentials["name"])
    harness.supervisor.owners.pop(credentials["port"])
    harness.admin.passwords.pop(credentials["port"])

    assert node.unprovision(credentials["name"]) == {}

    assert harness.store.get(credentials["name"]) is None
    assert credentials["port"] in node.ports.free_ports()
    assert _snapshot(harness) == before


def test_unprovision_delete_failure_keeps_capacity(
    harness: NodeHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A record that cannot be deleted keeps its slot; the port is still freed."""
    node = harness.node
    credentials = node.provision("free")
    available = node.capacity.available

    def fail_delete(self: StateRegistry, name: str) -> None:
        raise StateRegistryError("read-only filesystem")

    monkeypatch.setattr(StateRegistry, "delete", fail_delete)

    with pytest.raises(CleanupFailedError) as excinfo:
        node.unprovision(credentials["name"])

    assert any("read-only" in message for message in excinfo.value.errors)
    assert node.capacity.available == available
    assert credentials["port"] in node.ports.free_ports()


def test_bind_returns_instance_credentials(harness: NodeHarness) -> None:
    """Binding hands out the instance credentials unchanged."""
    node = harness.node
    credentials = node.provision("free")

    assert node.bind(credentials["name"]) == credentials
    assert node.bind(credentials={"name": credentials["name"]}) == credentials
    assert node.unbind(credentials) == {}


def test_bind_unknown_instance(harness: NodeHarness) -> None:
    """Binding a missing instance fails."""
    with pytest.raises(InstanceNotFoundError):
        harness.node.bind("ghost")


# ----------------------------------------------------------------------
# Restore
# ----------------------------------------------------------------------
def test_restore_missing_snapshot(harness: NodeHarness, tmp_path: Path) -> None:
    """Restoring from a directory without dump.rdb fails."""
    credentials = harness.node.provision("free")

    with pytest.raises(RestoreFileNotFoundError):
        harness.node.restore(credentials["name"], tmp_path / "empty")


def test_restore_unknown_instance(harness: NodeHarness, tmp_path: Path) -> None:
    """Restoring a missing instance fails before looking at the snapshot."""
    with pytest.raises(InstanceNotFoundError):
        harness.node.restore("ghost", tmp_path)


def test_restore_empty_snapshot_flushes_without_restart(
    harness: NodeHarness,
    tmp_path: Path,
) -> None:
    """An empty dump.rdb flushes the live instance and keeps its pid."""
    node = harness.node
    credentials = node.provision("free")
    pid_before = harness.store.get(credentials["name"]).pid  # type: ignore[union-attr]
    backup_dir = tmp_path / "backup"
    backup_dir.mkdir()
    (backup_dir / "dump.rdb").write_bytes(b"")

    assert node.restore(credentials["name"], backup_dir) == {}

    assert harness.admin.flushed == [credentials["port"]]
    assert harness.supervisor.stopped == []
    assert harness.store.get(credentials["name"]).pid == pid_before  # type: ignore[union-attr]


def test_restore_flush_failure_propagates(harness: NodeHarness, tmp_path: Path) -> None:
    """A failed flush fails the whole restore."""
    credentials = harness.node.provision("free")
    backup_dir = tmp_path / "backup"
    backup_dir.mkdir()
    (backup_dir / "dump.rdb").write_bytes(b"")
    harness.admin.fail_flush = True

    with pytest.raises(RedisCommandError):
        harness.node.restore(credentials["name"], backup_dir)


def test_restore_snapshot_restarts_instance(harness: NodeHarness, tmp_path: Path) -> None:
    """A non-empty dump.rdb restarts the server from that file and stores the new pid."""
    node = harness.node
    credentials = node.provision("free")
    pid_before = harness.store.get(credentials["name"]).pid  # type: ignore[union-attr]
    backup_dir = tmp_path / "backup"
    backup_dir.mkdir()
    (backup_dir / "dump.rdb").write_bytes(b"REDIS0009-data")

    node.restore(credentials["name"], backup_dir)

    assert harness.supervisor.stopped == [(credentials["name"], False)]
    assert harness.supervisor.started[-1] == (credentials["name"], backup_dir / "dump.rdb")
    record = harness.store.get(credentials["name"])
    assert record is not None
    assert record.pid != pid_before
    restored = harness.supervisor.data_file(credentials["name"]).read_bytes()
    assert restored == b"REDIS0009-data"


def test_restore_stops_listener_with_stale_pid(harness: NodeHarness, tmp_path: Path) -> None:
    """A live server is stopped before restarting even when its recorded pid is stale."""
    node = harness.node
    credentials = node.provision("free")
    record = harness.store.get(credentials["name"])
    assert record is not None
    record.pid = 999999
    harness.store.put(record)
    backup_dir = tmp_path / "backup"
    backup_dir.mkdir()
    (backup_dir / "dump.rdb").write_bytes(b"REDIS0009-data")

    node.restore(credentials["name"], backup_dir)

    assert harness.supervisor.stopped == [(credentials["name"], False)]
    restored = harness.store.get(credentials["name"])
    assert restored is not None
    assert restored.pid == harness.supervisor.owners[credentials["port"]]


# ----------------------------------------------------------------------
# Migration
# ----------------------------------------------------------------------
def test_migration_round_trip(make_node: NodeFactory, tmp_path: Path) -> None:
    """Disable, dump, import, and enable move an instance with its credentials."""
    source = make_node("source", local_ip="10.0.0.1")
    target = make_node("target", local_ip="10.0.0.2")
    credentials = source.node.provision("free")
    port = credentials["port"]

    assert source.node.disable_instance(credentials, []) is True
    assert source.admin.passwords[port] == "disable-source"
    assert source.admin.check_password(port, credentials["password"]) is False

    dump_dir = tmp_path / "migration"
    dump_path = source.node.dump_instance(credentials, [], dump_dir)
    assert dump_path == dump_dir / "dump.rdb"
    assert dump_path.read_bytes() == f"REDIS0009-port-{port}".encode()

    imported = target.node.import_instance(credentials, {}, dump_dir, "free")
    assert imported is not None
    assert imported["name"] == credentials["name"]
    assert imported["password"] == credentials["password"]
    assert imported["port"] == port
    assert imported["host"] == "10.0.0.2"
    assert target.supervisor.started == [(credentials["name"], dump_dir / "dump.rdb")]

    bindings = {"binding-1": {"credentials": dict(credentials), "app": "web"}}
    enabled = target.node.enable_instance(credentials, bindings)
    assert enabled is not None
    service, refreshed = enabled
    assert service["host"] == "10.0.0.2"
    assert refreshed["binding-1"]["credentials"]["host"] == "10.0.0.2"
    assert refreshed["binding-1"]["app"] == "web"
    assert bindings["binding-1"]["credentials"]["host"] == "10.0.0.1"


def test_enable_on_quarantined_node_restores_password(harness: NodeHarness) -> None:
    """Enabling on the old node puts the original password back."""
    node = harness.node
    credentials = node.provision("free")
    node.disable_instance(credentials)

    result = node.enable_instance(credentials, {"b": {"credentials": {}}})

    assert result == (credentials, {"b": {"credentials": {}}})
    assert harness.admin.passwords[credentials["port"]] == credentials["password"]


def test_enable_is_idempotent(harness: NodeHarness) -> None:
    """Enabling twice yields the same credentials."""
    node = harness.node
    credentials = node.provision("free")
    node.disable_instance(credentials)

    first = node.enable_instance(credentials, {})
    second = node.enable_instance(credentials, {})

    assert first is not None and second is not None
    assert first[0] == second[0] == credentials


def test_enable_failure_returns_none(
    harness: NodeHarness,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Enable logs and returns None for an unknown instance."""
    with caplog.at_level(logging.WARNING, logger="redisnode.node"):
        result = harness.node.enable_instance({"name": "ghost", "password": "x", "port": 6001})

    assert result is None
    assert "ghost" in caplog.text


def test_import_failure_returns_none(harness: NodeHarness, tmp_path: Path) -> None:
    """Import logs and returns None when provisioning fails."""
    before = _snapshot(harness)

    result = harness.node.import_instance(
        {"name": "alpha", "password": "x", "port": 6001},
        {},
        tmp_path,
        "paid",
    )

    assert result is None
    assert _snapshot(harness) == before


def test_import_with_missing_dump_rolls_back(harness: NodeHarness, tmp_path: Path) -> None:
    """A missing dump file aborts the import and releases its resources."""
    before = _snapshot(harness)

    result = harness.node.import_instance(
        {"name": "alpha", "password": "x", "port": 6001},
        {},
        tmp_path / "missing",
        "free",
    )

    assert result is None
    assert _snapshot(harness) == before


def test_disable_with_wrong_password_raises(harness: NodeHarness) -> None:
    """Disable is user-facing and propagates protocol failures."""
    credentials = harness.node.provision("free")

    with pytest.raises(RedisCommandError):
        harness.node.disable_instance({**credentials, "password": "wrong"})


def test_snapshot_uses_instance_password(harness: NodeHarness, tmp_path: Path) -> None:
    """Snapshots of live instances authenticate with the instance password."""
    credentials = harness.node.provision("free")

    path = harness.node.snapshot(credentials["name"], tmp_path / "snap")

    assert path.read_bytes() == f"REDIS0009-port-{credentials['port']}".encode()


# ----------------------------------------------------------------------
# Node lifecycle
# ----------------------------------------------------------------------
def test_startup_reconciliation(make_node: NodeFactory) -> None:
    """A fresh node claims persisted resources and restarts stopped instances."""
    first = make_node("shared")
    alpha = first.node.provision("free", {"name": "alpha", "password": "a", "port": 6001})
    beta = first.node.provision("free", {"name": "beta", "password": "b", "port": 6002})

    second = make_node("shared", store=first.store)
    second.supervisor._running["beta"] = 99  # already serving
    second.node.start_provisioned_instances()

    assert [name for name, _ in second.supervisor.started] == ["alpha"]
    assert second.node.capacity.available == 8
    assert alpha["port"] not in second.node.ports.free_ports()
    assert beta["port"] not in second.node.ports.free_ports()
    assert second.node.announcement() == {"available_capacity": 8}

    second.node.start_provisioned_instances()
    assert second.node.capacity.available == 8


def test_startup_adopts_pid_of_listener_with_stale_record(make_node: NodeFactory) -> None:
    """A server still serving a persisted instance is kept and its pid recorded."""
    first = make_node("shared")
    first.node.provision("free", {"name": "alpha", "password": "a", "port": 6001})
    record = first.store.get("alpha")
    assert record is not None
    record.pid = 999999
    first.store.put(record)

    second = make_node("shared", store=first.store)
    second.supervisor._running["alpha"] = 4242
    second.supervisor.owners[6001] = 4242
    second.node.start_provisioned_instances()

    assert second.supervisor.started == []
    adopted = second.store.get("alpha")
    assert adopted is not None
    assert adopted.pid == 4242


def test_startup_clears_stale_pid_when_listener_unknown(make_node: NodeFactory) -> None:
    """An unresolvable listener leaves the instance running with no recorded pid."""
    first = make_node("shared")
    first.node.provision("free", {"name": "alpha", "password": "a", "port": 6001})
    record = first.store.get("alpha")
    assert record is not None
    record.pid = 999999
    first.store.put(record)

    second = make_node("shared", store=first.store)
    second.supervisor._running["alpha"] = 4242
    second.node.start_provisioned_instances()

    assert second.supervisor.started == []
    adopted = second.store.get("alpha")
    assert adopted is not None
    assert adopted.pid is None
    assert second.node.capacity.available == 9


def test_startup_reconciliation_cleans_up_failed_instance(make_node: NodeFactory) -> None:
    """An instance that cannot be restarted is removed without raising."""
    first = make_node("shared")
    first.node.provision("free", {"name": "alpha", "password": "a", "port": 6001})

    second = make_node("shared", store=first.store)
    second.supervisor.fail_start = True
    second.node.start_provisioned_instances()

    assert second.node.all_instances_list() == []
    assert second.node.capacity.available == 10
    assert 6001 in second.node.ports.free_ports()


def test_load_tolerates_capacity_overflow(make_node: NodeFactory) -> None:
    """Persisted instances beyond a lowered capacity drive availability negative."""
    first = make_node("shared", capacity=3)
    for _ in range(3):
        first.node.provision("free")

    second = make_node("shared", capacity=1, store=first.store)
    second.node.load()

    assert second.node.capacity.available == -2
    with pytest.raises(CapacityExhaustedError):
        second.node.provision("free")


def test_shutdown_stops_instances_and_keeps_data(harness: NodeHarness) -> None:
    """Shutdown stops every instance without removing directories."""
    node = harness.node
    credentials = node.provision("free")

    assert node.shutdown() is True

    assert harness.supervisor.stopped == [(credentials["name"], False)]
    assert harness.supervisor.closed is True
    assert node.all_instances_list() == [credentials["name"]]


# ----------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------
def test_health_report_marks_failing_instances(harness: NodeHarness) -> None:
    """Unreachable instances report fail while the node itself is ok."""
    node = harness.node
    healthy = node.provision("free")
    broken = node.provision("free")
    harness.admin.passwords.pop(broken["port"])

    report = node.health_report()

    assert report == {"self": "ok", healthy["name"]: "ok", broken["name"]: "fail"}


def test_health_report_degrades_when_store_unreadable(
    harness: NodeHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Store failures yield a single self=fail marker."""

    def broken(self: StateRegistry) -> list[InstanceRecord]:
        raise StateRegistryError("corrupt")

    monkeypatch.setattr(StateRegistry, "list_records", broken)

    assert harness.node.health_report() == {"self": "fail"}


def test_usage_report(harness: NodeHarness) -> None:
    """Usage reports capacity and per-instance memory figures."""
    node = harness.node
    credentials = node.provision("free")
    harness.admin.info_by_port[credentials["port"]] = {
        "used_memory": 8 * 1024 * 1024,
        "connected_clients": 3,
        "rdb_last_save_time": 1700000000,
        "rdb_bgsave_in_progress": 0,
    }

    report = node.usage_report()

    assert report["max_capacity"] == 10
    assert report["available_capacity"] == 9
    assert report["provisioned_instances_num"] == 1
    entry = report["provisioned_instances"][0]
    assert entry["name"] == credentials["name"]
    assert entry["plan"] == "free"
    usage = entry["usage"]
    assert usage["max_memory"] == 32 * 1024.0
    assert usage["used_memory"] == 8.0
    assert usage["used_memory_ratio"] == 0.25
    assert usage["connected_clients_num"] == 3
    assert usage["last_save_time"] == 1700000000
    assert usage["bgsave_in_progress"] is False


def test_usage_report_degrades_to_empty(harness: NodeHarness) -> None:
    """A probe failure yields an empty usage report."""
    credentials = harness.node.provision("free")
    harness.admin.passwords.pop(credentials["port"])

    assert harness.node.usage_report() == {}
