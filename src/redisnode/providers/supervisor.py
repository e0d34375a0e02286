"""Spawn, stop, and observe detached ``redis-server`` processes."""
from __future__ import annotations

import concurrent.futures
import logging
import os
import shutil
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from ..errors import StartInstanceFailedError
from ..models import SNAPSHOT_FILENAME, InstanceRecord
from ..templates import TemplateEngine, TemplateRenderError
from .redis_admin import RedisAdmin, RedisCommandError

LOGGER = logging.getLogger(__name__)

CONFIG_TEMPLATE = "redis/redis.conf.j2"
# Matches the vm-page-size the template pins; flagged in DESIGN.md.
VM_PAGE_BYTES = 32


@dataclass(slots=True)
class ProcessSupervisor:
    """Translate instance records into running, independent server processes."""

    templates: TemplateEngine
    admin: RedisAdmin
    base_dir: Path
    log_dir: Path
    server_path: str = "redis-server"
    max_swap: int = 128
    max_clients: int = 500
    legacy_vm: bool = False
    disable_password: str | None = None
    probe_timeout: float = 2.0
    host: str = "127.0.0.1"
    _children: dict[int, subprocess.Popen[bytes]] = field(
        default_factory=dict, init=False, repr=False
    )
    _children_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )
    _executor: concurrent.futures.ThreadPoolExecutor = field(
        default_factory=lambda: concurrent.futures.ThreadPoolExecutor(
            max_workers=2,
            thread_name_prefix="redisnode-cleanup",
        ),
        init=False,
        repr=False,
    )

    # Paths -------------------------------------------------------------
    def instance_dir(self, name: str) -> Path:
        """Return the working directory for instance *name*."""
        return self.base_dir / name

    def instance_log_dir(self, name: str) -> Path:
        """Return the log directory for instance *name*."""
        return self.log_dir / name

    def data_dir(self, name: str) -> Path:
        """Return the data directory for instance *name*."""
        return self.instance_dir(name) / "data"

    def data_file(self, name: str) -> Path:
        """Return the snapshot file the server persists to."""
        return self.data_dir(name) / SNAPSHOT_FILENAME

    def config_path(self, name: str) -> Path:
        """Return the rendered ``redis.conf`` path."""
        return self.instance_dir(name) / "redis.conf"

    def render_context(self, record: InstanceRecord) -> dict[str, object]:
        """Return the template context for *record*."""
        memory = record.memory
        return {
            "name": record.name,
            "port": record.port,
            "password": record.password,
            "memory": memory,
            "dir": str(self.instance_dir(record.name)),
            "data_dir": str(self.data_dir(record.name)),
            "log_file": str(self.instance_log_dir(record.name) / "redis.log"),
            "swap_file": str(self.instance_dir(record.name) / "redis.swap"),
            "vm_max_memory": round(memory * 0.7),
            "vm_pages": round(self.max_swap * 1024 * 1024 / VM_PAGE_BYTES),
            "legacy_vm": self.legacy_vm,
            "config_command": self.admin.config_command,
            "shutdown_command": self.admin.shutdown_command,
            "save_command": self.admin.save_command,
            "maxclients": self.max_clients,
        }

    # Lifecycle ---------------------------------------------------------
    def start(self, record: InstanceRecord, data_file: Path | None = None) -> int:
        """Launch a detached server for *record* and return its PID."""
        LOGGER.debug("Starting instance %s on port %s", record.name, record.port)
        instance_dir = self.instance_dir(record.name)
        data_dir = self.data_dir(record.name)
        log_dir = self.instance_log_dir(record.name)
        config_path = self.config_path(record.name)
        try:
            for path in (instance_dir, data_dir, log_dir):
                path.mkdir(parents=True, exist_ok=True)
            if data_file is not None:
                target = self.data_file(record.name)
                if Path(data_file).resolve() != target.resolve():
                    shutil.copy2(data_file, target)
            config_path.unlink(missing_ok=True)
            self.templates.render_to_path(
                CONFIG_TEMPLATE,
                config_path,
                self.render_context(record),
                mode=0o600,
            )
            process = subprocess.Popen(  # noqa: S603
                [self.server_path, str(config_path)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                cwd=str(instance_dir),
                close_fds=True,
                start_new_session=True,
            )
        except (OSError, TemplateRenderError) as exc:
            raise StartInstanceFailedError(
                f"Failed to start instance '{record.name}': {exc}"
            ) from exc

        with self._children_lock:
            self._children[process.pid] = process
        reaper = threading.Thread(
            target=self._reap,
            args=(process,),
            name=f"redisnode-reap-{process.pid}",
            daemon=True,
        )
        reaper.start()
        LOGGER.debug("Instance %s started with pid %s", record.name, process.pid)
        return process.pid

    def stop(
        self,
        record: InstanceRecord,
        *,
        cleanup: bool = True,
    ) -> concurrent.futures.Future[None] | None:
        """Shut the server down and schedule removal of its directories.

        A process that is already gone counts as stopped. The returned future
        tracks the directory cleanup and is not awaited here.
        """
        if self.is_listening(record):
            self._request_shutdown(record)
        elif self._owns_live_child(record.pid):
            self._signal(record.pid)
        self._wait_for_exit(record)

        if not cleanup:
            return None
        return self._executor.submit(self._remove_directories, record.name)

    def is_running(self, record: InstanceRecord) -> bool:
        """Return ``True`` when the stored PID is alive and serving the port."""
        if record.pid is None or not _pid_exists(record.pid):
            return False
        if not self.is_listening(record):
            return False
        owner = self.listener_pid(record.port)
        return owner is None or owner == record.pid

    def listener_pid(self, port: int) -> int | None:
        """Return the PID listening on *port*, or ``None`` when it cannot be resolved."""
        try:
            connections = psutil.net_connections(kind="inet")
        except (psutil.AccessDenied, OSError) as exc:
            LOGGER.debug("Cannot list sockets to resolve port %s: %s", port, exc)
            return None
        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or not conn.pid:
                continue
            if conn.laddr and conn.laddr.port == port:
                return int(conn.pid)
        return None

    def is_listening(self, record: InstanceRecord) -> bool:
        """Return ``True`` when a TCP connection to the instance port succeeds."""
        try:
            with socket.create_connection((self.host, record.port), timeout=self.probe_timeout):
                return True
        except OSError:
            return False

    def wait_until_listening(
        self,
        record: InstanceRecord,
        timeout: float,
        *,
        interval: float = 0.1,
    ) -> bool:
        """Poll until *record*'s own process accepts connections or *timeout* expires.

        A listener owned by another process does not count; a spawned child
        that exits ends the wait early.
        """
        deadline = time.monotonic() + timeout
        while True:
            if record.pid is not None and self._child_exited(record.pid):
                return False
            if self.is_listening(record):
                owner = self.listener_pid(record.port)
                if owner is None or record.pid is None or owner == record.pid:
                    return True
                LOGGER.debug(
                    "Port %s is held by pid %s, not instance %s (pid %s)",
                    record.port,
                    owner,
                    record.name,
                    record.pid,
                )
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)

    def close(self) -> None:
        """Wait for pending directory cleanups and release the executor."""
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    def _request_shutdown(self, record: InstanceRecord) -> None:
        passwords = [record.password]
        if self.disable_password and self.disable_password != record.password:
            passwords.append(self.disable_password)
        for password in passwords:
            try:
                self.admin.shutdown(record.port, password)
                return
            except RedisCommandError as exc:
                LOGGER.debug("Shutdown command for %s failed: %s", record.name, exc)
        if record.pid is not None and (
            self._owns_live_child(record.pid) or self.is_running(record)
        ):
            LOGGER.warning(
                "Shutdown command rejected by %s; sending SIGTERM to pid %s",
                record.name,
                record.pid,
            )
            self._signal(record.pid)

    def _wait_for_exit(self, record: InstanceRecord) -> None:
        deadline = time.monotonic() + self.probe_timeout
        while self.is_listening(record) and time.monotonic() < deadline:
            time.sleep(0.05)

    def _signal(self, pid: int | None) -> None:
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except PermissionError as exc:
            LOGGER.warning("Not permitted to signal pid %s: %s", pid, exc)

    def _owns_live_child(self, pid: int | None) -> bool:
        if pid is None:
            return False
        with self._children_lock:
            process = self._children.get(pid)
        return process is not None and process.poll() is None

    def _child_exited(self, pid: int) -> bool:
        with self._children_lock:
            process = self._children.get(pid)
        return process is not None and process.poll() is not None

    def _reap(self, process: subprocess.Popen[bytes]) -> None:
        process.wait()
        LOGGER.debug("Process %s exited with status %s", process.pid, process.returncode)

    def _remove_directories(self, name: str) -> None:
        for path in (self.instance_dir(name), self.instance_log_dir(name)):
            shutil.rmtree(path, ignore_errors=True)


def _pid_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


__all__ = ["ProcessSupervisor"]
