"""Typer-powered command line interface for ``redisnode``.

Every command loads the merged configuration, assembles a :class:`Node`
whose ports and capacity reflect the persisted instances, and records the
outcome as one line in the structured operations log.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupError, SnapshotCatalog, SnapshotCorruptError
from .config import AppConfig, ConfigError, load_config
from .errors import (
    CleanupFailedError,
    InstanceExistsError,
    InstanceNotFoundError,
    NodeError,
    PlanInvalidError,
    RestoreFileNotFoundError,
    StartInstanceFailedError,
)
from .exit_codes import ExitCode
from .locking import LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .node import Node, build_node
from .providers import RedisCommandError
from .state import StateRegistry, StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to redisnode's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

CREDENTIALS_FILE_OPTION = typer.Option(
    None,
    "--credentials",
    exists=True,
    dir_okay=False,
    help="JSON/YAML file holding service credentials (name, password, port).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Single-node Redis instance manager.

        Provisions password-protected redis-server processes on a shared host,
        hands out credentials, and moves instances between nodes.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    node: Node
    logger: StructuredLogger
    backups: SnapshotCatalog


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    try:
        registry = StateRegistry(config.registry_dir)
        node = build_node(config, registry=registry)
        node.load()
    except (StateRegistryError, ValueError, KeyError, OSError) as exc:
        console.print(f"[red]Cannot initialise node state: {exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    runtime = RuntimeContext(
        config=config,
        registry=registry,
        node=node,
        logger=logger,
        backups=SnapshotCatalog(config.backups.root, config.backups.index),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the redisnode version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"redisnode {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Error helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(
        exc,
        (
            PlanInvalidError,
            InstanceNotFoundError,
            InstanceExistsError,
            RestoreFileNotFoundError,
            SnapshotCorruptError,
        ),
    ):
        return ExitCode.VALIDATION
    if isinstance(exc, (StartInstanceFailedError, CleanupFailedError, RedisCommandError)):
        return ExitCode.PROVIDER
    return ExitCode.ENVIRONMENT


def _node_error(op: OperationScope, exc: Exception) -> NoReturn:
    errors = list(exc.errors) if isinstance(exc, CleanupFailedError) else None
    _command_error(op, str(exc), rc=_exit_code_for(exc), errors=errors)


NODE_ERRORS = (
    NodeError,
    RedisCommandError,
    LockTimeoutError,
    StateRegistryError,
    BackupError,
    OSError,
)


def _load_credentials(
    runtime: RuntimeContext,
    name: str | None,
    credentials_file: Path | None,
) -> dict[str, Any]:
    if credentials_file is not None:
        try:
            data = yaml.safe_load(credentials_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"Cannot parse credentials file {credentials_file}: {exc}") from exc
        if not isinstance(data, Mapping) or "name" not in data or "password" not in data:
            raise ConfigError(
                f"Credentials file {credentials_file} must define 'name' and 'password'."
            )
        return dict(data)
    if not name:
        raise ConfigError("Either an instance name or --credentials is required.")
    return runtime.node.bind(name)


def _print_mapping(data: Mapping[str, object], *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=dict(data))
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(str(key), rendered)
    console.print(table)


# ----------------------------------------------------------------------
# Node lifecycle
# ----------------------------------------------------------------------
@app.command()
def start(ctx: typer.Context) -> None:
    """Start every persisted instance that is not already running."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("start", target={"kind": "node"}) as op:
        runtime.node.start_provisioned_instances()
        op.add_step("instances.start", status="success")
        announcement = runtime.node.announcement()
        console.print(
            f"[green]Node started; available capacity "
            f"{announcement['available_capacity']}.[/green]"
        )
        op.success("Started provisioned instances.", context=announcement)


@app.command()
def shutdown(ctx: typer.Context) -> None:
    """Stop every persisted instance, keeping data on disk."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("shutdown", target={"kind": "node"}) as op:
        runtime.node.shutdown()
        console.print("[green]All instances stopped.[/green]")
        op.success("Stopped provisioned instances.")


@app.command()
def announce(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report the capacity advertised to provisioners."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("announce", target={"kind": "node"}) as op:
        _print_mapping(runtime.node.announcement(), json_output=json_output)
        op.success("Reported announcement.", changed=0)


@app.command()
def health(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Probe every instance and report ok/fail."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("health", target={"kind": "node"}) as op:
        report = runtime.node.health_report()
        _print_mapping(report, json_output=json_output)
        failed = sorted(name for name, state in report.items() if state != "ok")
        if report.get("self") != "ok":
            _command_error(op, "Health report unavailable.", rc=ExitCode.ENVIRONMENT)
        if failed:
            op.warning(
                "Some instances failed their health probe.",
                warnings=[f"{name}: fail" for name in failed],
                context=report,
            )
            return
        op.success("All instances healthy.", changed=0, context=report)


@app.command()
def usage(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report capacity and per-instance memory usage."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("usage", target={"kind": "node"}) as op:
        report = runtime.node.usage_report()
        if not report:
            _command_error(op, "Usage report unavailable.", rc=ExitCode.PROVIDER)
        if json_output:
            console.print_json(data=report)
            op.success("Reported usage as JSON.", changed=0)
            return

        console.print(
            f"Capacity: {report['available_capacity']} of {report['max_capacity']} available"
        )
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Port")
        table.add_column("Used MB")
        table.add_column("Max KB")
        table.add_column("Ratio")
        table.add_column("Clients")
        for entry in report["provisioned_instances"]:
            stats = entry["usage"]
            table.add_row(
                entry["name"],
                str(entry["port"]),
                f"{stats['used_memory']:.2f}",
                f"{stats['max_memory']:.0f}",
                f"{stats['used_memory_ratio']:.2%}",
                str(stats["connected_clients_num"]),
            )
        console.print(table)
        op.success("Reported usage.", changed=0)


# ----------------------------------------------------------------------
# Sub-applications
# ----------------------------------------------------------------------
instances_app = typer.Typer(help="Provision, bind, and migrate Redis instances.")
ports_app = typer.Typer(help="Inspect the instance port pool.")
backups_app = typer.Typer(help="Take and restore instance snapshots.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(ports_app, name="ports")
app.add_typer(backups_app, name="backup")
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        _print_mapping(runtime.config.to_dict(), json_output=json_output)
        op.success("Rendered configuration.", changed=0)


@ports_app.command("list")
def ports_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List ports held by instances and the number still free."""
    runtime = _get_runtime(ctx)
    entries = [
        {"name": record.name, "port": record.port}
        for record in runtime.registry.list_records()
    ]
    pool = runtime.node.ports

    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        if json_output:
            console.print_json(
                data={
                    "range": {"start": pool.start, "end": pool.end},
                    "available": pool.available,
                    "ports": entries,
                }
            )
            op.success("Reported port pool as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("Port")
        if not entries:
            table.add_row("(none)", "")
        else:
            for entry in entries:
                table.add_row(str(entry["name"]), str(entry["port"]))
        console.print(table)
        console.print(f"{pool.available} of {pool.size} ports free ({pool.start}-{pool.end}).")
        op.success("Reported port pool.", changed=0)


@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List provisioned instances with their probe status."""
    runtime = _get_runtime(ctx)
    records = runtime.registry.list_records()
    statuses = runtime.node.health.probe_all(records)

    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        entries = [
            {
                "name": record.name,
                "port": record.port,
                "plan": record.plan,
                "memory": record.memory,
                "pid": record.pid,
                "status": statuses[record.name].state,
            }
            for record in records
        ]
        if json_output:
            console.print_json(data={"instances": entries})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Port")
        table.add_column("Plan")
        table.add_column("Memory (MB)")
        table.add_column("PID")
        table.add_column("Status")
        if not entries:
            table.add_row("(none)", "", "", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry["name"]),
                    str(entry["port"]),
                    str(entry["plan"]),
                    str(entry["memory"]),
                    "" if entry["pid"] is None else str(entry["pid"]),
                    str(entry["status"]),
                )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to display."),
    reveal: bool = typer.Option(False, "--reveal", help="Include the instance password."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show details for a single instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        record = runtime.registry.get(name)
        if record is None:
            _command_error(op, f"Instance '{name}' not found.", rc=ExitCode.VALIDATION)
        details = record.to_dict()
        if not reveal:
            details.pop("password", None)
        status = runtime.node.health.status(record)
        details["status"] = status.state
        if status.detail:
            details["status_detail"] = status.detail
        _print_mapping(details, json_output=json_output)
        op.success("Displayed instance details.", changed=0)


@instances_app.command("provision")
def instance_provision(
    ctx: typer.Context,
    plan: str | None = typer.Option(None, "--plan", help="Plan to provision (defaults to the node's)."),
    data_file: Path | None = typer.Option(
        None,
        "--data-file",
        exists=True,
        dir_okay=False,
        help="Seed the new instance from this dump.rdb.",
    ),
) -> None:
    """Create and start a new instance, printing its credentials."""
    runtime = _get_runtime(ctx)
    effective_plan = plan or runtime.config.plan
    with runtime.logger.operation(
        "instance provision",
        args={"plan": effective_plan, "data_file": str(data_file) if data_file else None},
        target={"kind": "instance"},
    ) as op:
        try:
            credentials = runtime.node.provision(effective_plan, data_file=data_file)
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        op.add_step("instance.start", status="success", detail=f"port={credentials['port']}")
        op.add_step("registry.save", status="success")
        console.print_json(data=credentials)
        op.success(
            "Instance provisioned.",
            changed=1,
            context={"name": credentials["name"], "port": credentials["port"]},
        )


@instances_app.command("unprovision")
def instance_unprovision(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to delete."),
) -> None:
    """Stop an instance and delete its data."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance unprovision",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            runtime.node.unprovision(name)
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        console.print(f"[green]Instance '{name}' unprovisioned.[/green]")
        op.success("Instance unprovisioned.", changed=1)


@instances_app.command("bind")
def instance_bind(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to bind."),
) -> None:
    """Print the connection credentials for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance bind",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            credentials = runtime.node.bind(name)
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        console.print_json(data=credentials)
        op.success("Issued binding credentials.", changed=0)


@instances_app.command("restore")
def instance_restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to restore."),
    backup_dir: Path = typer.Argument(
        ...,
        file_okay=False,
        help="Directory holding the dump.rdb to restore from.",
    ),
) -> None:
    """Restart an instance from a snapshot, or flush it if the snapshot is empty."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance restore",
        args={"name": name, "backup_dir": str(backup_dir)},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            runtime.node.restore(name, backup_dir)
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        console.print(f"[green]Instance '{name}' restored from {backup_dir}.[/green]")
        op.success("Instance restored.", changed=1)


@instances_app.command("disable")
def instance_disable(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Name of the instance to quarantine."),
    credentials_file: Path | None = CREDENTIALS_FILE_OPTION,
) -> None:
    """Lock clients out of an instance ahead of migration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance disable",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            credentials = _load_credentials(runtime, name, credentials_file)
            runtime.node.disable_instance(credentials, [])
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        console.print(f"[green]Instance '{credentials['name']}' disabled.[/green]")
        op.success("Instance disabled.", changed=1)


@instances_app.command("dump")
def instance_dump(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Name of the disabled instance."),
    dump_dir: Path = typer.Option(..., "--dump-dir", file_okay=False, help="Destination directory."),
    credentials_file: Path | None = CREDENTIALS_FILE_OPTION,
) -> None:
    """Persist a disabled instance and copy its dump.rdb out."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance dump",
        args={"name": name, "dump_dir": str(dump_dir)},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            credentials = _load_credentials(runtime, name, credentials_file)
            target = runtime.node.dump_instance(credentials, [], dump_dir)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        console.print(f"[green]Dumped to {target}.[/green]")
        op.success("Instance dumped.", changed=1, context={"path": str(target)})


@instances_app.command("import")
def instance_import(
    ctx: typer.Context,
    dump_dir: Path = typer.Argument(..., file_okay=False, help="Directory holding dump.rdb."),
    credentials_file: Path = typer.Option(
        ...,
        "--credentials",
        exists=True,
        dir_okay=False,
        help="JSON/YAML file holding the original service credentials.",
    ),
    plan: str | None = typer.Option(None, "--plan", help="Plan of the migrated instance."),
) -> None:
    """Recreate a migrated instance with its original credentials."""
    runtime = _get_runtime(ctx)
    effective_plan = plan or runtime.config.plan
    with runtime.logger.operation(
        "instance import",
        args={"dump_dir": str(dump_dir), "plan": effective_plan},
        target={"kind": "instance"},
    ) as op:
        try:
            credentials = _load_credentials(runtime, None, credentials_file)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        result = runtime.node.import_instance(credentials, {}, dump_dir, effective_plan)
        if result is None:
            _command_error(
                op,
                f"Import of instance '{credentials['name']}' failed; see logs.",
                rc=ExitCode.PROVIDER,
            )
        console.print_json(data=result)
        op.success("Instance imported.", changed=1, context={"name": result["name"]})


@instances_app.command("enable")
def instance_enable(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Name of the instance to re-activate."),
    credentials_file: Path | None = CREDENTIALS_FILE_OPTION,
) -> None:
    """Re-activate an instance after migration and print fresh credentials."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance enable",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            credentials = _load_credentials(runtime, name, credentials_file)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        result = runtime.node.enable_instance(credentials, {})
        if result is None:
            _command_error(
                op,
                f"Enable of instance '{credentials['name']}' failed; see logs.",
                rc=ExitCode.PROVIDER,
            )
        service_credentials, _bindings = result
        console.print_json(data=service_credentials)
        op.success("Instance enabled.", changed=1)


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------
@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to snapshot."),
    message: str | None = typer.Option(None, "--message", "-m", help="Note stored with the snapshot."),
) -> None:
    """Snapshot a live instance into the backups root."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"name": name, "message": message},
        target={"kind": "backup", "instance": name},
    ) as op:
        snapshot_id, snapshot_dir = runtime.backups.new_directory(name)
        try:
            snapshot_file = runtime.node.snapshot(name, snapshot_dir)
            op.add_step("instance.save", status="success", detail=str(snapshot_file))
            with runtime.node.locks.global_lock():
                snapshot = runtime.backups.register(
                    snapshot_id, name, snapshot_dir, message=message
                )
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        op.add_step("backups.index", status="success", detail=snapshot.sha256)
        console.print(f"[green]Backup {snapshot.id} created at {snapshot.directory}.[/green]")
        op.success("Backup created.", changed=1, backups=[snapshot.id], context=snapshot.to_dict())


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    instance: str | None = typer.Option(None, "--instance", help="Only list this instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List indexed snapshots."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"instance": instance, "json": json_output},
        target={"kind": "backup"},
    ) as op:
        try:
            snapshots = runtime.backups.snapshots(instance)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        if json_output:
            console.print_json(data={"backups": [snapshot.to_dict() for snapshot in snapshots]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Instance")
        table.add_column("Created")
        table.add_column("Size")
        table.add_column("Message")
        if not snapshots:
            table.add_row("(none)", "", "", "", "")
        for snapshot in snapshots:
            table.add_row(
                snapshot.id,
                snapshot.instance,
                snapshot.created_at,
                str(snapshot.size_bytes),
                snapshot.message or "",
            )
        console.print(table)
        op.success("Reported backups.", changed=0)


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Identifier from `backup list`."),
    instance: str | None = typer.Option(
        None,
        "--instance",
        help="Restore into this instance instead of the one the snapshot came from.",
    ),
) -> None:
    """Restore an instance from an indexed snapshot after checking its digest."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"backup_id": backup_id, "instance": instance},
        target={"kind": "backup", "id": backup_id},
    ) as op:
        try:
            snapshot = runtime.backups.get(backup_id)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        if snapshot is None:
            _command_error(op, f"Backup '{backup_id}' not found.", rc=ExitCode.VALIDATION)
        target_name = instance or snapshot.instance
        try:
            runtime.backups.verify(snapshot)
            op.add_step("backups.verify", status="success", detail=snapshot.sha256)
            runtime.node.restore(target_name, snapshot.directory)
        except NODE_ERRORS as exc:
            _node_error(op, exc)
        console.print(f"[green]Instance '{target_name}' restored from {backup_id}.[/green]")
        op.success("Backup restored.", changed=1, backups=[backup_id])


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
