"""Typer-powered command line interface for ``ldbctl``.

Commands are thin: each one opens a structured operation scope, takes the
instance locks it needs, hands the work to :class:`~ldbctl.lifecycle.LifecycleManager`
(or the catalogue client) and renders the result with Rich.
"""
from __future__ import annotations

import asyncio
import json
import secrets
import textwrap
from collections.abc import Coroutine, Iterator, Mapping, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import LdbError
from .exit_codes import ExitCode, exit_code_for
from .lifecycle import LifecycleManager, LifecycleSettings
from .locking import LockBundle, LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import (
    DEFAULT_TAG,
    CreateInstanceRequest,
    DatabaseType,
    Instance,
    container_name_for,
)
from .ports import PortAllocator
from .providers.docker import DockerEngine, PullProgress
from .providers.hub import SUPPORTED_IMAGES, HubClient, categorize_tags, hub_repository
from .reconcile import infer_database_type, split_image
from .state import InstanceStore

console = Console()

_T = TypeVar("_T")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to ldbctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of a table.",
)

TYPE_OPTION = typer.Option(
    ...,
    "--type",
    "-t",
    help="Database type (postgresql, redis, mysql, mongodb).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Local database instance manager.

        Provisions PostgreSQL, Redis, MySQL and MongoDB containers on the local
        Docker engine and keeps their credentials and volumes in a local store.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: InstanceStore
    locks: LockManager
    logger: StructuredLogger
    engine: DockerEngine
    allocator: PortAllocator
    lifecycle: LifecycleManager
    hub: HubClient


def _build_engine(config: AppConfig) -> DockerEngine:
    return DockerEngine(base_url=config.engine.base_url, timeout=config.engine.timeout)


def _build_hub(config: AppConfig) -> HubClient:
    return HubClient(
        config.hub.api_url,
        page_size=config.hub.page_size,
        timeout=config.hub.timeout,
    )


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
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    store = InstanceStore(config.store_file, config.volumes_dir, locks=locks)
    engine = _build_engine(config)
    allocator = PortAllocator(engine, config.ports)
    lifecycle = LifecycleManager(
        engine,
        store,
        allocator=allocator,
        settings=LifecycleSettings(
            prefix=config.prefix,
            stop_timeout=config.engine.stop_timeout,
            restart_settle=config.engine.restart_settle,
        ),
    )
    runtime = RuntimeContext(
        config=config,
        store=store,
        locks=locks,
        logger=logger,
        engine=engine,
        allocator=allocator,
        lifecycle=lifecycle,
        hub=_build_hub(config),
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
        help="Show the ldbctl version and exit.",
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
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"ldbctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    ctx.call_on_close(runtime.engine.close)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _run(op: OperationScope, step: str, coro: Coroutine[Any, Any, _T]) -> _T:
    """Run *coro* to completion, mapping ldbctl errors to exit codes."""
    try:
        result = asyncio.run(coro)
    except LdbError as exc:
        op.add_step(step, status="error", detail=str(exc))
        _command_error(op, str(exc), rc=int(exit_code_for(exc)))
    op.add_step(step, status="success")
    return result


@contextmanager
def _instance_locks(
    runtime: RuntimeContext,
    op: OperationScope,
    names: Sequence[str],
) -> Iterator[LockBundle]:
    with ExitStack() as stack:
        try:
            bundle = stack.enter_context(runtime.locks.mutate_instances(names))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        op.set_lock_wait_ms(bundle.wait_ms)
        yield bundle


def _parse_type(op: OperationScope, value: str) -> DatabaseType:
    try:
        return DatabaseType.parse(value)
    except LdbError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


def _render_instance(instance: Instance, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=instance.to_public_dict())
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in instance.to_public_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def _status_markup(status: str) -> str:
    if status == "running":
        return "[green]running[/green]"
    if status == "error":
        return "[red]error[/red]"
    if status == "creating":
        return "[yellow]creating[/yellow]"
    return status


instances_app = typer.Typer(help="Create, drive and remove database instances.")
images_app = typer.Typer(help="Pull images and browse available tags.")
ports_app = typer.Typer(help="Inspect host port usage.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(images_app, name="image")
app.add_typer(ports_app, name="ports")
app.add_typer(config_app, name="config")


# ----------------------------------------------------------------------
# instance
# ----------------------------------------------------------------------
@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name for the new instance."),
    database_type: str = TYPE_OPTION,
    image: str | None = typer.Option(
        None,
        "--image",
        help="Image repository (defaults to the official image for the type).",
    ),
    tag: str = typer.Option(DEFAULT_TAG, "--tag", help="Image tag to run."),
    password: str | None = typer.Option(
        None,
        "--password",
        help="Root password (a random one is generated when omitted).",
    ),
    port: int | None = typer.Option(
        None,
        "--port",
        help="Host port to publish (the next free port is used when omitted).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a stopped instance; pull the image first with ``image pull``."""
    runtime = _get_runtime(ctx)
    container_name = container_name_for(name.strip(), runtime.config.prefix)
    with runtime.logger.operation(
        "instance create",
        args={
            "name": name,
            "type": database_type,
            "image": image,
            "tag": tag,
            "port": port,
            "password": password,
        },
        target={"kind": "instance", "name": container_name},
    ) as op:
        parsed_type = _parse_type(op, database_type)
        generated = password is None
        request = CreateInstanceRequest(
            name=name,
            database_type=parsed_type,
            password=password if password is not None else secrets.token_urlsafe(18),
            image=image,
            tag=tag,
            port=port,
        )
        with _instance_locks(runtime, op, [container_name]):
            instance = _run(op, "engine.create", runtime.lifecycle.create(request))

        _render_instance(instance, json_output=json_output)
        if generated and not json_output:
            console.print(f"Generated root password: [bold]{request.password}[/bold]")
        op.success(
            "Instance created.",
            changed=1,
            context={"id": instance.id, "port": instance.port},
        )


def _transition(
    ctx: typer.Context,
    command: str,
    ref: str,
    json_output: bool,
    action: str,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"instance {command}",
        args={"ref": ref, "json": json_output},
        target={"kind": "instance", "ref": ref},
    ) as op:
        with _instance_locks(runtime, op, [ref]):
            operation = getattr(runtime.lifecycle, command)
            instance = _run(op, f"engine.{command}", operation(ref))
        if json_output:
            _render_instance(instance, json_output=True)
        else:
            console.print(
                f"[green]Instance '{instance.name}' {action}.[/green] "
                f"Status: {_status_markup(instance.status.value)}"
            )
        op.success(f"Instance {action}.", changed=1, context={"status": instance.status.value})


@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Instance id, container id or container name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Start an instance."""
    _transition(ctx, "start", ref, json_output, "started")


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Instance id, container id or container name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop an instance."""
    _transition(ctx, "stop", ref, json_output, "stopped")


@instances_app.command("restart")
def instance_restart(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Instance id, container id or container name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Restart an instance."""
    _transition(ctx, "restart", ref, json_output, "restarted")


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Instance id, container id or container name."),
    delete_volume: bool = typer.Option(
        False,
        "--delete-volume",
        help="Also remove the instance's data directory.",
    ),
) -> None:
    """Remove an instance's container and store record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance delete",
        args={"ref": ref, "delete_volume": delete_volume},
        target={"kind": "instance", "ref": ref},
    ) as op:
        with _instance_locks(runtime, op, [ref]):
            removed = _run(
                op,
                "engine.remove",
                runtime.lifecycle.delete(ref, delete_volume=delete_volume),
            )
        label = removed.name if removed is not None else ref
        console.print(f"[green]Instance '{label}' deleted.[/green]")
        if removed is None:
            op.warning(
                "Container removed; no stored record matched.",
                changed=1,
                context={"ref": ref},
            )
            return
        op.success(
            "Instance deleted.",
            changed=2 if delete_volume else 1,
            context={"id": removed.id, "volume_removed": delete_volume},
        )


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List managed instances with their reconciled status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        entries = _run(op, "engine.list", runtime.lifecycle.list())
        failures = [entry for entry in entries if not entry.is_ok]

        if json_output:
            payload: list[dict[str, object]] = []
            for entry in entries:
                if entry.instance is not None:
                    payload.append({"entry": "ok", **entry.instance.to_public_dict()})
                else:
                    payload.append(
                        {
                            "entry": "failed",
                            "container_id": entry.container_id,
                            "error": entry.reason,
                        }
                    )
            console.print_json(data={"instances": payload})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("Type")
            table.add_column("Image")
            table.add_column("Port")
            table.add_column("Status")
            table.add_column("ID")
            if not entries:
                table.add_row("(none)", "", "", "", "", "")
            for entry in entries:
                instance = entry.instance
                if instance is None:
                    table.add_row(
                        (entry.container_id or "")[:12],
                        "",
                        "",
                        "",
                        "[red]failed[/red]",
                        entry.reason or "",
                    )
                    continue
                table.add_row(
                    instance.name,
                    instance.database_type.label,
                    instance.image_ref,
                    str(instance.port),
                    _status_markup(instance.status.value),
                    instance.id,
                )
            console.print(table)

        if failures:
            op.warning(
                f"{len(failures)} container(s) could not be reconciled.",
                warnings=[f"{entry.container_id}: {entry.reason}" for entry in failures],
                context={"count": len(entries)},
            )
            return
        op.success("Reported instances.", changed=0, context={"count": len(entries)})


@instances_app.command("status")
def instance_status(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Instance id, container id or container name."),
) -> None:
    """Print the engine status label for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"ref": ref},
        target={"kind": "instance", "ref": ref},
    ) as op:
        label = _run(op, "engine.inspect", runtime.lifecycle.status(ref))
        console.print(label)
        op.success("Reported instance status.", changed=0, context={"status": label})


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Instance id, container id or container name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the reconciled record for one instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"ref": ref, "json": json_output},
        target={"kind": "instance", "ref": ref},
    ) as op:
        instance = _run(op, "engine.inspect", runtime.lifecycle.get(ref))
        _render_instance(instance, json_output=json_output)
        op.success("Reported instance.", changed=0)


@instances_app.command("connection")
def instance_connection(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Stored instance id."),
) -> None:
    """Print a client connection string for a stored instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance connection",
        args={"id": instance_id},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            uri = runtime.lifecycle.connection_string(instance_id)
        except LdbError as exc:
            _command_error(op, str(exc), rc=int(exit_code_for(exc)))
        typer.echo(uri)
        op.success("Reported connection string.", changed=0)


@instances_app.command("logs")
def instance_logs(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Instance id, container id or container name."),
    tail: int | None = typer.Option(
        None,
        "--tail",
        min=0,
        help="Number of trailing lines to show (defaults to logs.tail).",
    ),
    follow: bool = typer.Option(
        True,
        "--follow/--no-follow",
        help="Keep streaming new output until interrupted.",
    ),
) -> None:
    """Stream container logs."""
    runtime = _get_runtime(ctx)
    lines = runtime.config.logs_tail if tail is None else tail
    with runtime.logger.operation(
        "instance logs",
        args={"ref": ref, "tail": lines, "follow": follow},
        target={"kind": "instance", "ref": ref},
    ) as op:
        errors: list[str] = []

        async def _drain() -> None:
            async for event in runtime.lifecycle.logs(ref, tail=lines, follow=follow):
                if event.kind == "error":
                    errors.append(event.message)
                    console.print(f"[red]{event.message}[/red]")
                elif event.kind != "eof":
                    typer.echo(event.message, nl=False)

        try:
            _run(op, "engine.logs", _drain())
        except KeyboardInterrupt:
            op.add_step("engine.logs", status="skipped", detail="interrupted")
        if errors:
            op.warning("Log stream ended with an error.", errors=errors)
            return
        op.success("Streamed logs.", changed=0)


# ----------------------------------------------------------------------
# image
# ----------------------------------------------------------------------
@images_app.command("pull")
def image_pull(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="Image reference, e.g. postgres:16."),
) -> None:
    """Pull an image, printing progress as layers download."""
    runtime = _get_runtime(ctx)
    repository, tag = split_image(image)
    reference = f"{repository}:{tag}"
    with runtime.logger.operation(
        "image pull",
        args={"image": reference},
        target={"kind": "image", "image": reference},
    ) as op:

        def _report(progress: PullProgress) -> None:
            prefix = f"{progress.id}: " if progress.id else ""
            suffix = f" {progress.progress}" if progress.progress else ""
            console.print(f"{prefix}{progress.status}{suffix}", highlight=False)

        _run(op, "engine.pull", runtime.lifecycle.pull_image(reference, _report))
        console.print(f"[green]Pulled {reference}.[/green]")
        op.success("Image pulled.", changed=1)


@images_app.command("tags")
def image_tags(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="Image name, e.g. postgres or library/postgres."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List the tags published for an image, grouped and newest first."""
    runtime = _get_runtime(ctx)
    repository = hub_repository(image)
    with runtime.logger.operation(
        "image tags",
        args={"image": image, "json": json_output},
        target={"kind": "image", "repository": repository},
    ) as op:
        try:
            tags = runtime.hub.list_tags(repository)
        except LdbError as exc:
            _command_error(op, str(exc), rc=int(exit_code_for(exc)))
        op.add_step("hub.tags", status="success", detail=f"{len(tags)} tags")
        groups = categorize_tags(tags)

        if json_output:
            console.print_json(data={"repository": repository, "tags": groups.to_dict()})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Group", style="bold")
            table.add_column("Tags")
            for group, names in groups.to_dict().items():
                table.add_row(group, ", ".join(names) or "(none)")
            console.print(table)
        op.success("Reported image tags.", changed=0, context={"count": len(tags)})


@images_app.command("supported")
def image_supported(ctx: typer.Context) -> None:
    """List the images ldbctl knows how to provision."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "image supported",
        target={"kind": "image", "scope": "supported"},
    ) as op:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Image", style="bold")
        table.add_column("Repository")
        table.add_column("Type")
        table.add_column("Default port")
        for image, repository in SUPPORTED_IMAGES:
            database_type = infer_database_type(image)
            table.add_row(
                image,
                repository,
                database_type.label,
                str(runtime.config.ports.base_for(database_type)),
            )
        console.print(table)
        op.success("Reported supported images.", changed=0)


# ----------------------------------------------------------------------
# ports
# ----------------------------------------------------------------------
@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List host ports published by running containers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        entries = _run(op, "engine.list", runtime.allocator.published())
        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported port usage as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Port", style="bold")
        table.add_column("Container")
        if not entries:
            table.add_row("(none)", "")
        else:
            for entry in entries:
                table.add_row(str(entry["port"]), entry["container"])
        console.print(table)
        op.success("Reported port usage.", changed=0)


@ports_app.command("next")
def ports_next(
    ctx: typer.Context,
    database_type: str = TYPE_OPTION,
    preferred: int | None = typer.Option(
        None,
        "--preferred",
        help="Check this port instead of scanning from the base port.",
    ),
) -> None:
    """Print the port the next instance of a type would receive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports next",
        args={"type": database_type, "preferred": preferred},
        target={"kind": "ports"},
    ) as op:
        parsed_type = _parse_type(op, database_type)
        port = _run(
            op,
            "ports.allocate",
            runtime.allocator.allocate(parsed_type, preferred=preferred),
        )
        typer.echo(str(port))
        op.success("Reported next free port.", changed=0, context={"port": port})


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, Mapping):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
