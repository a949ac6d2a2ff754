"""Typer-powered command line for ``zivctl``.

Commands mirror the HTTP API one to one: ``user`` manages credentials,
``backup`` drives the remote archives, ``info`` shows the server domain and
``serve`` starts the API. Every data-producing command accepts ``--json``
and then prints the same envelope the API returns.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .api import run_server
from .config import AppConfig, ConfigError, load_config
from .errors import ExitCode, ZivctlError, exit_code_for
from .logging import StructuredLogger
from .results import Failure, Success, envelope
from .service import AdminService

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to zivctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result envelope as JSON.",
)

DAYS_OPTION = typer.Option(
    ...,
    "--days",
    "-d",
    help="Number of days the credential stays valid.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        ZiVPN administration CLI.

        Manage time-limited VPN credentials and back up the service
        configuration to an rclone remote.
        """
    ).strip(),
)

user_app = typer.Typer(help="Create, renew, delete and list VPN credentials.")
backup_app = typer.Typer(help="Create, list, restore and prune remote backups.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(user_app, name="user")
app.add_typer(backup_app, name="backup")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    service: AdminService


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
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    logger = StructuredLogger(config.logs_dir)
    service = AdminService.from_config(config, logger=logger)
    runtime = RuntimeContext(config=config, logger=logger, service=service)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _fail(result: Failure, *, json_output: bool) -> NoReturn:
    if json_output:
        console.print_json(data=envelope(result))
    else:
        console.print(f"[red]{result.message}[/red]")
        if result.output and result.output not in result.message:
            console.print(result.output, markup=False, highlight=False)
    raise typer.Exit(code=int(exit_code_for(result.kind)))


def _finish(
    ctx: typer.Context,
    result: Success[object] | Failure,
    *,
    json_output: bool,
    render: Callable[[Success[object]], None] | None = None,
) -> None:
    """Print *result* and exit with its code; wait for restarts it scheduled."""
    _get_runtime(ctx).service.wait_for_restarts()
    if isinstance(result, Failure):
        _fail(result, json_output=json_output)
    if json_output:
        console.print_json(data=envelope(result))
        return
    if render is not None:
        render(result)
    else:
        console.print(f"[green]{result.message}[/green]")


def _render_credential(result: Success[object]) -> None:
    data = result.data if isinstance(result.data, Mapping) else {}
    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Password", str(data.get("password", "")))
    table.add_row("Expires", str(data.get("expired", "")))
    if "domain" in data:
        table.add_row("Domain", str(data["domain"]))
    console.print(f"[green]{result.message}[/green]")
    console.print(table)


def _render_users(result: Success[object]) -> None:
    entries = result.data if isinstance(result.data, Sequence) else []
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Password", style="bold")
    table.add_column("Expires")
    table.add_column("Status")
    if not entries:
        table.add_row("(none)", "", "")
    for entry in entries:
        status = str(entry.get("status", ""))
        style = "red" if status == "Expired" else "green"
        table.add_row(
            str(entry.get("password", "")),
            str(entry.get("expired", "")),
            f"[{style}]{status}[/{style}]",
        )
    console.print(table)


def _render_backups(result: Success[object]) -> None:
    entries = result.data if isinstance(result.data, Sequence) else []
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="bold")
    table.add_column("Filename")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    if not entries:
        table.add_row("(none)", "", "", "")
    for entry in entries:
        table.add_row(
            str(entry.get("id", "")),
            str(entry.get("filename", "")),
            str(entry.get("size", "")),
            str(entry.get("modified") or ""),
        )
    console.print(table)


def _render_mapping(result: Success[object]) -> None:
    data = result.data if isinstance(result.data, Mapping) else {}
    console.print(f"[green]{result.message}[/green]")
    for key, value in data.items():
        rendered = ", ".join(str(item) for item in value) if isinstance(value, list) else value
        console.print(f"  {key}: {rendered}")


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the zivctl version and exit.",
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
            console.print(f"zivctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# Users ---------------------------------------------------------------
@user_app.command("create")
def user_create(
    ctx: typer.Context,
    password: str = typer.Argument(..., help="Secret used as username and password."),
    days: int = DAYS_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a credential valid for the given number of days."""
    runtime = _get_runtime(ctx)
    result = runtime.service.create_user(password, days)
    _finish(ctx, result, json_output=json_output, render=_render_credential)


@user_app.command("trial")
def user_trial(
    ctx: typer.Context,
    days: int = typer.Option(1, "--days", "-d", help="Trial length in days."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a ``TRIAL`` credential with a generated name."""
    runtime = _get_runtime(ctx)
    result = runtime.service.create_trial(days)
    _finish(ctx, result, json_output=json_output, render=_render_credential)


@user_app.command("delete")
def user_delete(
    ctx: typer.Context,
    password: str = typer.Argument(..., help="Secret to remove."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Delete a credential."""
    runtime = _get_runtime(ctx)
    _finish(ctx, runtime.service.delete_user(password), json_output=json_output)


@user_app.command("renew")
def user_renew(
    ctx: typer.Context,
    password: str = typer.Argument(..., help="Secret to extend."),
    days: int = DAYS_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Extend a credential; expired ones restart from today."""
    runtime = _get_runtime(ctx)
    result = runtime.service.renew_user(password, days)
    _finish(ctx, result, json_output=json_output, render=_render_credential)


@user_app.command("list")
def user_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List credentials with their expiry and status."""
    runtime = _get_runtime(ctx)
    _finish(ctx, runtime.service.list_users(), json_output=json_output, render=_render_users)


# Backups -------------------------------------------------------------
@backup_app.command("create")
def backup_create(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Archive the managed files and upload them to the remote."""
    runtime = _get_runtime(ctx)
    _finish(ctx, runtime.service.create_backup(), json_output=json_output, render=_render_mapping)


@backup_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List remote backups, newest first."""
    runtime = _get_runtime(ctx)
    _finish(ctx, runtime.service.list_backups(), json_output=json_output, render=_render_backups)


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Identifier reported by `backup list`."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Download a backup and write its files back into place."""
    runtime = _get_runtime(ctx)
    result = runtime.service.restore_backup(backup_id)
    _finish(ctx, result, json_output=json_output, render=_render_mapping)


@backup_app.command("cleanup")
def backup_cleanup(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Delete remote backups older than the retention period."""
    runtime = _get_runtime(ctx)
    result = runtime.service.cleanup_backups()
    _finish(ctx, result, json_output=json_output, render=_render_mapping)


@backup_app.command("auto")
def backup_auto(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Toggle the scheduled backup on or off."""
    runtime = _get_runtime(ctx)
    result = runtime.service.toggle_auto_backup()
    _finish(ctx, result, json_output=json_output, render=_render_mapping)


# Misc ----------------------------------------------------------------
@app.command("info")
def info(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the server domain."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("info", args={"json": json_output}) as op:
        result = runtime.service.info()
        if json_output:
            console.print_json(data=envelope(result))
        else:
            console.print(f"Domain: {result.data['domain'] if result.data else ''}")
        op.success("Reported server info.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
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
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: str | None = typer.Option(None, "--host", help="Override the listen address."),
    port: int | None = typer.Option(None, "--port", help="Override the listen port."),
) -> None:
    """Run the HTTP API until interrupted."""
    runtime = _get_runtime(ctx)
    bind_host = host or runtime.config.api.host
    bind_port = port or runtime.config.api.port
    try:
        run_server(runtime.service, host=bind_host, port=bind_port)
    except ZivctlError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
