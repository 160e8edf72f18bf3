"""Typer-powered command line for ``sensorctl``.

Each bootstrap action is a subcommand meant to be started by a one-shot
systemd unit. Commands print a short human summary (or JSON with ``--json``),
log a structured result record to the journal, and exit with an
:class:`~sensorctl.exit_codes.ExitCode` the unit's restart policy understands.
"""
from __future__ import annotations

import json
import sys
import textwrap
from collections.abc import Callable, Mapping, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .bootstrap.discovery import discovery_action
from .bootstrap.enrollment import (
    build_connect_workflow,
    build_enroll_workflow,
    enrollment_marker,
)
from .bootstrap.markers import Marker, MarkerError
from .bootstrap.notify import build_notify_workflow
from .bootstrap.source import load_bootstrap_config
from .bootstrap.workflow import OneShotWorkflow, WaitPolicy, WorkflowOutcome, WorkflowState
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockHandle, LockManager
from .logging import OperationScope, StructuredLogger, configure_logging
from .providers import NetbirdProvider, SystemdError, SystemdProvider, default_unit_specs
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sensorctl's YAML config file.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report what would change without touching the system.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the outcome as JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Sensor bootstrap CLI.

        Applies discovery configuration, enrolls the Netbird VPN and sends the
        boot notification. Every action is idempotent and guarded by a marker
        file so the boot-time units can be re-run safely.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    netbird: NetbirdProvider
    systemd_provider: SystemdProvider


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
    log_level_override: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    if log_level_override is not None:
        overrides["log_level"] = log_level_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    json_logs = config.log_format == "json"
    configure_logging(config.log_level, json_output=json_logs)
    logger = StructuredLogger(json_output=json_logs)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    templates = TemplateEngine.with_overrides(config.config_file.parent / "templates")
    netbird = NetbirdProvider(
        binary=config.netbird.binary,
        daemon_addr=config.netbird.daemon_addr,
    )
    systemd_provider = SystemdProvider(
        templates=templates,
        systemd_dir=config.systemd.unit_dir,
        systemctl_bin=config.systemd.systemctl_bin,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        templates=templates,
        netbird=netbird,
        systemd_provider=systemd_provider,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sensorctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Override the log level (debug, info, warning, error).",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"sensorctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout, log_level)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _action_lock(
    runtime: RuntimeContext, name: str
) -> Callable[[], AbstractContextManager[LockHandle]]:
    return lambda: runtime.locks.action_lock(name)


_STATE_STYLES: Mapping[WorkflowState, str] = {
    WorkflowState.DONE: "green",
    WorkflowState.SKIPPED: "yellow",
    WorkflowState.FAILED_RETRYABLE: "red",
    WorkflowState.FAILED_TERMINAL: "bold red",
}


def _finish_workflow(
    op: OperationScope,
    outcome: WorkflowOutcome,
    *,
    json_output: bool,
) -> None:
    """Print *outcome*, record it on *op*, and exit non-zero on failure."""
    rc = int(outcome.exit_code)
    if json_output:
        console.print_json(data=outcome.to_dict())
    else:
        style = _STATE_STYLES.get(outcome.state, "white")
        console.print(f"[{style}]{outcome.state.value}[/{style}]: {escape(outcome.message)}")
        for warning in outcome.warnings:
            console.print(f"[yellow]warning:[/yellow] {escape(warning)}")

    context = {"state": outcome.state.value, "details": outcome.details}
    if outcome.state is WorkflowState.DONE:
        if outcome.warnings:
            op.warning(
                outcome.message,
                changed=outcome.changed,
                warnings=outcome.warnings,
                context=context,
            )
        else:
            op.success(outcome.message, changed=outcome.changed, context=context)
    elif outcome.state is WorkflowState.SKIPPED:
        op.success(outcome.message, changed=0, context=context)
    else:
        op.error(outcome.message, context=context, rc=rc)

    if rc != 0:
        raise typer.Exit(code=rc)


def _run(
    runtime: RuntimeContext,
    op_name: str,
    workflow: OneShotWorkflow,
    *,
    args: Mapping[str, object],
    json_output: bool,
) -> None:
    with runtime.logger.operation(
        op_name,
        args=dict(args),
        target={"kind": "workflow", "name": workflow.name},
    ) as op:
        outcome = workflow.run()
        _finish_workflow(op, outcome, json_output=json_output)


@app.command("apply-discovery")
def apply_discovery(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        help="Re-apply even when the discovery marker is already set.",
    ),
    hostname: str | None = typer.Option(
        None,
        "--hostname",
        help="Set this hostname instead of the discovered one.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply SSH keys and hand off secrets from the discovery payload."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    workflow = OneShotWorkflow(
        name="apply-discovery",
        source=config.bootstrap_file,
        loader=load_bootstrap_config,
        action=discovery_action(
            config,
            hostname=hostname,
            dry_run=dry_run,
            logger=runtime.logger,
        ),
        logger=runtime.logger,
        marker=Marker(name="discovery-applied", path=config.discovery_marker),
        wait=WaitPolicy(max_wait=0.0),
        missing_ok=True,
        dry_run=dry_run,
        force=force,
        lock=_action_lock(runtime, "apply-discovery"),
    )
    _run(
        runtime,
        "apply-discovery",
        workflow,
        args={"force": force, "hostname": hostname, "dry_run": dry_run},
        json_output=json_output,
    )


@app.command()
def enroll(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Enroll this device in the Netbird VPN exactly once."""
    runtime = _get_runtime(ctx)
    workflow = build_enroll_workflow(
        runtime.config,
        runtime.netbird,
        runtime.logger,
        lock=_action_lock(runtime, "enroll"),
        dry_run=dry_run,
    )
    _run(runtime, "enroll", workflow, args={"dry_run": dry_run}, json_output=json_output)


@app.command()
def connect(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Bring an already-enrolled Netbird peer up."""
    runtime = _get_runtime(ctx)
    workflow = build_connect_workflow(
        runtime.config,
        runtime.netbird,
        runtime.logger,
        lock=_action_lock(runtime, "connect"),
    )
    _run(runtime, "connect", workflow, args={}, json_output=json_output)


@app.command()
def notify(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Send the boot notification; delivery failures never fail the boot."""
    runtime = _get_runtime(ctx)
    workflow = build_notify_workflow(
        runtime.config,
        runtime.logger,
        netbird=runtime.netbird,
        lock=_action_lock(runtime, "notify"),
        dry_run=dry_run,
    )
    _run(runtime, "notify", workflow, args={"dry_run": dry_run}, json_output=json_output)


def _markers(config: AppConfig) -> dict[str, Marker]:
    return {
        "discovery": Marker(name="discovery-applied", path=config.discovery_marker),
        "enrollment": enrollment_marker(config),
    }


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show marker state and the presence of hand-off files."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("status", args={"json": json_output}) as op:
        markers = {name: marker.describe() for name, marker in _markers(config).items()}
        files = {
            "bootstrap_file": config.bootstrap_file,
            "setup_key_file": config.netbird.setup_key_file,
            "ntfy_config_file": config.notify.config_file,
        }
        data: dict[str, object] = {
            "markers": markers,
            "files": {
                key: {"path": str(path), "exists": path.exists()} for key, path in files.items()
            },
            "vpn": runtime.netbird.status_text(),
        }
        if json_output:
            console.print_json(data=data)
            op.success("Reported status as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Item", style="bold")
        table.add_column("Path")
        table.add_column("State")
        for name, info in markers.items():
            table.add_row(
                f"marker:{name}",
                str(info["path"]),
                "[green]set[/green]" if info["set"] else "not set",
            )
        for key, path in files.items():
            table.add_row(key, str(path), "present" if path.exists() else "missing")
        table.add_row("vpn", config.netbird.daemon_addr, str(data["vpn"]))
        console.print(table)
        op.success("Reported status.", changed=0)


@app.command()
def reset(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(
        None,
        help="Markers to clear: discovery, enrollment.",
    ),
    all_markers: bool = typer.Option(False, "--all", help="Clear every marker."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Clear completion markers so an action runs again on next start."""
    runtime = _get_runtime(ctx)
    available = _markers(runtime.config)
    requested = list(available) if all_markers else list(dict.fromkeys(names or []))

    with runtime.logger.operation(
        "reset",
        args={"markers": requested, "all": all_markers, "yes": yes},
        target={"kind": "marker"},
    ) as op:
        if not requested:
            _command_error(op, "Name at least one marker or pass --all.")
        unknown = [name for name in requested if name not in available]
        if unknown:
            allowed = ", ".join(sorted(available))
            _command_error(op, f"Unknown marker(s): {', '.join(unknown)}. Allowed: {allowed}.")

        if not yes:
            if not sys.stdin.isatty():
                _command_error(op, "reset requires --yes when not running interactively.")
            if not typer.confirm(f"Clear marker(s) {', '.join(requested)}?", default=False):
                console.print("Aborted.")
                op.warning("Reset aborted by operator.", changed=0, rc=0)
                return

        cleared: list[str] = []
        for name in requested:
            try:
                if available[name].clear():
                    cleared.append(name)
            except MarkerError as exc:
                _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        for name in requested:
            state = "cleared" if name in cleared else "was not set"
            console.print(f"{name}: {state}")
        op.success(
            f"Cleared {len(cleared)} marker(s).",
            changed=len(cleared),
            context={"cleared": cleared},
        )


units_app = typer.Typer(help="Render the systemd units that drive sensorctl.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(units_app, name="units")
app.add_typer(config_app, name="config")


@units_app.command("render")
def units_render(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Print the unit files instead of writing them.",
    ),
) -> None:
    """Write the one-shot units and reload systemd when they change."""
    runtime = _get_runtime(ctx)
    specs = default_unit_specs(runtime.config)
    with runtime.logger.operation(
        "units render",
        args={"dry_run": dry_run},
        target={"kind": "systemd", "dir": runtime.config.systemd.unit_dir},
    ) as op:
        try:
            result = runtime.systemd_provider.render_units(specs, dry_run=dry_run)
        except SystemdError as exc:
            _command_error(op, f"Unit render failed: {exc}", rc=int(ExitCode.ENVIRONMENT))
        except OSError as exc:
            _command_error(
                op,
                f"Unable to write units to {runtime.config.systemd.unit_dir}: {exc}",
                rc=int(ExitCode.ENVIRONMENT),
            )

        if dry_run:
            for name, text in result.rendered.items():
                console.rule(name)
                console.print(text, markup=False, highlight=False)
            console.print(f"[yellow]Dry run[/yellow]: {len(specs)} unit(s) rendered.")
            op.success("Dry run complete.", changed=0)
            return

        for spec in specs:
            state = "updated" if spec.unit_name in result.changed else "unchanged"
            console.print(f"{spec.unit_name}: {state}")
        if result.reloaded:
            console.print("[green]systemd daemon reloaded.[/green]")
        op.success(
            f"Rendered {len(specs)} unit(s).",
            changed=len(result.changed),
            context={"changed": result.changed},
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
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
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
