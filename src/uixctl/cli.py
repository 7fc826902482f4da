"""Typer-powered command line interface for ``uixctl``.

Commands resolve the active bridge instance (single or multimode), print the
UI settings view-model and identity, verify TLS material, and start or
inspect offline package updates. Every command runs inside a structured
operation so its outcome lands in ``operations.log``.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .bridge_config import BridgeConfigError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .multimode import RegistryError
from .orchestrator import ALLOWED_PACKAGES, UpdateValidationError
from .orchestrator import main as offline_update_main
from .providers.update_launcher import (
    UpdateInProgressError,
    UpdateLauncher,
    UpdateLaunchError,
)
from .resolver import InstanceConfig, InstanceConfigResolver, ResolverError
from .secret_store import SecretStoreError
from .tls import TLSConfigurationError, load_tls_bundle

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to uixctl's YAML settings file.",
)
INSTANCE_OPTION = typer.Option(
    None,
    "--instance",
    "-i",
    help="Multimode instance name (defaults to the first registered instance).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)

_RESOLUTION_ERRORS = (RegistryError, BridgeConfigError, ResolverError)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Homebridge UI instance control.

        Resolves bridge instance configuration and identity, and runs offline
        package updates with guaranteed lock cleanup.
        """
    ).strip(),
)
tls_app = typer.Typer(help="Inspect the UI's TLS material.")
update_app = typer.Typer(help="Start and inspect offline package updates.")

app.add_typer(tls_app, name="tls")
app.add_typer(update_app, name="update")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    _resolver: InstanceConfigResolver | None = None

    def resolver(self) -> InstanceConfigResolver:
        """Return the instance resolver, loading the registry on first use."""
        if self._resolver is None:
            self._resolver = InstanceConfigResolver(self.config)
        return self._resolver


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
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
        help="Show the uixctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"uixctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _resolve_instance(
    runtime: RuntimeContext,
    op: OperationScope,
    instance: str | None,
) -> InstanceConfig:
    """Resolve *instance* (or the default) translating failures to exit codes."""
    try:
        resolver = runtime.resolver()
        return resolver.resolve(instance) if instance else resolver.current
    except _RESOLUTION_ERRORS as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    except SecretStoreError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


def _emit_json(payload: Mapping[str, object]) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


@app.command()
def resolve(
    ctx: typer.Context,
    instance: str | None = INSTANCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the resolved paths and UI settings for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "resolve",
        args={"instance": instance, "json": json_output},
        target={"kind": "instance", "name": instance},
    ) as op:
        resolved = _resolve_instance(runtime, op, instance)
        payload = resolved.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold", no_wrap=True)
            table.add_column("Value")
            table.add_row("instance", resolved.multimode_instance or "(single)")
            for key, value in resolved.paths().items():
                table.add_row(key, str(value) if value else "-")
            table.add_row("insecure_mode", str(resolved.insecure_mode))
            table.add_row("no_timestamps", str(resolved.no_timestamps))
            table.add_row("port", str(resolved.ui.port))
            table.add_row("auth", resolved.ui.auth)
            table.add_row("theme", resolved.ui.theme)
            table.add_row("session_timeout", str(resolved.ui.session_timeout))
            console.print(table)
        op.success("Resolved instance configuration.", context={"paths": payload["paths"]})


@app.command()
def settings(
    ctx: typer.Context,
    instance: str | None = INSTANCE_OPTION,
) -> None:
    """Print the UI settings payload as JSON."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "settings",
        args={"instance": instance},
        target={"kind": "instance", "name": instance},
    ) as op:
        resolved = _resolve_instance(runtime, op, instance)
        _emit_json(runtime.resolver().settings_payload())
        op.success("Reported UI settings.", context={"instance": resolved.multimode_instance})


@app.command()
def instances(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List multimode instances, marking the default selection."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("instances", args={"json": json_output}) as op:
        try:
            registry = runtime.resolver().registry
        except RegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        if registry is None:
            _command_error(op, "Multimode is not configured (set UIX_MULTIMODE).")

        default = registry.default_instance.name
        entries = [
            {**descriptor.to_dict(), "default": descriptor.name == default}
            for descriptor in registry.instances
        ]
        if json_output:
            _emit_json({"instances": entries})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Instance", style="bold", no_wrap=True)
            table.add_column("Path")
            table.add_column("Plugins")
            table.add_column("Default")
            for entry in entries:
                table.add_row(
                    str(entry["name"]),
                    str(entry["path"]),
                    str(entry["customPluginPath"] or "-"),
                    "*" if entry["default"] else "",
                )
            console.print(table)
        op.success("Listed multimode instances.", context={"count": len(entries)})


@app.command()
def identity(
    ctx: typer.Context,
    instance: str | None = INSTANCE_OPTION,
) -> None:
    """Print the public instance identifier."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("identity", args={"instance": instance}) as op:
        resolved = _resolve_instance(runtime, op, instance)
        typer.echo(resolved.instance_id)
        op.success("Reported instance identity.")


@tls_app.command("verify")
def tls_verify(
    ctx: typer.Context,
    instance: str | None = INSTANCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate the TLS key/cert or pfx configured for the UI."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tls verify",
        args={"instance": instance, "json": json_output},
        target={"kind": "tls", "name": instance},
    ) as op:
        resolved = _resolve_instance(runtime, op, instance)
        ssl = resolved.ui.ssl
        if ssl is None or not ssl.configured:
            _command_error(op, "TLS is not configured for the UI.")
        try:
            bundle = load_tls_bundle(ssl, base_dir=resolved.storage_path)
        except TLSConfigurationError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        payload = bundle.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            console.print(f"Subject: {bundle.subject}")
            console.print(f"Valid until: {bundle.not_valid_after.isoformat()}")
        if bundle.expired():
            op.warning(
                "TLS certificate has expired.",
                warnings=[f"not_valid_after={bundle.not_valid_after.isoformat()}"],
                context=payload,
            )
            console.print("[yellow]Certificate has expired.[/yellow]")
            return
        op.success("TLS material is valid.", context=payload)


@update_app.command("run")
def update_run(
    ctx: typer.Context,
    package: str = typer.Argument(..., help=f"One of: {', '.join(ALLOWED_PACKAGES)}."),
    instance: str | None = INSTANCE_OPTION,
) -> None:
    """Start a detached offline update of PACKAGE."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update run",
        args={"package": package, "instance": instance},
        target={"kind": "package", "name": package},
    ) as op:
        resolved = _resolve_instance(runtime, op, instance)
        launcher = UpdateLauncher(resolved.storage_path, runtime.config.update)
        try:
            launch = launcher.launch(package)
        except UpdateValidationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except UpdateInProgressError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except UpdateLaunchError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        console.print(f"Started update of {launch.package} (pid {launch.pid}).")
        console.print(f"Log: {launch.log_path}")
        op.success(
            "Started offline update.",
            changed=1,
            context={"pid": launch.pid, "log": launch.log_path, "lock": launch.lock_path},
        )


@update_app.command("status")
def update_status(
    ctx: typer.Context,
    instance: str | None = INSTANCE_OPTION,
    lines: int = typer.Option(20, "--lines", "-n", min=0, help="Log lines to show."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether an update is running and show recent log output."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("update status", args={"instance": instance}) as op:
        resolved = _resolve_instance(runtime, op, instance)
        status = UpdateLauncher(resolved.storage_path, runtime.config.update).status(tail=lines)
        if json_output:
            _emit_json(status.to_dict())
        else:
            state = "[yellow]in progress[/yellow]" if status.in_progress else "[green]idle[/green]"
            console.print(f"Update: {state}")
            for line in status.log_tail:
                console.print(line, markup=False, highlight=False)
        op.success("Reported update status.", context={"in_progress": status.in_progress})


@update_app.command("offline")
def update_offline() -> None:
    """Run the update helper in the foreground using UIX_OFFLINE_UPDATE_* variables."""
    raise typer.Exit(code=offline_update_main())


def main() -> None:  # pragma: no cover - thin wrapper for console_scripts
    """Entry point used by the ``uixctl`` console script."""
    app()


__all__ = ["app", "main"]
