"""CLI entry point for confguard deployments, boot-cycle hooks and rollback."""

from __future__ import annotations

import importlib
import json
import shutil
import subprocess
import sys
from collections.abc import Sequence
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, NoReturn

if TYPE_CHECKING:  # pragma: no cover - typing only
    import typer
    from typer import Typer as TyperType
else:  # pragma: no cover - runtime fallback for typing
    typer = importlib.import_module("typer")
    TyperType = Any

from pydantic import ValidationError as SettingsError
from rich.console import Console

from confguard.boot.units import install_units
from confguard.chains.deploy_chain import DeploymentChain
from confguard.core.constants import (
    EXIT_BACKUP,
    EXIT_BOOT_PENDING,
    EXIT_COMMIT,
    EXIT_ROLLBACK,
    EXIT_SESSION_BUSY,
    EXIT_TRANSACTION,
    EXIT_UNEXPECTED,
    EXIT_VALIDATION,
)
from confguard.core.errors import (
    BackupError,
    BootPending,
    CommitError,
    ConfGuardError,
    ManifestNotFound,
    RunClosed,
    RunNotFound,
    SessionBusy,
    TransactionError,
    ValidationError,
)
from confguard.core.plan import load_plan
from confguard.core.settings import GuardSettings
from confguard.utils.logging import configure_logging

app: TyperType = typer.Typer(
    help="Transactional configuration deployment with boot-time rollback."
)

GRUB_DEFAULTS = "/etc/default/grub"


RootOption = Annotated[
    Path | None,
    typer.Option("--root", help="Live filesystem root (default: /)."),
]
StateDirOption = Annotated[
    Path | None,
    typer.Option("--state-dir", help="Directory for sentinels, lock and staging."),
]
BackupRootOption = Annotated[
    Path | None,
    typer.Option("--backup-root", help="Directory holding backup runs."),
]
LogFileOption = Annotated[
    Path | None,
    typer.Option("--log-file", help="Append structured JSON log lines to this file."),
]
VerboseFlag = Annotated[
    bool,
    typer.Option("--verbose", help="Emit debug-level log events."),
]
JsonFlag = Annotated[
    bool,
    typer.Option("--json", help="Emit JSON instead of human-readable output."),
]
PlanArgument = Annotated[
    Path,
    typer.Argument(help="JSON deployment plan.", exists=True, dir_okay=False),
]
TouchOption = Annotated[
    list[str] | None,
    typer.Option("--touch", help="Path to back up before the session (repeatable)."),
]
ForceFlag = Annotated[
    bool,
    typer.Option("--force", help="Confirm the boot without waiting for the dwell time."),
]
RunIdArgument = Annotated[
    str,
    typer.Argument(help="Run identifier, or 'last' for the most recent run."),
]
RegenerateFlag = Annotated[
    bool,
    typer.Option("--regenerate/--no-regenerate", help="Rebuild the bootloader menu."),
]
ExecutableOption = Annotated[
    str | None,
    typer.Option("--executable", help="confguard executable the units should run."),
]


def exit_code_for(exc: BaseException) -> int:
    """Map an exception to the CLI exit-code class."""
    match exc:
        case ValidationError():
            return EXIT_VALIDATION
        case BackupError() | RunClosed():
            return EXIT_BACKUP
        case TransactionError():
            return EXIT_TRANSACTION
        case RunNotFound() | ManifestNotFound():
            return EXIT_ROLLBACK
        case SessionBusy():
            return EXIT_SESSION_BUSY
        case CommitError():
            return EXIT_COMMIT
        case BootPending():
            return EXIT_BOOT_PENDING
        case _:
            return EXIT_UNEXPECTED


def _fail(exc: ConfGuardError, json_output: bool = False) -> NoReturn:
    if json_output:
        typer.echo(json.dumps(exc.to_dict(), indent=2, sort_keys=True))
    else:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
    raise typer.Exit(code=exit_code_for(exc)) from exc


def _emit(payload: dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _settings(ctx: typer.Context) -> GuardSettings:
    settings: GuardSettings = ctx.obj
    return settings


def _chain(
    ctx: typer.Context, json_output: bool = False, regenerate: bool = False
) -> DeploymentChain:
    settings = _settings(ctx)
    regenerators = {}
    if regenerate and settings.grub_mkconfig_cmd:
        regenerators[GRUB_DEFAULTS] = partial(
            subprocess.run, list(settings.grub_mkconfig_cmd), check=True
        )
    return DeploymentChain(
        settings,
        ui=Console(stderr=True, quiet=json_output),
        regenerators=regenerators,
    )


def main(
    ctx: typer.Context,
    root: RootOption = None,
    state_dir: StateDirOption = None,
    backup_root: BackupRootOption = None,
    log_file: LogFileOption = None,
    verbose: VerboseFlag = False,
) -> None:
    """Resolve settings and configure logging for every command."""

    try:
        settings = GuardSettings.from_env(
            live_root=root,
            state_dir=state_dir,
            backup_root=backup_root,
            log_file=log_file,
        )
    except SettingsError as exc:
        typer.secho(f"Invalid settings: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_UNEXPECTED) from exc
    configure_logging(settings.log_file, verbose=verbose)
    ctx.obj = settings


def deploy(
    ctx: typer.Context,
    plan_path: PlanArgument,
    touch: TouchOption = None,
    json_output: JsonFlag = False,
) -> None:
    """Run one deployment session over a JSON plan."""

    try:
        plan = load_plan(plan_path)
    except (OSError, ValueError) as exc:
        typer.secho(f"Invalid plan {plan_path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_VALIDATION) from exc

    chain = _chain(ctx, json_output)
    try:
        report = chain.deploy(plan.items, touch_paths=touch or plan.touch_paths)
    except ConfGuardError as exc:
        _fail(exc, json_output)

    problems = report.rejected_count or report.failed_count
    if json_output:
        _emit(report.to_dict())
    else:
        typer.secho(
            f"Run {report.run_id}: {len(report.outcomes)} items, "
            f"{report.rejected_count} rejected, {report.failed_count} failed",
            fg=typer.colors.YELLOW if problems else typer.colors.GREEN,
        )
        if report.reboot_required:
            typer.secho(
                "Reboot required to activate staged configuration.", fg=typer.colors.YELLOW
            )

    if report.rejected_count:
        raise typer.Exit(code=EXIT_VALIDATION)
    if report.failed_count:
        raise typer.Exit(code=EXIT_TRANSACTION)


def commit(ctx: typer.Context, json_output: JsonFlag = False) -> None:
    """Apply the staged tree (run early at boot)."""

    try:
        report = _chain(ctx, json_output).commit_at_boot()
    except ConfGuardError as exc:
        _fail(exc, json_output)
    if json_output:
        _emit(report.to_dict())
    else:
        typer.secho(
            f"Commit {report.status}: {len(report.applied)} applied, {len(report.failed)} failed",
            fg=typer.colors.GREEN,
        )


def verify(ctx: typer.Context, force: ForceFlag = False, json_output: JsonFlag = False) -> None:
    """Confirm the current boot once it has been stable for the dwell time."""

    report = _chain(ctx, json_output).verify(force=force)
    if json_output:
        _emit(report.to_dict())
    else:
        typer.echo(f"verify: {report.status}")


def guard(ctx: typer.Context, json_output: JsonFlag = False) -> None:
    """Roll back the latest run if the previous boot was never confirmed."""

    try:
        report = _chain(ctx, json_output, regenerate=True).boot_guard()
    except ConfGuardError as exc:
        _fail(exc, json_output)
    if json_output:
        _emit(report.to_dict())
    else:
        typer.echo(f"guard: {report.action} ({report.reason})")
    if report.action == "rollback_failed":
        raise typer.Exit(code=EXIT_ROLLBACK)
    if report.result is not None and report.result.failed:
        raise typer.Exit(code=EXIT_ROLLBACK)


def status(ctx: typer.Context, json_output: JsonFlag = False) -> None:
    """Show where the host is in the stage/pending/verified cycle."""

    current = _chain(ctx, json_output).status()
    if json_output:
        _emit(current.to_dict())
        return
    typer.echo(f"phase: {current.phase}")
    typer.echo(f"active run: {current.active_run or '-'}")
    typer.echo(f"latest run: {current.latest_run or '-'}")
    if current.pending_since:
        typer.echo(f"pending since: {current.pending_since}")
    if current.verified_at:
        typer.echo(f"verified at: {current.verified_at}")
    for target in current.staged_targets:
        typer.echo(f"staged: {target}")


def runs(ctx: typer.Context, json_output: JsonFlag = False) -> None:
    """List backup runs, oldest first."""

    run_ids = _chain(ctx, json_output).list_runs()
    if json_output:
        typer.echo(json.dumps(run_ids))
        return
    for run_id in run_ids:
        typer.echo(run_id)


def rollback(
    ctx: typer.Context,
    run_id: RunIdArgument = "last",
    regenerate: RegenerateFlag = True,
    json_output: JsonFlag = False,
) -> None:
    """Restore every original recorded by a run."""

    chain = _chain(ctx, json_output, regenerate=regenerate)
    try:
        result = chain.rollback(run_id, regenerate=regenerate)
    except ConfGuardError as exc:
        _fail(exc, json_output)
    if json_output:
        _emit(result.to_dict())
    else:
        typer.secho(
            f"Rollback of {result.run_id}: {result.restored} restored, {result.failed} failed",
            fg=typer.colors.GREEN if result.verification_ok else typer.colors.RED,
        )
    if result.failed or not result.verification_ok:
        raise typer.Exit(code=EXIT_ROLLBACK)


def install_units_command(ctx: typer.Context, executable: ExecutableOption = None) -> None:
    """Write the systemd units that schedule guard, commit and verify."""

    settings = _settings(ctx)
    exe = executable or shutil.which("confguard") or sys.argv[0]
    try:
        written = install_units(settings, exe)
    except OSError as exc:
        typer.secho(f"Failed to install units: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_UNEXPECTED) from exc
    for path in written:
        typer.secho(f"Installed {path}", fg=typer.colors.GREEN)


def run_cli(args: Sequence[str] | None = None) -> None:
    app(args=args)


app.callback()(main)
app.command("deploy")(deploy)
app.command("commit")(commit)
app.command("verify")(verify)
app.command("guard")(guard)
app.command("status")(status)
app.command("runs")(runs)
app.command("rollback")(rollback)
app.command("install-units")(install_units_command)

__all__ = ["app", "exit_code_for", "run_cli"]
