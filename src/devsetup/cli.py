"""Typer-powered command line interface for ``devsetup``.

Commands probe the host, resolve the step catalog into a dependency-ordered
plan and execute it. Every invocation is recorded as one structured operation
in ``operations.jsonl``; provisioning runs are additionally kept in the state
directory's ``history.yml``.
"""
from __future__ import annotations

import signal
import textwrap
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .actions import ActionContext
from .catalog import CatalogError, build_registry, load_catalog
from .config import AppConfig, ConfigError, load_config
from .engine import (
    ExecutionPlan,
    Outcome,
    OutcomeKind,
    RunStatus,
    Scheduler,
    SchedulerOptions,
    StepConfigError,
)
from .environment import EnvironmentFacts, probe
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import CommandRunner, PackageManagerProvider
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine, TemplateError

console = Console()

CONFIG_TAG = "config"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to devsetup's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)
ONLY_OPTION = typer.Option(
    None,
    "--only",
    help="Comma-separated step names or tags to include (dependencies are added).",
)
CONFIG_ONLY_OPTION = typer.Option(
    False,
    "--config-only",
    help="Only apply configuration steps (shell rc files, prompt theme, git).",
)

_OUTCOME_STYLE = {
    OutcomeKind.INSTALLED: "[green]installed[/green]",
    OutcomeKind.SKIPPED: "[cyan]skipped[/cyan]",
    OutcomeKind.FAILED: "[yellow]failed[/yellow]",
    OutcomeKind.FAILED_CRITICAL: "[bold red]CRITICAL[/bold red]",
}
_STATUS_MESSAGES = {
    RunStatus.SUCCESS: "Provisioning completed successfully.",
    RunStatus.DEGRADED: "Provisioning completed with non-critical failures.",
    RunStatus.FAILED: "Provisioning failed: critical steps did not complete.",
}
_STATUS_COLOURS = {
    RunStatus.SUCCESS: "green",
    RunStatus.DEGRADED: "yellow",
    RunStatus.FAILED: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Declarative developer workstation provisioning.

        devsetup detects the host environment, resolves a catalog of
        idempotent steps into dependency order and applies whatever is
        missing. Running it again only changes what drifted.
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
    history: StateRegistry


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
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        history=StateRegistry(config.state_dir),
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
        help="Show the devsetup version and exit.",
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
            console.print(f"devsetup {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _probe_host(op: OperationScope, *, quiet: bool = False) -> EnvironmentFacts:
    facts = probe()
    op.add_step("probe", detail=facts.to_dict())
    if not quiet:
        for warning in facts.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
    return facts


def _action_context(runtime: RuntimeContext, facts: EnvironmentFacts) -> ActionContext:
    runner = CommandRunner(use_sudo=facts.needs_sudo)
    return ActionContext(
        config=runtime.config,
        runner=runner,
        packages=PackageManagerProvider(facts.package_manager, runner),
        templates=runtime.templates,
    )


def _build_plan(
    op: OperationScope,
    runtime: RuntimeContext,
    facts: EnvironmentFacts,
    *,
    only: str | None = None,
    config_only: bool = False,
) -> ExecutionPlan:
    """Load the catalog and resolve it into a (possibly filtered) plan."""
    try:
        catalog = load_catalog(runtime.config.catalog_file)
        registry = build_registry(catalog, facts, _action_context(runtime, facts))
        plan = registry.build()
    except (CatalogError, StepConfigError, TemplateError) as exc:
        _command_error(op, f"Invalid step catalog: {exc}")

    selectors = _split_csv(only)
    if not selectors and not config_only:
        return plan

    names = [item for item in selectors if item in plan]
    tags = {item for item in selectors if item not in plan}
    if config_only:
        tags.add(CONFIG_TAG)
    known_tags = {tag for step in plan for tag in step.tags}
    unknown = sorted(tags - known_tags)
    if unknown:
        _command_error(op, f"Unknown step names or tags: {', '.join(unknown)}")
    selected = plan.select(names=names, tags=tags)
    op.add_step("select", detail={"names": names, "tags": sorted(tags), "steps": len(selected)})
    return selected


def _plan_payload(plan: ExecutionPlan) -> list[dict[str, object]]:
    return [
        {
            "position": index + 1,
            "name": step.name,
            "description": step.description,
            "depends_on": list(step.depends_on),
            "critical": step.critical,
            "tags": sorted(step.tags),
            "resources": list(step.resources),
        }
        for index, step in enumerate(plan)
    ]


@contextmanager
def _cancel_on_interrupt(scheduler: Scheduler) -> Iterator[None]:
    """Turn SIGINT into cooperative cancellation while the scheduler runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        console.print(
            "[yellow]Interrupt received; finishing in-flight steps and skipping the rest.[/yellow]"
        )
        scheduler.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@app.command()
def facts(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show what devsetup detects about this host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "facts",
        args={"json": json_output},
        target={"kind": "host", "scope": "facts"},
    ) as op:
        detected = _probe_host(op, quiet=True)
        if json_output:
            console.print_json(data=detected.to_dict())
            op.success("Reported environment facts as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Fact", style="bold")
        table.add_column("Value")
        for key, value in detected.to_dict().items():
            if key == "warnings":
                continue
            table.add_row(key, str(value))
        console.print(table)
        for warning in detected.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        op.success("Reported environment facts.", changed=0, warnings=list(detected.warnings))


@app.command()
def plan(
    ctx: typer.Context,
    only: str | None = ONLY_OPTION,
    config_only: bool = CONFIG_ONLY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the steps that would run, in execution order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"only": only, "config_only": config_only, "json": json_output},
        target={"kind": "host", "scope": "plan"},
    ) as op:
        detected = _probe_host(op, quiet=json_output)
        execution_plan = _build_plan(op, runtime, detected, only=only, config_only=config_only)
        payload = _plan_payload(execution_plan)

        if json_output:
            console.print_json(data={"facts": detected.to_dict(), "steps": payload})
            op.success("Reported execution plan as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        table.add_column("Step", style="bold")
        table.add_column("Depends on")
        table.add_column("Critical")
        table.add_column("Tags")
        if not payload:
            table.add_row("", "(none)", "", "", "")
        for index, step in enumerate(execution_plan, start=1):
            table.add_row(
                str(index),
                step.name,
                ", ".join(step.depends_on),
                "[red]yes[/red]" if step.critical else "no",
                ", ".join(sorted(step.tags)),
            )
        console.print(table)
        op.success("Reported execution plan.", changed=0, context={"steps": len(payload)})


@app.command()
def run(
    ctx: typer.Context,
    only: str | None = ONLY_OPTION,
    config_only: bool = CONFIG_ONLY_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Evaluate every step but do not apply anything.",
    ),
    max_workers: int | None = typer.Option(
        None,
        "--max-workers",
        min=1,
        help="Run independent steps on up to N worker threads.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision the host: apply every step that is not already satisfied."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    effective_dry_run = dry_run or config.run.dry_run
    workers = max_workers if max_workers is not None else config.max_workers
    args = {
        "only": only,
        "config_only": config_only,
        "dry_run": effective_dry_run,
        "max_workers": workers,
        "json": json_output,
    }
    with runtime.logger.operation(
        "run",
        args=args,
        target={"kind": "host", "scope": "provision"},
    ) as op:
        detected = _probe_host(op, quiet=json_output)
        execution_plan = _build_plan(
            op,
            runtime,
            detected,
            only=only,
            config_only=config_only,
        )

        def _on_outcome(name: str, outcome: Outcome) -> None:
            op.add_step(name, status=outcome.kind.value, detail=outcome.reason)
            if json_output:
                return
            line = f"{_OUTCOME_STYLE[outcome.kind]} {name}"
            if outcome.reason:
                line = f"{line} [dim]({outcome.reason})[/dim]"
            console.print(line)

        scheduler = Scheduler(
            options=SchedulerOptions(
                max_workers=workers,
                dry_run=effective_dry_run,
            ),
            locks=runtime.locks,
            on_outcome=_on_outcome,
        )
        try:
            with runtime.locks.run_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                with _cancel_on_interrupt(scheduler):
                    ledger = scheduler.run(execution_plan, detected)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))

        summary = ledger.summary()
        payload = ledger.to_payload()
        warnings = list(detected.warnings)
        history_error: str | None = None
        try:
            runtime.history.append_history(
                {"dry_run": effective_dry_run, "cancelled": scheduler.cancelled, **payload},
                limit=config.history_limit,
            )
        except (OSError, StateRegistryError) as exc:
            history_error = f"Failed to record run history: {exc}"
            warnings.append(history_error)

        if json_output:
            console.print_json(
                data={"facts": detected.to_dict(), "dry_run": effective_dry_run, **payload}
            )
        else:
            console.print()
            console.print(ledger.render(), markup=False, highlight=False)
            if history_error is not None:
                console.print(f"[yellow]Warning:[/yellow] {history_error}")

        rc = summary.exit_code()
        message = _STATUS_MESSAGES[summary.status]
        if scheduler.cancelled:
            message = f"{message} The run was cancelled."
        log_context = {"summary": payload["summary"], "dry_run": effective_dry_run}
        failures = [f"{entry.name}: {entry.outcome.reason}" for entry in ledger.failures()]

        if summary.status is RunStatus.SUCCESS:
            op.success(
                message,
                changed=summary.installed,
                warnings=warnings or None,
                context=log_context,
            )
        elif summary.status is RunStatus.DEGRADED:
            op.warning(
                message,
                rc=rc,
                warnings=warnings or None,
                errors=failures,
                changed=summary.installed,
                context=log_context,
            )
        else:
            op.error(
                message,
                rc=rc,
                errors=failures,
                warnings=warnings or None,
                context=log_context,
            )
        if not json_output:
            colour = _STATUS_COLOURS[summary.status]
            console.print(f"[{colour}]{message}[/{colour}]")
        if rc != 0:
            raise typer.Exit(code=rc)


@app.command()
def verify(
    ctx: typer.Context,
    only: str | None = ONLY_OPTION,
    config_only: bool = CONFIG_ONLY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check every step's idempotency test without applying anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "verify",
        args={"only": only, "config_only": config_only, "json": json_output},
        target={"kind": "host", "scope": "verify"},
    ) as op:
        detected = _probe_host(op, quiet=json_output)
        execution_plan = _build_plan(op, runtime, detected, only=only, config_only=config_only)

        results: list[dict[str, object]] = []
        for step in execution_plan:
            try:
                satisfied = bool(step.is_satisfied(detected))
                error = None
            except Exception as exc:  # noqa: BLE001 - reported per step
                satisfied = False
                error = str(exc) or type(exc).__name__
            entry: dict[str, object] = {
                "name": step.name,
                "satisfied": satisfied,
                "critical": step.critical,
            }
            if error is not None:
                entry["error"] = error
            results.append(entry)
            op.add_step(
                step.name,
                status="satisfied" if satisfied else "missing",
                detail=error,
            )

        missing = [str(entry["name"]) for entry in results if not entry["satisfied"]]
        if json_output:
            console.print_json(data={"steps": results, "missing": missing})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Step", style="bold")
            table.add_column("Status")
            table.add_column("Detail")
            for entry in results:
                if entry["satisfied"]:
                    status = "[green]present[/green]"
                elif entry["critical"]:
                    status = "[bold red]missing[/bold red]"
                else:
                    status = "[yellow]missing[/yellow]"
                table.add_row(str(entry["name"]), status, str(entry.get("error") or ""))
            console.print(table)

        if not missing:
            if not json_output:
                console.print("[green]Everything is in place.[/green]")
            op.success("All steps satisfied.", changed=0)
            return
        if not json_output:
            console.print(f"[yellow]{len(missing)} step(s) not satisfied.[/yellow]")
        op.warning(
            "Some steps are not satisfied.",
            rc=int(ExitCode.PARTIAL),
            warnings=missing,
            changed=0,
        )
        raise typer.Exit(code=int(ExitCode.PARTIAL))


@app.command()
def history(
    ctx: typer.Context,
    limit: int = typer.Option(
        10,
        "--limit",
        min=1,
        help="Show at most this many recent runs.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show recorded provisioning runs, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "history",
        args={"limit": limit, "json": json_output},
        target={"kind": "state", "scope": "history"},
    ) as op:
        try:
            runs = runtime.history.read_history()
        except StateRegistryError as exc:
            _command_error(op, f"Failed to read run history: {exc}", rc=int(ExitCode.ENVIRONMENT))
        recent = list(reversed(runs))[:limit]

        if json_output:
            console.print_json(data={"runs": recent})
            op.success("Reported run history as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("When", style="bold")
        table.add_column("Status")
        table.add_column("Installed", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Critical")
        if not recent:
            table.add_row("(none)", "", "", "", "", "")
        for entry in recent:
            summary = entry.get("summary") or {}
            if not isinstance(summary, dict):
                summary = {}
            status = str(summary.get("status", "unknown"))
            if entry.get("dry_run"):
                status = f"{status} (dry run)"
            table.add_row(
                str(entry.get("timestamp", "")),
                status,
                str(summary.get("installed", 0)),
                str(summary.get("skipped", 0)),
                str(summary.get("failed", 0)),
                ", ".join(summary.get("critical_failures") or []),
            )
        console.print(table)
        op.success("Reported run history.", changed=0, context={"runs": len(recent)})


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
