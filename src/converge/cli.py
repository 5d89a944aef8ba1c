"""converge command line.

Usage:
    converge plan                     # Show the changeset
    converge apply                    # Converge remote state onto the document
    converge apply --correct-drift    # Also revert drift found by the last refresh
    converge refresh                  # Read remote state back and report drift
    converge refresh --watch          # Refresh on an interval until interrupted
    converge destroy -t workspace     # Delete tracked resources

Exit codes:
    0  success
    1  partial failure (a node failed, was skipped or interrupted,
       or refresh could not read a resource)
    2  configuration error or unreadable state, nothing was changed
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from .config import Config, ConfigurationError
from .diff import ActionType, ChangeSet, ResourceChange
from .engine import Engine, build_registry
from .executor import ApplyResult, NodeStatus
from .main import LOG_FORMATS, setup_logging
from .refresh import DriftReport, DriftStatus
from .state import FileStateStore, StateStoreError

T = TypeVar("T")

EXIT_OK = 0
EXIT_CONFIGURATION_ERROR = 2

ACTION_SYMBOLS = {
    ActionType.CREATE: ("+", "green"),
    ActionType.UPDATE: ("~", "yellow"),
    ActionType.DELETE: ("-", "red"),
    ActionType.NO_OP: (" ", None),
}

STATUS_COLORS = {
    NodeStatus.APPLIED: "green",
    NodeStatus.NO_OP: None,
    NodeStatus.SKIPPED: "yellow",
    NodeStatus.INTERRUPTED: "yellow",
    NodeStatus.FAILED: "red",
}

DRIFT_COLORS = {
    DriftStatus.IN_SYNC: "green",
    DriftStatus.DRIFTED: "yellow",
    DriftStatus.MISSING: "red",
    DriftStatus.UNKNOWN: "red",
}


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return repr(value) if isinstance(value, str) else str(value)


def _engine(ctx: click.Context) -> Engine:
    """Build the engine, preferring a store and registry injected via ctx.obj."""
    obj = ctx.obj or {}
    config: Config = obj["config"]
    providers = obj.get("providers")
    if providers is None:
        providers = build_registry(config)
    store = obj.get("store") or FileStateStore(config.state_path)
    return Engine(config, store, providers)


def _guarded(ctx: click.Context, func: Callable[[], T]) -> T:
    """Run func, turning configuration and unreadable-state errors into exit code 2."""
    try:
        return func()
    except ConfigurationError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        ctx.exit(EXIT_CONFIGURATION_ERROR)
        raise  # unreachable, ctx.exit raises
    except StateStoreError as e:
        click.secho(f"State error: {e}", fg="red", err=True)
        ctx.exit(EXIT_CONFIGURATION_ERROR)
        raise


def _run_cancellable(make: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run a coroutine with SIGINT/SIGTERM setting its cancel event."""

    async def runner() -> T:
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, cancel_event.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not in the main thread
                pass
        try:
            return await make(cancel_event)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    return asyncio.run(runner())


def echo_change(change: ResourceChange) -> None:
    symbol, color = ACTION_SYMBOLS[change.action]
    click.secho(f"  {symbol} {change.logical_id} ({change.kind})", fg=color)
    if change.action != ActionType.UPDATE:
        return
    for attribute_change in change.changes:
        click.echo(
            f"      {attribute_change.attribute}: {_format_value(attribute_change.before)}"
            f" -> {_format_value(attribute_change.after)}"
        )
    if change.dependencies_changed:
        assert change.prior is not None
        click.echo(
            f"      dependencies: {sorted(change.prior.dependencies)} -> {sorted(change.depends_on)}"
        )


def echo_plan(changeset: ChangeSet) -> None:
    if not changeset.has_changes:
        click.secho("No changes. Remote state matches the document.", fg="green")
        return

    for change in changeset.actionable():
        echo_change(change)

    counts = changeset.counts()
    click.echo(
        f"\nPlan: {counts[ActionType.CREATE]} to create, {counts[ActionType.UPDATE]} to update, "
        f"{counts[ActionType.DELETE]} to delete, {counts[ActionType.NO_OP]} unchanged."
    )


def echo_apply_result(result: ApplyResult) -> None:
    for node in result.results.values():
        if node.status == NodeStatus.NO_OP:
            continue
        line = f"  {node.logical_id}: {node.action.value} {node.status.value}"
        if node.blocked_by:
            line += f" (blocked by {node.blocked_by})"
        elif node.error is not None:
            line += f" ({node.error})"
        click.secho(line, fg=STATUS_COLORS[node.status])

    summary = ", ".join(
        f"{len(result.by_status(status))} {status.value}"
        for status in NodeStatus
        if result.by_status(status)
    )
    click.secho(
        f"\nApply {'complete' if result.success else 'incomplete'}: {summary or 'nothing to do'}.",
        fg="green" if result.success else "red",
    )


def echo_drift_report(report: DriftReport) -> None:
    for drift in report.resources.values():
        click.secho(f"  {drift.logical_id}: {drift.status.value}", fg=DRIFT_COLORS[drift.status])
        for delta in drift.deltas:
            click.echo(
                f"      {delta.attribute}: applied {_format_value(delta.applied)}, "
                f"observed {_format_value(delta.observed)}"
            )
        if drift.error:
            click.echo(f"      {drift.error}")

    click.echo(
        "\nRefresh: "
        + ", ".join(f"{len(report.by_status(status))} {status.value}" for status in DriftStatus)
        + "."
    )


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option(
    "--document",
    "-f",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="CONVERGE_DOCUMENT",
    help="Declared-state YAML document",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path),
    envvar="CONVERGE_STATE_PATH",
    help="State file",
)
@click.option("--concurrency", type=int, envvar="CONVERGE_CONCURRENCY", help="Max in-flight operations")
@click.option(
    "--timeout",
    "operation_timeout",
    type=float,
    envvar="CONVERGE_OPERATION_TIMEOUT",
    help="Per-operation timeout in seconds",
)
@click.option(
    "--log-level",
    default="WARNING",
    envvar="CONVERGE_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.option(
    "--log-format",
    default="json",
    envvar="CONVERGE_LOG_FORMAT",
    type=click.Choice(LOG_FORMATS),
)
@click.pass_context
def cli(
    ctx: click.Context,
    document: Path | None,
    state_path: Path | None,
    concurrency: int | None,
    operation_timeout: float | None,
    log_level: str,
    log_format: str,
) -> None:
    """Converge remote resources onto a declared document."""
    setup_logging(level=log_level, log_format=log_format)

    overrides: dict[str, Any] = {
        "document_path": document,
        "state_path": state_path,
        "concurrency": concurrency,
        "operation_timeout_seconds": operation_timeout,
    }

    def load() -> Config:
        config = Config.from_env()
        return dataclasses.replace(
            config, **{key: value for key, value in overrides.items() if value is not None}
        )

    ctx.ensure_object(dict)
    ctx.obj["config"] = _guarded(ctx, load)


@cli.command()
@click.option("--correct-drift", is_flag=True, help="Revert drift recorded by the last refresh")
@click.pass_context
def plan(ctx: click.Context, correct_drift: bool) -> None:
    """Show what apply would change."""
    engine = _guarded(ctx, lambda: _engine(ctx))
    changeset = _guarded(ctx, lambda: engine.plan(correct_drift=correct_drift))
    echo_plan(changeset)


@cli.command()
@click.option("--correct-drift", is_flag=True, help="Revert drift recorded by the last refresh")
@click.pass_context
def apply(ctx: click.Context, correct_drift: bool) -> None:
    """Create, update and delete resources to match the document."""
    engine = _guarded(ctx, lambda: _engine(ctx))
    changeset = _guarded(ctx, lambda: engine.plan(correct_drift=correct_drift))
    echo_plan(changeset)
    if not changeset.has_changes:
        return

    result = _guarded(ctx, lambda: _run_cancellable(lambda event: engine.apply(changeset, event)))
    echo_apply_result(result)
    ctx.exit(result.exit_code)


@cli.command()
@click.option("--watch", is_flag=True, help="Keep refreshing until interrupted")
@click.option(
    "--interval",
    type=click.IntRange(min=1),
    envvar="CONVERGE_REFRESH_INTERVAL",
    help="Seconds between refreshes with --watch",
)
@click.option("--resource", "-r", "resources", multiple=True, help="Only refresh these ids")
@click.pass_context
def refresh(ctx: click.Context, watch: bool, interval: int | None, resources: tuple[str, ...]) -> None:
    """Read remote state back and report drift. Never changes resources."""
    engine = _guarded(ctx, lambda: _engine(ctx))

    if watch:
        watcher = engine.drift_watcher(interval, on_report=echo_drift_report)

        async def run_watch(cancel_event: asyncio.Event) -> DriftReport | None:
            stopper = asyncio.create_task(cancel_event.wait())
            stopper.add_done_callback(lambda _: watcher.shutdown())
            try:
                await watcher.run()
            finally:
                stopper.cancel()
            return watcher.last_report

        report = _guarded(ctx, lambda: _run_cancellable(run_watch))
        ctx.exit(report.exit_code if report is not None else EXIT_OK)

    report = _guarded(ctx, lambda: asyncio.run(engine.refresh(list(resources) or None)))
    echo_drift_report(report)
    ctx.exit(report.exit_code)


@cli.command()
@click.option("--target", "-t", "targets", multiple=True, help="Only destroy these ids")
@click.pass_context
def destroy(ctx: click.Context, targets: tuple[str, ...]) -> None:
    """Delete tracked resources, dependents first."""
    engine = _guarded(ctx, lambda: _engine(ctx))
    changeset = _guarded(ctx, lambda: engine.plan_destroy(list(targets) or None))
    echo_plan(changeset)
    if not changeset.has_changes:
        return

    result = _guarded(ctx, lambda: _run_cancellable(lambda event: engine.apply(changeset, event)))
    echo_apply_result(result)
    ctx.exit(result.exit_code)

