"""
CLI for Chisel
Plans, applies and checks modules for drift against the local host
"""

import asyncio
import dataclasses
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

import click
import yaml
from tabulate import tabulate

from chisel.config import Config, get_config
from chisel.diff import Action, ExecutionReport, OperationPhase, Plan
from chisel.drift import DriftReport, DriftScheduler
from chisel.errors import ChiselError
from chisel.module import Module, load_module
from chisel.notifications import DriftNotifier, LogChannel, WebhookChannel
from chisel.reconciler import ApplyResult, Reconciler

logger = logging.getLogger(__name__)

ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NOOP: " ",
}

EXIT_DRIFT = 2


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _format_changes(changes: Dict[str, Dict[str, Any]]) -> str:
    return ", ".join(
        f"{key}: {change.get('from')!r} -> {change.get('to')!r}"
        for key, change in changes.items()
    )


def _load(filename: str) -> Module:
    try:
        return load_module(filename)
    except ChiselError as e:
        raise click.ClickException(str(e))


def render_plan(plan: Plan) -> str:
    rows = []
    for entry in plan.entries:
        diff = entry.diff
        if entry.error is not None:
            rows.append(["!", diff.resource_id, "error", str(entry.error)])
            continue
        rows.append(
            [
                ACTION_SYMBOLS[diff.action],
                diff.resource_id,
                diff.action.value,
                _format_changes(diff.changes),
            ]
        )
    table = tabulate(rows, headers=["", "Resource", "Action", "Changes"], tablefmt="grid")
    summary = plan.summary
    return (
        f"{table}\n\nPlan: {summary.to_create} to create, {summary.to_update} to "
        f"update, {summary.to_delete} to delete, {summary.no_changes} unchanged, "
        f"{summary.errors} error(s)"
    )


def render_report(report: ExecutionReport) -> str:
    rows = []
    for result in report.results:
        rows.append(
            [
                result.resource_id,
                result.action.value,
                "rollback" if result.phase == OperationPhase.ROLLBACK else "apply",
                "✓" if result.success else "✗",
                f"{result.duration:.2f}s",
                str(result.error) if result.error else "",
            ]
        )
    return tabulate(
        rows,
        headers=["Resource", "Action", "Phase", "Success", "Duration", "Error"],
        tablefmt="grid",
    )


def render_drift(report: DriftReport, output: str) -> str:
    if output == "json":
        return json.dumps(report.to_dict(), indent=2)
    if output == "yaml":
        return yaml.dump(report.to_dict(), default_flow_style=False)

    rows = []
    for result in report.results:
        if result.error:
            status = "error"
        elif result.has_drift:
            status = "drifted"
        else:
            status = "in sync"
        rows.append(
            [result.resource_id, status, _format_changes(result.changes) or result.error or ""]
        )
    table = tabulate(rows, headers=["Resource", "Status", "Details"], tablefmt="grid")
    return (
        f"{table}\n\n{report.drift_detected} of {report.total_checked} resource(s) "
        f"drifted, {report.errors} error(s)"
    )


def _engine_config(
    config: Config,
    no_rollback: bool = False,
    concurrency: Optional[int] = None,
    timeout: Optional[float] = None,
) -> Config:
    overrides: Dict[str, Any] = {}
    if no_rollback:
        overrides["enable_rollback"] = False
    if concurrency is not None:
        overrides["max_concurrency"] = concurrency
    if timeout is not None:
        overrides["operation_timeout"] = timeout
    if not overrides:
        return config
    config = dataclasses.replace(
        config, engine=dataclasses.replace(config.engine, **overrides)
    )
    try:
        config.validate()
    except ValueError as e:
        raise click.BadParameter(str(e))
    return config


def build_notifier(config: Config) -> DriftNotifier:
    channels = [LogChannel()]
    notifications = config.notifications
    if notifications.webhook_url:
        channels.append(
            WebhookChannel(
                notifications.webhook_url,
                headers=notifications.webhook_headers,
                timeout=notifications.webhook_timeout,
            )
        )
    return DriftNotifier(threshold=config.drift.notify_threshold, channels=channels)


def _install_signal_handlers(callback) -> None:
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        callback()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)


@click.group()
@click.option("--log-level", default=None, help="Logging level (defaults to LOG_LEVEL)")
@click.pass_context
def cli(ctx, log_level):
    """Chisel - declarative configuration reconciliation"""
    try:
        config = get_config()
    except ValueError as e:
        raise click.ClickException(f"invalid configuration: {e}")
    _configure_logging(log_level or config.logging.level)
    ctx.obj = config


@cli.command()
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def plan(config, filename):
    """Show the changes needed to reach the declared state"""
    module = _load(filename)
    reconciler = Reconciler(config=config)

    try:
        result = asyncio.run(reconciler.plan(module))
    except ChiselError as e:
        raise click.ClickException(str(e))

    click.echo(render_plan(result))
    if result.errors:
        sys.exit(1)


@cli.command()
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.option("--no-rollback", is_flag=True, help="Keep applied changes when a batch fails")
@click.option("--concurrency", "-c", type=int, default=None, help="Maximum parallel operations")
@click.option("--timeout", "-t", type=float, default=None, help="Per-operation timeout in seconds")
@click.option("--yes", "-y", is_flag=True, help="Apply without asking for confirmation")
@click.pass_obj
def apply(config, filename, no_rollback, concurrency, timeout, yes):
    """Apply a module to the local host"""
    config = _engine_config(config, no_rollback, concurrency, timeout)
    module = _load(filename)
    reconciler = Reconciler(config=config)

    try:
        current_plan = asyncio.run(reconciler.plan(module))
    except ChiselError as e:
        raise click.ClickException(str(e))

    click.echo(render_plan(current_plan))
    if not current_plan.has_changes:
        click.echo("\nNo changes. Infrastructure matches the configuration.")
        if current_plan.errors:
            sys.exit(1)
        return

    if not yes:
        click.confirm("\nApply these changes?", abort=True)

    async def run() -> ApplyResult:
        cancel_event = asyncio.Event()
        _install_signal_handlers(cancel_event.set)
        return await reconciler.apply(module, cancel_event=cancel_event, plan=current_plan)

    try:
        result = asyncio.run(run())
    except ChiselError as e:
        raise click.ClickException(str(e))

    if result.report.results:
        click.echo("")
        click.echo(render_report(result.report))
    for resource_id in result.skipped:
        click.echo(f"Skipped: {resource_id}", err=True)

    if result.report.error is not None:
        click.echo(f"\nApply failed: {result.report.error}", err=True)
        sys.exit(1)
    if result.skipped:
        click.echo("\nApply incomplete: some resources were skipped", err=True)
        sys.exit(1)
    click.echo("\nApply complete!")


@cli.command()
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def drift(config, filename, output):
    """Check a module for drift without changing anything"""
    module = _load(filename)
    reconciler = Reconciler(config=config)

    try:
        report = asyncio.run(reconciler.check_drift(module))
    except ChiselError as e:
        raise click.ClickException(str(e))

    click.echo(render_drift(report, output))
    if report.drift_detected:
        sys.exit(EXIT_DRIFT)


@cli.command()
@click.argument("filenames", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--interval",
    "-i",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between checks",
)
@click.pass_obj
def watch(config, filenames, interval):
    """Check modules for drift periodically until interrupted"""
    modules: List[Module] = [_load(filename) for filename in filenames]

    reconciler = Reconciler(config=config)
    drift_config = config.drift

    async def run() -> None:
        scheduler = DriftScheduler(
            reconciler.detector,
            interval=interval or drift_config.interval,
            notifier=build_notifier(config),
            max_retries=drift_config.max_retries,
            retry_delay=drift_config.retry_delay,
            timeout=drift_config.timeout,
        )
        for module in modules:
            scheduler.add_module(module)

        _install_signal_handlers(scheduler.request_stop)
        await scheduler.start()

        reports = scheduler.recent_reports()
        click.echo(f"Stopped after {len(reports)} drift check(s)")

    asyncio.run(run())


if __name__ == "__main__":
    cli()
