"""CLI entry point for ralph.

Commands:
- ralph init: Initialize .ralph/ in the current directory
- ralph create-item: Create a work item with a Definition of Done
- ralph create-gate: Create a gate record
- ralph run: Drive work items until done, failed or rolled back
- ralph status: Show items, gates, circuit breakers and escalations
- ralph govern: Check or enforce the gate policy
- ralph watchdog: Detect and act on stalled items
- ralph version: Print the version
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ralph import __version__
from ralph.cli_ui.status import StatusRenderer
from ralph.core.circuit import CircuitBreakerRegistry
from ralph.core.config import DEFAULT_CONFIG_YAML, RalphConfig, load_config
from ralph.core.engine import ExecutionEngine
from ralph.core.errors import RalphError
from ralph.core.gates import GateEvaluator
from ralph.core.models import (
    Constraints,
    DefinitionOfDone,
    Gate,
    GateStatus,
    Verifier,
    WorkItem,
)
from ralph.core.state import Database, EventType
from ralph.core.store import FileStore, ItemStore, new_gate_id, new_item_id, select_store
from ralph.core.watchdog import StoreWatchdogActions, Watchdog, WatchdogReport
from ralph.runner.agent import AgentClient
from ralph.runner.executor import VerifierRunner

console = Console()
logger = logging.getLogger(__name__)


def get_repo_path() -> Path:
    """Get the workspace path (current directory)."""
    return Path.cwd()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@dataclass
class Workspace:
    """Components wired from .ralph/config.yaml, built once per command."""

    root: Path
    config: RalphConfig
    db: Database
    store: ItemStore
    gates: GateEvaluator
    runner: VerifierRunner


def _open_workspace() -> Workspace:
    root = get_repo_path()
    if not (root / ".ralph").is_dir():
        raise RalphError("No .ralph directory found. Run 'ralph init' first.")
    config = load_config(root)
    runner = VerifierRunner(workdir=root, max_output_bytes=config.executor.max_output_bytes)
    store = select_store(config, root, runner=runner)
    # The registry is authoritative for gates; local files are the fallback
    sources = [store] if isinstance(store, FileStore) else [store, FileStore(root)]
    logger.debug(f"Using {store.name} store for {root}")
    return Workspace(
        root=root,
        config=config,
        db=Database(root / ".ralph" / "state.db"),
        store=store,
        gates=GateEvaluator(sources),
        runner=runner,
    )


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/red] {escape(str(e))}")
    sys.exit(1)


def _parse_verifier(ctx: click.Context, param: click.Parameter, values: tuple[str, ...]):
    verifiers = []
    for value in values:
        name, sep, command = value.partition("=")
        if not sep or not name.strip() or not command.strip():
            raise click.BadParameter(f"expected NAME=COMMAND, got {value!r}")
        verifiers.append((name.strip(), command.strip()))
    return verifiers


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", is_flag=True, help="Enable informational logging")
def main(verbose: bool) -> None:
    """Ralph - correctness-forcing work item executor.

    Drives each work item through attempts at an implementation agent until
    every verifier in its Definition of Done passes, or its budget runs out.
    """
    _configure_logging(verbose)


@main.command()
def init() -> None:
    """Initialize .ralph/ for this workspace."""
    root = get_repo_path()
    ralph_dir = root / ".ralph"

    if (ralph_dir / "config.yaml").exists():
        console.print("[yellow]Workspace already initialized[/yellow]")
        return

    (ralph_dir / "items").mkdir(parents=True, exist_ok=True)
    (ralph_dir / "gates").mkdir(parents=True, exist_ok=True)
    (ralph_dir / "config.yaml").write_text(DEFAULT_CONFIG_YAML)
    Database(ralph_dir / "state.db")

    console.print(
        Panel(
            "[green]Workspace initialized![/green]\n\n"
            f"Created: {escape(str(ralph_dir))}\n"
            "- config.yaml: Agent, retry, circuit and watchdog settings\n"
            "- items/: Work item records\n"
            "- gates/: Gate records\n"
            "- state.db: Event log and circuit breaker state",
            title="Ralph Initialized",
        )
    )


@main.command("create-item")
@click.argument("intent")
@click.option("--title", "-t", default="", help="Short title")
@click.option(
    "--verifier",
    "-v",
    "verifiers",
    multiple=True,
    callback=_parse_verifier,
    help="Verifier as NAME=COMMAND (repeatable, run in order)",
)
@click.option("--max-iterations", default=5, show_default=True, type=click.IntRange(min=1))
@click.option("--time-budget", type=click.FloatRange(min=0, min_open=True), help="Minutes")
@click.option("--lane", default="default", show_default=True)
@click.option("--priority", default=2, show_default=True, type=int)
@click.option("--evidence", is_flag=True, help="Attach verifier evidence on completion")
def create_item(
    intent: str,
    title: str,
    verifiers: list[tuple[str, str]],
    max_iterations: int,
    time_budget: float | None,
    lane: str,
    priority: int,
    evidence: bool,
) -> None:
    """Create a work item."""
    try:
        ws = _open_workspace()
        item = WorkItem(
            id=new_item_id(),
            title=title,
            intent=intent,
            dod=DefinitionOfDone(
                verifiers=[Verifier(name=n, command=c) for n, c in verifiers],
                evidence_required=evidence,
            ),
            constraints=Constraints(
                max_iterations=max_iterations, time_budget_minutes=time_budget
            ),
            lane=lane,
            priority=priority,
        )
        ws.store.put_item(item)
        ws.db.record(item.id, EventType.ITEM_CREATED, lane=lane, verifiers=len(verifiers))
    except RalphError as e:
        _fail(e)
        return

    console.print(f"[green]Created[/green] {item.id}")


@main.command("create-gate")
@click.argument("gate_type")
@click.option(
    "--status",
    "status_",
    type=click.Choice([s.value for s in GateStatus]),
    default=GateStatus.RED.value,
    show_default=True,
)
@click.option("--description", "-d", default="")
def create_gate(gate_type: str, status_: str, description: str) -> None:
    """Create a gate record."""
    try:
        ws = _open_workspace()
        gate = Gate(
            id=new_gate_id(),
            type=gate_type,
            status=GateStatus(status_),
            source=ws.store.name,
            description=description,
        )
        ws.store.put_gate(gate)
        ws.db.record(gate.id, EventType.GATE_UPDATED, gate_id=gate.id, gate_status=status_)
    except RalphError as e:
        _fail(e)
        return

    console.print(f"[green]Created[/green] {gate.id} ({status_})")


@main.command()
@click.argument("item_ids", nargs=-1, required=True)
@click.option("--workers", "-j", type=click.IntRange(min=1), help="Items to run concurrently")
def run(item_ids: tuple[str, ...], workers: int | None) -> None:
    """Run work items until done, failed or rolled back."""
    try:
        ws = _open_workspace()
        agent_cfg = ws.config.agent
        agent = AgentClient(
            cli_name=agent_cfg.cli,
            command=agent_cfg.command,
            timeout_seconds=agent_cfg.timeout_seconds,
            transient_exit_codes=tuple(agent_cfg.transient_exit_codes),
            model_id=agent_cfg.model_id,
            runner=ws.runner,
        )
        engine = ExecutionEngine(
            store=ws.store,
            agent=agent,
            db=ws.db,
            runner=ws.runner,
            circuits=CircuitBreakerRegistry(db=ws.db),
            gates=ws.gates,
            config=ws.config,
            workdir=ws.root,
        )
        outcomes = engine.run_items(list(item_ids), max_workers=workers)
    except RalphError as e:
        _fail(e)
        return

    table = Table(title="Run results")
    table.add_column("Item", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="right")
    table.add_column("Reason", max_width=60)
    for outcome in outcomes:
        status = outcome.status.value if outcome.status else "error"
        color = "green" if outcome.completed else "red"
        table.add_row(
            escape(outcome.item_id),
            f"[{color}]{status}[/]",
            str(outcome.attempts),
            escape(outcome.reason or ""),
        )
    console.print(table)

    if not all(o.completed for o in outcomes):
        sys.exit(1)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
def status(as_json: bool) -> None:
    """Show items, gates, circuit breakers and recent escalations."""
    try:
        ws = _open_workspace()
        items = ws.store.list_items()
        gates = ws.gates.collect()
        summary = ws.gates.status(gates)
        breakers = CircuitBreakerRegistry(db=ws.db).snapshot()
        escalations = ws.db.recent_events([EventType.ITEM_ESCALATED], limit=10)
    except RalphError as e:
        _fail(e)
        return

    if as_json:
        data = {
            "items": [item.model_dump(mode="json") for item in items],
            "gates": [gate.model_dump(mode="json") for gate in gates],
            "gate_summary": summary.model_dump(mode="json"),
            "circuit_breakers": [b.to_dict() for b in breakers],
            "escalations": [e.model_dump(mode="json") for e in escalations],
        }
        click.echo(json.dumps(data, indent=2))
        return

    StatusRenderer(console).render(items, gates, summary, breakers, escalations)


@main.command()
@click.argument("mode", type=click.Choice(["check", "enforce"]))
def govern(mode: str) -> None:
    """Check the gate policy, or enforce it (exit 1 while any gate is red)."""
    try:
        ws = _open_workspace()
        gates = ws.gates.collect()
        summary = ws.gates.status(gates)
        if mode == "enforce":
            ws.gates.enforce(gates)
    except RalphError as e:
        _fail(e)
        return

    verdict = "[green]allowed[/green]" if summary.features_allowed else "[red]blocked[/red]"
    console.print(
        f"Gates: {summary.total} total, {summary.red_count} red, "
        f"{summary.green_count} green. Features {verdict}."
    )
    for gate_id in summary.red_gates:
        console.print(f"  [red]• {escape(gate_id)}[/]")


@main.group()
def watchdog() -> None:
    """Detect stalled items and nudge, restart or escalate them."""


def _watchdog_options(func):
    func = click.option(
        "--max-restarts", type=click.IntRange(min=0), help="Restarts before escalating"
    )(func)
    func = click.option(
        "--stale-threshold",
        type=click.FloatRange(min=0, min_open=True),
        help="Minutes without activity before an item is stale",
    )(func)
    return func


def _build_watchdog(ws: Workspace) -> Watchdog:
    actions = StoreWatchdogActions(
        ws.store,
        db=ws.db,
        runner=ws.runner,
        nudge_command=ws.config.watchdog.nudge_command,
        workdir=ws.root,
        restart_command=ws.config.watchdog.restart_command,
    )
    return Watchdog(actions, store=ws.store)


def _print_report(report: WatchdogReport) -> None:
    console.print(
        f"Watchdog: processed {report.processed}, nudged {report.nudged}, "
        f"restarted {report.restarted}, escalated {report.escalated}"
    )
    for action in report.actions:
        line = (
            f"  {escape(action.item_id)}: {action.action.value} "
            f"(stale {action.stale_minutes:.1f} min, restarts {action.restart_count})"
        )
        if action.error:
            line += f" [red]failed: {escape(action.error)}[/red]"
        console.print(line)


@watchdog.command("run-once")
@_watchdog_options
def watchdog_run_once(stale_threshold: float | None, max_restarts: int | None) -> None:
    """Scan once."""
    try:
        ws = _open_workspace()
        cfg = ws.config.watchdog
        report = _build_watchdog(ws).run_once(
            stale_threshold or cfg.stale_threshold_minutes,
            cfg.max_restarts if max_restarts is None else max_restarts,
        )
    except RalphError as e:
        _fail(e)
        return

    _print_report(report)


@watchdog.command("continuous")
@click.option(
    "--interval", type=click.FloatRange(min=0, min_open=True), help="Seconds between scans"
)
@click.option("--iterations", type=click.IntRange(min=1), help="Stop after N scans")
@_watchdog_options
def watchdog_continuous(
    interval: float | None,
    iterations: int | None,
    stale_threshold: float | None,
    max_restarts: int | None,
) -> None:
    """Scan on an interval until interrupted."""
    try:
        ws = _open_workspace()
        cfg = ws.config.watchdog
        console.print(f"[dim]Watchdog running every {interval or cfg.interval_seconds:g}s[/dim]")
        _build_watchdog(ws).run_continuous(
            ws.root,
            interval_seconds=interval or cfg.interval_seconds,
            stale_threshold_minutes=stale_threshold or cfg.stale_threshold_minutes,
            max_restarts=cfg.max_restarts if max_restarts is None else max_restarts,
            iterations=iterations,
            on_report=_print_report,
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Watchdog stopped[/yellow]")
    except RalphError as e:
        _fail(e)


@main.command()
def version() -> None:
    """Print the version."""
    console.print(f"ralph {__version__}")


if __name__ == "__main__":
    main()
