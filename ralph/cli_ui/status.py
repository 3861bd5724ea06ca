"""Rich tables for `ralph status`.

All record-supplied strings are escaped to prevent Rich markup injection.
"""

from __future__ import annotations

from collections.abc import Iterable

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ralph.core.circuit import CircuitBreakerState, CircuitState
from ralph.core.gates import GateSummary
from ralph.core.models import Gate, ItemStatus, WorkItem
from ralph.core.state import Event

_STATUS_TEXT = {
    ItemStatus.COMPLETED: "[green]✓ Completed[/]",
    ItemStatus.FAILED: "[red]✗ Failed[/]",
    ItemStatus.IN_PROGRESS: "[blue]⟳ In progress[/]",
    ItemStatus.HOOKED: "[yellow]○ Hooked[/]",
    ItemStatus.PENDING: "[dim]○ Pending[/]",
}

_CIRCUIT_TEXT = {
    CircuitState.CLOSED: "[green]closed[/]",
    CircuitState.HALF_OPEN: "[yellow]half-open[/]",
    CircuitState.OPEN: "[red]open[/]",
}


def _clip(text: str, width: int) -> str:
    text = escape(text)
    if len(text) > width:
        return text[: width - 3] + "..."
    return text


class StatusRenderer:
    """Render items, gates, breakers and escalations."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def items_table(self, items: Iterable[WorkItem]) -> Table:
        table = Table(title="Work items")
        table.add_column("ID", style="cyan")
        table.add_column("Title")
        table.add_column("Lane", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Attempts", justify="right")
        table.add_column("Restarts", justify="right")
        table.add_column("Last error", max_width=40)

        for item in sorted(items, key=lambda i: (i.priority, i.created_at)):
            status_text = _STATUS_TEXT.get(item.status, escape(item.status.value))
            if item.meta.escalated:
                status_text += " [red bold]![/]"
            table.add_row(
                escape(item.id),
                _clip(item.title or item.intent, 30),
                escape(item.lane),
                status_text,
                f"{item.meta.attempt_count}/{item.constraints.max_iterations}",
                str(item.meta.restart_count),
                _clip(item.meta.last_error or "", 40),
            )
        return table

    def gates_table(self, gates: Iterable[Gate], summary: GateSummary) -> Table:
        verdict = "[green]features allowed[/]" if summary.features_allowed else "[red]blocked[/]"
        table = Table(title=f"Gates ({summary.red_count} red / {summary.total}): {verdict}")
        table.add_column("ID", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Source")

        for gate in sorted(gates, key=lambda g: g.id):
            status_text = "[red]● red[/]" if gate.is_red else "[green]● green[/]"
            table.add_row(escape(gate.id), escape(gate.type), status_text, escape(gate.source))
        return table

    def breakers_table(self, breakers: Iterable[CircuitBreakerState]) -> Table:
        table = Table(title="Circuit breakers")
        table.add_column("Name", style="cyan")
        table.add_column("State", justify="center")
        table.add_column("Failures", justify="right")
        table.add_column("Threshold", justify="right")
        table.add_column("Timeout (s)", justify="right")

        for breaker in breakers:
            table.add_row(
                escape(breaker.name),
                _CIRCUIT_TEXT[breaker.state],
                str(breaker.failure_count),
                str(breaker.failure_threshold),
                f"{breaker.timeout_seconds:g}",
            )
        return table

    def escalations_table(self, events: Iterable[Event]) -> Table:
        table = Table(title="Recent escalations")
        table.add_column("Time", style="dim")
        table.add_column("Item", style="cyan")
        table.add_column("Source")
        table.add_column("Reason", max_width=60)

        for event in events:
            table.add_row(
                event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                escape(event.item_id),
                escape(str(event.payload.get("source", ""))),
                _clip(str(event.payload.get("reason", "")), 60),
            )
        return table

    def render(
        self,
        items: list[WorkItem],
        gates: list[Gate],
        summary: GateSummary,
        breakers: list[CircuitBreakerState],
        escalations: list[Event],
    ) -> None:
        if items:
            self.console.print(self.items_table(items))
        else:
            self.console.print("[dim]No work items[/dim]")
        self.console.print(self.gates_table(gates, summary))
        if breakers:
            self.console.print(self.breakers_table(breakers))
        if escalations:
            self.console.print(self.escalations_table(escalations))
