"""Rich terminal renderer for promotion runs.

Turns a ``RunOutcome`` into Rich renderables: the stage-tagged progress
trace and a summary panel.

Color scheme
------------
- green     : DONE
- cyan      : SHORT_CIRCUIT
- red       : FAILED
- yellow    : any in-flight stage
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from promote_release.models.outcome import RunOutcome
from promote_release.models.stages import PipelineState

_STATE_STYLES: dict[PipelineState, str] = {
    PipelineState.DONE: "bold green",
    PipelineState.SHORT_CIRCUIT: "bold cyan",
    PipelineState.FAILED: "bold red",
    PipelineState.NOT_STARTED: "dim",
}

_TITLES: dict[PipelineState, str] = {
    PipelineState.DONE: "Release published",
    PipelineState.SHORT_CIRCUIT: "Nothing to release",
    PipelineState.FAILED: "Release FAILED",
}


def _style(state: PipelineState) -> str:
    return _STATE_STYLES.get(state, "yellow")


class OutcomeRenderer:
    """Renders ``RunOutcome`` as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def _trace_table(self, outcome: RunOutcome) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=18)
        table.add_column("At (UTC)", width=10)
        table.add_column("Details")
        for i, step in enumerate(outcome.transitions):
            table.add_row(
                str(i),
                Text(step.to_state.value, style=_style(step.to_state)),
                step.timestamp_utc.strftime("%H:%M:%S"),
                escape(step.note),
            )
        return table

    def render_outcome(self, outcome: RunOutcome) -> Panel:
        """Summary panel with the progress trace."""
        parts = [
            f"[bold]Channel:[/bold] {outcome.channel} ({outcome.product.value})",
            f"[bold]Date:[/bold] {outcome.date}",
        ]
        if outcome.commit:
            parts.append(f"[bold]Commit:[/bold] {outcome.commit}")
        if outcome.version:
            parts.append(f"[bold]Version:[/bold] {outcome.version}")
        if outcome.state == PipelineState.DONE:
            parts.append(
                f"[bold]Objects:[/bold] {outcome.objects_written} written, "
                f"{outcome.objects_reused} reused"
            )
            parts.append(f"[bold]Manifest:[/bold] {outcome.manifest_key}")
        if outcome.reason:
            style = "red" if outcome.state == PipelineState.FAILED else "cyan"
            category = f"{outcome.error_category.value}: " if outcome.error_category else ""
            parts.append(f"[{style}]{category}{escape(outcome.reason)}[/{style}]")
        for failure in outcome.invalidation_failures:
            parts.append(f"[yellow]invalidation warning:[/yellow] {escape(failure)}")

        summary = Text.from_markup("\n".join(parts))
        return Panel(
            Group(self._trace_table(outcome), Text(""), summary),
            title=f"[bold]{_TITLES.get(outcome.state, outcome.state.value)}[/bold]",
            border_style=_style(outcome.state).replace("bold ", ""),
            padding=(1, 2),
        )

    def print_outcome(self, outcome: RunOutcome) -> None:
        self.console.print(self.render_outcome(outcome))
