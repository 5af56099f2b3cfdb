"""Rich rendering of flow run results.

SECURITY: All user-controlled strings (node labels, command output, flow IDs)
are escaped to prevent Rich markup injection.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from piflow.core.graph_schema import FlowGraph, FlowStatus
from piflow.core.results import iteration_key, status_key

OUTPUT_WIDTH = 60

_STATUS_TEXT = {
    "success": "[green]✓ Success[/]",
    "error": "[red]✗ Error[/]",
    "running": "[blue]⟳ Running[/]",
}

_FLOW_STATUS_STYLE = {
    FlowStatus.SUCCESS: "green",
    FlowStatus.ERROR: "red",
    FlowStatus.RUNNING: "blue",
    FlowStatus.IDLE: "dim",
}


def summarize_outcome(outcome: dict[str, Any] | None) -> str:
    """One-line summary of an outcome record: error, message or command output."""
    if not outcome:
        return ""
    if outcome.get("error"):
        text = outcome["error"]
    elif outcome.get("message"):
        text = outcome["message"]
    else:
        text = (outcome.get("stdout") or "").strip() or (outcome.get("stderr") or "").strip()
        if not text and "exitCode" in outcome:
            text = f"exit code {outcome['exitCode']}"
    return " ".join(str(text).split())


def _clip(text: str, width: int = OUTPUT_WIDTH) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


class ResultTableRenderer:
    """Renders per-node run results as a Rich table."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_results(
        self,
        graph: FlowGraph,
        results: dict[str, Any],
        title: str = "Flow run",
    ) -> Table:
        """
        Render one row per node (in graph order) plus one row per loop iteration.
        Nodes never reached show as "not run".
        """
        table = Table(title=escape(title))
        table.add_column("Node", style="cyan")
        table.add_column("Kind", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output", max_width=OUTPUT_WIDTH)

        for node in graph.nodes:
            status = results.get(status_key(node.id))
            status_text = _STATUS_TEXT.get(status, "[dim]○ Not run[/]")
            summary = summarize_outcome(results.get(node.id))
            table.add_row(
                escape(node.label), node.kind.value, status_text, escape(_clip(summary))
            )

            index = 0
            while iteration_key(node.id, index) in results:
                entry = results[iteration_key(node.id, index)]
                outcome = entry.get("result") or {}
                iteration_status = "success" if outcome.get("success") else "error"
                table.add_row(
                    f"  ↳ iteration {entry.get('iteration', index + 1)}",
                    escape(str(entry.get("nodeId", ""))),
                    _STATUS_TEXT[iteration_status],
                    escape(_clip(summarize_outcome(outcome))),
                )
                index += 1

        return table

    def format_status(self, status: FlowStatus | str) -> str:
        status = FlowStatus(status)
        style = _FLOW_STATUS_STYLE[status]
        return f"[{style}]{status.value}[/]"

    def print_run(
        self,
        graph: FlowGraph,
        status: FlowStatus | str,
        results: dict[str, Any],
        error: str | None = None,
        title: str = "Flow run",
    ) -> None:
        """Print the results table followed by the overall status line."""
        self.console.print(self.render_results(graph, results, title=title))
        self.console.print(f"Status: {self.format_status(status)}")
        if error:
            self.console.print(f"[red]Error:[/red] {escape(error)}")
