"""Console output and logging setup for the CLI."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from operator_cluster.orchestrator import DiagnosticBundle
from operator_cluster.types import ClusterState, ClusterStatus, NodeRole, NodeSpec

console = Console()

STATE_STYLES = {
    ClusterState.OK: "green",
    ClusterState.PARTIAL_JOIN: "yellow",
    ClusterState.DEGRADED: "red",
    ClusterState.UNKNOWN: "dim",
}


def configure_logging(level: str) -> None:
    """Route library logging through Rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def format_state(state: ClusterState) -> str:
    style = STATE_STYLES[state]
    return f"[{style}]{state.value}[/{style}]"


def status_table(
    nodes: list[NodeSpec],
    status: ClusterStatus,
    alive: dict[str, bool] | None = None,
) -> Table:
    """
    Build a table of planned vs observed role per node.

    Args:
        nodes: Specs with planned role_hint
        status: Snapshot whose per_node_role supplies observed roles
        alive: Optional process liveness per node id
    """
    table = Table(title=f"Cluster Status: {format_state(status.state)}")
    table.add_column("Node", style="cyan")
    table.add_column("Address", style="blue")
    table.add_column("Planned", style="magenta")
    table.add_column("Observed", style="green")
    if alive is not None:
        table.add_column("Process")

    for node in nodes:
        observed = status.per_node_role.get(node.address)
        row = [
            node.id,
            node.address,
            node.role_hint.value,
            observed.value if observed else "[dim]-[/dim]",
        ]
        planned = node.role_hint
        if observed is not None and planned is not NodeRole.UNASSIGNED and observed is not planned:
            row[3] = f"[yellow]{observed.value}[/yellow]"
        if alive is not None:
            row.append("[green]running[/green]" if alive.get(node.id) else "[red]stopped[/red]")
        table.add_row(*row)

    table.caption = (
        f"known nodes: {status.known_node_count}  masters: {status.master_count}"
        + (f"  ({status.detail})" if status.detail else "")
    )
    return table


def print_diagnostics(bundle: DiagnosticBundle) -> None:
    """Print a failure bundle verbatim (no markup interpretation of logs)."""
    console.print("\n[bold red]Diagnostics[/bold red]")
    console.print(Text(bundle.render()))
