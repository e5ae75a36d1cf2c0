"""Rich terminal renderer for rollout snapshots and host history.

Color scheme
------------
- green     : succeeded
- yellow    : rolled back
- red       : failed
- dim       : pending
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from convoy.models.deployments import DeploymentOutcome
from convoy.models.rollouts import RolloutStatus

if TYPE_CHECKING:
    from convoy.models.deployments import Deployment
    from convoy.models.hosts import Host
    from convoy.monitor.projection import RolloutProjection, RolloutSnapshot


_OUTCOME_LABELS: dict[DeploymentOutcome, str] = {
    DeploymentOutcome.SUCCEEDED: "[green]SUCCEEDED[/green]",
    DeploymentOutcome.ROLLED_BACK: "[yellow]ROLLED BACK[/yellow]",
    DeploymentOutcome.FAILED: "[bold red]FAILED[/bold red]",
    DeploymentOutcome.PENDING: "[dim]PENDING[/dim]",
}

_STATUS_STYLES: dict[RolloutStatus, str] = {
    RolloutStatus.COMPLETED: "green",
    RolloutStatus.IN_PROGRESS: "cyan",
    RolloutStatus.PARTIALLY_FAILED: "yellow",
    RolloutStatus.ROLLED_BACK: "red",
    RolloutStatus.HALTED: "red",
}


class RolloutRenderer:
    """Renders rollout snapshots, host inventories and host history.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Rollout snapshot
    # ------------------------------------------------------------------

    def render_snapshot(self, snapshot: RolloutSnapshot) -> Panel:
        """Render a RolloutSnapshot as a Rich Panel containing a host table."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Batch", style="dim", width=6, justify="right")
        table.add_column("Host", min_width=16)
        table.add_column("Outcome", min_width=12, justify="center")
        table.add_column("Last phase", min_width=16)
        table.add_column("Details", min_width=20)

        for host in snapshot.hosts:
            details: list[str] = []
            if host.failure_reason:
                details.append(f"[red]{host.failure_reason}[/red]")
            if host.rolled_back_by_rollout:
                details.append("[yellow]restored by rollout rollback[/yellow]")
            table.add_row(
                str(host.batch_index + 1) if host.batch_index >= 0 else "-",
                host.host_id,
                _OUTCOME_LABELS[host.outcome],
                host.last_phase or "[dim]-[/dim]",
                " | ".join(details) if details else "[dim]-[/dim]",
            )

        style = _STATUS_STYLES[snapshot.status]
        summary_parts = [
            f"[bold]Rollout:[/bold] {snapshot.rollout_id}",
            f"[bold]Artifact:[/bold] {snapshot.artifact_label}",
            f"[bold]Policy:[/bold] {snapshot.policy}",
            f"[bold]Batches:[/bold] {snapshot.batches_done}/{snapshot.batch_count}",
            f"[bold]Status:[/bold] [{style}]{snapshot.status.value}[/{style}]",
        ]
        if snapshot.halt_reason:
            summary_parts.append(f"[red][bold]Halted:[/bold] {snapshot.halt_reason}[/red]")
        if snapshot.cancel_requested:
            summary_parts.append("[yellow]cancel requested[/yellow]")
        chain = "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        summary_parts.append(f"[bold]Chain:[/bold] {chain}")

        return Panel(
            Group(table, Text(""), Text.from_markup("  |  ".join(summary_parts))),
            title="[bold]Convoy Rollout[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def print_snapshot(self, snapshot: RolloutSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def render_live(
        self,
        rollout_id: str,
        projection: RolloutProjection,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Re-render the rollout until it leaves IN_PROGRESS or Ctrl+C."""
        interval = 1.0 / max(refresh_hz, 0.1)
        with Live(console=self.console, refresh_per_second=refresh_hz) as live:
            try:
                while True:
                    snapshot = projection.snapshot(rollout_id)
                    live.update(self.render_snapshot(snapshot))
                    if snapshot.status != RolloutStatus.IN_PROGRESS:
                        break
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(projection.snapshot(rollout_id)))

    def print_chain_verification(self, rollout_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for rollout {rollout_id} is valid.[/green]")
        else:
            self.console.print(
                f"[bold red]Hash chain for rollout {rollout_id} is BROKEN![/bold red]"
            )

    # ------------------------------------------------------------------
    # Hosts and history
    # ------------------------------------------------------------------

    def render_hosts(self, hosts: list[Host]) -> Table:
        table = Table(title="Hosts", header_style="bold cyan")
        table.add_column("Host", style="cyan")
        table.add_column("Address")
        table.add_column("Tags")
        table.add_column("State", justify="center")
        table.add_column("Last good artifact")
        for host in hosts:
            tags = ", ".join(f"{k}={v}" for k, v in sorted(host.tags.items()))
            table.add_row(
                host.host_id,
                host.address or "[dim]-[/dim]",
                tags or "[dim]-[/dim]",
                host.state.value,
                host.last_artifact.label if host.last_artifact else "[dim]none[/dim]",
            )
        return table

    def render_history(self, host_id: str, deployments: list[Deployment]) -> Table:
        table = Table(title=f"Deployments on {host_id}", header_style="bold cyan")
        table.add_column("Deployment", style="dim")
        table.add_column("Rollout", style="dim")
        table.add_column("Kind")
        table.add_column("Artifact")
        table.add_column("Outcome", justify="center")
        table.add_column("Finished")
        table.add_column("Reason")
        for d in deployments:
            table.add_row(
                d.deployment_id,
                d.rollout_id,
                d.kind.value,
                d.artifact.label,
                _OUTCOME_LABELS[d.outcome],
                d.finished_at.strftime("%Y-%m-%d %H:%M:%S") if d.finished_at else "-",
                d.failure_reason or "",
            )
        return table
