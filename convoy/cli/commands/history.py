"""``convoy history HOST_ID`` — recent deployments on one host, newest first."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from convoy.config import config
from convoy.core.deployment_ledger import DeploymentLedger
from convoy.monitor.renderer import RolloutRenderer

console = Console()


def history_cmd(
    host_id: str = typer.Argument(..., help="Host id."),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows to show."),
    ledger_db: Optional[Path] = typer.Option(
        None, "--ledger", "-l", help="Path to the ledger SQLite database."
    ),
) -> None:
    """Show a host's deployment history from the ledger."""
    ledger = DeploymentLedger(ledger_db or config.ledger_path)
    deployments = ledger.host_history(host_id, limit=limit)
    if not deployments:
        console.print(f"[dim]No deployments recorded for {host_id}.[/dim]")
        return
    console.print(RolloutRenderer(console=console).render_history(host_id, deployments))
