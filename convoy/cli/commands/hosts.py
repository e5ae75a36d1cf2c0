"""``convoy hosts`` — list inventory hosts with their last good artifact."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from convoy.config import config
from convoy.core.deployment_ledger import DeploymentLedger
from convoy.core.host_registry import HostRegistry
from convoy.core.inventory import load_inventory
from convoy.models.hosts import parse_tag_filter
from convoy.models.rollouts import INVALID_INPUT_EXIT_CODE
from convoy.monitor.renderer import RolloutRenderer

console = Console()


def hosts_cmd(
    tags: str = typer.Option("", "--tags", "-t", help="Tag filter such as role=web."),
    inventory: Optional[Path] = typer.Option(
        None, "--inventory", "-i", help="Host inventory YAML."
    ),
    ledger_db: Optional[Path] = typer.Option(
        None, "--ledger", "-l", help="Path to the ledger SQLite database."
    ),
) -> None:
    """List hosts matching a tag filter."""
    try:
        tag_filter = parse_tag_filter(tags)
        registry = HostRegistry(load_inventory(inventory or config.inventory_path))
    except ValueError as exc:
        console.print(f"[bold red]Invalid input:[/bold red] {exc}")
        raise typer.Exit(code=INVALID_INPUT_EXIT_CODE)

    db_path = ledger_db or config.ledger_path
    if Path(db_path).exists():
        registry.restore_from_ledger(DeploymentLedger(db_path))

    hosts = sorted(registry.list_by_tag(tag_filter), key=lambda h: h.host_id)
    if not hosts:
        console.print("[dim]No hosts match.[/dim]")
        return
    console.print(RolloutRenderer(console=console).render_hosts(hosts))
