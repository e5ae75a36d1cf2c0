"""``convoy status ROLLOUT_ID`` — show a rollout from the ledger.

A pure read of the Deployment Ledger; works from any process while the
rollout is still running.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from convoy.config import config
from convoy.core.deployment_ledger import DeploymentLedger, LedgerIntegrityError
from convoy.models.rollouts import INVALID_INPUT_EXIT_CODE
from convoy.monitor.projection import RolloutProjection
from convoy.monitor.renderer import RolloutRenderer

console = Console()


def status_cmd(
    rollout_id: str = typer.Argument(..., help="The rollout id to show."),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        "-V",
        help="Verify the rollout's hash chain before displaying.",
    ),
    live: bool = typer.Option(
        False,
        "--live",
        "-L",
        help="Keep refreshing until the rollout finishes (Ctrl+C to exit).",
    ),
    ledger_db: Optional[Path] = typer.Option(
        None, "--ledger", "-l", help="Path to the ledger SQLite database."
    ),
) -> None:
    """Show per-host outcomes and the overall status of a rollout."""
    db_path = ledger_db or config.ledger_path
    if not Path(db_path).exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        raise typer.Exit(code=INVALID_INPUT_EXIT_CODE)

    ledger = DeploymentLedger(db_path)
    projection = RolloutProjection(ledger)
    renderer = RolloutRenderer(console=console)

    if ledger.get_rollout(rollout_id) is None:
        console.print(f"[bold red]Rollout not found:[/bold red] {rollout_id}")
        known = ledger.rollout_ids()
        if known:
            console.print("\n[bold]Recent rollouts:[/bold]")
            for rid in known[:10]:
                console.print(f"  [cyan]{rid}[/cyan]")
        raise typer.Exit(code=INVALID_INPUT_EXIT_CODE)

    if verify_chain:
        try:
            valid = ledger.verify_chain(rollout_id)
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
            valid = False
        renderer.print_chain_verification(rollout_id, valid)
        if not valid:
            raise typer.Exit(code=1)

    if live:
        renderer.render_live(rollout_id, projection)
    else:
        renderer.print_snapshot(projection.snapshot(rollout_id))
