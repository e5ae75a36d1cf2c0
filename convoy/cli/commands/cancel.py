"""``convoy cancel ROLLOUT_ID`` — ask a running rollout to stop.

The request is written to the ledger; the coordinator running the
rollout (in any process) sees it before its next hook or batch.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from convoy.config import config
from convoy.core.deployment_ledger import DeploymentLedger
from convoy.models.rollouts import INVALID_INPUT_EXIT_CODE, RolloutStatus

console = Console()


def cancel_cmd(
    rollout_id: str = typer.Argument(..., help="The rollout id to cancel."),
    reason: str = typer.Option(
        "operator request", "--reason", "-r", help="Recorded with the request."
    ),
    ledger_db: Optional[Path] = typer.Option(
        None, "--ledger", "-l", help="Path to the ledger SQLite database."
    ),
) -> None:
    """Request cancellation.  In-flight hosts roll back; later batches never start."""
    ledger = DeploymentLedger(ledger_db or config.ledger_path)
    rollout = ledger.get_rollout(rollout_id)
    if rollout is None:
        console.print(f"[bold red]Rollout not found:[/bold red] {rollout_id}")
        raise typer.Exit(code=INVALID_INPUT_EXIT_CODE)

    if rollout.status != RolloutStatus.IN_PROGRESS:
        console.print(
            f"[yellow]Rollout {rollout_id} already finished "
            f"({rollout.status.value}); nothing to cancel.[/yellow]"
        )
        return

    ledger.request_cancel(rollout_id, reason)
    console.print(f"[bold yellow]Cancel requested for rollout {rollout_id}.[/bold yellow]")
