"""Main Typer application — imports and registers all CLI commands.

Entry point: ``convoy`` (configured via pyproject.toml project.scripts).

Commands: start, status, cancel, hosts, history.
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from convoy.cli.commands.cancel import cancel_cmd
from convoy.cli.commands.history import history_cmd
from convoy.cli.commands.hosts import hosts_cmd
from convoy.cli.commands.start import start_cmd
from convoy.cli.commands.status import status_cmd
from convoy.config import config

app = typer.Typer(
    name="convoy",
    help="Convoy: batched, lease-safe application rollouts across a host fleet.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="start", help="Roll an artifact out to a tagged host set.")(start_cmd)
app.command(name="status", help="Show the state of a rollout.")(status_cmd)
app.command(name="cancel", help="Request cancellation of a running rollout.")(cancel_cmd)
app.command(name="hosts", help="List inventory hosts and their last good artifact.")(hosts_cmd)
app.command(name="history", help="Show the deployment history of a host.")(history_cmd)


@app.callback()
def _configure_logging(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Route library logging through Rich on stderr."""
    logging.basicConfig(
        level="DEBUG" if verbose else config.log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=config.debug,
                show_path=config.debug,
            )
        ],
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
