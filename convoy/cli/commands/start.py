"""``convoy start`` — roll an artifact out to every host matching a tag filter.

Loads the host inventory and artifact catalog, restores each host's last
good artifact from the ledger, runs the rollout to completion and prints
the final snapshot.  Exits with the rollout's status code (0 completed,
1 partially failed, 2 rolled back or halted, 3 invalid input).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from convoy.config import config
from convoy.core.deployment_ledger import DeploymentLedger
from convoy.core.host_registry import HostRegistry
from convoy.core.inventory import load_inventory
from convoy.core.lifecycle_executor import LifecycleExecutor, build_transport
from convoy.core.manifests import ArtifactCatalog, BundleManifestSource
from convoy.core.rollout_coordinator import RolloutCoordinator
from convoy.models.hosts import parse_tag_filter
from convoy.models.rollouts import INVALID_INPUT_EXIT_CODE, BatchPolicy
from convoy.monitor.projection import RolloutProjection
from convoy.monitor.renderer import RolloutRenderer

console = Console()


def start_cmd(
    artifact_id: str = typer.Option(
        ...,
        "--artifact",
        "-a",
        help="Artifact id from the artifact catalog.",
    ),
    tags: str = typer.Option(
        "",
        "--tags",
        "-t",
        help="Tag filter such as role=web,env=prod (empty selects every host).",
    ),
    policy: str = typer.Option(
        "all",
        "--policy",
        "-p",
        help="Batch policy: all, fixed:N or percent:P.",
    ),
    threshold: Optional[float] = typer.Option(
        None,
        "--threshold",
        help="Failure fraction per batch that aborts the rollout (default from config).",
    ),
    inventory: Optional[Path] = typer.Option(
        None, "--inventory", "-i", help="Host inventory YAML."
    ),
    catalog: Optional[Path] = typer.Option(
        None, "--catalog", "-c", help="Artifact catalog YAML."
    ),
    ledger_db: Optional[Path] = typer.Option(
        None, "--ledger", "-l", help="Path to the ledger SQLite database."
    ),
) -> None:
    """Start a rollout and block until it reaches a final status."""
    try:
        batch_policy = BatchPolicy.parse(policy)
        tag_filter = parse_tag_filter(tags)
        hosts = load_inventory(inventory or config.inventory_path)
        artifact = ArtifactCatalog.load(catalog or config.catalog_path).get(artifact_id)
        transport = build_transport(
            config.transport,
            ssh_user=config.ssh_user,
            connect_timeout=config.ssh_connect_timeout_seconds,
            remote_root=config.remote_bundle_root,
        )
    except (ValueError, LookupError) as exc:
        console.print(f"[bold red]Invalid input:[/bold red] {exc}")
        raise typer.Exit(code=INVALID_INPUT_EXIT_CODE)

    ledger = DeploymentLedger(ledger_db or config.ledger_path)
    registry = HostRegistry(hosts, lease_ttl_seconds=config.lease_ttl_seconds)
    registry.restore_from_ledger(ledger)
    coordinator = RolloutCoordinator(
        registry,
        LifecycleExecutor(transport, output_limit_bytes=config.output_limit_bytes),
        BundleManifestSource(default_timeout=config.default_hook_timeout_seconds),
        ledger,
        config=config,
    )

    console.print(
        f"[bold cyan]Rolling out {artifact.label}[/bold cyan] "
        f"({batch_policy.describe()}, tags: {tags or 'any'})"
    )
    try:
        rollout = coordinator.start_by_tag(
            artifact, tag_filter, batch_policy, failure_threshold=threshold
        )
    except (ValueError, LookupError) as exc:
        console.print(f"[bold red]Invalid input:[/bold red] {exc}")
        raise typer.Exit(code=INVALID_INPUT_EXIT_CODE)

    RolloutRenderer(console=console).print_snapshot(
        RolloutProjection(ledger).snapshot(rollout.rollout_id)
    )
    raise typer.Exit(code=rollout.status.exit_code)
