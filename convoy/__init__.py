"""Convoy: batched application rollouts across a host fleet.

  - Per-host deployment state machine over a fixed hook lifecycle
    (BeforeInstall -> Install -> AfterInstall -> ApplicationStart -> ValidateService)
  - Automatic rollback to the host's last good artifact
  - Batch policies (all at once, fixed size, percentage) with failure thresholds
  - Exclusive host leases, so no host ever runs two deployments at once
  - Append-only, hash-chained SQLite deployment ledger
"""

__version__ = "0.1.0"
__description__ = "Batched, lease-safe application rollouts with automatic rollback"

from convoy.core.rollout_coordinator import RolloutCoordinator
from convoy.monitor.projection import RolloutProjection as RolloutMonitor
from convoy.cli.app import app as cli

__all__ = ["RolloutCoordinator", "RolloutMonitor", "cli", "__version__"]
