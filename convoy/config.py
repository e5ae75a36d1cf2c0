"""Runtime configuration — env-driven via pydantic-settings.

Reads from a .env file and CONVOY_* environment variables.  Every
subsystem takes an explicit ``ConvoyConfig``; the module-level ``config``
is the default used by the CLI.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConvoyConfig(BaseSettings):
    """Deployment engine configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export CONVOY_LOG_LEVEL=DEBUG
        export CONVOY_TRANSPORT=ssh
        export CONVOY_FAILURE_THRESHOLD=0.25

    Or via .env file::

        CONVOY_LEDGER_PATH=/var/lib/convoy/ledger.db
        CONVOY_SSH_USER=ec2-user
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CONVOY_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    ledger_path: Path = Path(".convoy/ledger.db")
    inventory_path: Path = Path("inventory.yml")
    catalog_path: Path = Path("artifacts.yml")

    # Hook execution
    transport: str = "local"  # local | ssh
    output_limit_bytes: int = 64 * 1024
    default_hook_timeout_seconds: float = 3600.0
    ssh_user: str = "ec2-user"
    ssh_connect_timeout_seconds: int = 10
    remote_bundle_root: str = "/home/ec2-user/app"

    # Lease contention (HostBusy) retry
    lease_attempts: int = 3
    lease_backoff_seconds: float = 0.5
    lease_backoff_max_seconds: float = 5.0
    lease_ttl_seconds: float = 6 * 3600.0

    # Infrastructure failure (ExecutionUnavailable) retry
    execution_attempts: int = 3
    execution_backoff_seconds: float = 1.0
    execution_backoff_max_seconds: float = 10.0

    # Rollout policy
    failure_threshold: float = 0.0  # fraction of a batch; 0.0 = any failure
    auto_rollback: bool = True
    max_parallel_hosts: int = 16

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


# Module-level default; import as `from convoy.config import config`
config = ConvoyConfig()
