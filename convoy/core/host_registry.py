"""Host Registry — target inventory, deployment state and exclusive leases.

The lease table is the only shared mutable state in the engine.  Each
host has its own lock guarding a compare-and-set on its lease slot, so
acquiring one host never serializes behind another.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING

from convoy.models.artifacts import Artifact
from convoy.models.hosts import Host, HostLease, HostState, TagFilter, matches_tags

if TYPE_CHECKING:
    from convoy.core.deployment_ledger import DeploymentLedger

logger = logging.getLogger(__name__)


class HostNotFound(LookupError):
    """Raised for an unknown host id."""


class HostBusy(RuntimeError):
    """Raised when a host is already leased by another holder."""

    def __init__(self, host_id: str, holder: str) -> None:
        super().__init__(f"Host {host_id} is leased by {holder}")
        self.host_id = host_id
        self.holder = holder


class HostRegistry:
    """Tracks deployable hosts, their tags, state and active leases.

    Parameters
    ----------
    hosts:
        Optional initial host set (from the provisioning inventory).
    lease_ttl_seconds:
        Lifetime of a lease; an expired lease can be taken over.
    """

    def __init__(
        self,
        hosts: Iterable[Host] | None = None,
        *,
        lease_ttl_seconds: float = 6 * 3600.0,
    ) -> None:
        self._lease_ttl = lease_ttl_seconds
        self._hosts: dict[str, Host] = {}
        self._leases: dict[str, HostLease] = {}
        self._locks: dict[str, threading.Lock] = {}
        # Guards registration only; lease traffic uses the per-host locks.
        self._register_lock = threading.Lock()
        for host in hosts or ():
            self.register(host)

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def register(self, host: Host) -> Host:
        """Add a host.  Raises ``ValueError`` if the id is already registered."""
        with self._register_lock:
            if host.host_id in self._hosts:
                raise ValueError(f"Host {host.host_id} is already registered")
            self._locks[host.host_id] = threading.Lock()
            self._hosts[host.host_id] = host
        logger.debug("Registered host %s tags=%s", host.host_id, host.tags)
        return host

    def get(self, host_id: str) -> Host:
        try:
            return self._hosts[host_id]
        except KeyError:
            raise HostNotFound(f"Unknown host: {host_id}") from None

    def hosts(self) -> list[Host]:
        return sorted(self._hosts.values(), key=lambda h: h.host_id)

    def list_by_tag(self, tag_filter: TagFilter) -> set[Host]:
        """Return every host whose tags satisfy *tag_filter*."""
        return {h for h in self._hosts.values() if matches_tags(h.tags, tag_filter)}

    def restore_from_ledger(self, ledger: DeploymentLedger) -> None:
        """Seed each host's last good artifact from the ledger."""
        for host_id, host in list(self._hosts.items()):
            artifact = ledger.last_succeeded(host_id)
            if artifact is not None:
                self._hosts[host_id] = host.model_copy(
                    update={"last_artifact": artifact, "state": HostState.HEALTHY}
                )

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def try_acquire(self, host_id: str, holder: str) -> HostLease:
        """Take the exclusive lease on a host or raise ``HostBusy``.

        An expired lease held by someone else is replaced.
        """
        lock = self._lock_for(host_id)
        with lock:
            current = self._leases.get(host_id)
            if current is not None and not current.is_expired():
                raise HostBusy(host_id, current.holder)
            if current is not None:
                logger.warning(
                    "Taking over expired lease on %s from %s", host_id, current.holder
                )
            lease = HostLease(host_id=host_id, holder=holder, ttl_seconds=self._lease_ttl)
            self._leases[host_id] = lease
        logger.debug("Lease %s on %s acquired by %s", lease.lease_id, host_id, holder)
        return lease

    def release(self, host_id: str, lease: HostLease | None = None) -> None:
        """Release a host's lease.

        When *lease* is given, only that lease is released; a stale lease
        (already replaced) leaves the current holder untouched.
        """
        lock = self._lock_for(host_id)
        with lock:
            current = self._leases.get(host_id)
            if current is None:
                return
            if lease is not None and current.lease_id != lease.lease_id:
                return
            del self._leases[host_id]
        logger.debug("Lease on %s released", host_id)

    def holds(self, lease: HostLease) -> bool:
        """Return True if *lease* is the live lease on its host."""
        current = self._leases.get(lease.host_id)
        return (
            current is not None
            and current.lease_id == lease.lease_id
            and not current.is_expired()
        )

    def lease_holder(self, host_id: str) -> str | None:
        self.get(host_id)
        current = self._leases.get(host_id)
        return current.holder if current is not None else None

    # ------------------------------------------------------------------
    # State updates (called by the deployment state machine)
    # ------------------------------------------------------------------

    def mark_state(self, host_id: str, state: HostState) -> Host:
        host = self.get(host_id).model_copy(update={"state": state})
        self._hosts[host_id] = host
        return host

    def record_success(self, host_id: str, artifact: Artifact) -> Host:
        """Mark a host HEALTHY on *artifact* after a SUCCEEDED deployment."""
        host = self.get(host_id).model_copy(
            update={"state": HostState.HEALTHY, "last_artifact": artifact}
        )
        self._hosts[host_id] = host
        return host

    def _lock_for(self, host_id: str) -> threading.Lock:
        try:
            return self._locks[host_id]
        except KeyError:
            raise HostNotFound(f"Unknown host: {host_id}") from None
