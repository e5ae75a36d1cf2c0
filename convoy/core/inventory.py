"""Host inventory loading — the provisioning side hands us hosts and tags.

File format::

    hosts:
      - id: web-1
        address: 10.0.1.15
        tags: {role: web, env: prod}
      - id: web-2
        address: 10.0.1.16
        tags: {role: web, env: prod}
"""

from __future__ import annotations

from pathlib import Path

import yaml

from convoy.models.hosts import Host


class InventoryError(ValueError):
    """Raised when the inventory file is missing or malformed."""


def load_inventory(path: Path) -> list[Host]:
    """Read hosts from an inventory YAML file."""
    path = Path(path)
    if not path.is_file():
        raise InventoryError(f"Inventory not found: {path}")
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise InventoryError(f"{path}: invalid YAML: {exc}") from exc

    hosts: list[Host] = []
    seen: set[str] = set()
    for raw in document.get("hosts") or []:
        if not isinstance(raw, dict) or "id" not in raw:
            raise InventoryError(f"{path}: every host needs an 'id'")
        host_id = str(raw["id"])
        if host_id in seen:
            raise InventoryError(f"{path}: duplicate host id {host_id!r}")
        seen.add(host_id)
        tags = {str(k): str(v) for k, v in (raw.get("tags") or {}).items()}
        hosts.append(Host(host_id=host_id, address=str(raw.get("address", "")), tags=tags))
    return hosts
