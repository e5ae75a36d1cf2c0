"""Hook manifests and the artifact catalog.

An artifact bundle carries an ``appspec.yml`` that maps lifecycle
phases to hook scripts::

    version: 0.0
    os: linux
    hooks:
      BeforeInstall:
        - location: scripts/install_dependencies.sh
          timeout: 300
          runas: root
      ApplicationStart:
        - location: scripts/start_container.sh
          timeout: 300
          runas: root

Only the ``hooks`` section is interpreted; ``files`` and other keys are
accepted and ignored.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlparse

import yaml
from pydantic import ValidationError

from convoy.core.hasher import bundle_content_hash
from convoy.models.artifacts import Artifact
from convoy.models.manifest import HookManifest, HookSpec
from convoy.models.phases import LifecyclePhase

logger = logging.getLogger(__name__)

MANIFEST_NAMES = ("appspec.yml", "appspec.yaml")
DEFAULT_HOOK_TIMEOUT = 3600.0


class ArtifactNotFound(LookupError):
    """Raised when an artifact or its bundle cannot be resolved."""


class ManifestError(ValueError):
    """Raised when a hook manifest is malformed."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_manifest(
    document: Any, *, default_timeout: float = DEFAULT_HOOK_TIMEOUT
) -> HookManifest:
    """Build a ``HookManifest`` from a parsed appspec document."""
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ManifestError("appspec document must be a mapping")

    raw_hooks = document.get("hooks") or {}
    if not isinstance(raw_hooks, dict):
        raise ManifestError("'hooks' must be a mapping of phase name to scripts")

    known = {p.value: p for p in LifecyclePhase}
    hooks: dict[LifecyclePhase, HookSpec] = {}
    for name, scripts in raw_hooks.items():
        phase = known.get(str(name))
        if phase is None:
            raise ManifestError(
                f"Unknown lifecycle phase {name!r}; expected one of {sorted(known)}"
            )
        if isinstance(scripts, dict):
            scripts = [scripts]
        if not isinstance(scripts, list) or not scripts:
            raise ManifestError(f"{name}: expected a list with one script entry")
        if len(scripts) > 1:
            raise ManifestError(f"{name}: only one script per phase is supported")
        spec = scripts[0]
        if not isinstance(spec, dict) or not spec.get("location"):
            raise ManifestError(f"{name}: script entry needs a 'location'")
        try:
            hooks[phase] = HookSpec(
                script_ref=str(spec["location"]),
                timeout_seconds=float(spec.get("timeout", default_timeout)),
                identity=spec.get("runas"),
            )
        except (TypeError, ValueError, ValidationError) as exc:
            raise ManifestError(f"{name}: {exc}") from exc

    return HookManifest(
        version=str(document.get("version", "0.0")),
        os=str(document.get("os", "linux")),
        hooks=hooks,
    )


def load_manifest(
    path: Path, *, default_timeout: float = DEFAULT_HOOK_TIMEOUT
) -> HookManifest:
    """Read and parse an appspec file."""
    try:
        document = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ManifestError(f"{path}: invalid YAML: {exc}") from exc
    return parse_manifest(document, default_timeout=default_timeout)


def bundle_dir(artifact: Artifact) -> Path:
    """Local directory of an artifact bundle (plain path or ``file://`` URI)."""
    location = artifact.location
    parsed = urlparse(location)
    if parsed.scheme == "file":
        return Path(parsed.path)
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ArtifactNotFound(
            f"Artifact {artifact.artifact_id}: unsupported location scheme {parsed.scheme!r}"
        )
    return Path(location)


# ---------------------------------------------------------------------------
# Manifest sources
# ---------------------------------------------------------------------------


@runtime_checkable
class ManifestSource(Protocol):
    """Resolves the hook manifest (and bundle directory) for an artifact."""

    def manifest_for(self, artifact: Artifact) -> HookManifest:
        ...

    def bundle_root(self, artifact: Artifact) -> Path | None:
        ...


class BundleManifestSource:
    """Reads ``appspec.yml`` from the artifact's bundle directory.

    Parsed manifests are cached per artifact id and content hash.
    """

    def __init__(self, *, default_timeout: float = DEFAULT_HOOK_TIMEOUT) -> None:
        self._default_timeout = default_timeout
        self._cache: dict[tuple[str, str], HookManifest] = {}

    def bundle_root(self, artifact: Artifact) -> Path | None:
        return bundle_dir(artifact)

    def manifest_for(self, artifact: Artifact) -> HookManifest:
        key = (artifact.artifact_id, artifact.content_hash)
        if key in self._cache:
            return self._cache[key]

        root = bundle_dir(artifact)
        if not root.is_dir():
            raise ArtifactNotFound(
                f"Bundle for artifact {artifact.artifact_id} not found at {root}"
            )
        for name in MANIFEST_NAMES:
            candidate = root / name
            if candidate.is_file():
                manifest = load_manifest(candidate, default_timeout=self._default_timeout)
                break
        else:
            raise ArtifactNotFound(
                f"Bundle {root} for artifact {artifact.artifact_id} has no appspec.yml"
            )

        self._cache[key] = manifest
        logger.debug(
            "Loaded manifest for %s: %s",
            artifact.artifact_id,
            [p.value for p in manifest.hooks],
        )
        return manifest


class StaticManifestSource:
    """In-memory manifests keyed by artifact id (programmatic use)."""

    def __init__(
        self,
        manifests: dict[str, HookManifest],
        *,
        bundle_roots: dict[str, Path] | None = None,
    ) -> None:
        self._manifests = dict(manifests)
        self._roots = dict(bundle_roots or {})

    def manifest_for(self, artifact: Artifact) -> HookManifest:
        try:
            return self._manifests[artifact.artifact_id]
        except KeyError:
            raise ArtifactNotFound(
                f"No manifest registered for artifact {artifact.artifact_id}"
            ) from None

    def bundle_root(self, artifact: Artifact) -> Path | None:
        return self._roots.get(artifact.artifact_id)


# ---------------------------------------------------------------------------
# Artifact catalog
# ---------------------------------------------------------------------------


class ArtifactCatalog:
    """Known artifacts by id, as published by the build pipeline.

    File format::

        artifacts:
          - id: hotel-app-42
            content_hash: sha256:...
            location: ./bundles/hotel-app-42

    Relative locations are resolved against the catalog file's directory.
    A missing ``content_hash`` is computed from the bundle contents.
    """

    def __init__(self, artifacts: list[Artifact] | None = None) -> None:
        self._artifacts: dict[str, Artifact] = {a.artifact_id: a for a in artifacts or []}

    @classmethod
    def load(cls, path: Path) -> ArtifactCatalog:
        path = Path(path)
        if not path.is_file():
            raise ArtifactNotFound(f"Artifact catalog not found: {path}")
        document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        entries = document.get("artifacts") or []
        artifacts: list[Artifact] = []
        for raw in entries:
            location = str(raw.get("location", ""))
            if location and "://" not in location and not Path(location).is_absolute():
                location = str((path.parent / location).resolve())
            content_hash = raw.get("content_hash", "")
            if not content_hash and location and Path(location).is_dir():
                content_hash = bundle_content_hash(Path(location))
            artifacts.append(
                Artifact(
                    artifact_id=str(raw["id"]),
                    content_hash=content_hash,
                    location=location,
                )
            )
        return cls(artifacts)

    def get(self, artifact_id: str) -> Artifact:
        try:
            return self._artifacts[artifact_id]
        except KeyError:
            raise ArtifactNotFound(f"Unknown artifact: {artifact_id}") from None

    def all(self) -> list[Artifact]:
        return list(self._artifacts.values())
