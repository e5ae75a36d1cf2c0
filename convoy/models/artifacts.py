"""Artifact reference model — immutable, never inspected by the engine."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class Artifact(BaseModel):
    """A reference to one deployable build output.

    The engine treats the artifact as opaque: it only passes the
    location to the manifest source and to hook scripts.
    """

    model_config = ConfigDict(frozen=True)

    artifact_id: str
    content_hash: str = ""  # "sha256:<hex>"
    location: str = ""  # bundle directory path or URI

    @property
    def label(self) -> str:
        """Short display form: id plus the first hash characters."""
        digest = self.content_hash.removeprefix("sha256:")
        return f"{self.artifact_id}@{digest[:12]}" if digest else self.artifact_id
