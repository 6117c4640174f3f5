from __future__ import annotations

"""Filesystem artifact store.

Content artifacts are written once under

    <root>/runs/<run_id>/steps/<step_id>/<artifact_id>/<name>

and recorded through ``ArtifactRepository`` with the relative storage path as
their ``uri``. Files are created exclusively and never overwritten, so an
artifact is immutable once recorded. Every path component is validated and the
final path must resolve under ``root``.

URI-only artifacts (for example a pull request link) are recorded as given.

Saving is two-phase. ``stage`` writes the content, ``record`` adds the
row once the producing step has succeeded, and ``discard`` deletes staged
content of a step that did not.
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from ..errors import ArtifactStorageError
from ..handlers.base import ArtifactSpec
from ..repos.interfaces import ArtifactRepository
from ..schemas.domain import Artifact

logger = logging.getLogger(__name__)

_SAFE_COMPONENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")


def _safe_component(value: str, what: str) -> str:
    if not _SAFE_COMPONENT.match(value) or value in (".", ".."):
        raise ArtifactStorageError(f"Invalid {what} for artifact path: {value!r}"[:120])
    return value


@dataclass(frozen=True)
class StagedArtifact:
    """Artifact content that is written but not yet recorded.

    ``path`` is None for URI-only artifacts.
    """

    id: str
    step_id: str
    type: str
    uri: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None


class ArtifactStore:
    """Persist handler-produced artifacts.

    Args:
        root: Directory under which artifact content is written.
        artifacts: Repository that records artifact rows.
    """

    def __init__(self, root: Path, artifacts: ArtifactRepository) -> None:
        self.root = Path(root)
        self._artifacts = artifacts

    def _relative_path(self, run_id: str, step_id: str, artifact_id: str, name: str) -> Path:
        return (
            Path("runs")
            / _safe_component(run_id, "run id")
            / "steps"
            / _safe_component(step_id, "step id")
            / _safe_component(artifact_id, "artifact id")
            / _safe_component(name, "artifact name")
        )

    def path_for(self, uri: str) -> Path:
        """Resolve a stored artifact ``uri`` to its file, refusing escapes from ``root``.

        Raises:
            ArtifactStorageError: If the uri resolves outside the store root.
        """
        path = (self.root / uri).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ArtifactStorageError(f"artifact uri escapes store root: {uri!r}"[:120])
        return path

    async def stage(self, *, run_id: str, step_id: str, spec: ArtifactSpec) -> StagedArtifact:
        """
        Write an artifact's content without recording it.

        Nothing is visible through ``ArtifactRepository`` until ``record`` is
        called; ``discard`` removes what was written.

        Args:
            run_id: The run that owns the producing step.
            step_id: The producing step.
            spec: The artifact description returned by the handler.

        Returns:
            The staged artifact.

        Raises:
            ArtifactStorageError: On unsafe names or when the file already exists.
        """
        artifact_id = str(uuid4())
        if spec.uri is not None:
            return StagedArtifact(
                id=artifact_id, step_id=step_id, type=spec.type, uri=spec.uri, metadata=dict(spec.metadata)
            )

        data = spec.content.encode("utf-8") if isinstance(spec.content, str) else bytes(spec.content or b"")
        relative = self._relative_path(run_id, step_id, artifact_id, spec.name or "artifact.bin")
        path = self.root / relative
        await asyncio.to_thread(self._write_exclusive, path, data)
        return StagedArtifact(
            id=artifact_id,
            step_id=step_id,
            type=spec.type,
            uri=relative.as_posix(),
            metadata={**spec.metadata, "sha256": hashlib.sha256(data).hexdigest(), "size": len(data)},
            path=path,
        )

    async def record(self, staged: StagedArtifact) -> Artifact:
        """Record a staged artifact; from here on it is immutable."""
        artifact = await self._artifacts.add(
            step_id=staged.step_id,
            type=staged.type,
            uri=staged.uri,
            metadata=staged.metadata,
            artifact_id=staged.id,
        )
        logger.debug(f"Stored artifact {artifact.id} for step {staged.step_id} at {artifact.uri}")
        return artifact

    async def discard(self, staged: StagedArtifact) -> None:
        """Remove the content of an artifact that will never be recorded."""
        if staged.path is not None:
            await asyncio.to_thread(self._remove, staged.path)

    async def read(self, artifact: Artifact) -> Optional[bytes]:
        """Return stored content, or None for URI-only artifacts."""
        if "sha256" not in artifact.metadata:
            return None
        return await asyncio.to_thread(self.path_for(artifact.uri).read_bytes)

    def _write_exclusive(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "xb") as fh:
                fh.write(data)
        except FileExistsError as e:
            raise ArtifactStorageError(f"artifact already exists: {path}") from e

    def _remove(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        if path.parent.is_dir() and not any(path.parent.iterdir()):
            path.parent.rmdir()
