"""Artifact storage for handler outputs."""

from .store import ArtifactStore, StagedArtifact

__all__ = ["ArtifactStore", "StagedArtifact"]
