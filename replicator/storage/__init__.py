"""STORAGE — content-addressed artifact stores."""

from replicator.storage.artifacts import (
    ArtifactStore,
    LocalArtifactStore,
    MemoryArtifactStore,
    RetryingStore,
)

__all__ = ["ArtifactStore", "LocalArtifactStore", "MemoryArtifactStore", "RetryingStore"]
