"""Conversation memory: per-thread checkpoint history."""

from .checkpoints import (
    Checkpoint,
    CheckpointMetadata,
    CheckpointStore,
    InMemoryCheckpointBackend,
    StoredCheckpoint,
)

__all__ = [
    "Checkpoint",
    "CheckpointMetadata",
    "CheckpointStore",
    "InMemoryCheckpointBackend",
    "StoredCheckpoint",
]
