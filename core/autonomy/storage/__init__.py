"""Checkpoint persistence."""

from autonomy.storage.checkpoint_store import CheckpointStore

__all__ = ["CheckpointStore"]
