"""
Checkpoint persistence, bulk operations and retention.
"""

from .batch import BatchCheckpointOperations, BatchOptions
from .maintenance import CheckpointMaintenance
from .postgres import PostgresCheckpointStorage
from .storage import (
    CheckpointManager,
    CheckpointStorage,
    InMemoryCheckpointStorage,
    SessionLocks,
    generate_checkpoint_summary,
)

__all__ = [
    "BatchCheckpointOperations",
    "BatchOptions",
    "CheckpointMaintenance",
    "CheckpointManager",
    "CheckpointStorage",
    "InMemoryCheckpointStorage",
    "PostgresCheckpointStorage",
    "SessionLocks",
    "generate_checkpoint_summary",
]
