"""
Context engineering for long-running LLM conversations.

Keeps a session within its token budget (prune / compact / truncate),
snapshots it through checkpoints, and promotes session content across
short-, mid- and long-term memory.

Collaborators are wired from the environment by ``langchain_context.factory``.
"""

from .cache import TokenCountCache
from .cancellation import CancelledException, CancelToken
from .checkpoint import (
    BatchCheckpointOperations,
    BatchOptions,
    CheckpointMaintenance,
    CheckpointManager,
    CheckpointStorage,
    InMemoryCheckpointStorage,
    PostgresCheckpointStorage,
    SessionLocks,
)
from .compression import CompressionEngine
from .config import ContextConfig, MaintenanceConfig, MemoryConfig
from .errors import (
    CollaboratorError,
    ConfigError,
    ContextError,
    EmbeddingError,
    StorageError,
    SummarizationError,
)
from .memory import MemoryTierManager
from .session import AppendResult, ContextSession
from .token_budget import TokenBudgetEvaluator, TokenEstimator, estimate_tokens
from .types import (
    BatchFailure,
    BatchResult,
    Checkpoint,
    CheckpointDraft,
    CheckpointSnapshot,
    CleanupReport,
    CompactedSession,
    CompressionResult,
    CompressionType,
    IndexedConversation,
    MemoryLayer,
    Message,
    MessageRange,
    PruneResult,
    Role,
    SessionState,
    StorageStats,
    TokenUsage,
    TruncationResult,
    UsageLevel,
    UsageStatus,
)

__all__ = [
    "AppendResult",
    "BatchCheckpointOperations",
    "BatchFailure",
    "BatchOptions",
    "BatchResult",
    "CancelToken",
    "CancelledException",
    "Checkpoint",
    "CheckpointDraft",
    "CheckpointMaintenance",
    "CheckpointManager",
    "CheckpointSnapshot",
    "CheckpointStorage",
    "CleanupReport",
    "CollaboratorError",
    "CompactedSession",
    "CompressionEngine",
    "CompressionResult",
    "CompressionType",
    "ConfigError",
    "ContextConfig",
    "ContextError",
    "ContextSession",
    "EmbeddingError",
    "InMemoryCheckpointStorage",
    "IndexedConversation",
    "MaintenanceConfig",
    "MemoryConfig",
    "MemoryLayer",
    "MemoryTierManager",
    "Message",
    "MessageRange",
    "PostgresCheckpointStorage",
    "PruneResult",
    "Role",
    "SessionLocks",
    "SessionState",
    "StorageError",
    "StorageStats",
    "SummarizationError",
    "TokenBudgetEvaluator",
    "TokenCountCache",
    "TokenEstimator",
    "TokenUsage",
    "TruncationResult",
    "UsageLevel",
    "UsageStatus",
    "estimate_tokens",
]
