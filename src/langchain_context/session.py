"""
Per-session orchestration of the context pipeline.

Every appended message is evaluated against the token budget. When the
verdict asks for action the matching strategy runs immediately; every
``checkpoint_interval`` appended messages a checkpoint is taken; at session
end the remaining log is captured into mid-term memory and eligible records
are promoted to long-term memory.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .compression import CompressionEngine
from .config import ContextConfig
from .errors import StorageError
from .checkpoint.storage import (
    CheckpointManager,
    CheckpointStorage,
    InMemoryCheckpointStorage,
)
from .memory.summarizer import Summarizer
from .memory.tiers import MemoryTierManager
from .messages import to_langchain_messages
from .token_budget import TokenBudgetEvaluator, TokenEstimator
from .types import (
    Checkpoint,
    CompressionResult,
    CompressionType,
    IndexedConversation,
    Message,
    MessageRange,
    PruneResult,
    SessionState,
    TokenUsage,
    TruncationResult,
    UsageStatus,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class AppendResult:
    usage: TokenUsage
    status: UsageStatus
    action: Optional[CompressionType] = None
    saved_tokens: int = 0
    compression: Optional[CompressionResult] = None
    checkpoint: Optional[Checkpoint] = None


class ContextSession:
    """
    The live message log of one conversation plus the policy around it.

    Not thread-safe: one caller drives a session at a time. Checkpoint
    maintenance may run concurrently against the same storage.

    Usage:
        session = ContextSession("s1", config, summarizer=LLMSummarizer(llm))
        result = session.append(Message(Role.USER, "hello"))
        history = session.to_langchain_messages()
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        config: Optional[ContextConfig] = None,
        summarizer: Optional[Summarizer] = None,
        checkpoint_storage: Optional[CheckpointStorage] = None,
        tier_manager: Optional[MemoryTierManager] = None,
        estimator: Optional[TokenEstimator] = None,
        auto_compress: bool = True,
    ):
        self.session_id = session_id or new_id("session")
        self.config = (config or ContextConfig()).validate()
        self.estimator = estimator or TokenEstimator()
        self.evaluator = TokenBudgetEvaluator(self.config, self.estimator)
        self.engine = CompressionEngine(self.config, summarizer, self.estimator)
        self.checkpoints = CheckpointManager(checkpoint_storage or InMemoryCheckpointStorage())
        self.tier_manager = tier_manager
        self.auto_compress = auto_compress

        self._messages: list[Message] = []
        self._archive: list[Message] = []
        self._appended = 0
        self._since_checkpoint = 0
        self._checkpoint_id: Optional[str] = None
        self._created_at = utcnow()

    # ── Views ─────────────────────────────────────────────────

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def archived_messages(self) -> list[Message]:
        """Messages taken out of the live log by prune, compact or truncate."""
        return list(self._archive)

    @property
    def usage(self) -> TokenUsage:
        return self.evaluator.calculate_usage(self._messages)

    @property
    def state(self) -> SessionState:
        return SessionState(
            checkpoint_id=self._checkpoint_id,
            messages=list(self._messages),
            token_usage=self.usage,
            created_at=self._created_at,
        )

    def effective_history(self) -> list[Message]:
        return self.engine.effective_history(self._messages)

    def to_langchain_messages(self, max_tool_chars: Optional[int] = None) -> list:
        return to_langchain_messages(self._messages, max_tool_chars=max_tool_chars)

    def evaluate(self) -> UsageStatus:
        return self.evaluator.evaluate(self._messages)

    # ── Append path ───────────────────────────────────────────

    def append(self, message: Message) -> AppendResult:
        return self.extend([message])

    def extend(self, messages: list[Message]) -> AppendResult:
        """Append messages, then act on the budget verdict and checkpoint policy."""
        for msg in messages:
            self.estimator.ensure_token_count(msg)
            if msg.position is None:
                msg.position = self._appended
            self._appended += 1
            self._messages.append(msg)
        self._since_checkpoint += len(messages)

        status = self.evaluate()
        result = AppendResult(usage=status.usage, status=status)

        strategy = self.engine.select_strategy(status)
        if strategy is not None and self.auto_compress:
            compression = self.engine.reduce(
                self._messages, strategy, session_id=self.session_id
            )
            self._apply(compression)
            result.action = compression.method
            result.saved_tokens = compression.saved_tokens
            result.compression = compression
            result.usage = self.usage
            logger.info(
                "Session %s: %s (%s), saved %d tokens",
                self.session_id, compression.method.value, status.message,
                compression.saved_tokens,
            )

        interval = self.config.checkpoint_interval
        if interval and self._since_checkpoint >= interval:
            try:
                result.checkpoint = self.create_checkpoint("Auto-save")
            except StorageError as e:
                logger.warning("Auto-save checkpoint failed for %s: %s", self.session_id, e)

        return result

    def _apply(self, compression: CompressionResult) -> None:
        self._messages = list(compression.retained_messages)
        self._archive.extend(compression.archived_messages)
        if compression.compacted_session is not None:
            self._record_compaction(compression)

    def _record_compaction(self, compression: CompressionResult) -> None:
        if self.tier_manager is None:
            return
        try:
            self.tier_manager.record_compaction(compression.compacted_session)
        except StorageError as e:
            logger.warning("Failed to record compaction for %s: %s", self.session_id, e)

    # ── Explicit strategies ───────────────────────────────────

    def prune(self) -> PruneResult:
        result = self.engine.prune(self._messages)
        self._messages = result.pruned_messages
        self._archive.extend(result.removed_messages)
        return result

    def compact(self, range: Optional[MessageRange] = None) -> CompressionResult:
        result = self.engine.compact(self._messages, range=range, session_id=self.session_id)
        self._apply(result)
        return result

    def truncate(self) -> TruncationResult:
        result = self.engine.truncate(self._messages)
        self._messages = result.truncated_messages
        self._archive.extend(result.removed_messages)
        return result

    def cleanup_orphaned_tags(self) -> list[Message]:
        self._messages = self.engine.cleanup_orphaned_tags(self._messages)
        return self.messages

    # ── Checkpoints ───────────────────────────────────────────

    def create_checkpoint(self, name: Optional[str] = None) -> Checkpoint:
        name = name or f"Checkpoint {utcnow():%Y-%m-%d %H:%M:%S}"
        checkpoint = self.checkpoints.create(
            self.session_id, name, self._messages, self.usage.total
        )
        self._checkpoint_id = checkpoint.id
        self._since_checkpoint = 0
        return checkpoint

    def restore_checkpoint(self, checkpoint_id: str) -> bool:
        """Replace the live log with a checkpoint's snapshot."""
        snapshot = self.checkpoints.restore(checkpoint_id)
        if snapshot is None:
            logger.warning("Checkpoint not found: %s", checkpoint_id)
            return False

        self._messages = self.engine.cleanup_orphaned_tags(snapshot.messages)
        positions = [m.position for m in self._messages if m.position is not None]
        if positions:
            self._appended = max(self._appended, max(positions) + 1)
        self.session_id = snapshot.checkpoint.session_id
        self._checkpoint_id = checkpoint_id
        self._since_checkpoint = 0
        logger.info(
            "Restored session %s from checkpoint %s (%d messages)",
            self.session_id, checkpoint_id, len(self._messages),
        )
        return True

    def list_checkpoints(self) -> list[Checkpoint]:
        return self.checkpoints.list(self.session_id)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return self.checkpoints.delete(checkpoint_id)

    # ── Memory tiers ──────────────────────────────────────────

    def recall(self, query: str, limit: Optional[int] = None) -> list[IndexedConversation]:
        """Search long-term memory across sessions."""
        if self.tier_manager is None:
            return []
        return self.tier_manager.search_long_term(query, limit)

    def end_session(self) -> list[IndexedConversation]:
        """
        Capture the remaining live log into mid-term memory and promote
        eligible records. Returns the long-term records created.
        """
        if self.tier_manager is None:
            return []
        try:
            self.tier_manager.promote_to_mid_term(self.session_id, self.effective_history())
            promoted = self.tier_manager.run_promotion(self.session_id, self._appended)
        except StorageError as e:
            logger.warning("Memory promotion failed for %s: %s", self.session_id, e)
            return []

        logger.info(
            "Session %s ended: %d messages, %d promoted to long-term memory",
            self.session_id, self._appended, len(promoted),
        )
        return promoted
