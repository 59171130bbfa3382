"""
Prune / compact / truncate strategies over a message log.

All operations are pure with respect to their input: they return a new live
log plus the messages they took out, marked as archived so callers can keep
them for audit or undo.

- prune: drop low-priority messages, keeping the recent tail, system messages,
  truncation markers and summary anchors.
- compact: replace a contiguous range with one summary message.
- truncate: hard-cut the oldest messages until the window fits the budget.
"""

import logging
from dataclasses import replace
from typing import Optional

from .config import ContextConfig
from .memory.importance import (
    extract_decisions,
    extract_key_findings,
    extract_topics,
)
from .memory.summarizer import NullSummarizer, Summarizer
from .token_budget import MESSAGE_OVERHEAD_TOKENS, TokenEstimator
from .types import (
    CompactedSession,
    CompressionResult,
    CompressionType,
    Message,
    MessageRange,
    PruneResult,
    Role,
    TruncationResult,
    UsageStatus,
    get_message_priority,
    new_id,
    original_range,
)

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "[Conversation Summary]"
TRUNCATION_TEMPLATE = "[Earlier conversation truncated] - {count} earlier messages removed"


class CompressionEngine:
    """
    Implements the three reduction strategies.

    Usage:
        engine = CompressionEngine(config, summarizer=LLMSummarizer(llm))
        result = engine.compact(messages, session_id="s1")
        messages = result.retained_messages
    """

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        summarizer: Optional[Summarizer] = None,
        estimator: Optional[TokenEstimator] = None,
    ):
        self.config = (config or ContextConfig()).validate()
        self.summarizer = summarizer or NullSummarizer()
        self.estimator = estimator or TokenEstimator()

    def _resolve(self, config: Optional[ContextConfig]) -> ContextConfig:
        if config is None or config is self.config:
            return self.config
        return config.validate()

    @staticmethod
    def _tail_start(messages: list[Message], config: ContextConfig) -> int:
        return max(len(messages) - config.messages_to_keep, 0)

    @staticmethod
    def _is_pinned(msg: Message) -> bool:
        """Messages prune never removes, regardless of position."""
        return (
            msg.role == Role.SYSTEM
            or msg.is_truncation_marker
            or msg.is_condense_anchor
        )

    # ── Prune ──

    def prune(
        self,
        messages: list[Message],
        config: Optional[ContextConfig] = None,
        target_tokens: Optional[int] = None,
    ) -> PruneResult:
        """
        Remove low-priority messages until usage drops below the prune
        threshold (or to ``target_tokens`` when given).

        Removal order: user, then assistant, then tool messages; oldest first
        within a role.
        """
        config = self._resolve(config)
        tail_start = self._tail_start(messages, config)
        tokens = [self.estimator.message_tokens(m) for m in messages]
        total = sum(t for t, m in zip(tokens, messages) if m.is_live)

        if target_tokens is None:
            limit = config.prune_threshold * config.available_tokens

            def over(current: int) -> bool:
                return current >= limit
        else:
            def over(current: int) -> bool:
                return current > target_tokens

        candidates = sorted(
            (
                (get_message_priority(m.role), i)
                for i, m in enumerate(messages[:tail_start])
                if m.is_live and not self._is_pinned(m)
            ),
        )

        removed: set[int] = set()
        removed_tokens = 0
        for _, idx in candidates:
            if not over(total):
                break
            removed.add(idx)
            total -= tokens[idx]
            removed_tokens += tokens[idx]

        retained = [m for i, m in enumerate(messages) if i not in removed]
        archived = [
            messages[i].archived(CompressionType.PRUNED) for i in sorted(removed)
        ]

        if removed:
            logger.info(
                "Pruned %d of %d messages (%d tokens)",
                len(removed), len(messages), removed_tokens,
            )
        else:
            logger.debug("Prune found nothing to remove in %d messages", len(messages))

        return PruneResult(
            original_count=len(messages),
            pruned_messages=retained,
            removed_messages=archived,
            removed_count=len(removed),
            removed_tokens=removed_tokens,
            preserved_recent_count=len(messages) - tail_start,
        )

    # ── Compact ──

    def select_compaction_range(
        self,
        messages: list[Message],
        config: Optional[ContextConfig] = None,
    ) -> MessageRange:
        """
        Oldest run of at least two compactable messages before the retained
        tail, or an empty range when there is none.

        System messages that are not earlier summaries break a run, so the
        system prompt is never summarized while previous summaries are folded
        into the new one.
        """
        config = self._resolve(config)
        tail_start = self._tail_start(messages, config)

        start = 0
        while start < tail_start:
            end = start
            while end < tail_start and self._is_compactable(messages[end]):
                end += 1
            if end - start >= 2:
                return MessageRange(start, end)
            start = end + 1
        return MessageRange(tail_start, tail_start)

    @staticmethod
    def _is_compactable(msg: Message) -> bool:
        if not msg.is_live:
            return False
        return msg.role != Role.SYSTEM or msg.is_condense_anchor

    def _no_op(self, messages: list[Message]) -> CompressionResult:
        return CompressionResult(
            original_count=len(messages),
            compressed_count=len(messages),
            saved_tokens=0,
            method=CompressionType.COMPACTED,
            retained_messages=list(messages),
        )

    def _prune_fallback(
        self, messages: list[Message], config: ContextConfig
    ) -> CompressionResult:
        result = self.prune(messages, config)
        return CompressionResult(
            original_count=result.original_count,
            compressed_count=len(result.pruned_messages),
            saved_tokens=result.removed_tokens,
            method=CompressionType.PRUNED,
            retained_messages=result.pruned_messages,
            archived_messages=result.removed_messages,
        )

    def compact(
        self,
        messages: list[Message],
        config: Optional[ContextConfig] = None,
        range: Optional[MessageRange] = None,
        session_id: str = "",
    ) -> CompressionResult:
        """
        Replace a contiguous range of at least two messages with one summary.

        Falls back to prune when no such span exists before the kept tail or
        the summarizer cannot produce a summary. An explicit ``range`` shorter
        than two messages is a no-op.
        """
        config = self._resolve(config)
        tail_start = self._tail_start(messages, config)

        if range is None:
            range = self.select_compaction_range(messages, config)
            if len(range) < 2:
                logger.info("No compactable span before the kept tail, falling back to prune")
                return self._prune_fallback(messages, config)
        elif not (0 <= range.start < range.end <= tail_start):
            raise ValueError(
                f"compaction range [{range.start}, {range.end}) must lie within "
                f"[0, {tail_start}) (the last {config.messages_to_keep} are kept)"
            )

        if len(range) < 2:
            logger.debug("Nothing to compact: range %s too small", range)
            return self._no_op(messages)

        to_compact = messages[range.start:range.end]

        if not self.summarizer.available:
            logger.info("No summarizer configured, falling back to prune")
            return self._prune_fallback(messages, config)

        try:
            summary = self.summarizer.summarize(to_compact)
        except Exception as e:
            logger.warning("Compaction summary failed, falling back to prune: %s", e)
            return self._prune_fallback(messages, config)

        condense_id = new_id("compact")
        summary_tokens = summary.token_count + MESSAGE_OVERHEAD_TOKENS
        summary_msg = Message(
            id=condense_id,
            role=Role.SYSTEM,
            content=f"{SUMMARY_HEADER}\n{summary.text}",
            token_count=summary_tokens,
            compressed=True,
            compression_type=CompressionType.COMPACTED,
            condense_id=condense_id,
        )

        range_tokens = self.estimator.total(to_compact)
        saved = range_tokens - summary_tokens
        if saved < 0:
            logger.warning(
                "Summary (%d tokens) is larger than the %d tokens it replaced; "
                "reporting zero savings",
                summary_tokens, range_tokens,
            )
            saved = 0

        archived = [
            m.archived(CompressionType.COMPACTED, condense_parent=condense_id)
            for m in to_compact
        ]
        retained = messages[:range.start] + [summary_msg] + messages[range.end:]

        compacted = CompactedSession(
            session_id=session_id,
            summary=summary.text,
            message_range=original_range(to_compact, MessageRange(range.start, range.end)),
            key_topics=summary.topics or extract_topics(to_compact),
            decisions=extract_decisions(to_compact),
            key_findings=extract_key_findings(to_compact),
        )

        logger.info(
            "Compacted messages [%d, %d) into %s, saved %d tokens",
            range.start, range.end, condense_id, saved,
        )

        return CompressionResult(
            original_count=len(messages),
            compressed_count=len(retained),
            saved_tokens=saved,
            method=CompressionType.COMPACTED,
            retained_messages=retained,
            archived_messages=archived,
            summary=summary.text,
            compacted_session=compacted,
        )

    # ── Truncate ──

    def truncation_budget(self, config: Optional[ContextConfig] = None) -> int:
        config = self._resolve(config)
        return config.max_tokens - config.reserved_output_tokens - config.buffer_tokens

    def truncate(
        self,
        messages: list[Message],
        config: Optional[ContextConfig] = None,
    ) -> TruncationResult:
        """
        Remove the oldest live non-system messages outside the kept tail until the
        window plus one truncation marker fits the budget.
        """
        config = self._resolve(config)
        budget = self.truncation_budget(config)
        tail_start = self._tail_start(messages, config)

        marker_tokens = (
            self.estimator.count_text(TRUNCATION_TEMPLATE.format(count=len(messages)))
            + MESSAGE_OVERHEAD_TOKENS
        )
        tokens = [self.estimator.message_tokens(m) for m in messages]
        total = sum(t for t, m in zip(tokens, messages) if m.is_live) + marker_tokens

        removed: list[int] = []
        removed_tokens = 0
        for idx in range(tail_start):
            if total <= budget:
                break
            msg = messages[idx]
            if msg.role == Role.SYSTEM or not msg.is_live:
                continue
            removed.append(idx)
            total -= tokens[idx]
            removed_tokens += tokens[idx]

        if total > budget:
            logger.warning(
                "Truncation could not fit the budget: %d > %d tokens "
                "(protected messages exceed it)",
                total, budget,
            )

        truncation_id = new_id("trunc")
        marker = Message(
            id=truncation_id,
            role=Role.SYSTEM,
            content=TRUNCATION_TEMPLATE.format(count=len(removed)),
            token_count=marker_tokens,
            is_truncation_marker=True,
            truncation_id=truncation_id,
        )

        if removed:
            cut_index = removed[-1]
        else:
            cut_index = -1
            while cut_index + 1 < len(messages) and messages[cut_index + 1].role == Role.SYSTEM:
                cut_index += 1

        removed_set = set(removed)
        truncated: list[Message] = [marker] if cut_index < 0 else []
        for i, msg in enumerate(messages):
            if i not in removed_set:
                truncated.append(msg)
            if i == cut_index:
                truncated.append(marker)

        archived = [
            messages[i].archived(CompressionType.TRUNCATED, truncation_parent=truncation_id)
            for i in removed
        ]

        logger.info(
            "Truncated %d messages (%d tokens), window now %d/%d tokens",
            len(removed), removed_tokens, total, budget,
        )

        return TruncationResult(
            original_count=len(messages),
            truncated_messages=truncated,
            truncation_marker=marker,
            removed_messages=archived,
            removed_count=len(removed),
            removed_tokens=removed_tokens,
        )

    # ── Dispatch and history helpers ──

    @staticmethod
    def select_strategy(status: UsageStatus) -> Optional[CompressionType]:
        if status.should_truncate:
            return CompressionType.TRUNCATED
        if status.should_compact:
            return CompressionType.COMPACTED
        if status.should_prune:
            return CompressionType.PRUNED
        return None

    def reduce(
        self,
        messages: list[Message],
        strategy: CompressionType,
        config: Optional[ContextConfig] = None,
        session_id: str = "",
    ) -> CompressionResult:
        """Run one strategy and normalize its outcome to a CompressionResult."""
        config = self._resolve(config)
        if strategy == CompressionType.COMPACTED:
            return self.compact(messages, config, session_id=session_id)
        if strategy == CompressionType.PRUNED:
            return self._prune_fallback(messages, config)

        result = self.truncate(messages, config)
        return CompressionResult(
            original_count=result.original_count,
            compressed_count=len(result.truncated_messages),
            saved_tokens=result.removed_tokens,
            method=CompressionType.TRUNCATED,
            retained_messages=result.truncated_messages,
            archived_messages=result.removed_messages,
        )

    @staticmethod
    def effective_history(messages: list[Message]) -> list[Message]:
        """Messages the model should see: live ones, without truncation markers."""
        return [m for m in messages if m.is_live and not m.is_truncation_marker]

    @staticmethod
    def cleanup_orphaned_tags(messages: list[Message]) -> list[Message]:
        """
        Revive archived messages whose summary or truncation marker is no
        longer present (e.g. after restoring a partial snapshot).
        """
        anchors = {m.condense_id for m in messages if m.is_condense_anchor}
        markers = {m.truncation_id for m in messages if m.is_truncation_marker}

        cleaned = []
        for msg in messages:
            orphan_condense = msg.condense_parent and msg.condense_parent not in anchors
            orphan_trunc = msg.truncation_parent and msg.truncation_parent not in markers
            if orphan_condense or orphan_trunc:
                condense_parent = None if orphan_condense else msg.condense_parent
                truncation_parent = None if orphan_trunc else msg.truncation_parent
                if condense_parent is None and truncation_parent is None:
                    msg = replace(
                        msg,
                        condense_parent=None,
                        truncation_parent=None,
                        compressed=False,
                        compression_type=None,
                    )
                else:
                    msg = replace(
                        msg,
                        condense_parent=condense_parent,
                        truncation_parent=truncation_parent,
                    )
            cleaned.append(msg)
        return cleaned
