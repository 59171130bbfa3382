"""
Token budget evaluation.

Estimates token counts for messages and decides which reduction strategy,
if any, the current usage calls for.
"""

import logging
from typing import Callable, Iterable, Optional

from .cache import TokenCountCache
from .config import ContextConfig
from .types import Message, TokenUsage, UsageLevel, UsageStatus

logger = logging.getLogger(__name__)

# Per-message overhead for role, separators etc.
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~3 chars per token for mixed CJK/English."""
    if not text:
        return 0
    return max(1, len(text) // 3)


class TokenEstimator:
    """
    Deterministic message token estimator.

    Messages that already carry ``token_count`` are trusted; others are
    estimated from their content with ``count_fn`` (pluggable so a real
    tokenizer can be used) and an optional caller-owned cache.
    """

    def __init__(
        self,
        count_fn: Callable[[str], int] = estimate_tokens,
        cache: Optional[TokenCountCache] = None,
    ):
        self._count_fn = count_fn
        self._cache = cache

    def count_text(self, text: str) -> int:
        if self._cache is None:
            return self._count_fn(text)
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        count = self._count_fn(text)
        self._cache.put(text, count)
        return count

    def message_tokens(self, msg: Message) -> int:
        if msg.token_count is not None:
            return msg.token_count
        return self.count_text(msg.content) + MESSAGE_OVERHEAD_TOKENS

    def total(self, messages: Iterable[Message]) -> int:
        return sum(self.message_tokens(m) for m in messages)

    def ensure_token_count(self, msg: Message) -> Message:
        """Fill in ``token_count`` when missing. Returns the same message."""
        if msg.token_count is None:
            msg.token_count = self.message_tokens(msg)
        return msg


class TokenBudgetEvaluator:
    """
    Pure evaluation of a message log against a ContextConfig.

    Usage:
        evaluator = TokenBudgetEvaluator(config)
        status = evaluator.evaluate(messages)
        if status.should_compact:
            ...
    """

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        estimator: Optional[TokenEstimator] = None,
    ):
        self.config = (config or ContextConfig()).validate()
        self.estimator = estimator or TokenEstimator()

    def calculate_usage(
        self,
        messages: list[Message],
        config: Optional[ContextConfig] = None,
    ) -> TokenUsage:
        """
        Sum live-message tokens into a TokenUsage.

        percentage = total / max(max_tokens - reserved_output_tokens, 1)
        """
        config = config or self.config
        total = self.estimator.total(m for m in messages if m.is_live)
        percentage = max(total / config.available_tokens, 0.0)
        return TokenUsage(
            prompt=total,
            completion=0,
            total=total,
            limit=config.max_tokens,
            percentage=percentage,
        )

    def evaluate(
        self,
        messages: list[Message],
        config: Optional[ContextConfig] = None,
    ) -> UsageStatus:
        """
        Decide whether action is required.

        The most severe threshold wins, so exactly one action flag is set
        whenever the level is not normal.
        """
        config = config or self.config
        if config is not self.config:
            config.validate()
        usage = self.calculate_usage(messages, config)
        pct = usage.percentage
        shown = f"{pct * 100:.1f}%"

        if pct >= config.truncate_threshold:
            status = UsageStatus(
                level=UsageLevel.CRITICAL,
                should_truncate=True,
                message=f"Token usage critical ({shown}). Truncation required.",
                usage=usage,
            )
        elif pct >= config.compact_threshold:
            status = UsageStatus(
                level=UsageLevel.WARNING,
                should_compact=True,
                message=f"Token usage high ({shown}). Compaction recommended.",
                usage=usage,
            )
        elif pct >= config.prune_threshold:
            status = UsageStatus(
                level=UsageLevel.WARNING,
                should_prune=True,
                message=f"Token usage elevated ({shown}). Pruning recommended.",
                usage=usage,
            )
        else:
            status = UsageStatus(
                level=UsageLevel.NORMAL,
                message=f"Token usage normal ({shown}).",
                usage=usage,
            )

        logger.debug(
            "Evaluated %d messages: %d/%d tokens -> %s",
            len(messages), usage.total, config.available_tokens, status.level.value,
        )
        return status
