"""
Summarization capability used by compaction.

``LLMSummarizer`` asks a LangChain chat model for a summary of a message
range; ``NullSummarizer`` stands in when no model is configured so the
compression engine can degrade to pruning without presence checks.
"""

import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, runtime_checkable

from ..errors import SummarizationError
from ..token_budget import estimate_tokens
from ..types import Message

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer. Summarize the following conversation messages concisely.
Focus on:
- Key topics discussed
- Important decisions made
- Relevant context for future conversation
- Tool calls and their outcomes (brief)

Output a concise summary in the same language as the conversation. Do NOT use markdown headers."""

COMPRESS_SYSTEM_PROMPT = """Compress the following summary to approximately 1/3 of its length.
Keep the most important information. Output in the same language."""

TOPIC_EXTRACTION_PROMPT = """Extract 3-8 short topic tags from the following conversation.
Each tag should be 1-4 words, describing a key topic, concept, or entity discussed.
Output ONLY a JSON array of strings, nothing else.
Example: ["Python basics", "database design", "API auth", "user management"]"""

# Per-message character cap when building the summarizer prompt
MAX_MESSAGE_CHARS = 500


@dataclass
class SummaryResult:
    text: str
    token_count: int
    topics: list[str] = field(default_factory=list)


@runtime_checkable
class Summarizer(Protocol):
    """Capability interface for the summarization service."""

    @property
    def available(self) -> bool: ...

    def summarize(self, messages: list[Message]) -> SummaryResult:
        """Summarize messages. Raises SummarizationError on failure."""
        ...


class NullSummarizer:
    """Summarizer used when no model is configured."""

    @property
    def available(self) -> bool:
        return False

    def summarize(self, messages: list[Message]) -> SummaryResult:
        raise SummarizationError("no summarization model configured")


def _messages_to_text(messages: list[Message], max_chars: int) -> str:
    lines = []
    for msg in messages:
        content = msg.content or ""
        if len(content) > max_chars:
            content = content[:max_chars] + "..."
        lines.append(f"{msg.role.value.upper()}: {content}")
    return "\n".join(lines)


def _response_text(response) -> str:
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "\n".join(parts)
    return str(content)


class LLMSummarizer:
    """Generates compaction summaries with a LangChain chat model."""

    def __init__(
        self,
        llm,
        max_summary_tokens: int = 1000,
        timeout_seconds: Optional[float] = 30.0,
        extract_topics: bool = False,
        count_fn: Callable[[str], int] = estimate_tokens,
    ):
        self._llm = llm
        self.max_summary_tokens = max_summary_tokens
        self.timeout_seconds = timeout_seconds
        self.extract_topics_enabled = extract_topics
        self._count_fn = count_fn
        self._lock = threading.Lock()
        self._executor = self._new_executor()

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="summarizer")

    def _replace_worker(self, stuck: ThreadPoolExecutor) -> None:
        """Give later calls a fresh worker; the timed-out call ends on its own."""
        with self._lock:
            if self._executor is stuck:
                self._executor = self._new_executor()
        stuck.shutdown(wait=False)

    @property
    def available(self) -> bool:
        return self._llm is not None

    def _invoke(self, system_prompt: str, user_text: str) -> str:
        """Call the model, enforcing the timeout."""
        with self._lock:
            executor = self._executor
        future = executor.submit(
            self._llm.invoke,
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_text},
            ],
        )
        try:
            response = future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError as e:
            future.cancel()
            self._replace_worker(executor)
            raise SummarizationError(
                f"summarizer timed out after {self.timeout_seconds}s"
            ) from e
        except Exception as e:
            raise SummarizationError(f"summarizer failed: {e}") from e
        return _response_text(response).strip()

    def compress_summary(self, summary: str) -> str:
        """Compress a summary to fit within budget; keeps the input on failure."""
        try:
            return self._invoke(COMPRESS_SYSTEM_PROMPT, summary) or summary
        except SummarizationError as e:
            logger.warning("Failed to compress summary: %s", e)
            return summary

    def extract_topics(self, messages: list[Message]) -> list[str]:
        """Extract topic tags from messages using the LLM."""
        if not messages:
            return []
        try:
            raw = self._invoke(
                TOPIC_EXTRACTION_PROMPT, _messages_to_text(messages, 300)
            )
        except SummarizationError as e:
            logger.warning("Failed to extract topics: %s", e)
            return []
        if raw.startswith("["):
            candidate = raw
        else:
            # Try to extract array from markdown code block
            match = re.search(r"\[.*?\]", raw, re.DOTALL)
            if not match:
                return []
            candidate = match.group()
        try:
            topics = json.loads(candidate)
        except json.JSONDecodeError:
            return []
        return [str(t).strip() for t in topics if isinstance(t, str) and t.strip()]

    def summarize(self, messages: list[Message]) -> SummaryResult:
        if not self.available:
            raise SummarizationError("no summarization model configured")
        if not messages:
            raise SummarizationError("nothing to summarize")

        summary = self._invoke(
            SUMMARY_SYSTEM_PROMPT, _messages_to_text(messages, MAX_MESSAGE_CHARS)
        )
        if not summary:
            raise SummarizationError("summarizer returned an empty summary")

        if self._count_fn(summary) > self.max_summary_tokens:
            summary = self.compress_summary(summary)

        topics = self.extract_topics(messages) if self.extract_topics_enabled else []
        return SummaryResult(
            text=summary,
            token_count=self._count_fn(summary),
            topics=topics,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
