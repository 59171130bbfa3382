"""
Three-tier memory: short-term (live messages), mid-term (CompactedSession
summaries) and long-term (embedded IndexedConversation records).

Promotion from mid-term to long-term is one-way and idempotent. Each
long-term record id is derived from its source id, and the source record is
marked promoted only after the long-term write succeeds. An embedding
failure leaves the mid-term record un-promoted so a later run can retry it.
"""

import hashlib
import logging
import threading
from datetime import datetime, timedelta
from typing import Optional, Union

from ..config import MemoryConfig
from ..errors import EmbeddingError, StorageError
from ..types import (
    CompactedSession,
    IndexedConversation,
    MemoryLayer,
    Message,
    MessageRange,
    original_range,
    utcnow,
)
from .embeddings import Embedder, NullEmbedder
from .importance import (
    Importance,
    PromotionCriteria,
    calculate_memory_importance,
    extract_decisions,
    extract_key_findings,
    extract_topics,
    generate_session_summary,
    should_promote_to_permanent_memory,
)
from .stores import LongTermStore, MidTermStore

logger = logging.getLogger(__name__)

# Sessions shorter than this are not worth a mid-term record
MIN_MID_TERM_MESSAGES = 5


def long_term_id_for(source_id: str) -> str:
    """Deterministic long-term id for deduplication."""
    h = hashlib.sha256(source_id.encode()).hexdigest()[:16]
    return f"long-{h}"


def _long_term_content(record: CompactedSession) -> str:
    parts = [record.summary]
    if record.decisions:
        parts.append("Decisions:\n" + "\n".join(f"- {d}" for d in record.decisions))
    if record.key_findings:
        parts.append("Findings:\n" + "\n".join(f"- {f}" for f in record.key_findings))
    return "\n\n".join(parts)


class MemoryTierManager:
    def __init__(
        self,
        mid_term_store: MidTermStore,
        long_term_store: LongTermStore,
        embedder: Optional[Embedder] = None,
        config: Optional[MemoryConfig] = None,
        criteria: Optional[PromotionCriteria] = None,
    ):
        self.mid_term = mid_term_store
        self.long_term = long_term_store
        self.embedder = embedder or NullEmbedder()
        self.config = config or MemoryConfig()
        self.criteria = criteria or PromotionCriteria(
            min_session_length=self.config.min_session_length
        )
        self._promotion_lock = threading.Lock()

    def _mid_term_cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(days=self.config.mid_term_max_age_days)

    # ── Layers ────────────────────────────────────────────────

    def get_memory_layer(
        self, session_id: str, messages: Optional[list[Message]] = None
    ) -> MemoryLayer:
        """
        The three-tier view of one session.

        ``short_term`` keeps only live, uncompressed messages from
        ``messages``. ``mid_term`` drops records past the maximum age.
        ``long_term`` holds the records promoted from this session.
        """
        short_term = [m for m in (messages or []) if m.is_live and not m.compressed]

        cutoff = self._mid_term_cutoff()
        mid_term = [
            r for r in self.mid_term.list_for_session(session_id)
            if r.created_at >= cutoff
        ]

        long_term = []
        for record in mid_term:
            if record.promoted and record.promoted_to:
                conversation = self.long_term.get_by_id(record.promoted_to)
                if conversation:
                    long_term.append(conversation)

        return MemoryLayer(short_term=short_term, mid_term=mid_term, long_term=long_term)

    @staticmethod
    def importance(record: CompactedSession) -> Importance:
        return calculate_memory_importance(
            record.key_topics, record.decisions, record.key_findings
        )

    # ── Mid-term ──────────────────────────────────────────────

    def promote_to_mid_term(
        self,
        session_id: str,
        messages: list[Message],
        summary: Optional[str] = None,
    ) -> Optional[CompactedSession]:
        """
        Capture a stretch of conversation as a mid-term record.

        Returns None when there are fewer than five live messages.
        """
        live = [m for m in messages if m.is_live]
        if len(live) < MIN_MID_TERM_MESSAGES:
            logger.debug(
                "Skipping mid-term capture for %s: %d live messages", session_id, len(live)
            )
            return None

        record = CompactedSession(
            session_id=session_id,
            summary=summary or generate_session_summary(live),
            message_range=original_range(live, MessageRange(0, len(live))),
            key_topics=extract_topics(live),
            decisions=extract_decisions(live),
            key_findings=extract_key_findings(live),
        )
        self.mid_term.save(record)
        logger.info(
            "Saved mid-term memory %s for session %s (%d messages, topics: %s)",
            record.id, session_id, len(live), record.key_topics,
        )
        return record

    def record_compaction(self, record: CompactedSession) -> CompactedSession:
        """Store the mid-term record produced by a compaction."""
        self.mid_term.save(record)
        logger.info(
            "Recorded compaction %s for session %s (messages %d-%d)",
            record.id, record.session_id,
            record.message_range.start, record.message_range.end,
        )
        return record

    def cleanup_expired_mid_term(self, now: Optional[datetime] = None) -> int:
        """Delete un-promoted mid-term records older than the maximum age."""
        deleted = self.mid_term.delete_expired(self._mid_term_cutoff(now))
        if deleted:
            logger.info("Expired %d mid-term memories", deleted)
        return deleted

    def repair_dangling_promotions(self) -> int:
        """Reset records marked promoted whose long-term record is gone."""
        repaired = 0
        for record in self.mid_term.list_all():
            if not record.promoted:
                continue
            if record.promoted_to and self.long_term.get_by_id(record.promoted_to):
                continue
            if self.mid_term.reset_promotion(record.id):
                repaired += 1
        if repaired:
            logger.info("Reset %d dangling promotions", repaired)
        return repaired

    # ── Long-term ─────────────────────────────────────────────

    def mark_as_promoted(self, record_id: str, long_term_id: str) -> bool:
        return self.mid_term.mark_promoted(record_id, long_term_id)

    def promote_to_long_term(
        self, record: Union[CompactedSession, str]
    ) -> Optional[IndexedConversation]:
        """
        Embed a mid-term record into long-term memory.

        Promoting an already-promoted record returns the existing long-term
        record. Returns None if the record is unknown or embedding failed.
        """
        record_id = record if isinstance(record, str) else record.id

        with self._promotion_lock:
            current = self.mid_term.get_by_id(record_id)
            if current is None:
                logger.warning("Cannot promote unknown mid-term record %s", record_id)
                return None

            if current.promoted:
                logger.debug("Mid-term record %s already promoted", record_id)
                return self.long_term.get_by_id(current.promoted_to or long_term_id_for(record_id))

            existing = self.long_term.find_by_source(record_id)
            if existing:
                self.mark_as_promoted(record_id, existing.id)
                return existing

            content = _long_term_content(current)
            try:
                embedding = self.embedder.embed(content)
            except EmbeddingError as e:
                logger.warning("Deferring promotion of %s: %s", record_id, e)
                return None

            conversation = IndexedConversation(
                id=long_term_id_for(record_id),
                session_id=current.session_id,
                content=content,
                embedding=embedding,
                topics=list(current.key_topics),
                source_id=record_id,
            )
            self.long_term.save(conversation)
            self.mark_as_promoted(record_id, conversation.id)

        logger.info(
            "Promoted %s to long-term memory %s (topics: %s)",
            record_id, conversation.id, conversation.topics,
        )
        return conversation

    def promote_raw(
        self,
        session_id: str,
        content: str,
        topics: Optional[list[str]] = None,
    ) -> Optional[IndexedConversation]:
        """Promote content directly into long-term memory, skipping mid-term."""
        source_id = "raw-" + hashlib.sha256(f"{session_id}:{content[:200]}".encode()).hexdigest()[:16]
        with self._promotion_lock:
            existing = self.long_term.find_by_source(source_id)
            if existing:
                return existing
            try:
                embedding = self.embedder.embed(content)
            except EmbeddingError as e:
                logger.warning("Deferring raw promotion for %s: %s", session_id, e)
                return None
            conversation = IndexedConversation(
                id=long_term_id_for(source_id),
                session_id=session_id,
                content=content,
                embedding=embedding,
                topics=list(topics or []),
                source_id=source_id,
            )
            self.long_term.save(conversation)
        return conversation

    def run_promotion(
        self,
        session_id: str,
        session_length: int,
        criteria: Optional[PromotionCriteria] = None,
    ) -> list[IndexedConversation]:
        """Promote every eligible, un-promoted mid-term record of a session."""
        criteria = criteria or self.criteria
        promoted = []
        for record in self.mid_term.list_for_session(session_id):
            if record.promoted:
                continue
            if not should_promote_to_permanent_memory(
                record.decisions, record.key_findings, record.key_topics,
                session_length, criteria,
            ):
                logger.debug("Mid-term record %s not eligible for promotion", record.id)
                continue
            try:
                conversation = self.promote_to_long_term(record)
            except StorageError as e:
                logger.warning("Promotion of %s failed: %s", record.id, e)
                continue
            if conversation:
                promoted.append(conversation)
        return promoted

    def search_long_term(
        self,
        query: str,
        limit: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> list[IndexedConversation]:
        """Semantic search, falling back to keywords when embedding is unavailable."""
        limit = limit or self.config.recall_top_k
        if self.embedder.available:
            try:
                return self.long_term.search(self.embedder.embed(query), limit, session_id)
            except EmbeddingError as e:
                logger.warning("Query embedding failed, using keyword search: %s", e)
        return self.long_term.keyword_search(query, limit, session_id)
