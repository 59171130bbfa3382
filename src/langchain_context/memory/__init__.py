"""
Mid-term and long-term memory for conversation sessions.

- Mid-term: CompactedSession summaries produced by compaction or at session end
- Long-term: embedded IndexedConversation records, promoted from mid-term by
  importance heuristics and searchable by vector similarity (pgvector)

Summarizer and embedder capabilities wrap LangChain chat and embedding
models; null implementations are used when none is configured.
"""

from .embeddings import Embedder, LangChainEmbedder, NullEmbedder
from .importance import (
    PromotionCriteria,
    calculate_memory_importance,
    extract_decisions,
    extract_key_findings,
    extract_topics,
    generate_session_summary,
    should_promote_to_permanent_memory,
)
from .retriever import PgVectorLongTermStore, PostgresMidTermStore
from .stores import (
    InMemoryLongTermStore,
    InMemoryMidTermStore,
    LongTermStore,
    MidTermStore,
)
from .summarizer import LLMSummarizer, NullSummarizer, Summarizer, SummaryResult
from .tiers import MemoryTierManager, long_term_id_for

__all__ = [
    "Embedder",
    "InMemoryLongTermStore",
    "InMemoryMidTermStore",
    "LLMSummarizer",
    "LangChainEmbedder",
    "LongTermStore",
    "MemoryTierManager",
    "MidTermStore",
    "NullEmbedder",
    "NullSummarizer",
    "PgVectorLongTermStore",
    "PostgresMidTermStore",
    "PromotionCriteria",
    "Summarizer",
    "SummaryResult",
    "calculate_memory_importance",
    "extract_decisions",
    "extract_key_findings",
    "extract_topics",
    "generate_session_summary",
    "long_term_id_for",
    "should_promote_to_permanent_memory",
]
