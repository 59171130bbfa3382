"""
Tests for the three-tier memory system.
"""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from langchain_context.config import MemoryConfig
from langchain_context.errors import EmbeddingError, StorageError, SummarizationError
from langchain_context.memory import (
    InMemoryLongTermStore,
    InMemoryMidTermStore,
    LangChainEmbedder,
    LLMSummarizer,
    MemoryTierManager,
    NullEmbedder,
    NullSummarizer,
    PromotionCriteria,
    calculate_memory_importance,
    extract_decisions,
    extract_key_findings,
    extract_topics,
    generate_session_summary,
    long_term_id_for,
    should_promote_to_permanent_memory,
)
from langchain_context.memory.stores import cosine_similarity, keyword_match
from langchain_context.types import (
    CompactedSession,
    CompressionType,
    IndexedConversation,
    Message,
    MessageRange,
    Role,
    utcnow,
)

from conftest import make_conversation


def mid_record(session_id="s1", days_ago=0, **kwargs) -> CompactedSession:
    return CompactedSession(
        session_id=session_id,
        summary=kwargs.pop("summary", "Discussed the Python API."),
        message_range=MessageRange(0, 6),
        created_at=utcnow() - timedelta(days=days_ago),
        **kwargs,
    )


def long_record(content="notes", session_id="s1", embedding=None, **kwargs) -> IndexedConversation:
    return IndexedConversation(
        session_id=session_id,
        content=content,
        embedding=embedding if embedding is not None else [1.0, 0.0, 0.0],
        **kwargs,
    )


def fake_embedder(vector=None):
    embedder = MagicMock()
    embedder.available = True
    embedder.dimensions = 3
    embedder.embed.return_value = vector or [1.0, 0.0, 0.0]
    return embedder


def llm_reply(text: str):
    return MagicMock(content=text)


# ── Importance Tests ──


class TestImportance:
    def test_high(self):
        assert calculate_memory_importance(["Bug fix"], ["use a lock"], []) == "high"

    def test_medium(self):
        assert calculate_memory_importance([], ["use a lock"], []) == "medium"

    def test_low(self):
        assert calculate_memory_importance(["Python"], [], []) == "low"


class TestPromotionCriteria:
    def test_code_fix_is_enough(self):
        assert should_promote_to_permanent_memory(["fix the parser bug"], [], [], 2)

    def test_short_plain_session_not_promoted(self):
        assert not should_promote_to_permanent_memory([], [], ["Python"], 2)

    def test_long_session_promoted(self):
        assert should_promote_to_permanent_memory([], [], [], 10)

    def test_user_marked_important(self):
        criteria = PromotionCriteria(user_marked_important=True)
        assert should_promote_to_permanent_memory([], [], [], 1, criteria)

    def test_explicit_signal_overrides_content(self):
        criteria = PromotionCriteria(has_code_fix=False)
        assert not should_promote_to_permanent_memory(["fix the parser bug"], [], [], 1, criteria)

    def test_custom_min_session_length(self):
        criteria = PromotionCriteria(min_session_length=3)
        assert should_promote_to_permanent_memory([], [], [], 3, criteria)


class TestExtractors:
    def test_topics(self):
        topics = extract_topics([Message(Role.USER, "How should the Python API handle storage?")])
        assert "Python" in topics
        assert "API" in topics
        assert "Storage" in topics

    def test_topics_limit(self):
        text = "React TypeScript Python Database Memory Storage Search"
        assert len(extract_topics([Message(Role.USER, text)], limit=3)) == 3

    def test_decisions_from_assistant_only(self):
        messages = [
            Message(Role.USER, "We decided to use MySQL."),
            Message(Role.ASSISTANT, "We decided to use Postgres for storage."),
        ]
        decisions = extract_decisions(messages)
        assert len(decisions) == 1
        assert "Postgres" in decisions[0]

    def test_findings(self):
        findings = extract_key_findings([Message(Role.ASSISTANT, "I found: the index was missing.")])
        assert findings == ["the index was missing"]

    def test_findings_deduplicated(self):
        msg = Message(Role.ASSISTANT, "Important: back up first. Important: back up first.")
        assert extract_key_findings([msg]) == ["back up first"]

    def test_session_summary(self):
        summary = generate_session_summary(make_conversation(4))
        assert summary.startswith("Session contains 4 messages.")
        assert "User: message 0" in summary


# ── Summarizer Tests ──


class TestLLMSummarizer:
    def test_summarize(self):
        llm = MagicMock()
        llm.invoke.return_value = llm_reply("  The team chose Postgres.  ")
        summarizer = LLMSummarizer(llm)
        result = summarizer.summarize(make_conversation(3))
        assert summarizer.available
        assert result.text == "The team chose Postgres."
        assert result.token_count == len("The team chose Postgres.") // 3
        assert result.topics == []
        prompt = llm.invoke.call_args[0][0]
        assert prompt[0]["role"] == "system"
        assert "USER: message 0" in prompt[1]["content"]

    def test_content_blocks(self):
        llm = MagicMock()
        llm.invoke.return_value = llm_reply([
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Block summary"},
        ])
        assert LLMSummarizer(llm).summarize(make_conversation(2)).text == "Block summary"

    def test_long_summary_compressed(self):
        llm = MagicMock()
        llm.invoke.side_effect = [llm_reply("x" * 60), llm_reply("short")]
        summarizer = LLMSummarizer(llm, max_summary_tokens=5)
        assert summarizer.summarize(make_conversation(2)).text == "short"
        assert llm.invoke.call_count == 2

    def test_topics_from_code_block(self):
        llm = MagicMock()
        llm.invoke.side_effect = [
            llm_reply("Summary"),
            llm_reply('```json\n["Python", "API design"]\n```'),
        ]
        result = LLMSummarizer(llm, extract_topics=True).summarize(make_conversation(2))
        assert result.topics == ["Python", "API design"]

    def test_bad_topics_json_ignored(self):
        llm = MagicMock()
        llm.invoke.side_effect = [llm_reply("Summary"), llm_reply("[not json")]
        result = LLMSummarizer(llm, extract_topics=True).summarize(make_conversation(2))
        assert result.topics == []

    def test_failure_raises_summarization_error(self):
        llm = MagicMock()
        llm.invoke.side_effect = RuntimeError("rate limited")
        with pytest.raises(SummarizationError, match="rate limited"):
            LLMSummarizer(llm).summarize(make_conversation(2))

    def test_empty_reply_is_error(self):
        llm = MagicMock()
        llm.invoke.return_value = llm_reply("   ")
        with pytest.raises(SummarizationError):
            LLMSummarizer(llm).summarize(make_conversation(2))

    def test_timeout(self):
        release = threading.Event()
        llm = MagicMock()
        llm.invoke.side_effect = lambda messages: release.wait(5)
        summarizer = LLMSummarizer(llm, timeout_seconds=0.05)
        try:
            with pytest.raises(SummarizationError, match="timed out"):
                summarizer.summarize(make_conversation(2))
        finally:
            release.set()
            summarizer.close()

    def test_call_after_timeout_gets_fresh_worker(self):
        release = threading.Event()
        calls = []

        def invoke(messages):
            calls.append(messages)
            if len(calls) == 1:
                release.wait(5)
            return llm_reply("Recovered summary.")

        llm = MagicMock()
        llm.invoke.side_effect = invoke
        summarizer = LLMSummarizer(llm, timeout_seconds=0.2)
        try:
            with pytest.raises(SummarizationError, match="timed out"):
                summarizer.summarize(make_conversation(2))
            result = summarizer.summarize(make_conversation(2))
            assert result.text == "Recovered summary."
        finally:
            release.set()
            summarizer.close()

    def test_nothing_to_summarize(self):
        with pytest.raises(SummarizationError):
            LLMSummarizer(MagicMock()).summarize([])

    def test_null_summarizer(self):
        summarizer = NullSummarizer()
        assert not summarizer.available
        with pytest.raises(SummarizationError):
            summarizer.summarize(make_conversation(2))


# ── Embedder Tests ──


class TestEmbedders:
    def test_detects_dimensions(self):
        model = MagicMock()
        model.embed_query.return_value = [0.1, 0.2, 0.3]
        embedder = LangChainEmbedder(model)
        assert embedder.dimensions == 0
        assert embedder.embed("hello") == [0.1, 0.2, 0.3]
        assert embedder.dimensions == 3

    def test_dimension_mismatch(self):
        model = MagicMock()
        model.embed_query.return_value = [0.1, 0.2]
        with pytest.raises(EmbeddingError):
            LangChainEmbedder(model, dimensions=3).embed("hello")

    def test_model_failure(self):
        model = MagicMock()
        model.embed_query.side_effect = ConnectionError("offline")
        with pytest.raises(EmbeddingError, match="offline"):
            LangChainEmbedder(model).embed("hello")

    def test_empty_vector(self):
        model = MagicMock()
        model.embed_query.return_value = []
        with pytest.raises(EmbeddingError):
            LangChainEmbedder(model).embed("hello")

    def test_null_embedder(self):
        embedder = NullEmbedder()
        assert not embedder.available
        with pytest.raises(EmbeddingError):
            embedder.embed("hello")


# ── Store Tests ──


class TestStoreHelpers:
    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_keyword_match(self):
        assert keyword_match("Postgres index tuning", "INDEX postgres")
        assert not keyword_match("Postgres index tuning", "index mysql")
        assert not keyword_match("anything", "   ")


class TestInMemoryMidTermStore:
    def test_save_and_list_oldest_first(self):
        store = InMemoryMidTermStore()
        newer = mid_record(days_ago=1)
        older = mid_record(days_ago=3)
        store.save(newer)
        store.save(older)
        store.save(mid_record(session_id="s2"))
        assert [r.id for r in store.list_for_session("s1")] == [older.id, newer.id]
        assert len(store.list_all()) == 3

    def test_mark_promoted_once(self):
        store = InMemoryMidTermStore()
        record = mid_record()
        store.save(record)
        assert store.mark_promoted(record.id, "long-1") is True
        assert store.mark_promoted(record.id, "long-2") is False
        assert store.get_by_id(record.id).promoted_to == "long-1"
        assert store.mark_promoted("missing", "long-1") is False

    def test_reset_promotion(self):
        store = InMemoryMidTermStore()
        record = mid_record()
        store.save(record)
        assert store.reset_promotion(record.id) is False
        store.mark_promoted(record.id, "long-1")
        assert store.reset_promotion(record.id) is True
        assert store.get_by_id(record.id).promoted is False

    def test_delete_expired_skips_promoted(self):
        store = InMemoryMidTermStore()
        old = mid_record(days_ago=40)
        old_promoted = mid_record(days_ago=40)
        recent = mid_record()
        for r in (old, old_promoted, recent):
            store.save(r)
        store.mark_promoted(old_promoted.id, "long-1")

        assert store.delete_expired(utcnow() - timedelta(days=30)) == 1
        assert store.get_by_id(old.id) is None
        assert store.get_by_id(old_promoted.id) is not None
        assert store.get_by_id(recent.id) is not None

    def test_returned_records_are_copies(self):
        store = InMemoryMidTermStore()
        record = mid_record()
        store.save(record)
        store.get_by_id(record.id).summary = "changed"
        assert store.get_by_id(record.id).summary == record.summary


class TestInMemoryLongTermStore:
    def test_duplicate_id_rejected(self):
        store = InMemoryLongTermStore()
        record = long_record()
        assert store.save(record) is True
        assert store.save(record) is False
        assert len(store) == 1

    def test_search_by_similarity(self):
        store = InMemoryLongTermStore()
        near = long_record("near", embedding=[1.0, 0.1, 0.0])
        far = long_record("far", embedding=[0.0, 1.0, 0.0])
        store.save(far)
        store.save(near)
        results = store.search([1.0, 0.0, 0.0], limit=2)
        assert [r.content for r in results] == ["near", "far"]
        assert len(store.search([1.0, 0.0, 0.0], limit=1)) == 1

    def test_search_filters_session(self):
        store = InMemoryLongTermStore()
        store.save(long_record("mine", session_id="s1"))
        store.save(long_record("theirs", session_id="s2"))
        results = store.search([1.0, 0.0, 0.0], session_id="s2")
        assert [r.content for r in results] == ["theirs"]

    def test_keyword_search_newest_first(self):
        store = InMemoryLongTermStore()
        old = long_record("postgres index", date=utcnow() - timedelta(days=2))
        new = long_record("postgres vacuum index")
        store.save(old)
        store.save(new)
        store.save(long_record("redis cache"))
        assert [r.id for r in store.keyword_search("Postgres index")] == [new.id, old.id]

    def test_find_by_source(self):
        store = InMemoryLongTermStore()
        record = long_record(source_id="mid-1")
        store.save(record)
        assert store.find_by_source("mid-1").id == record.id
        assert store.find_by_source("mid-2") is None

    def test_clear_and_stats(self):
        store = InMemoryLongTermStore()
        store.save(long_record(session_id="s1"))
        store.save(long_record(session_id="s1"))
        store.save(long_record(session_id="s2"))
        assert store.stats() == {"total_conversations": 3, "total_sessions": 2}
        assert store.clear("s1") == 2
        assert store.clear() == 1
        assert store.stats()["total_conversations"] == 0


# ── Tier Manager Tests ──


class TestMemoryTierManager:
    def _manager(self, embedder=None, **config):
        return MemoryTierManager(
            InMemoryMidTermStore(),
            InMemoryLongTermStore(),
            embedder=embedder,
            config=MemoryConfig(**config),
        )

    def test_long_term_id_is_deterministic(self):
        assert long_term_id_for("mid-1") == long_term_id_for("mid-1")
        assert long_term_id_for("mid-1") != long_term_id_for("mid-2")
        assert long_term_id_for("mid-1").startswith("long-")

    def test_promote_to_mid_term_needs_five_messages(self):
        manager = self._manager()
        assert manager.promote_to_mid_term("s1", make_conversation(4)) is None
        assert len(manager.mid_term) == 0

    def test_promote_to_mid_term(self):
        manager = self._manager()
        messages = make_conversation(6) + [
            Message(Role.ASSISTANT, "We decided to use Postgres for storage."),
        ]
        record = manager.promote_to_mid_term("s1", messages, summary="Storage talk")
        assert record.summary == "Storage talk"
        assert record.message_range == MessageRange(0, 7)
        assert "Storage" in record.key_topics
        assert record.decisions
        assert manager.mid_term.get_by_id(record.id) is not None

    def test_promote_to_mid_term_uses_append_positions(self):
        manager = self._manager()
        messages = make_conversation(6)
        for position, m in enumerate(messages, start=4):
            m.position = position
        record = manager.promote_to_mid_term("s1", messages)
        assert record.message_range == MessageRange(4, 10)

    def test_promote_to_mid_term_ignores_archived(self):
        manager = self._manager()
        messages = make_conversation(4) + [
            Message(Role.USER, "gone", token_count=10).archived(CompressionType.PRUNED),
        ]
        assert manager.promote_to_mid_term("s1", messages) is None

    def test_promotion_is_idempotent(self):
        embedder = fake_embedder()
        manager = self._manager(embedder)
        record = mid_record(decisions=["use Postgres"], key_findings=["index was missing"])
        manager.record_compaction(record)

        first = manager.promote_to_long_term(record)
        second = manager.promote_to_long_term(record.id)

        assert first.id == long_term_id_for(record.id)
        assert second.id == first.id
        assert len(manager.long_term) == 1
        assert embedder.embed.call_count == 1
        stored = manager.mid_term.get_by_id(record.id)
        assert stored.promoted and stored.promoted_to == first.id
        assert "Decisions:\n- use Postgres" in first.content
        assert "Findings:\n- index was missing" in first.content

    def test_embedding_failure_defers_promotion(self):
        embedder = fake_embedder()
        embedder.embed.side_effect = EmbeddingError("embedding service down")
        manager = self._manager(embedder)
        record = mid_record()
        manager.record_compaction(record)

        assert manager.promote_to_long_term(record) is None
        assert manager.mid_term.get_by_id(record.id).promoted is False
        assert len(manager.long_term) == 0

        embedder.embed.side_effect = None
        assert manager.promote_to_long_term(record) is not None
        assert manager.mid_term.get_by_id(record.id).promoted is True

    def test_existing_long_term_record_reused(self):
        embedder = fake_embedder()
        manager = self._manager(embedder)
        record = mid_record()
        manager.record_compaction(record)
        existing = long_record(id=long_term_id_for(record.id), source_id=record.id)
        manager.long_term.save(existing)

        assert manager.promote_to_long_term(record).id == existing.id
        embedder.embed.assert_not_called()
        assert manager.mid_term.get_by_id(record.id).promoted_to == existing.id

    def test_unknown_record(self):
        assert self._manager(fake_embedder()).promote_to_long_term("missing") is None

    def test_run_promotion_selects_eligible(self):
        manager = self._manager(fake_embedder())
        eligible = mid_record(decisions=["fix the race in the cache"])
        plain = mid_record()
        manager.record_compaction(eligible)
        manager.record_compaction(plain)

        promoted = manager.run_promotion("s1", session_length=2)
        assert [c.source_id for c in promoted] == [eligible.id]
        assert manager.mid_term.get_by_id(plain.id).promoted is False

    def test_run_promotion_long_session(self):
        manager = self._manager(fake_embedder())
        manager.record_compaction(mid_record())
        assert len(manager.run_promotion("s1", session_length=10)) == 1
        assert manager.run_promotion("s1", session_length=10) == []

    def test_run_promotion_survives_storage_error(self):
        long_term = MagicMock()
        long_term.find_by_source.return_value = None
        long_term.save.side_effect = StorageError("disk full")
        manager = MemoryTierManager(InMemoryMidTermStore(), long_term, embedder=fake_embedder())
        record = mid_record()
        manager.record_compaction(record)

        assert manager.run_promotion("s1", session_length=20) == []
        assert manager.mid_term.get_by_id(record.id).promoted is False

    def test_promote_raw(self):
        manager = self._manager(fake_embedder())
        first = manager.promote_raw("s1", "Always run migrations first", topics=["Database"])
        second = manager.promote_raw("s1", "Always run migrations first")
        assert first.id == second.id
        assert first.topics == ["Database"]
        assert len(manager.long_term) == 1

    def test_search_uses_embeddings(self):
        manager = self._manager(fake_embedder([0.0, 1.0, 0.0]))
        manager.long_term.save(long_record("x-axis", embedding=[1.0, 0.0, 0.0]))
        manager.long_term.save(long_record("y-axis", embedding=[0.0, 1.0, 0.0]))
        assert manager.search_long_term("anything", limit=1)[0].content == "y-axis"

    def test_search_falls_back_to_keywords(self):
        manager = self._manager()
        manager.long_term.save(long_record("postgres index tuning"))
        manager.long_term.save(long_record("redis cache"))
        assert [r.content for r in manager.search_long_term("postgres")] == ["postgres index tuning"]

    def test_search_falls_back_when_embedding_fails(self):
        embedder = fake_embedder()
        embedder.embed.side_effect = EmbeddingError("down")
        manager = self._manager(embedder)
        manager.long_term.save(long_record("postgres index tuning"))
        assert len(manager.search_long_term("postgres")) == 1

    def test_cleanup_expired(self):
        manager = self._manager(mid_term_max_age_days=30)
        old = mid_record(days_ago=40)
        old_promoted = mid_record(days_ago=40)
        for r in (old, old_promoted, mid_record()):
            manager.record_compaction(r)
        manager.mark_as_promoted(old_promoted.id, "long-x")

        assert manager.cleanup_expired_mid_term() == 1
        assert manager.mid_term.get_by_id(old.id) is None
        assert manager.mid_term.get_by_id(old_promoted.id) is not None

    def test_repair_dangling_promotions(self):
        manager = self._manager(fake_embedder())
        dangling = mid_record()
        healthy = mid_record()
        manager.record_compaction(dangling)
        manager.record_compaction(healthy)
        manager.mark_as_promoted(dangling.id, "long-gone")
        manager.promote_to_long_term(healthy)

        assert manager.repair_dangling_promotions() == 1
        assert manager.mid_term.get_by_id(dangling.id).promoted is False
        assert manager.mid_term.get_by_id(healthy.id).promoted is True

    def test_memory_layer(self):
        manager = self._manager(fake_embedder(), mid_term_max_age_days=30)
        promoted = mid_record()
        stale = mid_record(days_ago=45)
        manager.record_compaction(promoted)
        manager.record_compaction(stale)
        manager.record_compaction(mid_record(session_id="other"))
        conversation = manager.promote_to_long_term(promoted)

        messages = make_conversation(3) + [
            Message(Role.USER, "gone").archived(CompressionType.PRUNED),
        ]
        layer = manager.get_memory_layer("s1", messages)
        assert len(layer.short_term) == 3
        assert [r.id for r in layer.mid_term] == [promoted.id]
        assert [c.id for c in layer.long_term] == [conversation.id]

    def test_importance(self):
        record = mid_record(decisions=["a", "b"], key_findings=["c"])
        assert MemoryTierManager.importance(record) == "high"
