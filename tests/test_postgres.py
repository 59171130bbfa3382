"""
Tests for the PostgreSQL-backed stores, against a mocked psycopg connection.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import psycopg
import pytest

from langchain_context.checkpoint import (
    BatchCheckpointOperations,
    BatchOptions,
    PostgresCheckpointStorage,
)
from langchain_context.errors import StorageError
from langchain_context.memory import PgVectorLongTermStore, PostgresMidTermStore
from langchain_context.memory.retriever import DEFAULT_EMBEDDING_DIMENSIONS, _parse_vector
from langchain_context.types import (
    Checkpoint,
    CheckpointDraft,
    CompactedSession,
    IndexedConversation,
    MessageRange,
    utcnow,
)

from conftest import make_conversation


def mock_conn():
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    return conn, cursor


def executed_sql(cursor) -> list[str]:
    return [c.args[0] for c in cursor.execute.call_args_list]


def track_overlap(context_manager, entered=None) -> dict:
    """Record the most threads seen inside a mocked context manager at once."""
    state = {"active": 0, "peak": 0}
    guard = threading.Lock()

    def enter(*args):
        with guard:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.01)
        return entered

    def leave(*args):
        with guard:
            state["active"] -= 1
        return False

    context_manager.__enter__.side_effect = enter
    context_manager.__exit__.side_effect = leave
    return state


# ── Checkpoint Storage Tests ──


class TestPostgresCheckpointStorage:
    def test_setup_creates_tables(self):
        conn, cursor = mock_conn()
        PostgresCheckpointStorage(conn)
        sql = " ".join(executed_sql(cursor))
        assert "CREATE TABLE IF NOT EXISTS context_checkpoints" in sql
        assert "CREATE TABLE IF NOT EXISTS context_checkpoint_messages" in sql
        assert "ON DELETE CASCADE" in sql

    def test_setup_failure(self):
        conn, cursor = mock_conn()
        cursor.execute.side_effect = psycopg.OperationalError("connection refused")
        with pytest.raises(StorageError):
            PostgresCheckpointStorage(conn)

    def test_save_writes_checkpoint_and_messages_in_transaction(self):
        conn, cursor = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        cp = Checkpoint(session_id="s1", name="a", message_count=2, token_count=200)
        storage.save_checkpoint(cp, make_conversation(2))

        conn.transaction.assert_called_once()
        insert_params = cursor.execute.call_args.args[1]
        assert insert_params[0] == cp.id
        rows = cursor.executemany.call_args.args[1]
        assert [(r[0], r[1]) for r in rows] == [(cp.id, 0), (cp.id, 1)]
        assert rows[0][2].obj["content"] == "message 0"

    def test_save_without_messages(self):
        conn, cursor = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        storage.save_checkpoint(
            Checkpoint(session_id="s1", name="empty", message_count=0, token_count=0), []
        )
        cursor.executemany.assert_not_called()

    def test_save_failure(self):
        conn, cursor = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        cursor.execute.side_effect = psycopg.OperationalError("disk full")
        with pytest.raises(StorageError, match="disk full"):
            storage.save_checkpoint(
                Checkpoint(session_id="s1", name="a", message_count=0, token_count=0), []
            )

    def test_get_checkpoint(self):
        conn, cursor = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        cp = Checkpoint(session_id="s1", name="a", message_count=2, token_count=200)
        messages = make_conversation(2)
        cursor.fetchone.return_value = cp.to_dict() | {"created_at": cp.created_at}
        cursor.fetchall.return_value = [{"message": m.to_dict()} for m in messages]

        snapshot = storage.get_checkpoint(cp.id)
        assert snapshot.checkpoint.id == cp.id
        assert snapshot.checkpoint.created_at == cp.created_at
        assert [m.id for m in snapshot.messages] == [m.id for m in messages]

    def test_get_checkpoint_tuple_rows(self):
        conn, cursor = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        now = utcnow()
        cursor.fetchone.return_value = ("cp-1", "s1", "a", 1, 100, now, "snap")
        cursor.fetchall.return_value = [(make_conversation(1)[0].to_dict(),)]
        snapshot = storage.get_checkpoint("cp-1")
        assert snapshot.checkpoint.summary == "snap"
        assert len(snapshot.messages) == 1

    def test_get_missing(self):
        conn, cursor = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        cursor.fetchone.return_value = None
        assert storage.get_checkpoint("missing") is None

    def test_delete(self):
        conn, cursor = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        cursor.rowcount = 1
        assert storage.delete_checkpoint("cp-1") is True
        cursor.rowcount = 0
        assert storage.delete_checkpoint("cp-1") is False

    def test_list(self):
        conn, cursor = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        cp = Checkpoint(session_id="s1", name="a", message_count=1, token_count=1)
        cursor.fetchall.return_value = [cp.to_dict()]
        assert [c.id for c in storage.list_checkpoints("s1")] == [cp.id]
        sql, params = cursor.execute.call_args.args
        assert "WHERE session_id = %s" in sql and "ORDER BY created_at DESC" in sql
        assert params == ("s1",)
        storage.list_all_checkpoints()
        assert "WHERE" not in cursor.execute.call_args.args[0]

    def test_parallel_batch_does_not_interleave_transactions(self):
        conn, _ = mock_conn()
        storage = PostgresCheckpointStorage(conn)
        state = track_overlap(conn.transaction.return_value)
        ops = BatchCheckpointOperations(storage, BatchOptions(batch_size=4, parallel=True))
        drafts = [
            CheckpointDraft(name=f"item{i}", messages=make_conversation(2), token_count=200)
            for i in range(8)
        ]

        result = ops.create_batch("s1", drafts)
        assert len(result.success) == 8
        assert conn.transaction.call_count == 8
        assert state["peak"] == 1


# ── Mid-term Store Tests ──


class TestPostgresMidTermStore:
    def _record(self) -> CompactedSession:
        return CompactedSession(
            session_id="s1",
            summary="summary",
            message_range=MessageRange(2, 8),
            key_topics=["Python"],
        )

    def test_save_upserts(self):
        conn, cursor = mock_conn()
        store = PostgresMidTermStore(conn)
        record = self._record()
        store.save(record)
        sql, params = cursor.execute.call_args.args
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert params[0] == record.id
        assert params[3] == ["Python"]
        assert params[6:8] == (2, 8)

    def test_row_mapping(self):
        conn, cursor = mock_conn()
        store = PostgresMidTermStore(conn)
        record = self._record()
        cursor.fetchall.return_value = [{
            "id": record.id, "session_id": "s1", "summary": "summary",
            "key_topics": ["Python"], "decisions": None, "key_findings": [],
            "message_start": 2, "message_end": 8, "created_at": record.created_at,
            "promoted": False, "promoted_to": None,
        }]
        found = store.get_by_id(record.id)
        assert found.message_range == MessageRange(2, 8)
        assert found.decisions == []
        assert found.key_topics == ["Python"]

    def test_mark_promoted_is_conditional(self):
        conn, cursor = mock_conn()
        store = PostgresMidTermStore(conn)
        cursor.rowcount = 1
        assert store.mark_promoted("mid-1", "long-1") is True
        assert "AND NOT promoted" in cursor.execute.call_args.args[0]
        cursor.rowcount = 0
        assert store.mark_promoted("mid-1", "long-1") is False

    def test_delete_expired_keeps_promoted(self):
        conn, cursor = mock_conn()
        store = PostgresMidTermStore(conn)
        cursor.rowcount = 3
        cutoff = utcnow() - timedelta(days=30)
        assert store.delete_expired(cutoff) == 3
        sql, params = cursor.execute.call_args.args
        assert "NOT promoted" in sql
        assert params == (cutoff,)

    def test_query_failure(self):
        conn, cursor = mock_conn()
        store = PostgresMidTermStore(conn)
        cursor.execute.side_effect = psycopg.OperationalError("gone away")
        with pytest.raises(StorageError):
            store.list_all()

    def test_concurrent_queries_share_connection_one_at_a_time(self):
        conn, cursor = mock_conn()
        store = PostgresMidTermStore(conn)
        cursor.fetchall.return_value = []
        state = track_overlap(conn.cursor.return_value, entered=cursor)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: store.list_all(), range(8)))
        assert results == [[]] * 8
        assert state["peak"] == 1


# ── Long-term Store Tests ──


class TestPgVectorLongTermStore:
    def _conversation(self, dims=3) -> IndexedConversation:
        return IndexedConversation(
            session_id="s1", content="notes", embedding=[0.5] * dims, source_id="mid-1"
        )

    def test_dimensions_from_argument(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        assert store.dimensions == 3
        assert any("vector(3)" in sql for sql in executed_sql(cursor))

    def test_dimensions_detected_from_embedder(self):
        conn, _ = mock_conn()
        embedder = MagicMock()
        embedder.available = True
        embedder.embed.return_value = [0.0] * 8
        assert PgVectorLongTermStore(conn, embedder=embedder).dimensions == 8

    def test_dimensions_default(self):
        conn, _ = mock_conn()
        assert PgVectorLongTermStore(conn).dimensions == DEFAULT_EMBEDDING_DIMENSIONS

    def test_save(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        cursor.rowcount = 1
        assert store.save(self._conversation()) is True
        sql = cursor.execute.call_args.args[0]
        assert "%s::vector" in sql and "ON CONFLICT DO NOTHING" in sql
        cursor.rowcount = 0
        assert store.save(self._conversation()) is False

    def test_save_rejects_wrong_dimensions(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        with pytest.raises(StorageError):
            store.save(self._conversation(dims=4))

    def test_search(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        now = utcnow()
        cursor.fetchall.return_value = [
            ("long-1", "s1", "notes", ["Python"], "mid-1", now, "[0.1,0.2,0.3]"),
        ]
        [found] = store.search([0.1, 0.2, 0.3], limit=3, session_id="s1")
        assert found.embedding == [0.1, 0.2, 0.3]
        assert found.date == now
        sql, params = cursor.execute.call_args.args
        assert "embedding <=> %s::vector" in sql
        assert params == ["s1", [0.1, 0.2, 0.3], 3]

    def test_search_failure_returns_empty(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        cursor.execute.side_effect = psycopg.OperationalError("timeout")
        assert store.search([0.1, 0.2, 0.3]) == []

    def test_keyword_search(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        cursor.fetchall.return_value = []
        store.keyword_search("postgres index", limit=2)
        sql, params = cursor.execute.call_args.args
        assert sql.count("ILIKE") == 2
        assert params == ["postgres", "index", 2]
        assert store.keyword_search("   ") == []

    def test_find_by_source(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        cursor.fetchall.return_value = []
        assert store.find_by_source("mid-1") is None
        assert "WHERE source_id = %s" in cursor.execute.call_args.args[0]

    def test_stats(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        cursor.fetchone.return_value = (4, 2)
        assert store.stats() == {"total_conversations": 4, "total_sessions": 2}

    def test_concurrent_searches_share_connection_one_at_a_time(self):
        conn, cursor = mock_conn()
        store = PgVectorLongTermStore(conn, dimensions=3)
        cursor.fetchall.return_value = []
        state = track_overlap(conn.cursor.return_value, entered=cursor)

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda _: store.search([0.1, 0.2, 0.3]), range(8)))
        assert state["peak"] == 1

    def test_parse_vector(self):
        assert _parse_vector(None) == []
        assert _parse_vector("[1,2.5]") == [1.0, 2.5]
        assert _parse_vector((1, 2)) == [1.0, 2.0]
