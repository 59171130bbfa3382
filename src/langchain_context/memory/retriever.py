"""
PostgreSQL-backed memory tiers.

Mid-term CompactedSession records live in ``memory_compacted_sessions``.
Long-term IndexedConversation records live in ``memory_conversations`` with
a pgvector ``embedding`` column searched by cosine distance (``<=>``).

Search strategy:
  - Query embedding available → cosine similarity over stored vectors
  - Vector search fails → ILIKE keyword search on the content
"""

import json
import logging
import threading
from datetime import datetime
from typing import Any, Optional

import psycopg

from ..errors import StorageError
from ..types import CompactedSession, IndexedConversation, MessageRange

logger = logging.getLogger(__name__)

# Used when no embedder is available to detect the vector size
DEFAULT_EMBEDDING_DIMENSIONS = 1536

_MID_TERM_COLUMNS = (
    "id", "session_id", "summary", "key_topics", "decisions", "key_findings",
    "message_start", "message_end", "created_at", "promoted", "promoted_to",
)

_LONG_TERM_COLUMNS = (
    "id", "session_id", "content", "topics", "source_id", "created_at", "embedding",
)


def _col(row: Any, name: str, columns: tuple) -> Any:
    return row[name] if isinstance(row, dict) else row[columns.index(name)]


def _parse_vector(value: Any) -> list[float]:
    """pgvector returns '[0.1,0.2]' text unless an adapter is registered."""
    if value is None:
        return []
    if isinstance(value, str):
        return [float(x) for x in json.loads(value)]
    return [float(x) for x in value]


def _row_to_compacted(row: Any) -> CompactedSession:
    def get(name):
        return _col(row, name, _MID_TERM_COLUMNS)

    return CompactedSession(
        id=get("id"),
        session_id=get("session_id"),
        summary=get("summary"),
        key_topics=list(get("key_topics") or []),
        decisions=list(get("decisions") or []),
        key_findings=list(get("key_findings") or []),
        message_range=MessageRange(get("message_start"), get("message_end")),
        created_at=get("created_at"),
        promoted=bool(get("promoted")),
        promoted_to=get("promoted_to"),
    )


def _row_to_conversation(row: Any) -> IndexedConversation:
    def get(name):
        return _col(row, name, _LONG_TERM_COLUMNS)

    return IndexedConversation(
        id=get("id"),
        session_id=get("session_id"),
        content=get("content"),
        topics=list(get("topics") or []),
        source_id=get("source_id"),
        date=get("created_at"),
        embedding=_parse_vector(get("embedding")),
    )


class PostgresMidTermStore:
    """Mid-term memory records in PostgreSQL."""

    def __init__(self, pg_conn):
        self._pg_conn = pg_conn
        self._lock = threading.Lock()
        self._setup_table()

    def _setup_table(self):
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS memory_compacted_sessions (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        summary TEXT NOT NULL,
                        key_topics TEXT[] DEFAULT '{}',
                        decisions TEXT[] DEFAULT '{}',
                        key_findings TEXT[] DEFAULT '{}',
                        message_start INT NOT NULL DEFAULT 0,
                        message_end INT NOT NULL DEFAULT 0,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        promoted BOOLEAN NOT NULL DEFAULT false,
                        promoted_to TEXT
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_memory_compacted_session
                    ON memory_compacted_sessions (session_id, created_at)
                """)
        except psycopg.Error as e:
            raise StorageError(f"failed to set up mid-term memory table: {e}") from e

    def _execute(self, sql: str, params: tuple = (), fetch: bool = False):
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchall() if fetch else cur.rowcount
        except psycopg.Error as e:
            raise StorageError(f"mid-term memory query failed: {e}") from e

    def save(self, record: CompactedSession) -> None:
        self._execute(
            """
            INSERT INTO memory_compacted_sessions
                (id, session_id, summary, key_topics, decisions, key_findings,
                 message_start, message_end, created_at, promoted, promoted_to)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                summary = EXCLUDED.summary,
                key_topics = EXCLUDED.key_topics,
                decisions = EXCLUDED.decisions,
                key_findings = EXCLUDED.key_findings
            """,
            (
                record.id,
                record.session_id,
                record.summary,
                list(record.key_topics),
                list(record.decisions),
                list(record.key_findings),
                record.message_range.start,
                record.message_range.end,
                record.created_at,
                record.promoted,
                record.promoted_to,
            ),
        )

    def _select(self, where: str = "", params: tuple = ()) -> list[CompactedSession]:
        rows = self._execute(
            f"SELECT {', '.join(_MID_TERM_COLUMNS)} FROM memory_compacted_sessions "
            f"{where} ORDER BY created_at",
            params,
            fetch=True,
        )
        return [_row_to_compacted(r) for r in rows]

    def list_for_session(self, session_id: str) -> list[CompactedSession]:
        return self._select("WHERE session_id = %s", (session_id,))

    def list_all(self) -> list[CompactedSession]:
        return self._select()

    def get_by_id(self, record_id: str) -> Optional[CompactedSession]:
        found = self._select("WHERE id = %s", (record_id,))
        return found[0] if found else None

    def mark_promoted(self, record_id: str, long_term_id: str) -> bool:
        # Conditional update so concurrent promoters cannot both win
        return self._execute(
            """
            UPDATE memory_compacted_sessions
            SET promoted = true, promoted_to = %s
            WHERE id = %s AND NOT promoted
            """,
            (long_term_id, record_id),
        ) > 0

    def reset_promotion(self, record_id: str) -> bool:
        return self._execute(
            """
            UPDATE memory_compacted_sessions
            SET promoted = false, promoted_to = NULL
            WHERE id = %s AND promoted
            """,
            (record_id,),
        ) > 0

    def delete(self, record_id: str) -> bool:
        return self._execute(
            "DELETE FROM memory_compacted_sessions WHERE id = %s", (record_id,)
        ) > 0

    def delete_expired(self, cutoff: datetime) -> int:
        return self._execute(
            """
            DELETE FROM memory_compacted_sessions
            WHERE NOT promoted AND created_at < %s
            """,
            (cutoff,),
        )


class PgVectorLongTermStore:
    """
    Long-term memory records with pgvector similarity search.

    The vector column size is fixed when the table is created: taken from
    ``dimensions``, else detected with a test embed, else 1536.
    """

    def __init__(self, pg_conn, embedder=None, dimensions: int = 0):
        self._pg_conn = pg_conn
        self._lock = threading.Lock()
        self._embedder = embedder
        self._dimensions = dimensions
        self._setup_table()

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _detect_dimensions(self) -> int:
        """Detect embedding dimensions by doing a test embed."""
        if self._embedder is not None and self._embedder.available:
            try:
                return len(self._embedder.embed("test"))
            except Exception as e:
                logger.warning("Embedding dimension detection failed: %s", e)
        return DEFAULT_EMBEDDING_DIMENSIONS

    def _setup_table(self):
        """Create memory_conversations with the pgvector extension."""
        dim = self._dimensions or self._detect_dimensions()
        self._dimensions = dim
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS memory_conversations (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        topics TEXT[] DEFAULT '{{}}',
                        source_id TEXT,
                        embedding vector({dim}),
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_memory_conversations_session
                    ON memory_conversations (session_id)
                """)
                cur.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_memory_conversations_source
                    ON memory_conversations (source_id)
                    WHERE source_id IS NOT NULL
                """)
        except psycopg.Error as e:
            raise StorageError(f"failed to set up memory_conversations table: {e}") from e

    def save(self, conversation: IndexedConversation) -> bool:
        if len(conversation.embedding) != self._dimensions:
            raise StorageError(
                f"embedding has {len(conversation.embedding)} dimensions, "
                f"table expects {self._dimensions}"
            )
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO memory_conversations
                        (id, session_id, content, topics, source_id, embedding, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s::vector, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (
                        conversation.id,
                        conversation.session_id,
                        conversation.content,
                        list(conversation.topics),
                        conversation.source_id,
                        conversation.embedding,
                        conversation.date,
                    ),
                )
                return cur.rowcount > 0
        except psycopg.Error as e:
            raise StorageError(f"failed to store conversation {conversation.id}: {e}") from e

    def _fetch(self, sql: str, params: list) -> list[IndexedConversation]:
        with self._lock, self._pg_conn.cursor() as cur:
            cur.execute(sql, params)
            return [_row_to_conversation(r) for r in cur.fetchall()]

    def _select_columns(self) -> str:
        return ", ".join(
            "embedding::text AS embedding" if c == "embedding" else c
            for c in _LONG_TERM_COLUMNS
        )

    def search(
        self, embedding: list[float], limit: int = 5, session_id: Optional[str] = None
    ) -> list[IndexedConversation]:
        """Cosine similarity search, best match first."""
        where = "embedding IS NOT NULL"
        params: list = []
        if session_id:
            where += " AND session_id = %s"
            params.append(session_id)
        try:
            return self._fetch(
                f"""
                SELECT {self._select_columns()}
                FROM memory_conversations
                WHERE {where}
                ORDER BY embedding <=> %s::vector
                LIMIT %s
                """,
                [*params, embedding, limit],
            )
        except psycopg.Error as e:
            logger.warning("Vector search failed: %s", e)
            return []

    def keyword_search(
        self, query: str, limit: int = 5, session_id: Optional[str] = None
    ) -> list[IndexedConversation]:
        """Fallback: keyword-based search using PostgreSQL ILIKE."""
        words = query.strip().split()
        if not words:
            return []
        conditions = " AND ".join("content ILIKE '%%' || %s || '%%'" for _ in words)
        where = f"({conditions})"
        params: list = [*words]
        if session_id:
            where += " AND session_id = %s"
            params.append(session_id)
        try:
            return self._fetch(
                f"""
                SELECT {self._select_columns()}
                FROM memory_conversations
                WHERE {where}
                ORDER BY created_at DESC
                LIMIT %s
                """,
                [*params, limit],
            )
        except psycopg.Error as e:
            logger.warning("Keyword search failed: %s", e)
            return []

    def _get_one(self, column: str, value: str) -> Optional[IndexedConversation]:
        try:
            found = self._fetch(
                f"SELECT {self._select_columns()} FROM memory_conversations "
                f"WHERE {column} = %s LIMIT 1",
                [value],
            )
        except psycopg.Error as e:
            raise StorageError(f"failed to load conversation: {e}") from e
        return found[0] if found else None

    def get_by_id(self, conversation_id: str) -> Optional[IndexedConversation]:
        return self._get_one("id", conversation_id)

    def find_by_source(self, source_id: str) -> Optional[IndexedConversation]:
        return self._get_one("source_id", source_id)

    def clear(self, session_id: Optional[str] = None) -> int:
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                if session_id:
                    cur.execute(
                        "DELETE FROM memory_conversations WHERE session_id = %s",
                        (session_id,),
                    )
                else:
                    cur.execute("DELETE FROM memory_conversations")
                return cur.rowcount
        except psycopg.Error as e:
            raise StorageError(f"failed to clear conversations: {e}") from e

    def stats(self) -> dict:
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT count(*) AS total_conversations,
                           count(DISTINCT session_id) AS total_sessions
                    FROM memory_conversations
                    """
                )
                row = cur.fetchone()
        except psycopg.Error as e:
            raise StorageError(f"failed to read memory stats: {e}") from e
        if isinstance(row, dict):
            return dict(row)
        return {"total_conversations": row[0], "total_sessions": row[1]}
