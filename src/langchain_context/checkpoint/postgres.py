"""
PostgreSQL checkpoint storage (psycopg 3).

Checkpoint metadata and message snapshots live in two tables and are written
inside one transaction, so a checkpoint is either fully stored or absent.
"""

import logging
import threading
from typing import Any, Optional

import psycopg
from psycopg.types.json import Jsonb

from ..errors import StorageError
from ..types import Checkpoint, CheckpointSnapshot, Message

logger = logging.getLogger(__name__)

_CHECKPOINT_COLUMNS = (
    "id", "session_id", "name", "message_count", "token_count", "created_at", "summary"
)


def _row_value(row: Any, key: str, index: int) -> Any:
    """Read a column from a dict_row or a tuple row."""
    return row[key] if isinstance(row, dict) else row[index]


def _row_to_checkpoint(row: Any) -> Checkpoint:
    return Checkpoint.from_dict({
        col: _row_value(row, col, i) for i, col in enumerate(_CHECKPOINT_COLUMNS)
    })


class PostgresCheckpointStorage:
    """Checkpoint storage backed by a psycopg connection.

    A psycopg connection runs one statement at a time and nests concurrent
    transaction() blocks, so every call is serialized on an instance lock.
    """

    def __init__(self, pg_conn):
        self._pg_conn = pg_conn
        self._lock = threading.Lock()
        self._setup_table()

    def _setup_table(self):
        """Create checkpoint tables if missing."""
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS context_checkpoints (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        message_count INT NOT NULL DEFAULT 0,
                        token_count INT NOT NULL DEFAULT 0,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        summary TEXT NOT NULL DEFAULT ''
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_context_checkpoints_session
                    ON context_checkpoints (session_id, created_at DESC)
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS context_checkpoint_messages (
                        checkpoint_id TEXT NOT NULL
                            REFERENCES context_checkpoints (id) ON DELETE CASCADE,
                        position INT NOT NULL,
                        message JSONB NOT NULL,
                        PRIMARY KEY (checkpoint_id, position)
                    )
                """)
        except psycopg.Error as e:
            raise StorageError(f"failed to set up checkpoint tables: {e}") from e

    def save_checkpoint(self, checkpoint: Checkpoint, messages: list[Message]) -> None:
        try:
            with self._lock, self._pg_conn.transaction():
                with self._pg_conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO context_checkpoints
                            (id, session_id, name, message_count, token_count, created_at, summary)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            checkpoint.id,
                            checkpoint.session_id,
                            checkpoint.name,
                            checkpoint.message_count,
                            checkpoint.token_count,
                            checkpoint.created_at,
                            checkpoint.summary,
                        ),
                    )
                    if messages:
                        cur.executemany(
                            """
                            INSERT INTO context_checkpoint_messages
                                (checkpoint_id, position, message)
                            VALUES (%s, %s, %s)
                            """,
                            [
                                (checkpoint.id, pos, Jsonb(msg.to_dict()))
                                for pos, msg in enumerate(messages)
                            ],
                        )
        except psycopg.Error as e:
            raise StorageError(f"failed to save checkpoint {checkpoint.id}: {e}") from e

    def get_checkpoint(self, checkpoint_id: str) -> Optional[CheckpointSnapshot]:
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute(
                    f"SELECT {', '.join(_CHECKPOINT_COLUMNS)} "
                    "FROM context_checkpoints WHERE id = %s",
                    (checkpoint_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                cur.execute(
                    """
                    SELECT message FROM context_checkpoint_messages
                    WHERE checkpoint_id = %s ORDER BY position
                    """,
                    (checkpoint_id,),
                )
                message_rows = cur.fetchall()
        except psycopg.Error as e:
            raise StorageError(f"failed to load checkpoint {checkpoint_id}: {e}") from e

        return CheckpointSnapshot(
            checkpoint=_row_to_checkpoint(row),
            messages=[Message.from_dict(_row_value(r, "message", 0)) for r in message_rows],
        )

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM context_checkpoints WHERE id = %s", (checkpoint_id,)
                )
                return cur.rowcount > 0
        except psycopg.Error as e:
            raise StorageError(f"failed to delete checkpoint {checkpoint_id}: {e}") from e

    def _list(self, where: str, params: tuple) -> list[Checkpoint]:
        try:
            with self._lock, self._pg_conn.cursor() as cur:
                cur.execute(
                    f"SELECT {', '.join(_CHECKPOINT_COLUMNS)} FROM context_checkpoints "
                    f"{where} ORDER BY created_at DESC",
                    params,
                )
                rows = cur.fetchall()
        except psycopg.Error as e:
            raise StorageError(f"failed to list checkpoints: {e}") from e
        return [_row_to_checkpoint(r) for r in rows]

    def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        return self._list("WHERE session_id = %s", (session_id,))

    def list_all_checkpoints(self) -> list[Checkpoint]:
        return self._list("", ())
