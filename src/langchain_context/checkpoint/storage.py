"""
Checkpoint storage contract and the in-memory implementation.

Storage implementations must:
- write a checkpoint and its message snapshot atomically,
- return None / False for unknown ids instead of raising,
- raise StorageError for genuine persistence failures,
- be safe for concurrent calls on different keys.
"""

import copy
import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator, Optional, Protocol, runtime_checkable

from ..types import Checkpoint, CheckpointSnapshot, Message, Role

logger = logging.getLogger(__name__)


@runtime_checkable
class CheckpointStorage(Protocol):
    def save_checkpoint(self, checkpoint: Checkpoint, messages: list[Message]) -> None: ...

    def get_checkpoint(self, checkpoint_id: str) -> Optional[CheckpointSnapshot]: ...

    def delete_checkpoint(self, checkpoint_id: str) -> bool: ...

    def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        """Checkpoints of one session, newest first."""
        ...

    def list_all_checkpoints(self) -> list[Checkpoint]:
        """Checkpoints of every session, newest first."""
        ...


def sort_newest_first(checkpoints: list[Checkpoint]) -> list[Checkpoint]:
    return sorted(checkpoints, key=lambda cp: cp.created_at, reverse=True)


class InMemoryCheckpointStorage:
    """Process-local storage; snapshots are deep-copied in and out."""

    def __init__(self):
        self._lock = threading.Lock()
        self._checkpoints: dict[str, CheckpointSnapshot] = {}

    def save_checkpoint(self, checkpoint: Checkpoint, messages: list[Message]) -> None:
        snapshot = CheckpointSnapshot(
            checkpoint=copy.deepcopy(checkpoint),
            messages=copy.deepcopy(messages),
        )
        with self._lock:
            self._checkpoints[checkpoint.id] = snapshot

    def get_checkpoint(self, checkpoint_id: str) -> Optional[CheckpointSnapshot]:
        with self._lock:
            snapshot = self._checkpoints.get(checkpoint_id)
        return copy.deepcopy(snapshot) if snapshot else None

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        with self._lock:
            return self._checkpoints.pop(checkpoint_id, None) is not None

    def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        with self._lock:
            found = [
                copy.copy(s.checkpoint)
                for s in self._checkpoints.values()
                if s.checkpoint.session_id == session_id
            ]
        return sort_newest_first(found)

    def list_all_checkpoints(self) -> list[Checkpoint]:
        with self._lock:
            found = [copy.copy(s.checkpoint) for s in self._checkpoints.values()]
        return sort_newest_first(found)

    def clear(self) -> None:
        with self._lock:
            self._checkpoints.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._checkpoints)


class _SessionLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class SessionLocks:
    """
    Per-session write locks for the checkpoint index.

    Any list-then-delete sequence on a session must run under
    ``locks.hold(session_id)``.

    A session's lock is dropped once no thread holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, _SessionLock] = {}

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = self._locks[session_id] = _SessionLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[session_id]

    @contextmanager
    def hold_many(self, session_ids: Iterable[str]) -> Iterator[None]:
        """Hold several sessions' locks, acquired in sorted order."""
        with ExitStack() as stack:
            for session_id in sorted(set(session_ids)):
                stack.enter_context(self.hold(session_id))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def generate_checkpoint_summary(messages: list[Message]) -> str:
    """One-line description: message count plus the last user topic."""
    summary = f"Session snapshot - {len(messages)} messages"
    last_user = next(
        (m for m in reversed(messages) if m.role == Role.USER), None
    )
    if last_user:
        summary += f', last topic: "{last_user.content[:80]}..."'
    return summary


class CheckpointManager:
    """Single-checkpoint operations on top of a storage collaborator."""

    def __init__(self, storage: CheckpointStorage):
        self.storage = storage

    def create(
        self,
        session_id: str,
        name: str,
        messages: list[Message],
        token_count: int,
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            session_id=session_id,
            name=name,
            message_count=len(messages),
            token_count=token_count,
            summary=generate_checkpoint_summary(messages),
        )
        self.storage.save_checkpoint(checkpoint, messages)
        logger.info(
            "Created checkpoint %s (%s) for session %s: %d messages",
            checkpoint.id, name, session_id, len(messages),
        )
        return checkpoint

    def restore(self, checkpoint_id: str) -> Optional[CheckpointSnapshot]:
        return self.storage.get_checkpoint(checkpoint_id)

    def list(self, session_id: str) -> list[Checkpoint]:
        return self.storage.list_checkpoints(session_id)

    def delete(self, checkpoint_id: str) -> bool:
        return self.storage.delete_checkpoint(checkpoint_id)
