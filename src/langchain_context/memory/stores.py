"""
Storage contracts for the mid-term and long-term memory tiers, with
process-local implementations.
"""

import copy
import math
import threading
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from ..types import CompactedSession, IndexedConversation


@runtime_checkable
class MidTermStore(Protocol):
    def save(self, record: CompactedSession) -> None: ...

    def list_for_session(self, session_id: str) -> list[CompactedSession]:
        """Records of one session, oldest first."""
        ...

    def list_all(self) -> list[CompactedSession]: ...

    def get_by_id(self, record_id: str) -> Optional[CompactedSession]: ...

    def mark_promoted(self, record_id: str, long_term_id: str) -> bool:
        """Set the promoted marker. False if missing or already promoted."""
        ...

    def reset_promotion(self, record_id: str) -> bool: ...

    def delete(self, record_id: str) -> bool: ...

    def delete_expired(self, cutoff: datetime) -> int:
        """Delete un-promoted records created before ``cutoff``."""
        ...


@runtime_checkable
class LongTermStore(Protocol):
    def save(self, conversation: IndexedConversation) -> bool:
        """Insert a record. False if a record with the same id exists."""
        ...

    def search(
        self, embedding: list[float], limit: int = 5, session_id: Optional[str] = None
    ) -> list[IndexedConversation]:
        """Nearest records by cosine similarity, best first."""
        ...

    def keyword_search(
        self, query: str, limit: int = 5, session_id: Optional[str] = None
    ) -> list[IndexedConversation]: ...

    def get_by_id(self, conversation_id: str) -> Optional[IndexedConversation]: ...

    def find_by_source(self, source_id: str) -> Optional[IndexedConversation]: ...

    def clear(self, session_id: Optional[str] = None) -> int: ...

    def stats(self) -> dict: ...


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def keyword_match(content: str, query: str) -> bool:
    """True when every word of the query occurs in the content (case-insensitive)."""
    words = query.lower().split()
    text = content.lower()
    return bool(words) and all(w in text for w in words)


class InMemoryMidTermStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, CompactedSession] = {}

    def save(self, record: CompactedSession) -> None:
        with self._lock:
            self._records[record.id] = copy.deepcopy(record)

    def list_for_session(self, session_id: str) -> list[CompactedSession]:
        with self._lock:
            found = [
                copy.deepcopy(r) for r in self._records.values()
                if r.session_id == session_id
            ]
        return sorted(found, key=lambda r: r.created_at)

    def list_all(self) -> list[CompactedSession]:
        with self._lock:
            found = [copy.deepcopy(r) for r in self._records.values()]
        return sorted(found, key=lambda r: r.created_at)

    def get_by_id(self, record_id: str) -> Optional[CompactedSession]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record else None

    def mark_promoted(self, record_id: str, long_term_id: str) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None or record.promoted:
                return False
            record.promoted = True
            record.promoted_to = long_term_id
            return True

    def reset_promotion(self, record_id: str) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None or not record.promoted:
                return False
            record.promoted = False
            record.promoted_to = None
            return True

    def delete(self, record_id: str) -> bool:
        with self._lock:
            return self._records.pop(record_id, None) is not None

    def delete_expired(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [
                rid for rid, r in self._records.items()
                if not r.promoted and r.created_at < cutoff
            ]
            for rid in expired:
                del self._records[rid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class InMemoryLongTermStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, IndexedConversation] = {}

    def save(self, conversation: IndexedConversation) -> bool:
        with self._lock:
            if conversation.id in self._records:
                return False
            self._records[conversation.id] = copy.deepcopy(conversation)
            return True

    def _candidates(self, session_id: Optional[str]) -> list[IndexedConversation]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._records.values()
                if session_id is None or r.session_id == session_id
            ]

    def search(
        self, embedding: list[float], limit: int = 5, session_id: Optional[str] = None
    ) -> list[IndexedConversation]:
        scored = [
            (cosine_similarity(embedding, r.embedding), r)
            for r in self._candidates(session_id)
            if r.embedding
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [r for _, r in scored[:limit]]

    def keyword_search(
        self, query: str, limit: int = 5, session_id: Optional[str] = None
    ) -> list[IndexedConversation]:
        matches = [r for r in self._candidates(session_id) if keyword_match(r.content, query)]
        matches.sort(key=lambda r: r.date, reverse=True)
        return matches[:limit]

    def get_by_id(self, conversation_id: str) -> Optional[IndexedConversation]:
        with self._lock:
            record = self._records.get(conversation_id)
            return copy.deepcopy(record) if record else None

    def find_by_source(self, source_id: str) -> Optional[IndexedConversation]:
        with self._lock:
            for record in self._records.values():
                if record.source_id == source_id:
                    return copy.deepcopy(record)
        return None

    def clear(self, session_id: Optional[str] = None) -> int:
        with self._lock:
            doomed = [
                rid for rid, r in self._records.items()
                if session_id is None or r.session_id == session_id
            ]
            for rid in doomed:
                del self._records[rid]
        return len(doomed)

    def stats(self) -> dict:
        with self._lock:
            records = list(self._records.values())
        return {
            "total_conversations": len(records),
            "total_sessions": len({r.session_id for r in records}),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
