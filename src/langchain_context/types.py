"""
Data model for the context engine.

Messages form the live log of a session; compression operations mark them
(never mutate content) and checkpoints snapshot them.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class CompressionType(str, Enum):
    PRUNED = "pruned"
    COMPACTED = "compacted"
    TRUNCATED = "truncated"


class UsageLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


# Keep rank used by prune: lower ranks are removed first
KEEP_RANK: dict[Role, int] = {
    Role.USER: 0,
    Role.ASSISTANT: 1,
    Role.TOOL: 2,
    Role.SYSTEM: 3,
}


def get_message_priority(role: Role) -> int:
    """Keep rank for a role; system > tool > assistant > user."""
    return KEEP_RANK.get(Role(role), -1)


@dataclass
class Message:
    """One turn in a conversation."""

    role: Role
    content: str
    id: str = field(default_factory=lambda: new_id("msg"))
    timestamp: datetime = field(default_factory=utcnow)
    token_count: Optional[int] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None

    compressed: bool = False
    compression_type: Optional[CompressionType] = None
    condense_id: Optional[str] = None
    condense_parent: Optional[str] = None
    is_truncation_marker: bool = False
    truncation_id: Optional[str] = None
    truncation_parent: Optional[str] = None
    checkpoint_id: Optional[str] = None
    # Index in the session's append order, kept across compression
    position: Optional[int] = None

    def __post_init__(self):
        self.role = Role(self.role)
        if self.compression_type is not None:
            self.compression_type = CompressionType(self.compression_type)
        if self.token_count is not None and self.token_count < 0:
            raise ValueError(f"token_count must be >= 0, got {self.token_count}")
        if self.compressed and self.compression_type is None:
            raise ValueError("a compressed message must carry a compression_type")

    @property
    def is_condense_anchor(self) -> bool:
        """True for a summary message that replaced a compacted range."""
        return self.condense_id is not None and self.condense_parent is None

    @property
    def is_live(self) -> bool:
        """False for archived messages that were replaced or removed."""
        if self.condense_parent or self.truncation_parent:
            return False
        return self.compression_type != CompressionType.PRUNED

    def archived(self, compression_type: CompressionType, **links) -> "Message":
        """Copy of this message marked as removed by a compression operation."""
        return replace(
            self, compressed=True, compression_type=compression_type, **links
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "token_count": self.token_count,
            "name": self.name,
            "tool_call_id": self.tool_call_id,
            "compressed": self.compressed,
            "compression_type": (
                self.compression_type.value if self.compression_type else None
            ),
            "condense_id": self.condense_id,
            "condense_parent": self.condense_parent,
            "is_truncation_marker": self.is_truncation_marker,
            "truncation_id": self.truncation_id,
            "truncation_parent": self.truncation_parent,
            "checkpoint_id": self.checkpoint_id,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            role=Role(data["role"]),
            content=data.get("content", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            token_count=data.get("token_count"),
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
            compressed=data.get("compressed", False),
            compression_type=data.get("compression_type"),
            condense_id=data.get("condense_id"),
            condense_parent=data.get("condense_parent"),
            is_truncation_marker=data.get("is_truncation_marker", False),
            truncation_id=data.get("truncation_id"),
            truncation_parent=data.get("truncation_parent"),
            checkpoint_id=data.get("checkpoint_id"),
            position=data.get("position"),
        )


@dataclass
class TokenUsage:
    """A budget snapshot."""

    prompt: int
    completion: int
    total: int
    limit: int
    percentage: float


@dataclass
class UsageStatus:
    """Evaluator verdict. At most one action flag is set."""

    level: UsageLevel
    should_prune: bool = False
    should_compact: bool = False
    should_truncate: bool = False
    message: str = ""
    usage: Optional[TokenUsage] = None

    @property
    def requires_action(self) -> bool:
        return self.should_prune or self.should_compact or self.should_truncate


@dataclass
class PruneResult:
    original_count: int
    pruned_messages: list[Message]
    removed_messages: list[Message] = field(default_factory=list)
    removed_count: int = 0
    removed_tokens: int = 0
    preserved_recent_count: int = 0


@dataclass
class MessageRange:
    """Half-open range [start, end) of positions in a message log."""

    start: int
    end: int

    def __len__(self) -> int:
        return max(self.end - self.start, 0)

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end}


def original_range(messages: list[Message], fallback: MessageRange) -> MessageRange:
    """Span of the messages' append positions, or ``fallback`` if none are known."""
    positions = [m.position for m in messages if m.position is not None]
    if not positions:
        return fallback
    return MessageRange(min(positions), max(positions) + 1)


@dataclass
class CompactedSession:
    """Mid-term memory record produced by compaction or session capture."""

    session_id: str
    summary: str
    message_range: MessageRange
    key_topics: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    key_findings: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("mid"))
    created_at: datetime = field(default_factory=utcnow)
    promoted: bool = False
    promoted_to: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "summary": self.summary,
            "key_topics": list(self.key_topics),
            "decisions": list(self.decisions),
            "key_findings": list(self.key_findings),
            "message_range": self.message_range.to_dict(),
            "created_at": self.created_at.isoformat(),
            "promoted": self.promoted,
            "promoted_to": self.promoted_to,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompactedSession":
        created_at = data["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        rng = data.get("message_range") or {}
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            summary=data["summary"],
            key_topics=list(data.get("key_topics") or []),
            decisions=list(data.get("decisions") or []),
            key_findings=list(data.get("key_findings") or []),
            message_range=MessageRange(rng.get("start", 0), rng.get("end", 0)),
            created_at=created_at,
            promoted=data.get("promoted", False),
            promoted_to=data.get("promoted_to"),
        )


@dataclass
class CompressionResult:
    original_count: int
    compressed_count: int
    saved_tokens: int
    method: CompressionType
    retained_messages: list[Message]
    archived_messages: list[Message] = field(default_factory=list)
    summary: Optional[str] = None
    compacted_session: Optional[CompactedSession] = None

    @property
    def removed_count(self) -> int:
        return self.original_count - self.compressed_count


@dataclass
class TruncationResult:
    original_count: int
    truncated_messages: list[Message]
    truncation_marker: Message
    removed_messages: list[Message] = field(default_factory=list)
    removed_count: int = 0
    removed_tokens: int = 0

    @property
    def retained_count(self) -> int:
        """Original messages still in the log (the marker is not counted)."""
        return len(self.truncated_messages) - 1


@dataclass
class Checkpoint:
    """A named, durable snapshot of a session's message log."""

    session_id: str
    name: str
    message_count: int
    token_count: int
    summary: str = ""
    id: str = field(default_factory=lambda: new_id("cp"))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "name": self.name,
            "message_count": self.message_count,
            "token_count": self.token_count,
            "created_at": self.created_at.isoformat(),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        created_at = data["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            name=data["name"],
            message_count=data["message_count"],
            token_count=data["token_count"],
            created_at=created_at,
            summary=data.get("summary") or "",
        )


@dataclass
class CheckpointSnapshot:
    checkpoint: Checkpoint
    messages: list[Message]


@dataclass
class CheckpointDraft:
    """Work item for batch checkpoint creation."""

    name: str
    messages: list[Message]
    token_count: int


@dataclass
class SessionState:
    checkpoint_id: Optional[str]
    messages: list[Message]
    token_usage: TokenUsage
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class IndexedConversation:
    """Long-term, embedded memory record."""

    session_id: str
    content: str
    embedding: list[float]
    id: str = field(default_factory=lambda: new_id("long"))
    date: datetime = field(default_factory=utcnow)
    topics: list[str] = field(default_factory=list)
    source_id: Optional[str] = None

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "topics": list(self.topics),
            "source_id": self.source_id,
        }


@dataclass
class MemoryLayer:
    short_term: list[Message] = field(default_factory=list)
    mid_term: list[CompactedSession] = field(default_factory=list)
    long_term: list[IndexedConversation] = field(default_factory=list)


@dataclass
class BatchFailure:
    id: str
    error: str


@dataclass
class BatchResult(Generic[T]):
    """Per-item outcome of a batch operation."""

    success: list[T] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)
    duration: float = 0.0

    @property
    def total(self) -> int:
        return len(self.success) + len(self.failed)


@dataclass
class CleanupReport:
    deleted_checkpoints: int = 0
    freed_tokens: int = 0
    failed: list[BatchFailure] = field(default_factory=list)


@dataclass
class StorageStats:
    total_checkpoints: int
    total_sessions: int
    total_tokens: int
    oldest_checkpoint: Optional[datetime]
    newest_checkpoint: Optional[datetime]
