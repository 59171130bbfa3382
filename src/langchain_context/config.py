"""
Context budget configuration and model context window mappings.
"""

import os
from dataclasses import dataclass

from .errors import ConfigError

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-sonnet-4-20250514": 200_000,
    "claude-opus-4-20250514": 200_000,
    "claude-opus-4-5-20251101": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
    # GLM
    "glm-4": 128_000,
    "glm-4-flash": 128_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def resolve_context_window(model_name: str) -> int:
    """Resolve context window size from a model name."""
    # Try exact match first, then prefix match
    if model_name in MODEL_CONTEXT_WINDOWS:
        return MODEL_CONTEXT_WINDOWS[model_name]
    for key, size in MODEL_CONTEXT_WINDOWS.items():
        if model_name.startswith(key) or key.startswith(model_name):
            return size
    return DEFAULT_CONTEXT_WINDOW


@dataclass
class ContextConfig:
    """Token budget policy for one session."""

    max_tokens: int = 200_000
    reserved_output_tokens: int = 16_000

    # Usage fractions of (max_tokens - reserved_output_tokens)
    compact_threshold: float = 0.85
    prune_threshold: float = 0.70
    truncate_threshold: float = 0.90

    # Most recent messages that no strategy may remove
    messages_to_keep: int = 3

    # Safety margin against estimation error, as a fraction of max_tokens
    buffer_percentage: float = 0.10

    # Create a checkpoint every N appended messages (0 = never)
    checkpoint_interval: int = 20

    @property
    def available_tokens(self) -> int:
        """Prompt-side budget: max_tokens minus the output reservation."""
        return max(self.max_tokens - self.reserved_output_tokens, 1)

    @property
    def buffer_tokens(self) -> int:
        return int(self.max_tokens * self.buffer_percentage)

    def validate(self) -> "ContextConfig":
        """Check invariants, raising ConfigError on the first violation."""
        if self.max_tokens <= 0:
            raise ConfigError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.reserved_output_tokens < 0:
            raise ConfigError("reserved_output_tokens must not be negative")
        if self.reserved_output_tokens >= self.max_tokens:
            raise ConfigError(
                f"reserved_output_tokens ({self.reserved_output_tokens}) "
                f"must be below max_tokens ({self.max_tokens})"
            )
        if not (
            0 < self.prune_threshold
            <= self.compact_threshold
            <= self.truncate_threshold
            <= 1.0
        ):
            raise ConfigError(
                "thresholds must satisfy 0 < prune <= compact <= truncate <= 1.0, got "
                f"prune={self.prune_threshold}, compact={self.compact_threshold}, "
                f"truncate={self.truncate_threshold}"
            )
        if self.messages_to_keep < 1:
            raise ConfigError("messages_to_keep must be at least 1")
        if not 0 <= self.buffer_percentage < 1:
            raise ConfigError("buffer_percentage must be in [0, 1)")
        if self.checkpoint_interval < 0:
            raise ConfigError("checkpoint_interval must not be negative")
        return self

    @classmethod
    def for_model(cls, model_name: str, **overrides) -> "ContextConfig":
        """Build a config whose max_tokens matches the model's context window."""
        overrides.setdefault("max_tokens", resolve_context_window(model_name))
        return cls(**overrides)

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            max_tokens=int(os.getenv("CONTEXT_MAX_TOKENS", "200000")),
            reserved_output_tokens=int(
                os.getenv("CONTEXT_RESERVED_OUTPUT_TOKENS", "16000")
            ),
            compact_threshold=float(os.getenv("CONTEXT_COMPACT_THRESHOLD", "0.85")),
            prune_threshold=float(os.getenv("CONTEXT_PRUNE_THRESHOLD", "0.70")),
            truncate_threshold=float(os.getenv("CONTEXT_TRUNCATE_THRESHOLD", "0.90")),
            messages_to_keep=int(os.getenv("CONTEXT_MESSAGES_TO_KEEP", "3")),
            buffer_percentage=float(os.getenv("CONTEXT_BUFFER_PERCENTAGE", "0.10")),
            checkpoint_interval=int(os.getenv("CONTEXT_CHECKPOINT_INTERVAL", "20")),
        )


@dataclass
class MaintenanceConfig:
    """Checkpoint retention policy."""

    max_checkpoints_per_session: int = 50
    max_total_checkpoints: int = 500
    auto_cleanup: bool = True
    cleanup_interval_hours: float = 24

    @property
    def cleanup_interval_seconds(self) -> float:
        return self.cleanup_interval_hours * 60 * 60

    @classmethod
    def from_env(cls) -> "MaintenanceConfig":
        return cls(
            max_checkpoints_per_session=int(
                os.getenv("CHECKPOINT_MAX_PER_SESSION", "50")
            ),
            max_total_checkpoints=int(os.getenv("CHECKPOINT_MAX_TOTAL", "500")),
            auto_cleanup=_env_bool("CHECKPOINT_AUTO_CLEANUP", "true"),
            cleanup_interval_hours=float(
                os.getenv("CHECKPOINT_CLEANUP_INTERVAL_HOURS", "24")
            ),
        )


@dataclass
class MemoryConfig:
    """Configuration for the mid-term and long-term memory tiers."""

    # Mid-term records older than this are expired unless promoted
    mid_term_max_age_days: int = 30

    # Sessions at least this long are promoted regardless of score
    min_session_length: int = 10

    # Embeddings for long-term memory
    embedding_model: str = "embedding-3"
    embedding_base_url: str = ""  # empty = reuse API_BASE_URL
    embedding_api_key: str = ""  # empty = reuse API_KEY
    embedding_dimensions: int = 0  # 0 = detect from the first vector
    recall_top_k: int = 5

    # Summaries for compaction
    summary_model: str = ""  # empty = reuse CLAUDE_MODEL
    max_summary_tokens: int = 1000
    summary_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            mid_term_max_age_days=int(os.getenv("MEMORY_MID_TERM_MAX_AGE_DAYS", "30")),
            min_session_length=int(os.getenv("MEMORY_MIN_SESSION_LENGTH", "10")),
            embedding_model=os.getenv("MEMORY_EMBEDDING_MODEL", "embedding-3"),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
            embedding_dimensions=int(os.getenv("MEMORY_EMBEDDING_DIMENSIONS", "0")),
            recall_top_k=int(os.getenv("MEMORY_RECALL_TOP_K", "5")),
            summary_model=os.getenv("MEMORY_SUMMARY_MODEL", ""),
            max_summary_tokens=int(os.getenv("MEMORY_MAX_SUMMARY_TOKENS", "1000")),
            summary_timeout_seconds=float(
                os.getenv("MEMORY_SUMMARY_TIMEOUT_SECONDS", "30")
            ),
        )
