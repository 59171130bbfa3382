"""
Exception types for the context engine.

Not-found conditions are reported through return values (``None`` / ``False``);
these exceptions are reserved for genuine failures.
"""


class ContextError(Exception):
    """Base class for all context engine errors."""


class ConfigError(ContextError, ValueError):
    """Raised when a configuration object violates its invariants."""


class StorageError(ContextError):
    """Raised when the persistence collaborator fails (I/O, driver errors)."""


class CollaboratorError(ContextError):
    """Raised when an external service is unavailable or fails."""


class SummarizationError(CollaboratorError):
    """The summarization service failed, timed out or is not configured."""


class EmbeddingError(CollaboratorError):
    """The embedding service failed or returned an unexpected vector."""
