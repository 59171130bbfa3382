"""
Embedding capability for long-term memory.
"""

import logging
from typing import Protocol, runtime_checkable

from ..errors import EmbeddingError

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    @property
    def available(self) -> bool: ...

    @property
    def dimensions(self) -> int: ...

    def embed(self, text: str) -> list[float]:
        """Embed text. Raises EmbeddingError on failure."""
        ...


class NullEmbedder:
    """Embedder used when no embedding model is configured."""

    @property
    def available(self) -> bool:
        return False

    @property
    def dimensions(self) -> int:
        return 0

    def embed(self, text: str) -> list[float]:
        raise EmbeddingError("no embedding model configured")


class LangChainEmbedder:
    """
    Wraps a LangChain ``Embeddings`` (``embed_query``).

    Dimensionality is fixed per deployment: either passed in, or taken from
    the first vector produced. Vectors of any other length are rejected.
    """

    def __init__(self, embedding_model, dimensions: int = 0):
        self._embedding_model = embedding_model
        self._dimensions = dimensions

    @property
    def available(self) -> bool:
        return self._embedding_model is not None

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, text: str) -> list[float]:
        if not self._embedding_model:
            raise EmbeddingError("no embedding model configured")
        try:
            vector = list(self._embedding_model.embed_query(text))
        except Exception as e:
            raise EmbeddingError(f"embedding failed: {e}") from e

        if not vector:
            raise EmbeddingError("embedding model returned an empty vector")
        if not self._dimensions:
            self._dimensions = len(vector)
            logger.info("Detected embedding dimensions: %d", self._dimensions)
        elif len(vector) != self._dimensions:
            raise EmbeddingError(
                f"expected {self._dimensions}-dimensional vector, got {len(vector)}"
            )
        return vector
