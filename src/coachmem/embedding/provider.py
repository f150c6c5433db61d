"""Embedding provider protocol for pluggable backends.

This module defines the EmbeddingProvider protocol that allows different
embedding backends (Ollama, OpenAI-compatible, disabled) to be used
interchangeably.

API Contract:
    - embed_texts(texts: list[str]) -> list[list[float]] - batch embedding for memories
    - embed_query(text: str) -> list[float] - single query embedding
"""

from typing import Protocol, runtime_checkable

__all__ = ["EmbeddingProvider"]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol defining the interface for embedding providers.

    Providers also expose ``name`` and ``model`` attributes, used together with
    a content hash as the key of the persistent embedding cache.

    Required Methods:
        embed_texts: Generate embeddings for multiple texts (batch)
        embed_query: Generate embedding for a single query
        health_check: Check if the provider is ready
        close: Release resources
    """

    name: str
    model: str

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts.

        Args:
            texts: List of input texts to embed. Must not be empty.

        Returns:
            List of embedding vectors, one per input text, order preserved.

        Raises:
            EmbeddingError: If embedding generation fails or the provider is
                unavailable.
            ValueError: If texts list is empty.
        """
        ...

    def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a single query text.

        Raises:
            EmbeddingError: If embedding generation fails.
            ValueError: If text is empty.
        """
        ...

    def health_check(self) -> bool:
        """Check if the provider is available and ready."""
        ...

    def close(self) -> None:
        """Release resources held by the provider (idempotent)."""
        ...
