"""Embedding provider used when no embedding backend is configured."""

from coachmem.embedding.ollama_provider import EmbeddingError


class DisabledEmbeddingProvider:
    """Always unavailable; callers fall back to lexical matching."""

    name = "none"
    model = "none"

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        raise EmbeddingError("Embedding backend is disabled")

    def embed_query(self, text: str) -> list[float]:
        raise EmbeddingError("Embedding backend is disabled")

    def health_check(self) -> bool:
        return False

    def close(self) -> None:
        pass
