"""Factory for creating embedding providers.

The backend is resolved once, at configuration time; callers hold the
returned provider and never dispatch on the backend name again.
"""

import logging
from typing import TYPE_CHECKING

from coachmem.config import EmbeddingBackend

if TYPE_CHECKING:
    from coachmem.config import CoachmemSettings
    from coachmem.embedding.provider import EmbeddingProvider

logger = logging.getLogger(__name__)

__all__ = ["EmbeddingBackend", "create_embedding_provider", "provider_from_settings"]


def create_embedding_provider(
    backend: EmbeddingBackend = "ollama",
    *,
    host: str = "http://localhost:11434",
    model: str | None = None,
    timeout: float = 30,
    base_url: str = "https://api.openai.com/v1",
    api_key: str | None = None,
) -> "EmbeddingProvider":
    """Create an embedding provider based on the backend configuration.

    Args:
        backend: The embedding backend to use ('ollama', 'openai' or 'none').
        host: Ollama server host URL (only used for 'ollama').
        model: Embedding model name. Defaults per backend.
        timeout: Request timeout in seconds.
        base_url: API base URL (only used for 'openai').
        api_key: API key (only used for 'openai').

    Returns:
        An instance implementing the EmbeddingProvider protocol.

    Raises:
        ValueError: If an unknown backend is specified.

    Example:
        >>> provider = create_embedding_provider("ollama", host="http://gpu:11434")
        >>> provider = create_embedding_provider("none")  # lexical fallback only
    """
    match backend:
        case "ollama":
            from coachmem.embedding.ollama_provider import OllamaProvider

            ollama_model = model if model else "mxbai-embed-large"
            logger.info(
                f"Creating OllamaProvider with host={host}, "
                f"model={ollama_model}, timeout={timeout}"
            )
            return OllamaProvider(host=host, model=ollama_model, timeout=timeout)

        case "openai":
            from coachmem.embedding.openai_provider import OpenAIEmbeddingProvider

            openai_model = model if model else "text-embedding-3-small"
            logger.info(
                f"Creating OpenAIEmbeddingProvider with base_url={base_url}, "
                f"model={openai_model}"
            )
            return OpenAIEmbeddingProvider(
                base_url=base_url, api_key=api_key, model=openai_model, timeout=timeout
            )

        case "none":
            from coachmem.embedding.disabled_provider import DisabledEmbeddingProvider

            logger.info("Embeddings disabled; using lexical matching only")
            return DisabledEmbeddingProvider()

        case _:
            raise ValueError(
                f"Unknown embedding backend: {backend!r}. "
                f"Valid options are: 'ollama', 'openai', 'none'"
            )


def provider_from_settings(settings: "CoachmemSettings") -> "EmbeddingProvider":
    """Create the embedding provider described by the settings."""
    match settings.embedding_backend:
        case "openai":
            model = settings.openai_embed_model
        case "ollama":
            model = settings.ollama_embed_model
        case _:
            model = None
    return create_embedding_provider(
        settings.embedding_backend,
        host=settings.ollama_host,
        model=model,
        timeout=settings.provider_timeout_seconds,
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key,
    )
