"""Embedding generation module for Coachmem.

Available backends:
    - ollama: Remote embedding using an Ollama server
    - openai: Any OpenAI-compatible embeddings API
    - none: No embeddings; deduplication and retrieval use lexical matching

Usage:
    >>> from coachmem.embedding import create_embedding_provider
    >>> provider = create_embedding_provider("ollama")
    >>> query_emb = provider.embed_query("What are my goals?")
"""

from .disabled_provider import DisabledEmbeddingProvider
from .factory import EmbeddingBackend, create_embedding_provider, provider_from_settings
from .ollama_provider import EmbeddingError, OllamaProvider
from .openai_provider import OpenAIEmbeddingProvider
from .provider import EmbeddingProvider

__all__ = [
    "EmbeddingProvider",
    "EmbeddingBackend",
    "create_embedding_provider",
    "provider_from_settings",
    "OllamaProvider",
    "OpenAIEmbeddingProvider",
    "DisabledEmbeddingProvider",
    "EmbeddingError",
]
