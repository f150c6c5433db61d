"""Ollama embedding provider with retry logic and health checks.

This module provides an HTTP client for the Ollama embeddings API with:
- Exponential backoff retry logic for network resilience
- Health checks to validate model availability
- Configurable timeout handling
"""

import logging
import time
from functools import wraps
from typing import Callable

import requests

from coachmem.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

# Query prefix for mxbai-embed models (asymmetric retrieval)
MXBAI_QUERY_PREFIX = "Represent this sentence for searching relevant passages: "


class EmbeddingError(ProviderUnavailable):
    """Embedding generation failed or the backend is unavailable."""

    pass


def retry_with_backoff(
    max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 10.0
) -> Callable:
    """Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries (default: 10.0)

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except (requests.RequestException, EmbeddingError):
                    if attempt == max_retries - 1:
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    name = getattr(func, "__qualname__", repr(func))
                    logger.debug(f"Retrying {name} in {delay:.1f}s")
                    time.sleep(delay)

            return func(*args, **kwargs)

        return wrapper

    return decorator


class OllamaProvider:
    """HTTP client for the Ollama embeddings API.

    Implements the EmbeddingProvider protocol.

    Args:
        host: Ollama server host URL (default: "http://localhost:11434")
        model: Embedding model name (default: "mxbai-embed-large")
        timeout: Request timeout in seconds (default: 30)

    Example:
        >>> provider = OllamaProvider()
        >>> query_emb = provider.embed_query("What do I like for breakfast?")
    """

    name = "ollama"

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "mxbai-embed-large",
        timeout: float = 30,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._session = requests.Session()
        self._is_mxbai = "mxbai" in model.lower()

    def health_check(self) -> bool:
        """Check if Ollama is responding and the model is available locally."""
        try:
            response = self._session.get(f"{self.host}/api/tags", timeout=self.timeout)
            response.raise_for_status()
            available_models = [
                m.get("name", "") for m in response.json().get("models", [])
            ]
            return any(self.model in model_name for model_name in available_models)
        except Exception as e:
            logger.debug(f"Ollama health check failed: {e}")
            return False

    @retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=10.0)
    def _request_with_retry(self, payload: dict) -> requests.Response:
        """Make HTTP request to Ollama API with retry logic.

        Raises:
            EmbeddingError: If request fails after all retries
        """
        try:
            response = self._session.post(
                f"{self.host}/api/embeddings",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response

        except requests.Timeout as e:
            raise EmbeddingError(
                f"Request timeout after {self.timeout}s for model {self.model}"
            ) from e

        except requests.RequestException as e:
            raise EmbeddingError(f"Ollama API request failed: {e}") from e

    def _embed_single(self, text: str, apply_query_prefix: bool = False) -> list[float]:
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        if apply_query_prefix and self._is_mxbai:
            text = f"{MXBAI_QUERY_PREFIX}{text}"

        try:
            response = self._request_with_retry({"model": self.model, "prompt": text})
            embedding = response.json().get("embedding")
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Failed to generate embedding: {e}") from e

        if not embedding:
            raise EmbeddingError("No embedding returned from Ollama API")
        return list(embedding)

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            raise ValueError("Texts list cannot be empty")
        return [self._embed_single(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed_single(text, apply_query_prefix=True)

    def close(self) -> None:
        self._session.close()
