"""OpenAI-compatible embedding provider.

Works against any server implementing the ``/embeddings`` endpoint of the
OpenAI API (OpenAI itself, vLLM, LM Studio, LiteLLM, ...).
"""

import logging

import requests

from coachmem.embedding.ollama_provider import EmbeddingError, retry_with_backoff

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider:
    """HTTP client for an OpenAI-compatible embeddings API.

    Implements the EmbeddingProvider protocol. Texts are sent in one batch
    request and results are re-ordered by their ``index`` field.

    Args:
        base_url: API base URL including the version prefix
        api_key: Bearer token (optional for local servers)
        model: Embedding model name
        timeout: Request timeout in seconds
    """

    name = "openai"

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        timeout: float = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._session = requests.Session()
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    @retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=10.0)
    def _post_embeddings(self, texts: list[str]) -> list[list[float]]:
        try:
            response = self._session.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": texts},
                timeout=self.timeout,
            )
            response.raise_for_status()
            items = response.json().get("data", [])
        except requests.Timeout as e:
            raise EmbeddingError(f"Request timeout after {self.timeout}s") from e
        except requests.RequestException as e:
            raise EmbeddingError(f"Embeddings API request failed: {e}") from e
        except ValueError as e:
            raise EmbeddingError(f"Invalid embeddings API response: {e}") from e

        if len(items) != len(texts):
            raise EmbeddingError(
                f"Expected {len(texts)} embeddings, got {len(items)}"
            )
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        return [list(item["embedding"]) for item in ordered]

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            raise ValueError("Texts list cannot be empty")
        if any(not t or not t.strip() for t in texts):
            raise ValueError("Text cannot be empty")
        return self._post_embeddings(texts)

    def embed_query(self, text: str) -> list[float]:
        return self.embed_texts([text])[0]

    def health_check(self) -> bool:
        try:
            self.embed_query("health check")
            return True
        except Exception as e:
            logger.debug(f"Embeddings API health check failed: {e}")
            return False

    def close(self) -> None:
        self._session.close()
