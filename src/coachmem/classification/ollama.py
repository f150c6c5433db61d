"""Ollama classification backend (``/api/generate`` with JSON format)."""

import logging

import httpx

from coachmem.classification.llm import LLMClassifier

logger = logging.getLogger(__name__)


class OllamaClassifier(LLMClassifier):
    """Classification via a local Ollama LLM.

    Args:
        host: Ollama server host URL
        model: Generation model name
        timeout: Request timeout in seconds
        transport: Optional httpx transport
    """

    name = "ollama"

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "llama3.2",
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(model=model, timeout=timeout, transport=transport)
        self.host = host.rstrip("/")

    async def _complete(self, prompt: str) -> str:
        async with self._client() as client:
            response = await client.post(
                f"{self.host}/api/generate",
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "format": "json",
                    "options": {"temperature": 0},
                },
            )
            response.raise_for_status()
            return response.json().get("response", "")
