"""OpenAI-compatible classification backend (``/chat/completions``)."""

import logging

import httpx

from coachmem.classification.llm import LLMClassifier

logger = logging.getLogger(__name__)

SYSTEM_MESSAGE = "You are a precise assistant that always answers with a single JSON object."


class OpenAIClassifier(LLMClassifier):
    """Classification via an OpenAI-compatible chat completions API.

    Args:
        base_url: API base URL including the version prefix
        api_key: Bearer token (optional for local servers)
        model: Chat model name
        timeout: Request timeout in seconds
        transport: Optional httpx transport
    """

    name = "openai"

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(model=model, timeout=timeout, transport=transport)
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def _complete(self, prompt: str) -> str:
        async with self._client(headers=self._headers) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "temperature": 0,
                    "response_format": {"type": "json_object"},
                    "messages": [
                        {"role": "system", "content": SYSTEM_MESSAGE},
                        {"role": "user", "content": prompt},
                    ],
                },
            )
            response.raise_for_status()
            choices = response.json().get("choices") or []
            if not choices:
                return ""
            return choices[0].get("message", {}).get("content", "") or ""
