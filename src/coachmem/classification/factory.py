"""Factory for creating classification providers.

The backend is resolved once; the engine holds the returned provider and
never re-dispatches on the backend name.
"""

import logging
from typing import TYPE_CHECKING

import httpx

from coachmem.config import ClassificationBackend

if TYPE_CHECKING:
    from coachmem.classification.provider import ClassificationProvider
    from coachmem.config import CoachmemSettings

logger = logging.getLogger(__name__)

__all__ = ["ClassificationBackend", "create_classification_provider"]


def create_classification_provider(
    settings: "CoachmemSettings",
    backend: ClassificationBackend | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> "ClassificationProvider":
    """Create the classification provider for the configured backend.

    Args:
        settings: Engine settings (hosts, models, timeouts)
        backend: Override for settings.classification_backend
        transport: Optional httpx transport for the LLM backends

    Raises:
        ValueError: If an unknown backend is specified.
    """
    backend = backend or settings.classification_backend
    match backend:
        case "ollama":
            from coachmem.classification.ollama import OllamaClassifier

            logger.info(
                f"Creating OllamaClassifier with host={settings.ollama_host}, "
                f"model={settings.ollama_llm_model}"
            )
            return OllamaClassifier(
                host=settings.ollama_host,
                model=settings.ollama_llm_model,
                timeout=settings.provider_timeout_seconds,
                transport=transport,
            )

        case "openai":
            from coachmem.classification.openai import OpenAIClassifier

            logger.info(
                f"Creating OpenAIClassifier with base_url={settings.openai_base_url}, "
                f"model={settings.openai_llm_model}"
            )
            return OpenAIClassifier(
                base_url=settings.openai_base_url,
                api_key=settings.openai_api_key,
                model=settings.openai_llm_model,
                timeout=settings.provider_timeout_seconds,
                transport=transport,
            )

        case "heuristic":
            from coachmem.classification.heuristic import HeuristicClassifier

            logger.info("Creating HeuristicClassifier")
            return HeuristicClassifier()

        case "disabled":
            from coachmem.classification.disabled import DisabledClassifier

            logger.info("Classification disabled; detection is a no-op")
            return DisabledClassifier()

        case _:
            raise ValueError(
                f"Unknown classification backend: {backend!r}. "
                f"Valid options are: 'ollama', 'openai', 'heuristic', 'disabled'"
            )
