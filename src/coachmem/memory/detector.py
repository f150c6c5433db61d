"""Memory-worthiness detection for incoming user messages.

The detector never writes. It returns a DetectionResult; the service turns a
positive result into a ``store`` task for the deduplicator.
"""

import asyncio
import logging
import re
from typing import Optional

from coachmem.classification.heuristic import extract_keywords, extract_labels, guess_category
from coachmem.classification.provider import ClassificationProvider
from coachmem.constants import (
    EXPLICIT_CONFIDENCE,
    EXPLICIT_IMPORTANCE,
    EXPLICIT_TRIGGER_PATTERNS,
)
from coachmem.history import ConversationHistory
from coachmem.types.memory import DetectionResult, MemoryCategory
from coachmem.validation import check_content

logger = logging.getLogger(__name__)

__all__ = ["MemoryDetector", "match_explicit_trigger"]

_EXPLICIT_RES = [re.compile(p, re.IGNORECASE | re.DOTALL) for p in EXPLICIT_TRIGGER_PATTERNS]


def match_explicit_trigger(message: str) -> Optional[str]:
    """Return the clause the user explicitly asked to remember, if any."""
    for pattern in _EXPLICIT_RES:
        match = pattern.search(message)
        if match:
            clause = match.group("content").strip().rstrip(".!").strip()
            if clause:
                return clause
    return None


class MemoryDetector:
    """Decides whether a message contains something worth remembering.

    Args:
        classifier: Classification provider
        history: Source of recent conversation messages
        history_limit: Number of recent messages passed as context
        timeout: Seconds allowed for the classification call
    """

    def __init__(
        self,
        classifier: ClassificationProvider,
        history: Optional[ConversationHistory] = None,
        history_limit: int = 3,
        timeout: float = 15.0,
    ) -> None:
        self.classifier = classifier
        self.history = history
        self.history_limit = history_limit
        self.timeout = timeout

    async def detect(
        self, user_id: str, message: str, conversation_id: Optional[str] = None
    ) -> DetectionResult:
        """Classify a message; never raises."""
        if not self.classifier.enabled:
            return DetectionResult.nothing("classification_disabled")

        if not message or not message.strip():
            return DetectionResult.nothing("empty_message")

        clause = match_explicit_trigger(message)
        if clause is not None:
            result = DetectionResult(
                should_remember=True,
                content=clause,
                category=guess_category(clause) or MemoryCategory.INSTRUCTIONS,
                keywords=extract_keywords(clause),
                labels=extract_labels(clause),
                importance=EXPLICIT_IMPORTANCE,
                confidence=EXPLICIT_CONFIDENCE,
                explicit=True,
                reason="explicit_request",
            )
            return self._validated(user_id, result)

        try:
            history = []
            if self.history is not None and conversation_id and self.history_limit > 0:
                history = await self.history.get_recent(conversation_id, self.history_limit)
            classification = await asyncio.wait_for(
                self.classifier.classify(message, history), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Classification timed out after {self.timeout}s for user {user_id}")
            return DetectionResult.nothing("classification_timeout")
        except Exception as e:
            logger.warning(f"Classification failed for user {user_id}: {e}")
            return DetectionResult.nothing("classification_error")

        if not classification.worthy or classification.category is None:
            return DetectionResult.nothing("not_memory_worthy")

        result = DetectionResult(
            should_remember=True,
            content=classification.extracted_info or message.strip(),
            category=classification.category,
            keywords=classification.keywords,
            labels=classification.labels,
            importance=classification.importance,
            confidence=classification.confidence,
            reason="classified",
        )
        return self._validated(user_id, result)

    def _validated(self, user_id: str, result: DetectionResult) -> DetectionResult:
        verdict = check_content(result.content, result.category)
        if not verdict.valid:
            logger.warning(
                f"Detected memory for user {user_id} failed validation "
                f"({verdict.rule}): {result.content!r}"
            )
            return DetectionResult.nothing("failed_quality_validation")
        logger.debug(
            f"Memory-worthy message for user {user_id}: "
            f"category={result.category.value} explicit={result.explicit}"
        )
        return result
