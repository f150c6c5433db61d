"""Atomic fact extraction for stored memories."""

import asyncio
import logging

from coachmem.classification.provider import ClassificationProvider
from coachmem.memory.similarity import normalize_text
from coachmem.storage.sqlite_store import SQLiteStore
from coachmem.types.memory import AtomicFact, MemoryEntry

logger = logging.getLogger(__name__)

__all__ = ["FactExtractor"]


class FactExtractor:
    """Decomposes a memory into atomic facts and stores the new ones.

    Extraction is idempotent: a fact whose normalized content the entry
    already owns is not stored again.

    Args:
        store: Memory store
        classifier: Classification provider used for decomposition
        timeout: Seconds allowed for the provider call
    """

    def __init__(
        self,
        store: SQLiteStore,
        classifier: ClassificationProvider,
        timeout: float = 15.0,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.timeout = timeout

    async def extract(self, entry: MemoryEntry) -> list[AtomicFact]:
        """Extract and persist facts for an entry.

        Returns:
            Every fact the entry owns after extraction

        Raises:
            ProviderUnavailable: If the provider fails
            asyncio.TimeoutError: If the provider call times out
        """
        drafts = await asyncio.wait_for(
            self.classifier.extract_facts(entry.content, entry.category),
            timeout=self.timeout,
        )

        added = 0
        for draft in drafts:
            normalized = normalize_text(draft.content)
            if not normalized:
                continue
            fact = AtomicFact(
                memory_entry_id=entry.id,
                content=draft.content,
                fact_type=draft.fact_type,
                confidence=draft.confidence,
                source_context=entry.content,
            )
            if self.store.add_fact(fact, normalized):
                added += 1

        if added:
            logger.debug(f"Stored {added} atomic facts for memory {entry.id}")
        return self.store.list_facts(entry.id)
