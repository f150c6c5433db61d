"""Relationship detection between a memory and the user's other memories."""

import asyncio
import logging

from coachmem.classification.provider import ClassificationProvider
from coachmem.memory.similarity import cosine_similarity, fuzzy_similarity
from coachmem.storage.sqlite_store import SQLiteStore
from coachmem.types.memory import MemoryEntry, MemoryRelationship

logger = logging.getLogger(__name__)

__all__ = ["RelationshipEngine", "pair_similarity"]


def pair_similarity(a: MemoryEntry, b: MemoryEntry) -> float:
    """Cosine similarity when both embeddings are comparable, else word overlap."""
    if a.embedding and b.embedding and len(a.embedding) == len(b.embedding):
        return max(0.0, cosine_similarity(a.embedding, b.embedding))
    return fuzzy_similarity(a.content, b.content)


class RelationshipEngine:
    """Links a memory to its most similar neighbours.

    Args:
        store: Memory store
        classifier: Provider that judges each pair
        min_confidence: Assessments below this confidence are discarded
        candidate_limit: Maximum neighbours assessed per memory
        prefilter_similarity: Neighbours below this similarity are not assessed
        timeout: Seconds allowed per provider call
    """

    def __init__(
        self,
        store: SQLiteStore,
        classifier: ClassificationProvider,
        min_confidence: float = 0.6,
        candidate_limit: int = 5,
        prefilter_similarity: float = 0.3,
        timeout: float = 15.0,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.min_confidence = min_confidence
        self.candidate_limit = candidate_limit
        self.prefilter_similarity = prefilter_similarity
        self.timeout = timeout

    def candidates(self, entry: MemoryEntry) -> list[tuple[MemoryEntry, float]]:
        """Most similar other active memories of the user, best first."""
        scored = []
        for other in self.store.list_memories(entry.user_id):
            if other.id == entry.id:
                continue
            similarity = pair_similarity(entry, other)
            if similarity >= self.prefilter_similarity:
                scored.append((other, similarity))
        scored.sort(key=lambda s: (-s[1], s[0].id))
        return scored[: self.candidate_limit]

    async def detect(self, entry: MemoryEntry) -> list[MemoryRelationship]:
        """Assess and store relationships for an entry.

        Returns:
            Relationships newly stored by this call

        Raises:
            ProviderUnavailable: If the provider fails (the scheduler retries;
                already stored relationships are not duplicated)
        """
        if not entry.is_active:
            return []

        neighbours = self.candidates(entry)
        if not neighbours:
            return []

        entry_facts = self.store.list_facts(entry.id)
        stored: list[MemoryRelationship] = []
        for other, similarity in neighbours:
            assessment = await asyncio.wait_for(
                self.classifier.assess_relationship(
                    entry, other, entry_facts, self.store.list_facts(other.id)
                ),
                timeout=self.timeout,
            )
            rel_type = assessment.relationship_type
            if rel_type is None or assessment.confidence < self.min_confidence:
                continue

            if rel_type.is_symmetric:
                source_id, target_id = sorted((entry.id, other.id))
            else:
                source_id, target_id = entry.id, other.id

            relationship = MemoryRelationship(
                user_id=entry.user_id,
                source_memory_id=source_id,
                target_memory_id=target_id,
                relationship_type=rel_type,
                strength=assessment.strength or similarity,
                confidence=assessment.confidence,
                reason=assessment.reason or None,
            )
            if self.store.add_relationship(relationship):
                stored.append(relationship)
                logger.debug(
                    f"Relationship {rel_type.value} {source_id} -> {target_id} "
                    f"(confidence={assessment.confidence:.2f})"
                )

        if stored:
            logger.info(f"Stored {len(stored)} relationships for memory {entry.id}")
        return stored
