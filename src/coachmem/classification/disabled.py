"""Classification variant used when AI classification is switched off."""

from typing import Sequence

from coachmem.classification.provider import (
    Classification,
    FactDraft,
    RelationshipAssessment,
)
from coachmem.history import ChatMessage
from coachmem.memory.similarity import combine_contents
from coachmem.types.memory import AtomicFact, MemoryCategory, MemoryEntry
from coachmem.types.retrieval import ConversationContext, QueryExpansion


class DisabledClassifier:
    """Never finds anything worth remembering; detection becomes a no-op."""

    name = "disabled"
    enabled = False

    async def classify(
        self, text: str, history: Sequence[ChatMessage] = ()
    ) -> Classification:
        return Classification(worthy=False)

    async def expand_query(
        self, query: str, context: ConversationContext
    ) -> QueryExpansion:
        return QueryExpansion.raw(query)

    async def extract_facts(
        self, content: str, category: MemoryCategory
    ) -> list[FactDraft]:
        return []

    async def assess_relationship(
        self,
        new: MemoryEntry,
        existing: MemoryEntry,
        new_facts: Sequence[AtomicFact] = (),
        existing_facts: Sequence[AtomicFact] = (),
    ) -> RelationshipAssessment:
        return RelationshipAssessment.none("classification disabled")

    async def merge_contents(self, contents: Sequence[str]) -> str:
        return combine_contents(contents)

    async def close(self) -> None:
        pass
