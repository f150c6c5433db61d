"""Classification provider protocol and its result types.

A classification provider answers every language question the engine asks:
is a message worth remembering, how should a query be expanded, which atomic
facts does a memory contain, how are two memories related, and how should
two memories be worded once merged.

Implementations raise ProviderUnavailable when the backend cannot answer;
callers decide whether to degrade or retry.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence, runtime_checkable

from coachmem.history import ChatMessage
from coachmem.types.memory import (
    AtomicFact,
    FactType,
    MemoryCategory,
    MemoryEntry,
    RelationshipType,
)
from coachmem.types.retrieval import ConversationContext, QueryExpansion

__all__ = [
    "Classification",
    "ClassificationProvider",
    "FactDraft",
    "RelationshipAssessment",
]


@dataclass
class Classification:
    """Memory-worthiness verdict for one message.

    Attributes:
        worthy: Whether the message contains something worth remembering
        category: Detected category
        keywords: Extracted keywords
        labels: Semantic sub-labels
        importance: Importance score (0-1)
        confidence: Confidence in the verdict (0-1)
        extracted_info: Statement to store, when it differs from the message
    """

    worthy: bool
    category: Optional[MemoryCategory] = None
    keywords: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    importance: float = 0.0
    confidence: float = 0.0
    extracted_info: Optional[str] = None


@dataclass
class FactDraft:
    """An atomic fact proposed by the provider, not yet persisted."""

    content: str
    fact_type: FactType
    confidence: float = 0.7


@dataclass
class RelationshipAssessment:
    """How a new memory relates to an existing one.

    Directional types read as "new <type> existing": a new memory that
    supersedes or elaborates on the existing one.
    """

    relationship_type: Optional[RelationshipType]
    strength: float = 0.0
    confidence: float = 0.0
    reason: str = ""

    @classmethod
    def none(cls, reason: str = "") -> "RelationshipAssessment":
        return cls(relationship_type=None, reason=reason)


@runtime_checkable
class ClassificationProvider(Protocol):
    """Protocol for classification backends.

    ``enabled`` is False only for the disabled variant, which turns detection
    into a no-op.
    """

    name: str
    enabled: bool

    async def classify(
        self, text: str, history: Sequence[ChatMessage] = ()
    ) -> Classification:
        ...

    async def expand_query(
        self, query: str, context: ConversationContext
    ) -> QueryExpansion:
        ...

    async def extract_facts(
        self, content: str, category: MemoryCategory
    ) -> list[FactDraft]:
        ...

    async def assess_relationship(
        self,
        new: MemoryEntry,
        existing: MemoryEntry,
        new_facts: Sequence[AtomicFact] = (),
        existing_facts: Sequence[AtomicFact] = (),
    ) -> RelationshipAssessment:
        ...

    async def merge_contents(self, contents: Sequence[str]) -> str:
        ...

    async def close(self) -> None:
        ...
