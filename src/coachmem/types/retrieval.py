"""Retrieval types: conversation context, query expansion and scored results."""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from coachmem.types.memory import MemoryEntry

TemporalContext = Literal["immediate", "recent", "historical"]


class ConversationContext(BaseModel):
    """Live conversation state used for contextual re-ranking.

    Attributes:
        coaching_mode: Current coaching mode (fitness, nutrition, wellness, general)
        recent_topics: Topics discussed recently in the conversation
        user_intent: Classified intent (question, goal_setting, progress_check,
            advice_seeking)
        temporal_context: How far back the user is looking
        session_length: Number of messages exchanged in the session
        conversation_id: Conversation the query belongs to
    """

    coaching_mode: str = "general"
    recent_topics: list[str] = Field(default_factory=list)
    user_intent: Optional[str] = None
    temporal_context: TemporalContext = "recent"
    session_length: int = Field(default=0, ge=0)
    conversation_id: Optional[str] = None

    def fingerprint(self, query: str) -> str:
        """Stable key for caching work done for this query in this context."""
        parts = [
            " ".join(query.lower().split()),
            self.coaching_mode.lower(),
            (self.user_intent or "").lower(),
            ",".join(sorted(t.lower() for t in self.recent_topics)),
        ]
        return hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]


@dataclass
class QueryExpansion:
    """Synonyms and related concepts generated for a query.

    Attributes:
        original_query: The query as submitted
        expanded_terms: Additional search terms
        synonyms: Synonyms of query terms
        related_concepts: Related coaching concepts
        expanded: False when the raw query is used unexpanded
    """

    original_query: str
    expanded_terms: list[str] = field(default_factory=list)
    synonyms: list[str] = field(default_factory=list)
    related_concepts: list[str] = field(default_factory=list)
    expanded: bool = True

    @classmethod
    def raw(cls, query: str) -> "QueryExpansion":
        return cls(original_query=query, expanded=False)

    @property
    def all_terms(self) -> list[str]:
        """Every expansion term, deduplicated, in order of appearance."""
        seen: set[str] = set()
        terms = []
        for term in self.expanded_terms + self.synonyms + self.related_concepts:
            normalized = term.strip().lower()
            if normalized and normalized not in seen:
                seen.add(normalized)
                terms.append(normalized)
        return terms

    def search_text(self) -> str:
        """Query text used for embedding: the query followed by its expansions."""
        return " ".join([self.original_query, *self.all_terms]).strip()


@dataclass
class ScoreBreakdown:
    """The four independent relevance scores and their weighted sum."""

    semantic: float = 0.0
    temporal: float = 0.0
    contextual: float = 0.0
    graph: float = 0.0
    combined: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "semantic": round(self.semantic, 4),
            "temporal": round(self.temporal, 4),
            "contextual": round(self.contextual, 4),
            "graph": round(self.graph, 4),
            "combined": round(self.combined, 4),
        }


@dataclass
class RelevantMemory:
    """A retrieved memory with its score and the reasons it was retrieved."""

    memory: MemoryEntry
    score: float
    breakdown: ScoreBreakdown
    reasons: list[str] = field(default_factory=list)

    @property
    def retrieval_reason(self) -> str:
        return ", ".join(self.reasons) if self.reasons else "general_relevance"

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory": self.memory.to_dict(),
            "score": round(self.score, 4),
            "scores": self.breakdown.to_dict(),
            "reasons": list(self.reasons),
            "retrieval_reason": self.retrieval_reason,
        }
