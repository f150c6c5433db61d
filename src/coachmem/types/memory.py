"""Memory record types for Coachmem.

MemoryEntry is the root record. Atomic facts are owned by their entry;
relationships, consolidation log rows and access log rows reference entries
by id only and tolerate the referenced entry becoming inactive.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time, the default clock."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class MemoryCategory(str, Enum):
    """Categories of remembered information.

    - PREFERENCES: likes, dislikes and preferred ways of training
    - PERSONAL_CONTEXT: life circumstances, health conditions, injuries
    - INSTRUCTIONS: how the coach should behave
    - FOOD_DIET: dietary restrictions, allergies, eating habits
    - GOALS: targets the user is working towards
    """

    PREFERENCES = "preferences"
    PERSONAL_CONTEXT = "personal_context"
    INSTRUCTIONS = "instructions"
    FOOD_DIET = "food_diet"
    GOALS = "goals"


class FactType(str, Enum):
    """Types of atomic facts."""

    PREFERENCE = "preference"
    ATTRIBUTE = "attribute"
    RELATIONSHIP = "relationship"
    BEHAVIOR = "behavior"
    GOAL = "goal"


class RelationshipType(str, Enum):
    """Types of relationships between memories.

    RELATED, SUPPORTS and CONTRADICTS are symmetric and stored once per
    unordered pair. SUPERSEDES and ELABORATES are directional: the source
    supersedes or elaborates on the target.
    """

    CONTRADICTS = "contradicts"
    SUPPORTS = "supports"
    ELABORATES = "elaborates"
    SUPERSEDES = "supersedes"
    RELATED = "related"

    @property
    def is_symmetric(self) -> bool:
        return self in (
            RelationshipType.RELATED,
            RelationshipType.SUPPORTS,
            RelationshipType.CONTRADICTS,
        )


class ConsolidationType(str, Enum):
    """Kinds of consolidation actions recorded in the audit log."""

    CONTRADICTION_RESOLUTION = "contradiction_resolution"
    SUPERSEDE = "supersede"
    MERGE = "merge"
    TEMPORAL_UPDATE = "temporal_update"
    DUPLICATE_CLEANUP = "duplicate_cleanup"


class DedupAction(str, Enum):
    """Outcome of deduplicating a candidate memory."""

    CREATE = "create"
    UPDATE = "update"
    MERGE = "merge"
    SKIP = "skip"


class MemoryEntry(BaseModel):
    """A single remembered statement about a user.

    Attributes:
        id: Opaque unique identifier
        user_id: Owning user
        content: The remembered statement
        category: MemoryCategory of the statement
        labels: Set of semantic sub-labels (kept sorted)
        keywords: Ordered keyword list
        importance: How critical the memory is regardless of recency
        confidence: How certain the extraction step was
        embedding: Unit-length embedding, None when no provider was available
        semantic_hash: Derived key for fast duplicate lookup
        created_at: When the memory was stored
        last_accessed: When the memory was last used or re-submitted
        access_count: Number of uses and duplicate re-submissions
        is_active: Soft-delete flag
        superseded_by: Id of the memory that replaced this one (weak reference)
        source_conversation_id: Conversation the memory was detected in
        updated_at: Last in-place modification (merges)
        update_count: Number of in-place modifications
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    content: str
    category: MemoryCategory
    labels: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    embedding: Optional[list[float]] = Field(default=None, repr=False)
    semantic_hash: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed: Optional[datetime] = None
    access_count: int = Field(default=0, ge=0)
    is_active: bool = True
    superseded_by: Optional[str] = None
    source_conversation_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    update_count: int = Field(default=0, ge=0)

    @field_validator("labels")
    @classmethod
    def _labels_are_a_set(cls, v: list[str]) -> list[str]:
        return sorted({label.strip().lower() for label in v if label.strip()})

    @field_validator("keywords")
    @classmethod
    def _dedupe_keywords(cls, v: list[str]) -> list[str]:
        seen: set[str] = set()
        result = []
        for keyword in v:
            normalized = keyword.strip().lower()
            if normalized and normalized not in seen:
                seen.add(normalized)
                result.append(normalized)
        return result

    @field_validator("content")
    @classmethod
    def _strip_content(cls, v: str) -> str:
        return v.strip()

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        exclude = None if include_embedding else {"embedding"}
        return self.model_dump(mode="json", exclude=exclude)


class AtomicFact(BaseModel):
    """An independently verifiable statement decomposed from a memory."""

    id: str = Field(default_factory=new_id)
    memory_entry_id: str
    content: str
    fact_type: FactType
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    source_context: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class MemoryRelationship(BaseModel):
    """A detected link between two memories."""

    id: str = Field(default_factory=new_id)
    user_id: str
    source_memory_id: str
    target_memory_id: str
    relationship_type: RelationshipType
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    is_active: bool = True
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def other_end(self, memory_id: str) -> str:
        """Return the id on the opposite end of the relationship."""
        if memory_id == self.source_memory_id:
            return self.target_memory_id
        return self.source_memory_id


class ConsolidationLogEntry(BaseModel):
    """Immutable audit record of one consolidation action."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    consolidation_type: ConsolidationType
    source_memory_ids: list[str]
    result_memory_id: Optional[str] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    reason: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class AccessLogEntry(BaseModel):
    """One recorded use of a memory."""

    model_config = ConfigDict(frozen=True)

    memory_id: str
    user_id: str
    conversation_id: Optional[str] = None
    access_type: str = "retrieval"
    relevance_score: Optional[float] = None
    accessed_at: datetime = Field(default_factory=utcnow)


class GraphMetrics(BaseModel):
    """Per-user snapshot of the memory graph, recomputed after sweeps."""

    user_id: str
    total_memories: int = 0
    total_relationships: int = 0
    avg_relationships_per_memory: float = 0.0
    contradiction_count: int = 0
    consolidation_count: int = 0
    graph_density: float = 0.0
    calculated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Result Types for Memory Operations
# =============================================================================


@dataclass
class DeduplicationResult:
    """Decision taken for a candidate memory.

    Attributes:
        action: create, update, merge or skip
        existing_id: Matched memory for update/merge/skip
        similarity: Similarity with the matched memory
        method: How similarity was measured (hash, semantic, fuzzy, none)
        reasoning: Human-readable explanation
    """

    action: DedupAction
    existing_id: Optional[str] = None
    similarity: float = 0.0
    method: str = "none"
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "existing_id": self.existing_id,
            "similarity": round(self.similarity, 4),
            "method": self.method,
            "reasoning": self.reasoning,
        }


@dataclass
class StoreResult:
    """Result of storing a candidate memory.

    Attributes:
        memory: The memory now holding the information (new, merged or existing)
        decision: The deduplication decision that was applied
        superseded_id: Memory deactivated by an update, if any
    """

    memory: MemoryEntry
    decision: DeduplicationResult
    superseded_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory": self.memory.to_dict(),
            "decision": self.decision.to_dict(),
            "superseded_id": self.superseded_id,
        }


@dataclass
class DetectionResult:
    """Outcome of memory-worthiness detection for one message.

    Attributes:
        should_remember: Whether a candidate memory was found
        content: Statement to remember (the message or an extracted clause)
        category: Detected category
        keywords: Extracted keywords
        labels: Semantic sub-labels
        importance: Importance score
        confidence: Classification confidence
        explicit: True when the user explicitly asked to remember
        reason: Why the message was or was not considered worthy
    """

    should_remember: bool
    content: str = ""
    category: Optional[MemoryCategory] = None
    keywords: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    importance: float = 0.0
    confidence: float = 0.0
    explicit: bool = False
    reason: str = ""

    @classmethod
    def nothing(cls, reason: str = "") -> "DetectionResult":
        return cls(should_remember=False, reason=reason)


@dataclass
class ConsolidationReport:
    """Everything one consolidation run did.

    Attributes:
        user_id: User whose memories were consolidated
        actions: Log entries appended during the run
        conflicts: Discarded alternative actions
        relationships_deactivated: Relationships retired because an end went inactive
        created_memory_ids: Consolidated entries created by merges
        metrics: Graph metrics snapshot (sweeps only)
    """

    user_id: str
    actions: list[ConsolidationLogEntry] = field(default_factory=list)
    conflicts: list[Any] = field(default_factory=list)
    relationships_deactivated: int = 0
    created_memory_ids: list[str] = field(default_factory=list)
    metrics: Optional[GraphMetrics] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "actions": [a.model_dump(mode="json") for a in self.actions],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "relationships_deactivated": self.relationships_deactivated,
            "created_memory_ids": self.created_memory_ids,
            "metrics": self.metrics.model_dump(mode="json") if self.metrics else None,
        }


@dataclass
class MemoryNode:
    """A memory with its facts and graph neighbourhood.

    Attributes:
        memory: The memory entry
        facts: Atomic facts owned by the entry
        relationships: Active relationships touching the entry
        temporal_weight: Recency weight of the entry (0-1)
        aggregate_confidence: Mean of the entry's and its facts' confidence
    """

    memory: MemoryEntry
    facts: list[AtomicFact] = field(default_factory=list)
    relationships: list[MemoryRelationship] = field(default_factory=list)
    temporal_weight: float = 1.0
    aggregate_confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory": self.memory.to_dict(),
            "facts": [f.model_dump(mode="json") for f in self.facts],
            "relationships": [r.model_dump(mode="json") for r in self.relationships],
            "temporal_weight": round(self.temporal_weight, 4),
            "aggregate_confidence": round(self.aggregate_confidence, 4),
        }
