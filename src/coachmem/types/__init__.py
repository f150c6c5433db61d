"""Type system for Coachmem.

The key types are:
- MemoryEntry: a remembered statement, the root record
- AtomicFact: an independently verifiable unit owned by a MemoryEntry
- MemoryRelationship: a weak, id-based link between two memories
- ConsolidationLogEntry / AccessLogEntry: append-only audit records
- ConversationContext / RelevantMemory: retrieval inputs and outputs

Example:
    >>> from coachmem.types import MemoryEntry, MemoryCategory
    >>> entry = MemoryEntry(
    ...     user_id="u1",
    ...     content="I am allergic to peanuts",
    ...     category=MemoryCategory.FOOD_DIET,
    ...     importance=0.9,
    ... )
"""

from coachmem.types.memory import (
    AccessLogEntry,
    AtomicFact,
    ConsolidationLogEntry,
    ConsolidationReport,
    ConsolidationType,
    DedupAction,
    DeduplicationResult,
    DetectionResult,
    FactType,
    GraphMetrics,
    MemoryCategory,
    MemoryEntry,
    MemoryNode,
    MemoryRelationship,
    RelationshipType,
    StoreResult,
    new_id,
    utcnow,
)
from coachmem.types.retrieval import (
    ConversationContext,
    QueryExpansion,
    RelevantMemory,
    ScoreBreakdown,
    TemporalContext,
)

__all__ = [
    # Records
    "MemoryEntry",
    "AtomicFact",
    "MemoryRelationship",
    "ConsolidationLogEntry",
    "AccessLogEntry",
    "GraphMetrics",
    # Enums
    "MemoryCategory",
    "FactType",
    "RelationshipType",
    "ConsolidationType",
    "DedupAction",
    # Results
    "DeduplicationResult",
    "StoreResult",
    "DetectionResult",
    "ConsolidationReport",
    "MemoryNode",
    # Retrieval
    "ConversationContext",
    "QueryExpansion",
    "RelevantMemory",
    "ScoreBreakdown",
    "TemporalContext",
    # Helpers
    "new_id",
    "utcnow",
]
