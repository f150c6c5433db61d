"""Consolidation of the memory graph.

Relationships are turned into actions:

- contradicts (confident enough): the older memory is superseded by the newer
- supersedes: the target is superseded by the source
- supports / elaborates (strong enough, same category): both memories are
  merged into a new consolidated entry

Memories are never deleted; they are deactivated and cross-referenced via
``superseded_by``, and every action appends a consolidation log row in the
same transaction. Actions are planned greedily by relationship confidence;
an action touching a memory already claimed in the same round is discarded
and reported as a ConsolidationConflict. Rounds repeat until nothing changes,
so consolidating twice in a row appends nothing the second time.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from coachmem.classification.provider import ClassificationProvider
from coachmem.constants import MAX_CONSOLIDATION_ROUNDS, MAX_SUPERSEDE_DEPTH
from coachmem.errors import ConsolidationConflict
from coachmem.memory.similarity import combine_contents, compute_semantic_hash, mean_embedding
from coachmem.storage.sqlite_store import SQLiteStore
from coachmem.types.memory import (
    ConsolidationLogEntry,
    ConsolidationReport,
    ConsolidationType,
    GraphMetrics,
    MemoryEntry,
    MemoryRelationship,
    RelationshipType,
    utcnow,
)

logger = logging.getLogger(__name__)

__all__ = ["Consolidator", "follow_supersede_chain", "compute_graph_metrics"]


def follow_supersede_chain(
    store: SQLiteStore, memory_id: str, max_depth: int = MAX_SUPERSEDE_DEPTH
) -> Optional[MemoryEntry]:
    """Follow ``superseded_by`` links to the memory that currently holds the information.

    Stops at the first active memory, at a missing link, at a cycle, or after
    ``max_depth`` hops; the last memory reached is returned.

    Returns:
        The resolved memory, or None if ``memory_id`` does not exist
    """
    current = store.get_memory(memory_id)
    if current is None:
        return None

    visited = {current.id}
    for _ in range(max_depth):
        if current.is_active or not current.superseded_by:
            return current
        if current.superseded_by in visited:
            logger.warning(f"Supersede cycle detected at memory {current.id}")
            return current
        successor = store.get_memory(current.superseded_by)
        if successor is None:
            return current
        visited.add(successor.id)
        current = successor

    if not current.is_active:
        logger.warning(f"Supersede chain from {memory_id} exceeds {max_depth} hops")
    return current


def compute_graph_metrics(store: SQLiteStore, user_id: str, now: datetime) -> GraphMetrics:
    """Snapshot of a user's active memory graph."""
    total_memories = sum(store.count_by_category(user_id).values())
    relationships = store.list_relationships(user_id)
    total_relationships = len(relationships)
    possible_pairs = total_memories * (total_memories - 1) / 2
    return GraphMetrics(
        user_id=user_id,
        total_memories=total_memories,
        total_relationships=total_relationships,
        avg_relationships_per_memory=(
            total_relationships / total_memories if total_memories else 0.0
        ),
        contradiction_count=sum(
            1 for r in relationships if r.relationship_type == RelationshipType.CONTRADICTS
        ),
        consolidation_count=store.count_consolidation_log(user_id),
        graph_density=min(1.0, total_relationships / possible_pairs) if possible_pairs else 0.0,
        calculated_at=now,
    )


@dataclass
class _PlannedAction:
    kind: ConsolidationType
    relationship: MemoryRelationship
    memories: tuple[MemoryEntry, MemoryEntry]

    @property
    def memory_ids(self) -> set[str]:
        return {m.id for m in self.memories}


class Consolidator:
    """Applies consolidation actions derived from the relationship graph.

    Callers must hold the user's write lock.

    Args:
        store: Memory store
        classifier: Provider used to word merged memories
        contradiction_min_confidence: Minimum confidence to resolve a contradiction
        merge_strength_threshold: Minimum strength to merge supporting memories
        timeout: Seconds allowed for the merge wording call
        clock: Returns the current time
    """

    def __init__(
        self,
        store: SQLiteStore,
        classifier: ClassificationProvider,
        contradiction_min_confidence: float = 0.8,
        merge_strength_threshold: float = 0.85,
        timeout: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.contradiction_min_confidence = contradiction_min_confidence
        self.merge_strength_threshold = merge_strength_threshold
        self.timeout = timeout
        self._clock = clock

    async def consolidate_user(self, user_id: str) -> ConsolidationReport:
        """Sweep all of a user's relationships and refresh graph metrics."""
        report = await self._run(user_id, memory_id=None)
        report.metrics = compute_graph_metrics(self.store, user_id, self._clock())
        self.store.save_graph_metrics(report.metrics)
        logger.info(
            f"Consolidation sweep for user {user_id}: {len(report.actions)} actions, "
            f"{len(report.conflicts)} conflicts, "
            f"{report.relationships_deactivated} relationships retired"
        )
        return report

    async def consolidate_entry(self, user_id: str, memory_id: str) -> ConsolidationReport:
        """Consolidate only the relationships touching one memory."""
        return await self._run(user_id, memory_id=memory_id)

    async def _run(self, user_id: str, memory_id: Optional[str]) -> ConsolidationReport:
        report = ConsolidationReport(user_id=user_id)
        for _ in range(MAX_CONSOLIDATION_ROUNDS):
            planned = self._plan(user_id, memory_id, report)
            if not planned:
                break
            for action in planned:
                await self._apply(action, report)
        else:
            logger.warning(
                f"Consolidation for user {user_id} stopped after "
                f"{MAX_CONSOLIDATION_ROUNDS} rounds"
            )

        report.relationships_deactivated = self.store.deactivate_dangling_relationships(user_id)
        return report

    # =========================================================================
    # Planning
    # =========================================================================

    def _plan(
        self, user_id: str, memory_id: Optional[str], report: ConsolidationReport
    ) -> list[_PlannedAction]:
        active = {m.id: m for m in self.store.list_memories(user_id)}
        relationships = self.store.list_relationships(user_id, memory_id=memory_id)
        relationships.sort(key=lambda r: (-r.confidence, -r.strength, r.id))

        planned: list[_PlannedAction] = []
        claimed: dict[str, str] = {}
        for relationship in relationships:
            source = active.get(relationship.source_memory_id)
            target = active.get(relationship.target_memory_id)
            if source is None or target is None or source.id == target.id:
                continue
            action = self._action_for(relationship, source, target)
            if action is None:
                continue

            overlap = sorted(action.memory_ids & claimed.keys())
            if overlap:
                conflict = ConsolidationConflict(
                    memory_ids=overlap,
                    kept_relationship_id=claimed[overlap[0]],
                    discarded_relationship_id=relationship.id,
                    discarded_action=action.kind.value,
                )
                logger.warning(str(conflict))
                report.conflicts.append(conflict)
                continue

            for mid in action.memory_ids:
                claimed[mid] = relationship.id
            planned.append(action)
        return planned

    def _action_for(
        self, relationship: MemoryRelationship, source: MemoryEntry, target: MemoryEntry
    ) -> Optional[_PlannedAction]:
        match relationship.relationship_type:
            case RelationshipType.CONTRADICTS:
                if relationship.confidence < self.contradiction_min_confidence:
                    return None
                older, newer = sorted((source, target), key=lambda m: (m.created_at, m.id))
                return _PlannedAction(
                    ConsolidationType.CONTRADICTION_RESOLUTION, relationship, (older, newer)
                )
            case RelationshipType.SUPERSEDES:
                return _PlannedAction(ConsolidationType.SUPERSEDE, relationship, (target, source))
            case RelationshipType.SUPPORTS | RelationshipType.ELABORATES:
                if (
                    relationship.strength < self.merge_strength_threshold
                    or source.category != target.category
                ):
                    return None
                first, second = sorted((source, target), key=lambda m: (m.created_at, m.id))
                return _PlannedAction(ConsolidationType.MERGE, relationship, (first, second))
            case _:
                return None

    # =========================================================================
    # Application
    # =========================================================================

    async def _apply(self, action: _PlannedAction, report: ConsolidationReport) -> None:
        now = self._clock()
        relationship = action.relationship
        replaced, replacement = action.memories

        if action.kind == ConsolidationType.MERGE:
            merged = await self._merged_entry(replaced, replacement, now)
            log = ConsolidationLogEntry(
                user_id=merged.user_id,
                consolidation_type=ConsolidationType.MERGE,
                source_memory_ids=[replaced.id, replacement.id],
                result_memory_id=merged.id,
                confidence=relationship.confidence,
                reason=relationship.reason or f"{relationship.relationship_type.value} pair merged",
                created_at=now,
            )
            self.store.apply_consolidation(
                new_memories=[merged],
                superseded={replaced.id: merged.id, replacement.id: merged.id},
                logs=[log],
            )
            report.created_memory_ids.append(merged.id)
            logger.info(f"Merged memories {replaced.id} and {replacement.id} into {merged.id}")
        else:
            log = ConsolidationLogEntry(
                user_id=replaced.user_id,
                consolidation_type=action.kind,
                source_memory_ids=[replaced.id, replacement.id],
                result_memory_id=replacement.id,
                confidence=relationship.confidence,
                reason=relationship.reason or f"{relationship.relationship_type.value} relationship",
                created_at=now,
            )
            self.store.apply_consolidation(superseded={replaced.id: replacement.id}, logs=[log])
            logger.info(
                f"{action.kind.value}: memory {replaced.id} superseded by {replacement.id}"
            )
        report.actions.append(log)

    async def _merged_entry(
        self, first: MemoryEntry, second: MemoryEntry, now: datetime
    ) -> MemoryEntry:
        contents = [first.content, second.content]
        try:
            content = await asyncio.wait_for(
                self.classifier.merge_contents(contents), timeout=self.timeout
            )
        except Exception as e:
            logger.debug(f"Merge wording unavailable, combining lexically: {e}")
            content = ""
        content = content.strip() or combine_contents(contents)

        embedding = mean_embedding([first.embedding, second.embedding])
        return MemoryEntry(
            user_id=first.user_id,
            content=content,
            category=second.category,
            labels=sorted(set(first.labels) | set(second.labels)),
            keywords=first.keywords + second.keywords,
            importance=max(first.importance, second.importance),
            confidence=max(first.confidence, second.confidence),
            embedding=embedding,
            semantic_hash=compute_semantic_hash(embedding, content),
            created_at=now,
            source_conversation_id=second.source_conversation_id,
        )
