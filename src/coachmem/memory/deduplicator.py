"""Deduplication of candidate memories.

A candidate is compared with the user's active memories and one of four
actions is taken:

- skip: a near-identical memory exists; its access count is bumped
- merge: a very similar memory exists; both are combined in place
- update: the candidate is a recent correction of a similar memory; the new
  entry supersedes the old one
- create: nothing comparable exists

Similarity is cosine similarity of unit embeddings (computed in SQL with
sqlite-vec), or the shared-word ratio when either side has no comparable
embedding. The update tier is lower for shared-word ratios. Ties are
broken by creation time, then id, so decisions are deterministic.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from coachmem.constants import DEDUP_CANDIDATE_LIMIT
from coachmem.memory.similarity import (
    combine_contents,
    compute_semantic_hash,
    cosine_similarity,
    fuzzy_similarity,
    has_change_marker,
    mean_embedding,
    word_set,
)
from coachmem.storage.sqlite_store import SQLiteStore
from coachmem.types.memory import (
    ConsolidationLogEntry,
    ConsolidationType,
    DeduplicationResult,
    DedupAction,
    MemoryEntry,
    StoreResult,
    utcnow,
)

logger = logging.getLogger(__name__)

__all__ = ["Deduplicator"]


def _comparable(a: MemoryEntry, b: MemoryEntry) -> bool:
    return bool(a.embedding and b.embedding and len(a.embedding) == len(b.embedding))


class Deduplicator:
    """Decides and applies create / update / merge / skip for candidates.

    Callers must hold the user's write lock across ``resolve`` so that the
    decision and its write are not interleaved with other writers.

    Args:
        store: Memory store
        skip_threshold: Similarity at or above which the candidate is skipped
        merge_threshold: Similarity at or above which the candidate is merged
        update_threshold: Minimum similarity for a temporal update
        fuzzy_update_threshold: Minimum shared-word ratio for a temporal update
            when the match has no comparable embedding
        recency_window_hours: Only compare with memories this recent (0 = all)
        temporal_update_window_hours: Age limit of a memory that may be superseded
        clock: Returns the current time
    """

    def __init__(
        self,
        store: SQLiteStore,
        skip_threshold: float = 0.90,
        merge_threshold: float = 0.80,
        update_threshold: float = 0.60,
        fuzzy_update_threshold: float = 0.40,
        recency_window_hours: float = 0.0,
        temporal_update_window_hours: float = 24.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not skip_threshold > merge_threshold > update_threshold:
            raise ValueError("Thresholds must satisfy skip > merge > update")
        if not merge_threshold > fuzzy_update_threshold:
            raise ValueError("Fuzzy update threshold must be below the merge threshold")
        self.store = store
        self.skip_threshold = skip_threshold
        self.merge_threshold = merge_threshold
        self.update_threshold = update_threshold
        self.fuzzy_update_threshold = fuzzy_update_threshold
        self.recency_window = timedelta(hours=recency_window_hours)
        self.temporal_update_window = timedelta(hours=temporal_update_window_hours)
        self._clock = clock

    # =========================================================================
    # Decision
    # =========================================================================

    def decide(
        self, candidate: MemoryEntry
    ) -> tuple[DeduplicationResult, Optional[MemoryEntry]]:
        """Decide what to do with a candidate.

        The candidate must carry its semantic hash (and embedding, when one
        could be computed).

        Returns:
            The decision and the matched existing memory (None for create)
        """
        hashed = self._check_hash(candidate)
        if hashed is not None:
            return hashed

        match = self._best_match(candidate)
        if match is None:
            return (
                DeduplicationResult(
                    action=DedupAction.CREATE, reasoning="no comparable memories"
                ),
                None,
            )

        existing, similarity, method = match
        temporal_update = self._is_temporal_update(candidate, existing)

        if similarity >= self.skip_threshold:
            action = DedupAction.SKIP
            reasoning = f"near-identical to {existing.id}"
        elif similarity >= self.merge_threshold:
            if temporal_update and has_change_marker(candidate.content):
                action = DedupAction.UPDATE
                reasoning = f"recent correction of {existing.id}"
            else:
                action = DedupAction.MERGE
                reasoning = f"very similar to {existing.id}; combining"
        elif similarity >= self._update_threshold_for(method) and temporal_update:
            action = DedupAction.UPDATE
            reasoning = f"temporal update of {existing.id}"
        else:
            return (
                DeduplicationResult(
                    action=DedupAction.CREATE,
                    similarity=similarity,
                    method=method,
                    reasoning=f"closest memory {existing.id} below thresholds",
                ),
                None,
            )

        return (
            DeduplicationResult(
                action=action,
                existing_id=existing.id,
                similarity=similarity,
                method=method,
                reasoning=reasoning,
            ),
            existing,
        )

    def _update_threshold_for(self, method: str) -> float:
        # Shared-word ratios run lower than cosine for the same paraphrase
        if method == "fuzzy":
            return self.fuzzy_update_threshold
        return self.update_threshold

    def _check_hash(
        self, candidate: MemoryEntry
    ) -> Optional[tuple[DeduplicationResult, MemoryEntry]]:
        if not candidate.semantic_hash:
            return None
        existing = self.store.find_by_semantic_hash(candidate.user_id, candidate.semantic_hash)
        if existing is None or existing.id == candidate.id:
            return None

        if _comparable(candidate, existing):
            similarity = cosine_similarity(candidate.embedding, existing.embedding)
            if similarity < self.skip_threshold:
                # Quantisation collision; let the full comparison decide
                return None
        else:
            similarity = fuzzy_similarity(candidate.content, existing.content)

        return (
            DeduplicationResult(
                action=DedupAction.SKIP,
                existing_id=existing.id,
                similarity=similarity,
                method="hash",
                reasoning=f"semantic hash matches {existing.id}",
            ),
            existing,
        )

    def _best_match(
        self, candidate: MemoryEntry
    ) -> Optional[tuple[MemoryEntry, float, str]]:
        created_after = None
        if self.recency_window:
            created_after = self._clock() - self.recency_window

        scored: list[tuple[MemoryEntry, float, str]] = []
        ranked_ids: set[str] = set()
        if candidate.embedding:
            for entry, similarity in self.store.find_similar(
                candidate.user_id,
                candidate.embedding,
                created_after=created_after,
                exclude_ids=[candidate.id],
                limit=DEDUP_CANDIDATE_LIMIT,
            ):
                scored.append((entry, similarity, "semantic"))
                ranked_ids.add(entry.id)

        for entry in self.store.list_memories(candidate.user_id, created_after=created_after):
            if entry.id == candidate.id or entry.id in ranked_ids:
                continue
            if _comparable(candidate, entry):
                # Already ranked by the vector search; fell outside its limit
                continue
            scored.append(
                (entry, fuzzy_similarity(candidate.content, entry.content), "fuzzy")
            )

        if not scored:
            return None
        return min(scored, key=lambda s: (-s[1], s[0].created_at, s[0].id))

    def _is_temporal_update(self, candidate: MemoryEntry, existing: MemoryEntry) -> bool:
        age = candidate.created_at - existing.created_at
        if age < timedelta(0) or age > self.temporal_update_window:
            return False
        new_words, old_words = word_set(candidate.content), word_set(existing.content)
        return new_words > old_words or has_change_marker(candidate.content)

    # =========================================================================
    # Application
    # =========================================================================

    def resolve(self, candidate: MemoryEntry) -> StoreResult:
        """Decide and apply the decision for a candidate.

        Raises:
            StorageFailure: If the write fails
        """
        decision, existing = self.decide(candidate)
        now = self._clock()

        match decision.action:
            case DedupAction.SKIP:
                self.store.increment_access(existing.id, now)
                refreshed = self.store.get_memory(existing.id) or existing
                logger.info(
                    f"Skipped duplicate for user {candidate.user_id} "
                    f"(matches {existing.id}, similarity={decision.similarity:.3f})"
                )
                return StoreResult(memory=refreshed, decision=decision)

            case DedupAction.MERGE:
                merged = self._merge_into(existing, candidate, now)
                self.store.update_memory(
                    merged,
                    log=ConsolidationLogEntry(
                        user_id=candidate.user_id,
                        consolidation_type=ConsolidationType.MERGE,
                        source_memory_ids=[existing.id],
                        result_memory_id=existing.id,
                        confidence=min(1.0, decision.similarity),
                        reason=f"merged new statement: {candidate.content}",
                        created_at=now,
                    ),
                )
                logger.info(
                    f"Merged candidate into memory {existing.id} for user {candidate.user_id}"
                )
                return StoreResult(memory=merged, decision=decision)

            case DedupAction.UPDATE:
                self.store.apply_consolidation(
                    new_memories=[candidate],
                    superseded={existing.id: candidate.id},
                    logs=[
                        ConsolidationLogEntry(
                            user_id=candidate.user_id,
                            consolidation_type=ConsolidationType.TEMPORAL_UPDATE,
                            source_memory_ids=[existing.id],
                            result_memory_id=candidate.id,
                            confidence=min(1.0, decision.similarity),
                            reason=decision.reasoning,
                            created_at=now,
                        )
                    ],
                )
                logger.info(
                    f"Memory {existing.id} superseded by {candidate.id} "
                    f"for user {candidate.user_id}"
                )
                return StoreResult(
                    memory=candidate, decision=decision, superseded_id=existing.id
                )

            case _:
                self.store.add_memory(candidate)
                logger.info(
                    f"Created memory {candidate.id} ({candidate.category.value}) "
                    f"for user {candidate.user_id}"
                )
                return StoreResult(memory=candidate, decision=decision)

    def _merge_into(
        self, existing: MemoryEntry, candidate: MemoryEntry, now: datetime
    ) -> MemoryEntry:
        content = combine_contents([existing.content, candidate.content])
        embedding = mean_embedding([existing.embedding, candidate.embedding])
        if embedding is None:
            embedding = existing.embedding or candidate.embedding
        return existing.model_copy(
            update={
                "content": content,
                "keywords": list(dict.fromkeys(existing.keywords + candidate.keywords)),
                "labels": sorted(set(existing.labels) | set(candidate.labels)),
                "importance": max(existing.importance, candidate.importance),
                "confidence": max(existing.confidence, candidate.confidence),
                "embedding": embedding,
                "semantic_hash": compute_semantic_hash(embedding, content),
                "updated_at": now,
                "update_count": existing.update_count + 1,
            }
        )

    # =========================================================================
    # Duplicate sweep
    # =========================================================================

    def sweep(self, user_id: str) -> list[ConsolidationLogEntry]:
        """Fold duplicate active memories of a user into one primary each.

        In-place merges can leave two active entries at or above the skip
        threshold. Entries are grouped greedily in creation order; the
        primary of a group is the most important, then most accessed, then
        newest entry. Duplicates are superseded by the primary, which absorbs
        their labels, keywords, importance and access count.

        Callers must hold the user's write lock.

        Returns:
            One log entry per collapsed group
        """
        active = self.store.list_memories(user_id)
        grouped: set[str] = set()
        logs: list[ConsolidationLogEntry] = []

        for i, anchor in enumerate(active):
            if anchor.id in grouped:
                continue
            group = [anchor]
            similarities: list[float] = []
            for other in active[i + 1 :]:
                if other.id in grouped:
                    continue
                similarity = self._pair_similarity(anchor, other)
                if similarity >= self.skip_threshold:
                    group.append(other)
                    similarities.append(similarity)
                    grouped.add(other.id)
            if len(group) > 1:
                logs.append(self._collapse(user_id, group, min(similarities)))

        if logs:
            logger.info(
                f"Duplicate sweep for user {user_id}: collapsed {len(logs)} groups, "
                f"{sum(len(log.source_memory_ids) for log in logs)} memories retired"
            )
        return logs

    def _pair_similarity(self, a: MemoryEntry, b: MemoryEntry) -> float:
        # Equal text hashes imply equal word sets, so the fuzzy ratio is 1.0
        if _comparable(a, b):
            return cosine_similarity(a.embedding, b.embedding)
        return fuzzy_similarity(a.content, b.content)

    def _collapse(
        self, user_id: str, group: list[MemoryEntry], similarity: float
    ) -> ConsolidationLogEntry:
        primary = max(
            group, key=lambda m: (m.importance, m.access_count, m.created_at, m.id)
        )
        duplicates = [m for m in group if m.id != primary.id]
        now = self._clock()

        keywords = list(primary.keywords)
        labels = set(primary.labels)
        for duplicate in duplicates:
            keywords.extend(duplicate.keywords)
            labels.update(duplicate.labels)
        absorbed = primary.model_copy(
            update={
                "keywords": list(dict.fromkeys(keywords)),
                "labels": sorted(labels),
                "importance": max(m.importance for m in group),
                "access_count": sum(m.access_count for m in group),
                "updated_at": now,
                "update_count": primary.update_count + 1,
            }
        )
        log = ConsolidationLogEntry(
            user_id=user_id,
            consolidation_type=ConsolidationType.DUPLICATE_CLEANUP,
            source_memory_ids=[m.id for m in duplicates],
            result_memory_id=primary.id,
            confidence=min(1.0, similarity),
            reason=f"{len(duplicates)} duplicate(s) of {primary.id}",
            created_at=now,
        )
        self.store.apply_consolidation(
            updated_memories=[absorbed],
            superseded={m.id: primary.id for m in duplicates},
            logs=[log],
        )
        return log
