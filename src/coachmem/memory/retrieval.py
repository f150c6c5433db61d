"""Multi-stage contextual retrieval.

Stages:
    1. Query expansion through the classification provider, cached per user
       and conversation fingerprint; the raw query is used on failure.
    2. Multi-vector scoring of every active memory: semantic, temporal,
       contextual and graph scores combined with fixed weights.
    3. Adaptive relevance threshold based on query specificity and
       session length.
    4. Diversity filtering: near-duplicates dropped, categories capped.

Retrieval takes no lock and never raises for provider or scoring failures.
A failure in stages 3-4 falls back to the stage-2 ranking by semantic score.
When the latency budget runs out, remaining provider calls are skipped and
lexical scoring stands in for the query embedding.
"""

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Coroutine, Optional, Sequence

from coachmem.cache import TTLCache, user_key
from coachmem.classification.provider import ClassificationProvider
from coachmem.constants import (
    ACCESS_AGE_WEIGHT,
    ACCESS_BONUS_CAP,
    ACCESS_BONUS_PER_USE,
    ACCESS_BONUS_WINDOW_DAYS,
    BASE_RELEVANCE_THRESHOLD,
    COACHING_MODE_CATEGORIES,
    COACHING_MODE_KEYWORDS,
    CONTEXT_BASE_SCORE,
    CONTEXTUAL_MATCH_LEVEL,
    CONTEXTUAL_WEIGHT,
    CREATION_AGE_WEIGHT,
    GRAPH_CONNECTION_LEVEL,
    GRAPH_NEIGHBOURHOOD_SIZE,
    GRAPH_WEIGHT,
    HIGH_SEMANTIC_LEVEL,
    HIGH_SPECIFICITY,
    INTENT_CATEGORIES,
    INTENT_KEYWORDS,
    INTENT_MATCH_BOOST,
    LONG_SESSION_LENGTH,
    LONG_SESSION_RELIEF,
    LOW_SPECIFICITY,
    MODE_MATCH_BOOST,
    RECENT_ACTIVITY_LEVEL,
    RETRIEVAL_STATS_WINDOW,
    SEMANTIC_WEIGHT,
    SHORT_SESSION_LENGTH,
    SHORT_SESSION_PENALTY,
    SPECIFIC_QUERY_TERMS,
    SPECIFICITY_ADJUSTMENT,
    STOPWORDS,
    TEMPORAL_DECAY_RATES,
    TEMPORAL_WEIGHT,
    THRESHOLD_CEILING,
    THRESHOLD_FLOOR,
    TOPIC_MATCH_BOOST,
    VERY_LONG_SESSION_LENGTH,
    VERY_LONG_SESSION_RELIEF,
)
from coachmem.errors import StorageFailure
from coachmem.memory.similarity import (
    content_terms,
    cosine_similarity,
    exponential_decay,
    jaccard_similarity,
    normalize_text,
)
from coachmem.storage.sqlite_store import SQLiteStore
from coachmem.types.memory import MemoryEntry, MemoryRelationship, RelationshipType, utcnow
from coachmem.types.retrieval import (
    ConversationContext,
    QueryExpansion,
    RelevantMemory,
    ScoreBreakdown,
)

logger = logging.getLogger(__name__)

__all__ = [
    "RetrievalPipeline",
    "RetrievalStats",
    "adaptive_threshold",
    "contextual_score",
    "diversify",
    "graph_score",
    "infer_intent",
    "lexical_relevance",
    "query_specificity",
    "temporal_score",
]

QueryEmbedder = Callable[[str], Awaitable[Optional[list[float]]]]


# =============================================================================
# Scoring functions
# =============================================================================


def lexical_relevance(
    query: str, expansion_terms: Sequence[str], memory: MemoryEntry
) -> float:
    """Term-overlap stand-in for semantic similarity.

    Query terms count fully, expansion-only terms count half, normalised by
    the number of query terms.
    """
    query_terms = content_terms(query)
    memory_terms = content_terms(memory.content) | set(memory.keywords)
    expanded = set()
    for term in expansion_terms:
        expanded |= content_terms(term)
    expanded -= query_terms

    denominator = max(1, len(query_terms))
    hits = len(query_terms & memory_terms) + 0.5 * len(expanded & memory_terms)
    return min(1.0, hits / denominator)


def temporal_score(
    memory: MemoryEntry,
    now: datetime,
    temporal_context: str = "recent",
    recent_accesses: int = 0,
) -> float:
    """Recency of creation and last access, plus a bonus for recent use."""
    rate = TEMPORAL_DECAY_RATES.get(temporal_context, TEMPORAL_DECAY_RATES["recent"])
    creation_age = (now - memory.created_at).total_seconds() / 86400
    last_access = memory.last_accessed or memory.created_at
    access_age = (now - last_access).total_seconds() / 86400
    score = CREATION_AGE_WEIGHT * exponential_decay(
        creation_age, rate
    ) + ACCESS_AGE_WEIGHT * exponential_decay(access_age, rate)
    bonus = min(ACCESS_BONUS_CAP, ACCESS_BONUS_PER_USE * recent_accesses)
    return min(1.0, score + bonus)


def infer_intent(query: str) -> Optional[str]:
    """Guess the user's intent from the query; specific intents win over "question"."""
    lowered = f" {query.lower()} "
    ordered = [i for i in INTENT_KEYWORDS if i != "question"] + ["question"]
    for intent in ordered:
        for keyword in INTENT_KEYWORDS.get(intent, ()):
            if keyword == "?":
                if "?" in lowered:
                    return intent
            elif f" {keyword}" in lowered:
                return intent
    return None


def contextual_score(
    memory: MemoryEntry, context: ConversationContext, intent: Optional[str]
) -> float:
    """How well a memory fits the live conversation."""
    text = normalize_text(memory.content)
    tags = set(memory.keywords) | set(memory.labels)
    category = memory.category.value
    score = CONTEXT_BASE_SCORE

    mode = context.coaching_mode.lower()
    if category in COACHING_MODE_CATEGORIES.get(mode, ()) or any(
        keyword in text or keyword in tags for keyword in COACHING_MODE_KEYWORDS.get(mode, ())
    ):
        score += MODE_MATCH_BOOST

    for topic in context.recent_topics:
        topic = normalize_text(topic)
        if topic and (topic in text or topic in tags):
            score += TOPIC_MATCH_BOOST
            break

    if intent and category in INTENT_CATEGORIES.get(intent, ()):
        score += INTENT_MATCH_BOOST

    return min(1.0, score)


def graph_score(
    memory_id: str,
    neighbourhood: set[str],
    relationships: Sequence[MemoryRelationship],
) -> float:
    """Strength of supportive links into the provisional top set."""
    total = 0.0
    for relationship in relationships:
        if relationship.relationship_type == RelationshipType.CONTRADICTS:
            continue
        if memory_id not in (relationship.source_memory_id, relationship.target_memory_id):
            continue
        other = relationship.other_end(memory_id)
        if other != memory_id and other in neighbourhood:
            total += relationship.strength * relationship.confidence
    return min(1.0, total)


def query_specificity(query: str) -> float:
    """Share of distinctive terms in the query, saturating at six."""
    terms = {
        w for w in normalize_text(query).split() if len(w) >= 4 and w not in STOPWORDS
    }
    return min(1.0, len(terms) / SPECIFIC_QUERY_TERMS)


def adaptive_threshold(query: str, session_length: int) -> float:
    """Minimum combined score for a memory to be returned.

    Specific queries and long sessions lower the bar; vague queries and
    fresh sessions raise it.
    """
    threshold = BASE_RELEVANCE_THRESHOLD
    specificity = query_specificity(query)
    if specificity >= HIGH_SPECIFICITY:
        threshold -= SPECIFICITY_ADJUSTMENT
    elif specificity < LOW_SPECIFICITY:
        threshold += SPECIFICITY_ADJUSTMENT

    if session_length < SHORT_SESSION_LENGTH:
        threshold += SHORT_SESSION_PENALTY
    elif session_length > LONG_SESSION_LENGTH:
        threshold -= LONG_SESSION_RELIEF
        if session_length > VERY_LONG_SESSION_LENGTH:
            threshold -= VERY_LONG_SESSION_RELIEF

    return max(THRESHOLD_FLOOR, min(THRESHOLD_CEILING, threshold))


def diversify(
    candidates: Sequence[RelevantMemory],
    max_results: int,
    near_duplicate_threshold: float = 0.8,
    category_cap_ratio: float = 0.5,
) -> list[RelevantMemory]:
    """Pick up to ``max_results`` candidates, skipping near-duplicates and crowded categories.

    Candidates are walked in (score desc, id asc) order; the first is always kept.
    """
    ordered = sorted(candidates, key=lambda c: (-c.score, c.memory.id))
    cap = max(1, math.ceil(max_results * category_cap_ratio))
    selected: list[RelevantMemory] = []
    per_category: dict[str, int] = {}

    for candidate in ordered:
        if len(selected) >= max_results:
            break
        category = candidate.memory.category.value
        if selected:
            if any(
                jaccard_similarity(candidate.memory.content, kept.memory.content)
                >= near_duplicate_threshold
                for kept in selected
            ):
                continue
            if per_category.get(category, 0) >= cap:
                continue
        selected.append(candidate)
        per_category[category] = per_category.get(category, 0) + 1

    return selected


def _reasons(breakdown: ScoreBreakdown) -> list[str]:
    reasons = []
    if breakdown.semantic >= HIGH_SEMANTIC_LEVEL:
        reasons.append("high_semantic_relevance")
    if breakdown.temporal >= RECENT_ACTIVITY_LEVEL:
        reasons.append("recent_activity")
    if breakdown.contextual >= CONTEXTUAL_MATCH_LEVEL:
        reasons.append("contextual_match")
    if breakdown.graph >= GRAPH_CONNECTION_LEVEL:
        reasons.append("graph_connection")
    return reasons or ["general_relevance"]


@dataclass
class _Scored:
    memory: MemoryEntry
    breakdown: ScoreBreakdown


def _percentile(sorted_values: Sequence[float], p: float) -> float:
    idx = int(round((len(sorted_values) - 1) * p))
    return float(sorted_values[max(0, min(idx, len(sorted_values) - 1))])


class RetrievalStats:
    """Latency and hit-rate counters over recent retrieval calls.

    A call is a hit when it returned at least one memory. Latency
    percentiles cover the last ``window`` calls.
    """

    def __init__(self, window: int = RETRIEVAL_STATS_WINDOW) -> None:
        self._latencies: deque[float] = deque(maxlen=window)
        self.calls = 0
        self.hits = 0

    def record(self, latency_ms: float, result_count: int) -> None:
        self.calls += 1
        if result_count:
            self.hits += 1
        self._latencies.append(latency_ms)

    def to_dict(self) -> dict[str, Any]:
        samples = sorted(self._latencies)
        if not samples:
            return {
                "calls": 0,
                "hit_rate": 0.0,
                "last_ms": None,
                "p50_ms": None,
                "p95_ms": None,
            }
        return {
            "calls": self.calls,
            "hit_rate": round(self.hits / self.calls, 4),
            "last_ms": round(self._latencies[-1], 3),
            "p50_ms": round(_percentile(samples, 0.50), 3),
            "p95_ms": round(_percentile(samples, 0.95), 3),
        }


# =============================================================================
# Pipeline
# =============================================================================


class RetrievalPipeline:
    """Ranks a user's active memories for a query in its conversation context.

    Args:
        store: Memory store
        classifier: Provider used for query expansion
        embed_query: Coroutine returning a unit query embedding, or None when
            embeddings are unavailable
        expansion_cache: User-scoped cache of query expansions
        default_max_results: Result count when the caller gives none
        timeout: Default latency budget in seconds
        provider_timeout: Upper bound for a single provider call
        near_duplicate_threshold: Jaccard similarity treated as a near-duplicate
        category_cap_ratio: Share of results one category may occupy
        clock: Returns the current time
        monotonic: Timer used for latency statistics
    """

    def __init__(
        self,
        store: SQLiteStore,
        classifier: ClassificationProvider,
        embed_query: QueryEmbedder,
        expansion_cache: TTLCache[QueryExpansion],
        default_max_results: int = 8,
        timeout: float = 2.0,
        provider_timeout: float = 15.0,
        near_duplicate_threshold: float = 0.8,
        category_cap_ratio: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.embed_query = embed_query
        self.expansion_cache = expansion_cache
        self.default_max_results = default_max_results
        self.timeout = timeout
        self.provider_timeout = provider_timeout
        self.near_duplicate_threshold = near_duplicate_threshold
        self.category_cap_ratio = category_cap_ratio
        self._clock = clock
        self._monotonic = monotonic
        self.stats = RetrievalStats()

    async def retrieve(
        self,
        user_id: str,
        query: str,
        context: Optional[ConversationContext] = None,
        max_results: Optional[int] = None,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> list[RelevantMemory]:
        """Return the most relevant active memories for a query.

        Temporal scores depend on ``now`` (the clock when omitted); pass a
        fixed ``now`` or inject a fixed clock for reproducible scores.

        Never raises; a store failure yields an empty list.
        """
        started = self._monotonic()
        results = await self._retrieve(user_id, query, context, max_results, timeout, now)
        self.stats.record((self._monotonic() - started) * 1000, len(results))
        return results

    async def _retrieve(
        self,
        user_id: str,
        query: str,
        context: Optional[ConversationContext],
        max_results: Optional[int],
        timeout: Optional[float],
        now: Optional[datetime],
    ) -> list[RelevantMemory]:
        context = context or ConversationContext()
        max_results = max_results or self.default_max_results
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout if timeout is not None else self.timeout)
        now = now or self._clock()

        try:
            memories = self.store.list_memories(user_id)
        except StorageFailure as e:
            logger.error(f"Retrieval for user {user_id} could not read memories: {e}")
            return []
        if not memories or not query.strip():
            return []

        expansion = await self._expand(user_id, query, context, deadline)
        try:
            query_embedding = await self._within(
                deadline, self.embed_query(expansion.search_text()), None, "query embedding"
            )
        except Exception as e:
            logger.debug(f"Query embedding failed, scoring lexically: {e}")
            query_embedding = None

        scored = self._score(user_id, memories, query, expansion, query_embedding, context, now)

        try:
            threshold = adaptive_threshold(query, context.session_length)
            candidates = [
                RelevantMemory(
                    memory=s.memory,
                    score=s.breakdown.combined,
                    breakdown=s.breakdown,
                    reasons=_reasons(s.breakdown),
                )
                for s in scored
                if s.breakdown.combined >= threshold
            ]
            results = diversify(
                candidates,
                max_results,
                near_duplicate_threshold=self.near_duplicate_threshold,
                category_cap_ratio=self.category_cap_ratio,
            )
        except Exception as e:
            logger.warning(f"Re-ranking failed for user {user_id}, using semantic order: {e}")
            ranked = sorted(scored, key=lambda s: (-s.breakdown.semantic, s.memory.id))
            results = [
                RelevantMemory(
                    memory=s.memory,
                    score=s.breakdown.semantic,
                    breakdown=s.breakdown,
                    reasons=["semantic_fallback"],
                )
                for s in ranked[:max_results]
            ]

        logger.debug(
            f"Retrieved {len(results)}/{len(memories)} memories for user {user_id} "
            f"(expanded={expansion.expanded}, embedded={query_embedding is not None})"
        )
        return results

    async def _within(
        self, deadline: float, coro: Coroutine[Any, Any, Any], default: Any, stage: str
    ) -> Any:
        remaining = min(deadline - asyncio.get_running_loop().time(), self.provider_timeout)
        if remaining <= 0:
            coro.close()
            logger.debug(f"Latency budget exhausted; skipping {stage}")
            return default
        try:
            return await asyncio.wait_for(coro, timeout=remaining)
        except asyncio.TimeoutError:
            logger.debug(f"{stage} timed out; continuing without it")
            return default

    async def _expand(
        self,
        user_id: str,
        query: str,
        context: ConversationContext,
        deadline: float,
    ) -> QueryExpansion:
        key = user_key(user_id, context.fingerprint(query))
        cached = self.expansion_cache.get(key)
        if cached is not None:
            logger.debug(f"Query expansion cache hit for user {user_id}")
            return cached

        try:
            expansion = await self._within(
                deadline,
                self.classifier.expand_query(query, context),
                None,
                "query expansion",
            )
        except Exception as e:
            logger.debug(f"Query expansion failed, using raw query: {e}")
            expansion = None

        if expansion is None:
            return QueryExpansion.raw(query)
        self.expansion_cache.set(key, expansion)
        return expansion

    def _score(
        self,
        user_id: str,
        memories: Sequence[MemoryEntry],
        query: str,
        expansion: QueryExpansion,
        query_embedding: Optional[list[float]],
        context: ConversationContext,
        now: datetime,
    ) -> list[_Scored]:
        try:
            access_counts = self.store.count_recent_accesses(
                user_id, now - timedelta(days=ACCESS_BONUS_WINDOW_DAYS)
            )
        except StorageFailure as e:
            logger.warning(f"Access log unavailable, skipping usage bonus: {e}")
            access_counts = {}
        try:
            relationships = self.store.list_relationships(user_id)
        except StorageFailure as e:
            logger.warning(f"Relationships unavailable, skipping graph score: {e}")
            relationships = []

        intent = context.user_intent or infer_intent(query)
        expansion_terms = expansion.all_terms
        scored = []
        for memory in memories:
            if (
                query_embedding
                and memory.embedding
                and len(memory.embedding) == len(query_embedding)
            ):
                semantic = cosine_similarity(query_embedding, memory.embedding)
            else:
                semantic = lexical_relevance(query, expansion_terms, memory)
            breakdown = ScoreBreakdown(
                semantic=max(0.0, min(1.0, semantic)),
                temporal=temporal_score(
                    memory, now, context.temporal_context, access_counts.get(memory.id, 0)
                ),
                contextual=contextual_score(memory, context, intent),
            )
            scored.append(_Scored(memory=memory, breakdown=breakdown))

        # Graph score is relative to the provisional top set
        provisional = sorted(
            scored,
            key=lambda s: (
                -(
                    SEMANTIC_WEIGHT * s.breakdown.semantic
                    + TEMPORAL_WEIGHT * s.breakdown.temporal
                    + CONTEXTUAL_WEIGHT * s.breakdown.contextual
                ),
                s.memory.id,
            ),
        )
        neighbourhood = {s.memory.id for s in provisional[:GRAPH_NEIGHBOURHOOD_SIZE]}
        for s in scored:
            b = s.breakdown
            b.graph = graph_score(s.memory.id, neighbourhood, relationships)
            b.combined = (
                SEMANTIC_WEIGHT * b.semantic
                + TEMPORAL_WEIGHT * b.temporal
                + CONTEXTUAL_WEIGHT * b.contextual
                + GRAPH_WEIGHT * b.graph
            )
        return scored
