"""Tests for contextual retrieval.

This module tests the scoring functions (temporal, contextual, graph),
the adaptive threshold, diversity filtering and the full pipeline
including its degraded paths (no embeddings, slow provider, store
failure, re-ranking failure).
"""

import asyncio
import math

import pytest

from coachmem.cache import TTLCache
from coachmem.classification import HeuristicClassifier
from coachmem.errors import StorageFailure
from coachmem.memory import retrieval
from coachmem.memory.retrieval import (
    RetrievalPipeline,
    RetrievalStats,
    adaptive_threshold,
    contextual_score,
    diversify,
    graph_score,
    infer_intent,
    lexical_relevance,
    temporal_score,
)
from coachmem.storage import SQLiteStore
from coachmem.types.memory import MemoryCategory, MemoryRelationship, RelationshipType
from coachmem.types.retrieval import ConversationContext, RelevantMemory, ScoreBreakdown


async def no_embedding(text: str):
    return None


class CountingClassifier(HeuristicClassifier):
    """Heuristic classifier counting query expansions."""

    def __init__(self, delay: float = 0.0) -> None:
        self.expansions = 0
        self.delay = delay

    async def expand_query(self, query, context):
        self.expansions += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return await super().expand_query(query, context)


@pytest.fixture
def classifier() -> CountingClassifier:
    return CountingClassifier()


@pytest.fixture
def pipeline(store: SQLiteStore, classifier: CountingClassifier, clock) -> RetrievalPipeline:
    return RetrievalPipeline(
        store,
        classifier,
        embed_query=no_embedding,
        expansion_cache=TTLCache(ttl_seconds=60),
        clock=clock,
    )


@pytest.fixture
def seeded(store: SQLiteStore, make_entry):
    """Three unrelated memories for user u1."""
    entries = {
        "peanuts": make_entry(
            "I am allergic to peanuts", MemoryCategory.FOOD_DIET, keywords=["peanuts"]
        ),
        "morning": make_entry("I prefer morning workouts"),
        "marathon": make_entry("I want to run a marathon", MemoryCategory.GOALS),
    }
    for entry in entries.values():
        store.add_memory(entry)
    return entries


def _candidate(entry, score: float) -> RelevantMemory:
    return RelevantMemory(memory=entry, score=score, breakdown=ScoreBreakdown(combined=score))


class TestScoring:
    """Test the individual relevance scores."""

    def test_lexical_relevance_counts_expansion_terms_half(self, make_entry) -> None:
        memory = make_entry("I do strength training twice a week")
        assert lexical_relevance("training plan", [], memory) == pytest.approx(0.5)
        assert lexical_relevance("workout", ["strength"], memory) == pytest.approx(0.5)
        assert lexical_relevance("swimming", [], memory) == 0.0

    def test_temporal_score_decays_with_age(self, make_entry, clock) -> None:
        memory = make_entry("I prefer morning workouts")
        assert temporal_score(memory, clock()) == pytest.approx(1.0)

        later = clock.advance(days=10)
        assert temporal_score(memory, later) == pytest.approx(math.exp(-1))
        assert temporal_score(memory, later, "historical") > temporal_score(memory, later)

    def test_temporal_score_rewards_recent_use(self, make_entry, clock) -> None:
        memory = make_entry("I prefer morning workouts")
        later = clock.advance(days=10)
        base = temporal_score(memory, later)

        assert temporal_score(memory, later, recent_accesses=2) == pytest.approx(base + 0.04)
        assert temporal_score(memory, later, recent_accesses=50) == pytest.approx(base + 0.1)

    def test_contextual_score_boosts(self, make_entry) -> None:
        memory = make_entry(
            "I am allergic to peanuts", MemoryCategory.FOOD_DIET, labels=["allergy"]
        )
        plain = ConversationContext()
        nutrition = ConversationContext(coaching_mode="nutrition", recent_topics=["Allergy"])

        assert contextual_score(memory, plain, None) == pytest.approx(0.5)
        assert contextual_score(memory, nutrition, None) == pytest.approx(0.9)

    def test_contextual_score_intent_match(self, make_entry) -> None:
        memory = make_entry("I want to run a marathon", MemoryCategory.GOALS)
        score = contextual_score(memory, ConversationContext(), "goal_setting")
        assert score == pytest.approx(0.8)

    def test_graph_score_ignores_contradictions_and_outsiders(self) -> None:
        def rel(source, target, rel_type, strength=0.8, confidence=0.5):
            return MemoryRelationship(
                user_id="u1",
                source_memory_id=source,
                target_memory_id=target,
                relationship_type=rel_type,
                strength=strength,
                confidence=confidence,
            )

        relationships = [
            rel("a", "b", RelationshipType.SUPPORTS),
            rel("c", "a", RelationshipType.CONTRADICTS),
            rel("a", "z", RelationshipType.RELATED),
        ]

        assert graph_score("a", {"a", "b", "c"}, relationships) == pytest.approx(0.4)
        assert graph_score("z", {"a", "b", "c"}, relationships) == pytest.approx(0.4)
        assert graph_score("b", {"b", "c"}, relationships) == 0.0

    @pytest.mark.parametrize(
        "query,intent",
        [
            ("What should I eat after training?", "question"),
            ("I want to set a new goal", "goal_setting"),
            ("Any advice for recovery", "advice_seeking"),
            ("Let me check my progress", "progress_check"),
            ("hello there", None),
        ],
    )
    def test_infer_intent(self, query: str, intent) -> None:
        assert infer_intent(query) == intent


class TestThreshold:
    """Test the adaptive relevance threshold."""

    def test_vague_query_in_fresh_session_raises_bar(self) -> None:
        assert adaptive_threshold("hi", 0) == pytest.approx(0.48)

    def test_specific_query_in_long_session_lowers_bar(self) -> None:
        query = "protein breakfast options before morning strength training"
        assert adaptive_threshold(query, 30) == pytest.approx(0.19)

    def test_neutral_query(self) -> None:
        assert adaptive_threshold("allergic peanuts", 5) == pytest.approx(0.35)


class TestDiversify:
    """Test near-duplicate and category filtering."""

    def test_near_duplicates_are_dropped(self, make_entry) -> None:
        a = _candidate(make_entry("I like to run every morning"), 0.9)
        b = _candidate(make_entry("I like to run every morning!"), 0.8)
        c = _candidate(make_entry("I am allergic to peanuts", MemoryCategory.FOOD_DIET), 0.7)

        selected = diversify([c, b, a], max_results=5)

        assert [s.memory.id for s in selected] == [a.memory.id, c.memory.id]

    def test_category_cap_and_result_limit(self, make_entry) -> None:
        prefs = [
            _candidate(make_entry(text), score)
            for text, score in [
                ("I prefer morning workouts", 0.9),
                ("I like long walks on weekends", 0.85),
                ("I enjoy swimming in cold lakes", 0.8),
                ("My favourite snack is greek yogurt", 0.75),
            ]
        ]
        goal = _candidate(make_entry("I want to run a marathon", MemoryCategory.GOALS), 0.5)

        selected = diversify(prefs + [goal], max_results=4)

        assert len(selected) == 3
        assert [s.memory.id for s in selected] == [
            prefs[0].memory.id,
            prefs[1].memory.id,
            goal.memory.id,
        ]
        assert len(diversify(prefs + [goal], max_results=1)) == 1

    def test_ties_break_by_id(self, make_entry) -> None:
        a = _candidate(make_entry("I prefer morning workouts", id="b-id"), 0.5)
        b = _candidate(
            make_entry("I am allergic to peanuts", MemoryCategory.FOOD_DIET, id="a-id"), 0.5
        )

        assert [s.memory.id for s in diversify([a, b], 2)] == ["a-id", "b-id"]


class TestPipeline:
    """Test the full retrieval pipeline."""

    @pytest.mark.asyncio
    async def test_lexical_retrieval_without_embeddings(
        self, pipeline: RetrievalPipeline, seeded
    ) -> None:
        results = await pipeline.retrieve("u1", "allergic peanuts")

        assert [r.memory.id for r in results] == [seeded["peanuts"].id]
        top = results[0]
        assert top.breakdown.semantic == pytest.approx(1.0)
        assert top.score == pytest.approx(0.725)
        assert "high_semantic_relevance" in top.reasons

    @pytest.mark.asyncio
    async def test_retrieval_is_deterministic(self, pipeline: RetrievalPipeline, seeded) -> None:
        context = ConversationContext(coaching_mode="fitness", session_length=12)
        first = await pipeline.retrieve("u1", "morning run", context)
        second = await pipeline.retrieve("u1", "morning run", context)

        assert [(r.memory.id, r.score) for r in first] == [(r.memory.id, r.score) for r in second]

    @pytest.mark.asyncio
    async def test_fixed_now_is_reproducible_with_wall_clock(
        self, store: SQLiteStore, classifier: CountingClassifier, seeded, clock
    ) -> None:
        pipeline = RetrievalPipeline(store, classifier, no_embedding, TTLCache(ttl_seconds=60))
        now = clock.advance(hours=6)

        first = await pipeline.retrieve("u1", "allergic peanuts", now=now)
        await asyncio.sleep(0.01)
        second = await pipeline.retrieve("u1", "allergic peanuts", now=now)

        assert first
        assert [(r.memory.id, r.score, r.breakdown.temporal) for r in first] == [
            (r.memory.id, r.score, r.breakdown.temporal) for r in second
        ]

    @pytest.mark.asyncio
    async def test_other_users_memories_are_invisible(
        self, pipeline: RetrievalPipeline, seeded
    ) -> None:
        assert await pipeline.retrieve("u2", "allergic peanuts") == []

    @pytest.mark.asyncio
    async def test_blank_query_returns_nothing(self, pipeline: RetrievalPipeline, seeded) -> None:
        assert await pipeline.retrieve("u1", "   ") == []

    @pytest.mark.asyncio
    async def test_store_failure_returns_empty(
        self, pipeline: RetrievalPipeline, store: SQLiteStore, seeded, monkeypatch
    ) -> None:
        def broken(*args, **kwargs):
            raise StorageFailure("database is locked")

        monkeypatch.setattr(store, "list_memories", broken)

        assert await pipeline.retrieve("u1", "allergic peanuts") == []

    @pytest.mark.asyncio
    async def test_query_embedding_drives_semantic_score(
        self, store: SQLiteStore, make_entry, clock
    ) -> None:
        match = make_entry("I prefer early training", embedding=[1.0, 0.0, 0.0])
        other = make_entry("I like green tea", embedding=[0.0, 1.0, 0.0])
        store.add_memory(match)
        store.add_memory(other)
        seen = []

        async def embed(text: str):
            seen.append(text)
            return [1.0, 0.0, 0.0]

        pipeline = RetrievalPipeline(
            store, HeuristicClassifier(), embed, TTLCache(ttl_seconds=60), clock=clock
        )
        results = await pipeline.retrieve("u1", "morning session")

        assert [r.memory.id for r in results] == [match.id]
        assert results[0].breakdown.semantic == pytest.approx(1.0, abs=1e-5)
        assert seen and seen[0].startswith("morning session")

    @pytest.mark.asyncio
    async def test_expansion_is_cached_per_context(
        self, pipeline: RetrievalPipeline, classifier: CountingClassifier, seeded
    ) -> None:
        await pipeline.retrieve("u1", "allergic peanuts")
        await pipeline.retrieve("u1", "Allergic  peanuts")
        assert classifier.expansions == 1

        nutrition = ConversationContext(coaching_mode="nutrition")
        await pipeline.retrieve("u1", "allergic peanuts", nutrition)
        assert classifier.expansions == 2
        assert pipeline.expansion_cache.invalidate_prefix("u1|") == 2

    @pytest.mark.asyncio
    async def test_slow_expansion_falls_back_to_raw_query(
        self, store: SQLiteStore, seeded, clock
    ) -> None:
        slow = CountingClassifier(delay=1.0)
        cache = TTLCache(ttl_seconds=60)
        pipeline = RetrievalPipeline(store, slow, no_embedding, cache, clock=clock)

        results = await pipeline.retrieve("u1", "allergic peanuts", timeout=0.05)

        assert [r.memory.id for r in results] == [seeded["peanuts"].id]
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_reranking_failure_uses_semantic_order(
        self, pipeline: RetrievalPipeline, seeded, monkeypatch
    ) -> None:
        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(retrieval, "diversify", broken)

        results = await pipeline.retrieve("u1", "allergic peanuts", max_results=2)

        assert len(results) == 2
        assert results[0].memory.id == seeded["peanuts"].id
        assert all(r.reasons == ["semantic_fallback"] for r in results)


class TestRetrievalStats:
    """Test latency and hit-rate tracking."""

    def test_empty_stats(self) -> None:
        assert RetrievalStats().to_dict() == {
            "calls": 0,
            "hit_rate": 0.0,
            "last_ms": None,
            "p50_ms": None,
            "p95_ms": None,
        }

    def test_window_bounds_percentiles(self) -> None:
        stats = RetrievalStats(window=3)
        for latency in (900.0, 10.0, 20.0, 30.0):
            stats.record(latency, result_count=1)

        data = stats.to_dict()
        assert data["calls"] == 4
        assert data["hit_rate"] == 1.0
        assert data["p50_ms"] == 20.0
        assert data["p95_ms"] == 30.0
        assert data["last_ms"] == 30.0

    @pytest.mark.asyncio
    async def test_pipeline_records_each_call(
        self, store: SQLiteStore, classifier: CountingClassifier, seeded, clock
    ) -> None:
        ticks = iter([10.0, 10.25, 20.0, 20.5])
        pipeline = RetrievalPipeline(
            store,
            classifier,
            no_embedding,
            TTLCache(ttl_seconds=60),
            clock=clock,
            monotonic=lambda: next(ticks),
        )

        await pipeline.retrieve("u1", "allergic peanuts")
        await pipeline.retrieve("u1", "   ")

        assert pipeline.stats.to_dict() == {
            "calls": 2,
            "hit_rate": 0.5,
            "last_ms": 500.0,
            "p50_ms": 250.0,
            "p95_ms": 500.0,
        }
