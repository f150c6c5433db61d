"""Tests for atomic fact extraction and relationship detection."""

import pytest

from coachmem.classification import HeuristicClassifier
from coachmem.memory.facts import FactExtractor
from coachmem.memory.relationships import RelationshipEngine, pair_similarity
from coachmem.storage import SQLiteStore
from coachmem.types.memory import FactType, MemoryCategory, RelationshipType


@pytest.fixture
def classifier() -> HeuristicClassifier:
    return HeuristicClassifier()


class TestFactExtractor:
    """Test fact decomposition and idempotency."""

    @pytest.mark.asyncio
    async def test_compound_statement_is_split(
        self, store: SQLiteStore, classifier, make_entry
    ) -> None:
        entry = make_entry("I like to run every morning and I avoid sugar after dinner")
        store.add_memory(entry)

        facts = await FactExtractor(store, classifier).extract(entry)

        assert sorted(f.content for f in facts) == [
            "I avoid sugar after dinner",
            "I like to run every morning",
        ]
        by_content = {f.content: f for f in facts}
        assert by_content["I like to run every morning"].fact_type == FactType.PREFERENCE
        assert all(f.memory_entry_id == entry.id for f in facts)
        assert all(f.source_context == entry.content for f in facts)

    @pytest.mark.asyncio
    async def test_extraction_is_idempotent(
        self, store: SQLiteStore, classifier, make_entry
    ) -> None:
        entry = make_entry("I want to lose 5kg and I want to run a marathon", MemoryCategory.GOALS)
        store.add_memory(entry)
        extractor = FactExtractor(store, classifier)

        first = await extractor.extract(entry)
        second = await extractor.extract(entry)

        assert len(first) == 2
        assert [f.id for f in second] == [f.id for f in first]
        assert all(f.fact_type == FactType.GOAL for f in first)


class TestRelationshipEngine:
    """Test relationship detection between memories."""

    @pytest.mark.asyncio
    async def test_contradiction_is_stored_once_per_pair(
        self, store: SQLiteStore, classifier, make_entry, clock
    ) -> None:
        older = make_entry("I eat meat every day", MemoryCategory.FOOD_DIET)
        clock.advance(days=1)
        newer = make_entry("I never eat meat", MemoryCategory.FOOD_DIET)
        store.add_memory(older)
        store.add_memory(newer)
        engine = RelationshipEngine(store, classifier)

        [relationship] = await engine.detect(newer)
        again = await engine.detect(older)

        assert relationship.relationship_type == RelationshipType.CONTRADICTS
        assert relationship.confidence == pytest.approx(0.8)
        assert (relationship.source_memory_id, relationship.target_memory_id) == tuple(
            sorted((older.id, newer.id))
        )
        assert again == []
        assert len(store.list_relationships("u1")) == 1

    @pytest.mark.asyncio
    async def test_supersedes_points_from_newer_to_older(
        self, store: SQLiteStore, classifier, make_entry, clock
    ) -> None:
        morning = make_entry("I prefer morning workouts")
        clock.advance(hours=1)
        evening = make_entry("I actually prefer evening workouts now")
        store.add_memory(morning)
        store.add_memory(evening)

        [relationship] = await RelationshipEngine(store, classifier).detect(evening)

        assert relationship.relationship_type == RelationshipType.SUPERSEDES
        assert relationship.source_memory_id == evening.id
        assert relationship.target_memory_id == morning.id

    @pytest.mark.asyncio
    async def test_low_confidence_assessments_are_discarded(
        self, store: SQLiteStore, classifier, make_entry, clock
    ) -> None:
        older = make_entry("I eat meat every day", MemoryCategory.FOOD_DIET)
        clock.advance(days=1)
        newer = make_entry("I never eat meat", MemoryCategory.FOOD_DIET)
        store.add_memory(older)
        store.add_memory(newer)

        engine = RelationshipEngine(store, classifier, min_confidence=0.9)

        assert await engine.detect(newer) == []

    @pytest.mark.asyncio
    async def test_unrelated_and_inactive_memories_get_no_links(
        self, store: SQLiteStore, classifier, make_entry
    ) -> None:
        peanuts = make_entry("I am allergic to peanuts", MemoryCategory.FOOD_DIET)
        marathon = make_entry("I want to run a marathon", MemoryCategory.GOALS)
        store.add_memory(peanuts)
        store.add_memory(marathon)
        engine = RelationshipEngine(store, classifier)

        assert await engine.detect(marathon) == []
        store.deactivate_memory(peanuts.id)
        assert await engine.detect(store.get_memory(peanuts.id)) == []

    def test_pair_similarity_prefers_embeddings(self, make_entry) -> None:
        a = make_entry("I like tea", embedding=[1.0, 0.0])
        b = make_entry("Coffee is great", embedding=[1.0, 0.0])
        c = make_entry("I like tea a lot")

        assert pair_similarity(a, b) == pytest.approx(1.0)
        assert pair_similarity(a, c) == pytest.approx(3 / 5)
