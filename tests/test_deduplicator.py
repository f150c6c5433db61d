"""Tests for candidate deduplication.

This module tests the four dedup tiers (skip, merge, update, create) with
lexical similarity (no embeddings) and with cosine similarity over small
hand-picked vectors, plus tie-breaking determinism.
"""

import pytest

from coachmem.memory.deduplicator import Deduplicator
from coachmem.memory.similarity import normalize_embedding
from coachmem.storage import SQLiteStore
from coachmem.types.memory import ConsolidationType, DedupAction, MemoryCategory


@pytest.fixture
def dedup(store: SQLiteStore, clock) -> Deduplicator:
    return Deduplicator(store, clock=clock)


class TestLexicalTiers:
    """Test decisions when no embeddings are available."""

    def test_contraction_paraphrase_is_skipped(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        original = make_entry(
            "I am allergic to peanuts", MemoryCategory.FOOD_DIET, importance=0.9
        )
        dedup.resolve(original)
        clock.advance(minutes=2)

        result = dedup.resolve(
            make_entry("I'm allergic to peanuts", MemoryCategory.FOOD_DIET, importance=0.9)
        )

        assert result.decision.action == DedupAction.SKIP
        assert result.decision.existing_id == original.id
        assert result.memory.id == original.id
        assert store.get_memory(original.id).access_count == 1
        assert len(store.list_memories("u1")) == 1

    def test_very_similar_statement_is_merged(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        original = make_entry("I like to run every morning before work", keywords=["run"])
        dedup.resolve(original)
        clock.advance(days=3)

        result = dedup.resolve(
            make_entry("I like to run every morning before my work", keywords=["morning"])
        )

        assert result.decision.action == DedupAction.MERGE
        assert result.decision.method == "fuzzy"
        merged = store.get_memory(original.id)
        assert merged.content == "I like to run every morning before my work"
        assert merged.keywords == ["run", "morning"]
        assert merged.update_count == 1
        assert merged.updated_at == clock()
        assert len(store.list_memories("u1")) == 1
        [log] = store.list_consolidation_log("u1")
        assert log.consolidation_type == ConsolidationType.MERGE

    def test_unrelated_statement_is_created(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry
    ) -> None:
        dedup.resolve(make_entry("I prefer morning workouts"))
        result = dedup.resolve(make_entry("I am allergic to peanuts", MemoryCategory.FOOD_DIET))

        assert result.decision.action == DedupAction.CREATE
        assert len(store.list_memories("u1")) == 2

    def test_other_users_are_never_matched(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry
    ) -> None:
        dedup.resolve(make_entry("I am allergic to peanuts", user_id="u1"))
        result = dedup.resolve(make_entry("I am allergic to peanuts", user_id="u2"))

        assert result.decision.action == DedupAction.CREATE

    def test_superset_within_window_is_a_temporal_update(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        original = make_entry("I run three times a week")
        dedup.resolve(original)
        clock.advance(hours=1)

        newer = make_entry("I run three times a week with my running club")
        result = dedup.resolve(newer)

        assert result.decision.action == DedupAction.UPDATE
        assert result.superseded_id == original.id
        assert store.get_memory(original.id).superseded_by == newer.id

    def test_correction_without_embeddings_supersedes(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        morning = make_entry("I prefer morning workouts")
        dedup.resolve(morning)
        clock.advance(hours=5)

        evening = make_entry("I actually prefer evening workouts now")
        result = dedup.resolve(evening)

        assert result.decision.action == DedupAction.UPDATE
        assert result.decision.method == "fuzzy"
        assert result.decision.similarity == pytest.approx(0.5)
        assert result.superseded_id == morning.id
        assert store.get_memory(morning.id).superseded_by == evening.id
        [log] = store.list_consolidation_log("u1")
        assert log.consolidation_type == ConsolidationType.TEMPORAL_UPDATE

    def test_weak_fuzzy_overlap_is_created(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        dedup.resolve(make_entry("I prefer morning workouts"))
        clock.advance(hours=1)

        result = dedup.resolve(make_entry("I now like long swims in the lake"))

        assert result.decision.action == DedupAction.CREATE
        assert len(store.list_memories("u1")) == 2

    def test_superset_after_window_is_created(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        dedup.resolve(make_entry("I run three times a week"))
        clock.advance(days=2)

        result = dedup.resolve(make_entry("I run three times a week with my running club"))

        assert result.decision.action == DedupAction.CREATE


class TestSemanticTiers:
    """Test decisions driven by embedding similarity."""

    def test_morning_to_evening_correction_supersedes(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        morning = make_entry(
            "I prefer morning workouts", embedding=normalize_embedding([1.0, 0.0, 0.0])
        )
        dedup.resolve(morning)
        clock.advance(hours=5)

        evening = make_entry(
            "I actually prefer evening workouts now",
            embedding=normalize_embedding([0.7, 0.714, 0.0]),
        )
        result = dedup.resolve(evening)

        assert result.decision.action == DedupAction.UPDATE
        assert result.decision.method == "semantic"
        assert result.decision.similarity == pytest.approx(0.7, abs=0.01)
        old = store.get_memory(morning.id)
        assert not old.is_active
        assert old.superseded_by == evening.id
        assert [m.id for m in store.list_memories("u1")] == [evening.id]
        [log] = store.list_consolidation_log("u1")
        assert log.consolidation_type == ConsolidationType.TEMPORAL_UPDATE
        assert log.source_memory_ids == [morning.id]

    def test_identical_vectors_are_skipped_via_hash(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry
    ) -> None:
        vector = normalize_embedding([0.2, 0.9, 0.1])
        first = make_entry("I like cycling", embedding=vector)
        dedup.resolve(first)

        result = dedup.resolve(make_entry("Cycling is my favourite sport", embedding=vector))

        assert result.decision.action == DedupAction.SKIP
        assert result.decision.method == "hash"
        assert len(store.list_memories("u1")) == 1

    def test_dissimilar_vectors_are_created(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry
    ) -> None:
        dedup.resolve(make_entry("I like cycling", embedding=[1.0, 0.0, 0.0]))
        result = dedup.resolve(make_entry("I hate swimming", embedding=[0.0, 1.0, 0.0]))

        assert result.decision.action == DedupAction.CREATE

    def test_merge_tier_with_change_marker_becomes_update(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        old = make_entry("I train at the gym", embedding=normalize_embedding([1.0, 0.0, 0.0]))
        dedup.resolve(old)
        clock.advance(hours=1)

        new = make_entry(
            "I train at home now", embedding=normalize_embedding([0.85, 0.527, 0.0])
        )
        result = dedup.resolve(new)

        assert result.decision.similarity == pytest.approx(0.85, abs=0.01)
        assert result.decision.action == DedupAction.UPDATE

    def test_ties_break_by_creation_then_id(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        vector = normalize_embedding([1.0, 0.0, 0.0])
        older = make_entry("I like cycling", embedding=vector, semantic_hash="a")
        clock.advance(minutes=1)
        newer = make_entry("I like cycling a lot", embedding=vector, semantic_hash="b")
        store.add_memory(newer)
        store.add_memory(older)

        decision, existing = dedup.decide(
            make_entry("I like cycling", embedding=vector, semantic_hash="c")
        )

        assert decision.action == DedupAction.SKIP
        assert existing.id == older.id


class TestDuplicateSweep:
    """Test folding of duplicates left behind by earlier writes."""

    def test_duplicates_collapse_into_primary(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry, clock
    ) -> None:
        older = make_entry("I like green tea", keywords=["tea"], access_count=2)
        clock.advance(minutes=1)
        newer = make_entry(
            "I like green tea!",
            importance=0.7,
            keywords=["green"],
            labels=["drinks"],
            access_count=1,
        )
        other = make_entry("I am allergic to peanuts", MemoryCategory.FOOD_DIET)
        for entry in (older, newer, other):
            store.add_memory(entry)
        clock.advance(hours=1)

        [log] = dedup.sweep("u1")

        assert log.consolidation_type == ConsolidationType.DUPLICATE_CLEANUP
        assert log.source_memory_ids == [older.id]
        assert log.result_memory_id == newer.id
        retired = store.get_memory(older.id)
        assert not retired.is_active
        assert retired.superseded_by == newer.id
        primary = store.get_memory(newer.id)
        assert primary.keywords == ["green", "tea"]
        assert primary.labels == ["drinks"]
        assert primary.importance == pytest.approx(0.7)
        assert primary.access_count == 3
        assert primary.update_count == 1
        assert primary.updated_at == clock()
        assert {m.id for m in store.list_memories("u1")} == {newer.id, other.id}
        assert [row.id for row in store.list_consolidation_log("u1")] == [log.id]

    def test_sweep_without_duplicates_is_a_no_op(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry
    ) -> None:
        store.add_memory(make_entry("I like green tea"))
        store.add_memory(make_entry("I prefer morning workouts"))

        assert dedup.sweep("u1") == []
        assert dedup.sweep("u2") == []
        assert len(store.list_memories("u1")) == 2

    def test_vectors_below_skip_are_kept_apart(
        self, dedup: Deduplicator, store: SQLiteStore, make_entry
    ) -> None:
        store.add_memory(
            make_entry("I like cycling", embedding=normalize_embedding([1.0, 0.0, 0.0]))
        )
        store.add_memory(
            make_entry("I like cycling a lot", embedding=normalize_embedding([0.8, 0.6, 0.0]))
        )

        assert dedup.sweep("u1") == []


class TestThresholds:
    """Test threshold configuration."""

    def test_threshold_order_is_enforced(self, store: SQLiteStore) -> None:
        with pytest.raises(ValueError):
            Deduplicator(store, skip_threshold=0.8, merge_threshold=0.85)

    def test_fuzzy_update_threshold_below_merge(self, store: SQLiteStore) -> None:
        with pytest.raises(ValueError, match="Fuzzy update threshold"):
            Deduplicator(store, fuzzy_update_threshold=0.8)
