"""Tests for text and vector similarity helpers."""

import math

import pytest

from coachmem.memory.similarity import (
    combine_contents,
    compute_semantic_hash,
    content_terms,
    cosine_similarity,
    exponential_decay,
    fuzzy_similarity,
    has_change_marker,
    jaccard_similarity,
    mean_embedding,
    normalize_embedding,
    normalize_text,
)


class TestTextNormalization:
    """Test normalization and word-level similarity."""

    def test_contractions_are_expanded(self) -> None:
        assert normalize_text("I'm allergic to peanuts!") == "i am allergic to peanuts"
        assert normalize_text("I don’t eat meat") == "i do not eat meat"

    def test_content_terms_drop_stopwords_and_short_words(self) -> None:
        assert content_terms("I am allergic to the peanuts") == {"allergic", "peanuts"}

    def test_fuzzy_similarity_uses_larger_word_set(self) -> None:
        assert fuzzy_similarity("I prefer morning workouts", "I prefer morning workouts") == 1.0
        similarity = fuzzy_similarity(
            "I prefer morning workouts", "I actually prefer evening workouts now"
        )
        assert similarity == pytest.approx(3 / 6)

    def test_fuzzy_similarity_of_empty_text_is_zero(self) -> None:
        assert fuzzy_similarity("", "anything") == 0.0

    def test_jaccard_similarity(self) -> None:
        assert jaccard_similarity("a b c", "a b d") == pytest.approx(2 / 4)
        assert jaccard_similarity("", "") == 1.0

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("I actually prefer evening workouts now", True),
            ("I no longer eat gluten", True),
            ("From now on call me Sam", True),
            ("I prefer evening workouts", False),
            ("I know my limits", False),
        ],
    )
    def test_change_markers(self, text: str, expected: bool) -> None:
        assert has_change_marker(text) is expected


class TestVectors:
    """Test embedding normalization and cosine similarity."""

    def test_normalize_embedding_gives_unit_length(self) -> None:
        unit = normalize_embedding([3.0, 4.0])
        assert unit == pytest.approx([0.6, 0.8])

    @pytest.mark.parametrize("vector", [None, [], [0.0, 0.0], [1.0, math.nan]])
    def test_normalize_embedding_rejects_unusable_vectors(self, vector) -> None:
        assert normalize_embedding(vector) is None

    def test_cosine_similarity(self) -> None:
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_cosine_similarity_of_mismatched_dimensions_is_zero(self) -> None:
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0
        assert cosine_similarity(None, [1.0]) == 0.0

    def test_mean_embedding_ignores_missing_vectors(self) -> None:
        mean = mean_embedding([[1.0, 0.0], None, [0.0, 1.0]])
        assert mean == pytest.approx([math.sqrt(0.5), math.sqrt(0.5)])

    def test_mean_embedding_of_mixed_dimensions_is_none(self) -> None:
        assert mean_embedding([[1.0, 0.0], [1.0, 0.0, 0.0]]) is None

    def test_exponential_decay(self) -> None:
        assert exponential_decay(0, 0.1) == 1.0
        assert exponential_decay(10, 0.1) == pytest.approx(math.exp(-1))
        assert exponential_decay(-5, 0.1) == 1.0


class TestSemanticHash:
    """Test the duplicate-lookup key."""

    def test_lexical_hash_ignores_contractions_and_punctuation(self) -> None:
        a = compute_semantic_hash(None, "I am allergic to peanuts")
        b = compute_semantic_hash(None, "I'm allergic to peanuts.")
        assert a == b
        assert a.startswith("t:")

    def test_lexical_hash_keeps_negation(self) -> None:
        assert compute_semantic_hash(None, "I eat meat") != compute_semantic_hash(
            None, "I don't eat meat"
        )

    def test_vector_hash_tolerates_tiny_differences(self) -> None:
        a = compute_semantic_hash([0.6, 0.8, 0.0], "first wording")
        b = compute_semantic_hash([0.6001, 0.7999, 0.0], "second wording")
        assert a == b
        assert a.startswith("v:")

    def test_vector_hash_ignores_scale(self) -> None:
        assert compute_semantic_hash([3.0, 4.0], "x") == compute_semantic_hash([0.6, 0.8], "x")


class TestCombineContents:
    """Test deterministic merging of statements."""

    def test_subsumed_statement_is_dropped(self) -> None:
        merged = combine_contents(
            ["I like to run", "I like to run every morning before work"]
        )
        assert merged == "I like to run every morning before work"

    def test_distinct_statements_are_joined_in_order(self) -> None:
        merged = combine_contents(["I like tea", "I avoid sugar."])
        assert merged == "I like tea. I avoid sugar."

    def test_identical_statements_keep_the_first(self) -> None:
        assert combine_contents(["I like tea", "i like tea!"]) == "I like tea"
