"""Text and vector similarity helpers shared by dedup, relationships and retrieval."""

import hashlib
import math
import re
from typing import Sequence

import numpy as np

from coachmem.constants import (
    CONTRACTIONS,
    HASH_LENGTH,
    SEMANTIC_HASH_DIMS,
    SEMANTIC_HASH_PRECISION,
    STOPWORDS,
    TEMPORAL_UPDATE_MARKERS,
)

_CONTRACTION_RE = re.compile(
    r"\b(" + "|".join(re.escape(c) for c in CONTRACTIONS) + r")\b"
)
_NON_WORD_RE = re.compile(r"[^\w\s]")


def normalize_text(text: str) -> str:
    """Lowercase, expand contractions and strip punctuation."""
    lowered = text.lower().replace("’", "'")
    expanded = _CONTRACTION_RE.sub(lambda m: CONTRACTIONS[m.group(1)], lowered)
    return " ".join(_NON_WORD_RE.sub(" ", expanded).split())


def word_set(text: str) -> set[str]:
    return set(normalize_text(text).split())


def content_terms(text: str) -> set[str]:
    """Distinctive words: no stopwords, at least three characters."""
    return {w for w in word_set(text) if len(w) >= 3 and w not in STOPWORDS}


def has_change_marker(text: str) -> bool:
    """Whether the text signals that it replaces an earlier statement."""
    normalized = f" {normalize_text(text)} "
    return any(f" {marker} " in normalized for marker in TEMPORAL_UPDATE_MARKERS)


def fuzzy_similarity(a: str, b: str) -> float:
    """Shared-word ratio |A & B| / max(|A|, |B|)."""
    words_a, words_b = word_set(a), word_set(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


def jaccard_similarity(a: str, b: str) -> float:
    words_a, words_b = word_set(a), word_set(b)
    if not words_a and not words_b:
        return 1.0
    return len(words_a & words_b) / len(words_a | words_b)


def normalize_embedding(embedding: Sequence[float] | None) -> list[float] | None:
    """Scale an embedding to unit length; None for empty, zero or non-finite vectors."""
    if not embedding:
        return None
    vector = np.asarray(embedding, dtype=np.float64)
    if not np.all(np.isfinite(vector)):
        return None
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return None
    return (vector / norm).tolist()


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity, 0.0 when either vector is missing or dimensions differ."""
    if not a or not b or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def mean_embedding(embeddings: Sequence[Sequence[float] | None]) -> list[float] | None:
    """Unit-length mean of same-dimension embeddings, ignoring missing ones."""
    vectors = [e for e in embeddings if e]
    if not vectors or len({len(v) for v in vectors}) != 1:
        return None
    return normalize_embedding(np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist())


def compute_semantic_hash(embedding: Sequence[float] | None, content: str) -> str:
    """Derive the duplicate-lookup key for a memory.

    The key is a quantised projection of the unit embedding (its leading
    components rounded to two decimals), so paraphrases with near-identical
    embeddings collide. Without an embedding the key falls back to the sorted
    distinct words of the normalized content.
    """
    unit = normalize_embedding(embedding)
    if unit is not None:
        head = unit[:SEMANTIC_HASH_DIMS]
        key = ",".join(
            f"{round(x, SEMANTIC_HASH_PRECISION) + 0.0:.{SEMANTIC_HASH_PRECISION}f}"
            for x in head
        )
        return "v:" + hashlib.sha256(key.encode()).hexdigest()[:HASH_LENGTH]

    key = " ".join(sorted(word_set(content)))
    return "t:" + hashlib.sha256(key.encode()).hexdigest()[:HASH_LENGTH]


def exponential_decay(age_days: float, rate: float) -> float:
    return math.exp(-rate * max(0.0, age_days))


def combine_contents(contents: Sequence[str]) -> str:
    """Deterministically merge statements into one.

    Statements whose words are contained in another statement are dropped;
    the rest are joined as sentences in their original order.
    """
    cleaned = [c.strip() for c in contents if c and c.strip()]
    kept: list[str] = []
    for i, content in enumerate(cleaned):
        words = word_set(content)
        subsumed = any(
            j != i
            and words <= word_set(other)
            and (words != word_set(other) or j < i)
            for j, other in enumerate(cleaned)
        )
        if not subsumed:
            kept.append(content)
    if len(kept) == 1:
        return kept[0]
    return " ".join(c if c[-1] in ".!?" else c + "." for c in kept)
