"""Pattern-based classification provider.

Works offline and deterministically, which makes it the default backend and
the reference implementation for tests. Detection uses keyword patterns per
category; relationships are judged lexically (negation, change markers and
word overlap), with cosine similarity when both memories carry embeddings.
"""

import logging
import re
from typing import Optional, Sequence

from coachmem.classification.provider import (
    Classification,
    FactDraft,
    RelationshipAssessment,
)
from coachmem.constants import (
    COACHING_MODE_KEYWORDS,
    DETECTION_PATTERNS,
)
from coachmem.history import ChatMessage
from coachmem.memory.similarity import (
    combine_contents,
    content_terms,
    cosine_similarity,
    fuzzy_similarity,
    has_change_marker,
    normalize_text,
    word_set,
)
from coachmem.types.memory import (
    AtomicFact,
    FactType,
    MemoryCategory,
    MemoryEntry,
    RelationshipType,
)
from coachmem.types.retrieval import ConversationContext, QueryExpansion

logger = logging.getLogger(__name__)

__all__ = ["HeuristicClassifier", "guess_category", "extract_keywords", "extract_labels"]

_COMPILED_PATTERNS = [
    (MemoryCategory(category), importance, [re.compile(p, re.IGNORECASE) for p in patterns])
    for category, importance, patterns in DETECTION_PATTERNS
]

# Word stem -> label
LABEL_HINTS = {
    "allerg": "allergy",
    "intoleran": "intolerance",
    "vegan": "vegan",
    "vegetarian": "vegetarian",
    "injur": "injury",
    "knee": "injury",
    "back pain": "injury",
    "workout": "workout",
    "training": "workout",
    "run": "running",
    "sleep": "sleep",
    "stress": "stress",
    "morning": "schedule",
    "evening": "schedule",
    "weight": "body_composition",
    "protein": "macros",
    "calorie": "macros",
}

SYNONYMS = {
    "workout": ("exercise", "training"),
    "workouts": ("exercise", "training"),
    "exercise": ("workout", "training"),
    "training": ("workout", "exercise"),
    "food": ("diet", "meal", "nutrition"),
    "diet": ("food", "nutrition", "eating"),
    "meal": ("food", "diet"),
    "eat": ("food", "diet"),
    "allergy": ("allergic", "intolerance"),
    "allergies": ("allergic", "intolerance"),
    "allergic": ("allergy", "intolerance"),
    "sleep": ("rest", "recovery"),
    "rest": ("sleep", "recovery"),
    "goal": ("target", "objective"),
    "goals": ("target", "objective"),
    "run": ("running", "cardio"),
    "running": ("run", "cardio"),
    "weight": ("lose", "gain", "body"),
    "stress": ("anxiety", "mental"),
    "injury": ("injured", "pain"),
    "prefer": ("like", "favourite"),
    "like": ("prefer", "enjoy"),
}

NEGATIONS = frozenset({"not", "no", "never", "cannot", "without", "stopped", "quit"})

_FACT_SPLIT_RE = re.compile(r"(?<=[.!?;])\s+|,?\s+\b(?:and|but|although|though)\b\s+", re.IGNORECASE)

_CATEGORY_FACT_TYPES = {
    MemoryCategory.PREFERENCES: FactType.PREFERENCE,
    MemoryCategory.PERSONAL_CONTEXT: FactType.ATTRIBUTE,
    MemoryCategory.INSTRUCTIONS: FactType.BEHAVIOR,
    MemoryCategory.FOOD_DIET: FactType.ATTRIBUTE,
    MemoryCategory.GOALS: FactType.GOAL,
}
_PREFERENCE_RE = re.compile(r"\b(?:prefer|like|love|enjoy|hate|dislike|favou?rite|rather)\b", re.IGNORECASE)
_BEHAVIOR_RE = re.compile(r"\b(?:usually|always|every|often|never|daily|weekly)\b", re.IGNORECASE)


def guess_category(text: str) -> Optional[MemoryCategory]:
    """First category whose detection patterns match the text."""
    for category, _importance, patterns in _COMPILED_PATTERNS:
        if any(p.search(text) for p in patterns):
            return category
    return None


def extract_keywords(text: str, limit: int = 5) -> list[str]:
    """Distinctive words in order of appearance."""
    terms = content_terms(text)
    ordered = []
    for word in normalize_text(text).split():
        if word in terms and word not in ordered:
            ordered.append(word)
    return ordered[:limit]


def extract_labels(text: str) -> list[str]:
    lowered = text.lower()
    return sorted({label for stem, label in LABEL_HINTS.items() if stem in lowered})


def _has_negation(text: str) -> bool:
    return bool(word_set(text) & NEGATIONS)


class HeuristicClassifier:
    """Deterministic, pattern-based ClassificationProvider."""

    name = "heuristic"
    enabled = True

    async def classify(
        self, text: str, history: Sequence[ChatMessage] = ()
    ) -> Classification:
        stripped = text.strip()
        if len(stripped.split()) < 3 or stripped.endswith("?"):
            return Classification(worthy=False)

        matches = []
        for category, importance, patterns in _COMPILED_PATTERNS:
            hits = sum(1 for p in patterns if p.search(stripped))
            if hits:
                matches.append((category, importance, hits))

        if not matches:
            return Classification(worthy=False)

        category, importance, hits = matches[0]
        return Classification(
            worthy=True,
            category=category,
            keywords=extract_keywords(stripped),
            labels=extract_labels(stripped),
            importance=importance,
            confidence=min(0.9, 0.6 + 0.1 * hits),
        )

    async def expand_query(
        self, query: str, context: ConversationContext
    ) -> QueryExpansion:
        terms = extract_keywords(query, limit=10)
        synonyms: list[str] = []
        for term in terms:
            for synonym in SYNONYMS.get(term, ()):
                if synonym not in terms and synonym not in synonyms:
                    synonyms.append(synonym)
        related = [
            k
            for k in COACHING_MODE_KEYWORDS.get(context.coaching_mode, ())[:3]
            if k not in terms and k not in synonyms
        ]
        return QueryExpansion(
            original_query=query,
            expanded_terms=terms,
            synonyms=synonyms,
            related_concepts=related,
        )

    async def extract_facts(
        self, content: str, category: MemoryCategory
    ) -> list[FactDraft]:
        default_type = _CATEGORY_FACT_TYPES.get(MemoryCategory(category), FactType.ATTRIBUTE)
        facts = []
        for clause in _FACT_SPLIT_RE.split(content):
            clause = clause.strip(" .;!?")
            if len(clause.split()) < 3:
                continue
            if _PREFERENCE_RE.search(clause):
                fact_type = FactType.PREFERENCE
            elif _BEHAVIOR_RE.search(clause) and default_type != FactType.GOAL:
                fact_type = FactType.BEHAVIOR
            else:
                fact_type = default_type
            facts.append(FactDraft(content=clause, fact_type=fact_type, confidence=0.7))
        return facts[:5]

    async def assess_relationship(
        self,
        new: MemoryEntry,
        existing: MemoryEntry,
        new_facts: Sequence[AtomicFact] = (),
        existing_facts: Sequence[AtomicFact] = (),
    ) -> RelationshipAssessment:
        lexical = fuzzy_similarity(new.content, existing.content)
        semantic = cosine_similarity(new.embedding, existing.embedding)
        similarity = max(lexical, semantic)
        shared = content_terms(new.content) & content_terms(existing.content)
        same_category = new.category == existing.category

        if not shared or similarity < 0.3:
            return RelationshipAssessment.none("no shared subject")

        if same_category and has_change_marker(new.content) and new.created_at >= existing.created_at:
            return RelationshipAssessment(
                relationship_type=RelationshipType.SUPERSEDES,
                strength=round(similarity, 4),
                confidence=0.75,
                reason=f"newer statement about {', '.join(sorted(shared))}",
            )

        if _has_negation(new.content) != _has_negation(existing.content):
            return RelationshipAssessment(
                relationship_type=RelationshipType.CONTRADICTS,
                strength=round(similarity, 4),
                confidence=0.8,
                reason=f"opposite polarity about {', '.join(sorted(shared))}",
            )

        if same_category and similarity >= 0.5:
            new_words, old_words = word_set(new.content), word_set(existing.content)
            if new_words > old_words:
                rel_type = RelationshipType.ELABORATES
            else:
                rel_type = RelationshipType.SUPPORTS
            return RelationshipAssessment(
                relationship_type=rel_type,
                strength=round(similarity, 4),
                confidence=0.7,
                reason=f"consistent statements about {', '.join(sorted(shared))}",
            )

        return RelationshipAssessment(
            relationship_type=RelationshipType.RELATED,
            strength=round(similarity, 4),
            confidence=0.6,
            reason=f"shared subject {', '.join(sorted(shared))}",
        )

    async def merge_contents(self, contents: Sequence[str]) -> str:
        return combine_contents(contents)

    async def close(self) -> None:
        pass
