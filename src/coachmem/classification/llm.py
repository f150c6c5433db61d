"""LLM-backed classification: prompts and response parsing.

Concrete backends (Ollama, OpenAI-compatible) only implement ``_complete``,
which sends a prompt and returns the raw model text. Everything else
(prompt construction, JSON extraction, coercion into result types) lives
here so that both backends behave identically.
"""

import json
import logging
import re
from typing import Any, Optional, Sequence

import httpx

from coachmem.classification.provider import (
    Classification,
    FactDraft,
    RelationshipAssessment,
)
from coachmem.errors import ProviderUnavailable
from coachmem.history import ChatMessage
from coachmem.memory.similarity import combine_contents
from coachmem.types.memory import (
    AtomicFact,
    FactType,
    MemoryCategory,
    MemoryEntry,
    RelationshipType,
)
from coachmem.types.retrieval import ConversationContext, QueryExpansion

logger = logging.getLogger(__name__)

__all__ = ["LLMClassifier", "parse_json_object"]

DETECTION_PROMPT = """You analyse messages sent to a health and wellness coach and decide \
whether they contain personal information worth remembering for future conversations.

Categories:
- preferences: likes, dislikes, preferred workout or communication styles
- personal_context: life circumstances, health conditions, injuries, schedule
- instructions: explicit requests about how the coach should behave
- food_diet: dietary restrictions, allergies, eating habits
- goals: fitness, health or nutrition targets

Recent conversation:
{history}

Message: "{message}"

Respond with JSON only:
{{"isMemoryWorthy": true/false, "category": "<category>", "labels": ["..."], \
"keywords": ["..."], "importance": 0.0-1.0, "confidence": 0.0-1.0, \
"extractedInfo": "<the statement to remember, in first person>"}}"""

EXPANSION_PROMPT = """Expand a search query for a coaching memory store with related \
terms, synonyms and concepts.

Query: "{query}"
Coaching mode: {mode}
User intent: {intent}
Recent topics: {topics}

Respond with JSON only:
{{"expandedTerms": ["..."], "synonyms": ["..."], "relatedConcepts": ["..."]}}"""

FACT_PROMPT = """Decompose this {category} memory into 1-5 atomic facts. Each fact must be \
a single, independently verifiable statement.

Memory: "{content}"

Fact types: preference, attribute, relationship, behavior, goal.

Respond with JSON only:
{{"facts": [{{"content": "...", "type": "<fact type>", "confidence": 0.0-1.0}}]}}"""

RELATIONSHIP_PROMPT = """Compare a NEW memory with an EXISTING memory about the same user.

NEW ({new_category}, {new_date}): "{new_content}"
NEW facts: {new_facts}
EXISTING ({existing_category}, {existing_date}): "{existing_content}"
EXISTING facts: {existing_facts}

Relationship types (read as "NEW <type> EXISTING"):
- contradicts: both cannot be true at the same time
- supersedes: NEW replaces EXISTING with more recent information
- elaborates: NEW adds detail to EXISTING
- supports: NEW is consistent with and reinforces EXISTING
- related: same subject, no stronger link
- none: unrelated

Respond with JSON only:
{{"relationship": "<type>", "strength": 0.0-1.0, "confidence": 0.0-1.0, "reason": "..."}}"""

MERGE_PROMPT = """Combine these memories about the same user into one concise first-person \
statement that keeps every detail:

{contents}

Respond with JSON only:
{{"content": "..."}}"""


def parse_json_object(text: str) -> Optional[dict[str, Any]]:
    """Extract a JSON object from model output.

    Accepts bare JSON, fenced code blocks, or JSON embedded in prose.
    """
    if not text:
        return None
    cleaned = re.sub(r"```(?:json)?", "", text).strip()
    try:
        parsed = json.loads(cleaned)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    json_match = re.search(r"\{[\s\S]*\}", cleaned)
    if json_match:
        try:
            parsed = json.loads(json_match.group())
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            pass
    logger.warning(f"Failed to parse LLM response: {text[:200]}")
    return None


def _clamp(value: Any, default: float = 0.0) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def _format_facts(facts: Sequence[AtomicFact]) -> str:
    if not facts:
        return "none"
    return "; ".join(f.content for f in facts)


class LLMClassifier:
    """Base class for LLM classification backends.

    Args:
        model: Model name
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    name = "llm"
    enabled = True

    def __init__(
        self,
        model: str,
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self.timeout = timeout
        self._transport = transport

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, **kwargs)

    async def _complete(self, prompt: str) -> str:
        """Send a prompt and return the raw model text."""
        raise NotImplementedError

    async def _ask(self, prompt: str) -> dict[str, Any]:
        try:
            text = await self._complete(prompt)
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"{self.name} request failed: {e}") from e

        data = parse_json_object(text)
        if data is None:
            raise ProviderUnavailable(f"{self.name} returned unparseable output")
        return data

    async def classify(
        self, text: str, history: Sequence[ChatMessage] = ()
    ) -> Classification:
        history_text = "\n".join(f"{m.role}: {m.content}" for m in history) or "none"
        data = await self._ask(DETECTION_PROMPT.format(history=history_text, message=text))

        worthy = bool(data.get("isMemoryWorthy", data.get("worthy", False)))
        try:
            category = MemoryCategory(str(data.get("category", "")).strip().lower())
        except ValueError:
            category = None
        if worthy and category is None:
            logger.debug(f"Discarding worthy verdict without a valid category: {data}")
            worthy = False

        extracted = data.get("extractedInfo")
        return Classification(
            worthy=worthy,
            category=category,
            keywords=_string_list(data.get("keywords")),
            labels=_string_list(data.get("labels")),
            importance=_clamp(data.get("importance"), 0.5),
            confidence=_clamp(data.get("confidence"), 0.7),
            extracted_info=str(extracted).strip() if extracted else None,
        )

    async def expand_query(
        self, query: str, context: ConversationContext
    ) -> QueryExpansion:
        data = await self._ask(
            EXPANSION_PROMPT.format(
                query=query,
                mode=context.coaching_mode,
                intent=context.user_intent or "unknown",
                topics=", ".join(context.recent_topics) or "none",
            )
        )
        return QueryExpansion(
            original_query=query,
            expanded_terms=_string_list(data.get("expandedTerms")),
            synonyms=_string_list(data.get("synonyms")),
            related_concepts=_string_list(data.get("relatedConcepts")),
        )

    async def extract_facts(
        self, content: str, category: MemoryCategory
    ) -> list[FactDraft]:
        data = await self._ask(
            FACT_PROMPT.format(category=MemoryCategory(category).value, content=content)
        )
        facts = []
        for item in data.get("facts", []) or []:
            if not isinstance(item, dict) or not str(item.get("content", "")).strip():
                continue
            try:
                fact_type = FactType(str(item.get("type", "attribute")).lower())
            except ValueError:
                fact_type = FactType.ATTRIBUTE
            facts.append(
                FactDraft(
                    content=str(item["content"]).strip(),
                    fact_type=fact_type,
                    confidence=_clamp(item.get("confidence"), 0.7),
                )
            )
        return facts[:5]

    async def assess_relationship(
        self,
        new: MemoryEntry,
        existing: MemoryEntry,
        new_facts: Sequence[AtomicFact] = (),
        existing_facts: Sequence[AtomicFact] = (),
    ) -> RelationshipAssessment:
        data = await self._ask(
            RELATIONSHIP_PROMPT.format(
                new_category=new.category.value,
                new_date=new.created_at.date().isoformat(),
                new_content=new.content,
                new_facts=_format_facts(new_facts),
                existing_category=existing.category.value,
                existing_date=existing.created_at.date().isoformat(),
                existing_content=existing.content,
                existing_facts=_format_facts(existing_facts),
            )
        )
        relation = str(data.get("relationship", "none")).strip().lower()
        if relation in ("none", ""):
            return RelationshipAssessment.none(str(data.get("reason", "")))
        try:
            rel_type = RelationshipType(relation)
        except ValueError:
            logger.debug(f"Unknown relationship type from LLM: {relation!r}")
            return RelationshipAssessment.none(f"unknown type {relation}")
        return RelationshipAssessment(
            relationship_type=rel_type,
            strength=_clamp(data.get("strength"), 0.5),
            confidence=_clamp(data.get("confidence"), 0.0),
            reason=str(data.get("reason", "")),
        )

    async def merge_contents(self, contents: Sequence[str]) -> str:
        data = await self._ask(
            MERGE_PROMPT.format(contents="\n".join(f"- {c}" for c in contents))
        )
        merged = str(data.get("content", "")).strip()
        return merged or combine_contents(contents)

    async def close(self) -> None:
        pass
