"""Tests for classification providers.

LLM backends are exercised against httpx.MockTransport; the heuristic
backend runs as-is.
"""

import json

import httpx
import pytest

from coachmem.classification import (
    ClassificationProvider,
    DisabledClassifier,
    HeuristicClassifier,
    OllamaClassifier,
    OpenAIClassifier,
    create_classification_provider,
    parse_json_object,
)
from coachmem.config import CoachmemSettings
from coachmem.errors import ProviderUnavailable
from coachmem.history import ChatMessage
from coachmem.types.memory import FactType, MemoryCategory, RelationshipType
from coachmem.types.retrieval import ConversationContext


def ollama_transport(answer, requests: list | None = None, status: int = 200):
    """Transport answering every /api/generate call with ``answer``."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        text = answer if isinstance(answer, str) else json.dumps(answer)
        return httpx.Response(status, json={"response": text})

    return httpx.MockTransport(handler)


def openai_transport(content: str, requests: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(
            200, json={"choices": [{"message": {"role": "assistant", "content": content}}]}
        )

    return httpx.MockTransport(handler)


class TestParseJsonObject:
    """Test JSON extraction from model output."""

    @pytest.mark.parametrize(
        "text",
        [
            '{"a": 1}',
            '```json\n{"a": 1}\n```',
            'Sure! Here is the result: {"a": 1} Hope that helps.',
        ],
    )
    def test_object_is_extracted(self, text: str) -> None:
        assert parse_json_object(text) == {"a": 1}

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", "{broken"])
    def test_unusable_output_is_none(self, text: str) -> None:
        assert parse_json_object(text) is None


class TestOllamaClassifier:
    """Test the Ollama backend."""

    @pytest.mark.asyncio
    async def test_classify_worthy_message(self) -> None:
        seen: list[httpx.Request] = []
        classifier = OllamaClassifier(
            host="http://ollama:11434/",
            model="llama3.2",
            transport=ollama_transport(
                {
                    "isMemoryWorthy": True,
                    "category": "Food_Diet",
                    "keywords": ["peanuts", " "],
                    "labels": ["allergy"],
                    "importance": 0.9,
                    "confidence": 1.4,
                    "extractedInfo": "I am allergic to peanuts",
                },
                seen,
            ),
        )

        result = await classifier.classify(
            "btw I'm allergic to peanuts", [ChatMessage("assistant", "Any allergies?")]
        )

        assert result.worthy
        assert result.category == MemoryCategory.FOOD_DIET
        assert result.keywords == ["peanuts"]
        assert result.importance == pytest.approx(0.9)
        assert result.confidence == 1.0
        assert result.extracted_info == "I am allergic to peanuts"
        [request] = seen
        assert str(request.url) == "http://ollama:11434/api/generate"
        body = json.loads(request.content)
        assert body["model"] == "llama3.2"
        assert body["format"] == "json"
        assert "assistant: Any allergies?" in body["prompt"]

    @pytest.mark.asyncio
    async def test_worthy_without_valid_category_is_not_worthy(self) -> None:
        classifier = OllamaClassifier(
            transport=ollama_transport({"isMemoryWorthy": True, "category": "hobbies"})
        )

        result = await classifier.classify("I collect stamps")

        assert not result.worthy
        assert result.category is None

    @pytest.mark.asyncio
    async def test_http_error_is_provider_unavailable(self) -> None:
        classifier = OllamaClassifier(transport=ollama_transport({}, status=500))

        with pytest.raises(ProviderUnavailable):
            await classifier.classify("I prefer morning workouts")

    @pytest.mark.asyncio
    async def test_unparseable_output_is_provider_unavailable(self) -> None:
        classifier = OllamaClassifier(transport=ollama_transport("I think so, maybe"))

        with pytest.raises(ProviderUnavailable, match="unparseable"):
            await classifier.classify("I prefer morning workouts")

    @pytest.mark.asyncio
    async def test_expand_query(self) -> None:
        classifier = OllamaClassifier(
            transport=ollama_transport(
                {
                    "expandedTerms": ["breakfast"],
                    "synonyms": ["morning meal"],
                    "relatedConcepts": ["protein"],
                }
            )
        )

        expansion = await classifier.expand_query(
            "what should I eat in the morning", ConversationContext(coaching_mode="nutrition")
        )

        assert expansion.expanded
        assert expansion.all_terms == ["breakfast", "morning meal", "protein"]

    @pytest.mark.asyncio
    async def test_assess_relationship(self, make_entry) -> None:
        new = make_entry("I never eat meat", MemoryCategory.FOOD_DIET)
        old = make_entry("I eat meat every day", MemoryCategory.FOOD_DIET)

        contradicts = OllamaClassifier(
            transport=ollama_transport(
                {"relationship": "Contradicts", "strength": 0.9, "confidence": 0.85}
            )
        )
        unrelated = OllamaClassifier(transport=ollama_transport({"relationship": "none"}))
        unknown = OllamaClassifier(transport=ollama_transport({"relationship": "causes"}))

        assessment = await contradicts.assess_relationship(new, old)
        assert assessment.relationship_type == RelationshipType.CONTRADICTS
        assert assessment.confidence == pytest.approx(0.85)
        assert (await unrelated.assess_relationship(new, old)).relationship_type is None
        assert (await unknown.assess_relationship(new, old)).relationship_type is None


class TestOpenAIClassifier:
    """Test the OpenAI-compatible backend."""

    @pytest.mark.asyncio
    async def test_extract_facts_from_fenced_json(self) -> None:
        seen: list[httpx.Request] = []
        facts = [{"content": f"fact number {i}", "type": "goal"} for i in range(6)]
        facts[0] = {"content": "I run on Sundays", "type": "habit", "confidence": 0.9}
        facts[1] = {"content": "  "}
        classifier = OpenAIClassifier(
            base_url="http://llm:8000/v1",
            api_key="sk-test",
            transport=openai_transport(f"```json\n{json.dumps({'facts': facts})}\n```", seen),
        )

        drafts = await classifier.extract_facts("I run on Sundays", MemoryCategory.GOALS)

        assert len(drafts) == 5
        assert drafts[0].content == "I run on Sundays"
        assert drafts[0].fact_type == FactType.ATTRIBUTE
        assert drafts[0].confidence == pytest.approx(0.9)
        assert drafts[1].fact_type == FactType.GOAL
        [request] = seen
        assert str(request.url) == "http://llm:8000/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_merge_contents_falls_back_to_lexical(self) -> None:
        classifier = OpenAIClassifier(transport=openai_transport('{"content": ""}'))

        merged = await classifier.merge_contents(["I like tea", "I avoid sugar"])

        assert merged == "I like tea. I avoid sugar."

    @pytest.mark.asyncio
    async def test_empty_choices_are_unparseable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": []})

        classifier = OpenAIClassifier(transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderUnavailable):
            await classifier.classify("I prefer morning workouts")


class TestHeuristicClassifier:
    """Test the offline backend."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message,category",
        [
            ("My goal is to lose 5kg by summer", MemoryCategory.GOALS),
            ("I'm vegetarian these days", MemoryCategory.FOOD_DIET),
            ("Please don't send me long plans", MemoryCategory.INSTRUCTIONS),
            ("My knee is injured from skiing", MemoryCategory.PERSONAL_CONTEXT),
            ("I love swimming in the sea", MemoryCategory.PREFERENCES),
        ],
    )
    async def test_categories(self, message: str, category: MemoryCategory) -> None:
        result = await HeuristicClassifier().classify(message)
        assert result.worthy
        assert result.category == category

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["ok", "Do you like running?", "The weather is nice"])
    async def test_not_worthy(self, message: str) -> None:
        assert not (await HeuristicClassifier().classify(message)).worthy

    @pytest.mark.asyncio
    async def test_expand_query_adds_synonyms_and_mode_concepts(self) -> None:
        expansion = await HeuristicClassifier().expand_query(
            "workout ideas", ConversationContext(coaching_mode="fitness")
        )

        assert expansion.expanded_terms == ["workout", "ideas"]
        assert expansion.synonyms == ["exercise", "training"]
        assert expansion.related_concepts == ["gym"]

    @pytest.mark.asyncio
    async def test_disabled_classifier(self) -> None:
        classifier = DisabledClassifier()

        assert not classifier.enabled
        assert not (await classifier.classify("I'm allergic to peanuts")).worthy
        assert (await classifier.expand_query("x", ConversationContext())).expanded is False


class TestFactory:
    """Test create_classification_provider."""

    @pytest.mark.parametrize(
        "backend,cls",
        [
            ("ollama", OllamaClassifier),
            ("openai", OpenAIClassifier),
            ("heuristic", HeuristicClassifier),
            ("disabled", DisabledClassifier),
        ],
    )
    def test_backends(self, settings: CoachmemSettings, backend: str, cls) -> None:
        provider = create_classification_provider(settings, backend)

        assert isinstance(provider, cls)
        assert isinstance(provider, ClassificationProvider)

    def test_settings_are_applied(self) -> None:
        settings = CoachmemSettings(
            classification_backend="ollama",
            ollama_host="http://gpu:11434",
            ollama_llm_model="qwen2.5",
            provider_timeout_seconds=3,
        )

        provider = create_classification_provider(settings)

        assert provider.host == "http://gpu:11434"
        assert provider.model == "qwen2.5"
        assert provider.timeout == 3

    def test_unknown_backend(self, settings: CoachmemSettings) -> None:
        with pytest.raises(ValueError, match="Unknown classification backend"):
            create_classification_provider(settings, "magic")
