"""Classification providers for Coachmem.

Available backends:
    - ollama: Local LLM via Ollama ``/api/generate``
    - openai: OpenAI-compatible chat completions
    - heuristic: Offline keyword and lexical rules
    - disabled: Detection is a no-op
"""

from .disabled import DisabledClassifier
from .factory import ClassificationBackend, create_classification_provider
from .heuristic import HeuristicClassifier
from .llm import LLMClassifier, parse_json_object
from .ollama import OllamaClassifier
from .openai import OpenAIClassifier
from .provider import (
    Classification,
    ClassificationProvider,
    FactDraft,
    RelationshipAssessment,
)

__all__ = [
    "ClassificationProvider",
    "ClassificationBackend",
    "Classification",
    "FactDraft",
    "RelationshipAssessment",
    "create_classification_provider",
    "HeuristicClassifier",
    "DisabledClassifier",
    "LLMClassifier",
    "OllamaClassifier",
    "OpenAIClassifier",
    "parse_json_object",
]
