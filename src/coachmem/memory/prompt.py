"""Rendering remembered information into the coaching assistant's system prompt."""

from typing import Optional, Sequence

from coachmem.types.memory import MemoryEntry
from coachmem.types.retrieval import RelevantMemory

__all__ = ["DEFAULT_PERSONA", "IMPORTANT_THRESHOLD", "build_system_prompt"]

DEFAULT_PERSONA = (
    "You are a supportive health and wellness coach. Give practical, "
    "encouraging guidance tailored to the user."
)

# Memories at or above this importance are flagged for the model
IMPORTANT_THRESHOLD = 0.8

_INSTRUCTION = (
    "Use this remembered information to personalize your responses naturally. "
    "Don't explicitly mention that you're using stored information unless "
    "directly relevant to the conversation."
)


def build_system_prompt(
    memories: Sequence[MemoryEntry | RelevantMemory],
    persona: Optional[str] = None,
) -> str:
    """Build a system prompt from a persona and the memories to surface.

    Args:
        memories: Memory entries or retrieval results, most relevant first
        persona: Base persona text (DEFAULT_PERSONA when omitted)

    Returns:
        The persona alone when there is nothing to remember, otherwise the
        persona followed by a REMEMBERED INFORMATION section.
    """
    persona = (persona or DEFAULT_PERSONA).strip()
    entries = [m.memory if isinstance(m, RelevantMemory) else m for m in memories]
    if not entries:
        return persona

    lines = []
    for entry in entries:
        flag = " [IMPORTANT]" if entry.importance >= IMPORTANT_THRESHOLD else ""
        lines.append(
            f"- {entry.content} ({entry.category.value}, "
            f"importance: {entry.importance:.1f}){flag}"
        )

    return f"{persona}\n\nREMEMBERED INFORMATION ABOUT THIS USER:\n" + "\n".join(
        lines
    ) + f"\n\n{_INSTRUCTION}"
