"""Conversation history capability.

The engine only reads recent messages; persisting conversations belongs to
the chat layer. InMemoryConversationHistory is a bounded in-process
implementation used by the MCP server and tests.
"""

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

__all__ = ["ChatMessage", "ConversationHistory", "InMemoryConversationHistory"]


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """One message in a conversation."""

    role: str
    content: str


@runtime_checkable
class ConversationHistory(Protocol):
    """Supplies the context window for detection and retrieval."""

    async def get_recent(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        """Return up to ``limit`` most recent messages, oldest first."""
        ...


class InMemoryConversationHistory:
    """Bounded per-conversation message buffer.

    Args:
        max_messages: Messages kept per conversation (oldest are dropped)
    """

    def __init__(self, max_messages: int = 50) -> None:
        self._messages: dict[str, deque[ChatMessage]] = defaultdict(
            lambda: deque(maxlen=max_messages)
        )

    def append(self, conversation_id: str, role: str, content: str) -> None:
        self._messages[conversation_id].append(ChatMessage(role=role, content=content))

    async def get_recent(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0 or conversation_id not in self._messages:
            return []
        return list(self._messages[conversation_id])[-limit:]

    def clear(self, conversation_id: str) -> None:
        self._messages.pop(conversation_id, None)
