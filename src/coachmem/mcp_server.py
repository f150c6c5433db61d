"""Coachmem MCP server module.

This module builds the FastMCP server exposing the memory engine to a chat
layer. The server owns nothing itself: tools delegate to a MemoryTools
instance, and the MemoryService behind it is started and stopped by the
server lifespan.

The server exposes tools for:
- Writing memories (memory_create, memory_submit_message)
- Reading memories (memory_retrieve, memory_overview, memory_list, memory_node,
  memory_resolve, memory_graph_metrics, memory_system_prompt)
- Maintenance (memory_delete, memory_bulk_delete, memory_consolidate,
  memory_record_usage, memory_stats)

CRITICAL: MCP servers using stdio transport must NEVER write to stdout
as it corrupts JSON-RPC messages. All logging goes to stderr.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from mcp.server.fastmcp import FastMCP

from coachmem.service import MemoryService
from coachmem.tools import MemoryTools

# MCP servers must never write to stdout (corrupts JSON-RPC)
logger = logging.getLogger(__name__)


def create_server(service: MemoryService, tools: Optional[MemoryTools] = None) -> FastMCP:
    """Create the FastMCP server for a memory service.

    Args:
        service: The memory engine (started when the server starts)
        tools: Tool implementations (built from ``service`` when omitted)

    Returns:
        Configured FastMCP server
    """
    tools = tools or MemoryTools(service)

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        service.start()
        try:
            yield
        finally:
            await service.stop()

    mcp = FastMCP("coachmem", lifespan=lifespan)

    # ==========================================================================
    # Writing memories
    # ==========================================================================

    @mcp.tool()
    async def memory_create(
        user_id: str,
        content: str,
        category: str,
        importance: float = 0.5,
        keywords: Optional[list[str]] = None,
        labels: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Store a memory about a user directly.

        The content is validated and deduplicated against the user's existing
        memories before it is stored.

        Args:
            user_id: Owner of the memory
            content: Self-contained statement about the user
            category: One of preferences, personal_context, instructions,
                food_diet, goals
            importance: Importance from 0.0 to 1.0 (default: 0.5)
            keywords: Search keywords (extracted from content when omitted)
            labels: Free-form labels (extracted from content when omitted)

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Stored memory and the deduplication decision
            - error: Error message if operation failed
        """
        return await tools.memory_create(
            user_id, content, category, importance=importance, keywords=keywords, labels=labels
        )

    @mcp.tool()
    async def memory_submit_message(
        user_id: str, message: str, conversation_id: Optional[str] = None
    ) -> dict[str, Any]:
        """Submit a user's chat message for background memory detection.

        Returns immediately; detection, storage and enrichment happen in the
        background.

        Args:
            user_id: Author of the message
            message: The chat message
            conversation_id: Conversation the message belongs to (optional)

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Whether a detection task was queued
            - error: Error message if operation failed
        """
        return await tools.memory_submit_message(user_id, message, conversation_id)

    # ==========================================================================
    # Reading memories
    # ==========================================================================

    @mcp.tool()
    async def memory_retrieve(
        user_id: str,
        query: str,
        max_results: Optional[int] = None,
        coaching_mode: str = "general",
        recent_topics: Optional[list[str]] = None,
        temporal_context: str = "recent",
        session_length: int = 0,
    ) -> dict[str, Any]:
        """Retrieve the memories most relevant to a query.

        Args:
            user_id: Whose memories to search
            query: The user's current message or question
            max_results: Maximum memories returned (optional)
            coaching_mode: Current coaching mode, e.g. nutrition or fitness
            recent_topics: Topics discussed recently in the conversation
            temporal_context: immediate, recent or historical
            session_length: Messages exchanged so far in the session

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Ranked memories with score breakdowns and reasons
            - error: Error message if operation failed
        """
        return await tools.memory_retrieve(
            user_id,
            query,
            max_results=max_results,
            coaching_mode=coaching_mode,
            recent_topics=recent_topics,
            temporal_context=temporal_context,
            session_length=session_length,
        )

    @mcp.tool()
    async def memory_overview(user_id: str) -> dict[str, Any]:
        """Count a user's active memories per category.

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Counts per category and total
            - error: Error message if operation failed
        """
        return await tools.memory_overview(user_id)

    @mcp.tool()
    async def memory_list(
        user_id: str,
        category: Optional[str] = None,
        include_inactive: bool = False,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """List a user's memories, most important first.

        Args:
            user_id: Whose memories to list
            category: Filter by category (optional)
            include_inactive: Include superseded and deleted memories
            limit: Maximum memories returned (optional)

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Memories and count
            - error: Error message if operation failed
        """
        return await tools.memory_list(
            user_id, category=category, include_inactive=include_inactive, limit=limit
        )

    @mcp.tool()
    async def memory_node(user_id: str, memory_id: str) -> dict[str, Any]:
        """Inspect a memory with its atomic facts and relationships.

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Memory, facts, relationships, temporal weight, confidence
            - error: Error message if operation failed
        """
        return await tools.memory_node(user_id, memory_id)

    @mcp.tool()
    async def memory_resolve(user_id: str, memory_id: str) -> dict[str, Any]:
        """Follow supersession links to the memory currently holding the information.

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Requested id and the resolved memory
            - error: Error message if operation failed
        """
        return await tools.memory_resolve(user_id, memory_id)

    @mcp.tool()
    async def memory_graph_metrics(user_id: str, refresh: bool = False) -> dict[str, Any]:
        """Graph metrics for a user's memories.

        Args:
            user_id: Whose graph to describe
            refresh: Recompute instead of returning the last snapshot

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Totals, density and contradiction count
            - error: Error message if operation failed
        """
        return await tools.memory_graph_metrics(user_id, refresh=refresh)

    @mcp.tool()
    async def memory_system_prompt(
        user_id: str,
        query: str,
        persona: Optional[str] = None,
        max_results: Optional[int] = None,
        conversation_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Build a personalized system prompt for the user's current message.

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: The prompt and the ids of the memories it contains
            - error: Error message if operation failed
        """
        return await tools.memory_system_prompt(
            user_id,
            query,
            persona=persona,
            max_results=max_results,
            conversation_id=conversation_id,
        )

    # ==========================================================================
    # Maintenance
    # ==========================================================================

    @mcp.tool()
    async def memory_delete(user_id: str, memory_id: str) -> dict[str, Any]:
        """Delete one of a user's memories.

        Memories are deactivated rather than removed.

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Whether the memory was active before
            - error: Error message if operation failed
        """
        return await tools.memory_delete(user_id, memory_id)

    @mcp.tool()
    async def memory_bulk_delete(user_id: str, memory_ids: list[str]) -> dict[str, Any]:
        """Delete several of a user's memories; unknown ids are ignored.

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Number of memories deleted
            - error: Error message if operation failed
        """
        return await tools.memory_bulk_delete(user_id, memory_ids)

    @mcp.tool()
    async def memory_consolidate(user_id: str) -> dict[str, Any]:
        """Collapse duplicates, resolve contradictions and merge supporting memories.

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Actions applied, conflicts and refreshed graph metrics
            - error: Error message if operation failed
        """
        return await tools.memory_consolidate(user_id)

    @mcp.tool()
    async def memory_record_usage(
        user_id: str, memory_ids: list[str], conversation_id: Optional[str] = None
    ) -> dict[str, Any]:
        """Record that memories were used when answering the user.

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Number of access rows written
            - error: Error message if operation failed
        """
        return await tools.memory_record_usage(
            user_id, memory_ids, conversation_id=conversation_id
        )

    @mcp.tool()
    async def memory_stats() -> dict[str, Any]:
        """Engine statistics (providers, expansion cache, background queue).

        Returns:
            Result dictionary with:
            - success: Boolean indicating operation success
            - data: Statistics
            - error: Error message if operation failed
        """
        return await tools.memory_stats()

    logger.debug("Registered coachmem MCP tools")
    return mcp
