"""Memory tools for the Coachmem MCP server.

This module provides MCP tools for the memory engine:
- memory_create: Store a memory directly (validated and deduplicated)
- memory_submit_message: Queue a chat message for background detection
- memory_retrieve: Retrieve the memories relevant to a query
- memory_overview: Count active memories per category
- memory_list: List a user's memories
- memory_node: Inspect a memory with its facts and relationships
- memory_resolve: Follow supersession links to the current memory
- memory_delete: Soft-delete one memory
- memory_bulk_delete: Soft-delete several memories
- memory_consolidate: Run a consolidation sweep
- memory_graph_metrics: Graph metrics for a user
- memory_record_usage: Record that memories were used in a response
- memory_system_prompt: Build a personalized system prompt
- memory_stats: Engine statistics

Every tool returns a dictionary with ``success`` and either ``data`` or
``error``; tools never raise.
"""

import logging
from typing import Any, Optional

from coachmem.errors import MemoryNotFoundError, ValidationRejected
from coachmem.service import MemoryService
from coachmem.types.retrieval import ConversationContext

# MCP servers must never write to stdout (corrupts JSON-RPC)
logger = logging.getLogger(__name__)


class MemoryTools:
    """Tool implementations backed by a MemoryService.

    Args:
        service: The memory engine
    """

    def __init__(self, service: MemoryService) -> None:
        self._service = service

    async def memory_create(
        self,
        user_id: str,
        content: str,
        category: str,
        importance: float = 0.5,
        keywords: Optional[list[str]] = None,
        labels: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Store a memory directly.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Stored memory and the deduplication decision
            - error: Error message if operation failed
        """
        try:
            result = await self._service.create_memory_manual(
                user_id,
                content,
                category,
                importance=importance,
                keywords=keywords,
                labels=labels,
            )
            return {"success": True, "data": result.to_dict()}
        except ValidationRejected as e:
            logger.info(f"memory_create rejected content: {e}")
            return {"success": False, "error": str(e), "rule": e.rule}
        except Exception as e:
            logger.error(f"memory_create failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_submit_message(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Queue a chat message for background memory detection.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Queued task (None when there was nothing to queue)
            - error: Error message if operation failed
        """
        try:
            task = self._service.submit_message_for_detection(user_id, message, conversation_id)
            return {
                "success": True,
                "data": {"queued": task is not None, "task": task.to_dict() if task else None},
            }
        except Exception as e:
            logger.error(f"memory_submit_message failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_retrieve(
        self,
        user_id: str,
        query: str,
        max_results: Optional[int] = None,
        coaching_mode: str = "general",
        recent_topics: Optional[list[str]] = None,
        temporal_context: str = "recent",
        session_length: int = 0,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Retrieve the memories most relevant to a query.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Ranked memories with score breakdowns and reasons
            - error: Error message if operation failed
        """
        try:
            context = ConversationContext(
                coaching_mode=coaching_mode,
                recent_topics=recent_topics or [],
                temporal_context=temporal_context,
                session_length=session_length,
            )
            memories = await self._service.get_contextual_memories(
                user_id, query, context=context, max_results=max_results, timeout=timeout
            )
            return {
                "success": True,
                "data": {
                    "query": query,
                    "memories": [m.to_dict() for m in memories],
                    "total": len(memories),
                },
            }
        except Exception as e:
            logger.error(f"memory_retrieve failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_overview(self, user_id: str) -> dict[str, Any]:
        """Count a user's active memories per category.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Counts per category and total
            - error: Error message if operation failed
        """
        try:
            counts = await self._service.get_overview(user_id)
            return {
                "success": True,
                "data": {"categories": counts, "total": sum(counts.values())},
            }
        except Exception as e:
            logger.error(f"memory_overview failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_list(
        self,
        user_id: str,
        category: Optional[str] = None,
        include_inactive: bool = False,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """List a user's memories, most important first.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Memories and count
            - error: Error message if operation failed
        """
        try:
            memories = await self._service.list_memories(
                user_id, category=category, include_inactive=include_inactive, limit=limit
            )
            return {
                "success": True,
                "data": {
                    "memories": [m.to_dict() for m in memories],
                    "count": len(memories),
                },
            }
        except Exception as e:
            logger.error(f"memory_list failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_node(self, user_id: str, memory_id: str) -> dict[str, Any]:
        """Inspect a memory with its atomic facts and relationships.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Memory node
            - error: Error message if operation failed
        """
        try:
            node = await self._service.get_memory_node(user_id, memory_id)
            return {"success": True, "data": node.to_dict()}
        except MemoryNotFoundError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"memory_node failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_resolve(self, user_id: str, memory_id: str) -> dict[str, Any]:
        """Follow supersession links to the memory that currently holds the information.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Requested id and the resolved memory
            - error: Error message if operation failed
        """
        try:
            entry = await self._service.resolve_current(user_id, memory_id)
            return {
                "success": True,
                "data": {"requested_id": memory_id, "memory": entry.to_dict()},
            }
        except MemoryNotFoundError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"memory_resolve failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_delete(self, user_id: str, memory_id: str) -> dict[str, Any]:
        """Soft-delete one memory.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Whether the memory was active before
            - error: Error message if operation failed
        """
        try:
            changed = await self._service.delete_memory(user_id, memory_id)
            return {"success": True, "data": {"memory_id": memory_id, "deleted": changed}}
        except MemoryNotFoundError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"memory_delete failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_bulk_delete(self, user_id: str, memory_ids: list[str]) -> dict[str, Any]:
        """Soft-delete several memories; unknown ids are ignored.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Number of memories deleted
            - error: Error message if operation failed
        """
        try:
            deleted = await self._service.bulk_delete(user_id, memory_ids)
            return {
                "success": True,
                "data": {"requested": len(memory_ids), "deleted_count": deleted},
            }
        except Exception as e:
            logger.error(f"memory_bulk_delete failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_consolidate(self, user_id: str) -> dict[str, Any]:
        """Collapse duplicates and run a consolidation sweep for a user.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Consolidation report
            - error: Error message if operation failed
        """
        try:
            report = await self._service.consolidate(user_id)
            return {"success": True, "data": report.to_dict()}
        except Exception as e:
            logger.error(f"memory_consolidate failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_graph_metrics(self, user_id: str, refresh: bool = False) -> dict[str, Any]:
        """Graph metrics for a user's active memories.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Graph metrics snapshot
            - error: Error message if operation failed
        """
        try:
            metrics = await self._service.get_graph_metrics(user_id, refresh=refresh)
            return {"success": True, "data": metrics.model_dump(mode="json")}
        except Exception as e:
            logger.error(f"memory_graph_metrics failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_record_usage(
        self,
        user_id: str,
        memory_ids: list[str],
        conversation_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Record that memories were used in a response.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Number of access rows written
            - error: Error message if operation failed
        """
        try:
            recorded = await self._service.record_memory_usage(
                user_id, memory_ids, conversation_id=conversation_id
            )
            return {"success": True, "data": {"recorded": recorded}}
        except Exception as e:
            logger.error(f"memory_record_usage failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_system_prompt(
        self,
        user_id: str,
        query: str,
        persona: Optional[str] = None,
        max_results: Optional[int] = None,
        conversation_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Retrieve relevant memories and render them into a system prompt.

        The memories surfaced are recorded as used.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: The prompt and the ids of the memories it contains
            - error: Error message if operation failed
        """
        try:
            memories = await self._service.get_contextual_memories(
                user_id, query, max_results=max_results
            )
            prompt = self._service.build_system_prompt(memories, persona)
            if memories:
                await self._service.record_memory_usage(
                    user_id, memories, conversation_id=conversation_id
                )
            return {
                "success": True,
                "data": {
                    "system_prompt": prompt,
                    "memory_ids": [m.memory.id for m in memories],
                },
            }
        except Exception as e:
            logger.error(f"memory_system_prompt failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def memory_stats(self) -> dict[str, Any]:
        """Engine statistics.

        Returns:
            Dictionary with:
            - success: Boolean indicating operation success
            - data: Provider, cache and scheduler statistics
            - error: Error message if operation failed
        """
        try:
            return {"success": True, "data": self._service.stats()}
        except Exception as e:
            logger.error(f"memory_stats failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}
