"""Tests for the MCP tools and server.

This module tests:
- MemoryTools result dictionaries (success, data, error)
- Error mapping for rejected content and unknown memories
- Tool registration on the FastMCP server
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from coachmem.classification import HeuristicClassifier
from coachmem.config import CoachmemSettings
from coachmem.mcp_server import create_server
from coachmem.service import MemoryService
from coachmem.storage import SQLiteStore
from coachmem.tools import MemoryTools


@pytest.fixture
def service(settings: CoachmemSettings, store: SQLiteStore, clock) -> MemoryService:
    return MemoryService(settings, store=store, classifier=HeuristicClassifier(), clock=clock)


@pytest.fixture
def tools(service: MemoryService) -> MemoryTools:
    return MemoryTools(service)


# =============================================================================
# MemoryTools
# =============================================================================


class TestWritingTools:
    """Tests for memory_create and memory_submit_message."""

    @pytest.mark.asyncio
    async def test_memory_create_success(self, tools: MemoryTools) -> None:
        result = await tools.memory_create(
            "u1", "I am allergic to peanuts", "food_diet", importance=0.9
        )

        assert result["success"] is True
        data = result["data"]
        assert data["decision"]["action"] == "create"
        assert data["memory"]["content"] == "I am allergic to peanuts"
        assert data["memory"]["category"] == "food_diet"
        assert "embedding" not in data["memory"]

    @pytest.mark.asyncio
    async def test_memory_create_rejected(self, tools: MemoryTools) -> None:
        result = await tools.memory_create("u1", "I drink oatmeal every morning", "food_diet")

        assert result["success"] is False
        assert result["rule"] == "food_diet_incoherent"
        assert "rejected" in result["error"]

    @pytest.mark.asyncio
    async def test_memory_create_invalid_category(self, tools: MemoryTools) -> None:
        result = await tools.memory_create("u1", "I collect vintage stamps", "hobbies")

        assert result["success"] is False
        assert result["rule"] == "unknown_category"

    @pytest.mark.asyncio
    async def test_memory_submit_message(self, tools: MemoryTools) -> None:
        queued = await tools.memory_submit_message("u1", "Remember that I hate burpees", "c1")
        empty = await tools.memory_submit_message("u1", "   ")

        assert queued["success"] is True
        assert queued["data"]["queued"] is True
        assert queued["data"]["task"]["kind"] == "detect"
        assert empty["data"] == {"queued": False, "task": None}


class TestReadingTools:
    """Tests for retrieval, listing and inspection tools."""

    @pytest.mark.asyncio
    async def test_memory_retrieve(self, tools: MemoryTools) -> None:
        await tools.memory_create("u1", "I am allergic to peanuts", "food_diet", importance=0.9)
        await tools.memory_create("u1", "I prefer morning workouts", "preferences")

        result = await tools.memory_retrieve("u1", "allergic peanuts", coaching_mode="nutrition")

        assert result["success"] is True
        data = result["data"]
        assert data["query"] == "allergic peanuts"
        assert data["total"] == len(data["memories"]) >= 1
        top = data["memories"][0]
        assert top["memory"]["content"] == "I am allergic to peanuts"
        assert set(top["scores"]) == {"semantic", "temporal", "contextual", "graph", "combined"}

    @pytest.mark.asyncio
    async def test_memory_retrieve_invalid_context(self, tools: MemoryTools) -> None:
        result = await tools.memory_retrieve("u1", "sleep", temporal_context="yesterday")

        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_overview_and_list(self, tools: MemoryTools) -> None:
        await tools.memory_create("u1", "I am allergic to peanuts", "food_diet", importance=0.9)
        await tools.memory_create("u1", "I prefer morning workouts", "preferences")

        overview = await tools.memory_overview("u1")
        listing = await tools.memory_list("u1", category="food_diet")

        assert overview["data"]["total"] == 2
        assert overview["data"]["categories"]["food_diet"] == 1
        assert overview["data"]["categories"]["goals"] == 0
        assert listing["data"]["count"] == 1
        assert listing["data"]["memories"][0]["content"] == "I am allergic to peanuts"

    @pytest.mark.asyncio
    async def test_node_and_resolve(self, tools: MemoryTools) -> None:
        created = await tools.memory_create("u1", "I prefer morning workouts", "preferences")
        memory_id = created["data"]["memory"]["id"]

        node = await tools.memory_node("u1", memory_id)
        resolved = await tools.memory_resolve("u1", memory_id)

        assert node["data"]["memory"]["id"] == memory_id
        assert "aggregate_confidence" in node["data"]
        assert resolved["data"]["requested_id"] == memory_id
        assert resolved["data"]["memory"]["id"] == memory_id

    @pytest.mark.asyncio
    async def test_unknown_memory(self, tools: MemoryTools) -> None:
        node = await tools.memory_node("u1", "missing")
        resolved = await tools.memory_resolve("u1", "missing")

        assert node == {"success": False, "error": "Memory missing not found for user u1"}
        assert resolved["success"] is False

    @pytest.mark.asyncio
    async def test_system_prompt_records_usage(
        self, tools: MemoryTools, store: SQLiteStore
    ) -> None:
        created = await tools.memory_create(
            "u1", "I am allergic to peanuts", "food_diet", importance=0.9
        )
        memory_id = created["data"]["memory"]["id"]

        result = await tools.memory_system_prompt(
            "u1", "allergic peanuts", persona="You are a coach.", conversation_id="c1"
        )

        assert result["success"] is True
        assert result["data"]["memory_ids"] == [memory_id]
        assert result["data"]["system_prompt"].startswith("You are a coach.")
        assert store.get_memory(memory_id).access_count == 1

    @pytest.mark.asyncio
    async def test_system_prompt_without_memories(self, tools: MemoryTools) -> None:
        result = await tools.memory_system_prompt("u1", "hello", persona="You are a coach.")

        assert result["data"] == {"system_prompt": "You are a coach.", "memory_ids": []}


class TestMaintenanceTools:
    """Tests for deletion, consolidation, usage and stats tools."""

    @pytest.mark.asyncio
    async def test_delete_and_bulk_delete(self, tools: MemoryTools) -> None:
        ids = []
        for content in ("I prefer morning workouts", "I love swimming in the sea", "I hate burpees"):
            created = await tools.memory_create("u1", content, "preferences")
            ids.append(created["data"]["memory"]["id"])

        deleted = await tools.memory_delete("u1", ids[0])
        again = await tools.memory_delete("u1", ids[0])
        foreign = await tools.memory_delete("u2", ids[1])
        bulk = await tools.memory_bulk_delete("u1", ids[1:] + ["missing"])

        assert deleted["data"] == {"memory_id": ids[0], "deleted": True}
        assert again["data"]["deleted"] is False
        assert foreign["success"] is False
        assert bulk["data"] == {"requested": 3, "deleted_count": 2}

    @pytest.mark.asyncio
    async def test_consolidate_and_graph_metrics(self, tools: MemoryTools) -> None:
        await tools.memory_create("u1", "I prefer morning workouts", "preferences")

        report = await tools.memory_consolidate("u1")
        metrics = await tools.memory_graph_metrics("u1")

        assert report["success"] is True
        assert report["data"]["user_id"] == "u1"
        assert report["data"]["actions"] == []
        assert report["data"]["metrics"]["total_memories"] == 1
        assert metrics["data"]["total_memories"] == 1

    @pytest.mark.asyncio
    async def test_record_usage(self, tools: MemoryTools) -> None:
        created = await tools.memory_create("u1", "I prefer morning workouts", "preferences")
        memory_id = created["data"]["memory"]["id"]

        result = await tools.memory_record_usage("u1", [memory_id, "missing"], "c1")

        assert result == {"success": True, "data": {"recorded": 1}}

    @pytest.mark.asyncio
    async def test_memory_stats(self, tools: MemoryTools) -> None:
        result = await tools.memory_stats()

        assert result["success"] is True
        assert result["data"]["classification_backend"] == "heuristic"
        assert result["data"]["embedding_backend"] == "none"
        assert "scheduler" in result["data"]

    @pytest.mark.asyncio
    async def test_service_errors_are_returned(self) -> None:
        service = MagicMock()
        service.consolidate = AsyncMock(side_effect=RuntimeError("database is locked"))
        service.stats.side_effect = RuntimeError("boom")
        tools = MemoryTools(service)

        assert await tools.memory_consolidate("u1") == {
            "success": False,
            "error": "database is locked",
        }
        assert (await tools.memory_stats())["error"] == "boom"


# =============================================================================
# MCP Server Registration Tests
# =============================================================================


class TestMCPServerRegistration:
    """Tests for MCP server tool registration."""

    @pytest.mark.asyncio
    async def test_all_tools_are_registered(self, service: MemoryService) -> None:
        server = create_server(service)

        names = {tool.name for tool in await server.list_tools()}

        assert names == {
            "memory_create",
            "memory_submit_message",
            "memory_retrieve",
            "memory_overview",
            "memory_list",
            "memory_node",
            "memory_resolve",
            "memory_graph_metrics",
            "memory_system_prompt",
            "memory_delete",
            "memory_bulk_delete",
            "memory_consolidate",
            "memory_record_usage",
            "memory_stats",
        }

    def test_servers_do_not_share_state(self, service: MemoryService) -> None:
        first = create_server(service)
        second = create_server(service, MemoryTools(service))

        assert first is not second
        assert first.name == second.name == "coachmem"
