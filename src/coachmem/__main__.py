"""MCP server entry point for Coachmem.

This module provides the main entry point for the Coachmem MCP server with:
- CLI argument parsing (overrides for COACHMEM_* settings)
- Component initialization in dependency order
- A direct tool-call mode for scripting
- Signal handling for graceful shutdown
- Logging to stderr (CRITICAL for MCP stdio)

Usage:
    python -m coachmem [options]

    Options:
        --sqlite-path PATH            SQLite database path (':memory:' for ephemeral)
        --embedding-backend NAME      Embedding backend: ollama, openai or none
        --classification-backend NAME Classification backend: ollama, openai,
                                      heuristic or disabled
        --log-level LEVEL             Logging level (default: from settings)
        --call TOOL --args JSON       Call one tool, print JSON and exit

CRITICAL: MCP servers using stdio transport must NEVER write to stdout
as it corrupts JSON-RPC messages. All logging goes to stderr.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Optional

from coachmem.config import CoachmemSettings

logger = logging.getLogger(__name__)


def setup_logging(log_level: str) -> None:
    """Configure logging to stderr (never stdout for MCP servers).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,  # Critical: never use stdout in MCP servers
    )

    logger.info(f"Logging initialized at {log_level.upper()} level")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments.

    Every option is optional; unset options fall back to COACHMEM_*
    environment variables (or .env) through CoachmemSettings.

    Args:
        argv: Argument list (defaults to sys.argv)

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="coachmem",
        description="Coachmem MCP server: personalization memory for coaching assistants",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Direct tool call mode
    parser.add_argument(
        "--call",
        type=str,
        metavar="TOOL_NAME",
        help="Call a tool directly, print its JSON result and exit",
    )
    parser.add_argument(
        "--args",
        type=str,
        default="{}",
        help="JSON arguments for --call mode",
    )

    parser.add_argument(
        "--sqlite-path",
        type=str,
        default=None,
        help="SQLite database path (from COACHMEM_SQLITE_PATH)",
    )
    parser.add_argument(
        "--embedding-backend",
        type=str,
        default=None,
        choices=["ollama", "openai", "none"],
        help="Embedding backend (from COACHMEM_EMBEDDING_BACKEND)",
    )
    parser.add_argument(
        "--classification-backend",
        type=str,
        default=None,
        choices=["ollama", "openai", "heuristic", "disabled"],
        help="Classification backend (from COACHMEM_CLASSIFICATION_BACKEND)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (from COACHMEM_LOG_LEVEL)",
    )

    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> CoachmemSettings:
    """Build settings from the environment with CLI overrides applied."""
    overrides: dict[str, Any] = {}
    if args.sqlite_path:
        overrides["sqlite_path"] = args.sqlite_path
    if args.embedding_backend:
        overrides["embedding_backend"] = args.embedding_backend
    if args.classification_backend:
        overrides["classification_backend"] = args.classification_backend
    if args.log_level:
        overrides["log_level"] = args.log_level
    return CoachmemSettings(**overrides)


def initialize_components(settings: CoachmemSettings) -> dict[str, Any]:
    """Initialize all components in dependency order.

    Initialization order follows the dependency graph:
    1. SQLiteStore (single source of truth for all storage)
    2. Embedding provider
    3. Classification provider
    4. MemoryService (pipeline components and background scheduler)
    5. MemoryTools

    Args:
        settings: Engine settings

    Returns:
        Dictionary containing all initialized components

    Raises:
        Exception: If any component initialization fails
    """
    logger.info("Initializing components...")
    components: dict[str, Any] = {"settings": settings}

    try:
        logger.info(f"Initializing SQLiteStore at {settings.get_sqlite_path()}")
        from coachmem.storage import SQLiteStore

        store = SQLiteStore(db_path=settings.get_sqlite_path())
        components["store"] = store

        logger.info(f"Initializing embedding provider (backend={settings.embedding_backend})")
        from coachmem.embedding import provider_from_settings

        embedder = provider_from_settings(settings)
        components["embedder"] = embedder

        logger.info(
            f"Initializing classification provider (backend={settings.classification_backend})"
        )
        from coachmem.classification import create_classification_provider

        classifier = create_classification_provider(settings)
        components["classifier"] = classifier

        logger.info("Initializing MemoryService")
        from coachmem.service import MemoryService

        service = MemoryService(
            settings, store=store, embedder=embedder, classifier=classifier
        )
        components["service"] = service

        logger.info("Initializing MemoryTools")
        from coachmem.tools import MemoryTools

        components["memory_tools"] = MemoryTools(service)

        logger.info("All components initialized successfully")
        return components

    except Exception as e:
        logger.error(f"Failed to initialize components: {e}", exc_info=True)
        raise


def close_components(components: dict[str, Any]) -> None:
    """Release the resources created by initialize_components."""
    components["embedder"].close()
    components["store"].close()


def handle_shutdown(signum: int, _frame: Any) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown.

    Args:
        signum: Signal number
        _frame: Current stack frame
    """
    logger.info(f"Received signal {signum}, shutting down gracefully...")
    sys.exit(0)


def call_tool_directly(args: argparse.Namespace, settings: CoachmemSettings) -> int:
    """Call a tool directly and print its JSON result to stdout.

    Background work triggered by the tool (detection, enrichment) is drained
    before the process exits.

    Args:
        args: Parsed CLI arguments with --call and --args
        settings: Engine settings

    Returns:
        Process exit code
    """
    try:
        tool_args = json.loads(args.args)
    except json.JSONDecodeError as e:
        print(json.dumps({"success": False, "error": f"Invalid JSON args: {e}"}))
        return 1

    components = initialize_components(settings)
    service = components["service"]
    memory_tools = components["memory_tools"]

    tool_map = {
        name: getattr(memory_tools, name)
        for name in dir(memory_tools)
        if name.startswith("memory_")
    }
    if args.call not in tool_map:
        print(json.dumps({"success": False, "error": f"Unknown tool: {args.call}"}))
        close_components(components)
        return 1

    method = tool_map[args.call]

    async def run_tool() -> dict[str, Any]:
        service.start()
        try:
            result = await method(**tool_args)
            await service.wait_idle()
            return result
        except TypeError as e:
            return {"success": False, "error": f"Invalid arguments: {e}"}
        finally:
            await service.stop()
            await components["classifier"].close()

    try:
        result = asyncio.run(run_tool())
    finally:
        close_components(components)
    print(json.dumps(result, default=str))
    return 0 if result.get("success") else 1


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the MCP server.

    Workflow:
    1. Parse CLI arguments and load settings
    2. Setup logging to stderr
    3. Initialize components
    4. Register signal handlers
    5. Run MCP server with stdio transport
    """
    args = parse_arguments(argv)
    settings = load_settings(args)

    if args.call:
        setup_logging("WARNING")  # Quiet logging for --call mode
        sys.exit(call_tool_directly(args, settings))

    setup_logging(settings.log_level)

    logger.info("Starting Coachmem MCP Server...")
    logger.info(
        f"Configuration: embedding_backend={settings.embedding_backend}, "
        f"classification_backend={settings.classification_backend}"
    )

    try:
        components = initialize_components(settings)

        from coachmem.mcp_server import create_server

        mcp = create_server(components["service"], components["memory_tools"])

        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        logger.info("MCP server ready, starting stdio transport...")

        # Blocks until the server shuts down; the lifespan stops the service
        mcp.run(transport="stdio")

    except Exception as e:
        logger.error(f"Server failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
