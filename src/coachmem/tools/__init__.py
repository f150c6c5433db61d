"""MCP tools module for Coachmem.

Tool implementations are grouped in a class with the MemoryService injected
via the constructor, so the same methods back the MCP server and the
``--call`` command-line mode.

Example:
    >>> from coachmem.tools import MemoryTools
    >>> tools = MemoryTools(service)
    >>> result = await tools.memory_overview("u1")
"""

from coachmem.tools.memory_tools import MemoryTools

__all__ = ["MemoryTools"]
