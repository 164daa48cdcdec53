"""MCP Client - Tool discovery and execution.

Discovers tools from the shop's MCP servers, falls back to a built-in
catalog search when none are reachable, and executes tool calls into one
normalized outcome shape.
"""

from mcp_client.client import MCPClient
from mcp_client.discovery import ToolCatalog, ToolRegistry
from mcp_client.executor import ToolExecutor
from mcp_client.fallback import CatalogSearchFallback
from mcp_client.sources import CapabilitySource, MCPCapabilitySource

__all__ = [
    "MCPClient",
    "ToolCatalog",
    "ToolRegistry",
    "ToolExecutor",
    "CatalogSearchFallback",
    "CapabilitySource",
    "MCPCapabilitySource",
]
