"""Capability sources: external servers that expose callable tools."""

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from shared.config import ShopifySettings
from shared.logging import get_logger
from shared.models import RequestContext, ToolDescriptor
from mcp_client.client import MCPClient, MCPConnectionError, MCPProtocolError

logger = get_logger(__name__)


class CapabilitySource(ABC):
    """
    A provider of tools for one chat session.

    Instances are created per session; `connect` is called once with the
    request context and returns the tools this source offers.
    """

    name: str = "source"

    @abstractmethod
    async def connect(self, context: RequestContext) -> list[ToolDescriptor]:
        """Discover the tools this source offers."""
        pass

    @abstractmethod
    async def invoke(self, name: str, tool_input: dict[str, Any]) -> Any:
        """Run a tool and return its raw result."""
        pass

    async def close(self) -> None:
        """Release any resources held by the source."""
        return None


class MCPCapabilitySource(CapabilitySource):
    """Tools served by an MCP server over JSON-RPC."""

    def __init__(
        self,
        name: str,
        endpoint: str,
        timeout: float = 30.0,
        auth_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.name = name
        self.endpoint = endpoint
        self.timeout = timeout
        self.auth_token = auth_token
        self._http_client = http_client
        self._client: Optional[MCPClient] = None

    async def connect(self, context: RequestContext) -> list[ToolDescriptor]:
        self._client = MCPClient(
            endpoint=self.endpoint,
            timeout=self.timeout,
            auth_token=self.auth_token,
            http_client=self._http_client
        )
        try:
            await self._client.initialize()
        except MCPProtocolError as e:
            # Stateless servers may not implement the handshake
            logger.debug("MCP initialize rejected", source=self.name, error=str(e))
        raw_tools = await self._client.list_tools()

        descriptors = []
        for tool in raw_tools:
            if not isinstance(tool, dict) or not tool.get("name"):
                continue
            schema = tool.get("inputSchema") or tool.get("input_schema") or {
                "type": "object",
                "properties": {},
            }
            descriptors.append(ToolDescriptor(
                name=tool["name"],
                description=tool.get("description", ""),
                input_schema=schema,
                source=self.name
            ))
        return descriptors

    async def invoke(self, name: str, tool_input: dict[str, Any]) -> Any:
        if self._client is None:
            raise MCPConnectionError(f"Source '{self.name}' is not connected")
        return await self._client.call_tool(name, tool_input)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def build_capability_sources(
    settings: ShopifySettings,
    context: RequestContext,
    http_client: Optional[httpx.AsyncClient] = None
) -> list[CapabilitySource]:
    """
    Create the capability sources for one shop.

    The storefront server is always tried; the customer account server only
    when an endpoint is configured.
    """
    sources: list[CapabilitySource] = [
        MCPCapabilitySource(
            name="storefront",
            endpoint=f"{context.host_url}{settings.storefront_mcp_path}",
            timeout=settings.mcp_timeout,
            http_client=http_client
        )
    ]

    if settings.customer_mcp_url:
        sources.append(MCPCapabilitySource(
            name="customer",
            endpoint=settings.customer_mcp_url.format(shop=context.shop),
            timeout=settings.mcp_timeout,
            auth_token=settings.customer_access_token,
            http_client=http_client
        ))

    return sources
