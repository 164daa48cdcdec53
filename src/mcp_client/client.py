"""MCP Client for tool discovery and execution.

Speaks JSON-RPC 2.0 over HTTP to a Model Context Protocol server.
Handles authentication, request formatting, and error mapping.
"""

import json
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.logging import get_logger

logger = get_logger(__name__)


PROTOCOL_VERSION = "2024-11-05"


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """The MCP server could not be reached."""
    pass


class MCPAuthError(MCPClientError):
    """Authentication failed."""
    pass


class MCPProtocolError(MCPClientError):
    """The server answered with a JSON-RPC error or an unreadable body."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class MCPClient:
    """
    JSON-RPC client for a single MCP server endpoint.

    Provides methods for:
    - Listing the server's tools
    - Calling a tool

    Responses may come back as plain JSON or as a Server-Sent Events body.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        auth_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        """
        Initialize MCP Client.

        Args:
            endpoint: Full URL of the MCP endpoint
            timeout: Request timeout in seconds
            auth_token: Optional bearer token
            http_client: Optional shared HTTP client (not closed by this client)
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self._auth_token = auth_token
        self._client = http_client
        self._owns_client = http_client is None
        self._request_id = 0

    def _get_headers(self) -> dict[str, str]:
        """Get request headers including authentication."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "MCPClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        """Read a JSON-RPC response from a JSON or SSE body."""
        content_type = response.headers.get("content-type", "")

        if "text/event-stream" in content_type:
            message: dict[str, Any] = {}
            for line in response.text.splitlines():
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if not payload:
                    continue
                try:
                    data = json.loads(payload)
                except json.JSONDecodeError:
                    logger.warning("Skipping unparseable SSE data", data=payload[:100])
                    continue
                if isinstance(data, dict) and ("result" in data or "error" in data):
                    message = data
            if not message:
                raise MCPProtocolError("Empty event stream from MCP server")
            return message

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise MCPProtocolError(f"Invalid JSON from MCP server: {e}")
        if not isinstance(data, dict):
            raise MCPProtocolError("Unexpected JSON-RPC response shape")
        return data

    async def request(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        Send a JSON-RPC request and return its result.

        Raises:
            MCPConnectionError: If the server is unreachable or failing
            MCPAuthError: If authentication fails
            MCPProtocolError: If the server answers with an error
        """
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": params or {},
        }

        try:
            client = await self._get_client()
            response = await client.post(
                self.endpoint,
                json=payload,
                headers=self._get_headers()
            )
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise MCPConnectionError(f"Cannot connect to MCP server at {self.endpoint}: {e}")
        except httpx.TransportError as e:
            raise MCPConnectionError(f"Transport error talking to {self.endpoint}: {e}")

        if response.status_code in (401, 403):
            raise MCPAuthError(f"MCP server rejected credentials ({response.status_code})")
        if response.status_code >= 500:
            raise MCPConnectionError(f"MCP server unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise MCPClientError(f"MCP request failed ({response.status_code})")

        data = self._parse_body(response)

        error = data.get("error")
        if error:
            if isinstance(error, dict):
                raise MCPProtocolError(error.get("message", str(error)), error.get("code"))
            raise MCPProtocolError(str(error))

        return data.get("result")

    async def initialize(self) -> dict[str, Any]:
        """
        Open the MCP session.

        Returns:
            The server's declared info and capabilities
        """
        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "shop-chat-agent", "version": "0.1.0"},
        })
        return result if isinstance(result, dict) else {}

    @retry(
        retry=retry_if_exception_type(MCPConnectionError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True
    )
    async def list_tools(self) -> list[dict[str, Any]]:
        """
        List tools offered by the server.

        Returns:
            Raw MCP tool definitions (name, description, inputSchema)
        """
        result = await self.request("tools/list")
        if not isinstance(result, dict):
            return []
        return result.get("tools", []) or []

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """
        Call a tool on the server.

        Not retried: a tool call may have side effects.

        Returns:
            The raw tool result (typically a dict with a content array)
        """
        logger.debug("Calling MCP tool", tool=name, endpoint=self.endpoint)
        return await self.request("tools/call", {"name": name, "arguments": arguments})
