"""Shared fixtures for the test suite."""

from typing import Any, Optional

import pytest

from shared.models import RequestContext, ToolDescriptor
from mcp_client.sources import CapabilitySource


class FakeSource(CapabilitySource):
    """In-process capability source."""

    def __init__(
        self,
        name: str = "storefront",
        tools: Optional[list[ToolDescriptor]] = None,
        results: Optional[dict[str, Any]] = None,
        connect_error: Optional[Exception] = None,
        invoke_error: Optional[Exception] = None
    ) -> None:
        self.name = name
        self.tools = tools or []
        self.results = results or {}
        self.connect_error = connect_error
        self.invoke_error = invoke_error
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def connect(self, context: RequestContext) -> list[ToolDescriptor]:
        if self.connect_error:
            raise self.connect_error
        return list(self.tools)

    async def invoke(self, name: str, tool_input: dict[str, Any]) -> Any:
        self.calls.append((name, tool_input))
        if self.invoke_error:
            raise self.invoke_error
        return self.results.get(name)

    async def close(self) -> None:
        self.closed = True


def search_tool(name: str = "search_shop_catalog") -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description="Search products",
        input_schema={
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    )


@pytest.fixture
def context() -> RequestContext:
    return RequestContext(conversation_id="conv-1", shop="example.myshopify.com")


@pytest.fixture
def make_orchestrator():
    """Build a ChatOrchestrator around a mock gateway and in-memory store."""
    from shared.config import ChatSettings
    from mcp_client.discovery import ToolRegistry
    from orchestrator.conversation import InMemoryConversationStore
    from orchestrator.engine import ChatOrchestrator
    from orchestrator.llm import MockModelGateway

    def _build(sources=None, fallback=None, store=None, settings=None):
        return ChatOrchestrator(
            gateway=MockModelGateway(),
            store=store or InMemoryConversationStore(),
            registry=ToolRegistry(lambda ctx: list(sources or [])),
            fallback=fallback,
            settings=settings or ChatSettings()
        )

    return _build


async def collect(orchestrator, context: RequestContext, message: str) -> list:
    return [event async for event in orchestrator.run_turn(context, message)]
