"""Model Gateway - LLM integration layer using LlamaIndex.

One streaming interface over interchangeable provider adapters:
- OpenAI / Azure OpenAI (function-call style tool calls)
- Anthropic (block-based tool use)
- Mock provider for tests and local runs

Every adapter turns the provider stream into the same event sequence:
TextDelta*, ToolCallRequest*, then exactly one TurnComplete.
"""

import json
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any, Optional, Union

from shared.config import LLMSettings
from shared.logging import get_logger
from shared.models import (
    GatewayEvent,
    TextDelta,
    ToolCallRequest,
    ToolDescriptor,
    ToolUseBlock,
    Turn,
    TurnComplete,
    TurnRole,
)
from orchestrator.prompts import PromptCatalog

logger = get_logger(__name__)


FAILED_RESPONSE_TEXT = "I'm having trouble processing that request."


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a provider object or its dict form."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _tool_call_blocks(response: Any) -> list[Any]:
    """Tool call blocks on a streamed chat response's message, in order."""
    blocks = _field(_field(response, "message"), "blocks") or []
    return [block for block in blocks if _field(block, "block_type") == "tool_call"]


class ToolCallBuffer:
    """Argument fragments received so far for one tool call."""

    def __init__(self) -> None:
        self.call_id: Optional[str] = None
        self.name: Optional[str] = None
        self.fragments: list[str] = []
        self.done = False

    @property
    def payload(self) -> str:
        return "".join(self.fragments)

    def parse(self) -> Optional[dict[str, Any]]:
        text = self.payload.strip()
        if not text:
            return None
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return None
        return value if isinstance(value, dict) else None


class ToolCallAccumulator:
    """
    Buffers streamed tool-call arguments per call.

    A call is released once its buffered arguments parse as a complete JSON
    object. Fragments arriving after release, and buffers still malformed
    when the call is closed, are discarded.
    """

    def __init__(self) -> None:
        self._buffers: dict[Any, ToolCallBuffer] = {}

    def open(self, key: Any, call_id: Optional[str] = None, name: Optional[str] = None) -> ToolCallBuffer:
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = self._buffers[key] = ToolCallBuffer()
        if call_id and not buffer.call_id:
            buffer.call_id = call_id
        if name and not buffer.name:
            buffer.name = name
        return buffer

    def feed(
        self,
        key: Any,
        fragment: str,
        call_id: Optional[str] = None,
        name: Optional[str] = None
    ) -> Optional[ToolCallRequest]:
        buffer = self.open(key, call_id, name)
        if buffer.done:
            if fragment.strip():
                logger.warning("Discarding fragment after complete tool call", tool=buffer.name)
            return None
        if fragment:
            buffer.fragments.append(fragment)
        return self._release(buffer, final=False)

    def close(self, key: Any) -> Optional[ToolCallRequest]:
        buffer = self._buffers.get(key)
        if buffer is None or buffer.done:
            return None
        return self._release(buffer, final=True)

    def drain(self) -> list[ToolCallRequest]:
        """Close every open call, in the order the calls were opened."""
        requests = []
        for key in list(self._buffers):
            request = self.close(key)
            if request is not None:
                requests.append(request)
        return requests

    def _release(self, buffer: ToolCallBuffer, final: bool) -> Optional[ToolCallRequest]:
        arguments = buffer.parse()
        if arguments is None and final and not buffer.payload.strip():
            arguments = {}

        if arguments is None or not buffer.name:
            if final:
                buffer.done = True
                logger.warning(
                    "Discarding incomplete tool call",
                    tool=buffer.name,
                    payload=buffer.payload[:200]
                )
            return None

        buffer.done = True
        return ToolCallRequest(
            call_id=buffer.call_id or f"call_{uuid.uuid4().hex[:24]}",
            name=buffer.name,
            input=arguments
        )


class ModelGateway(ABC):
    """
    Abstract base class for model providers.

    Adapters implement history normalization, tool formatting and the
    translation of raw provider stream chunks; the base class guarantees
    exactly one TurnComplete per `stream_turn` call.
    """

    provider = "base"

    def __init__(
        self,
        settings: Optional[LLMSettings] = None,
        prompts: Optional[PromptCatalog] = None,
        llm: Any = None
    ) -> None:
        self.settings = settings or LLMSettings()
        self.prompts = prompts or PromptCatalog()
        self._llm = llm

    def _get_llm(self) -> Any:
        """Lazy initialization of the LlamaIndex LLM."""
        if self._llm is None:
            self._llm = self._create_llm()
        return self._llm

    @abstractmethod
    def _create_llm(self) -> Any:
        pass

    @abstractmethod
    def _format_tool_calls(self, tool_uses: list[ToolUseBlock]) -> list[dict[str, Any]]:
        """Provider representation of the tool calls of an assistant turn."""
        pass

    @abstractmethod
    def format_tools(self, tools: list[ToolDescriptor]) -> list[dict[str, Any]]:
        """Provider representation of the available tools."""
        pass

    @abstractmethod
    def _stream_events(
        self,
        messages: list[Any],
        tools: list[dict[str, Any]]
    ) -> AsyncIterator[GatewayEvent]:
        """Translate the provider stream into gateway events."""
        pass

    def normalize(self, history: list[Turn]) -> list[Any]:
        """
        Convert conversation history to LlamaIndex chat messages.

        Internal annotations are dropped. Turns without visible content are
        skipped unless they carry tool calls or tool results, and tool calls
        and results are only sent when both halves are present.
        """
        from llama_index.core.llms import ChatMessage, MessageRole

        answered = {r.tool_use_id for turn in history for r in turn.tool_results}
        requested: set[str] = set()
        messages = []

        for turn in history:
            text = turn.visible_text
            results = [r for r in turn.tool_results if r.tool_use_id in requested]
            uses = [u for u in turn.tool_uses if u.id in answered]

            if results:
                for result in results:
                    messages.append(ChatMessage(
                        role=MessageRole.TOOL,
                        content=result.content,
                        additional_kwargs={"tool_call_id": result.tool_use_id}
                    ))
                continue

            if turn.role == TurnRole.ASSISTANT and uses:
                requested.update(u.id for u in uses)
                messages.append(ChatMessage(
                    role=MessageRole.ASSISTANT,
                    content=text,
                    additional_kwargs={"tool_calls": self._format_tool_calls(uses)}
                ))
                continue

            if not text or turn.role == TurnRole.TOOL:
                continue

            role = MessageRole.ASSISTANT if turn.role == TurnRole.ASSISTANT else MessageRole.USER
            messages.append(ChatMessage(role=role, content=text))

        return messages

    def system_message(self, prompt_type: Optional[str] = None) -> Any:
        from llama_index.core.llms import ChatMessage, MessageRole

        return ChatMessage(role=MessageRole.SYSTEM, content=self.prompts.get(prompt_type))

    async def stream_turn(
        self,
        history: list[Turn],
        tools: Optional[list[ToolDescriptor]] = None,
        prompt_type: Optional[str] = None
    ) -> AsyncIterator[GatewayEvent]:
        """
        Stream one model response.

        Args:
            history: Conversation so far
            tools: Tools the model may call
            prompt_type: System prompt selector

        Yields:
            TextDelta and ToolCallRequest events, then exactly one
            TurnComplete. A provider failure ends the stream with a
            TurnComplete built from the partial text and carrying the error.
        """
        messages = [self.system_message(prompt_type), *self.normalize(history)]
        provider_tools = self.format_tools(tools or [])

        text_parts: list[str] = []
        try:
            async with aclosing(self._stream_events(messages, provider_tools)) as events:
                async for event in events:
                    if isinstance(event, TextDelta):
                        text_parts.append(event.text)
                    yield event
                    if isinstance(event, TurnComplete):
                        return
        except Exception as e:
            logger.error("Model stream failed", provider=self.provider, error=str(e))
            yield TurnComplete(
                text="".join(text_parts) or FAILED_RESPONSE_TEXT,
                stop_reason="error",
                synthesized=True,
                error=str(e)
            )
            return

        logger.warning("Model stream ended without completion", provider=self.provider)
        yield TurnComplete(text="".join(text_parts), synthesized=True)


class OpenAIModelGateway(ModelGateway):
    """OpenAI chat completions with function calling."""

    provider = "openai"

    def _create_llm(self) -> Any:
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=self.settings.model,
            api_key=self.settings.api_key,
            api_base=self.settings.api_base,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )

    def _format_tool_calls(self, tool_uses: list[ToolUseBlock]) -> list[dict[str, Any]]:
        return [
            {
                "id": use.id,
                "type": "function",
                "function": {"name": use.name, "arguments": json.dumps(use.input)},
            }
            for use in tool_uses
        ]

    def format_tools(self, tools: list[ToolDescriptor]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in tools
        ]

    async def _stream_events(
        self,
        messages: list[Any],
        tools: list[dict[str, Any]]
    ) -> AsyncIterator[GatewayEvent]:
        llm = self._get_llm()
        kwargs = {"tools": tools} if tools else {}
        stream = await llm.astream_chat(messages, **kwargs)

        accumulator = ToolCallAccumulator()
        text_parts: list[str] = []

        async for response in stream:
            choices = _field(_field(response, "raw"), "choices") or []
            if not choices:
                text = _field(response, "delta")
                if text:
                    text_parts.append(text)
                    yield TextDelta(text=text)
                continue

            choice = choices[0]
            delta = _field(choice, "delta")

            content = _field(delta, "content")
            if content:
                text_parts.append(content)
                yield TextDelta(text=content)

            for call in _field(delta, "tool_calls") or []:
                function = _field(call, "function")
                request = accumulator.feed(
                    _field(call, "index", 0),
                    _field(function, "arguments") or "",
                    call_id=_field(call, "id"),
                    name=_field(function, "name")
                )
                if request is not None:
                    yield request

            finish_reason = _field(choice, "finish_reason")
            if finish_reason:
                for request in accumulator.drain():
                    yield request
                yield TurnComplete(text="".join(text_parts), stop_reason=finish_reason)
                return

        for request in accumulator.drain():
            yield request


class AzureOpenAIModelGateway(OpenAIModelGateway):
    """Azure OpenAI deployment of the OpenAI adapter."""

    provider = "azure_openai"

    def _create_llm(self) -> Any:
        from llama_index.llms.azure_openai import AzureOpenAI

        return AzureOpenAI(
            engine=self.settings.deployment_name or self.settings.model,
            model=self.settings.model,
            api_key=self.settings.api_key,
            azure_endpoint=self.settings.api_base,
            api_version=self.settings.api_version,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


class AnthropicModelGateway(ModelGateway):
    """Anthropic messages API with block-based tool use."""

    provider = "anthropic"

    def _create_llm(self) -> Any:
        from llama_index.llms.anthropic import Anthropic

        return Anthropic(
            model=self.settings.model,
            api_key=self.settings.api_key,
            base_url=self.settings.api_base,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )

    def _format_tool_calls(self, tool_uses: list[ToolUseBlock]) -> list[dict[str, Any]]:
        return [
            {"type": "tool_use", "id": use.id, "name": use.name, "input": use.input}
            for use in tool_uses
        ]

    def format_tools(self, tools: list[ToolDescriptor]) -> list[dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.input_schema,
            }
            for tool in tools
        ]

    async def _stream_events(
        self,
        messages: list[Any],
        tools: list[dict[str, Any]]
    ) -> AsyncIterator[GatewayEvent]:
        llm = self._get_llm()
        kwargs = {"tools": tools} if tools else {}
        stream = await llm.astream_chat(messages, **kwargs)

        accumulator = ToolCallAccumulator()
        text_parts: list[str] = []
        stop_reason = "end_turn"

        async for response in stream:
            event = _field(response, "raw")
            event_type = _field(event, "type")

            if event_type is None:
                text = _field(response, "delta")
                if text:
                    text_parts.append(text)
                    yield TextDelta(text=text)
                continue

            # Tool call ids and names only surface as blocks on the message;
            # the block being streamed is always the last one.
            calls = _tool_call_blocks(response)

            if event_type == "content_block_delta":
                delta = _field(event, "delta")
                delta_type = _field(delta, "type")
                if delta_type == "text_delta":
                    text = _field(delta, "text") or ""
                    if text:
                        text_parts.append(text)
                        yield TextDelta(text=text)
                elif delta_type == "input_json_delta" and calls:
                    call = calls[-1]
                    request = accumulator.feed(
                        call.tool_call_id,
                        _field(delta, "partial_json") or "",
                        call_id=call.tool_call_id,
                        name=call.tool_name,
                    )
                    if request is not None:
                        yield request

            elif event_type == "content_block_stop":
                for call in calls:
                    accumulator.open(call.tool_call_id, call.tool_call_id, call.tool_name)
                    request = accumulator.close(call.tool_call_id)
                    if request is not None:
                        yield request

            elif event_type == "message_delta":
                additional = _field(_field(response, "message"), "additional_kwargs") or {}
                stop_reason = (
                    _field(_field(event, "delta"), "stop_reason")
                    or additional.get("stop_reason")
                    or stop_reason
                )

        for request in accumulator.drain():
            yield request
        yield TurnComplete(text="".join(text_parts), stop_reason=stop_reason)


ScriptedEvent = Union[GatewayEvent, Exception]


class MockModelGateway(OpenAIModelGateway):
    """Scripted provider for testing without API calls."""

    provider = "mock"

    def __init__(
        self,
        settings: Optional[LLMSettings] = None,
        prompts: Optional[PromptCatalog] = None
    ) -> None:
        super().__init__(settings, prompts)
        self.call_history: list[dict[str, Any]] = []
        self._rounds: deque[list[ScriptedEvent]] = deque()

    def queue_round(self, *events: ScriptedEvent) -> None:
        """
        Script the next response.

        Exceptions in the script are raised at their position.
        """
        self._rounds.append(list(events))

    def _create_llm(self) -> Any:
        return None

    async def _stream_events(
        self,
        messages: list[Any],
        tools: list[dict[str, Any]]
    ) -> AsyncIterator[GatewayEvent]:
        self.call_history.append({"messages": messages, "tools": tools})

        if not self._rounds:
            text = "This is a mock response."
            yield TextDelta(text=text)
            yield TurnComplete(text=text)
            return

        for event in self._rounds.popleft():
            if isinstance(event, Exception):
                raise event
            yield event


def create_model_gateway(
    settings: LLMSettings,
    prompts: Optional[PromptCatalog] = None
) -> ModelGateway:
    """
    Factory function to create the configured Model Gateway.

    Supports:
    - anthropic: Anthropic messages API
    - openai: OpenAI API
    - azure_openai: Azure OpenAI Service
    - mock: Scripted provider for testing

    Raises:
        ValueError: If provider is not supported
    """
    providers: dict[str, type[ModelGateway]] = {
        "anthropic": AnthropicModelGateway,
        "openai": OpenAIModelGateway,
        "azure_openai": AzureOpenAIModelGateway,
        "mock": MockModelGateway,
    }

    gateway_class = providers.get(settings.provider)
    if not gateway_class:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(providers.keys())}"
        )

    logger.info("Creating model gateway", provider=settings.provider, model=settings.model)
    return gateway_class(settings, prompts)
