"""Chat Orchestrator - core turn loop.

The orchestrator coordinates, for one user message:
- Conversation history (load, de-duplicate, persist)
- Tool discovery and execution via the tool registry
- Model streaming via the Model Gateway
- Loop and duplicate-call guards
- The ordered event sequence sent to the client
"""

import asyncio
import hashlib
import json
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from shared.config import ChatSettings
from shared.logging import bind_context, get_logger, unbind_context
from shared.models import (
    ChatEvent,
    RequestContext,
    TextBlock,
    TextDelta,
    ToolCallRequest,
    ToolDescriptor,
    ToolInvocation,
    ToolOutcome,
    ToolUseBlock,
    Turn,
    TurnComplete,
    TurnRole,
)
from mcp_client.discovery import ToolRegistry
from mcp_client.executor import ToolExecutor
from mcp_client.fallback import CatalogSearchFallback
from orchestrator.conversation import ConversationLocks, ConversationStore, load_history
from orchestrator.llm import FAILED_RESPONSE_TEXT, ModelGateway

logger = get_logger(__name__)


TOOL_LIMIT_MESSAGE = (
    "I wasn't able to find what you're looking for after several searches. "
    "Could you rephrase your request or tell me a bit more about what you need?"
)

DUPLICATE_CALL_MESSAGE = (
    "This exact request was already made earlier in this conversation. "
    "Do not repeat it. Answer with the information you already have, or ask "
    "the customer for different details."
)


def fingerprint(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Canonical signature of a tool call."""
    canonical = json.dumps(tool_input, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{tool_name}\x00{canonical}".encode()).hexdigest()


@dataclass
class SessionGuard:
    """
    Anti-runaway state for one turn.

    Every tool-call request counts as an attempt, whether it is executed or
    blocked as a duplicate; a request beyond either cap ends the turn.
    """
    max_calls_per_tool: int = 2
    max_total_calls: int = 5
    per_tool: Counter = field(default_factory=Counter)
    total: int = 0
    seen: set[str] = field(default_factory=set)

    def is_duplicate(self, call_fingerprint: str) -> bool:
        return call_fingerprint in self.seen

    def remember(self, call_fingerprint: str) -> None:
        self.seen.add(call_fingerprint)

    def record_attempt(self, tool_name: str) -> bool:
        """Count an attempt; False once a cap is exceeded."""
        self.per_tool[tool_name] += 1
        self.total += 1
        return (
            self.per_tool[tool_name] <= self.max_calls_per_tool
            and self.total <= self.max_total_calls
        )


@dataclass
class _Round:
    """Bookkeeping for one streamed model response."""
    text: list[str] = field(default_factory=list)
    streamed_text: bool = False
    continuation: bool = False
    stopped: bool = False

    def take_text(self) -> str:
        text = "".join(self.text)
        self.text.clear()
        return text


class ChatOrchestrator:
    """
    Drives one chat turn from user message to end of turn.

    Responsibilities:
    1. Serialize turns per conversation
    2. Load and de-duplicate history, persist every new turn
    3. Stream model output and forward it unbuffered
    4. Execute requested tools, blocking duplicates and enforcing caps
    5. Always finish with end_turn
    """

    def __init__(
        self,
        gateway: ModelGateway,
        store: ConversationStore,
        registry: ToolRegistry,
        fallback: Optional[CatalogSearchFallback] = None,
        settings: Optional[ChatSettings] = None,
        locks: Optional[ConversationLocks] = None
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            gateway: Model Gateway used for every model round
            store: Conversation store
            registry: Tool registry used for per-request discovery
            fallback: Catalog search used when capability sources are missing
            settings: Chat settings (caps, history window, products)
            locks: Per-conversation locks, shareable between instances
        """
        self.gateway = gateway
        self.store = store
        self.registry = registry
        self.fallback = fallback
        self.settings = settings or ChatSettings()
        self.locks = locks or ConversationLocks()

    async def run_turn(self, context: RequestContext, user_message: str) -> AsyncIterator[ChatEvent]:
        """
        Process one user message.

        Yields:
            chunk, tool_use, products and message_complete events, ending
            with end_turn. The session id event is the transport's concern.
        """
        conversation_id = context.conversation_id
        bind_context(conversation_id=conversation_id)
        try:
            async with self.locks.hold(conversation_id):
                logger.info("Processing message", shop=context.shop, prompt_type=context.prompt_type)
                history = await self._start_history(conversation_id, user_message)

                catalog = await self.registry.discover(context)
                try:
                    executor = ToolExecutor(catalog, self.fallback, self.settings.max_products)
                    async for event in self._converse(context, history, catalog.descriptors, executor):
                        yield event
                finally:
                    await catalog.aclose()

            yield ChatEvent.end_turn()
        finally:
            unbind_context("conversation_id")

    async def get_history(self, conversation_id: str) -> list[Turn]:
        """Persisted turns of a conversation, with repeats collapsed."""
        return await load_history(self.store, conversation_id)

    async def _start_history(self, conversation_id: str, user_message: str) -> list[Turn]:
        user_turn = Turn.text(TurnRole.USER, user_message)
        await self._persist(conversation_id, user_turn)

        try:
            history = await load_history(self.store, conversation_id, self.settings.history_limit)
        except Exception as e:
            logger.error("Failed to load history", error=str(e))
            history = []

        # The write above may have failed
        if not history or history[-1].dedupe_key() != user_turn.dedupe_key():
            history.append(user_turn)
        return history

    async def _converse(
        self,
        context: RequestContext,
        history: list[Turn],
        tools: list[ToolDescriptor],
        executor: ToolExecutor
    ) -> AsyncIterator[ChatEvent]:
        conversation_id = context.conversation_id
        guard = SessionGuard(self.settings.max_calls_per_tool, self.settings.max_total_tool_calls)
        products: list[dict[str, Any]] = []
        iteration = 0

        while True:
            iteration += 1
            current = _Round()
            completion: Optional[TurnComplete] = None

            stream = self.gateway.stream_turn(history, tools, context.prompt_type)
            try:
                async with aclosing(stream) as events:
                    async for event in events:
                        if isinstance(event, TextDelta):
                            current.text.append(event.text)
                            current.streamed_text = True
                            yield ChatEvent.text_chunk(event.text)

                        elif isinstance(event, ToolCallRequest):
                            yield ChatEvent.tool_use(event.name, event.input)
                            async for out in self._handle_tool_call(
                                conversation_id, history, event, current, guard, executor, products
                            ):
                                yield out
                            if current.stopped:
                                break

                        elif isinstance(event, TurnComplete):
                            completion = event
            except Exception as e:
                logger.error("Model stream aborted", iteration=iteration, error=str(e))
                completion = TurnComplete(
                    text="".join(current.text) or FAILED_RESPONSE_TEXT,
                    stop_reason="error",
                    synthesized=True,
                    error=str(e)
                )

            if current.stopped:
                logger.warning(
                    "Tool call limit reached",
                    iteration=iteration,
                    total_calls=guard.total,
                    per_tool=dict(guard.per_tool)
                )
                return

            if completion is None:
                completion = TurnComplete(text="".join(current.text), synthesized=True)

            async for out in self._complete_round(conversation_id, history, current, completion, products):
                yield out

            if completion.failed or not current.continuation:
                return

    async def _handle_tool_call(
        self,
        conversation_id: str,
        history: list[Turn],
        request: ToolCallRequest,
        current: _Round,
        guard: SessionGuard,
        executor: ToolExecutor,
        products: list[dict[str, Any]]
    ) -> AsyncIterator[ChatEvent]:
        blocks: list[Any] = []
        text = current.take_text()
        if text:
            blocks.append(TextBlock(text=text))
        blocks.append(ToolUseBlock(id=request.call_id, name=request.name, input=request.input))
        await self._append(conversation_id, history, Turn(role=TurnRole.ASSISTANT, content=blocks))

        call_fingerprint = fingerprint(request.name, request.input)

        if guard.is_duplicate(call_fingerprint):
            logger.info("Duplicate tool call blocked", tool=request.name)
            blocked = ToolOutcome.failure(request.name, "duplicate_search_blocked", DUPLICATE_CALL_MESSAGE)
            await self._resolve(conversation_id, history, request, blocked)
            if guard.record_attempt(request.name):
                current.continuation = True
                return
        elif guard.record_attempt(request.name):
            guard.remember(call_fingerprint)
            await self._run_tool(conversation_id, history, request, executor, products)
            current.continuation = True
            return
        else:
            limited = ToolOutcome.failure(
                request.name, "tool_limit_reached", "Tool call limit reached for this conversation turn."
            )
            await self._resolve(conversation_id, history, request, limited)

        current.stopped = True
        fallback_turn = Turn.text(TurnRole.ASSISTANT, TOOL_LIMIT_MESSAGE)
        await self._append(conversation_id, history, fallback_turn)
        yield ChatEvent.text_chunk(TOOL_LIMIT_MESSAGE)
        if products:
            yield ChatEvent.product_list(list(products))
            products.clear()
        yield ChatEvent.message_complete()

    async def _run_tool(
        self,
        conversation_id: str,
        history: list[Turn],
        request: ToolCallRequest,
        executor: ToolExecutor,
        products: list[dict[str, Any]]
    ) -> None:
        """
        Execute a tool and record its outcome.

        Runs as its own task so that a client disconnect does not cancel a
        call in flight: the outcome is still persisted before the
        cancellation propagates.
        """
        task = asyncio.ensure_future(
            self._execute_and_record(conversation_id, history, request, executor, products)
        )
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning("Turn cancelled during tool execution, finishing call", tool=request.name)
            await asyncio.wait({task})
            raise

    async def _execute_and_record(
        self,
        conversation_id: str,
        history: list[Turn],
        request: ToolCallRequest,
        executor: ToolExecutor,
        products: list[dict[str, Any]]
    ) -> ToolOutcome:
        logger.info("Executing tool", tool=request.name, call_id=request.call_id)
        try:
            outcome = await executor.execute(request.name, request.input, products)
        except Exception as e:
            logger.error("Tool execution failed", tool=request.name, error=str(e))
            outcome = ToolOutcome.failure(request.name, "execution_error", str(e))

        await self._resolve(conversation_id, history, request, outcome)
        return outcome

    async def _resolve(
        self,
        conversation_id: str,
        history: list[Turn],
        request: ToolCallRequest,
        outcome: ToolOutcome
    ) -> ToolInvocation:
        """Record the single outcome of a requested call as a tool turn."""
        invocation = ToolInvocation(
            call_id=request.call_id,
            tool_name=request.name,
            input=request.input,
            outcome=outcome
        )
        turn = Turn(role=TurnRole.TOOL, content=[outcome.to_result_block(invocation.call_id)])
        await self._append(conversation_id, history, turn)
        return invocation

    async def _complete_round(
        self,
        conversation_id: str,
        history: list[Turn],
        current: _Round,
        completion: TurnComplete,
        products: list[dict[str, Any]]
    ) -> AsyncIterator[ChatEvent]:
        text = current.take_text()

        # Nothing reached the client yet, so the completion text is all it gets
        if not current.streamed_text and not current.continuation and completion.text:
            text = completion.text
            yield ChatEvent.text_chunk(text)

        if text:
            await self._append(conversation_id, history, Turn.text(TurnRole.ASSISTANT, text))

        if products:
            logger.info("Sending products", count=len(products))
            yield ChatEvent.product_list(list(products))
            products.clear()

        yield ChatEvent.message_complete()

    async def _append(self, conversation_id: str, history: list[Turn], turn: Turn) -> None:
        history.append(turn)
        await self._persist(conversation_id, turn)

    async def _persist(self, conversation_id: str, turn: Turn) -> None:
        """Write a turn; failures are retried, then logged without interrupting the turn."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.persist_attempts),
                wait=wait_exponential(multiplier=0.05, max=1),
                reraise=True
            ):
                with attempt:
                    await self.store.append(
                        conversation_id,
                        turn.role.value,
                        turn.serialize_content(),
                        turn.content_kind
                    )
        except Exception as e:
            logger.error("Failed to persist turn", role=turn.role.value, error=str(e))
