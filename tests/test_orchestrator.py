"""Tests for orchestrator components."""

import asyncio
import json

import httpx
import pytest

from shared.config import ChatSettings, ShopifySettings
from shared.models import (
    EventType,
    RequestContext,
    TextBlock,
    TextDelta,
    ToolCallRequest,
    Turn,
    TurnComplete,
    TurnRole,
)
from conftest import FakeSource, collect, search_tool


def search_call(call_id: str, query: str = "x") -> ToolCallRequest:
    return ToolCallRequest(call_id=call_id, name="search_shop_catalog", input={"query": query})


def event_types(events) -> list[str]:
    return [e.type.value for e in events]


async def stored_turns(store, conversation_id="conv-1") -> list[Turn]:
    return [Turn.from_stored(s) for s in await store.read(conversation_id)]


class FailingStore:
    """A store whose writes always fail."""

    def __init__(self):
        self.attempts = 0

    async def append(self, conversation_id, role, content, kind=None):
        from orchestrator.conversation import ConversationStoreError

        self.attempts += 1
        raise ConversationStoreError("disk full")

    async def read(self, conversation_id):
        return []


class TestGuards:
    """Tests for fingerprints and the session guard."""

    def test_fingerprint_ignores_key_order(self):
        from orchestrator.engine import fingerprint

        assert fingerprint("s", {"a": 1, "b": 2}) == fingerprint("s", {"b": 2, "a": 1})
        assert fingerprint("s", {"a": 1}) != fingerprint("t", {"a": 1})

    def test_caps(self):
        from orchestrator.engine import SessionGuard

        guard = SessionGuard(max_calls_per_tool=2, max_total_calls=3)

        assert guard.record_attempt("a")
        assert guard.record_attempt("a")
        assert not guard.record_attempt("a")

        guard = SessionGuard(max_calls_per_tool=2, max_total_calls=3)
        assert guard.record_attempt("a")
        assert guard.record_attempt("b")
        assert guard.record_attempt("c")
        assert not guard.record_attempt("d")


class TestRunTurn:
    """Tests for ChatOrchestrator.run_turn."""

    @pytest.mark.asyncio
    async def test_plain_reply_with_no_tools(self, make_orchestrator, context):
        """Without tools the fallback is offered and a text reply ends the turn."""
        orchestrator = make_orchestrator()
        orchestrator.gateway.queue_round(
            TextDelta(text="Hi "), TextDelta(text="there"), TurnComplete(text="Hi there")
        )

        events = await collect(orchestrator, context, "hello")

        assert event_types(events) == ["chunk", "chunk", "message_complete", "end_turn"]
        offered = orchestrator.gateway.call_history[0]["tools"]
        assert [t["function"]["name"] for t in offered] == ["search_shop_catalog"]

        turns = await stored_turns(orchestrator.store)
        assert [(t.role, t.visible_text) for t in turns] == [
            (TurnRole.USER, "hello"),
            (TurnRole.ASSISTANT, "Hi there"),
        ]

    @pytest.mark.asyncio
    async def test_repeated_identical_calls_are_blocked(self, make_orchestrator, context):
        """The same search three times runs once, then the turn ends gracefully."""
        from orchestrator.engine import TOOL_LIMIT_MESSAGE

        source = FakeSource(tools=[search_tool()], results={"search_shop_catalog": "no results"})
        orchestrator = make_orchestrator(sources=[source])
        for i in range(3):
            orchestrator.gateway.queue_round(search_call(f"t{i}"), TurnComplete(stop_reason="tool_use"))

        events = await collect(orchestrator, context, "find x")

        assert source.calls == [("search_shop_catalog", {"query": "x"})]
        assert event_types(events) == [
            "tool_use", "message_complete",
            "tool_use", "message_complete",
            "tool_use", "chunk", "message_complete",
            "end_turn",
        ]
        assert events[-3].chunk == TOOL_LIMIT_MESSAGE

        turns = await stored_turns(orchestrator.store)
        results = [r for t in turns for r in t.tool_results]
        assert [r.tool_use_id for r in results] == ["t0", "t1", "t2"]
        assert [r.is_error for r in results] == [False, True, True]
        assert json.loads(results[1].content)["error"]["type"] == "duplicate_search_blocked"
        assert turns[-1].visible_text == TOOL_LIMIT_MESSAGE

    @pytest.mark.asyncio
    async def test_total_cap_stops_distinct_calls(self, make_orchestrator, context):
        """Distinct calls stop at the total cap without executing the extra call."""
        source = FakeSource(tools=[search_tool(), search_tool("get_cart")], results={})
        settings = ChatSettings(max_calls_per_tool=5, max_total_tool_calls=2)
        orchestrator = make_orchestrator(sources=[source], settings=settings)
        for i in range(3):
            orchestrator.gateway.queue_round(search_call(f"t{i}", f"q{i}"), TurnComplete(stop_reason="tool_use"))

        events = await collect(orchestrator, context, "browse")

        assert len(source.calls) == 2
        assert events[-1].type == EventType.END_TURN

        turns = await stored_turns(orchestrator.store)
        last_result = [r for t in turns for r in t.tool_results][-1]
        assert json.loads(last_result.content)["error"]["type"] == "tool_limit_reached"

    @pytest.mark.asyncio
    async def test_fallback_search_when_discovery_fails(self, make_orchestrator, context):
        """A failed source leaves only the fallback, which still serves the call."""
        from mcp_client.client import MCPConnectionError
        from mcp_client.fallback import CatalogSearchFallback

        def handler(request):
            return httpx.Response(200, json={"data": {"products": {"edges": [{"node": {
                "id": "gid://shopify/Product/1",
                "title": "Mug",
                "onlineStoreUrl": "https://example.myshopify.com/products/mug",
                "priceRange": {"minVariantPrice": {"amount": "9.0", "currencyCode": "USD"}},
            }}]}}})

        broken = FakeSource(connect_error=MCPConnectionError("unreachable"))
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            orchestrator = make_orchestrator(
                sources=[broken],
                fallback=CatalogSearchFallback(ShopifySettings(), http)
            )
            orchestrator.gateway.queue_round(search_call("t0", "mug"), TurnComplete(stop_reason="tool_use"))
            orchestrator.gateway.queue_round(TextDelta(text="Found a mug."), TurnComplete(text="Found a mug."))

            events = await collect(orchestrator, context, "mugs?")

        assert event_types(events) == [
            "tool_use", "products", "message_complete",
            "chunk", "message_complete",
            "end_turn",
        ]
        assert events[1].products[0]["title"] == "Mug"
        assert events[1].products[0]["price"] == "USD 9.0"
        assert broken.closed

        turns = await stored_turns(orchestrator.store)
        result = [r for t in turns for r in t.tool_results][0]
        assert json.loads(result.content)["total_found"] == 1

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_execution_error(self, make_orchestrator, context):
        source = FakeSource(tools=[search_tool()], invoke_error=RuntimeError("kaboom"))
        orchestrator = make_orchestrator(sources=[source])
        orchestrator.gateway.queue_round(search_call("t0"), TurnComplete(stop_reason="tool_use"))
        orchestrator.gateway.queue_round(TextDelta(text="Sorry."), TurnComplete(text="Sorry."))

        events = await collect(orchestrator, context, "x?")

        assert events[-1].type == EventType.END_TURN
        turns = await stored_turns(orchestrator.store)
        result = [r for t in turns for r in t.tool_results][0]
        assert result.is_error
        assert json.loads(result.content) == {"error": {"type": "execution_error", "data": "kaboom"}}

    @pytest.mark.asyncio
    async def test_gateway_failure_without_text(self, make_orchestrator, context):
        """A failed round still produces a visible reply and ends the turn."""
        from orchestrator.llm import FAILED_RESPONSE_TEXT

        orchestrator = make_orchestrator()
        orchestrator.gateway.queue_round(RuntimeError("provider down"))

        events = await collect(orchestrator, context, "hi")

        assert event_types(events) == ["chunk", "message_complete", "end_turn"]
        assert events[0].chunk == FAILED_RESPONSE_TEXT

    @pytest.mark.asyncio
    async def test_gateway_failure_after_partial_text(self, make_orchestrator, context):
        orchestrator = make_orchestrator()
        orchestrator.gateway.queue_round(TextDelta(text="Half"), RuntimeError("reset"))

        events = await collect(orchestrator, context, "hi")

        assert event_types(events) == ["chunk", "message_complete", "end_turn"]
        turns = await stored_turns(orchestrator.store)
        assert turns[-1].visible_text == "Half"

    @pytest.mark.asyncio
    async def test_completion_text_sent_when_nothing_streamed(self, make_orchestrator, context):
        orchestrator = make_orchestrator()
        orchestrator.gateway.queue_round(TurnComplete(text="All at once"))

        events = await collect(orchestrator, context, "hi")

        assert events[0].chunk == "All at once"

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_stream(self, make_orchestrator, context):
        store = FailingStore()
        orchestrator = make_orchestrator(store=store, settings=ChatSettings(persist_attempts=2))

        events = await collect(orchestrator, context, "hello")

        assert events[-1].type == EventType.END_TURN
        assert store.attempts == 4

    @pytest.mark.asyncio
    async def test_history_is_sent_to_the_model(self, make_orchestrator, context):
        orchestrator = make_orchestrator()

        await collect(orchestrator, context, "first")
        await collect(orchestrator, context, "second")

        messages = orchestrator.gateway.call_history[1]["messages"]
        assert [m.content for m in messages[1:]] == [
            "first", "This is a mock response.", "second"
        ]

    @pytest.mark.asyncio
    async def test_block_shaped_message_is_replayed_as_text(self, make_orchestrator, context):
        literal = '[{"type":"text","text":"hi"}]'
        orchestrator = make_orchestrator()

        await collect(orchestrator, context, literal)
        await collect(orchestrator, context, "again")

        messages = orchestrator.gateway.call_history[1]["messages"]
        assert messages[1].content == literal
        turns = await stored_turns(orchestrator.store)
        assert turns[0].content == literal

    @pytest.mark.asyncio
    async def test_same_conversation_turns_are_serialized(self, make_orchestrator, context):
        orchestrator = make_orchestrator()

        await asyncio.gather(
            collect(orchestrator, context, "one"),
            collect(orchestrator, context, "two"),
        )

        turns = await stored_turns(orchestrator.store)
        assert [t.role for t in turns] == [
            TurnRole.USER, TurnRole.ASSISTANT, TurnRole.USER, TurnRole.ASSISTANT
        ]
        assert len(orchestrator.locks) == 0

    @pytest.mark.asyncio
    async def test_disconnect_finishes_tool_call(self, make_orchestrator, context):
        """Cancelling mid-call still records the tool result."""
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowSource(FakeSource):
            async def invoke(self, name, tool_input):
                started.set()
                await release.wait()
                return "done"

        orchestrator = make_orchestrator(sources=[SlowSource(tools=[search_tool()])])
        orchestrator.gateway.queue_round(search_call("t0"), TurnComplete(stop_reason="tool_use"))

        task = asyncio.create_task(collect(orchestrator, context, "x"))
        await started.wait()
        task.cancel()
        await asyncio.sleep(0)
        release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        turns = await stored_turns(orchestrator.store)
        assert turns[-1].role == TurnRole.TOOL
        assert turns[-1].tool_results[0].content == "done"
        assert len(orchestrator.gateway.call_history) == 1


class TestConversationStores:
    """Tests for conversation stores and history handling."""

    @pytest.mark.asyncio
    async def test_in_memory_store(self):
        from orchestrator.conversation import InMemoryConversationStore

        store = InMemoryConversationStore()
        await store.append("c", "user", "hi")
        await store.append("c", "assistant", "hello")

        turns = await store.read("c")

        assert [t.content for t in turns] == ["hi", "hello"]
        assert await store.read("other") == []
        assert store.get_stats() == {"total_conversations": 1, "total_turns": 2}

    @pytest.mark.asyncio
    async def test_jsonl_store(self, tmp_path):
        from orchestrator.conversation import JsonlConversationStore

        store = JsonlConversationStore(tmp_path)
        await store.append("shop/conv 1", "user", "hi")
        await store.append("shop/conv 1", "assistant", '[{"type":"text","text":"yo"}]')

        with open(next(tmp_path.iterdir()), "a") as f:
            f.write("not json\n")

        turns = await store.read("shop/conv 1")

        assert [t.role for t in turns] == ["user", "assistant"]
        assert len(list(tmp_path.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_jsonl_ids_map_to_distinct_files(self, tmp_path):
        """Ids that differ only in punctuation keep separate histories."""
        from orchestrator.conversation import JsonlConversationStore

        store = JsonlConversationStore(tmp_path)
        await store.append("order 42", "user", "first")
        await store.append("order_42", "user", "second")
        await store.append("order/42", "user", "third")

        assert [t.content for t in await store.read("order 42")] == ["first"]
        assert [t.content for t in await store.read("order_42")] == ["second"]
        assert [t.content for t in await store.read("order/42")] == ["third"]
        assert len(list(tmp_path.iterdir())) == 3

    @pytest.mark.asyncio
    async def test_jsonl_locks_are_released(self, tmp_path):
        from orchestrator.conversation import JsonlConversationStore

        store = JsonlConversationStore(tmp_path)
        await asyncio.gather(*[
            store.append(f"conv-{i % 5}", "user", f"msg {i}") for i in range(20)
        ])

        assert len(store._locks) == 0
        assert len(await store.read("conv-0")) == 4

    @pytest.mark.asyncio
    async def test_jsonl_store_keeps_content_kind(self, tmp_path):
        from orchestrator.conversation import JsonlConversationStore
        from shared.models import ContentKind

        literal = '[{"type":"text","text":"hi"}]'
        store = JsonlConversationStore(tmp_path)
        await store.append("c", "user", literal)
        await store.append("c", "assistant", literal, ContentKind.BLOCKS)

        user, assistant = [Turn.from_stored(s) for s in await store.read("c")]

        assert user.content == literal
        assert assistant.content == [TextBlock(text="hi")]

    def test_store_factory(self, tmp_path):
        from orchestrator.conversation import (
            InMemoryConversationStore,
            JsonlConversationStore,
            create_conversation_store,
        )

        assert isinstance(create_conversation_store(ChatSettings()), InMemoryConversationStore)
        jsonl = create_conversation_store(ChatSettings(store_backend="jsonl", store_path=str(tmp_path)))
        assert isinstance(jsonl, JsonlConversationStore)
        with pytest.raises(ValueError):
            create_conversation_store(ChatSettings(store_backend="redis"))

    def test_collapse_duplicates(self):
        from orchestrator.conversation import collapse_duplicates

        turns = [
            Turn.text(TurnRole.USER, "hi"),
            Turn.text(TurnRole.USER, "hi"),
            Turn.text(TurnRole.ASSISTANT, "hello"),
            Turn.text(TurnRole.USER, "hi"),
        ]

        assert len(collapse_duplicates(turns)) == 3

    def test_trim_starts_at_user_turn(self):
        from orchestrator.conversation import trim_history

        turns = [Turn.text(TurnRole.USER, f"u{i}") if i % 2 == 0 else Turn.text(TurnRole.ASSISTANT, f"a{i}")
                 for i in range(25)]

        trimmed = trim_history(turns, 20)

        assert trimmed[0].role == TurnRole.USER
        assert len(trimmed) == 19
        assert trimmed[-1].visible_text == "u24"

    @pytest.mark.asyncio
    async def test_locks_serialize_one_conversation(self):
        from orchestrator.conversation import ConversationLocks

        locks = ConversationLocks()
        order = []

        async def worker(name, conversation_id, delay):
            async with locks.hold(conversation_id):
                order.append(f"{name}-start")
                await asyncio.sleep(delay)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a", "c1", 0.02), worker("b", "c1", 0))

        assert order == ["a-start", "a-end", "b-start", "b-end"]
        assert len(locks) == 0


class TestPrompts:
    """Tests for the prompt catalog."""

    def test_unknown_type_uses_default(self):
        from orchestrator.prompts import PromptCatalog

        catalog = PromptCatalog()

        assert catalog.get("nope") == catalog.get("standardAssistant")
        assert catalog.resolve_type(None) == "standardAssistant"
        assert catalog.get("enthusiasticAssistant") != catalog.get()

    def test_from_yaml(self, tmp_path):
        from orchestrator.prompts import PromptCatalog

        path = tmp_path / "prompts.yaml"
        path.write_text("systemPrompts:\n  concise:\n    content: Be brief.\n")

        catalog = PromptCatalog.from_yaml(path)

        assert catalog.get("concise") == "Be brief."


class TestStreaming:
    """Tests for the SSE relay."""

    @pytest.mark.asyncio
    async def test_relay_sends_id_first(self):
        from shared.models import ChatEvent
        from orchestrator.streaming import relay_events

        async def events():
            yield ChatEvent.text_chunk("Hi")
            yield ChatEvent.end_turn()

        frames = [frame async for frame in relay_events("c1", events())]

        assert frames[0] == 'data: {"type": "id", "conversation_id": "c1"}\n\n'
        assert json.loads(frames[1][len("data: "):]) == {"type": "chunk", "chunk": "Hi"}
        assert len(frames) == 3

    @pytest.mark.asyncio
    async def test_relay_reports_errors(self):
        from shared.models import ChatEvent
        from orchestrator.streaming import relay_events

        async def events():
            yield ChatEvent.text_chunk("Hi")
            raise RuntimeError("store exploded")

        frames = [frame async for frame in relay_events("c1", events())]

        assert json.loads(frames[-1][len("data: "):]) == {"type": "error", "error": "store exploded"}

    @pytest.mark.asyncio
    async def test_relay_closes_unterminated_stream(self):
        from shared.models import ChatEvent
        from orchestrator.streaming import relay_events

        async def events():
            yield ChatEvent.message_complete()

        frames = [frame async for frame in relay_events("c1", events())]

        assert json.loads(frames[-1][len("data: "):])["type"] == "error"
