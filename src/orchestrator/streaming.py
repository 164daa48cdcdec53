"""Streaming Transport - relays orchestrator events as Server-Sent Events."""

import json
from collections.abc import AsyncIterator

from shared.logging import get_logger
from shared.models import ChatEvent

logger = get_logger(__name__)


def encode_sse(event: ChatEvent) -> str:
    """Frame one event as `data: <json>` followed by a blank line."""
    return f"data: {json.dumps(event.to_wire(), ensure_ascii=False)}\n\n"


async def relay_events(conversation_id: str, events: AsyncIterator[ChatEvent]) -> AsyncIterator[str]:
    """
    Relay a turn's events to the client in arrival order.

    The conversation id is always sent first. Every event is forwarded
    as soon as it arrives; an exception raised by the producer ends the
    stream with an `error` event, as does a producer that stops without
    a terminal event.
    """
    yield encode_sse(ChatEvent.session_id(conversation_id))

    terminated = False
    try:
        async for event in events:
            yield encode_sse(event)
            if event.is_terminal:
                terminated = True
                break
    except Exception as e:
        logger.error("Chat stream failed", conversation_id=conversation_id, error=str(e), exc_info=True)
        yield encode_sse(ChatEvent.failure(str(e)))
        return
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    if not terminated:
        logger.warning("Chat stream ended without end_turn", conversation_id=conversation_id)
        yield encode_sse(ChatEvent.failure("Stream ended unexpectedly"))
