"""Conversation storage and history handling for the Orchestrator.

The store is an append-only turn log per conversation id. Two stores are
provided: an in-memory one and a JSON-lines file per conversation.
"""

import asyncio
import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import aiofiles
from pydantic import ValidationError

from shared.config import ChatSettings
from shared.logging import get_logger
from shared.models import ContentKind, StoredTurn, ToolResultBlock, Turn, TurnRole

logger = get_logger(__name__)


class ConversationStoreError(Exception):
    """A conversation could not be read or written."""
    pass


class ConversationStore(ABC):
    """Durable, append-only turn log keyed by conversation id."""

    @abstractmethod
    async def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        kind: ContentKind = ContentKind.TEXT
    ) -> StoredTurn:
        """Append one turn in canonical serialized form."""
        pass

    @abstractmethod
    async def read(self, conversation_id: str) -> list[StoredTurn]:
        """Return every turn of a conversation in insertion order."""
        pass


class InMemoryConversationStore(ConversationStore):
    """Process-local store; conversations live as long as the process."""

    def __init__(self) -> None:
        self._conversations: dict[str, list[StoredTurn]] = {}
        self._lock = asyncio.Lock()

    async def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        kind: ContentKind = ContentKind.TEXT
    ) -> StoredTurn:
        turn = StoredTurn(role=role, content=content, kind=kind)
        async with self._lock:
            self._conversations.setdefault(conversation_id, []).append(turn)
        return turn

    async def read(self, conversation_id: str) -> list[StoredTurn]:
        return list(self._conversations.get(conversation_id, []))

    def get_stats(self) -> dict[str, int]:
        return {
            "total_conversations": len(self._conversations),
            "total_turns": sum(len(t) for t in self._conversations.values()),
        }


class JsonlConversationStore(ConversationStore):
    """
    One JSON-lines file per conversation.

    Each line is a serialized StoredTurn; unreadable lines are skipped on read.
    Files are named by the SHA-256 of the conversation id.
    """

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._locks = ConversationLocks()

    def _path(self, conversation_id: str) -> Path:
        digest = hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()
        return self.base_path / f"{digest}.jsonl"

    async def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        kind: ContentKind = ContentKind.TEXT
    ) -> StoredTurn:
        turn = StoredTurn(role=role, content=content, kind=kind)

        try:
            async with self._locks.hold(conversation_id):
                async with aiofiles.open(self._path(conversation_id), "a") as f:
                    await f.write(turn.model_dump_json() + "\n")
        except OSError as e:
            raise ConversationStoreError(f"Failed to append turn: {e}") from e

        return turn

    async def read(self, conversation_id: str) -> list[StoredTurn]:
        path = self._path(conversation_id)
        if not path.exists():
            return []

        turns: list[StoredTurn] = []
        try:
            async with aiofiles.open(path, "r") as f:
                async for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        turns.append(StoredTurn(**json.loads(line)))
                    except (json.JSONDecodeError, ValidationError, TypeError):
                        logger.warning("Skipping unreadable turn", conversation_id=conversation_id)
        except OSError as e:
            raise ConversationStoreError(f"Failed to read conversation: {e}") from e

        return turns


def create_conversation_store(settings: ChatSettings) -> ConversationStore:
    """Build the configured store backend."""
    backends = {
        "memory": lambda: InMemoryConversationStore(),
        "jsonl": lambda: JsonlConversationStore(settings.store_path),
    }

    factory = backends.get(settings.store_backend)
    if factory is None:
        raise ValueError(
            f"Unsupported store backend: {settings.store_backend}. "
            f"Supported: {list(backends.keys())}"
        )
    return factory()


def collapse_duplicates(turns: list[Turn]) -> list[Turn]:
    """Drop a turn when it repeats the previous turn's role and content."""
    result: list[Turn] = []
    for turn in turns:
        if result and result[-1].dedupe_key() == turn.dedupe_key():
            continue
        result.append(turn)
    return result


def _starts_exchange(turn: Turn) -> bool:
    return turn.role == TurnRole.USER and not any(
        isinstance(b, ToolResultBlock) for b in turn.blocks
    )


def trim_history(turns: list[Turn], limit: int) -> list[Turn]:
    """
    Keep the most recent turns.

    The window starts at a plain user turn so that a tool result is never
    separated from the call that produced it.
    """
    window = turns[-limit:] if limit > 0 else list(turns)
    start = 0
    while start < len(window) and not _starts_exchange(window[start]):
        start += 1
    return window[start:]


async def load_history(
    store: ConversationStore,
    conversation_id: str,
    limit: Optional[int] = None
) -> list[Turn]:
    """Read, decode and de-duplicate a conversation."""
    stored = await store.read(conversation_id)
    turns = collapse_duplicates([Turn.from_stored(s) for s in stored])
    if limit:
        turns = trim_history(turns, limit)
    return turns


class ConversationLocks:
    """
    Per-conversation mutual exclusion.

    Turns for the same conversation run one at a time; different
    conversations never wait on each other. Locks are dropped once nobody
    holds or waits for them.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[conversation_id] -= 1
            if self._users[conversation_id] == 0:
                del self._users[conversation_id]
                del self._locks[conversation_id]

    def __len__(self) -> int:
        return len(self._locks)
