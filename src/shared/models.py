"""Core data models for the shop chat agent.

This module defines the shared data structures used across the service:
conversation turns and their content blocks, tool descriptors and outcomes,
the request context, the events a Model Gateway produces, and the events
streamed to the client.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class TurnRole(str, Enum):
    """Role of a turn in the conversation log."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextBlock(BaseModel):
    """Visible text."""
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """A tool call requested by the model."""
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The outcome of a tool call, addressed to the model."""
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


class InternalBlock(BaseModel):
    """
    Annotation that is kept in the log but never shown to a model or user.

    Anything written as an InternalBlock is dropped during normalization.
    """
    type: Literal["internal"] = "internal"
    text: str


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock, InternalBlock],
    Field(discriminator="type"),
]

_blocks_adapter = TypeAdapter(list[ContentBlock])


class ContentKind(str, Enum):
    """How a stored turn's content is encoded."""
    TEXT = "text"
    BLOCKS = "blocks"


class StoredTurn(BaseModel):
    """A turn as the conversation store keeps it."""
    role: str = Field(..., description="Turn role: user, assistant, tool")
    content: str = Field(..., description="Canonical serialized content")
    kind: ContentKind = Field(default=ContentKind.TEXT, description="Encoding of content")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Turn(BaseModel):
    """
    One role-tagged unit of a conversation.

    Content is either plain text or an ordered list of typed blocks. The
    canonical serialized form is the text itself, or compact JSON for blocks.
    """
    role: TurnRole
    content: Union[str, list[ContentBlock]]

    @classmethod
    def text(cls, role: TurnRole, text: str) -> "Turn":
        return cls(role=role, content=text)

    @classmethod
    def from_stored(cls, stored: StoredTurn) -> "Turn":
        """Rebuild a turn from its serialized form."""
        content: Union[str, list[Any]] = stored.content

        if stored.kind == ContentKind.BLOCKS:
            try:
                content = _blocks_adapter.validate_json(stored.content)
            except ValidationError:
                content = stored.content

        try:
            role = TurnRole(stored.role)
        except ValueError:
            role = TurnRole.USER

        return cls(role=role, content=content)

    @property
    def blocks(self) -> list[Any]:
        """Content as a list of blocks."""
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)] if self.content else []
        return list(self.content)

    @property
    def visible_text(self) -> str:
        """Concatenated text blocks, internal annotations excluded."""
        return "\n".join(
            b.text for b in self.blocks if isinstance(b, TextBlock) and b.text
        ).strip()

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    @property
    def content_kind(self) -> ContentKind:
        return ContentKind.TEXT if isinstance(self.content, str) else ContentKind.BLOCKS

    def serialize_content(self) -> str:
        """Return the canonical serialized content."""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(
            [b.model_dump(mode="json") for b in self.content],
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def dedupe_key(self) -> tuple[str, str, str]:
        return self.role.value, self.content_kind.value, self.serialize_content()


class ToolDescriptor(BaseModel):
    """
    A callable tool as offered to the model.

    Names are unique within a session.
    """
    name: str = Field(..., description="Tool name")
    description: str = Field(default="", description="Description for LLM usage")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema for the tool input"
    )
    source: Optional[str] = Field(default=None, description="Capability source that provides it")


class ToolResultStatus(str, Enum):
    """Status of tool execution."""
    SUCCESS = "success"
    ERROR = "error"


class ToolOutcome(BaseModel):
    """
    Canonical envelope for the result of one tool execution.

    Backends answer with raw strings, JSON objects or block arrays; all of
    them are normalized into this shape before the orchestrator sees them.
    """
    tool_name: str
    status: ToolResultStatus
    content: str = ""
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: float = 0

    @property
    def is_error(self) -> bool:
        return self.status == ToolResultStatus.ERROR

    @classmethod
    def failure(cls, tool_name: str, error_code: str, error: str) -> "ToolOutcome":
        return cls(
            tool_name=tool_name,
            status=ToolResultStatus.ERROR,
            error=error,
            error_code=error_code,
        )

    def model_text(self) -> str:
        """Text handed back to the model."""
        if self.is_error:
            return json.dumps({"error": {"type": self.error_code, "data": self.error}})
        return self.content or "Tool executed successfully."

    def to_result_block(self, tool_use_id: str) -> ToolResultBlock:
        return ToolResultBlock(
            tool_use_id=tool_use_id,
            content=self.model_text(),
            is_error=self.is_error,
        )


class ToolInvocation(BaseModel):
    """A requested tool call and, once resolved, its single outcome."""
    call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    outcome: Optional[ToolOutcome] = None


class RequestContext(BaseModel):
    """Per-request context handed to tool discovery and execution."""
    conversation_id: str
    shop: str = Field(..., min_length=1, description="Shop domain, e.g. example.myshopify.com")
    prompt_type: Optional[str] = None

    @property
    def host_url(self) -> str:
        return f"https://{self.shop}"


# Model Gateway events

class TextDelta(BaseModel):
    """Incremental assistant text."""
    kind: Literal["text_delta"] = "text_delta"
    text: str


class ToolCallRequest(BaseModel):
    """A complete tool call parsed from the provider stream."""
    kind: Literal["tool_call"] = "tool_call"
    call_id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class TurnComplete(BaseModel):
    """End of one model response."""
    kind: Literal["turn_complete"] = "turn_complete"
    text: str = ""
    stop_reason: str = "end_turn"
    synthesized: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


GatewayEvent = Union[TextDelta, ToolCallRequest, TurnComplete]


# Client-facing events

class EventType(str, Enum):
    """Types of events streamed to the client."""
    ID = "id"
    CHUNK = "chunk"
    TOOL_USE = "tool_use"
    PRODUCTS = "products"
    MESSAGE_COMPLETE = "message_complete"
    END_TURN = "end_turn"
    ERROR = "error"


class ChatEvent(BaseModel):
    """One event of the push channel."""
    type: EventType
    conversation_id: Optional[str] = None
    chunk: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[dict[str, Any]] = None
    products: Optional[list[dict[str, Any]]] = None
    error: Optional[str] = None

    @classmethod
    def session_id(cls, conversation_id: str) -> "ChatEvent":
        return cls(type=EventType.ID, conversation_id=conversation_id)

    @classmethod
    def text_chunk(cls, text: str) -> "ChatEvent":
        return cls(type=EventType.CHUNK, chunk=text)

    @classmethod
    def tool_use(cls, name: str, tool_input: dict[str, Any]) -> "ChatEvent":
        return cls(type=EventType.TOOL_USE, tool_name=name, tool_input=tool_input)

    @classmethod
    def product_list(cls, products: list[dict[str, Any]]) -> "ChatEvent":
        return cls(type=EventType.PRODUCTS, products=products)

    @classmethod
    def message_complete(cls) -> "ChatEvent":
        return cls(type=EventType.MESSAGE_COMPLETE)

    @classmethod
    def end_turn(cls) -> "ChatEvent":
        return cls(type=EventType.END_TURN)

    @classmethod
    def failure(cls, error: str) -> "ChatEvent":
        return cls(type=EventType.ERROR, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.END_TURN, EventType.ERROR)

    def to_wire(self) -> dict[str, Any]:
        """Serialize without the fields this event type does not carry."""
        return self.model_dump(mode="json", exclude_none=True)
