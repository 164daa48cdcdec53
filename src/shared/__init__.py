"""Shared models, configuration and logging for the shop chat agent."""

from shared.models import (
    ChatEvent,
    EventType,
    RequestContext,
    ToolDescriptor,
    ToolOutcome,
    Turn,
    TurnRole,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "ChatEvent",
    "EventType",
    "RequestContext",
    "ToolDescriptor",
    "ToolOutcome",
    "Turn",
    "TurnRole",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
