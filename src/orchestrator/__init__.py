"""Orchestrator - Chat turn engine.

Manages conversation history, streams model output through the Model
Gateway, executes tool calls via the MCP client and relays events to
the client.
"""

from orchestrator.conversation import ConversationLocks, ConversationStore, create_conversation_store
from orchestrator.engine import ChatOrchestrator
from orchestrator.llm import ModelGateway, create_model_gateway
from orchestrator.prompts import PromptCatalog

__all__ = [
    "ChatOrchestrator",
    "ConversationLocks",
    "ConversationStore",
    "create_conversation_store",
    "ModelGateway",
    "create_model_gateway",
    "PromptCatalog",
]
