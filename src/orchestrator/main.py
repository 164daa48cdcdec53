"""Shop Chat Agent - FastAPI Application.

Provides:
- Streaming chat endpoint (Server-Sent Events)
- Conversation history retrieval
- Health check
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging
from shared.models import RequestContext
from mcp_client.discovery import ToolRegistry
from mcp_client.fallback import CatalogSearchFallback
from mcp_client.sources import build_capability_sources
from orchestrator.conversation import create_conversation_store
from orchestrator.engine import ChatOrchestrator
from orchestrator.llm import create_model_gateway
from orchestrator.prompts import PromptCatalog
from orchestrator.streaming import relay_events

logger = get_logger(__name__)


# Request/Response Models
class ChatRequest(BaseModel):
    """Chat request from the storefront widget."""
    message: Optional[str] = Field(default=None, description="User message")
    conversation_id: Optional[str] = Field(default=None, description="Existing conversation ID")
    prompt_type: Optional[str] = Field(default=None, description="System prompt selector")
    shop: str = Field(..., min_length=1, description="Shop domain")


class HistoryResponse(BaseModel):
    """Visible messages of a conversation."""
    messages: list[dict[str, Any]]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    provider: str
    model: str
    store_backend: str


# Global instances
_settings: Optional[Settings] = None
_orchestrator: Optional[ChatOrchestrator] = None
_http_client: Optional[httpx.AsyncClient] = None


def build_orchestrator(settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> ChatOrchestrator:
    """Wire the orchestrator from settings."""
    if settings.chat.prompts_path:
        prompts = PromptCatalog.from_yaml(settings.chat.prompts_path, settings.chat.default_prompt_type)
    else:
        prompts = PromptCatalog(default_type=settings.chat.default_prompt_type)

    registry = ToolRegistry(
        lambda context: build_capability_sources(settings.shopify, context, http_client)
    )

    return ChatOrchestrator(
        gateway=create_model_gateway(settings.llm, prompts),
        store=create_conversation_store(settings.chat),
        registry=registry,
        fallback=CatalogSearchFallback(settings.shopify, http_client),
        settings=settings.chat
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _settings, _orchestrator, _http_client

    # Startup
    logger.info("Starting shop chat agent")

    _settings = get_settings()
    setup_logging(_settings.log_level, json_output=_settings.environment == "production")

    _http_client = httpx.AsyncClient(timeout=_settings.shopify.mcp_timeout)
    _orchestrator = build_orchestrator(_settings, _http_client)

    logger.info(
        "Shop chat agent started",
        provider=_settings.llm.provider,
        store_backend=_settings.chat.store_backend
    )

    yield

    # Shutdown
    logger.info("Shutting down shop chat agent")

    await _http_client.aclose()
    _http_client = None


# Create FastAPI app
app = FastAPI(
    title="Shop Chat Agent",
    description="Streaming shopping assistant backed by MCP tools",
    version="0.1.0",
    lifespan=lifespan
)

# The chat widget is served from shop domains
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_orchestrator() -> ChatOrchestrator:
    if _orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Orchestrator not initialized"
        )
    return _orchestrator


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Health check endpoint."""
    _get_orchestrator()

    return HealthResponse(
        status="healthy",
        provider=_settings.llm.provider,
        model=_settings.llm.model,
        store_backend=_settings.chat.store_backend
    )


@app.post("/chat", tags=["Chat"])
async def chat(request: ChatRequest):
    """
    Process a chat message.

    Streams the turn as Server-Sent Events, starting with the
    conversation id and ending with end_turn or error.
    """
    orchestrator = _get_orchestrator()

    if not request.message:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Message is required"}
        )

    conversation_id = request.conversation_id or str(uuid.uuid4())
    context = RequestContext(
        conversation_id=conversation_id,
        shop=request.shop,
        prompt_type=request.prompt_type
    )

    events = orchestrator.run_turn(context, request.message)
    return StreamingResponse(
        relay_events(conversation_id, events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
    )


@app.get("/chat", response_model=HistoryResponse, tags=["Chat"])
async def chat_history(
    history: bool = Query(default=False),
    conversation_id: Optional[str] = Query(default=None)
):
    """Get the visible messages of a conversation."""
    orchestrator = _get_orchestrator()

    if not history or not conversation_id:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "history=true and conversation_id are required"}
        )

    try:
        turns = await orchestrator.get_history(conversation_id)
    except Exception as e:
        logger.error("Failed to read history", conversation_id=conversation_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve conversation history"
        )

    messages = [
        {"role": turn.role.value, "content": turn.visible_text}
        for turn in turns
        if turn.visible_text
    ]
    return HistoryResponse(messages=messages)


def main():
    """Run the chat server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.chat.host,
        port=settings.chat.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
