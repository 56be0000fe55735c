"""FastAPI Server for the Keel agent runtime.

Core Endpoints:
    - POST /chat - Run the agent loop; streams Server-Sent Events by default
    - POST /context/analyze - Analyze a conversation and optionally apply a strategy
    - GET /cache/stats - Response cache statistics
    - GET /tools - Registered tools
    - GET /health - Health check

Streaming:
    Each SSE frame carries one event (text, tool, tool_result, thinking,
    done, error). A client disconnect cancels the request at its next safe
    point.

Example:
    >>> from keel.interfaces.api.server import create_app
    >>>
    >>> app = create_app()
    >>> # Run with uvicorn
    >>> # uvicorn keel.interfaces.api.server:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from keel.agent.llm import AnthropicReasoningEngine, AnthropicSummarizer
from keel.agent.loop import AgentLoop, AgentRequest
from keel.agent.tools import ToolRegistry
from keel.cache.response_cache import ResponseCache
from keel.config.settings import KeelSettings, get_settings
from keel.context.messages import ContextStrategy, Message
from keel.context.strategies import StrategyOptions
from keel.core.exceptions import ConfigurationError, KeelError
from keel.state.store import ConversationStore, MemoryConversationStore


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

API_VERSION = "v1"
API_TITLE = "Keel Agent Runtime API"
API_DESCRIPTION = """
Keel runs a conversational agent loop against a reasoning engine with tools,
keeping every model call inside a strict token budget.
"""


# =============================================================================
# Request/Response Models
# =============================================================================


class MessageModel(BaseModel):
    """A conversation message."""
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str = ""
    timestamp: Optional[datetime] = None
    tools_used: Optional[list[str]] = None

    def to_message(self) -> Message:
        data = self.model_dump(exclude_none=True)
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp.isoformat()
        return Message.from_dict(data)


class ChatRequest(BaseModel):
    """Request to run the agent."""
    message: str = Field(..., min_length=1, description="User message")
    conversation_id: Optional[str] = Field(None, description="Conversation for history and persistence")
    user_id: Optional[str] = Field(None, description="User whose monthly budget applies")
    system_prompt: Optional[str] = Field(None, description="Overrides the default system prompt")
    history: Optional[list[MessageModel]] = Field(None, description="Prior messages")
    stream: bool = Field(True, description="Stream Server-Sent Events")
    use_cache: bool = Field(True, description="Allow the response cache")


class ChatResponse(BaseModel):
    """Non-streaming chat result."""
    response: str
    reason: str
    iterations: int
    tool_calls: list[dict[str, Any]]
    usage: dict[str, Any]
    events: list[dict[str, Any]]


class AnalyzeRequest(BaseModel):
    """Request to analyze a conversation."""
    messages: list[MessageModel]
    strategy: Optional[str] = Field(None, description="Strategy to apply; omit to analyze only")
    conversation_id: Optional[str] = None
    enable_compression: bool = True
    enable_retrieval: bool = False


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    tools: int
    cache_enabled: bool
    uptime_seconds: float


# =============================================================================
# Application State
# =============================================================================


@dataclass
class AppState:
    """Application state."""
    loop: AgentLoop
    registry: ToolRegistry
    store: ConversationStore
    cache: Optional[ResponseCache]
    start_time: datetime
    queue_size: int = 100


# Global state (initialized on startup)
_app_state: Optional[AppState] = None


def get_state() -> AppState:
    """Get application state."""
    if _app_state is None:
        raise RuntimeError("Application not initialized")
    return _app_state


def build_state(
    settings: Optional[KeelSettings] = None,
    registry: Optional[ToolRegistry] = None,
    store: Optional[ConversationStore] = None,
) -> AppState:
    """Construct the shared services from settings.

    Raises:
        ConfigurationError: If settings are invalid or the API key is missing.
    """
    settings = settings or get_settings()
    registry = registry or ToolRegistry()
    store = store or MemoryConversationStore()
    cache = None
    if settings.cache.enabled:
        cache = ResponseCache(
            max_entries=settings.cache.max_entries,
            ttl_seconds=settings.cache.ttl_minutes * 60,
        )
    loop = AgentLoop.from_settings(
        settings,
        engine=AnthropicReasoningEngine.from_settings(settings),
        registry=registry,
        store=store,
        cache=cache,
        summarizer=AnthropicSummarizer.from_settings(settings),
    )
    return AppState(
        loop=loop,
        registry=registry,
        store=store,
        cache=cache,
        start_time=datetime.now(timezone.utc),
        queue_size=settings.agent.stream_queue_size,
    )


# =============================================================================
# Create Application
# =============================================================================


def create_app(state: Optional[AppState] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        state: Prebuilt services; built from settings on startup when None

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        global _app_state

        logger.info("Starting Keel API server...")
        _app_state = state or build_state()
        logger.info(f"Keel API initialized with {len(_app_state.registry)} tools")

        yield

        logger.info("Shutting down Keel API server...")
        _app_state = None

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all API routes.

    Args:
        app: FastAPI application
    """

    # =========================================================================
    # Health & Info
    # =========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"], summary="Health check")
    async def health_check() -> HealthResponse:
        state = get_state()
        uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
        return HealthResponse(
            status="healthy",
            version=API_VERSION,
            tools=len(state.registry),
            cache_enabled=state.cache is not None,
            uptime_seconds=uptime,
        )

    @app.get("/tools", tags=["System"], summary="List tools")
    async def list_tools() -> list[dict[str, Any]]:
        return get_state().registry.schemas()

    # =========================================================================
    # Chat
    # =========================================================================

    @app.post("/chat", tags=["Agent"], summary="Run the agent")
    async def chat(body: ChatRequest):
        """Run the agent loop, streaming events unless ``stream`` is false."""
        state = get_state()
        request = AgentRequest(
            message=body.message,
            conversation_id=body.conversation_id,
            user_id=body.user_id,
            history=[m.to_message() for m in body.history] if body.history is not None else None,
            system_prompt=body.system_prompt,
            use_cache=body.use_cache,
        )

        if body.stream:
            async def event_source() -> AsyncGenerator[str, None]:
                async for event in state.loop.stream(request, queue_size=state.queue_size):
                    yield event.to_sse()

            return StreamingResponse(
                event_source(),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        result, events = await state.loop.run_to_completion(request)
        return ChatResponse(
            response=result.response,
            reason=result.reason.value,
            iterations=result.iterations,
            tool_calls=result.tool_calls,
            usage=result.usage.to_dict(),
            events=[e.to_dict() for e in events],
        )

    # =========================================================================
    # Context & Cache
    # =========================================================================

    @app.post("/context/analyze", tags=["Context"], summary="Analyze a conversation")
    async def analyze_context(body: AnalyzeRequest) -> dict[str, Any]:
        state = get_state()
        manager = state.loop.context
        messages = [m.to_message() for m in body.messages]
        payload: dict[str, Any] = {"stats": manager.context_stats(messages)}

        if body.strategy:
            try:
                strategy = ContextStrategy(body.strategy)
            except ValueError:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"Unknown strategy '{body.strategy}'",
                )
            result = await manager.apply_strategy(messages, StrategyOptions(
                strategy=strategy,
                enable_compression=body.enable_compression,
                enable_retrieval=body.enable_retrieval,
                conversation_id=body.conversation_id,
            ))
            payload["result"] = result.to_dict()
            payload["messages"] = [m.to_dict() for m in result.messages]
        return payload

    @app.get("/cache/stats", tags=["Cache"], summary="Cache statistics")
    async def cache_stats() -> dict[str, Any]:
        state = get_state()
        if state.cache is None:
            return {"enabled": False}
        return {"enabled": True, **state.cache.stats()}

    @app.delete("/cache", tags=["Cache"], summary="Clear the cache")
    async def clear_cache() -> dict[str, Any]:
        state = get_state()
        if state.cache is not None:
            state.cache.clear()
        return {"cleared": state.cache is not None}

    # =========================================================================
    # Error Handlers
    # =========================================================================

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "code": f"HTTP_{exc.status_code}"},
        )

    @app.exception_handler(KeelError)
    async def keel_exception_handler(request: Request, exc: KeelError) -> JSONResponse:
        logger.error(f"Request failed: {exc}")
        status_code = (
            status.HTTP_500_INTERNAL_SERVER_ERROR
            if isinstance(exc, ConfigurationError)
            else status.HTTP_400_BAD_REQUEST
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, "code": exc.code},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unexpected error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
        )


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================


def run_server(
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
) -> None:
    """Run the API server.

    Args:
        host: Host to bind to
        port: Port to listen on
        reload: Enable auto-reload for development
    """
    import uvicorn

    uvicorn.run(
        "keel.interfaces.api.server:app",
        host=host,
        port=port,
        reload=reload,
    )


__all__ = [
    "app",
    "create_app",
    "build_state",
    "get_state",
    "run_server",
    "AppState",
    "ChatRequest",
    "ChatResponse",
    "AnalyzeRequest",
    "MessageModel",
    "HealthResponse",
]
