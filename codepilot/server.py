"""
Codepilot HTTP server.

FastAPI app exposing budget, analysis, optimization and chat endpoints over
the runtime core.

Environment variables:
    ANTHROPIC_API_KEY / OPENAI_API_KEY: model provider keys
    CODEPILOT_HOST: Server host (default: 0.0.0.0)
    CODEPILOT_PORT: Server port (default: 8765)
    CODEPILOT_SETTINGS_DB: SQLite file for settings and agent history
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Literal

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from codepilot import __version__
from codepilot.agents.manager import AgentManager, to_stream_format
from codepilot.budget import ContextAllocator
from codepilot.config import Settings
from codepilot.context import Message
from codepilot.errors import CodepilotError, categorize_error, handle_chat_error, status_code_for
from codepilot.llm.client import LLMClient, ModelCall, collect_text
from codepilot.llm.stream import stream_text
from codepilot.memory.session import ConversationStore
from codepilot.memory.settings_store import SettingsStore
from codepilot.optimization import ContextOptimizer, RecommendationType
from codepilot.tokens import estimate_messages_tokens

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------


class MessageModel(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str | list[dict[str, Any]]

    def to_message(self) -> Message:
        return Message(role=self.role, content=self.content)


class BudgetRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_max_tokens: int = Field(gt=0)
    system_prompt_tokens: int = Field(ge=0)
    messages_tokens: int = Field(ge=0)
    file_context_tokens: int = Field(default=0, ge=0)


class AnalyzeRequest(BaseModel):
    """Analyze the given messages, or the live conversation when omitted."""

    messages: list[MessageModel] | None = None
    current_usage: int | None = None


class OptimizeRequest(BaseModel):
    strategy: Literal["remove_old", "compress", "summarize"]
    messages: list[MessageModel] | None = None


class OptimizeResponse(BaseModel):
    strategy: str
    tokens_before: int
    tokens_after: int
    messages: list[dict[str, Any]]


class SettingsUpdate(BaseModel):
    auto_optimize: bool | None = None
    max_context_length: int | None = Field(default=None, gt=0)
    prioritize_recent: bool | None = None
    keep_system_prompts: bool | None = None
    compression_level: Literal["none", "light", "medium", "aggressive"] | None = None


class ChatRequest(BaseModel):
    messages: list[MessageModel]
    file_context: str | None = None
    prompt_id: str | None = None


class ChatResponse(BaseModel):
    response: str
    mode: Literal["chat", "agent"]
    success: bool = True
    duration_ms: float | None = None
    agent: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    status: str
    version: str


# ---------------------------------------------------------------------------
# App state
# ---------------------------------------------------------------------------


@dataclass
class Runtime:
    settings: Settings
    model: ModelCall
    store: SettingsStore
    conversation: ConversationStore
    optimizer: ContextOptimizer
    agents: AgentManager
    allocator: ContextAllocator


def build_runtime(settings: Settings | None = None, model: ModelCall | None = None) -> Runtime:
    settings = settings or Settings.from_env()
    model = model or LLMClient()
    store = SettingsStore(settings.settings_db)
    return Runtime(
        settings=settings,
        model=model,
        store=store,
        conversation=ConversationStore(),
        optimizer=ContextOptimizer(store=store),
        agents=AgentManager(settings.agents, model, history_store=store, prompt_id=settings.prompt_id),
        allocator=ContextAllocator(),
    )


_runtime: Runtime | None = None
_start_time: float = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Build the runtime on startup unless one was installed beforehand."""
    global _runtime, _start_time

    logger.info("Starting Codepilot server…")
    if _runtime is None:
        _runtime = build_runtime()
    _start_time = time.time()
    logger.info("Codepilot ready (model=%s).", _runtime.model.model_info.name)

    yield

    logger.info("Shutting down Codepilot server.")
    stopped = _runtime.agents.stop_all_agents()
    if stopped:
        logger.warning("Stopped %d running agent(s) on shutdown", stopped)


def get_runtime() -> Runtime:
    if _runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not initialized")
    return _runtime


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Codepilot Runtime API",
    description="Token budgeting, context optimization and agent execution for a coding assistant",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CodepilotError)
async def codepilot_error_handler(request: Request, exc: CodepilotError) -> JSONResponse:
    logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=status_code_for(exc.code), content=exc.to_dict())


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse, tags=["system"])
async def health() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__)


@app.post("/context/budget", tags=["context"])
async def context_budget(req: BudgetRequest) -> dict:
    """Allocate a context window for the given component sizes."""
    budget = get_runtime().allocator.allocate(
        req.model_max_tokens, req.system_prompt_tokens, req.messages_tokens, req.file_context_tokens
    )
    return budget.to_dict()


@app.post("/context/analyze", tags=["context"])
async def context_analyze(req: AnalyzeRequest) -> dict:
    runtime = get_runtime()
    if req.messages is None:
        messages = runtime.conversation.messages()
        usage = req.current_usage if req.current_usage is not None else runtime.conversation.usage()
    else:
        messages = [m.to_message() for m in req.messages]
        usage = req.current_usage
    return runtime.optimizer.analyze(messages, usage).to_dict()


@app.post("/context/optimize", response_model=OptimizeResponse, tags=["context"])
async def context_optimize(req: OptimizeRequest) -> OptimizeResponse:
    """
    Apply a strategy. Without explicit messages the live conversation is
    rewritten in place.
    """
    runtime = get_runtime()
    live = req.messages is None
    messages = runtime.conversation.messages() if live else [m.to_message() for m in req.messages]

    optimized = runtime.optimizer.optimize(messages, RecommendationType(req.strategy))
    if live:
        runtime.conversation.rewrite(optimized)

    return OptimizeResponse(
        strategy=req.strategy,
        tokens_before=estimate_messages_tokens(messages),
        tokens_after=estimate_messages_tokens(optimized),
        messages=[m.to_dict() for m in optimized],
    )


@app.get("/context/settings", tags=["context"])
async def get_settings() -> dict:
    return get_runtime().optimizer.settings.to_dict()


@app.put("/context/settings", tags=["context"])
async def update_settings(req: SettingsUpdate) -> dict:
    changes = req.model_dump(exclude_none=True)
    try:
        settings = get_runtime().optimizer.update_settings(**changes)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return settings.to_dict()


@app.post("/chat", response_model=ChatResponse, tags=["chat"])
async def chat(req: ChatRequest) -> ChatResponse:
    """
    Answer the latest user message, either with a single model call or with
    a multi-step agent run when the request looks complex.
    """
    runtime = get_runtime()
    messages = [m.to_message() for m in req.messages]
    runtime.conversation.rewrite(messages)
    start = time.time()

    try:
        if runtime.agents.should_use_agents(messages):
            result = await runtime.agents.execute_with_agent(messages)
            reply = to_stream_format(result)
            response = ChatResponse(
                response=reply["content"],
                mode="agent",
                success=result.success,
                agent=reply,
            )
        else:
            text = await collect_text(
                stream_text(
                    runtime.model,
                    messages,
                    prompt_id=req.prompt_id or runtime.settings.prompt_id,
                    file_context=req.file_context,
                    optimizer=runtime.optimizer,
                    allocator=runtime.allocator,
                )
            )
            response = ChatResponse(response=text, mode="chat")
    except CodepilotError:
        raise
    except Exception as exc:
        logger.exception("Chat error: %s", exc)
        code = categorize_error(exc)["code"]
        raise HTTPException(status_code=status_code_for(code), detail=handle_chat_error(exc)) from exc

    runtime.conversation.add("assistant", response.response)
    response.duration_ms = round((time.time() - start) * 1000, 2)
    return response


@app.get("/agents", tags=["agents"])
async def agents_status() -> dict:
    runtime = get_runtime()
    return {
        "enabled": runtime.settings.agents.enable_agents,
        "active": runtime.agents.active_agents_status(),
        "recent": runtime.store.recent_agent_runs(limit=10),
    }


@app.post("/agents/stop", tags=["agents"])
async def stop_agents() -> dict:
    return {"stopped": get_runtime().agents.stop_all_agents()}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def start_server(
    host: str | None = None,
    port: int | None = None,
    reload: bool = False,
) -> None:
    """Start the Codepilot server with uvicorn."""
    settings = Settings.from_env()
    _host = host or settings.host
    _port = port or settings.port

    logger.info("Starting Codepilot server on %s:%d", _host, _port)
    uvicorn.run(
        "codepilot.server:app",
        host=_host,
        port=_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )
