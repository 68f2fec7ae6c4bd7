"""
Model-call interface and the Anthropic / OpenAI implementation of it.

The runtime only consumes `text-delta` chunks from a model stream; everything
else about the provider is opaque. Any object with a matching `stream` method
can stand in for LLMClient (tests use small fakes).

Environment variables:
    ANTHROPIC_API_KEY: Use Anthropic Claude (preferred)
    OPENAI_API_KEY: Use OpenAI GPT (fallback)
    CODEPILOT_LLM_MODEL: Override the default model name
    CODEPILOT_MODEL_MAX_TOKENS: Override the model's context window

Usage:
    client = LLMClient()
    text = await collect_text(client.stream(messages, system=prompt))
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

from codepilot.context import Message, message_text

logger = logging.getLogger(__name__)

ANTHROPIC_DEFAULT_MODEL = "claude-sonnet-4-5"
OPENAI_DEFAULT_MODEL = "gpt-4o"

DEFAULT_MAX_TOKENS = 128_000
KNOWN_CONTEXT_WINDOWS = {
    "claude": 200_000,
    "gpt-4o": 128_000,
    "gpt-4.1": 1_000_000,
    "gpt-3.5": 16_385,
}


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelInfo:
    """The only model fields the runtime reads."""

    name: str
    provider: str
    max_token_allowed: int = DEFAULT_MAX_TOKENS


@dataclass(frozen=True)
class StreamChunk:
    type: str  # "text-delta" | "finish" | provider-specific
    text_delta: str = ""


class ModelCall(Protocol):
    model_info: ModelInfo

    def stream(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 4096,
        cancel: threading.Event | None = None,
    ) -> AsyncIterator[StreamChunk]: ...


async def collect_text(stream: AsyncIterator[StreamChunk]) -> str:
    """Assemble the final response from the `text-delta` chunks of a stream."""
    parts: list[str] = []
    async for chunk in stream:
        if chunk.type == "text-delta":
            parts.append(chunk.text_delta)
    return "".join(parts)


def context_window_for(model: str) -> int:
    override = os.environ.get("CODEPILOT_MODEL_MAX_TOKENS", "")
    if override:
        return int(override)
    for prefix, size in KNOWN_CONTEXT_WINDOWS.items():
        if model.startswith(prefix):
            return size
    return DEFAULT_MAX_TOKENS


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """
    Streaming model client for Anthropic Claude and OpenAI GPT.

    Selects the provider from available API keys. Provider SDKs are
    synchronous; streams run in an executor thread that checks the `cancel`
    event between chunks so an abandoned run stops consuming the stream.
    """

    def __init__(
        self,
        anthropic_api_key: str | None = None,
        openai_api_key: str | None = None,
        model: str | None = None,
        max_token_allowed: int | None = None,
    ) -> None:
        self._anthropic_key = anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        self._openai_key = openai_api_key or os.environ.get("OPENAI_API_KEY", "")
        model_override = model or os.environ.get("CODEPILOT_LLM_MODEL", "")

        if self._anthropic_key:
            provider = "anthropic"
            name = model_override or ANTHROPIC_DEFAULT_MODEL
        elif self._openai_key:
            provider = "openai"
            name = model_override or OPENAI_DEFAULT_MODEL
        else:
            logger.warning("No API key found; model calls will fail at runtime")
            provider = "anthropic"
            name = model_override or ANTHROPIC_DEFAULT_MODEL

        self.model_info = ModelInfo(
            name=name,
            provider=provider,
            max_token_allowed=max_token_allowed or context_window_for(name),
        )
        logger.info(
            "LLMClient using provider=%s model=%s window=%d",
            provider,
            name,
            self.model_info.max_token_allowed,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def stream(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 4096,
        cancel: threading.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion.

        Args:
            messages: Conversation history. System-role messages are folded
                      into the system prompt for providers that need it.
            system: System prompt.
            max_tokens: Maximum tokens in the response.
            cancel: When set, the provider stream is closed early.

        Yields:
            StreamChunk("text-delta", ...) per text fragment, then one
            StreamChunk("finish").
        """
        if self.model_info.provider == "anthropic":
            collected = await self._stream_anthropic(messages, system, max_tokens, cancel)
        else:
            collected = await self._stream_openai(messages, system, max_tokens, cancel)

        for text in collected:
            yield StreamChunk(type="text-delta", text_delta=text)
        yield StreamChunk(type="finish")

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 4096,
        cancel: threading.Event | None = None,
    ) -> str:
        return await collect_text(self.stream(messages, system, max_tokens, cancel))

    # ------------------------------------------------------------------
    # Anthropic implementation
    # ------------------------------------------------------------------

    async def _stream_anthropic(
        self,
        messages: list[Message],
        system: str | None,
        max_tokens: int,
        cancel: threading.Event | None,
    ) -> list[str]:
        try:
            import anthropic  # type: ignore
        except ImportError as exc:
            raise RuntimeError("anthropic package not installed: pip install anthropic") from exc

        client = anthropic.Anthropic(api_key=self._anthropic_key)
        system_text, chat = _split_system(messages, system)

        kwargs: dict[str, Any] = {
            "model": self.model_info.name,
            "max_tokens": max_tokens,
            "messages": [m.to_dict() for m in chat],
        }
        if system_text:
            kwargs["system"] = system_text

        collected: list[str] = []

        def _stream_sync() -> None:
            with client.messages.stream(**kwargs) as stream:
                for text in stream.text_stream:
                    if cancel is not None and cancel.is_set():
                        logger.info("Anthropic stream cancelled after %d chunks", len(collected))
                        break
                    collected.append(text)

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, _stream_sync)
        return collected

    # ------------------------------------------------------------------
    # OpenAI implementation
    # ------------------------------------------------------------------

    async def _stream_openai(
        self,
        messages: list[Message],
        system: str | None,
        max_tokens: int,
        cancel: threading.Event | None,
    ) -> list[str]:
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise RuntimeError("openai package not installed: pip install openai") from exc

        client = openai.OpenAI(api_key=self._openai_key)

        msgs = [m.to_dict() for m in messages]
        if system:
            msgs = [{"role": "system", "content": system}] + msgs

        kwargs: dict[str, Any] = {
            "model": self.model_info.name,
            "max_tokens": max_tokens,
            "messages": msgs,
            "stream": True,
        }

        collected: list[str] = []

        def _stream_sync() -> None:
            with client.chat.completions.create(**kwargs) as stream:
                for chunk in stream:
                    if cancel is not None and cancel.is_set():
                        logger.info("OpenAI stream cancelled after %d chunks", len(collected))
                        break
                    delta = chunk.choices[0].delta.content if chunk.choices else None
                    if delta:
                        collected.append(delta)

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, _stream_sync)
        return collected


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _split_system(messages: list[Message], system: str | None) -> tuple[str, list[Message]]:
    """
    Move system-role history messages into the system prompt.

    Anthropic accepts only user/assistant turns in `messages`.
    """
    system_parts = [system] if system else []
    chat: list[Message] = []
    for m in messages:
        if m.role == "system":
            system_parts.append(message_text(m))
        else:
            chat.append(m)
    return "\n\n".join(system_parts), chat
