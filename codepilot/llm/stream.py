"""
Turn preparation — fits one conversation turn into the model's context window
and streams it through the model call.

    history → sanitize → (auto-optimize) → system prompt + file context
            → budget check → truncate if needed → completion budget → stream
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Iterable

from codepilot.budget import ContextAllocator, TokenBudget, ensure_system_prompt_fits
from codepilot.context import Message, to_messages
from codepilot.llm.client import ModelCall, ModelInfo, StreamChunk
from codepilot.llm.prompts import PromptLibrary, PromptOptions
from codepilot.optimization import ContextOptimizer
from codepilot.tokens import estimate_messages_tokens, estimate_tokens
from codepilot.truncation import truncate_messages

logger = logging.getLogger(__name__)

MIN_COMPLETION_TOKENS = 1000

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
_LOCKFILE_ACTION_RE = re.compile(
    r'<action type="file" filePath="package-lock\.json">[\s\S]*?</action>'
)
LOCKFILE_PLACEHOLDER = "[package-lock.json content removed]"


@dataclass(frozen=True)
class PreparedTurn:
    system_prompt: str
    messages: list[Message]
    budget: TokenBudget
    completion_max_tokens: int
    truncated: bool = False

    def to_dict(self) -> dict:
        return {
            "system_prompt_tokens": estimate_tokens(self.system_prompt),
            "message_count": len(self.messages),
            "budget": self.budget.to_dict(),
            "completion_max_tokens": self.completion_max_tokens,
            "truncated": self.truncated,
        }


# ---------------------------------------------------------------------------
# History sanitising
# ---------------------------------------------------------------------------


def _clean_assistant_text(text: str) -> str:
    text = _THINK_RE.sub("", text)
    text = _LOCKFILE_ACTION_RE.sub(LOCKFILE_PLACEHOLDER, text)
    return text.strip()


def sanitize_history(messages: list[Message]) -> list[Message]:
    """Strip reasoning blocks and lockfile dumps from assistant turns."""
    cleaned = []
    for message in messages:
        if message.role != "assistant":
            cleaned.append(message)
            continue
        if isinstance(message.content, str):
            cleaned.append(message.with_content(_clean_assistant_text(message.content)))
        else:
            parts = [
                {**part, "text": _clean_assistant_text(part.get("text", ""))}
                if isinstance(part, dict) and part.get("type") == "text"
                else part
                for part in message.content
            ]
            cleaned.append(message.with_content(parts))
    return cleaned


def build_system_prompt(
    prompt_id: str | None,
    options: PromptOptions | None = None,
    file_context: str | None = None,
    locked_files: Iterable[str] = (),
) -> str:
    system = PromptLibrary.render(prompt_id, options)

    if file_context:
        system = (
            f"{system}\n\n"
            "Below is the context loaded into the context buffer. You may need to "
            "change these files to fulfil the current request.\n"
            f"CONTEXT BUFFER:\n---\n{file_context}\n---\n"
        )

    locked = sorted(set(locked_files))
    if locked:
        listing = "\n".join(f"- {path}" for path in locked)
        system = (
            f"{system}\n\n"
            "IMPORTANT: The following files are locked and MUST NOT be modified:\n"
            f"{listing}\n---\n"
        )
    return system


# ---------------------------------------------------------------------------
# Turn preparation
# ---------------------------------------------------------------------------


def prepare_turn(
    messages: list[Message | dict],
    model_info: ModelInfo,
    prompt_id: str | None = "default",
    prompt_options: PromptOptions | None = None,
    file_context: str | None = None,
    locked_files: Iterable[str] = (),
    optimizer: ContextOptimizer | None = None,
    allocator: ContextAllocator | None = None,
) -> PreparedTurn:
    """
    Fit a turn into `model_info.max_token_allowed`.

    Raises:
        ContextLengthError: the system prompt alone exceeds 80% of the window.
    """
    allocator = allocator or ContextAllocator()
    history = sanitize_history(to_messages(messages))
    if optimizer is not None:
        history = optimizer.auto_optimize(history)

    system = build_system_prompt(prompt_id, prompt_options, file_context, locked_files)
    system_tokens = estimate_tokens(system)
    messages_tokens = estimate_messages_tokens(history)
    max_tokens = model_info.max_token_allowed

    ensure_system_prompt_fits(model_info.name, system_tokens, system_tokens + messages_tokens, max_tokens)

    # File context already lives in the system prompt.
    budget = allocator.allocate(max_tokens, system_tokens, messages_tokens, 0)
    logger.debug(
        "Token usage: system=%d messages=%d limit=%d", system_tokens, messages_tokens, max_tokens
    )

    requested_total = budget.system_tokens + messages_tokens + budget.completion_tokens
    truncated = False
    if not budget.can_fit or requested_total > max_tokens:
        logger.warning("Token limit exceeded; truncating messages to fit %d tokens", max_tokens)
        history = truncate_messages(history, max_tokens, system_tokens, budget.completion_tokens)
        truncated = True

    completion_max = min(
        budget.completion_tokens,
        max_tokens - system_tokens - estimate_messages_tokens(history),
    )
    completion_max = max(completion_max, MIN_COMPLETION_TOKENS)

    logger.info(
        "Prepared turn for %s: %d messages, %d max completion tokens",
        model_info.name,
        len(history),
        completion_max,
    )
    return PreparedTurn(
        system_prompt=system,
        messages=history,
        budget=budget,
        completion_max_tokens=completion_max,
        truncated=truncated,
    )


async def stream_text(
    model: ModelCall,
    messages: list[Message | dict],
    cancel: threading.Event | None = None,
    **options,
) -> AsyncIterator[StreamChunk]:
    """Prepare a turn and stream the model's reply. Options go to prepare_turn."""
    prepared = prepare_turn(messages, model.model_info, **options)
    async for chunk in model.stream(
        prepared.messages,
        system=prepared.system_prompt,
        max_tokens=prepared.completion_max_tokens,
        cancel=cancel,
    ):
        yield chunk
