"""
Context window allocation.

Splits a model's maximum context across the system prompt, message history,
auxiliary file context and the completion reserve, and reports whether the
turn fits.

Usage:
    budget = allocate(model_max_tokens=128_000, system_prompt_tokens=2_400,
                      messages_tokens=40_000, file_context_tokens=12_000)
    if not budget.can_fit:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from codepilot.errors import context_length_error

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_RESERVE = 8000
MIN_SYSTEM_PROMPT_TOKENS = 1000
MESSAGE_SHARE = 0.7  # of the content budget; the rest goes to file context
SYSTEM_PROMPT_SAFETY_RATIO = 0.8


@dataclass(frozen=True)
class TokenBudget:
    """Token allotment for one turn. Computed fresh every turn, never persisted."""

    system_tokens: int
    message_tokens: int
    context_tokens: int
    completion_tokens: int
    total_used: int
    can_fit: bool

    def to_dict(self) -> dict:
        return asdict(self)


class ContextAllocator:
    """
    Allocates a context window with a fixed priority split.

    Recent conversation gets `message_share` of the content budget; file
    context keeps the remainder as a guaranteed minimum.
    """

    def __init__(
        self,
        completion_reserve: int = DEFAULT_COMPLETION_RESERVE,
        min_system_tokens: int = MIN_SYSTEM_PROMPT_TOKENS,
        message_share: float = MESSAGE_SHARE,
    ) -> None:
        if not 0.0 <= message_share <= 1.0:
            raise ValueError(f"message_share must be within [0, 1], got {message_share}")
        self.completion_reserve = completion_reserve
        self.min_system_tokens = min_system_tokens
        self.message_share = message_share

    def allocate(
        self,
        model_max_tokens: int,
        system_prompt_tokens: int,
        messages_tokens: int,
        file_context_tokens: int = 0,
    ) -> TokenBudget:
        completion = self.completion_reserve
        system = max(system_prompt_tokens, self.min_system_tokens)
        available = model_max_tokens - completion - system

        if available <= 0:
            total = system + completion
            return TokenBudget(
                system_tokens=system,
                message_tokens=0,
                context_tokens=0,
                completion_tokens=completion,
                total_used=total,
                can_fit=total <= model_max_tokens,
            )

        max_message_tokens = int(available * self.message_share)
        max_context_tokens = available - max_message_tokens

        message_tokens = min(messages_tokens, max_message_tokens)
        context_tokens = min(file_context_tokens, max_context_tokens)
        total = system + message_tokens + context_tokens + completion

        return TokenBudget(
            system_tokens=system,
            message_tokens=message_tokens,
            context_tokens=context_tokens,
            completion_tokens=completion,
            total_used=total,
            can_fit=total <= model_max_tokens,
        )


_default_allocator = ContextAllocator()


def allocate(
    model_max_tokens: int,
    system_prompt_tokens: int,
    messages_tokens: int,
    file_context_tokens: int = 0,
) -> TokenBudget:
    """Allocate with the default reserve, floor and 70/30 split."""
    return _default_allocator.allocate(
        model_max_tokens, system_prompt_tokens, messages_tokens, file_context_tokens
    )


def ensure_system_prompt_fits(
    model_name: str,
    system_tokens: int,
    total_tokens: int,
    model_max_tokens: int,
    safety_ratio: float = SYSTEM_PROMPT_SAFETY_RATIO,
) -> None:
    """
    Raise ContextLengthError when the system prompt alone exceeds the safety
    fraction of the model's capacity. Nothing useful would survive truncation.
    """
    if system_tokens > model_max_tokens * safety_ratio:
        logger.error(
            "System prompt (%d tokens) exceeds %.0f%% of %s capacity (%d)",
            system_tokens,
            safety_ratio * 100,
            model_name,
            model_max_tokens,
        )
        raise context_length_error(model_name, total_tokens, model_max_tokens)
