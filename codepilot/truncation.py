"""
Message history truncation.

Walks the history newest-first, keeping whole messages while they fit, and
shortens the first overflowing message when enough room remains. The caller's
list and messages are never modified.
"""

from __future__ import annotations

import logging

from codepilot.budget import DEFAULT_COMPLETION_RESERVE
from codepilot.context import Message, message_text
from codepilot.tokens import estimate_message_tokens

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[... content truncated due to length ...]\n\n"
MIN_PARTIAL_TOKENS = 100   # below this, the overflowing message is dropped
MIN_TRUNCATE_TOKENS = 50   # refuse to produce near-empty fragments
TARGET_CHARS_PER_TOKEN = 3.5
KEEP_FRACTION = 0.4        # kept from each end of the message


def truncate_message_content(message: Message, max_tokens: int) -> Message | None:
    """
    Shorten a single message to roughly `max_tokens`.

    Keeps the beginning and end of the content with a marker in between.
    Returns the message unchanged if it already fits, or None when the budget
    is too small to be worth a fragment.
    """
    if max_tokens < MIN_TRUNCATE_TOKENS:
        return None

    content = message_text(message)
    target_chars = int(max_tokens * TARGET_CHARS_PER_TOKEN)

    if len(content) <= target_chars:
        return message

    keep_start = int(target_chars * KEEP_FRACTION)
    keep_end = int(target_chars * KEEP_FRACTION)
    tail = content[-keep_end:] if keep_end > 0 else ""
    return message.with_content(content[:keep_start] + TRUNCATION_MARKER + tail)


def _fit_partial(message: Message, remaining: int) -> Message | None:
    """
    Truncate `message` until its estimate fits `remaining`.

    The character target assumes prose; code blocks and the marker are
    priced higher, so the target is lowered by any overshoot and retried.
    """
    budget = remaining
    while budget >= MIN_TRUNCATE_TOKENS:
        shortened = truncate_message_content(message, budget)
        if shortened is None:
            return None
        overshoot = estimate_message_tokens(shortened) - remaining
        if overshoot <= 0:
            return shortened
        budget -= overshoot
    return None


def truncate_messages(
    messages: list[Message],
    max_tokens: int,
    system_prompt_tokens: int = 0,
    reserved_tokens: int = DEFAULT_COMPLETION_RESERVE,
) -> list[Message]:
    """
    Select the most recent messages that fit the remaining budget.

    Args:
        messages: Full history, oldest first.
        max_tokens: Model context window.
        system_prompt_tokens: Tokens taken by the system prompt.
        reserved_tokens: Tokens held back for the completion.

    Returns:
        A new list in chronological order. Empty when no budget is left.
    """
    available = max_tokens - system_prompt_tokens - reserved_tokens
    if available <= 0:
        logger.warning(
            "No tokens available for messages after system prompt (%d) and reserve (%d) in %d-token window",
            system_prompt_tokens,
            reserved_tokens,
            max_tokens,
        )
        return []

    used = 0
    kept: list[Message] = []

    for message in reversed(messages):
        cost = estimate_message_tokens(message)
        if used + cost <= available:
            used += cost
            kept.append(message)
            continue

        remaining = available - used
        if remaining > MIN_PARTIAL_TOKENS:
            shortened = _fit_partial(message, remaining)
            if shortened is not None:
                kept.append(shortened)
        break

    kept.reverse()
    logger.debug(
        "Truncated %d messages to %d messages (%d tokens of %d available)",
        len(messages),
        len(kept),
        used,
        available,
    )
    return kept
