"""
Token estimation for text and conversation messages.

A best-effort approximation, not a model tokenizer. Text is split into three
disjoint categories, each counted with its own characters-per-token ratio:

    fenced code / tool-action blocks   ~3   chars per token
    JSON-like bracketed structures     ~3.5 chars per token
    remaining prose                    ~4   chars per token

Each category is removed from the text before the next one is counted, so no
character is counted twice.
"""

from __future__ import annotations

import math
import re
from typing import Iterable

from codepilot.context import Message, message_text

CODE_CHARS_PER_TOKEN = 3.0
STRUCTURED_CHARS_PER_TOKEN = 3.5
PROSE_CHARS_PER_TOKEN = 4.0

MESSAGE_OVERHEAD_TOKENS = 5  # role + formatting per message

CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```|<action[\s\S]*?</action>")
STRUCTURED_RE = re.compile(r"\{[\s\S]*?\}|\[[\s\S]*?\]")


def estimate_tokens(text: str | None) -> int:
    """Estimate the token count of a piece of text. Empty or None → 0."""
    if not text:
        return 0

    total = 0

    code_blocks = CODE_BLOCK_RE.findall(text)
    for block in code_blocks:
        total += math.ceil(len(block) / CODE_CHARS_PER_TOKEN)
    remaining = CODE_BLOCK_RE.sub("", text) if code_blocks else text

    structured = STRUCTURED_RE.findall(remaining)
    for block in structured:
        total += math.ceil(len(block) / STRUCTURED_CHARS_PER_TOKEN)
    if structured:
        remaining = STRUCTURED_RE.sub("", remaining)

    total += math.ceil(len(remaining) / PROSE_CHARS_PER_TOKEN)
    return total


def estimate_message_tokens(message: Message) -> int:
    """Content estimate plus the fixed per-message overhead."""
    return estimate_tokens(message_text(message)) + MESSAGE_OVERHEAD_TOKENS


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)
