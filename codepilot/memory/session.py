"""
Conversation store — the live, in-memory history the optimizer inspects.

Token usage is counted with tiktoken when its encoding can be loaded; the
character-ratio estimator from codepilot.tokens is used otherwise.

Usage:
    store = ConversationStore()
    store.add("user", "Add a login page")
    analysis = optimizer.analyze(store.messages(), store.usage())
    store.rewrite(optimizer.optimize(store.messages(), "compress"))
"""

from __future__ import annotations

import logging
from typing import Any

from codepilot.context import Message, Role, message_text
from codepilot.tokens import MESSAGE_OVERHEAD_TOKENS, estimate_message_tokens

logger = logging.getLogger(__name__)

ENCODING_NAME = "cl100k_base"

_encoding: Any = None
_encoding_failed = False


def _load_encoding() -> Any:
    """Load the tiktoken encoding once. Returns None if it is unavailable."""
    global _encoding, _encoding_failed
    if _encoding is not None or _encoding_failed:
        return _encoding
    try:
        import tiktoken  # type: ignore

        _encoding = tiktoken.get_encoding(ENCODING_NAME)
    except Exception as exc:
        logger.warning("tiktoken encoding %s unavailable (%s); using estimates", ENCODING_NAME, exc)
        _encoding_failed = True
    return _encoding


class ConversationStore:
    """
    Session-scoped conversation history.

    Attributes:
        max_history: Hard limit on stored messages before old ones are dropped.
    """

    def __init__(self, max_history: int = 500, use_tiktoken: bool = True) -> None:
        self.max_history = max_history
        self.use_tiktoken = use_tiktoken
        self._messages: list[Message] = []

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def add(self, role: Role, content: str | list) -> Message:
        message = Message(role=role, content=content)
        self._messages.append(message)

        if len(self._messages) > self.max_history:
            overflow = len(self._messages) - self.max_history
            self._messages = self._messages[overflow:]
            logger.debug("Trimmed %d old message(s) from conversation", overflow)
        return message

    def extend(self, messages: list[Message]) -> None:
        for m in messages:
            self.add(m.role, m.content)

    def messages(self) -> list[Message]:
        """A copy of the history, oldest first."""
        return list(self._messages)

    def rewrite(self, messages: list[Message]) -> None:
        """Replace the history with an optimized one."""
        before = len(self._messages)
        self._messages = list(messages)
        logger.info("Conversation rewritten: %d -> %d messages", before, len(self._messages))

    def clear(self) -> None:
        self._messages.clear()
        logger.info("Conversation cleared")

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def message_count(self) -> int:
        return len(self._messages)

    def usage(self) -> int:
        """Total tokens across the stored history."""
        return sum(self.count_message(m) for m in self._messages)

    def count_message(self, message: Message) -> int:
        encoding = _load_encoding() if self.use_tiktoken else None
        if encoding is None:
            return estimate_message_tokens(message)
        return len(encoding.encode(message_text(message))) + MESSAGE_OVERHEAD_TOKENS

    def stats(self) -> dict:
        return {
            "message_count": self.message_count,
            "total_tokens": self.usage(),
            "max_history": self.max_history,
        }
