"""
Unit tests for message history truncation.

Run with:
    pytest tests/test_truncation.py -v
"""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from codepilot.context import Message
from codepilot.tokens import estimate_message_tokens, estimate_messages_tokens
from codepilot.truncation import TRUNCATION_MARKER, truncate_message_content, truncate_messages


def numbered(n: int, size: int = 40) -> list[Message]:
    # each message costs size/4 + 5 tokens
    return [Message("user" if i % 2 == 0 else "assistant", f"{i:02d}" + "a" * (size - 2)) for i in range(n)]


class TestTruncateMessages:
    """Newest-first selection with a single partial message."""

    def test_no_budget_returns_empty(self):
        assert truncate_messages(numbered(3), max_tokens=8000, system_prompt_tokens=500) == []
        assert truncate_messages(numbered(3), 1000, 600, 400) == []

    def test_everything_fits(self):
        messages = numbered(5)
        result = truncate_messages(messages, 10_000, 0, 0)
        assert result == messages
        assert result is not messages

    def test_keeps_most_recent_in_order(self):
        messages = numbered(10)  # 15 tokens each
        result = truncate_messages(messages, 60, 0, 0)
        assert result == messages[-4:]

    def test_small_remainder_drops_overflowing_message(self):
        messages = [Message("user", "x" * 4000), Message("assistant", "y" * 40)]
        result = truncate_messages(messages, 100, 0, 0)
        assert result == [messages[1]]

    def test_large_remainder_truncates_overflowing_message(self):
        old = Message("user", "x" * 4000)  # 1005 tokens
        new = Message("assistant", "y" * 40)  # 15 tokens
        result = truncate_messages([old, new], 300, 0, 0)

        assert len(result) == 2
        assert result[1] == new
        target = int(285 * 3.5)
        keep = int(target * 0.4)
        assert result[0].content == "x" * keep + TRUNCATION_MARKER + "x" * keep
        assert result[0].role == "user"

    def test_partial_code_block_stays_within_budget(self):
        message = Message("assistant", "```" + "c" * 5000 + "```")  # 1674 tokens
        result = truncate_messages([message], 200, 0, 0)

        assert len(result) == 1
        assert TRUNCATION_MARKER in result[0].content
        assert result[0].content.startswith("```")
        assert estimate_message_tokens(result[0]) <= 200

    def test_stops_after_partial_message(self):
        messages = [Message("user", "z" * 4000), Message("user", "x" * 4000), Message("assistant", "y" * 40)]
        result = truncate_messages(messages, 300, 0, 0)
        assert len(result) == 2
        assert result[0].content.startswith("x")

    def test_never_increases_tokens(self):
        messages = numbered(30, size=400) + [Message("user", "q" * 3000)]
        for budget in (50, 200, 1000, 5000, 50_000):
            result = truncate_messages(messages, budget, 0, 0)
            assert estimate_messages_tokens(result) <= estimate_messages_tokens(messages)

    def test_input_not_mutated(self):
        messages = [Message("user", "x" * 4000), Message("assistant", "y" * 40)]
        snapshot = list(messages)
        truncate_messages(messages, 300, 0, 0)
        assert messages == snapshot
        assert messages[0].content == "x" * 4000

    def test_default_reserve_applied(self):
        messages = numbered(4)
        assert truncate_messages(messages, 8000) == []
        assert truncate_messages(messages, 8060) == messages


class TestTruncateMessageContent:
    """Single-message head/tail truncation."""

    def test_refuses_tiny_budget(self):
        assert truncate_message_content(Message("user", "x" * 1000), 49) is None

    def test_fitting_message_returned_unchanged(self):
        message = Message("user", "short")
        assert truncate_message_content(message, 50) is message

    def test_idempotent_on_fitting_message(self):
        message = Message("user", "x" * 100)
        once = truncate_message_content(message, 100)
        assert truncate_message_content(once, 100) is once

    def test_keeps_head_and_tail(self):
        content = "HEAD" + "m" * 2000 + "TAIL"
        result = truncate_message_content(Message("assistant", content), 100)
        assert result.content.startswith("HEAD")
        assert result.content.endswith("TAIL")
        assert TRUNCATION_MARKER in result.content
        assert len(result.content) == 2 * int(350 * 0.4) + len(TRUNCATION_MARKER)

    def test_structured_content_flattened(self):
        message = Message("user", [{"type": "text", "text": "p" * 1000}])
        result = truncate_message_content(message, 60)
        assert isinstance(result.content, str)
        assert TRUNCATION_MARKER in result.content
