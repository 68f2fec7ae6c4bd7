"""
Unit tests for the conversation store and the SQLite settings store.

Run with:
    pytest tests/test_memory.py -v
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from helpers import chat

from codepilot.context import Message
from codepilot.memory.session import ConversationStore
from codepilot.memory.settings_store import SettingsStore
from codepilot.optimization import ContextOptimizer
from codepilot.tokens import estimate_messages_tokens


@pytest.fixture
def store():
    s = SettingsStore(":memory:")
    yield s
    s.close()


class TestSettingsStore:
    """Key-value settings and agent run history."""

    def test_get_set(self, store):
        assert store.get("missing") is None
        store.set("theme", "dark")
        store.set("theme", "light")
        assert store.get("theme") == "light"

    def test_agent_runs_newest_first(self, store):
        store.record_agent_run("coding-1-1", "coding", {"type": "create"}, {"success": True, "summary": "ok"})
        store.record_agent_run("coding-2-2", "coding", {"type": "debug"}, {"success": False, "summary": "bad"})

        runs = store.recent_agent_runs()
        assert [r["agent_id"] for r in runs] == ["coding-2-2", "coding-1-1"]
        assert runs[0]["success"] is False
        assert runs[0]["task"] == {"type": "debug"}
        assert runs[1]["summary"] == "ok"
        assert len(store.recent_agent_runs(limit=1)) == 1

    def test_file_database_persists(self, tmp_path):
        path = tmp_path / "nested" / "settings.db"
        first = SettingsStore(path)
        first.set("k", "v")
        first.close()

        second = SettingsStore(path)
        assert second.get("k") == "v"
        second.close()

    def test_optimizer_settings_round_trip(self, store):
        ContextOptimizer(store=store).update_settings(compression_level="aggressive")
        assert ContextOptimizer(store=store).settings.compression_level == "aggressive"


class TestConversationStore:
    """In-memory history with token usage."""

    def test_add_and_usage(self):
        conversation = ConversationStore(use_tiktoken=False)
        conversation.add("user", "hello there")
        conversation.add("assistant", "hi")

        assert conversation.message_count == 2
        assert conversation.usage() == estimate_messages_tokens(conversation.messages())

    def test_messages_returns_copy(self):
        conversation = ConversationStore(use_tiktoken=False)
        conversation.add("user", "hello")
        conversation.messages().append(Message("user", "sneaky"))
        assert conversation.message_count == 1

    def test_max_history_trims_oldest(self):
        conversation = ConversationStore(max_history=3, use_tiktoken=False)
        for i in range(5):
            conversation.add("user", f"m{i}")
        assert [m.content for m in conversation.messages()] == ["m2", "m3", "m4"]

    def test_rewrite_and_clear(self):
        conversation = ConversationStore(use_tiktoken=False)
        conversation.extend(chat(6))
        conversation.rewrite(chat(2))
        assert conversation.message_count == 2

        conversation.clear()
        assert conversation.stats() == {"message_count": 0, "total_tokens": 0, "max_history": 500}

    def test_tiktoken_counts(self):
        encoding = MagicMock()
        encoding.encode.return_value = [1, 2, 3]
        conversation = ConversationStore()
        conversation.add("user", "hello there")

        with patch("codepilot.memory.session._load_encoding", return_value=encoding):
            assert conversation.usage() == 3 + 5
        encoding.encode.assert_called_once_with("hello there")

    def test_missing_encoding_falls_back_to_estimate(self):
        conversation = ConversationStore()
        conversation.add("user", "abcd")
        with patch("codepilot.memory.session._load_encoding", return_value=None):
            assert conversation.usage() == 1 + 5
