"""
codepilot/memory — conversation and settings storage.

Exports:
    ConversationStore — live in-memory history with token usage
    SettingsStore     — SQLite key-value settings and agent run history
"""

from codepilot.memory.session import ConversationStore
from codepilot.memory.settings_store import SettingsStore

__all__ = ["ConversationStore", "SettingsStore"]
