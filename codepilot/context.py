"""
Conversation message model shared by the budget, truncation and agent layers.

Messages are immutable: every transformation in this package returns a new
Message (or a new list) and leaves the caller's history untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str | list  # str for text, list of part dicts for structured content

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(role=data["role"], content=data.get("content", ""))

    def to_dict(self) -> dict:
        """Format for provider APIs."""
        return {"role": self.role, "content": self.content}

    @property
    def text(self) -> str:
        return message_text(self)

    def with_content(self, content: str | list) -> "Message":
        return replace(self, content=content)


def message_text(message: Message) -> str:
    """Flatten message content to plain text. Non-text parts contribute nothing."""
    content = message.content
    if isinstance(content, str):
        return content
    if not content:
        return ""
    parts = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def to_messages(items: list[Message | dict]) -> list[Message]:
    """Accept provider-style dicts or Message objects and return Messages."""
    return [m if isinstance(m, Message) else Message.from_dict(m) for m in items]
