"""
Shared test doubles: a scripted model call and message builders.
"""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from codepilot.context import Message
from codepilot.llm.client import ModelInfo, StreamChunk

FILE_RESPONSE = (
    "Here is the page.\n"
    '<action type="file" filePath="src/index.html">\n<h1>Hello</h1>\n</action>\n'
    '<action type="shell">\nnpm install\n</action>\n'
)


class FakeModel:
    """
    Model call that replays scripted responses.

    Each call pops the next response; once the script is empty `default` is
    returned. A response that is an Exception instance is raised instead.
    """

    def __init__(
        self,
        responses: list | None = None,
        default: str = FILE_RESPONSE,
        max_token_allowed: int = 32_000,
    ) -> None:
        self.model_info = ModelInfo(name="fake-model", provider="fake", max_token_allowed=max_token_allowed)
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[dict] = []

    async def stream(self, messages, system=None, max_tokens=4096, cancel=None):
        self.calls.append(
            {"messages": list(messages), "system": system, "max_tokens": max_tokens, "cancel": cancel}
        )
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        yield StreamChunk(type="text-delta", text_delta=response)
        yield StreamChunk(type="finish")


def chat(n: int, content: str = "hello there") -> list[Message]:
    """n alternating user/assistant messages."""
    return [Message(role="user" if i % 2 == 0 else "assistant", content=content) for i in range(n)]
