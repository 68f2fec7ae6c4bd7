"""
Unit tests for the model client, the prompt library and turn preparation.

Provider SDKs are replaced with MagicMock modules; no network access.
Run with:
    pytest tests/test_llm.py -v
"""

from __future__ import annotations

import asyncio
import os
import sys
import threading
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from helpers import FILE_RESPONSE, FakeModel, chat

from codepilot.context import Message
from codepilot.errors import ContextLengthError
from codepilot.llm.client import (
    ANTHROPIC_DEFAULT_MODEL,
    OPENAI_DEFAULT_MODEL,
    LLMClient,
    ModelInfo,
    StreamChunk,
    _split_system,
    collect_text,
)
from codepilot.llm.prompts import PromptLibrary, PromptOptions
from codepilot.llm.stream import (
    LOCKFILE_PLACEHOLDER,
    build_system_prompt,
    prepare_turn,
    sanitize_history,
    stream_text,
)
from codepilot.optimization import ContextOptimizer, OptimizationSettings
from codepilot.tokens import estimate_messages_tokens


async def chunks(*items):
    for item in items:
        yield item


# ---------------------------------------------------------------------------
# Stream helpers
# ---------------------------------------------------------------------------


class TestCollectText:
    """Only text-delta chunks make up the response."""

    def test_joins_text_deltas(self):
        stream = chunks(
            StreamChunk("text-delta", "Hel"),
            StreamChunk("tool-call"),
            StreamChunk("text-delta", "lo"),
            StreamChunk("finish"),
        )
        assert asyncio.run(collect_text(stream)) == "Hello"

    def test_empty_stream(self):
        assert asyncio.run(collect_text(chunks())) == ""


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


class TestPromptLibrary:
    """Prompt lookup and rendering."""

    def test_renders_cwd(self):
        text = PromptLibrary.render("default", PromptOptions(cwd="/srv/app"))
        assert "/srv/app" in text
        assert "{cwd}" not in text

    def test_unknown_id_falls_back_to_default(self):
        assert PromptLibrary.render("nope") == PromptLibrary.render("default")
        assert PromptLibrary.render(None) == PromptLibrary.render("default")

    def test_list_prompts(self):
        ids = [p["id"] for p in PromptLibrary.list_prompts()]
        assert ids == ["default", "minimal"]

    def test_system_prompt_extras(self):
        system = build_system_prompt(
            "minimal", file_context="app.py: print(1)", locked_files=["b.txt", "a.txt", "a.txt"]
        )
        assert "CONTEXT BUFFER:\n---\napp.py: print(1)\n---" in system
        assert "MUST NOT be modified:\n- a.txt\n- b.txt\n" in system


# ---------------------------------------------------------------------------
# Turn preparation
# ---------------------------------------------------------------------------


class TestSanitizeHistory:
    """Assistant turns are cleaned; other roles pass through."""

    def test_think_blocks_removed(self):
        messages = [Message("assistant", "<think>\nhmm\n</think>Answer")]
        assert sanitize_history(messages)[0].content == "Answer"

    def test_lockfile_replaced(self):
        content = 'Done <action type="file" filePath="package-lock.json">{"a": 1}</action>'
        result = sanitize_history([Message("assistant", content)])
        assert result[0].content == f"Done {LOCKFILE_PLACEHOLDER}"

    def test_user_messages_untouched(self):
        message = Message("user", "<think>keep</think>")
        assert sanitize_history([message]) == [message]

    def test_structured_content(self):
        message = Message("assistant", [{"type": "text", "text": "<think>x</think>ok"}, {"type": "image"}])
        result = sanitize_history([message])[0]
        assert result.content == [{"type": "text", "text": "ok"}, {"type": "image"}]


class TestPrepareTurn:
    """Budget check, truncation and completion sizing."""

    def info(self, max_tokens):
        return ModelInfo(name="test-model", provider="fake", max_token_allowed=max_tokens)

    def test_normal_turn(self):
        prepared = prepare_turn(chat(4), self.info(32_000))
        assert prepared.truncated is False
        assert len(prepared.messages) == 4
        assert prepared.completion_max_tokens == 8000
        assert prepared.budget.can_fit is True
        assert prepared.to_dict()["message_count"] == 4

    def test_accepts_provider_dicts(self):
        prepared = prepare_turn([{"role": "user", "content": "hi"}], self.info(32_000))
        assert prepared.messages == [Message("user", "hi")]

    def test_file_context_in_system_prompt(self):
        prepared = prepare_turn(chat(2), self.info(32_000), file_context="index.html: <h1/>")
        assert "CONTEXT BUFFER:" in prepared.system_prompt

    def test_oversized_system_prompt_raises(self):
        with pytest.raises(ContextLengthError):
            prepare_turn(chat(2), self.info(2000), file_context="x" * 20_000)

    def test_overflowing_history_truncated(self):
        messages = chat(40, content="a" * 2000)  # 505 tokens each
        prepared = prepare_turn(messages, self.info(16_000))

        assert prepared.truncated is True
        assert 0 < len(prepared.messages) < 40
        assert prepared.messages[-1] == messages[-1]
        assert estimate_messages_tokens(prepared.messages) <= 16_000 - 8000
        assert prepared.completion_max_tokens >= 1000

    def test_optimizer_applied_first(self):
        optimizer = ContextOptimizer(settings=OptimizationSettings(auto_optimize=True))
        prepared = prepare_turn(chat(30), self.info(32_000), optimizer=optimizer)
        # compress keeps the count, only the older bodies shrink
        assert len(prepared.messages) == 30
        assert optimizer.last_analysis is not None

    def test_stream_text_passes_prepared_turn(self):
        model = FakeModel()
        text = asyncio.run(collect_text(stream_text(model, chat(3), prompt_id="minimal")))

        assert text == FILE_RESPONSE
        call = model.calls[0]
        assert call["system"] == PromptLibrary.render("minimal")
        assert call["max_tokens"] == 8000
        assert len(call["messages"]) == 3


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------


class TestLLMClientConfig:
    """Provider and window selection from the environment."""

    def test_openai_only(self):
        with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test"}, clear=True):
            client = LLMClient()
        assert client.model_info.provider == "openai"
        assert client.model_info.name == OPENAI_DEFAULT_MODEL
        assert client.model_info.max_token_allowed == 128_000

    def test_anthropic_preferred(self):
        env = {"ANTHROPIC_API_KEY": "ak-test", "OPENAI_API_KEY": "sk-test"}
        with patch.dict(os.environ, env, clear=True):
            client = LLMClient()
        assert client.model_info.provider == "anthropic"
        assert client.model_info.name == ANTHROPIC_DEFAULT_MODEL
        assert client.model_info.max_token_allowed == 200_000

    def test_no_keys(self):
        with patch.dict(os.environ, {}, clear=True):
            client = LLMClient()
        assert client.model_info.provider == "anthropic"

    def test_model_and_window_overrides(self):
        env = {
            "OPENAI_API_KEY": "sk-test",
            "CODEPILOT_LLM_MODEL": "gpt-3.5-turbo",
        }
        with patch.dict(os.environ, env, clear=True):
            assert LLMClient().model_info.max_token_allowed == 16_385
        with patch.dict(os.environ, {**env, "CODEPILOT_MODEL_MAX_TOKENS": "5000"}, clear=True):
            assert LLMClient().model_info.max_token_allowed == 5000
        with patch.dict(os.environ, env, clear=True):
            assert LLMClient(max_token_allowed=4096).model_info.max_token_allowed == 4096

    def test_split_system(self):
        messages = [Message("system", "Be brief."), Message("user", "hi")]
        system, rest = _split_system(messages, "Base prompt")
        assert system == "Base prompt\n\nBe brief."
        assert rest == [Message("user", "hi")]


class TestLLMClientStreaming:
    """Provider streams run in an executor and honour the cancel event."""

    def anthropic_module(self, texts):
        module = MagicMock()
        stream = module.Anthropic.return_value.messages.stream.return_value
        stream.__enter__.return_value.text_stream = texts
        return module

    def openai_module(self, texts):
        module = MagicMock()
        chunks = [SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=t))]) for t in texts]
        chunks.append(SimpleNamespace(choices=[]))
        module.OpenAI.return_value.chat.completions.create.return_value.__enter__.return_value = chunks
        return module

    def test_anthropic_stream(self):
        module = self.anthropic_module(["Hel", "lo"])
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "ak-test"}, clear=True):
            client = LLMClient()
        with patch.dict(sys.modules, {"anthropic": module}):
            text = asyncio.run(
                client.complete([Message("system", "extra"), Message("user", "hi")], system="sys")
            )

        assert text == "Hello"
        kwargs = module.Anthropic.return_value.messages.stream.call_args.kwargs
        assert kwargs["system"] == "sys\n\nextra"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["model"] == ANTHROPIC_DEFAULT_MODEL

    def test_anthropic_stream_cancelled(self):
        module = self.anthropic_module(["Hel", "lo"])
        cancel = threading.Event()
        cancel.set()
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "ak-test"}, clear=True):
            client = LLMClient()
        with patch.dict(sys.modules, {"anthropic": module}):
            text = asyncio.run(client.complete([Message("user", "hi")], cancel=cancel))
        assert text == ""

    def test_stream_ends_with_finish(self):
        module = self.anthropic_module(["a"])
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "ak-test"}, clear=True):
            client = LLMClient()

        async def gather():
            return [c async for c in client.stream([Message("user", "hi")])]

        with patch.dict(sys.modules, {"anthropic": module}):
            result = asyncio.run(gather())
        assert [c.type for c in result] == ["text-delta", "finish"]

    def test_openai_stream(self):
        module = self.openai_module(["Hi", " there"])
        with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test"}, clear=True):
            client = LLMClient()
        with patch.dict(sys.modules, {"openai": module}):
            text = asyncio.run(client.complete([Message("user", "hi")], system="sys", max_tokens=100))

        assert text == "Hi there"
        kwargs = module.OpenAI.return_value.chat.completions.create.call_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert kwargs["max_tokens"] == 100
        assert kwargs["stream"] is True
