"""
Unit tests for context window allocation and the system prompt safety check.

Run with:
    pytest tests/test_budget.py -v
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from codepilot.budget import ContextAllocator, allocate, ensure_system_prompt_fits
from codepilot.errors import CONTEXT_LENGTH_EXCEEDED, ContextLengthError


class TestAllocate:
    """Budget split across system, messages, file context and completion."""

    def test_small_window_large_system_prompt_cannot_fit(self):
        budget = allocate(model_max_tokens=4096, system_prompt_tokens=3500, messages_tokens=2000)
        assert budget.can_fit is False
        assert budget.message_tokens == 0
        assert budget.context_tokens == 0

    def test_requests_within_shares_are_kept_whole(self):
        budget = allocate(128_000, 2000, 40_000, 12_000)
        assert budget.system_tokens == 2000
        assert budget.message_tokens == 40_000
        assert budget.context_tokens == 12_000
        assert budget.completion_tokens == 8000
        assert budget.total_used == 62_000
        assert budget.can_fit is True

    def test_system_prompt_floor(self):
        budget = allocate(100_000, 200, 0)
        assert budget.system_tokens == 1000

    def test_requests_capped_at_shares(self):
        budget = allocate(20_000, 1000, 50_000, 50_000)
        available = 20_000 - 8000 - 1000
        assert budget.message_tokens == int(available * 0.7)
        assert budget.context_tokens == available - int(available * 0.7)
        assert budget.can_fit is True

    def test_custom_reserve_and_share(self):
        allocator = ContextAllocator(completion_reserve=1000, min_system_tokens=0, message_share=0.5)
        budget = allocator.allocate(11_000, 0, 100_000, 100_000)
        assert budget.message_tokens == 5000
        assert budget.context_tokens == 5000
        assert budget.total_used == 11_000

    def test_invalid_share_rejected(self):
        with pytest.raises(ValueError):
            ContextAllocator(message_share=1.5)

    @pytest.mark.parametrize(
        "model_max,system,messages,files",
        [
            (4096, 3500, 2000, 0),
            (9000, 1000, 500, 500),
            (8000, 0, 0, 0),
            (32_000, 2500, 100_000, 3000),
            (200_000, 12_000, 150_000, 80_000),
            (1000, 5000, 10, 10),
        ],
    )
    def test_totals_and_fit_are_consistent(self, model_max, system, messages, files):
        budget = allocate(model_max, system, messages, files)
        assert budget.total_used == (
            budget.system_tokens + budget.message_tokens + budget.context_tokens + budget.completion_tokens
        )
        assert budget.can_fit == (budget.total_used <= model_max)

    def test_to_dict(self):
        data = allocate(4096, 3500, 0).to_dict()
        assert set(data) == {
            "system_tokens",
            "message_tokens",
            "context_tokens",
            "completion_tokens",
            "total_used",
            "can_fit",
        }


class TestSystemPromptSafety:
    """System prompt larger than 80% of the window is fatal."""

    def test_oversized_system_prompt_raises(self):
        with pytest.raises(ContextLengthError) as info:
            ensure_system_prompt_fits("tiny-model", 3500, 5000, 4096)
        assert info.value.code == CONTEXT_LENGTH_EXCEEDED
        assert str(info.value) == "Token limit exceeded for tiny-model: 5000/4096"
        assert "too long for the tiny-model model" in info.value.user_message

    def test_system_prompt_within_ratio_passes(self):
        ensure_system_prompt_fits("big-model", 1000, 90_000, 128_000)

    def test_exactly_at_ratio_passes(self):
        ensure_system_prompt_fits("m", 800, 800, 1000)
