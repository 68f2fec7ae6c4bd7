"""
Context optimization — scores a conversation for optimization opportunities
and rewrites history into a smaller one on demand.

Three strategies are available, each `(messages, settings) -> list[Message]`:

    remove_old  — keep the most recent messages that fit max_context_length
    compress    — shrink the oldest 70% of message bodies
    summarize   — collapse the oldest half into one synthetic system message

None of them mutate their input. Settings are held by a ContextOptimizer
instance and persisted through a key-value store at the process boundary.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Callable, Literal, Protocol

from codepilot.context import Message, message_text
from codepilot.tokens import estimate_messages_tokens

logger = logging.getLogger(__name__)

SETTINGS_KEY = "codepilot.context_optimization.settings"

DEFAULT_COST_PER_1K_TOKENS = 0.002
DEFAULT_COST_THRESHOLD = 0.10

MESSAGE_COUNT_THRESHOLD = 20
SUMMARIZE_TOKEN_THRESHOLD = 5000
COMPRESS_SAVINGS_PER_MESSAGE = 50

COMPRESS_FRACTION = 0.7
COMPRESS_MAX_CHARS = 200
CODE_PLACEHOLDER = "[Code block removed for context optimization]"
SUMMARIZE_FRACTION = 0.5

_FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

CompressionLevel = Literal["none", "light", "medium", "aggressive"]
COMPRESSION_LEVELS = ("none", "light", "medium", "aggressive")


class RecommendationType(str, Enum):
    REMOVE_OLD = "remove_old"
    COMPRESS = "compress"
    SUMMARIZE = "summarize"
    RESET = "reset"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Recommendation:
    type: RecommendationType
    severity: Severity
    description: str
    potential_savings: int

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "potential_savings": self.potential_savings,
        }


@dataclass
class ContextAnalysis:
    total_tokens: int
    message_count: int
    estimated_cost: float
    recommendations: list[Recommendation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_tokens": self.total_tokens,
            "message_count": self.message_count,
            "estimated_cost": self.estimated_cost,
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


@dataclass
class OptimizationSettings:
    auto_optimize: bool = False
    max_context_length: int = 8000
    prioritize_recent: bool = True
    keep_system_prompts: bool = True
    compression_level: CompressionLevel = "light"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "OptimizationSettings":
        """Build settings from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        settings = cls(**{k: v for k, v in data.items() if k in known})
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.compression_level not in COMPRESSION_LEVELS:
            raise ValueError(f"Unknown compression level: {self.compression_level!r}")
        if self.max_context_length <= 0:
            raise ValueError("max_context_length must be positive")


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


# ---------------------------------------------------------------------------
# Persistence (process boundary)
# ---------------------------------------------------------------------------


def load_settings(store: KeyValueStore | None) -> OptimizationSettings:
    """Load persisted settings; unreadable or missing values yield defaults."""
    if store is None:
        return OptimizationSettings()
    raw = store.get(SETTINGS_KEY)
    if not raw:
        return OptimizationSettings()
    try:
        return OptimizationSettings.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        logger.warning("Failed to load context optimization settings: %s", exc)
        return OptimizationSettings()


def save_settings(store: KeyValueStore | None, settings: OptimizationSettings) -> None:
    if store is None:
        return
    store.set(SETTINGS_KEY, json.dumps(settings.to_dict()))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def remove_old_messages(messages: list[Message], settings: OptimizationSettings) -> list[Message]:
    """
    Evict the oldest messages until the rest fits max_context_length.

    System messages are always retained when keep_system_prompts is set.
    Output keeps chronological order.
    """
    if not settings.prioritize_recent:
        return list(messages)

    if settings.keep_system_prompts:
        pool = [i for i, m in enumerate(messages) if m.role != "system"]
    else:
        pool = list(range(len(messages)))

    if not pool:
        return list(messages)

    pool_tokens = estimate_messages_tokens(messages[i] for i in pool)
    if pool_tokens <= settings.max_context_length:
        return list(messages)

    average = pool_tokens / len(pool)
    keep_count = int(settings.max_context_length // average)
    kept = set(pool[len(pool) - keep_count:]) if keep_count > 0 else set()

    evictable = set(pool)
    result = [m for i, m in enumerate(messages) if i not in evictable or i in kept]
    logger.debug("remove_old kept %d of %d messages", len(result), len(messages))
    return result


def _compress_text(text: str) -> str:
    text = _FENCED_CODE_RE.sub(CODE_PLACEHOLDER, text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    if len(text) > COMPRESS_MAX_CHARS:
        text = text[:COMPRESS_MAX_CHARS] + "..."
    return text


def compress_messages(messages: list[Message], settings: OptimizationSettings) -> list[Message]:
    """Shrink the bodies of the oldest 70% of messages; the newest 30% are untouched."""
    cutoff = int(len(messages) * COMPRESS_FRACTION)
    result = []
    for i, message in enumerate(messages):
        if i < cutoff:
            result.append(message.with_content(_compress_text(message_text(message))))
        else:
            result.append(message)
    return result


def summarize_messages(messages: list[Message], settings: OptimizationSettings) -> list[Message]:
    """Collapse the oldest half into a single summary message when it holds more than 2."""
    cutoff = int(len(messages) * SUMMARIZE_FRACTION)
    if cutoff <= 2:
        return list(messages)

    summary = Message(
        role="system",
        content=(
            f"[Context Summary: This conversation involved {cutoff} messages covering "
            "various topics. Key files were modified and discussed.]"
        ),
    )
    return [summary, *messages[cutoff:]]


Strategy = Callable[[list[Message], OptimizationSettings], list[Message]]

STRATEGIES: dict[RecommendationType, Strategy] = {
    RecommendationType.REMOVE_OLD: remove_old_messages,
    RecommendationType.COMPRESS: compress_messages,
    RecommendationType.SUMMARIZE: summarize_messages,
}


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------


class ContextOptimizer:
    """
    Holds optimization settings and the most recent analysis for one process.

    `update_settings` is the only writer of `settings` and re-persists them to
    the store on every change.
    """

    def __init__(
        self,
        settings: OptimizationSettings | None = None,
        store: KeyValueStore | None = None,
        cost_per_1k_tokens: float = DEFAULT_COST_PER_1K_TOKENS,
        cost_threshold: float = DEFAULT_COST_THRESHOLD,
    ) -> None:
        self.store = store
        self.settings = settings if settings is not None else load_settings(store)
        self.cost_per_1k_tokens = cost_per_1k_tokens
        self.cost_threshold = cost_threshold
        self.last_analysis: ContextAnalysis | None = None
        self.suggestions: list[str] = []
        self.is_optimizing = False

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def update_settings(self, **changes) -> OptimizationSettings:
        unknown = set(changes) - {f.name for f in fields(OptimizationSettings)}
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        updated = OptimizationSettings(**{**self.settings.to_dict(), **changes})
        updated.validate()
        self.settings = updated
        save_settings(self.store, updated)
        logger.info("Context optimization settings updated: %s", changes)
        return updated

    def add_suggestion(self, suggestion: str) -> None:
        self.suggestions.append(suggestion)

    def clear_suggestions(self) -> None:
        self.suggestions.clear()

    def reset(self) -> None:
        self.last_analysis = None
        self.suggestions.clear()
        self.is_optimizing = False

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def estimate_cost(self, tokens: int) -> float:
        return tokens / 1000 * self.cost_per_1k_tokens

    def analyze(self, messages: list[Message], current_usage: int | None = None) -> ContextAnalysis:
        total = current_usage if current_usage is not None else estimate_messages_tokens(messages)
        count = len(messages)
        cost = self.estimate_cost(total)
        limit = self.settings.max_context_length

        recommendations: list[Recommendation] = []

        if total > limit:
            recommendations.append(
                Recommendation(
                    RecommendationType.REMOVE_OLD,
                    Severity.HIGH,
                    f"Context length ({total} tokens) exceeds limit ({limit})",
                    total - limit,
                )
            )

        if count > MESSAGE_COUNT_THRESHOLD:
            recommendations.append(
                Recommendation(
                    RecommendationType.COMPRESS,
                    Severity.MEDIUM,
                    f"{count} messages in context. Consider compressing older messages.",
                    int(count * 0.3) * COMPRESS_SAVINGS_PER_MESSAGE,
                )
            )

        if total > SUMMARIZE_TOKEN_THRESHOLD:
            recommendations.append(
                Recommendation(
                    RecommendationType.SUMMARIZE,
                    Severity.MEDIUM,
                    "High token usage detected. Consider summarizing the conversation.",
                    int(total * 0.4),
                )
            )

        if cost > self.cost_threshold:
            recommendations.append(
                Recommendation(
                    RecommendationType.RESET,
                    Severity.HIGH,
                    f"Estimated cost (${cost:.3f}) is high. Consider starting fresh.",
                    int(total * 0.8),
                )
            )

        analysis = ContextAnalysis(
            total_tokens=total,
            message_count=count,
            estimated_cost=cost,
            recommendations=recommendations,
        )
        self.last_analysis = analysis
        return analysis

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def optimize(self, messages: list[Message], strategy: RecommendationType | str) -> list[Message]:
        """Apply one strategy. `reset` is a user decision, not a rewrite."""
        strategy = RecommendationType(strategy)
        fn = STRATEGIES.get(strategy)
        if fn is None:
            raise ValueError(f"Strategy {strategy.value!r} cannot be applied automatically")

        self.is_optimizing = True
        try:
            result = fn(messages, self.settings)
        finally:
            self.is_optimizing = False

        logger.info(
            "Applied %s: %d -> %d messages", strategy.value, len(messages), len(result)
        )
        return result

    def auto_optimize(self, messages: list[Message]) -> list[Message]:
        """
        When auto_optimize is on, apply the most severe applicable strategy.
        Returns the input unchanged (as a new list) otherwise.
        """
        if not self.settings.auto_optimize:
            return list(messages)

        analysis = self.analyze(messages)
        candidates = [
            r
            for r in analysis.recommendations
            if r.type in STRATEGIES
            and not (r.type == RecommendationType.COMPRESS and self.settings.compression_level == "none")
        ]
        if not candidates:
            return list(messages)

        best = max(candidates, key=lambda r: _SEVERITY_RANK[r.severity])
        return self.optimize(messages, best.type)
