"""
Heuristic classifiers used to route requests to agents.

Every classifier is a prioritized list of Rule(name, pattern, weight)
evaluated in order. These are fuzzy, replaceable policies: they never raise,
and a classifier that hits an unexpected error logs it and returns its
fallback value.
"""

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from codepilot.context import Message, message_text

logger = logging.getLogger(__name__)

TASK_TYPES = ("create", "modify", "debug", "refactor", "test")

LONG_REQUEST_WORDS = 30
COMPLEXITY_THRESHOLD = 1.0
CONJUNCTIONS = (" and ", " also ", " plus ")
OBJECTIVE_WINDOW = 3
DEFAULT_OBJECTIVE = "Complete the requested task"


@dataclass(frozen=True)
class Rule:
    """A named pattern. Mapping rules emit their `name` when they match."""

    name: str
    pattern: str
    weight: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", re.compile(self.pattern, re.IGNORECASE))

    def matches(self, text: str) -> bool:
        return self._regex.search(text) is not None  # type: ignore[attr-defined]


def _never_raises(fallback: Callable[[], Any]):
    """Log and return `fallback()` instead of propagating errors."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except Exception:
                logger.exception("Heuristic %s failed; using fallback", fn.__name__)
                return fallback()

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

COMPLEXITY_RULES: list[Rule] = [
    # Multi-step requests
    Rule("create_and_test", r"create.*and.*test"),
    Rule("build_with_features", r"build.*with.*features"),
    Rule("implement_system", r"implement.*system"),
    Rule("develop_application", r"develop.*application"),
    # Multiple file operations
    Rule("multiple_files", r"multiple files?"),
    Rule("project_structure", r"project structure"),
    Rule("full_app", r"full.*app"),
    Rule("complete_implementation", r"complete.*implementation"),
    # Compound technical requirements
    Rule("auth_and_database", r"authentication.*and.*database"),
    Rule("frontend_and_backend", r"frontend.*and.*backend"),
    Rule("responsive_design", r"responsive.*design"),
    Rule("production_ready", r"production.*ready"),
    # Quality requirements
    Rule("test_coverage", r"test.*coverage"),
    Rule("error_handling", r"error handling"),
    Rule("performance_optimization", r"performance.*optimization"),
    Rule("accessibility", r"accessibility"),
]

# First match wins; no match means "create".
TASK_TYPE_RULES: list[Rule] = [
    Rule("debug", r"debug|fix|error"),
    Rule("modify", r"modify|update|change"),
    Rule("refactor", r"refactor|restructure|improve"),
    Rule("test", r"^(?![\s\S]*create)[\s\S]*test"),
]

REQUIREMENT_PATTERNS = [
    re.compile(r"needs? to (.*?)(?:\.|$)", re.IGNORECASE),
    re.compile(r"should (.*?)(?:\.|$)", re.IGNORECASE),
    re.compile(r"must (.*?)(?:\.|$)", re.IGNORECASE),
    re.compile(r"requirements?:?\s*(.*?)(?:\n|$)", re.IGNORECASE),
]

TECHNOLOGY_RULES: list[Rule] = [
    Rule("Use React framework", r"react"),
    Rule("Use TypeScript", r"typescript"),
    Rule("Responsive design", r"responsive"),
    Rule("Accessibility compliance", r"accessible"),
]

CONSTRAINT_RULES: list[Rule] = [
    Rule("No frameworks allowed", r"no framework|vanilla"),
    Rule("Mobile-first design", r"mobile first"),
    Rule("Minimize bundle size", r"lightweight"),
]

OBJECTIVE_RULES: list[Rule] = [
    Rule("Create new implementation", r"create|build|make"),
    Rule("Fix existing issues", r"fix|debug"),
    Rule("Improve existing code", r"improve|optimize"),
    Rule("Add comprehensive testing", r"test"),
]


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------


def last_user_message(messages: list[Message]) -> Message | None:
    """The most recent user-role message, or None."""
    for message in reversed(messages):
        if message.role == "user":
            return message
    return None


def matching_rules(text: str, rules: Iterable[Rule]) -> list[Rule]:
    return [rule for rule in rules if rule.matches(text)]


@_never_raises(lambda: 0.0)
def complexity_score(text: str, rules: list[Rule] = COMPLEXITY_RULES) -> float:
    return sum(rule.weight for rule in matching_rules(text.lower(), rules))


def is_long_compound_request(text: str) -> bool:
    lowered = text.lower()
    return len(lowered.split(" ")) > LONG_REQUEST_WORDS and any(c in lowered for c in CONJUNCTIONS)


@_never_raises(lambda: False)
def wants_agent(text: str) -> bool:
    """True when a request looks like it needs multi-step execution."""
    score = complexity_score(text)
    long_compound = is_long_compound_request(text)
    decision = score >= COMPLEXITY_THRESHOLD or long_compound
    logger.info(
        "Agent usage decision: %s (score=%.1f, long_compound=%s, words=%d)",
        decision,
        score,
        long_compound,
        len(text.split(" ")),
    )
    return decision


@_never_raises(lambda: "create")
def classify_task_type(text: str) -> str:
    lowered = text.lower()
    for rule in TASK_TYPE_RULES:
        if rule.matches(lowered):
            return rule.name
    return "create"


@_never_raises(list)
def extract_requirements(text: str) -> list[str]:
    lowered = text.lower()
    requirements: list[str] = []
    for pattern in REQUIREMENT_PATTERNS:
        for match in pattern.finditer(lowered):
            found = match.group(1).strip()
            if found:
                requirements.append(found)
    requirements.extend(rule.name for rule in matching_rules(lowered, TECHNOLOGY_RULES))
    return requirements


@_never_raises(list)
def extract_constraints(text: str) -> list[str]:
    return [rule.name for rule in matching_rules(text.lower(), CONSTRAINT_RULES)]


@_never_raises(lambda: [DEFAULT_OBJECTIVE])
def extract_objectives(messages: list[Message]) -> list[str]:
    """Objectives implied by the user turns among the last few messages."""
    objectives: list[str] = []
    for message in messages[-OBJECTIVE_WINDOW:]:
        if message.role != "user":
            continue
        lowered = message_text(message).lower()
        objectives.extend(rule.name for rule in matching_rules(lowered, OBJECTIVE_RULES))
    return objectives or [DEFAULT_OBJECTIVE]
