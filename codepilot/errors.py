"""
Error taxonomy for the runtime.

Budget and timeout failures are the only errors expected to reach the
conversation-turn boundary. Each carries a machine-readable code, a
user-facing message and an optional suggestion so the server and CLI can show
an explanation instead of a stack trace.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

logger = logging.getLogger(__name__)

CONTEXT_LENGTH_EXCEEDED = "CONTEXT_LENGTH_EXCEEDED"
AGENT_TIMEOUT = "AGENT_TIMEOUT"
TASK_ANALYSIS_FAILED = "TASK_ANALYSIS_FAILED"
INVALID_API_KEY = "INVALID_API_KEY"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
NETWORK_ERROR = "NETWORK_ERROR"
MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
SERVER_ERROR = "SERVER_ERROR"
UNKNOWN_ERROR = "UNKNOWN_ERROR"


class CodepilotError(Exception):
    """Base error with a code, a user-facing message and a suggestion."""

    def __init__(
        self,
        code: str,
        message: str,
        user_message: str,
        suggestion: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.user_message = user_message
        self.suggestion = suggestion
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "suggestion": self.suggestion,
            "details": self.details,
        }


class ContextLengthError(CodepilotError):
    """The system prompt alone leaves no meaningful room in the context window."""


class AgentTimeoutError(CodepilotError):
    """An agent run did not finish within the configured timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            AGENT_TIMEOUT,
            "Agent execution timeout",
            "The multi-step task took too long and was stopped.",
            "Try breaking the request into smaller pieces or raise CODEPILOT_AGENT_TIMEOUT.",
            f"Timeout: {timeout:g}s",
        )
        self.timeout = timeout


class TaskAnalysisError(CodepilotError):
    """No user request could be found to hand to an agent."""

    def __init__(self, reason: str = "Could not analyze task for agent execution") -> None:
        super().__init__(
            TASK_ANALYSIS_FAILED,
            reason,
            "Could not work out what task to run.",
            "Send the request as a user message and try again.",
        )


def context_length_error(model_name: str, token_count: int, max_tokens: int) -> ContextLengthError:
    return ContextLengthError(
        CONTEXT_LENGTH_EXCEEDED,
        f"Token limit exceeded for {model_name}: {token_count}/{max_tokens}",
        f"The conversation is too long for the {model_name} model.",
        "Try starting a new conversation, enable context optimization, "
        "or switch to a model with a larger context window.",
        f"Current: {token_count} tokens, Maximum: {max_tokens} tokens",
    )


# ---------------------------------------------------------------------------
# Categorisation of foreign exceptions
# ---------------------------------------------------------------------------

_CATEGORIES: list[tuple[tuple[str, ...], str, str, str]] = [
    (
        ("api key", "unauthorized", "invalid key"),
        INVALID_API_KEY,
        "Invalid or missing API key.",
        "Please check your API key configuration.",
    ),
    (
        ("rate limit", "quota exceeded", "too many requests"),
        RATE_LIMIT_EXCEEDED,
        "Rate limit exceeded.",
        "Please wait a moment before trying again, or check your API usage.",
    ),
    (
        ("context length", "token limit", "maximum context"),
        CONTEXT_LENGTH_EXCEEDED,
        "The conversation is too long for this model.",
        "Try starting a new conversation or enable context optimization in settings.",
    ),
    (
        ("fetch failed", "network", "connection"),
        NETWORK_ERROR,
        "Network connection error.",
        "Please check your internet connection and try again.",
    ),
    (
        ("model not found", "model not available"),
        MODEL_NOT_FOUND,
        "The selected model is not available.",
        "Please select a different model or check your provider configuration.",
    ),
]

_STATUS_CODES = {
    INVALID_API_KEY: 401,
    RATE_LIMIT_EXCEEDED: 429,
    CONTEXT_LENGTH_EXCEEDED: 400,
    MODEL_NOT_FOUND: 400,
    TASK_ANALYSIS_FAILED: 400,
    NETWORK_ERROR: 502,
    AGENT_TIMEOUT: 504,
}


def categorize_error(exc: BaseException) -> dict[str, Any]:
    """Map any exception to the error dict shape used at the API boundary."""
    if isinstance(exc, CodepilotError):
        return exc.to_dict()

    message = str(exc).lower()
    details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    for needles, code, user_message, suggestion in _CATEGORIES:
        if any(n in message for n in needles):
            return {
                "code": code,
                "message": str(exc),
                "user_message": user_message,
                "suggestion": suggestion,
                "details": details,
            }

    return {
        "code": SERVER_ERROR,
        "message": str(exc),
        "user_message": "An internal server error occurred.",
        "suggestion": "Please try again. If the problem persists, check the logs for more details.",
        "details": details,
    }


def status_code_for(code: str) -> int:
    return _STATUS_CODES.get(code, 500)


def handle_chat_error(exc: BaseException) -> str:
    """Render an error as the explanatory text shown to the end user."""
    info = categorize_error(exc)
    logger.error("Chat error [%s]: %s", info["code"], info["message"])
    text = info["user_message"]
    if info.get("suggestion"):
        text += f"\n\n{info['suggestion']}"
    return text
