"""
codepilot/llm — model-call package.

Exports:
    LLMClient     — streaming Anthropic / OpenAI client
    ModelInfo     — model name, provider and context window
    StreamChunk   — one chunk of a model stream
    collect_text  — join the text-delta chunks of a stream
    PromptLibrary — system prompt templates
"""

from codepilot.llm.client import LLMClient, ModelInfo, StreamChunk, collect_text
from codepilot.llm.prompts import PromptLibrary, PromptOptions

__all__ = ["LLMClient", "ModelInfo", "StreamChunk", "collect_text", "PromptLibrary", "PromptOptions"]
