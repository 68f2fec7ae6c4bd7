"""
System prompt library.

Prompts are rendered per turn with `PromptLibrary.render(prompt_id, options)`.
Unknown ids fall back to the default prompt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_ID = "default"


@dataclass(frozen=True)
class PromptOptions:
    cwd: str = "/home/project"
    model_name: str | None = None


DEFAULT_PROMPT = """You are Codepilot, an expert software engineer working inside a sandboxed project workspace at {cwd}.

## How You Work
- Read the request, decide what files need to change, then make the changes
- Prefer small, complete edits over partial sketches
- Keep the existing style of the project you are editing
- Explain what you did in a few sentences after the actions

## Actions
Emit every change as an action tag so it can be applied automatically:

<action type="file" filePath="src/app.py">
full file contents
</action>

<action type="shell">
command to run
</action>

- Always write the FULL file contents, never a diff or a placeholder
- Run shell commands only when needed (installing packages, running tests)
- Paths are relative to {cwd}

## Environment Limits
- No native binaries, no git, no pip
- Only what runs inside the web container is available

## Response Style
- **Be concise.** No filler phrases.
- **Action first.** Make the change, then summarise it.
- **Errors clearly.** If something cannot be done here, say why.
"""

MINIMAL_PROMPT = """You are Codepilot, a coding assistant. Workspace: {cwd}.
Write files as <action type="file" filePath="path">contents</action>.
Run commands as <action type="shell">command</action>.
Always write full file contents. Be brief.
"""


@dataclass(frozen=True)
class PromptEntry:
    label: str
    description: str
    template: str

    def render(self, options: PromptOptions) -> str:
        return self.template.format(cwd=options.cwd)


class PromptLibrary:
    library: dict[str, PromptEntry] = {
        "default": PromptEntry(
            label="Default Prompt",
            description="Full instructions with action format and environment limits",
            template=DEFAULT_PROMPT,
        ),
        "minimal": PromptEntry(
            label="Minimal Prompt",
            description="Compact prompt for small models and tight context windows",
            template=MINIMAL_PROMPT,
        ),
    }

    @classmethod
    def list_prompts(cls) -> list[dict[str, str]]:
        return [
            {"id": key, "label": entry.label, "description": entry.description}
            for key, entry in cls.library.items()
        ]

    @classmethod
    def render(cls, prompt_id: str | None, options: PromptOptions | None = None) -> str:
        entry = cls.library.get(prompt_id or DEFAULT_PROMPT_ID)
        if entry is None:
            logger.warning("Unknown prompt id %r; using %r", prompt_id, DEFAULT_PROMPT_ID)
            entry = cls.library[DEFAULT_PROMPT_ID]
        return entry.render(options or PromptOptions())
