"""
Runtime configuration read from the environment.

Environment variables:
    CODEPILOT_ENABLE_AGENTS:    "0"/"false" disables multi-step agent runs (default on)
    CODEPILOT_AGENT_TIMEOUT:    agent run timeout in seconds (default 300)
    CODEPILOT_AGENT_MAX_STEPS:  cap on planned steps per run (default 10)
    CODEPILOT_HOST / CODEPILOT_PORT: server bind address (default 0.0.0.0:8765)
    CODEPILOT_LOG_LEVEL:        root log level (default INFO)
    CODEPILOT_SETTINGS_DB:      SQLite file for settings and agent history
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SETTINGS_DB = Path.home() / ".codepilot" / "settings.db"

_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in _FALSE_VALUES


@dataclass
class AgentConfig:
    enable_agents: bool = True
    max_steps: int = 10
    timeout: float = 300.0  # seconds

    @classmethod
    def from_env(cls) -> "AgentConfig":
        return cls(
            enable_agents=_env_bool("CODEPILOT_ENABLE_AGENTS", True),
            max_steps=int(os.environ.get("CODEPILOT_AGENT_MAX_STEPS", "10")),
            timeout=float(os.environ.get("CODEPILOT_AGENT_TIMEOUT", "300")),
        )


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8765
    log_level: str = "INFO"
    settings_db: Path = DEFAULT_SETTINGS_DB
    prompt_id: str = "default"
    agents: AgentConfig = field(default_factory=AgentConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.environ.get("CODEPILOT_HOST", "0.0.0.0"),
            port=int(os.environ.get("CODEPILOT_PORT", "8765")),
            log_level=os.environ.get("CODEPILOT_LOG_LEVEL", "INFO").upper(),
            settings_db=Path(os.environ.get("CODEPILOT_SETTINGS_DB", str(DEFAULT_SETTINGS_DB))),
            agents=AgentConfig.from_env(),
        )
