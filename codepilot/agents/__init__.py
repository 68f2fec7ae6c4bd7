"""
codepilot/agents — multi-step agent execution.

Exports:
    BaseAgent     — four-phase step engine
    CodingAgent   — concrete agent for code requests
    AgentManager  — routing, timeout and reporting
"""

from codepilot.agents.base import (
    AgentContext,
    AgentResult,
    AgentStep,
    BaseAgent,
    Environment,
    StepStatus,
    StepType,
    update_step,
)
from codepilot.agents.coding import CodingAgent, CodingTask
from codepilot.agents.manager import AgentManager, format_agent_report, to_stream_format

__all__ = [
    "AgentContext",
    "AgentResult",
    "AgentStep",
    "BaseAgent",
    "Environment",
    "StepStatus",
    "StepType",
    "update_step",
    "CodingAgent",
    "CodingTask",
    "AgentManager",
    "format_agent_report",
    "to_stream_format",
]
