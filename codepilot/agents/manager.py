"""
Agent manager — decides whether a request gets a multi-step agent run, runs
it under a timeout, and turns the result into a chat reply.

Usage:
    manager = AgentManager(AgentConfig.from_env(), model=LLMClient())
    if manager.should_use_agents(messages):
        result = await manager.execute_with_agent(messages)
        reply = format_agent_report(result)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from codepilot.agents import heuristics
from codepilot.agents.base import AgentContext, AgentResult, BaseAgent, Environment, StepStatus
from codepilot.agents.coding import CodingAgent, CodingTask
from codepilot.config import AgentConfig
from codepilot.context import Message, message_text
from codepilot.errors import AgentTimeoutError, TaskAnalysisError
from codepilot.llm.client import ModelCall

logger = logging.getLogger(__name__)

WORK_DIR = "/home/project"

ENVIRONMENT_CAPABILITIES = (
    "file_creation",
    "code_generation",
    "package_management",
    "web_development",
    "testing",
)
ENVIRONMENT_CONSTRAINTS = ("no_native_binaries", "webcontainer_only", "no_git", "no_pip")

_STATUS_GLYPHS = {StepStatus.COMPLETED: "✅", StepStatus.FAILED: "❌"}


@dataclass(frozen=True)
class TaskAnalysis:
    agent_type: str
    task: CodingTask


class AgentHistoryStore(Protocol):
    def record_agent_run(self, agent_id: str, agent_type: str, task: dict, result: dict) -> None: ...


class AgentManager:
    """
    Routes requests to agents. The active-agent registry is keyed by
    "{agent_type}-{millis}-{seq}" so concurrent runs never collide.
    """

    def __init__(
        self,
        config: AgentConfig,
        model: ModelCall,
        files: dict[str, str] | None = None,
        history_store: AgentHistoryStore | None = None,
        prompt_id: str = "default",
    ) -> None:
        self.config = config
        self.model = model
        self.files = files
        self.history_store = history_store
        self.prompt_id = prompt_id
        self.active_agents: dict[str, BaseAgent] = {}
        self._seq = itertools.count(1)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def should_use_agents(self, messages: list[Message]) -> bool:
        if not self.config.enable_agents:
            return False
        last = heuristics.last_user_message(messages)
        if last is None:
            return False
        return heuristics.wants_agent(message_text(last))

    def analyze_task(self, messages: list[Message]) -> TaskAnalysis | None:
        last = heuristics.last_user_message(messages)
        if last is None:
            return None
        text = message_text(last)
        task = CodingTask(
            type=heuristics.classify_task_type(text),
            description=text,
            files=sorted(self.files) if self.files else [],
            requirements=heuristics.extract_requirements(text),
            constraints=heuristics.extract_constraints(text),
        )
        return TaskAnalysis(agent_type="coding", task=task)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def build_context(self, messages: list[Message]) -> AgentContext:
        return AgentContext(
            messages=list(messages),
            files=self.files,
            environment=Environment(
                cwd=WORK_DIR,
                capabilities=list(ENVIRONMENT_CAPABILITIES),
                constraints=list(ENVIRONMENT_CONSTRAINTS),
            ),
            objectives=heuristics.extract_objectives(messages),
            metadata={"start_time": time.time(), "model": self.model.model_info.name},
        )

    def create_agent(self, analysis: TaskAnalysis, context: AgentContext) -> BaseAgent:
        if analysis.agent_type == "coding":
            return CodingAgent(
                context,
                analysis.task,
                self.model,
                prompt_id=self.prompt_id,
                max_steps=self.config.max_steps,
            )
        raise ValueError(f"Unknown agent type: {analysis.agent_type}")

    async def execute_with_agent(self, messages: list[Message]) -> AgentResult:
        """
        Run an agent for the latest user request.

        Raises:
            TaskAnalysisError: no user message to work from.
            AgentTimeoutError: the run exceeded config.timeout. The agent's
                cancel_event is set so in-flight model calls stop.
        """
        analysis = self.analyze_task(messages)
        if analysis is None:
            raise TaskAnalysisError()

        context = self.build_context(messages)
        agent = self.create_agent(analysis, context)
        agent_id = f"{analysis.agent_type}-{int(time.time() * 1000)}-{next(self._seq)}"
        self.active_agents[agent_id] = agent
        logger.info("Starting agent %s for %s task", agent_id, analysis.task.type)

        started = time.perf_counter()
        try:
            try:
                result = await asyncio.wait_for(agent.run(), timeout=self.config.timeout)
            except asyncio.TimeoutError:
                agent.cancel_event.set()
                logger.error("Agent %s timed out after %.0fs", agent_id, self.config.timeout)
                raise AgentTimeoutError(self.config.timeout) from None

            logger.info(
                "Agent %s finished: success=%s steps=%d duration=%.1fs",
                agent_id,
                result.success,
                len(result.steps),
                time.perf_counter() - started,
            )
            self._record(agent_id, analysis, result)
            return result
        finally:
            self.active_agents.pop(agent_id, None)

    def _record(self, agent_id: str, analysis: TaskAnalysis, result: AgentResult) -> None:
        if self.history_store is None:
            return
        try:
            self.history_store.record_agent_run(
                agent_id, analysis.agent_type, analysis.task.to_dict(), result.to_dict()
            )
        except Exception as exc:
            logger.warning("Failed to record agent run %s: %s", agent_id, exc)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def active_agents_status(self) -> list[dict[str, str]]:
        return [
            {"id": agent_id, "type": type(agent).__name__, "status": "running"}
            for agent_id, agent in self.active_agents.items()
        ]

    def stop_all_agents(self) -> int:
        """Signal every active agent to stop and clear the registry."""
        count = len(self.active_agents)
        logger.info("Stopping %d active agents", count)
        for agent in self.active_agents.values():
            agent.cancel_event.set()
        self.active_agents.clear()
        return count


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def format_agent_report(result: AgentResult) -> str:
    if not result.success:
        lines = ["❌ **Task execution failed**", "", result.summary, ""]
        if result.recommendations:
            lines.append("## Suggested Solutions:")
            lines.extend(f"- {rec}" for rec in result.recommendations)
            lines.append("")
        return "\n".join(lines)

    lines = ["✅ **Task completed successfully**", "", result.summary, ""]
    if result.steps:
        lines.append("## Execution Steps:")
        for i, step in enumerate(result.steps, 1):
            lines.append(f"{i}. {_STATUS_GLYPHS.get(step.status, '⏳')} {step.description}")
        lines.append("")
    if result.recommendations:
        lines.append("## Recommendations:")
        lines.extend(f"- {rec}" for rec in result.recommendations)
        lines.append("")
    if result.next_actions:
        lines.append("## Next Steps:")
        lines.extend(f"- {action}" for action in result.next_actions)
        lines.append("")
    return "\n".join(lines)


def to_stream_format(result: AgentResult) -> dict[str, Any]:
    """Shape an agent result like a chat reply."""
    return {
        "content": format_agent_report(result),
        "steps": [s.to_dict() for s in result.steps],
        "success": result.success,
        "summary": result.summary,
        "recommendations": list(result.recommendations),
    }
