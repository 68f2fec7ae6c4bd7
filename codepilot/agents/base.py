"""
Agent step engine — a four-phase run loop over typed, timed steps.

    analyze() → plan() → execute(step) for each pending step → validate(output)

Subclasses implement the four phases; BaseAgent.run() owns ordering, step
status, timing and the failure-recovery policy. Steps are immutable values:
every status change produces a new AgentStep through update_step().
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from codepilot.context import Message

SLOW_RUN_THRESHOLD_SECONDS = 30.0

FAILURE_RECOMMENDATIONS = ("Review the error logs", "Simplify the task", "Try a different approach")
DEFAULT_NEXT_ACTIONS = (
    "Review generated code for quality",
    "Test the implementation",
    "Consider adding error handling",
)


class StepType(str, Enum):
    ANALYZE = "analyze"
    PLAN = "plan"
    CODE = "code"
    REVIEW = "review"
    VALIDATE = "validate"
    FIX = "fix"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.FAILED},
    StepStatus.RUNNING: {StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentStep:
    id: str
    type: StepType
    description: str
    input: Any = None
    output: Any = None
    status: StepStatus = StepStatus.PENDING
    error: str | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)

    @property
    def duration_ms(self) -> int | None:
        if self.start_time is None or self.end_time is None:
            return None
        return int((self.end_time - self.start_time) * 1000)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def update_step(step: AgentStep, **changes: Any) -> AgentStep:
    """
    Return a copy of `step` with `changes` applied.

    Raises ValueError on a non-monotonic status change. Re-stating the
    current status is allowed.
    """
    new_status = changes.get("status")
    if new_status is not None:
        new_status = StepStatus(new_status)
        changes["status"] = new_status
        if new_status != step.status and new_status not in _ALLOWED_TRANSITIONS[step.status]:
            raise ValueError(
                f"Invalid step transition {step.status.value} -> {new_status.value} for step {step.id}"
            )
    return replace(step, **changes)


@dataclass
class Environment:
    cwd: str = "/home/project"
    capabilities: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)


@dataclass
class AgentContext:
    """Per-run context. Never shared between concurrent runs."""

    messages: list[Message]
    environment: Environment = field(default_factory=Environment)
    files: dict[str, str] | None = None
    objectives: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentResult:
    success: bool
    steps: tuple[AgentStep, ...]
    final_output: Any
    summary: str
    recommendations: tuple[str, ...] = ()
    next_actions: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "steps": [s.to_dict() for s in self.steps],
            "final_output": self.final_output,
            "summary": self.summary,
            "recommendations": list(self.recommendations),
            "next_actions": list(self.next_actions),
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class BaseAgent(ABC):
    """
    Subclassable four-phase agent.

    Only steps whose type is in RECOVERABLE_STEP_TYPES may fail without
    aborting the run. `cancel_event` is set by the manager on timeout; the
    run stops before the next step and subclasses pass it to model calls.
    """

    RECOVERABLE_STEP_TYPES = frozenset({StepType.REVIEW, StepType.VALIDATE})

    def __init__(
        self,
        context: AgentContext,
        max_steps: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.context = context
        self.max_steps = max_steps
        self.steps: list[AgentStep] = []
        self.cancel_event = threading.Event()
        self.logger = logging.getLogger(f"codepilot.agents.{type(self).__name__}")
        self._clock = clock
        self._step_counter = 0

    # ------------------------------------------------------------------
    # Phases (implemented by subclasses)
    # ------------------------------------------------------------------

    @abstractmethod
    async def analyze(self) -> AgentStep:
        """
        Return a completed or failed analysis step.

        Steps from create_step() start out pending and must pass through
        running before they can be completed; failing straight from pending
        is allowed.
        """

    @abstractmethod
    async def plan(self) -> list[AgentStep]:
        """Return the ordered steps to execute."""

    @abstractmethod
    async def execute(self, step: AgentStep) -> AgentStep:
        """Do the work for one step and return it with output filled in."""

    @abstractmethod
    async def validate(self, result: Any) -> bool:
        """Final gate over the aggregated output."""

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run(self) -> AgentResult:
        """Drive the four phases. Failures come back as a result, never raised."""
        self.logger.info("Agent run started")
        try:
            return await self._run_phases()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.exception("Agent run raised")
            return self._failure_result(str(exc))

    async def _run_phases(self) -> AgentResult:
        try:
            analysis = await self.analyze()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.exception("Analysis raised")
            analysis = update_step(
                self.create_step(StepType.ANALYZE, "Analyze the task"),
                status=StepStatus.FAILED,
                error=str(exc),
            )

        self.steps.append(analysis)
        if analysis.status == StepStatus.FAILED:
            self.logger.warning("Analysis failed: %s", analysis.error)
            return self._failure_result("Analysis failed")

        try:
            planned = await self.plan()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.exception("Planning raised")
            return self._failure_result(f"Planning failed: {exc}")

        if self.max_steps is not None and len(planned) > self.max_steps:
            self.logger.warning(
                "Plan has %d steps; dropping %d over the limit of %d",
                len(planned),
                len(planned) - self.max_steps,
                self.max_steps,
            )
            planned = planned[: self.max_steps]
        self.steps.extend(planned)

        # Steps appended during execution (e.g. fix steps) are picked up too.
        index = 1
        while index < len(self.steps):
            step = self.steps[index]
            index += 1
            if step.status != StepStatus.PENDING:
                continue

            if self.cancel_event.is_set():
                self.logger.warning("Run cancelled before step %s", step.id)
                return self._failure_result("Run cancelled")

            outcome = await self._execute_step(index - 1)
            if outcome.status == StepStatus.FAILED and not self.handle_step_failure(outcome):
                return self._failure_result(f"Step failed: {outcome.description}")

        aggregated = self.aggregate_results()

        try:
            valid = await self.validate(aggregated)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Validation raised")
            valid = False

        if not valid:
            return self._failure_result("Validation failed")

        completed, failed = self._counts()
        self.logger.info("Agent run finished: %d completed, %d failed", completed, failed)
        return AgentResult(
            success=True,
            steps=tuple(self.steps),
            final_output=aggregated,
            summary=self.generate_summary(),
            recommendations=tuple(self.generate_recommendations()),
            next_actions=tuple(self.generate_next_actions()),
        )

    async def _execute_step(self, index: int) -> AgentStep:
        running = update_step(self.steps[index], status=StepStatus.RUNNING, start_time=self._clock())
        self.steps[index] = running
        self.logger.debug("Executing step %s: %s", running.id, running.description)

        try:
            returned = await self.execute(running)
            done = update_step(
                running,
                description=returned.description,
                input=returned.input,
                output=returned.output,
                status=StepStatus.COMPLETED,
                end_time=self._clock(),
            )
        except asyncio.CancelledError:
            self.steps[index] = update_step(
                running, status=StepStatus.FAILED, error="Cancelled", end_time=self._clock()
            )
            raise
        except Exception as exc:
            self.logger.error("Step %s failed: %s", running.id, exc)
            failed = update_step(
                running, status=StepStatus.FAILED, error=str(exc), end_time=self._clock()
            )
            self.steps[index] = failed
            return failed

        self.steps[index] = done
        return done

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def create_step(self, step_type: StepType | str, description: str, input: Any = None) -> AgentStep:
        self._step_counter += 1
        step_type = StepType(step_type)
        return AgentStep(
            id=f"{step_type.value}-{self._step_counter}",
            type=step_type,
            description=description,
            input=input,
        )

    def handle_step_failure(self, step: AgentStep) -> bool:
        """Return True when the run may continue past this failed step."""
        recoverable = step.type in self.RECOVERABLE_STEP_TYPES
        self.logger.warning(
            "Step %s (%s) failed%s: %s",
            step.id,
            step.type.value,
            ", continuing" if recoverable else "",
            step.error,
        )
        return recoverable

    def aggregate_results(self) -> list[Any]:
        """Outputs of completed steps, in execution order."""
        return [
            s.output
            for s in self.steps
            if s.status == StepStatus.COMPLETED and s.output is not None
        ]

    def _counts(self) -> tuple[int, int]:
        completed = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        failed = sum(1 for s in self.steps if s.status == StepStatus.FAILED)
        return completed, failed

    def generate_summary(self) -> str:
        completed, failed = self._counts()
        return f"Agent execution completed. {completed} steps succeeded, {failed} steps failed."

    def generate_recommendations(self) -> list[str]:
        recommendations = []
        _, failed = self._counts()
        if failed:
            recommendations.append(f"Review and fix {failed} failed step(s)")

        total_ms = sum(s.duration_ms or 0 for s in self.steps)
        if total_ms > SLOW_RUN_THRESHOLD_SECONDS * 1000:
            recommendations.append("Consider optimizing for faster execution")
        return recommendations

    def generate_next_actions(self) -> list[str]:
        return list(DEFAULT_NEXT_ACTIONS)

    def _failure_result(self, reason: str) -> AgentResult:
        return AgentResult(
            success=False,
            steps=tuple(self.steps),
            final_output=None,
            summary=f"Agent execution failed: {reason}",
            recommendations=FAILURE_RECOMMENDATIONS,
        )

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def add_objective(self, objective: str) -> None:
        if objective not in self.context.objectives:
            self.context.objectives.append(objective)

    def set_metadata(self, key: str, value: Any) -> None:
        self.context.metadata[key] = value

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.context.metadata.get(key, default)

    def update_context(self, **changes: Any) -> None:
        for name, value in changes.items():
            if not hasattr(self.context, name):
                raise AttributeError(f"AgentContext has no field {name!r}")
            setattr(self.context, name, value)
