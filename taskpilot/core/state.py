from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from taskpilot.infra.ids import new_call_id, new_run_id

DEFAULT_MAX_ITERATIONS = 50


class TransitionError(ValueError):
    """Raised when a phase transition is not allowed from the current phase."""


class Phase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"


class Termination(str, Enum):
    """Why a run reached its terminal phase."""

    COMPLETED = "completed"
    EVALUATOR_STOPPED = "evaluator_stopped"
    FAULT = "fault"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})

_ALLOWED: Dict[Phase, frozenset] = {
    Phase.PLANNING: frozenset({Phase.IDLE, Phase.EVALUATING}),
    Phase.EXECUTING: frozenset({Phase.PLANNING}),
    Phase.EVALUATING: frozenset({Phase.PLANNING, Phase.EXECUTING}),
}


class Thought(BaseModel):
    """
    Planner output for one planning entry.

    Reason:
    - The host wants to show what the agent is thinking right now.
    Benefit:
    - One typed object instead of loose strings on the state.
    """

    text: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class Action(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolCallRecord(BaseModel):
    """
    One attempted action. Created once when the attempt concludes, never mutated.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_call_id)
    action_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    success: bool
    started_at: float
    duration: float = Field(default=0.0, ge=0.0, description="Seconds")


class RunState(BaseModel):
    """
    Everything known about one execution of the agent loop.

    Reason:
    - The orchestrator, the host and the tests all need the same picture of a run.
    Benefit:
    - Transitions below are the only writers, so invariants live in one place.
    """

    id: str = Field(default_factory=new_run_id)
    task: str
    phase: Phase = Phase.IDLE
    iterations: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)

    current_thought: Optional[Thought] = None
    current_action: Optional[Action] = None
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)

    result: Any = None
    error: Optional[str] = None
    termination: Optional[Termination] = None

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


def create_initial_state(task: str, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> RunState:
    now = time.time()
    return RunState(
        task=task,
        max_iterations=max_iterations,
        created_at=now,
        updated_at=now,
    )


def is_terminal_phase(phase: Phase) -> bool:
    return phase in TERMINAL_PHASES


def should_continue(state: RunState, max_iterations: int) -> bool:
    if state.phase in TERMINAL_PHASES:
        return False
    return state.iterations < max_iterations


def _check(state: RunState, target: Phase) -> None:
    if state.phase in TERMINAL_PHASES:
        raise TransitionError(
            f"Run {state.id} is already {state.phase.value}; cannot move to {target.value}"
        )
    allowed = _ALLOWED.get(target)
    if allowed is not None and state.phase not in allowed:
        raise TransitionError(
            f"Illegal transition {state.phase.value} -> {target.value}"
        )


def _evolve(state: RunState, **changes: Any) -> RunState:
    # tool_calls is rebuilt as a new list so the previous state never shares it
    changes.setdefault("tool_calls", list(state.tool_calls))
    changes.setdefault("updated_at", time.time())
    return state.model_copy(update=changes)


def enter_planning(state: RunState, thought: Thought) -> RunState:
    _check(state, Phase.PLANNING)
    return _evolve(
        state,
        phase=Phase.PLANNING,
        iterations=state.iterations + 1,
        current_thought=thought,
        current_action=None,
    )


def enter_executing(state: RunState, action: Action) -> RunState:
    _check(state, Phase.EXECUTING)
    return _evolve(state, phase=Phase.EXECUTING, current_action=action)


def enter_evaluating(state: RunState, record: Optional[ToolCallRecord]) -> RunState:
    """
    Clear the pending action and append its record.

    ``record`` is None only when planning proposed no action; nothing is appended then.
    """
    _check(state, Phase.EVALUATING)
    if state.phase is Phase.EXECUTING and record is None:
        raise TransitionError("An executed action must produce a ToolCallRecord")
    if state.phase is Phase.PLANNING and record is not None:
        raise TransitionError("No action was proposed; nothing to record")

    tool_calls = list(state.tool_calls)
    if record is not None:
        tool_calls.append(record)
    return _evolve(
        state,
        phase=Phase.EVALUATING,
        current_action=None,
        tool_calls=tool_calls,
    )


def complete(state: RunState, result: Any = None) -> RunState:
    _check(state, Phase.COMPLETED)
    now = time.time()
    return _evolve(
        state,
        phase=Phase.COMPLETED,
        current_action=None,
        result=result,
        termination=Termination.COMPLETED,
        completed_at=now,
        updated_at=now,
    )


def fail(state: RunState, error: str, termination: Termination = Termination.FAULT) -> RunState:
    _check(state, Phase.FAILED)
    if termination is Termination.COMPLETED:
        raise TransitionError("A failed run cannot terminate as completed")
    now = time.time()
    return _evolve(
        state,
        phase=Phase.FAILED,
        current_action=None,
        error=error,
        termination=termination,
        completed_at=now,
        updated_at=now,
    )


def snapshot(state: RunState) -> RunState:
    """Deep copy handed to callers; mutating it never reaches the owner's state."""
    return state.model_copy(deep=True)
