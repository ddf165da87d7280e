from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from taskpilot.config import TaskpilotConfig
from taskpilot.core.actions import ActionExecutor, ActionOutcome, ExecutionContext
from taskpilot.core.cancellation import RunCancelled, await_cancellable, raise_if_cancelled
from taskpilot.core.parsing import (
    Evaluation,
    PlanningDecision,
    fallback_evaluation,
    parse_evaluation_response,
    parse_planning_response,
)
from taskpilot.core.prompt_loader import load_prompt
from taskpilot.core.state import (
    DEFAULT_MAX_ITERATIONS,
    Action,
    RunState,
    Termination,
    ToolCallRecord,
    complete,
    create_initial_state,
    enter_evaluating,
    enter_executing,
    enter_planning,
    fail,
    should_continue,
    snapshot,
)
from taskpilot.infra.logging import log_event
from taskpilot.llm.client import LLMClient

ContextProvider = Callable[[], Awaitable[ExecutionContext]]

DEFAULT_HISTORY_WINDOW = 10
MAX_OUTCOME_CHARS = 4000
CANCELLED_REASON = "Run cancelled"
EVALUATOR_STOP_REASON = "Evaluation decided to stop"


class RunOptions(BaseModel):
    max_iterations: Optional[int] = Field(default=None, ge=1)
    system_prompt: Optional[str] = None


def _truncate(text: str, limit: int = MAX_OUTCOME_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "...(truncated)"


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _json_safe(value: Any) -> Any:
    """
    Plain JSON data for a record's result.

    Action results are opaque and may hold live handles; the record keeps only
    what survives a JSON round-trip so copies and persistence never fail.
    """
    if value is None:
        return None
    try:
        return json.loads(_to_json(value))
    except (TypeError, ValueError, RecursionError):
        return repr(value)


def _coerce_outcome(raw: Any) -> ActionOutcome:
    if isinstance(raw, ActionOutcome):
        return raw
    if isinstance(raw, dict):
        return ActionOutcome.model_validate(raw)
    raise TypeError(f"Action executor returned {type(raw).__name__}, expected ActionOutcome")


class Orchestrator:
    """
    Drives one run at a time through planning -> executing -> evaluating.

    Reason:
    - Two unreliable model calls and one side-effecting action call need a single
      owner that always leaves the run in a well-defined terminal state.
    Benefit:
    - Callers get a RunState with phase completed/failed and a readable reason,
      whatever happened in between.

    One instance owns one RunState and one cancel event per run(); run several
    tasks concurrently by creating several orchestrators (see RunRegistry).
    """

    def __init__(
        self,
        planner: LLMClient,
        executor: ActionExecutor,
        *,
        evaluator: Optional[LLMClient] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        system_prompt: Optional[str] = None,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        context_provider: Optional[ContextProvider] = None,
        planner_temperature: float = 0.7,
        evaluator_temperature: float = 0.3,
        prompt_version: str = "v1",
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if history_window < 0:
            raise ValueError("history_window cannot be negative")

        self.planner = planner
        self.evaluator = evaluator or planner
        self.executor = executor
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt
        self.history_window = history_window
        self.context_provider = context_provider
        self.planner_temperature = planner_temperature
        self.evaluator_temperature = evaluator_temperature
        self.prompt_version = prompt_version

        self._state = create_initial_state("", max_iterations)
        self._cancel_event: Optional[asyncio.Event] = None
        self._running = False

    @classmethod
    def from_config(
        cls,
        config: TaskpilotConfig,
        planner: LLMClient,
        executor: ActionExecutor,
        **kwargs: Any,
    ) -> "Orchestrator":
        kwargs.setdefault("max_iterations", config.max_iterations)
        kwargs.setdefault("history_window", config.history_window)
        kwargs.setdefault("planner_temperature", config.planner_temperature)
        kwargs.setdefault("evaluator_temperature", config.evaluator_temperature)
        return cls(planner, executor, **kwargs)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def get_state(self) -> RunState:
        return snapshot(self._state)

    def stop(self) -> None:
        """Signal the in-flight run to stop. Safe to call at any time, any number of times."""
        event = self._cancel_event
        if event is None or event.is_set() or self._state.is_terminal:
            return
        event.set()
        log_event("agent_stop_requested", run_id=self._state.id, phase=self._state.phase)

    async def run(
        self,
        task: str,
        options: Optional[RunOptions] = None,
        *,
        max_iterations: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> RunState:
        if self._running:
            raise RuntimeError("A run is already in progress on this orchestrator")

        opts = options or RunOptions()
        cap = next(
            c for c in (max_iterations, opts.max_iterations, self.max_iterations) if c is not None
        )
        if cap < 1:
            raise ValueError("max_iterations must be at least 1")
        prompt = system_prompt or opts.system_prompt or self.system_prompt

        self._state = create_initial_state(task, cap)
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        self._running = True
        run_id = self._state.id

        log_event("agent_run_start", run_id=run_id, task=task, max_iterations=cap)

        try:
            await self._loop(cancel_event, cap, prompt)
        except RunCancelled:
            self._fail(CANCELLED_REASON, Termination.CANCELLED)
            log_event("agent_run_cancelled", level="warning", run_id=run_id)
        except asyncio.CancelledError:
            # the hosting task was cancelled; leave a terminal state behind, then honour it
            self._fail(CANCELLED_REASON, Termination.CANCELLED)
            log_event("agent_run_cancelled", level="warning", run_id=run_id, source="task")
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            self._fail(message, Termination.FAULT)
            log_event(
                "agent_run_fault",
                level="error",
                run_id=run_id,
                error_type=type(e).__name__,
                error=message,
            )
        finally:
            self._running = False
            self._cancel_event = None
            log_event(
                "agent_run_end",
                run_id=run_id,
                phase=self._state.phase,
                termination=self._state.termination,
                iterations=self._state.iterations,
                tool_calls=len(self._state.tool_calls),
                error=self._state.error,
            )

        return snapshot(self._state)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(
        self, cancel_event: asyncio.Event, max_iterations: int, system_prompt: Optional[str]
    ) -> None:
        run_id = self._state.id

        while should_continue(self._state, max_iterations):
            raise_if_cancelled(cancel_event)
            log_event(
                "agent_iteration_start",
                run_id=run_id,
                iteration=self._state.iterations + 1,
            )

            # 1) Plan
            decision = await self._planning_phase(cancel_event, system_prompt)

            # 2) Execute (skipped when nothing was proposed)
            action = decision.action
            if action is not None:
                self._state = enter_executing(self._state, action)
                record = await self._executing_phase(action, cancel_event)
            else:
                self._state = enter_evaluating(self._state, None)
                record = None

            # 3) Evaluate
            evaluation = await self._evaluating_phase(record, decision, cancel_event)

            if evaluation.is_complete:
                result = evaluation.result if evaluation.result is not None else evaluation.reasoning
                self._state = complete(self._state, result)
                log_event("agent_task_completed", run_id=run_id, iterations=self._state.iterations)
                return

            if not evaluation.wants_more():
                reason = EVALUATOR_STOP_REASON
                if evaluation.reasoning:
                    reason = f"{EVALUATOR_STOP_REASON}: {evaluation.reasoning}"
                self._fail(reason, Termination.EVALUATOR_STOPPED)
                log_event("agent_stopped_by_evaluation", level="warning", run_id=run_id)
                return

        if not self._state.is_terminal:
            self._fail(
                f"Max iterations ({max_iterations}) reached without completion",
                Termination.MAX_ITERATIONS,
            )
            log_event(
                "agent_max_iterations",
                level="warning",
                run_id=run_id,
                iterations=self._state.iterations,
            )

    def _fail(self, reason: str, termination: Termination) -> None:
        if not self._state.is_terminal:
            self._state = fail(self._state, reason, termination)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _planning_phase(
        self, cancel_event: asyncio.Event, system_prompt: Optional[str]
    ) -> PlanningDecision:
        messages = self.build_planning_messages(system_prompt)

        raw = await await_cancellable(
            self.planner.complete(
                messages,
                cancel_event=cancel_event,
                temperature=self.planner_temperature,
            ),
            cancel_event,
        )
        decision = parse_planning_response(raw)
        self._state = enter_planning(self._state, decision.thought)

        action = decision.action
        log_event(
            "agent_plan_parsed",
            run_id=self._state.id,
            iteration=self._state.iterations,
            proposal=decision.proposal.kind,
            action=action.name if action else None,
            confidence=decision.thought.confidence,
        )
        return decision

    def build_planning_messages(self, system_prompt: Optional[str] = None) -> List[Dict[str, str]]:
        system = system_prompt or self.system_prompt or load_prompt(
            "planner_system", version=self.prompt_version
        )
        user = load_prompt(
            "planner_task",
            version=self.prompt_version,
            task=self._state.task,
            actions=self._format_action_catalog(),
            history=self._format_history(),
        )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

    def _format_action_catalog(self) -> str:
        specs = self.executor.list_actions()
        if not specs:
            return "- (none)"
        lines = []
        for spec in specs:
            params = spec.parameters.get("properties", {})
            required = spec.parameters.get("required", [])
            lines.append(
                f"- {spec.name}: {spec.description or '(no description)'} "
                f"params={_to_json(params)} required={_to_json(required)}"
            )
        return "\n".join(lines)

    def _format_history(self) -> str:
        calls = self._state.tool_calls
        if not calls:
            return "Please plan your first action."
        if self.history_window == 0:
            return f"{len(calls)} earlier actions omitted. Plan your next action."

        window = calls[-self.history_window:]
        first = len(calls) - len(window) + 1
        lines = []
        for i, call in enumerate(window, start=first):
            status = "OK" if call.success else "FAIL"
            line = f"{i}. [{status}] {call.action_name}: {_to_json(call.arguments)}"
            if not call.success and call.error:
                line += f" -> {call.error}"
            lines.append(line)
        return "History of actions taken:\n" + "\n".join(lines)

    # ------------------------------------------------------------------
    # Executing
    # ------------------------------------------------------------------

    async def _resolve_context(self, cancel_event: asyncio.Event) -> ExecutionContext:
        if self.context_provider is None:
            return ExecutionContext()
        try:
            return await await_cancellable(self.context_provider(), cancel_event)
        except RunCancelled:
            raise
        except Exception as e:
            log_event(
                "agent_context_unavailable",
                level="debug",
                run_id=self._state.id,
                error=f"{type(e).__name__}: {e}",
            )
            return ExecutionContext()

    async def _executing_phase(self, action: Action, cancel_event: asyncio.Event) -> ToolCallRecord:
        run_id = self._state.id
        context = await self._resolve_context(cancel_event)

        log_event(
            "agent_action_start",
            run_id=run_id,
            action=action.name,
            args_keys=list(action.arguments.keys()),
        )

        started_at = time.time()
        t0 = time.perf_counter()
        try:
            raw = await await_cancellable(
                self.executor.execute(action.name, dict(action.arguments), context),
                cancel_event,
            )
            outcome = _coerce_outcome(raw)
        except RunCancelled:
            # at-most-once: the attempt is logged as failed and never retried
            self._record(action, started_at, t0, success=False, error="Action cancelled")
            raise
        except Exception as e:
            self._record(
                action, started_at, t0, success=False, error=str(e) or type(e).__name__
            )
            log_event(
                "agent_action_fault",
                level="error",
                run_id=run_id,
                action=action.name,
                error_type=type(e).__name__,
            )
            raise

        record = self._record(
            action,
            started_at,
            t0,
            success=outcome.success,
            result=outcome.result,
            error=outcome.error,
        )
        log_event(
            "agent_action_end",
            run_id=run_id,
            action=action.name,
            ok=record.success,
            error=record.error,
            duration=record.duration,
        )
        return record

    def _record(
        self,
        action: Action,
        started_at: float,
        t0: float,
        *,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
    ) -> ToolCallRecord:
        record = ToolCallRecord(
            action_name=action.name,
            arguments=dict(action.arguments),
            result=_json_safe(result),
            error=error,
            success=success,
            started_at=started_at,
            duration=max(0.0, time.perf_counter() - t0),
        )
        self._state = enter_evaluating(self._state, record)
        return record

    # ------------------------------------------------------------------
    # Evaluating
    # ------------------------------------------------------------------

    async def _evaluating_phase(
        self,
        record: Optional[ToolCallRecord],
        decision: PlanningDecision,
        cancel_event: asyncio.Event,
    ) -> Evaluation:
        run_id = self._state.id

        if record is None:
            # nothing to do is treated as done; the thought carries the answer
            return Evaluation(
                is_complete=True,
                should_continue=False,
                reasoning="No further action needed",
                result=decision.thought.text,
            )

        outcome = {"success": record.success, "result": record.result, "error": record.error}
        prompt = load_prompt(
            "evaluator",
            version=self.prompt_version,
            task=self._state.task,
            action_name=record.action_name,
            arguments=_to_json(record.arguments),
            outcome=_truncate(_to_json(outcome)),
        )

        try:
            raw = await await_cancellable(
                self.evaluator.complete(
                    [{"role": "user", "content": prompt}],
                    cancel_event=cancel_event,
                    temperature=self.evaluator_temperature,
                ),
                cancel_event,
            )
        except RunCancelled:
            raise
        except Exception as e:
            log_event(
                "agent_evaluation_fallback",
                level="warning",
                run_id=run_id,
                reason="evaluator_error",
                error_type=type(e).__name__,
            )
            return fallback_evaluation(record)

        evaluation = parse_evaluation_response(raw)
        if evaluation is None:
            log_event(
                "agent_evaluation_fallback",
                level="warning",
                run_id=run_id,
                reason="unparsable",
            )
            return fallback_evaluation(record)

        log_event(
            "agent_evaluation",
            run_id=run_id,
            iteration=self._state.iterations,
            complete=evaluation.is_complete,
            should_continue=evaluation.wants_more(),
            reasoning=evaluation.reasoning,
        )
        return evaluation


async def run_agent_task(
    task: str,
    planner: LLMClient,
    executor: ActionExecutor,
    **kwargs: Any,
) -> RunState:
    """Create a throwaway orchestrator and run one task on it."""
    run_options = {k: kwargs.pop(k) for k in ("max_iterations", "system_prompt") if k in kwargs}
    orchestrator = Orchestrator(planner, executor, **kwargs)
    return await orchestrator.run(task, **run_options)
