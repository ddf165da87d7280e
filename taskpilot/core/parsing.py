from __future__ import annotations

import json
import math
import re
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from taskpilot.core.llm_output import (
    LLMInvalidJSON,
    LLMSchemaViolation,
    extract_json_object,
    parse_and_validate,
)
from taskpilot.core.state import Action, Thought, ToolCallRecord

DEFAULT_CONFIDENCE = 0.5
DEFAULT_CLICK_SELECTOR = "body"

_URL = re.compile(r"https?://[^\s\"'<>]+")
_QUOTED = re.compile(r"(?<!\w)[\"'“‘]([^\"'”’]+)[\"'”’](?!\w)")
_NAVIGATE = re.compile(r"\b(?:navigate|go to)\b", re.IGNORECASE)
_CLICK = re.compile(r"\bclick", re.IGNORECASE)
_TRAILING_PUNCT = ".,;:!?)]}>"


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class StructuredAction(BaseModel):
    """Action taken from a JSON object embedded in the planner output."""

    kind: Literal["structured"] = "structured"
    action: Action


class HeuristicAction(BaseModel):
    """Action salvaged from prose by keyword matching."""

    kind: Literal["heuristic"] = "heuristic"
    action: Action
    matched: str


class NoAction(BaseModel):
    kind: Literal["none"] = "none"


Proposal = Annotated[
    Union[StructuredAction, HeuristicAction, NoAction], Field(discriminator="kind")
]


class PlanningDecision(BaseModel):
    thought: Thought
    proposal: Proposal

    @property
    def action(self) -> Optional[Action]:
        if isinstance(self.proposal, NoAction):
            return None
        return self.proposal.action


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return DEFAULT_CONFIDENCE
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if math.isnan(conf):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, conf))


def _coerce_arguments(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except (ValueError, RecursionError):
            return None
    if not isinstance(value, dict):
        return None
    return {str(k): v for k, v in value.items()}


def _coerce_action(data: Dict[str, Any]) -> Optional[Action]:
    raw = data.get("action")

    if isinstance(raw, str):
        # {"action": "navigate", "arguments": {...}}
        raw = {"name": raw, "arguments": data.get("arguments", data.get("args"))}

    if not isinstance(raw, dict):
        return None

    name = raw.get("name") or raw.get("toolName") or raw.get("tool_name") or raw.get("tool")
    if not isinstance(name, str) or not name.strip():
        return None

    arguments = _coerce_arguments(raw.get("arguments", raw.get("args")))
    if arguments is None:
        return None

    return Action(name=name.strip(), arguments=arguments)


def _structured_decision(raw_output: str) -> PlanningDecision:
    data = extract_json_object(raw_output)

    text = data.get("thought")
    if not isinstance(text, str) or not text.strip():
        text = raw_output

    reasoning = data.get("reasoning")
    thought = Thought(
        text=text,
        confidence=_coerce_confidence(data.get("confidence")),
        reasoning=reasoning if isinstance(reasoning, str) else None,
    )

    action = _coerce_action(data)
    proposal = StructuredAction(action=action) if action else NoAction()
    return PlanningDecision(thought=thought, proposal=proposal)


def _clean_target(value: str) -> str:
    return value.strip().strip("\"'").rstrip(_TRAILING_PUNCT).strip()


def extract_action_from_text(text: str) -> Optional[HeuristicAction]:
    """
    Keyword fallback for planner output that carries no usable JSON.
    """
    nav = _NAVIGATE.search(text)
    if nav:
        url = _URL.search(text)
        quoted = _QUOTED.search(text)
        if url:
            target = url.group(0).rstrip(_TRAILING_PUNCT)
        elif quoted:
            target = _clean_target(quoted.group(1))
        else:
            rest = text[nav.end():]
            rest = re.sub(r"^\s*to\b", "", rest, flags=re.IGNORECASE)
            target = _clean_target(rest.splitlines()[0] if rest.strip() else "")
        if target:
            return HeuristicAction(
                action=Action(name="navigate", arguments={"url": target}),
                matched=nav.group(0).lower(),
            )

    if _CLICK.search(text):
        quoted = _QUOTED.search(text)
        selector = _clean_target(quoted.group(1)) if quoted else ""
        return HeuristicAction(
            action=Action(
                name="click",
                arguments={"selector": selector or DEFAULT_CLICK_SELECTOR},
            ),
            matched="click",
        )

    return None


def parse_planning_response(raw_output: Any) -> PlanningDecision:
    """
    Turn planner text into a tagged decision. Never raises.

    Order: embedded JSON object -> keyword heuristics -> no action.
    """
    text = raw_output if isinstance(raw_output, str) else ("" if raw_output is None else str(raw_output))

    try:
        return _structured_decision(text)
    except LLMInvalidJSON:
        pass

    heuristic = extract_action_from_text(text)
    return PlanningDecision(
        thought=Thought(text=text, confidence=DEFAULT_CONFIDENCE),
        proposal=heuristic or NoAction(),
    )


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class Evaluation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_complete: bool = Field(validation_alias=AliasChoices("isComplete", "is_complete"))
    reasoning: Optional[str] = ""
    should_continue: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("shouldContinue", "should_continue")
    )
    result: Any = None
    fallback: bool = False

    def wants_more(self) -> bool:
        if self.should_continue is None:
            return not self.is_complete
        return self.should_continue


def parse_evaluation_response(raw_output: Any) -> Optional[Evaluation]:
    """Returns None when the evaluator text cannot be trusted."""
    if not isinstance(raw_output, str):
        return None
    try:
        evaluation = parse_and_validate(raw_output, Evaluation)
    except (LLMInvalidJSON, LLMSchemaViolation):
        return None
    evaluation.reasoning = evaluation.reasoning or ""
    evaluation.fallback = False
    return evaluation


def fallback_evaluation(record: ToolCallRecord) -> Evaluation:
    """
    Deterministic verdict used when the evaluator is unavailable or unparsable:
    stop after a failed action, keep going after a successful one.
    """
    if not record.success:
        return Evaluation(
            is_complete=False,
            should_continue=False,
            reasoning=f"Action '{record.action_name}' failed: {record.error or 'unknown error'}",
            fallback=True,
        )
    return Evaluation(
        is_complete=False,
        should_continue=True,
        reasoning="Fallback evaluation: continuing with more steps",
        fallback=True,
    )
