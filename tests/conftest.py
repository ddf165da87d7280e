import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from taskpilot.core.actions import ActionExecutor, ActionOutcome, ActionSpec, ExecutionContext
from taskpilot.llm.client import LLMClient


def plan(name: Optional[str] = None, thought: str = "working on it", **arguments: Any) -> str:
    payload: Dict[str, Any] = {"thought": thought, "confidence": 0.9}
    payload["action"] = {"name": name, "arguments": arguments} if name else None
    return json.dumps(payload)


def verdict(is_complete: bool, should_continue: Optional[bool] = None, reasoning: str = "ok", **extra: Any) -> str:
    payload: Dict[str, Any] = {"isComplete": is_complete, "reasoning": reasoning, **extra}
    if should_continue is not None:
        payload["shouldContinue"] = should_continue
    return json.dumps(payload)


class ScriptedLLM(LLMClient):
    """Returns scripted replies in order; the last one repeats once the script runs out."""

    def __init__(self, *responses: Any) -> None:
        self.responses: List[Any] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, *, cancel_event=None, temperature=None):
        self.calls.append({"messages": messages, "temperature": temperature})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        return item


class BlockingLLM(LLMClient):
    """Never answers; records whether it was cancelled."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False
        self.calls = 0

    async def complete(self, messages, *, cancel_event=None, temperature=None):
        self.calls += 1
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ""


class FakeExecutor(ActionExecutor):
    def __init__(self, *outcomes: Any, actions: Optional[List[ActionSpec]] = None) -> None:
        self.outcomes: List[Any] = list(outcomes) or [ActionOutcome(success=True, result={"ok": True})]
        self.calls: List[Dict[str, Any]] = []
        self.actions = actions if actions is not None else [
            ActionSpec(name="noop", description="Does nothing"),
            ActionSpec(
                name="navigate",
                description="Open a URL",
                parameters={
                    "type": "object",
                    "properties": {"url": {"type": "string"}},
                    "required": ["url"],
                },
            ),
        ]

    async def execute(self, name: str, arguments: Dict[str, Any], context: ExecutionContext):
        self.calls.append({"name": name, "arguments": arguments, "context": context})
        item = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(item, BaseException):
            raise item
        return item

    def list_actions(self) -> List[ActionSpec]:
        return list(self.actions)


class BlockingExecutor(FakeExecutor):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, name, arguments, context):
        self.calls.append({"name": name, "arguments": arguments, "context": context})
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ActionOutcome(success=True)


@pytest.fixture
def executor():
    return FakeExecutor()
