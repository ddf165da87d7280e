from __future__ import annotations

import inspect
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from taskpilot.infra.logging import log_event

ActionHandler = Callable[..., Any]

_ACTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


class ActionRegistrationError(ValueError):
    """Raised when an action cannot be registered as declared."""


class ExecutionContext(BaseModel):
    """
    Ambient context handed to every action dispatch.

    Reason:
    - Actions act on a target surface (tab, page, session) the planner never names.
    Benefit:
    - Back-ends get the target without the model having to guess ids.
    """

    target_id: Optional[Union[int, str]] = None
    url: Optional[str] = None
    title: Optional[str] = None


class ActionOutcome(BaseModel):
    success: bool
    result: Any = None
    error: Optional[str] = None


class ActionSpec(BaseModel):
    """What the planner is told about one available action."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ActionExecutor(ABC):
    """
    Named-action dispatcher used by the orchestrator.

    execute() reports ordinary failures (unknown action, bad arguments, back-end
    errors) as ActionOutcome(success=False); raising is reserved for real faults.
    """

    @abstractmethod
    async def execute(
        self, name: str, arguments: Dict[str, Any], context: ExecutionContext
    ) -> ActionOutcome:
        raise NotImplementedError

    @abstractmethod
    def list_actions(self) -> List[ActionSpec]:
        raise NotImplementedError


class _Registered:
    def __init__(self, spec: ActionSpec, fn: ActionHandler, wants_context: bool) -> None:
        self.spec = spec
        self.fn = fn
        self.wants_context = wants_context
        try:
            self.signature: Optional[inspect.Signature] = inspect.signature(fn)
        except (TypeError, ValueError):
            self.signature = None

    def bind(self, args: Dict[str, Any]) -> None:
        """Raises TypeError when ``args`` do not fit the handler's signature."""
        if self.signature is not None:
            self.signature.bind(**args)


def _validate_parameters(name: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(parameters, dict) or parameters.get("type") != "object":
        raise ActionRegistrationError(
            f"Action '{name}': parameters must be a JSON schema of type 'object'"
        )
    properties = parameters.get("properties", {})
    if not isinstance(properties, dict):
        raise ActionRegistrationError(f"Action '{name}': 'properties' must be a mapping")
    required = parameters.get("required", [])
    if not isinstance(required, list) or not all(isinstance(r, str) for r in required):
        raise ActionRegistrationError(f"Action '{name}': 'required' must be a list of names")
    missing = [r for r in required if r not in properties]
    if missing:
        raise ActionRegistrationError(
            f"Action '{name}': required parameters not declared in properties: {missing}"
        )
    return {"type": "object", "properties": dict(properties), "required": list(required)}


def _check_signature(name: str, fn: ActionHandler, properties: Dict[str, Any]) -> bool:
    """Returns whether the handler takes a ``context`` keyword."""
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        # builtins without signatures are accepted as-is
        return False

    params = sig.parameters
    var_kw = any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values())
    if not var_kw:
        unknown = [p for p in properties if p not in params]
        if unknown:
            raise ActionRegistrationError(
                f"Action '{name}': handler does not accept declared parameters {unknown}"
            )
    return "context" in params


class ActionRegistry(ActionExecutor):
    """
    Reason:
    - Maintain an allowlist of actions, validated when they are registered.
    Benefit:
    - A misspelled or malformed action fails at startup, not in the middle of a run.
    """

    def __init__(self) -> None:
        self._actions: Dict[str, _Registered] = {}

    def register(
        self,
        name: str,
        fn: ActionHandler,
        *,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not isinstance(name, str) or not _ACTION_NAME.match(name):
            raise ActionRegistrationError(f"Invalid action name: {name!r}")
        if name in self._actions:
            raise ActionRegistrationError(f"Action already registered: {name}")
        if not callable(fn):
            raise ActionRegistrationError(f"Action '{name}': handler is not callable")

        schema = _validate_parameters(
            name, parameters if parameters is not None else {"type": "object", "properties": {}}
        )
        wants_context = _check_signature(name, fn, schema["properties"])

        spec = ActionSpec(name=name, description=description, parameters=schema)
        self._actions[name] = _Registered(spec, fn, wants_context)

    def has(self, name: str) -> bool:
        return name in self._actions

    def list_actions(self) -> List[ActionSpec]:
        return [r.spec.model_copy(deep=True) for r in self._actions.values()]

    async def execute(
        self, name: str, arguments: Dict[str, Any], context: ExecutionContext
    ) -> ActionOutcome:
        registered = self._actions.get(name)
        if registered is None:
            return ActionOutcome(success=False, error=f"Unknown action: {name}")

        args = dict(arguments or {})
        missing = [r for r in registered.spec.parameters["required"] if r not in args]
        if missing:
            return ActionOutcome(
                success=False, error=f"Bad action args: missing required {missing}"
            )
        if registered.wants_context:
            args["context"] = context

        try:
            registered.bind(args)
        except TypeError as e:
            return ActionOutcome(success=False, error=f"Bad action args: {e}")

        try:
            out = registered.fn(**args)
            if inspect.isawaitable(out):
                out = await out
        except Exception as e:
            log_event(
                "action_handler_error",
                level="warning",
                action=name,
                error=f"{type(e).__name__}: {e}",
            )
            return ActionOutcome(success=False, error=f"Action error: {type(e).__name__}: {e}")

        if isinstance(out, ActionOutcome):
            return out
        return ActionOutcome(success=True, result=out)
