from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, Hashable, List, Optional

from taskpilot.core.orchestrator import Orchestrator
from taskpilot.core.state import RunState
from taskpilot.infra.logging import log_event

OrchestratorFactory = Callable[[], Orchestrator]


class _Entry:
    def __init__(self, orchestrator: Orchestrator, task: "asyncio.Task[RunState]") -> None:
        self.orchestrator = orchestrator
        self.task = task


class RunRegistry:
    """
    Host-side map of scope (tab, session, chat id...) -> in-flight run.

    Reason:
    - Hosts run one agent per scope and need to find it again to poll or stop it.
    Benefit:
    - No module-level dicts; each registry owns its runs and each run gets a
      fresh Orchestrator, so runs never share mutable state.
    """

    def __init__(self, factory: OrchestratorFactory) -> None:
        self._factory = factory
        self._entries: Dict[Hashable, _Entry] = {}

    def start(self, scope: Hashable, task: str, **options: Any) -> "asyncio.Task[RunState]":
        """
        Start ``task`` for ``scope`` on a new orchestrator. Any run already in
        flight for the scope is stopped first. Must be called from a running loop.
        """
        previous = self._entries.get(scope)
        if previous is not None and not previous.task.done():
            previous.orchestrator.stop()
            log_event("registry_run_replaced", scope=str(scope))

        orchestrator = self._factory()
        run_task = asyncio.get_running_loop().create_task(orchestrator.run(task, **options))
        self._entries[scope] = _Entry(orchestrator, run_task)
        log_event("registry_run_started", scope=str(scope), task=task)
        return run_task

    def stop(self, scope: Hashable) -> bool:
        """Returns False when the scope has no run at all."""
        entry = self._entries.get(scope)
        if entry is None:
            return False
        entry.orchestrator.stop()
        return True

    def stop_all(self) -> None:
        for entry in self._entries.values():
            entry.orchestrator.stop()

    def get_state(self, scope: Hashable) -> Optional[RunState]:
        entry = self._entries.get(scope)
        return entry.orchestrator.get_state() if entry else None

    def is_running(self, scope: Hashable) -> bool:
        entry = self._entries.get(scope)
        return entry is not None and not entry.task.done()

    async def wait(self, scope: Hashable) -> RunState:
        entry = self._entries.get(scope)
        if entry is None:
            raise KeyError(f"No run registered for scope {scope!r}")
        return await asyncio.shield(entry.task)

    async def watch(self, scope: Hashable, interval: float = 0.5) -> AsyncIterator[RunState]:
        """
        Yield a snapshot every ``interval`` seconds while the run is in flight,
        then one final terminal snapshot.
        """
        entry = self._entries.get(scope)
        if entry is None:
            raise KeyError(f"No run registered for scope {scope!r}")

        while not entry.task.done():
            yield entry.orchestrator.get_state()
            await asyncio.wait({entry.task}, timeout=interval)
        yield entry.orchestrator.get_state()

    def discard(self, scope: Hashable) -> bool:
        """Forget a scope, stopping its run if still in flight."""
        entry = self._entries.pop(scope, None)
        if entry is None:
            return False
        if not entry.task.done():
            entry.orchestrator.stop()
        return True

    def scopes(self) -> List[Hashable]:
        return list(self._entries.keys())
