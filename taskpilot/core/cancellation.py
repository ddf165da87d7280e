from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class RunCancelled(Exception):
    """
    Raised at a suspension point once the run's cancel event is set.

    Kept apart from ordinary faults so no fallback path can absorb it.
    """


def raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelled("Run cancelled")


async def await_cancellable(awaitable: Awaitable[T], cancel_event: asyncio.Event) -> T:
    """
    Await ``awaitable`` unless ``cancel_event`` fires first.

    When the event wins, the in-flight task is cancelled, given the chance to
    unwind, and RunCancelled is raised. Its result (if any) is discarded.
    """
    raise_if_cancelled(cancel_event)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        if task.cancelled():
            raise RunCancelled("Run cancelled")
        return task.result()

    task.cancel()
    # drain the cancelled task
    await asyncio.gather(task, return_exceptions=True)
    raise RunCancelled("Run cancelled")
