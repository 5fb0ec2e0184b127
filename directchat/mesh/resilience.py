"""Background task helpers for the chat core.

Provides:
- ``supervised_task`` -- create_task wrapper with error logging
- ``TaskPool``        -- the shared, unbounded pool that discovery, connect
  and send requests are dispatched to so callers never wait on the network
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from loguru import logger


# ---------------------------------------------------------------------------
# Supervised task -- create_task with error logging
# ---------------------------------------------------------------------------

def supervised_task(
    coro: Awaitable[Any],
    *,
    name: str = "",
    expected: tuple[type[BaseException], ...] = (),
) -> asyncio.Task:
    """Wrap ``asyncio.create_task`` with an error-logging callback.

    If the task raises an exception (other than ``CancelledError``),
    it is logged as an error instead of becoming an unhandled exception.
    Exceptions matching *expected* are ordinary outcomes the caller
    awaits, and are logged as warnings.
    """
    task = asyncio.create_task(coro, name=name or None)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is None:
            return
        if expected and isinstance(exc, expected):
            logger.warning(
                "[Resilience] task {!r} ended with {}: {}",
                t.get_name(), type(exc).__name__, exc,
            )
        else:
            logger.error(
                "[Resilience] supervised task {!r} failed: {!r}",
                t.get_name(), exc,
            )

    task.add_done_callback(_on_done)
    return task


# ---------------------------------------------------------------------------
# Task pool -- tracked fire-and-forget work
# ---------------------------------------------------------------------------

class TaskPool:
    """Set of supervised background tasks that can be cancelled together.

    Parameters
    ----------
    name:
        Prefix used for task names and log lines.
    expected:
        Exception types that end a task as a normal, reported outcome
        (logged at warning level rather than as a failure).
    """

    def __init__(
        self,
        name: str = "pool",
        *,
        expected: tuple[type[BaseException], ...] = (),
    ) -> None:
        self.name = name
        self.expected = expected
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], *, label: str = "") -> asyncio.Task:
        """Schedule *coro* and return its task without waiting for it."""
        task = supervised_task(
            coro, name=f"{self.name}-{label or 'task'}", expected=self.expected,
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def __len__(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every task currently in the pool has finished."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> int:
        """Cancel every pending task and wait for them to unwind.

        Returns the number of tasks that were cancelled.
        """
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.debug("[Resilience] {} cancelled {} task(s)", self.name, len(pending))
        self._tasks.clear()
        return len(pending)
