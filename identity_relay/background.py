"""Fire-and-forget side effects with a tracked task set."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional

LOG = logging.getLogger("identity-relay.background")


class BackgroundExecutor:
    """Runs side-effect coroutines outside the request path.

    Failures are logged and counted, never re-raised into the caller.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._failures = 0
        self._completed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def completed(self) -> int:
        return self._completed

    def submit(self, coro: Coroutine[Any, Any, Any], label: str = "task") -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(self._guard(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            LOG.debug("Background task %s cancelled", label)
            raise
        except Exception:
            self._failures += 1
            LOG.exception("Background task %s failed", label)
        else:
            self._completed += 1

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks, including ones they schedule."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)
        if self._tasks:
            LOG.warning("Cancelling %d background tasks after drain timeout", len(self._tasks))
            leftover = list(self._tasks)
            for task in leftover:
                task.cancel()
            await asyncio.gather(*leftover, return_exceptions=True)

    def stats(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "completed": self._completed,
            "failures": self._failures,
        }
