"""Supervision for work that outlives the request that started it."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Coroutine, Optional

from .logging_config import log_delivery_event

logger = logging.getLogger(__name__)


@dataclass
class BranchOutcome:
    branch: str
    ok: bool
    value: Any = None
    error: Optional[str] = None


async def non_fatal(branch: str, work: Awaitable[Any], session_id: str = "") -> BranchOutcome:
    """Await ``work`` and turn any exception into a logged, failed outcome.

    This is the only place a best-effort branch swallows its error; callers
    get a ``BranchOutcome`` and keep going.
    """
    try:
        value = await work
    except Exception as e:
        logger.exception("Non-fatal branch '%s' failed", branch)
        log_delivery_event(session_id, branch, "failed", error=f"{type(e).__name__}: {e}")
        return BranchOutcome(branch, ok=False, error=str(e) or type(e).__name__)
    log_delivery_event(session_id, branch, "ok")
    return BranchOutcome(branch, ok=True, value=value)


class BackgroundTasks:
    """Owns detached tasks so they are not garbage-collected mid-flight and can
    be drained before the process exits."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self.failed = 0

    @property
    def outstanding(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: str = "") -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, name), name=name or None)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Coroutine, name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.warning("Background task %s cancelled", name or "?")
            raise
        except Exception:
            self.failed += 1
            logger.exception("Background task %s failed", name or "?")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every outstanding task, including ones spawned while waiting."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                logger.warning("Drain timed out with %d background tasks outstanding", len(pending))
                return
