"""
Per-call ownership of background tasks.

Work that outlives a turn (the post-call summary, a slow notification) is
spawned through ``CallTaskTracker`` so that hanging up cancels whatever the
call still has in flight. Completion handlers must write through
``SessionStore.update_if_present`` so a finished or unknown call is never
resurrected.

Usage:
    tracker = CallTaskTracker()
    tracker.spawn("CA123", summarise(call_id))
    tracker.cancel("CA123")  # on hangup
"""

import asyncio
import logging
from typing import Any, Coroutine

from src.logging_context import call_context

logger = logging.getLogger(__name__)


class CallTaskTracker:
    """Tracks asyncio tasks by call id."""

    def __init__(self) -> None:
        self._tasks: dict[str, set[asyncio.Task[Any]]] = {}

    def spawn(self, call_id: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Schedule ``coro`` for ``call_id`` with the call id bound for logging."""

        async def _run() -> Any:
            with call_context(call_id):
                return await coro

        task = asyncio.create_task(_run(), name=f"call:{call_id}")
        self._tasks.setdefault(call_id, set()).add(task)
        task.add_done_callback(lambda t: self._on_done(call_id, t))
        return task

    def _on_done(self, call_id: str, task: asyncio.Task[Any]) -> None:
        tasks = self._tasks.get(call_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[call_id]
        if task.cancelled():
            logger.debug("Background task for %s cancelled", call_id)
            return
        error = task.exception()
        if error is not None:
            logger.warning("Background task for %s failed: %s", call_id, error)

    def cancel(self, call_id: str, keep: tuple[asyncio.Task[Any], ...] = ()) -> int:
        """Cancel every pending task of ``call_id`` except ``keep``. Returns the count."""
        cancelled = 0
        for task in list(self._tasks.get(call_id, ())):
            if task in keep or task.done():
                continue
            task.cancel()
            cancelled += 1
        if cancelled:
            logger.info("Cancelled %d background task(s) for %s", cancelled, call_id)
        return cancelled

    def pending(self, call_id: str) -> int:
        return sum(1 for t in self._tasks.get(call_id, ()) if not t.done())

    async def drain(self) -> None:
        """Wait for every tracked task to settle. Used at shutdown and in tests."""
        tasks = [t for group in self._tasks.values() for t in group]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
