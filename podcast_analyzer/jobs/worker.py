"""Fire-and-forget launcher for orchestrator runs spawned from HTTP handlers."""
import asyncio
import logging
from typing import Any, Awaitable, Optional, Set

from podcast_analyzer.jobs.cancellation import ActiveRuns

logger = logging.getLogger(__name__)


class JobLauncher:
    """Spawns one asyncio task per orchestrator run and keeps a reference until it finishes.
    Why available: Handlers respond immediately while the run continues on the event loop; held references keep tasks
    from being garbage collected and the done-callback surfaces anything the orchestrator's own boundary let through."""

    def __init__(self, active: ActiveRuns):
        self.active = active
        self._tasks: Set[asyncio.Task] = set()

    def launch(self, session_id: str, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        """Start coro in the background. The caller must already hold the ActiveRuns slot for session_id; it is released here when the task ends."""
        task = asyncio.create_task(coro, name=name or f"job-{session_id}")
        self._tasks.add(task)

        def _finished(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            self.active.release(session_id)
            if t.cancelled():
                logger.debug("job_task_cancelled %s", t.get_name())
                return
            exc = t.exception()
            if exc is not None:
                logger.error("job_task_failed %s", t.get_name(), exc_info=exc)

        task.add_done_callback(_finished)
        return task

    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel every running task and wait for them to unwind (app shutdown)."""
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
