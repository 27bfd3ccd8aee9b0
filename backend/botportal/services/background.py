"""
Tracked background execution.

Jobs run detached from the request that scheduled them, but every task handle
is kept so the application can drain them on shutdown.
"""
import asyncio
import logging
from typing import Coroutine, Optional, Set, Tuple

from ..utils.telemetry import update_background_tasks

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Run coroutines detached and guarantee they are awaited or cancelled."""

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self._accepting = True
        self.completed = 0
        self.failed = 0

    @property
    def active(self) -> int:
        return len(self._tasks)

    @property
    def accepting(self) -> bool:
        return self._accepting

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """
        Schedule coro without awaiting it.

        Raises:
            RuntimeError: if the runner is draining
        """
        if not self._accepting:
            coro.close()
            raise RuntimeError(f"{self.name} runner is shutting down")

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        update_background_tasks(len(self._tasks))
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        update_background_tasks(len(self._tasks))

        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return

        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__)
            )
        else:
            self.completed += 1

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no task is running. Returns False on timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._tasks), timeout=remaining)
        return True

    async def drain(self, timeout: float = 30.0) -> Tuple[int, int]:
        """
        Stop accepting work, wait up to timeout, then cancel the rest.

        Returns:
            (finished, cancelled) task counts
        """
        self._accepting = False
        pending = set(self._tasks)
        if not pending:
            return 0, 0

        logger.info(f"Draining {len(pending)} {self.name} task(s) (timeout={timeout}s)")
        done, still_running = await asyncio.wait(pending, timeout=timeout)

        for task in still_running:
            task.cancel()
        if still_running:
            # Cancelled jobs get a chance to record their terminal state
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} {self.name} task(s) at shutdown")

        return len(done), len(still_running)
