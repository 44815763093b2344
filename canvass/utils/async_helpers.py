"""
Asyncio helpers: named task tracking, timeouts and debouncing.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from canvass.config.logging_config import get_logger

T = TypeVar("T")
logger = get_logger(__name__)


class TaskManager:
    """
    Keeps track of background tasks so they can be cancelled together.

    Finished tasks remove themselves; exceptions raised by a task are logged
    rather than lost.
    """

    def __init__(self, name: str = "tasks"):
        self.name = name
        self._tasks: Dict[str, asyncio.Task] = {}
        self._counter = 0

    def create_task(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        """
        Schedule a coroutine and track it.

        Args:
            coro: Coroutine to run
            name: Optional task name (made unique if already used)

        Returns:
            asyncio.Task: The scheduled task
        """
        self._counter += 1
        task_name = name or f"{self.name}_{self._counter}"
        if task_name in self._tasks:
            task_name = f"{task_name}_{self._counter}"

        task = asyncio.ensure_future(coro)
        self._tasks[task_name] = task
        task.add_done_callback(lambda t, key=task_name: self._on_done(key, t))
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Task {key} in {self.name} failed: {exc}")

    def cancel(self, name: str) -> bool:
        """Cancel a tracked task by name."""
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel every tracked task."""
        for task in list(self._tasks.values()):
            if not task.done():
                task.cancel()
        self._tasks.clear()

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())


async def run_with_timeout(awaitable: Awaitable[T], timeout: float, operation: str = "operation") -> T:
    """
    Await with a timeout, logging when it expires.

    Raises:
        asyncio.TimeoutError: If the timeout expires
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Timeout after {timeout:.1f}s waiting for {operation}")
        raise


class Debouncer:
    """
    Runs an async action once the calls to ``trigger`` have been quiet for ``delay`` seconds.

    Each trigger restarts the quiet period. ``flush`` runs the pending action
    immediately, ``cancel`` drops it.
    """

    def __init__(self, action: Callable[[], Awaitable[Any]], delay: float):
        self.action = action
        self.delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        """Restart the quiet period."""
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        try:
            await self.action()
        except Exception as e:
            # The action reports its own failure.
            logger.debug(f"Debounced action failed: {e}")

    async def flush(self) -> None:
        """Run the pending action now, if any."""
        if self._handle is None:
            if self._task is not None and not self._task.done():
                await asyncio.shield(self._task)
            return
        self._cancel_timer()
        await self.action()

    def cancel(self) -> None:
        """Drop the pending action."""
        self._cancel_timer()

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
