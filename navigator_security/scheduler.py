"""
Recurring timer handles for background maintenance.

CSRF refresh, rate-limiter garbage collection and log retention each run
on their own ``PeriodicTask``. Nothing starts on import: the owner calls
``start()`` from inside a running event loop and ``stop()`` on shutdown.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("navigator.scheduler")


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds on the running loop.

    The callback may be a plain function or a coroutine function. A
    failing tick is logged and the schedule continues.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Any],
        name: str = "periodic-task",
    ):
        if interval <= 0:
            raise ValueError("interval must be greater than zero")
        self._interval = interval
        self._callback = callback
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._runs = 0
        self._errors = 0

    def __repr__(self) -> str:
        return (
            f'<PeriodicTask {self._name} interval={self._interval}s '
            f'running={self.running}>'
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def runs(self) -> int:
        return self._runs

    @property
    def errors(self) -> int:
        return self._errors

    def start(self) -> None:
        """Schedule the task on the running event loop.

        Raises:
            RuntimeError: If called outside a running event loop.
        """
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=self._name)
        logger.debug("Started %s (every %ss)", self._name, self._interval)

    def stop(self) -> None:
        """Cancel the schedule. Safe to call when not running."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug("Stopped %s", self._name)

    async def aclose(self) -> None:
        """Cancel the schedule and wait for the loop to exit."""
        task = self._task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self) -> Any:
        """Execute the callback immediately, outside the schedule."""
        result = self._callback()
        if inspect.isawaitable(result):
            result = await result
        self._runs += 1
        return result

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception as err:
                self._errors += 1
                logger.error("Periodic task %s failed: %s", self._name, err)
