import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from loguru import logger

from clouds.core.types import DurationSeconds


@dataclass(slots=True)
class RepeatingTask:
    """Run ``callback`` every ``interval`` seconds until cancelled.

    Use as:
        timer = RepeatingTask(2.0, refresh, name="heartbeat")
        timer.start()
        ...
        await timer.cancel()

    The first run happens one full interval after ``start()``. A tick that
    raises is logged and the schedule carries on.
    """

    interval: DurationSeconds
    callback: Callable[[], Awaitable[None]]
    name: str = "repeating-task"
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _stop: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def cancel(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        task, self._task = self._task, None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                # stop was signaled
                break
            except TimeoutError:
                pass

            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("[{}] Tick failed: {}", self.name, e)
