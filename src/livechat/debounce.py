from __future__ import annotations

import asyncio
from typing import Awaitable, Callable


class TypingDebouncer:
    """One restartable timer that calls ``on_idle`` after ``delay_s`` of quiet.

    The task stays registered until ``on_idle`` returns, so a restart or
    cancel also reaches a callback that has fired but is still waiting to
    run. At most one timer exists at any time.
    """

    def __init__(self, delay_s: float, on_idle: Callable[[], Awaitable[None]]) -> None:
        self.delay_s = delay_s
        self._on_idle = on_idle
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def restart(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._wait())

    def cancel(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        if task is not asyncio.current_task():
            task.cancel()

    async def aclose(self) -> None:
        task = self._task
        self.cancel()
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _wait(self) -> None:
        await asyncio.sleep(self.delay_s)
        try:
            await self._on_idle()
        finally:
            if self._task is asyncio.current_task():
                self._task = None
