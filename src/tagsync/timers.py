"""Cancellable one-shot timers."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable


class Watchdog:
    """Runs ``on_expire`` once after ``timeout`` seconds unless cancelled first."""

    def __init__(self, timeout: float, on_expire: Callable[[], Awaitable[None]]) -> None:
        if timeout <= 0:
            raise ValueError("Watchdog timeout must be > 0")
        self.timeout = timeout
        self._on_expire = on_expire
        self._task: asyncio.Task[None] | None = None
        self.expired = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self.expired = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        await asyncio.sleep(self.timeout)
        # detach before firing so on_expire may call cancel() safely
        self.expired = True
        self._task = None
        await self._on_expire()

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
