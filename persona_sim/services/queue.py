"""In-process task queue that runs analysis jobs off the request path."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from persona_sim.models import AnalysisMessage

_log = logging.getLogger(__name__)

Handler = Callable[[AnalysisMessage], Awaitable[None]]


class TaskQueue(Protocol):
    async def send(self, message: AnalysisMessage) -> None: ...


class InProcessQueue:
    """asyncio.Queue drained by a fixed number of worker tasks.

    A job that raises is logged and dropped; the worker moves on to the next one.
    """

    def __init__(self, workers: int = 1) -> None:
        self._queue: asyncio.Queue[AnalysisMessage] = asyncio.Queue()
        self._workers = workers
        self._tasks: list[asyncio.Task] = []

    async def send(self, message: AnalysisMessage) -> None:
        await self._queue.put(message)
        _log.info("analysis task queued for session %s", message.session_id)

    def start(self, handler: Handler) -> None:
        if self._tasks:
            raise RuntimeError("queue workers already started")
        self._tasks = [asyncio.create_task(self._work(handler)) for _ in range(self._workers)]

    async def _work(self, handler: Handler) -> None:
        while True:
            message = await self._queue.get()
            try:
                await handler(message)
            except Exception:
                _log.exception("analysis task for session %s failed", message.session_id)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued message has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
