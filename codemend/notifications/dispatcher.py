from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from typing import Optional

import structlog

from codemend.notifications.events import NotificationEvent
from codemend.notifications.sinks import NotificationSink

logger = structlog.get_logger()

_STOP = object()


class NotificationDispatcher:
    """
    Queues events and hands them to the sink from a background task, so
    workers never wait on delivery.
    """

    def __init__(self, sink: NotificationSink, executor: Optional[Executor] = None, maxsize: int = 1000):
        self.sink = sink
        self.executor = executor
        self.maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._task = asyncio.create_task(self._run())

    def publish(self, event: NotificationEvent) -> None:
        if not self.running:
            logger.warning("notification_dropped", event_type=event.event_type, reason="dispatcher not running")
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("notification_dropped", event_type=event.event_type, reason="queue full")

    async def close(self) -> None:
        """Delivers everything queued so far, then stops the background task."""
        if not self.running:
            return
        await self._queue.put(_STOP)
        await self._task
        self._task = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            event = await self._queue.get()
            if event is _STOP:
                return
            try:
                await loop.run_in_executor(self.executor, self.sink.emit, event)
            except Exception as e:
                logger.error("notification_delivery_failed", event_type=event.event_type, error=str(e))
