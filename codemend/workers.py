"""Worker pool, per-path apply locks and batch cancellation."""
from __future__ import annotations

import asyncio
import threading
from contextlib import ExitStack, asynccontextmanager, contextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, Iterator, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class Batch:
    """Cancellation handle for one scan run. Cancelling stops new work; in-flight applies finish."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        if not self._cancelled:
            logger.info("batch_cancel_requested")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class WorkerSlot:
    """One permit of the pool, held by a worker for the life of its work item."""

    def __init__(self, semaphore: asyncio.Semaphore):
        self._semaphore = semaphore
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        if not self._held:
            await self._semaphore.acquire()
            self._held = True

    def release(self) -> None:
        if self._held:
            self._held = False
            self._semaphore.release()

    @asynccontextmanager
    async def released(self) -> AsyncIterator[None]:
        """Gives the permit back while waiting on something slow, and takes it again afterwards."""
        was_held = self._held
        self.release()
        try:
            yield
        finally:
            if was_held:
                await self.acquire()


class WorkerPool:
    def __init__(self, size: int):
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self.size = size
        self._semaphore = asyncio.Semaphore(size)

    async def run(self, fn: Callable[[WorkerSlot], Awaitable[T]]) -> T:
        slot = WorkerSlot(self._semaphore)
        await slot.acquire()
        try:
            return await fn(slot)
        finally:
            slot.release()


class FileLocks:
    """Registry of per-path asyncio locks. Groups lock in sorted path order."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, path: str) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = self._locks[path] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, paths: Iterable[str]) -> AsyncIterator[None]:
        acquired = []
        try:
            for path in sorted(set(paths)):
                lock = self.lock_for(path)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class PathLocks:
    """Thread-side counterpart of FileLocks for code running on executor threads."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, paths: Iterable[str]) -> Iterator[None]:
        with self._guard:
            locks = [self._locks.setdefault(path, threading.Lock()) for path in sorted(set(paths))]
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            yield
