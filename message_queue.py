"""Serialized task lane with an exclusive query lock.

Everything that reads or mutates conversational state (live chat turns,
proactive check-ins) runs while holding the same lock. Chat turns are
enqueued and run strictly FIFO; the scheduler takes the lock directly.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from collections.abc import Awaitable, Callable

log = logging.getLogger(__name__)

Task = Callable[[], Awaitable[None]]


class MessageQueue:
    def __init__(self):
        self._pending: collections.deque[Task] = collections.deque()
        self._waiters: collections.deque[asyncio.Future] = collections.deque()
        self._locked = False
        self._processing = False
        self._driver: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    def is_processing(self) -> bool:
        return self._processing

    def is_locked(self) -> bool:
        return self._locked

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ─── Lock ────────────────────────────────────────────────────

    async def acquire_lock(self) -> Callable[[], None]:
        """Wait for the exclusive lock; return a one-shot release function."""
        if self._locked or self._waiters:
            fut = asyncio.get_running_loop().create_future()
            self._waiters.append(fut)
            try:
                await fut
            except asyncio.CancelledError:
                if fut.done() and not fut.cancelled():
                    # Ownership was handed over before the cancel landed
                    self._release()
                else:
                    try:
                        self._waiters.remove(fut)
                    except ValueError:
                        pass
                raise
        else:
            self._locked = True

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release()

        return release

    def _release(self) -> None:
        # Hand the lock straight to the oldest live waiter
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._locked = False

    # ─── Lane ────────────────────────────────────────────────────

    def enqueue(self, task: Task) -> None:
        """Append work to the FIFO lane, starting the driver if idle."""
        self._pending.append(task)
        self._idle.clear()
        if not self._processing:
            self._processing = True
            self._driver = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            while self._pending:
                task = self._pending.popleft()
                release = await self.acquire_lock()
                try:
                    await task()
                except Exception:
                    log.exception("Error processing queued task")
                finally:
                    release()
        finally:
            self._processing = False
            self._driver = None
            if self._pending:
                # Driver was cancelled mid-lane (shutdown)
                log.warning("Queue driver stopped with %d task(s) pending", len(self._pending))
                self._pending.clear()
            self._idle.set()

    async def drain(self) -> None:
        """Wait until the lane is empty and nothing is processing."""
        if not self._processing and not self._pending:
            return
        await self._idle.wait()
