# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Bounded-concurrency queue for embedding calls.

At most ``concurrency`` calls run at once and each one races its own
timeout. A call that times out gives its slot back immediately. The
underlying task is cancelled, but cancellation is best effort: if the task
still finishes, its result (or exception) is consumed by a callback attached
to that task alone and dropped, so it can never reach another caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import EmbeddingQueueFullError, EmbeddingTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EmbeddingQueue:
    def __init__(
        self,
        concurrency: int = 2,
        default_timeout: Optional[float] = 30.0,
        max_queue_size: Optional[int] = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency
        self.default_timeout = default_timeout
        self.max_queue_size = max_queue_size
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()
        self.peak_active = 0
        self.timeouts = 0
        self.late_results_dropped = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def _acquire(self) -> None:
        if self._active < self.concurrency and not self._waiters:
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
            return
        if self.max_queue_size is not None and self.pending >= self.max_queue_size:
            raise EmbeddingQueueFullError(self.max_queue_size)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed to us just before cancellation; pass it on.
                self._release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot over directly; the active count stays the same.
                waiter.set_result(None)
                return
        self._active -= 1

    def _drop_late_result(self, label: Optional[str]) -> Callable[[asyncio.Future], None]:
        def _callback(task: asyncio.Future) -> None:
            if task.cancelled():
                return
            self.late_results_dropped += 1
            exc = task.exception()
            if exc is not None:
                logger.debug("Timed-out embedding call %s failed late: %r", label, exc)
            else:
                logger.debug("Discarding late result of timed-out embedding call %s", label)

        return _callback

    async def run(
        self,
        factory: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
        label: Optional[str] = None,
    ) -> T:
        """Run ``factory()`` inside a slot; raises EmbeddingTimeoutError past ``timeout``."""
        effective = self.default_timeout if timeout is None else timeout
        await self._acquire()
        try:
            task = asyncio.ensure_future(factory())
            try:
                done, _ = await asyncio.wait({task}, timeout=effective)
            except asyncio.CancelledError:
                task.cancel()
                raise
            if task in done:
                return task.result()
            task.cancel()
            task.add_done_callback(self._drop_late_result(label))
            self.timeouts += 1
            logger.warning("Embedding call %s timed out after %.3fs", label or "", effective)
            raise EmbeddingTimeoutError(effective, label)
        finally:
            self._release()

    def stats(self) -> dict:
        return {
            "concurrency": self.concurrency,
            "active": self._active,
            "pending": self.pending,
            "peak_active": self.peak_active,
            "timeouts": self.timeouts,
            "late_results_dropped": self.late_results_dropped,
        }
