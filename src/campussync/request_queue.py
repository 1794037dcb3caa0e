"""Serial request queue.

Requests are dispatched strictly one at a time in submission order.  Each
submitter awaits its own result; a failure settles only the request that
caused it and the queue moves on.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

_logger = logging.getLogger(__name__)

P = TypeVar("P")
R = TypeVar("R")


@dataclass
class QueuedRequest(Generic[P, R]):
    payload: P
    future: asyncio.Future[R]


class SerialRequestQueue(Generic[P, R]):
    """FIFO queue with at most one request in flight.

    *dispatch* is called with each payload in turn.  It typically wraps a
    :class:`~campussync.executor.ResilientExecutor` call.
    """

    def __init__(self, dispatch: Callable[[P], Awaitable[R]], *, name: str = "requests") -> None:
        self._dispatch = dispatch
        self._name = name
        self._pending: collections.deque[QueuedRequest[P, R]] = collections.deque()
        self._worker: asyncio.Task[None] | None = None
        self._in_flight: QueuedRequest[P, R] | None = None
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Requests waiting behind the one in flight."""
        return len(self._pending)

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    async def enqueue(self, payload: P) -> R:
        """Submit *payload* and wait for its own result."""
        if self._closed:
            raise RuntimeError(f"{self._name} queue is closed")
        future: asyncio.Future[R] = asyncio.get_running_loop().create_future()
        self._pending.append(QueuedRequest(payload, future))
        self._ensure_worker()
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name=f"campussync-{self._name}-queue")

    async def _drain(self) -> None:
        while self._pending:
            request = self._pending.popleft()
            if request.future.done():
                continue
            self._in_flight = request
            try:
                result = await self._dispatch(request.payload)
            except asyncio.CancelledError:
                if not request.future.done():
                    request.future.cancel()
                raise
            except Exception as exc:
                _logger.debug("%s request failed: %s", self._name, exc)
                if not request.future.done():
                    request.future.set_exception(exc)
            else:
                if not request.future.done():
                    request.future.set_result(result)
            finally:
                self._in_flight = None

    async def close(self) -> None:
        """Cancel the worker and every request still waiting."""
        self._closed = True
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        while self._pending:
            request = self._pending.popleft()
            if not request.future.done():
                request.future.cancel()
