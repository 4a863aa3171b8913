"""
Cancellable subscription handles and the async stream view over them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

_CLOSED = object()


class SubscriptionHandle:
    """Owns everything a live subscription holds on to.

    ``cancel()`` detaches the underlying store listeners, closes child
    handles and cancels pending fallback reads. Calling it again is a no-op.
    """

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._callbacks: List[Callable[[], None]] = []
        if on_cancel is not None:
            self._callbacks.append(on_cancel)
        self._children: List["SubscriptionHandle"] = []
        self._tasks: set[asyncio.Task] = set()
        self._cancelled = False

    @classmethod
    def inert(cls) -> "SubscriptionHandle":
        """A handle for a subscription that was never established."""
        handle = cls()
        handle._cancelled = True
        return handle

    @property
    def active(self) -> bool:
        return not self._cancelled

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def adopt(self, child: "SubscriptionHandle") -> None:
        if self._cancelled:
            child.cancel()
        else:
            self._children.append(child)

    def track(self, task: asyncio.Task) -> None:
        if self._cancelled:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for child in self._children:
            child.cancel()
        self._children.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        for callback in self._callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Error detaching store listener")
        self._callbacks.clear()

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()


def loop_dispatcher(callback: Callable[[Any], None]) -> Callable[[Any], None]:
    """Wrap ``callback`` so SDK listener threads run it on the current loop.

    Must be called from inside the event loop that should receive events.
    """
    loop = asyncio.get_running_loop()

    def dispatch(value: Any) -> None:
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, value)

    return dispatch


class SubscriptionStream:
    """Async-iterator view of a subscription.

    Yields every delivered value until cancelled. Use ``async with`` to
    cancel on exit.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.handle: SubscriptionHandle = SubscriptionHandle.inert()

    def attach(self, handle: SubscriptionHandle) -> None:
        self.handle = handle
        handle.on_cancel(lambda: self._queue.put_nowait(_CLOSED))

    def push(self, value: Any) -> None:
        self._queue.put_nowait(value)

    def cancel(self) -> None:
        self.handle.cancel()

    def __aiter__(self) -> "SubscriptionStream":
        return self

    async def __anext__(self) -> Any:
        if not self.handle.active and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "SubscriptionStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.cancel()
