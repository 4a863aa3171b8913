"""
Live subscriptions that stay useful when one store is empty or unavailable.

Collection subscriptions follow the durable store and, when its first
snapshot is empty (not yet backfilled), read the fast store once. Document
subscriptions follow the fast store and consult the durable store whenever
the fast store reports the record absent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from dualsync.backends import Backends
from dualsync.errors import SubscriptionError
from dualsync.layout import FAST_NAMESPACES
from dualsync.subscriptions import SubscriptionHandle, SubscriptionStream
from dualsync.types import SETTINGS_KEY, Category, StoreId

logger = logging.getLogger(__name__)

OnChange = Callable[[Any], None]


class SubscriptionMultiplexer:
    def __init__(self, backends: Backends):
        self.backends = backends

    def subscribe(
        self, category: Category, on_change: OnChange, key: Optional[str] = None
    ) -> SubscriptionHandle:
        """Subscribe to a whole category (``key=None``) or one record.

        Settings are a single record, so they always subscribe at document
        level. Returns an inert handle if the required store is not ready or
        the category has no live namespace (test results).
        """
        if category not in FAST_NAMESPACES:
            self.backends.observer.skipped("subscribe", category, key, ())
            return SubscriptionHandle.inert()
        if category == Category.SETTINGS:
            return self._subscribe_document(category, key or SETTINGS_KEY, on_change)
        if key is None:
            return self._subscribe_collection(category, on_change)
        return self._subscribe_document(category, key, on_change)

    def stream(self, category: Category, key: Optional[str] = None) -> SubscriptionStream:
        """Same as ``subscribe`` but as an async iterator of deliveries."""
        stream = SubscriptionStream()
        stream.attach(self.subscribe(category, stream.push, key=key))
        return stream

    def _deliverer(
        self,
        category: Category,
        key: Optional[str],
        on_change: OnChange,
        handle: SubscriptionHandle,
    ) -> OnChange:
        def deliver(value: Any) -> None:
            if not handle.active:
                return
            try:
                on_change(value)
            except Exception as e:
                self.backends.observer.callback_failed(
                    category, key, SubscriptionError(str(e), cause=e)
                )

        return deliver

    def _subscribe_collection(self, category: Category, on_change: OnChange) -> SubscriptionHandle:
        observer = self.backends.observer
        if not self.backends.ready(StoreId.DURABLE):
            observer.skipped("subscribe", category, None, (StoreId.DURABLE,))
            return SubscriptionHandle.inert()

        handle = SubscriptionHandle()
        deliver = self._deliverer(category, None, on_change, handle)
        state = {"first": True}

        def on_snapshot(items: list) -> None:
            if not handle.active:
                return
            first, state["first"] = state["first"], False
            if items or not first:
                deliver(items)
                return
            # Only an initially empty snapshot triggers the one-shot fallback.
            if not self.backends.ready(StoreId.FAST):
                deliver(items)
                return
            observer.fell_back("subscribe", category, None, StoreId.FAST)
            once = self.backends.fast.subscribe_list(category, deliver, once=True)
            if once.active:
                handle.adopt(once)
            else:
                deliver(items)

        inner = self.backends.durable.subscribe_list(category, on_snapshot)
        if not inner.active:
            observer.skipped("subscribe", category, None, (StoreId.DURABLE,))
            return inner
        handle.adopt(inner)
        return handle

    def _subscribe_document(
        self, category: Category, key: str, on_change: OnChange
    ) -> SubscriptionHandle:
        observer = self.backends.observer
        if not self.backends.ready(StoreId.FAST):
            observer.skipped("subscribe", category, key, (StoreId.FAST,))
            return SubscriptionHandle.inert()

        handle = SubscriptionHandle()
        deliver = self._deliverer(category, key, on_change, handle)
        state = {"generation": 0}

        async def read_durable(generation: int) -> None:
            result = await self.backends.durable.read(category, key)
            if not result.ok:
                observer.store_failed("subscribe", StoreId.DURABLE, category, key, result.error)
                return
            # Drop the fallback if the fast store has spoken since.
            if result.value is None or generation != state["generation"]:
                return
            observer.fell_back("subscribe", category, key, StoreId.DURABLE)
            deliver(result.value)

        def on_value(value: Any) -> None:
            if not handle.active:
                return
            state["generation"] += 1
            if value is not None:
                deliver(value)
                return
            if not self.backends.ready(StoreId.DURABLE):
                return
            task = asyncio.get_running_loop().create_task(
                read_durable(state["generation"])
            )
            handle.track(task)

        inner = self.backends.fast.subscribe_doc(category, key, on_value)
        if not inner.active:
            observer.skipped("subscribe", category, key, (StoreId.FAST,))
            return inner
        handle.adopt(inner)
        return handle
