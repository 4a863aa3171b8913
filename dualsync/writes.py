"""
Dual writes: one key to both stores, and bulk fan-out of many keys.

FastStore is written first, DurableStore second. Each store's failure is
isolated; no rollback or compensation is attempted, so a failed store stays
stale until the next successful write or an external repair.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Sequence

from dualsync.backends import Backends
from dualsync.errors import SyncEngineError
from dualsync.types import (
    BulkOutcome,
    Category,
    SaveOutcome,
    StoreId,
    StoreResult,
)

logger = logging.getLogger(__name__)

WRITE_ORDER: Sequence[StoreId] = (StoreId.FAST, StoreId.DURABLE)

# Categories that only exist in one store.
SINGLE_STORE_CATEGORIES = {Category.TEST_RESULT: (StoreId.DURABLE,)}


class DualWriteCoordinator:
    """Writes a record to every store that holds its category."""

    def __init__(self, backends: Backends):
        self.backends = backends

    def _targets(self, category: Category, stores: Iterable[StoreId] | None) -> tuple:
        if stores is not None:
            return tuple(s for s in WRITE_ORDER if s in set(stores))
        return SINGLE_STORE_CATEGORIES.get(category, tuple(WRITE_ORDER))

    async def save(self, category: Category, key: str, payload: Any) -> SaveOutcome:
        """Write ``payload`` under ``key`` to both stores, FastStore first."""
        return await self._apply("save", category, key, payload, None)

    async def update(
        self,
        category: Category,
        key: str,
        partial: Mapping[str, Any],
        stores: Iterable[StoreId] = (StoreId.FAST,),
    ) -> SaveOutcome:
        """Shallow-merge ``partial`` into an existing record.

        By default only the FastStore is touched: high-frequency fields such
        as activity timestamps are not mirrored to the durable store. A store
        that does not hold the record reports ``RecordNotFound`` and is left
        untouched.
        """
        return await self._apply("update", category, key, dict(partial), stores)

    def reject(self, category: Category, key: str, error: SyncEngineError) -> SaveOutcome:
        """Outcome for a record refused before any store was contacted."""
        targets = self._targets(category, None)
        outcome = SaveOutcome(
            category=category,
            key=key,
            targets=frozenset(targets),
            errors={store: error for store in targets},
        )
        self.backends.observer.write_failed(category, key, targets)
        return outcome

    async def _apply(
        self,
        operation: str,
        category: Category,
        key: str,
        payload: Any,
        stores: Iterable[StoreId] | None,
    ) -> SaveOutcome:
        targets = self._targets(category, stores)
        outcome = SaveOutcome(category=category, key=key, targets=frozenset(targets))
        observer = self.backends.observer

        if not any(self.backends.ready(store) for store in targets):
            observer.skipped(operation, category, key, targets)
            outcome.skipped = True
            return outcome

        written = set()
        for store in targets:
            if not self.backends.ready(store):
                error = self.backends.gate.unavailable(store)
                outcome.errors[store] = error
                observer.store_failed(operation, store, category, key, error)
                continue
            adapter = self.backends.adapter(store)
            if operation == "update":
                result = await adapter.update(category, key, payload)
            else:
                result = await adapter.write(category, key, payload)
            if result.ok:
                written.add(store)
            else:
                outcome.errors[store] = result.error
                observer.store_failed(operation, store, category, key, result.error)

        outcome.written = frozenset(written)
        if not written:
            observer.write_failed(category, key, targets)
        return outcome


class BulkSyncCoordinator:
    """Fans a batch of writes out to both stores.

    The FastStore gets one native multi-key write; each key is written to the
    DurableStore concurrently. Nothing is retried here.
    """

    def __init__(self, backends: Backends):
        self.backends = backends

    async def save_many(self, category: Category, updates: Mapping[str, Any]) -> BulkOutcome:
        keys = list(updates)
        outcome = BulkOutcome(category=category, keys=keys)
        observer = self.backends.observer
        fast_ready = self.backends.ready(StoreId.FAST)
        durable_ready = self.backends.ready(StoreId.DURABLE)

        if not fast_ready and not durable_ready:
            observer.skipped("save_many", category, None, WRITE_ORDER)
            outcome.skipped = True
            return outcome

        async def fast_write() -> None:
            if not fast_ready:
                error = self.backends.gate.unavailable(StoreId.FAST)
            else:
                result = await self.backends.fast.write_many(category, updates)
                error = result.error
            if error is not None:
                observer.store_failed("save_many", StoreId.FAST, category, None, error)
            for key in keys:
                outcome.record(StoreId.FAST, key, error)

        async def durable_write(key: str) -> None:
            if not durable_ready:
                result = StoreResult.failure(self.backends.gate.unavailable(StoreId.DURABLE))
            else:
                result = await self.backends.durable.write(category, key, updates[key])
            if result.error is not None:
                observer.store_failed("save_many", StoreId.DURABLE, category, key, result.error)
            outcome.record(StoreId.DURABLE, key, result.error)

        # Neither branch waits on the other; one per-key failure never
        # affects its siblings.
        await asyncio.gather(fast_write(), *(durable_write(key) for key in keys))

        logger.info(
            f"Bulk save of {len(keys)} {category.value} records: "
            f"fast {outcome.succeeded(StoreId.FAST)} ok / {outcome.failed(StoreId.FAST)} failed, "
            f"durable {outcome.succeeded(StoreId.DURABLE)} ok / {outcome.failed(StoreId.DURABLE)} failed"
        )
        return outcome
