"""
Uniform StoreAdapter contract over the raw FastStore and DurableStore
clients.

Adapters speak in categories and keys, map them onto each store's layout,
and are the boundary where client exceptions become ``StoreResult`` values.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Mapping, Optional

from dualsync.durable_store import DurableStoreClient
from dualsync.errors import (
    RecordNotFound,
    StoreReadError,
    StoreWriteError,
    SyncEngineError,
)
from dualsync.fast_store import FastStoreClient
from dualsync.layout import (
    durable_collection,
    durable_doc_id,
    fast_path,
    split_scoped_key,
)
from dualsync.subscriptions import SubscriptionHandle
from dualsync.types import (
    SETTINGS_KEY,
    Category,
    JsonValue,
    QueryFilter,
    StoreId,
    StoreResult,
    ensure_json_value,
    to_json_value,
)

logger = logging.getLogger(__name__)

OnValue = Callable[[Optional[JsonValue]], None]
OnList = Callable[[List[JsonValue]], None]


class StoreAdapter:
    """Shared plumbing for both adapters."""

    store_id: StoreId

    def _write_error(self, what: str, e: Exception) -> StoreResult:
        if isinstance(e, SyncEngineError):
            return StoreResult.failure(e)
        return StoreResult.failure(
            StoreWriteError(f"{what}: {e}", store=self.store_id.value, cause=e)
        )

    def _read_error(self, what: str, e: Exception) -> StoreResult:
        if isinstance(e, SyncEngineError):
            return StoreResult.failure(e)
        return StoreResult.failure(
            StoreReadError(f"{what}: {e}", store=self.store_id.value, cause=e)
        )

    def _missing(self, category: Category, key: str) -> StoreResult:
        # Partial updates never create records.
        return StoreResult.failure(
            RecordNotFound(
                f"update {category.value}/{key}: no such record",
                store=self.store_id.value,
            )
        )

    def _json(self, value: Any, where: str) -> JsonValue:
        return ensure_json_value(value, store=self.store_id.value, where=where)

    def _guarded(self, callback: Callable[[Any], None], where: str) -> Callable[[Any], None]:
        """Keep subscriber exceptions out of the store client."""

        def deliver(value: Any) -> None:
            try:
                value = self._json(value, where)
            except StoreReadError as e:
                logger.warning(f"Dropped malformed snapshot from {where}: {e}")
                return
            try:
                callback(value)
            except Exception:
                logger.exception(f"Subscriber for {where} raised")

        return deliver

    def _subscribe(self, where: str, attach: Callable[[], Callable[[], None]]) -> SubscriptionHandle:
        try:
            unsubscribe = attach()
        except Exception as e:
            logger.warning(f"Could not subscribe to {self.store_id.value}:{where}: {e}")
            return SubscriptionHandle.inert()
        return SubscriptionHandle(unsubscribe)


class FastStoreAdapter(StoreAdapter):
    """Category-level access to the key-value store."""

    store_id = StoreId.FAST

    def __init__(self, client: FastStoreClient):
        self.client = client

    async def write(self, category: Category, key: str, payload: Any) -> StoreResult:
        try:
            path = fast_path(category, key)
            await self.client.write(path, to_json_value(payload))
        except Exception as e:
            return self._write_error(f"write {category.value}/{key}", e)
        return StoreResult()

    async def read(self, category: Category, key: str) -> StoreResult:
        try:
            path = fast_path(category, key)
            return StoreResult(self._json(await self.client.read_once(path), path))
        except Exception as e:
            return self._read_error(f"read {category.value}/{key}", e)

    async def update(
        self, category: Category, key: str, partial: Mapping[str, Any]
    ) -> StoreResult:
        try:
            path = fast_path(category, key)
            if await self.client.read_once(path) is None:
                return self._missing(category, key)
            await self.client.update_fields(path, to_json_value(dict(partial)))
        except Exception as e:
            return self._write_error(f"update {category.value}/{key}", e)
        return StoreResult()

    async def write_many(
        self, category: Category, updates: Mapping[str, Any]
    ) -> StoreResult:
        try:
            paths = {
                fast_path(category, key): to_json_value(value)
                for key, value in updates.items()
            }
            await self.client.bulk_write(paths)
        except Exception as e:
            return self._write_error(f"bulk write {category.value}", e)
        return StoreResult()

    async def read_all(self, category: Category) -> StoreResult:
        """Return every record of a category as ``{key: payload}``."""
        try:
            path = fast_path(category)
            value = self._json(await self.client.read_once(path), path)
        except Exception as e:
            return self._read_error(f"read {category.value}", e)
        if category == Category.SETTINGS:
            return StoreResult({} if value is None else {SETTINGS_KEY: value})
        return StoreResult(value if isinstance(value, dict) else {})

    async def query(self, category: Category, where: QueryFilter) -> StoreResult:
        return StoreResult.failure(
            StoreReadError(
                "the fast store does not support predicate queries",
                store=self.store_id.value,
            )
        )

    def subscribe_list(
        self,
        category: Category,
        on_change: OnList,
        *,
        once: bool = False,
        scope: Optional[str] = None,
    ) -> SubscriptionHandle:
        """Deliver the namespace as a key-ordered list on every change.

        With ``once=True`` exactly one snapshot is delivered and the listener
        detaches itself.
        """
        path = fast_path(category)

        def as_list(value: Any) -> None:
            if isinstance(value, dict):
                on_change([value[k] for k in sorted(value)])
            elif value is None:
                on_change([])
            else:
                on_change([value])

        deliver = self._guarded(as_list, path)
        return self._subscribe(
            path, lambda: self.client.subscribe_value(path, deliver, once=once)
        )

    def subscribe_doc(
        self, category: Category, key: str, on_change: OnValue
    ) -> SubscriptionHandle:
        path = fast_path(category, key)
        deliver = self._guarded(on_change, path)
        return self._subscribe(path, lambda: self.client.subscribe_value(path, deliver))


class DurableStoreAdapter(StoreAdapter):
    """Category-level access to the document store.

    Scoped categories (test results) take keys of the form
    ``<user_id>/<result_id>``.
    """

    store_id = StoreId.DURABLE

    def __init__(self, client: DurableStoreClient):
        self.client = client

    def _locate(self, category: Category, key: str) -> tuple[str, str]:
        scope, doc_key = split_scoped_key(category, key)
        return durable_collection(category, scope), durable_doc_id(category, doc_key)

    async def write(self, category: Category, key: str, payload: Any) -> StoreResult:
        try:
            collection, doc_id = self._locate(category, key)
            await self.client.write_doc(collection, doc_id, to_json_value(payload))
        except Exception as e:
            return self._write_error(f"write {category.value}/{key}", e)
        return StoreResult()

    async def read(self, category: Category, key: str) -> StoreResult:
        try:
            collection, doc_id = self._locate(category, key)
            value = await self.client.read_doc(collection, doc_id)
            return StoreResult(self._json(value, f"{collection}/{doc_id}"))
        except Exception as e:
            return self._read_error(f"read {category.value}/{key}", e)

    async def update(
        self, category: Category, key: str, partial: Mapping[str, Any]
    ) -> StoreResult:
        try:
            collection, doc_id = self._locate(category, key)
            if await self.client.read_doc(collection, doc_id) is None:
                return self._missing(category, key)
            await self.client.merge_doc(collection, doc_id, to_json_value(dict(partial)))
        except Exception as e:
            return self._write_error(f"update {category.value}/{key}", e)
        return StoreResult()

    async def write_many(
        self, category: Category, updates: Mapping[str, Any]
    ) -> StoreResult:
        return StoreResult.failure(
            StoreWriteError(
                "the durable store has no multi-key write; write keys individually",
                store=self.store_id.value,
            )
        )

    async def read_all(self, category: Category, scope: Optional[str] = None) -> StoreResult:
        try:
            collection = durable_collection(category, scope)
            docs = await self.client.list_docs(collection)
            if category == Category.SETTINGS:
                docs = {k: v for k, v in docs.items() if k == SETTINGS_KEY}
            return StoreResult(self._json(docs, collection))
        except Exception as e:
            return self._read_error(f"list {category.value}", e)

    async def query(
        self, category: Category, where: QueryFilter, scope: Optional[str] = None
    ) -> StoreResult:
        try:
            collection = durable_collection(category, scope)
            docs = await self.client.query_where(collection, where.field, where.op, where.value)
            return StoreResult(self._json(list(docs), collection))
        except Exception as e:
            return self._read_error(f"query {category.value} where {where.field}", e)

    def subscribe_list(
        self,
        category: Category,
        on_change: OnList,
        *,
        once: bool = False,
        scope: Optional[str] = None,
    ) -> SubscriptionHandle:
        if once:
            raise ValueError("subscribe-once is only supported by the fast store")
        collection = durable_collection(category, scope)
        deliver = self._guarded(on_change, collection)
        return self._subscribe(
            collection, lambda: self.client.subscribe_collection(collection, deliver)
        )

    def subscribe_doc(
        self, category: Category, key: str, on_change: OnValue
    ) -> SubscriptionHandle:
        collection, doc_id = self._locate(category, key)
        deliver = self._guarded(on_change, f"{collection}/{doc_id}")
        return self._subscribe(
            f"{collection}/{doc_id}",
            lambda: self.client.subscribe_doc(collection, doc_id, deliver),
        )
