"""
Document DurableStore clients: Cloud Firestore, any SQL database through
SQLAlchemy, and an in-memory implementation for development and tests.

Documents are JSON objects addressed by ``(collection, doc_id)``; collection
names may be nested paths such as ``users/u1/test_results``.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import itertools
import logging
import operator
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from google.cloud.firestore_v1.base_query import FieldFilter
from sqlalchemy import JSON, Column, Float, String, create_engine, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from dualsync.subscriptions import loop_dispatcher

logger = logging.getLogger(__name__)

DocCallback = Callable[[Optional[dict]], None]
ListCallback = Callable[[List[dict]], None]
Unsubscribe = Callable[[], None]


class DurableStoreClient(Protocol):
    """Raw operations the engine needs from the document store."""

    async def write_doc(self, collection: str, doc_id: str, value: dict) -> None:
        ...

    async def merge_doc(
        self, collection: str, doc_id: str, partial: Mapping[str, Any]
    ) -> None:
        ...

    async def read_doc(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    async def list_docs(self, collection: str) -> Dict[str, dict]:
        ...

    async def query_where(
        self, collection: str, field: str, op: str, value: Any
    ) -> List[dict]:
        ...

    def subscribe_doc(
        self, collection: str, doc_id: str, callback: DocCallback
    ) -> Unsubscribe:
        ...

    def subscribe_collection(self, collection: str, callback: ListCallback) -> Unsubscribe:
        ...

    async def close(self) -> None:
        ...


def _require_mapping(value: Any) -> dict:
    if not isinstance(value, Mapping):
        raise TypeError(f"documents must be JSON objects, got {type(value).__name__}")
    return dict(value)


def _field_value(doc: dict, field: str) -> tuple[bool, Any]:
    node: Any = doc
    for part in field.split("."):
        if not isinstance(node, dict) or part not in node:
            return False, None
        node = node[part]
    return True, node


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda actual, expected: actual in expected,
    "not-in": lambda actual, expected: actual not in expected,
    "array-contains": lambda actual, expected: isinstance(actual, list)
    and expected in actual,
}


def matches(doc: dict, field: str, op: str, value: Any) -> bool:
    """Evaluate a Firestore-style single field filter in Python.

    Documents without the field never match, as in Firestore.
    """
    present, actual = _field_value(doc, field)
    if not present:
        return False
    try:
        return bool(_OPERATORS[op](actual, value))
    except TypeError:
        return False


class LocalChangeFeed:
    """In-process listeners for stores without a native change stream.

    Only writes made through the owning client are observed.
    """

    def __init__(
        self,
        read_doc: Callable[[str, str], Awaitable[Optional[dict]]],
        list_docs: Callable[[str], Awaitable[Dict[str, dict]]],
    ):
        self._read_doc = read_doc
        self._list_docs = list_docs
        self._doc_listeners: Dict[int, tuple[str, str, DocCallback]] = {}
        self._collection_listeners: Dict[int, tuple[str, ListCallback]] = {}
        self._ids = itertools.count()
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._doc_listeners) + len(self._collection_listeners)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def watch_doc(self, collection: str, doc_id: str, callback: DocCallback) -> Unsubscribe:
        listener_id = next(self._ids)
        self._doc_listeners[listener_id] = (collection, doc_id, callback)
        task = self._spawn(self._deliver_doc(listener_id))

        def unsubscribe() -> None:
            self._doc_listeners.pop(listener_id, None)
            task.cancel()

        return unsubscribe

    def watch_collection(self, collection: str, callback: ListCallback) -> Unsubscribe:
        listener_id = next(self._ids)
        self._collection_listeners[listener_id] = (collection, callback)
        task = self._spawn(self._deliver_collection(listener_id))

        def unsubscribe() -> None:
            self._collection_listeners.pop(listener_id, None)
            task.cancel()

        return unsubscribe

    async def _deliver_doc(self, listener_id: int) -> None:
        entry = self._doc_listeners.get(listener_id)
        if entry is None:
            return
        collection, doc_id, _ = entry
        try:
            value = await self._read_doc(collection, doc_id)
        except Exception as e:
            logger.warning(f"Change feed read of {collection}/{doc_id} failed: {e}")
            return
        entry = self._doc_listeners.get(listener_id)
        if entry is not None:
            entry[2](value)

    async def _deliver_collection(self, listener_id: int) -> None:
        entry = self._collection_listeners.get(listener_id)
        if entry is None:
            return
        collection, _ = entry
        try:
            docs = await self._list_docs(collection)
        except Exception as e:
            logger.warning(f"Change feed listing of {collection} failed: {e}")
            return
        entry = self._collection_listeners.get(listener_id)
        if entry is not None:
            entry[1]([docs[k] for k in sorted(docs)])

    async def publish(self, collection: str, doc_id: str) -> None:
        for listener_id, (c, d, _) in list(self._doc_listeners.items()):
            if c == collection and d == doc_id:
                await self._deliver_doc(listener_id)
        for listener_id, (c, _) in list(self._collection_listeners.items()):
            if c == collection:
                await self._deliver_collection(listener_id)

    def clear(self) -> None:
        self._doc_listeners.clear()
        self._collection_listeners.clear()
        for task in list(self._tasks):
            task.cancel()


class InMemoryDurableStoreClient:
    """Dictionary-backed document store.

    Paths in ``failing_paths`` (``collection`` or ``collection/doc_id``)
    raise ``ConnectionError`` to simulate an outage.
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}
        self.failing_paths: set[str] = set()
        self.feed = LocalChangeFeed(self._peek_doc, self._peek_collection)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.collections.clear()
        self.failing_paths.clear()
        self.feed.clear()

    def _check(self, collection: str, doc_id: Optional[str] = None) -> None:
        path = collection if doc_id is None else f"{collection}/{doc_id}"
        for failing in self.failing_paths:
            if path == failing or path.startswith(failing + "/"):
                raise ConnectionError(f"durable store unavailable for {path}")

    async def _peek_doc(self, collection: str, doc_id: str) -> Optional[dict]:
        return copy.deepcopy(self.collections.get(collection, {}).get(doc_id))

    async def _peek_collection(self, collection: str) -> Dict[str, dict]:
        return copy.deepcopy(self.collections.get(collection, {}))

    async def write_doc(self, collection: str, doc_id: str, value: dict) -> None:
        self._check(collection, doc_id)
        doc = copy.deepcopy(_require_mapping(value))
        self.collections.setdefault(collection, {})[doc_id] = doc
        await self.feed.publish(collection, doc_id)

    async def merge_doc(
        self, collection: str, doc_id: str, partial: Mapping[str, Any]
    ) -> None:
        self._check(collection, doc_id)
        docs = self.collections.setdefault(collection, {})
        merged = dict(docs.get(doc_id) or {})
        merged.update(copy.deepcopy(dict(partial)))
        docs[doc_id] = merged
        await self.feed.publish(collection, doc_id)

    async def read_doc(self, collection: str, doc_id: str) -> Optional[dict]:
        self._check(collection, doc_id)
        return await self._peek_doc(collection, doc_id)

    async def list_docs(self, collection: str) -> Dict[str, dict]:
        self._check(collection)
        return await self._peek_collection(collection)

    async def query_where(
        self, collection: str, field: str, op: str, value: Any
    ) -> List[dict]:
        self._check(collection)
        docs = await self._peek_collection(collection)
        return [docs[k] for k in sorted(docs) if matches(docs[k], field, op, value)]

    def subscribe_doc(
        self, collection: str, doc_id: str, callback: DocCallback
    ) -> Unsubscribe:
        self._check(collection, doc_id)
        return self.feed.watch_doc(collection, doc_id, callback)

    def subscribe_collection(self, collection: str, callback: ListCallback) -> Unsubscribe:
        self._check(collection)
        return self.feed.watch_collection(collection, callback)

    async def close(self) -> None:
        self.feed.clear()


class FirestoreDocumentClient:
    """Cloud Firestore client (``google.cloud.firestore.Client``).

    Blocking calls run in worker threads; snapshot listeners deliver on the
    event loop that subscribed.
    """

    def __init__(self, client):
        self.client = client

    def _doc(self, collection: str, doc_id: str):
        return self.client.collection(collection).document(doc_id)

    async def write_doc(self, collection: str, doc_id: str, value: dict) -> None:
        await asyncio.to_thread(self._doc(collection, doc_id).set, _require_mapping(value))

    async def merge_doc(
        self, collection: str, doc_id: str, partial: Mapping[str, Any]
    ) -> None:
        await asyncio.to_thread(
            self._doc(collection, doc_id).set, dict(partial), merge=True
        )

    async def read_doc(self, collection: str, doc_id: str) -> Optional[dict]:
        snapshot = await asyncio.to_thread(self._doc(collection, doc_id).get)
        return snapshot.to_dict() if snapshot.exists else None

    async def list_docs(self, collection: str) -> Dict[str, dict]:
        snapshots = await asyncio.to_thread(
            lambda: list(self.client.collection(collection).stream())
        )
        return {snapshot.id: snapshot.to_dict() for snapshot in snapshots}

    async def query_where(
        self, collection: str, field: str, op: str, value: Any
    ) -> List[dict]:
        query = self.client.collection(collection).where(
            filter=FieldFilter(field, op, value)
        )
        snapshots = await asyncio.to_thread(lambda: list(query.stream()))
        return [snapshot.to_dict() for snapshot in snapshots]

    def subscribe_doc(
        self, collection: str, doc_id: str, callback: DocCallback
    ) -> Unsubscribe:
        dispatch = loop_dispatcher(callback)

        def on_snapshot(snapshots, changes, read_time) -> None:
            snapshot = snapshots[0] if snapshots else None
            if snapshot is not None and snapshot.exists:
                dispatch(snapshot.to_dict())
            else:
                dispatch(None)

        watch = self._doc(collection, doc_id).on_snapshot(on_snapshot)
        return watch.unsubscribe

    def subscribe_collection(self, collection: str, callback: ListCallback) -> Unsubscribe:
        dispatch = loop_dispatcher(callback)

        def on_snapshot(snapshots, changes, read_time) -> None:
            dispatch([snapshot.to_dict() for snapshot in snapshots])

        watch = self.client.collection(collection).on_snapshot(on_snapshot)
        return watch.unsubscribe

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)


Base = declarative_base()


class DocumentRow(Base):
    __tablename__ = "documents"

    collection = Column(String, primary_key=True)
    doc_id = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    updated_at = Column(Float, nullable=False)


class SqlDocumentClient:
    """
    SQLAlchemy-backed document store. Accepts any SQLAlchemy URL (Postgres in
    production, SQLite for tests). Filters are evaluated in Python so every
    dialect behaves the same way.
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("database_url is required for SqlDocumentClient")
        engine_kwargs: Dict[str, Any] = {"future": True, "pool_pre_ping": True}
        # Serializes worker threads when they share one connection.
        self._lock: Any = contextlib.nullcontext()
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            # Worker threads must share the single in-memory database.
            engine_kwargs.update(
                poolclass=StaticPool, connect_args={"check_same_thread": False}
            )
            self._lock = threading.Lock()
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)
        self.feed = LocalChangeFeed(self.read_doc, self.list_docs)

    def _upsert(self, collection: str, doc_id: str, value: dict, merge: bool) -> None:
        with self._lock, self.Session() as session:
            row = session.get(DocumentRow, (collection, doc_id))
            if row:
                data = {**row.data, **value} if merge else value
                row.data = data
                row.updated_at = time.time()
            else:
                session.add(
                    DocumentRow(
                        collection=collection,
                        doc_id=doc_id,
                        data=value,
                        updated_at=time.time(),
                    )
                )
            session.commit()

    def _get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock, self.Session() as session:
            row = session.get(DocumentRow, (collection, doc_id))
            return row.data if row else None

    def _list(self, collection: str) -> Dict[str, dict]:
        with self._lock, self.Session() as session:
            stmt = (
                select(DocumentRow)
                .where(DocumentRow.collection == collection)
                .order_by(DocumentRow.doc_id.asc())
            )
            return {row.doc_id: row.data for row in session.execute(stmt).scalars()}

    async def write_doc(self, collection: str, doc_id: str, value: dict) -> None:
        await asyncio.to_thread(
            self._upsert, collection, doc_id, _require_mapping(value), False
        )
        await self.feed.publish(collection, doc_id)

    async def merge_doc(
        self, collection: str, doc_id: str, partial: Mapping[str, Any]
    ) -> None:
        await asyncio.to_thread(self._upsert, collection, doc_id, dict(partial), True)
        await self.feed.publish(collection, doc_id)

    async def read_doc(self, collection: str, doc_id: str) -> Optional[dict]:
        return await asyncio.to_thread(self._get, collection, doc_id)

    async def list_docs(self, collection: str) -> Dict[str, dict]:
        return await asyncio.to_thread(self._list, collection)

    async def query_where(
        self, collection: str, field: str, op: str, value: Any
    ) -> List[dict]:
        docs = await self.list_docs(collection)
        return [doc for doc in docs.values() if matches(doc, field, op, value)]

    def subscribe_doc(
        self, collection: str, doc_id: str, callback: DocCallback
    ) -> Unsubscribe:
        return self.feed.watch_doc(collection, doc_id, callback)

    def subscribe_collection(self, collection: str, callback: ListCallback) -> Unsubscribe:
        return self.feed.watch_collection(collection, callback)

    async def close(self) -> None:
        self.feed.clear()
        await asyncio.to_thread(self.engine.dispose)
