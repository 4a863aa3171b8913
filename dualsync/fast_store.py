"""
Key-value FastStore clients: Firebase Realtime Database, Redis and an
in-memory implementation for development and tests.

Paths are slash separated (``users/u1``). Clients raise on failure; the
adapter layer turns those exceptions into results.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import redis.asyncio as redis
from firebase_admin import db as rtdb
from redis import exceptions as redis_exceptions

from dualsync.subscriptions import loop_dispatcher

logger = logging.getLogger(__name__)

ValueCallback = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class FastStoreClient(Protocol):
    """Raw operations the engine needs from the key-value store."""

    async def write(self, path: str, value: Any) -> None:
        ...

    async def read_once(self, path: str) -> Any:
        ...

    async def update_fields(self, path: str, partial: Mapping[str, Any]) -> None:
        ...

    async def bulk_write(self, updates: Mapping[str, Any]) -> None:
        ...

    def subscribe_value(
        self, path: str, callback: ValueCallback, *, once: bool = False
    ) -> Unsubscribe:
        ...

    async def close(self) -> None:
        ...


def _segments(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def _related(watched: str, changed: str) -> bool:
    """True if a change at ``changed`` can alter the value at ``watched``."""
    a, b = _segments(watched), _segments(changed)
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class InMemoryFastStoreClient:
    """Tree-shaped in-memory store with Realtime Database semantics.

    Writing ``None`` removes a node and empty parents disappear. Paths listed
    in ``failing_paths`` (and everything below them) raise ``ConnectionError``
    to simulate an outage.
    """

    def __init__(self):
        self.tree: Dict[str, Any] = {}
        self.failing_paths: set[str] = set()
        self._listeners: Dict[int, tuple[str, ValueCallback]] = {}
        self._ids = itertools.count()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.tree.clear()
        self.failing_paths.clear()
        self._listeners.clear()

    def _check(self, path: str) -> None:
        for failing in self.failing_paths:
            if _segments(path)[: len(_segments(failing))] == _segments(failing):
                raise ConnectionError(f"fast store unavailable for {path}")

    def _get(self, path: str) -> Any:
        node: Any = self.tree
        for part in _segments(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def _set(self, path: str, value: Any) -> None:
        parts = _segments(path)
        if not parts:
            self.tree = value if isinstance(value, dict) else {}
            return
        trail = [self.tree]
        node = self.tree
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = node[part] = {}
            node = child
            trail.append(node)
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = copy.deepcopy(value)
        # Prune parents left empty by a removal.
        for depth in range(len(parts) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(parts[depth - 1], None)

    def _notify(self, changed: str) -> None:
        for path, callback in list(self._listeners.values()):
            if _related(path, changed):
                callback(self._get(path))

    async def write(self, path: str, value: Any) -> None:
        self._check(path)
        self._set(path, value)
        self._notify(path)

    async def read_once(self, path: str) -> Any:
        self._check(path)
        return self._get(path)

    async def update_fields(self, path: str, partial: Mapping[str, Any]) -> None:
        self._check(path)
        for field, value in partial.items():
            self._set(f"{path}/{field}", value)
        self._notify(path)

    async def bulk_write(self, updates: Mapping[str, Any]) -> None:
        # Multi-path updates are atomic: validate every path first.
        for path in updates:
            self._check(path)
        for path, value in updates.items():
            self._set(path, value)
        for path in updates:
            self._notify(path)

    def subscribe_value(
        self, path: str, callback: ValueCallback, *, once: bool = False
    ) -> Unsubscribe:
        self._check(path)
        loop = asyncio.get_running_loop()
        if once:
            state = {"active": True}

            def deliver_once() -> None:
                if state["active"]:
                    state["active"] = False
                    callback(self._get(path))

            loop.call_soon(deliver_once)
            return lambda: state.update(active=False)

        listener_id = next(self._ids)
        self._listeners[listener_id] = (path, callback)

        def deliver_initial() -> None:
            if listener_id in self._listeners:
                callback(self._get(path))

        loop.call_soon(deliver_initial)
        return lambda: self._listeners.pop(listener_id, None)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def close(self) -> None:
        self._listeners.clear()


class FirebaseRealtimeClient:
    """Firebase Realtime Database client.

    The Admin SDK is blocking, so calls run in worker threads and listener
    events are handed back to the event loop that subscribed.
    """

    def __init__(self, app=None):
        self.app = app

    def _ref(self, path: str):
        return rtdb.reference("/" + path.strip("/"), app=self.app)

    async def write(self, path: str, value: Any) -> None:
        await asyncio.to_thread(self._ref(path).set, value)

    async def read_once(self, path: str) -> Any:
        return await asyncio.to_thread(self._ref(path).get)

    async def update_fields(self, path: str, partial: Mapping[str, Any]) -> None:
        if not partial:
            return
        await asyncio.to_thread(self._ref(path).update, dict(partial))

    async def bulk_write(self, updates: Mapping[str, Any]) -> None:
        if not updates:
            return
        # A root-level update with slash keys is a single atomic multi-path write.
        await asyncio.to_thread(self._ref("").update, dict(updates))

    def subscribe_value(
        self, path: str, callback: ValueCallback, *, once: bool = False
    ) -> Unsubscribe:
        ref = self._ref(path)
        loop = asyncio.get_running_loop()
        if once:

            async def read_and_deliver() -> None:
                try:
                    value = await asyncio.to_thread(ref.get)
                except Exception as e:
                    # A one-shot read always delivers; failure reads as absence.
                    logger.warning(f"One-shot read of {path} failed: {e}")
                    value = None
                callback(value)

            task = loop.create_task(read_and_deliver())
            return task.cancel

        dispatch = loop_dispatcher(callback)

        def on_event(event) -> None:
            # The first event carries the whole subtree; later ones are deltas.
            if event.event_type == "put" and event.path == "/":
                dispatch(event.data)
            else:
                dispatch(ref.get())

        registration = ref.listen(on_event)
        return registration.close

    async def close(self) -> None:
        return None


class RedisFastStoreClient:
    """Redis-backed FastStore.

    ``namespace/key`` paths map to hash fields under ``{prefix}{namespace}``;
    single-segment paths are plain string keys. Every write publishes the
    changed path on ``{prefix}changes:{namespace}`` so subscribers can
    re-read.
    """

    def __init__(self, url: str, key_prefix: str = "dualsync:"):
        self.url = url
        self.key_prefix = key_prefix
        self.client = redis.Redis.from_url(url, decode_responses=True)

    def _split(self, path: str) -> tuple[str, Optional[str]]:
        parts = _segments(path)
        if not parts or len(parts) > 2:
            raise ValueError(f"Unsupported fast store path: {path!r}")
        return self.key_prefix + parts[0], parts[1] if len(parts) == 2 else None

    def _channel(self, path: str) -> str:
        return f"{self.key_prefix}changes:{_segments(path)[0]}"

    async def write(self, path: str, value: Any) -> None:
        key, field = self._split(path)
        async with self.client.pipeline(transaction=True) as pipe:
            if field is None:
                if value is None:
                    pipe.delete(key)
                else:
                    pipe.set(key, json.dumps(value))
            elif value is None:
                pipe.hdel(key, field)
            else:
                pipe.hset(key, field, json.dumps(value))
            pipe.publish(self._channel(path), path)
            await pipe.execute()

    async def read_once(self, path: str) -> Any:
        key, field = self._split(path)
        if field is not None:
            raw = await self.client.hget(key, field)
            return None if raw is None else json.loads(raw)
        kind = await self.client.type(key)
        if kind == "hash":
            raw_map = await self.client.hgetall(key)
            return {k: json.loads(v) for k, v in raw_map.items()} or None
        if kind == "string":
            return json.loads(await self.client.get(key))
        return None

    async def update_fields(self, path: str, partial: Mapping[str, Any]) -> None:
        # Read-merge-write; concurrent writers race like any other write.
        current = await self.read_once(path)
        merged = dict(current) if isinstance(current, dict) else {}
        for field, value in partial.items():
            if value is None:
                merged.pop(field, None)
            else:
                merged[field] = value
        await self.write(path, merged or None)

    async def bulk_write(self, updates: Mapping[str, Any]) -> None:
        if not updates:
            return
        async with self.client.pipeline(transaction=True) as pipe:
            for path, value in updates.items():
                key, field = self._split(path)
                if field is None:
                    pipe.set(key, json.dumps(value))
                else:
                    pipe.hset(key, field, json.dumps(value))
            for path in updates:
                pipe.publish(self._channel(path), path)
            await pipe.execute()

    def subscribe_value(
        self, path: str, callback: ValueCallback, *, once: bool = False
    ) -> Unsubscribe:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._watch(path, callback, once))
        return task.cancel

    async def _watch(self, path: str, callback: ValueCallback, once: bool) -> None:
        if once:
            try:
                value = await self.read_once(path)
            except (redis_exceptions.RedisError, OSError, ValueError) as e:
                logger.warning(f"One-shot read of {path} failed: {e}")
                value = None
            callback(value)
            return
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(self._channel(path))
            callback(await self.read_once(path))
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                if _related(path, message.get("data") or ""):
                    callback(await self.read_once(path))
        except (redis_exceptions.RedisError, OSError) as e:
            logger.warning(f"Redis subscription on {path} ended: {e}")
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        await self.client.aclose()
