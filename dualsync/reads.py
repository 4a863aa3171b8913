"""
Point reads with a per-category store priority and fallback.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from dualsync.backends import Backends
from dualsync.types import Category, JsonValue, QueryFilter, StoreId

logger = logging.getLogger(__name__)

# Fast store first where latency matters; data written only to the legacy
# store before a cutover is still found through the fallback.
DEFAULT_READ_PRIORITY: Dict[Category, Sequence[StoreId]] = {
    Category.USER: (StoreId.FAST, StoreId.DURABLE),
    Category.CONTENT: (StoreId.FAST, StoreId.DURABLE),
    Category.SETTINGS: (StoreId.FAST, StoreId.DURABLE),
    Category.TEST_RESULT: (StoreId.DURABLE,),
}


class ReadFallbackResolver:
    """Reads a record from the first store in priority order that has it.

    Errors and "not found" are treated alike: both move on to the next store.
    Nothing is cached.
    """

    def __init__(
        self,
        backends: Backends,
        priority: Optional[Mapping[Category, Sequence[StoreId]]] = None,
    ):
        self.backends = backends
        self.priority = dict(DEFAULT_READ_PRIORITY)
        if priority:
            self.priority.update(priority)

    async def get(self, category: Category, key: str) -> Optional[JsonValue]:
        order = self.priority[category]
        observer = self.backends.observer
        for position, store in enumerate(order):
            if not self.backends.ready(store):
                continue
            if position > 0:
                observer.fell_back("get", category, key, store)
            result = await self.backends.adapter(store).read(category, key)
            if result.found:
                return result.value
            if not result.ok:
                observer.store_failed("get", store, category, key, result.error)
        return None

    async def find_all(
        self, category: Category, where: QueryFilter, scope: Optional[str] = None
    ) -> List[JsonValue]:
        """Predicate query; only the durable store can answer these."""
        if not self.backends.ready(StoreId.DURABLE):
            self.backends.observer.skipped("query", category, None, (StoreId.DURABLE,))
            return []
        result = await self.backends.durable.query(category, where, scope=scope)
        if not result.ok:
            self.backends.observer.store_failed(
                "query", StoreId.DURABLE, category, None, result.error
            )
            return []
        return result.value

    async def find_one(self, category: Category, field: str, value: Any) -> Optional[JsonValue]:
        matches = await self.find_all(category, QueryFilter(field, "==", value))
        return matches[0] if matches else None
