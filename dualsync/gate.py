"""
Process-wide readiness state for the two backing stores.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, Optional

from dualsync.errors import ConnectionUnavailable
from dualsync.types import StoreId

logger = logging.getLogger(__name__)


class ConnectionHealthGate:
    """Tracks whether each store was initialized and is usable.

    Populated once at startup. ``mark_unavailable`` / ``mark_ready`` let an
    operator reflect an outage observed at runtime.
    """

    def __init__(self, ready: Iterable[StoreId] = ()):
        self._ready: Dict[StoreId, bool] = {store: False for store in StoreId}
        self._reasons: Dict[StoreId, str] = {
            store: "not initialized" for store in StoreId
        }
        for store in ready:
            self.mark_ready(store)

    def is_ready(self) -> bool:
        return all(self._ready.values())

    def is_store_ready(self, store: StoreId) -> bool:
        return self._ready.get(store, False)

    def ready_stores(self) -> FrozenSet[StoreId]:
        return frozenset(store for store, ready in self._ready.items() if ready)

    def mark_ready(self, store: StoreId) -> None:
        self._ready[store] = True
        self._reasons.pop(store, None)

    def mark_unavailable(self, store: StoreId, reason: str = "marked unavailable") -> None:
        if self._ready.get(store):
            logger.warning(f"{store.value} store marked unavailable: {reason}")
        self._ready[store] = False
        self._reasons[store] = reason

    def reason(self, store: StoreId) -> Optional[str]:
        return self._reasons.get(store)

    def unavailable(self, store: StoreId) -> ConnectionUnavailable:
        return ConnectionUnavailable(
            f"{store.value} store is not ready: {self._reasons.get(store, 'unknown')}",
            store=store.value,
        )

    def as_dict(self) -> dict:
        return {
            "ready": self.is_ready(),
            "stores": {
                store.value: {
                    "ready": self._ready[store],
                    "reason": self._reasons.get(store),
                }
                for store in StoreId
            },
        }
