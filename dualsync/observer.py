"""
Observer hooks for engine diagnostics. Logging is layered on here rather
than woven into control flow.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from dualsync.errors import SyncEngineError
from dualsync.types import Category, StoreId

logger = logging.getLogger("dualsync")


class EngineObserver(Protocol):
    def store_failed(
        self,
        operation: str,
        store: StoreId,
        category: Category,
        key: Optional[str],
        error: SyncEngineError,
    ) -> None:
        ...

    def write_failed(self, category: Category, key: str, stores: Iterable[StoreId]) -> None:
        ...

    def skipped(
        self, operation: str, category: Category, key: Optional[str], stores: Iterable[StoreId]
    ) -> None:
        ...

    def fell_back(
        self, operation: str, category: Category, key: Optional[str], to_store: StoreId
    ) -> None:
        ...

    def callback_failed(
        self, category: Category, key: Optional[str], error: SyncEngineError
    ) -> None:
        ...


def _target(category: Category, key: Optional[str]) -> str:
    return category.value if key is None else f"{category.value}/{key}"


class LoggingObserver:
    """Default observer: reports everything to the ``dualsync`` logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def store_failed(self, operation, store, category, key, error) -> None:
        self.log.warning(
            f"{operation} on {store.value} store failed for {_target(category, key)}: {error}"
        )

    def write_failed(self, category, key, stores) -> None:
        names = ", ".join(sorted(s.value for s in stores))
        self.log.error(f"Write of {_target(category, key)} failed on every store ({names})")

    def skipped(self, operation, category, key, stores) -> None:
        names = ", ".join(sorted(s.value for s in stores)) or "none"
        self.log.warning(
            f"Skipped {operation} for {_target(category, key)}: no ready store among {names}"
        )

    def fell_back(self, operation, category, key, to_store) -> None:
        self.log.info(
            f"{operation} for {_target(category, key)} fell back to {to_store.value} store"
        )

    def callback_failed(self, category, key, error) -> None:
        self.log.error(
            f"Subscriber callback for {_target(category, key)} raised: {error}",
            exc_info=error.cause,
        )


class RecordingObserver(LoggingObserver):
    """Logging observer that also keeps the events it saw."""

    def __init__(self, log: Optional[logging.Logger] = None):
        super().__init__(log)
        self.events: list[tuple] = []

    def store_failed(self, operation, store, category, key, error) -> None:
        self.events.append(("store_failed", operation, store, category, key))
        super().store_failed(operation, store, category, key, error)

    def write_failed(self, category, key, stores) -> None:
        self.events.append(("write_failed", category, key, frozenset(stores)))
        super().write_failed(category, key, stores)

    def skipped(self, operation, category, key, stores) -> None:
        self.events.append(("skipped", operation, category, key))
        super().skipped(operation, category, key, stores)

    def fell_back(self, operation, category, key, to_store) -> None:
        self.events.append(("fell_back", operation, category, key, to_store))
        super().fell_back(operation, category, key, to_store)

    def callback_failed(self, category, key, error) -> None:
        self.events.append(("callback_failed", category, key))
        super().callback_failed(category, key, error)

    def kinds(self) -> list[str]:
        return [event[0] for event in self.events]
