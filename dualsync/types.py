"""
Shared types: store ids, categories, results and write outcomes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from dualsync.errors import StoreReadError, SyncEngineError

JsonValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]

SETTINGS_KEY = "system_settings"


class StoreId(str, Enum):
    FAST = "fast"
    DURABLE = "durable"


class Category(str, Enum):
    """Entity categories, each with its own key namespace."""

    USER = "users"
    SETTINGS = "system_settings"
    CONTENT = "content_data"
    TEST_RESULT = "test_results"


class WriteStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    TOTAL_FAILURE = "TOTAL_FAILURE"
    SKIPPED = "SKIPPED"


QUERY_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in", "not-in", "array-contains")


@dataclass(frozen=True)
class QueryFilter:
    """Single-field predicate understood by the durable store."""

    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in QUERY_OPERATORS:
            raise ValueError(f"Unsupported query operator: {self.op}")


def to_json_value(value: Any) -> JsonValue:
    """Return a detached JSON-compatible copy of ``value``.

    Raises TypeError/ValueError for values that cannot round-trip through
    JSON (sets, datetimes, NaN, ...).
    """
    return json.loads(json.dumps(value, allow_nan=False))


def ensure_json_value(value: Any, *, store: str, where: str) -> JsonValue:
    try:
        return to_json_value(value)
    except (TypeError, ValueError) as e:
        raise StoreReadError(
            f"Malformed data at {where}: {e}", store=store, cause=e
        ) from e


@dataclass
class StoreResult:
    """Outcome of a single store operation.

    ``value`` is ``None`` for writes and for reads that found nothing.
    """

    value: Any = None
    error: Optional[SyncEngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def found(self) -> bool:
        return self.error is None and self.value is not None

    @classmethod
    def failure(cls, error: SyncEngineError) -> "StoreResult":
        return cls(value=None, error=error)


@dataclass
class SaveOutcome:
    """Result of writing one key to one or more stores."""

    category: Category
    key: str
    targets: FrozenSet[StoreId]
    written: FrozenSet[StoreId] = frozenset()
    errors: Dict[StoreId, SyncEngineError] = field(default_factory=dict)
    skipped: bool = False

    @property
    def status(self) -> WriteStatus:
        if self.skipped:
            return WriteStatus.SKIPPED
        if self.written == self.targets:
            return WriteStatus.SUCCESS
        if not self.written:
            return WriteStatus.TOTAL_FAILURE
        return WriteStatus.PARTIAL_FAILURE

    @property
    def failed_stores(self) -> FrozenSet[StoreId]:
        if self.skipped:
            return frozenset()
        return frozenset(self.targets - self.written)

    @property
    def success(self) -> bool:
        return self.status == WriteStatus.SUCCESS

    def as_dict(self) -> dict:
        return {
            "category": self.category.value,
            "key": self.key,
            "status": self.status.value,
            "written": sorted(s.value for s in self.written),
            "failed": sorted(s.value for s in self.failed_stores),
            "errors": {s.value: str(e) for s, e in self.errors.items()},
        }


@dataclass
class BulkOutcome:
    """Per-store and per-key results of a bulk write."""

    category: Category
    keys: List[str]
    accepted: Dict[str, set] = field(default_factory=dict)
    errors: Dict[StoreId, Dict[str, SyncEngineError]] = field(default_factory=dict)
    skipped: bool = False

    def record(self, store: StoreId, key: str, error: Optional[SyncEngineError]) -> None:
        if error is None:
            self.accepted.setdefault(key, set()).add(store)
        else:
            self.errors.setdefault(store, {})[key] = error

    def stores_for(self, key: str) -> FrozenSet[StoreId]:
        return frozenset(self.accepted.get(key, ()))

    def succeeded(self, store: StoreId) -> int:
        return sum(1 for stores in self.accepted.values() if store in stores)

    def failed(self, store: StoreId) -> int:
        return len(self.errors.get(store, {}))

    @property
    def status(self) -> WriteStatus:
        if self.skipped:
            return WriteStatus.SKIPPED
        if not self.keys or all(
            self.stores_for(k) == {StoreId.FAST, StoreId.DURABLE} for k in self.keys
        ):
            return WriteStatus.SUCCESS
        if not self.accepted:
            return WriteStatus.TOTAL_FAILURE
        return WriteStatus.PARTIAL_FAILURE

    def as_dict(self) -> dict:
        return {
            "category": self.category.value,
            "status": self.status.value,
            "counts": {
                store.value: {
                    "succeeded": self.succeeded(store),
                    "failed": self.failed(store),
                }
                for store in StoreId
            },
            "keys": {
                key: sorted(s.value for s in self.stores_for(key)) for key in self.keys
            },
        }
