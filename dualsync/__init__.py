"""
dualsync keeps a low-latency key-value store (FastStore) and a queryable
document store (DurableStore) consistent for the same logical records.

Writes go to both stores with per-store failure isolation, reads try the
stores in a per-category priority order, and subscriptions fall back to the
other store while one of them is empty or unavailable.

Quick start:
    from dualsync import Backends, SyncEngine

    engine = SyncEngine(Backends.in_memory())
    outcome = await engine.save_content_one("physics-ch1", {"title": "Motion"})
    data = await engine.get_content("physics-ch1")
"""

from dualsync.backends import Backends, initialize_backends
from dualsync.engine import SyncEngine
from dualsync.gate import ConnectionHealthGate
from dualsync.types import (
    BulkOutcome,
    Category,
    QueryFilter,
    SaveOutcome,
    StoreId,
    WriteStatus,
)

__version__ = "0.1.0"

__all__ = [
    "Backends",
    "BulkOutcome",
    "Category",
    "ConnectionHealthGate",
    "QueryFilter",
    "SaveOutcome",
    "StoreId",
    "SyncEngine",
    "WriteStatus",
    "initialize_backends",
]
