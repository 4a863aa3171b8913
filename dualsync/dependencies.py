"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from dualsync.backends import Backends, initialize_backends
from dualsync.config import get_settings
from dualsync.engine import SyncEngine

_backends: Backends | None = None
_engine: SyncEngine | None = None


def get_backends() -> Backends:
    """
    Return the process-wide backends, initializing them on first use.
    """
    global _backends
    if _backends:
        return _backends
    _backends = initialize_backends(get_settings())
    return _backends


def get_engine() -> SyncEngine:
    global _engine
    if _engine:
        return _engine
    _engine = SyncEngine(get_backends())
    return _engine


def reset_engine() -> None:
    """Forget the cached engine and backends (useful in tests)."""
    global _backends, _engine
    _backends = None
    _engine = None
