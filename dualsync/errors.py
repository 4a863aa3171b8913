"""
Error taxonomy for the synchronization engine.

These are carried as values inside results and outcomes. Nothing in the
engine raises them past its public API.
"""

from __future__ import annotations

from typing import Optional


class SyncEngineError(Exception):
    """Base class for engine errors."""

    def __init__(
        self,
        message: str,
        *,
        store: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.store = store
        self.cause = cause


class ConfigurationError(SyncEngineError):
    """An unknown backend was requested at bootstrap."""


class ConnectionUnavailable(SyncEngineError):
    """A required store never initialized or was marked unavailable."""


class StoreWriteError(SyncEngineError):
    """A single store rejected a write."""


class StoreReadError(SyncEngineError):
    """A read failed or returned data that is not a JSON value."""


class SubscriptionError(SyncEngineError):
    """A subscriber callback raised during delivery."""


class InvalidRecordError(SyncEngineError):
    """A record was rejected before reaching any store."""


class RecordNotFound(StoreWriteError):
    """A partial update targeted a record the store does not hold."""
