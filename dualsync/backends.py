"""
The ``Backends`` context: both store adapters plus the health gate, built
once at process start and shared read-only by every component.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

import firebase_admin
from firebase_admin import credentials, firestore

from dualsync.adapters import DurableStoreAdapter, FastStoreAdapter
from dualsync.config import DURABLE_BACKENDS, FAST_BACKENDS, Settings
from dualsync.durable_store import (
    DurableStoreClient,
    FirestoreDocumentClient,
    InMemoryDurableStoreClient,
    SqlDocumentClient,
)
from dualsync.errors import ConfigurationError
from dualsync.fast_store import (
    FastStoreClient,
    FirebaseRealtimeClient,
    InMemoryFastStoreClient,
    RedisFastStoreClient,
)
from dualsync.gate import ConnectionHealthGate
from dualsync.observer import EngineObserver, LoggingObserver
from dualsync.types import StoreId

logger = logging.getLogger(__name__)


@dataclass
class Backends:
    """Process-wide store handles.

    An adapter is ``None`` when its client could not be constructed; the
    gate then reports that store unready.
    """

    fast: Optional[FastStoreAdapter]
    durable: Optional[DurableStoreAdapter]
    gate: ConnectionHealthGate
    observer: EngineObserver = field(default_factory=LoggingObserver)

    @classmethod
    def from_clients(
        cls,
        fast: Optional[FastStoreClient],
        durable: Optional[DurableStoreClient],
        observer: Optional[EngineObserver] = None,
    ) -> "Backends":
        gate = ConnectionHealthGate()
        if fast is not None:
            gate.mark_ready(StoreId.FAST)
        if durable is not None:
            gate.mark_ready(StoreId.DURABLE)
        return cls(
            fast=FastStoreAdapter(fast) if fast is not None else None,
            durable=DurableStoreAdapter(durable) if durable is not None else None,
            gate=gate,
            observer=observer or LoggingObserver(),
        )

    @classmethod
    def in_memory(cls, observer: Optional[EngineObserver] = None) -> "Backends":
        return cls.from_clients(
            InMemoryFastStoreClient(), InMemoryDurableStoreClient(), observer
        )

    def adapter(self, store: StoreId) -> Union[FastStoreAdapter, DurableStoreAdapter, None]:
        return self.fast if store == StoreId.FAST else self.durable

    def ready(self, store: StoreId) -> bool:
        return self.gate.is_store_ready(store) and self.adapter(store) is not None

    async def aclose(self) -> None:
        for adapter in (self.fast, self.durable):
            if adapter is None:
                continue
            try:
                await adapter.client.close()
            except Exception as e:
                logger.warning(f"Error closing {adapter.store_id.value} store client: {e}")


def _firebase_app(settings: Settings):
    try:
        return firebase_admin.get_app(settings.firebase_app_name)
    except ValueError:
        pass
    credential = (
        credentials.Certificate(settings.firebase_credentials_file)
        if settings.firebase_credentials_file
        else None
    )
    options = {}
    if settings.firebase_database_url:
        options["databaseURL"] = settings.firebase_database_url
    if settings.firebase_project_id:
        options["projectId"] = settings.firebase_project_id
    return firebase_admin.initialize_app(
        credential, options, name=settings.firebase_app_name
    )


def _build_fast_client(settings: Settings) -> FastStoreClient:
    backend = settings.fast_store_backend
    if backend == "memory":
        return InMemoryFastStoreClient()
    if backend == "firebase":
        if not settings.firebase_database_url:
            raise ValueError("firebase_database_url is required for the firebase fast store")
        return FirebaseRealtimeClient(_firebase_app(settings))
    if not settings.redis_url:
        raise ValueError("redis_url is required for the redis fast store")
    return RedisFastStoreClient(settings.redis_url, key_prefix=settings.redis_key_prefix)


def _build_durable_client(settings: Settings) -> DurableStoreClient:
    backend = settings.durable_store_backend
    if backend == "memory":
        return InMemoryDurableStoreClient()
    if backend == "firestore":
        return FirestoreDocumentClient(firestore.client(_firebase_app(settings)))
    return SqlDocumentClient(settings.database_url or "")


def initialize_backends(
    settings: Settings, observer: Optional[EngineObserver] = None
) -> Backends:
    """Build both store clients, recording any failure in the health gate.

    Connection failures never raise; an unknown backend name does.
    """
    if settings.fast_store_backend not in FAST_BACKENDS:
        raise ConfigurationError(f"Unknown fast store backend: {settings.fast_store_backend}")
    if settings.durable_store_backend not in DURABLE_BACKENDS:
        raise ConfigurationError(
            f"Unknown durable store backend: {settings.durable_store_backend}"
        )

    gate = ConnectionHealthGate()
    fast: Optional[FastStoreAdapter] = None
    durable: Optional[DurableStoreAdapter] = None

    try:
        fast = FastStoreAdapter(_build_fast_client(settings))
        gate.mark_ready(StoreId.FAST)
    except Exception as e:
        logger.error(f"Fast store ({settings.fast_store_backend}) initialization failed: {e}")
        gate.mark_unavailable(StoreId.FAST, str(e))

    try:
        durable = DurableStoreAdapter(_build_durable_client(settings))
        gate.mark_ready(StoreId.DURABLE)
    except Exception as e:
        logger.error(
            f"Durable store ({settings.durable_store_backend}) initialization failed: {e}"
        )
        gate.mark_unavailable(StoreId.DURABLE, str(e))

    logger.info(
        f"Backends initialized: fast={settings.fast_store_backend} "
        f"durable={settings.durable_store_backend} ready={gate.is_ready()}"
    )
    return Backends(fast=fast, durable=durable, gate=gate, observer=observer or LoggingObserver())
