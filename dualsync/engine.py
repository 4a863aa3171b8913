"""
SyncEngine: the API consumed by the UI and admin tooling.

Writes return outcomes, reads return a value or ``None``; no backend
exception escapes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from dualsync.backends import Backends
from dualsync.errors import InvalidRecordError
from dualsync.layout import make_result_id
from dualsync.multiplexer import SubscriptionMultiplexer
from dualsync.reads import ReadFallbackResolver
from dualsync.subscriptions import SubscriptionHandle, SubscriptionStream
from dualsync.types import (
    SETTINGS_KEY,
    BulkOutcome,
    Category,
    JsonValue,
    SaveOutcome,
    StoreId,
)
from dualsync.writes import BulkSyncCoordinator, DualWriteCoordinator

logger = logging.getLogger(__name__)


class SyncEngine:
    def __init__(self, backends: Backends):
        self.backends = backends
        self.writer = DualWriteCoordinator(backends)
        self.bulk = BulkSyncCoordinator(backends)
        self.reader = ReadFallbackResolver(backends)
        self.subscriptions = SubscriptionMultiplexer(backends)

    def status(self) -> dict:
        return self.backends.gate.as_dict()

    # Users

    async def save_user(self, user: Mapping[str, Any]) -> SaveOutcome:
        user_id = user.get("id") if isinstance(user, Mapping) else None
        if not user_id:
            return self.writer.reject(
                Category.USER, "", InvalidRecordError("user records need an 'id'")
            )
        return await self.writer.save(Category.USER, str(user_id), dict(user))

    async def get_user_by_id(self, user_id: str) -> Optional[JsonValue]:
        return await self.reader.get(Category.USER, user_id)

    async def get_user_by_email(self, email: str) -> Optional[JsonValue]:
        return await self.reader.find_one(Category.USER, "email", email)

    def subscribe_users(self, callback: Callable[[list], None]) -> SubscriptionHandle:
        return self.subscriptions.subscribe(Category.USER, callback)

    async def touch_user_activity(
        self, user_id: str, now: Optional[datetime] = None
    ) -> SaveOutcome:
        """Stamp ``lastActiveTime`` in the fast store only.

        Users the fast store does not hold are left alone; the outcome
        reports ``RecordNotFound``.
        """
        moment = now or datetime.now(timezone.utc)
        stamp = moment.isoformat().replace("+00:00", "Z")
        return await self.writer.update(
            Category.USER, user_id, {"lastActiveTime": stamp}, stores=(StoreId.FAST,)
        )

    # System settings

    async def save_settings(self, settings: Mapping[str, Any]) -> SaveOutcome:
        return await self.writer.save(Category.SETTINGS, SETTINGS_KEY, dict(settings))

    async def get_system_settings(self) -> Optional[JsonValue]:
        return await self.reader.get(Category.SETTINGS, SETTINGS_KEY)

    def subscribe_settings(self, callback: Callable[[Any], None]) -> SubscriptionHandle:
        return self.subscriptions.subscribe(Category.SETTINGS, callback)

    # Content

    async def save_content_bulk(self, updates: Mapping[str, Any]) -> BulkOutcome:
        return await self.bulk.save_many(Category.CONTENT, updates)

    async def save_content_one(self, key: str, data: Any) -> SaveOutcome:
        return await self.writer.save(Category.CONTENT, key, data)

    async def get_content(self, key: str) -> Optional[JsonValue]:
        return await self.reader.get(Category.CONTENT, key)

    def subscribe_content(self, key: str, callback: Callable[[Any], None]) -> SubscriptionHandle:
        return self.subscriptions.subscribe(Category.CONTENT, callback, key=key)

    def stream_content(self, key: str) -> SubscriptionStream:
        return self.subscriptions.stream(Category.CONTENT, key=key)

    # Test results

    async def record_test_result(
        self, user_id: str, attempt: Mapping[str, Any]
    ) -> SaveOutcome:
        """Append a test attempt under the user; never overwrites."""
        test_id = attempt.get("testId") if isinstance(attempt, Mapping) else None
        if not test_id or not user_id:
            return self.writer.reject(
                Category.TEST_RESULT,
                f"{user_id}/",
                InvalidRecordError("test attempts need a user id and a 'testId'"),
            )
        result_id = make_result_id(str(test_id))
        return await self.writer.save(
            Category.TEST_RESULT, f"{user_id}/{result_id}", dict(attempt)
        )

    async def get_test_result(self, user_id: str, result_id: str) -> Optional[JsonValue]:
        return await self.reader.get(Category.TEST_RESULT, f"{user_id}/{result_id}")
