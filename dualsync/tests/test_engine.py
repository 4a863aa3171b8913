import unittest
from datetime import datetime, timezone

from dualsync.backends import Backends
from dualsync.engine import SyncEngine
from dualsync.errors import InvalidRecordError, RecordNotFound
from dualsync.observer import RecordingObserver
from dualsync.tests.helpers import settle
from dualsync.types import Category, StoreId, WriteStatus


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.observer = RecordingObserver()
        self.backends = Backends.in_memory(self.observer)
        self.fast = self.backends.fast.client
        self.durable = self.backends.durable.client
        self.engine = SyncEngine(self.backends)

    async def test_user_round_trip(self):
        user = {"id": "u1", "email": "asha@example.com", "name": "Asha"}

        outcome = await self.engine.save_user(user)

        self.assertEqual(outcome.status, WriteStatus.SUCCESS)
        self.assertEqual(await self.engine.get_user_by_id("u1"), user)
        self.assertEqual(await self.engine.get_user_by_email("asha@example.com"), user)
        self.assertIsNone(await self.engine.get_user_by_id("nobody"))

    async def test_user_without_id_is_refused_as_an_outcome(self):
        outcome = await self.engine.save_user({"email": "a@x.io"})

        self.assertEqual(outcome.status, WriteStatus.TOTAL_FAILURE)
        self.assertIsInstance(outcome.errors[StoreId.FAST], InvalidRecordError)
        self.assertEqual(self.observer.kinds(), ["write_failed"])
        self.assertEqual(self.fast.tree, {})

        outcome = await self.engine.save_user(["not", "a", "record"])
        self.assertEqual(outcome.status, WriteStatus.TOTAL_FAILURE)

    async def test_subscribe_users_sees_saved_users(self):
        deliveries = []
        handle = self.engine.subscribe_users(deliveries.append)
        await settle()
        await self.engine.save_user({"id": "u1"})
        await settle()

        self.assertEqual(deliveries[-1], [{"id": "u1"}])
        handle.cancel()

    async def test_touch_user_activity_is_fast_only(self):
        await self.engine.save_user({"id": "u1"})
        moment = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)

        outcome = await self.engine.touch_user_activity("u1", now=moment)

        self.assertEqual(outcome.targets, {StoreId.FAST})
        self.assertEqual(
            self.fast.tree["users"]["u1"]["lastActiveTime"], "2026-03-01T12:30:00Z"
        )
        self.assertEqual(self.durable.collections["users"]["u1"], {"id": "u1"})

    async def test_touch_never_hides_a_durable_only_user(self):
        user = {"id": "u1", "email": "asha@example.com", "name": "Asha"}
        await self.durable.write_doc("users", "u1", user)

        outcome = await self.engine.touch_user_activity("u1")

        self.assertEqual(outcome.status, WriteStatus.TOTAL_FAILURE)
        self.assertIsInstance(outcome.errors[StoreId.FAST], RecordNotFound)
        self.assertNotIn("users", self.fast.tree)
        self.assertEqual(await self.engine.get_user_by_id("u1"), user)

    async def test_touch_does_not_create_unknown_users(self):
        outcome = await self.engine.touch_user_activity("ghost")

        self.assertFalse(outcome.success)
        self.assertIsNone(await self.engine.get_user_by_id("ghost"))

    async def test_test_results_cannot_be_subscribed(self):
        deliveries = []
        handle = self.engine.subscriptions.subscribe(Category.TEST_RESULT, deliveries.append)
        await settle()

        self.assertFalse(handle.active)
        self.assertEqual(deliveries, [])

    async def test_settings_keep_flowing_when_durable_store_drops(self):
        await self.engine.save_settings({"theme": "dark"})
        deliveries = []
        self.engine.subscribe_settings(deliveries.append)
        await settle()
        self.assertEqual(deliveries, [{"theme": "dark"}])

        self.backends.gate.mark_unavailable(StoreId.DURABLE, "quota exceeded")
        outcome = await self.engine.save_settings({"theme": "light"})
        await settle()

        self.assertEqual(outcome.status, WriteStatus.PARTIAL_FAILURE)
        self.assertEqual(outcome.failed_stores, {StoreId.DURABLE})
        self.assertEqual(deliveries[-1], {"theme": "light"})
        self.assertEqual(await self.engine.get_system_settings(), {"theme": "light"})
        # The durable copy stays stale until repaired.
        self.assertEqual(
            self.durable.collections["config"]["system_settings"], {"theme": "dark"}
        )

    async def test_bulk_content_is_readable_one_by_one(self):
        outcome = await self.engine.save_content_bulk(
            {"ch1": {"title": "Motion"}, "ch2": {"title": "Forces"}}
        )

        self.assertEqual(outcome.status, WriteStatus.SUCCESS)
        self.assertEqual(await self.engine.get_content("ch2"), {"title": "Forces"})

    async def test_single_content_write_and_subscription(self):
        deliveries = []
        self.engine.subscribe_content("ch1", deliveries.append)
        await settle()

        outcome = await self.engine.save_content_one("ch1", {"title": "Motion"})

        self.assertTrue(outcome.success)
        self.assertEqual(deliveries, [{"title": "Motion"}])

    async def test_content_stream(self):
        async with self.engine.stream_content("ch1") as stream:
            await settle()
            await self.engine.save_content_one("ch1", {"title": "Motion"})
            self.assertEqual(await stream.__anext__(), {"title": "Motion"})

    async def test_test_results_never_overwrite(self):
        attempt = {"testId": "t1", "score": 8}

        first = await self.engine.record_test_result("u1", attempt)
        second = await self.engine.record_test_result("u1", attempt)

        self.assertNotEqual(first.key, second.key)
        self.assertTrue(first.key.startswith("u1/t1_"))
        self.assertEqual(len(self.durable.collections["users/u1/test_results"]), 2)
        self.assertNotIn("test_results", self.fast.tree)

        result_id = first.key.split("/", 1)[1]
        self.assertEqual(await self.engine.get_test_result("u1", result_id), attempt)

    async def test_attempt_without_test_id_is_refused_as_an_outcome(self):
        outcome = await self.engine.record_test_result("u1", {"score": 8})

        self.assertEqual(outcome.status, WriteStatus.TOTAL_FAILURE)
        self.assertEqual(outcome.targets, {StoreId.DURABLE})
        self.assertIsInstance(outcome.errors[StoreId.DURABLE], InvalidRecordError)
        self.assertNotIn("users/u1/test_results", self.durable.collections)

        outcome = await self.engine.record_test_result("u1", None)
        self.assertEqual(outcome.status, WriteStatus.TOTAL_FAILURE)

    async def test_no_backend_exception_escapes(self):
        self.fast.failing_paths.add("content_data")
        self.durable.failing_paths.add("content_data")

        outcome = await self.engine.save_content_one("ch1", {"title": "Motion"})

        self.assertEqual(outcome.status, WriteStatus.TOTAL_FAILURE)
        self.assertIsNone(await self.engine.get_content("ch1"))

    def test_status_reports_gate(self):
        self.backends.gate.mark_unavailable(StoreId.FAST, "offline")
        status = self.engine.status()
        self.assertFalse(status["ready"])
        self.assertEqual(status["stores"]["fast"], {"ready": False, "reason": "offline"})
        self.assertTrue(status["stores"]["durable"]["ready"])


if __name__ == "__main__":
    unittest.main()
