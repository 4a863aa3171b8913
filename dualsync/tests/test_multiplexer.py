import asyncio
import unittest

from dualsync.backends import Backends
from dualsync.multiplexer import SubscriptionMultiplexer
from dualsync.observer import RecordingObserver
from dualsync.tests.helpers import settle
from dualsync.types import Category, StoreId


class CollectionSubscriptionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.observer = RecordingObserver()
        self.backends = Backends.in_memory(self.observer)
        self.fast = self.backends.fast.client
        self.durable = self.backends.durable.client
        self.multiplexer = SubscriptionMultiplexer(self.backends)

    def fallbacks(self):
        return [e for e in self.observer.events if e[0] == "fell_back"]

    async def test_empty_first_snapshot_reads_fast_store_once(self):
        await self.fast.write("users/u2", {"id": "u2"})
        await self.fast.write("users/u1", {"id": "u1"})
        deliveries = []

        self.multiplexer.subscribe(Category.USER, deliveries.append)
        await settle()

        self.assertEqual(deliveries, [[{"id": "u1"}, {"id": "u2"}]])
        self.assertEqual(len(self.fallbacks()), 1)

        # Later durable snapshots are delivered as-is, with no second fallback.
        await self.durable.write_doc("users", "u3", {"id": "u3"})
        await settle()
        self.assertEqual(deliveries[-1], [{"id": "u3"}])
        self.assertEqual(len(deliveries), 2)
        self.assertEqual(len(self.fallbacks()), 1)

    async def test_later_empty_snapshots_never_fall_back_again(self):
        await self.fast.write("users/u1", {"id": "u1"})
        deliveries = []

        self.multiplexer.subscribe(Category.USER, deliveries.append)
        await settle()
        await self.durable.write_doc("users", "u2", {"id": "u2"})
        await settle()
        # Empty the collection again and announce the change.
        self.durable.collections["users"].clear()
        await self.durable.feed.publish("users", "u2")
        await settle()

        self.assertEqual(deliveries, [[{"id": "u1"}], [{"id": "u2"}], []])
        self.assertEqual(len(self.fallbacks()), 1)

    async def test_fallback_result_is_delivered_even_when_empty(self):
        deliveries = []
        self.multiplexer.subscribe(Category.USER, deliveries.append)
        await settle()
        self.assertEqual(deliveries, [[]])

    async def test_populated_durable_store_needs_no_fallback(self):
        await self.durable.write_doc("users", "u1", {"id": "u1"})
        await self.fast.write("users/u9", {"id": "u9"})
        deliveries = []

        self.multiplexer.subscribe(Category.USER, deliveries.append)
        await settle()

        self.assertEqual(deliveries, [[{"id": "u1"}]])
        self.assertEqual(self.fallbacks(), [])

    async def test_unready_fast_store_delivers_the_empty_snapshot(self):
        await self.fast.write("users/u1", {"id": "u1"})
        self.backends.gate.mark_unavailable(StoreId.FAST, "offline")
        deliveries = []

        self.multiplexer.subscribe(Category.USER, deliveries.append)
        await settle()

        self.assertEqual(deliveries, [[]])

    async def test_unready_durable_store_gives_inert_handle(self):
        self.backends.gate.mark_unavailable(StoreId.DURABLE, "offline")
        deliveries = []

        handle = self.multiplexer.subscribe(Category.USER, deliveries.append)
        await settle()

        self.assertFalse(handle.active)
        handle.cancel()
        self.assertEqual(deliveries, [])
        self.assertEqual(self.observer.kinds(), ["skipped"])

    async def test_cancel_detaches_and_is_idempotent(self):
        deliveries = []
        handle = self.multiplexer.subscribe(Category.USER, deliveries.append)
        await settle()

        handle.cancel()
        handle.cancel()
        await self.durable.write_doc("users", "u1", {"id": "u1"})
        await settle()

        self.assertEqual(deliveries, [[]])
        self.assertEqual(len(self.durable.feed), 0)
        self.assertEqual(self.fast.listener_count, 0)


class DocumentSubscriptionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.observer = RecordingObserver()
        self.backends = Backends.in_memory(self.observer)
        self.fast = self.backends.fast.client
        self.durable = self.backends.durable.client
        self.multiplexer = SubscriptionMultiplexer(self.backends)

    async def test_fast_value_is_delivered(self):
        await self.fast.write("content_data/ch1", {"title": "Motion"})
        deliveries = []

        self.multiplexer.subscribe(Category.CONTENT, deliveries.append, key="ch1")
        await settle()
        await self.fast.write("content_data/ch1", {"title": "Forces"})

        self.assertEqual(deliveries, [{"title": "Motion"}, {"title": "Forces"}])

    async def test_every_fast_absence_consults_the_durable_store(self):
        await self.durable.write_doc("content_data", "ch1", {"title": "Archived"})
        deliveries = []

        self.multiplexer.subscribe(Category.CONTENT, deliveries.append, key="ch1")
        await settle()
        await self.fast.write("content_data/ch1", {"title": "Live"})
        await self.fast.write("content_data/ch1", None)
        await settle()

        self.assertEqual(
            deliveries, [{"title": "Archived"}, {"title": "Live"}, {"title": "Archived"}]
        )

    async def test_absent_everywhere_delivers_nothing(self):
        deliveries = []
        self.multiplexer.subscribe(Category.CONTENT, deliveries.append, key="ch1")
        await settle()
        self.assertEqual(deliveries, [])

    async def test_stale_fallback_is_dropped(self):
        await self.durable.write_doc("content_data", "ch1", {"title": "Old"})
        deliveries = []

        self.multiplexer.subscribe(Category.CONTENT, deliveries.append, key="ch1")
        # Let the initial absence schedule its durable read, then overtake it.
        await asyncio.sleep(0)
        await self.fast.write("content_data/ch1", {"title": "New"})
        await settle()

        self.assertEqual(deliveries, [{"title": "New"}])

    async def test_settings_subscribe_at_document_level(self):
        await self.fast.write("system_settings", {"theme": "dark"})
        deliveries = []

        self.multiplexer.subscribe(Category.SETTINGS, deliveries.append)
        await settle()

        self.assertEqual(deliveries, [{"theme": "dark"}])

    async def test_unready_fast_store_gives_inert_handle(self):
        await self.durable.write_doc("content_data", "ch1", {"title": "Motion"})
        self.backends.gate.mark_unavailable(StoreId.FAST, "offline")
        deliveries = []

        handle = self.multiplexer.subscribe(Category.CONTENT, deliveries.append, key="ch1")
        await settle()

        self.assertFalse(handle.active)
        self.assertEqual(deliveries, [])

    async def test_raising_callback_is_isolated(self):
        deliveries = []

        def flaky(value):
            deliveries.append(value)
            if len(deliveries) == 1:
                raise RuntimeError("render failed")

        self.multiplexer.subscribe(Category.CONTENT, flaky, key="ch1")
        await settle()
        await self.fast.write("content_data/ch1", {"n": 1})
        await self.fast.write("content_data/ch1", {"n": 2})

        self.assertEqual(deliveries, [{"n": 1}, {"n": 2}])
        self.assertIn(("callback_failed", Category.CONTENT, "ch1"), self.observer.events)

    async def test_cancel_stops_pending_fallback(self):
        await self.durable.write_doc("content_data", "ch1", {"title": "Motion"})
        deliveries = []

        handle = self.multiplexer.subscribe(Category.CONTENT, deliveries.append, key="ch1")
        await asyncio.sleep(0)
        handle.cancel()
        await settle()

        self.assertEqual(deliveries, [])
        self.assertEqual(self.fast.listener_count, 0)

    async def test_stream_yields_deliveries_until_cancelled(self):
        stream = self.multiplexer.stream(Category.CONTENT, key="ch1")
        async with stream:
            await settle()
            await self.fast.write("content_data/ch1", {"n": 1})
            self.assertEqual(await stream.__anext__(), {"n": 1})
        self.assertEqual([item async for item in stream], [])


if __name__ == "__main__":
    unittest.main()
