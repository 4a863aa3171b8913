import asyncio
import io
import json
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

from dualsync.backends import Backends
from dualsync.divergence import compare_stores, main, repair
from dualsync.types import Category, StoreId


class DivergenceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backends = Backends.in_memory()
        fast = self.backends.fast.client
        durable = self.backends.durable.client
        await fast.write("users/u1", {"id": "u1"})
        await durable.write_doc("users", "u1", {"id": "u1"})
        await fast.write("users/u2", {"id": "u2"})
        await durable.write_doc("users", "u3", {"id": "u3"})
        await fast.write("users/u4", {"id": "u4", "plan": "pro"})
        await durable.write_doc("users", "u4", {"id": "u4", "plan": "free"})

    async def test_compare_classifies_every_key(self):
        report = await compare_stores(self.backends, Category.USER)

        self.assertFalse(report.in_sync)
        self.assertEqual(report.fast_only, ["u2"])
        self.assertEqual(report.durable_only, ["u3"])
        self.assertEqual(report.differing, ["u4"])
        self.assertEqual(report.identical, 1)

    async def test_repair_converges_with_fast_store_winning(self):
        report = await compare_stores(self.backends, Category.USER)

        self.assertEqual(await repair(self.backends, report), 3)

        after = await compare_stores(self.backends, Category.USER)
        self.assertTrue(after.in_sync)
        self.assertEqual(after.identical, 4)
        self.assertEqual(
            self.backends.durable.client.collections["users"]["u4"]["plan"], "pro"
        )

    async def test_unreadable_store_is_reported_and_not_repaired(self):
        self.backends.gate.mark_unavailable(StoreId.DURABLE, "offline")
        report = await compare_stores(self.backends, Category.USER)

        self.assertEqual(report.errors, ["durable store could not be read"])
        self.assertEqual(await repair(self.backends, report), 0)

    async def test_settings_compare_as_one_record(self):
        await self.backends.fast.write(Category.SETTINGS, "system_settings", {"theme": "dark"})
        report = await compare_stores(self.backends, Category.SETTINGS)
        self.assertEqual(report.fast_only, ["system_settings"])


class CompareCommandTests(unittest.TestCase):
    def run_main(self, backends, argv):
        out = io.StringIO()
        with patch("dualsync.divergence.initialize_backends", return_value=backends):
            with redirect_stdout(out):
                code = main(argv)
        return code, json.loads(out.getvalue())

    def test_in_sync_exits_zero(self):
        code, report = self.run_main(Backends.in_memory(), ["--category", "content_data"])
        self.assertEqual(code, 0)
        self.assertTrue(report["in_sync"])

    def test_divergence_exits_non_zero_unless_repaired(self):
        backends = Backends.in_memory()
        asyncio.run(backends.fast.client.write("users/u1", {"id": "u1"}))

        code, report = self.run_main(backends, ["--category", "users"])
        self.assertEqual(code, 1)
        self.assertEqual(report["fast_only"], ["u1"])

        code, _ = self.run_main(backends, ["--category", "users", "--repair"])
        self.assertEqual(code, 0)
        self.assertEqual(backends.durable.client.collections["users"], {"u1": {"id": "u1"}})


if __name__ == "__main__":
    unittest.main()
