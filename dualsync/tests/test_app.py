import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from dualsync import dependencies
from dualsync.app import create_app
from dualsync.backends import Backends
from dualsync.dependencies import get_backends, get_engine, reset_engine
from dualsync.engine import SyncEngine
from dualsync.types import StoreId


class AdminApiTests(unittest.TestCase):
    def setUp(self):
        self.backends = Backends.in_memory()
        self.engine = SyncEngine(self.backends)
        self.app = create_app()
        self.app.dependency_overrides[get_engine] = lambda: self.engine
        self.client = TestClient(self.app)

    def tearDown(self):
        self.app.dependency_overrides.clear()

    def test_health(self):
        self.backends.gate.mark_unavailable(StoreId.DURABLE, "quota exceeded")
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertFalse(body["ready"])
        self.assertEqual(
            body["stores"]["durable"], {"ready": False, "reason": "quota exceeded"}
        )

    def test_save_and_fetch_user(self):
        user = {"id": "u1", "email": "asha@example.com", "name": "Asha"}
        response = self.client.post("/api/users", json=user)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "SUCCESS")
        self.assertEqual(response.json()["written"], ["durable", "fast"])

        response = self.client.get("/api/users/u1")
        self.assertEqual(response.json(), {"key": "u1", "value": user})

        response = self.client.get("/api/users/by-email", params={"email": "asha@example.com"})
        self.assertEqual(response.json()["value"], user)

    def test_missing_records_are_404(self):
        self.assertEqual(self.client.get("/api/users/ghost").status_code, 404)
        self.assertEqual(self.client.get("/api/settings").status_code, 404)
        self.assertEqual(self.client.get("/api/content/ch9").status_code, 404)

    def test_user_without_id_is_rejected(self):
        response = self.client.post("/api/users", json={"email": "a@x.io"})
        self.assertEqual(response.status_code, 422)

    def test_partial_failure_is_reported(self):
        self.backends.gate.mark_unavailable(StoreId.DURABLE, "quota exceeded")
        response = self.client.put("/api/settings", json={"theme": "light"})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "PARTIAL_FAILURE")
        self.assertEqual(body["failed"], ["durable"])
        self.assertIn("quota exceeded", body["errors"]["durable"])
        self.assertEqual(
            self.client.get("/api/settings").json()["value"], {"theme": "light"}
        )

    def test_non_object_content_only_reaches_fast_store(self):
        response = self.client.put("/api/content/note", json="plain text")
        self.assertEqual(response.json()["status"], "PARTIAL_FAILURE")
        self.assertEqual(self.client.get("/api/content/note").json()["value"], "plain text")

    def test_total_failure_and_skip_status_codes(self):
        self.backends.fast.client.failing_paths.add("content_data")
        self.backends.durable.client.failing_paths.add("content_data")
        response = self.client.put("/api/content/ch1", json={"title": "Motion"})
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["status"], "TOTAL_FAILURE")

        self.backends.gate.mark_unavailable(StoreId.FAST)
        self.backends.gate.mark_unavailable(StoreId.DURABLE)
        response = self.client.put("/api/content/ch1", json={"title": "Motion"})
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["status"], "SKIPPED")

    def test_bulk_content(self):
        response = self.client.post(
            "/api/content/bulk",
            json={"ch1": {"title": "Motion"}, "ch2": {"title": "Forces"}},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["counts"]["fast"], {"succeeded": 2, "failed": 0})
        self.assertEqual(body["keys"]["ch1"], ["durable", "fast"])

        self.assertEqual(self.client.post("/api/content/bulk", json={}).status_code, 422)

    def test_activity_and_test_results(self):
        self.client.post("/api/users", json={"id": "u1"})

        response = self.client.post("/api/users/u1/activity")
        self.assertEqual(response.json()["written"], ["fast"])

        response = self.client.post(
            "/api/users/u1/test-results", json={"testId": "t1", "score": 9}
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["key"].startswith("u1/t1_"))
        self.assertEqual(response.json()["written"], ["durable"])

    def test_activity_for_unknown_user_is_404(self):
        response = self.client.post("/api/users/ghost/activity")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.client.get("/api/users/ghost").status_code, 404)


class LifespanTests(unittest.TestCase):
    def setUp(self):
        reset_engine()

    def tearDown(self):
        reset_engine()

    @patch("dualsync.dependencies.initialize_backends")
    def test_shutdown_forgets_cached_backends(self, mock_initialize):
        backends = Backends.in_memory()
        mock_initialize.return_value = backends

        with TestClient(create_app()) as client:
            self.assertIs(get_backends(), backends)
            self.assertEqual(client.get("/api/health").status_code, 200)

        self.assertIsNone(dependencies._backends)
        self.assertIsNone(dependencies._engine)
        self.assertEqual(backends.fast.client.listener_count, 0)

        mock_initialize.return_value = Backends.in_memory()
        self.assertIsNot(get_backends(), backends)


if __name__ == "__main__":
    unittest.main()
