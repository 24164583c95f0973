import asyncio
import os
import unittest
from unittest import mock

os.environ.setdefault("JWT_SECRET", "campuslink-test-secret-0123456789abcdef")

from fastapi.testclient import TestClient

import server
from core import get_current_user


def broken_user_lookup():
    raise RuntimeError("user store unavailable")


class TestServerApp(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(server.app, raise_server_exceptions=False)
        self.addCleanup(server.app.dependency_overrides.clear)

    def test_health_sets_request_id(self):
        first = self.client.get("/api/health")
        second = self.client.get("/api/health")
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json(), {"status": "ok", "service": "campuslink"})
        self.assertTrue(first.headers["X-Request-ID"])
        self.assertNotEqual(first.headers["X-Request-ID"], second.headers["X-Request-ID"])

    def test_config_lists_limits_and_choices(self):
        body = self.client.get("/api/config").json()
        self.assertEqual(body["max_attachments_per_complaint"], 5)
        self.assertEqual(body["max_bulk_timetable_entries"], 100)
        self.assertIn("Monday", body["timetable_days"])
        self.assertIn("cancelled", body["session_statuses"])
        self.assertIn("Electronics", body["lost_found_categories"])

    def test_http_errors_keep_detail_shape(self):
        response = self.client.get("/api/notifications/unread-count")
        self.assertIn(response.status_code, (401, 403))
        self.assertEqual(response.json(), {"detail": "Not authenticated"})

    def test_unhandled_error_becomes_500(self):
        server.app.dependency_overrides[get_current_user] = broken_user_lookup
        response = self.client.get("/api/notifications/unread-count")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"detail": "Internal server error"})


class TestStartupChecks(unittest.TestCase):
    def test_missing_jwt_secret_stops_startup(self):
        with mock.patch.object(server, "JWT_SECRET", ""):
            with self.assertRaises(RuntimeError) as ctx:
                asyncio.run(server.startup_checks())
        self.assertIn("JWT_SECRET", str(ctx.exception))

    def test_non_positive_limit_stops_startup(self):
        with mock.patch.object(server, "LOST_FOUND_TTL_DAYS", 0):
            with self.assertRaises(RuntimeError) as ctx:
                asyncio.run(server.startup_checks())
        self.assertIn("LOST_FOUND_TTL_DAYS", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
