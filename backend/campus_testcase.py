import os
import unittest
from typing import Any, Dict
from unittest import mock

os.environ.setdefault("JWT_SECRET", "campuslink-test-secret-0123456789abcdef")

from mongomock_motor import AsyncMongoMockClient

import announcement_routes
import auth_routes
import chatbot_routes
import complaint_routes
import core
import learning_session_routes
import lost_found_routes
import notification_routes
import skill_exchange_routes
import timetable_routes

DB_MODULES = (
    core,
    auth_routes,
    announcement_routes,
    lost_found_routes,
    timetable_routes,
    complaint_routes,
    skill_exchange_routes,
    learning_session_routes,
    notification_routes,
    chatbot_routes,
)


class CampusTestCase(unittest.IsolatedAsyncioTestCase):
    """Runs route handlers against an in-memory database shared by every module."""

    async def asyncSetUp(self):
        self.db = AsyncMongoMockClient()["campuslink_test"]
        for module in DB_MODULES:
            patcher = mock.patch.object(module, "db", self.db)
            patcher.start()
            self.addCleanup(patcher.stop)
        core.rate_limiter._buckets.clear()
        timetable_routes._user_locks.clear()
        timetable_routes._lock_holders.clear()

    async def make_user(self, name: str = "Student", role: str = "student", **overrides) -> Dict[str, Any]:
        now_iso = core.utc_now_iso()
        user = {
            "id": core.new_id(),
            "name": name,
            "email": f"{name.lower().replace(' ', '.')}.{core.new_id()[:8]}@example.com",
            "password_hash": core.hash_password("secret123"),
            "role": role,
            "avatar": None,
            "is_active": True,
            "verification_status": "verified",
            "id_card": None,
            "created_at": now_iso,
            "updated_at": now_iso,
        }
        user.update(overrides)
        await self.db.users.insert_one(user)
        user.pop("_id", None)
        return user

    async def notifications_for(self, user_id: str):
        return await self.db.notifications.find({"recipient_id": user_id}, {"_id": 0}).to_list(100)
