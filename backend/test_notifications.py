import os
import unittest
from unittest import mock

from fastapi import HTTPException
from firebase_admin import messaging

from campus_testcase import CampusTestCase
import notification_service
from notification_routes import (
    PushTokenUpdateRequest,
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_notification_read,
    register_push_token,
    unread_count,
)
from notification_service import build_notification_doc, create_notification, initialize_firebase, notify_admins


class TestNotificationDoc(unittest.TestCase):
    def test_link_follows_related_model(self):
        doc = build_notification_doc("u1", "complaint_new", "t", "m", related_model="Complaint", related_id="c1")
        self.assertEqual(doc["link"], "/complaints/c1")
        self.assertFalse(doc["is_read"])

    def test_rejects_unknown_values(self):
        with self.assertRaises(ValueError):
            build_notification_doc("u1", "party", "t", "m")
        with self.assertRaises(ValueError):
            build_notification_doc("u1", "system", "t", "m", related_model="Pizza")
        with self.assertRaises(ValueError):
            build_notification_doc("u1", "system", "t", "m", priority="urgent")


class TestNotificationRoutes(CampusTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.user = await self.make_user("Moses")
        self.other = await self.make_user("Ruth")

    async def test_create_skips_missing_recipient(self):
        self.assertIsNone(await create_notification(self.db, None, "system", "t", "m"))
        self.assertEqual(await self.db.notifications.count_documents({}), 0)

    async def test_notify_admins_excludes_actor_and_inactive(self):
        acting = await self.make_user("Admin One", role="admin")
        other_admin = await self.make_user("Admin Two", role="admin")
        await self.make_user("Admin Gone", role="admin", is_active=False)
        created = await notify_admins(self.db, "system", "t", "m", exclude_user_id=acting["id"])
        self.assertEqual([n["recipient_id"] for n in created], [other_admin["id"]])

    async def test_read_flow_is_scoped_to_recipient(self):
        first = await create_notification(self.db, self.user["id"], "system", "Welcome", "Hello")
        await create_notification(self.db, self.user["id"], "system", "Reminder", "Timetable")
        foreign = await create_notification(self.db, self.other["id"], "system", "Other", "Not yours")

        self.assertEqual((await unread_count(current_user=self.user))["unread_count"], 2)
        with self.assertRaises(HTTPException) as ctx:
            await mark_notification_read(foreign["id"], current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 404)

        read = await mark_notification_read(first["id"], current_user=self.user)
        again = await mark_notification_read(first["id"], current_user=self.user)
        self.assertEqual(read["read_at"], again["read_at"])

        unread = await list_notifications(unread_only=True, current_user=self.user)
        self.assertEqual([n["title"] for n in unread], ["Reminder"])

        result = await mark_all_read(current_user=self.user)
        self.assertEqual(result["updated"], 1)
        self.assertEqual((await unread_count(current_user=self.other))["unread_count"], 1)

    async def test_delete_only_own(self):
        foreign = await create_notification(self.db, self.other["id"], "system", "Other", "Not yours")
        with self.assertRaises(HTTPException):
            await delete_notification(foreign["id"], current_user=self.user)
        await delete_notification(foreign["id"], current_user=self.other)
        self.assertEqual(await self.db.notifications.count_documents({}), 0)

    async def test_register_push_token(self):
        with self.assertRaises(HTTPException) as ctx:
            await register_push_token(PushTokenUpdateRequest(fcm_token="short"), current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 400)
        await register_push_token(PushTokenUpdateRequest(fcm_token="x" * 40), current_user=self.user)
        stored = await self.db.users.find_one({"id": self.user["id"]})
        self.assertEqual(stored["fcm_token"], "x" * 40)


DEVICE_TOKEN = "fcm-device-token-0123456789abcdefghij"
NO_CREDENTIALS = {
    "FIREBASE_SERVICE_ACCOUNT_JSON_BASE64": "",
    "FIREBASE_SERVICE_ACCOUNT_JSON": "",
    "FIREBASE_SERVICE_ACCOUNT_PATH": "",
}


class TestPushDelivery(CampusTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.user = await self.make_user("Moses", fcm_token=DEVICE_TOKEN)

    def enable_push(self):
        patcher = mock.patch.object(notification_service, "initialize_firebase", return_value=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def stored(self, notification):
        return await self.db.notifications.find_one({"id": notification["id"]}, {"_id": 0})

    async def test_firebase_stays_off_without_flag_or_credentials(self):
        with mock.patch.dict(os.environ, {"FIREBASE_ENABLED": "false"}):
            self.assertFalse(initialize_firebase())
        with mock.patch.dict(os.environ, {"FIREBASE_ENABLED": "true", **NO_CREDENTIALS}):
            self.assertFalse(initialize_firebase())

    async def test_disabled_push_only_stores_record(self):
        with mock.patch.dict(os.environ, {"FIREBASE_ENABLED": "false"}), mock.patch.object(messaging, "send") as send:
            doc = await create_notification(self.db, self.user["id"], "system", "Welcome", "Hello")
        send.assert_not_called()
        self.assertNotIn("push_status", await self.stored(doc))

    async def test_sent_message_carries_notification_fields(self):
        self.enable_push()
        with mock.patch.object(messaging, "send", return_value="projects/campuslink/messages/1") as send:
            doc = await create_notification(
                self.db,
                self.user["id"],
                "complaint_status_update",
                "Complaint updated",
                "Your complaint is in progress",
                related_model="Complaint",
                related_id="c1",
                priority="high",
            )
        send.assert_called_once()
        message = send.call_args.args[0]
        self.assertEqual(message.token, DEVICE_TOKEN)
        self.assertEqual(message.data["notification_id"], doc["id"])
        self.assertEqual(message.data["link"], "/complaints/c1")
        self.assertEqual(message.android.priority, "high")
        self.assertEqual(message.android.notification.channel_id, "campuslink_complaints")
        self.assertEqual((await self.stored(doc))["push_status"], "sent")

    async def test_unregistered_token_is_cleared(self):
        self.enable_push()
        gone = messaging.UnregisteredError("Requested entity was not found.")
        with mock.patch.object(messaging, "send", side_effect=gone):
            doc = await create_notification(self.db, self.user["id"], "session_reminder", "Reminder", "Session at 3pm")
        self.assertEqual((await self.stored(doc))["push_status"], "unregistered")
        user = await self.db.users.find_one({"id": self.user["id"]})
        self.assertNotIn("fcm_token", user)
        self.assertIsNotNone(user["fcm_token_invalidated_at"])

    async def test_send_failure_keeps_token_and_record(self):
        self.enable_push()
        with mock.patch.object(messaging, "send", side_effect=RuntimeError("fcm unavailable")):
            doc = await create_notification(self.db, self.user["id"], "system", "Notice", "Maintenance tonight")
        self.assertEqual((await self.stored(doc))["push_status"], "error")
        user = await self.db.users.find_one({"id": self.user["id"]})
        self.assertEqual(user["fcm_token"], DEVICE_TOKEN)

    async def test_user_without_token_is_skipped(self):
        self.enable_push()
        other = await self.make_user("Ruth")
        with mock.patch.object(messaging, "send") as send:
            doc = await create_notification(self.db, other["id"], "system", "Notice", "Hello")
        send.assert_not_called()
        self.assertNotIn("push_status", await self.stored(doc))
