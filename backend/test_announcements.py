from datetime import timedelta

from fastapi import HTTPException

from campus_testcase import CampusTestCase
from announcement_routes import (
    AnnouncementCreate,
    AnnouncementUpdate,
    announcement_stats,
    create_announcement,
    delete_announcement,
    get_announcement,
    list_announcements,
    mark_announcement_read,
    toggle_pin,
    update_announcement,
)
from core import utc_now


def announcement(**overrides):
    data = {
        "title": "Library hours extended",
        "description": "Open until midnight during exams",
        "category": "Academic",
        "channel": "Library",
    }
    data.update(overrides)
    return AnnouncementCreate(**data)


class TestAnnouncementRoutes(CampusTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.admin = await self.make_user("Dean", role="admin")
        self.student = await self.make_user("Lucy")

    async def publish(self, **overrides):
        return (await create_announcement(announcement(**overrides), current_user=self.admin))["announcement"]

    async def test_students_cannot_publish(self):
        with self.assertRaises(HTTPException) as ctx:
            await create_announcement(announcement(), current_user=self.student)
        self.assertEqual(ctx.exception.status_code, 403)

    async def test_create_validates_category_and_expiry(self):
        with self.assertRaises(HTTPException) as ctx:
            await self.publish(category="Gossip")
        self.assertEqual(ctx.exception.status_code, 400)
        with self.assertRaises(HTTPException) as ctx:
            await self.publish(expires_at=utc_now() - timedelta(minutes=5))
        self.assertEqual(ctx.exception.status_code, 400)

        created = await self.publish()
        self.assertEqual(created.priority, "medium")
        self.assertGreater(created.expires_at, utc_now().isoformat())

    async def test_list_hides_expired_and_puts_pinned_first(self):
        first = await self.publish(title="Older pinned", is_pinned=True)
        second = await self.publish(title="Newer")
        expired = await self.publish(title="Gone")
        await self.db.announcements.update_one(
            {"id": expired.id}, {"$set": {"expires_at": (utc_now() - timedelta(days=1)).isoformat()}}
        )

        result = await list_announcements(current_user=None)
        self.assertEqual([a.id for a in result["announcements"]], [first.id, second.id])
        self.assertIsNone(result["announcements"][0].is_read)

    async def test_read_receipts_are_recorded_once(self):
        created = await self.publish()
        first = await mark_announcement_read(created.id, current_user=self.student)
        again = await mark_announcement_read(created.id, current_user=self.student)
        self.assertTrue(first["first_read"])
        self.assertFalse(again["first_read"])
        self.assertEqual(await self.db.announcement_reads.count_documents({}), 1)

        listed = await list_announcements(current_user=self.student)
        self.assertTrue(listed["announcements"][0].is_read)

    async def test_get_increments_views(self):
        created = await self.publish()
        await get_announcement(created.id, current_user=None)
        viewed = await get_announcement(created.id, current_user=self.student)
        self.assertEqual(viewed["views"], 2)
        with self.assertRaises(HTTPException) as ctx:
            await get_announcement("missing", current_user=None)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_expired_announcement_hidden_from_readers(self):
        created = await self.publish()
        await self.db.announcements.update_one(
            {"id": created.id}, {"$set": {"expires_at": (utc_now() - timedelta(hours=1)).isoformat()}}
        )
        for reader in (None, self.student):
            with self.assertRaises(HTTPException) as ctx:
                await get_announcement(created.id, current_user=reader)
            self.assertEqual(ctx.exception.status_code, 404)
        stored = await self.db.announcements.find_one({"id": created.id})
        self.assertEqual(stored["views"], 0)

        seen = await get_announcement(created.id, current_user=self.admin)
        self.assertEqual(seen["views"], 1)

    async def test_update_pin_and_delete(self):
        created = await self.publish()
        updated = await update_announcement(
            created.id, AnnouncementUpdate(priority="high", title="Library open 24h"), current_user=self.admin
        )
        self.assertEqual(updated["announcement"].priority, "high")

        pinned = await toggle_pin(created.id, current_user=self.admin)
        self.assertTrue(pinned["announcement"].is_pinned)
        unpinned = await toggle_pin(created.id, current_user=self.admin)
        self.assertFalse(unpinned["announcement"].is_pinned)

        await mark_announcement_read(created.id, current_user=self.student)
        await delete_announcement(created.id, current_user=self.admin)
        self.assertEqual(await self.db.announcements.count_documents({}), 0)
        self.assertEqual(await self.db.announcement_reads.count_documents({}), 0)

    async def test_stats(self):
        await self.publish(is_pinned=True)
        await self.publish(category="Sports", title="Derby day")
        stats = await announcement_stats(current_user=self.admin)
        self.assertEqual(stats["stats"], {"total": 2, "active": 2, "pinned": 1})
        self.assertEqual(len(stats["category_stats"]), 2)
