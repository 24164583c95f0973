import asyncio
import unittest

from fastapi import HTTPException

from campus_testcase import CampusTestCase
import timetable_routes
from timetable_routes import (
    BulkTimetableRequest,
    TimetableEntryCreate,
    TimetableEntryUpdate,
    bulk_create_entries,
    clear_entries,
    create_entry,
    delete_entry,
    ensure_time_range,
    get_entry,
    list_day_entries,
    list_entries,
    normalize_time,
    times_overlap,
    update_entry,
)


def entry(day="Monday", start="09:00", end="10:00", subject="Calculus", **extra):
    return TimetableEntryCreate(subject=subject, day=day, start_time=start, end_time=end, **extra)


class TestTimetableHelpers(unittest.TestCase):
    def test_normalize_time_pads_hour(self):
        self.assertEqual(normalize_time("9:05", "start time"), "09:05")
        self.assertEqual(normalize_time("23:59", "end time"), "23:59")

    def test_normalize_time_rejects_bad_format(self):
        for raw in ("24:00", "9am", "12:60", "", None):
            with self.assertRaises(HTTPException) as ctx:
                normalize_time(raw, "start time")
            self.assertEqual(ctx.exception.status_code, 400)
            self.assertIn("HH:MM", ctx.exception.detail)

    def test_time_range_requires_end_after_start(self):
        ensure_time_range("09:00", "09:01")
        for start, end in (("10:00", "10:00"), ("11:00", "10:00")):
            with self.assertRaises(HTTPException) as ctx:
                ensure_time_range(start, end)
            self.assertEqual(ctx.exception.status_code, 400)

    def test_touching_intervals_do_not_overlap(self):
        self.assertFalse(times_overlap("09:00", "10:00", "10:00", "11:00"))
        self.assertTrue(times_overlap("09:00", "10:30", "10:00", "11:00"))
        self.assertTrue(times_overlap("09:00", "12:00", "10:00", "11:00"))


class TestTimetableRoutes(CampusTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.user = await self.make_user("Amina")

    async def test_create_rejects_end_before_start(self):
        with self.assertRaises(HTTPException) as ctx:
            await create_entry(entry(start="11:00", end="10:00"), current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(await self.db.timetable_entries.count_documents({}), 0)

    async def test_create_rejects_overlap_with_conflict_details(self):
        first = await create_entry(entry(), current_user=self.user)
        with self.assertRaises(HTTPException) as ctx:
            await create_entry(entry(start="09:30", end="11:00", subject="Physics"), current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.detail["conflicting_entry"]["id"], first["entry"].id)
        self.assertEqual(await self.db.timetable_entries.count_documents({}), 1)

    async def test_adjacent_and_other_day_entries_are_allowed(self):
        await create_entry(entry(), current_user=self.user)
        await create_entry(entry(start="10:00", end="11:00", subject="Physics"), current_user=self.user)
        await create_entry(entry(day="Tuesday", start="09:00", end="10:00"), current_user=self.user)
        result = await list_entries(day=None, current_user=self.user)
        self.assertEqual(result["total_entries"], 3)
        self.assertEqual(list(result["grouped_entries"].keys()), ["Monday", "Tuesday"])

    async def test_other_users_entries_do_not_conflict(self):
        other = await self.make_user("Brian")
        await create_entry(entry(), current_user=other)
        created = await create_entry(entry(), current_user=self.user)
        self.assertEqual(created["entry"].user_id, self.user["id"])

    async def test_list_sorts_by_weekday_then_start(self):
        await create_entry(entry(day="Wednesday", start="08:00", end="09:00"), current_user=self.user)
        await create_entry(entry(day="Monday", start="14:00", end="15:00"), current_user=self.user)
        await create_entry(entry(day="Monday", start="8:00", end="9:00"), current_user=self.user)
        result = await list_entries(day=None, current_user=self.user)
        order = [(e.day, e.start_time) for e in result["entries"]]
        self.assertEqual(order, [("Monday", "08:00"), ("Monday", "14:00"), ("Wednesday", "08:00")])

        monday = await list_day_entries("Monday", current_user=self.user)
        self.assertEqual(monday["count"], 2)

    async def test_update_checks_conflicts_excluding_itself(self):
        first = (await create_entry(entry(), current_user=self.user))["entry"]
        await create_entry(entry(start="11:00", end="12:00", subject="Physics"), current_user=self.user)

        moved = await update_entry(first.id, TimetableEntryUpdate(end_time="10:30"), current_user=self.user)
        self.assertEqual(moved["entry"].end_time, "10:30")

        with self.assertRaises(HTTPException) as ctx:
            await update_entry(first.id, TimetableEntryUpdate(end_time="11:30"), current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 409)

        with self.assertRaises(HTTPException) as ctx:
            await update_entry(first.id, TimetableEntryUpdate(start_time="10:45"), current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_non_owner_cannot_read_update_or_delete(self):
        created = (await create_entry(entry(), current_user=self.user))["entry"]
        intruder = await self.make_user("Chris")
        for call in (
            get_entry(created.id, current_user=intruder),
            update_entry(created.id, TimetableEntryUpdate(subject="Hacked"), current_user=intruder),
            delete_entry(created.id, current_user=intruder),
        ):
            with self.assertRaises(HTTPException) as ctx:
                await call
            self.assertEqual(ctx.exception.status_code, 404)
        stored = await self.db.timetable_entries.find_one({"id": created.id})
        self.assertEqual(stored["subject"], "Calculus")

    async def test_concurrent_creates_admit_one_and_release_lock(self):
        results = await asyncio.gather(
            create_entry(entry(), current_user=self.user),
            create_entry(entry(subject="Physics"), current_user=self.user),
            return_exceptions=True,
        )
        conflicts = [r for r in results if isinstance(r, HTTPException)]
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].status_code, 409)
        self.assertEqual(await self.db.timetable_entries.count_documents({}), 1)
        self.assertEqual(timetable_routes._user_locks, {})
        self.assertEqual(timetable_routes._lock_holders, {})

    async def test_bulk_is_all_or_nothing(self):
        await create_entry(entry(day="Friday", start="13:00", end="14:00"), current_user=self.user)
        payload = BulkTimetableRequest(
            entries=[
                entry(day="Thursday", start="09:00", end="10:00"),
                entry(day="Friday", start="13:30", end="14:30"),
            ]
        )
        with self.assertRaises(HTTPException) as ctx:
            await bulk_create_entries(payload, current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(await self.db.timetable_entries.count_documents({}), 1)

    async def test_bulk_rejects_overlap_inside_batch(self):
        payload = BulkTimetableRequest(
            entries=[entry(start="09:00", end="10:00"), entry(start="09:30", end="10:30", subject="Lab")]
        )
        with self.assertRaises(HTTPException) as ctx:
            await bulk_create_entries(payload, current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 409)

    async def test_bulk_reports_invalid_entry_position(self):
        payload = BulkTimetableRequest(entries=[entry(), entry(day="Someday")])
        with self.assertRaises(HTTPException) as ctx:
            await bulk_create_entries(payload, current_user=self.user)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertTrue(ctx.exception.detail.startswith("Entry 2:"))

    async def test_bulk_creates_and_clear_removes_only_own(self):
        other = await self.make_user("Dana")
        await create_entry(entry(), current_user=other)
        result = await bulk_create_entries(
            BulkTimetableRequest(entries=[entry(), entry(day="Tuesday")]),
            current_user=self.user,
        )
        self.assertEqual(len(result["entries"]), 2)
        cleared = await clear_entries(current_user=self.user)
        self.assertEqual(cleared["deleted_count"], 2)
        self.assertEqual(await self.db.timetable_entries.count_documents({"user_id": other["id"]}), 1)


if __name__ == "__main__":
    unittest.main()
