import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pymongo import ReturnDocument

from core import db, get_current_user, new_id, normalize_choice, require_text, utc_now_iso

logger = logging.getLogger(__name__)

timetable_router = APIRouter(prefix="/api/timetable", tags=["Timetable"])

WEEK_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
DAY_INDEX = {day: index for index, day in enumerate(WEEK_DAYS)}
ENTRY_TYPE_OPTIONS = {"class", "lab", "tutorial", "exam", "other"}
DEFAULT_ENTRY_COLOR = "bg-blue-100 border-blue-300 text-blue-800"
MAX_BULK_ENTRIES = 100

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

# Serializes check-then-write for one user within this process. A user's
# entry lives only while some request holds or waits on the lock.
_user_locks: Dict[str, asyncio.Lock] = {}
_lock_holders: Dict[str, int] = {}


@asynccontextmanager
async def user_write_lock(user_id: str):
    lock = _user_locks.setdefault(user_id, asyncio.Lock())
    _lock_holders[user_id] = _lock_holders.get(user_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _lock_holders[user_id] -= 1
        if not _lock_holders[user_id]:
            del _lock_holders[user_id]
            del _user_locks[user_id]


class TimetableEntryCreate(BaseModel):
    subject: str
    day: str
    start_time: str
    end_time: str
    location: Optional[str] = None
    color: Optional[str] = None
    type: Optional[str] = None
    instructor: Optional[str] = None
    notes: Optional[str] = None
    is_recurring: bool = True


class TimetableEntryUpdate(BaseModel):
    subject: Optional[str] = None
    day: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None
    color: Optional[str] = None
    type: Optional[str] = None
    instructor: Optional[str] = None
    notes: Optional[str] = None
    is_recurring: Optional[bool] = None


class BulkTimetableRequest(BaseModel):
    entries: List[TimetableEntryCreate]


class TimetableEntryResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    user_id: str
    subject: str
    day: str
    start_time: str
    end_time: str
    location: Optional[str] = None
    color: str = DEFAULT_ENTRY_COLOR
    type: str = "class"
    instructor: Optional[str] = None
    notes: Optional[str] = None
    is_recurring: bool = True
    created_at: str
    updated_at: str


def normalize_time(raw_value: Optional[str], label: str) -> str:
    """Accepts H:MM or HH:MM (24h) and returns zero-padded HH:MM."""
    match = _TIME_PATTERN.match((raw_value or "").strip())
    if not match:
        raise HTTPException(status_code=400, detail=f"Invalid {label} format. Use HH:MM format.")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def ensure_time_range(start_time: str, end_time: str) -> None:
    if start_time >= end_time:
        raise HTTPException(status_code=400, detail="End time must be after start time.")


def times_overlap(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    return start_a < end_b and end_a > start_b


def sort_entries(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(entries, key=lambda e: (DAY_INDEX.get(e["day"], len(WEEK_DAYS)), e["start_time"]))


def group_entries_by_day(entries: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for entry in sort_entries(entries):
        grouped.setdefault(entry["day"], []).append(entry)
    return grouped


def conflict_summary(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": entry.get("id"),
        "subject": entry["subject"],
        "day": entry["day"],
        "start_time": entry["start_time"],
        "end_time": entry["end_time"],
    }


def raise_conflict(entry: Dict[str, Any]) -> None:
    raise HTTPException(
        status_code=409,
        detail={
            "message": "Time conflict with existing entry",
            "conflicting_entry": conflict_summary(entry),
        },
    )


def build_entry_fields(payload: TimetableEntryCreate) -> Dict[str, Any]:
    start_time = normalize_time(payload.start_time, "start time")
    end_time = normalize_time(payload.end_time, "end time")
    ensure_time_range(start_time, end_time)
    return {
        "subject": require_text(payload.subject, "Subject"),
        "day": normalize_choice(payload.day, WEEK_DAYS, "day"),
        "start_time": start_time,
        "end_time": end_time,
        "location": (payload.location or "").strip() or None,
        "color": (payload.color or "").strip() or DEFAULT_ENTRY_COLOR,
        "type": normalize_choice(payload.type or "class", ENTRY_TYPE_OPTIONS, "entry type"),
        "instructor": (payload.instructor or "").strip() or None,
        "notes": (payload.notes or "").strip() or None,
        "is_recurring": payload.is_recurring,
    }


async def find_conflict(
    user_id: str,
    day: str,
    start_time: str,
    end_time: str,
    exclude_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    same_day = await db.timetable_entries.find({"user_id": user_id, "day": day}, {"_id": 0}).to_list(500)
    for entry in sort_entries(same_day):
        if exclude_id and entry["id"] == exclude_id:
            continue
        if times_overlap(start_time, end_time, entry["start_time"], entry["end_time"]):
            return entry
    return None


async def get_owned_entry(entry_id: str, user_id: str) -> Dict[str, Any]:
    entry = await db.timetable_entries.find_one({"id": entry_id, "user_id": user_id}, {"_id": 0})
    if not entry:
        raise HTTPException(status_code=404, detail="Timetable entry not found")
    return entry


@timetable_router.get("")
async def list_entries(
    day: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    query: Dict[str, Any] = {"user_id": current_user["id"]}
    if day:
        query["day"] = normalize_choice(day, WEEK_DAYS, "day")
    docs = await db.timetable_entries.find(query, {"_id": 0}).to_list(1000)
    entries = sort_entries(docs)
    return {
        "entries": [TimetableEntryResponse(**e) for e in entries],
        "grouped_entries": {
            d: [TimetableEntryResponse(**e) for e in items] for d, items in group_entries_by_day(entries).items()
        },
        "total_entries": len(entries),
    }


@timetable_router.get("/day/{day}")
async def list_day_entries(day: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    normalized_day = normalize_choice(day, WEEK_DAYS, "day")
    docs = await db.timetable_entries.find(
        {"user_id": current_user["id"], "day": normalized_day},
        {"_id": 0},
    ).to_list(500)
    entries = sort_entries(docs)
    return {
        "day": normalized_day,
        "entries": [TimetableEntryResponse(**e) for e in entries],
        "count": len(entries),
    }


@timetable_router.get("/{entry_id}", response_model=TimetableEntryResponse)
async def get_entry(entry_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    return await get_owned_entry(entry_id, current_user["id"])


@timetable_router.post("", status_code=201)
async def create_entry(
    payload: TimetableEntryCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    fields = build_entry_fields(payload)
    user_id = current_user["id"]
    async with user_write_lock(user_id):
        conflict = await find_conflict(user_id, fields["day"], fields["start_time"], fields["end_time"])
        if conflict:
            raise_conflict(conflict)
        now_iso = utc_now_iso()
        entry = {"id": new_id(), "user_id": user_id, **fields, "created_at": now_iso, "updated_at": now_iso}
        await db.timetable_entries.insert_one(entry)
    entry.pop("_id", None)
    logger.info("timetable_entry_created user_id=%s entry_id=%s day=%s", user_id, entry["id"], entry["day"])
    return {"message": "Timetable entry created successfully", "entry": TimetableEntryResponse(**entry)}


@timetable_router.put("/{entry_id}")
async def update_entry(
    entry_id: str,
    payload: TimetableEntryUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    user_id = current_user["id"]
    async with user_write_lock(user_id):
        existing = await get_owned_entry(entry_id, user_id)
        changes = payload.model_dump(exclude_unset=True)
        updates: Dict[str, Any] = {}
        if "subject" in changes:
            updates["subject"] = require_text(changes["subject"], "Subject")
        if "day" in changes:
            updates["day"] = normalize_choice(changes["day"], WEEK_DAYS, "day")
        if "start_time" in changes:
            updates["start_time"] = normalize_time(changes["start_time"], "start time")
        if "end_time" in changes:
            updates["end_time"] = normalize_time(changes["end_time"], "end time")
        if "type" in changes:
            updates["type"] = normalize_choice(changes["type"], ENTRY_TYPE_OPTIONS, "entry type")
        if "color" in changes:
            updates["color"] = (changes["color"] or "").strip() or DEFAULT_ENTRY_COLOR
        for field in ("location", "instructor", "notes"):
            if field in changes:
                updates[field] = (changes[field] or "").strip() or None
        if changes.get("is_recurring") is not None:
            updates["is_recurring"] = changes["is_recurring"]

        merged = {**existing, **updates}
        ensure_time_range(merged["start_time"], merged["end_time"])
        conflict = await find_conflict(
            user_id,
            merged["day"],
            merged["start_time"],
            merged["end_time"],
            exclude_id=entry_id,
        )
        if conflict:
            raise_conflict(conflict)

        updates["updated_at"] = utc_now_iso()
        updated = await db.timetable_entries.find_one_and_update(
            {"id": entry_id, "user_id": user_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
        )
    if not updated:
        raise HTTPException(status_code=404, detail="Timetable entry not found")
    return {"message": "Timetable entry updated successfully", "entry": TimetableEntryResponse(**updated)}


@timetable_router.delete("/clear/all")
async def clear_entries(current_user: Dict[str, Any] = Depends(get_current_user)):
    async with user_write_lock(current_user["id"]):
        result = await db.timetable_entries.delete_many({"user_id": current_user["id"]})
    logger.info("timetable_cleared user_id=%s deleted=%s", current_user["id"], result.deleted_count)
    return {"message": "All timetable entries cleared successfully", "deleted_count": result.deleted_count}


@timetable_router.delete("/{entry_id}")
async def delete_entry(entry_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    async with user_write_lock(current_user["id"]):
        await get_owned_entry(entry_id, current_user["id"])
        await db.timetable_entries.delete_one({"id": entry_id, "user_id": current_user["id"]})
    return {"message": "Timetable entry deleted successfully"}


@timetable_router.post("/bulk", status_code=201)
async def bulk_create_entries(
    payload: BulkTimetableRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    if not payload.entries:
        raise HTTPException(status_code=400, detail="Entries array is required")
    if len(payload.entries) > MAX_BULK_ENTRIES:
        raise HTTPException(status_code=400, detail=f"At most {MAX_BULK_ENTRIES} entries can be imported at once")

    candidates: List[Dict[str, Any]] = []
    for index, item in enumerate(payload.entries):
        try:
            candidates.append(build_entry_fields(item))
        except HTTPException as exc:
            raise HTTPException(status_code=exc.status_code, detail=f"Entry {index + 1}: {exc.detail}")

    for i, first in enumerate(candidates):
        for second in candidates[i + 1:]:
            if first["day"] == second["day"] and times_overlap(
                first["start_time"], first["end_time"], second["start_time"], second["end_time"]
            ):
                raise_conflict(second)

    user_id = current_user["id"]
    async with user_write_lock(user_id):
        for candidate in candidates:
            conflict = await find_conflict(user_id, candidate["day"], candidate["start_time"], candidate["end_time"])
            if conflict:
                raise_conflict(conflict)
        now_iso = utc_now_iso()
        docs = [
            {"id": new_id(), "user_id": user_id, **candidate, "created_at": now_iso, "updated_at": now_iso}
            for candidate in candidates
        ]
        await db.timetable_entries.insert_many(docs)
    for doc in docs:
        doc.pop("_id", None)
    logger.info("timetable_bulk_created user_id=%s count=%s", user_id, len(docs))
    return {
        "message": f"{len(docs)} timetable entries created successfully",
        "entries": [TimetableEntryResponse(**doc) for doc in sort_entries(docs)],
    }
