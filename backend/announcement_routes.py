import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pymongo import ReturnDocument

from core import (
    ANNOUNCEMENT_DEFAULT_TTL_DAYS,
    build_pagination,
    db,
    ensure_admin_user,
    ensure_aware,
    get_current_user,
    get_optional_user,
    is_admin,
    new_id,
    normalize_choice,
    page_window,
    require_text,
    search_filter,
    utc_now,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

announcement_router = APIRouter(prefix="/api/announcements", tags=["Announcements"])

ANNOUNCEMENT_CATEGORIES = [
    "Academic",
    "Events",
    "Holidays",
    "Exams",
    "Sports",
    "General",
    "Tech News",
    "Opportunities",
]
ANNOUNCEMENT_PRIORITIES = {"high", "medium", "low"}


class AnnouncementCreate(BaseModel):
    title: str
    description: str
    category: str
    channel: str
    is_pinned: bool = False
    priority: Optional[str] = None
    expires_at: Optional[datetime] = None


class AnnouncementUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    channel: Optional[str] = None
    is_pinned: Optional[bool] = None
    priority: Optional[str] = None
    expires_at: Optional[datetime] = None


class AnnouncementResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    title: str
    description: str
    category: str
    channel: str
    created_by: str
    created_by_name: str
    is_pinned: bool = False
    priority: str = "medium"
    views: int = 0
    expires_at: str
    created_at: str
    updated_at: str
    is_read: Optional[bool] = None


def resolve_expiry(expires_at: Optional[datetime]) -> str:
    if expires_at is None:
        return (utc_now() + timedelta(days=ANNOUNCEMENT_DEFAULT_TTL_DAYS)).isoformat()
    value = ensure_aware(expires_at)
    if value <= utc_now():
        raise HTTPException(status_code=400, detail="Expiry date must be in the future")
    return value.isoformat()


async def get_announcement_or_404(announcement_id: str) -> Dict[str, Any]:
    doc = await db.announcements.find_one({"id": announcement_id}, {"_id": 0})
    if not doc:
        raise HTTPException(status_code=404, detail="Announcement not found")
    return doc


async def increment_views(announcement_id: str, live_only: bool = False) -> Optional[Dict[str, Any]]:
    query: Dict[str, Any] = {"id": announcement_id}
    if live_only:
        query["expires_at"] = {"$gt": utc_now_iso()}
    return await db.announcements.find_one_and_update(
        query,
        {"$inc": {"views": 1}},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )


@announcement_router.get("")
async def list_announcements(
    category: Optional[str] = None,
    channel: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: Optional[Dict[str, Any]] = Depends(get_optional_user),
):
    query: Dict[str, Any] = {"expires_at": {"$gt": utc_now_iso()}}
    if category and category != "all":
        query["category"] = category
    if channel and channel != "all":
        query["channel"] = channel
    text_filter = search_filter(search, ["title", "description"])
    if text_filter:
        query.update(text_filter)

    skip, safe_limit = page_window(page, limit)
    docs = (
        await db.announcements.find(query, {"_id": 0})
        .sort([("is_pinned", -1), ("created_at", -1)])
        .skip(skip)
        .limit(safe_limit)
        .to_list(safe_limit)
    )
    total = await db.announcements.count_documents(query)

    if current_user:
        reads = await db.announcement_reads.find(
            {"user_id": current_user["id"], "announcement_id": {"$in": [d["id"] for d in docs]}},
            {"_id": 0, "announcement_id": 1},
        ).to_list(len(docs) or 1)
        read_ids = {r["announcement_id"] for r in reads}
        for doc in docs:
            doc["is_read"] = doc["id"] in read_ids

    return {
        "announcements": [AnnouncementResponse(**d) for d in docs],
        "pagination": build_pagination(page, limit, len(docs), total),
    }


@announcement_router.get("/admin/stats")
async def announcement_stats(current_user: Dict[str, Any] = Depends(get_current_user)):
    ensure_admin_user(current_user)
    now_iso = utc_now_iso()
    live = {"expires_at": {"$gt": now_iso}}
    total = await db.announcements.count_documents({})
    active = await db.announcements.count_documents(live)
    pinned = await db.announcements.count_documents({**live, "is_pinned": True})
    category_rows = await db.announcements.aggregate(
        [
            {"$match": live},
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ]
    ).to_list(len(ANNOUNCEMENT_CATEGORIES))
    recent = (
        await db.announcements.find(
            live,
            {"_id": 0, "id": 1, "title": 1, "category": 1, "created_at": 1, "created_by_name": 1, "views": 1},
        )
        .sort("created_at", -1)
        .limit(5)
        .to_list(5)
    )
    return {
        "stats": {"total": total, "active": active, "pinned": pinned},
        "category_stats": [{"category": row["_id"], "count": int(row["count"])} for row in category_rows],
        "recent_activity": recent,
    }


@announcement_router.get("/{announcement_id}", response_model=AnnouncementResponse)
async def get_announcement(
    announcement_id: str,
    current_user: Optional[Dict[str, Any]] = Depends(get_optional_user),
):
    updated = await increment_views(announcement_id, live_only=not is_admin(current_user))
    if not updated:
        raise HTTPException(status_code=404, detail="Announcement not found")
    return updated


@announcement_router.post("/{announcement_id}/read")
async def mark_announcement_read(
    announcement_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    await get_announcement_or_404(announcement_id)
    result = await db.announcement_reads.update_one(
        {"user_id": current_user["id"], "announcement_id": announcement_id},
        {
            "$setOnInsert": {
                "id": new_id(),
                "user_id": current_user["id"],
                "announcement_id": announcement_id,
                "read_at": utc_now_iso(),
            }
        },
        upsert=True,
    )
    await increment_views(announcement_id)
    return {"success": True, "first_read": result.upserted_id is not None}


@announcement_router.post("", status_code=201)
async def create_announcement(
    payload: AnnouncementCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    ensure_admin_user(current_user)
    now_iso = utc_now_iso()
    doc = {
        "id": new_id(),
        "title": require_text(payload.title, "Title"),
        "description": require_text(payload.description, "Description"),
        "category": normalize_choice(payload.category, ANNOUNCEMENT_CATEGORIES, "category"),
        "channel": require_text(payload.channel, "Channel"),
        "created_by": current_user["id"],
        "created_by_name": current_user.get("name", ""),
        "is_pinned": bool(payload.is_pinned),
        "priority": normalize_choice(payload.priority or "medium", ANNOUNCEMENT_PRIORITIES, "priority"),
        "views": 0,
        "expires_at": resolve_expiry(payload.expires_at),
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db.announcements.insert_one(doc)
    doc.pop("_id", None)
    logger.info("announcement_created announcement_id=%s category=%s admin_id=%s", doc["id"], doc["category"], current_user["id"])
    return {"message": "Announcement created successfully", "announcement": AnnouncementResponse(**doc)}


@announcement_router.put("/{announcement_id}")
async def update_announcement(
    announcement_id: str,
    payload: AnnouncementUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    ensure_admin_user(current_user)
    await get_announcement_or_404(announcement_id)

    changes = payload.model_dump(exclude_unset=True)
    updates: Dict[str, Any] = {}
    if changes.get("title") is not None:
        updates["title"] = require_text(changes["title"], "Title")
    if changes.get("description") is not None:
        updates["description"] = require_text(changes["description"], "Description")
    if changes.get("category") is not None:
        updates["category"] = normalize_choice(changes["category"], ANNOUNCEMENT_CATEGORIES, "category")
    if changes.get("channel") is not None:
        updates["channel"] = require_text(changes["channel"], "Channel")
    if changes.get("priority") is not None:
        updates["priority"] = normalize_choice(changes["priority"], ANNOUNCEMENT_PRIORITIES, "priority")
    if changes.get("is_pinned") is not None:
        updates["is_pinned"] = bool(changes["is_pinned"])
    if "expires_at" in changes:
        updates["expires_at"] = resolve_expiry(changes["expires_at"])
    if not updates:
        raise HTTPException(status_code=400, detail="No announcement fields to update")
    updates["updated_at"] = utc_now_iso()

    updated = await db.announcements.find_one_and_update(
        {"id": announcement_id},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    return {"message": "Announcement updated successfully", "announcement": AnnouncementResponse(**updated)}


@announcement_router.delete("/{announcement_id}")
async def delete_announcement(
    announcement_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    ensure_admin_user(current_user)
    await get_announcement_or_404(announcement_id)
    await db.announcements.delete_one({"id": announcement_id})
    await db.announcement_reads.delete_many({"announcement_id": announcement_id})
    logger.info("announcement_deleted announcement_id=%s admin_id=%s", announcement_id, current_user["id"])
    return {"message": "Announcement deleted successfully"}


@announcement_router.patch("/{announcement_id}/pin")
async def toggle_pin(
    announcement_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    ensure_admin_user(current_user)
    doc = await get_announcement_or_404(announcement_id)
    pinned = not bool(doc.get("is_pinned"))
    updated = await db.announcements.find_one_and_update(
        {"id": announcement_id},
        {"$set": {"is_pinned": pinned, "updated_at": utc_now_iso()}},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    return {
        "message": f"Announcement {'pinned' if pinned else 'unpinned'} successfully",
        "announcement": AnnouncementResponse(**updated),
    }
