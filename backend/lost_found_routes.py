import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, EmailStr
from pymongo import ReturnDocument

from core import (
    LOST_FOUND_TTL_DAYS,
    build_pagination,
    db,
    ensure_admin_user,
    ensure_owner_or_admin,
    get_current_user,
    get_sort,
    is_admin,
    new_id,
    normalize_choice,
    page_window,
    require_text,
    search_filter,
    utc_now,
    utc_now_iso,
    validate_inline_image,
)

logger = logging.getLogger(__name__)

lost_found_router = APIRouter(prefix="/api/lost-found", tags=["Lost and Found"])

ITEM_CATEGORIES = ["Electronics", "Clothing", "Accessories", "Books", "Sports Equipment", "Other"]
ITEM_TYPES = {"lost", "found"}
ITEM_STATUSES = {"active", "resolved", "expired"}
ITEM_SORT_FIELDS = {"created_at", "updated_at", "title", "category", "expires_at"}


class LostFoundCreate(BaseModel):
    title: str
    description: str
    category: str
    type: str
    location: str
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None
    image: Optional[str] = None


class LostFoundUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    type: Optional[str] = None
    location: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None
    image: Optional[str] = None
    status: Optional[str] = None


class LostFoundResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    title: str
    description: str
    category: str
    type: str
    location: str
    reported_by: str
    reported_by_name: str
    contact_email: str
    contact_phone: Optional[str] = None
    image: Optional[str] = None
    status: str
    resolved_at: Optional[str] = None
    expires_at: str
    created_at: str
    updated_at: str


async def expire_stale_items() -> int:
    """Flips active items whose expiry has passed to `expired`."""
    now_iso = utc_now_iso()
    result = await db.lost_found_items.update_many(
        {"status": "active", "expires_at": {"$lt": now_iso}},
        {"$set": {"status": "expired", "updated_at": now_iso}},
    )
    if result.modified_count:
        logger.info("lost_found_items_expired count=%s", result.modified_count)
    return result.modified_count


async def get_item_or_404(item_id: str) -> Dict[str, Any]:
    item = await db.lost_found_items.find_one({"id": item_id}, {"_id": 0})
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


@lost_found_router.get("")
async def list_items(
    type: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    status: str = "active",
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
):
    await expire_stale_items()
    query: Dict[str, Any] = {}
    if status != "all":
        query["status"] = normalize_choice(status, ITEM_STATUSES, "status")
    if type and type != "all":
        query["type"] = normalize_choice(type, ITEM_TYPES, "item type")
    if category and category != "all":
        query["category"] = normalize_choice(category, ITEM_CATEGORIES, "category")
    text_filter = search_filter(search, ["title", "description", "location"])
    if text_filter:
        query.update(text_filter)

    sort = get_sort(sort_by, sort_order, ITEM_SORT_FIELDS)
    skip, safe_limit = page_window(page, limit)
    docs = await db.lost_found_items.find(query, {"_id": 0}).sort(sort).skip(skip).limit(safe_limit).to_list(safe_limit)
    total = await db.lost_found_items.count_documents(query)
    return {
        "items": [LostFoundResponse(**d) for d in docs],
        "pagination": build_pagination(page, limit, len(docs), total),
    }


@lost_found_router.get("/user/my-items")
async def list_my_items(
    type: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    await expire_stale_items()
    query: Dict[str, Any] = {"reported_by": current_user["id"]}
    if type and type != "all":
        query["type"] = normalize_choice(type, ITEM_TYPES, "item type")
    if status and status != "all":
        query["status"] = normalize_choice(status, ITEM_STATUSES, "status")

    skip, safe_limit = page_window(page, limit)
    docs = (
        await db.lost_found_items.find(query, {"_id": 0})
        .sort("created_at", -1)
        .skip(skip)
        .limit(safe_limit)
        .to_list(safe_limit)
    )
    total = await db.lost_found_items.count_documents(query)
    return {
        "items": [LostFoundResponse(**d) for d in docs],
        "pagination": build_pagination(page, limit, len(docs), total),
    }


@lost_found_router.get("/admin/stats")
async def lost_found_stats(current_user: Dict[str, Any] = Depends(get_current_user)):
    ensure_admin_user(current_user)
    await expire_stale_items()
    total = await db.lost_found_items.count_documents({})
    active = await db.lost_found_items.count_documents({"status": "active"})
    resolved = await db.lost_found_items.count_documents({"status": "resolved"})
    expired = await db.lost_found_items.count_documents({"status": "expired"})
    lost = await db.lost_found_items.count_documents({"type": "lost", "status": "active"})
    found = await db.lost_found_items.count_documents({"type": "found", "status": "active"})
    category_rows = await db.lost_found_items.aggregate(
        [
            {"$match": {"status": "active"}},
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ]
    ).to_list(len(ITEM_CATEGORIES))
    recent = (
        await db.lost_found_items.find(
            {"status": "active"},
            {"_id": 0, "id": 1, "title": 1, "type": 1, "category": 1, "location": 1, "created_at": 1, "reported_by_name": 1},
        )
        .sort("created_at", -1)
        .limit(5)
        .to_list(5)
    )
    return {
        "stats": {
            "total": total,
            "active": active,
            "resolved": resolved,
            "expired": expired,
            "lost": lost,
            "found": found,
        },
        "category_stats": [{"category": row["_id"], "count": int(row["count"])} for row in category_rows],
        "recent_items": recent,
    }


@lost_found_router.get("/{item_id}", response_model=LostFoundResponse)
async def get_item(item_id: str):
    return await get_item_or_404(item_id)


@lost_found_router.post("", status_code=201)
async def create_item(
    payload: LostFoundCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    now = utc_now()
    doc = {
        "id": new_id(),
        "title": require_text(payload.title, "Title"),
        "description": require_text(payload.description, "Description"),
        "category": normalize_choice(payload.category, ITEM_CATEGORIES, "category"),
        "type": normalize_choice(payload.type, ITEM_TYPES, "item type"),
        "location": require_text(payload.location, "Location"),
        "reported_by": current_user["id"],
        "reported_by_name": current_user.get("name", ""),
        "contact_email": str(payload.contact_email or current_user["email"]).lower(),
        "contact_phone": (payload.contact_phone or "").strip() or None,
        "image": validate_inline_image(payload.image),
        "status": "active",
        "resolved_at": None,
        "expires_at": (now + timedelta(days=LOST_FOUND_TTL_DAYS)).isoformat(),
        "created_at": now.isoformat(),
        "updated_at": now.isoformat(),
    }
    await db.lost_found_items.insert_one(doc)
    doc.pop("_id", None)
    logger.info("lost_found_item_created item_id=%s type=%s user_id=%s", doc["id"], doc["type"], current_user["id"])
    return {"message": "Item reported successfully", "item": LostFoundResponse(**doc)}


@lost_found_router.put("/{item_id}")
async def update_item(
    item_id: str,
    payload: LostFoundUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    item = await get_item_or_404(item_id)
    ensure_owner_or_admin(item.get("reported_by"), current_user, "You can only update your own reports")

    changes = payload.model_dump(exclude_unset=True)
    updates: Dict[str, Any] = {}
    for field, label in (("title", "Title"), ("description", "Description"), ("location", "Location")):
        if changes.get(field) is not None:
            updates[field] = require_text(changes[field], label)
    if changes.get("category") is not None:
        updates["category"] = normalize_choice(changes["category"], ITEM_CATEGORIES, "category")
    if changes.get("type") is not None:
        updates["type"] = normalize_choice(changes["type"], ITEM_TYPES, "item type")
    if changes.get("contact_email") is not None:
        updates["contact_email"] = str(changes["contact_email"]).lower()
    if "contact_phone" in changes:
        updates["contact_phone"] = (changes["contact_phone"] or "").strip() or None
    if "image" in changes:
        updates["image"] = validate_inline_image(changes["image"])

    now_iso = utc_now_iso()
    if changes.get("status") is not None:
        if not is_admin(current_user):
            raise HTTPException(status_code=403, detail="Only admins can change item status")
        status = normalize_choice(changes["status"], ITEM_STATUSES, "status")
        updates["status"] = status
        if status == "resolved" and item.get("status") != "resolved":
            updates["resolved_at"] = now_iso
        elif status != "resolved":
            updates["resolved_at"] = None
        # Reactivation restarts the expiry window.
        if status == "active" and item.get("expires_at", "") <= now_iso:
            updates["expires_at"] = (utc_now() + timedelta(days=LOST_FOUND_TTL_DAYS)).isoformat()

    if not updates:
        raise HTTPException(status_code=400, detail="No item fields to update")
    updates["updated_at"] = now_iso

    updated = await db.lost_found_items.find_one_and_update(
        {"id": item_id},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    return {"message": "Item updated successfully", "item": LostFoundResponse(**updated)}


@lost_found_router.delete("/{item_id}")
async def delete_item(item_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    item = await get_item_or_404(item_id)
    ensure_owner_or_admin(item.get("reported_by"), current_user, "You can only delete your own reports")
    await db.lost_found_items.delete_one({"id": item_id})
    logger.info("lost_found_item_deleted item_id=%s user_id=%s", item_id, current_user["id"])
    return {"message": "Item deleted successfully"}


@lost_found_router.patch("/{item_id}/resolve")
async def resolve_item(item_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    item = await get_item_or_404(item_id)
    ensure_owner_or_admin(item.get("reported_by"), current_user, "You can only resolve your own reports")
    if item.get("status") == "resolved":
        return {"message": "Item already resolved", "item": LostFoundResponse(**item)}

    now_iso = utc_now_iso()
    updated = await db.lost_found_items.find_one_and_update(
        {"id": item_id},
        {"$set": {"status": "resolved", "resolved_at": now_iso, "updated_at": now_iso}},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    return {"message": "Item marked as resolved", "item": LostFoundResponse(**updated)}
