import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pymongo import ReturnDocument

from core import db, ensure_rate_limit, get_current_user, utc_now_iso

logger = logging.getLogger(__name__)

notification_router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

NOTIFICATION_WRITE_PER_MIN_LIMIT = 120


class NotificationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    recipient_id: str
    sender_id: Optional[str] = None
    type: str
    title: str
    message: str
    related_model: Optional[str] = None
    related_id: Optional[str] = None
    link: Optional[str] = None
    priority: str = "normal"
    data: Dict[str, Any] = {}
    is_read: bool = False
    read_at: Optional[str] = None
    created_at: str


class PushTokenUpdateRequest(BaseModel):
    fcm_token: str


@notification_router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    limit: int = 50,
    unread_only: bool = False,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    safe_limit = max(1, min(limit, 200))
    query: Dict[str, Any] = {"recipient_id": current_user["id"]}
    if unread_only:
        query["is_read"] = False
    return await db.notifications.find(query, {"_id": 0}).sort("created_at", -1).to_list(safe_limit)


@notification_router.get("/unread-count")
async def unread_count(current_user: Dict[str, Any] = Depends(get_current_user)):
    count = await db.notifications.count_documents({"recipient_id": current_user["id"], "is_read": False})
    return {"unread_count": count}


@notification_router.post("/register-token")
async def register_push_token(
    payload: PushTokenUpdateRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    await ensure_rate_limit(current_user["id"], "notifications_write_user", NOTIFICATION_WRITE_PER_MIN_LIMIT)
    token = (payload.fcm_token or "").strip()
    if len(token) < 20:
        raise HTTPException(status_code=400, detail="Invalid FCM token")
    await db.users.update_one(
        {"id": current_user["id"]},
        {"$set": {"fcm_token": token, "fcm_token_updated_at": utc_now_iso()}},
    )
    return {"success": True, "message": "FCM token registered"}


@notification_router.post("/read-all")
async def mark_all_read(current_user: Dict[str, Any] = Depends(get_current_user)):
    result = await db.notifications.update_many(
        {"recipient_id": current_user["id"], "is_read": False},
        {"$set": {"is_read": True, "read_at": utc_now_iso()}},
    )
    logger.info("notifications_marked_read user_id=%s count=%s", current_user["id"], result.modified_count)
    return {"message": "All notifications marked as read", "updated": result.modified_count}


@notification_router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    await ensure_rate_limit(current_user["id"], "notifications_write_user", NOTIFICATION_WRITE_PER_MIN_LIMIT)
    existing = await db.notifications.find_one(
        {"id": notification_id, "recipient_id": current_user["id"]},
        {"_id": 0, "id": 1, "is_read": 1, "read_at": 1},
    )
    if not existing:
        raise HTTPException(status_code=404, detail="Notification not found")
    if existing.get("is_read"):
        return {"id": existing["id"], "is_read": True, "read_at": existing.get("read_at")}

    updated = await db.notifications.find_one_and_update(
        {"id": notification_id, "recipient_id": current_user["id"]},
        {"$set": {"is_read": True, "read_at": utc_now_iso()}},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0, "id": 1, "is_read": 1, "read_at": 1},
    )
    return {"id": updated["id"], "is_read": True, "read_at": updated.get("read_at")}


@notification_router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    result = await db.notifications.delete_one({"id": notification_id, "recipient_id": current_user["id"]})
    if not result.deleted_count:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"message": "Notification deleted"}
