import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, EmailStr

from core import (
    ATTACHMENT_MIME_TYPES,
    MAX_UPLOAD_BYTES,
    MIME_EXTENSIONS,
    UPLOAD_DIR,
    build_pagination,
    db,
    ensure_admin_user,
    ensure_allowed_content,
    ensure_aware,
    ensure_owner_or_admin,
    get_current_user,
    get_sort,
    is_admin,
    new_id,
    normalize_choice,
    page_window,
    read_upload_with_limit,
    require_text,
    search_filter,
    utc_now_iso,
)
from notification_service import create_notification, notify_admins

logger = logging.getLogger(__name__)

complaint_router = APIRouter(prefix="/api/complaints", tags=["Complaints"])

COMPLAINT_CATEGORIES = ["Water", "Electricity", "Cleaning", "Maintenance", "Internet", "Security", "Other"]
COMPLAINT_PRIORITIES = ["low", "medium", "high", "urgent"]
COMPLAINT_STATUSES = ["pending", "in-progress", "resolved"]
COMPLAINT_SORT_FIELDS = {"created_at", "updated_at", "priority", "status", "category", "title"}
MAX_ATTACHMENTS_PER_COMPLAINT = 5


class ComplaintUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    location: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None


class ComplaintStatusUpdate(BaseModel):
    status: str
    assigned_to: Optional[str] = None
    estimated_resolution: Optional[datetime] = None
    comment: Optional[str] = None


class CommentCreate(BaseModel):
    message: str


class ComplaintComment(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    author_id: str
    author_name: str
    author_role: str
    message: str
    created_at: str


class ComplaintAttachment(BaseModel):
    model_config = ConfigDict(extra="ignore")
    filename: str
    original_name: Optional[str] = None
    url: str
    content_type: str
    size: int
    uploaded_by: Optional[str] = None
    uploaded_at: str


class ComplaintResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    title: str
    description: str
    category: str
    status: str
    priority: str
    submitted_by: str
    submitted_by_name: str
    assigned_to: Optional[str] = None
    assigned_to_name: Optional[str] = None
    location: Optional[str] = None
    contact_info: Dict[str, Optional[str]] = {}
    attachments: List[ComplaintAttachment] = []
    comments: List[ComplaintComment] = []
    resolved_at: Optional[str] = None
    estimated_resolution: Optional[str] = None
    created_at: str
    updated_at: str


def complaint_upload_dir() -> Path:
    target = UPLOAD_DIR / "complaints"
    target.mkdir(parents=True, exist_ok=True)
    return target


async def save_attachment(file: UploadFile, uploaded_by: str) -> Dict[str, Any]:
    content, size = await read_upload_with_limit(file, MAX_UPLOAD_BYTES)
    content_type = ensure_allowed_content(content, file.content_type, ATTACHMENT_MIME_TYPES)
    stored_name = f"{new_id()}{MIME_EXTENSIONS[content_type]}"
    file_path = complaint_upload_dir() / stored_name
    async with aiofiles.open(file_path, "wb") as f:
        await f.write(content)
    return {
        "filename": stored_name,
        "original_name": Path(file.filename or stored_name).name,
        "url": f"/api/complaints/attachments/{stored_name}",
        "content_type": content_type,
        "size": size,
        "uploaded_by": uploaded_by,
        "uploaded_at": utc_now_iso(),
    }


def remove_attachment_files(attachments: List[Dict[str, Any]]) -> None:
    for attachment in attachments:
        file_path = complaint_upload_dir() / Path(attachment.get("filename", "")).name
        if file_path.is_file():
            file_path.unlink()


async def get_complaint_or_404(complaint_id: str) -> Dict[str, Any]:
    complaint = await db.complaints.find_one({"id": complaint_id}, {"_id": 0})
    if not complaint:
        raise HTTPException(status_code=404, detail="Complaint not found")
    return complaint


async def get_visible_complaint(complaint_id: str, current_user: Dict[str, Any]) -> Dict[str, Any]:
    complaint = await get_complaint_or_404(complaint_id)
    ensure_owner_or_admin(complaint.get("submitted_by"), current_user, "Access denied")
    return complaint


def build_comment(current_user: Dict[str, Any], message: str) -> Dict[str, Any]:
    return {
        "id": new_id(),
        "author_id": current_user["id"],
        "author_name": current_user.get("name", ""),
        "author_role": current_user.get("role", "student"),
        "message": require_text(message, "Comment message"),
        "created_at": utc_now_iso(),
    }


def resolution_days(complaints: List[Dict[str, Any]]) -> Optional[float]:
    """Mean days from submission to resolution, None when nothing is resolved."""
    durations: List[float] = []
    for complaint in complaints:
        if not complaint.get("resolved_at") or not complaint.get("created_at"):
            continue
        created = ensure_aware(datetime.fromisoformat(complaint["created_at"]))
        resolved = ensure_aware(datetime.fromisoformat(complaint["resolved_at"]))
        durations.append((resolved - created).total_seconds() / 86400)
    if not durations:
        return None
    return round(sum(durations) / len(durations), 1)


@complaint_router.get("")
async def list_complaints(
    status: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    query: Dict[str, Any] = {}
    if not is_admin(current_user):
        query["submitted_by"] = current_user["id"]
    if status and status != "all":
        query["status"] = normalize_choice(status, COMPLAINT_STATUSES, "status")
    if category and category != "all":
        query["category"] = normalize_choice(category, COMPLAINT_CATEGORIES, "category")
    if priority and priority != "all":
        query["priority"] = normalize_choice(priority, COMPLAINT_PRIORITIES, "priority")
    text_filter = search_filter(search, ["title", "description", "location"])
    if text_filter:
        query.update(text_filter)

    sort = get_sort(sort_by, sort_order, COMPLAINT_SORT_FIELDS)
    skip, safe_limit = page_window(page, limit)
    docs = await db.complaints.find(query, {"_id": 0}).sort(sort).skip(skip).limit(safe_limit).to_list(safe_limit)
    total = await db.complaints.count_documents(query)
    return {
        "complaints": [ComplaintResponse(**d) for d in docs],
        "pagination": build_pagination(page, limit, len(docs), total),
    }


@complaint_router.get("/admin/stats")
async def complaint_stats(current_user: Dict[str, Any] = Depends(get_current_user)):
    ensure_admin_user(current_user)
    counts = {status: await db.complaints.count_documents({"status": status}) for status in COMPLAINT_STATUSES}
    total = await db.complaints.count_documents({})
    category_rows = await db.complaints.aggregate(
        [{"$group": {"_id": "$category", "count": {"$sum": 1}}}, {"$sort": {"count": -1}}]
    ).to_list(len(COMPLAINT_CATEGORIES))
    priority_rows = await db.complaints.aggregate(
        [{"$group": {"_id": "$priority", "count": {"$sum": 1}}}, {"$sort": {"count": -1}}]
    ).to_list(len(COMPLAINT_PRIORITIES))
    recent = (
        await db.complaints.find(
            {},
            {"_id": 0, "id": 1, "title": 1, "category": 1, "status": 1, "priority": 1, "created_at": 1, "submitted_by_name": 1},
        )
        .sort("created_at", -1)
        .limit(5)
        .to_list(5)
    )
    resolved_docs = await db.complaints.find(
        {"status": "resolved", "resolved_at": {"$ne": None}},
        {"_id": 0, "created_at": 1, "resolved_at": 1},
    ).to_list(5000)
    return {
        "stats": {
            "total": total,
            "pending": counts["pending"],
            "in_progress": counts["in-progress"],
            "resolved": counts["resolved"],
            "avg_resolution_days": resolution_days(resolved_docs),
        },
        "category_stats": [{"category": row["_id"], "count": int(row["count"])} for row in category_rows],
        "priority_stats": [{"priority": row["_id"], "count": int(row["count"])} for row in priority_rows],
        "recent_complaints": recent,
    }


@complaint_router.get("/attachments/{filename}")
async def download_attachment(filename: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    safe_name = Path(filename).name
    if safe_name != filename:
        raise HTTPException(status_code=400, detail="Invalid filename")
    complaint = await db.complaints.find_one({"attachments.filename": safe_name}, {"_id": 0})
    if not complaint:
        raise HTTPException(status_code=404, detail="File not found")
    ensure_owner_or_admin(complaint.get("submitted_by"), current_user, "Access denied")

    file_path = complaint_upload_dir() / safe_name
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    attachment = next(a for a in complaint.get("attachments", []) if a.get("filename") == safe_name)
    return FileResponse(
        file_path,
        media_type=attachment.get("content_type") or "application/octet-stream",
        filename=attachment.get("original_name") or safe_name,
    )


@complaint_router.get("/{complaint_id}", response_model=ComplaintResponse)
async def get_complaint(complaint_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    return await get_visible_complaint(complaint_id, current_user)


@complaint_router.post("", status_code=201)
async def create_complaint(
    title: str = Form(...),
    description: str = Form(...),
    category: str = Form(...),
    priority: str = Form("medium"),
    location: Optional[str] = Form(None),
    contact_email: Optional[str] = Form(None),
    contact_phone: Optional[str] = Form(None),
    attachment: Optional[UploadFile] = File(None),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    now_iso = utc_now_iso()
    doc: Dict[str, Any] = {
        "id": new_id(),
        "title": require_text(title, "Title"),
        "description": require_text(description, "Description"),
        "category": normalize_choice(category, COMPLAINT_CATEGORIES, "category"),
        "status": "pending",
        "priority": normalize_choice(priority or "medium", COMPLAINT_PRIORITIES, "priority"),
        "submitted_by": current_user["id"],
        "submitted_by_name": current_user.get("name", ""),
        "assigned_to": None,
        "assigned_to_name": None,
        "location": (location or "").strip() or None,
        "contact_info": {
            "email": (contact_email or "").strip().lower() or current_user.get("email"),
            "phone": (contact_phone or "").strip() or None,
        },
        "attachments": [],
        "comments": [],
        "resolved_at": None,
        "estimated_resolution": None,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    if attachment is not None and attachment.filename:
        doc["attachments"].append(await save_attachment(attachment, current_user["id"]))

    await db.complaints.insert_one(doc)
    doc.pop("_id", None)
    logger.info(
        "complaint_created complaint_id=%s category=%s priority=%s user_id=%s attachments=%s",
        doc["id"],
        doc["category"],
        doc["priority"],
        current_user["id"],
        len(doc["attachments"]),
    )
    await notify_admins(
        db,
        "complaint_new",
        "New complaint submitted",
        f"{doc['submitted_by_name'] or 'A student'} reported: {doc['title']}",
        exclude_user_id=current_user["id"],
        sender_id=current_user["id"],
        related_model="Complaint",
        related_id=doc["id"],
        priority="high" if doc["priority"] in {"high", "urgent"} else "normal",
    )
    return {"message": "Complaint submitted successfully", "complaint": ComplaintResponse(**doc)}


@complaint_router.put("/{complaint_id}")
async def update_complaint(
    complaint_id: str,
    payload: ComplaintUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    complaint = await get_complaint_or_404(complaint_id)
    if complaint.get("submitted_by") != current_user["id"]:
        raise HTTPException(status_code=403, detail="You can only update your own complaints")
    if complaint.get("status") == "resolved":
        raise HTTPException(status_code=400, detail="Cannot update resolved complaints")

    changes = payload.model_dump(exclude_unset=True)
    updates: Dict[str, Any] = {}
    if changes.get("title") is not None:
        updates["title"] = require_text(changes["title"], "Title")
    if changes.get("description") is not None:
        updates["description"] = require_text(changes["description"], "Description")
    if changes.get("category") is not None:
        updates["category"] = normalize_choice(changes["category"], COMPLAINT_CATEGORIES, "category")
    if changes.get("priority") is not None:
        updates["priority"] = normalize_choice(changes["priority"], COMPLAINT_PRIORITIES, "priority")
    if "location" in changes:
        updates["location"] = (changes["location"] or "").strip() or None
    if changes.get("contact_email") is not None:
        updates["contact_info.email"] = str(changes["contact_email"]).lower()
    if "contact_phone" in changes:
        updates["contact_info.phone"] = (changes["contact_phone"] or "").strip() or None
    if not updates:
        raise HTTPException(status_code=400, detail="No complaint fields to update")
    updates["updated_at"] = utc_now_iso()

    await db.complaints.update_one({"id": complaint_id}, {"$set": updates})
    updated = await get_complaint_or_404(complaint_id)
    return {"message": "Complaint updated successfully", "complaint": ComplaintResponse(**updated)}


@complaint_router.patch("/{complaint_id}/status")
async def update_complaint_status(
    complaint_id: str,
    payload: ComplaintStatusUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    ensure_admin_user(current_user)
    complaint = await get_complaint_or_404(complaint_id)
    status = normalize_choice(payload.status, COMPLAINT_STATUSES, "status")

    now_iso = utc_now_iso()
    updates: Dict[str, Any] = {"status": status, "updated_at": now_iso}
    if status == "resolved" and not complaint.get("resolved_at"):
        updates["resolved_at"] = now_iso
    if payload.assigned_to:
        assignee = await db.users.find_one(
            {"id": payload.assigned_to, "role": "admin"},
            {"_id": 0, "id": 1, "name": 1},
        )
        if not assignee:
            raise HTTPException(status_code=400, detail="Assignee must be an existing admin")
        updates["assigned_to"] = assignee["id"]
        updates["assigned_to_name"] = assignee.get("name")
    if payload.estimated_resolution is not None:
        updates["estimated_resolution"] = ensure_aware(payload.estimated_resolution).isoformat()

    operation: Dict[str, Any] = {"$set": updates}
    if payload.comment and payload.comment.strip():
        operation["$push"] = {"comments": build_comment(current_user, payload.comment)}
    await db.complaints.update_one({"id": complaint_id}, operation)
    updated = await get_complaint_or_404(complaint_id)

    logger.info(
        "complaint_status_updated complaint_id=%s from=%s to=%s admin_id=%s",
        complaint_id,
        complaint.get("status"),
        status,
        current_user["id"],
    )
    if complaint.get("status") != status:
        await create_notification(
            db,
            complaint["submitted_by"],
            "complaint_status_update",
            "Complaint status updated",
            f"Your complaint \"{complaint['title']}\" is now {status}.",
            sender_id=current_user["id"],
            related_model="Complaint",
            related_id=complaint_id,
            priority="high" if status == "resolved" else "normal",
        )
    return {"message": "Complaint status updated successfully", "complaint": ComplaintResponse(**updated)}


@complaint_router.post("/{complaint_id}/comments", status_code=201)
async def add_comment(
    complaint_id: str,
    payload: CommentCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    complaint = await get_visible_complaint(complaint_id, current_user)
    comment = build_comment(current_user, payload.message)
    await db.complaints.update_one(
        {"id": complaint_id},
        {"$push": {"comments": comment}, "$set": {"updated_at": comment["created_at"]}},
    )

    preview = comment["message"][:120]
    if current_user["id"] == complaint.get("submitted_by"):
        await notify_admins(
            db,
            "complaint_comment",
            "New comment on complaint",
            f"{comment['author_name']}: {preview}",
            exclude_user_id=current_user["id"],
            sender_id=current_user["id"],
            related_model="Complaint",
            related_id=complaint_id,
        )
    else:
        await create_notification(
            db,
            complaint.get("submitted_by"),
            "complaint_comment",
            "New comment on your complaint",
            f"{comment['author_name']}: {preview}",
            sender_id=current_user["id"],
            related_model="Complaint",
            related_id=complaint_id,
        )
    return {"message": "Comment added successfully", "comment": ComplaintComment(**comment)}


@complaint_router.post("/{complaint_id}/attachments", status_code=201)
async def add_attachment(
    complaint_id: str,
    attachment: UploadFile = File(...),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    complaint = await get_visible_complaint(complaint_id, current_user)
    if len(complaint.get("attachments", [])) >= MAX_ATTACHMENTS_PER_COMPLAINT:
        raise HTTPException(
            status_code=400,
            detail=f"A complaint can have at most {MAX_ATTACHMENTS_PER_COMPLAINT} attachments",
        )
    record = await save_attachment(attachment, current_user["id"])
    await db.complaints.update_one(
        {"id": complaint_id},
        {"$push": {"attachments": record}, "$set": {"updated_at": record["uploaded_at"]}},
    )
    return {"message": "Attachment uploaded successfully", "attachment": ComplaintAttachment(**record)}


@complaint_router.delete("/{complaint_id}")
async def delete_complaint(complaint_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    complaint = await get_visible_complaint(complaint_id, current_user)
    await db.complaints.delete_one({"id": complaint_id})
    remove_attachment_files(complaint.get("attachments", []))
    logger.info("complaint_deleted complaint_id=%s user_id=%s", complaint_id, current_user["id"])
    return {"message": "Complaint deleted successfully"}
