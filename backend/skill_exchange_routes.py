import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pymongo import ReturnDocument

from core import (
    build_pagination,
    claim_update,
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
    utc_now_iso,
)
from learning_session_routes import (
    TERMINAL_SESSION_STATUSES,
    complete_open_session,
    ensure_future,
    materialize_session,
    record_learner_feedback,
)
from notification_service import create_notification

logger = logging.getLogger(__name__)

skill_exchange_router = APIRouter(prefix="/api/skill-exchange", tags=["Skill Exchange"])

TEACHER_TYPES = ["peer", "senior"]
REQUEST_STATUSES = ["pending", "accepted", "declined", "completed"]
REQUEST_TRANSITIONS = {
    "pending": {"accepted", "declined"},
    "accepted": {"accepted", "completed"},
    "declined": set(),
    "completed": set(),
}
TEACHER_SORT_FIELDS = {"created_at", "rating", "total_sessions", "name"}
REQUEST_SORT_FIELDS = {"created_at", "updated_at", "status", "session_date"}


class TeacherCreate(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    linkedin_url: Optional[str] = None
    skills: List[str]
    type: str
    availability: List[str]
    bio: Optional[str] = None


class TeacherUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    linkedin_url: Optional[str] = None
    skills: Optional[List[str]] = None
    type: Optional[str] = None
    availability: Optional[List[str]] = None
    bio: Optional[str] = None
    is_active: Optional[bool] = None


class TeacherResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    linkedin_url: Optional[str] = None
    skills: List[str]
    type: str
    availability: List[str]
    bio: str = ""
    rating: float = 0
    total_ratings: int = 0
    total_sessions: int = 0
    added_by: str
    is_active: bool = True
    is_verified: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[str] = None
    created_at: str
    updated_at: str

    @field_validator("rating")
    @classmethod
    def round_rating(cls, value: float) -> float:
        return round(value or 0, 2)


class ContactRequestCreate(BaseModel):
    teacher_id: str
    skill: str
    message: str
    preferred_time: Optional[str] = None
    requester_name: Optional[str] = None
    requester_email: Optional[EmailStr] = None
    session_duration: int = Field(default=60, ge=15, le=480)


class RequestStatusUpdate(BaseModel):
    status: str
    response_message: Optional[str] = None
    session_date: Optional[datetime] = None


class RequestFeedback(BaseModel):
    rating: int
    feedback: Optional[str] = None


class ContactRequestResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    teacher_id: str
    teacher_name: str
    teacher_user_id: str
    requester_id: str
    requester_name: str
    requester_email: str
    skill: str
    message: str
    preferred_time: str = "Flexible"
    status: str
    response_message: Optional[str] = None
    session_date: Optional[str] = None
    session_duration: int = 60
    session_id: Optional[str] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None
    responded_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str
    updated_at: str


def clean_list(values: Optional[List[str]], label: str) -> List[str]:
    cleaned: List[str] = []
    for value in values or []:
        text = (value or "").strip()
        if text and text.lower() not in {c.lower() for c in cleaned}:
            cleaned.append(text)
    if not cleaned:
        raise HTTPException(status_code=400, detail=f"At least one {label} is required")
    return cleaned


def teacher_offers_skill(teacher: Dict[str, Any], skill: str) -> bool:
    wanted = skill.strip().lower()
    return any(wanted in offered.lower() for offered in teacher.get("skills", []))


async def get_teacher_or_404(teacher_id: str) -> Dict[str, Any]:
    teacher = await db.peer_teachers.find_one({"id": teacher_id}, {"_id": 0})
    if not teacher:
        raise HTTPException(status_code=404, detail="Peer teacher not found")
    return teacher


async def get_request_or_404(request_id: str) -> Dict[str, Any]:
    request_doc = await db.contact_requests.find_one({"id": request_id}, {"_id": 0})
    if not request_doc:
        raise HTTPException(status_code=404, detail="Contact request not found")
    return request_doc


async def ensure_unique_active_email(email: str, exclude_id: Optional[str] = None) -> None:
    query: Dict[str, Any] = {"email": email, "is_active": True}
    if exclude_id:
        query["id"] = {"$ne": exclude_id}
    if await db.peer_teachers.find_one(query, {"_id": 0, "id": 1}):
        raise HTTPException(status_code=400, detail="A teacher with this email already exists")


async def record_teacher_rating(teacher_id: str, rating: int) -> Optional[Dict[str, Any]]:
    """Folds one rating into the profile average.

    Counters move in one `$inc`. The average is written only while the
    stored count still equals the count this call produced.
    """
    counted = await db.peer_teachers.find_one_and_update(
        {"id": teacher_id},
        {"$inc": {"rating_total": rating, "total_ratings": 1, "total_sessions": 1}},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    if not counted:
        return None
    average = counted["rating_total"] / counted["total_ratings"]
    await db.peer_teachers.update_one(
        {"id": teacher_id, "total_ratings": counted["total_ratings"]},
        {"$set": {"rating": average, "updated_at": utc_now_iso()}},
    )
    counted["rating"] = average
    return counted


@skill_exchange_router.get("/teachers")
async def list_teachers(
    skill: Optional[str] = None,
    type: Optional[str] = None,
    search: Optional[str] = None,
    is_active: bool = True,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
):
    query: Dict[str, Any] = {"is_active": is_active}
    if skill and skill != "all":
        query["skills"] = {"$regex": re.escape(skill.strip()), "$options": "i"}
    if type and type != "all":
        query["type"] = normalize_choice(type, TEACHER_TYPES, "teacher type")
    text_filter = search_filter(search, ["name", "bio", "skills"])
    if text_filter:
        query.update(text_filter)

    sort = get_sort(sort_by, sort_order, TEACHER_SORT_FIELDS)
    skip, safe_limit = page_window(page, limit)
    docs = await db.peer_teachers.find(query, {"_id": 0}).sort(sort).skip(skip).limit(safe_limit).to_list(safe_limit)
    total = await db.peer_teachers.count_documents(query)
    return {
        "teachers": [TeacherResponse(**d) for d in docs],
        "pagination": build_pagination(page, limit, len(docs), total),
    }


@skill_exchange_router.get("/teachers/{teacher_id}", response_model=TeacherResponse)
async def get_teacher(teacher_id: str):
    return await get_teacher_or_404(teacher_id)


@skill_exchange_router.post("/teachers", status_code=201)
async def create_teacher(
    payload: TeacherCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    email = str(payload.email).lower()
    await ensure_unique_active_email(email)
    admin_created = is_admin(current_user)
    now_iso = utc_now_iso()
    doc = {
        "id": new_id(),
        "name": require_text(payload.name, "Name"),
        "email": email,
        "phone": (payload.phone or "").strip() or None,
        "linkedin_url": (payload.linkedin_url or "").strip() or None,
        "skills": clean_list(payload.skills, "skill"),
        "type": normalize_choice(payload.type, TEACHER_TYPES, "teacher type"),
        "availability": clean_list(payload.availability, "availability slot"),
        "bio": (payload.bio or "").strip(),
        "rating": 0,
        "rating_total": 0,
        "total_ratings": 0,
        "total_sessions": 0,
        "added_by": current_user["id"],
        "is_active": True,
        "is_verified": admin_created,
        "verified_by": current_user["id"] if admin_created else None,
        "verified_at": now_iso if admin_created else None,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db.peer_teachers.insert_one(doc)
    doc.pop("_id", None)
    logger.info("peer_teacher_created teacher_id=%s added_by=%s verified=%s", doc["id"], current_user["id"], admin_created)
    return {"message": "Peer teacher added successfully", "teacher": TeacherResponse(**doc)}


@skill_exchange_router.put("/teachers/{teacher_id}")
async def update_teacher(
    teacher_id: str,
    payload: TeacherUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    teacher = await get_teacher_or_404(teacher_id)
    ensure_owner_or_admin(teacher.get("added_by"), current_user, "You can only update teachers you added")

    changes = payload.model_dump(exclude_unset=True)
    updates: Dict[str, Any] = {}
    if changes.get("name") is not None:
        updates["name"] = require_text(changes["name"], "Name")
    if changes.get("email") is not None:
        updates["email"] = str(changes["email"]).lower()
    if "phone" in changes:
        updates["phone"] = (changes["phone"] or "").strip() or None
    if "linkedin_url" in changes:
        updates["linkedin_url"] = (changes["linkedin_url"] or "").strip() or None
    if changes.get("skills") is not None:
        updates["skills"] = clean_list(changes["skills"], "skill")
    if changes.get("type") is not None:
        updates["type"] = normalize_choice(changes["type"], TEACHER_TYPES, "teacher type")
    if changes.get("availability") is not None:
        updates["availability"] = clean_list(changes["availability"], "availability slot")
    if "bio" in changes:
        updates["bio"] = (changes["bio"] or "").strip()
    if changes.get("is_active") is not None:
        if not is_admin(current_user):
            raise HTTPException(status_code=403, detail="Only admins can change active status")
        updates["is_active"] = bool(changes["is_active"])
    if not updates:
        raise HTTPException(status_code=400, detail="No teacher fields to update")

    if updates.get("is_active", teacher.get("is_active", True)):
        await ensure_unique_active_email(updates.get("email", teacher["email"]), exclude_id=teacher_id)
    updates["updated_at"] = utc_now_iso()
    updated = await db.peer_teachers.find_one_and_update(
        {"id": teacher_id},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    return {"message": "Peer teacher updated successfully", "teacher": TeacherResponse(**updated)}


@skill_exchange_router.delete("/teachers/{teacher_id}")
async def delete_teacher(teacher_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    teacher = await get_teacher_or_404(teacher_id)
    ensure_owner_or_admin(teacher.get("added_by"), current_user, "You can only delete teachers you added")
    await db.peer_teachers.delete_one({"id": teacher_id})
    logger.info("peer_teacher_deleted teacher_id=%s actor_id=%s", teacher_id, current_user["id"])
    return {"message": "Peer teacher deleted successfully"}


@skill_exchange_router.patch("/teachers/{teacher_id}/verify")
async def verify_teacher(teacher_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    ensure_admin_user(current_user)
    await get_teacher_or_404(teacher_id)
    now_iso = utc_now_iso()
    updated = await db.peer_teachers.find_one_and_update(
        {"id": teacher_id},
        {"$set": {"is_verified": True, "verified_by": current_user["id"], "verified_at": now_iso, "updated_at": now_iso}},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    return {"message": "Peer teacher verified successfully", "teacher": TeacherResponse(**updated)}


@skill_exchange_router.get("/requests")
async def list_requests(
    status: Optional[str] = None,
    teacher_id: Optional[str] = None,
    incoming: bool = False,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    query: Dict[str, Any] = {}
    if incoming:
        query["teacher_user_id"] = current_user["id"]
    elif not is_admin(current_user):
        query["requester_id"] = current_user["id"]
    if status and status != "all":
        query["status"] = normalize_choice(status, REQUEST_STATUSES, "status")
    if teacher_id:
        query["teacher_id"] = teacher_id

    sort = get_sort(sort_by, sort_order, REQUEST_SORT_FIELDS)
    skip, safe_limit = page_window(page, limit)
    docs = await db.contact_requests.find(query, {"_id": 0}).sort(sort).skip(skip).limit(safe_limit).to_list(safe_limit)
    total = await db.contact_requests.count_documents(query)
    return {
        "requests": [ContactRequestResponse(**d) for d in docs],
        "pagination": build_pagination(page, limit, len(docs), total),
    }


@skill_exchange_router.post("/requests", status_code=201)
async def create_request(
    payload: ContactRequestCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    skill = require_text(payload.skill, "Skill")
    message = require_text(payload.message, "Message")
    teacher = await get_teacher_or_404(payload.teacher_id)
    if not teacher.get("is_active", True):
        raise HTTPException(status_code=400, detail="This teacher is not currently active")
    if not teacher_offers_skill(teacher, skill):
        raise HTTPException(status_code=400, detail="Teacher does not offer this skill")
    if teacher.get("added_by") == current_user["id"]:
        raise HTTPException(status_code=400, detail="You cannot send a request to your own teacher profile")

    duplicate = await db.contact_requests.find_one(
        {
            "teacher_id": teacher["id"],
            "requester_id": current_user["id"],
            "status": "pending",
            "skill_key": skill.lower(),
        },
        {"_id": 0, "id": 1},
    )
    if duplicate:
        raise HTTPException(status_code=409, detail="You already have a pending request for this skill")

    now_iso = utc_now_iso()
    doc = {
        "id": new_id(),
        "teacher_id": teacher["id"],
        "teacher_name": teacher["name"],
        "teacher_user_id": teacher["added_by"],
        "requester_id": current_user["id"],
        "requester_name": (payload.requester_name or "").strip() or current_user.get("name", ""),
        "requester_email": str(payload.requester_email or current_user["email"]).lower(),
        "skill": skill,
        "skill_key": skill.lower(),
        "message": message,
        "preferred_time": (payload.preferred_time or "").strip() or "Flexible",
        "status": "pending",
        "response_message": None,
        "session_date": None,
        "session_duration": payload.session_duration,
        "session_id": None,
        "rating": None,
        "feedback": None,
        "responded_at": None,
        "completed_at": None,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db.contact_requests.insert_one(doc)
    doc.pop("_id", None)
    logger.info(
        "contact_request_created request_id=%s teacher_id=%s requester_id=%s",
        doc["id"],
        teacher["id"],
        current_user["id"],
    )
    await create_notification(
        db,
        teacher["added_by"],
        "contact_request",
        "New learning request",
        f"{doc['requester_name']} wants to learn {skill} from {teacher['name']}.",
        sender_id=current_user["id"],
        related_model="ContactRequest",
        related_id=doc["id"],
    )
    return {"message": "Contact request sent successfully", "request": ContactRequestResponse(**doc)}


@skill_exchange_router.patch("/requests/{request_id}/status")
async def update_request_status(
    request_id: str,
    payload: RequestStatusUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    request_doc = await get_request_or_404(request_id)
    ensure_owner_or_admin(request_doc.get("teacher_user_id"), current_user, "Access denied")
    status = normalize_choice(payload.status, REQUEST_STATUSES, "status")
    current_status = request_doc["status"]
    if status not in REQUEST_TRANSITIONS.get(current_status, set()):
        raise HTTPException(status_code=409, detail=f"Cannot change request from {current_status} to {status}")

    now_iso = utc_now_iso()
    updates: Dict[str, Any] = {"status": status, "updated_at": now_iso}
    if payload.response_message and payload.response_message.strip():
        updates["response_message"] = payload.response_message.strip()
    if status == "accepted":
        updates["session_date"] = ensure_future(payload.session_date, "Session date")
        teacher = await get_teacher_or_404(request_doc["teacher_id"])
        existing_session = await db.learning_sessions.find_one(
            {"contact_request_id": request_id}, {"_id": 0, "status": 1}
        )
        if existing_session and existing_session["status"] in TERMINAL_SESSION_STATUSES:
            raise HTTPException(status_code=409, detail=f"Session is already {existing_session['status']}")
    if status in {"accepted", "declined"} and not request_doc.get("responded_at"):
        updates["responded_at"] = now_iso
    if status == "completed":
        updates["completed_at"] = now_iso

    claimed = await claim_update(db.contact_requests, {"id": request_id, "status": current_status}, {"$set": updates})
    if not claimed:
        raise HTTPException(status_code=409, detail="Request was modified concurrently, please retry")

    session = None
    if status == "accepted":
        session = await materialize_session(claimed, teacher, updates["session_date"])
        if claimed.get("session_id") != session["id"]:
            claimed = await db.contact_requests.find_one_and_update(
                {"id": request_id},
                {"$set": {"session_id": session["id"]}},
                return_document=ReturnDocument.AFTER,
                projection={"_id": 0},
            )
    elif status == "completed":
        session = await complete_open_session(request_id)

    logger.info(
        "contact_request_status request_id=%s from=%s to=%s session_id=%s actor_id=%s",
        request_id,
        current_status,
        status,
        session["id"] if session else None,
        current_user["id"],
    )

    skill = claimed["skill"]
    if status == "accepted" and current_status == "accepted":
        await create_notification(
            db,
            claimed["requester_id"],
            "session_update",
            "Session rescheduled",
            f"Your {skill} session with {claimed['teacher_name']} moved to {claimed['session_date']}.",
            sender_id=current_user["id"],
            related_model="LearningSession",
            related_id=session["id"],
        )
    elif status == "accepted":
        await create_notification(
            db,
            claimed["requester_id"],
            "contact_response",
            "Request accepted",
            f"{claimed['teacher_name']} accepted your {skill} request. Session on {claimed['session_date']}.",
            sender_id=current_user["id"],
            related_model="LearningSession",
            related_id=session["id"],
            priority="high",
        )
    elif status == "declined":
        await create_notification(
            db,
            claimed["requester_id"],
            "contact_response",
            "Request declined",
            claimed.get("response_message") or f"{claimed['teacher_name']} declined your {skill} request.",
            sender_id=current_user["id"],
            related_model="ContactRequest",
            related_id=request_id,
        )
    else:
        await create_notification(
            db,
            claimed["requester_id"],
            "session_update",
            "Session completed",
            f"Your {skill} session is complete. Leave a rating for {claimed['teacher_name']}.",
            sender_id=current_user["id"],
            related_model="ContactRequest",
            related_id=request_id,
        )
    return {"message": "Request status updated successfully", "request": ContactRequestResponse(**claimed)}


@skill_exchange_router.patch("/requests/{request_id}/feedback")
async def submit_feedback(
    request_id: str,
    payload: RequestFeedback,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    request_doc = await get_request_or_404(request_id)
    if request_doc.get("requester_id") != current_user["id"]:
        raise HTTPException(status_code=403, detail="You can only rate your own requests")
    if request_doc.get("status") != "completed":
        raise HTTPException(status_code=400, detail="Can only rate completed sessions")
    if payload.rating < 1 or payload.rating > 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")
    if request_doc.get("rating") is not None:
        raise HTTPException(status_code=409, detail="Feedback has already been submitted")

    feedback = (payload.feedback or "").strip() or None
    rated_at = utc_now_iso()
    claimed = await claim_update(
        db.contact_requests,
        {"id": request_id, "requester_id": current_user["id"], "status": "completed", "rating": None},
        {"$set": {"rating": payload.rating, "feedback": feedback, "rated_at": rated_at, "updated_at": rated_at}},
    )
    if not claimed:
        raise HTTPException(status_code=409, detail="Feedback has already been submitted")

    teacher = await record_teacher_rating(claimed["teacher_id"], payload.rating)
    await record_learner_feedback(request_id, payload.rating, feedback)
    logger.info(
        "contact_request_rated request_id=%s teacher_id=%s rating=%s new_average=%s",
        request_id,
        claimed["teacher_id"],
        payload.rating,
        teacher["rating"] if teacher else None,
    )
    await create_notification(
        db,
        claimed.get("teacher_user_id"),
        "session_feedback",
        "New rating received",
        f"{claimed['requester_name']} rated your {claimed['skill']} session {payload.rating}/5.",
        sender_id=current_user["id"],
        related_model="ContactRequest",
        related_id=request_id,
    )
    return {"message": "Feedback submitted successfully", "request": ContactRequestResponse(**claimed)}


@skill_exchange_router.get("/admin/stats")
async def skill_exchange_stats(current_user: Dict[str, Any] = Depends(get_current_user)):
    ensure_admin_user(current_user)
    teachers = db.peer_teachers
    requests = db.contact_requests
    skill_rows = await teachers.aggregate(
        [
            {"$match": {"is_active": True}},
            {"$unwind": "$skills"},
            {"$group": {"_id": "$skills", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": 10},
        ]
    ).to_list(10)
    rating_rows = await teachers.aggregate(
        [
            {"$match": {"is_active": True, "rating": {"$gt": 0}}},
            {"$group": {"_id": None, "avg_rating": {"$avg": "$rating"}}},
        ]
    ).to_list(1)
    recent = (
        await requests.find(
            {},
            {"_id": 0, "id": 1, "skill": 1, "teacher_name": 1, "requester_name": 1, "status": 1, "created_at": 1},
        )
        .sort("created_at", -1)
        .limit(5)
        .to_list(5)
    )
    return {
        "stats": {
            "total_teachers": await teachers.count_documents({}),
            "active_teachers": await teachers.count_documents({"is_active": True}),
            "verified_teachers": await teachers.count_documents({"is_verified": True}),
            "peer_teachers": await teachers.count_documents({"type": "peer", "is_active": True}),
            "senior_mentors": await teachers.count_documents({"type": "senior", "is_active": True}),
            "total_requests": await requests.count_documents({}),
            "pending_requests": await requests.count_documents({"status": "pending"}),
            "completed_requests": await requests.count_documents({"status": "completed"}),
            "scheduled_sessions": await db.learning_sessions.count_documents(
                {"status": {"$in": ["scheduled", "rescheduled"]}}
            ),
            "flagged_sessions": await db.learning_sessions.count_documents({"is_flagged": True}),
            "avg_rating": round(rating_rows[0]["avg_rating"], 2) if rating_rows else 0,
        },
        "skill_stats": [{"skill": row["_id"], "count": int(row["count"])} for row in skill_rows],
        "recent_requests": recent,
    }
