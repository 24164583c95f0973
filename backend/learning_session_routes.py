import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pymongo import ReturnDocument

from core import (
    build_pagination,
    claim_update,
    db,
    ensure_aware,
    get_current_user,
    is_admin,
    new_id,
    normalize_choice,
    page_window,
    require_text,
    utc_now,
    utc_now_iso,
)
from notification_service import create_notification, notify_admins

logger = logging.getLogger(__name__)

session_router = APIRouter(prefix="/api/skill-exchange/sessions", tags=["Skill Exchange"])

SESSION_STATUSES = ["scheduled", "completed", "cancelled", "missed", "rescheduled"]
OPEN_SESSION_STATUSES = ["scheduled", "rescheduled"]
RESCHEDULABLE_SESSION_STATUSES = OPEN_SESSION_STATUSES + ["missed"]
TERMINAL_SESSION_STATUSES = {"completed", "cancelled"}
MEETING_PLATFORMS = ["zoom", "google-meet", "microsoft-teams", "skype", "discord", "in-person", "other"]
RESOURCE_TYPES = ["document", "video", "website", "code", "other"]


class SessionResource(BaseModel):
    title: str
    url: str
    type: str = "other"


class SessionNote(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    author_id: str
    author_name: str
    author_role: str
    content: str
    created_at: str


class SessionStatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None
    scheduled_date: Optional[datetime] = None


class SessionDetailsUpdate(BaseModel):
    meeting_link: Optional[str] = None
    meeting_platform: Optional[str] = None
    resources: Optional[List[SessionResource]] = None
    learning_outcomes: Optional[List[str]] = None


class SessionNoteCreate(BaseModel):
    content: str


class SessionFlagRequest(BaseModel):
    reason: str


class LearningSessionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    teacher_id: str
    teacher_user_id: str
    teacher_name: str
    learner_id: str
    learner_name: str
    contact_request_id: str
    skill: str
    scheduled_date: str
    duration: int = 60
    status: str
    learner_feedback: Optional[str] = None
    learner_rating: Optional[int] = None
    notes: List[SessionNote] = []
    completed_at: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    meeting_link: Optional[str] = None
    meeting_platform: str = "other"
    resources: List[SessionResource] = []
    learning_outcomes: List[str] = []
    is_flagged: bool = False
    flag_reason: Optional[str] = None
    flagged_by: Optional[str] = None
    created_at: str
    updated_at: str


def ensure_future(value: Optional[datetime], label: str) -> str:
    if value is None:
        raise HTTPException(status_code=400, detail=f"{label} is required")
    aware = ensure_aware(value)
    if aware <= utc_now():
        raise HTTPException(status_code=400, detail=f"{label} must be in the future")
    return aware.isoformat()


def participant_role(session: Dict[str, Any], user_id: str) -> Optional[str]:
    if session.get("teacher_user_id") == user_id:
        return "teacher"
    if session.get("learner_id") == user_id:
        return "learner"
    return None


def other_participant(session: Dict[str, Any], user_id: str) -> Optional[str]:
    if session.get("teacher_user_id") == user_id:
        return session.get("learner_id")
    return session.get("teacher_user_id")


def build_session_doc(request_doc: Dict[str, Any], teacher: Dict[str, Any], scheduled_date: str) -> Dict[str, Any]:
    now_iso = utc_now_iso()
    return {
        "id": new_id(),
        "teacher_id": teacher["id"],
        "teacher_user_id": teacher["added_by"],
        "teacher_name": teacher["name"],
        "learner_id": request_doc["requester_id"],
        "learner_name": request_doc["requester_name"],
        "contact_request_id": request_doc["id"],
        "skill": request_doc["skill"],
        "scheduled_date": scheduled_date,
        "duration": int(request_doc.get("session_duration") or 60),
        "status": "scheduled",
        "learner_feedback": None,
        "learner_rating": None,
        "teacher_feedback": None,
        "notes": [],
        "completed_at": None,
        "cancelled_by": None,
        "cancel_reason": None,
        "meeting_link": None,
        "meeting_platform": "other",
        "resources": [],
        "learning_outcomes": [],
        "is_flagged": False,
        "flag_reason": None,
        "flagged_by": None,
        "flagged_at": None,
        "created_at": now_iso,
        "updated_at": now_iso,
    }


async def materialize_session(
    request_doc: Dict[str, Any],
    teacher: Dict[str, Any],
    scheduled_date: str,
) -> Dict[str, Any]:
    """Returns the one session of an accepted request, creating it on first acceptance.

    A later acceptance with a different date moves the existing session instead
    of inserting another. Completed and cancelled sessions cannot be moved.
    """
    session = await db.learning_sessions.find_one_and_update(
        {"contact_request_id": request_doc["id"]},
        {"$setOnInsert": build_session_doc(request_doc, teacher, scheduled_date)},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    if session["scheduled_date"] != scheduled_date:
        moved = await claim_update(
            db.learning_sessions,
            {"id": session["id"], "status": {"$in": RESCHEDULABLE_SESSION_STATUSES}},
            {"$set": {"scheduled_date": scheduled_date, "status": "rescheduled", "updated_at": utc_now_iso()}},
        )
        if not moved:
            raise HTTPException(status_code=409, detail=f"Session is already {session['status']}")
        session = moved
        logger.info("learning_session_rescheduled session_id=%s request_id=%s", session["id"], request_doc["id"])
    return session


async def complete_open_session(contact_request_id: str) -> Optional[Dict[str, Any]]:
    session = await db.learning_sessions.find_one(
        {"contact_request_id": contact_request_id, "status": {"$in": OPEN_SESSION_STATUSES}},
        {"_id": 0, "id": 1, "status": 1},
    )
    if not session:
        return None
    now_iso = utc_now_iso()
    return await claim_update(
        db.learning_sessions,
        {"id": session["id"], "status": session["status"]},
        {"$set": {"status": "completed", "completed_at": now_iso, "updated_at": now_iso}},
    )


async def record_learner_feedback(contact_request_id: str, rating: int, feedback: Optional[str]) -> None:
    await db.learning_sessions.update_one(
        {"contact_request_id": contact_request_id},
        {"$set": {"learner_rating": rating, "learner_feedback": feedback, "updated_at": utc_now_iso()}},
    )


async def get_session_or_404(session_id: str) -> Dict[str, Any]:
    session = await db.learning_sessions.find_one({"id": session_id}, {"_id": 0})
    if not session:
        raise HTTPException(status_code=404, detail="Learning session not found")
    return session


def ensure_participant(session: Dict[str, Any], current_user: Dict[str, Any]) -> str:
    role = participant_role(session, current_user["id"])
    if role is None:
        raise HTTPException(status_code=403, detail="Only session participants can do this")
    return role


def validate_link(raw_value: Optional[str]) -> Optional[str]:
    value = (raw_value or "").strip()
    if not value:
        return None
    if not value.startswith(("http://", "https://")):
        raise HTTPException(status_code=400, detail="Meeting link must start with http:// or https://")
    return value


@session_router.get("")
async def list_sessions(
    status: Optional[str] = None,
    role: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    query: Dict[str, Any] = {}
    if role == "teacher":
        query["teacher_user_id"] = current_user["id"]
    elif role == "learner":
        query["learner_id"] = current_user["id"]
    elif role:
        raise HTTPException(status_code=400, detail="Invalid role filter")
    elif not is_admin(current_user):
        query["$or"] = [{"teacher_user_id": current_user["id"]}, {"learner_id": current_user["id"]}]
    if status and status != "all":
        query["status"] = normalize_choice(status, SESSION_STATUSES, "status")

    skip, safe_limit = page_window(page, limit)
    docs = (
        await db.learning_sessions.find(query, {"_id": 0})
        .sort("scheduled_date", 1)
        .skip(skip)
        .limit(safe_limit)
        .to_list(safe_limit)
    )
    total = await db.learning_sessions.count_documents(query)
    return {
        "sessions": [LearningSessionResponse(**d) for d in docs],
        "pagination": build_pagination(page, limit, len(docs), total),
    }


@session_router.get("/{session_id}", response_model=LearningSessionResponse)
async def get_session(session_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    session = await get_session_or_404(session_id)
    if not is_admin(current_user):
        ensure_participant(session, current_user)
    return session


@session_router.patch("/{session_id}/status")
async def update_session_status(
    session_id: str,
    payload: SessionStatusUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    session = await get_session_or_404(session_id)
    ensure_participant(session, current_user)
    status = normalize_choice(payload.status, SESSION_STATUSES, "status")
    if session["status"] in TERMINAL_SESSION_STATUSES:
        raise HTTPException(status_code=409, detail=f"Session is already {session['status']}")

    now_iso = utc_now_iso()
    updates: Dict[str, Any] = {"status": status, "updated_at": now_iso}
    if status == "cancelled":
        updates["cancelled_by"] = current_user["id"]
        updates["cancel_reason"] = require_text(payload.reason, "Cancellation reason")
    elif status == "completed":
        updates["completed_at"] = now_iso
    elif status == "rescheduled":
        updates["scheduled_date"] = ensure_future(payload.scheduled_date, "New session date")

    updated = await claim_update(db.learning_sessions, {"id": session_id, "status": session["status"]}, {"$set": updates})
    if not updated:
        raise HTTPException(status_code=409, detail="Session was modified concurrently, please retry")

    logger.info(
        "learning_session_status session_id=%s from=%s to=%s actor_id=%s",
        session_id,
        session["status"],
        status,
        current_user["id"],
    )
    if status == "cancelled":
        title, message, notification_type = (
            "Session cancelled",
            f"Your {session['skill']} session was cancelled: {updates['cancel_reason']}",
            "session_cancelled",
        )
    else:
        title, message, notification_type = (
            "Session updated",
            f"Your {session['skill']} session is now {status}.",
            "session_update",
        )
    await create_notification(
        db,
        other_participant(session, current_user["id"]),
        notification_type,
        title,
        message,
        sender_id=current_user["id"],
        related_model="LearningSession",
        related_id=session_id,
    )
    return {"message": "Session status updated successfully", "session": LearningSessionResponse(**updated)}


@session_router.patch("/{session_id}/details")
async def update_session_details(
    session_id: str,
    payload: SessionDetailsUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    session = await get_session_or_404(session_id)
    if participant_role(session, current_user["id"]) != "teacher":
        raise HTTPException(status_code=403, detail="Only the teacher can edit session details")

    changes = payload.model_dump(exclude_unset=True)
    updates: Dict[str, Any] = {}
    if "meeting_link" in changes:
        updates["meeting_link"] = validate_link(changes["meeting_link"])
    if changes.get("meeting_platform") is not None:
        updates["meeting_platform"] = normalize_choice(changes["meeting_platform"], MEETING_PLATFORMS, "meeting platform")
    if changes.get("resources") is not None:
        resources = []
        for resource in payload.resources or []:
            url = validate_link(resource.url)
            if not url:
                raise HTTPException(status_code=400, detail="Resource url is required")
            resources.append(
                {
                    "title": require_text(resource.title, "Resource title"),
                    "url": url,
                    "type": normalize_choice(resource.type or "other", RESOURCE_TYPES, "resource type"),
                }
            )
        updates["resources"] = resources
    if changes.get("learning_outcomes") is not None:
        updates["learning_outcomes"] = [o.strip() for o in changes["learning_outcomes"] if o and o.strip()]
    if not updates:
        raise HTTPException(status_code=400, detail="No session details to update")
    updates["updated_at"] = utc_now_iso()

    updated = await db.learning_sessions.find_one_and_update(
        {"id": session_id},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    return {"message": "Session details updated successfully", "session": LearningSessionResponse(**updated)}


@session_router.post("/{session_id}/notes", status_code=201)
async def add_session_note(
    session_id: str,
    payload: SessionNoteCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    session = await get_session_or_404(session_id)
    role = ensure_participant(session, current_user)
    note = {
        "id": new_id(),
        "author_id": current_user["id"],
        "author_name": current_user.get("name", ""),
        "author_role": role,
        "content": require_text(payload.content, "Note content"),
        "created_at": utc_now_iso(),
    }
    await db.learning_sessions.update_one(
        {"id": session_id},
        {"$push": {"notes": note}, "$set": {"updated_at": note["created_at"]}},
    )
    return {"message": "Note added successfully", "note": SessionNote(**note)}


@session_router.post("/{session_id}/flag")
async def flag_session(
    session_id: str,
    payload: SessionFlagRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    session = await get_session_or_404(session_id)
    if not is_admin(current_user):
        ensure_participant(session, current_user)
    reason = require_text(payload.reason, "Flag reason")
    now_iso = utc_now_iso()
    updated = await db.learning_sessions.find_one_and_update(
        {"id": session_id},
        {
            "$set": {
                "is_flagged": True,
                "flag_reason": reason,
                "flagged_by": current_user["id"],
                "flagged_at": now_iso,
                "updated_at": now_iso,
            }
        },
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    logger.warning("learning_session_flagged session_id=%s actor_id=%s", session_id, current_user["id"])
    await notify_admins(
        db,
        "system",
        "Learning session flagged",
        f"A {session['skill']} session was flagged: {reason}",
        exclude_user_id=current_user["id"],
        sender_id=current_user["id"],
        related_model="LearningSession",
        related_id=session_id,
        priority="high",
    )
    return {"message": "Session flagged for review", "session": LearningSessionResponse(**updated)}
