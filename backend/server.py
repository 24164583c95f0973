import logging
import os
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from announcement_routes import ANNOUNCEMENT_CATEGORIES, ANNOUNCEMENT_PRIORITIES, announcement_router
from auth_routes import auth_router
from chatbot_routes import chat_client, chatbot_router
from complaint_routes import (
    COMPLAINT_CATEGORIES,
    COMPLAINT_PRIORITIES,
    COMPLAINT_STATUSES,
    MAX_ATTACHMENTS_PER_COMPLAINT,
    complaint_router,
)
from core import (
    ACCESS_TOKEN_MINUTES,
    ANNOUNCEMENT_DEFAULT_TTL_DAYS,
    AUTH_PER_MIN_LIMIT,
    CHAT_PER_MIN_LIMIT,
    JWT_SECRET,
    LOST_FOUND_TTL_DAYS,
    MAX_INLINE_IMAGE_BYTES,
    MAX_PAGE_SIZE,
    MAX_UPLOAD_BYTES,
    REFRESH_TOKEN_DAYS,
    UPLOAD_DIR,
    client,
    db,
)
from learning_session_routes import SESSION_STATUSES, session_router
from lost_found_routes import ITEM_CATEGORIES, ITEM_STATUSES, ITEM_TYPES, lost_found_router
from notification_routes import notification_router
from notification_service import initialize_firebase
from skill_exchange_routes import REQUEST_STATUSES, TEACHER_TYPES, skill_exchange_router
from timetable_routes import ENTRY_TYPE_OPTIONS, MAX_BULK_ENTRIES, WEEK_DAYS, timetable_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CampusLink API")


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception(
            "request_id=%s method=%s path=%s status=500 duration_ms=%s error=%s",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
            str(e),
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_id=%s method=%s path=%s status=%s duration_ms=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(
        "HTTPException request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "campuslink"}


@app.get("/api/config")
async def public_config():
    return {
        "max_upload_bytes": MAX_UPLOAD_BYTES,
        "max_inline_image_bytes": MAX_INLINE_IMAGE_BYTES,
        "max_page_size": MAX_PAGE_SIZE,
        "max_attachments_per_complaint": MAX_ATTACHMENTS_PER_COMPLAINT,
        "max_bulk_timetable_entries": MAX_BULK_ENTRIES,
        "announcement_default_ttl_days": ANNOUNCEMENT_DEFAULT_TTL_DAYS,
        "lost_found_ttl_days": LOST_FOUND_TTL_DAYS,
        "access_token_minutes": ACCESS_TOKEN_MINUTES,
        "chatbot_enabled": chat_client is not None,
        "announcement_categories": ANNOUNCEMENT_CATEGORIES,
        "announcement_priorities": sorted(ANNOUNCEMENT_PRIORITIES),
        "lost_found_categories": ITEM_CATEGORIES,
        "lost_found_types": sorted(ITEM_TYPES),
        "lost_found_statuses": sorted(ITEM_STATUSES),
        "complaint_categories": COMPLAINT_CATEGORIES,
        "complaint_priorities": COMPLAINT_PRIORITIES,
        "complaint_statuses": COMPLAINT_STATUSES,
        "teacher_types": TEACHER_TYPES,
        "request_statuses": REQUEST_STATUSES,
        "session_statuses": SESSION_STATUSES,
        "timetable_days": WEEK_DAYS,
        "timetable_entry_types": sorted(ENTRY_TYPE_OPTIONS),
    }


@app.on_event("startup")
async def startup_checks():
    if not JWT_SECRET:
        raise RuntimeError("JWT_SECRET is required")
    limits = {
        "ACCESS_TOKEN_MINUTES": ACCESS_TOKEN_MINUTES,
        "REFRESH_TOKEN_DAYS": REFRESH_TOKEN_DAYS,
        "MAX_UPLOAD_BYTES": MAX_UPLOAD_BYTES,
        "MAX_INLINE_IMAGE_BYTES": MAX_INLINE_IMAGE_BYTES,
        "AUTH_PER_MIN_LIMIT": AUTH_PER_MIN_LIMIT,
        "CHAT_PER_MIN_LIMIT": CHAT_PER_MIN_LIMIT,
        "ANNOUNCEMENT_DEFAULT_TTL_DAYS": ANNOUNCEMENT_DEFAULT_TTL_DAYS,
        "LOST_FOUND_TTL_DAYS": LOST_FOUND_TTL_DAYS,
    }
    for name, value in limits.items():
        if value <= 0:
            raise RuntimeError(f"{name} must be greater than zero")
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    if chat_client is None:
        logger.warning("GEMINI_API_KEY not configured; chatbot will answer with a configuration notice")

    await db.users.create_index("id", unique=True)
    await db.users.create_index("email", unique=True)
    await db.users.create_index([("role", 1), ("verification_status", 1)])
    await db.users.create_index("fcm_token", sparse=True)
    await db.user_id_cards.create_index("user_id", unique=True)
    await db.refresh_tokens.create_index("jti", unique=True)
    await db.refresh_tokens.create_index("user_id")
    await db.revoked_tokens.create_index("jti", unique=True)
    await db.announcements.create_index("id", unique=True)
    await db.announcements.create_index([("is_pinned", -1), ("created_at", -1)])
    await db.announcements.create_index([("category", 1), ("expires_at", 1)])
    await db.announcement_reads.create_index([("user_id", 1), ("announcement_id", 1)], unique=True)
    await db.lost_found_items.create_index("id", unique=True)
    await db.lost_found_items.create_index([("status", 1), ("created_at", -1)])
    await db.lost_found_items.create_index([("reported_by", 1), ("created_at", -1)])
    await db.timetable_entries.create_index("id", unique=True)
    await db.timetable_entries.create_index([("user_id", 1), ("day", 1), ("start_time", 1)])
    await db.complaints.create_index("id", unique=True)
    await db.complaints.create_index([("submitted_by", 1), ("created_at", -1)])
    await db.complaints.create_index([("status", 1), ("created_at", -1)])
    await db.peer_teachers.create_index("id", unique=True)
    await db.peer_teachers.create_index([("is_active", 1), ("rating", -1)])
    await db.peer_teachers.create_index("user_id", sparse=True)
    await db.contact_requests.create_index("id", unique=True)
    await db.contact_requests.create_index([("requester_id", 1), ("created_at", -1)])
    await db.contact_requests.create_index([("teacher_id", 1), ("status", 1)])
    await db.learning_sessions.create_index("id", unique=True)
    await db.learning_sessions.create_index("contact_request_id", unique=True)
    await db.learning_sessions.create_index([("learner_id", 1), ("scheduled_date", -1)])
    await db.learning_sessions.create_index([("teacher_user_id", 1), ("scheduled_date", -1)])
    await db.notifications.create_index("id", unique=True)
    await db.notifications.create_index([("recipient_id", 1), ("created_at", -1)])
    await db.notifications.create_index([("recipient_id", 1), ("is_read", 1)])
    await db.chat_sessions.create_index("id", unique=True)
    await db.chat_sessions.create_index([("user_id", 1), ("updated_at", -1)])
    await db.chat_messages.create_index([("session_id", 1), ("created_at", 1)])

    initialize_firebase()
    logger.info("Startup checks completed")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


app.include_router(auth_router)
app.include_router(announcement_router)
app.include_router(lost_found_router)
app.include_router(timetable_router)
app.include_router(complaint_router)
app.include_router(skill_exchange_router)
app.include_router(session_router)
app.include_router(notification_router)
app.include_router(chatbot_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
