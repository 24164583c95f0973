import asyncio
import base64
import binascii
import logging
import os
import re
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import bcrypt
import jwt
from dotenv import load_dotenv
from fastapi import Depends, HTTPException, UploadFile
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorClient

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

mongo_url = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get("DB_NAME", "campuslink")]

JWT_SECRET = os.environ.get("JWT_SECRET", "")
ACCESS_TOKEN_MINUTES = int(os.environ.get("ACCESS_TOKEN_MINUTES", "60"))
REFRESH_TOKEN_DAYS = int(os.environ.get("REFRESH_TOKEN_DAYS", "7"))
UPLOAD_DIR = Path(os.environ.get("UPLOAD_DIR", "/tmp/campuslink-uploads"))
MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
MAX_INLINE_IMAGE_BYTES = int(os.environ.get("MAX_INLINE_IMAGE_BYTES", str(2 * 1024 * 1024)))
AUTH_PER_MIN_LIMIT = int(os.environ.get("AUTH_PER_MIN_LIMIT", "20"))
CHAT_PER_MIN_LIMIT = int(os.environ.get("CHAT_PER_MIN_LIMIT", "20"))
AUTO_VERIFY_STUDENTS = os.environ.get("AUTO_VERIFY_STUDENTS", "true").lower() == "true"
ADMIN_SIGNUP_CODE = os.environ.get("ADMIN_SIGNUP_CODE", "").strip()
ANNOUNCEMENT_DEFAULT_TTL_DAYS = int(os.environ.get("ANNOUNCEMENT_DEFAULT_TTL_DAYS", "30"))
LOST_FOUND_TTL_DAYS = int(os.environ.get("LOST_FOUND_TTL_DAYS", "60"))
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "").strip()
GEMINI_API_KEYS = [k.strip() for k in os.environ.get("GEMINI_API_KEYS", "").split(",") if k.strip()]
GEMINI_CHAT_MODEL = os.environ.get("GEMINI_CHAT_MODEL", "gemini-2.0-flash").strip()
GEMINI_TIMEOUT_SECONDS = float(os.environ.get("GEMINI_TIMEOUT_SECONDS", "30"))
MAX_PAGE_SIZE = 100

USER_ROLE_OPTIONS = {"student", "admin"}
SORT_ORDER_OPTIONS = {"asc", "desc"}

IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
ATTACHMENT_MIME_TYPES = IMAGE_MIME_TYPES | {"application/pdf"}
MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}

logger = logging.getLogger(__name__)

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


class InMemoryRateLimiter:
    def __init__(self):
        self._buckets: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str, limit: int, window_seconds: int) -> None:
        now = time.time()
        threshold = now - window_seconds
        async with self._lock:
            events = self._buckets.get(key, [])
            events = [t for t in events if t > threshold]
            if len(events) >= limit:
                raise HTTPException(status_code=429, detail="Rate limit exceeded")
            events.append(now)
            self._buckets[key] = events


rate_limiter = InMemoryRateLimiter()


async def ensure_rate_limit(identity: str, bucket: str, limit: int) -> None:
    await rate_limiter.check(f"{bucket}:{identity}", limit=limit, window_seconds=60)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def ensure_aware(value: datetime) -> datetime:
    """Naive datetimes from clients are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def clean_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    return {k: v for k, v in doc.items() if k != "_id"}


async def claim_update(collection, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Applies `update` only while `query` still matches the stored document.

    `query` must carry the document `id`. Returns the document as written, or
    None when another writer got there first.
    """
    result = await collection.update_one(query, update)
    if not result.matched_count:
        return None
    return await collection.find_one({"id": query["id"]}, {"_id": 0})


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(
    user_id: str,
    email: str,
    role: str,
    token_type: str,
    expires_delta: timedelta,
) -> Tuple[str, str, datetime]:
    jti = new_id()
    expires_at = utc_now() + expires_delta
    payload = {
        "user_id": user_id,
        "email": email,
        "role": role,
        "type": token_type,
        "jti": jti,
        "exp": expires_at,
    }
    token = jwt.encode(payload, JWT_SECRET, algorithm="HS256")
    return token, jti, expires_at


async def persist_refresh_token(user_id: str, jti: str, expires_at: datetime) -> None:
    await db.refresh_tokens.insert_one(
        {
            "jti": jti,
            "user_id": user_id,
            "revoked": False,
            "expires_at": expires_at.isoformat(),
            "created_at": utc_now_iso(),
        }
    )


async def is_token_revoked(jti: str) -> bool:
    revoked = await db.revoked_tokens.find_one({"jti": jti}, {"_id": 0, "jti": 1})
    return revoked is not None


async def revoke_token(jti: str, expires_at: datetime, token_type: str, reason: str = "manual") -> None:
    await db.revoked_tokens.update_one(
        {"jti": jti},
        {
            "$set": {
                "jti": jti,
                "token_type": token_type,
                "expires_at": expires_at.isoformat(),
                "reason": reason,
                "revoked_at": utc_now_iso(),
            }
        },
        upsert=True,
    )
    if token_type == "refresh":
        await db.refresh_tokens.update_one(
            {"jti": jti},
            {"$set": {"revoked": True, "revoked_at": utc_now_iso(), "revoked_reason": reason}},
        )


async def decode_token(token: str, expected_type: str, check_revoked: bool = True) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")

    if payload.get("type") != expected_type:
        raise HTTPException(status_code=401, detail=f"Invalid token type: expected {expected_type}")

    jti = payload.get("jti")
    if not jti:
        raise HTTPException(status_code=401, detail="Malformed token")
    if check_revoked and await is_token_revoked(jti):
        raise HTTPException(status_code=401, detail="Token has been revoked")
    return payload


async def load_active_user(user_id: str) -> Dict[str, Any]:
    user = await db.users.find_one({"id": user_id}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")
    return user


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    payload = await decode_token(credentials.credentials, "access")
    return await load_active_user(payload["user_id"])


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> Optional[Dict[str, Any]]:
    if not credentials:
        return None
    try:
        payload = await decode_token(credentials.credentials, "access")
        return await load_active_user(payload["user_id"])
    except HTTPException:
        # A stale token on a public endpoint reads as anonymous.
        return None


def is_admin(current_user: Optional[Dict[str, Any]]) -> bool:
    if not current_user:
        return False
    return str(current_user.get("role", "")).strip().lower() == "admin"


def ensure_admin_user(current_user: Dict[str, Any]) -> None:
    if not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Admin access required")


def ensure_owner_or_admin(owner_id: Optional[str], current_user: Dict[str, Any], detail: str = "Access denied") -> None:
    if is_admin(current_user):
        return
    if not owner_id or owner_id != current_user.get("id"):
        raise HTTPException(status_code=403, detail=detail)


def normalize_choice(raw_value: Optional[str], options: Iterable[str], label: str) -> str:
    value = (raw_value or "").strip()
    if value not in set(options):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return value


def require_text(raw_value: Optional[str], label: str, min_length: int = 1) -> str:
    value = (raw_value or "").strip()
    if len(value) < min_length:
        if min_length > 1:
            raise HTTPException(status_code=400, detail=f"{label} must be at least {min_length} characters")
        raise HTTPException(status_code=400, detail=f"{label} is required")
    return value


def search_filter(search: Optional[str], fields: List[str]) -> Optional[Dict[str, Any]]:
    text = (search or "").strip()
    if not text:
        return None
    pattern = {"$regex": re.escape(text), "$options": "i"}
    return {"$or": [{field: pattern} for field in fields]}


def get_sort(sort_by: str, sort_order: str, allowed: Iterable[str]) -> List[Tuple[str, int]]:
    if sort_by not in set(allowed):
        raise HTTPException(status_code=400, detail=f"Invalid sort field: {sort_by}")
    order = (sort_order or "desc").strip().lower()
    if order not in SORT_ORDER_OPTIONS:
        raise HTTPException(status_code=400, detail="Invalid sort order. Use asc or desc")
    return [(sort_by, -1 if order == "desc" else 1)]


def page_window(page: int, limit: int) -> Tuple[int, int]:
    safe_limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    safe_page = max(1, int(page))
    return (safe_page - 1) * safe_limit, safe_limit


def build_pagination(page: int, limit: int, count: int, total_count: int) -> Dict[str, int]:
    _, safe_limit = page_window(page, limit)
    return {
        "current": max(1, int(page)),
        "total": (total_count + safe_limit - 1) // safe_limit,
        "count": count,
        "total_count": total_count,
    }


def detect_mime(file_content: bytes) -> str:
    if file_content.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if file_content.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if file_content.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if file_content[:4] == b"RIFF" and file_content[8:12] == b"WEBP":
        return "image/webp"
    if file_content.startswith(b"%PDF-"):
        return "application/pdf"
    return "application/octet-stream"


def ensure_allowed_content(file_content: bytes, declared_mime: Optional[str], allowed: Iterable[str]) -> str:
    allowed_set = set(allowed)
    detected = detect_mime(file_content)
    if detected not in allowed_set:
        kinds = "image and PDF files" if "application/pdf" in allowed_set else "image files"
        raise HTTPException(status_code=400, detail=f"Only {kinds} are allowed")

    # Mobile clients send noisy declared types; the signature decides.
    normalized_declared = (declared_mime or "").split(";")[0].strip().lower()
    if normalized_declared and normalized_declared not in allowed_set and normalized_declared != "application/octet-stream":
        logger.warning(
            "upload_declared_mime_mismatch declared=%s detected=%s",
            normalized_declared,
            detected,
        )
    return detected


async def read_upload_with_limit(file: UploadFile, max_bytes: int) -> Tuple[bytes, int]:
    chunks: List[bytes] = []
    total = 0
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(status_code=413, detail=f"File too large. Max {max_bytes} bytes.")
        chunks.append(chunk)
    if total == 0:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return b"".join(chunks), total


def validate_inline_image(data_url: Optional[str]) -> Optional[str]:
    """Checks a `data:image/...;base64,` string and returns it unchanged."""
    if data_url is None:
        return None
    value = data_url.strip()
    if not value:
        return None
    match = re.match(r"^data:([\w/+.-]+);base64,(.+)$", value, re.DOTALL)
    if not match:
        raise HTTPException(status_code=400, detail="Image must be a base64 data URL")
    try:
        raw = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Image is not valid base64")
    if len(raw) > MAX_INLINE_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail=f"Image too large. Max {MAX_INLINE_IMAGE_BYTES} bytes.")
    ensure_allowed_content(raw, match.group(1), IMAGE_MIME_TYPES)
    return value
