import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, EmailStr, TypeAdapter, ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from core import (
    ACCESS_TOKEN_MINUTES,
    ADMIN_SIGNUP_CODE,
    AUTH_PER_MIN_LIMIT,
    AUTO_VERIFY_STUDENTS,
    IMAGE_MIME_TYPES,
    MAX_UPLOAD_BYTES,
    REFRESH_TOKEN_DAYS,
    USER_ROLE_OPTIONS,
    create_token,
    db,
    decode_token,
    ensure_admin_user,
    ensure_allowed_content,
    ensure_owner_or_admin,
    ensure_rate_limit,
    get_current_user,
    hash_password,
    load_active_user,
    new_id,
    normalize_choice,
    persist_refresh_token,
    read_upload_with_limit,
    require_text,
    revoke_token,
    security,
    utc_now_iso,
    verify_password,
)
from notification_service import create_notification

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])

MIN_PASSWORD_LENGTH = 6
VERIFICATION_DECISIONS = {"verified", "rejected"}

_email_adapter = TypeAdapter(EmailStr)


class UserResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    email: str
    role: str
    avatar: Optional[str] = None
    verification_status: str
    id_card_url: Optional[str] = None
    created_at: datetime


class TokenResponse(BaseModel):
    message: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: UserResponse


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class VerifyStudentRequest(BaseModel):
    status: str


class PendingVerificationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    email: str
    created_at: datetime


def normalize_email(raw_email: str) -> str:
    try:
        return str(_email_adapter.validate_python((raw_email or "").strip())).lower()
    except ValidationError:
        raise HTTPException(status_code=400, detail="A valid email address is required")


def build_user_response(user_doc: Dict[str, Any]) -> UserResponse:
    id_card_url = f"/api/auth/id-card/{user_doc['id']}" if user_doc.get("id_card") else None
    return UserResponse(
        id=user_doc["id"],
        name=user_doc["name"],
        email=user_doc["email"],
        role=user_doc["role"],
        avatar=user_doc.get("avatar"),
        verification_status=user_doc.get("verification_status", "verified"),
        id_card_url=id_card_url,
        created_at=user_doc["created_at"],
    )


async def issue_tokens(user_doc: Dict[str, Any], message: str) -> TokenResponse:
    access_token, _, _ = create_token(
        user_doc["id"], user_doc["email"], user_doc["role"], "access", timedelta(minutes=ACCESS_TOKEN_MINUTES)
    )
    refresh_token, refresh_jti, refresh_exp = create_token(
        user_doc["id"], user_doc["email"], user_doc["role"], "refresh", timedelta(days=REFRESH_TOKEN_DAYS)
    )
    await persist_refresh_token(user_doc["id"], refresh_jti, refresh_exp)
    return TokenResponse(
        message=message,
        access_token=access_token,
        refresh_token=refresh_token,
        user=build_user_response(user_doc),
    )


async def read_id_card(id_card: UploadFile) -> Dict[str, Any]:
    content, size = await read_upload_with_limit(id_card, MAX_UPLOAD_BYTES)
    content_type = ensure_allowed_content(content, id_card.content_type, IMAGE_MIME_TYPES)
    return {"data": content, "content_type": content_type, "size": size}


async def store_id_card(user_id: str, card: Dict[str, Any], uploaded_at: str) -> None:
    await db.user_id_cards.update_one(
        {"user_id": user_id},
        {
            "$set": {
                "user_id": user_id,
                "data": card["data"],
                "content_type": card["content_type"],
                "size": card["size"],
                "uploaded_at": uploaded_at,
            }
        },
        upsert=True,
    )


@auth_router.post("/signup", response_model=TokenResponse, status_code=201)
async def signup(
    request: Request,
    name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    role: str = Form("student"),
    admin_code: Optional[str] = Form(None),
    id_card: Optional[UploadFile] = File(None),
):
    ip = request.client.host if request.client else "unknown"
    await ensure_rate_limit(ip, "auth_signup", AUTH_PER_MIN_LIMIT)

    full_name = require_text(name, "Name", min_length=2)
    normalized_email = normalize_email(email)
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
        )
    normalized_role = normalize_choice((role or "student").lower(), USER_ROLE_OPTIONS, "role")
    if normalized_role == "admin" and (not ADMIN_SIGNUP_CODE or admin_code != ADMIN_SIGNUP_CODE):
        raise HTTPException(status_code=403, detail="Admin registration is not allowed")
    if normalized_role == "student" and id_card is None:
        raise HTTPException(
            status_code=400,
            detail="College ID card image is required for student registration",
        )

    existing_user = await db.users.find_one({"email": normalized_email}, {"_id": 0, "id": 1})
    if existing_user:
        raise HTTPException(status_code=400, detail="User with this email already exists")

    card = await read_id_card(id_card) if normalized_role == "student" and id_card is not None else None
    now_iso = utc_now_iso()
    if normalized_role == "admin" or AUTO_VERIFY_STUDENTS:
        verification_status = "verified"
    else:
        verification_status = "pending"

    user_doc: Dict[str, Any] = {
        "id": new_id(),
        "name": full_name,
        "email": normalized_email,
        "password_hash": hash_password(password),
        "role": normalized_role,
        "avatar": None,
        "is_active": True,
        "verification_status": verification_status,
        "id_card": None,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    if card:
        user_doc["id_card"] = {
            "content_type": card["content_type"],
            "size": card["size"],
            "uploaded_at": now_iso,
            "verified": verification_status == "verified",
        }

    try:
        await db.users.insert_one(user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="User with this email already exists")
    user_doc.pop("_id", None)
    if card:
        await store_id_card(user_doc["id"], card, now_iso)

    logger.info(
        "user_registered user_id=%s role=%s verification_status=%s has_id_card=%s",
        user_doc["id"],
        normalized_role,
        verification_status,
        bool(card),
    )
    return await issue_tokens(user_doc, "User created successfully")


@auth_router.post("/login", response_model=TokenResponse)
async def login(credentials: UserLogin, request: Request):
    ip = request.client.host if request.client else "unknown"
    await ensure_rate_limit(ip, "auth_login", AUTH_PER_MIN_LIMIT)
    normalized_email = credentials.email.lower()

    user_doc = await db.users.find_one({"email": normalized_email}, {"_id": 0})
    if not user_doc or not verify_password(credentials.password, user_doc["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user_doc.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")

    if user_doc.get("role") == "student":
        status = user_doc.get("verification_status", "verified")
        if status == "rejected":
            raise HTTPException(
                status_code=403,
                detail="Your account verification was rejected. Please contact the administrator.",
            )
        if status == "pending" and AUTO_VERIFY_STUDENTS:
            updates: Dict[str, Any] = {"verification_status": "verified", "updated_at": utc_now_iso()}
            if user_doc.get("id_card"):
                updates["id_card.verified"] = True
            user_doc = await db.users.find_one_and_update(
                {"id": user_doc["id"]},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
                projection={"_id": 0},
            )

    logger.info("user_login user_id=%s role=%s", user_doc["id"], user_doc["role"])
    return await issue_tokens(user_doc, "Login successful")


@auth_router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(payload: RefreshTokenRequest):
    token_payload = await decode_token(payload.refresh_token, "refresh")
    stored = await db.refresh_tokens.find_one({"jti": token_payload["jti"]}, {"_id": 0})
    if not stored or stored.get("revoked"):
        raise HTTPException(status_code=401, detail="Refresh token is no longer valid")

    user_doc = await load_active_user(token_payload["user_id"])
    await revoke_token(
        token_payload["jti"],
        datetime.fromtimestamp(token_payload["exp"], tz=timezone.utc),
        "refresh",
        reason="rotated",
    )
    return await issue_tokens(user_doc, "Token refreshed")


@auth_router.post("/logout")
async def logout(
    payload: Optional[LogoutRequest] = None,
    credentials: HTTPAuthorizationCredentials = Depends(security),
):
    access_payload = await decode_token(credentials.credentials, "access")
    await revoke_token(
        access_payload["jti"],
        datetime.fromtimestamp(access_payload["exp"], tz=timezone.utc),
        "access",
        reason="logout",
    )
    if payload and payload.refresh_token:
        refresh_payload = await decode_token(payload.refresh_token, "refresh", check_revoked=False)
        if refresh_payload.get("user_id") == access_payload.get("user_id"):
            await revoke_token(
                refresh_payload["jti"],
                datetime.fromtimestamp(refresh_payload["exp"], tz=timezone.utc),
                "refresh",
                reason="logout",
            )
    return {"message": "Logged out successfully"}


@auth_router.get("/profile")
async def get_profile(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {"user": build_user_response(current_user)}


@auth_router.get("/verify")
async def verify_session(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {"valid": True, "user": build_user_response(current_user)}


@auth_router.put("/profile")
async def update_profile(
    name: Optional[str] = Form(None),
    avatar: Optional[str] = Form(None),
    id_card: Optional[UploadFile] = File(None),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    updates: Dict[str, Any] = {}
    if name is not None:
        updates["name"] = require_text(name, "Name", min_length=2)
    if avatar is not None:
        updates["avatar"] = avatar.strip() or None

    card = None
    if id_card is not None:
        if current_user.get("role") != "student":
            raise HTTPException(status_code=400, detail="Only students can upload an ID card")
        card = await read_id_card(id_card)

    if not updates and not card:
        raise HTTPException(status_code=400, detail="No profile fields to update")

    now_iso = utc_now_iso()
    if card:
        await store_id_card(current_user["id"], card, now_iso)
        updates["id_card"] = {
            "content_type": card["content_type"],
            "size": card["size"],
            "uploaded_at": now_iso,
            "verified": False,
        }
        updates["verification_status"] = "pending"
    updates["updated_at"] = now_iso

    updated = await db.users.find_one_and_update(
        {"id": current_user["id"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "Profile updated successfully", "user": build_user_response(updated)}


@auth_router.put("/change-password")
async def change_password(
    payload: ChangePasswordRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    if len(payload.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"New password must be at least {MIN_PASSWORD_LENGTH} characters long",
        )
    if payload.new_password == payload.current_password:
        raise HTTPException(status_code=400, detail="New password must be different from current password")

    user_doc = await db.users.find_one({"id": current_user["id"]}, {"_id": 0})
    if not user_doc:
        raise HTTPException(status_code=404, detail="User not found")
    if not verify_password(payload.current_password, user_doc["password_hash"]):
        raise HTTPException(status_code=400, detail="Current password is incorrect")

    await db.users.update_one(
        {"id": current_user["id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utc_now_iso()}},
    )
    await db.refresh_tokens.delete_many({"user_id": current_user["id"]})
    return {"message": "Password changed successfully"}


@auth_router.get("/pending-verifications")
async def pending_verifications(current_user: Dict[str, Any] = Depends(get_current_user)):
    ensure_admin_user(current_user)
    docs = await db.users.find(
        {"role": "student", "verification_status": "pending"},
        {"_id": 0, "id": 1, "name": 1, "email": 1, "created_at": 1},
    ).sort("created_at", 1).to_list(500)
    pending: List[PendingVerificationResponse] = [PendingVerificationResponse(**doc) for doc in docs]
    return {"pending_users": pending}


@auth_router.put("/verify-student/{user_id}")
async def verify_student(
    user_id: str,
    payload: VerifyStudentRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    ensure_admin_user(current_user)
    decision = normalize_choice(payload.status, VERIFICATION_DECISIONS, "verification status")

    user_doc = await db.users.find_one({"id": user_id}, {"_id": 0})
    if not user_doc:
        raise HTTPException(status_code=404, detail="User not found")
    if user_doc.get("role") != "student":
        raise HTTPException(status_code=400, detail="User is not a student")

    updates: Dict[str, Any] = {"verification_status": decision, "updated_at": utc_now_iso()}
    if user_doc.get("id_card"):
        updates["id_card.verified"] = decision == "verified"
    updated = await db.users.find_one_and_update(
        {"id": user_id},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    await create_notification(
        db,
        user_id,
        "system",
        "Account verification",
        "Your student account has been verified."
        if decision == "verified"
        else "Your student account verification was rejected. Please contact the administrator.",
        sender_id=current_user["id"],
        related_model="User",
        related_id=user_id,
        priority="high",
    )
    logger.info("student_verification user_id=%s decision=%s admin_id=%s", user_id, decision, current_user["id"])
    return {
        "message": f"Student verification {'approved' if decision == 'verified' else 'rejected'}",
        "user": build_user_response(updated),
    }


@auth_router.get("/id-card/{user_id}")
async def get_id_card(user_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    ensure_owner_or_admin(user_id, current_user, "Not authorized to view this ID card")
    card = await db.user_id_cards.find_one({"user_id": user_id}, {"_id": 0})
    if not card or not card.get("data"):
        raise HTTPException(status_code=404, detail="ID card not found")
    return Response(content=bytes(card["data"]), media_type=card.get("content_type") or "application/octet-stream")
