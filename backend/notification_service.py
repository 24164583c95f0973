import json
import logging
import os
import uuid
from base64 import b64decode
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {
    "session_request",
    "session_update",
    "session_reminder",
    "session_cancelled",
    "session_feedback",
    "contact_request",
    "contact_response",
    "complaint_new",
    "complaint_status_update",
    "complaint_comment",
    "system",
}
RELATED_MODELS = {"PeerTeacher", "ContactRequest", "LearningSession", "Complaint", "User"}
NOTIFICATION_PRIORITIES = {"low", "normal", "high"}

RELATED_LINKS = {
    "ContactRequest": "/skill-exchange/requests/{id}",
    "LearningSession": "/skill-exchange/sessions/{id}",
    "PeerTeacher": "/skill-exchange/teachers/{id}",
    "Complaint": "/complaints/{id}",
}

PUSH_CHANNELS = {
    "session": "campuslink_sessions",
    "contact": "campuslink_sessions",
    "complaint": "campuslink_complaints",
}
DEFAULT_PUSH_CHANNEL = "campuslink_general"
CREDENTIAL_SOURCES = (
    "FIREBASE_SERVICE_ACCOUNT_JSON_BASE64",
    "FIREBASE_SERVICE_ACCOUNT_JSON",
    "FIREBASE_SERVICE_ACCOUNT_PATH",
)

_push_app_ready = False


def push_enabled() -> bool:
    return os.environ.get("FIREBASE_ENABLED", "false").strip().lower() == "true"


def load_service_account(source: str, value: str) -> credentials.Base:
    if source == "FIREBASE_SERVICE_ACCOUNT_PATH":
        return credentials.Certificate(value)
    if source == "FIREBASE_SERVICE_ACCOUNT_JSON_BASE64":
        value = b64decode(value).decode("utf-8")
    else:
        value = value.strip('"').replace("\\n", "\n")
    return credentials.Certificate(json.loads(value))


def initialize_firebase() -> bool:
    """Starts the firebase app once; returns whether push can be sent."""
    global _push_app_ready
    if _push_app_ready or firebase_admin._apps:
        _push_app_ready = True
        return True
    if not push_enabled():
        return False

    for source in CREDENTIAL_SOURCES:
        value = os.environ.get(source, "").strip()
        if not value:
            continue
        try:
            firebase_admin.initialize_app(load_service_account(source, value))
        except Exception as exc:
            logger.error("firebase_init_failed source=%s error=%s", source, exc)
            return False
        _push_app_ready = True
        logger.info("firebase_initialized source=%s", source)
        return True
    logger.warning("firebase_credentials_missing")
    return False


def push_channel(notification_type: str) -> str:
    return PUSH_CHANNELS.get(notification_type.split("_", 1)[0], DEFAULT_PUSH_CHANNEL)


def build_push_message(notification: Dict[str, Any], token: str) -> messaging.Message:
    return messaging.Message(
        token=token,
        notification=messaging.Notification(title=notification["title"], body=notification["message"]),
        data={
            "notification_id": notification["id"],
            "type": notification["type"],
            "link": notification.get("link") or "",
            "related_id": notification.get("related_id") or "",
        },
        android=messaging.AndroidConfig(
            priority="high" if notification.get("priority") == "high" else "normal",
            notification=messaging.AndroidNotification(channel_id=push_channel(notification["type"]), sound="default"),
        ),
    )


async def deliver_push(db, notification: Dict[str, Any]) -> str:
    """Sends the stored notification to the recipient's device and records the outcome.

    Returns one of `disabled`, `no_token`, `sent`, `unregistered` or `error`.
    A token firebase reports as unregistered is removed from the user.
    """
    if not initialize_firebase():
        return "disabled"
    user = await db.users.find_one({"id": notification["recipient_id"]}, {"_id": 0, "fcm_token": 1})
    token = ((user or {}).get("fcm_token") or "").strip()
    if not token:
        return "no_token"

    try:
        messaging.send(build_push_message(notification, token))
        outcome = "sent"
    except messaging.UnregisteredError:
        outcome = "unregistered"
        await db.users.update_one(
            {"id": notification["recipient_id"], "fcm_token": token},
            {"$unset": {"fcm_token": ""}, "$set": {"fcm_token_invalidated_at": datetime.now(timezone.utc).isoformat()}},
        )
    except Exception as exc:
        outcome = "error"
        logger.error("push_send_failed notification_id=%s error=%s", notification["id"], exc)

    await db.notifications.update_one({"id": notification["id"]}, {"$set": {"push_status": outcome}})
    if outcome != "sent":
        logger.info("push_not_sent recipient_id=%s outcome=%s", notification["recipient_id"], outcome)
    return outcome


def build_notification_doc(
    recipient_id: str,
    notification_type: str,
    title: str,
    message: str,
    sender_id: Optional[str] = None,
    related_model: Optional[str] = None,
    related_id: Optional[str] = None,
    priority: str = "normal",
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")
    if related_model is not None and related_model not in RELATED_MODELS:
        raise ValueError(f"Unknown related model: {related_model}")
    if priority not in NOTIFICATION_PRIORITIES:
        raise ValueError(f"Unknown notification priority: {priority}")

    link = None
    if related_model in RELATED_LINKS and related_id:
        link = RELATED_LINKS[related_model].format(id=related_id)
    return {
        "id": str(uuid.uuid4()),
        "recipient_id": recipient_id,
        "sender_id": sender_id,
        "type": notification_type,
        "title": title,
        "message": message,
        "related_model": related_model,
        "related_id": related_id,
        "link": link,
        "priority": priority,
        "data": data or {},
        "is_read": False,
        "read_at": None,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


async def create_notification(db, recipient_id: Optional[str], notification_type: str, title: str, message: str, **kwargs) -> Optional[Dict[str, Any]]:
    """Stores one notification record and attempts a device push.

    Push delivery is best effort; the stored record is the source of truth.
    """
    if not recipient_id:
        return None
    doc = build_notification_doc(recipient_id, notification_type, title, message, **kwargs)
    await db.notifications.insert_one(doc)
    doc.pop("_id", None)
    try:
        await deliver_push(db, doc)
    except Exception as exc:
        logger.error("notification_push_failed notification_id=%s error=%s", doc["id"], exc)
    logger.info(
        "notification_saved recipient_id=%s type=%s related_id=%s",
        recipient_id,
        notification_type,
        doc["related_id"],
    )
    return doc


async def notify_admins(db, notification_type: str, title: str, message: str, exclude_user_id: Optional[str] = None, **kwargs) -> List[Dict[str, Any]]:
    admins = await db.users.find({"role": "admin", "is_active": {"$ne": False}}, {"_id": 0, "id": 1}).to_list(500)
    created: List[Dict[str, Any]] = []
    for admin in admins:
        if admin["id"] == exclude_user_id:
            continue
        doc = await create_notification(db, admin["id"], notification_type, title, message, **kwargs)
        if doc:
            created.append(doc)
    return created
