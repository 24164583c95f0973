import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict

from core import (
    CHAT_PER_MIN_LIMIT,
    GEMINI_API_KEY,
    GEMINI_API_KEYS,
    GEMINI_CHAT_MODEL,
    GEMINI_TIMEOUT_SECONDS,
    db,
    ensure_rate_limit,
    get_current_user,
    new_id,
    utc_now,
    utc_now_iso,
)
from gemini_helper import ChatGenerationError, build_chat_client

logger = logging.getLogger(__name__)

chatbot_router = APIRouter(prefix="/api/chatbot", tags=["Chatbot"])

DEFAULT_SESSION_TITLE = "New Conversation"
MAX_MESSAGE_CHARS = 4000
SESSION_TITLE_CHARS = 50
ERROR_REPLY = "Sorry, I encountered an error while processing your request. Please try again later."
UNCONFIGURED_REPLY = (
    "I apologize, but there seems to be an issue with my configuration. "
    "Please contact the administrator to check the chatbot API key."
)

chat_client = build_chat_client(
    gemini_api_key=GEMINI_API_KEY,
    gemini_api_keys=GEMINI_API_KEYS,
    model=GEMINI_CHAT_MODEL,
    timeout_seconds=GEMINI_TIMEOUT_SECONDS,
)


class ChatSessionCreate(BaseModel):
    title: Optional[str] = None


class ChatMessageCreate(BaseModel):
    content: str


class ChatSessionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    user_id: str
    title: str
    message_count: int = 0
    last_message_at: Optional[str] = None
    created_at: str
    updated_at: str


class ChatMessageResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    session_id: Optional[str] = None
    content: str
    is_bot: bool
    created_at: str


def build_system_prompt(user_name: str) -> str:
    today = utc_now().strftime("%A, %d %B %Y")
    return (
        f"You are CampusBot, a helpful AI assistant for the CampusLink platform. Your purpose is to help "
        f"{user_name} with campus-related information, navigation through the platform, and to answer "
        "questions about the university experience.\n\n"
        "Key information about CampusLink:\n"
        "1. CampusLink is a platform for university students and administrators\n"
        "2. It has features for lost & found items, announcements, complaints, and skill exchange\n"
        "3. Students can connect with peer teachers through the platform\n"
        "4. The platform includes a timetable feature\n\n"
        "As CampusBot, you should:\n"
        "- Be friendly, helpful, and concise in your responses\n"
        "- Provide accurate information about campus resources and the platform features\n"
        "- Help students navigate the platform and understand its functionality\n"
        "- Offer guidance on common student issues\n"
        "- Maintain a positive and supportive tone\n\n"
        "If you don't know the answer to a specific question about the university, acknowledge this "
        "limitation and suggest where the student might find that information.\n\n"
        f"The current date is {today}."
    )


def validate_message(content: Optional[str]) -> str:
    text = (content or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message content is required")
    if len(text) > MAX_MESSAGE_CHARS:
        raise HTTPException(status_code=400, detail=f"Message must be at most {MAX_MESSAGE_CHARS} characters")
    return text


def title_from_message(content: str) -> str:
    first_line = content.splitlines()[0].strip()
    if len(first_line) <= SESSION_TITLE_CHARS:
        return first_line
    return first_line[: SESSION_TITLE_CHARS - 3].rstrip() + "..."


async def generate_bot_reply(content: str, user_name: str) -> str:
    if chat_client is None:
        logger.warning("chatbot_not_configured")
        return UNCONFIGURED_REPLY
    try:
        return await chat_client.generate(prompt=content, system_message=build_system_prompt(user_name))
    except ChatGenerationError as exc:
        logger.error("chatbot_generation_failed error=%s", exc)
        return ERROR_REPLY


async def get_owned_session(session_id: str, user_id: str) -> Dict[str, Any]:
    session = await db.chat_sessions.find_one({"id": session_id, "user_id": user_id}, {"_id": 0})
    if not session:
        raise HTTPException(status_code=404, detail="Chat session not found")
    return session


@chatbot_router.get("/sessions", response_model=List[ChatSessionResponse])
async def list_chat_sessions(current_user: Dict[str, Any] = Depends(get_current_user)):
    return await db.chat_sessions.find({"user_id": current_user["id"]}, {"_id": 0}).sort("updated_at", -1).to_list(200)


@chatbot_router.post("/sessions", response_model=ChatSessionResponse, status_code=201)
async def create_chat_session(
    payload: Optional[ChatSessionCreate] = None,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    title = ((payload.title if payload else None) or "").strip() or DEFAULT_SESSION_TITLE
    now_iso = utc_now_iso()
    doc = {
        "id": new_id(),
        "user_id": current_user["id"],
        "title": title[:120],
        "message_count": 0,
        "last_message_at": None,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db.chat_sessions.insert_one(doc)
    doc.pop("_id", None)
    return doc


@chatbot_router.get("/sessions/{session_id}")
async def get_chat_session(session_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    session = await get_owned_session(session_id, current_user["id"])
    messages = await db.chat_messages.find({"session_id": session_id}, {"_id": 0}).sort("created_at", 1).to_list(1000)
    return {
        "session": ChatSessionResponse(**session),
        "messages": [ChatMessageResponse(**m) for m in messages],
    }


@chatbot_router.post("/sessions/{session_id}/messages")
async def send_chat_message(
    session_id: str,
    payload: ChatMessageCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    content = validate_message(payload.content)
    session = await get_owned_session(session_id, current_user["id"])
    await ensure_rate_limit(current_user["id"], "chat_user", CHAT_PER_MIN_LIMIT)

    user_message = {
        "id": new_id(),
        "session_id": session_id,
        "user_id": current_user["id"],
        "content": content,
        "is_bot": False,
        "created_at": utc_now_iso(),
    }
    await db.chat_messages.insert_one(user_message)
    user_message.pop("_id", None)

    reply = await generate_bot_reply(content, current_user.get("name") or "student")
    bot_message = {
        "id": new_id(),
        "session_id": session_id,
        "user_id": current_user["id"],
        "content": reply,
        "is_bot": True,
        "created_at": utc_now_iso(),
    }
    await db.chat_messages.insert_one(bot_message)
    bot_message.pop("_id", None)

    updates: Dict[str, Any] = {"last_message_at": bot_message["created_at"], "updated_at": bot_message["created_at"]}
    if session.get("title") == DEFAULT_SESSION_TITLE and not session.get("message_count"):
        updates["title"] = title_from_message(content)
    await db.chat_sessions.update_one({"id": session_id}, {"$set": updates, "$inc": {"message_count": 2}})

    logger.info("chat_message_exchanged session_id=%s user_id=%s", session_id, current_user["id"])
    return {
        "user_message": ChatMessageResponse(**user_message),
        "bot_response": ChatMessageResponse(**bot_message),
        "session_updated": {"id": session_id, "title": updates.get("title", session["title"])},
    }


@chatbot_router.delete("/sessions/{session_id}")
async def delete_chat_session(session_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    await get_owned_session(session_id, current_user["id"])
    deleted = await db.chat_messages.delete_many({"session_id": session_id})
    await db.chat_sessions.delete_one({"id": session_id})
    logger.info("chat_session_deleted session_id=%s messages=%s", session_id, deleted.deleted_count)
    return {"message": "Chat session deleted successfully"}


@chatbot_router.post("/quick-response")
async def quick_response(
    payload: ChatMessageCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    content = validate_message(payload.content)
    await ensure_rate_limit(current_user["id"], "chat_user", CHAT_PER_MIN_LIMIT)
    return {"response": await generate_bot_reply(content, current_user.get("name") or "student")}
