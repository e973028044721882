"""Per-user chat history backed by ``chat_messages``."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.chat_message import ChatMessage
from models.image_generation import ImageGeneration
from models.user import User
from services.errors import ValidationError

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("user", "assistant", "system", "error")
PREVIEW_CHARS = 120


def serialize_message(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "session_id": message.session_id,
        "message_type": message.message_type,
        "content": message.content,
        "prompt": message.prompt,
        "image_url": message.image_url,
        "input_images": message.input_images or [],
        "generation_type": message.generation_type,
        "generation_id": message.generation_id,
        "credits_used": message.credits_used,
        "error_message": message.error_message,
        "metadata": message.metadata_json or {},
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


async def get_or_create_session_id(user: User, db: AsyncSession) -> str:
    """Return the user's persistent session id, creating it on first use."""
    if user.chat_session_id:
        return user.chat_session_id

    result = await db.execute(
        select(ChatMessage.session_id)
        .where(ChatMessage.user_id == user.id)
        .order_by(ChatMessage.created_at.asc())
        .limit(1)
    )
    session_id = result.scalar_one_or_none() or str(uuid.uuid4())
    user.chat_session_id = session_id
    await db.commit()
    return session_id


async def get_session_summary(user: User, db: AsyncSession) -> Dict[str, Any]:
    session_id = await get_or_create_session_id(user, db)
    count_result = await db.execute(
        select(func.count(ChatMessage.id)).where(
            ChatMessage.user_id == user.id,
            ChatMessage.session_id == session_id,
        )
    )
    return {
        "success": True,
        "session_id": session_id,
        "message_count": int(count_result.scalar() or 0),
    }


async def list_sessions(user: User, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(
            ChatMessage.session_id,
            func.count(ChatMessage.id),
            func.min(ChatMessage.created_at),
            func.max(ChatMessage.created_at),
        )
        .where(ChatMessage.user_id == user.id)
        .group_by(ChatMessage.session_id)
        .order_by(func.max(ChatMessage.created_at).desc())
    )
    rows = result.all()

    sessions: List[Dict[str, Any]] = []
    for session_id, count, first_at, last_at in rows:
        last_result = await db.execute(
            select(ChatMessage.content, ChatMessage.image_url)
            .where(ChatMessage.user_id == user.id, ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(1)
        )
        last = last_result.first()
        content = (last.content if last else None) or ""
        sessions.append(
            {
                "session_id": session_id,
                "message_count": int(count or 0),
                "first_message_at": first_at.isoformat() if first_at else None,
                "last_message_at": last_at.isoformat() if last_at else None,
                "last_message": content[:PREVIEW_CHARS],
                "last_image_url": last.image_url if last else None,
            }
        )
    return {"success": True, "sessions": sessions, "current_session_id": user.chat_session_id}


async def list_messages(
    user: User,
    db: AsyncSession,
    *,
    session_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    resolved = session_id or await get_or_create_session_id(user, db)
    result = await db.execute(
        select(ChatMessage)
        .where(ChatMessage.user_id == user.id, ChatMessage.session_id == resolved)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        .offset(max(int(offset), 0))
        .limit(max(int(limit), 1))
    )
    messages = result.scalars().all()
    return {
        "success": True,
        "messages": [serialize_message(message) for message in messages],
        "session_id": resolved,
        "total": len(messages),
    }


async def append_message(
    user: User,
    db: AsyncSession,
    *,
    message_type: str,
    session_id: Optional[str] = None,
    content: Optional[str] = None,
    prompt: Optional[str] = None,
    image_url: Optional[str] = None,
    input_images: Optional[List[str]] = None,
    generation_type: Optional[str] = None,
    generation_id: Optional[str] = None,
    credits_used: Optional[int] = None,
    error_message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if not message_type:
        raise ValidationError("message_type is required")
    if message_type not in MESSAGE_TYPES:
        raise ValidationError(f"Unsupported message_type: {message_type}")

    if generation_id:
        owned = await db.execute(
            select(ImageGeneration.id).where(
                ImageGeneration.id == generation_id,
                ImageGeneration.user_id == user.id,
            )
        )
        if owned.scalar_one_or_none() is None:
            raise ValidationError("Unknown generation_id")

    resolved = session_id or await get_or_create_session_id(user, db)
    message = ChatMessage(
        user_id=user.id,
        session_id=resolved,
        message_type=message_type,
        content=content,
        prompt=prompt,
        image_url=image_url,
        input_images=input_images or None,
        generation_type=generation_type,
        generation_id=generation_id,
        credits_used=credits_used,
        error_message=error_message,
        metadata_json=metadata or None,
    )
    db.add(message)
    await db.commit()
    await db.refresh(message)
    return {"success": True, "message": serialize_message(message), "session_id": resolved}


async def clear_session(user: User, db: AsyncSession, session_id: str) -> Dict[str, Any]:
    if not session_id:
        raise ValidationError("session_id is required")
    result = await db.execute(
        delete(ChatMessage).where(
            ChatMessage.user_id == user.id,
            ChatMessage.session_id == session_id,
        )
    )
    await db.commit()
    deleted = int(result.rowcount or 0)
    logger.info("Cleared %d chat messages for user %s session %s", deleted, user.id, session_id)
    return {"success": True, "deleted": deleted, "session_id": session_id}
