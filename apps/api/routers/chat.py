"""Chat history router."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from services.chat_history import (
    append_message,
    clear_session,
    get_session_summary,
    list_messages,
    list_sessions,
)

router = APIRouter()


class ChatMessageRequest(BaseModel):
    message_type: str
    session_id: Optional[str] = None
    content: Optional[str] = None
    prompt: Optional[str] = None
    image_url: Optional[str] = None
    input_images: Optional[List[str]] = None
    generation_type: Optional[str] = None
    generation_id: Optional[str] = None
    credits_used: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@router.get("/sessions")
async def read_sessions(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_sessions(user, db)


@router.post("/sessions")
async def open_session(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the user's persistent chat session, creating it if needed."""
    return await get_session_summary(user, db)


@router.get("/messages")
async def read_messages(
    session_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_messages(user, db, session_id=session_id, limit=limit, offset=offset)


@router.post("/messages")
async def create_message(
    request: ChatMessageRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await append_message(
        user,
        db,
        message_type=request.message_type,
        session_id=request.session_id,
        content=request.content,
        prompt=request.prompt,
        image_url=request.image_url,
        input_images=request.input_images,
        generation_type=request.generation_type,
        generation_id=request.generation_id,
        credits_used=request.credits_used,
        error_message=request.error_message,
        metadata=request.metadata,
    )


@router.delete("/messages")
async def delete_messages(
    session_id: str = Query(default=""),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await clear_session(user, db, session_id)
