"""User profile, credit history and generation history router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth import serialize_user
from routers.auth_scope import get_current_user
from services.credits import get_credit_summary
from services.errors import ValidationError
from services.generation import delete_generation, list_generations

router = APIRouter()

SUPPORTED_LANGUAGES = {"en", "zh", "es", "fr", "de", "ja", "ko", "pt", "it", "ru"}


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=120)
    language_code: Optional[str] = None
    avatar_url: Optional[str] = None


@router.get("/profile")
async def read_profile(user: User = Depends(get_current_user)):
    return {"success": True, "user": serialize_user(user)}


@router.put("/profile")
async def update_profile(
    request: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if request.language_code is not None:
        language = request.language_code.strip().lower()
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationError("Unsupported language_code")
        user.language_code = language
    if request.display_name is not None:
        user.display_name = request.display_name.strip() or None
    if request.avatar_url is not None:
        user.avatar_url = request.avatar_url.strip() or None

    await db.commit()
    await db.refresh(user)
    return {"success": True, "user": serialize_user(user)}


@router.get("/credits")
async def read_credits(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    type: Optional[str] = Query(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(user, db, limit=limit, offset=offset, transaction_type=type)


@router.get("/generations")
async def read_generations(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status: Optional[str] = Query(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_generations(user.id, db, limit=limit, offset=offset, status=status)


@router.delete("/generations/{generation_id}")
async def remove_generation(
    generation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await delete_generation(user.id, generation_id, db)
