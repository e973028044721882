"""Image generation router."""

from __future__ import annotations

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.generation import generate_image
from services.image_provider import get_image_provider
from services.storage import get_object_storage

router = APIRouter()


class GenerateImageRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    generation_type: Literal["text-to-image", "image-to-image"] = "text-to-image"
    input_images: Optional[List[str]] = None
    language: Optional[str] = None


@router.post("/image")
async def create_image(
    request: GenerateImageRequest,
    _rate_limit: None = Depends(rate_limit("generate_image", limit=30, window_seconds=60)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider=Depends(get_image_provider),
    storage=Depends(get_object_storage),
):
    return await generate_image(
        user,
        db,
        provider,
        storage,
        prompt=request.prompt,
        generation_type=request.generation_type,
        input_images=request.input_images,
        language=request.language or user.language_code or "en",
    )
