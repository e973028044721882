"""Input image upload router."""

from __future__ import annotations

import logging
import os

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.uploaded_image import UploadedImage
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.errors import ValidationError
from services.storage import get_object_storage, is_valid_file_size, is_valid_image_type, to_data_url

router = APIRouter()
logger = logging.getLogger(__name__)

ALLOWED_TYPES_LABEL = "image/jpeg, image/png, image/webp, image/gif"


def _sanitize_filename(name: str) -> str:
    base = os.path.basename(name or "upload.png")
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in base)
    return cleaned or "upload.png"


@router.post("/image")
async def upload_image(
    file: UploadFile = File(...),
    purpose: str = Form(default="input"),
    _rate_limit: None = Depends(rate_limit("upload_image", limit=60, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage=Depends(get_object_storage),
):
    """Store an input image and return its public URL."""
    user_id = user.id
    content_type = (file.content_type or "").lower()
    if not is_valid_image_type(content_type):
        raise ValidationError(f"Invalid file type. Only {ALLOWED_TYPES_LABEL} are allowed.")

    max_bytes = int(settings.MAX_UPLOAD_BYTES)
    try:
        data = await file.read(max_bytes + 1)
    finally:
        await file.close()
    if not is_valid_file_size(len(data), max_bytes):
        raise ValidationError(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.")

    file_name = _sanitize_filename(file.filename or "upload.png")
    try:
        public_url = await storage.put(data, content_type, prefix="uploads")
    except Exception as exc:
        if len(data) > int(settings.MAX_INLINE_IMAGE_BYTES):
            raise
        logger.warning("Upload storage failed for user %s, returning inline image: %s", user_id, exc)
        return {
            "success": True,
            "url": to_data_url(data, content_type),
            "file_name": file_name,
            "file_size": len(data),
            "mime_type": content_type,
            "stored": False,
        }

    record_id = None
    record = UploadedImage(
        user_id=user_id,
        file_name=file_name,
        file_size=len(data),
        mime_type=content_type,
        storage_path=storage.storage_path(public_url) if hasattr(storage, "storage_path") else public_url,
        public_url=public_url,
        purpose=purpose or "input",
    )
    db.add(record)
    try:
        await db.commit()
        record_id = record.id
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to record upload for user %s", user_id)

    return {
        "success": True,
        "id": record_id,
        "url": public_url,
        "file_name": file_name,
        "file_size": len(data),
        "mime_type": content_type,
        "stored": True,
    }
