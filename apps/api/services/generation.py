"""Image generation orchestration: reserve credits, call the provider, refund on failure."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.chat_message import ChatMessage
from models.image_generation import ImageGeneration
from models.user import User
from services.credits import add_credits, credits_for_generation_type, deduct_credits, get_credit_balance
from services.errors import AppError, NotFoundError, PersistenceError, ProviderTransientError, ValidationError
from services.image_provider import GeneratedImage, check_input_image
from services.storage import to_data_url

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def validate_generation_request(
    prompt: str,
    generation_type: str,
    input_images: Sequence[str],
) -> None:
    if not str(prompt or "").strip():
        raise ValidationError("Prompt is required")
    if generation_type == "image-to-image" and not input_images:
        raise ValidationError("Input images are required for image-to-image generation")
    max_images = max(int(settings.MAX_INPUT_IMAGES), 1)
    if len(input_images) > max_images:
        raise ValidationError(f"At most {max_images} input images are allowed")
    for image in input_images:
        check_input_image(image)


async def generate_with_retry(
    provider: Any,
    prompt: str,
    input_images: Sequence[str],
    *,
    max_attempts: Optional[int] = None,
    delay_seconds: Optional[float] = None,
    sleep: Sleep = asyncio.sleep,
) -> GeneratedImage:
    """Call the provider, retrying only transient failures with a fixed delay."""
    attempts = max(int(max_attempts if max_attempts is not None else settings.GENERATION_MAX_ATTEMPTS), 1)
    delay = float(delay_seconds if delay_seconds is not None else settings.GENERATION_RETRY_DELAY_SECONDS)

    attempt = 0
    while True:
        attempt += 1
        try:
            return await provider.generate(prompt, list(input_images))
        except ProviderTransientError as exc:
            if attempt >= attempts:
                logger.error("Image provider failed after %d attempts: %s", attempt, exc.message)
                raise
            logger.warning("Image provider attempt %d/%d failed: %s", attempt, attempts, exc.message)
            await sleep(delay)


async def _store_image(storage: Any, image: GeneratedImage) -> str:
    try:
        return await storage.put(image.data, image.mime_type, prefix="generated")
    except Exception as exc:
        if len(image.data) <= int(settings.MAX_INLINE_IMAGE_BYTES):
            logger.warning("Object storage failed, returning inline image: %s", exc)
            return to_data_url(image.data, image.mime_type)
        raise PersistenceError("Failed to store generated image") from exc


async def _refund(user_id: str, generation_id: str, credits: int, db: AsyncSession) -> None:
    try:
        await add_credits(
            user_id,
            db,
            amount=credits,
            transaction_type="refund",
            description=f"Refund for failed image generation {generation_id}",
            related_id=generation_id,
        )
    except Exception:
        await db.rollback()
        logger.critical(
            "ledger_compensation_failed user=%s generation=%s credits=%d",
            user_id,
            generation_id,
            credits,
            exc_info=True,
        )


async def _record_generation(db: AsyncSession, generation: ImageGeneration) -> bool:
    db.add(generation)
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Failed to persist generation %s for user %s (status=%s)",
            generation.id,
            generation.user_id,
            generation.status,
        )
        return False
    return True


async def generate_image(
    user: User,
    db: AsyncSession,
    provider: Any,
    storage: Any,
    *,
    prompt: str,
    generation_type: str,
    input_images: Optional[List[str]] = None,
    language: str = "en",
    sleep: Sleep = asyncio.sleep,
) -> Dict[str, Any]:
    """Run one generation for ``user``.

    Credits are debited before the provider is called. Any failure afterwards
    refunds the same amount (``refund`` entry tied to the generation id) and
    records a ``failed`` generation row before the error is re-raised.
    """
    images = list(input_images or [])
    cost = credits_for_generation_type(generation_type)
    validate_generation_request(prompt, generation_type, images)

    user_id = user.id
    generation_id = str(uuid.uuid4())
    started = time.monotonic()

    charged = 0
    remaining: Optional[int] = None
    if cost > 0:
        reservation = await deduct_credits(
            user_id,
            db,
            amount=cost,
            transaction_type="usage",
            description=f"Image generation ({generation_type})",
            related_id=generation_id,
        )
        charged = cost
        remaining = reservation["new_balance"]

    try:
        image = await generate_with_retry(provider, prompt, images, sleep=sleep)
        image_url = await _store_image(storage, image)
    except Exception as exc:
        await db.rollback()
        logger.warning(
            "Generation %s failed for user %s after %.2fs: %s",
            generation_id,
            user_id,
            time.monotonic() - started,
            exc,
        )
        if charged:
            await _refund(user_id, generation_id, charged, db)
        await _record_generation(
            db,
            ImageGeneration(
                id=generation_id,
                user_id=user_id,
                prompt=prompt,
                generation_type=generation_type,
                input_images=images or None,
                status="failed",
                credits_used=0,
                error_message=exc.message if isinstance(exc, AppError) else "Image generation failed",
                language=language or "en",
                metadata_json={"model": getattr(provider, "model", None)},
            ),
        )
        raise

    await _record_generation(
        db,
        ImageGeneration(
            id=generation_id,
            user_id=user_id,
            prompt=prompt,
            generation_type=generation_type,
            input_images=images or None,
            output_image_url=image_url,
            status="completed",
            credits_used=charged,
            language=language or "en",
            metadata_json={"model": getattr(provider, "model", None), "mime_type": image.mime_type},
        ),
    )
    logger.info(
        "Generation %s completed for user %s type=%s credits=%d in %.2fs",
        generation_id,
        user_id,
        generation_type,
        charged,
        time.monotonic() - started,
    )

    if remaining is None:
        remaining = await get_credit_balance(user_id, db) or 0
    return {
        "success": True,
        "generation_id": generation_id,
        "image_url": image_url,
        "credits_used": charged,
        "remaining_credits": remaining,
    }


def serialize_generation(generation: ImageGeneration) -> Dict[str, Any]:
    return {
        "id": generation.id,
        "prompt": generation.prompt,
        "generation_type": generation.generation_type,
        "input_images": generation.input_images or [],
        "output_image_url": generation.output_image_url,
        "status": generation.status,
        "credits_used": generation.credits_used,
        "error_message": generation.error_message,
        "language": generation.language,
        "created_at": generation.created_at.isoformat() if generation.created_at else None,
    }


async def list_generations(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
) -> Dict[str, Any]:
    filters = [ImageGeneration.user_id == user_id]
    if status:
        filters.append(ImageGeneration.status == status)

    total_result = await db.execute(select(func.count(ImageGeneration.id)).where(*filters))
    result = await db.execute(
        select(ImageGeneration)
        .where(*filters)
        .order_by(ImageGeneration.created_at.desc(), ImageGeneration.id.desc())
        .offset(max(int(offset), 0))
        .limit(max(int(limit), 1))
    )
    return {
        "success": True,
        "generations": [serialize_generation(row) for row in result.scalars().all()],
        "total": int(total_result.scalar() or 0),
        "limit": limit,
        "offset": offset,
    }


async def delete_generation(user_id: str, generation_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(ImageGeneration).where(
            ImageGeneration.id == generation_id,
            ImageGeneration.user_id == user_id,
        )
    )
    generation = result.scalar_one_or_none()
    if generation is None:
        raise NotFoundError("Generation not found")

    await db.execute(
        update(ChatMessage)
        .where(ChatMessage.generation_id == generation_id)
        .values(generation_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.delete(generation)
    await db.commit()
    return {"success": True, "message": "Generation deleted successfully"}
