"""Local object storage for generated and uploaded images, served under ``/media``."""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from pathlib import Path
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

IMAGE_EXT_BY_MIME = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


def is_valid_image_type(content_type: Optional[str]) -> bool:
    return str(content_type or "").strip().lower() in IMAGE_EXT_BY_MIME


def is_valid_file_size(size: int, max_bytes: Optional[int] = None) -> bool:
    limit = int(max_bytes if max_bytes is not None else settings.MAX_UPLOAD_BYTES)
    return 0 < int(size) <= limit


def to_data_url(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def _safe_prefix(prefix: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in str(prefix or ""))
    return cleaned or "images"


class LocalObjectStorage:
    """Writes objects beneath a media root and returns their public URL."""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or settings.MEDIA_DIR)
        self.base_url = (base_url or settings.MEDIA_BASE_URL).rstrip("/")

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def put(self, data: bytes, content_type: str, prefix: str = "generated") -> str:
        extension = IMAGE_EXT_BY_MIME.get(str(content_type or "").lower(), ".png")
        folder = _safe_prefix(prefix)
        name = f"{uuid.uuid4().hex}{extension}"
        await asyncio.to_thread(self._write, self.root / folder / name, data)
        logger.info("Stored object %s/%s (%d bytes)", folder, name, len(data))
        return f"{self.base_url}/{folder}/{name}"

    def storage_path(self, public_url: str) -> str:
        """Map a public URL back to the key it was stored under."""
        if public_url.startswith(self.base_url + "/"):
            return public_url[len(self.base_url) + 1 :]
        return public_url


def get_object_storage() -> LocalObjectStorage:
    return LocalObjectStorage()
