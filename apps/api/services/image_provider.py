"""Gemini image generation client over the Generative Language REST API."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import httpx

from config import settings
from services.errors import ProviderPermanentError, ProviderTransientError, ValidationError

logger = logging.getLogger(__name__)

NO_IMAGE_MESSAGE = "No image was generated. Please try a different prompt."
TRANSIENT_STATUS_CODES = {408, 429}
INVALID_IMAGE_MESSAGE = "Failed to process input image"
BLOCKED_HOSTNAMES = {"localhost", "metadata.google.internal"}


@dataclass
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"


def classify_status(status_code: int, detail: str = "") -> Exception:
    """Map a non-2xx provider status to the retryable or terminal error type."""
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return ProviderTransientError(f"Image provider unavailable ({status_code}). Please try again.")
    message = "Image generation request was rejected."
    if status_code in {401, 403}:
        message = "Image generation provider rejected the API credentials."
    if detail:
        logger.warning("Image provider rejected request status=%s detail=%s", status_code, detail[:500])
    return ProviderPermanentError(message)


def parse_data_url(value: str) -> Tuple[str, str]:
    """Return ``(mime_type, base64_payload)`` for a ``data:`` URL."""
    header, _, payload = value.partition(",")
    if not payload or not header.startswith("data:"):
        raise ValidationError(INVALID_IMAGE_MESSAGE)
    mime_type = header[len("data:") :].split(";", 1)[0] or "image/png"
    return mime_type, payload


def _max_image_bytes() -> int:
    return int(settings.MAX_UPLOAD_BYTES)


def _check_remote_host(url: str) -> None:
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise ValidationError(INVALID_IMAGE_MESSAGE) from exc
    host = (parts.hostname or "").strip().lower()
    if parts.scheme not in ("http", "https") or not host:
        raise ValidationError(INVALID_IMAGE_MESSAGE)
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise ValidationError("Input image URL is not allowed")
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return
    if not address.is_global:
        raise ValidationError("Input image URL is not allowed")


def check_input_image(value: str) -> None:
    """Reject input images the provider call could never use.

    ``data:`` URLs must carry valid base64 no larger than ``MAX_UPLOAD_BYTES``
    once decoded. Remote images must be ``http(s)`` URLs whose host is not a
    loopback, private or link-local address literal.
    """
    if not isinstance(value, str) or not value:
        raise ValidationError(INVALID_IMAGE_MESSAGE)
    if value.startswith("data:"):
        mime_type, payload = parse_data_url(value)
        if not mime_type.startswith("image/"):
            raise ValidationError(INVALID_IMAGE_MESSAGE)
        if len(payload) * 3 // 4 > _max_image_bytes() + 2:
            raise ValidationError("Input image is too large")
        try:
            decoded = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError(INVALID_IMAGE_MESSAGE) from exc
        if len(decoded) > _max_image_bytes():
            raise ValidationError("Input image is too large")
        if not decoded:
            raise ValidationError(INVALID_IMAGE_MESSAGE)
        return
    _check_remote_host(value)


def extract_image(payload: Dict[str, Any]) -> GeneratedImage:
    for candidate in payload.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            inline = part.get("inlineData") or part.get("inline_data") or {}
            data = inline.get("data")
            if not data:
                continue
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            try:
                return GeneratedImage(data=base64.b64decode(data), mime_type=mime_type)
            except (binascii.Error, ValueError) as exc:
                raise ProviderPermanentError(NO_IMAGE_MESSAGE) from exc
    raise ProviderPermanentError(NO_IMAGE_MESSAGE)


class GeminiImageProvider:
    """Text-to-image and image-to-image generation through ``models/{model}:generateContent``."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.api_base = (api_base or settings.GEMINI_API_BASE).rstrip("/")
        self.timeout_seconds = float(timeout_seconds or settings.GENERATION_TIMEOUT_SECONDS)
        self.transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)

    async def _download(self, client: httpx.AsyncClient, url: str) -> Tuple[str, bytes]:
        """Stream a remote input image, giving up once it exceeds ``MAX_UPLOAD_BYTES``."""
        limit = _max_image_bytes()
        try:
            async with client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise ValidationError(INVALID_IMAGE_MESSAGE)
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise ProviderPermanentError("Input image is too large.")
                chunks: List[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > limit:
                        logger.warning("Input image %s exceeded %d bytes; download aborted", url, limit)
                        raise ProviderPermanentError("Input image is too large.")
                    chunks.append(chunk)
                content_type = response.headers.get("content-type", "image/png")
        except httpx.HTTPError as exc:
            raise ProviderTransientError("Could not download input image. Please try again.") from exc
        mime_type = content_type.split(";", 1)[0].strip() or "image/png"
        return mime_type, b"".join(chunks)

    async def _inline_part(self, client: httpx.AsyncClient, image: str) -> Dict[str, Any]:
        if image.startswith("data:"):
            mime_type, data = parse_data_url(image)
            return {"inlineData": {"mimeType": mime_type, "data": data}}

        _check_remote_host(image)
        mime_type, content = await self._download(client, image)
        return {
            "inlineData": {
                "mimeType": mime_type,
                "data": base64.b64encode(content).decode("ascii"),
            }
        }

    async def _build_body(self, client: httpx.AsyncClient, prompt: str, input_images: Sequence[str]) -> Dict[str, Any]:
        if not input_images:
            return {"contents": [{"parts": [{"text": f"Generate an image of: {prompt}"}]}]}

        parts: List[Dict[str, Any]] = [
            {"text": f"Based on the provided image(s), generate a new image with the following description: {prompt}"}
        ]
        for image in input_images:
            parts.append(await self._inline_part(client, image))
        return {"contents": [{"parts": parts}]}

    async def generate(self, prompt: str, input_images: Optional[Sequence[str]] = None) -> GeneratedImage:
        if not self.api_key:
            raise ProviderPermanentError("Image generation is not configured.")

        async with self._client() as client:
            body = await self._build_body(client, prompt, list(input_images or []))
            try:
                response = await client.post(
                    self.endpoint,
                    json=body,
                    headers={"x-goog-api-key": self.api_key},
                )
            except httpx.TimeoutException as exc:
                raise ProviderTransientError("Image generation timed out. Please try again.") from exc
            except httpx.HTTPError as exc:
                raise ProviderTransientError("Could not reach the image provider. Please try again.") from exc

        if response.status_code >= 400:
            raise classify_status(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransientError("Image provider returned an unreadable response.") from exc
        return extract_image(payload)


def get_image_provider() -> GeminiImageProvider:
    return GeminiImageProvider()
