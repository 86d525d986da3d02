"""
Image reference helpers.

A pipeline image is referenced either by an http(s) URL or by a base64 data
URL. These helpers resolve either form to bytes, downscale with Pillow before
upload, and compute short content hashes for cache keys and storage names.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import logging
import mimetypes
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Tuple, Union

import httpx
from PIL import Image

from ..errors import GhostPipelineError

logger = logging.getLogger("ghoststudio.image_refs")

SUPPORTED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")


def sha16(data: bytes) -> str:
    """First 16 hex chars of the SHA256 of ``data``."""
    return hashlib.sha256(data).hexdigest()[:16]


def is_data_url(ref: str) -> bool:
    return isinstance(ref, str) and ref.startswith("data:")


def is_http_url(ref: str) -> bool:
    return isinstance(ref, str) and ref.startswith(("http://", "https://"))


def encode_data_url(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(ref: str) -> Tuple[bytes, str]:
    """Split ``data:<mime>;base64,<payload>`` into bytes and mime type."""
    header, sep, payload = ref.partition(",")
    if not sep or ";base64" not in header:
        raise GhostPipelineError("Malformed data URL", code="INVALID_IMAGE_FORMAT")
    mime_type = header[len("data:"):].split(";")[0] or "application/octet-stream"
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise GhostPipelineError(f"Unsupported image type {mime_type}", code="INVALID_IMAGE_FORMAT")
    try:
        return base64.b64decode(payload, validate=True), mime_type
    except (binascii.Error, ValueError) as exc:
        raise GhostPipelineError("Invalid base64 payload in data URL", code="INVALID_IMAGE_FORMAT", cause=exc)


def validate_image_ref(ref: Optional[str], what: str = "flatlay") -> None:
    """Cheap syntactic check done before any stage runs."""
    if not ref:
        raise GhostPipelineError(f"{what} image is required", code="MISSING_FLATLAY" if what == "flatlay" else "INVALID_REQUEST")
    if is_data_url(ref):
        decode_data_url(ref)
        return
    if not is_http_url(ref):
        raise GhostPipelineError(
            f"{what} must be an http(s) URL or a base64 data URL", code="INVALID_IMAGE_FORMAT"
        )


@asynccontextmanager
async def http_session(client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
    """Yield ``client`` if given, else a short-lived AsyncClient."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
        yield owned


async def fetch_image_bytes(
    ref: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> Tuple[bytes, str]:
    """Resolve a URL or data URL to ``(bytes, mime_type)``."""
    if is_data_url(ref):
        return decode_data_url(ref)

    async with http_session(client, timeout) as http:
        try:
            response = await http.get(ref)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise GhostPipelineError(f"Failed to fetch image {ref[:80]}: {exc}", code="IMAGE_FETCH_FAILED", cause=exc)

    mime_type = response.headers.get("content-type", "").split(";")[0].strip()
    if not mime_type.startswith("image/"):
        mime_type = mimetypes.guess_type(ref)[0] or "image/jpeg"
    return response.content, mime_type


def open_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (OSError, ValueError) as exc:
        raise GhostPipelineError(f"Cannot decode image: {exc}", code="INVALID_IMAGE_FORMAT", cause=exc)
    return image


def prepare_image(data: bytes, max_px: int, mime_type: str = "image/jpeg") -> Tuple[bytes, str]:
    """Downscale so the longest side is at most ``max_px``; pass small images through."""
    image = open_image(data)
    if max(image.size) <= max_px:
        return data, mime_type

    scale = max_px / float(max(image.size))
    new_size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    resized = image.resize(new_size, Image.LANCZOS)

    buf = io.BytesIO()
    if resized.mode in ("RGBA", "LA", "P"):
        resized.save(buf, format="PNG", optimize=True)
        out_mime = "image/png"
    else:
        resized.convert("RGB").save(buf, format="JPEG", quality=92)
        out_mime = "image/jpeg"
    logger.debug(f"Downscaled image {image.size} -> {new_size}")
    return buf.getvalue(), out_mime


def image_to_bytes(image: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def local_file_to_data_url(path: Union[str, Path]) -> str:
    """Read a local image file into a data URL (CLI convenience)."""
    path = Path(path)
    mime_type = mimetypes.guess_type(str(path))[0] or "image/jpeg"
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise GhostPipelineError(f"Unsupported image file {path.name}", code="INVALID_IMAGE_FORMAT")
    return encode_data_url(path.read_bytes(), mime_type)
