"""
Content-hash upload cache.

Reference images are uploaded once per content hash and re-used by every run
in the process. Concurrent uploads of the same bytes are serialised per key:
the first writer uploads, later callers read the cached entry.

Gemini Files API uploads are deleted by the provider after a retention
window, so uploaded entries expire after ``max_age_s`` and are uploaded again.
"""

from __future__ import annotations

import asyncio
import io
import time
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .image_refs import sha16
from ..errors import GhostPipelineError, wrap_provider_error

logger = logging.getLogger("ghoststudio.upload_cache")

# Files API retention is 48h; re-upload well before the provider deletes the file.
FILES_API_MAX_AGE_S = 46 * 3600.0


@dataclass(frozen=True)
class UploadedFile:
    uri: str
    mime_type: str
    digest: str
    uploaded_at: float = 0.0


class ContentHashCache:
    """Async cache keyed by content hash; optional per-lookup expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self.expired = 0

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        return entry[0] if entry else None

    def _lookup(self, key: str, max_age_s: Optional[float]) -> Tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        value, stored_at = entry
        if max_age_s is not None and self._clock() - stored_at >= max_age_s:
            self._entries.pop(key, None)
            self.expired += 1
            logger.debug(f"Cache entry {key} expired after {max_age_s:g}s")
            return False, None
        return True, value

    async def get_or_create(
        self, key: str, factory: Callable[[], Awaitable[Any]], max_age_s: Optional[float] = None
    ) -> Any:
        found, value = self._lookup(key, max_age_s)
        if found:
            self.hits += 1
            return value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            found, value = self._lookup(key, max_age_s)
            if found:
                self.hits += 1
                return value
            self.misses += 1
            value = await factory()
            self._entries[key] = (value, self._clock())
        self._locks.pop(key, None)
        return value

    def clear(self) -> None:
        self._entries.clear()
        self._locks.clear()


_process_cache = ContentHashCache()


def process_upload_cache() -> ContentHashCache:
    """Cache shared by all runs in this process."""
    return _process_cache


class GeminiFileUploader:
    """Upload reference images through the Gemini Files API, deduplicated by hash."""

    def __init__(
        self, client, cache: Optional[ContentHashCache] = None, max_age_s: Optional[float] = FILES_API_MAX_AGE_S
    ):
        self.client = client
        self.cache = cache if cache is not None else process_upload_cache()
        self.max_age_s = max_age_s

    async def upload(self, data: bytes, mime_type: str) -> UploadedFile:
        digest = sha16(data)

        async def _do_upload() -> UploadedFile:
            from google.genai import types

            try:
                uploaded = await self.client.aio.files.upload(
                    file=io.BytesIO(data),
                    config=types.UploadFileConfig(mime_type=mime_type, display_name=f"ghost-{digest}"),
                )
            except Exception as exc:
                raise wrap_provider_error(
                    exc, quota_code="GEMINI_QUOTA_EXCEEDED", failure_code="FILE_UPLOAD_FAILED", provider="Gemini Files API"
                )
            if not getattr(uploaded, "uri", None):
                raise GhostPipelineError("Files API returned no URI", code="FILE_UPLOAD_FAILED")
            logger.info(f"Uploaded reference image {digest} -> {uploaded.uri}")
            return UploadedFile(
                uri=uploaded.uri, mime_type=uploaded.mime_type or mime_type, digest=digest, uploaded_at=time.time()
            )

        result = await self.cache.get_or_create(digest, _do_upload, max_age_s=self.max_age_s)
        logger.debug(f"Reference {digest} resolved to {result.uri}")
        return result
