#!/usr/bin/env python3
"""
step0_background.py – Background removal (FAL Bria)
====================================================

Remove the background of the flatlay (and the on-model reference when one is
supplied) through the FAL REST endpoint fal-ai/bria/background/remove.

- Data URLs over the inline size limit are downscaled before upload
- Provider errors mapped to RATE_LIMIT_EXCEEDED / INSUFFICIENT_CREDITS /
  INVALID_IMAGE_FORMAT / BACKGROUND_REMOVAL_FAILED

Dependencies: httpx pillow
"""

from __future__ import annotations

import time
import logging
from typing import Optional, Tuple

import httpx

from ..errors import GhostPipelineError, wrap_provider_error
from ..models import BackgroundRemovalResult
from ..utils.image_refs import decode_data_url, encode_data_url, http_session, is_data_url, prepare_image

logger = logging.getLogger("ghoststudio.background")

FAL_BASE_URL = "https://fal.run"
BRIA_ENDPOINT = "fal-ai/bria/background/remove"
INLINE_LIMIT_BYTES = 1024 * 1024


class FalBackgroundRemover:
    """Background removal through FAL's synchronous REST API."""

    def __init__(
        self,
        api_key: Optional[str],
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_px: int = 2048,
    ):
        self.api_key = api_key
        self.http_client = http_client
        self.timeout = timeout
        self.max_px = max_px

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _prepare_ref(self, ref: str) -> str:
        if not is_data_url(ref) or len(ref) <= INLINE_LIMIT_BYTES:
            return ref
        data, mime_type = decode_data_url(ref)
        data, mime_type = prepare_image(data, self.max_px, mime_type)
        logger.debug(f"Downscaled inline image to {len(data)} bytes before upload")
        return encode_data_url(data, mime_type)

    async def remove_background(self, image_ref: str) -> Tuple[str, int]:
        """Return (cleaned image URL, processing time in ms)."""
        if not self.is_configured():
            raise GhostPipelineError("FAL_API_KEY is not configured", code="CLIENT_NOT_CONFIGURED")

        started = time.monotonic()
        try:
            async with http_session(self.http_client, self.timeout) as http:
                response = await http.post(
                    f"{FAL_BASE_URL}/{BRIA_ENDPOINT}",
                    json={"image_url": self._prepare_ref(image_ref)},
                    headers={"Authorization": f"Key {self.api_key}"},
                )
                if response.status_code in (400, 422) and "image" in response.text.lower():
                    raise GhostPipelineError(
                        f"FAL rejected the image: {response.text[:200]}", code="INVALID_IMAGE_FORMAT"
                    )
                response.raise_for_status()
                body = response.json()
        except Exception as exc:
            raise wrap_provider_error(
                exc,
                quota_code="RATE_LIMIT_EXCEEDED",
                failure_code="BACKGROUND_REMOVAL_FAILED",
                provider="FAL background removal",
            )

        url = (body.get("image") or {}).get("url") if isinstance(body, dict) else None
        if not url or not isinstance(url, str):
            raise GhostPipelineError("Invalid FAL response: missing image URL", code="BACKGROUND_REMOVAL_FAILED")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"🧹 Background removed in {elapsed_ms}ms")
        return url, elapsed_ms

    async def run(self, flatlay: str, on_model: Optional[str] = None) -> BackgroundRemovalResult:
        """Clean the flatlay, then the on-model reference when present."""
        cleaned, elapsed = await self.remove_background(flatlay)
        cleaned_on_model = None
        if on_model:
            cleaned_on_model, on_model_elapsed = await self.remove_background(on_model)
            elapsed += on_model_elapsed
        return BackgroundRemovalResult(
            cleaned_image_url=cleaned,
            processing_time_ms=elapsed,
            cleaned_on_model_url=cleaned_on_model,
        )
