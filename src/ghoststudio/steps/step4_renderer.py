#!/usr/bin/env python3
"""
step4_renderer.py – Rendering Dispatcher (Gemini Flash / Seedream / Freepik)
============================================================================

Interchangeable image-synthesis backends behind one dispatcher:

- gemini-flash    google-genai image modality (inline image parts)
- seedream        FAL REST endpoint fal-ai/bytedance/seedream/v4/edit
- freepik-gemini  Freepik task API with status polling

Candidate order is the requested backend followed by the configured
fallbacks. Errors are classified: quota/rate limits move on to the next
backend, content-safety blocks fail fast, transport failures fail fast
unless transport fallback is switched on. A response without an image is a
failure. Images returned as bytes go to object storage when configured and
come back inline as a data URL otherwise.

Dependencies: google-genai httpx pillow
"""

from __future__ import annotations

import asyncio
import base64
import math
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import httpx

from ..config import SUPPORTED_ASPECT_RATIOS
from ..errors import (
    CONTENT_BLOCKED,
    QUOTA,
    TRANSPORT,
    GhostPipelineError,
    wrap_provider_error,
)
from ..models import GenerationResult
from ..utils.genai_response import extract_inline_image, make_genai_client, raise_if_blocked
from ..utils.image_refs import (
    encode_data_url,
    fetch_image_bytes,
    http_session,
    prepare_image,
    sha16,
)

logger = logging.getLogger("ghoststudio.renderer")

FAL_BASE_URL = "https://fal.run"
SEEDREAM_ENDPOINT = "fal-ai/bytedance/seedream/v4/edit"
FREEPIK_BASE_URL = "https://api.freepik.com/v1"
FREEPIK_ENDPOINT = "ai/gemini-2-5-flash-image-preview"

# ---------------------------------------------------------------------------
# Requests & backend outputs
# ---------------------------------------------------------------------------

@dataclass
class RenderRequest:
    """Everything a backend needs for one generation attempt."""
    prompt: str
    flatlay: str
    on_model: Optional[str] = None
    digest: Optional[str] = None
    image_max_px: int = 2048
    output_size: str = "2048x2048"
    aspect_ratio: Optional[str] = None

    def references(self) -> List[str]:
        return [ref for ref in (self.flatlay, self.on_model) if ref]


@dataclass
class BackendOutput:
    image_bytes: Optional[bytes] = None
    image_url: Optional[str] = None
    mime_type: str = "image/png"


def parse_output_size(output_size: str) -> Tuple[int, int]:
    try:
        width, height = (int(v) for v in output_size.lower().split("x"))
    except ValueError:
        return 2048, 2048
    return width, height


def aspect_ratio_for(output_size: str, default: str = "1:1") -> str:
    """Reduced ``W:H`` of ``output_size`` when the image models support it, else ``default``."""
    try:
        width, height = (int(v) for v in output_size.lower().split("x"))
    except ValueError:
        return default
    if width <= 0 or height <= 0:
        return default
    divisor = math.gcd(width, height)
    ratio = f"{width // divisor}:{height // divisor}"
    return ratio if ratio in SUPPORTED_ASPECT_RATIOS else default


async def load_reference_images(
    request: RenderRequest, http: Optional[httpx.AsyncClient] = None
) -> List[Tuple[bytes, str]]:
    """Fetch and downscale every reference image to ``request.image_max_px``."""
    images = []
    for ref in request.references():
        data, mime_type = await fetch_image_bytes(ref, http)
        images.append(prepare_image(data, request.image_max_px, mime_type))
    return images


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class RenderingBackend:
    """Base class; subclasses implement ``generate``."""

    name = "base"

    def is_configured(self) -> bool:
        raise NotImplementedError

    async def generate(self, request: RenderRequest) -> BackendOutput:
        raise NotImplementedError


class GeminiFlashBackend(RenderingBackend):
    """Image editing through the google-genai SDK, references sent as inline bytes."""

    name = "gemini-flash"

    def __init__(
        self,
        api_key: Optional[str],
        model_name: str = "gemini-2.5-flash-image-preview",
        temperature: float = 0.05,
        client=None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model_name = model_name
        self.temperature = temperature
        self._client = client
        self.http_client = http_client

    def is_configured(self) -> bool:
        return self._client is not None or bool(self.api_key)

    @property
    def client(self):
        if self._client is None:
            self._client = make_genai_client(self.api_key)
        return self._client

    async def generate(self, request: RenderRequest) -> BackendOutput:
        from google.genai import types

        images = await load_reference_images(request, self.http_client)
        parts = [types.Part.from_bytes(data=data, mime_type=mime) for data, mime in images]
        parts.append(types.Part.from_text(text=request.prompt))

        config_kwargs = {"response_modalities": ["IMAGE"], "temperature": self.temperature}
        if request.aspect_ratio:
            config_kwargs["image_config"] = types.ImageConfig(aspect_ratio=request.aspect_ratio)
        config = types.GenerateContentConfig(**config_kwargs)
        response = await self.client.aio.models.generate_content(
            model=self.model_name,
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )
        raise_if_blocked(response, provider="Gemini Flash")
        extracted = extract_inline_image(response)
        if extracted is None:
            raise GhostPipelineError("Gemini Flash returned no image part", code="NO_IMAGE_IN_RESPONSE")
        data, mime_type = extracted
        logger.info(f"Gemini Flash produced {len(data)} bytes ({mime_type})")
        return BackendOutput(image_bytes=data, mime_type=mime_type)


class SeedreamBackend(RenderingBackend):
    """ByteDance Seedream v4 edit via the FAL REST API."""

    name = "seedream"

    def __init__(self, api_key: Optional[str], http_client: Optional[httpx.AsyncClient] = None, timeout: float = 180.0):
        self.api_key = api_key
        self.http_client = http_client
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate(self, request: RenderRequest) -> BackendOutput:
        width, height = parse_output_size(request.output_size)
        async with http_session(self.http_client, self.timeout) as http:
            images = await load_reference_images(request, http)
            payload = {
                "prompt": request.prompt,
                "image_urls": [encode_data_url(data, mime) for data, mime in images],
                "image_size": {"width": width, "height": height},
                "num_images": 1,
            }
            response = await http.post(
                f"{FAL_BASE_URL}/{SEEDREAM_ENDPOINT}",
                json=payload,
                headers={"Authorization": f"Key {self.api_key}"},
            )
            response.raise_for_status()
            body = response.json()

        generated = body.get("images") or []
        url = generated[0].get("url") if generated and isinstance(generated[0], dict) else None
        if not url:
            raise GhostPipelineError("Seedream returned no image", code="NO_IMAGE_IN_RESPONSE")
        return BackendOutput(image_url=url, mime_type=generated[0].get("content_type") or "image/png")


class FreepikGeminiBackend(RenderingBackend):
    """Gemini 2.5 Flash image through Freepik: create a task, then poll it."""

    name = "freepik-gemini"

    def __init__(
        self,
        api_key: Optional[str],
        http_client: Optional[httpx.AsyncClient] = None,
        poll_interval_s: float = 2.0,
        max_polls: int = 60,
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.http_client = http_client
        self.poll_interval_s = poll_interval_s
        self.max_polls = max_polls
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {"x-freepik-api-key": self.api_key or "", "Content-Type": "application/json"}

    async def generate(self, request: RenderRequest) -> BackendOutput:
        url = f"{FREEPIK_BASE_URL}/{FREEPIK_ENDPOINT}"
        async with http_session(self.http_client, self.timeout) as http:
            images = await load_reference_images(request, http)
            payload = {
                "prompt": request.prompt,
                "reference_images": [base64.b64encode(data).decode("ascii") for data, _ in images],
            }
            response = await http.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
            task_id = (response.json().get("data") or {}).get("task_id")
            if not task_id:
                raise GhostPipelineError("Freepik did not return a task id", code="RENDERING_FAILED")
            logger.info(f"Freepik task created: {task_id}")

            for _ in range(self.max_polls):
                status_response = await http.get(f"{url}/{task_id}", headers=self._headers())
                status_response.raise_for_status()
                data = status_response.json().get("data") or {}
                status = data.get("status")
                if status == "COMPLETED":
                    generated = data.get("generated") or []
                    if not generated:
                        raise GhostPipelineError("Freepik task completed without images", code="NO_IMAGE_IN_RESPONSE")
                    return BackendOutput(image_url=generated[0])
                if status == "FAILED":
                    raise GhostPipelineError(f"Freepik task {task_id} failed", code="RENDERING_FAILED")
                await asyncio.sleep(self.poll_interval_s)

        raise GhostPipelineError(
            f"Freepik task {task_id} did not complete after {self.max_polls} polls", code="RENDERING_FAILED"
        )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class RenderingDispatcher:
    """Runs a RenderRequest through the ordered backend candidates."""

    def __init__(
        self,
        backends: Dict[str, RenderingBackend],
        default_backend: str = "gemini-flash",
        fallback_backends: Sequence[str] = (),
        fallback_on_transport: bool = False,
        storage=None,
    ):
        self.backends = dict(backends)
        self.default_backend = default_backend
        self.fallback_backends = list(fallback_backends)
        self.fallback_on_transport = fallback_on_transport
        self.storage = storage

    @classmethod
    def from_config(cls, config, storage=None, http_client: Optional[httpx.AsyncClient] = None) -> "RenderingDispatcher":
        rendering = config.rendering
        backends = {
            GeminiFlashBackend.name: GeminiFlashBackend(
                config.keys.gemini_api_key, model_name=rendering.gemini_image_model, http_client=http_client
            ),
            SeedreamBackend.name: SeedreamBackend(
                config.keys.fal_api_key, http_client=http_client, timeout=config.timeouts.rendering
            ),
            FreepikGeminiBackend.name: FreepikGeminiBackend(
                config.keys.freepik_api_key,
                http_client=http_client,
                poll_interval_s=rendering.freepik_poll_interval_s,
                max_polls=rendering.freepik_max_polls,
            ),
        }
        return cls(
            backends,
            default_backend=rendering.default_backend,
            fallback_backends=rendering.fallback_backends,
            fallback_on_transport=rendering.fallback_on_transport,
            storage=storage,
        )

    def candidate_order(self, backend_id: Optional[str] = None) -> List[str]:
        """Requested backend first, then configured fallbacks that are usable."""
        primary = backend_id or self.default_backend
        backend = self.backends.get(primary)
        if backend is None:
            raise GhostPipelineError(f"Unknown rendering backend '{primary}'", code="UNKNOWN_BACKEND")
        if not backend.is_configured():
            raise GhostPipelineError(
                f"Rendering backend '{primary}' has no credentials configured", code="CLIENT_NOT_CONFIGURED"
            )

        order = [primary]
        for name in self.fallback_backends:
            candidate = self.backends.get(name)
            if name in order or candidate is None:
                continue
            if not candidate.is_configured():
                logger.debug(f"Skipping fallback '{name}': not configured")
                continue
            order.append(name)
        return order

    def _should_fall_back(self, error: GhostPipelineError) -> bool:
        if error.kind == QUOTA:
            return True
        if error.kind == TRANSPORT:
            return self.fallback_on_transport
        return False

    async def render(self, request: RenderRequest, backend_id: Optional[str] = None) -> GenerationResult:
        order = self.candidate_order(backend_id)
        started = time.monotonic()
        last_error: Optional[GhostPipelineError] = None

        for index, name in enumerate(order):
            backend = self.backends[name]
            logger.info(f"🎨 Rendering with '{name}' (candidate {index + 1}/{len(order)})")
            try:
                output = await backend.generate(request)
            except Exception as exc:
                error = wrap_provider_error(
                    exc, quota_code="RATE_LIMIT_EXCEEDED", failure_code="RENDERING_FAILED", provider=name
                )
                if error.kind == CONTENT_BLOCKED:
                    logger.error(f"'{name}' blocked the content; not retrying")
                    raise error
                if self._should_fall_back(error) and index + 1 < len(order):
                    logger.warning(f"'{name}' failed ({error.code}); falling back to '{order[index + 1]}'")
                    last_error = error
                    continue
                raise error

            image_url, stored = await self._materialise(output, request.digest)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"✅ Rendered via '{name}' in {elapsed_ms}ms (fallback={index > 0})")
            return GenerationResult(
                image_url=image_url,
                backend=name,
                fallback_used=index > 0,
                attempts=index + 1,
                processing_time_ms=elapsed_ms,
                digest=request.digest,
                mime_type=output.mime_type,
                stored=stored,
                image_bytes=output.image_bytes,
            )

        raise last_error or GhostPipelineError("No rendering backend available", code="CLIENT_NOT_CONFIGURED")

    async def _materialise(self, output: BackendOutput, digest: Optional[str]) -> Tuple[str, bool]:
        """Turn a backend output into a URL: storage when possible, inline otherwise."""
        if output.image_url:
            return output.image_url, False
        if not output.image_bytes:
            raise GhostPipelineError("Backend returned neither bytes nor a URL", code="NO_IMAGE_IN_RESPONSE")

        if self.storage is not None:
            key = f"{digest or 'render'}-{sha16(output.image_bytes)}"
            try:
                url = await self.storage.store(output.image_bytes, output.mime_type, key)
                return url, True
            except GhostPipelineError as exc:
                logger.warning(f"Storage upload failed ({exc.message}); returning inline data URL")
        return encode_data_url(output.image_bytes, output.mime_type), False
