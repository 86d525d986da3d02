"""
Helpers for google-genai responses: client construction, safety-block
detection and inline image extraction.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..errors import GhostPipelineError

logger = logging.getLogger("ghoststudio.genai")

_BLOCK_FINISH_REASONS = ("SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "IMAGE_SAFETY", "SPII")


def make_genai_client(api_key: Optional[str]):
    """Create a google-genai client or raise CLIENT_NOT_CONFIGURED."""
    if not api_key:
        raise GhostPipelineError("Gemini API key is not configured", code="CLIENT_NOT_CONFIGURED")
    from google import genai

    return genai.Client(api_key=api_key)


def _enum_name(value) -> str:
    return str(getattr(value, "name", value) or "")


def raise_if_blocked(response, provider: str = "Gemini") -> None:
    """Raise CONTENT_BLOCKED when the prompt or the first candidate was filtered."""
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None) if feedback is not None else None
    if block_reason:
        raise GhostPipelineError(
            f"{provider} blocked the request: {_enum_name(block_reason)}", code="CONTENT_BLOCKED"
        )
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        reason = _enum_name(getattr(candidates[0], "finish_reason", None))
        if any(marker in reason for marker in _BLOCK_FINISH_REASONS):
            raise GhostPipelineError(f"{provider} blocked the output: {reason}", code="CONTENT_BLOCKED")


def extract_inline_image(response) -> Optional[Tuple[bytes, str]]:
    """First inline image part of the response as (bytes, mime_type), or None."""
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                mime_type = inline.mime_type or "image/png"
                if "image" in mime_type.lower():
                    return inline.data, mime_type
            elif getattr(part, "text", None):
                logger.debug(f"Gemini text part: {part.text[:100]}...")
    return None
