#!/usr/bin/env python3
"""
step1_analysis.py – Structural & Enrichment Analysis (Gemini)
=============================================================

Two vision passes over the cleaned flatlay:

1. Structural analysis: labels, preservation details, hollow regions,
   construction, interior surfaces, coarse palette, category & silhouette.
   Proportions are requested only when an on-model reference is supplied.
2. Enrichment analysis: precise hex colors, fabric physics, construction
   precision, rendering guidance and confidence, referencing pass 1.

Both run in JSON response mode. Reference images go through the Files API
(deduplicated by content hash) with inline bytes as fallback. Malformed JSON
yields a minimal valid analysis instead of failing the run.

Dependencies: google-genai pillow
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional

from ..config import AnalysisConfig
from ..errors import QUOTA, GhostPipelineError, wrap_provider_error
from ..models import EnrichmentAnalysis, StructuralAnalysis
from ..utils.genai_response import make_genai_client, raise_if_blocked
from ..utils.image_refs import fetch_image_bytes, prepare_image
from ..utils.upload_cache import GeminiFileUploader

logger = logging.getLogger("ghoststudio.analysis")

ANALYSIS_IMAGE_MAX_PX = 1536

STRUCTURAL_PROMPT = """You are an expert garment analyst. Analyse the garment in image B (flatlay)
and return JSON with these keys:

- category_generic: one of top, bottom, dress, outerwear, knitwear, underwear, accessory
- silhouette, pattern, material, weave_knit (woven|knit|nonwoven)
- required_components / forbidden_components: lists of strings
- labels_found: [{{type, location, bbox_norm [x1,y1,x2,y2] 0..1, text, readable, preserve, visibility, priority (critical|high|normal|low)}}]
- preserve_details: [{{element, priority (critical|important|nice_to_have), location, notes}}]
- hollow_regions: [{{region_type (neckline|sleeves|front_opening|armholes|other), keep_hollow, inner_visible, inner_description}}]
- construction_details: [{{feature, silhouette_rule, critical_for_structure}}]
- interior_analysis: [{{surface_type, priority, location, color_hex, pattern_description}}]
- palette: {{dominant_hex, accent_hex, trim_hex, pattern_hexes}}
- special_handling: string
{proportions_clause}
Session: {session_id}. Respond with JSON only."""

PROPORTIONS_CLAUSE = (
    "- proportions: {shoulder_w, torso_l, sleeve_l} as fractions of garment height, "
    "measured from image A (on-model reference; use it ONLY for proportions)\n"
)

ENRICHMENT_PROMPT = """You are performing focused enrichment analysis for ghost-mannequin rendering.
It builds on structural analysis {base_ref}. Return JSON with:

- color_precision: {{primary_hex, secondary_hex, trim_hex, color_temperature (warm|cool|neutral),
  saturation_level (muted|moderate|vibrant), pattern_direction, pattern_repeat_size (micro|small|medium|large)}}
- fabric_behavior: {{drape_quality (crisp|flowing|structured|fluid|stiff), surface_sheen (matte|subtle_sheen|glossy|metallic),
  texture_depth, transparency_level (opaque|semi_opaque|translucent|sheer)}}
- construction_precision: {{seam_visibility, edge_finishing (raw|serged|bound|rolled|pinked), hardware_finish}}
- rendering_guidance: {{lighting_preference (soft_diffused|directional|high_key|dramatic),
  shadow_behavior (minimal_shadows|soft_shadows|defined_shadows|dramatic_shadows), color_fidelity_priority}}
- confidence_breakdown: {{color_confidence, fabric_confidence, overall_confidence}} in 0..1

Known structural summary: {summary}
Session: {session_id}. Respond with JSON only."""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_json_payload(text: Optional[str]) -> Optional[dict]:
    """Parse a model's JSON answer, tolerating markdown fences; None if unusable."""
    if not text:
        return None
    try:
        payload = json.loads(_FENCE_RE.sub("", text.strip()))
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


class GeminiAnalyzer:
    """Shared plumbing for the two analysis passes."""

    def __init__(self, api_key: Optional[str], config: Optional[AnalysisConfig] = None, client=None, uploader=None, http_client=None):
        self.api_key = api_key
        self.config = config or AnalysisConfig()
        self._client = client
        self._uploader = uploader
        self.http_client = http_client

    def is_configured(self) -> bool:
        return self._client is not None or bool(self.api_key)

    @property
    def client(self):
        if self._client is None:
            self._client = make_genai_client(self.api_key)
        return self._client

    @property
    def uploader(self) -> Optional[GeminiFileUploader]:
        if self._uploader is None and self.config.use_files_api:
            self._uploader = GeminiFileUploader(self.client, max_age_s=self.config.files_max_age_s)
        return self._uploader

    async def image_part(self, ref: str):
        """Files API part when possible, inline bytes otherwise."""
        from google.genai import types

        data, mime_type = await fetch_image_bytes(ref, self.http_client)
        data, mime_type = prepare_image(data, ANALYSIS_IMAGE_MAX_PX, mime_type)
        uploader = self.uploader
        if uploader is not None:
            try:
                uploaded = await uploader.upload(data, mime_type)
                return types.Part.from_uri(file_uri=uploaded.uri, mime_type=uploaded.mime_type)
            except GhostPipelineError as exc:
                if exc.kind == QUOTA:
                    raise
                logger.warning(f"Files API upload failed ({exc.code}); sending image inline")
        return types.Part.from_bytes(data=data, mime_type=mime_type)

    async def generate_json(self, model: str, parts: List[Any], what: str) -> Optional[dict]:
        from google.genai import types

        try:
            response = await self.client.aio.models.generate_content(
                model=model,
                contents=parts,
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    temperature=self.config.temperature,
                ),
            )
        except Exception as exc:
            raise wrap_provider_error(
                exc, quota_code="GEMINI_QUOTA_EXCEEDED", failure_code="ANALYSIS_FAILED", provider=f"Gemini {what}"
            )
        raise_if_blocked(response, provider=f"Gemini {what}")
        payload = parse_json_payload(response.text)
        if payload is None:
            logger.warning(f"Gemini {what} returned malformed JSON; using minimal analysis")
        return payload


class GeminiStructuralAnalyzer(GeminiAnalyzer):

    async def analyze(self, image_ref: str, session_id: str, on_model_ref: Optional[str] = None) -> StructuralAnalysis:
        from google.genai import types

        parts = [await self.image_part(image_ref)]
        if on_model_ref:
            parts.append(await self.image_part(on_model_ref))
        prompt = STRUCTURAL_PROMPT.format(
            session_id=session_id,
            proportions_clause=PROPORTIONS_CLAUSE if on_model_ref else "",
        )
        parts.append(types.Part.from_text(text=prompt))

        payload = await self.generate_json(self.config.structural_model, parts, "structural analysis")
        if payload is None:
            return StructuralAnalysis.minimal(session_id)

        analysis = StructuralAnalysis.from_dict(payload, session_id=session_id)
        if not on_model_ref:
            analysis.proportions = None
        logger.info(
            f"🔍 Structural analysis: category={analysis.category} labels={len(analysis.labels)} "
            f"hollows={len(analysis.hollow_regions)}"
        )
        return analysis


class GeminiEnrichmentAnalyzer(GeminiAnalyzer):

    async def analyze(self, image_ref: str, session_id: str, base: StructuralAnalysis) -> EnrichmentAnalysis:
        from google.genai import types

        base_ref = base.session_id or session_id
        summary = json.dumps(
            {
                "category": base.category,
                "silhouette": base.silhouette,
                "material": base.material,
                "palette": base.palette.dominant_hex,
            }
        )
        parts = [
            await self.image_part(image_ref),
            types.Part.from_text(
                text=ENRICHMENT_PROMPT.format(base_ref=base_ref, summary=summary, session_id=session_id)
            ),
        ]
        payload = await self.generate_json(self.config.enrichment_model, parts, "enrichment analysis")
        if payload is None:
            return EnrichmentAnalysis.minimal(session_id, base_analysis_ref=base_ref)

        enrichment = EnrichmentAnalysis.from_dict(payload, session_id=session_id, base_analysis_ref=base_ref)
        logger.info(
            f"🎨 Enrichment analysis: primary={enrichment.primary_hex} drape={enrichment.drape_quality} "
            f"sheen={enrichment.surface_sheen}"
        )
        return enrichment
