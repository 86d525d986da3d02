#!/usr/bin/env python3
"""
step5_qa.py – Quality-Assurance Loop
====================================

Validate a rendered image against the core contract and regenerate a bounded
number of times with adjusted parameters.

QA Checks:
- Color: ΔE2000 mean + p95 of garment pixels vs the primary contract color
- Proportion: framing margin + left/right silhouette symmetry
- Resolution: shortest side vs minimum resolution
- Structure (optional): Gemini reviewer compares element counts to the contract

Retry policy:
- color only        → downscale references, keep the full instruction
- structure         → shorten the instruction and downscale
- proportion        → downscale
- resolution        → plain regenerate

States: initial → generated → validated → (retried → generated)* → terminal

Dependencies: numpy pillow scikit-image google-genai
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image
from skimage import color as skcolor

from ..config import QAConfig
from ..errors import CONTENT_BLOCKED, GhostPipelineError, wrap_provider_error
from ..models import GenerationResult, QAVerdict
from ..utils.genai_response import make_genai_client, raise_if_blocked
from ..utils.image_refs import fetch_image_bytes, image_to_bytes, open_image, prepare_image
from .step3_contract import CompiledContract
from .step4_renderer import RenderRequest

logger = logging.getLogger("ghoststudio.qa")

COLOR = "color"
STRUCTURE = "structure"
PROPORTION = "proportion"
RESOLUTION = "resolution"

BACKGROUND_TOLERANCE = 15
ANALYSIS_MAX_PX = 512

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def hex_to_rgb(hex_str: str) -> Tuple[int, int, int]:
    h = hex_str.strip().lstrip("#")
    return int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)


def garment_mask(rgb: np.ndarray, background_hex: str = "#FFFFFF") -> np.ndarray:
    """Pixels that differ from the flat studio background."""
    background = np.array(hex_to_rgb(background_hex), dtype=np.int16)
    return np.abs(rgb.astype(np.int16) - background).max(axis=-1) > BACKGROUND_TOLERANCE


def compute_color_metrics(rgb: np.ndarray, mask: np.ndarray, target_hex: str) -> Tuple[float, float]:
    """(mean ΔE2000, p95 ΔE2000) of masked pixels against ``target_hex``."""
    pixels = rgb[mask].astype(np.float64) / 255.0
    if len(pixels) < 10:
        return 999.0, 999.0
    lab = skcolor.rgb2lab(pixels.reshape(-1, 1, 3)).reshape(-1, 3)
    target = np.array(hex_to_rgb(target_hex), dtype=np.float64) / 255.0
    target_lab = skcolor.rgb2lab(target.reshape(1, 1, 3)).reshape(3)
    delta_e = skcolor.deltaE_ciede2000(lab, np.broadcast_to(target_lab, lab.shape))
    return float(np.mean(delta_e)), float(np.percentile(delta_e, 95))


def compute_framing_margin_pct(mask: np.ndarray) -> float:
    """Smallest distance from the garment bbox to an image edge, as % of size."""
    rows = np.any(mask, axis=1)
    cols = np.any(mask, axis=0)
    if not rows.any():
        return 0.0
    top, bottom = np.argmax(rows), len(rows) - 1 - np.argmax(rows[::-1])
    left, right = np.argmax(cols), len(cols) - 1 - np.argmax(cols[::-1])
    h, w = mask.shape
    margins = (top / h, (h - 1 - bottom) / h, left / w, (w - 1 - right) / w)
    return float(min(margins) * 100.0)


def compute_symmetry_error(mask: np.ndarray) -> float:
    """Fraction of garment pixels without a mirror partner across the bbox centre."""
    cols = np.where(np.any(mask, axis=0))[0]
    if len(cols) == 0:
        return 1.0
    cropped = mask[:, cols[0]:cols[-1] + 1]
    mismatch = np.logical_xor(cropped, cropped[:, ::-1]).sum()
    return float(mismatch / max(1, 2 * cropped.sum()))


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

class PixelQAValidator:
    """Deterministic pixel-statistics validator."""

    def __init__(self, config: Optional[QAConfig] = None, http_client=None):
        self.config = config or QAConfig()
        self.http_client = http_client

    async def load_image(self, result: GenerationResult) -> Image.Image:
        if result.image_bytes:
            return open_image(result.image_bytes)
        data, _ = await fetch_image_bytes(result.image_url, self.http_client)
        return open_image(data)

    def measure(self, image: Image.Image, contract: CompiledContract, framing_margin_pct: float) -> QAVerdict:
        cfg = self.config
        violations: List[str] = []
        metrics: Dict[str, float] = {"width": float(image.width), "height": float(image.height)}

        if min(image.size) < cfg.min_resolution_px:
            violations.append(RESOLUTION)

        small = image.convert("RGB")
        small.thumbnail((ANALYSIS_MAX_PX, ANALYSIS_MAX_PX))
        rgb = np.asarray(small, dtype=np.uint8)
        mask = garment_mask(rgb, contract.core.get("rules", {}).get("bg") or "#FFFFFF")
        coverage = float(mask.mean())
        metrics["coverage"] = coverage

        if coverage < 0.02:
            violations.append(STRUCTURE)
            return QAVerdict(passed=False, violations=violations, metrics=metrics, notes=["no garment detected"])

        colors = contract.core.get("colors_hex") or []
        if colors:
            mean_de, p95_de = compute_color_metrics(rgb, mask, colors[0])
            metrics["delta_e_mean"] = round(mean_de, 3)
            metrics["delta_e_p95"] = round(p95_de, 3)
            if mean_de > cfg.delta_e_mean_max or p95_de > cfg.delta_e_p95_max:
                violations.append(COLOR)

        margin = compute_framing_margin_pct(mask)
        symmetry = compute_symmetry_error(mask)
        metrics["framing_margin_pct"] = round(margin, 2)
        metrics["symmetry_error"] = round(symmetry, 4)
        if margin < framing_margin_pct * 0.5 or symmetry > cfg.symmetry_tolerance:
            violations.append(PROPORTION)

        return QAVerdict(passed=not violations, violations=violations, metrics=metrics)

    async def validate(self, result: GenerationResult, contract: CompiledContract, framing_margin_pct: float = 6.0) -> QAVerdict:
        image = await self.load_image(result)
        verdict = await asyncio.to_thread(self.measure, image, contract, framing_margin_pct)
        logger.info(f"QA pixel check: passed={verdict.passed} violations={verdict.violations} metrics={verdict.metrics}")
        return verdict


REVIEW_PROMPT = """You are a QA reviewer for ghost-mannequin product photos.
Compare the image with this JSON CONTRACT and report structural mismatches
(missing/extra buttons, pockets, wrong neckline or sleeve length, visible
people or mannequins, labels missing).

JSON CONTRACT:
{contract}

Respond with JSON only: {{"passed": true|false, "issues": [{{"type": "structure"|"color"|"proportion", "detail": "..."}}]}}"""


class GeminiQAReviewer:
    """Structural review of the rendered image by a Gemini text model."""

    def __init__(self, api_key: Optional[str], model_name: str = "gemini-2.5-flash", client=None):
        self.api_key = api_key
        self.model_name = model_name
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = make_genai_client(self.api_key)
        return self._client

    async def review(self, image: Image.Image, contract: CompiledContract) -> QAVerdict:
        from google.genai import types

        data, mime_type = prepare_image(_png_bytes(image), 1024, "image/png")
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_name,
                contents=[
                    types.Part.from_bytes(data=data, mime_type=mime_type),
                    types.Part.from_text(text=REVIEW_PROMPT.format(contract=json.dumps(contract.core))),
                ],
                config=types.GenerateContentConfig(response_mime_type="application/json", temperature=0.0),
            )
        except Exception as exc:
            raise wrap_provider_error(exc, quota_code="GEMINI_QUOTA_EXCEEDED", failure_code="ANALYSIS_FAILED", provider="Gemini QA")
        raise_if_blocked(response, provider="Gemini QA")

        try:
            payload = json.loads(response.text or "{}")
        except json.JSONDecodeError:
            logger.warning("Gemini QA returned non-JSON output; treating as no findings")
            return QAVerdict(passed=True, notes=["reviewer output unparseable"])

        issues = payload.get("issues") if isinstance(payload, dict) else None
        violations = sorted({
            issue.get("type") for issue in issues or []
            if isinstance(issue, dict) and issue.get("type") in (STRUCTURE, COLOR, PROPORTION)
        })
        notes = [str(issue.get("detail")) for issue in issues or [] if isinstance(issue, dict) and issue.get("detail")]
        passed = bool(payload.get("passed", not violations)) and not violations
        return QAVerdict(passed=passed, violations=violations, notes=notes)


def _png_bytes(image: Image.Image) -> bytes:
    return image_to_bytes(image.convert("RGB"), "PNG")


class QAValidator:
    """Pixel validator, optionally combined with the Gemini reviewer."""

    def __init__(self, pixel: PixelQAValidator, reviewer: Optional[GeminiQAReviewer] = None):
        self.pixel = pixel
        self.reviewer = reviewer

    @classmethod
    def from_config(cls, config, http_client=None) -> "QAValidator":
        reviewer = None
        if config.qa.use_gemini_reviewer and config.keys.gemini_api_key:
            reviewer = GeminiQAReviewer(config.keys.gemini_api_key, config.qa.reviewer_model)
        return cls(PixelQAValidator(config.qa, http_client), reviewer)

    async def validate(self, result: GenerationResult, contract: CompiledContract, framing_margin_pct: float = 6.0) -> QAVerdict:
        verdict = await self.pixel.validate(result, contract, framing_margin_pct)
        if self.reviewer is None:
            return verdict

        image = await self.pixel.load_image(result)
        try:
            review = await self.reviewer.review(image, contract)
        except GhostPipelineError as exc:
            if exc.kind == CONTENT_BLOCKED:
                raise
            logger.warning(f"Gemini QA review unavailable ({exc.code}); using pixel verdict only")
            verdict.notes.append(f"reviewer skipped: {exc.code}")
            return verdict

        violations = list(dict.fromkeys(verdict.violations + review.violations))
        return QAVerdict(
            passed=verdict.passed and review.passed,
            violations=violations,
            metrics=verdict.metrics,
            notes=verdict.notes + review.notes,
        )


# ---------------------------------------------------------------------------
# Retry policy & loop
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryParameters:
    shorten_prompt: bool
    downscale: bool
    reason: str


def derive_retry_parameters(violations: List[str]) -> RetryParameters:
    """Map violated constraints to regeneration parameters."""
    kinds = set(violations)
    shorten = STRUCTURE in kinds
    downscale = bool(kinds & {COLOR, STRUCTURE, PROPORTION}) and RESOLUTION not in kinds
    return RetryParameters(shorten_prompt=shorten, downscale=downscale, reason="+".join(sorted(kinds)) or "none")


INITIAL = "initial"
GENERATED = "generated"
VALIDATED = "validated"
RETRIED = "retried"
TERMINAL = "terminal"


class QALoop:
    """Bounded validate/regenerate loop; never exceeds ``max_iterations`` generations."""

    def __init__(self, dispatcher, validator: QAValidator, max_iterations: int = 2, retry_image_px: int = 1536):
        self.dispatcher = dispatcher
        self.validator = validator
        self.max_iterations = max(1, max_iterations)
        self.retry_image_px = retry_image_px
        self.state = INITIAL
        self.history: List[str] = [INITIAL]
        self.retries: List[RetryParameters] = []

    def _transition(self, state: str) -> None:
        self.state = state
        self.history.append(state)

    async def run(
        self,
        initial: GenerationResult,
        render_request: RenderRequest,
        contract: CompiledContract,
        backend_id: Optional[str] = None,
        framing_margin_pct: float = 6.0,
    ) -> GenerationResult:
        current = initial
        attempts = 1
        self._transition(GENERATED)

        while True:
            verdict = await self.validator.validate(current, contract, framing_margin_pct)
            verdict.attempts = attempts
            self._transition(VALIDATED)

            if verdict.passed:
                logger.info(f"✅ QA passed after {attempts} generation(s)")
                self._transition(TERMINAL)
                return replace(current, qa=verdict)

            if attempts >= self.max_iterations:
                logger.warning(f"QA attempts exhausted ({attempts}); keeping last result with {verdict.violations}")
                self._transition(TERMINAL)
                return replace(current, qa=verdict)

            params = derive_retry_parameters(verdict.violations)
            self.retries.append(params)
            self._transition(RETRIED)
            request = replace(
                render_request,
                prompt=contract.instruction_for(params.shorten_prompt),
                image_max_px=self.retry_image_px if params.downscale else render_request.image_max_px,
            )
            logger.info(
                f"🔁 QA retry {attempts}/{self.max_iterations - 1}: reason={params.reason} "
                f"shorten={params.shorten_prompt} downscale={params.downscale}"
            )
            try:
                regenerated = await self.dispatcher.render(request, backend_id)
            except GhostPipelineError as exc:
                if exc.kind == CONTENT_BLOCKED:
                    self._transition(TERMINAL)
                    raise
                logger.warning(f"Regeneration failed ({exc.code}); keeping last good result")
                verdict.notes.append(f"regeneration failed: {exc.code}")
                self._transition(TERMINAL)
                return replace(current, qa=verdict)

            attempts += 1
            current = replace(regenerated, fallback_used=current.fallback_used or regenerated.fallback_used)
            self._transition(GENERATED)
