"""
Pytest configuration and fixtures for the ghost-mannequin pipeline tests.
"""

import asyncio
import io
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ghoststudio.config import PipelineConfig, ProviderKeys
from ghoststudio.models import BackgroundRemovalResult, EnrichmentAnalysis, StructuralAnalysis
from ghoststudio.pipeline import GhostPipeline
from ghoststudio.steps.step4_renderer import BackendOutput, RenderingBackend, RenderingDispatcher
from ghoststudio.utils.image_refs import encode_data_url

PROVIDER_ENV_VARS = (
    "FAL_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "FREEPIK_API_KEY",
    "RENDERING_MODEL",
    "RENDERING_FALLBACKS",
    "ENABLE_QA_LOOP",
    "MAX_QA_ITERATIONS",
    "USE_CCJ_PIPELINE",
    "GHOST_STORAGE_PROVIDER",
    "GHOST_STORAGE_BUCKET",
)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def create_test_image(width=512, height=512, color=(255, 255, 255)):
    """Create a test image with specified dimensions and color."""
    return Image.new('RGB', (width, height), color=color)


def create_garment_image(size=2048, garment_rgb=(26, 43, 60), margin_frac=0.125):
    """White studio image with a centred, symmetric garment block."""
    pixels = np.full((size, size, 3), 255, dtype=np.uint8)
    # edges on an 8 px grid so the QA thumbnail has crisp block edges
    lo = int(size * margin_frac) // 8 * 8
    hi = size - lo
    pixels[lo:hi, lo:hi] = garment_rgb
    return Image.fromarray(pixels)


def png_bytes(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def image_data_url(image: Image.Image) -> str:
    return encode_data_url(png_bytes(image), "image/png")


@pytest.fixture
def sample_image():
    """Create a sample garment image for testing."""
    img = Image.new('RGB', (512, 512), color='white')
    pixels = np.array(img)

    # Main body
    pixels[106:406, 156:356] = [26, 43, 60]
    # Left sleeve
    pixels[106:256, 56:156] = [26, 43, 60]
    # Right sleeve
    pixels[106:256, 356:456] = [26, 43, 60]

    return Image.fromarray(pixels)


@pytest.fixture
def flatlay_data_url(sample_image):
    return image_data_url(sample_image)


@pytest.fixture
def on_model_data_url():
    return image_data_url(create_test_image(256, 512, color=(200, 180, 170)))


# ---------------------------------------------------------------------------
# Analysis payloads
# ---------------------------------------------------------------------------

@pytest.fixture
def structural_payload() -> Dict[str, Any]:
    """Structural analysis JSON as a vision model would return it."""
    return {
        "category_generic": "top",
        "silhouette": "classic button-front shirt with long sleeves",
        "required_components": ["collar", "6-button placket", "chest pocket"],
        "forbidden_components": ["hood"],
        "material": "cotton poplin",
        "weave_knit": "woven",
        "pattern": "solid",
        "labels_found": [
            {
                "type": "brand_label",
                "location": "inner neck",
                "bbox_norm": [0.45, 0.05, 0.55, 0.10],
                "text": "NORTHWIND",
                "preserve": True,
                "priority": "critical",
                "ocr_conf": 0.93,
            },
            {
                "type": "size_label",
                "location": "inner neck",
                "text": "M",
                "preserve": True,
                "priority": "critical",
            },
        ],
        "preserve_details": [
            {"element": "pearl buttons", "priority": "critical", "location": "front placket"},
        ],
        "hollow_regions": [
            {"region_type": "neckline", "keep_hollow": True, "inner_visible": True, "inner_description": "white facing"},
        ],
        "construction_details": [
            {"feature": "yoke", "silhouette_rule": "straight across back", "critical_for_structure": True},
        ],
        "palette": {"dominant_hex": "#1A2B3C", "accent_hex": "#FFFFFF"},
        "edge_finish": "raw",
        "drape_stiffness": 0.8,
        "proportions": {"shoulder_w": 0.3, "torso_l": 0.5},
    }


@pytest.fixture
def enrichment_payload() -> Dict[str, Any]:
    """Enrichment analysis JSON as a vision model would return it."""
    return {
        "color_precision": {
            "primary_hex": "#1A2B3C",
            "secondary_hex": "#F5F5F5",
            "color_temperature": "cool",
            "saturation_level": "muted",
            "pattern_repeat_size": "micro",
        },
        "fabric_behavior": {
            "drape_quality": "crisp",
            "surface_sheen": "subtle_sheen",
            "transparency_level": "opaque",
        },
        "construction_precision": {"seam_visibility": "subtle", "edge_finishing": "serged"},
        "rendering_guidance": {
            "lighting_preference": "soft_diffused",
            "shadow_behavior": "soft_shadows",
            "preferred_angle": "front",
        },
        "confidence_breakdown": {"color_confidence": 0.9, "overall_confidence": 0.85},
    }


# ---------------------------------------------------------------------------
# Fake pipeline components
# ---------------------------------------------------------------------------

class FakeBackgroundRemover:
    def __init__(self, delay: float = 0.0, error: Optional[Exception] = None, configured: bool = True):
        self.delay = delay
        self.error = error
        self.configured = configured
        self.calls: List[tuple] = []

    def is_configured(self):
        return self.configured

    async def run(self, flatlay, on_model=None):
        self.calls.append((flatlay, on_model))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return BackgroundRemovalResult(
            cleaned_image_url=flatlay,
            processing_time_ms=5,
            cleaned_on_model_url=on_model,
        )


class FakeStructuralAnalyzer:
    def __init__(self, payload: Optional[Dict[str, Any]] = None, delay: float = 0.0, error: Optional[Exception] = None):
        self.payload = payload
        self.delay = delay
        self.error = error
        self.calls: List[tuple] = []

    def is_configured(self):
        return True

    async def analyze(self, image_ref, session_id, on_model_ref=None):
        self.calls.append((image_ref, session_id, on_model_ref))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        analysis = StructuralAnalysis.from_dict(self.payload or {}, session_id=session_id)
        if not on_model_ref:
            analysis.proportions = None
        return analysis


class FakeEnrichmentAnalyzer:
    def __init__(self, payload: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.payload = payload
        self.error = error
        self.calls: List[tuple] = []

    def is_configured(self):
        return True

    async def analyze(self, image_ref, session_id, base):
        self.calls.append((image_ref, session_id, base))
        if self.error is not None:
            raise self.error
        return EnrichmentAnalysis.from_dict(self.payload or {}, session_id=session_id, base_analysis_ref=base.session_id)


class FakeBackend(RenderingBackend):
    """Backend that replays scripted outputs or exceptions and records requests."""

    def __init__(self, name: str, outputs=None, configured: bool = True):
        self.name = name
        self.outputs = list(outputs) if outputs is not None else []
        self.configured = configured
        self.requests = []

    def is_configured(self):
        return self.configured

    async def generate(self, request):
        self.requests.append(request)
        outcome = self.outputs.pop(0) if self.outputs else BackendOutput(image_url=f"https://cdn.test/{self.name}.png")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeQAValidator:
    """Returns scripted verdicts in order; repeats the last one."""

    def __init__(self, verdicts):
        self.verdicts = list(verdicts)
        self.calls = []

    async def validate(self, result, contract, framing_margin_pct=6.0):
        self.calls.append((result, contract, framing_margin_pct))
        verdict = self.verdicts.pop(0) if len(self.verdicts) > 1 else self.verdicts[0]
        return type(verdict)(
            passed=verdict.passed,
            violations=list(verdict.violations),
            metrics=dict(verdict.metrics),
            notes=list(verdict.notes),
        )


def build_pipeline(
    config: PipelineConfig,
    backends,
    structural=None,
    enrichment=None,
    remover=None,
    qa_validator=None,
):
    dispatcher = RenderingDispatcher(
        {b.name: b for b in backends},
        default_backend=config.rendering.default_backend,
        fallback_backends=config.rendering.fallback_backends,
        fallback_on_transport=config.rendering.fallback_on_transport,
    )
    return GhostPipeline(
        config,
        background_remover=remover or FakeBackgroundRemover(),
        structural_analyzer=structural or FakeStructuralAnalyzer(),
        enrichment_analyzer=enrichment or FakeEnrichmentAnalyzer(),
        dispatcher=dispatcher,
        qa_validator=qa_validator,
    )


@pytest.fixture
def pipeline_config():
    """Config with every provider key set and storage off."""
    return PipelineConfig(
        keys=ProviderKeys(fal_api_key="fal-test", gemini_api_key="gemini-test", freepik_api_key="freepik-test")
    )


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Keep real provider credentials out of the tests."""
    for name in PROVIDER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    for stage in ("BACKGROUND_REMOVAL", "ANALYSIS", "ENRICHMENT", "CONSOLIDATION", "RENDERING", "QA"):
        monkeypatch.delenv(f"TIMEOUT_{stage}", raising=False)
    monkeypatch.setenv("TESTING", "1")
    yield
