"""
models.py – Data model for the ghost-mannequin pipeline
=======================================================

Typed records that flow between stages:

- Request / RequestOptions         immutable caller input
- PipelineRun                      per-run mutable state (orchestrator only)
- StructuralAnalysis               labels, hollows, construction, coarse palette
- EnrichmentAnalysis               precise color, fabric physics, rendering guidance
- ConsolidatedFacts / ControlBlock canonical merged facts + rendering projection
- GenerationResult / QAVerdict     rendering output and its validation
- RunResult                        API-shaped outcome of a run

Analysis records are built with ``from_dict`` which accepts whatever a vision
model returned (partial, wrong types, bad hex) and never raises.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

STAGE_ORDER: Tuple[str, ...] = (
    "background_removal",
    "analysis",
    "enrichment",
    "consolidation",
    "rendering",
    "qa",
)

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_HEX_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

LABEL_PRIORITIES = ("critical", "high", "normal", "low")

# enrichment drape vocabulary -> stiffness 0..1
DRAPE_STIFFNESS = {
    "fluid": 0.2,
    "flowing": 0.3,
    "crisp": 0.65,
    "structured": 0.75,
    "stiff": 0.9,
}

TRANSPARENCY_ALIASES = {
    "opaque": "opaque",
    "semi_opaque": "semi_sheer",
    "semi_sheer": "semi_sheer",
    "translucent": "semi_sheer",
    "sheer": "sheer",
}


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def normalize_hex(value: Any) -> Optional[str]:
    """Return ``#RRGGBB`` for valid input (adding a missing '#'), else None."""
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if candidate and not candidate.startswith("#"):
        candidate = "#" + candidate
    return candidate if _HEX_RE.match(candidate) else None


def _str(value: Any, default: Optional[str] = None) -> Optional[str]:
    if value is None:
        return default
    if isinstance(value, str):
        value = value.strip()
        return value or default
    if isinstance(value, (int, float, bool)):
        return str(value)
    return default


def _float(value: Any, default: Optional[float] = None, lo: Optional[float] = None, hi: Optional[float] = None) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    if lo is not None:
        number = max(lo, number)
    if hi is not None:
        number = min(hi, number)
    return number


def _bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
    return default


def _list(value: Any) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    return []


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _str_list(value: Any) -> List[str]:
    return [s for s in (_str(v) for v in _list(value)) if s]


def _bbox(value: Any) -> Optional[Tuple[float, float, float, float]]:
    items = _list(value)
    if len(items) != 4:
        return None
    coords = [_float(v) for v in items]
    if any(c is None for c in coords):
        return None
    return tuple(coords)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Request & run state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequestOptions:
    output_size: str = "2048x2048"
    background_color: str = "white"
    preserve_labels: bool = True
    use_structured_prompt: bool = True
    rendering_backend: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RequestOptions":
        data = _dict(data)
        return cls(
            output_size=_str(data.get("output_size", data.get("outputSize")), "2048x2048"),
            background_color=_str(data.get("background_color", data.get("backgroundColor")), "white"),
            preserve_labels=_bool(data.get("preserve_labels", data.get("preserveLabels")), True),
            use_structured_prompt=_bool(
                data.get("use_structured_prompt", data.get("useStructuredPrompt")), True
            ),
            rendering_backend=_str(data.get("rendering_backend", data.get("renderingBackend"))),
        )


@dataclass(frozen=True)
class Request:
    """Caller input: flatlay image reference plus optional on-model reference."""
    flatlay: str
    on_model: Optional[str] = None
    options: RequestOptions = field(default_factory=RequestOptions)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Request":
        data = _dict(data)
        return cls(
            flatlay=data.get("flatlay") or "",
            on_model=data.get("on_model", data.get("onModel")) or None,
            options=RequestOptions.from_dict(data.get("options")),
        )


@dataclass
class StageTiming:
    stage: str
    started_at: float
    duration_ms: int


@dataclass
class PipelineRun:
    """Mutable state of one run. Only the orchestrator calls the mutators."""
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    current_stage: Optional[str] = None
    status: str = STATUS_PROCESSING
    stage_results: Dict[str, Any] = field(default_factory=dict)
    timings: Dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)

    def advance(self, stage: str) -> None:
        """Move forward to ``stage``; moving backwards is a programming error."""
        if stage not in STAGE_ORDER:
            raise ValueError(f"unknown stage {stage!r}")
        if self.current_stage is not None and STAGE_ORDER.index(stage) <= STAGE_ORDER.index(self.current_stage):
            raise ValueError(f"cannot move from {self.current_stage!r} back to {stage!r}")
        if self.status != STATUS_PROCESSING:
            raise ValueError(f"run already {self.status}")
        self.current_stage = stage

    def commit(self, stage: str, result: Any, duration_ms: Optional[int] = None) -> None:
        """Write a stage output once; ``duration_ms`` is None for skipped stages."""
        if stage in self.stage_results:
            raise ValueError(f"stage {stage!r} already committed")
        self.stage_results[stage] = result
        if duration_ms is not None:
            self.timings[stage] = duration_ms

    def replace_result(self, stage: str, result: Any) -> None:
        """QA retries overwrite the rendering output; nothing else may."""
        if stage not in self.stage_results:
            raise ValueError(f"stage {stage!r} has no result to replace")
        self.stage_results[stage] = result

    def finish(self, status: str) -> None:
        if self.status != STATUS_PROCESSING:
            raise ValueError(f"run already {self.status}")
        self.status = status

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


# ---------------------------------------------------------------------------
# Structural analysis
# ---------------------------------------------------------------------------

@dataclass
class Label:
    text: str
    type: str = "brand_label"
    location: Optional[str] = None
    bbox_norm: Optional[Tuple[float, float, float, float]] = None
    visible: bool = True
    legibility: float = 1.0
    preserve: bool = True
    priority: str = "high"

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Label"]:
        data = _dict(data)
        text = _str(data.get("text")) or _str(data.get("ocr_text"))
        if not text:
            return None
        priority = _str(data.get("priority"), "high")
        if priority not in LABEL_PRIORITIES:
            priority = "high"
        visibility = _str(data.get("visibility"))
        return cls(
            text=text[:80],
            type=_str(data.get("type"), "brand_label"),
            location=_str(data.get("location")) or _str(data.get("location_hint")) or _str(data.get("region_hint")),
            bbox_norm=_bbox(data.get("bbox_norm")),
            visible=_bool(data.get("visible"), visibility != "edge_visible" if visibility else True),
            legibility=_float(data.get("legibility", data.get("ocr_conf")), 1.0, 0.0, 1.0),
            preserve=_bool(data.get("preserve"), True),
            priority=priority,
        )


@dataclass
class PreserveDetail:
    element: str
    priority: str = "important"
    location: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["PreserveDetail"]:
        data = _dict(data)
        element = _str(data.get("element"))
        if not element:
            return None
        return cls(
            element=element,
            priority=_str(data.get("priority"), "important"),
            location=_str(data.get("location")),
            notes=_str(data.get("notes")) or _str(data.get("material_notes")),
        )


@dataclass
class HollowRegion:
    region_type: str
    keep_hollow: bool = True
    inner_visible: bool = False
    inner_description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["HollowRegion"]:
        data = _dict(data)
        region = _str(data.get("region_type"))
        if not region:
            return None
        return cls(
            region_type=region,
            keep_hollow=_bool(data.get("keep_hollow"), True),
            inner_visible=_bool(data.get("inner_visible"), False),
            inner_description=_str(data.get("inner_description")),
        )


@dataclass
class ConstructionDetail:
    feature: str
    silhouette_rule: str = ""
    critical_for_structure: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ConstructionDetail"]:
        data = _dict(data)
        feature = _str(data.get("feature"))
        if not feature:
            return None
        return cls(
            feature=feature,
            silhouette_rule=_str(data.get("silhouette_rule"), ""),
            critical_for_structure=_bool(data.get("critical_for_structure"), False),
        )


@dataclass
class InteriorSurface:
    surface_type: str
    priority: str = "important"
    location: Optional[str] = None
    color_hex: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["InteriorSurface"]:
        data = _dict(data)
        surface = _str(data.get("surface_type"))
        if not surface:
            return None
        return cls(
            surface_type=surface,
            priority=_str(data.get("priority"), "important"),
            location=_str(data.get("location")),
            color_hex=normalize_hex(data.get("color_hex")),
            description=_str(data.get("pattern_description")) or _str(data.get("material_description")),
        )


@dataclass
class Palette:
    dominant_hex: Optional[str] = None
    accent_hex: Optional[str] = None
    trim_hex: Optional[str] = None
    pattern_hexes: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "Palette":
        data = _dict(data)
        return cls(
            dominant_hex=normalize_hex(data.get("dominant_hex", data.get("primary_hex"))),
            accent_hex=normalize_hex(data.get("accent_hex", data.get("secondary_hex"))),
            trim_hex=normalize_hex(data.get("trim_hex")),
            pattern_hexes=[h for h in (normalize_hex(v) for v in _list(data.get("pattern_hexes"))) if h],
        )


def _parse_items(items: Any, factory) -> list:
    parsed = (factory(item) for item in _list(items))
    return [item for item in parsed if item is not None]


@dataclass
class StructuralAnalysis:
    """What the garment *is*: labels, construction, hollows, coarse palette."""
    session_id: str = ""
    category: Optional[str] = None
    silhouette: Optional[str] = None
    required_components: List[str] = field(default_factory=list)
    forbidden_components: List[str] = field(default_factory=list)
    material: Optional[str] = None
    weave_knit: Optional[str] = None
    pattern: Optional[str] = None
    labels: List[Label] = field(default_factory=list)
    preserve_details: List[PreserveDetail] = field(default_factory=list)
    hollow_regions: List[HollowRegion] = field(default_factory=list)
    construction_details: List[ConstructionDetail] = field(default_factory=list)
    interior_surfaces: List[InteriorSurface] = field(default_factory=list)
    palette: Palette = field(default_factory=Palette)
    drape_stiffness: Optional[float] = None
    transparency: Optional[str] = None
    surface_sheen: Optional[str] = None
    edge_finish: Optional[str] = None
    proportions: Optional[Dict[str, float]] = None
    special_handling: Optional[str] = None
    safety_must_not: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any, session_id: str = "") -> "StructuralAnalysis":
        data = _dict(data)
        meta = _dict(data.get("meta"))
        palette = data.get("palette", data.get("color_palette"))
        proportions = {
            k: v for k, v in ((k, _float(v)) for k, v in _dict(data.get("proportions")).items()) if v is not None
        }
        return cls(
            session_id=_str(meta.get("session_id"), session_id) or "",
            category=_str(data.get("category_generic", data.get("category"))),
            silhouette=_str(data.get("silhouette")),
            required_components=_str_list(data.get("required_components")),
            forbidden_components=_str_list(data.get("forbidden_components")),
            material=_str(data.get("material")),
            weave_knit=_str(data.get("weave_knit")),
            pattern=_str(data.get("pattern")),
            labels=_parse_items(data.get("labels_found"), Label.from_dict),
            preserve_details=_parse_items(data.get("preserve_details"), PreserveDetail.from_dict),
            hollow_regions=_parse_items(data.get("hollow_regions"), HollowRegion.from_dict),
            construction_details=_parse_items(data.get("construction_details"), ConstructionDetail.from_dict),
            interior_surfaces=_parse_items(data.get("interior_analysis"), InteriorSurface.from_dict),
            palette=Palette.from_dict(palette),
            drape_stiffness=_float(data.get("drape_stiffness"), None, 0.0, 1.0),
            transparency=TRANSPARENCY_ALIASES.get(_str(data.get("transparency"), "") or ""),
            surface_sheen=_str(data.get("surface_sheen")),
            edge_finish=_str(data.get("edge_finish")),
            proportions=proportions or None,
            special_handling=_str(data.get("special_handling")),
            safety_must_not=normalize_safety(data.get("safety")),
        )

    @classmethod
    def minimal(cls, session_id: str) -> "StructuralAnalysis":
        """Valid empty analysis used when a provider returns unusable output."""
        return cls(session_id=session_id)


def normalize_safety(value: Any) -> List[str]:
    """Accept a list, ``{"must_not": [...]}`` or nothing."""
    if isinstance(value, dict):
        return _str_list(value.get("must_not"))
    return _str_list(value)


# ---------------------------------------------------------------------------
# Enrichment analysis
# ---------------------------------------------------------------------------

@dataclass
class EnrichmentAnalysis:
    """How the garment should *render*: exact colors, physics, lighting."""
    session_id: str = ""
    base_analysis_ref: Optional[str] = None
    primary_hex: Optional[str] = None
    secondary_hex: Optional[str] = None
    trim_hex: Optional[str] = None
    pattern_hexes: List[str] = field(default_factory=list)
    color_temperature: Optional[str] = None
    saturation_level: Optional[str] = None
    print_scale: Optional[str] = None
    drape_quality: Optional[str] = None
    drape_stiffness: Optional[float] = None
    surface_sheen: Optional[str] = None
    transparency: Optional[str] = None
    texture_depth: Optional[str] = None
    seam_visibility: Optional[str] = None
    edge_finish: Optional[str] = None
    hardware_finish: Optional[str] = None
    lighting: Optional[str] = None
    shadow: Optional[str] = None
    view: Optional[str] = None
    color_fidelity_priority: Optional[str] = None
    confidence: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, session_id: str = "", base_analysis_ref: Optional[str] = None) -> "EnrichmentAnalysis":
        data = _dict(data)
        meta = _dict(data.get("meta"))
        color = _dict(data.get("color_precision"))
        fabric = _dict(data.get("fabric_behavior"))
        construction = _dict(data.get("construction_precision"))
        guidance = _dict(data.get("rendering_guidance"))
        confidence = {
            k: v
            for k, v in ((k, _float(v, None, 0.0, 1.0)) for k, v in _dict(data.get("confidence_breakdown")).items())
            if v is not None
        }
        drape_quality = _str(fabric.get("drape_quality"))
        stiffness = _float(fabric.get("drape_stiffness"), None, 0.0, 1.0)
        if stiffness is None and drape_quality:
            stiffness = DRAPE_STIFFNESS.get(drape_quality)
        return cls(
            session_id=_str(meta.get("session_id"), session_id) or "",
            base_analysis_ref=_str(meta.get("base_analysis_ref"), base_analysis_ref),
            primary_hex=normalize_hex(color.get("primary_hex")),
            secondary_hex=normalize_hex(color.get("secondary_hex")),
            trim_hex=normalize_hex(color.get("trim_hex")),
            pattern_hexes=[h for h in (normalize_hex(v) for v in _list(color.get("pattern_hexes"))) if h],
            color_temperature=_str(color.get("color_temperature")),
            saturation_level=_str(color.get("saturation_level")),
            print_scale=_str(color.get("pattern_repeat_size")),
            drape_quality=drape_quality,
            drape_stiffness=stiffness,
            surface_sheen=_str(fabric.get("surface_sheen")),
            transparency=TRANSPARENCY_ALIASES.get(_str(fabric.get("transparency_level"), "") or ""),
            texture_depth=_str(fabric.get("texture_depth")),
            seam_visibility=_str(construction.get("seam_visibility")),
            edge_finish=_str(construction.get("edge_finishing")),
            hardware_finish=_str(construction.get("hardware_finish")),
            lighting=_str(guidance.get("lighting_preference")),
            shadow=_str(guidance.get("shadow_behavior")),
            view=_str(guidance.get("preferred_angle")),
            color_fidelity_priority=_str(guidance.get("color_fidelity_priority")),
            confidence=confidence,
        )

    @classmethod
    def minimal(cls, session_id: str, base_analysis_ref: Optional[str] = None) -> "EnrichmentAnalysis":
        return cls(session_id=session_id, base_analysis_ref=base_analysis_ref)


# ---------------------------------------------------------------------------
# Consolidation output
# ---------------------------------------------------------------------------

@dataclass
class Conflict:
    field: str
    structural_value: Any
    enrichment_value: Any
    resolution: Any
    source_of_truth: str  # "structural" | "enrichment"
    discarded_value: Any


@dataclass
class ConsolidatedFacts:
    """Canonical, internally consistent garment description."""
    category_generic: str = "unknown"
    silhouette: str = "generic_silhouette"
    required_components: List[str] = field(default_factory=list)
    forbidden_components: List[str] = field(default_factory=list)
    labels_found: List[Label] = field(default_factory=list)
    label_visibility: str = "optional"
    preserve_details: List[PreserveDetail] = field(default_factory=list)
    hollow_regions: List[HollowRegion] = field(default_factory=list)
    construction_details: List[ConstructionDetail] = field(default_factory=list)
    interior_surfaces: List[InteriorSurface] = field(default_factory=list)
    palette: Palette = field(default_factory=Palette)
    pattern: str = "solid"
    print_scale: str = "none"
    material: str = "unspecified_material"
    weave_knit: str = "unknown"
    drape_stiffness: float = 0.4
    transparency: str = "opaque"
    surface_sheen: str = "matte"
    edge_finish: str = "unknown"
    seam_visibility: Optional[str] = None
    lighting: str = "soft_diffused"
    shadow: str = "soft_shadows"
    view: str = "front"
    framing_margin_pct: float = 6.0
    proportions: Dict[str, float] = field(default_factory=dict)
    proportion_source: str = "category_default"
    button_count: int = 0
    neckline: str = "crew"
    sleeve_length: str = "none"
    cuff_style: Optional[str] = None
    qa_targets: Dict[str, float] = field(default_factory=dict)
    safety_must_not: List[str] = field(default_factory=list)
    special_handling: Optional[str] = None
    confidence: Dict[str, float] = field(default_factory=dict)
    defaults_applied: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ControlBlock:
    """Rendering projection derived only from ConsolidatedFacts."""
    category_generic: str
    silhouette: str
    required_components: List[str]
    forbidden_components: List[str]
    palette: Palette
    material: str
    weave_knit: str
    drape_stiffness: float
    transparency: str
    surface_sheen: str
    edge_finish: str
    view: str
    framing_margin_pct: float
    shadow_style: str
    lighting: str
    label_visibility: str
    must: List[str] = field(default_factory=list)
    ban: List[str] = field(default_factory=list)
    label_keep_list: List[str] = field(default_factory=list)
    label_bbox_hard_hints: List[Tuple[float, float, float, float]] = field(default_factory=list)
    label_legibility_min: Optional[float] = None
    safety_must_not: List[str] = field(default_factory=list)
    background_hex: str = "#FFFFFF"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------

@dataclass
class BackgroundRemovalResult:
    cleaned_image_url: str
    processing_time_ms: int
    cleaned_on_model_url: Optional[str] = None


@dataclass
class ConsolidationResult:
    """Consolidation output; ``rendering`` is set only in combined mode."""
    facts: ConsolidatedFacts
    control: ControlBlock
    conflicts: List[Conflict]
    contract: Any = None
    rendering: Optional["GenerationResult"] = None

    @property
    def variant(self) -> str:
        return "facts_and_result" if self.rendering is not None else "facts_only"


@dataclass
class QAVerdict:
    passed: bool
    violations: List[str] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    attempts: int = 1
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GenerationResult:
    image_url: str
    backend: str
    fallback_used: bool = False
    attempts: int = 1
    processing_time_ms: int = 0
    digest: Optional[str] = None
    mime_type: str = "image/png"
    stored: bool = False
    image_bytes: Optional[bytes] = field(default=None, repr=False)
    qa: Optional[QAVerdict] = None


@dataclass
class RunResult:
    session_id: str
    status: str
    stage_results: Dict[str, Any] = field(default_factory=dict)
    timings: Dict[str, int] = field(default_factory=dict)
    processing_time_ms: int = 0
    error: Optional[Any] = None  # ErrorRecord

    @property
    def rendering(self) -> Optional[GenerationResult]:
        return self.stage_results.get("rendering")

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the public camelCase response shape."""
        background = self.stage_results.get("background_removal")
        rendering = self.rendering
        out: Dict[str, Any] = {
            "sessionId": self.session_id,
            "status": self.status,
            "metrics": {
                "processingTime": f"{self.processing_time_ms / 1000:.2f}s",
                "stageTimings": dict(self.timings),
            },
        }
        if background is not None:
            out["cleanedImageUrl"] = background.cleaned_image_url
            if background.cleaned_on_model_url:
                out["cleanedOnModelUrl"] = background.cleaned_on_model_url
        if rendering is not None:
            out["renderUrl"] = rendering.image_url
            out["renderingBackend"] = rendering.backend
            out["fallbackUsed"] = rendering.fallback_used
            if rendering.digest:
                out["contractDigest"] = rendering.digest
            if rendering.qa is not None:
                out["qa"] = rendering.qa.to_dict()
        consolidation = self.stage_results.get("consolidation")
        if consolidation is not None:
            out["conflicts"] = len(consolidation.conflicts)
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out
