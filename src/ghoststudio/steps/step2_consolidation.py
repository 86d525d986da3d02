#!/usr/bin/env python3
"""
step2_consolidation.py – Fact Consolidation Engine
==================================================

Merge the structural analysis (what the garment *is*) with the enrichment
analysis (how it should *render*) into one canonical fact set.

Features:
- Explicit per-field precedence table; every override recorded as a Conflict
- Palette normalisation (accent → dominant, trim → accent, neutral fallback)
- Category-keyed defaults for proportions, drape and framing margin
- Silhouette keyword heuristics for buttons, neckline, sleeves and cuffs
- Label normalisation + ControlBlock derivation (must / ban / keep list)
- Pure: no I/O, no hidden state, tolerant of partial or malformed input

Dependencies: (stdlib only)
"""

from __future__ import annotations

import re
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..models import (
    ConsolidatedFacts,
    ControlBlock,
    Conflict,
    EnrichmentAnalysis,
    Label,
    Palette,
    StructuralAnalysis,
    normalize_hex,
)
from ..errors import GhostPipelineError

logger = logging.getLogger("ghoststudio.consolidation")

STRUCTURAL = "structural"
ENRICHMENT = "enrichment"

NEUTRAL_HEX = "#888888"
LABEL_LEGIBILITY_MIN = 0.85

BAN_LIST = ("mannequins", "humans", "props", "reflections")

WHITE_HEX = "#FFFFFF"
NAMED_BACKGROUNDS = {
    "white": WHITE_HEX,
    "off-white": "#F5F5F5",
    "light-gray": "#EEEEEE",
    "light-grey": "#EEEEEE",
    "gray": "#808080",
    "grey": "#808080",
    "black": "#000000",
}

DEFAULT_QA_TARGETS = {
    "deltaE_max": 3.0,
    "edge_halo_max_pct": 1.0,
    "symmetry_tolerance_pct": 3.0,
    "min_resolution_px": 2000.0,
}

# ---------------------------------------------------------------------------
# Category defaults
# ---------------------------------------------------------------------------

CATEGORY_ALIASES = {
    "top": "top", "shirt": "top", "blouse": "top", "t-shirt": "top", "tee": "top",
    "tank": "top", "polo": "top",
    "bottom": "bottom", "pants": "bottom", "trousers": "bottom", "jeans": "bottom",
    "skirt": "bottom", "shorts": "bottom",
    "dress": "dress", "gown": "dress", "jumpsuit": "dress",
    "outerwear": "outerwear", "jacket": "outerwear", "coat": "outerwear",
    "blazer": "outerwear", "parka": "outerwear",
    "knitwear": "knitwear", "sweater": "knitwear", "cardigan": "knitwear",
    "jumper": "knitwear", "hoodie": "knitwear",
    "underwear": "underwear", "accessory": "accessory",
}

CATEGORY_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "top": {
        "proportions": {"shoulder_w": 0.24, "torso_l": 0.52, "sleeve_l": 0.45},
        "drape_stiffness": 0.4,
        "framing_margin_pct": 6.0,
        "sleeve_length": "long",
    },
    "dress": {
        "proportions": {"shoulder_w": 0.22, "torso_l": 0.78, "sleeve_l": 0.42},
        "drape_stiffness": 0.3,
        "framing_margin_pct": 5.0,
        "sleeve_length": "short",
    },
    "outerwear": {
        "proportions": {"shoulder_w": 0.28, "torso_l": 0.64, "sleeve_l": 0.52},
        "drape_stiffness": 0.65,
        "framing_margin_pct": 7.0,
        "sleeve_length": "long",
    },
    "knitwear": {
        "proportions": {"shoulder_w": 0.25, "torso_l": 0.56, "sleeve_l": 0.47},
        "drape_stiffness": 0.35,
        "framing_margin_pct": 6.0,
        "sleeve_length": "long",
    },
    "bottom": {
        "proportions": {"shoulder_w": 0.20, "torso_l": 0.60, "sleeve_l": 0.0},
        "drape_stiffness": 0.5,
        "framing_margin_pct": 6.0,
        "sleeve_length": "none",
    },
}


def category_defaults(category: str) -> Dict[str, Any]:
    return CATEGORY_DEFAULTS.get(category, CATEGORY_DEFAULTS["top"])


def normalize_category(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    key = raw.strip().lower().replace("_", "-")
    if key in CATEGORY_ALIASES:
        return CATEGORY_ALIASES[key]
    for alias, category in CATEGORY_ALIASES.items():
        if alias in key:
            return category
    return "unknown"


# ---------------------------------------------------------------------------
# Precedence table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldRule:
    """One row of the precedence table."""
    field: str
    winner: str
    structural: Optional[Callable[[StructuralAnalysis], Any]] = None
    enrichment: Optional[Callable[[EnrichmentAnalysis], Any]] = None
    default: Any = None  # value, or callable(category) -> value


def _category_default(key: str) -> Callable[[str], Any]:
    return lambda category: category_defaults(category)[key]


PRECEDENCE_TABLE: Tuple[FieldRule, ...] = (
    # identity & presence: structural analysis is the authority
    FieldRule("category_generic", STRUCTURAL, lambda s: normalize_category(s.category), default="unknown"),
    FieldRule("silhouette", STRUCTURAL, lambda s: s.silhouette, default="generic_silhouette"),
    FieldRule("required_components", STRUCTURAL, lambda s: list(s.required_components) or None, default=list),
    FieldRule("forbidden_components", STRUCTURAL, lambda s: list(s.forbidden_components) or None, default=list),
    FieldRule("pattern", STRUCTURAL, lambda s: s.pattern, default="solid"),
    FieldRule("material", STRUCTURAL, lambda s: s.material, default="unspecified_material"),
    FieldRule("weave_knit", STRUCTURAL, lambda s: s.weave_knit, default="unknown"),
    # quantitative / rendering: enrichment analysis is the authority
    FieldRule("palette.dominant_hex", ENRICHMENT, lambda s: s.palette.dominant_hex, lambda e: e.primary_hex),
    FieldRule("palette.accent_hex", ENRICHMENT, lambda s: s.palette.accent_hex, lambda e: e.secondary_hex),
    FieldRule("palette.trim_hex", ENRICHMENT, lambda s: s.palette.trim_hex, lambda e: e.trim_hex),
    FieldRule(
        "palette.pattern_hexes", ENRICHMENT,
        lambda s: list(s.palette.pattern_hexes) or None,
        lambda e: list(e.pattern_hexes) or None,
        default=list,
    ),
    FieldRule("drape_stiffness", ENRICHMENT, lambda s: s.drape_stiffness, lambda e: e.drape_stiffness,
              default=_category_default("drape_stiffness")),
    FieldRule("transparency", ENRICHMENT, lambda s: s.transparency, lambda e: e.transparency, default="opaque"),
    FieldRule("surface_sheen", ENRICHMENT, lambda s: s.surface_sheen, lambda e: e.surface_sheen, default="matte"),
    FieldRule("edge_finish", ENRICHMENT, lambda s: s.edge_finish, lambda e: e.edge_finish, default="unknown"),
    FieldRule("print_scale", ENRICHMENT, enrichment=lambda e: e.print_scale, default="none"),
    FieldRule("seam_visibility", ENRICHMENT, enrichment=lambda e: e.seam_visibility),
    FieldRule("lighting", ENRICHMENT, enrichment=lambda e: e.lighting, default="soft_diffused"),
    FieldRule("shadow", ENRICHMENT, enrichment=lambda e: e.shadow, default="soft_shadows"),
    FieldRule("view", ENRICHMENT, enrichment=lambda e: e.view, default="front"),
)


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().lower() == b.strip().lower()
    if isinstance(a, float) or isinstance(b, float):
        try:
            return abs(float(a) - float(b)) < 1e-6
        except (TypeError, ValueError):
            return False
    if isinstance(a, list) and isinstance(b, list):
        return [str(x).lower() for x in a] == [str(x).lower() for x in b]
    return a == b


def _resolve(
    rule: FieldRule,
    structural: StructuralAnalysis,
    enrichment: EnrichmentAnalysis,
    category: str,
    conflicts: List[Conflict],
    defaults_applied: List[str],
) -> Any:
    s_val = rule.structural(structural) if rule.structural else None
    e_val = rule.enrichment(enrichment) if rule.enrichment else None

    if s_val is not None and e_val is not None:
        winner, loser = (s_val, e_val) if rule.winner == STRUCTURAL else (e_val, s_val)
        if not _same(s_val, e_val):
            conflicts.append(
                Conflict(
                    field=rule.field,
                    structural_value=s_val,
                    enrichment_value=e_val,
                    resolution=winner,
                    source_of_truth=rule.winner,
                    discarded_value=loser,
                )
            )
        return winner
    if s_val is not None:
        return s_val
    if e_val is not None:
        return e_val

    default = rule.default
    if callable(default):
        default = default(category) if default is not list else []
    if default not in (None, []):
        defaults_applied.append(rule.field)
    return default


# ---------------------------------------------------------------------------
# Palette & labels
# ---------------------------------------------------------------------------

def _coerce_hex(*candidates: Optional[str]) -> Optional[str]:
    for candidate in candidates:
        hex_value = normalize_hex(candidate)
        if hex_value:
            return hex_value
    return None


def normalize_palette(palette: Palette, defaults_applied: Optional[List[str]] = None) -> Palette:
    """Fill the palette: accent falls back to dominant, trim to accent."""
    dominant = _coerce_hex(palette.dominant_hex)
    if dominant is None:
        dominant = NEUTRAL_HEX
        if defaults_applied is not None:
            defaults_applied.append("palette.dominant_hex")
    accent = _coerce_hex(palette.accent_hex, dominant)
    trim = _coerce_hex(palette.trim_hex, accent, dominant)
    pattern = [h for h in (normalize_hex(v) for v in palette.pattern_hexes) if h]
    return Palette(dominant_hex=dominant, accent_hex=accent, trim_hex=trim, pattern_hexes=pattern)


def normalize_labels(raw: Any) -> List[Label]:
    """Accept Label objects or raw dicts; drop entries without text."""
    labels: List[Label] = []
    for item in raw if isinstance(raw, list) else []:
        label = item if isinstance(item, Label) else Label.from_dict(item)
        if label is not None and label.text:
            labels.append(label)
    return labels


# ---------------------------------------------------------------------------
# Keyword heuristics
# ---------------------------------------------------------------------------

_BUTTON_RE = re.compile(r"(\d+)[\s-]?button", re.IGNORECASE)


def infer_button_count(silhouette: str, components: List[str]) -> Tuple[int, bool]:
    """Return (count, heuristic_used)."""
    text = " ".join(components) + " " + silhouette
    match = _BUTTON_RE.search(text)
    if match:
        return int(match.group(1)), False
    lowered = silhouette.lower()
    if "shirt" in lowered or "blouse" in lowered:
        return 6, True
    if "cardigan" in lowered:
        return 5, True
    if "jacket" in lowered or "blazer" in lowered:
        return 3, True
    return 0, True


def infer_neckline(silhouette: str, components: List[str]) -> Tuple[str, bool]:
    text = (silhouette + " " + " ".join(components)).lower()
    for keyword, neckline in (
        ("polo", "polo-collar"),
        ("collar", "classic-collar"),
        ("v-neck", "v-neck"),
        ("turtle", "turtleneck"),
        ("round", "crew-neck"),
        ("crew", "crew-neck"),
    ):
        if keyword in text:
            return neckline, False
    return "crew-neck", True


def infer_sleeve_length(silhouette: str, category: str) -> Tuple[str, bool]:
    lowered = silhouette.lower()
    if "sleeveless" in lowered:
        return "none", False
    if "3/4" in lowered:
        return "3/4", False
    if "long" in lowered:
        return "long", False
    if "short" in lowered:
        return "short", False
    return category_defaults(category)["sleeve_length"], True


def infer_cuff(components: List[str], sleeve_length: str) -> Optional[str]:
    text = " ".join(components).lower()
    if "french" in text or "double cuff" in text:
        return "french-cuff"
    if "button" in text and "cuff" in text:
        return "single-button"
    return "barrel-cuff" if sleeve_length == "long" else None


# ---------------------------------------------------------------------------
# Control block
# ---------------------------------------------------------------------------

def resolve_background_hex(value: Any) -> str:
    """Map a requested background (colour name or hex) to ``#RRGGBB``."""
    if value is None:
        return WHITE_HEX
    if isinstance(value, str):
        named = NAMED_BACKGROUNDS.get(value.strip().lower().replace("_", "-").replace(" ", "-"))
        if named:
            return named
    hex_value = normalize_hex(value)
    if hex_value is None:
        raise GhostPipelineError(f"Unsupported background color {value!r}", code="INVALID_REQUEST")
    return hex_value.upper()


def background_directive(background_hex: str) -> str:
    return "pure_white_background" if background_hex == WHITE_HEX else f"solid_background_{background_hex}"


def derive_control_block(
    facts: ConsolidatedFacts, preserve_labels: bool = True, background_hex: str = WHITE_HEX
) -> ControlBlock:
    """Project the facts into rendering controls; reads nothing but ``facts`` and the request's background."""
    keep_labels = [l for l in facts.labels_found if l.preserve and l.visible] if preserve_labels else []
    keep_labels = sorted(keep_labels, key=lambda l: 0 if l.priority == "critical" else 1)

    must = [background_directive(background_hex)]
    if facts.hollow_regions:
        must.append("render_hollows")
    if keep_labels:
        must.extend(["preserve_brand_labels", "preserve_label_text"])

    return ControlBlock(
        category_generic=facts.category_generic,
        silhouette=facts.silhouette,
        required_components=list(facts.required_components),
        forbidden_components=list(facts.forbidden_components),
        palette=replace(facts.palette, pattern_hexes=list(facts.palette.pattern_hexes)),
        material=facts.material,
        weave_knit=facts.weave_knit,
        drape_stiffness=facts.drape_stiffness,
        transparency=facts.transparency,
        surface_sheen=facts.surface_sheen,
        edge_finish=facts.edge_finish,
        view=facts.view,
        framing_margin_pct=facts.framing_margin_pct,
        shadow_style=facts.shadow,
        lighting=facts.lighting,
        label_visibility=facts.label_visibility,
        must=must,
        ban=list(BAN_LIST),
        label_keep_list=[l.text for l in keep_labels],
        label_bbox_hard_hints=[l.bbox_norm for l in keep_labels if l.bbox_norm],
        label_legibility_min=LABEL_LEGIBILITY_MIN if keep_labels else None,
        safety_must_not=list(facts.safety_must_not),
        background_hex=background_hex,
    )


_MIRRORED_FIELDS = (
    ("category_generic", "category_generic"),
    ("silhouette", "silhouette"),
    ("required_components", "required_components"),
    ("forbidden_components", "forbidden_components"),
    ("palette", "palette"),
    ("material", "material"),
    ("weave_knit", "weave_knit"),
    ("drape_stiffness", "drape_stiffness"),
    ("transparency", "transparency"),
    ("surface_sheen", "surface_sheen"),
    ("edge_finish", "edge_finish"),
    ("view", "view"),
    ("framing_margin_pct", "framing_margin_pct"),
    ("shadow", "shadow_style"),
    ("lighting", "lighting"),
    ("label_visibility", "label_visibility"),
    ("safety_must_not", "safety_must_not"),
)


def check_consistency(facts: ConsolidatedFacts, control: ControlBlock) -> List[str]:
    """Names of control fields that disagree with the facts (empty when consistent)."""
    mismatches = [
        control_name
        for fact_name, control_name in _MIRRORED_FIELDS
        if getattr(facts, fact_name) != getattr(control, control_name)
    ]
    if ("render_hollows" in control.must) != bool(facts.hollow_regions):
        mismatches.append("must.render_hollows")
    if background_directive(control.background_hex) not in control.must:
        mismatches.append("must.background")
    known = {l.text for l in facts.labels_found}
    if any(text not in known for text in control.label_keep_list):
        mismatches.append("label_keep_list")
    return mismatches


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

AnalysisInput = Union[StructuralAnalysis, Dict[str, Any], None]
EnrichmentInput = Union[EnrichmentAnalysis, Dict[str, Any], None]


def consolidate(
    structural: AnalysisInput,
    enrichment: EnrichmentInput,
    proportion_hint: Optional[Dict[str, float]] = None,
    preserve_labels: bool = True,
    background_color: Any = "white",
) -> Tuple[ConsolidatedFacts, ControlBlock, List[Conflict]]:
    """Merge both analyses into (facts, control block, conflicts).

    Identical inputs always produce identical outputs. Missing or malformed
    fields are filled from category defaults and keyword heuristics; every
    filled field is named in ``facts.defaults_applied``. The background is
    resolved to one hex value here and shared by every downstream prompt.
    """
    background_hex = resolve_background_hex(background_color)
    if not isinstance(structural, StructuralAnalysis):
        structural = StructuralAnalysis.from_dict(structural)
    if not isinstance(enrichment, EnrichmentAnalysis):
        enrichment = EnrichmentAnalysis.from_dict(enrichment)

    conflicts: List[Conflict] = []
    defaults_applied: List[str] = []
    resolved: Dict[str, Any] = {}

    category = normalize_category(structural.category) or "unknown"
    for rule in PRECEDENCE_TABLE:
        resolved[rule.field] = _resolve(rule, structural, enrichment, category, conflicts, defaults_applied)
    category = resolved["category_generic"]

    palette = normalize_palette(
        Palette(
            dominant_hex=resolved.pop("palette.dominant_hex"),
            accent_hex=resolved.pop("palette.accent_hex"),
            trim_hex=resolved.pop("palette.trim_hex"),
            pattern_hexes=resolved.pop("palette.pattern_hexes"),
        ),
        defaults_applied,
    )

    defaults = category_defaults(category)
    if proportion_hint:
        proportions = {k: float(v) for k, v in proportion_hint.items() if isinstance(v, (int, float))}
        for key, value in defaults["proportions"].items():
            proportions.setdefault(key, value)
        proportion_source = "on_model_reference"
    else:
        proportions = dict(defaults["proportions"])
        proportion_source = "category_default"
        defaults_applied.append("proportions")
    defaults_applied.append("framing_margin_pct")

    silhouette = resolved["silhouette"]
    components = resolved["required_components"]
    buttons, guessed = infer_button_count(silhouette, components)
    if guessed:
        defaults_applied.append("button_count")
    neckline, guessed = infer_neckline(silhouette, components)
    if guessed:
        defaults_applied.append("neckline")
    sleeve_length, guessed = infer_sleeve_length(silhouette, category)
    if guessed:
        defaults_applied.append("sleeve_length")

    labels = normalize_labels(structural.labels)
    facts = ConsolidatedFacts(
        category_generic=category,
        silhouette=silhouette,
        required_components=components,
        forbidden_components=resolved["forbidden_components"],
        labels_found=labels,
        label_visibility="required" if labels else "optional",
        preserve_details=list(structural.preserve_details),
        hollow_regions=list(structural.hollow_regions),
        construction_details=list(structural.construction_details),
        interior_surfaces=list(structural.interior_surfaces),
        palette=palette,
        pattern=resolved["pattern"],
        print_scale=resolved["print_scale"],
        material=resolved["material"],
        weave_knit=resolved["weave_knit"],
        drape_stiffness=float(resolved["drape_stiffness"]),
        transparency=resolved["transparency"],
        surface_sheen=resolved["surface_sheen"],
        edge_finish=resolved["edge_finish"],
        seam_visibility=resolved["seam_visibility"],
        lighting=resolved["lighting"],
        shadow=resolved["shadow"],
        view=resolved["view"],
        framing_margin_pct=float(defaults["framing_margin_pct"]),
        proportions=proportions,
        proportion_source=proportion_source,
        button_count=buttons,
        neckline=neckline,
        sleeve_length=sleeve_length,
        cuff_style=infer_cuff(components, sleeve_length),
        qa_targets=dict(DEFAULT_QA_TARGETS),
        safety_must_not=list(structural.safety_must_not),
        special_handling=structural.special_handling,
        confidence=dict(enrichment.confidence),
        defaults_applied=defaults_applied,
    )
    control = derive_control_block(facts, preserve_labels=preserve_labels, background_hex=background_hex)

    logger.debug(
        f"Consolidated {category}: {len(conflicts)} conflicts, "
        f"{len(labels)} labels, defaults={defaults_applied}"
    )
    return facts, control, conflicts
