#!/usr/bin/env python3
"""
step3_contract.py – Contract/Hints Compiler + legacy Prompt Weaver
==================================================================

Compress the consolidated facts into a small binding core contract plus a
larger optional hints document, tagged with a deterministic digest.

Core contract (~1–1.5 KB): identification, category, silhouette, pattern,
≤6 colors, part geometry, proportions and non-negotiable rules.
Hints: fabric, construction, QA targets, rendering preferences, labels,
safety; null and empty values pruned recursively.

The legacy route weaves a sectioned free-text prompt from the ControlBlock
for backends that do not take the structured contract.

Dependencies: (stdlib only)
"""

from __future__ import annotations

import json
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import ConsolidatedFacts, ControlBlock, RequestOptions, normalize_hex

logger = logging.getLogger("ghoststudio.contract")

CONTRACT_VERSION = "gm-ccj-1.0"
HINTS_VERSION = "gm-hints-1.0"
MAX_COLORS = 6
MAX_PATTERN_COLORS = 3
CORE_SIZE_WARN_BYTES = 1536
DIGEST_LENGTH = 12

CATEGORY_SHORT_NAMES = {
    "top": "shirt",
    "bottom": "pants",
    "dress": "dress",
    "outerwear": "jacket",
    "knitwear": "sweater",
    "underwear": "underwear",
    "accessory": "accessory",
}

TASK_HEADER = (
    "TASK: Generate a studio product photo as a ghost mannequin. No people.\n"
    "Use B (flatlay) for all colors/textures/pattern fidelity.\n"
    "Use A (on-model, person scrubbed) only for global proportions/scale.\n"
    "Honor the JSON CONTRACT exactly."
)

REFERENCE_NOTES = (
    "REFERENCES (authority order):\n"
    "1) B flatlay (truth for color/texture)\n"
    "2) A on-model (scale/proportions only)"
)

# ---------------------------------------------------------------------------
# Compiled output
# ---------------------------------------------------------------------------

@dataclass
class CompiledContract:
    core: Dict[str, Any]
    hints: Dict[str, Any]
    digest: str
    instruction: str
    short_instruction: str
    sizes: Dict[str, int] = field(default_factory=dict)

    def instruction_for(self, shorten: bool) -> str:
        return self.short_instruction if shorten else self.instruction


def canonical_json(data: Any) -> str:
    """Whitespace-free, key-sorted JSON used for hashing and size accounting."""
    return json.dumps(data, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def contract_digest(core: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(core).encode("utf-8")).hexdigest()[:DIGEST_LENGTH]


def prune(value: Any) -> Any:
    """Recursively drop None values and empty dicts/lists."""
    if isinstance(value, dict):
        pruned = {k: prune(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if v is not None and v != {} and v != []}
    if isinstance(value, (list, tuple)):
        pruned = [prune(v) for v in value]
        return [v for v in pruned if v is not None and v != {} and v != []]
    return value


def extract_key_colors(facts: ConsolidatedFacts) -> List[str]:
    """Primary, accent, trim, then up to three pattern colors; unique, ≤6."""
    palette = facts.palette
    candidates = [palette.dominant_hex, palette.accent_hex, palette.trim_hex]
    candidates.extend(palette.pattern_hexes[:MAX_PATTERN_COLORS])

    colors: List[str] = []
    seen = set()
    for candidate in candidates:
        hex_value = normalize_hex(candidate)
        if hex_value is None or hex_value.upper() in seen:
            continue
        seen.add(hex_value.upper())
        colors.append(hex_value)
    return colors[:MAX_COLORS]


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------

class ContractCompiler:
    """Builds CompiledContract objects from consolidated facts."""

    def __init__(self, output_size: str = "2048x2048"):
        self.output_size = output_size

    def build_core(self, facts: ConsolidatedFacts, control: ControlBlock, session_id: str) -> Dict[str, Any]:
        parts: Dict[str, Any] = {
            "neckline": {"type": facts.neckline, "stance_deg": 10},
            "sleeves": {"length": facts.sleeve_length},
            "hem": {"shape": "straight", "depth_mm": 25},
        }
        if facts.cuff_style:
            parts["sleeves"]["cuff"] = facts.cuff_style
        if facts.button_count > 0:
            parts["placket"] = {"buttons": facts.button_count, "spacing_mm": 85}

        return {
            "v": CONTRACT_VERSION,
            "garment_id": session_id[:8],
            "category": CATEGORY_SHORT_NAMES.get(facts.category_generic, "shirt"),
            "silhouette": facts.silhouette,
            "pattern": facts.pattern,
            "colors_hex": extract_key_colors(facts),
            "parts": parts,
            "proportions": {k: round(v, 3) for k, v in sorted(facts.proportions.items())},
            "rules": {
                "texture_source": "B_flatlay_truth",
                "proportion_source": "A_personless_only" if facts.proportion_source == "on_model_reference" else "category_default",
                "bg": control.background_hex,
                "ghost": True,
                "show_interiors": bool(facts.hollow_regions),
                "labels_lock": bool(control.label_keep_list),
            },
        }

    def build_hints(self, facts: ConsolidatedFacts, control: ControlBlock) -> Dict[str, Any]:
        hints = {
            "v": HINTS_VERSION,
            "fab": {
                "mat": facts.material,
                "weave": facts.weave_knit,
                "drape": facts.drape_stiffness,
                "trans": facts.transparency,
                "sheen": facts.surface_sheen,
                "print_scale": facts.print_scale,
            },
            "const": {
                "edge_fin": facts.edge_finish,
                "seam_vis": facts.seam_visibility,
                "req_comp": facts.required_components,
                "forb_comp": facts.forbidden_components,
                "details": [d.element for d in facts.preserve_details],
                "features": [c.feature for c in facts.construction_details if c.critical_for_structure],
            },
            "hollows": [
                {"region": h.region_type, "inner": h.inner_description if h.inner_visible else None}
                for h in facts.hollow_regions
                if h.keep_hollow
            ],
            "interiors": [
                {"surface": s.surface_type, "hex": s.color_hex, "desc": s.description}
                for s in facts.interior_surfaces
            ],
            "labels": {
                "known_texts": [l.text for l in facts.labels_found],
                "keep": control.label_keep_list,
                "bbox": [list(b) for b in control.label_bbox_hard_hints],
                "legibility_min": control.label_legibility_min,
            },
            "qa": facts.qa_targets,
            "render": {
                "light_pref": facts.lighting,
                "shadow_bhv": facts.shadow,
                "view": facts.view,
                "margin_pct": facts.framing_margin_pct,
            },
            "must": control.must,
            "ban": control.ban,
            "safety": facts.safety_must_not,
            "meta": {
                "notes": facts.special_handling,
                "label_vis": facts.label_visibility,
            },
        }
        return prune(hints)

    def render_instruction(
        self, core: Dict[str, Any], digest: str, hints: Optional[Dict[str, Any]], background_hex: str
    ) -> str:
        sections = [
            TASK_HEADER,
            f"JSON CONTRACT (digest={digest}):\n{canonical_json(core)}",
        ]
        if hints is not None:
            sections.append(REFERENCE_NOTES)
            sections.append(f"HINTS (secondary, never override the contract):\n{canonical_json(hints)}")
        sections.append(
            f"OUTPUT: {self.output_size.replace('x', '×')}, background {background_hex}, "
            "subtle contact shadow, tight clipping (≈2 px)."
        )
        return "\n\n".join(sections)

    def compile(self, facts: ConsolidatedFacts, control: ControlBlock, session_id: str) -> CompiledContract:
        core = self.build_core(facts, control, session_id)
        hints = self.build_hints(facts, control)
        digest = contract_digest(core)
        instruction = self.render_instruction(core, digest, hints, control.background_hex)
        short_instruction = self.render_instruction(core, digest, None, control.background_hex)

        core_bytes = len(canonical_json(core).encode("utf-8"))
        hints_bytes = len(canonical_json(hints).encode("utf-8"))
        if core_bytes > CORE_SIZE_WARN_BYTES:
            logger.warning(f"Core contract is {core_bytes} bytes (target ≤ {CORE_SIZE_WARN_BYTES})")

        logger.info(f"Compiled contract {digest}: core={core_bytes}B hints={hints_bytes}B")
        return CompiledContract(
            core=core,
            hints=hints,
            digest=digest,
            instruction=instruction,
            short_instruction=short_instruction,
            sizes={
                "core_bytes": core_bytes,
                "hints_bytes": hints_bytes,
                "total_bytes": core_bytes + hints_bytes + len(instruction.encode("utf-8")),
            },
        )


def compile_contract(
    facts: ConsolidatedFacts,
    control: ControlBlock,
    session_id: str,
    options: Optional[RequestOptions] = None,
) -> CompiledContract:
    options = options or RequestOptions()
    return ContractCompiler(output_size=options.output_size).compile(
        facts, control, session_id
    )


# ---------------------------------------------------------------------------
# Legacy free-text prompt
# ---------------------------------------------------------------------------

def _background_line(background_hex: str) -> str:
    if background_hex.upper() == "#FFFFFF":
        return "- Pure white background"
    return f"- Solid {background_hex} background, evenly lit, no gradient"


class LegacyPromptWeaver:
    """Sectioned natural-language prompt derived from the ControlBlock."""

    def weave(self, control: ControlBlock) -> str:
        sections = [
            self._build_task_section(),
            self._build_reference_section(),
            self._build_constraints_section(control),
            self._build_palette_section(control),
            self._build_material_section(control),
            self._build_presentation_section(control),
            self._build_labels_section(control),
            self._build_forbidden_section(control),
        ]
        return "\n\n".join(s for s in sections if s)

    def _build_task_section(self) -> str:
        return (
            "Task: Using the provided reference images, create a professional studio product photo "
            "with a dimensional ghost-mannequin effect. Transform the flat-laid garment into a 3D form "
            "showing exactly the same design, colors, patterns and details."
        )

    def _build_reference_section(self) -> str:
        return (
            "IMAGE REFERENCE INSTRUCTIONS:\n"
            "- Use the provided images as the ONLY source for garment design, colors, patterns and details\n"
            "- Do NOT change the garment's appearance, colors or design elements\n"
            "- Transform the flat layout into dimensional form while preserving all original details"
        )

    def _build_constraints_section(self, control: ControlBlock) -> str:
        lines = [
            "STRICT CONSTRAINTS:",
            f"- Category: {control.category_generic}",
            f"- Silhouette: {control.silhouette}",
        ]
        if control.required_components:
            lines.append(f"- REQUIRED components (must include): {', '.join(control.required_components)}")
        else:
            lines.append("- REQUIRED components: None specified")
        if control.forbidden_components:
            lines.append(f"- FORBIDDEN components (must not include): {', '.join(control.forbidden_components)}")
        return "\n".join(lines)

    def _build_palette_section(self, control: ControlBlock) -> str:
        palette = control.palette
        return (
            "COLOR PALETTE (exact hex values):\n"
            f"- Dominant: {palette.dominant_hex}\n"
            f"- Accent: {palette.accent_hex}\n"
            f"- Trim: {palette.trim_hex}"
        )

    def _build_material_section(self, control: ControlBlock) -> str:
        return (
            "MATERIAL & CONSTRUCTION:\n"
            f"- Material: {control.material}\n"
            f"- Weave/Knit: {control.weave_knit}\n"
            f"- Drape stiffness (0-1): {control.drape_stiffness:g}\n"
            f"- Edge finish: {control.edge_finish}\n"
            f"- Transparency: {control.transparency}\n"
            f"- Surface sheen: {control.surface_sheen}"
        )

    def _build_presentation_section(self, control: ControlBlock) -> str:
        lines = [
            "PRESENTATION:",
            f"- View: {control.view}",
            _background_line(control.background_hex),
            f"- Framing margin: {control.framing_margin_pct:g}% from edges",
            f"- Shadow style: {control.shadow_style}",
            f"- Lighting: {control.lighting}",
        ]
        if "render_hollows" in control.must:
            lines.append("- Render neckline, sleeve and front openings hollow with visible interior")
        return "\n".join(lines)

    def _build_labels_section(self, control: ControlBlock) -> str:
        if not control.label_keep_list:
            return f"LABELS: {control.label_visibility}"
        texts = ", ".join(f'"{t}"' for t in control.label_keep_list)
        return (
            "LABELS (preserve exactly, legible, same position):\n"
            f"- Texts: {texts}\n"
            f"- Minimum legibility: {control.label_legibility_min:g}"
        )

    def _build_forbidden_section(self, control: ControlBlock) -> str:
        banned = list(control.ban) + list(control.safety_must_not)
        return (
            f"FORBIDDEN: {', '.join(banned)}.\n"
            "CRITICAL: Follow all constraints exactly. Do not invent or add features not specified."
        )


def build_legacy_prompt(control: ControlBlock) -> str:
    return LegacyPromptWeaver().weave(control)
