"""
Unit tests for fact consolidation and control-block derivation.
"""

import pytest

from ghoststudio.models import EnrichmentAnalysis, Label, Palette, StructuralAnalysis
from ghoststudio.steps.step2_consolidation import (
    CATEGORY_DEFAULTS,
    NEUTRAL_HEX,
    check_consistency,
    consolidate,
    derive_control_block,
    infer_button_count,
    infer_neckline,
    infer_sleeve_length,
    normalize_category,
    normalize_labels,
    normalize_palette,
    resolve_background_hex,
)
from ghoststudio.errors import GhostPipelineError


class TestPrecedence:
    """Field-level precedence between the two analyses."""

    def test_enrichment_wins_rendering_fields(self, structural_payload, enrichment_payload):
        facts, _, conflicts = consolidate(structural_payload, enrichment_payload)

        # structural says raw edges and 0.8 stiffness; enrichment says serged and crisp
        assert facts.edge_finish == "serged"
        assert facts.drape_stiffness == pytest.approx(0.65)

        by_field = {c.field: c for c in conflicts}
        assert by_field["edge_finish"].source_of_truth == "enrichment"
        assert by_field["edge_finish"].discarded_value == "raw"
        assert by_field["drape_stiffness"].resolution == pytest.approx(0.65)
        assert by_field["palette.accent_hex"].resolution == "#F5F5F5"

    def test_structural_wins_identity_fields(self, structural_payload, enrichment_payload):
        facts, _, _ = consolidate(structural_payload, enrichment_payload)

        assert facts.category_generic == "top"
        assert facts.silhouette == "classic button-front shirt with long sleeves"
        assert facts.material == "cotton poplin"
        assert facts.required_components == ["collar", "6-button placket", "chest pocket"]

    def test_equal_values_are_not_conflicts(self):
        structural = {"palette": {"dominant_hex": "#1a2b3c"}}
        enrichment = {"color_precision": {"primary_hex": "#1A2B3C"}}

        _, _, conflicts = consolidate(structural, enrichment)

        assert conflicts == []

    def test_deterministic(self, structural_payload, enrichment_payload):
        first = consolidate(structural_payload, enrichment_payload)
        second = consolidate(structural_payload, enrichment_payload)

        assert first[0] == second[0]
        assert first[1] == second[1]
        assert first[2] == second[2]


class TestDefaults:
    """Tolerance of missing or malformed analysis output."""

    def test_empty_inputs_produce_valid_facts(self):
        facts, control, conflicts = consolidate(None, None)

        assert facts.category_generic == "unknown"
        assert facts.palette.dominant_hex == NEUTRAL_HEX
        assert facts.palette.accent_hex == NEUTRAL_HEX
        assert facts.proportions == CATEGORY_DEFAULTS["top"]["proportions"]
        assert "palette.dominant_hex" in facts.defaults_applied
        assert "proportions" in facts.defaults_applied
        assert conflicts == []
        assert control.label_keep_list == []

    def test_malformed_fields_are_ignored(self):
        structural = {
            "category_generic": 42,
            "labels_found": "not a list",
            "palette": {"dominant_hex": "blue"},
            "drape_stiffness": "very",
        }

        facts, _, _ = consolidate(structural, {"fabric_behavior": ["wrong"]})

        assert facts.palette.dominant_hex == NEUTRAL_HEX
        assert facts.labels_found == []
        assert 0.0 <= facts.drape_stiffness <= 1.0

    def test_category_defaults_apply_per_category(self):
        facts, _, _ = consolidate({"category_generic": "dress"}, {})

        assert facts.proportions == CATEGORY_DEFAULTS["dress"]["proportions"]
        assert facts.framing_margin_pct == CATEGORY_DEFAULTS["dress"]["framing_margin_pct"]
        assert facts.drape_stiffness == CATEGORY_DEFAULTS["dress"]["drape_stiffness"]

    def test_proportion_hint_overrides_defaults(self):
        facts, _, _ = consolidate({"category_generic": "top"}, {}, proportion_hint={"shoulder_w": 0.31})

        assert facts.proportion_source == "on_model_reference"
        assert facts.proportions["shoulder_w"] == pytest.approx(0.31)
        assert facts.proportions["torso_l"] == CATEGORY_DEFAULTS["top"]["proportions"]["torso_l"]
        assert "proportions" not in facts.defaults_applied


class TestHelpers:

    def test_palette_fallback_chain(self):
        palette = normalize_palette(Palette(dominant_hex="#112233", pattern_hexes=["#abcdef", "bad"]))

        assert palette.accent_hex == "#112233"
        assert palette.trim_hex == "#112233"
        assert palette.pattern_hexes == ["#abcdef"]

    def test_normalize_category_aliases(self):
        assert normalize_category("T-Shirt") == "top"
        assert normalize_category("Jacket") == "outerwear"
        assert normalize_category("cardigan") == "knitwear"
        assert normalize_category(None) is None

    def test_button_count_from_components(self):
        assert infer_button_count("shirt", ["7-button placket"]) == (7, False)
        assert infer_button_count("classic shirt", []) == (6, True)
        assert infer_button_count("tank", []) == (0, True)

    def test_neckline_and_sleeves(self):
        assert infer_neckline("polo shirt", []) == ("polo-collar", False)
        assert infer_neckline("plain", []) == ("crew-neck", True)
        assert infer_sleeve_length("sleeveless shell", "top") == ("none", False)
        assert infer_sleeve_length("plain", "dress") == ("short", True)

    def test_normalize_labels_drops_textless(self):
        labels = normalize_labels([{"text": "ACME"}, {"type": "care_label"}, Label(text="SIZE M")])

        assert [l.text for l in labels] == ["ACME", "SIZE M"]


class TestControlBlock:

    def test_control_block_mirrors_facts(self, structural_payload, enrichment_payload):
        facts, control, _ = consolidate(structural_payload, enrichment_payload)

        assert check_consistency(facts, control) == []
        assert control.palette == facts.palette
        assert control.shadow_style == facts.shadow
        assert "render_hollows" in control.must
        assert "preserve_brand_labels" in control.must
        assert control.label_legibility_min == pytest.approx(0.85)
        assert control.label_bbox_hard_hints == [(0.45, 0.05, 0.55, 0.10)]

    def test_critical_labels_first(self):
        structural = StructuralAnalysis(
            labels=[Label(text="care", priority="normal"), Label(text="BRAND", priority="critical")]
        )
        facts, control, _ = consolidate(structural, EnrichmentAnalysis())

        assert control.label_keep_list == ["BRAND", "care"]

    def test_labels_not_preserved_when_disabled(self, structural_payload):
        facts, control, _ = consolidate(structural_payload, {}, preserve_labels=False)

        assert facts.labels_found
        assert control.label_keep_list == []
        assert control.label_legibility_min is None
        assert "preserve_brand_labels" not in control.must

    def test_consistency_check_reports_drift(self, structural_payload):
        facts, _, _ = consolidate(structural_payload, {})
        control = derive_control_block(facts)
        control.material = "silk"

        assert check_consistency(facts, control) == ["material"]

    def test_default_background_is_white(self, structural_payload):
        _, control, _ = consolidate(structural_payload, {})

        assert control.background_hex == "#FFFFFF"
        assert "pure_white_background" in control.must

    def test_requested_background_replaces_white(self, structural_payload):
        facts, control, _ = consolidate(structural_payload, {}, background_color="#f0f0f0")

        assert control.background_hex == "#F0F0F0"
        assert "solid_background_#F0F0F0" in control.must
        assert "pure_white_background" not in control.must
        assert check_consistency(facts, control) == []


class TestBackgroundColor:

    @pytest.mark.parametrize(
        "value, expected",
        [("white", "#FFFFFF"), ("Black", "#000000"), ("light gray", "#EEEEEE"), ("#1a2b3c", "#1A2B3C"), (None, "#FFFFFF")],
    )
    def test_resolves_to_hex(self, value, expected):
        assert resolve_background_hex(value) == expected

    @pytest.mark.parametrize("value", ["chartreuse-ish", "#12345", ""])
    def test_unknown_colors_rejected(self, value):
        with pytest.raises(GhostPipelineError) as exc:
            resolve_background_hex(value)

        assert exc.value.code == "INVALID_REQUEST"
