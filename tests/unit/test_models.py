"""
Unit tests for the data model: run state, tolerant parsing and serialisation.
"""

import pytest

from ghoststudio.errors import ErrorRecord
from ghoststudio.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    BackgroundRemovalResult,
    EnrichmentAnalysis,
    GenerationResult,
    Label,
    PipelineRun,
    QAVerdict,
    Request,
    RequestOptions,
    RunResult,
    StructuralAnalysis,
    normalize_hex,
)


class TestPipelineRun:

    def test_stages_only_move_forward(self):
        run = PipelineRun()
        run.advance("background_removal")
        run.advance("enrichment")

        with pytest.raises(ValueError):
            run.advance("analysis")
        with pytest.raises(ValueError):
            run.advance("enrichment")
        with pytest.raises(ValueError):
            run.advance("publishing")

    def test_results_are_write_once(self):
        run = PipelineRun()
        run.commit("analysis", "first", 12)

        with pytest.raises(ValueError):
            run.commit("analysis", "second", 5)
        assert run.stage_results["analysis"] == "first"
        assert run.timings == {"analysis": 12}

    def test_skipped_stage_has_no_timing(self):
        run = PipelineRun()
        run.commit("rendering", "from consolidation")

        assert run.stage_results == {"rendering": "from consolidation"}
        assert run.timings == {}

    def test_replace_only_existing(self):
        run = PipelineRun()
        with pytest.raises(ValueError):
            run.replace_result("rendering", "x")

        run.commit("rendering", "old", 1)
        run.replace_result("rendering", "new")
        assert run.stage_results["rendering"] == "new"

    def test_finish_once(self):
        run = PipelineRun()
        run.finish(STATUS_COMPLETED)

        with pytest.raises(ValueError):
            run.finish(STATUS_FAILED)
        with pytest.raises(ValueError):
            run.advance("qa")

    def test_unique_session_ids(self):
        assert PipelineRun().session_id != PipelineRun().session_id


class TestParsing:

    def test_normalize_hex(self):
        assert normalize_hex("#1a2b3c") == "#1a2b3c"
        assert normalize_hex("1A2B3C") == "#1A2B3C"
        assert normalize_hex("#12345") is None
        assert normalize_hex(None) is None

    def test_label_defaults_and_truncation(self):
        label = Label.from_dict({"text": "X" * 120, "priority": "urgent", "legibility": 4})

        assert len(label.text) == 80
        assert label.priority == "high"
        assert label.legibility == 1.0
        assert Label.from_dict({"type": "care"}) is None

    def test_structural_aliases(self):
        analysis = StructuralAnalysis.from_dict(
            {
                "category": "shirt",
                "color_palette": {"primary_hex": "#AABBCC"},
                "interior_analysis": [{"surface_type": "lining", "color_hex": "zzz"}],
                "transparency": "translucent",
                "safety": {"must_not": ["logos on chest"]},
                "meta": {"session_id": "abc"},
            },
            session_id="ignored",
        )

        assert analysis.session_id == "abc"
        assert analysis.category == "shirt"
        assert analysis.palette.dominant_hex == "#AABBCC"
        assert analysis.interior_surfaces[0].color_hex is None
        assert analysis.transparency == "semi_sheer"
        assert analysis.safety_must_not == ["logos on chest"]

    def test_structural_garbage(self):
        analysis = StructuralAnalysis.from_dict("not a dict", session_id="s1")

        assert analysis == StructuralAnalysis.minimal("s1")

    def test_enrichment_explicit_stiffness_wins(self):
        enrichment = EnrichmentAnalysis.from_dict(
            {"fabric_behavior": {"drape_quality": "stiff", "drape_stiffness": 0.25, "transparency_level": "semi_opaque"}}
        )

        assert enrichment.drape_stiffness == 0.25
        assert enrichment.transparency == "semi_sheer"

    def test_request_from_dict_camel_case(self):
        request = Request.from_dict({
            "flatlay": "https://cdn.test/a.jpg",
            "onModel": "https://cdn.test/b.jpg",
            "options": {"outputSize": "1024x1024", "preserveLabels": "false", "renderingBackend": "seedream"},
        })

        assert request.on_model == "https://cdn.test/b.jpg"
        assert request.options == RequestOptions(
            output_size="1024x1024", preserve_labels=False, rendering_backend="seedream"
        )


class TestRunResult:

    def test_to_dict(self):
        rendering = GenerationResult(
            image_url="https://cdn.test/out.png",
            backend="seedream",
            fallback_used=True,
            digest="abc123def456",
            qa=QAVerdict(passed=True, attempts=2),
        )
        result = RunResult(
            session_id="s1",
            status=STATUS_COMPLETED,
            stage_results={
                "background_removal": BackgroundRemovalResult("https://fal.media/clean.png", 10),
                "rendering": rendering,
            },
            timings={"background_removal": 10},
            processing_time_ms=12346,
        )

        out = result.to_dict()

        assert out["sessionId"] == "s1"
        assert out["metrics"]["processingTime"] == "12.35s"
        assert out["cleanedImageUrl"] == "https://fal.media/clean.png"
        assert "cleanedOnModelUrl" not in out
        assert out["renderingBackend"] == "seedream"
        assert out["fallbackUsed"] is True
        assert out["contractDigest"] == "abc123def456"
        assert out["qa"]["attempts"] == 2
        assert "error" not in out

    def test_failed_to_dict(self):
        result = RunResult(
            session_id="s2",
            status=STATUS_FAILED,
            error=ErrorRecord(message="late", code="STAGE_TIMEOUT", stage="analysis"),
        )

        out = result.to_dict()

        assert out["error"] == {"message": "late", "code": "STAGE_TIMEOUT", "stage": "analysis"}
        assert "renderUrl" not in out
