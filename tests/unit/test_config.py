"""
Unit tests for configuration loading, the error taxonomy and health checks.
"""

import httpx
import pytest

from ghoststudio.config import PipelineConfig, ProviderKeys, RenderingConfig, config_summary, load_config
from ghoststudio.errors import (
    CONTENT_BLOCKED,
    QUOTA,
    TIMEOUT,
    TRANSPORT,
    GhostPipelineError,
    StageTimeoutError,
    classify_error,
    wrap_provider_error,
)
from ghoststudio.health import health_check


def _status_error(status, text=""):
    request = httpx.Request("POST", "https://provider.test/run")
    response = httpx.Response(status, text=text, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestLoadConfig:

    def test_defaults(self):
        config = load_config(environ={})

        assert config.rendering.default_backend == "gemini-flash"
        assert config.rendering.fallback_backends == ["seedream"]
        assert config.timeouts.rendering == 180.0
        assert config.qa.enabled is False
        assert config.storage.enabled is False

    def test_environment_overrides(self):
        config = load_config(environ={
            "GOOGLE_API_KEY": "google-key",
            "FAL_API_KEY": "fal-key",
            "RENDERING_MODEL": "seedream",
            "RENDERING_FALLBACKS": "freepik-gemini, gemini-flash",
            "TIMEOUT_ANALYSIS": "5000",
            "ENABLE_QA_LOOP": "true",
            "MAX_QA_ITERATIONS": "3",
            "USE_CCJ_PIPELINE": "1",
        })

        assert config.keys.gemini_api_key == "google-key"
        assert config.rendering.default_backend == "seedream"
        assert config.rendering.fallback_backends == ["freepik-gemini", "gemini-flash"]
        assert config.timeouts.analysis == 5.0
        assert config.qa.enabled is True
        assert config.qa.max_iterations == 3
        assert config.rendering.combined_consolidation is True

    def test_gemini_key_preferred_over_google(self):
        config = load_config(environ={"GEMINI_API_KEY": "gemini", "GOOGLE_API_KEY": "google"})

        assert config.keys.gemini_api_key == "gemini"

    def test_fallback_lists_are_not_shared(self):
        first, second = RenderingConfig(), RenderingConfig()
        first.fallback_backends.append("freepik-gemini")

        assert second.fallback_backends == ["seedream"]

    def test_empty_fallback_list(self):
        assert load_config(environ={"RENDERING_FALLBACKS": ""}).rendering.fallback_backends == []

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "pipeline.yml"
        path.write_text(
            "rendering:\n"
            "  default_backend: freepik-gemini\n"
            "  fallback_on_transport: true\n"
            "qa:\n"
            "  enabled: true\n"
            "  delta_e_mean_max: 2.5\n"
            "batch_concurrency: 5\n"
        )

        config = load_config(path, environ={"ENABLE_QA_LOOP": "false"})

        assert config.rendering.default_backend == "freepik-gemini"
        assert config.rendering.fallback_on_transport is True
        assert config.qa.delta_e_mean_max == 2.5
        assert config.batch_concurrency == 5
        # environment wins over the file
        assert config.qa.enabled is False

    @pytest.mark.parametrize(
        "yaml_text",
        [
            "rendering:\n  no_such_key: 1\n",
            "nonsense: {}\n",
            "rendering:\n  default_backend: dall-e\n",
            "timeouts:\n  qa: 0\n",
            "- a\n- b\n",
            "rendering:\n  aspect_ratio: '7:3'\n",
            "analysis:\n  files_max_age_s: 0\n",
        ],
    )
    def test_invalid_files(self, tmp_path, yaml_text):
        path = tmp_path / "bad.yml"
        path.write_text(yaml_text)

        with pytest.raises(GhostPipelineError) as exc:
            load_config(path, environ={})

        assert exc.value.code == "CONFIG_INVALID"

    def test_invalid_timeout_env(self):
        with pytest.raises(GhostPipelineError) as exc:
            load_config(environ={"TIMEOUT_QA": "soon"})

        assert exc.value.code == "CONFIG_INVALID"

    def test_secrets_hidden(self):
        keys = ProviderKeys(fal_api_key="super-secret")

        assert "super-secret" not in repr(keys)
        assert "super-secret" not in str(config_summary(PipelineConfig(keys=keys)))


class TestErrors:

    def test_codes_map_to_kinds(self):
        assert GhostPipelineError("x", code="RATE_LIMIT_EXCEEDED").kind == QUOTA
        assert GhostPipelineError("x", code="CONTENT_BLOCKED").http_status == 422
        assert GhostPipelineError("x", code="MISSING_FLATLAY").http_status == 400
        assert StageTimeoutError("analysis", 90).kind == TIMEOUT

    def test_with_stage_keeps_first_stage(self):
        error = GhostPipelineError("x", stage="analysis")

        assert error.with_stage("rendering").stage == "analysis"
        assert GhostPipelineError("x").with_stage("rendering").stage == "rendering"

    def test_classify_http_errors(self):
        assert classify_error(_status_error(429)) == QUOTA
        assert classify_error(_status_error(402)) == QUOTA
        assert classify_error(_status_error(400, "Request blocked by safety filter")) == CONTENT_BLOCKED
        assert classify_error(_status_error(400, "bad parameter")) == TRANSPORT
        assert classify_error(httpx.ConnectError("refused")) == TRANSPORT

    def test_classify_sdk_messages(self):
        assert classify_error(RuntimeError("RESOURCE_EXHAUSTED: quota")) == QUOTA
        assert classify_error(RuntimeError("PROHIBITED_CONTENT")) == CONTENT_BLOCKED
        assert classify_error(TimeoutError()) == TIMEOUT
        assert classify_error(ValueError("something else")) == TRANSPORT

    def test_wrap_provider_error(self):
        credits = wrap_provider_error(
            _status_error(402), quota_code="RATE_LIMIT_EXCEEDED", failure_code="RENDERING_FAILED", provider="fal"
        )
        assert credits.code == "INSUFFICIENT_CREDITS"

        failure = wrap_provider_error(
            ValueError("boom"), quota_code="RATE_LIMIT_EXCEEDED", failure_code="RENDERING_FAILED", stage="rendering"
        )
        assert failure.code == "RENDERING_FAILED"
        assert failure.stage == "rendering"
        assert isinstance(failure.cause, ValueError)

        original = GhostPipelineError("x", code="CONTENT_BLOCKED")
        assert wrap_provider_error(original, quota_code="A", failure_code="B") is original

    def test_record(self):
        record = GhostPipelineError("late", code="STAGE_TIMEOUT", stage="qa").to_record()

        assert record.to_dict() == {"message": "late", "code": "STAGE_TIMEOUT", "stage": "qa"}


class TestHealthCheck:

    def test_unconfigured(self):
        report = health_check(PipelineConfig())

        assert report["healthy"] is False
        assert "fal is not configured" in report["errors"]
        assert "gemini is not configured" in report["errors"]
        assert report["services"]["storage"]["provider"] == "inline"

    def test_configured(self):
        config = PipelineConfig(keys=ProviderKeys(fal_api_key="f", gemini_api_key="g"))

        report = health_check(config)

        assert report["healthy"] is True
        assert report["errors"] == []
        assert report["rendering_backend"] == "gemini-flash"
        assert report["fallback_backends"] == ["seedream"]
        assert report["services"]["freepik"]["required"] is False

    def test_freepik_default_requires_key(self):
        config = PipelineConfig(keys=ProviderKeys(fal_api_key="f", gemini_api_key="g"))
        config.rendering.default_backend = "freepik-gemini"

        report = health_check(config)

        assert report["healthy"] is False
        assert "freepik is not configured" in report["errors"]
