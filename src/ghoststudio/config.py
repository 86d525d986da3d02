"""
config.py – Pipeline configuration
==================================

Dataclass configuration for every component, loaded in three layers:
built-in defaults → optional YAML file → environment variables.

Environment:
    FAL_API_KEY, GEMINI_API_KEY / GOOGLE_API_KEY, FREEPIK_API_KEY
    RENDERING_MODEL, RENDERING_FALLBACKS (comma separated)
    TIMEOUT_BACKGROUND_REMOVAL ... TIMEOUT_QA (milliseconds)
    ENABLE_QA_LOOP, MAX_QA_ITERATIONS, USE_CCJ_PIPELINE
    GHOST_STORAGE_PROVIDER, GHOST_STORAGE_BUCKET, GHOST_STORAGE_PREFIX,
    GHOST_STORAGE_PUBLIC_URL

Dependencies: pyyaml
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import GhostPipelineError
from .models import STAGE_ORDER

logger = logging.getLogger("ghoststudio.config")

KNOWN_BACKENDS = ("gemini-flash", "seedream", "freepik-gemini")
SUPPORTED_ASPECT_RATIOS = ("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9")

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass
class StageTimeouts:
    """Per-stage budgets in seconds."""
    background_removal: float = 30.0
    analysis: float = 90.0
    enrichment: float = 120.0
    consolidation: float = 45.0
    rendering: float = 180.0
    qa: float = 60.0

    def for_stage(self, stage: str) -> float:
        return float(getattr(self, stage))


@dataclass
class ProviderKeys:
    fal_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    freepik_api_key: Optional[str] = None

    def __repr__(self) -> str:
        # never print secrets
        flags = {f.name: bool(getattr(self, f.name)) for f in fields(self)}
        return f"ProviderKeys({flags})"


@dataclass
class AnalysisConfig:
    structural_model: str = "gemini-2.5-pro"
    enrichment_model: str = "gemini-2.5-pro"
    temperature: float = 0.1
    use_files_api: bool = True
    files_max_age_s: float = 46 * 3600.0


@dataclass
class RenderingConfig:
    default_backend: str = "gemini-flash"
    fallback_backends: List[str] = field(default_factory=lambda: ["seedream"])
    fallback_on_transport: bool = False
    gemini_image_model: str = "gemini-2.5-flash-image-preview"
    image_max_px: int = 2048
    retry_image_px: int = 1536
    aspect_ratio: str = "1:1"
    combined_consolidation: bool = False
    use_structured_prompt: bool = True
    freepik_poll_interval_s: float = 2.0
    freepik_max_polls: int = 60


@dataclass
class QAConfig:
    enabled: bool = False
    max_iterations: int = 2
    delta_e_mean_max: float = 3.0
    delta_e_p95_max: float = 5.0
    symmetry_tolerance: float = 0.15
    min_resolution_px: int = 2000
    use_gemini_reviewer: bool = False
    reviewer_model: str = "gemini-2.5-flash"
    fail_on_violation: bool = False


@dataclass
class StorageConfig:
    provider: str = "none"  # "none", "s3" or "gcs"
    bucket: str = ""
    prefix: str = "ghost"
    public_url_base: str = ""
    aws_region: str = "us-east-1"
    gcs_credentials_path: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.provider in ("s3", "gcs") and bool(self.bucket)


@dataclass
class PipelineConfig:
    timeouts: StageTimeouts = field(default_factory=StageTimeouts)
    keys: ProviderKeys = field(default_factory=ProviderKeys)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    rendering: RenderingConfig = field(default_factory=RenderingConfig)
    qa: QAConfig = field(default_factory=QAConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    batch_concurrency: int = 3

    def validate(self) -> "PipelineConfig":
        for stage in STAGE_ORDER:
            if self.timeouts.for_stage(stage) <= 0:
                raise GhostPipelineError(f"timeout for {stage} must be positive", code="CONFIG_INVALID")
        for backend in [self.rendering.default_backend] + list(self.rendering.fallback_backends):
            if backend not in KNOWN_BACKENDS:
                raise GhostPipelineError(f"unknown rendering backend {backend!r}", code="CONFIG_INVALID")
        if self.rendering.aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
            raise GhostPipelineError(f"unsupported aspect ratio {self.rendering.aspect_ratio!r}", code="CONFIG_INVALID")
        if self.qa.max_iterations < 1:
            raise GhostPipelineError("qa.max_iterations must be >= 1", code="CONFIG_INVALID")
        if self.storage.provider not in ("none", "s3", "gcs"):
            raise GhostPipelineError(f"unknown storage provider {self.storage.provider!r}", code="CONFIG_INVALID")
        if self.analysis.files_max_age_s <= 0:
            raise GhostPipelineError("analysis.files_max_age_s must be positive", code="CONFIG_INVALID")
        if self.batch_concurrency < 1:
            raise GhostPipelineError("batch_concurrency must be >= 1", code="CONFIG_INVALID")
        return self


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SECTIONS = {
    "timeouts": StageTimeouts,
    "keys": ProviderKeys,
    "analysis": AnalysisConfig,
    "rendering": RenderingConfig,
    "qa": QAConfig,
    "storage": StorageConfig,
}


def _apply_section(target: Any, values: Mapping[str, Any], section: str) -> None:
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise GhostPipelineError(f"unknown config key {section}.{key}", code="CONFIG_INVALID")
        setattr(target, key, value)


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise GhostPipelineError(f"{name} must be an integer, got {raw!r}", code="CONFIG_INVALID", cause=exc)


def _apply_environment(config: PipelineConfig, env: Mapping[str, str]) -> None:
    if env.get("FAL_API_KEY"):
        config.keys.fal_api_key = env["FAL_API_KEY"]
    gemini_key = env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY")
    if gemini_key:
        config.keys.gemini_api_key = gemini_key
    if env.get("FREEPIK_API_KEY"):
        config.keys.freepik_api_key = env["FREEPIK_API_KEY"]

    if env.get("RENDERING_MODEL"):
        config.rendering.default_backend = env["RENDERING_MODEL"].strip()
    if env.get("RENDERING_FALLBACKS") is not None:
        config.rendering.fallback_backends = [
            b.strip() for b in env["RENDERING_FALLBACKS"].split(",") if b.strip()
        ]
    if env.get("USE_CCJ_PIPELINE"):
        config.rendering.combined_consolidation = _parse_bool(env["USE_CCJ_PIPELINE"])

    for stage in STAGE_ORDER:
        name = f"TIMEOUT_{stage.upper()}"
        if env.get(name):
            setattr(config.timeouts, stage, _parse_int(name, env[name]) / 1000.0)

    if env.get("ENABLE_QA_LOOP"):
        config.qa.enabled = _parse_bool(env["ENABLE_QA_LOOP"])
    if env.get("MAX_QA_ITERATIONS"):
        config.qa.max_iterations = _parse_int("MAX_QA_ITERATIONS", env["MAX_QA_ITERATIONS"])

    if env.get("GHOST_STORAGE_PROVIDER"):
        config.storage.provider = env["GHOST_STORAGE_PROVIDER"].strip().lower()
    if env.get("GHOST_STORAGE_BUCKET"):
        config.storage.bucket = env["GHOST_STORAGE_BUCKET"]
    if env.get("GHOST_STORAGE_PREFIX"):
        config.storage.prefix = env["GHOST_STORAGE_PREFIX"]
    if env.get("GHOST_STORAGE_PUBLIC_URL"):
        config.storage.public_url_base = env["GHOST_STORAGE_PUBLIC_URL"]


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """Build a validated PipelineConfig from defaults, YAML and environment."""
    config = PipelineConfig()

    if path is not None:
        path = Path(path)
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise GhostPipelineError(f"cannot read config {path}: {exc}", code="CONFIG_INVALID", cause=exc)
        if not isinstance(data, dict):
            raise GhostPipelineError(f"config {path} must be a mapping", code="CONFIG_INVALID")
        for section, values in data.items():
            if section == "batch_concurrency":
                config.batch_concurrency = int(values)
                continue
            if section not in _SECTIONS or not isinstance(values, dict):
                raise GhostPipelineError(f"unknown config section {section!r}", code="CONFIG_INVALID")
            _apply_section(getattr(config, section), values, section)
        logger.info(f"Loaded pipeline config from {path}")

    _apply_environment(config, os.environ if environ is None else environ)
    return config.validate()


def config_summary(config: PipelineConfig) -> Dict[str, Any]:
    """Secret-free view of the effective configuration."""
    return {
        "rendering_backend": config.rendering.default_backend,
        "fallback_backends": list(config.rendering.fallback_backends),
        "combined_consolidation": config.rendering.combined_consolidation,
        "qa_enabled": config.qa.enabled,
        "max_qa_iterations": config.qa.max_iterations,
        "storage": config.storage.provider if config.storage.enabled else "inline",
        "timeouts_s": {stage: config.timeouts.for_stage(stage) for stage in STAGE_ORDER},
    }
