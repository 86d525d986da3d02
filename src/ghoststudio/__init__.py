"""
GhostStudio Ghost-Mannequin Pipeline
====================================

Turns a flatlay garment photo (plus an optional on-model reference) into a
ghost-mannequin product render through a strict stage sequence:

0. Background removal (FAL Bria)
1. Structural analysis (Gemini)
2. Enrichment analysis (Gemini)
3. Consolidation + contract compilation
4. Rendering (Gemini Flash / Seedream / Freepik, with fallback)
5. Optional QA loop

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "GhostStudio"

from .config import PipelineConfig, load_config
from .errors import GhostPipelineError
from .models import Request, RequestOptions, RunResult
from .pipeline import GhostPipeline, run_pipeline
from .steps.step2_consolidation import consolidate
from .steps.step3_contract import compile_contract

__all__ = [
    "GhostPipeline",
    "GhostPipelineError",
    "PipelineConfig",
    "Request",
    "RequestOptions",
    "RunResult",
    "compile_contract",
    "consolidate",
    "load_config",
    "run_pipeline",
]
