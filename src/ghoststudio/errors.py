"""
errors.py – Pipeline error taxonomy
===================================

One exception type for every failure the orchestrator can report, tagged with
a machine-readable code, the stage it happened in, and a derived error kind.

Kinds:
- configuration   missing credentials / unknown backend (fatal)
- validation      bad request, rejected before any stage (fatal)
- timeout         a stage exceeded its budget (fatal, records stage)
- quota           rate limit / quota exhaustion (recoverable by fallback)
- content_blocked provider safety filter (fatal, never retried)
- transport       network / provider failure (fatal unless configured)
- qa_violation    QA constraint not met (recoverable by bounded retry)
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import httpx

CONFIGURATION = "configuration"
VALIDATION = "validation"
TIMEOUT = "timeout"
QUOTA = "quota"
CONTENT_BLOCKED = "content_blocked"
TRANSPORT = "transport"
QA_VIOLATION = "qa_violation"

# code -> (kind, http status)
ERROR_CODES: Dict[str, tuple] = {
    "MISSING_FLATLAY": (VALIDATION, 400),
    "INVALID_IMAGE_FORMAT": (VALIDATION, 400),
    "INVALID_REQUEST": (VALIDATION, 400),
    "CLIENT_NOT_CONFIGURED": (CONFIGURATION, 500),
    "CONFIG_INVALID": (CONFIGURATION, 500),
    "UNKNOWN_BACKEND": (CONFIGURATION, 500),
    "STAGE_TIMEOUT": (TIMEOUT, 408),
    "RATE_LIMIT_EXCEEDED": (QUOTA, 429),
    "GEMINI_QUOTA_EXCEEDED": (QUOTA, 429),
    "INSUFFICIENT_CREDITS": (QUOTA, 402),
    "CONTENT_BLOCKED": (CONTENT_BLOCKED, 422),
    "IMAGE_FETCH_FAILED": (TRANSPORT, 502),
    "NO_IMAGE_IN_RESPONSE": (TRANSPORT, 502),
    "BACKGROUND_REMOVAL_FAILED": (TRANSPORT, 500),
    "ANALYSIS_FAILED": (TRANSPORT, 500),
    "RENDERING_FAILED": (TRANSPORT, 500),
    "FILE_UPLOAD_FAILED": (TRANSPORT, 500),
    "STORAGE_FAILED": (TRANSPORT, 500),
    "QA_VIOLATION": (QA_VIOLATION, 422),
    "PIPELINE_FAILED": (TRANSPORT, 500),
}

_QUOTA_MARKERS = ("429", "resource_exhausted", "quota", "rate limit", "rate_limit", "too many requests")
_BLOCK_MARKERS = ("safety", "blocked", "prohibited_content", "content policy", "content_filter")
_CREDIT_MARKERS = ("402", "insufficient credits", "payment required")


class GhostPipelineError(Exception):
    """Structured pipeline failure."""

    def __init__(
        self,
        message: str,
        code: str = "PIPELINE_FAILED",
        stage: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.stage = stage
        self.cause = cause

    @property
    def kind(self) -> str:
        return ERROR_CODES.get(self.code, (TRANSPORT, 500))[0]

    @property
    def http_status(self) -> int:
        return ERROR_CODES.get(self.code, (TRANSPORT, 500))[1]

    @property
    def retryable(self) -> bool:
        return self.kind in (QUOTA, QA_VIOLATION)

    def with_stage(self, stage: str) -> "GhostPipelineError":
        if self.stage is None:
            self.stage = stage
        return self

    def to_record(self) -> "ErrorRecord":
        return ErrorRecord(message=self.message, code=self.code, stage=self.stage)

    def __repr__(self) -> str:
        return f"GhostPipelineError(code={self.code!r}, stage={self.stage!r}, message={self.message!r})"


class StageTimeoutError(GhostPipelineError):
    def __init__(self, stage: str, timeout_s: float):
        super().__init__(
            f"Stage '{stage}' exceeded its {timeout_s:g}s budget",
            code="STAGE_TIMEOUT",
            stage=stage,
        )
        self.timeout_s = timeout_s


@dataclass
class ErrorRecord:
    message: str
    code: str
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_error(exc: BaseException) -> str:
    """Map any exception raised by a provider call to an error kind."""
    if isinstance(exc, GhostPipelineError):
        return exc.kind
    if isinstance(exc, (TimeoutError,)):
        return TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (402, 429):
            return QUOTA
        if status in (400, 422) and _matches(str(exc) + exc.response.text, _BLOCK_MARKERS):
            return CONTENT_BLOCKED
        return TRANSPORT
    if isinstance(exc, httpx.HTTPError):
        return TRANSPORT

    text = f"{type(exc).__name__} {exc}".lower()
    if _matches(text, _QUOTA_MARKERS) or _matches(text, _CREDIT_MARKERS):
        return QUOTA
    if _matches(text, _BLOCK_MARKERS):
        return CONTENT_BLOCKED
    return TRANSPORT


def wrap_provider_error(
    exc: BaseException,
    *,
    quota_code: str,
    failure_code: str,
    stage: Optional[str] = None,
    provider: str = "provider",
) -> GhostPipelineError:
    """Convert a raw provider exception into a GhostPipelineError."""
    if isinstance(exc, GhostPipelineError):
        return exc.with_stage(stage) if stage else exc

    kind = classify_error(exc)
    text = str(exc).lower()
    if kind == QUOTA:
        code = "INSUFFICIENT_CREDITS" if _matches(text, _CREDIT_MARKERS) else quota_code
        if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 402:
            code = "INSUFFICIENT_CREDITS"
        return GhostPipelineError(f"{provider} quota exceeded: {exc}", code=code, stage=stage, cause=exc)
    if kind == CONTENT_BLOCKED:
        return GhostPipelineError(f"{provider} blocked the content: {exc}", code="CONTENT_BLOCKED", stage=stage, cause=exc)
    if kind == TIMEOUT:
        return GhostPipelineError(f"{provider} timed out: {exc}", code="STAGE_TIMEOUT", stage=stage, cause=exc)
    return GhostPipelineError(f"{provider} failed: {exc}", code=failure_code, stage=stage, cause=exc)


def _matches(text: str, markers) -> bool:
    text = text.lower()
    return any(marker in text for marker in markers)
