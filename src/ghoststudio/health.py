"""
health.py – Dependency health report
====================================

Reports, per external dependency, whether it is configured. Makes no network
calls and never runs the pipeline.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import PipelineConfig, load_config

logger = logging.getLogger("ghoststudio.health")

_BACKEND_KEYS = {
    "gemini-flash": "gemini_api_key",
    "seedream": "fal_api_key",
    "freepik-gemini": "freepik_api_key",
}


def _status(configured: bool, required: bool = True) -> Dict[str, Any]:
    return {"configured": configured, "required": required}


def health_check(config: Optional[PipelineConfig] = None) -> Dict[str, Any]:
    config = config or load_config()
    keys = config.keys
    rendering = config.rendering

    services: Dict[str, Dict[str, Any]] = {
        "fal": _status(bool(keys.fal_api_key)),
        "gemini": _status(bool(keys.gemini_api_key)),
        "freepik": _status(bool(keys.freepik_api_key), required=rendering.default_backend == "freepik-gemini"),
        "storage": {
            "configured": config.storage.enabled,
            "required": False,
            "provider": config.storage.provider if config.storage.enabled else "inline",
        },
    }
    for backend, key_name in _BACKEND_KEYS.items():
        services[f"backend:{backend}"] = _status(
            bool(getattr(keys, key_name)),
            required=backend == rendering.default_backend,
        )

    errors = [
        f"{name} is not configured"
        for name, status in services.items()
        if status["required"] and not status["configured"]
    ]
    report = {
        "healthy": not errors,
        "services": services,
        "errors": errors,
        "rendering_backend": rendering.default_backend,
        "fallback_backends": [
            b for b in rendering.fallback_backends if getattr(keys, _BACKEND_KEYS[b])
        ],
        "qa_enabled": config.qa.enabled,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if errors:
        logger.warning(f"Health check found problems: {errors}")
    return report
