#!/usr/bin/env python3
"""
CLI entry points for the ghost-mannequin pipeline.

    ghoststudio-pipeline --flatlay shirt.jpg --out ./pipeline_output
    ghoststudio-health --config pipeline.yml
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .config import load_config
from .errors import GhostPipelineError
from .health import health_check
from .models import STATUS_COMPLETED, Request, RequestOptions
from .pipeline import GhostPipeline
from .utils.image_refs import decode_data_url, is_data_url, is_http_url, local_file_to_data_url


def _setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _resolve_image(ref):
    """Local files become data URLs; URLs pass through."""
    if ref is None or is_http_url(ref) or is_data_url(ref):
        return ref
    return local_file_to_data_url(ref)


def ghoststudio_pipeline():
    """Run the complete pipeline for one flatlay."""
    parser = argparse.ArgumentParser(
        description="Ghost-Mannequin Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with defaults from the environment
    ghoststudio-pipeline --flatlay shirt.jpg

    # On-model reference for proportions, Seedream backend, QA loop on
    ghoststudio-pipeline --flatlay shirt.jpg --on-model model.jpg --backend seedream --qa
        """
    )
    parser.add_argument("--flatlay", required=True, help="Flatlay image path or URL")
    parser.add_argument("--on-model", help="On-model reference image path or URL")
    parser.add_argument("--out", default="./pipeline_output", help="Output directory")
    parser.add_argument("--config", help="Pipeline configuration YAML file")
    parser.add_argument("--backend", choices=["gemini-flash", "seedream", "freepik-gemini"], help="Rendering backend")
    parser.add_argument("--output-size", default="2048x2048", choices=["1024x1024", "2048x2048"])
    parser.add_argument("--legacy-prompt", action="store_true", help="Use the free-text prompt instead of the JSON contract")
    parser.add_argument("--background", default="white", help="Background color name or hex (default: white)")
    parser.add_argument("--no-labels", action="store_true", help="Do not lock label preservation")
    qa_group = parser.add_mutually_exclusive_group()
    qa_group.add_argument("--qa", action="store_true", help="Enable the QA loop")
    qa_group.add_argument("--no-qa", action="store_true", help="Disable the QA loop")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()
    _setup_logging(args.debug)
    logger = logging.getLogger("ghoststudio.cli")

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    try:
        config = load_config(args.config)
        if args.qa or args.no_qa:
            config.qa = replace(config.qa, enabled=args.qa)
        request = Request(
            flatlay=_resolve_image(args.flatlay),
            on_model=_resolve_image(args.on_model),
            options=RequestOptions(
                output_size=args.output_size,
                background_color=args.background,
                preserve_labels=not args.no_labels,
                use_structured_prompt=not args.legacy_prompt,
                rendering_backend=args.backend,
            ),
        )
        pipeline = GhostPipeline.from_config(config)
    except (GhostPipelineError, OSError) as e:
        logger.error(f"❌ Could not start pipeline: {e}")
        sys.exit(2)

    logger.info(f"📸 Input: {args.flatlay}")
    result = asyncio.run(pipeline.run(request))
    summary = result.to_dict()

    rendering = result.rendering
    if rendering is not None and is_data_url(rendering.image_url):
        data, mime_type = decode_data_url(rendering.image_url)
        image_path = out_dir / f"ghost_{result.session_id[:8]}.{mime_type.split('/')[-1]}"
        image_path.write_bytes(data)
        summary["renderUrl"] = str(image_path)
        logger.info(f"💾 Render saved to {image_path}")

    summary_path = out_dir / "pipeline_summary.json"
    with open(summary_path, 'w') as f:
        json.dump(summary, f, indent=2)

    if result.status == STATUS_COMPLETED:
        logger.info(f"🎉 Pipeline completed in {summary['metrics']['processingTime']}")
        logger.info(f"📁 Summary: {summary_path}")
    else:
        error = summary.get("error", {})
        logger.error(f"❌ Pipeline failed at {error.get('stage')}: {error.get('code')} - {error.get('message')}")
        sys.exit(1)


def ghoststudio_health():
    """Print the dependency health report."""
    parser = argparse.ArgumentParser(description="Ghost-Mannequin Pipeline health check")
    parser.add_argument("--config", help="Pipeline configuration YAML file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()
    _setup_logging(args.debug)

    try:
        report = health_check(load_config(args.config))
    except GhostPipelineError as e:
        report = {"healthy": False, "services": {}, "errors": [e.message]}
    print(json.dumps(report, indent=2))
    sys.exit(0 if report["healthy"] else 1)


if __name__ == "__main__":
    ghoststudio_pipeline()
