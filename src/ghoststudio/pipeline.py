"""
pipeline.py – Stage Orchestrator
================================

Runs one request through

    background_removal → analysis → enrichment → consolidation → rendering → (qa)

as a strict sequence. Every stage has its own timeout; no stage commits a
partial result. Failures stop the run and come back as a RunResult carrying
the artifacts already produced, the failing stage and an error code.

In combined contract mode the consolidation stage also renders; the
orchestrator then skips the rendering stage and keeps that result.
"""

from __future__ import annotations

import asyncio
import time
import logging
from dataclasses import replace
from typing import Awaitable, Callable, List, Optional, Sequence

from .config import KNOWN_BACKENDS, PipelineConfig
from .errors import GhostPipelineError, StageTimeoutError
from .models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    BackgroundRemovalResult,
    ConsolidationResult,
    EnrichmentAnalysis,
    GenerationResult,
    PipelineRun,
    QAVerdict,
    Request,
    RunResult,
    StructuralAnalysis,
)
from .steps.step0_background import FalBackgroundRemover
from .steps.step1_analysis import GeminiEnrichmentAnalyzer, GeminiStructuralAnalyzer
from .steps.step2_consolidation import check_consistency, consolidate, resolve_background_hex
from .steps.step3_contract import CompiledContract, build_legacy_prompt, compile_contract
from .steps.step4_renderer import RenderingDispatcher, RenderRequest, aspect_ratio_for
from .steps.step5_qa import QALoop, QAValidator
from .steps.step6_delivery import create_render_storage
from .utils.image_refs import validate_image_ref

logger = logging.getLogger("ghoststudio.pipeline")


class GhostPipeline:
    """Sequences the pipeline stages for one request at a time."""

    def __init__(
        self,
        config: PipelineConfig,
        background_remover,
        structural_analyzer,
        enrichment_analyzer,
        dispatcher: RenderingDispatcher,
        qa_validator: Optional[QAValidator] = None,
    ):
        self.config = config
        self.background_remover = background_remover
        self.structural_analyzer = structural_analyzer
        self.enrichment_analyzer = enrichment_analyzer
        self.dispatcher = dispatcher
        self.qa_validator = qa_validator

    @classmethod
    def from_config(cls, config: PipelineConfig, http_client=None) -> "GhostPipeline":
        storage = create_render_storage(config.storage)
        qa_validator = QAValidator.from_config(config, http_client) if config.qa.enabled else None
        return cls(
            config,
            background_remover=FalBackgroundRemover(
                config.keys.fal_api_key,
                http_client=http_client,
                timeout=config.timeouts.background_removal,
                max_px=config.rendering.image_max_px,
            ),
            structural_analyzer=GeminiStructuralAnalyzer(
                config.keys.gemini_api_key, config.analysis, http_client=http_client
            ),
            enrichment_analyzer=GeminiEnrichmentAnalyzer(
                config.keys.gemini_api_key, config.analysis, http_client=http_client
            ),
            dispatcher=RenderingDispatcher.from_config(config, storage=storage, http_client=http_client),
            qa_validator=qa_validator,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, request: Request) -> RunResult:
        run = PipelineRun()
        logger.info(f"🚀 Starting ghost pipeline run {run.session_id}")

        try:
            self._validate(request)
        except GhostPipelineError as exc:
            logger.error(f"❌ Request rejected: {exc.code} - {exc.message}")
            run.finish(STATUS_FAILED)
            return self._result(run, exc)

        try:
            await self._run_stages(run, request)
        except GhostPipelineError as exc:
            exc.with_stage(run.current_stage)
            logger.error(f"❌ Run {run.session_id} failed at {exc.stage}: {exc.code} - {exc.message}")
            run.finish(STATUS_FAILED)
            return self._result(run, exc)
        except Exception as exc:
            logger.exception(f"❌ Run {run.session_id} failed unexpectedly at {run.current_stage}")
            error = GhostPipelineError(
                f"Unexpected pipeline failure: {exc}", code="PIPELINE_FAILED", stage=run.current_stage, cause=exc
            )
            run.finish(STATUS_FAILED)
            return self._result(run, error)

        run.finish(STATUS_COMPLETED)
        logger.info(f"✅ Run {run.session_id} completed in {run.elapsed_ms}ms")
        return self._result(run)

    async def process_batch(self, requests: Sequence[Request], concurrency: Optional[int] = None) -> List[RunResult]:
        """Run independent requests with bounded concurrency; results keep input order."""
        semaphore = asyncio.Semaphore(concurrency or self.config.batch_concurrency)

        async def _one(request: Request) -> RunResult:
            async with semaphore:
                return await self.run(request)

        return list(await asyncio.gather(*(_one(r) for r in requests)))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _validate(self, request: Request) -> None:
        validate_image_ref(request.flatlay, "flatlay")
        if request.on_model:
            validate_image_ref(request.on_model, "on_model")
        backend = request.options.rendering_backend
        if backend is not None and backend not in KNOWN_BACKENDS:
            raise GhostPipelineError(f"Unknown rendering backend '{backend}'", code="UNKNOWN_BACKEND")
        resolve_background_hex(request.options.background_color)
        for name, component in (
            ("background removal", self.background_remover),
            ("structural analysis", self.structural_analyzer),
            ("enrichment analysis", self.enrichment_analyzer),
        ):
            if not component.is_configured():
                raise GhostPipelineError(f"{name} client is not configured", code="CLIENT_NOT_CONFIGURED")
        self.dispatcher.candidate_order(backend)

    async def _execute_stage(self, run: PipelineRun, stage: str, factory: Callable[[], Awaitable]):
        run.advance(stage)
        timeout = self.config.timeouts.for_stage(stage)
        started = time.monotonic()
        logger.info(f"▶️  {stage} (timeout {timeout:g}s)")
        try:
            result = await asyncio.wait_for(factory(), timeout=timeout)
        except asyncio.TimeoutError:
            raise StageTimeoutError(stage, timeout)
        except GhostPipelineError as exc:
            raise exc.with_stage(stage)
        duration_ms = int((time.monotonic() - started) * 1000)
        run.commit(stage, result, duration_ms)
        logger.info(f"✔️  {stage} done in {duration_ms}ms")
        return result

    async def _run_stages(self, run: PipelineRun, request: Request) -> None:
        session_id = run.session_id

        background: BackgroundRemovalResult = await self._execute_stage(
            run, "background_removal",
            lambda: self.background_remover.run(request.flatlay, request.on_model),
        )
        structural: StructuralAnalysis = await self._execute_stage(
            run, "analysis",
            lambda: self.structural_analyzer.analyze(
                background.cleaned_image_url, session_id, background.cleaned_on_model_url
            ),
        )
        enrichment: EnrichmentAnalysis = await self._execute_stage(
            run, "enrichment",
            lambda: self.enrichment_analyzer.analyze(background.cleaned_image_url, session_id, structural),
        )
        consolidation: ConsolidationResult = await self._execute_stage(
            run, "consolidation",
            lambda: self._consolidate(session_id, request, background, structural, enrichment),
        )

        render_request = self._render_request(request, background, consolidation.contract)
        backend = request.options.rendering_backend

        if consolidation.variant == "facts_and_result":
            logger.info("⏭️  rendering skipped: consolidation produced the render")
            run.advance("rendering")
            run.commit("rendering", consolidation.rendering)
            rendering = consolidation.rendering
        else:
            rendering = await self._execute_stage(
                run, "rendering", lambda: self.dispatcher.render(render_request, backend)
            )

        if self.config.qa.enabled and self.qa_validator is not None:
            await self._execute_stage(
                run, "qa",
                lambda: self._run_qa(run, rendering, render_request, consolidation, backend),
            )

    async def _consolidate(
        self,
        session_id: str,
        request: Request,
        background: BackgroundRemovalResult,
        structural: StructuralAnalysis,
        enrichment: EnrichmentAnalysis,
    ) -> ConsolidationResult:
        proportion_hint = structural.proportions if request.on_model else None
        facts, control, conflicts = consolidate(
            structural,
            enrichment,
            proportion_hint,
            preserve_labels=request.options.preserve_labels,
            background_color=request.options.background_color,
        )
        mismatches = check_consistency(facts, control)
        if mismatches:
            logger.warning(f"Control block disagrees with facts on {mismatches}")
        for conflict in conflicts:
            logger.debug(
                f"Conflict on {conflict.field}: kept {conflict.resolution!r} ({conflict.source_of_truth}), "
                f"discarded {conflict.discarded_value!r}"
            )
        logger.info(f"🧩 Consolidated facts: {len(conflicts)} conflicts, defaults={facts.defaults_applied}")

        contract = compile_contract(facts, control, session_id, request.options)
        if not self._use_structured_prompt(request):
            legacy = build_legacy_prompt(control)
            contract = replace(contract, instruction=legacy, short_instruction=legacy)

        result = ConsolidationResult(facts=facts, control=control, conflicts=conflicts, contract=contract)
        if self.config.rendering.combined_consolidation:
            render_request = self._render_request(request, background, contract)
            result.rendering = await self.dispatcher.render(render_request, request.options.rendering_backend)
        return result

    async def _run_qa(
        self,
        run: PipelineRun,
        rendering: GenerationResult,
        render_request: RenderRequest,
        consolidation: ConsolidationResult,
        backend: Optional[str],
    ) -> QAVerdict:
        loop = QALoop(
            self.dispatcher,
            self.qa_validator,
            max_iterations=self.config.qa.max_iterations,
            retry_image_px=self.config.rendering.retry_image_px,
        )
        final = await loop.run(
            rendering,
            render_request,
            consolidation.contract,
            backend,
            framing_margin_pct=consolidation.facts.framing_margin_pct,
        )
        run.replace_result("rendering", final)
        if not final.qa.passed and self.config.qa.fail_on_violation:
            raise GhostPipelineError(
                f"QA failed after {final.qa.attempts} attempt(s): {final.qa.violations}", code="QA_VIOLATION"
            )
        return final.qa

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _use_structured_prompt(self, request: Request) -> bool:
        return request.options.use_structured_prompt and self.config.rendering.use_structured_prompt

    def _render_request(
        self, request: Request, background: BackgroundRemovalResult, contract: CompiledContract
    ) -> RenderRequest:
        return RenderRequest(
            prompt=contract.instruction,
            flatlay=background.cleaned_image_url,
            on_model=background.cleaned_on_model_url,
            digest=contract.digest,
            image_max_px=self.config.rendering.image_max_px,
            output_size=request.options.output_size,
            aspect_ratio=aspect_ratio_for(request.options.output_size, self.config.rendering.aspect_ratio),
        )

    def _result(self, run: PipelineRun, error: Optional[GhostPipelineError] = None) -> RunResult:
        return RunResult(
            session_id=run.session_id,
            status=run.status,
            stage_results=dict(run.stage_results),
            timings=dict(run.timings),
            processing_time_ms=run.elapsed_ms,
            error=error.to_record() if error is not None else None,
        )


async def run_pipeline(request: Request, config: Optional[PipelineConfig] = None) -> RunResult:
    """Convenience wrapper: build a pipeline from config and run one request."""
    from .config import load_config

    pipeline = GhostPipeline.from_config(config or load_config())
    return await pipeline.run(request)
