"""Wires the stage workers together and exposes the service-level operations."""

from __future__ import annotations

from functools import partial
from typing import Any

import structlog

from ..config import PipelineConfig, load_config
from ..consensus.bbox import BBoxConsensus
from ..consensus.mask import MaskConsensus
from ..errors import InputError
from ..models.geometry import CropMode, CropPolicy
from ..models.job import Job, JobKind
from ..quality.gate import QualityGate
from ..quality.retry import RetryEscalationPolicy
from ..services.artifacts import LocalArtifactStore
from ..services.comfyui_client import ComfyUIEngine
from ..services.contracts import (
    ArtifactStore,
    GenerationEngine,
    ImageDetectionWorker,
    PromptWriter,
    QualityEvaluator,
    SegmentationWorker,
)
from ..services.dispatcher import Dispatcher, HttpDispatcher, InProcessDispatcher
from ..services.http_workers import HttpDetectionWorker, HttpGenerationEngine, HttpSegmentationWorker
from ..services.store import InMemoryJobStore, JobStore, JsonFileJobStore
from .garment_fit import GarmentFitPipeline
from .generation import GenerationPipeline
from .mask_aggregation import MaskAggregationPipeline
from .state_machine import AdvanceResult, JobStateMachine
from .watchdog import Watchdog, WatchdogReport

logger = structlog.get_logger(__name__)


class Orchestrator:
    """Owns one state machine per job kind and routes worker invocations to them."""

    def __init__(
        self,
        config: PipelineConfig,
        store: JobStore,
        dispatcher: Dispatcher,
        artifacts: ArtifactStore,
        detector: ImageDetectionWorker,
        segmenter: SegmentationWorker,
        engines: dict[str, GenerationEngine],
        evaluator: QualityEvaluator,
        prompt_writer: PromptWriter,
    ):
        self.config = config
        self.store = store
        self.dispatcher = dispatcher
        self.artifacts = artifacts

        consensus = config.consensus
        retry = config.retry

        self.mask_aggregation = MaskAggregationPipeline(
            store,
            dispatcher,
            artifacts,
            MaskConsensus(
                segmenter,
                worker_count=consensus.segmentation_workers,
                vote_divisor=consensus.vote_divisor,
                pixel_threshold=consensus.vote_pixel_threshold,
                feather_ratio=consensus.feather_ratio,
            ),
        )
        self.generation = GenerationPipeline(
            store,
            dispatcher,
            artifacts,
            engines=engines,
            gate=QualityGate(evaluator),
            policy=RetryEscalationPolicy(
                retry.tiers,
                escalation_threshold=retry.escalation_threshold,
                max_attempts=retry.max_attempts,
            ),
            candidates_per_attempt=retry.candidates_per_attempt,
            heartbeat_seconds=config.watchdog.heartbeat_seconds,
        )
        self.garment_fit = GarmentFitPipeline(
            store,
            dispatcher,
            artifacts,
            bbox=BBoxConsensus(
                detector,
                detector_count=consensus.detector_count,
                iqr_multiplier=consensus.iqr_multiplier,
            ),
            prompt_writer=prompt_writer,
            mask_aggregation=self.mask_aggregation,
            generation=self.generation,
            default_policy=CropPolicy(
                mode=CropMode(consensus.crop_mode),
                expansion_percent=consensus.expansion_percent,
            ),
        )

        self.machines: dict[JobKind, JobStateMachine] = {
            m.kind: m for m in (self.garment_fit, self.mask_aggregation, self.generation)
        }
        self.workers: dict[str, JobStateMachine] = {m.worker_name: m for m in self.machines.values()}
        self.watchdog = Watchdog(
            store,
            self.machines,
            stall_seconds=config.watchdog.stall_seconds,
            max_revivals=config.watchdog.max_revivals,
        )

        if isinstance(dispatcher, InProcessDispatcher):
            for name in self.workers:
                dispatcher.register(name, partial(self.handle, name))

    async def handle(self, worker: str, body: dict[str, Any]) -> AdvanceResult:
        """Entry point for a dispatched ``{"job_id": ...}`` body."""
        return await self.advance(worker, body.get("job_id", ""))

    async def advance(self, worker: str, job_id: str) -> AdvanceResult:
        machine = self.workers.get(worker)
        if machine is None:
            raise InputError(f"Unknown worker '{worker}'")
        if not job_id:
            raise InputError("job_id is required")
        return await machine.advance(job_id)

    async def submit_garment_fit(self, payload: dict[str, Any]) -> str:
        job_id = await self.garment_fit.create(payload)
        logger.info("Garment fit job submitted", job_id=job_id)
        return job_id

    async def get_job(self, job_id: str) -> Job:
        return await self.store.require(job_id)

    async def resume(self, job_id: str, status: str | None = None) -> AdvanceResult:
        job = await self.store.require(job_id)
        return await self.machines[job.kind].resume(job_id, status)

    async def run_watchdog(self) -> WatchdogReport:
        return await self.watchdog.sweep()

    async def close(self) -> None:
        await self.dispatcher.close()
        for collaborator in {id(c): c for c in self._collaborators()}.values():
            close = getattr(collaborator, "close", None)
            if close is not None:
                await close()

    def _collaborators(self) -> list[Any]:
        return [
            self.artifacts,
            self.garment_fit.bbox.detector,
            self.mask_aggregation.consensus.worker,
            *self.generation.engines.values(),
        ]


def build_orchestrator(config: PipelineConfig | None = None) -> Orchestrator:
    """Create an orchestrator with the HTTP, ComfyUI and agent adapters from ``config``."""
    from ..agents import AgentPromptWriter, AgentQualityEvaluator, TemplatePromptWriter

    config = config or load_config()
    services = config.services

    if config.store_backend == "memory":
        store = InMemoryJobStore()
    elif config.store_backend == "json":
        store = JsonFileJobStore(config.jobs_file)
    else:
        raise ValueError(f"Unsupported store_backend: {config.store_backend}")

    if config.dispatch_mode == "http":
        dispatcher = HttpDispatcher(services.dispatch_base_url)
    elif config.dispatch_mode == "inprocess":
        dispatcher = InProcessDispatcher()
    else:
        raise ValueError(f"Unsupported dispatch_mode: {config.dispatch_mode}")

    artifacts = LocalArtifactStore(config.artifacts_dir)
    engines: dict[str, GenerationEngine] = {}
    for tier in config.retry.tiers:
        if config.comfyui.enabled and tier == config.comfyui.tier:
            engines[tier] = ComfyUIEngine(tier, config.comfyui, artifacts)
        elif tier in services.engine_urls:
            engines[tier] = HttpGenerationEngine(
                tier, services.engine_urls[tier], artifacts, services.engine_timeout
            )

    if config.agents.template_prompts:
        prompt_writer = TemplatePromptWriter()
    else:
        prompt_writer = AgentPromptWriter(config.agents.prompt_writer_name)

    logger.info(
        "Building orchestrator",
        store=config.store_backend,
        dispatch=config.dispatch_mode,
        tiers=list(engines),
    )
    return Orchestrator(
        config,
        store=store,
        dispatcher=dispatcher,
        artifacts=artifacts,
        detector=HttpDetectionWorker(services.detection_url, artifacts, services.request_timeout),
        segmenter=HttpSegmentationWorker(services.segmentation_url, artifacts, services.request_timeout),
        engines=engines,
        evaluator=AgentQualityEvaluator(config.agents.evaluator_name),
        prompt_writer=prompt_writer,
    )
