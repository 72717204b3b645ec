"""Generation jobs: candidate batches judged by the quality gate, on a retry ladder."""

from typing import Any

import structlog

from ..errors import InputError, StageFailure
from ..models.job import COMPLETE, GenerationStatus, Job, JobKind
from ..models.verdict import GenerationAttempt, QualityVerdict, VerdictAction
from ..quality.gate import QualityGate
from ..quality.retry import LadderState, RetryEscalationPolicy
from ..services.contracts import GenerationEngine
from .state_machine import JobStateMachine

logger = structlog.get_logger(__name__)

CONTEXT_KEYS = ("person_ref", "garment_ref", "prompt")


class GenerationPipeline(JobStateMachine):
    """``pending_generation -> quality_check -> complete``, with the retry back-edge.

    Each cycle's outcome is kept under ``results.attempts[<attempt_count>]``:
    the engine tier, the saved candidate refs (or the engine error) and the
    verdict. The ladder position (tier and per-tier counter) lives in
    ``metadata``.
    """

    kind = JobKind.GENERATION
    worker_name = "generation"
    consumers = (("generation_job_id", "garment-fit"),)

    def __init__(
        self,
        store,
        dispatcher,
        artifacts,
        engines: dict[str, GenerationEngine],
        gate: QualityGate,
        policy: RetryEscalationPolicy,
        candidates_per_attempt: int = 3,
        heartbeat_seconds: float = 30.0,
    ):
        super().__init__(store, dispatcher, artifacts)
        missing = [tier for tier in policy.tiers if tier not in engines]
        if missing:
            raise ValueError(f"No generation engine configured for tiers: {missing}")
        self.engines = engines
        self.gate = gate
        self.policy = policy
        self.candidates_per_attempt = candidates_per_attempt
        self.heartbeat_seconds = heartbeat_seconds

    def stages(self):
        return {
            GenerationStatus.PENDING_GENERATION.value: self.generate_candidates,
            GenerationStatus.QUALITY_CHECK.value: self.check_quality,
        }

    def validate_payload(self, payload: dict[str, Any]) -> None:
        for key in ("person_ref", "garment_ref"):
            if not isinstance(payload.get(key), str) or not payload[key]:
                raise InputError(f"Generation requires '{key}'")

    async def generate_candidates(self, job: Job) -> None:
        state = LadderState.from_job(job.attempt_count, job.metadata)
        key = str(state.attempt_count)
        attempts = dict(job.results.get("attempts", {}))

        if key in attempts:
            logger.info("Candidates already generated for attempt", job_id=job.id, attempt=key)
        else:
            attempts[key] = await self._run_engine(job, state)
            updated = await self.store.update(
                job.id,
                expected_status=job.status,
                merge_results={"attempts": attempts},
            )
            if updated is None:
                logger.info("Job moved during generation, dropping batch", job_id=job.id, attempt=key)
                return

        await self.transition(job, GenerationStatus.QUALITY_CHECK.value)
        await self.continue_job(job.id)

    async def _run_engine(self, job: Job, state: LadderState) -> dict[str, Any]:
        tier = self.policy.tier(state)
        engine = self.engines[tier]
        context = {k: job.payload[k] for k in CONTEXT_KEYS if k in job.payload}
        log = logger.bind(job_id=job.id, attempt=state.attempt_count, tier=tier)

        try:
            async with self.keep_alive(job):
                images = await engine.generate(context, self.candidates_per_attempt)
        except Exception as e:
            log.warning("Generation engine failed", error=str(e))
            return {"tier": tier, "candidates": [], "error": str(e)}

        refs = []
        for i, image in enumerate(images):
            refs.append(await self.artifacts.save(job.id, f"attempt{state.attempt_count}_candidate{i}.png", image))
        log.info("Candidates generated", count=len(refs))
        return {"tier": tier, "candidates": refs}

    async def check_quality(self, job: Job) -> None:
        state = LadderState.from_job(job.attempt_count, job.metadata)
        flags = self.policy.flags(state)
        attempts = dict(job.results.get("attempts", {}))
        key = str(state.attempt_count)
        record = dict(attempts.get(key) or {})
        candidates = record.get("candidates", [])

        if not candidates:
            error = record.get("error", "engine returned no candidates")
            if flags.is_absolute_final_attempt:
                raise StageFailure(f"Generation failed on the final attempt: {error}")
            verdict = QualityVerdict(
                action=VerdictAction.RETRY,
                chosen_index=0,
                reasoning=f"No candidates: {error}",
            )
        else:
            reference = await self.artifacts.load(job.payload["garment_ref"])
            images = [await self.artifacts.load(ref) for ref in candidates]
            verdict = await self.gate.evaluate(
                reference,
                images,
                is_escalation_check=flags.is_escalation_check,
                is_absolute_final_attempt=flags.is_absolute_final_attempt,
            )

        record["verdict"] = verdict.model_dump(mode="json")
        attempts[key] = record

        if verdict.selected:
            chosen = GenerationAttempt(
                index=verdict.chosen_index,
                tier=record.get("tier", self.policy.tier(state)),
                image_ref=candidates[verdict.chosen_index],
                attempt=state.attempt_count,
            )
            await self.transition(
                job,
                COMPLETE,
                results={"attempts": attempts, "selected": chosen.model_dump(mode="json")},
            )
            return

        next_state, decision = self.policy.after_retry(state)
        logger.info(
            "Retrying generation",
            job_id=job.id,
            decision=decision.value,
            attempt_count=next_state.attempt_count,
            tier=self.policy.tier(next_state),
            reasoning=verdict.reasoning,
        )
        await self.transition(
            job,
            GenerationStatus.PENDING_GENERATION.value,
            retry=True,
            attempt_count=next_state.attempt_count,
            results={"attempts": attempts},
            metadata=next_state.metadata(),
        )
        await self.continue_job(job.id)
