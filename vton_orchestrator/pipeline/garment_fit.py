"""Garment-fit jobs: the top-level try-on pipeline."""

from typing import Any

import structlog

from ..consensus.bbox import BBoxConsensus
from ..errors import InputError, StageFailure
from ..imaging import composite_patch, crop_image, image_dimensions
from ..models.geometry import AbsoluteBox, CropMode, CropPolicy
from ..models.job import COMPLETE, FAILED, GarmentFitStatus, Job, JobKind
from ..services.contracts import PromptWriter
from .generation import GenerationPipeline
from .mask_aggregation import MaskAggregationPipeline
from .state_machine import JobStateMachine

logger = structlog.get_logger(__name__)

S = GarmentFitStatus

# metadata key under which each waiting status records its child job
CHILD_KEYS = {
    S.PENDING_SEGMENTATION.value: "mask_aggregation_job_id",
    S.PENDING_TRYON.value: "generation_job_id",
}


class GarmentFitPipeline(JobStateMachine):
    """Segment, crop, prompt, try on, composite.

    Payload:
        person_image: ref of the photo to dress
        garment_image: ref of the garment photo
        garment_description: optional text for the prompt writer
        person_description: optional, defaults to "person"
        crop_mode: optional "expand" | "frame"
        expansion_percent: optional, fraction of the box extent

    Segmentation and try-on run as child jobs. This job records the child's id
    in its metadata and returns; the child dispatches this worker again once
    it is terminal.
    """

    kind = JobKind.GARMENT_FIT
    worker_name = "garment-fit"

    def __init__(
        self,
        store,
        dispatcher,
        artifacts,
        bbox: BBoxConsensus,
        prompt_writer: PromptWriter,
        mask_aggregation: MaskAggregationPipeline,
        generation: GenerationPipeline,
        default_policy: CropPolicy | None = None,
    ):
        super().__init__(store, dispatcher, artifacts)
        self.bbox = bbox
        self.prompt_writer = prompt_writer
        self.mask_aggregation = mask_aggregation
        self.generation = generation
        self.default_policy = default_policy or CropPolicy()

    def stages(self):
        return {
            S.PENDING_SEGMENTATION.value: self.segment,
            S.PENDING_CROP.value: self.crop,
            S.PENDING_PROMPT_GENERATION.value: self.write_prompt,
            S.PENDING_TRYON.value: self.try_on,
            S.PENDING_COMPOSITE.value: self.composite,
        }

    def validate_payload(self, payload: dict[str, Any]) -> None:
        for key in ("person_image", "garment_image"):
            if not isinstance(payload.get(key), str) or not payload[key]:
                raise InputError(f"Garment fit requires '{key}'")
        self.crop_policy(payload)

    def crop_policy(self, payload: dict[str, Any]) -> CropPolicy:
        try:
            return CropPolicy(
                mode=CropMode(payload.get("crop_mode", self.default_policy.mode)),
                expansion_percent=payload.get("expansion_percent", self.default_policy.expansion_percent),
            )
        except ValueError as e:
            raise InputError(f"Invalid crop policy: {e}") from e

    def waiting_on(self, job: Job) -> str | None:
        key = CHILD_KEYS.get(job.status)
        return job.metadata.get(key) if key else None

    def metadata_for_resume(self, job: Job, target: str) -> dict[str, Any]:
        # A failed child is not reused: resuming spawns a fresh one.
        metadata = dict(job.metadata)
        key = CHILD_KEYS.get(target)
        if key and job.results.get(f"{key}_failed") == metadata.get(key):
            metadata.pop(key, None)
        return metadata

    # -- stages ----------------------------------------------------------------

    async def segment(self, job: Job) -> None:
        child = await self._child(job, self.mask_aggregation, {
            "image": job.payload["person_image"],
            "reference_image": job.payload["garment_image"],
        })
        if child is None:
            return

        await self.transition(job, S.PENDING_CROP.value, results={
            "mask": child.results["mask"],
            "mask_coverage": child.results.get("coverage"),
        })
        await self.continue_job(job.id)

    async def crop(self, job: Job) -> None:
        person_ref = job.payload["person_image"]
        person = await self.artifacts.load(person_ref)
        outcome = await self.bbox.run(person_ref, self.crop_policy(job.payload), image_dimensions(person))
        crop_box = outcome.crop.to_absolute()

        crop_ref = await self.artifacts.save(job.id, "crop.png", crop_image(person, crop_box))
        await self.transition(job, S.PENDING_PROMPT_GENERATION.value, results={
            "bbox": {
                "box": outcome.consensus.box,
                "absolute": outcome.consensus.to_absolute().model_dump(),
                "sample_count": outcome.consensus.sample_count,
                "failures": outcome.failures,
            },
            "crop": {
                "box": outcome.crop.box,
                "absolute": crop_box.model_dump(),
                "ref": crop_ref,
            },
        })
        await self.continue_job(job.id)

    async def write_prompt(self, job: Job) -> None:
        prompt = await self.prompt_writer.write({
            "garment_description": job.payload.get("garment_description", ""),
            "person_description": job.payload.get("person_description", "person"),
            "garment_image": await self.artifacts.load(job.payload["garment_image"]),
        })
        if not prompt.strip():
            raise StageFailure("Prompt writer returned an empty prompt")
        await self.transition(job, S.PENDING_TRYON.value, results={"prompt": prompt})
        await self.continue_job(job.id)

    async def try_on(self, job: Job) -> None:
        child = await self._child(job, self.generation, {
            "person_ref": job.results["crop"]["ref"],
            "garment_ref": job.payload["garment_image"],
            "prompt": job.results["prompt"],
        })
        if child is None:
            return

        await self.transition(job, S.PENDING_COMPOSITE.value, results={"tryon": child.results["selected"]})
        await self.continue_job(job.id)

    async def composite(self, job: Job) -> None:
        await self.claim(job, "composite")

        box = AbsoluteBox(**job.results["crop"]["absolute"])
        output = composite_patch(
            await self.artifacts.load(job.payload["person_image"]),
            await self.artifacts.load(job.results["tryon"]["image_ref"]),
            box,
            mask=await self.artifacts.load(job.results["mask"]),
        )
        output_ref = await self.artifacts.save(job.id, "result.png", output)
        await self.transition(job, COMPLETE, results={"output": output_ref})

    # -- child jobs ------------------------------------------------------------

    async def _child(self, job: Job, machine: JobStateMachine, payload: dict[str, Any]) -> Job | None:
        """Return the completed child job, or None while it is still running.

        The first call creates and dispatches the child. The child id is
        recorded before dispatch so its completion can always find this job.
        """
        key = CHILD_KEYS[job.status]
        child_id = job.metadata.get(key)

        if child_id is None:
            await self.claim(job, "spawn")
            child_id = await machine.create(payload, metadata={"parent_job_id": job.id}, dispatch=False)
            await self.store.update(job.id, expected_status=job.status, merge_metadata={key: child_id})
            logger.info("Child job started", job_id=job.id, child_id=child_id, child_kind=machine.kind.value)
            await machine.continue_job(child_id)
            return None

        child = await self.store.require(child_id)
        if child.status == FAILED:
            await self.store.update(job.id, merge_results={f"{key}_failed": child_id})
            raise StageFailure(f"{machine.kind.value} job {child_id} failed: {child.error_message}")
        if child.status != COMPLETE:
            logger.debug("Waiting for child job", job_id=job.id, child_id=child_id, child_status=child.status)
            return None
        return child
