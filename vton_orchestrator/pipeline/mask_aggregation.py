"""Mask aggregation jobs: segmentation fan-out, then vote compositing."""

from typing import Any

import structlog
from PIL import Image

from ..consensus.mask import MaskConsensus
from ..errors import InputError
from ..imaging import encode_png, image_dimensions
from ..models.job import COMPLETE, Job, JobKind, MaskAggregationStatus
from .state_machine import JobStateMachine

logger = structlog.get_logger(__name__)


class MaskAggregationPipeline(JobStateMachine):
    """``aggregating -> compositing -> complete``.

    Payload: ``image`` (ref of the image to segment) and optionally
    ``reference_image`` (the garment, passed through to the workers).
    """

    kind = JobKind.MASK_AGGREGATION
    worker_name = "mask-aggregation"
    consumers = (("mask_aggregation_job_id", "garment-fit"),)

    def __init__(self, store, dispatcher, artifacts, consensus: MaskConsensus):
        super().__init__(store, dispatcher, artifacts)
        self.consensus = consensus

    def stages(self):
        return {
            MaskAggregationStatus.AGGREGATING.value: self.collect_segmentations,
            MaskAggregationStatus.COMPOSITING.value: self.composite_votes,
        }

    def validate_payload(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload.get("image"), str) or not payload["image"]:
            raise InputError("Mask aggregation requires an 'image' ref")
        reference = payload.get("reference_image")
        if reference is not None and not isinstance(reference, str):
            raise InputError("'reference_image' must be a ref string")

    async def collect_segmentations(self, job: Job) -> None:
        records = await self.consensus.collect(job.payload["image"], job.payload.get("reference_image"))
        succeeded = sum(1 for r in records if "error" not in r)
        logger.info(
            "Segmentation workers settled",
            job_id=job.id,
            succeeded=succeeded,
            dispatched=len(records),
        )
        await self.transition(
            job,
            MaskAggregationStatus.COMPOSITING.value,
            results={"segmentations": records, "dispatched": len(records)},
        )
        await self.continue_job(job.id)

    async def composite_votes(self, job: Job) -> None:
        await self.claim(job, "vote")

        image = await self.artifacts.load(job.payload["image"])
        dimensions = image_dimensions(image)
        records = job.results.get("segmentations", [])
        masks = self.consensus.parse_records(records)
        consensus = self.consensus.aggregate(masks, dimensions, dispatched=job.results.get("dispatched"))

        mask_ref = await self.artifacts.save(job.id, "mask.png", encode_png(Image.fromarray(consensus.feathered)))
        binary_ref = await self.artifacts.save(
            job.id, "mask_binary.png", encode_png(Image.fromarray(consensus.binary.astype("uint8") * 255))
        )
        await self.transition(
            job,
            COMPLETE,
            results={
                "mask": mask_ref,
                "binary_mask": binary_ref,
                "valid_results": consensus.valid_results,
                "threshold": consensus.threshold,
                "coverage": round(consensus.coverage, 4),
                "dimensions": {"width": dimensions.width, "height": dimensions.height},
            },
        )
