"""Pixel-vote consensus across parallel segmentation workers."""

from __future__ import annotations

import asyncio
import math
from typing import Any, Sequence

import numpy as np
import structlog

from ..errors import InputError, StageFailure, WorkerFailure
from ..imaging import decode_base64_image, feather, paint_local_mask
from ..models.geometry import ImageDimensions
from ..models.mask import CandidateMask, ConsensusMask
from ..services.contracts import SegmentationWorker

logger = structlog.get_logger(__name__)


def vote_threshold(dispatched: int, divisor: float = 2.5) -> int:
    """Smallest vote count strictly above ``dispatched / divisor``.

    With five workers this is 3: two agreeing workers are not enough, three
    are. Looser than a strict majority once N grows, so a couple of sloppy
    workers cannot veto a region.
    """
    if dispatched < 1:
        raise ValueError("dispatched must be at least 1")
    return math.floor(dispatched / divisor) + 1


def parse_segmentation(raw: Any, worker: str) -> CandidateMask:
    """Accept a single mask object or a list of them (the first one is used)."""
    item = raw[0] if isinstance(raw, list) and raw else raw
    if not isinstance(item, dict):
        raise WorkerFailure(worker, "segmentation result is empty or not an object")
    if "error" in item:
        raise WorkerFailure(worker, str(item["error"]))

    box = item.get("box_2d")
    mask = item.get("mask")
    if not box or len(box) != 4 or not mask:
        raise WorkerFailure(worker, "segmentation result is missing box_2d or mask")

    try:
        raster = decode_base64_image(mask) if isinstance(mask, str) else bytes(mask)
    except (InputError, TypeError) as e:
        raise WorkerFailure(worker, f"undecodable mask: {e}") from e
    return CandidateMask(
        box_2d=[float(v) for v in box],
        raster=raster,
        label=str(item.get("label", "")),
        worker=worker,
    )


class MaskConsensus:
    """Compositor: vote accumulator over N independently failing workers."""

    def __init__(
        self,
        worker: SegmentationWorker,
        worker_count: int = 5,
        vote_divisor: float = 2.5,
        pixel_threshold: int = 128,
        feather_ratio: float = 0.03,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.worker = worker
        self.worker_count = worker_count
        self.vote_divisor = vote_divisor
        self.pixel_threshold = pixel_threshold
        self.feather_ratio = feather_ratio

    async def collect(self, image_ref: str, reference_ref: str | None = None) -> list[dict[str, Any]]:
        """Run every worker and settle them all.

        Returns one JSON-safe record per worker: either the raw result or an
        ``{"error": ...}`` entry, so the outcome can be persisted as-is and
        aggregated by a later invocation.
        """
        settled = await asyncio.gather(
            *(self.worker.segment(image_ref, reference_ref) for _ in range(self.worker_count)),
            return_exceptions=True,
        )
        records: list[dict[str, Any]] = []
        for i, outcome in enumerate(settled):
            worker = f"segmenter-{i}"
            if isinstance(outcome, BaseException):
                logger.warning("Segmentation worker failed", worker=worker, error=str(outcome))
                records.append({"worker": worker, "error": str(outcome)})
            else:
                records.append({"worker": worker, "result": outcome})
        return records

    def parse_records(self, records: Sequence[dict[str, Any]]) -> list[CandidateMask]:
        masks: list[CandidateMask] = []
        for record in records:
            worker = record.get("worker", "segmenter")
            if "error" in record:
                continue
            try:
                masks.append(parse_segmentation(record.get("result"), worker))
            except WorkerFailure as e:
                logger.warning("Discarding segmentation result", worker=worker, error=str(e))
        return masks

    def aggregate(
        self,
        masks: Sequence[CandidateMask],
        dimensions: ImageDimensions,
        dispatched: int | None = None,
    ) -> ConsensusMask:
        """Vote, binarize and feather. ``dispatched`` defaults to the worker count."""
        dispatched = dispatched or self.worker_count
        votes = np.zeros((dimensions.height, dimensions.width), dtype=np.int32)

        valid = 0
        for mask in masks:
            try:
                painted = paint_local_mask(mask.raster, mask.box_2d, dimensions)
            except (InputError, ValueError, OSError) as e:
                logger.warning("Cannot paint mask", worker=mask.worker, error=str(e))
                continue
            votes += painted > self.pixel_threshold
            valid += 1

        if valid == 0:
            raise StageFailure("Mask aggregation failed: no valid segmentation results.")

        threshold = vote_threshold(dispatched, self.vote_divisor)
        binary = votes >= threshold
        radius = max(1.0, min(dimensions.width, dimensions.height) * self.feather_ratio)
        feathered = feather(binary, radius)

        logger.info(
            "Mask votes aggregated",
            valid_results=valid,
            dispatched=dispatched,
            threshold=threshold,
            coverage=round(float(binary.mean()), 4),
        )
        return ConsensusMask(
            votes=votes,
            threshold=threshold,
            binary=binary,
            feathered=feathered,
            valid_results=valid,
            dispatched=dispatched,
        )
