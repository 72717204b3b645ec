"""Bounding box consensus across parallel detectors."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Any, Sequence

import structlog

from ..errors import StageFailure, WorkerFailure
from ..models.geometry import (
    NORMALIZED_SCALE,
    CandidateBox,
    ConsensusBox,
    CropMode,
    CropPolicy,
    ImageDimensions,
)
from ..services.contracts import ImageDetectionWorker
from .statistics import robust_box_mean

logger = structlog.get_logger(__name__)


@dataclass
class BoxConsensusResult:
    """The aggregated subject box and the crop derived from it."""
    consensus: ConsensusBox
    crop: ConsensusBox
    failures: list[str]


def parse_detection(raw: dict[str, Any], detector: str) -> CandidateBox:
    """Turn a detector response into a ``CandidateBox``.

    Accepts both ``normalized_box`` and the older ``normalized_bounding_box`` key.
    """
    if not isinstance(raw, dict):
        raise WorkerFailure(detector, f"expected a JSON object, got {type(raw).__name__}")
    box = raw.get("normalized_box", raw.get("normalized_bounding_box"))
    dims = raw.get("original_dimensions")
    if box is None or dims is None:
        raise WorkerFailure(detector, "response is missing normalized_box or original_dimensions")
    try:
        return CandidateBox(
            box=[float(v) for v in box],
            detector=detector,
            dimensions=ImageDimensions(**dims),
        )
    except (TypeError, ValueError) as e:
        raise WorkerFailure(detector, f"invalid detection: {e}") from e


def expand_box(box: Sequence[float], expansion_percent: float) -> list[float]:
    """Pad each side by ``expansion_percent`` of the box extent on that axis."""
    y_min, x_min, y_max, x_max = box
    pad_y = (y_max - y_min) * expansion_percent
    pad_x = (x_max - x_min) * expansion_percent
    return [
        max(0.0, y_min - pad_y),
        max(0.0, x_min - pad_x),
        min(NORMALIZED_SCALE, y_max + pad_y),
        min(NORMALIZED_SCALE, x_max + pad_x),
    ]


def frame_box(box: Sequence[float], dimensions: ImageDimensions, expansion_percent: float) -> list[float]:
    """Aspect-matched container around the subject.

    The container has the source image's aspect ratio, encloses the subject,
    is centered on it and grown by ``expansion_percent``. When it crosses an
    image edge it is shifted back inside, so the area lost on one side is
    gained on the opposite side.
    """
    width, height = dimensions.width, dimensions.height
    y_min, x_min, y_max, x_max = box
    left = x_min / NORMALIZED_SCALE * width
    right = x_max / NORMALIZED_SCALE * width
    top = y_min / NORMALIZED_SCALE * height
    bottom = y_max / NORMALIZED_SCALE * height

    aspect = dimensions.aspect_ratio
    frame_w = max(right - left, (bottom - top) * aspect)
    frame_h = frame_w / aspect

    grow = 1.0 + 2.0 * expansion_percent
    frame_w *= grow
    frame_h *= grow

    # Never larger than the image itself; both sides scale so the ratio holds.
    scale = min(1.0, width / frame_w, height / frame_h)
    frame_w *= scale
    frame_h *= scale

    center_x = (left + right) / 2.0
    center_y = (top + bottom) / 2.0
    frame_left = min(max(center_x - frame_w / 2.0, 0.0), width - frame_w)
    frame_top = min(max(center_y - frame_h / 2.0, 0.0), height - frame_h)

    return [
        frame_top / height * NORMALIZED_SCALE,
        frame_left / width * NORMALIZED_SCALE,
        (frame_top + frame_h) / height * NORMALIZED_SCALE,
        (frame_left + frame_w) / width * NORMALIZED_SCALE,
    ]


class BBoxConsensus:
    """Fans out identical detection requests and robust-averages the answers.

    Each coordinate is averaged on its own: edge noise from different
    detectors is treated as independent, so an error on one edge never drags
    the others along.
    """

    def __init__(
        self,
        detector: ImageDetectionWorker,
        detector_count: int = 5,
        iqr_multiplier: float = 1.5,
    ):
        if detector_count < 1:
            raise ValueError("detector_count must be at least 1")
        self.detector = detector
        self.detector_count = detector_count
        self.iqr_multiplier = iqr_multiplier

    async def gather_candidates(self, image_ref: str) -> tuple[list[CandidateBox], list[str]]:
        """Dispatch all detectors concurrently and keep the ones that succeed."""
        names = [f"detector-{i}" for i in range(self.detector_count)]
        settled = await asyncio.gather(
            *(self.detector.detect(image_ref) for _ in names),
            return_exceptions=True,
        )

        candidates: list[CandidateBox] = []
        failures: list[str] = []
        for name, outcome in zip(names, settled):
            if isinstance(outcome, BaseException):
                failures.append(f"{name}: {outcome}")
                continue
            try:
                candidates.append(parse_detection(outcome, name))
            except WorkerFailure as e:
                failures.append(str(e))

        for failure in failures:
            logger.warning("Detector failed", image_ref=image_ref, error=failure)
        return candidates, failures

    def aggregate(
        self,
        candidates: Sequence[CandidateBox],
        dimensions: ImageDimensions | None = None,
    ) -> ConsensusBox:
        """Robust per-coordinate average, locked to one resolution.

        ``dimensions`` is the measured size of the image the detectors saw.
        Without it the resolution most candidates report wins, ties going to
        the earliest. Candidates reporting any other resolution are dropped.
        """
        if not candidates:
            raise StageFailure("All bounding box detectors failed; no candidates to aggregate.")

        if dimensions is None:
            reported = Counter((c.dimensions.width, c.dimensions.height) for c in candidates)
            width, height = reported.most_common(1)[0][0]
            dimensions = ImageDimensions(width=width, height=height)

        matching = [c for c in candidates if c.dimensions == dimensions]
        if not matching:
            raise StageFailure(
                f"No bounding box detector reported the image resolution {dimensions.width}x{dimensions.height}"
            )
        if len(matching) != len(candidates):
            logger.warning(
                "Dropping candidates with mismatched resolution",
                expected=f"{dimensions.width}x{dimensions.height}",
                dropped=len(candidates) - len(matching),
            )

        box = robust_box_mean([c.box for c in matching], self.iqr_multiplier)
        consensus = ConsensusBox(box=box, dimensions=dimensions, sample_count=len(matching))
        if consensus.area <= 0:
            raise StageFailure(f"Consensus bounding box has non-positive area: {box}")
        return consensus

    def apply_policy(self, consensus: ConsensusBox, policy: CropPolicy) -> ConsensusBox:
        if policy.mode == CropMode.FRAME:
            box = frame_box(consensus.box, consensus.dimensions, policy.expansion_percent)
        else:
            box = expand_box(consensus.box, policy.expansion_percent)

        crop = ConsensusBox(box=box, dimensions=consensus.dimensions, sample_count=consensus.sample_count)
        absolute = crop.to_absolute()
        if crop.area <= 0 or absolute.width <= 0 or absolute.height <= 0:
            raise StageFailure(
                f"Crop box has non-positive area after '{policy.mode.value}' policy: {box}"
            )
        return crop

    async def run(
        self,
        image_ref: str,
        policy: CropPolicy,
        dimensions: ImageDimensions | None = None,
    ) -> BoxConsensusResult:
        candidates, failures = await self.gather_candidates(image_ref)
        if not candidates:
            raise StageFailure(
                f"All {self.detector_count} bounding box detectors failed: " + "; ".join(failures)
            )

        logger.info(
            "Bounding box candidates collected",
            image_ref=image_ref,
            succeeded=len(candidates),
            dispatched=self.detector_count,
        )
        consensus = self.aggregate(candidates, dimensions)
        crop = self.apply_policy(consensus, policy)
        return BoxConsensusResult(consensus=consensus, crop=crop, failures=failures)
