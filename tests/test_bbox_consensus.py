"""Tests for robust averaging and bounding box consensus."""

import pytest

from conftest import CLUSTERED_BOXES, ScriptedDetector, detection
from vton_orchestrator.consensus.bbox import BBoxConsensus, expand_box, frame_box, parse_detection
from vton_orchestrator.consensus.statistics import robust_box_mean, robust_mean
from vton_orchestrator.errors import StageFailure, WorkerFailure
from vton_orchestrator.models.geometry import CandidateBox, CropMode, CropPolicy, ImageDimensions


class TestRobustMean:
    """Tests for the IQR-filtered mean."""

    def test_single_outlier_is_excluded(self):
        """[10,10,10,10,90] averages to 10, not 26."""
        assert robust_mean([10, 10, 10, 10, 90]) == pytest.approx(10.0)

    @pytest.mark.parametrize("values", [[42.0], [10.0, 30.0]])
    def test_small_samples_use_plain_mean(self, values):
        assert robust_mean(values) == pytest.approx(sum(values) / len(values))

    @pytest.mark.parametrize("values", [
        [1, 2, 3],
        [5, 5, 5, 5],
        [0, 1000, 500, 250, 750],
        [100, 101, 99, 100, 900, 950],
        [3.5, 2.25, 8.0, 1.0],
    ])
    def test_result_within_input_range(self, values):
        result = robust_mean(values)
        assert min(values) <= result <= max(values)

    def test_empty_input_rejected(self):
        with pytest.raises(ValueError):
            robust_mean([])

    def test_coordinates_are_independent(self):
        """An outlier in one column does not move the others."""
        boxes = [[100, 100, 400, 400]] * 4 + [[100, 100, 400, 990]]
        assert robust_box_mean(boxes) == pytest.approx([100, 100, 400, 400])

    def test_box_shape_validated(self):
        with pytest.raises(ValueError):
            robust_box_mean([[1, 2, 3]])


class TestParseDetection:
    def test_accepts_legacy_key(self):
        candidate = parse_detection(
            {"normalized_bounding_box": [1, 2, 3, 4], "original_dimensions": {"width": 10, "height": 20}},
            "detector-0",
        )
        assert candidate.box == [1, 2, 3, 4]
        assert candidate.dimensions.height == 20

    @pytest.mark.parametrize("raw", [
        {},
        {"normalized_box": [1, 2, 3, 4]},
        {"normalized_box": [1, 2, 3], "original_dimensions": {"width": 10, "height": 10}},
        {"normalized_box": [1, 2, 3, 4000], "original_dimensions": {"width": 10, "height": 10}},
        "not an object",
    ])
    def test_malformed_detection_is_worker_failure(self, raw):
        with pytest.raises(WorkerFailure):
            parse_detection(raw, "detector-3")


class TestCropPolicies:
    """Tests for expand and frame modes."""

    def test_expand_pads_by_extent(self):
        assert expand_box([100, 100, 400, 400], 0.10) == pytest.approx([70, 70, 430, 430])

    def test_expand_clips_to_bounds(self):
        assert expand_box([10, 0, 990, 500], 0.10) == pytest.approx([0, 0, 1000, 550])

    def test_frame_matches_image_aspect(self):
        dims = ImageDimensions(width=200, height=100)
        box = frame_box([100, 400, 900, 600], dims, 0.0)
        width_px = (box[3] - box[1]) / 1000 * dims.width
        height_px = (box[2] - box[0]) / 1000 * dims.height
        assert width_px / height_px == pytest.approx(dims.aspect_ratio)
        assert box == pytest.approx([100, 100, 900, 900])

    def test_frame_applies_expansion(self):
        dims = ImageDimensions(width=200, height=100)
        assert frame_box([100, 400, 900, 600], dims, 0.10) == pytest.approx([20, 20, 980, 980])

    def test_frame_shifts_back_inside_image(self):
        """Area clipped at the left edge is gained on the right."""
        dims = ImageDimensions(width=200, height=100)
        box = frame_box([400, 0, 600, 100], dims, 0.0)
        assert box == pytest.approx([400, 0, 600, 200])

    def test_frame_encloses_subject(self):
        dims = ImageDimensions(width=300, height=400)
        subject = [250, 100, 700, 400]
        box = frame_box(subject, dims, 0.05)
        assert box[0] <= subject[0] and box[1] <= subject[1]
        assert box[2] >= subject[2] and box[3] >= subject[3]


class TestBBoxConsensus:
    """Tests for the detector fan-out."""

    @pytest.mark.asyncio
    async def test_outlier_detector_excluded(self):
        consensus = BBoxConsensus(ScriptedDetector(CLUSTERED_BOXES))
        result = await consensus.run("person.png", CropPolicy(mode=CropMode.EXPAND, expansion_percent=0.0))

        assert result.consensus.sample_count == 5
        assert result.consensus.box == pytest.approx([100, 100, 400, 400], abs=1.0)
        assert result.crop.box == pytest.approx(result.consensus.box)
        assert result.failures == []

    @pytest.mark.asyncio
    async def test_each_coordinate_within_input_range(self):
        consensus = BBoxConsensus(ScriptedDetector(CLUSTERED_BOXES))
        candidates, _ = await consensus.gather_candidates("person.png")
        box = consensus.aggregate(candidates).box
        for i in range(4):
            values = [c.box[i] for c in candidates]
            assert min(values) <= box[i] <= max(values)

    @pytest.mark.asyncio
    async def test_partial_failure_tolerated(self):
        detector = ScriptedDetector([
            detection([100, 100, 400, 400]),
            RuntimeError("timeout"),
            RuntimeError("timeout"),
            {"garbage": True},
            RuntimeError("timeout"),
        ])
        result = await BBoxConsensus(detector).run("person.png", CropPolicy(expansion_percent=0.0))

        assert result.consensus.box == pytest.approx([100, 100, 400, 400])
        assert result.consensus.sample_count == 1
        assert len(result.failures) == 4

    @pytest.mark.asyncio
    async def test_all_detectors_failing_fails_stage(self):
        detector = ScriptedDetector([RuntimeError("down")])
        with pytest.raises(StageFailure, match="All 5 bounding box detectors failed"):
            await BBoxConsensus(detector).run("person.png", CropPolicy())
        assert detector.calls == 5

    def test_mismatched_resolution_dropped(self):
        dims = ImageDimensions(width=100, height=100)
        other = ImageDimensions(width=50, height=50)
        candidates = [
            CandidateBox(box=[100, 100, 400, 400], detector="d0", dimensions=dims),
            CandidateBox(box=[100, 100, 400, 400], detector="d1", dimensions=dims),
            CandidateBox(box=[500, 500, 900, 900], detector="d2", dimensions=other),
        ]
        consensus = BBoxConsensus(ScriptedDetector([None])).aggregate(candidates)
        assert consensus.dimensions == dims
        assert consensus.sample_count == 2
        assert consensus.box == pytest.approx([100, 100, 400, 400])

    def test_majority_resolution_beats_first_reported(self):
        dims = ImageDimensions(width=100, height=100)
        other = ImageDimensions(width=50, height=50)
        candidates = [CandidateBox(box=[500, 500, 900, 900], detector="d0", dimensions=other)] + [
            CandidateBox(box=[100, 100, 400, 400], detector=f"d{i}", dimensions=dims) for i in range(1, 5)
        ]
        consensus = BBoxConsensus(ScriptedDetector([None])).aggregate(candidates)
        assert consensus.dimensions == dims
        assert consensus.sample_count == 4
        assert consensus.box == pytest.approx([100, 100, 400, 400])

    def test_measured_resolution_wins_over_majority(self):
        measured = ImageDimensions(width=200, height=100)
        other = ImageDimensions(width=100, height=100)
        candidates = [
            CandidateBox(box=[100, 100, 400, 400], detector="d0", dimensions=other),
            CandidateBox(box=[100, 100, 400, 400], detector="d1", dimensions=other),
            CandidateBox(box=[200, 200, 600, 600], detector="d2", dimensions=measured),
        ]
        consensus = BBoxConsensus(ScriptedDetector([None])).aggregate(candidates, measured)
        assert consensus.dimensions == measured
        assert consensus.sample_count == 1
        assert consensus.box == pytest.approx([200, 200, 600, 600])

    def test_no_candidate_at_measured_resolution_fails(self):
        candidates = [
            CandidateBox(box=[100, 100, 400, 400], detector="d0", dimensions=ImageDimensions(width=50, height=50)),
        ]
        with pytest.raises(StageFailure, match="image resolution 100x100"):
            BBoxConsensus(ScriptedDetector([None])).aggregate(candidates, ImageDimensions(width=100, height=100))

    def test_zero_area_consensus_fails(self):
        dims = ImageDimensions(width=100, height=100)
        candidates = [CandidateBox(box=[100, 100, 100, 400], detector="d0", dimensions=dims)]
        with pytest.raises(StageFailure, match="non-positive area"):
            BBoxConsensus(ScriptedDetector([None])).aggregate(candidates)

    def test_absolute_box(self):
        dims = ImageDimensions(width=200, height=100)
        candidates = [CandidateBox(box=[100, 250, 500, 750], detector="d0", dimensions=dims)]
        absolute = BBoxConsensus(ScriptedDetector([None])).aggregate(candidates).to_absolute()
        assert (absolute.x, absolute.y, absolute.width, absolute.height) == (50, 10, 100, 40)
