"""Data models for the try-on job orchestrator."""

from .job import (
    Job,
    JobKind,
    GarmentFitStatus,
    MaskAggregationStatus,
    GenerationStatus,
    TERMINAL_STATUSES,
)
from .geometry import (
    AbsoluteBox,
    CandidateBox,
    ConsensusBox,
    CropMode,
    CropPolicy,
    ImageDimensions,
)
from .mask import CandidateMask, ConsensusMask
from .verdict import CandidateAssessment, GenerationAttempt, QualityVerdict, VerdictAction

__all__ = [
    "Job",
    "JobKind",
    "GarmentFitStatus",
    "MaskAggregationStatus",
    "GenerationStatus",
    "TERMINAL_STATUSES",
    "AbsoluteBox",
    "CandidateBox",
    "ConsensusBox",
    "CropMode",
    "CropPolicy",
    "ImageDimensions",
    "CandidateMask",
    "ConsensusMask",
    "CandidateAssessment",
    "GenerationAttempt",
    "QualityVerdict",
    "VerdictAction",
]
