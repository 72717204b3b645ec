"""Persisted job records and the per-kind status graphs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    GARMENT_FIT = "garment_fit"
    MASK_AGGREGATION = "mask_aggregation"
    GENERATION = "generation"


class GarmentFitStatus(str, Enum):
    PENDING_SEGMENTATION = "pending_segmentation"
    PENDING_CROP = "pending_crop"
    PENDING_PROMPT_GENERATION = "pending_prompt_generation"
    PENDING_TRYON = "pending_tryon"
    PENDING_COMPOSITE = "pending_composite"
    COMPLETE = "complete"
    FAILED = "failed"


class MaskAggregationStatus(str, Enum):
    AGGREGATING = "aggregating"
    COMPOSITING = "compositing"
    COMPLETE = "complete"
    FAILED = "failed"


class GenerationStatus(str, Enum):
    PENDING_GENERATION = "pending_generation"
    QUALITY_CHECK = "quality_check"
    COMPLETE = "complete"
    FAILED = "failed"


COMPLETE = "complete"
FAILED = "failed"
TERMINAL_STATUSES = frozenset({COMPLETE, FAILED})

INITIAL_STATUS: dict[JobKind, str] = {
    JobKind.GARMENT_FIT: GarmentFitStatus.PENDING_SEGMENTATION.value,
    JobKind.MASK_AGGREGATION: MaskAggregationStatus.AGGREGATING.value,
    JobKind.GENERATION: GenerationStatus.PENDING_GENERATION.value,
}

# Forward edges only; "failed" is reachable from every non-terminal status.
FORWARD_EDGES: dict[JobKind, dict[str, frozenset[str]]] = {
    JobKind.GARMENT_FIT: {
        "pending_segmentation": frozenset({"pending_crop"}),
        "pending_crop": frozenset({"pending_prompt_generation"}),
        "pending_prompt_generation": frozenset({"pending_tryon"}),
        "pending_tryon": frozenset({"pending_composite"}),
        "pending_composite": frozenset({"complete"}),
    },
    JobKind.MASK_AGGREGATION: {
        "aggregating": frozenset({"compositing"}),
        "compositing": frozenset({"complete"}),
    },
    JobKind.GENERATION: {
        "pending_generation": frozenset({"quality_check"}),
        "quality_check": frozenset({"complete"}),
    },
}

# The single retry back-edge; taking it must increment attempt_count.
RETRY_EDGES: dict[JobKind, tuple[str, str]] = {
    JobKind.GENERATION: ("quality_check", "pending_generation"),
}


def is_forward_edge(kind: JobKind, current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if new == FAILED:
        return True
    return new in FORWARD_EDGES[kind].get(current, frozenset())


def is_retry_edge(kind: JobKind, current: str, new: str) -> bool:
    return RETRY_EDGES.get(kind) == (current, new)


def statuses_for(kind: JobKind) -> list[str]:
    """All statuses of a kind in pipeline order."""
    enum_cls = {
        JobKind.GARMENT_FIT: GarmentFitStatus,
        JobKind.MASK_AGGREGATION: MaskAggregationStatus,
        JobKind.GENERATION: GenerationStatus,
    }[kind]
    return [member.value for member in enum_cls]


class Job(BaseModel):
    """A unit of isolation: one persisted pipeline run."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: JobKind
    status: str
    payload: dict[str, Any] = Field(default_factory=dict)
    results: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    attempt_count: int = 0
    error_message: str | None = None
    claims: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def new(
        cls,
        kind: JobKind,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> "Job":
        return cls(
            kind=kind,
            status=INITIAL_STATUS[kind],
            payload=dict(payload),
            metadata=dict(metadata or {}),
        )
