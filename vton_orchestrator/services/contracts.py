"""Interfaces of the collaborators the orchestrator consumes.

Concrete adapters live next to this module (HTTP workers, ComfyUI engine,
stores, dispatchers) and in ``vton_orchestrator.agents``. Tests substitute
in-memory fakes.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence, runtime_checkable


@runtime_checkable
class ImageDetectionWorker(Protocol):
    async def detect(self, image_ref: str) -> dict[str, Any]:
        """Return ``{"normalized_box": [4], "original_dimensions": {"width", "height"}}``."""
        ...


@runtime_checkable
class SegmentationWorker(Protocol):
    async def segment(self, image_ref: str, reference_ref: str | None = None) -> dict[str, Any]:
        """Return ``{"box_2d": [4], "mask": <base64 png>, "label": str}``."""
        ...


@runtime_checkable
class GenerationEngine(Protocol):
    name: str

    async def generate(self, context: dict[str, Any], count: int) -> list[bytes]:
        """Produce ``count`` candidate images for the given context."""
        ...


@runtime_checkable
class QualityEvaluator(Protocol):
    async def evaluate(
        self,
        reference: bytes,
        candidates: Sequence[bytes],
        flags: dict[str, bool],
    ) -> dict[str, Any]:
        """Return a raw verdict (see ``QualityGate`` for the accepted shape)."""
        ...


@runtime_checkable
class PromptWriter(Protocol):
    async def write(self, context: dict[str, Any]) -> str:
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    async def load(self, ref: str) -> bytes:
        ...

    async def save(self, job_id: str, name: str, data: bytes) -> str:
        ...
