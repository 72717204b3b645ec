# Test fixtures and configuration
import base64
import io
from typing import Any

import numpy as np
import pytest
from PIL import Image

from vton_orchestrator.config import PipelineConfig
from vton_orchestrator.errors import InputError
from vton_orchestrator.pipeline import Orchestrator
from vton_orchestrator.services.dispatcher import Dispatcher, InProcessDispatcher
from vton_orchestrator.services.store import InMemoryJobStore


def png_bytes(width: int = 100, height: int = 100, color=(200, 200, 200)) -> bytes:
    output = io.BytesIO()
    Image.new("RGB", (width, height), color).save(output, format="PNG")
    return output.getvalue()


def mask_png(width: int, height: int, fill: int = 255) -> bytes:
    """Solid grayscale mask raster."""
    output = io.BytesIO()
    Image.fromarray(np.full((height, width), fill, dtype=np.uint8)).save(output, format="PNG")
    return output.getvalue()


def segmentation(box_2d: list[float], size: int = 10) -> dict[str, Any]:
    """A segmentation worker answer covering ``box_2d`` completely."""
    return {
        "box_2d": box_2d,
        "mask": "data:image/png;base64," + base64.b64encode(mask_png(size, size)).decode(),
        "label": "garment",
    }


def detection(box: list[float], width: int = 100, height: int = 100) -> dict[str, Any]:
    return {"normalized_box": box, "original_dimensions": {"width": width, "height": height}}


class MemoryArtifacts:
    """Artifact store keeping bytes in a dict."""

    def __init__(self, initial: dict[str, bytes] | None = None):
        self.items = dict(initial or {})

    async def load(self, ref: str) -> bytes:
        if ref not in self.items:
            raise InputError(f"Artifact not found: {ref}")
        return self.items[ref]

    async def save(self, job_id: str, name: str, data: bytes) -> str:
        ref = f"{job_id}/{name}"
        self.items[ref] = data
        return ref


class ScriptedDetector:
    """Returns the scripted answers in order; exceptions are raised."""

    def __init__(self, answers: list[Any]):
        self.answers = list(answers)
        self.calls = 0

    async def detect(self, image_ref: str) -> dict[str, Any]:
        answer = self.answers[self.calls % len(self.answers)]
        self.calls += 1
        if isinstance(answer, Exception):
            raise answer
        return answer


class ScriptedSegmenter:
    def __init__(self, answers: list[Any]):
        self.answers = list(answers)
        self.calls = 0

    async def segment(self, image_ref: str, reference_ref: str | None = None) -> dict[str, Any]:
        answer = self.answers[self.calls % len(self.answers)]
        self.calls += 1
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeEngine:
    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    async def generate(self, context: dict[str, Any], count: int) -> list[bytes]:
        self.calls.append(dict(context))
        if self.fail:
            raise RuntimeError(f"{self.name} engine down")
        return [png_bytes(40, 40, (10 * i, 100, 100)) for i in range(count)]


class ScriptedEvaluator:
    """Returns verdict dicts in order; the last one repeats."""

    def __init__(self, verdicts: list[Any]):
        self.verdicts = list(verdicts)
        self.calls: list[dict[str, bool]] = []

    async def evaluate(self, reference, candidates, flags):
        self.calls.append(dict(flags))
        verdict = self.verdicts[min(len(self.calls) - 1, len(self.verdicts) - 1)]
        if isinstance(verdict, Exception):
            raise verdict
        return verdict


class RecordingDispatcher(Dispatcher):
    """Records dispatches without running anything."""

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def dispatch(self, worker: str, body: dict[str, Any]) -> None:
        self.calls.append((worker, dict(body)))

    def for_job(self, job_id: str) -> list[str]:
        return [worker for worker, body in self.calls if body.get("job_id") == job_id]


class FakePromptWriter:
    def __init__(self, prompt: str = "Keep the same person, dress them in the red dress."):
        self.prompt = prompt
        self.calls = 0
        self.contexts: list[dict[str, Any]] = []

    async def write(self, context: dict[str, Any]) -> str:
        self.calls += 1
        self.contexts.append(dict(context))
        return self.prompt


CLUSTERED_BOXES = [
    detection([100, 100, 400, 400]),
    detection([102, 98, 401, 399]),
    detection([99, 101, 398, 402]),
    detection([101, 100, 400, 401]),
    detection([900, 900, 950, 950]),
]


@pytest.fixture
def config():
    return PipelineConfig(store_backend="memory", _env_file=None)


@pytest.fixture
def person_png():
    return png_bytes(100, 100, (180, 150, 120))


@pytest.fixture
def garment_png():
    return png_bytes(60, 80, (200, 20, 20))


@pytest.fixture
def artifacts(person_png, garment_png):
    return MemoryArtifacts({"inputs/person.png": person_png, "inputs/garment.png": garment_png})


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def dispatcher():
    return InProcessDispatcher()


@pytest.fixture
def engines():
    return {"standard": FakeEngine("standard"), "pro": FakeEngine("pro")}


@pytest.fixture
def evaluator():
    return ScriptedEvaluator([{"action": "select", "chosen_index": 1, "reasoning": "looks right"}])


@pytest.fixture
def segmenter():
    return ScriptedSegmenter([segmentation([200, 200, 800, 800])])


@pytest.fixture
def detector():
    return ScriptedDetector(CLUSTERED_BOXES)


@pytest.fixture
def orchestrator(config, store, dispatcher, artifacts, detector, segmenter, engines, evaluator):
    return Orchestrator(
        config,
        store=store,
        dispatcher=dispatcher,
        artifacts=artifacts,
        detector=detector,
        segmenter=segmenter,
        engines=engines,
        evaluator=evaluator,
        prompt_writer=FakePromptWriter(),
    )


@pytest.fixture
def garment_fit_payload():
    return {
        "person_image": "inputs/person.png",
        "garment_image": "inputs/garment.png",
        "garment_description": "Red satin slip dress",
    }


@pytest.fixture
def recording():
    return RecordingDispatcher()


@pytest.fixture
def manual(config, store, recording, artifacts, detector, segmenter, engines, evaluator):
    """Orchestrator whose dispatches are only recorded, so tests drive ``advance`` by hand."""
    return Orchestrator(
        config,
        store=store,
        dispatcher=recording,
        artifacts=artifacts,
        detector=detector,
        segmenter=segmenter,
        engines=engines,
        evaluator=evaluator,
        prompt_writer=FakePromptWriter(),
    )


@pytest.fixture
def make_manual(config, store, recording, artifacts, engines, evaluator):
    """Factory for a recording orchestrator with some collaborators swapped out."""

    def build(**overrides):
        parts = {
            "detector": ScriptedDetector(CLUSTERED_BOXES),
            "segmenter": ScriptedSegmenter([segmentation([200, 200, 800, 800])]),
            "engines": engines,
            "evaluator": evaluator,
            "prompt_writer": FakePromptWriter(),
        }
        parts.update(overrides)
        return Orchestrator(config, store=store, dispatcher=recording, artifacts=artifacts, **parts)

    return build
