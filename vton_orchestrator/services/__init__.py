from .artifacts import LocalArtifactStore
from .comfyui_client import ComfyUIEngine
from .contracts import (
    ArtifactStore,
    GenerationEngine,
    ImageDetectionWorker,
    PromptWriter,
    QualityEvaluator,
    SegmentationWorker,
)
from .dispatcher import Dispatcher, HttpDispatcher, InProcessDispatcher
from .http_workers import HttpDetectionWorker, HttpGenerationEngine, HttpSegmentationWorker
from .store import InMemoryJobStore, JobStore, JsonFileJobStore

__all__ = [
    "LocalArtifactStore",
    "ComfyUIEngine",
    "ArtifactStore",
    "GenerationEngine",
    "ImageDetectionWorker",
    "PromptWriter",
    "QualityEvaluator",
    "SegmentationWorker",
    "Dispatcher",
    "HttpDispatcher",
    "InProcessDispatcher",
    "HttpDetectionWorker",
    "HttpGenerationEngine",
    "HttpSegmentationWorker",
    "InMemoryJobStore",
    "JobStore",
    "JsonFileJobStore",
]
