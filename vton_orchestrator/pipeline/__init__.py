from .garment_fit import GarmentFitPipeline
from .generation import GenerationPipeline
from .mask_aggregation import MaskAggregationPipeline
from .orchestrator import Orchestrator, build_orchestrator
from .state_machine import AdvanceResult, JobStateMachine
from .watchdog import Watchdog, WatchdogReport

__all__ = [
    "GarmentFitPipeline",
    "GenerationPipeline",
    "MaskAggregationPipeline",
    "Orchestrator",
    "build_orchestrator",
    "AdvanceResult",
    "JobStateMachine",
    "Watchdog",
    "WatchdogReport",
]
