"""Failure taxonomy shared by every stage.

The job record's ``status`` / ``error_message`` fields are the only channel
through which these become visible outside a stage; the state machine catches
them and persists the outcome.
"""


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class InputError(OrchestratorError):
    """Malformed or missing required fields. Never retried automatically."""


class JobNotFound(InputError):
    """No job record exists for the requested id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class WorkerFailure(OrchestratorError):
    """A single fan-out participant failed."""

    def __init__(self, worker: str, message: str):
        super().__init__(f"{worker}: {message}")
        self.worker = worker


class StageFailure(OrchestratorError):
    """A stage cannot produce its artifact; the job is marked failed."""


class EvaluatorFailure(OrchestratorError):
    """The quality evaluator errored or returned something unusable."""


class DuplicateInvocation(OrchestratorError):
    """The stage was already handled by another invocation; treated as success."""


class TransitionError(StageFailure):
    """A status change that is not an edge of the job kind's transition graph."""
