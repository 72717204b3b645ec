"""Status-driven job state machine shared by every pipeline kind.

A job's status is the only source of truth for what happens next. Each
``advance`` call loads the record, runs the single stage its status names,
persists the outcome, and re-dispatches itself (or another worker) when more
work follows. Nothing loops in-process between stages, so any stage can be
retried or resumed after a crash by calling ``advance`` again.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog
from pydantic import BaseModel

from ..errors import (
    DuplicateInvocation,
    EvaluatorFailure,
    InputError,
    StageFailure,
    TransitionError,
    WorkerFailure,
)
from ..models.job import (
    COMPLETE,
    FAILED,
    Job,
    JobKind,
    is_forward_edge,
    is_retry_edge,
    statuses_for,
)
from ..services.contracts import ArtifactStore
from ..services.dispatcher import Dispatcher
from ..services.store import JobStore

logger = structlog.get_logger(__name__)

StageHandler = Callable[[Job], Awaitable[None]]


class AdvanceResult(BaseModel):
    """What one ``advance`` call observed. ``ok`` is False only when the job failed."""
    job_id: str
    kind: JobKind
    previous_status: str
    status: str
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != FAILED


class JobStateMachine:
    """Base class: subclasses set ``kind``/``worker_name`` and map statuses to stages."""

    kind: JobKind
    worker_name: str
    # (metadata key, worker) pairs: jobs whose metadata[key] == this job's id
    # get ``worker`` dispatched when this job reaches a terminal status.
    consumers: tuple[tuple[str, str], ...] = ()
    # interval at which ``keep_alive`` refreshes ``updated_at``
    heartbeat_seconds: float = 30.0

    def __init__(self, store: JobStore, dispatcher: Dispatcher, artifacts: ArtifactStore):
        self.store = store
        self.dispatcher = dispatcher
        self.artifacts = artifacts

    # -- to be provided by subclasses ---------------------------------------

    def stages(self) -> dict[str, StageHandler]:
        raise NotImplementedError

    def validate_payload(self, payload: dict[str, Any]) -> None:
        """Raise ``InputError`` when required fields are missing or malformed."""

    def waiting_on(self, job: Job) -> str | None:
        """Id of a child job this job is currently waiting for, if any."""
        return None

    # -- public operations ---------------------------------------------------

    async def create(
        self,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        dispatch: bool = True,
    ) -> str:
        """Validate, persist and (optionally) kick off a new job; returns its id."""
        if not isinstance(payload, dict):
            raise InputError("Job payload must be an object")
        self.validate_payload(payload)
        job = await self.store.create(Job.new(self.kind, payload, metadata))
        if dispatch:
            await self.continue_job(job.id)
        return job.id

    async def advance(self, job_id: str) -> AdvanceResult:
        """Run exactly the stage named by the job's current status.

        Never raises for stage faults: they are persisted on the job record.
        Only an unknown id or a job of another kind raises ``InputError``.
        """
        job = await self.store.require(job_id)
        if job.kind != self.kind:
            raise InputError(f"Job {job_id} is a {job.kind.value} job, not {self.kind.value}")

        log = logger.bind(job_id=job_id, kind=self.kind.value, status=job.status)
        previous = job.status
        if job.is_terminal:
            log.info("Job already terminal, nothing to do")
            return self._result(job, previous)

        stage = self.stages().get(job.status)
        try:
            if stage is None:
                raise StageFailure(f"No stage handles status '{job.status}'")
            await stage(job)
        except DuplicateInvocation as e:
            log.info("Duplicate invocation ignored", reason=str(e))
        except (InputError, StageFailure, WorkerFailure, EvaluatorFailure) as e:
            log.warning("Stage failed", error=str(e))
            await self.fail(job, str(e))
        except Exception as e:
            log.exception("Stage crashed")
            await self.fail(job, f"Unexpected error in '{job.status}': {e}")

        return self._result(await self.store.require(job_id), previous)

    async def resume(self, job_id: str, status: str | None = None) -> AdvanceResult:
        """Move a failed job back to ``status`` (default: where it failed) and dispatch it."""
        job = await self.store.require(job_id)
        if job.kind != self.kind:
            raise InputError(f"Job {job_id} is a {job.kind.value} job, not {self.kind.value}")
        if job.status != FAILED:
            raise InputError(f"Only failed jobs can be resumed; job {job_id} is '{job.status}'")

        target = status or job.metadata.get("failed_at_status")
        if target is None or target not in statuses_for(self.kind) or target in (COMPLETE, FAILED):
            raise InputError(f"Cannot resume job {job_id} at status {target!r}")

        metadata = self.metadata_for_resume(job, target)
        metadata.pop("watchdog_revivals", None)
        updated = await self.store.update(
            job_id,
            expected_status=FAILED,
            status=target,
            error_message=None,
            claims=[c for c in job.claims if not c.startswith(f"{target}:")],
            metadata=metadata,
        )
        if updated is None:
            raise InputError(f"Job {job_id} changed while resuming")

        logger.info("Job resumed", job_id=job_id, status=target)
        await self.continue_job(job_id)
        return self._result(updated, FAILED)

    def metadata_for_resume(self, job: Job, target: str) -> dict[str, Any]:
        return dict(job.metadata)

    # -- helpers for stages --------------------------------------------------

    async def transition(
        self,
        job: Job,
        new_status: str,
        *,
        retry: bool = False,
        results: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        **changes: Any,
    ) -> Job:
        """Persist ``new_status`` if the job is still where this stage found it.

        Raises ``TransitionError`` for an edge outside the kind's graph and
        ``DuplicateInvocation`` when another invocation already moved the job.
        """
        if retry:
            if not is_retry_edge(self.kind, job.status, new_status):
                raise TransitionError(f"'{job.status}' -> '{new_status}' is not a retry edge")
            if changes.setdefault("attempt_count", job.attempt_count + 1) != job.attempt_count + 1:
                raise TransitionError("A retry must increment attempt_count by exactly one")
        elif not is_forward_edge(self.kind, job.status, new_status):
            raise TransitionError(f"Illegal transition '{job.status}' -> '{new_status}'")

        updated = await self.store.update(
            job.id,
            expected_status=job.status,
            status=new_status,
            merge_results=results,
            merge_metadata=metadata,
            **changes,
        )
        if updated is None:
            raise DuplicateInvocation(f"Job {job.id} already left '{job.status}'")

        logger.info(
            "Job transitioned",
            job_id=job.id,
            kind=self.kind.value,
            previous_status=job.status,
            status=new_status,
            attempt_count=updated.attempt_count,
        )
        if updated.is_terminal:
            await self.notify_consumers(updated)
        return updated

    async def fail(self, job: Job, message: str) -> None:
        """Persist ``failed`` unless another invocation moved the job meanwhile."""
        updated = await self.store.update(
            job.id,
            expected_status=job.status,
            status=FAILED,
            error_message=message,
            merge_metadata={"failed_at_status": job.status},
        )
        if updated is None:
            logger.warning("Job moved before failure could be recorded", job_id=job.id, error=message)
            return
        await self.notify_consumers(updated)

    async def claim(self, job: Job, name: str) -> None:
        """At-most-once entry into a section of the current stage."""
        if not await self.store.claim(job.id, job.status, f"{job.status}:{name}"):
            raise DuplicateInvocation(f"'{job.status}:{name}' already claimed for job {job.id}")

    @asynccontextmanager
    async def keep_alive(self, job: Job) -> AsyncIterator[None]:
        """Refresh the job's ``updated_at`` while a long call runs.

        The watchdog only sees persisted activity, so a stage that waits on a
        slow collaborator beats every ``heartbeat_seconds`` while it is in the
        same status. If the process dies the beats stop and the job stalls.
        """
        async def beat():
            while True:
                await asyncio.sleep(self.heartbeat_seconds)
                if await self.store.update(job.id, expected_status=job.status) is None:
                    return

        await self.store.update(job.id, expected_status=job.status)
        task = asyncio.create_task(beat())
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def continue_job(self, job_id: str) -> None:
        await self.dispatcher.dispatch(self.worker_name, {"job_id": job_id})

    async def notify_consumers(self, job: Job) -> None:
        for key, worker in self.consumers:
            for consumer in await self.store.find_by_metadata(key, job.id):
                if consumer.is_terminal:
                    continue
                logger.info(
                    "Notifying consumer",
                    job_id=job.id,
                    consumer_id=consumer.id,
                    worker=worker,
                    status=job.status,
                )
                await self.dispatcher.dispatch(worker, {"job_id": consumer.id})

    def _result(self, job: Job, previous: str) -> AdvanceResult:
        return AdvanceResult(
            job_id=job.id,
            kind=job.kind,
            previous_status=previous,
            status=job.status,
            error_message=job.error_message,
        )
