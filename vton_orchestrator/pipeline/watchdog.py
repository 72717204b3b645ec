"""Revives jobs whose last activity is too old."""

from datetime import timedelta

import structlog
from pydantic import BaseModel, Field

from ..models.job import JobKind
from ..services.store import JobStore
from .state_machine import JobStateMachine

logger = structlog.get_logger(__name__)


class WatchdogReport(BaseModel):
    revived: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class Watchdog:
    """One sweep re-dispatches every stalled job.

    A job is stalled when it is not terminal and ``updated_at`` is older than
    ``stall_seconds``. Stages blocked on a slow engine keep ``updated_at``
    fresh through ``JobStateMachine.keep_alive``. Jobs waiting on a running
    child are left alone; the child is watched itself. After ``max_revivals``
    revivals in the same status the job is failed for good.
    """

    def __init__(
        self,
        store: JobStore,
        machines: dict[JobKind, JobStateMachine],
        stall_seconds: float = 600.0,
        max_revivals: int = 3,
    ):
        self.store = store
        self.machines = machines
        self.stall_seconds = stall_seconds
        self.max_revivals = max_revivals

    async def sweep(self) -> WatchdogReport:
        report = WatchdogReport()
        stalled = await self.store.find_stalled(timedelta(seconds=self.stall_seconds))

        for job in stalled:
            machine = self.machines[job.kind]
            child_id = machine.waiting_on(job)
            if child_id:
                child = await self.store.get(child_id)
                if child is not None and not child.is_terminal:
                    report.skipped.append(job.id)
                    continue

            revivals = job.metadata.get("watchdog_revivals") or {}
            count = revivals.get("count", 0) if revivals.get("status") == job.status else 0

            if count >= self.max_revivals:
                await machine.fail(
                    job,
                    f"Stalled in '{job.status}' after {count} watchdog revivals",
                )
                report.failed.append(job.id)
                continue

            updated = await self.store.update(
                job.id,
                expected_status=job.status,
                claims=[c for c in job.claims if not c.startswith(f"{job.status}:")],
                merge_metadata={"watchdog_revivals": {"status": job.status, "count": count + 1}},
            )
            if updated is None:
                continue

            logger.warning(
                "Reviving stalled job",
                job_id=job.id,
                kind=job.kind.value,
                status=job.status,
                revival=count + 1,
            )
            await machine.continue_job(job.id)
            report.revived.append(job.id)

        if stalled:
            logger.info(
                "Watchdog sweep finished",
                revived=len(report.revived),
                failed=len(report.failed),
                skipped=len(report.skipped),
            )
        return report
