"""Persistent job store.

Both implementations share the read-modify-write logic in ``JobStore``; they
only differ in where the list of jobs lives. Every mutating operation runs
under one lock, which makes ``update(expected_status=...)`` and ``claim`` atomic
with respect to each other.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

import structlog

from ..errors import JobNotFound
from ..models.job import Job, utcnow

logger = structlog.get_logger(__name__)

_UPDATABLE = {"status", "payload", "results", "metadata", "attempt_count", "error_message", "claims"}


class JobStore(ABC):
    """Status-keyed job records with conditional updates and an atomic claim."""

    def __init__(self):
        self._lock = asyncio.Lock()

    @abstractmethod
    def _read_jobs(self) -> dict[str, Job]:
        ...

    @abstractmethod
    def _write_jobs(self, jobs: dict[str, Job]) -> None:
        ...

    async def create(self, job: Job) -> Job:
        async with self._lock:
            jobs = self._read_jobs()
            if job.id in jobs:
                raise ValueError(f"Job {job.id} already exists")
            jobs[job.id] = job.model_copy(deep=True)
            self._write_jobs(jobs)
        logger.info("Job created", job_id=job.id, kind=job.kind.value, status=job.status)
        return job.model_copy(deep=True)

    async def get(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._read_jobs().get(job_id)
        return job.model_copy(deep=True) if job else None

    async def require(self, job_id: str) -> Job:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def update(
        self,
        job_id: str,
        *,
        expected_status: str | None = None,
        merge_results: dict[str, Any] | None = None,
        merge_metadata: dict[str, Any] | None = None,
        **changes: Any,
    ) -> Job | None:
        """Apply ``changes`` and bump ``updated_at``.

        With ``expected_status`` the update only happens while the record still
        has that status; ``None`` is returned when it does not. ``merge_results``
        and ``merge_metadata`` are merged key by key into the existing dicts.
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

        async with self._lock:
            jobs = self._read_jobs()
            job = jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if expected_status is not None and job.status != expected_status:
                return None

            data = job.model_dump()
            data.update(changes)
            if merge_results:
                data["results"] = {**data["results"], **merge_results}
            if merge_metadata:
                data["metadata"] = {**data["metadata"], **merge_metadata}
            data["updated_at"] = utcnow()

            updated = Job.model_validate(data)
            jobs[job_id] = updated
            self._write_jobs(jobs)
        return updated.model_copy(deep=True)

    async def claim(self, job_id: str, status: str, claim_key: str) -> bool:
        """Atomically record ``claim_key`` while the job is in ``status``.

        Returns True for exactly one caller; every later caller (or any caller
        once the job has left ``status``) gets False.
        """
        async with self._lock:
            jobs = self._read_jobs()
            job = jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status != status or claim_key in job.claims:
                return False
            jobs[job_id] = job.model_copy(
                update={"claims": [*job.claims, claim_key], "updated_at": utcnow()}
            )
            self._write_jobs(jobs)
        logger.debug("Stage claimed", job_id=job_id, claim=claim_key)
        return True

    async def find_by_metadata(self, key: str, value: Any) -> list[Job]:
        async with self._lock:
            jobs = self._read_jobs()
        return [job.model_copy(deep=True) for job in jobs.values() if job.metadata.get(key) == value]

    async def find_stalled(self, older_than: timedelta, statuses: Iterable[str] | None = None) -> list[Job]:
        """Non-terminal jobs whose last activity is older than ``older_than``."""
        cutoff: datetime = utcnow() - older_than
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            jobs = self._read_jobs()
        return [
            job.model_copy(deep=True)
            for job in jobs.values()
            if not job.is_terminal
            and job.updated_at < cutoff
            and (wanted is None or job.status in wanted)
        ]

    async def list_jobs(self) -> list[Job]:
        async with self._lock:
            jobs = self._read_jobs()
        return sorted((job.model_copy(deep=True) for job in jobs.values()), key=lambda j: j.created_at)


class InMemoryJobStore(JobStore):
    """Process-local store, used by tests and single-process runs."""

    def __init__(self):
        super().__init__()
        self._jobs: dict[str, Job] = {}

    def _read_jobs(self) -> dict[str, Job]:
        return self._jobs

    def _write_jobs(self, jobs: dict[str, Job]) -> None:
        self._jobs = jobs


class JsonFileJobStore(JobStore):
    """All jobs in one JSON file, rewritten on every change."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read_jobs(self) -> dict[str, Job]:
        content = self.path.read_text() if self.path.exists() else "[]"
        if not content.strip():
            content = "[]"
        return {item["id"]: Job.model_validate(item) for item in json.loads(content)}

    def _write_jobs(self, jobs: dict[str, Job]) -> None:
        data = [job.model_dump(mode="json") for job in jobs.values()]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(self.path)
