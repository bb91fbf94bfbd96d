"""Job Ledger - current GenerationJob record per job key.

The in-memory mapping is authoritative for the running process. When a UnitOfWork
factory is configured, every save is written through to the database so job
history survives restarts (polling does not resume; see recover_interrupted_jobs).
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

from mediagen.models.generation_job import GenerationJob
from mediagen.services.exceptions import JobNotFoundError
from mediagen.uow import UnitOfWork

logger = structlog.get_logger(__name__)

INTERRUPTED_REASON = "Polling was interrupted before the job finished"


def _submitted_at(job: GenerationJob) -> datetime:
    # SQLite returns naive datetimes; they are stored as UTC
    if job.submitted_at.tzinfo is None:
        return job.submitted_at.replace(tzinfo=timezone.utc)
    return job.submitted_at


class JobLedger:
    """Mapping from job key to the live GenerationJob record."""

    def __init__(self, uow_factory: Optional[Callable[[], Awaitable[UnitOfWork]]] = None):
        """Initialize ledger.

        Args:
            uow_factory: Optional UnitOfWork factory for write-through persistence
        """
        self._jobs: dict[UUID, GenerationJob] = {}
        self._uow_factory = uow_factory

    @property
    def persistent(self) -> bool:
        return self._uow_factory is not None

    def __contains__(self, job_id: UUID) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, job_id: UUID) -> GenerationJob:
        """Return the live job record.

        Raises:
            JobNotFoundError: If no job with this key exists
        """
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(f"Generation job {job_id} not found") from None

    def list_jobs(self) -> list[GenerationJob]:
        """All jobs, newest submission first."""
        return sorted(self._jobs.values(), key=_submitted_at, reverse=True)

    async def save(self, job: GenerationJob) -> GenerationJob:
        """Record the job's current state (and persist it when configured)."""
        self._jobs[job.id] = job
        if self._uow_factory is not None:
            async with await self._uow_factory() as uow:
                await uow.generation_jobs.save(job)
        return job

    async def load_recent(self, limit: int = 50) -> int:
        """Populate the in-memory ledger with persisted jobs for display.

        Returns:
            Number of jobs loaded
        """
        if self._uow_factory is None:
            return 0

        async with await self._uow_factory() as uow:
            jobs = await uow.generation_jobs.list_recent(limit=limit)

        loaded = 0
        for job in jobs:
            if job.id not in self._jobs:
                self._jobs[job.id] = job
                loaded += 1

        logger.info("ledger.loaded", loaded=loaded)
        return loaded

    async def recover_interrupted_jobs(self) -> int:
        """Fail persisted jobs left non-terminal by a previous process.

        Polling does not resume after a restart, so these jobs would otherwise stay
        in-progress forever without a scheduler.

        Returns:
            Number of jobs marked failed
        """
        if self._uow_factory is None:
            return 0

        async with await self._uow_factory() as uow:
            unfinished = await uow.generation_jobs.get_unfinished()
            for job in unfinished:
                job.mark_failed(INTERRUPTED_REASON, "InterruptedError")

        if unfinished:
            logger.info("ledger.recovery", interrupted_jobs_failed=len(unfinished))
        return len(unfinished)
