"""GenerationJob repository.

Provides data access methods for persisted GenerationJob records.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mediagen.models.generation_job import (
    IN_PROGRESS_STATES,
    GenerationJob,
    JobState,
)


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    The in-memory ledger owns the live job objects; this repository mirrors them
    into the database so history survives restarts.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def save(self, job: GenerationJob) -> GenerationJob:
        """Insert or update a job record.

        The live object stays detached; its current field values are merged into
        the session's persistent copy.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persistent copy bound to this session
        """
        persistent = await self.session.merge(job)
        await self.session.flush()
        return persistent

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve a job by its local UUID."""
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_job_id: str) -> GenerationJob | None:
        """Retrieve a job by the identifier assigned by the generation service."""
        result = await self.session.execute(
            select(GenerationJob).where(
                GenerationJob.external_job_id == external_job_id  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 50) -> list[GenerationJob]:
        """Retrieve the most recently submitted jobs (newest first).

        Args:
            limit: Maximum number of jobs to return

        Returns:
            List of jobs ordered by submission time descending
        """
        result = await self.session.execute(
            select(GenerationJob)
            .order_by(GenerationJob.submitted_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_unfinished(self) -> list[GenerationJob]:
        """Retrieve jobs that never reached a terminal state.

        These are left behind when the process stops while polling.
        """
        unfinished = [JobState.SUBMITTED, *IN_PROGRESS_STATES]
        result = await self.session.execute(
            select(GenerationJob).where(
                GenerationJob.state.in_(unfinished)  # type: ignore[attr-defined]
            )
        )
        return list(result.scalars().all())
