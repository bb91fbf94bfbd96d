"""GenerationJob entity - one tracked image/video generation request."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    """Kind of media being generated."""

    IMAGE = "image"
    VIDEO = "video"


class JobState(str, Enum):
    """Generation job lifecycle state."""

    SUBMITTED = "submitted"
    QUEUED = "queued"
    PREPROCESSING = "preprocessing"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


IN_PROGRESS_STATES = frozenset({JobState.QUEUED, JobState.PREPROCESSING, JobState.RUNNING})
TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one submitted request from submission to a terminal state.

    ``id`` is the local ledger key; ``external_job_id`` is the identifier assigned by the
    remote service and stays empty for synchronous (inline) image results.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    external_job_id: Optional[str] = Field(default=None, max_length=255, index=True)
    kind: JobKind = Field(index=True)
    prompt: str
    params: dict = Field(default_factory=dict, sa_column=Column(JSON))
    state: JobState = Field(default=JobState.SUBMITTED, index=True)
    last_status: Optional[str] = Field(default=None, max_length=50)
    submitted_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    # Polling bookkeeping
    poll_count: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)

    # Result
    result_ref: Optional[str] = Field(default=None)
    resolved_url: Optional[str] = Field(default=None)
    resolution_variant: Optional[str] = Field(default=None, max_length=50)
    tried_variants: list = Field(default_factory=list, sa_column=Column(JSON))
    fallback_attempts: int = Field(default=0, ge=0)
    playback_error: Optional[str] = Field(default=None, max_length=1000)

    # Failure
    failure_reason: Optional[str] = Field(default=None, max_length=1000)
    error_type: Optional[str] = Field(default=None, max_length=100)

    # Regenerate / modify lineage
    parent_id: Optional[UUID] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        """Wall-clock seconds since submission (frozen once the job is terminal)."""
        end = self.completed_at or now or utcnow()
        start = self.submitted_at
        # SQLite returns naive datetimes; they are stored as UTC
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        return max((end - start).total_seconds(), 0.0)

    def _ensure_not_terminal(self, target: JobState) -> None:
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark {target.value} from terminal state {self.state.value}."
            )

    def mark_in_progress(self, state: JobState, raw_status: Optional[str] = None) -> None:
        """Transition to one of the in-progress states (queued, preprocessing, running).

        Args:
            state: Target in-progress state
            raw_status: Raw status label reported by the remote service

        Raises:
            InvalidStateTransition: If the job is terminal or state is not in-progress
        """
        if state not in IN_PROGRESS_STATES:
            raise InvalidStateTransition(f"{state.value} is not an in-progress state.")
        self._ensure_not_terminal(state)
        self.state = state
        self.last_status = raw_status or state.value

    def mark_succeeded(self, resolved_url: str, variant: str) -> None:
        """Transition to succeeded with the consumer-facing URL.

        Raises:
            InvalidStateTransition: If the job is already terminal
            ValueError: If resolved_url is empty
        """
        self._ensure_not_terminal(JobState.SUCCEEDED)
        if not resolved_url:
            raise ValueError("resolved_url is required")
        self.resolved_url = resolved_url
        self.resolution_variant = variant
        self.failure_reason = None
        self.error_type = None
        self.state = JobState.SUCCEEDED
        self.last_status = JobState.SUCCEEDED.value
        self.completed_at = utcnow()

    def mark_failed(self, reason: str, error_type: str) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If the job is already terminal
        """
        self._ensure_not_terminal(JobState.FAILED)
        self.failure_reason = (reason or "Unknown error")[:1000]
        self.error_type = error_type
        self.resolved_url = None
        self.state = JobState.FAILED
        self.completed_at = utcnow()

    def mark_cancelled(self) -> None:
        """Transition from any non-terminal state to cancelled (no failure reason).

        Raises:
            InvalidStateTransition: If the job is already terminal
        """
        self._ensure_not_terminal(JobState.CANCELLED)
        self.resolved_url = None
        self.state = JobState.CANCELLED
        self.completed_at = utcnow()

    def update_resolution(self, resolved_url: str, variant: str) -> None:
        """Swap the consumer-facing URL after a playback fallback.

        Raises:
            InvalidStateTransition: If the job has not succeeded
        """
        if self.state != JobState.SUCCEEDED:
            raise InvalidStateTransition(
                f"Cannot update resolution in state {self.state.value}. "
                "Job must be in succeeded state."
            )
        if not resolved_url:
            raise ValueError("resolved_url is required")
        self.resolved_url = resolved_url
        self.resolution_variant = variant
