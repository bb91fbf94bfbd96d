"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
before schema creation.
"""

from mediagen.models.generation_job import (
    IN_PROGRESS_STATES,
    TERMINAL_STATES,
    GenerationJob,
    InvalidStateTransition,
    JobKind,
    JobState,
)

__all__ = [
    "GenerationJob",
    "JobKind",
    "JobState",
    "InvalidStateTransition",
    "IN_PROGRESS_STATES",
    "TERMINAL_STATES",
]
