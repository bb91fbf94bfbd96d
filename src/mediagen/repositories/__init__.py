"""Repository layer for persisted generation jobs."""

from mediagen.repositories.generation_job import GenerationJobRepository

__all__ = [
    "GenerationJobRepository",
]
