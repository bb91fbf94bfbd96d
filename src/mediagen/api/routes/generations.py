"""Generation job API endpoints.

- POST /api/generations/{kind} - Submit an image or video generation request
- GET /api/generations - List jobs, newest first
- GET /api/generations/modifications/{kind} - Quick-modification presets for a kind
- GET /api/generations/media/{filename} - Serve a buffered copy of a result
- GET /api/generations/{job_id} - Fetch one job
- POST /api/generations/{job_id}/cancel - Stop observing a job
- POST /api/generations/{job_id}/regenerate - Re-submit a job's prompt
- POST /api/generations/{job_id}/modify - Submit a modification of a succeeded result
- POST /api/generations/{job_id}/playback-failure - Report that the resolved URL did not load
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from mediagen.api.dependencies import get_orchestrator
from mediagen.models.generation_job import GenerationJob, InvalidStateTransition, JobKind
from mediagen.services.exceptions import JobNotFoundError, PlaybackUnavailableError
from mediagen.services.generation.orchestrator import GenerationOrchestrator
from mediagen.services.generation.prompts import QUICK_MODIFICATIONS

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])

MEDIA_PATH = "/media"


# Request/Response Models


class SubmitRequest(BaseModel):
    """Request model for a new generation."""

    prompt: str = Field(..., description="Text prompt", min_length=1)
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Kind-specific parameters (image: size, quality)",
    )


class ModifyRequest(BaseModel):
    """Request model for modifying a succeeded result."""

    modification: str = Field(
        ...,
        description='Modification instruction, e.g. "Make it brighter"',
        min_length=1,
    )


class JobDTO(BaseModel):
    """Data Transfer Object for generation job information in API responses."""

    id: UUID
    external_job_id: Optional[str] = None
    kind: str
    prompt: str
    params: dict[str, Any]
    state: str = Field(
        ...,
        description="submitted, queued, preprocessing, running, succeeded, failed, cancelled",
    )
    last_status: Optional[str] = None
    submitted_at: datetime
    completed_at: Optional[datetime] = None
    elapsed_seconds: float
    poll_count: int
    retry_count: int
    resolved_url: Optional[str] = Field(
        default=None,
        description="Consumer-facing URL (set only when state is succeeded)",
    )
    resolution_variant: Optional[str] = None
    playback_error: Optional[str] = None
    failure_reason: Optional[str] = None
    error_type: Optional[str] = None
    parent_id: Optional[UUID] = None

    @classmethod
    def from_job(cls, job: GenerationJob, elapsed_seconds: float) -> "JobDTO":
        return cls(
            id=job.id,
            external_job_id=job.external_job_id,
            kind=job.kind.value,
            prompt=job.prompt,
            params=job.params,
            state=job.state.value,
            last_status=job.last_status,
            submitted_at=job.submitted_at,
            completed_at=job.completed_at,
            elapsed_seconds=elapsed_seconds,
            poll_count=job.poll_count,
            retry_count=job.retry_count,
            resolved_url=job.resolved_url,
            resolution_variant=job.resolution_variant,
            playback_error=job.playback_error,
            failure_reason=job.failure_reason,
            error_type=job.error_type,
            parent_id=job.parent_id,
        )


class JobsResponse(BaseModel):
    """Response model for the job list."""

    jobs: list[JobDTO]
    total: int


class ModificationsResponse(BaseModel):
    """Response model for the quick-modification presets of a kind."""

    kind: str
    modifications: list[str]


def _dto(orchestrator: GenerationOrchestrator, job: GenerationJob) -> JobDTO:
    return JobDTO.from_job(job, orchestrator.elapsed_seconds(job))


def _not_found(job_id: UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Generation job {job_id} not found",
    )


# API Endpoints


@router.post("/{kind}", response_model=JobDTO, status_code=status.HTTP_201_CREATED)
async def submit_generation(
    kind: JobKind,
    request: SubmitRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobDTO:
    """Submit a generation request.

    A request rejected by the generation service still creates a job (state failed,
    with failure_reason) so the caller has a single record to display.

    Raises:
        HTTPException 422: Invalid prompt or params
    """
    try:
        job = await orchestrator.submit(kind, request.prompt, request.params)
    except ValueError as e:
        logger.warning("generation.validation_error", kind=kind.value, error=str(e))
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return _dto(orchestrator, job)


@router.get("", response_model=JobsResponse)
@router.get("/", response_model=JobsResponse, include_in_schema=False)
async def list_generations(
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobsResponse:
    """List all known jobs, newest submission first."""
    jobs = orchestrator.list_jobs()
    return JobsResponse(jobs=[_dto(orchestrator, job) for job in jobs], total=len(jobs))


@router.get("/modifications/{kind}", response_model=ModificationsResponse)
async def list_modifications(kind: JobKind) -> ModificationsResponse:
    """Quick-modification presets offered for results of a kind."""
    return ModificationsResponse(kind=kind.value, modifications=list(QUICK_MODIFICATIONS[kind]))


@router.get(MEDIA_PATH + "/{filename}", response_class=FileResponse)
async def get_media(
    filename: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> FileResponse:
    """Serve a buffered copy produced by a playback fallback.

    Raises:
        HTTPException 404: Unknown, expired or malformed file name
    """
    path = orchestrator.resolver.cached_file(filename)
    if path is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")
    return FileResponse(path)


@router.get("/{job_id}", response_model=JobDTO)
async def get_generation(
    job_id: UUID,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobDTO:
    try:
        job = orchestrator.get(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    return _dto(orchestrator, job)


@router.post("/{job_id}/cancel", response_model=JobDTO)
async def cancel_generation(
    job_id: UUID,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobDTO:
    """Cancel a job. Cancelling a finished job returns it unchanged."""
    try:
        job = await orchestrator.cancel(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    return _dto(orchestrator, job)


@router.post("/{job_id}/regenerate", response_model=JobDTO, status_code=status.HTTP_201_CREATED)
async def regenerate_generation(
    job_id: UUID,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobDTO:
    """Submit the job's prompt and params again as a new job."""
    try:
        job = await orchestrator.regenerate(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    return _dto(orchestrator, job)


@router.post("/{job_id}/modify", response_model=JobDTO, status_code=status.HTTP_201_CREATED)
async def modify_generation(
    job_id: UUID,
    request: ModifyRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobDTO:
    """Submit a new job that modifies a succeeded result.

    Raises:
        HTTPException 404: Unknown job
        HTTPException 409: Source job has not succeeded
        HTTPException 422: Empty modification or resulting prompt too long
    """
    try:
        job = await orchestrator.modify(job_id, request.modification)
    except JobNotFoundError:
        raise _not_found(job_id)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return _dto(orchestrator, job)


@router.post("/{job_id}/playback-failure", response_model=JobDTO)
async def report_playback_failure(
    job_id: UUID,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JobDTO:
    """Report that the resolved URL could not be loaded.

    Returns the job with the next URL variant, or with playback_error set once no
    further variant will be tried.

    Raises:
        HTTPException 404: Unknown job
        HTTPException 409: Job has not succeeded
    """
    try:
        job = await orchestrator.report_playback_failure(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PlaybackUnavailableError as e:
        logger.info("generation.playback_unavailable", job_id=str(job_id), error=str(e))
        job = orchestrator.get(job_id)
    return _dto(orchestrator, job)
