"""Generation orchestrator - submission, completion and cancellation of jobs.

Submission yields either an inline artifact (synchronous image results, resolved
immediately) or a remote job id handed to the polling worker. Every status report
is classified into a JobState; terminal success runs the result resolver, whose
URL is stored on the job. All mutations of a job go through its state transition
methods and are recorded in the Job Ledger.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import httpx
import structlog

from mediagen.core.config import Settings
from mediagen.models.generation_job import (
    IN_PROGRESS_STATES,
    GenerationJob,
    InvalidStateTransition,
    JobKind,
    JobState,
    utcnow,
)
from mediagen.services.exceptions import (
    MissingArtifactError,
    PlaybackUnavailableError,
    SubmissionError,
    TerminalFailure,
)
from mediagen.services.generation.client import GenerationClient, InlineResult, StatusReport
from mediagen.services.generation.credentials import StaticCredentialProvider
from mediagen.services.generation.ledger import JobLedger
from mediagen.services.generation.prompts import (
    build_modify_prompt,
    validate_params,
    validate_prompt,
)
from mediagen.services.generation.resolver import (
    ArtifactReference,
    HttpPlaybackProbe,
    PlaybackProbe,
    ResolvedArtifact,
    ResultResolver,
    build_strategies,
)
from mediagen.services.generation.status import classify_status
from mediagen.workers.polling_worker import PollingScheduler

logger = structlog.get_logger(__name__)

PLAYBACK_EXHAUSTED_MESSAGE = (
    "The generation completed but the result could not be played. "
    "Try downloading it or regenerating."
)


class GenerationOrchestrator:
    """Coordinates the client, polling worker, resolver and ledger for all jobs."""

    def __init__(
        self,
        client: GenerationClient,
        resolver: ResultResolver,
        settings: Settings,
        ledger: Optional[JobLedger] = None,
        probe: Optional[PlaybackProbe] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize orchestrator.

        Args:
            client: Generation service client
            resolver: Result resolver for succeeded jobs
            settings: Application settings
            ledger: Job ledger (default: in-memory only)
            probe: Optional check that a resolved URL is loadable before success
            clock: Current time source
            sleep: Awaitable delay used by the polling worker
        """
        self.client = client
        self.resolver = resolver
        self.settings = settings
        self.ledger = ledger if ledger is not None else JobLedger()
        self.probe = probe
        self._clock = clock
        self.scheduler = PollingScheduler(client, self, settings, clock=clock, sleep=sleep)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        ledger: Optional[JobLedger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        media_url: Optional[str] = None,
    ) -> "GenerationOrchestrator":
        """Build an orchestrator with the default client, resolver and probe.

        ``media_url`` is the absolute URL under which the HTTP API serves buffered
        copies; the CLI leaves it unset and gets local file URIs.
        """
        credentials = StaticCredentialProvider(settings.generation_api_token)
        client = GenerationClient(
            base_url=settings.generation_api_url,
            credential_provider=credentials,
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )
        http = httpx.AsyncClient(timeout=settings.request_timeout_seconds, transport=transport)
        resolver = ResultResolver(
            base_url=settings.public_base_url,
            credential_provider=credentials,
            strategies=build_strategies(settings.resolver_strategy_names),
            http_client=http,
            cache_dir=settings.media_cache_dir,
            media_url=media_url,
            cache_max_age_seconds=settings.media_cache_max_age_seconds,
        )
        probe = HttpPlaybackProbe(http) if settings.verify_playback else None
        return cls(client, resolver, settings, ledger=ledger, probe=probe)

    async def aclose(self) -> None:
        """Stop all polling and close HTTP clients."""
        await self.scheduler.shutdown()
        await self.client.aclose()
        await self.resolver.aclose()

    # Queries

    def get(self, job_id: UUID) -> GenerationJob:
        return self.ledger.get(job_id)

    def list_jobs(self) -> list[GenerationJob]:
        return self.ledger.list_jobs()

    def elapsed_seconds(self, job: GenerationJob) -> float:
        return job.elapsed_seconds(self._clock())

    async def wait(self, job_id: UUID, timeout: Optional[float] = None) -> GenerationJob:
        """Wait until the job's polling task finishes (or the timeout passes)."""
        job = self.ledger.get(job_id)
        task = self.scheduler.task_for(job.id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return job

    # Commands

    async def submit(
        self,
        kind: JobKind | str,
        prompt: str,
        params: Optional[dict[str, Any]] = None,
        parent_id: Optional[UUID] = None,
    ) -> GenerationJob:
        """Submit a generation request and start tracking it.

        A rejected submission still produces a job record (state failed) so the
        presentation layer shows a single error entry.

        Raises:
            ValueError: On an unknown kind or invalid prompt/params (no job is created)
        """
        kind = JobKind(kind)
        prompt = validate_prompt(prompt, self.settings.max_prompt_length)
        params = validate_params(kind, params)

        job = GenerationJob(
            kind=kind,
            prompt=prompt,
            params=params,
            submitted_at=self._clock(),
            parent_id=parent_id,
        )
        await self.ledger.save(job)

        logger.info(
            "generation.job.submitted",
            job_id=str(job.id),
            kind=kind.value,
            prompt_length=len(prompt),
            params=params,
            parent_id=str(parent_id) if parent_id else None,
        )

        try:
            outcome = await self.client.submit(kind, prompt, params)
        except SubmissionError as e:
            await self._fail(job, e)
            return job

        # Cancelled while the submission was in flight
        if job.is_terminal:
            logger.info("generation.job.submission_discarded", job_id=str(job.id))
            return job

        if isinstance(outcome, InlineResult):
            logger.info("generation.job.inline_result", job_id=str(job.id))
            await self._complete(job, outcome.as_report())
            return job

        job.external_job_id = outcome.job_id
        await self.ledger.save(job)
        self.scheduler.start(job)
        return job

    async def cancel(self, job_id: UUID) -> GenerationJob:
        """Stop observing a job and mark it cancelled.

        Idempotent: cancelling a terminal job is a no-op. The remote job may keep
        running server-side.
        """
        job = self.ledger.get(job_id)
        if job.is_terminal:
            logger.debug("generation.job.cancel_ignored", job_id=str(job.id), state=job.state.value)
            return job

        self.scheduler.stop(job.id)
        job.mark_cancelled()
        await self.ledger.save(job)

        logger.info(
            "generation.job.cancelled",
            job_id=str(job.id),
            cancelled_by="user",
            elapsed_seconds=self.elapsed_seconds(job),
        )
        return job

    async def regenerate(self, job_id: UUID) -> GenerationJob:
        """Re-submit a job's prompt and params as a new job."""
        source = self.ledger.get(job_id)
        return await self.submit(
            source.kind, source.prompt, dict(source.params), parent_id=source.id
        )

    async def modify(self, job_id: UUID, modification: str) -> GenerationJob:
        """Submit a new job whose prompt references a succeeded result.

        Raises:
            InvalidStateTransition: If the source job has not succeeded
            ValueError: If the modification is empty
        """
        source = self.ledger.get(job_id)
        if source.state != JobState.SUCCEEDED:
            raise InvalidStateTransition(
                f"Cannot modify a job in state {source.state.value}. "
                "Job must be in succeeded state."
            )
        prompt = build_modify_prompt(source.kind, source.prompt, modification)
        return await self.submit(source.kind, prompt, dict(source.params), parent_id=source.id)

    async def report_playback_failure(self, job_id: UUID) -> GenerationJob:
        """Handle a consumer that could not load the resolved URL.

        The first report swaps to the next URL variant; once the fallback budget is
        spent the failure is surfaced instead of retried.

        Raises:
            InvalidStateTransition: If the job has not succeeded
            PlaybackUnavailableError: If no further variant will be attempted
        """
        job = self.ledger.get(job_id)
        if job.state != JobState.SUCCEEDED:
            raise InvalidStateTransition(
                f"Cannot report playback for a job in state {job.state.value}. "
                "Job must be in succeeded state."
            )

        if job.fallback_attempts >= self.settings.max_playback_fallbacks:
            error = PlaybackUnavailableError(
                PLAYBACK_EXHAUSTED_MESSAGE, variant=job.resolution_variant
            )
            job.playback_error = str(error)
            await self.ledger.save(job)
            logger.warning(
                "generation.resolution.exhausted",
                job_id=str(job.id),
                tried_variants=job.tried_variants,
            )
            raise error

        ref = self.resolver.reference_for(job.result_ref or "")
        tried = list(job.tried_variants) or [job.resolution_variant]
        job.fallback_attempts += 1

        try:
            resolved = await self.resolver.resolve(ref, tried=tried)
        except PlaybackUnavailableError as e:
            if e.variant:
                tried.append(e.variant)
            job.tried_variants = tried
            job.playback_error = str(e)
            await self.ledger.save(job)
            raise

        job.tried_variants = [*tried, resolved.variant.value]
        job.update_resolution(resolved.url, resolved.variant.value)
        await self.ledger.save(job)

        logger.info(
            "generation.resolution.fallback",
            job_id=str(job.id),
            variant=resolved.variant.value,
            tried_variants=job.tried_variants,
        )
        return job

    # Polling handler

    async def handle_report(self, job: GenerationJob, report: StatusReport) -> bool:
        """Apply a status report to the job; return True when it became terminal."""
        state = classify_status(report.status)

        if state in IN_PROGRESS_STATES:
            job.mark_in_progress(state, report.status)
            await self.ledger.save(job)
            logger.info(
                "generation.poll.status",
                job_id=str(job.id),
                status=report.status,
                state=state.value,
                poll_count=job.poll_count,
                elapsed_seconds=self.elapsed_seconds(job),
            )
            return False

        if state == JobState.SUCCEEDED:
            await self._complete(job, report)
        elif state == JobState.FAILED:
            await self._fail(job, TerminalFailure(report.failure_reason or "Unknown error"))
        else:
            job.mark_cancelled()
            job.last_status = report.status
            await self.ledger.save(job)
            logger.info(
                "generation.job.cancelled",
                job_id=str(job.id),
                cancelled_by="service",
                elapsed_seconds=self.elapsed_seconds(job),
            )
        return True

    async def handle_failure(self, job: GenerationJob, error: Exception) -> None:
        await self._fail(job, error)

    async def handle_retry(self, job: GenerationJob) -> None:
        await self.ledger.save(job)

    # Internals

    async def _fail(self, job: GenerationJob, error: Exception) -> None:
        if job.is_terminal:
            return

        job.mark_failed(str(error), type(error).__name__)
        await self.ledger.save(job)

        logger.error(
            "generation.job.failed",
            job_id=str(job.id),
            kind=job.kind.value,
            error_type=job.error_type,
            error_message=job.failure_reason,
            elapsed_seconds=self.elapsed_seconds(job),
        )

    async def _complete(self, job: GenerationJob, report: StatusReport) -> None:
        """Resolve the artifact of a succeeded report and mark the job succeeded."""
        try:
            ref = self.resolver.extract(report, job.kind)
        except MissingArtifactError as e:
            await self._fail(job, e)
            return

        job.result_ref = ref.value

        try:
            resolved = await self._resolve_playable(job, ref)
        except PlaybackUnavailableError as e:
            await self._fail(job, e)
            return

        # Cancelled while resolving
        if job.is_terminal:
            return

        job.mark_succeeded(resolved.url, resolved.variant.value)
        await self.ledger.save(job)

        logger.info(
            "generation.job.succeeded",
            job_id=str(job.id),
            kind=job.kind.value,
            artifact_source=ref.source.value,
            variant=resolved.variant.value,
            poll_count=job.poll_count,
            duration_seconds=self.elapsed_seconds(job),
        )

    async def _resolve_playable(
        self, job: GenerationJob, ref: ArtifactReference
    ) -> ResolvedArtifact:
        """Resolve a URL, escalating at most MAX_PLAYBACK_FALLBACKS times on rejection."""
        tried: list[str] = []
        last_error: Optional[PlaybackUnavailableError] = None

        for _ in range(self.settings.max_playback_fallbacks + 1):
            try:
                resolved = await self.resolver.resolve(ref, tried=tried)
            except PlaybackUnavailableError as e:
                if e.variant is None:
                    last_error = e
                    break
                tried.append(e.variant)
                last_error = e
                continue

            tried.append(resolved.variant.value)
            if self.probe is None or await self.probe(resolved):
                job.tried_variants = list(tried)
                job.fallback_attempts = len(tried) - 1
                return resolved

            logger.warning(
                "generation.resolution.rejected",
                job_id=str(job.id),
                variant=resolved.variant.value,
            )
            last_error = PlaybackUnavailableError(
                f"URL variant {resolved.variant.value} was rejected", variant=resolved.variant.value
            )

        job.tried_variants = list(tried)
        job.fallback_attempts = max(len(tried) - 1, 0)
        raise PlaybackUnavailableError(PLAYBACK_EXHAUSTED_MESSAGE) from last_error
