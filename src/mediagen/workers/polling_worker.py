"""Polling worker for asynchronous generation jobs.

Runs one asyncio task per active job, keyed by job id. Each task queries the job's
status immediately after submission and then on a tiered cadence until the job
reaches a terminal state or is cancelled:

    after the first query        POLL_INITIAL_INTERVAL_SECONDS (10s)
    after later queries          POLL_INTERVAL_SECONDS (15s)
    once POLL_SLOW_AFTER_SECONDS (120s) have elapsed since submission
                                 POLL_SLOW_INTERVAL_SECONDS (20s)

A 429 response replaces the next tick with a single retry after
RATE_LIMIT_BASE_DELAY_SECONDS * 2^(retry_count-1) (5s, 10s, 20s). Once
RATE_LIMIT_MAX_RETRIES consecutive retries are used up, the next 429 fails the
job. Any other response resets the retry counter.

Per job, status queries are strictly sequential: a tick that finds a query still
in flight is skipped, never queued.
"""

import asyncio
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Protocol
from uuid import UUID

import structlog

from mediagen.core.config import Settings
from mediagen.models.generation_job import GenerationJob, utcnow
from mediagen.services.exceptions import (
    GenerationError,
    RateLimitedError,
    ServiceOverloadedError,
)
from mediagen.services.generation.client import GenerationClient, StatusReport

logger = structlog.get_logger(__name__)

OVERLOADED_MESSAGE = (
    "The generation service is overloaded (too many requests). Please wait before trying again."
)


class PollOutcome(Enum):
    """Result of a single polling tick."""

    CONTINUE = "continue"
    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"
    STOP = "stop"


class PollHandler(Protocol):
    """Receives the results of status queries (implemented by the orchestrator)."""

    async def handle_report(self, job: GenerationJob, report: StatusReport) -> bool:
        """Apply a status report; return True when the job became terminal."""
        ...

    async def handle_failure(self, job: GenerationJob, error: Exception) -> None: ...

    async def handle_retry(self, job: GenerationJob) -> None: ...


def cadence_interval(settings: Settings, completed_polls: int, elapsed_seconds: float) -> float:
    """Seconds until the next regular status query.

    Args:
        settings: Cadence configuration
        completed_polls: Regular queries completed so far (including the immediate one)
        elapsed_seconds: Wall-clock seconds since submission
    """
    if elapsed_seconds >= settings.poll_slow_after_seconds:
        return settings.poll_slow_interval_seconds
    if completed_polls <= 1:
        return settings.poll_initial_interval_seconds
    return settings.poll_interval_seconds


def rate_limit_delay(settings: Settings, retry_count: int) -> float:
    """Backoff before retry number ``retry_count`` (1-based)."""
    return settings.rate_limit_base_delay_seconds * 2 ** (max(retry_count, 1) - 1)


class PollingScheduler:
    """Task registry driving status queries for in-progress jobs."""

    def __init__(
        self,
        client: GenerationClient,
        handler: PollHandler,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize scheduler.

        Args:
            client: Generation service client used for status queries
            handler: Receives reports, failures and retry bookkeeping
            settings: Cadence and rate-limit configuration
            clock: Current time (used for cadence tiering)
            sleep: Awaitable delay (tests inject a recording fake)
        """
        self._client = client
        self._handler = handler
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[UUID, asyncio.Task] = {}
        self._in_flight: set[UUID] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def is_active(self, job_id: UUID) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def is_in_flight(self, job_id: UUID) -> bool:
        return job_id in self._in_flight

    def task_for(self, job_id: UUID) -> asyncio.Task | None:
        return self._tasks.get(job_id)

    def start(self, job: GenerationJob) -> asyncio.Task:
        """Start polling a submitted job.

        Raises:
            ValueError: If the job has no remote job id
            RuntimeError: If the job is already being polled
        """
        if not job.external_job_id:
            raise ValueError(f"Job {job.id} has no remote job id to poll")
        if self.is_active(job.id):
            raise RuntimeError(f"Job {job.id} is already being polled")

        task = asyncio.create_task(self._run(job), name=f"generation-poll-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(partial(self._on_done, job.id))

        logger.info(
            "generation.poll.started",
            job_id=str(job.id),
            external_job_id=job.external_job_id,
            kind=job.kind.value,
        )
        return task

    def stop(self, job_id: UUID) -> bool:
        """Stop polling a job. Returns False if it was not being polled."""
        task = self._tasks.pop(job_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel every polling task and wait for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("generation.poll.shutdown", stopped=len(tasks))

    def next_interval(self, job: GenerationJob, completed_polls: int) -> float:
        return cadence_interval(
            self._settings, completed_polls, job.elapsed_seconds(self._clock())
        )

    async def _run(self, job: GenerationJob) -> None:
        completed_polls = 0
        delay = 0.0  # first query is immediate

        try:
            while True:
                if delay > 0:
                    await self._sleep(delay)

                # Cancellation takes effect before the next tick fires
                if job.is_terminal:
                    return

                outcome = await self._tick(job)

                if outcome is PollOutcome.STOP:
                    return
                if outcome is PollOutcome.RATE_LIMITED:
                    delay = rate_limit_delay(self._settings, job.retry_count)
                    continue
                if outcome is PollOutcome.CONTINUE:
                    completed_polls += 1
                delay = self.next_interval(job, completed_polls)

        except Exception as e:
            # Unexpected error (e.g. ledger persistence) - fail the job rather than leave
            # it in-progress without a scheduler
            logger.error(
                "generation.poll.error",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            if not job.is_terminal:
                await self._handler.handle_failure(job, e)

        finally:
            if self._tasks.get(job.id) is asyncio.current_task():
                del self._tasks[job.id]

    async def _tick(self, job: GenerationJob) -> PollOutcome:
        """Issue one status query and hand the result to the handler."""
        if job.id in self._in_flight:
            logger.debug("generation.poll.skipped", job_id=str(job.id))
            return PollOutcome.SKIPPED

        report: StatusReport | None = None
        error: GenerationError | None = None

        self._in_flight.add(job.id)
        try:
            report = await self._client.query_status(job.kind, job.external_job_id)
        except GenerationError as e:
            error = e
        finally:
            self._in_flight.discard(job.id)

        # Cancelled while the query was in flight: discard the result
        if job.is_terminal:
            logger.info(
                "generation.poll.discarded",
                job_id=str(job.id),
                state=job.state.value,
            )
            return PollOutcome.STOP

        job.poll_count += 1

        if isinstance(error, RateLimitedError):
            return await self._handle_rate_limit(job, error)

        if error is not None:
            logger.error(
                "generation.poll.failed",
                job_id=str(job.id),
                error_type=type(error).__name__,
                error_message=str(error),
                status_code=getattr(error, "status_code", None),
            )
            await self._handler.handle_failure(job, error)
            return PollOutcome.STOP

        job.retry_count = 0
        terminal = await self._handler.handle_report(job, report)
        return PollOutcome.STOP if terminal else PollOutcome.CONTINUE

    async def _handle_rate_limit(self, job: GenerationJob, error: RateLimitedError) -> PollOutcome:
        max_retries = self._settings.rate_limit_max_retries

        if job.retry_count >= max_retries:
            logger.error(
                "generation.poll.rate_limit_exhausted",
                job_id=str(job.id),
                retry_count=job.retry_count,
                max_retries=max_retries,
            )
            await self._handler.handle_failure(job, ServiceOverloadedError(OVERLOADED_MESSAGE))
            return PollOutcome.STOP

        job.retry_count += 1
        logger.warning(
            "generation.poll.rate_limited",
            job_id=str(job.id),
            retry_count=job.retry_count,
            retry_in_seconds=rate_limit_delay(self._settings, job.retry_count),
            error_message=str(error),
        )
        await self._handler.handle_retry(job)
        return PollOutcome.RATE_LIMITED

    def _on_done(self, job_id: UUID, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("generation.poll.stopped", job_id=str(job_id), reason="cancelled")
            return

        exc = task.exception()
        if exc:
            logger.error(
                "generation.poll.crashed",
                job_id=str(job_id),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )
        else:
            logger.debug("generation.poll.finished", job_id=str(job_id))
