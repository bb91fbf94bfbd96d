"""Tests for the polling worker: cadence, rate-limit backoff, cancellation, in-flight guard."""

import asyncio

import httpx
import pytest

from mediagen.models.generation_job import GenerationJob, JobKind, JobState
from mediagen.services.generation.client import GenerationClient
from mediagen.services.generation.credentials import StaticCredentialProvider
from mediagen.workers.polling_worker import (
    PollingScheduler,
    PollOutcome,
    cadence_interval,
    rate_limit_delay,
)
from tests.support import RecordingSleep, too_many_requests, wait_for

VIDEO_URL = "https://x/y.mp4"


def succeeded(video: str = VIDEO_URL) -> dict:
    return {"status": "succeeded", "generations": [{"video": video}]}


class RecordingHandler:
    """PollHandler stub that records what the scheduler hands it."""

    def __init__(self):
        self.reports = []
        self.failures = []
        self.retries = 0

    async def handle_report(self, job, report) -> bool:
        self.reports.append(report)
        return report.status == "succeeded"

    async def handle_failure(self, job, error) -> None:
        self.failures.append(error)

    async def handle_retry(self, job) -> None:
        self.retries += 1


def test_cadence_interval_tiers(settings):
    """First interval is 10s, then 15s, then 20s once 120s have elapsed."""
    assert cadence_interval(settings, completed_polls=1, elapsed_seconds=0) == 10
    assert cadence_interval(settings, completed_polls=2, elapsed_seconds=10) == 15
    assert cadence_interval(settings, completed_polls=8, elapsed_seconds=119.9) == 15
    assert cadence_interval(settings, completed_polls=9, elapsed_seconds=120) == 20
    assert cadence_interval(settings, completed_polls=1, elapsed_seconds=300) == 20


def test_rate_limit_delay_doubles(settings):
    assert [rate_limit_delay(settings, n) for n in (1, 2, 3)] == [5, 10, 20]


@pytest.mark.asyncio
async def test_video_job_polls_until_succeeded(orchestrator, service, sleep):
    """Submit → running → succeeded 10s later (first query is immediate)."""
    service.submit_returns({"id": "job1"})
    service.status_returns({"status": "running"}, succeeded())

    job = await orchestrator.submit(JobKind.VIDEO, "a red balloon rising")
    assert job.external_job_id == "job1"

    await orchestrator.wait(job.id)

    assert job.state == JobState.SUCCEEDED
    assert job.resolved_url == VIDEO_URL
    assert job.poll_count == 2
    assert sleep.delays == [10]
    assert [r.url.path for r in service.status_requests] == ["/api/generate/video/job1"] * 2
    assert orchestrator.scheduler.active_count == 0


@pytest.mark.asyncio
async def test_cadence_slows_after_two_minutes(orchestrator, service, sleep):
    service.submit_returns({"id": "job-long"})
    service.status_returns(*[{"status": "running"}] * 11, succeeded())

    job = await orchestrator.submit(JobKind.VIDEO, "a slow sunrise")
    await orchestrator.wait(job.id)

    assert job.state == JobState.SUCCEEDED
    assert sleep.delays == [10] + [15] * 8 + [20, 20]


@pytest.mark.asyncio
async def test_rate_limit_recovers_after_three_retries(orchestrator, service, sleep):
    """Three consecutive 429s back off 5s, 10s, 20s, then the job succeeds."""
    service.submit_returns({"id": "job3"})
    service.status_returns(too_many_requests(), too_many_requests(), too_many_requests())
    service.status_returns(succeeded())

    job = await orchestrator.submit(JobKind.VIDEO, "a red balloon rising")
    await orchestrator.wait(job.id)

    assert job.state == JobState.SUCCEEDED
    assert sleep.delays == [5, 10, 20]
    assert job.retry_count == 0
    assert len(service.status_requests) == 4


@pytest.mark.asyncio
async def test_fourth_rate_limit_fails_job(orchestrator, service, sleep):
    service.submit_returns({"id": "job4"})
    service.status_returns(*[too_many_requests() for _ in range(4)])

    job = await orchestrator.submit(JobKind.VIDEO, "a red balloon rising")
    await orchestrator.wait(job.id)

    assert job.state == JobState.FAILED
    assert job.error_type == "ServiceOverloadedError"
    assert "overloaded" in job.failure_reason
    assert job.retry_count == 3
    assert job.resolved_url is None
    # No fifth query is issued
    assert len(service.status_requests) == 4
    assert sleep.delays == [5, 10, 20]


@pytest.mark.asyncio
async def test_rate_limit_counter_resets_between_bursts(orchestrator, service, sleep):
    service.submit_returns({"id": "job-burst"})
    service.status_returns(too_many_requests(), too_many_requests(), {"status": "running"})
    service.status_returns(too_many_requests(), succeeded())

    job = await orchestrator.submit(JobKind.VIDEO, "a red balloon rising")
    await orchestrator.wait(job.id)

    assert job.state == JobState.SUCCEEDED
    # After the running report the next 429 starts again at 5s
    assert sleep.delays == [5, 10, 10, 5]


@pytest.mark.asyncio
async def test_cancel_while_running_stops_queries(orchestrator, service, clock):
    blocking = RecordingSleep(clock, blocking=True)
    orchestrator.scheduler._sleep = blocking
    service.submit_returns({"id": "job5"})
    service.status_returns({"status": "running"})

    job = await orchestrator.submit(JobKind.VIDEO, "a red balloon rising")
    await wait_for(lambda: job.state == JobState.RUNNING and len(blocking.delays) == 1)

    cancelled = await orchestrator.cancel(job.id)

    assert cancelled.state == JobState.CANCELLED
    assert job.failure_reason is None
    assert not orchestrator.scheduler.is_active(job.id)

    blocking.release()
    for _ in range(10):
        await asyncio.sleep(0)

    assert len(service.status_requests) == 1
    assert job.state == JobState.CANCELLED


@pytest.mark.asyncio
async def test_non_rate_limit_error_fails_job(orchestrator, service):
    service.submit_returns({"id": "job-500"})
    service.status_returns(httpx.Response(503, json={"message": "Upstream down"}))

    job = await orchestrator.submit(JobKind.VIDEO, "a red balloon rising")
    await orchestrator.wait(job.id)

    assert job.state == JobState.FAILED
    assert job.error_type == "ServiceUnavailableError"
    assert job.failure_reason == "Upstream down"


@pytest.mark.asyncio
async def test_unrecognized_status_keeps_polling(orchestrator, service):
    service.submit_returns({"id": "job-odd"})
    service.status_returns({"status": "warming_up"}, succeeded())

    job = await orchestrator.submit(JobKind.VIDEO, "a red balloon rising")
    await orchestrator.wait(job.id)

    assert job.state == JobState.SUCCEEDED
    assert job.poll_count == 2


class GatedService:
    """Status endpoint that blocks until released."""

    def __init__(self):
        self.calls = 0
        self.release = asyncio.Event()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        await self.release.wait()
        return httpx.Response(200, json={"status": "running"})


def _submitted_job() -> GenerationJob:
    job = GenerationJob(kind=JobKind.VIDEO, prompt="a red balloon rising", params={})
    job.external_job_id = "job-gated"
    return job


def _scheduler(settings, gated: GatedService, handler: RecordingHandler) -> PollingScheduler:
    client = GenerationClient(
        "https://gen.test/api",
        StaticCredentialProvider("test-token"),
        transport=httpx.MockTransport(gated.handler),
    )
    return PollingScheduler(client, handler, settings)


@pytest.mark.asyncio
async def test_tick_is_skipped_while_query_in_flight(settings):
    gated = GatedService()
    handler = RecordingHandler()
    scheduler = _scheduler(settings, gated, handler)
    job = _submitted_job()

    first = asyncio.create_task(scheduler._tick(job))
    await wait_for(lambda: scheduler.is_in_flight(job.id))

    assert await scheduler._tick(job) is PollOutcome.SKIPPED
    assert gated.calls == 1

    gated.release.set()
    assert await first is PollOutcome.CONTINUE
    assert not scheduler.is_in_flight(job.id)
    assert job.poll_count == 1
    assert len(handler.reports) == 1


@pytest.mark.asyncio
async def test_result_arriving_after_cancel_is_discarded(settings):
    gated = GatedService()
    handler = RecordingHandler()
    scheduler = _scheduler(settings, gated, handler)
    job = _submitted_job()

    pending = asyncio.create_task(scheduler._tick(job))
    await wait_for(lambda: scheduler.is_in_flight(job.id))

    job.mark_cancelled()
    gated.release.set()

    assert await pending is PollOutcome.STOP
    assert job.state == JobState.CANCELLED
    assert job.poll_count == 0
    assert handler.reports == []


@pytest.mark.asyncio
async def test_start_rejects_job_without_remote_id(settings):
    scheduler = _scheduler(settings, GatedService(), RecordingHandler())
    job = GenerationJob(kind=JobKind.VIDEO, prompt="a red balloon rising", params={})

    with pytest.raises(ValueError):
        scheduler.start(job)
