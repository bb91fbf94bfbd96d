"""Test doubles shared across the test suite.

- FakeClock / RecordingSleep: injected time for the polling worker
- FakeGenerationService: scripted generation service behind httpx.MockTransport
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

import httpx

from mediagen.core.config import Settings
from mediagen.models.generation_job import utcnow
from mediagen.services.generation.client import GenerationClient
from mediagen.services.generation.credentials import StaticCredentialProvider
from mediagen.services.generation.orchestrator import GenerationOrchestrator
from mediagen.services.generation.resolver import ResultResolver

API_URL = "https://gen.test/api"
PUBLIC_URL = "https://app.test"
MEDIA_URL = f"{PUBLIC_URL}/api/generations/media"
TOKEN = "test-token"

Scripted = Union[httpx.Response, dict, Callable[[httpx.Request], httpx.Response]]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Records requested delays and advances the fake clock instead of waiting.

    With ``blocking=True`` every sleep parks until release() is called.
    """

    def __init__(self, clock: FakeClock, blocking: bool = False):
        self.clock = clock
        self.blocking = blocking
        self.delays: list[float] = []
        self._released = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.clock.advance(delay)
        if self.blocking:
            await self._released.wait()
        else:
            await asyncio.sleep(0)

    def release(self) -> None:
        self.blocking = False
        self._released.set()


class FakeGenerationService:
    """Scripted generation service.

    Submissions and status queries are answered from queues (dicts become 200 JSON
    responses); any other GET is served from ``files`` by URL (404 otherwise).
    """

    def __init__(self):
        self.submissions: list[Scripted] = []
        self.statuses: list[Scripted] = []
        self.files: dict[str, httpx.Response] = {}
        self.requests: list[httpx.Request] = []

    @property
    def status_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET" and "/generate/" in r.url.path]

    @property
    def submit_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def submit_returns(self, *responses: Scripted) -> None:
        self.submissions.extend(responses)

    def status_returns(self, *responses: Scripted) -> None:
        self.statuses.extend(responses)

    def handler(self, request: httpx.Request):
        self.requests.append(request)

        if request.method == "POST":
            return self._answer(self.submissions, request)
        if "/generate/" in request.url.path:
            return self._answer(self.statuses, request)
        return self.files.get(str(request.url), httpx.Response(404, json={"error": "Not found"}))

    @staticmethod
    def _answer(queue: list[Scripted], request: httpx.Request):
        if not queue:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        scripted = queue.pop(0)
        if isinstance(scripted, dict):
            return httpx.Response(200, json=scripted)
        if callable(scripted):
            return scripted(request)
        return scripted

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def too_many_requests() -> httpx.Response:
    return httpx.Response(429, json={"error": "Too many requests"})


async def wait_for(predicate: Callable[[], bool], attempts: int = 200) -> None:
    """Yield to the event loop until predicate() holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("Condition not reached")


def build_orchestrator(
    settings: Settings,
    service: FakeGenerationService,
    clock: FakeClock,
    sleep: RecordingSleep,
    cache_dir,
    probe=None,
    ledger=None,
    media_url=None,
) -> GenerationOrchestrator:
    credentials = StaticCredentialProvider(TOKEN)
    client = GenerationClient(API_URL, credentials, transport=service.transport)
    resolver = ResultResolver(
        PUBLIC_URL,
        credentials,
        http_client=httpx.AsyncClient(transport=service.transport),
        cache_dir=cache_dir,
        media_url=media_url,
    )
    return GenerationOrchestrator(
        client, resolver, settings, ledger=ledger, probe=probe, clock=clock, sleep=sleep
    )


