"""pytest fixtures for mediagen tests.

Provides:
- settings: Test settings with fixed service hosts
- clock / sleep: Injected time so cadence and backoff delays are asserted exactly
- service: Scripted fake generation service
- orchestrator: GenerationOrchestrator wired to the fake service
- uow_factory: UnitOfWork factory over a temporary SQLite database
"""

import pytest
import pytest_asyncio

from mediagen.core.config import Settings
from mediagen.core.database import create_schema, setup_db_session
from mediagen.uow import create_uow_factory
from tests.support import (
    API_URL,
    MEDIA_URL,
    PUBLIC_URL,
    TOKEN,
    FakeClock,
    FakeGenerationService,
    RecordingSleep,
    build_orchestrator,
)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        APP_ENV="test",
        GENERATION_API_URL=API_URL,
        GENERATION_API_TOKEN=TOKEN,
        PUBLIC_BASE_URL=PUBLIC_URL,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest_asyncio.fixture
async def orchestrator(settings, service, clock, sleep, tmp_path):
    """Provide an in-memory orchestrator wired to the fake service."""
    orchestrator = build_orchestrator(
        settings, service, clock, sleep, tmp_path / "media", media_url=MEDIA_URL
    )
    yield orchestrator
    await orchestrator.aclose()


@pytest_asyncio.fixture
async def uow_factory(tmp_path):
    """Provide a UnitOfWork factory over a fresh SQLite database file."""
    session_factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_schema(session_factory)
    yield create_uow_factory(session_factory)
    await session_factory.kw["bind"].dispose()
