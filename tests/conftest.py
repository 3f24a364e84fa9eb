"""Test configuration for importing the application package."""

from __future__ import annotations

import os
import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

# Keep the background loop and any real database out of unit tests.
os.environ["ENHANCE_DISPATCHER_ENABLED"] = "0"
os.environ.pop("ENHANCE_PG_DSN", None)
os.environ.pop("DATABASE_URL", None)

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.ai.gateway import ProviderGateway  # noqa: E402
from app.ai.providers import MockProvider  # noqa: E402
from app.config import Settings, get_settings  # noqa: E402
from app.core.database import configure_sqlite, create_schema  # noqa: E402
from app.jobs.models import SUBMIT_ENHANCEMENT, JobRecord, SideEffectSpec  # noqa: E402
from app.jobs.state_machine import JobStateMachine  # noqa: E402
from app.services.runtime import EngineRuntime, build_runtime  # noqa: E402
from app.storage.postgres_jobs_repo import PostgresJobsRepository  # noqa: E402
from app.storage.postgres_outbox_repo import PostgresOutboxRepository  # noqa: E402
from app.telemetry.metrics import EngineMetrics  # noqa: E402
from app.utils.clock import utcnow  # noqa: E402
from app.utils.ids import generate_job_id  # noqa: E402

CALLBACK_SECRET = "callback-test-secret"
TASK_SECRET = "task-test-secret"


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
async def db_engine(tmp_path: Path):
  # A file database lets separate connections contend for the write lock like real writers do.
  engine = configure_sqlite(create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}"))
  await create_schema(engine)
  yield engine
  await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def metrics() -> EngineMetrics:
  return EngineMetrics()


@pytest.fixture
def state_machine(session_factory, metrics) -> JobStateMachine:
  return JobStateMachine(session_factory, metrics=metrics)


@pytest.fixture
def jobs_repo(session_factory) -> PostgresJobsRepository:
  return PostgresJobsRepository(session_factory)


@pytest.fixture
def outbox_repo(session_factory) -> PostgresOutboxRepository:
  return PostgresOutboxRepository(session_factory)


@pytest.fixture
def mock_provider() -> MockProvider:
  return MockProvider()


@pytest.fixture
def gateway(mock_provider, metrics) -> ProviderGateway:
  return ProviderGateway({"mock": mock_provider}, default_timeout=5.0, max_timeout=10.0, retries=0, retry_delay=0.0, app_url="https://app.example.test", metrics=metrics)


@pytest.fixture
def settings() -> Settings:
  get_settings.cache_clear()
  return replace(get_settings(), callback_secret=CALLBACK_SECRET, task_secret=TASK_SECRET, app_url="https://app.example.test", provider_retries=0, outbox_base_delay_seconds=0.01, outbox_max_delay_seconds=0.05)


@pytest.fixture
def runtime(settings, session_factory, mock_provider, metrics) -> EngineRuntime:
  return build_runtime(settings, session_factory=session_factory, providers={"mock": mock_provider}, metrics=metrics)


@pytest.fixture
async def async_client(runtime):
  from app.main import app

  app.state.runtime = runtime
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.state.runtime = None


@pytest.fixture
def make_job(state_machine):
  """Factory that persists a queued job with its submission event."""

  async def _make(*, provider: str = "mock", options: dict | None = None, input_ref: str = "https://cdn.example.test/input.png", idempotency_key: str | None = None, submit: bool = True) -> JobRecord:
    now = utcnow()
    record = JobRecord(job_id=generate_job_id(), status="queued", provider=provider, input_ref=input_ref, created_at=now, updated_at=now, options=options or {"provider": provider}, idempotency_key=idempotency_key)
    side_effect = SideEffectSpec(event_type=SUBMIT_ENHANCEMENT, payload={"provider": provider}) if submit else None
    job, _ = await state_machine.create_job(record, side_effect=side_effect)
    return job

  return _make
