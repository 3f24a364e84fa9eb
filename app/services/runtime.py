"""Assemble the long-lived engine components from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

import httpx
from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.ai.gateway import ProviderGateway
from app.ai.providers import MockProvider, Provider, WorkflowProvider
from app.config import Settings
from app.core.database import get_session_factory
from app.jobs.dispatcher import HandlerRegistry, OutboxDispatcher, RetryPolicies
from app.jobs.handlers import CancelProviderJobHandler, NotifyCompletionHandler, SubmitEnhancementHandler
from app.jobs.models import CANCEL_PROVIDER_JOB, NOTIFY_COMPLETION, SUBMIT_ENHANCEMENT
from app.jobs.state_machine import JobStateMachine
from app.services.storage_client import ObjectStorage
from app.storage.postgres_jobs_repo import PostgresJobsRepository
from app.storage.postgres_outbox_repo import PostgresOutboxRepository
from app.telemetry.metrics import EngineMetrics, get_metrics

logger = logging.getLogger(__name__)


@dataclass
class EngineRuntime:
  """Components shared by the API routes and the dispatcher loop."""

  settings: Settings
  jobs_repo: PostgresJobsRepository
  outbox_repo: PostgresOutboxRepository
  state_machine: JobStateMachine
  gateway: ProviderGateway
  dispatcher: OutboxDispatcher
  metrics: EngineMetrics

  @property
  def notify_enabled(self) -> bool:
    return bool(self.settings.notify_url)


def build_providers(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> dict[str, Provider]:
  """Register the mock provider always and the workflow provider when a webhook is configured."""
  providers: dict[str, Provider] = {"mock": MockProvider()}
  if settings.workflow_webhook_url:
    if not settings.app_url:
      logger.warning("ENHANCE_WORKFLOW_WEBHOOK_URL is set without ENHANCE_APP_URL; workflow callbacks cannot be routed back.")
    providers["workflow"] = WorkflowProvider(settings.workflow_webhook_url, callback_base_url=settings.app_url or "", secret=settings.callback_secret, transport=transport)
  return providers


def build_runtime(
  settings: Settings,
  *,
  session_factory: async_sessionmaker[AsyncSession] | None = None,
  providers: dict[str, Provider] | None = None,
  storage: ObjectStorage | None = None,
  metrics: EngineMetrics | None = None,
  transport: httpx.AsyncBaseTransport | None = None,
) -> EngineRuntime:
  """Wire repositories, the state machine, the gateway and the dispatcher together."""
  session_factory = session_factory or get_session_factory()
  if session_factory is None:
    raise RuntimeError("Database connection is not configured (ENHANCE_PG_DSN is missing).")
  metrics = metrics or get_metrics()

  jobs_repo = PostgresJobsRepository(session_factory)
  outbox_repo = PostgresOutboxRepository(session_factory)
  state_machine = JobStateMachine(session_factory, metrics=metrics)
  gateway = ProviderGateway(
    providers if providers is not None else build_providers(settings, transport=transport),
    default_timeout=settings.provider_timeout_seconds,
    max_timeout=settings.provider_max_timeout_seconds,
    retries=settings.provider_retries,
    app_url=settings.app_url,
    metrics=metrics,
  )

  notify_enabled = bool(settings.notify_url)
  registry = HandlerRegistry(
    {
      SUBMIT_ENHANCEMENT: SubmitEnhancementHandler(jobs_repo=jobs_repo, state_machine=state_machine, gateway=gateway, storage=storage, notify_enabled=notify_enabled),
      CANCEL_PROVIDER_JOB: CancelProviderJobHandler(gateway=gateway),
      NOTIFY_COMPLETION: NotifyCompletionHandler(jobs_repo=jobs_repo, target_url=settings.notify_url, secret=settings.callback_secret, transport=transport),
    }
  )
  dispatcher = OutboxDispatcher(
    outbox_repo=outbox_repo,
    state_machine=state_machine,
    registry=registry,
    policies=RetryPolicies.from_settings(settings),
    jobs_repo=jobs_repo,
    batch_size=settings.outbox_batch_size,
    concurrency=settings.outbox_concurrency,
    stale_after=timedelta(seconds=settings.outbox_stale_after_seconds),
    poll_interval=settings.outbox_poll_seconds,
    metrics=metrics,
    notify_enabled=notify_enabled,
  )
  return EngineRuntime(settings=settings, jobs_repo=jobs_repo, outbox_repo=outbox_repo, state_machine=state_machine, gateway=gateway, dispatcher=dispatcher, metrics=metrics)


def get_runtime(request: Request) -> EngineRuntime:
  """FastAPI dependency returning the runtime built at startup."""
  runtime = getattr(request.app.state, "runtime", None)
  if runtime is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Engine runtime is not initialized.")
  return runtime
