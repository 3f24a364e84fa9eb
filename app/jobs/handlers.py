"""Outbox handlers for the side effects a job's lifecycle schedules."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.ai.backoff import with_retry
from app.ai.gateway import ProviderGateway
from app.ai.providers.base import ProviderPayload, ProviderVariant
from app.core.errors import DeliveryRejectedError, DeliveryUnavailableError, JobNotFoundError
from app.core.json import canonical_json
from app.core.security import signed_headers
from app.jobs.models import NOTIFY_COMPLETION, CompletionResult, JobRecord, OutboxEventRecord, SideEffectSpec
from app.jobs.progress import scale_render_progress
from app.jobs.state_machine import JobStateMachine
from app.services.storage_client import ObjectStorage
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

# Legal walk from each pre-render status up to rendering.
_PATH_TO_RENDERING: dict[str, tuple[str, ...]] = {"queued": ("rendering",), "downloading": ("preprocessing", "rendering"), "preprocessing": ("rendering",)}

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


def notification_side_effect(enabled: bool) -> SideEffectSpec | None:
  """Side effect that tells the configured target a job finished."""
  return SideEffectSpec(event_type=NOTIFY_COMPLETION) if enabled else None


class SubmitEnhancementHandler:
  """Send a queued job to its provider and, for synchronous providers, finish it."""

  def __init__(self, *, jobs_repo: JobsRepository, state_machine: JobStateMachine, gateway: ProviderGateway, storage: ObjectStorage | None = None, notify_enabled: bool = False, timeout: float | None = None) -> None:
    self._jobs_repo = jobs_repo
    self._state_machine = state_machine
    self._gateway = gateway
    self._storage = storage
    self._notify_enabled = notify_enabled
    self._timeout = timeout

  async def handle(self, event: OutboxEventRecord) -> None:
    job = await self._jobs_repo.get_job(event.job_id)
    if job is None:
      raise JobNotFoundError(f"Job {event.job_id} not found")

    # Re-deliveries must not resubmit work the provider already has.
    if job.is_terminal or job.status in {"postprocessing", "uploading"}:
      logger.info("Skipping submission for job %s in status %s", job.job_id, job.status)
      return
    if job.status == "rendering" and job.provider_job_id:
      logger.info("Job %s already submitted as %s; waiting for callback", job.job_id, job.provider_job_id)
      return

    # Validate before moving the job so a bad payload fails it straight from queued.
    payload = ProviderPayload(
      job_id=job.job_id,
      image_url=self._gateway.resolve_image_url(job.input_ref),
      options=self._gateway.parse_options(job.provider, job.options),
      masks=job.masks,
      calibration=job.calibration,
      model=job.model,
    )

    status = job.status
    for next_status in _PATH_TO_RENDERING.get(status, ()):
      await self._state_machine.transition(job.job_id, status, next_status)
      status = next_status

    async def _on_progress(percent: int) -> None:
      await self._state_machine.record_progress(job.job_id, "rendering", scale_render_progress(percent), stage="rendering")

    result = await self._gateway.submit(job.provider, payload, on_progress=_on_progress, timeout=self._timeout)

    if result.pending:
      if result.provider_job_id:
        await self._state_machine.record_provider_job_id(job.job_id, result.provider_job_id)
      logger.info("Job %s handed to %s; completion will arrive by callback", job.job_id, job.provider)
      return

    # A cancel that landed during the provider call makes these transitions fail the guard.
    await self._state_machine.transition(job.job_id, "rendering", "postprocessing")
    await self._state_machine.transition(job.job_id, "postprocessing", "uploading")
    urls = [await self._materialize(job, rank, variant) for rank, variant in enumerate(result.variants)]
    completion = CompletionResult(variant_urls=urls, cost_micros=result.cost_micros, provider_job_id=result.provider_job_id)
    await self._state_machine.transition(job.job_id, "uploading", "completed", result=completion, side_effect=notification_side_effect(self._notify_enabled))

  async def _materialize(self, job: JobRecord, rank: int, variant: ProviderVariant) -> str:
    """Return a hosted URL for a variant, uploading raw bytes when needed."""
    if variant.url:
      return variant.url
    if variant.data is None:
      raise ValueError(f"Provider returned an empty variant for job {job.job_id}")
    if self._storage is None:
      raise RuntimeError("Object storage is not configured; cannot upload inline variants.")
    extension = _EXTENSIONS.get(variant.content_type, "bin")
    path = f"enhancements/{job.job_id}/variant-{rank}.{extension}"
    return await self._storage.put(path, variant.data, variant.content_type)


class CancelProviderJobHandler:
  """Pass a cancellation hint to the provider; never fails the row."""

  def __init__(self, *, gateway: ProviderGateway) -> None:
    self._gateway = gateway

  async def handle(self, event: OutboxEventRecord) -> None:
    provider = str(event.payload.get("provider") or "")
    provider_job_id = str(event.payload.get("provider_job_id") or "")
    if not provider or not provider_job_id:
      logger.info("Cancel hint for job %s has no provider reference; nothing to do", event.job_id)
      return
    await self._gateway.cancel(provider, provider_job_id)


def completion_summary(job: JobRecord) -> dict[str, Any]:
  """Payload sent to the notification target."""
  return {
    "jobId": job.job_id,
    "status": job.status,
    "provider": job.provider,
    "costMicros": job.cost_micros,
    "errorCode": job.error_code,
    "errorMessage": job.error_message,
    "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    "variants": [{"url": variant.output_url, "rank": variant.rank} for variant in job.variants],
  }


class NotifyCompletionHandler:
  """POST a signed summary of a finished job to the configured target."""

  def __init__(self, *, jobs_repo: JobsRepository, target_url: str | None, secret: str | None, timeout: float = 10.0, retries: int = 2, retry_delay: float = 0.5, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._jobs_repo = jobs_repo
    self._target_url = target_url
    self._secret = secret
    self._timeout = timeout
    self._retries = retries
    self._retry_delay = retry_delay
    self._transport = transport

  async def handle(self, event: OutboxEventRecord) -> None:
    if not self._target_url:
      logger.info("No notification target configured; dropping completion notice for job %s", event.job_id)
      return
    job = await self._jobs_repo.get_job(event.job_id)
    if job is None:
      raise JobNotFoundError(f"Job {event.job_id} not found")

    raw_body = canonical_json(completion_summary(job))
    await with_retry(lambda: self._post(raw_body), max_retries=self._retries, delay=self._retry_delay, retryable=lambda exc: isinstance(exc, DeliveryUnavailableError))
    logger.info("Delivered completion notice for job %s status=%s", job.job_id, job.status)

  async def _post(self, raw_body: bytes) -> None:
    headers = signed_headers(self._secret, raw_body) if self._secret else {"content-type": "application/json"}
    try:
      async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
        response = await client.post(self._target_url, content=raw_body, headers=headers)  # type: ignore[arg-type]
    except httpx.TransportError as exc:
      raise DeliveryUnavailableError(f"Notification target unreachable: {exc}") from exc
    if response.is_success:
      return
    if response.status_code == 429 or response.status_code >= 500:
      raise DeliveryUnavailableError(f"Notification target returned HTTP {response.status_code}")
    raise DeliveryRejectedError(f"Notification target rejected notice with HTTP {response.status_code}")
