"""Job ingress: create, inspect and cancel enhancement jobs."""

from __future__ import annotations

import logging

from app.api.models import JobCreateRequest
from app.core.errors import JobNotFoundError, TerminalStateViolationError
from app.jobs.models import CANCEL_PROVIDER_JOB, SUBMIT_ENHANCEMENT, JobRecord, OutboxEventRecord, SideEffectSpec
from app.services.runtime import EngineRuntime
from app.utils.clock import utcnow
from app.utils.ids import generate_job_id

logger = logging.getLogger(__name__)


async def create_job(request: JobCreateRequest, runtime: EngineRuntime) -> tuple[JobRecord, bool]:
  """Validate the request against its provider and persist the job with its submission event."""
  # Unknown providers and bad options are rejected before anything is written.
  options = runtime.gateway.parse_options(request.provider, request.options)
  now = utcnow()
  record = JobRecord(
    job_id=generate_job_id(),
    status="queued",
    provider=request.provider,
    input_ref=request.image_url,
    created_at=now,
    updated_at=now,
    model=request.model,
    options=options.model_dump(mode="json"),
    masks=list(request.masks),
    calibration=request.calibration,
    progress_stage="queued",
    progress_percent=0,
    idempotency_key=request.idempotency_key,
  )
  job, created = await runtime.state_machine.create_job(record, side_effect=SideEffectSpec(event_type=SUBMIT_ENHANCEMENT, payload={"provider": request.provider}))
  if not created:
    logger.info("Idempotency key %s resolved to existing job %s", request.idempotency_key, job.job_id)
  return job, created


async def get_job(job_id: str, runtime: EngineRuntime) -> JobRecord:
  job = await runtime.jobs_repo.get_job(job_id)
  if job is None:
    raise JobNotFoundError(f"Job {job_id} not found")
  return job


async def cancel_job(job_id: str, runtime: EngineRuntime) -> JobRecord:
  """Cancel a running job and queue a best-effort cancel hint for its provider."""
  job = await get_job(job_id, runtime)
  if job.is_terminal:
    raise TerminalStateViolationError(job.job_id, job.status, "canceled")

  side_effect = None
  if job.provider_job_id:
    side_effect = SideEffectSpec(event_type=CANCEL_PROVIDER_JOB, payload={"provider": job.provider, "provider_job_id": job.provider_job_id})
  # A concurrent move surfaces as InvalidTransitionError; the caller sees a conflict and may retry.
  canceled = await runtime.state_machine.transition(job.job_id, job.status, "canceled", side_effect=side_effect)
  logger.info("Canceled job %s from %s", job.job_id, job.status)
  return canceled


async def list_job_events(job_id: str, runtime: EngineRuntime) -> list[OutboxEventRecord]:
  await get_job(job_id, runtime)
  return await runtime.outbox_repo.list_for_job(job_id)
