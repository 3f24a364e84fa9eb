"""Ingest signed provider callbacks and turn them into job transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from pydantic import ValidationError

from app.api.models import CallbackPayload
from app.core.errors import CallbackPayloadError, CallbackReplayError, InvalidSignatureError, JobNotFoundError, TerminalStateViolationError
from app.core.security import verify_signature
from app.jobs.handlers import notification_side_effect
from app.jobs.models import CompletionResult, JobRecord
from app.jobs.progress import scale_render_progress
from app.services.runtime import EngineRuntime
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_CODE = "PROVIDER_FAILED"


@dataclass(frozen=True)
class CallbackOutcome:
  job_id: str
  status: str
  changed: bool


def parse_callback(raw_body: bytes) -> CallbackPayload:
  try:
    return CallbackPayload.model_validate_json(raw_body or b"{}")
  except ValidationError as exc:
    raise CallbackPayloadError(f"Callback body is invalid: {exc.errors(include_url=False)}") from exc


def _progress_for(status: str, progress: float | None) -> int | None:
  if progress is None:
    return None
  if status == "rendering":
    return scale_render_progress(progress)
  return int(progress)


async def ingest_callback(job_id: str, raw_body: bytes, runtime: EngineRuntime, *, timestamp: str | None, signature: str | None, nonce: str | None = None, now: datetime | None = None) -> CallbackOutcome:
  """Authenticate a callback, reject replays and apply it to the job."""
  settings = runtime.settings
  if not settings.callback_secret:
    raise InvalidSignatureError("Callback verification is not configured.")
  # Authentication runs before the body is parsed or the job is read.
  verify_signature(settings.callback_secret, timestamp, raw_body, signature, now=now, tolerance_seconds=settings.callback_tolerance_seconds)
  payload = parse_callback(raw_body)

  job = await runtime.jobs_repo.get_job(job_id)
  if job is None:
    raise JobNotFoundError(f"Job {job_id} not found")
  if nonce and await runtime.jobs_repo.nonce_seen(nonce):
    raise CallbackReplayError(f"Callback nonce {nonce} was already used")
  outcome = await apply_callback(job, payload, runtime)
  # Nonces are recorded only for callbacks that were applied.
  if nonce and not await runtime.jobs_repo.remember_nonce(nonce=nonce, job_id=job_id, now=now or utcnow()):
    logger.info("Callback nonce %s for job %s was recorded by a concurrent delivery", nonce, job_id)
  return outcome


async def apply_callback(job: JobRecord, payload: CallbackPayload, runtime: EngineRuntime) -> CallbackOutcome:
  """Apply one verified callback; the job's current status is the expected one."""
  target = payload.status or job.status
  if job.is_terminal:
    raise TerminalStateViolationError(job.job_id, job.status, target)

  state_machine = runtime.state_machine
  if payload.provider_job_id and not job.provider_job_id:
    await state_machine.record_provider_job_id(job.job_id, payload.provider_job_id)

  # Same status: only progress can change.
  if target == job.status:
    percent = _progress_for(target, payload.progress)
    changed = False
    if percent is not None:
      changed = await state_machine.record_progress(job.job_id, job.status, percent, stage=target)
    return CallbackOutcome(job_id=job.job_id, status=job.status, changed=changed)

  notify = notification_side_effect(runtime.notify_enabled)
  if target == "completed":
    urls = payload.variant_urls()
    if not urls:
      raise CallbackPayloadError(f"Completion callback for job {job.job_id} carries no output URLs")
    result = CompletionResult(variant_urls=urls, cost_micros=payload.cost_micros or 0, provider_job_id=payload.provider_job_id)
    updated = await state_machine.transition(job.job_id, job.status, "completed", result=result, side_effect=notify)
  elif target == "failed":
    message = payload.error_message or "Provider reported a failure."
    updated = await state_machine.transition(job.job_id, job.status, "failed", error_code=payload.error_code or DEFAULT_FAILURE_CODE, error_message=message, side_effect=notify)
  else:
    updated = await state_machine.transition(job.job_id, job.status, target, progress_percent=_progress_for(target, payload.progress))

  logger.info("Callback moved job %s %s -> %s", job.job_id, job.status, updated.status)
  return CallbackOutcome(job_id=updated.job_id, status=updated.status, changed=True)
