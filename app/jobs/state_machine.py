"""The single authority allowed to change a job's status.

Every status change is a guarded `UPDATE ... WHERE status = :expected` committed in
the same transaction as the rows that depend on it: variants for a completed job and
the outbox row for any side effect the move schedules. Two writers racing on the same
job therefore produce exactly one winner; the loser gets `InvalidTransitionError`.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_session_factory
from app.core.errors import InvalidTransitionError, JobNotFoundError, TerminalStateViolationError
from app.jobs.models import TERMINAL_STATUSES, CompletionResult, JobRecord, SideEffectSpec
from app.jobs.progress import monotonic_percent, nominal_percent
from app.schema.jobs import Job, JobVariant, OutboxEvent
from app.storage.postgres_jobs_repo import job_to_record, load_variants
from app.telemetry.metrics import EngineMetrics, get_metrics
from app.utils.clock import as_utc, utcnow
from app.utils.ids import generate_event_id, generate_variant_id

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
  "queued": frozenset({"downloading", "rendering", "canceled", "failed"}),
  "downloading": frozenset({"preprocessing", "canceled", "failed"}),
  "preprocessing": frozenset({"rendering", "canceled", "failed"}),
  "rendering": frozenset({"postprocessing", "canceled", "failed"}),
  "postprocessing": frozenset({"uploading", "canceled", "failed"}),
  "uploading": frozenset({"completed", "canceled", "failed"}),
  "completed": frozenset(),
  "failed": frozenset(),
  "canceled": frozenset(),
}


def is_legal(current: str, target: str) -> bool:
  """Return True when `current -> target` is an edge of the lifecycle."""
  return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def check_transition(job_id: str, current: str, from_expected: str, to_status: str) -> None:
  """Raise when a move must be rejected before touching the database."""
  if current in TERMINAL_STATUSES:
    raise TerminalStateViolationError(job_id, current, to_status)
  if current != from_expected or not is_legal(current, to_status):
    raise InvalidTransitionError(job_id, current, to_status, expected=from_expected)


class JobStateMachine:
  """Applies lifecycle moves to jobs and co-commits their side effects."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None, *, metrics: EngineMetrics | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")
    self._metrics = metrics or get_metrics()

  async def create_job(self, record: JobRecord, *, side_effect: SideEffectSpec | None = None) -> tuple[JobRecord, bool]:
    """Insert a queued job with its first outbox row; return (job, created)."""
    if record.status != "queued":
      raise ValueError("Jobs are always created in the queued status.")

    async with self._session_factory() as session:
      # Idempotent resubmission returns the job created the first time.
      if record.idempotency_key:
        existing = await self._find_by_key(session, record.idempotency_key)
        if existing is not None:
          return existing, False

      session.add(
        Job(
          job_id=record.job_id,
          status="queued",
          provider=record.provider,
          model=record.model,
          input_ref=record.input_ref,
          options_json=record.options,
          masks_json=record.masks,
          calibration=record.calibration,
          progress_stage="queued",
          progress_percent=0,
          idempotency_key=record.idempotency_key,
          created_at=record.created_at,
          updated_at=record.updated_at,
        )
      )
      # Flush the job first so the outbox row's foreign key resolves.
      await session.flush()
      if side_effect is not None:
        session.add(self._outbox_row(record.job_id, side_effect, now=record.created_at))
      try:
        await session.commit()
      except IntegrityError:
        await session.rollback()
        if not record.idempotency_key:
          raise
        existing = await self._find_by_key(session, record.idempotency_key)
        if existing is None:
          raise
        return existing, False

    self._metrics.jobs_created.inc(provider=record.provider, status="queued")
    logger.info("Created job %s provider=%s", record.job_id, record.provider)
    created = await self._reload(record.job_id)
    return created, True

  async def transition(
    self,
    job_id: str,
    from_expected: str,
    to_status: str,
    *,
    side_effect: SideEffectSpec | None = None,
    progress_percent: int | None = None,
    progress_stage: str | None = None,
    result: CompletionResult | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
  ) -> JobRecord:
    """Move a job from `from_expected` to `to_status` in one commit."""
    if to_status == "completed" and result is None:
      raise ValueError("Completing a job requires a CompletionResult.")

    now = utcnow()
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        raise JobNotFoundError(f"Job {job_id} not found")

      try:
        check_transition(job_id, row.status, from_expected, to_status)
      except InvalidTransitionError as exc:
        logger.warning("Rejected transition: %s", exc)
        raise

      values: dict[str, object] = {
        "status": to_status,
        "progress_stage": progress_stage or to_status,
        "progress_percent": monotonic_percent(row.progress_percent, progress_percent if progress_percent is not None else nominal_percent(to_status)),
        "updated_at": now,
      }
      if to_status == "completed" and result is not None:
        values["completed_at"] = now
        if row.cost_micros is None:
          values["cost_micros"] = int(result.cost_micros)
        if row.provider_job_id is None and result.provider_job_id:
          values["provider_job_id"] = result.provider_job_id
      elif to_status == "failed":
        values["error_code"] = error_code or "FAILED"
        values["error_message"] = error_message
      elif to_status == "canceled":
        values["canceled_at"] = now

      # The guard re-checks the status at write time; a concurrent winner leaves zero rows.
      stmt = update(Job).where(Job.job_id == job_id, Job.status == from_expected).values(**values).execution_options(synchronize_session=False)
      outcome = await session.execute(stmt)
      if outcome.rowcount != 1:
        await session.rollback()
        exc = InvalidTransitionError(job_id, None, to_status, expected=from_expected)
        logger.warning("Lost transition race: %s", exc)
        raise exc

      if to_status == "completed" and result is not None:
        for rank, url in enumerate(result.variant_urls):
          session.add(JobVariant(variant_id=generate_variant_id(), job_id=job_id, output_url=url, rank=rank, created_at=now))
      if side_effect is not None:
        session.add(self._outbox_row(job_id, side_effect, now=now))
      await session.commit()

      provider = row.provider
      created_at = as_utc(row.created_at)

    logger.info("Job %s moved %s -> %s", job_id, from_expected, to_status)
    if to_status in TERMINAL_STATUSES:
      self._record_terminal(to_status, provider=provider, created_at=created_at, now=now, cost_micros=values.get("cost_micros"))
    return await self._reload(job_id)

  async def record_progress(self, job_id: str, expected_status: str, percent: int, *, stage: str | None = None) -> bool:
    """Raise a job's progress within its current status; never lowers it."""
    percent = max(0, min(100, int(percent)))
    now = utcnow()
    async with self._session_factory() as session:
      values: dict[str, object] = {"progress_percent": percent, "updated_at": now}
      if stage:
        values["progress_stage"] = stage
      stmt = update(Job).where(Job.job_id == job_id, Job.status == expected_status, Job.progress_percent < percent).values(**values).execution_options(synchronize_session=False)
      outcome = await session.execute(stmt)
      await session.commit()
      return outcome.rowcount == 1

  async def record_provider_job_id(self, job_id: str, provider_job_id: str) -> bool:
    """Store the provider's reference the first time it is known."""
    async with self._session_factory() as session:
      stmt = update(Job).where(Job.job_id == job_id, Job.provider_job_id.is_(None)).values(provider_job_id=provider_job_id, updated_at=utcnow()).execution_options(synchronize_session=False)
      outcome = await session.execute(stmt)
      await session.commit()
      return outcome.rowcount == 1

  async def force_fail(self, job_id: str, *, error_code: str, error_message: str | None = None, side_effect: SideEffectSpec | None = None, attempts: int = 3) -> JobRecord | None:
    """Fail a job from whatever status it is in; finished jobs are left alone."""
    for _ in range(attempts):
      async with self._session_factory() as session:
        row = await session.get(Job, job_id)
        if row is None:
          raise JobNotFoundError(f"Job {job_id} not found")
        current = row.status
      if current in TERMINAL_STATUSES:
        logger.info("Job %s already %s; not forcing failure %s", job_id, current, error_code)
        return None
      try:
        return await self.transition(job_id, current, "failed", error_code=error_code, error_message=error_message, side_effect=side_effect)
      except InvalidTransitionError:
        # Status moved under us; read it again.
        continue
      except TerminalStateViolationError:
        return None
    logger.error("Could not force-fail job %s after %d attempts", job_id, attempts)
    return None

  async def _reload(self, job_id: str) -> JobRecord:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        raise JobNotFoundError(f"Job {job_id} not found")
      return job_to_record(row, variants=await load_variants(session, job_id))

  async def _find_by_key(self, session: AsyncSession, idempotency_key: str) -> JobRecord | None:
    row = (await session.execute(select(Job).where(Job.idempotency_key == idempotency_key).limit(1))).scalar_one_or_none()
    if row is None:
      return None
    return job_to_record(row, variants=await load_variants(session, row.job_id))

  def _outbox_row(self, job_id: str, side_effect: SideEffectSpec, *, now: datetime) -> OutboxEvent:
    return OutboxEvent(event_id=generate_event_id(), job_id=job_id, event_type=side_effect.event_type, status="pending", payload_json=dict(side_effect.payload), attempts=0, next_retry_at=None, created_at=now)

  def _record_terminal(self, status: str, *, provider: str, created_at: datetime | None, now: datetime, cost_micros: object) -> None:
    if created_at is not None:
      self._metrics.job_duration.observe(max(0.0, (now - created_at).total_seconds()), status=status, provider=provider)
    if status == "completed" and cost_micros is not None:
      self._metrics.job_cost.observe(float(cost_micros), provider=provider)  # type: ignore[arg-type]
