"""Postgres-backed read repository for enhancement jobs using SQLAlchemy."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_session_factory
from app.jobs.models import JobRecord, VariantRecord
from app.schema.jobs import Job, JobVariant, WebhookNonce
from app.storage.jobs_repo import JobsRepository
from app.utils.clock import as_utc


def variant_to_record(row: JobVariant) -> VariantRecord:
  return VariantRecord(variant_id=row.variant_id, job_id=row.job_id, output_url=row.output_url, rank=int(row.rank), created_at=as_utc(row.created_at))


def job_to_record(row: Job, *, variants: list[JobVariant] | None = None) -> JobRecord:
  return JobRecord(
    job_id=row.job_id,
    status=row.status,  # type: ignore[arg-type]
    provider=row.provider,
    model=row.model,
    input_ref=row.input_ref,
    options=dict(row.options_json or {}),
    masks=list(row.masks_json or []),
    calibration=row.calibration,
    progress_stage=row.progress_stage,
    progress_percent=int(row.progress_percent or 0),
    cost_micros=row.cost_micros,
    error_code=row.error_code,
    error_message=row.error_message,
    provider_job_id=row.provider_job_id,
    idempotency_key=row.idempotency_key,
    created_at=as_utc(row.created_at),  # type: ignore[arg-type]
    updated_at=as_utc(row.updated_at),  # type: ignore[arg-type]
    completed_at=as_utc(row.completed_at),
    canceled_at=as_utc(row.canceled_at),
    variants=[variant_to_record(item) for item in (variants or [])],
  )


async def load_variants(session: AsyncSession, job_id: str) -> list[JobVariant]:
  stmt = select(JobVariant).where(JobVariant.job_id == job_id).order_by(JobVariant.rank.asc())
  return list((await session.execute(stmt)).scalars().all())


class PostgresJobsRepository(JobsRepository):
  """Read jobs and variants from Postgres using SQLAlchemy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      return job_to_record(row, variants=await load_variants(session, job_id))

  async def find_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.idempotency_key == idempotency_key).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return job_to_record(row, variants=await load_variants(session, row.job_id))

  async def list_variants(self, job_id: str) -> list[VariantRecord]:
    async with self._session_factory() as session:
      return [variant_to_record(row) for row in await load_variants(session, job_id)]

  async def count_by_status(self) -> dict[str, int]:
    async with self._session_factory() as session:
      stmt = select(Job.status, func.count()).group_by(Job.status)
      rows = (await session.execute(stmt)).all()
      return {str(status): int(count) for status, count in rows}

  async def nonce_seen(self, nonce: str) -> bool:
    async with self._session_factory() as session:
      return await session.get(WebhookNonce, nonce) is not None

  async def remember_nonce(self, *, nonce: str, job_id: str, now: datetime) -> bool:
    async with self._session_factory() as session:
      session.add(WebhookNonce(nonce=nonce, job_id=job_id, created_at=now))
      try:
        await session.commit()
      except IntegrityError:
        await session.rollback()
        return False
      return True
