"""Postgres-backed outbox event log using SQLAlchemy."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from app.core.database import get_session_factory, is_postgres
from app.jobs.models import OutboxEventRecord, OutboxStatusCounts
from app.schema.jobs import OutboxEvent
from app.storage.jobs_repo import OutboxRepository
from app.utils.clock import as_utc

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 2000


def event_to_record(row: OutboxEvent) -> OutboxEventRecord:
  return OutboxEventRecord(
    event_id=row.event_id,
    job_id=row.job_id,
    event_type=row.event_type,
    status=row.status,  # type: ignore[arg-type]
    payload=dict(row.payload_json or {}),
    attempts=int(row.attempts or 0),
    created_at=as_utc(row.created_at),  # type: ignore[arg-type]
    next_retry_at=as_utc(row.next_retry_at),
    claimed_at=as_utc(row.claimed_at),
    processed_at=as_utc(row.processed_at),
    last_error=row.last_error,
  )


def _clip(error: str) -> str:
  return error if len(error) <= _MAX_ERROR_CHARS else error[: _MAX_ERROR_CHARS - 3] + "..."


class PostgresOutboxRepository(OutboxRepository):
  """Claim, settle and inspect outbox rows."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def claim_batch(self, *, limit: int, now: datetime) -> list[OutboxEventRecord]:
    if limit <= 0:
      return []
    async with self._session_factory() as session:
      postgres = is_postgres(session)
      candidates = select(OutboxEvent.event_id).where(OutboxEvent.status == "pending", or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= now)).order_by(OutboxEvent.created_at.asc(), OutboxEvent.event_id.asc()).limit(limit)
      # Rows another dispatcher is claiming right now are skipped, not waited on.
      if postgres:
        candidates = candidates.with_for_update(skip_locked=True)
      event_ids = list((await session.execute(candidates)).scalars().all())

      claimed_ids: list[str] = []
      for event_id in event_ids:
        if await self._claim_one(session, event_id=event_id, now=now, postgres=postgres):
          claimed_ids.append(event_id)

      if not claimed_ids:
        await session.commit()
        return []

      stmt = select(OutboxEvent).where(OutboxEvent.event_id.in_(claimed_ids)).order_by(OutboxEvent.created_at.asc(), OutboxEvent.event_id.asc())
      rows = list((await session.execute(stmt)).scalars().all())
      await session.commit()
      return [event_to_record(row) for row in rows]

  async def _claim_one(self, session: AsyncSession, *, event_id: str, now: datetime, postgres: bool) -> bool:
    """Flip one row to processing unless it moved or a sibling is already in flight."""
    sibling = aliased(OutboxEvent)
    sibling_in_flight = select(sibling.event_id).where(sibling.job_id == OutboxEvent.job_id, sibling.event_type == OutboxEvent.event_type, sibling.status == "processing").correlate(OutboxEvent).exists()
    stmt = update(OutboxEvent).where(OutboxEvent.event_id == event_id, OutboxEvent.status == "pending", ~sibling_in_flight).values(status="processing", claimed_at=now).execution_options(synchronize_session=False)
    try:
      if postgres:
        # A concurrent claimer can win the single-flight index; contain that to this row.
        async with session.begin_nested():
          result = await session.execute(stmt)
      else:
        result = await session.execute(stmt)
    except IntegrityError:
      logger.info("Outbox event %s lost the single-flight race; leaving it pending.", event_id)
      return False
    return result.rowcount == 1

  async def sweep_stale(self, *, stale_after: timedelta, now: datetime) -> int:
    cutoff = now - stale_after
    async with self._session_factory() as session:
      stmt = (
        update(OutboxEvent)
        .where(OutboxEvent.status == "processing", func.coalesce(OutboxEvent.claimed_at, OutboxEvent.created_at) < cutoff)
        .values(status="pending", next_retry_at=now, claimed_at=None)
        .execution_options(synchronize_session=False)
      )
      result = await session.execute(stmt)
      await session.commit()
      recovered = int(result.rowcount or 0)
      if recovered:
        logger.warning("Recovered %d stale outbox events claimed before %s", recovered, cutoff.isoformat())
      return recovered

  async def mark_completed(self, event_id: str, *, claimed_at: datetime | None, attempts: int, now: datetime) -> bool:
    return await self._settle(event_id, claimed_at, status="completed", attempts=attempts, processed_at=now, claimed_at=None)

  async def schedule_retry(self, event_id: str, *, claimed_at: datetime | None, attempts: int, next_retry_at: datetime, error: str) -> bool:
    return await self._settle(event_id, claimed_at, status="pending", attempts=attempts, next_retry_at=next_retry_at, last_error=_clip(error), claimed_at=None)

  async def mark_failed(self, event_id: str, *, claimed_at: datetime | None, attempts: int, error: str, now: datetime) -> bool:
    return await self._settle(event_id, claimed_at, status="failed", attempts=attempts, processed_at=now, last_error=_clip(error), claimed_at=None)

  async def _settle(self, event_id: str, held_claim: datetime | None, **values: object) -> bool:
    """Write the outcome of a delivery; only the claim that is still in processing may change the row."""
    # A swept and re-claimed row carries a newer claimed_at, so the old worker's outcome no longer matches.
    same_claim = OutboxEvent.claimed_at.is_(None) if held_claim is None else OutboxEvent.claimed_at == held_claim
    async with self._session_factory() as session:
      stmt = update(OutboxEvent).where(OutboxEvent.event_id == event_id, OutboxEvent.status == "processing", same_claim).values(**values).execution_options(synchronize_session=False)
      result = await session.execute(stmt)
      await session.commit()
      settled = result.rowcount == 1
      if not settled:
        logger.warning("Outbox event %s is no longer held by this claim; outcome %s dropped.", event_id, values.get("status"))
      return settled

  async def get_event(self, event_id: str) -> OutboxEventRecord | None:
    async with self._session_factory() as session:
      row = await session.get(OutboxEvent, event_id)
      return event_to_record(row) if row is not None else None

  async def list_for_job(self, job_id: str) -> list[OutboxEventRecord]:
    async with self._session_factory() as session:
      stmt = select(OutboxEvent).where(OutboxEvent.job_id == job_id).order_by(OutboxEvent.created_at.asc(), OutboxEvent.event_id.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [event_to_record(row) for row in rows]

  async def status_counts(self, *, now: datetime, stale_after: timedelta) -> OutboxStatusCounts:
    cutoff = now - stale_after
    pending = OutboxEvent.status == "pending"
    processing = OutboxEvent.status == "processing"
    due = or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= now)
    claimed = func.coalesce(OutboxEvent.claimed_at, OutboxEvent.created_at)

    def _count(condition: object) -> object:
      return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

    stmt = select(
      _count(and_(pending, due)),
      _count(and_(pending, ~due)),
      _count(and_(processing, claimed >= cutoff)),
      _count(and_(processing, claimed < cutoff)),
      _count(OutboxEvent.status == "failed"),
      _count(OutboxEvent.status == "completed"),
    )
    async with self._session_factory() as session:
      ready, scheduled, in_flight, stuck, failed, completed = (await session.execute(stmt)).one()
      return OutboxStatusCounts(ready=int(ready), scheduled=int(scheduled), processing=int(in_flight), stuck=int(stuck), failed=int(failed), completed=int(completed))
