"""Repository contracts for jobs, variants and outbox events."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from app.jobs.models import JobRecord, OutboxEventRecord, OutboxStatusCounts, VariantRecord


class JobsRepository(Protocol):
  """Read side of the jobs table; writes go through the state machine."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job with its variants ordered by rank."""

  async def find_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
    """Return the job previously created with this key, if any."""

  async def list_variants(self, job_id: str) -> list[VariantRecord]:
    """Return a job's variants ordered by rank."""

  async def count_by_status(self) -> dict[str, int]:
    """Return the number of jobs in each status."""

  async def nonce_seen(self, nonce: str) -> bool:
    """Whether a callback with this nonce was already applied."""

  async def remember_nonce(self, *, nonce: str, job_id: str, now: datetime) -> bool:
    """Record a callback nonce; False when it was seen before."""


class OutboxRepository(Protocol):
  """Durable outbox event log driven by the dispatcher."""

  async def claim_batch(self, *, limit: int, now: datetime) -> list[OutboxEventRecord]:
    """Atomically move up to `limit` due rows from pending to processing."""

  async def sweep_stale(self, *, stale_after: timedelta, now: datetime) -> int:
    """Return abandoned processing rows to pending and report how many moved."""

  async def mark_completed(self, event_id: str, *, claimed_at: datetime | None, attempts: int, now: datetime) -> bool:
    """Finish a delivered row still held by the claim stamped `claimed_at`."""

  async def schedule_retry(self, event_id: str, *, claimed_at: datetime | None, attempts: int, next_retry_at: datetime, error: str) -> bool:
    """Return a row to pending for another attempt later."""

  async def mark_failed(self, event_id: str, *, claimed_at: datetime | None, attempts: int, error: str, now: datetime) -> bool:
    """Terminally fail a row."""

  async def get_event(self, event_id: str) -> OutboxEventRecord | None:
    """Fetch one row."""

  async def list_for_job(self, job_id: str) -> list[OutboxEventRecord]:
    """Return a job's rows oldest first."""

  async def status_counts(self, *, now: datetime, stale_after: timedelta) -> OutboxStatusCounts:
    """Summarize the table for operators."""
