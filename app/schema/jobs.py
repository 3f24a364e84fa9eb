from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite for local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Job(Base):
  __tablename__ = "jobs"
  __table_args__ = (
    UniqueConstraint("idempotency_key", name="ux_jobs_idempotency_key"),
    Index("ix_jobs_status_updated", "status", "updated_at"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  provider: Mapped[str] = mapped_column(String, nullable=False, index=True)
  model: Mapped[str | None] = mapped_column(String, nullable=True)
  input_ref: Mapped[str] = mapped_column(Text, nullable=False)
  options_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  masks_json: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
  calibration: Mapped[float | None] = mapped_column(Float, nullable=True)
  progress_stage: Mapped[str | None] = mapped_column(String, nullable=True)
  progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  cost_micros: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
  error_code: Mapped[str | None] = mapped_column(String, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  provider_job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OutboxEvent(Base):
  __tablename__ = "outbox_events"
  __table_args__ = (
    # Single-flight per (job, effect): only one row may be in delivery at a time.
    Index("ux_outbox_events_single_flight", "job_id", "event_type", unique=True, postgresql_where=text("status = 'processing'"), sqlite_where=text("status = 'processing'")),
    Index("ix_outbox_events_ready", "status", "next_retry_at", "created_at"),
  )

  event_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
  payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class JobVariant(Base):
  __tablename__ = "job_variants"
  __table_args__ = (UniqueConstraint("job_id", "rank", name="ux_job_variants_job_rank"),)

  variant_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  output_url: Mapped[str] = mapped_column(Text, nullable=False)
  rank: Mapped[int] = mapped_column(Integer, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebhookNonce(Base):
  __tablename__ = "webhook_nonces"

  nonce: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
