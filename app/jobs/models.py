"""Domain models for delegated enhancement jobs and their outbox events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["queued", "downloading", "preprocessing", "rendering", "postprocessing", "uploading", "completed", "failed", "canceled"]
OutboxStatus = Literal["pending", "processing", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "canceled"})
ACTIVE_STATUSES: tuple[str, ...] = ("queued", "downloading", "preprocessing", "rendering", "postprocessing", "uploading")

# Event types carried by the outbox.
SUBMIT_ENHANCEMENT = "submit_enhancement"
CANCEL_PROVIDER_JOB = "cancel_provider_job"
NOTIFY_COMPLETION = "notify_completion"


@dataclass(frozen=True)
class VariantRecord:
  """One output image produced by a completed job."""

  variant_id: str
  job_id: str
  output_url: str
  rank: int
  created_at: datetime | None = None


@dataclass
class JobRecord:
  """Represents an enhancement job as stored."""

  job_id: str
  status: JobStatus
  provider: str
  input_ref: str
  created_at: datetime
  updated_at: datetime
  model: str | None = None
  options: dict[str, Any] = field(default_factory=dict)
  masks: list[dict[str, Any]] = field(default_factory=list)
  calibration: float | None = None
  progress_stage: str | None = None
  progress_percent: int = 0
  cost_micros: int | None = None
  error_code: str | None = None
  error_message: str | None = None
  provider_job_id: str | None = None
  idempotency_key: str | None = None
  completed_at: datetime | None = None
  canceled_at: datetime | None = None
  variants: list[VariantRecord] = field(default_factory=list)

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES


@dataclass
class OutboxEventRecord:
  """A durable intent to perform one side effect for a job."""

  event_id: str
  job_id: str
  event_type: str
  status: OutboxStatus
  payload: dict[str, Any]
  attempts: int
  created_at: datetime
  next_retry_at: datetime | None = None
  claimed_at: datetime | None = None
  processed_at: datetime | None = None
  last_error: str | None = None


@dataclass(frozen=True)
class SideEffectSpec:
  """Outbox row to co-commit with a status transition."""

  event_type: str
  payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletionResult:
  """What a transition into `completed` persists alongside the status."""

  variant_urls: list[str]
  cost_micros: int
  provider_job_id: str | None = None


@dataclass(frozen=True)
class OutboxStatusCounts:
  """Operator view over the outbox table."""

  ready: int
  scheduled: int
  processing: int
  stuck: int
  failed: int
  completed: int
