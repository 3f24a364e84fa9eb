from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator

from app.jobs.models import JobRecord, JobStatus, OutboxEventRecord, OutboxStatus, OutboxStatusCounts, VariantRecord

MAX_MASKS = 16


class JobCreateRequest(BaseModel):
  """Request payload for a new enhancement job."""

  provider: StrictStr = Field(min_length=1, description="Registered provider name.", examples=["mock"])
  image_url: StrictStr = Field(alias="imageUrl", min_length=1, description="Absolute URL or app-relative path of the input image.")
  model: StrictStr | None = Field(default=None, description="Optional provider model hint.")
  options: dict[str, Any] = Field(default_factory=dict, description="Provider-specific options; validated against the provider's schema.")
  masks: list[dict[str, Any]] = Field(default_factory=list, max_length=MAX_MASKS, description="Optional region masks forwarded to the provider.")
  calibration: float | None = Field(default=None, ge=0.0, le=1.0, description="Optional calibration strength.")
  idempotency_key: StrictStr | None = Field(default=None, alias="idempotencyKey", min_length=1, max_length=128, description="Client key that collapses duplicate submissions onto one job.")
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  @field_validator("image_url")
  @classmethod
  def _strip_image_url(cls, value: str) -> str:
    value = value.strip()
    if not value:
      raise ValueError("imageUrl must not be blank.")
    return value


class VariantResponse(BaseModel):
  variant_id: StrictStr
  output_url: StrictStr
  rank: int

  @classmethod
  def from_record(cls, record: VariantRecord) -> VariantResponse:
    return cls(variant_id=record.variant_id, output_url=record.output_url, rank=record.rank)


class JobResponse(BaseModel):
  """Status payload for an enhancement job."""

  job_id: StrictStr
  status: JobStatus
  provider: StrictStr
  model: StrictStr | None = None
  input_ref: StrictStr
  progress_stage: StrictStr | None = None
  progress_percent: int = 0
  cost_micros: int | None = None
  error_code: StrictStr | None = None
  error_message: StrictStr | None = None
  provider_job_id: StrictStr | None = None
  idempotency_key: StrictStr | None = None
  created_at: datetime
  updated_at: datetime
  completed_at: datetime | None = None
  canceled_at: datetime | None = None
  variants: list[VariantResponse] = Field(default_factory=list)

  @classmethod
  def from_record(cls, record: JobRecord) -> JobResponse:
    return cls(
      job_id=record.job_id,
      status=record.status,
      provider=record.provider,
      model=record.model,
      input_ref=record.input_ref,
      progress_stage=record.progress_stage,
      progress_percent=record.progress_percent,
      cost_micros=record.cost_micros,
      error_code=record.error_code,
      error_message=record.error_message,
      provider_job_id=record.provider_job_id,
      idempotency_key=record.idempotency_key,
      created_at=record.created_at,
      updated_at=record.updated_at,
      completed_at=record.completed_at,
      canceled_at=record.canceled_at,
      variants=[VariantResponse.from_record(variant) for variant in sorted(record.variants, key=lambda item: item.rank)],
    )


class OutboxEventResponse(BaseModel):
  event_id: StrictStr
  event_type: StrictStr
  status: OutboxStatus
  attempts: int
  created_at: datetime
  next_retry_at: datetime | None = None
  claimed_at: datetime | None = None
  processed_at: datetime | None = None
  last_error: StrictStr | None = None

  @classmethod
  def from_record(cls, record: OutboxEventRecord) -> OutboxEventResponse:
    return cls(
      event_id=record.event_id,
      event_type=record.event_type,
      status=record.status,
      attempts=record.attempts,
      created_at=record.created_at,
      next_retry_at=record.next_retry_at,
      claimed_at=record.claimed_at,
      processed_at=record.processed_at,
      last_error=record.last_error,
    )


class CallbackVariant(BaseModel):
  url: StrictStr = Field(min_length=1)
  rank: int | None = None
  model_config = ConfigDict(extra="ignore")


class CallbackPayload(BaseModel):
  """Body a provider posts to report progress or a final result."""

  status: JobStatus | None = None
  progress: float | None = Field(default=None, ge=0, le=100)
  urls: list[StrictStr] | None = None
  enhanced_image_url: StrictStr | None = Field(default=None, alias="enhancedImageUrl")
  variants: list[CallbackVariant | StrictStr] | None = None
  error_message: StrictStr | None = Field(default=None, alias="errorMessage")
  error_code: StrictStr | None = Field(default=None, alias="errorCode")
  provider_job_id: StrictStr | None = Field(default=None, alias="providerJobId")
  cost_micros: int | None = Field(default=None, alias="costMicros", ge=0)
  model_config = ConfigDict(extra="ignore", populate_by_name=True)

  def variant_urls(self) -> list[str]:
    """Output URLs in rank order: `variants` wins over `urls`, which wins over `enhancedImageUrl`."""
    if self.variants:
      ranked: list[tuple[int, int, str]] = []
      for position, item in enumerate(self.variants):
        if isinstance(item, str):
          ranked.append((position, position, item))
        else:
          ranked.append((item.rank if item.rank is not None else position, position, item.url))
      return [url for _, _, url in sorted(ranked)]
    if self.urls:
      return [url for url in self.urls if url]
    if self.enhanced_image_url:
      return [self.enhanced_image_url]
    return []


class CallbackResponse(BaseModel):
  ok: bool = True
  job_id: StrictStr
  status: JobStatus
  changed: bool


class CancelResponse(BaseModel):
  job_id: StrictStr
  status: JobStatus
  canceled_at: datetime | None = None


class OutboxProcessResponse(BaseModel):
  recovered: int
  claimed: int
  completed: int
  retried: int
  failed: int
  abandoned: int


class OutboxSummaryResponse(BaseModel):
  ready: int
  scheduled: int
  processing: int
  stuck: int
  failed: int
  completed: int

  @classmethod
  def from_counts(cls, counts: OutboxStatusCounts) -> OutboxSummaryResponse:
    return cls(ready=counts.ready, scheduled=counts.scheduled, processing=counts.processing, stuck=counts.stuck, failed=counts.failed, completed=counts.completed)
