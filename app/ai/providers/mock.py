"""Deterministic in-process provider for local runs and tests."""

from __future__ import annotations

import asyncio
import logging
from typing import Literal

from pydantic import Field

from app.ai.providers.base import ProgressCallback, Provider, ProviderOptions, ProviderPayload, ProviderResult, ProviderVariant
from app.core.errors import ProviderRejectedError, ProviderTimeoutError, ProviderUnavailableError

logger = logging.getLogger(__name__)


class MockOptions(ProviderOptions):
  provider: Literal["mock"] = "mock"
  variants: int = Field(default=1, ge=1, le=8)
  cost_micros_per_variant: int = Field(default=25_000, ge=0)
  progress_steps: int = Field(default=4, ge=0, le=100)
  delay_seconds: float = Field(default=0.0, ge=0)
  # Return raw bytes instead of hosted URLs so the upload path runs.
  inline: bool = False
  fail_with: Literal["timeout", "unavailable", "rejected"] | None = None


class MockProvider(Provider):
  """Renders nothing; returns predictable variants and cost."""

  name = "mock"
  options_model = MockOptions

  def __init__(self) -> None:
    self.submissions: list[ProviderPayload] = []
    self.cancellations: list[str] = []

  async def submit(self, payload: ProviderPayload, *, on_progress: ProgressCallback | None = None, timeout: float) -> ProviderResult:
    options = payload.options if isinstance(payload.options, MockOptions) else MockOptions.model_validate(payload.options.model_dump())
    self.submissions.append(payload)

    if options.fail_with == "timeout":
      raise ProviderTimeoutError(f"mock provider timed out after {timeout}s")
    if options.fail_with == "unavailable":
      raise ProviderUnavailableError("mock provider unavailable")
    if options.fail_with == "rejected":
      raise ProviderRejectedError("mock provider rejected the payload")

    steps = options.progress_steps
    for step in range(1, steps + 1):
      if options.delay_seconds:
        await asyncio.sleep(options.delay_seconds / steps)
      if on_progress is not None:
        await on_progress(int(step * 100 / steps))
    if not steps and options.delay_seconds:
      await asyncio.sleep(options.delay_seconds)

    variants: list[ProviderVariant] = []
    for rank in range(options.variants):
      if options.inline:
        variants.append(ProviderVariant(data=f"mock-{payload.job_id}-{rank}".encode(), content_type="image/png"))
      else:
        variants.append(ProviderVariant(url=f"mock://{payload.job_id}/variant-{rank}.png"))

    logger.info("Mock provider rendered %d variants for job %s", len(variants), payload.job_id)
    return ProviderResult(variants=variants, cost_micros=options.cost_micros_per_variant * options.variants, provider_job_id=f"mock-{payload.job_id}")

  async def cancel(self, provider_job_id: str) -> None:
    self.cancellations.append(provider_job_id)
