"""Base interfaces for rendering providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict

ProgressCallback = Callable[[int], Awaitable[None]]


class ProviderOptions(BaseModel):
  """Provider-specific options; each provider narrows this with its own fields."""

  model_config = ConfigDict(extra="forbid")

  provider: str


@dataclass(frozen=True)
class ProviderPayload:
  """What the engine hands a provider for one enhancement."""

  job_id: str
  image_url: str
  options: ProviderOptions
  masks: list[dict[str, Any]] = field(default_factory=list)
  calibration: float | None = None
  model: str | None = None


@dataclass(frozen=True)
class ProviderVariant:
  """One rendered output, either already hosted or as raw bytes to upload."""

  url: str | None = None
  data: bytes | None = None
  content_type: str = "image/png"


@dataclass(frozen=True)
class ProviderResult:
  """Canonical result of a provider submission."""

  variants: list[ProviderVariant]
  cost_micros: int
  provider_job_id: str | None = None
  # True when the provider accepted the job and will report completion later.
  pending: bool = False


class Provider(ABC):
  """Abstract base class for rendering providers."""

  name: str
  options_model: type[ProviderOptions] = ProviderOptions

  @abstractmethod
  async def submit(self, payload: ProviderPayload, *, on_progress: ProgressCallback | None = None, timeout: float) -> ProviderResult:
    """Submit an enhancement and return the canonical result."""

  async def cancel(self, provider_job_id: str) -> None:
    """Best-effort request to stop a job the provider is still working on."""
    return None
