"""Uniform entry point over the configured rendering providers."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import ValidationError

from app.ai.backoff import with_retry
from app.ai.providers.base import ProgressCallback, Provider, ProviderOptions, ProviderPayload, ProviderResult
from app.core.errors import ProviderRejectedError, ProviderTimeoutError, ProviderUnavailableError, UnknownProviderError
from app.telemetry.metrics import EngineMetrics, get_metrics

logger = logging.getLogger(__name__)


class ProgressGuard:
  """Forward provider progress at most once per whole percent and never backwards."""

  def __init__(self, on_progress: ProgressCallback | None) -> None:
    self._on_progress = on_progress
    self._last: int | None = None

  @property
  def last(self) -> int | None:
    return self._last

  async def __call__(self, percent: float) -> None:
    step = max(0, min(100, int(percent)))
    if self._last is not None and step <= self._last:
      return
    self._last = step
    if self._on_progress is not None:
      await self._on_progress(step)


def _outcome(exc: BaseException | None) -> str:
  if exc is None:
    return "ok"
  if isinstance(exc, ProviderTimeoutError):
    return "timeout"
  if isinstance(exc, ProviderUnavailableError):
    return "unavailable"
  if isinstance(exc, ProviderRejectedError):
    return "rejected"
  return "error"


class ProviderGateway:
  """Resolve providers by name and call them under a hard timeout."""

  def __init__(
    self,
    providers: dict[str, Provider],
    *,
    default_timeout: float = 60.0,
    max_timeout: float = 600.0,
    retries: int = 2,
    retry_delay: float = 0.5,
    app_url: str | None = None,
    metrics: EngineMetrics | None = None,
  ) -> None:
    self._providers = dict(providers)
    self._default_timeout = default_timeout
    self._max_timeout = max_timeout
    self._retries = retries
    self._retry_delay = retry_delay
    self._app_url = app_url
    self._metrics = metrics or get_metrics()

  def names(self) -> list[str]:
    return sorted(self._providers)

  def resolve(self, name: str) -> Provider:
    """Return the provider registered under `name`."""
    provider = self._providers.get(name)
    if provider is None:
      raise UnknownProviderError(f"Unknown provider: {name}")
    return provider

  def parse_options(self, name: str, raw: dict[str, Any] | None) -> ProviderOptions:
    """Validate options against the provider's own model; the tag is the provider name."""
    provider = self.resolve(name)
    data = dict(raw or {})
    tag = data.setdefault("provider", name)
    if tag != name:
      raise ProviderRejectedError(f"Options are tagged for {tag!r}, not {name!r}")
    try:
      return provider.options_model.model_validate(data)
    except ValidationError as exc:
      raise ProviderRejectedError(f"Invalid options for provider {name}: {exc.errors(include_url=False)}") from exc

  def resolve_image_url(self, image_ref: str) -> str:
    """Return an absolute http(s) URL for the input image."""
    parsed = urlparse(image_ref)
    if parsed.scheme in {"http", "https"} and parsed.netloc:
      return image_ref
    if not parsed.scheme and image_ref.startswith("/") and self._app_url:
      return urljoin(self._app_url.rstrip("/") + "/", image_ref.lstrip("/"))
    raise ProviderRejectedError(f"Input image is not resolvable to an absolute URL: {image_ref}")

  def effective_timeout(self, timeout: float | None) -> float:
    budget = self._default_timeout if timeout is None else float(timeout)
    return max(0.001, min(budget, self._max_timeout))

  async def submit(self, name: str, payload: ProviderPayload, *, on_progress: ProgressCallback | None = None, timeout: float | None = None) -> ProviderResult:
    """Submit to a provider; transport blips are retried, everything else is classified and raised."""
    provider = self.resolve(name)
    budget = self.effective_timeout(timeout)
    guard = ProgressGuard(on_progress)

    async def _attempt() -> ProviderResult:
      try:
        return await asyncio.wait_for(provider.submit(payload, on_progress=guard, timeout=budget), timeout=budget)
      except TimeoutError as exc:
        raise ProviderTimeoutError(f"Provider {name} did not answer within {budget}s") from exc
      except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(f"Provider {name} timed out: {exc}") from exc
      except httpx.TransportError as exc:
        raise ProviderUnavailableError(f"Provider {name} unreachable: {exc}") from exc

    started = time.perf_counter()
    error: BaseException | None = None
    try:
      return await with_retry(_attempt, max_retries=self._retries, delay=self._retry_delay, retryable=lambda exc: isinstance(exc, ProviderUnavailableError), max_delay=10.0)
    except Exception as exc:
      error = exc
      raise
    finally:
      elapsed = time.perf_counter() - started
      outcome = _outcome(error)
      self._metrics.provider_calls.inc(provider=name, outcome=outcome)
      self._metrics.provider_call_duration.observe(elapsed, provider=name)
      logger.info("Provider call provider=%s job=%s outcome=%s took=%.2fs", name, payload.job_id, outcome, elapsed)

  async def cancel(self, name: str, provider_job_id: str) -> bool:
    """Ask the provider to stop a job; failures are logged, never raised."""
    try:
      provider = self.resolve(name)
      await asyncio.wait_for(provider.cancel(provider_job_id), timeout=self.effective_timeout(None))
    except Exception as exc:  # noqa: BLE001
      logger.warning("Provider cancel hint failed provider=%s provider_job_id=%s: %s", name, provider_job_id, exc)
      return False
    return True
