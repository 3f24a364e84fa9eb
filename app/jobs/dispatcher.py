"""Outbox dispatcher: claim due events, deliver them, settle the outcome.

Delivery is at-least-once. A row moves pending -> processing through the atomic
claim, then to completed, back to pending with a backoff, or to failed once its
retry budget is spent or the error is not worth retrying. A failed row also fails
its job so the outcome is visible on the job record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

import httpx

from app.ai.backoff import backoff_delay
from app.config import OutboxPolicySettings, Settings
from app.core.errors import EngineError, InvalidTransitionError, JobNotFoundError, RetriesExhaustedError, TerminalStateViolationError, UnknownEventTypeError
from app.jobs.handlers import notification_side_effect
from app.jobs.models import ACTIVE_STATUSES, OutboxEventRecord
from app.jobs.state_machine import JobStateMachine
from app.storage.jobs_repo import JobsRepository, OutboxRepository
from app.telemetry.metrics import EngineMetrics, get_metrics
from app.utils.clock import utcnow
from app.utils.db_retry import execute_with_retry, is_retryable_db_error

logger = logging.getLogger(__name__)

OUTBOX_DELIVERY_FAILED = "OUTBOX_DELIVERY_FAILED"


class OutboxHandler(Protocol):
  """Side-effect handler for one outbox event type."""

  async def handle(self, event: OutboxEventRecord) -> None:
    """Perform the effect; raise to signal failure."""


class HandlerRegistry:
  """Registry mapping outbox event types to handlers."""

  def __init__(self, handlers: dict[str, OutboxHandler]) -> None:
    self._handlers = dict(handlers)

  def resolve(self, event_type: str) -> OutboxHandler:
    handler = self._handlers.get(event_type)
    if handler is None:
      raise UnknownEventTypeError(f"No handler registered for outbox event type: {event_type}")
    return handler

  def event_types(self) -> list[str]:
    return sorted(self._handlers)


@dataclass(frozen=True)
class RetryPolicy:
  """Retry budget for an event type: attempts cap and exponential backoff."""

  max_attempts: int = 5
  base_delay: float = 1.0
  max_delay: float = 60.0

  def delay_for(self, attempts: int) -> timedelta:
    """Wait before the next try after `attempts` failed deliveries."""
    return timedelta(seconds=backoff_delay(attempts, delay=self.base_delay, max_delay=self.max_delay))


@dataclass(frozen=True)
class RetryPolicies:
  """Default policy with per-event-type overrides."""

  default: RetryPolicy = field(default_factory=RetryPolicy)
  overrides: dict[str, RetryPolicy] = field(default_factory=dict)

  def for_event(self, event_type: str) -> RetryPolicy:
    return self.overrides.get(event_type, self.default)

  @classmethod
  def from_settings(cls, settings: Settings) -> RetryPolicies:
    def _convert(policy: OutboxPolicySettings) -> RetryPolicy:
      return RetryPolicy(max_attempts=policy.max_attempts, base_delay=policy.base_delay_seconds, max_delay=policy.max_delay_seconds)

    default = RetryPolicy(max_attempts=settings.outbox_max_attempts, base_delay=settings.outbox_base_delay_seconds, max_delay=settings.outbox_max_delay_seconds)
    return cls(default=default, overrides={event_type: _convert(policy) for event_type, policy in settings.outbox_policy_overrides.items()})


@dataclass
class DispatchCycleResult:
  """Tally of one claim-and-deliver cycle."""

  recovered: int = 0
  claimed: int = 0
  completed: int = 0
  retried: int = 0
  failed: int = 0
  abandoned: int = 0

  def record(self, outcome: str) -> None:
    if outcome == "completed":
      self.completed += 1
    elif outcome == "retried":
      self.retried += 1
    elif outcome == "failed":
      self.failed += 1
    else:
      self.abandoned += 1


def is_retryable_delivery_error(exc: BaseException) -> bool:
  """Network, timeout and 5xx-class failures are retried; everything else is not."""
  if isinstance(exc, EngineError):
    return exc.retryable
  if isinstance(exc, httpx.TransportError):
    return True
  return is_retryable_db_error(exc)


class OutboxDispatcher:
  """Claims outbox rows and drives their handlers with bounded retries."""

  def __init__(
    self,
    *,
    outbox_repo: OutboxRepository,
    state_machine: JobStateMachine,
    registry: HandlerRegistry,
    policies: RetryPolicies | None = None,
    jobs_repo: JobsRepository | None = None,
    batch_size: int = 10,
    concurrency: int = 4,
    stale_after: timedelta = timedelta(minutes=5),
    poll_interval: float = 2.0,
    metrics: EngineMetrics | None = None,
    clock: Callable[[], datetime] = utcnow,
    notify_enabled: bool = False,
  ) -> None:
    self._outbox_repo = outbox_repo
    self._state_machine = state_machine
    self._registry = registry
    self._policies = policies or RetryPolicies()
    self._jobs_repo = jobs_repo
    self._batch_size = batch_size
    self._concurrency = max(1, concurrency)
    self._stale_after = stale_after
    self._poll_interval = poll_interval
    self._metrics = metrics or get_metrics()
    self._clock = clock
    self._notify_enabled = notify_enabled

  @property
  def stale_after(self) -> timedelta:
    return self._stale_after

  async def run_once(self, now: datetime | None = None) -> DispatchCycleResult:
    """Sweep abandoned rows, claim a batch and deliver it concurrently."""
    now = now or self._clock()
    result = DispatchCycleResult()
    result.recovered = await execute_with_retry("outbox_sweep_stale", lambda: self._outbox_repo.sweep_stale(stale_after=self._stale_after, now=now))
    if result.recovered:
      self._metrics.outbox_recovered.inc(result.recovered)

    events = await execute_with_retry("outbox_claim_batch", lambda: self._outbox_repo.claim_batch(limit=self._batch_size, now=now))
    result.claimed = len(events)
    if events:
      semaphore = asyncio.Semaphore(self._concurrency)

      async def _bounded(event: OutboxEventRecord) -> str:
        async with semaphore:
          return await self._dispatch_contained(event)

      for outcome in await asyncio.gather(*(_bounded(event) for event in events)):
        result.record(outcome)
      logger.info("Outbox cycle claimed=%d completed=%d retried=%d failed=%d recovered=%d", result.claimed, result.completed, result.retried, result.failed, result.recovered)

    await self.refresh_active_jobs()
    return result

  async def run_forever(self, stop_event: asyncio.Event) -> None:
    """Poll until `stop_event` is set; a cycle in progress always finishes first."""
    logger.info("Outbox dispatcher started batch_size=%d concurrency=%d poll=%.1fs", self._batch_size, self._concurrency, self._poll_interval)
    while not stop_event.is_set():
      claimed = 0
      try:
        cycle = await self.run_once()
        claimed = cycle.claimed
      except Exception as exc:  # noqa: BLE001
        logger.error("Outbox dispatcher cycle failed: %s", exc, exc_info=True)

      # A full batch means more work is probably waiting.
      if claimed >= self._batch_size:
        continue
      try:
        await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
      except TimeoutError:
        pass
    logger.info("Outbox dispatcher stopped.")

  async def dispatch(self, event: OutboxEventRecord) -> str:
    """Deliver one claimed event and settle its row; returns the outcome name."""
    try:
      handler = self._registry.resolve(event.event_type)
      await handler.handle(event)
    except (InvalidTransitionError, TerminalStateViolationError) as exc:
      # The job moved on (e.g. canceled) while the effect was in flight; nothing left to do.
      logger.info("Outbox event %s (%s) became a no-op: %s", event.event_id, event.event_type, exc)
    except Exception as exc:  # noqa: BLE001
      return await self._settle_failure(event, exc)

    settled = await execute_with_retry("outbox_mark_completed", lambda: self._outbox_repo.mark_completed(event.event_id, claimed_at=event.claimed_at, attempts=event.attempts, now=self._clock()))
    if not settled:
      return "abandoned"
    self._metrics.outbox_processed.inc(event_type=event.event_type)
    return "completed"

  async def _dispatch_contained(self, event: OutboxEventRecord) -> str:
    """Keep one event's store failure from taking down the rest of the batch."""
    try:
      return await self.dispatch(event)
    except Exception as exc:  # noqa: BLE001
      # The row stays in processing; the stale sweep hands it out again later.
      logger.error("Outbox event %s could not be settled: %s", event.event_id, exc, exc_info=True)
      return "abandoned"

  async def _settle_failure(self, event: OutboxEventRecord, exc: BaseException) -> str:
    attempts = event.attempts + 1
    policy = self._policies.for_event(event.event_type)
    retryable = is_retryable_delivery_error(exc)
    error_text = f"{type(exc).__name__}: {exc}"

    if retryable and attempts < policy.max_attempts:
      next_retry_at = self._clock() + policy.delay_for(attempts)
      settled = await execute_with_retry("outbox_schedule_retry", lambda: self._outbox_repo.schedule_retry(event.event_id, claimed_at=event.claimed_at, attempts=attempts, next_retry_at=next_retry_at, error=error_text))
      if not settled:
        return "abandoned"
      self._metrics.outbox_retries.inc(attempt=attempts)
      logger.warning("Outbox event %s (%s) attempt %d/%d failed; retrying at %s: %s", event.event_id, event.event_type, attempts, policy.max_attempts, next_retry_at.isoformat(), error_text)
      return "retried"

    if retryable:
      exhausted = RetriesExhaustedError(event.event_type, attempts, exc)
      error_code = exhausted.error_code
      error_class = "retries_exhausted"
      error_text = str(exhausted)
    else:
      error_code = exc.error_code if isinstance(exc, EngineError) else OUTBOX_DELIVERY_FAILED
      error_class = type(exc).__name__

    settled = await execute_with_retry("outbox_mark_failed", lambda: self._outbox_repo.mark_failed(event.event_id, claimed_at=event.claimed_at, attempts=attempts, error=error_text, now=self._clock()))
    if not settled:
      return "abandoned"

    self._metrics.outbox_failed.inc(event_type=event.event_type, error_class=error_class)
    logger.error("Outbox event %s (%s) failed terminally after %d attempts code=%s: %s", event.event_id, event.event_type, attempts, error_code, error_text)
    await self._fail_job(event, error_code=error_code, error_message=error_text)
    return "failed"

  async def _fail_job(self, event: OutboxEventRecord, *, error_code: str, error_message: str) -> None:
    try:
      await self._state_machine.force_fail(event.job_id, error_code=error_code, error_message=error_message, side_effect=notification_side_effect(self._notify_enabled))
    except JobNotFoundError:
      logger.warning("Outbox event %s references missing job %s", event.event_id, event.job_id)

  async def refresh_active_jobs(self) -> None:
    """Set the active-jobs gauge from the database."""
    if self._jobs_repo is None:
      return
    counts = await self._jobs_repo.count_by_status()
    for status in ACTIVE_STATUSES:
      self._metrics.active_jobs.set(counts.get(status, 0), status=status)
