"""Outbox dispatcher: retries, terminal failures and no-op deliveries."""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.config import OutboxPolicySettings
from app.core.errors import InvalidTransitionError, ProviderUnavailableError
from app.jobs.dispatcher import HandlerRegistry, OutboxDispatcher, RetryPolicies, RetryPolicy, is_retryable_delivery_error
from app.jobs.handlers import CancelProviderJobHandler, SubmitEnhancementHandler
from app.jobs.models import CANCEL_PROVIDER_JOB, NOTIFY_COMPLETION, SUBMIT_ENHANCEMENT, OutboxEventRecord
from app.services.runtime import build_runtime
from app.utils.clock import utcnow


class FakeClock:
  def __init__(self) -> None:
    self.now = utcnow()

  def __call__(self):
    return self.now

  def advance(self, seconds: float) -> None:
    self.now = self.now + timedelta(seconds=seconds)


class ClaimStealingHandler:
  """Lets a second worker sweep and re-claim the row while this delivery is still running."""

  def __init__(self, outbox_repo, clock, error: BaseException | None = None) -> None:
    self.outbox_repo = outbox_repo
    self.clock = clock
    self.error = error

  async def handle(self, event: OutboxEventRecord) -> None:
    later = self.clock.now + timedelta(minutes=10)
    await self.outbox_repo.sweep_stale(stale_after=timedelta(minutes=5), now=later)
    [stolen] = await self.outbox_repo.claim_batch(limit=10, now=later)
    assert stolen.event_id == event.event_id
    if self.error is not None:
      raise self.error


class RecordingHandler:
  def __init__(self, error: BaseException | None = None) -> None:
    self.error = error
    self.seen: list[OutboxEventRecord] = []

  async def handle(self, event: OutboxEventRecord) -> None:
    self.seen.append(event)
    if self.error is not None:
      raise self.error


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def submit_handler(jobs_repo, state_machine, gateway) -> SubmitEnhancementHandler:
  return SubmitEnhancementHandler(jobs_repo=jobs_repo, state_machine=state_machine, gateway=gateway)


def _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, handlers, *, max_attempts: int = 5, notify_enabled: bool = False) -> OutboxDispatcher:
  return OutboxDispatcher(
    outbox_repo=outbox_repo,
    state_machine=state_machine,
    registry=HandlerRegistry(handlers),
    policies=RetryPolicies(default=RetryPolicy(max_attempts=max_attempts, base_delay=1.0, max_delay=60.0)),
    jobs_repo=jobs_repo,
    metrics=metrics,
    clock=clock,
    notify_enabled=notify_enabled,
  )


def test_backoff_doubles_and_caps() -> None:
  policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=10.0)
  assert [policy.delay_for(attempt).total_seconds() for attempt in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]


def test_policy_overrides_apply_per_event_type(settings) -> None:
  from dataclasses import replace

  tuned = replace(settings, outbox_max_attempts=5, outbox_policy_overrides={"notify_completion": OutboxPolicySettings(max_attempts=8, base_delay_seconds=2.0, max_delay_seconds=30.0)})
  policies = RetryPolicies.from_settings(tuned)

  assert policies.for_event("notify_completion") == RetryPolicy(max_attempts=8, base_delay=2.0, max_delay=30.0)
  assert policies.for_event(SUBMIT_ENHANCEMENT).max_attempts == 5


def test_retryable_classification() -> None:
  assert is_retryable_delivery_error(ProviderUnavailableError("down"))
  assert not is_retryable_delivery_error(ValueError("bad"))


@pytest.mark.anyio
async def test_mock_round_trip_completes_with_ranked_variants(make_job, submit_handler, outbox_repo, state_machine, jobs_repo, metrics, clock, mock_provider) -> None:
  job = await make_job(options={"provider": "mock", "variants": 3, "cost_micros_per_variant": 1_500})
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: submit_handler})

  cycle = await dispatcher.run_once()

  assert (cycle.claimed, cycle.completed) == (1, 1)
  finished = await jobs_repo.get_job(job.job_id)
  assert finished.status == "completed"
  assert finished.progress_percent == 100
  assert finished.cost_micros == 4_500
  assert [variant.rank for variant in finished.variants] == [0, 1, 2]
  assert [variant.output_url for variant in finished.variants] == [f"mock://{job.job_id}/variant-{rank}.png" for rank in range(3)]
  assert len(mock_provider.submissions) == 1
  [event] = await outbox_repo.list_for_job(job.job_id)
  assert event.status == "completed"
  assert metrics.outbox_processed.value(event_type=SUBMIT_ENHANCEMENT) == 1


@pytest.mark.anyio
async def test_five_timeouts_fail_the_row_and_the_job_once(make_job, submit_handler, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  job = await make_job(options={"provider": "mock", "fail_with": "timeout"})
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: submit_handler})

  for _ in range(5):
    await dispatcher.run_once()
    clock.advance(120)
  # Nothing is left to claim once the row has failed.
  extra = await dispatcher.run_once()

  assert extra.claimed == 0
  [event] = await outbox_repo.list_for_job(job.job_id)
  assert event.status == "failed"
  assert event.attempts == 5
  failed = await jobs_repo.get_job(job.job_id)
  assert failed.status == "failed"
  assert failed.error_code == "RETRIES_EXHAUSTED"
  assert metrics.outbox_failed.value(event_type=SUBMIT_ENHANCEMENT, error_class="retries_exhausted") == 1
  assert metrics.outbox_failed.total() == 1
  assert metrics.outbox_retries.total() == 4
  assert metrics.provider_calls.value(provider="mock", outcome="timeout") == 5


@pytest.mark.anyio
async def test_retry_waits_for_the_backoff_window(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  job = await make_job()
  handler = RecordingHandler(ProviderUnavailableError("busy"))
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: handler})

  first = await dispatcher.run_once()
  [event] = await outbox_repo.list_for_job(job.job_id)

  assert first.retried == 1
  assert event.status == "pending"
  assert event.attempts == 1
  assert event.next_retry_at == clock.now + timedelta(seconds=2)
  assert "ProviderUnavailableError" in event.last_error
  # Still inside the window: not claimed again.
  clock.advance(1)
  assert (await dispatcher.run_once()).claimed == 0
  clock.advance(2)
  assert (await dispatcher.run_once()).claimed == 1
  assert len(handler.seen) == 2


@pytest.mark.anyio
async def test_non_retryable_failure_fails_immediately(make_job, submit_handler, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  job = await make_job(options={"provider": "mock", "fail_with": "rejected"})
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: submit_handler})

  cycle = await dispatcher.run_once()

  assert cycle.failed == 1
  [event] = await outbox_repo.list_for_job(job.job_id)
  assert (event.status, event.attempts) == ("failed", 1)
  failed = await jobs_repo.get_job(job.job_id)
  assert failed.error_code == "PROVIDER_REJECTED"
  assert metrics.outbox_failed.value(event_type=SUBMIT_ENHANCEMENT, error_class="ProviderRejectedError") == 1
  assert metrics.outbox_retries.total() == 0


@pytest.mark.anyio
async def test_invalid_options_fail_the_job_from_queued(make_job, submit_handler, outbox_repo, state_machine, jobs_repo, metrics, clock, mock_provider) -> None:
  job = await make_job(options={"provider": "mock", "variants": 99})
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: submit_handler})

  await dispatcher.run_once()

  failed = await jobs_repo.get_job(job.job_id)
  assert failed.status == "failed"
  assert failed.error_code == "PROVIDER_REJECTED"
  assert mock_provider.submissions == []


@pytest.mark.anyio
async def test_canceled_job_turns_submission_into_a_no_op(make_job, submit_handler, outbox_repo, state_machine, jobs_repo, metrics, clock, mock_provider) -> None:
  job = await make_job()
  await state_machine.transition(job.job_id, "queued", "canceled")
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: submit_handler})

  cycle = await dispatcher.run_once()

  assert cycle.completed == 1
  assert mock_provider.submissions == []
  assert (await jobs_repo.get_job(job.job_id)).status == "canceled"


@pytest.mark.anyio
async def test_lost_transition_race_completes_the_row(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  job = await make_job()
  handler = RecordingHandler(InvalidTransitionError(job.job_id, "canceled", "rendering"))
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: handler})

  cycle = await dispatcher.run_once()

  assert cycle.completed == 1
  [event] = await outbox_repo.list_for_job(job.job_id)
  assert event.status == "completed"
  assert (await jobs_repo.get_job(job.job_id)).status == "queued"


@pytest.mark.anyio
async def test_unknown_event_type_fails_row_and_job(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  job = await make_job()
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {})

  await dispatcher.run_once()

  [event] = await outbox_repo.list_for_job(job.job_id)
  assert event.status == "failed"
  failed = await jobs_repo.get_job(job.job_id)
  assert failed.error_code == "UNKNOWN_EVENT_TYPE"


@pytest.mark.anyio
async def test_cancel_hint_reaches_the_provider(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock, gateway, mock_provider) -> None:
  from app.jobs.models import SideEffectSpec

  job = await make_job(submit=False)
  await state_machine.transition(job.job_id, "queued", "canceled", side_effect=SideEffectSpec(event_type=CANCEL_PROVIDER_JOB, payload={"provider": "mock", "provider_job_id": "mock-123"}))
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {CANCEL_PROVIDER_JOB: CancelProviderJobHandler(gateway=gateway)})

  cycle = await dispatcher.run_once()

  assert cycle.completed == 1
  assert mock_provider.cancellations == ["mock-123"]


@pytest.mark.anyio
async def test_cycle_recovers_stale_claims_first(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  await make_job()
  await outbox_repo.claim_batch(limit=10, now=clock.now - timedelta(minutes=30))
  handler = RecordingHandler()
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: handler})

  cycle = await dispatcher.run_once()

  assert (cycle.recovered, cycle.claimed, cycle.completed) == (1, 1, 1)
  assert metrics.outbox_recovered.total() == 1


@pytest.mark.anyio
async def test_active_jobs_gauge_tracks_statuses(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  await make_job(submit=False)
  second = await make_job(submit=False)
  await state_machine.transition(second.job_id, "queued", "rendering")
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {})

  await dispatcher.refresh_active_jobs()

  assert metrics.active_jobs.value(status="queued") == 1
  assert metrics.active_jobs.value(status="rendering") == 1
  assert metrics.active_jobs.value(status="uploading") == 0


@pytest.mark.anyio
async def test_completion_is_dropped_when_the_claim_was_taken_over(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  job = await make_job()
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: ClaimStealingHandler(outbox_repo, clock)})

  cycle = await dispatcher.run_once()

  assert (cycle.completed, cycle.abandoned) == (0, 1)
  assert metrics.outbox_processed.total() == 0
  [event] = await outbox_repo.list_for_job(job.job_id)
  assert event.status == "processing"
  assert event.claimed_at == clock.now + timedelta(minutes=10)


@pytest.mark.anyio
async def test_retry_is_dropped_when_the_claim_was_taken_over(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  job = await make_job()
  handler = ClaimStealingHandler(outbox_repo, clock, ProviderUnavailableError("busy"))
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: handler})

  cycle = await dispatcher.run_once()

  assert (cycle.retried, cycle.abandoned) == (0, 1)
  assert metrics.outbox_retries.total() == 0
  [event] = await outbox_repo.list_for_job(job.job_id)
  assert (event.status, event.attempts) == ("processing", 0)


@pytest.mark.anyio
async def test_exhausted_delivery_schedules_the_completion_notice(make_job, outbox_repo, state_machine, jobs_repo, metrics, clock) -> None:
  job = await make_job()
  dispatcher = _dispatcher(outbox_repo, state_machine, jobs_repo, metrics, clock, {SUBMIT_ENHANCEMENT: RecordingHandler(ProviderUnavailableError("busy"))}, max_attempts=1, notify_enabled=True)

  await dispatcher.run_once()

  assert (await jobs_repo.get_job(job.job_id)).error_code == "RETRIES_EXHAUSTED"
  events = await outbox_repo.list_for_job(job.job_id)
  assert [(event.event_type, event.status) for event in events] == [(SUBMIT_ENHANCEMENT, "failed"), (NOTIFY_COMPLETION, "pending")]


@pytest.mark.anyio
async def test_rejected_submission_notifies_when_a_target_is_configured(make_job, settings, session_factory, metrics, mock_provider, outbox_repo, jobs_repo) -> None:
  from dataclasses import replace

  runtime = build_runtime(replace(settings, notify_url="https://hooks.example.test/done"), session_factory=session_factory, providers={"mock": mock_provider}, metrics=metrics)
  job = await make_job(options={"provider": "mock", "fail_with": "rejected"})

  await runtime.dispatcher.run_once()

  failed = await jobs_repo.get_job(job.job_id)
  assert (failed.status, failed.error_code) == ("failed", "PROVIDER_REJECTED")
  assert [event.event_type for event in await outbox_repo.list_for_job(job.job_id)] == [SUBMIT_ENHANCEMENT, NOTIFY_COMPLETION]
