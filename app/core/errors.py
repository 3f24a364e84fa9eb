"""Domain error taxonomy shared by the state machine, gateway, dispatcher and callbacks."""

from __future__ import annotations


class EngineError(Exception):
  """Base class for all enhancement engine failures."""

  error_code = "ENGINE_ERROR"
  retryable = False

  def __init__(self, message: str, *, error_code: str | None = None) -> None:
    super().__init__(message)
    if error_code is not None:
      self.error_code = error_code


class InvalidTransitionError(EngineError):
  """Raised when a requested status move is not legal or the expected status is stale."""

  error_code = "INVALID_TRANSITION"

  def __init__(self, job_id: str, current: str | None, requested: str, *, expected: str | None = None) -> None:
    detail = f"Job {job_id} cannot move from {current} to {requested}"
    if expected is not None and expected != current:
      detail = f"{detail} (expected {expected})"
    super().__init__(detail)
    self.job_id = job_id
    self.current = current
    self.requested = requested
    self.expected = expected


class TerminalStateViolationError(EngineError):
  """Raised when a finished job is asked to change."""

  error_code = "TERMINAL_STATE"

  def __init__(self, job_id: str, current: str, requested: str) -> None:
    super().__init__(f"Job {job_id} is already {current}; refusing move to {requested}")
    self.job_id = job_id
    self.current = current
    self.requested = requested


class JobNotFoundError(EngineError):
  error_code = "JOB_NOT_FOUND"


class ProviderError(EngineError):
  """Base class for rendering provider failures."""

  error_code = "PROVIDER_ERROR"


class ProviderTimeoutError(ProviderError):
  error_code = "PROVIDER_TIMEOUT"
  retryable = True


class ProviderUnavailableError(ProviderError):
  error_code = "PROVIDER_UNAVAILABLE"
  retryable = True


class ProviderRejectedError(ProviderError):
  error_code = "PROVIDER_REJECTED"


class UnknownProviderError(ProviderError):
  error_code = "UNKNOWN_PROVIDER"


class DeliveryError(EngineError):
  """Base class for outbound notification delivery failures."""

  error_code = "DELIVERY_ERROR"


class DeliveryUnavailableError(DeliveryError):
  error_code = "DELIVERY_UNAVAILABLE"
  retryable = True


class DeliveryRejectedError(DeliveryError):
  error_code = "DELIVERY_REJECTED"


class CallbackAuthError(EngineError):
  """Base class for inbound callback authentication failures."""

  error_code = "CALLBACK_UNAUTHORIZED"


class InvalidSignatureError(CallbackAuthError):
  error_code = "INVALID_SIGNATURE"


class StaleTimestampError(CallbackAuthError):
  error_code = "STALE_TIMESTAMP"


class CallbackReplayError(EngineError):
  error_code = "CALLBACK_REPLAY"


class RetriesExhaustedError(EngineError):
  """Raised inside the dispatcher once an outbox row has spent its retry budget."""

  error_code = "RETRIES_EXHAUSTED"

  def __init__(self, event_type: str, attempts: int, last_error: BaseException | None) -> None:
    super().__init__(f"{event_type} gave up after {attempts} attempts: {last_error}")
    self.event_type = event_type
    self.attempts = attempts
    self.last_error = last_error


class UnknownEventTypeError(EngineError):
  error_code = "UNKNOWN_EVENT_TYPE"


class CallbackPayloadError(EngineError):
  """Raised when a verified callback body does not describe a usable update."""

  error_code = "INVALID_CALLBACK"
