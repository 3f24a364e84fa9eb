import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError

from app.config import Settings
from app.core.errors import (
  CallbackAuthError,
  CallbackPayloadError,
  CallbackReplayError,
  EngineError,
  InvalidTransitionError,
  JobNotFoundError,
  ProviderRejectedError,
  TerminalStateViolationError,
  UnknownProviderError,
)
from app.core.json import EngineJSONResponse

# Most specific first; the first match decides the status code.
_ENGINE_ERROR_STATUS: tuple[tuple[type[EngineError], int], ...] = (
  (JobNotFoundError, status.HTTP_404_NOT_FOUND),
  (CallbackAuthError, status.HTTP_401_UNAUTHORIZED),
  (InvalidTransitionError, status.HTTP_409_CONFLICT),
  (TerminalStateViolationError, status.HTTP_409_CONFLICT),
  (CallbackReplayError, status.HTTP_409_CONFLICT),
  (UnknownProviderError, status.HTTP_422_UNPROCESSABLE_ENTITY),
  (ProviderRejectedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
  (CallbackPayloadError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  # Serialize exception instances explicitly to avoid leaking non-serializable objects.
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any, settings: Settings, *, request_id: str | None = None, code: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  if code:
    payload["code"] = code
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


def engine_error_status(exc: EngineError) -> int:
  """Map a domain error onto the HTTP status callers see."""
  for error_type, status_code in _ENGINE_ERROR_STATUS:
    if isinstance(exc, error_type):
      return status_code
  return status.HTTP_500_INTERNAL_SERVER_ERROR


async def global_exception_handler(request: Request, exc: Exception) -> EngineJSONResponse:
  """Global exception handler to catch unhandled errors."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return EngineJSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", settings, request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> EngineJSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  from app.config import get_settings

  settings = get_settings()
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return EngineJSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, settings, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> EngineJSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from app.config import get_settings

  settings = get_settings()
  request_id = getattr(request.state, "request_id", None)
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return EngineJSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", settings, request_id=request_id))

  # Log 4xx HTTPExceptions when explicitly enabled for debugging.
  if settings.log_http_4xx:
    logger = logging.getLogger("uvicorn.error")
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return EngineJSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, settings, request_id=request_id), headers=getattr(exc, "headers", None))


async def engine_error_handler(request: Request, exc: EngineError) -> EngineJSONResponse:
  """Return domain failures with a stable machine-readable code."""
  from app.config import get_settings

  settings = get_settings()
  request_id = getattr(request.state, "request_id", None)
  status_code = engine_error_status(exc)
  logger = logging.getLogger("uvicorn.error")
  if status_code >= 500:
    logger.error("Engine error request_id=%s path=%s code=%s", request_id, request.url.path, exc.error_code, exc_info=True)
    return EngineJSONResponse(status_code=status_code, content=_error_payload("Internal Server Error", settings, request_id=request_id, code=exc.error_code))

  # Callback auth failures are logged always; they may indicate a probing sender.
  if isinstance(exc, CallbackAuthError) or settings.log_http_4xx:
    logger.warning("Engine error request_id=%s path=%s status_code=%s code=%s detail=%s", request_id, request.url.path, status_code, exc.error_code, exc)
  return EngineJSONResponse(status_code=status_code, content=_error_payload(str(exc), settings, request_id=request_id, code=exc.error_code))
