"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class OutboxPolicySettings:
  """Retry budget for one outbox event type."""

  max_attempts: int
  base_delay_seconds: float
  max_delay_seconds: float


@dataclass(frozen=True)
class Settings:
  """Typed settings for the enhancement engine."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_max_bytes: int
  log_backup_count: int
  log_dir: str | None
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  auto_create_schema: bool
  app_url: str | None
  callback_secret: str | None
  callback_tolerance_seconds: int
  task_secret: str | None
  workflow_webhook_url: str | None
  notify_url: str | None
  provider_timeout_seconds: float
  provider_max_timeout_seconds: float
  provider_retries: int
  outbox_max_attempts: int
  outbox_base_delay_seconds: float
  outbox_max_delay_seconds: float
  outbox_stale_after_seconds: int
  outbox_batch_size: int
  outbox_poll_seconds: float
  outbox_concurrency: int
  dispatcher_enabled: bool
  storage_bucket: str
  gcs_storage_host: str | None
  gcp_project_id: str | None
  outbox_policy_overrides: dict[str, OutboxPolicySettings] = field(default_factory=dict, hash=False)

  def outbox_policy(self, event_type: str) -> OutboxPolicySettings:
    """Return the retry budget for an event type, falling back to the global default."""
    override = self.outbox_policy_overrides.get(event_type)
    if override is not None:
      return override
    return OutboxPolicySettings(max_attempts=self.outbox_max_attempts, base_delay_seconds=self.outbox_base_delay_seconds, max_delay_seconds=self.outbox_max_delay_seconds)


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost:3000",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("ENHANCE_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("ENHANCE_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_json_dict(raw: str | None, default: dict[str, Any]) -> dict[str, Any]:
  if not raw:
    return default
  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError(f"Invalid JSON object: {exc}") from exc
  if not isinstance(parsed, dict):
    raise ValueError("Expected a JSON object.")
  return parsed


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_policy_overrides(raw: str | None, *, default: OutboxPolicySettings) -> dict[str, OutboxPolicySettings]:
  """Parse per-event-type retry overrides, e.g. {"notify_completion": {"max_attempts": 8}}."""
  try:
    payload = _parse_json_dict(raw, {})
  except ValueError as exc:
    raise ValueError(f"ENHANCE_OUTBOX_POLICY_OVERRIDES is malformed: {exc}") from exc

  overrides: dict[str, OutboxPolicySettings] = {}
  for event_type, entry in payload.items():
    if not isinstance(entry, dict):
      raise ValueError(f"ENHANCE_OUTBOX_POLICY_OVERRIDES[{event_type}] must be an object.")
    policy = OutboxPolicySettings(
      max_attempts=int(entry.get("max_attempts", default.max_attempts)),
      base_delay_seconds=float(entry.get("base_delay_seconds", default.base_delay_seconds)),
      max_delay_seconds=float(entry.get("max_delay_seconds", default.max_delay_seconds)),
    )
    if policy.max_attempts <= 0:
      raise ValueError(f"ENHANCE_OUTBOX_POLICY_OVERRIDES[{event_type}].max_attempts must be positive.")
    overrides[str(event_type)] = policy

  return overrides


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("ENHANCE_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("ENHANCE_DEBUG"))

  log_max_bytes = _positive_int("ENHANCE_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("ENHANCE_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("ENHANCE_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Signed callback verification.
  callback_tolerance_seconds = _positive_int("ENHANCE_CALLBACK_TOLERANCE_SECONDS", "300")

  # Provider call budget.
  provider_timeout_seconds = _positive_float("ENHANCE_PROVIDER_TIMEOUT_SECONDS", "60")
  provider_max_timeout_seconds = _positive_float("ENHANCE_PROVIDER_MAX_TIMEOUT_SECONDS", "600")
  if provider_timeout_seconds > provider_max_timeout_seconds:
    raise ValueError("ENHANCE_PROVIDER_TIMEOUT_SECONDS must not exceed ENHANCE_PROVIDER_MAX_TIMEOUT_SECONDS.")
  provider_retries = int(os.getenv("ENHANCE_PROVIDER_RETRIES", "2"))
  if provider_retries < 0:
    raise ValueError("ENHANCE_PROVIDER_RETRIES must be zero or a positive integer.")

  # Outbox retry budget with optional per-event-type overrides.
  outbox_max_attempts = _positive_int("ENHANCE_OUTBOX_MAX_ATTEMPTS", "5")
  outbox_base_delay_seconds = _positive_float("ENHANCE_OUTBOX_BASE_DELAY_SECONDS", "1")
  outbox_max_delay_seconds = _positive_float("ENHANCE_OUTBOX_MAX_DELAY_SECONDS", "60")
  default_policy = OutboxPolicySettings(max_attempts=outbox_max_attempts, base_delay_seconds=outbox_base_delay_seconds, max_delay_seconds=outbox_max_delay_seconds)
  outbox_policy_overrides = _parse_policy_overrides(os.getenv("ENHANCE_OUTBOX_POLICY_OVERRIDES"), default=default_policy)

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("ENHANCE_ALLOWED_ORIGINS")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_dir=_optional_str(os.getenv("ENHANCE_LOG_DIR")),
    log_http_4xx=_parse_bool(os.getenv("ENHANCE_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("ENHANCE_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("ENHANCE_PG_CONNECT_TIMEOUT", "5"),
    auto_create_schema=_parse_bool(os.getenv("ENHANCE_AUTO_CREATE_SCHEMA")),
    app_url=_optional_str(os.getenv("ENHANCE_APP_URL")),
    callback_secret=_optional_str(os.getenv("ENHANCE_CALLBACK_SECRET")),
    callback_tolerance_seconds=callback_tolerance_seconds,
    task_secret=_optional_str(os.getenv("ENHANCE_TASK_SECRET")),
    workflow_webhook_url=_optional_str(os.getenv("ENHANCE_WORKFLOW_WEBHOOK_URL")),
    notify_url=_optional_str(os.getenv("ENHANCE_NOTIFY_URL")),
    provider_timeout_seconds=provider_timeout_seconds,
    provider_max_timeout_seconds=provider_max_timeout_seconds,
    provider_retries=provider_retries,
    outbox_max_attempts=outbox_max_attempts,
    outbox_base_delay_seconds=outbox_base_delay_seconds,
    outbox_max_delay_seconds=outbox_max_delay_seconds,
    outbox_stale_after_seconds=_positive_int("ENHANCE_OUTBOX_STALE_AFTER_SECONDS", "300"),
    outbox_batch_size=_positive_int("ENHANCE_OUTBOX_BATCH_SIZE", "10"),
    outbox_poll_seconds=_positive_float("ENHANCE_OUTBOX_POLL_SECONDS", "2"),
    outbox_concurrency=_positive_int("ENHANCE_OUTBOX_CONCURRENCY", "4"),
    dispatcher_enabled=_parse_bool(os.getenv("ENHANCE_DISPATCHER_ENABLED", "true")),
    storage_bucket=os.getenv("ENHANCE_STORAGE_BUCKET", "enhancement-variants"),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    outbox_policy_overrides=outbox_policy_overrides,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration."""
  # Keep database configuration isolated so offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("ENHANCE_DEBUG"))
  pg_connect_timeout = int(os.getenv("ENHANCE_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("ENHANCE_PG_CONNECT_TIMEOUT must be a positive integer.")

  # Support fallback to DATABASE_URL for hosted Postgres providers.
  pg_dsn = os.getenv("ENHANCE_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
