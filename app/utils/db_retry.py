"""Classify database failures so store calls can retry transient ones."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from app.ai.backoff import with_retry

T = TypeVar("T")
logger = logging.getLogger(__name__)

# SQLSTATEs worth another attempt: serialization failure and deadlock.
_RETRYABLE_SQLSTATES = {"40001", "40P01"}
_CONNECTIVITY_MARKERS = ("connection", "timeout", "reset", "network", "broken pipe", "database is locked")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  category: str
  sqlstate: str | None


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Pull the SQLSTATE off the driver error wrapped by SQLAlchemy."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    # asyncpg exposes `sqlstate`; psycopg exposes `pgcode`.
    for attribute in ("sqlstate", "pgcode"):
      value = getattr(exc.orig, attribute, None)
      if value:
        return str(value)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  sqlstate = _extract_sqlstate(exc)
  if sqlstate in _RETRYABLE_SQLSTATES:
    return DBFailureClassification(retryable=True, category="transaction_conflict", sqlstate=sqlstate)
  if isinstance(exc, IntegrityError) or (sqlstate and sqlstate.startswith("23")):
    return DBFailureClassification(retryable=False, category="integrity_error", sqlstate=sqlstate)
  if isinstance(exc, OperationalError):
    message = str(exc).lower()
    if any(marker in message for marker in _CONNECTIVITY_MARKERS):
      return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)
    return DBFailureClassification(retryable=False, category="operational_error", sqlstate=sqlstate)
  return DBFailureClassification(retryable=False, category="unknown_error", sqlstate=sqlstate)


def is_retryable_db_error(exc: BaseException) -> bool:
  return classify_db_failure(exc).retryable


async def execute_with_retry(operation_name: str, fn: Callable[[], Awaitable[T]], *, max_retries: int = 2, delay: float = 0.1) -> T:
  """Run an idempotent store operation, retrying transient database failures."""

  def _log_retry(attempt: int, exc: BaseException, wait: float) -> None:
    classification = classify_db_failure(exc)
    logger.info("Retrying DB operation=%s attempt=%d category=%s sqlstate=%s backoff=%.2fs", operation_name, attempt, classification.category, classification.sqlstate or "none", wait)

  return await with_retry(fn, max_retries=max_retries, delay=delay, retryable=is_retryable_db_error, on_retry=_log_retry, max_delay=2.0)
