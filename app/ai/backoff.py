"""Bounded retry with exponential backoff for in-process transient failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

RetryPredicate = Callable[[BaseException], bool]
RetryHook = Callable[[int, BaseException, float], None]


def backoff_delay(attempt: int, *, delay: float, max_delay: float | None = None) -> float:
  """Return `delay * 2**attempt`, capped at `max_delay` when given."""
  wait = float(delay) * (2 ** max(0, attempt))
  if max_delay is not None:
    wait = min(wait, float(max_delay))
  return wait


async def with_retry(
  fn: Callable[[], Awaitable[T]],
  *,
  max_retries: int,
  delay: float,
  retryable: RetryPredicate | None = None,
  on_retry: RetryHook | None = None,
  max_delay: float | None = None,
  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
  """
  Run `fn`, retrying failures the predicate accepts.

  The first call is attempt 0; a failed attempt `n` waits `delay * 2**n` before the
  next one. After `max_retries` retries the last error propagates unchanged, as does
  any error `retryable` rejects.
  """
  attempt = 0
  while True:
    try:
      return await fn()
    except Exception as exc:
      should_retry = retryable(exc) if retryable is not None else True
      if not should_retry or attempt >= max_retries:
        raise
      wait = backoff_delay(attempt, delay=delay, max_delay=max_delay)
      if on_retry is not None:
        on_retry(attempt + 1, exc, wait)
      logger.warning("Retry attempt %d/%d after %s: %s (waiting %.2fs)", attempt + 1, max_retries, type(exc).__name__, exc, wait)
      await sleep(wait)
      attempt += 1
