"""UTC clock helpers shared by the repositories and the dispatcher."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
  return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
  """Attach UTC to naive timestamps read back from SQLite."""
  if value is None:
    return None
  if value.tzinfo is None:
    return value.replace(tzinfo=UTC)
  return value.astimezone(UTC)
