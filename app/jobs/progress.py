"""Progress bookkeeping for enhancement jobs."""

from __future__ import annotations

# Nominal percentage a job reports when it enters each stage.
STAGE_PERCENT: dict[str, int] = {"queued": 0, "downloading": 5, "preprocessing": 15, "rendering": 40, "postprocessing": 96, "uploading": 98, "completed": 100}

RENDER_FLOOR = 40
RENDER_CEILING = 95
RENDER_SPAN = 0.6


def nominal_percent(status: str) -> int | None:
  """Return the nominal percentage for a stage, or None for failed/canceled."""
  return STAGE_PERCENT.get(status)


def scale_render_progress(provider_percent: float) -> int:
  """Map provider progress (0-100) onto the rendering window of the job's bar."""
  scaled = RENDER_FLOOR + float(provider_percent) * RENDER_SPAN
  return int(max(RENDER_FLOOR, min(RENDER_CEILING, scaled)))


def monotonic_percent(current: int | None, proposed: int | None) -> int:
  """Never let a job's progress go backwards or past 100."""
  base = int(current or 0)
  if proposed is None:
    return base
  return max(base, min(100, int(proposed)))
