"""Progress bookkeeping helpers."""

from __future__ import annotations

from app.jobs.progress import STAGE_PERCENT, monotonic_percent, nominal_percent, scale_render_progress


def test_stage_percentages_increase_along_the_lifecycle() -> None:
  order = ["queued", "downloading", "preprocessing", "rendering", "postprocessing", "uploading", "completed"]
  values = [STAGE_PERCENT[stage] for stage in order]
  assert values == sorted(values)
  assert nominal_percent("failed") is None


def test_render_progress_stays_inside_its_window() -> None:
  assert scale_render_progress(0) == 40
  assert scale_render_progress(50) == 70
  assert scale_render_progress(100) == 95
  assert scale_render_progress(250) == 95
  assert scale_render_progress(-5) == 40


def test_progress_never_goes_backwards() -> None:
  assert monotonic_percent(70, 40) == 70
  assert monotonic_percent(70, 80) == 80
  assert monotonic_percent(70, None) == 70
  assert monotonic_percent(None, 150) == 100
