"""In-process counters, histograms and gauges for the job engine.

Instruments are keyed by a metric name and a fixed tuple of label names. Values are
held in memory and exposed as plain dictionaries through `snapshot()`; turning that
into a scrape format is left to whatever sits in front of the service.
"""

from __future__ import annotations

import threading
from functools import lru_cache
from typing import Any

LabelKey = tuple[tuple[str, str], ...]

DEFAULT_DURATION_BUCKETS: tuple[float, ...] = (1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600)
DEFAULT_COST_BUCKETS: tuple[float, ...] = (1_000, 10_000, 50_000, 100_000, 500_000, 1_000_000, 5_000_000)
DEFAULT_CALL_BUCKETS: tuple[float, ...] = (0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120)


class _Instrument:
  kind = "instrument"

  def __init__(self, name: str, description: str, label_names: tuple[str, ...], lock: threading.Lock) -> None:
    self.name = name
    self.description = description
    self.label_names = label_names
    self._lock = lock

  def _key(self, labels: dict[str, Any]) -> LabelKey:
    unexpected = set(labels) - set(self.label_names)
    if unexpected:
      raise ValueError(f"{self.name} does not accept labels {sorted(unexpected)}")
    return tuple((label, str(labels.get(label, ""))) for label in self.label_names)


class Counter(_Instrument):
  kind = "counter"

  def __init__(self, name: str, description: str, label_names: tuple[str, ...], lock: threading.Lock) -> None:
    super().__init__(name, description, label_names, lock)
    self._values: dict[LabelKey, float] = {}

  def inc(self, amount: float = 1, **labels: Any) -> None:
    if amount < 0:
      raise ValueError("Counters only go up.")
    key = self._key(labels)
    with self._lock:
      self._values[key] = self._values.get(key, 0) + amount

  def value(self, **labels: Any) -> float:
    key = self._key(labels)
    with self._lock:
      return self._values.get(key, 0)

  def total(self) -> float:
    with self._lock:
      return sum(self._values.values())

  def _collect(self) -> list[dict[str, Any]]:
    return [{"labels": dict(key), "value": value} for key, value in self._values.items()]

  def _reset(self) -> None:
    self._values.clear()


class Gauge(_Instrument):
  kind = "gauge"

  def __init__(self, name: str, description: str, label_names: tuple[str, ...], lock: threading.Lock) -> None:
    super().__init__(name, description, label_names, lock)
    self._values: dict[LabelKey, float] = {}

  def set(self, value: float, **labels: Any) -> None:
    key = self._key(labels)
    with self._lock:
      self._values[key] = value

  def inc(self, amount: float = 1, **labels: Any) -> None:
    key = self._key(labels)
    with self._lock:
      self._values[key] = self._values.get(key, 0) + amount

  def dec(self, amount: float = 1, **labels: Any) -> None:
    self.inc(-amount, **labels)

  def value(self, **labels: Any) -> float:
    key = self._key(labels)
    with self._lock:
      return self._values.get(key, 0)

  def _collect(self) -> list[dict[str, Any]]:
    return [{"labels": dict(key), "value": value} for key, value in self._values.items()]

  def _reset(self) -> None:
    self._values.clear()


class Histogram(_Instrument):
  kind = "histogram"

  def __init__(self, name: str, description: str, label_names: tuple[str, ...], lock: threading.Lock, buckets: tuple[float, ...]) -> None:
    super().__init__(name, description, label_names, lock)
    self.buckets = tuple(sorted(buckets))
    self._series: dict[LabelKey, dict[str, Any]] = {}

  def observe(self, value: float, **labels: Any) -> None:
    key = self._key(labels)
    with self._lock:
      series = self._series.get(key)
      if series is None:
        series = {"count": 0, "sum": 0.0, "buckets": [0] * len(self.buckets)}
        self._series[key] = series
      series["count"] += 1
      series["sum"] += float(value)
      # Cumulative buckets: every bound at or above the value counts it.
      for index, bound in enumerate(self.buckets):
        if value <= bound:
          series["buckets"][index] += 1

  def count(self, **labels: Any) -> int:
    key = self._key(labels)
    with self._lock:
      series = self._series.get(key)
      return int(series["count"]) if series else 0

  def sum(self, **labels: Any) -> float:
    key = self._key(labels)
    with self._lock:
      series = self._series.get(key)
      return float(series["sum"]) if series else 0.0

  def _collect(self) -> list[dict[str, Any]]:
    collected: list[dict[str, Any]] = []
    for key, series in self._series.items():
      buckets = {str(bound): count for bound, count in zip(self.buckets, series["buckets"], strict=True)}
      collected.append({"labels": dict(key), "count": series["count"], "sum": series["sum"], "buckets": buckets})
    return collected

  def _reset(self) -> None:
    self._series.clear()


class EngineMetrics:
  """Named instruments emitted by the job engine."""

  def __init__(self) -> None:
    self._lock = threading.Lock()
    self._instruments: dict[str, _Instrument] = {}
    self.jobs_created = self._counter("jobs_created_total", "Jobs accepted for enhancement.", ("provider", "status"))
    self.outbox_processed = self._counter("outbox_events_processed_total", "Outbox events delivered successfully.", ("event_type",))
    self.outbox_failed = self._counter("outbox_events_failed_total", "Outbox events that failed terminally.", ("event_type", "error_class"))
    self.outbox_retries = self._counter("outbox_retries_total", "Outbox deliveries rescheduled for another attempt.", ("attempt",))
    self.outbox_recovered = self._counter("outbox_events_recovered_total", "Stale processing rows returned to pending.", ())
    self.provider_calls = self._counter("provider_calls_total", "Provider gateway calls by outcome.", ("provider", "outcome"))
    self.job_duration = self._histogram("job_duration_seconds", "Time from creation to a terminal status.", ("status", "provider"), DEFAULT_DURATION_BUCKETS)
    self.job_cost = self._histogram("job_cost_micros", "Reported job cost in microdollars.", ("provider",), DEFAULT_COST_BUCKETS)
    self.provider_call_duration = self._histogram("provider_call_seconds", "Wall time of provider submissions.", ("provider",), DEFAULT_CALL_BUCKETS)
    self.active_jobs = self._gauge("active_jobs", "Jobs currently in each non-terminal status.", ("status",))

  def _counter(self, name: str, description: str, label_names: tuple[str, ...]) -> Counter:
    instrument = Counter(name, description, label_names, self._lock)
    self._instruments[name] = instrument
    return instrument

  def _gauge(self, name: str, description: str, label_names: tuple[str, ...]) -> Gauge:
    instrument = Gauge(name, description, label_names, self._lock)
    self._instruments[name] = instrument
    return instrument

  def _histogram(self, name: str, description: str, label_names: tuple[str, ...], buckets: tuple[float, ...]) -> Histogram:
    instrument = Histogram(name, description, label_names, self._lock, buckets)
    self._instruments[name] = instrument
    return instrument

  def snapshot(self) -> dict[str, Any]:
    """Return every instrument's current values as plain data."""
    with self._lock:
      return {name: {"type": instrument.kind, "description": instrument.description, "series": instrument._collect()} for name, instrument in self._instruments.items()}  # type: ignore[attr-defined]

  def reset(self) -> None:
    with self._lock:
      for instrument in self._instruments.values():
        instrument._reset()  # type: ignore[attr-defined]


@lru_cache(maxsize=1)
def get_metrics() -> EngineMetrics:
  """Process-wide metrics used when a component is not handed its own instance."""
  return EngineMetrics()
