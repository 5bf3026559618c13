"""Sliding-window metric monitor.

The monitor owns one bounded window per metric name.  Producers call
``record_metric`` (safe from several threads or tasks); a single consumer
calls ``enhanced_check`` to classify every window and build a
``HealthReport``.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from datetime import datetime
from typing import TYPE_CHECKING, Any

from repair_brain.constants import DEFAULT_WINDOW_CAPACITY, MIN_ANALYSIS_SAMPLES
from repair_brain.errors import guarded
from repair_brain.health.analyzer import HealthReport, Issue, PatternAnalysis, analyze
from repair_brain.health.storage import MetricCategory, MetricSample, Severity
from repair_brain.logging import get_logger
from repair_brain.utils import utcnow

if TYPE_CHECKING:
    from repair_brain.health.storage import RepairStorage

log = get_logger("repair_brain.health.monitor")


class MetricWindow:
    """Fixed-capacity, oldest-evicted buffer of samples for one metric."""

    def __init__(self, name: str, category: MetricCategory, capacity: int) -> None:
        self.name = name
        self.category = category
        self.capacity = capacity
        self._samples: deque[float] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, value: float) -> None:
        with self._lock:
            self._samples.append(value)

    def snapshot(self) -> list[float]:
        """A copy of the samples, oldest first."""
        with self._lock:
            return list(self._samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)


class Monitor:
    """Records metrics and classifies their windows per category."""

    def __init__(
        self,
        storage: RepairStorage | None = None,
        capacity: int = DEFAULT_WINDOW_CAPACITY,
        min_samples: int = MIN_ANALYSIS_SAMPLES,
    ) -> None:
        self._storage = storage
        self._capacity = capacity
        self._min_samples = min_samples
        self._windows: dict[str, MetricWindow] = {}
        self._registry_lock = threading.Lock()
        self._last_recorded_at: datetime = utcnow()

    @property
    def metric_names(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._windows)

    def window(self, name: str) -> list[float]:
        """Samples currently held for *name* (empty if never recorded)."""
        with self._registry_lock:
            win = self._windows.get(name)
        return win.snapshot() if win is not None else []

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_metric(
        self,
        name: str,
        value: float,
        metadata: dict[str, Any] | None = None,
    ) -> MetricSample:
        """Append *value* to the window for *name* and persist it.

        Raises ``ValueError`` for unknown metric names or non-finite values.
        A failed persist is logged and otherwise ignored.
        """
        category = MetricCategory.classify(name)
        if category is None:
            raise ValueError(f"Unknown metric name: {name!r}")
        numeric = float(value)
        if not math.isfinite(numeric):
            raise ValueError(f"Metric {name!r} must be finite, got {value!r}")

        with self._registry_lock:
            win = self._windows.get(name)
            if win is None:
                win = MetricWindow(name, category, self._capacity)
                self._windows[name] = win
            win.append(numeric)
            recorded_at = utcnow()
            self._last_recorded_at = recorded_at

        if self._storage is not None:
            await guarded(
                "persist_metric",
                self._storage.save_metric(name, numeric, recorded_at, metadata),
                log,
                metric=name,
            )

        return MetricSample(
            metric_type=name,
            value=numeric,
            recorded_at=recorded_at,
            metadata=metadata or {},
        )

    async def monitor(self, metrics: dict[str, Any]) -> HealthReport:
        """Record every numeric entry of *metrics*, then run ``enhanced_check``."""
        rejected: list[str] = []
        for name, value in metrics.items():
            if isinstance(value, bool) or not isinstance(value, int | float):
                log.warning("metric_rejected", metric=name, reason="not_numeric")
                rejected.append(name)
                continue
            try:
                await self.record_metric(name, value)
            except ValueError as exc:
                log.warning("metric_rejected", metric=name, reason=str(exc))
                rejected.append(name)

        report = self.enhanced_check()
        report.rejected_metrics = rejected
        return report

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def enhanced_check(self) -> HealthReport:
        """Classify every tracked window and assemble a ``HealthReport``.

        When several metrics share a category, the most severe analysis
        represents it.  Reads windows only.
        """
        with self._registry_lock:
            windows = list(self._windows.values())
            timestamp = self._last_recorded_at

        by_category: dict[MetricCategory, list[tuple[str, PatternAnalysis]]] = {}
        for win in windows:
            samples = win.snapshot()
            if not samples:
                continue
            analysis = analyze(win.category, samples, self._min_samples)
            analysis.details["metric"] = win.name
            by_category.setdefault(win.category, []).append((win.name, analysis))

        analyses: dict[MetricCategory, PatternAnalysis] = {}
        issues: list[Issue] = []
        for category in MetricCategory:
            candidates = by_category.get(category)
            if not candidates:
                continue
            name, worst = min(
                candidates,
                key=lambda item: (-item[1].severity.rank, -item[1].confidence, item[0]),
            )
            analyses[category] = worst
            if worst.severity is not Severity.INFO:
                issues.append(Issue(category=category.value, analysis=worst, metric=name))

        healthy = not any(issue.severity.at_least(Severity.MEDIUM) for issue in issues)
        return HealthReport(timestamp=timestamp, healthy=healthy, analyses=analyses, issues=issues)

    def latest_values(self) -> dict[str, float]:
        """Newest sample per category (the largest when several metrics share one)."""
        with self._registry_lock:
            windows = list(self._windows.values())

        latest: dict[str, float] = {}
        for win in windows:
            samples = win.snapshot()
            if not samples:
                continue
            key = win.category.value
            latest[key] = max(latest.get(key, samples[-1]), samples[-1])
        return latest
