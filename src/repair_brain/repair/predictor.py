"""Early warning from precursor signatures.

A precursor is a pattern that, left alone, tends to turn into a named
failure.  ``predict_issues`` matches every category analysis of a health
report against the table below and persists one ``Prediction`` per match.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from repair_brain.constants import DEFAULT_SAMPLE_INTERVAL_SECONDS
from repair_brain.errors import ErrorCode, Result, guarded
from repair_brain.health.analyzer import (
    ConnectionPattern,
    CpuPattern,
    ErrorRatePattern,
    HealthReport,
    LatencyPattern,
    MemoryPattern,
    PatternAnalysis,
)
from repair_brain.health.storage import MetricCategory, Prediction, Severity
from repair_brain.logging import get_logger
from repair_brain.utils import format_duration, generate_id, utcnow

if TYPE_CHECKING:
    from repair_brain.health.storage import RepairStorage

log = get_logger("repair_brain.repair.predictor")


@dataclass(frozen=True)
class PrecursorPattern:
    """One row of the precursor table.

    ``horizon_minutes`` of ``None`` means the horizon is extrapolated from
    the analysis (memory growth); ``0`` renders as "imminent".
    """

    name: str
    category: MetricCategory
    patterns: frozenset[str]
    predicted_issue: str
    severity: Severity
    preventive_action: str
    factor: float
    cap: float = 0.6
    horizon_minutes: float | None = None
    condition: Callable[[PatternAnalysis], bool] | None = None

    def matches(self, category: MetricCategory, analysis: PatternAnalysis) -> bool:
        if category is not self.category or str(analysis.pattern) not in self.patterns:
            return False
        return self.condition is None or self.condition(analysis)

    def confidence(self, analysis: PatternAnalysis) -> float:
        return round(min(self.cap, analysis.confidence * self.factor), 4)


def _no_recovery(analysis: PatternAnalysis) -> bool:
    return float(analysis.details.get("drop_ratio", 0.0)) < 0.1


PRECURSORS: list[PrecursorPattern] = [
    PrecursorPattern(
        name="memory_leak_precursor",
        category=MetricCategory.MEMORY,
        patterns=frozenset({MemoryPattern.LINEAR_GROWTH}),
        predicted_issue="memory_exhaustion",
        severity=Severity.HIGH,
        preventive_action="Force garbage collection and evict caches before memory runs out",
        factor=0.8,
        condition=_no_recovery,
    ),
    PrecursorPattern(
        name="latency_degradation_precursor",
        category=MetricCategory.LATENCY,
        patterns=frozenset({LatencyPattern.GRADUAL_DEGRADATION}),
        predicted_issue="service_timeout",
        severity=Severity.MEDIUM,
        preventive_action="Shed non-critical load and warm hot caches",
        factor=0.7,
        horizon_minutes=30,
    ),
    PrecursorPattern(
        name="error_cascade_precursor",
        category=MetricCategory.ERROR_RATE,
        patterns=frozenset({ErrorRatePattern.CASCADING, ErrorRatePattern.BURST}),
        predicted_issue="service_failure",
        severity=Severity.CRITICAL,
        preventive_action="Open circuit breakers for the failing dependencies",
        factor=0.9,
        cap=0.8,
        horizon_minutes=0,
    ),
    PrecursorPattern(
        name="connection_exhaustion_precursor",
        category=MetricCategory.CONNECTIONS,
        patterns=frozenset({ConnectionPattern.LEAK, ConnectionPattern.SATURATION}),
        predicted_issue="connection_exhaustion",
        severity=Severity.HIGH,
        preventive_action="Recycle idle connections and cap pool acquisition",
        factor=0.75,
        horizon_minutes=60,
    ),
    PrecursorPattern(
        name="cpu_trend_precursor",
        category=MetricCategory.CPU,
        patterns=frozenset({CpuPattern.GRADUAL_INCREASE}),
        predicted_issue="cpu_overload",
        severity=Severity.MEDIUM,
        preventive_action="Throttle background jobs before CPU saturates",
        factor=0.7,
        horizon_minutes=120,
    ),
    PrecursorPattern(
        name="cpu_saturation_precursor",
        category=MetricCategory.CPU,
        patterns=frozenset({CpuPattern.SUSTAINED_HIGH}),
        predicted_issue="cpu_overload",
        severity=Severity.HIGH,
        preventive_action="Throttle background jobs and defer batch work",
        factor=0.8,
        horizon_minutes=15,
    ),
]


class Predictor:
    """Turns precursor matches into persisted predictions."""

    def __init__(
        self,
        storage: RepairStorage | None = None,
        sample_interval_seconds: int = DEFAULT_SAMPLE_INTERVAL_SECONDS,
        id_factory: Callable[[str], str] = generate_id,
        precursors: list[PrecursorPattern] | None = None,
    ) -> None:
        self._storage = storage
        self._sample_interval = sample_interval_seconds
        self._id_factory = id_factory
        self._precursors = precursors if precursors is not None else PRECURSORS

    def time_to_impact(self, precursor: PrecursorPattern, analysis: PatternAnalysis) -> str:
        """Horizon text for a match.

        Growth precursors extrapolate ``mean / slope`` samples at the
        configured sample interval, so a steeper slope gives a shorter
        horizon.
        """
        if precursor.horizon_minutes is not None:
            return format_duration(precursor.horizon_minutes)
        slope = float(analysis.details.get("slope", 0.0))
        level = float(analysis.details.get("mean", 0.0))
        if slope <= 0 or level <= 0:
            return "unknown"
        samples_to_impact = level / slope
        return format_duration(samples_to_impact * self._sample_interval / 60)

    async def predict_issues(self, report: HealthReport) -> list[Prediction]:
        """Match *report* against the precursor table, best prediction first."""
        predictions: list[Prediction] = []
        source_patterns: dict[MetricCategory, str | None] = {}

        for category, analysis in report.analyses.items():
            for precursor in self._precursors:
                if not precursor.matches(category, analysis):
                    continue

                if category not in source_patterns:
                    source_patterns[category] = await self._first_pattern_id(category)

                prediction = Prediction(
                    id=self._id_factory("pred"),
                    predicted_issue=precursor.predicted_issue,
                    confidence=precursor.confidence(analysis),
                    time_to_impact=self.time_to_impact(precursor, analysis),
                    preventive_action=precursor.preventive_action,
                    created_at=utcnow(),
                    source_pattern_id=source_patterns[category],
                    category=category.value,
                    severity=precursor.severity,
                    precursor=precursor.name,
                )
                predictions.append(prediction)

                if self._storage is not None:
                    await guarded(
                        "persist_prediction",
                        self._storage.save_prediction(prediction),
                        log,
                        prediction_id=prediction.id,
                    )

        predictions.sort(key=lambda p: p.confidence, reverse=True)
        if predictions:
            log.info(
                "issues_predicted",
                count=len(predictions),
                top=predictions[0].predicted_issue,
                confidence=predictions[0].confidence,
            )
        return predictions

    async def apply_preventive_fix(
        self,
        prediction_id: str,
        outcome: str | None = None,
    ) -> Result[Prediction]:
        """Mark a stored prediction as acted upon."""
        if self._storage is None:
            return Result.failure(ErrorCode.STORE_UNAVAILABLE, "no repair store configured")

        found = await guarded(
            "load_prediction",
            self._storage.get_prediction(prediction_id),
            log,
            prediction_id=prediction_id,
        )
        if not found.ok:
            return Result(error=found.error)
        prediction = found.value
        if prediction is None:
            return Result.failure(ErrorCode.NOT_FOUND, f"prediction {prediction_id} not found")
        if prediction.applied:
            return Result.failure(
                ErrorCode.VALIDATION, f"prediction {prediction_id} already applied"
            )

        text = outcome or f"preventive action applied: {prediction.preventive_action}"
        marked = await guarded(
            "mark_prediction_applied",
            self._storage.mark_prediction_applied(prediction_id, text),
            log,
            prediction_id=prediction_id,
        )
        if not marked.ok:
            return Result(error=marked.error)
        if not marked.value:
            return Result.failure(ErrorCode.NOT_FOUND, f"prediction {prediction_id} not found")

        log.info("preventive_fix_applied", prediction_id=prediction_id)
        return Result.success(replace(prediction, applied=True, outcome=text))

    async def _first_pattern_id(self, category: MetricCategory) -> str | None:
        if self._storage is None:
            return None
        patterns = await guarded(
            "load_patterns", self._storage.get_patterns(category=category.value), log
        )
        stored = patterns.unwrap_or([])
        return stored[0].id if stored else None
