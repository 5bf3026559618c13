"""Pattern detection over metric sliding windows.

Each category has a dedicated analyzer that applies its rules in priority
order (first match wins) to a snapshot of one window.  Analyzers are pure:
the same window contents always give the same ``PatternAnalysis``.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from repair_brain.constants import (
    CRITICAL_SPIKE_SIGMA,
    INSUFFICIENT_DATA_CONFIDENCE,
    MIN_ANALYSIS_SAMPLES,
    SPIKE_SIGMA,
)
from repair_brain.health import stats
from repair_brain.health.storage import MetricCategory, Severity

# ------------------------------------------------------------------
# Pattern vocabularies
# ------------------------------------------------------------------


class MemoryPattern(StrEnum):
    STABLE = "stable"
    SPIKE = "spike"
    SAWTOOTH = "sawtooth"
    FRAGMENTATION = "fragmentation"
    LINEAR_GROWTH = "linear_growth"


class LatencyPattern(StrEnum):
    STABLE = "stable"
    SUDDEN_JUMP = "sudden_jump"
    PERIODIC_SPIKES = "periodic_spikes"
    GRADUAL_DEGRADATION = "gradual_degradation"


class ErrorRatePattern(StrEnum):
    NONE = "none"
    BURST = "burst"
    CASCADING = "cascading"
    STEADY = "steady"
    ISOLATED = "isolated"


class ConnectionPattern(StrEnum):
    STABLE = "stable"
    LEAK = "leak"
    THRASHING = "thrashing"
    SATURATION = "saturation"


class CpuPattern(StrEnum):
    NORMAL = "normal"
    SPIKE = "spike"
    SUSTAINED_HIGH = "sustained_high"
    GRADUAL_INCREASE = "gradual_increase"


# ------------------------------------------------------------------
# Report models
# ------------------------------------------------------------------


@dataclass
class PatternAnalysis:
    """Classification of one metric window."""

    pattern: str
    confidence: float
    severity: Severity
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": str(self.pattern),
            "confidence": self.confidence,
            "severity": self.severity.value,
            "details": _json_safe(self.details),
        }


@dataclass
class Issue:
    """A non-informational finding, from the monitor or reported manually."""

    category: str
    analysis: PatternAnalysis
    metric: str | None = None
    symptoms: list[str] = field(default_factory=list)
    source: str = "monitor"

    @property
    def pattern(self) -> str:
        return str(self.analysis.pattern)

    @property
    def severity(self) -> Severity:
        return self.analysis.severity

    @property
    def confidence(self) -> float:
        return self.analysis.confidence

    @property
    def issue_type(self) -> str:
        return f"{self.category}_{self.pattern}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "metric": self.metric,
            "issue_type": self.issue_type,
            "symptoms": self.symptoms,
            "source": self.source,
            **self.analysis.to_dict(),
        }


@dataclass
class HealthReport:
    """Result of one ``enhanced_check`` pass over all windows."""

    timestamp: datetime
    healthy: bool
    analyses: dict[MetricCategory, PatternAnalysis] = field(default_factory=dict)
    issues: list[Issue] = field(default_factory=list)
    rejected_metrics: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "healthy": self.healthy,
            "analyses": {cat.value: a.to_dict() for cat, a in self.analyses.items()},
            "issues": [i.to_dict() for i in self.issues],
            "rejected_metrics": self.rejected_metrics,
        }


# ------------------------------------------------------------------
# Analyzers
# ------------------------------------------------------------------


def analyze_memory_pattern(
    values: list[float], min_samples: int = MIN_ANALYSIS_SAMPLES
) -> PatternAnalysis:
    """Spike, sawtooth, fragmentation, linear growth, else stable."""
    if len(values) < min_samples:
        return _insufficient(MemoryPattern.STABLE, values)

    summary = stats.window_summary(values)
    reg = stats.linear_regression(values)
    m = summary["mean"]
    rel_std = stats.relative_stddev(values)
    dc_ratio = stats.direction_change_ratio(values)

    z = stats.spike_zscore(values)
    if z is not None and z > SPIKE_SIGMA:
        severity = Severity.CRITICAL if z >= CRITICAL_SPIKE_SIGMA else Severity.HIGH
        return _analysis(
            MemoryPattern.SPIKE, _spike_confidence(z), severity, summary, z_score=z
        )

    value_range = summary["max"] - summary["min"]
    if dc_ratio > 0.4 and value_range > 0.1 * abs(m):
        return _analysis(
            MemoryPattern.SAWTOOTH,
            min(0.95, dc_ratio),
            Severity.MEDIUM,
            summary,
            direction_change_ratio=dc_ratio,
            range=value_range,
        )

    if rel_std > 0.2 and reg.r2 < 0.5:
        return _analysis(
            MemoryPattern.FRAGMENTATION,
            min(0.9, 0.5 + rel_std),
            Severity.MEDIUM,
            summary,
            relative_stddev=rel_std,
            r2=reg.r2,
        )

    if reg.slope > 0.5 and reg.r2 > 0.6:
        if reg.slope > 5:
            severity = Severity.HIGH
        elif reg.slope > 2:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW
        return _analysis(
            MemoryPattern.LINEAR_GROWTH,
            reg.r2,
            severity,
            summary,
            slope=reg.slope,
            intercept=reg.intercept,
            r2=reg.r2,
            drop_ratio=stats.drop_ratio(values),
        )

    return _analysis(
        MemoryPattern.STABLE, _stable_confidence(rel_std), Severity.INFO, summary, slope=reg.slope
    )


def analyze_latency_pattern(
    values: list[float], min_samples: int = MIN_ANALYSIS_SAMPLES
) -> PatternAnalysis:
    """Sudden jump, periodic spikes, gradual degradation, else stable."""
    if len(values) < min_samples:
        return _insufficient(LatencyPattern.STABLE, values)

    summary = stats.window_summary(values)
    reg = stats.linear_regression(values)
    dc_ratio = stats.direction_change_ratio(values)

    z = stats.spike_zscore(values)
    if z is not None and z > SPIKE_SIGMA:
        return _analysis(
            LatencyPattern.SUDDEN_JUMP, _spike_confidence(z), Severity.HIGH, summary, z_score=z
        )

    if dc_ratio > 0.35 and summary["max"] > 1.5 * summary["mean"]:
        return _analysis(
            LatencyPattern.PERIODIC_SPIKES,
            min(0.9, dc_ratio + 0.2),
            Severity.MEDIUM,
            summary,
            direction_change_ratio=dc_ratio,
        )

    if reg.slope > 0.3 and reg.r2 > 0.5:
        severity = Severity.HIGH if reg.slope > 5 else Severity.MEDIUM
        return _analysis(
            LatencyPattern.GRADUAL_DEGRADATION,
            reg.r2,
            severity,
            summary,
            slope=reg.slope,
            r2=reg.r2,
        )

    return _analysis(
        LatencyPattern.STABLE,
        _stable_confidence(stats.relative_stddev(values)),
        Severity.INFO,
        summary,
        slope=reg.slope,
    )


def analyze_error_rate_pattern(
    values: list[float], min_samples: int = MIN_ANALYSIS_SAMPLES
) -> PatternAnalysis:
    """Error rates as fractions (0.0-1.0)."""
    if len(values) < min_samples:
        return _insufficient(ErrorRatePattern.NONE, values)

    summary = stats.window_summary(values)
    m = summary["mean"]

    if m < 0.001 and summary["max"] < 0.01:
        return _analysis(ErrorRatePattern.NONE, 0.9, Severity.INFO, summary)

    z = stats.spike_zscore(values)
    if z is not None and z > SPIKE_SIGMA and values[-1] > 0.05:
        return _analysis(
            ErrorRatePattern.BURST, _spike_confidence(z), Severity.CRITICAL, summary, z_score=z
        )

    reg = stats.linear_regression(values)
    if reg.slope > 0 and reg.r2 > 0.5 and m > 0.01:
        return _analysis(
            ErrorRatePattern.CASCADING,
            reg.r2,
            Severity.HIGH,
            summary,
            slope=reg.slope,
            r2=reg.r2,
        )

    rel_std = stats.relative_stddev(values)
    if m > 0.005 and rel_std < 0.5:
        return _analysis(
            ErrorRatePattern.STEADY,
            max(0.5, 1 - rel_std),
            Severity.MEDIUM,
            summary,
            relative_stddev=rel_std,
        )

    if m > 0:
        return _analysis(ErrorRatePattern.ISOLATED, 0.5, Severity.LOW, summary)

    return _analysis(ErrorRatePattern.NONE, 0.9, Severity.INFO, summary)


def analyze_connection_pattern(
    values: list[float], min_samples: int = MIN_ANALYSIS_SAMPLES
) -> PatternAnalysis:
    """Open connection counts: leak, thrashing, saturation, else stable."""
    if len(values) < min_samples:
        return _insufficient(ConnectionPattern.STABLE, values)

    summary = stats.window_summary(values)
    reg = stats.linear_regression(values)
    rel_std = stats.relative_stddev(values)
    dc_ratio = stats.direction_change_ratio(values)

    if reg.slope > 0.3 and reg.r2 > 0.6:
        severity = Severity.HIGH if reg.slope > 2 else Severity.MEDIUM
        return _analysis(
            ConnectionPattern.LEAK, reg.r2, severity, summary, slope=reg.slope, r2=reg.r2
        )

    if dc_ratio > 0.4 and rel_std > 0.3:
        return _analysis(
            ConnectionPattern.THRASHING,
            min(0.9, dc_ratio),
            Severity.MEDIUM,
            summary,
            direction_change_ratio=dc_ratio,
            relative_stddev=rel_std,
        )

    if summary["mean"] > 100 and rel_std < 0.2:
        return _analysis(
            ConnectionPattern.SATURATION,
            max(0.5, 1 - rel_std),
            Severity.HIGH,
            summary,
            relative_stddev=rel_std,
        )

    return _analysis(
        ConnectionPattern.STABLE, _stable_confidence(rel_std), Severity.INFO, summary
    )


def analyze_cpu_pattern(
    values: list[float], min_samples: int = MIN_ANALYSIS_SAMPLES
) -> PatternAnalysis:
    """CPU utilisation in percent: spike, sustained high, gradual increase."""
    if len(values) < min_samples:
        return _insufficient(CpuPattern.NORMAL, values)

    summary = stats.window_summary(values)
    rel_std = stats.relative_stddev(values)

    z = stats.spike_zscore(values)
    if z is not None and z > SPIKE_SIGMA and values[-1] > 80:
        return _analysis(CpuPattern.SPIKE, _spike_confidence(z), Severity.HIGH, summary, z_score=z)

    if summary["mean"] > 80 and rel_std < 0.15:
        return _analysis(
            CpuPattern.SUSTAINED_HIGH,
            max(0.5, 1 - rel_std),
            Severity.HIGH,
            summary,
            relative_stddev=rel_std,
        )

    reg = stats.linear_regression(values)
    if reg.slope > 0.2 and reg.r2 > 0.5:
        severity = Severity.HIGH if reg.slope > 2 else Severity.MEDIUM
        return _analysis(
            CpuPattern.GRADUAL_INCREASE, reg.r2, severity, summary, slope=reg.slope, r2=reg.r2
        )

    return _analysis(CpuPattern.NORMAL, _stable_confidence(rel_std), Severity.INFO, summary)


ANALYZERS: dict[MetricCategory, Callable[[list[float], int], PatternAnalysis]] = {
    MetricCategory.MEMORY: analyze_memory_pattern,
    MetricCategory.LATENCY: analyze_latency_pattern,
    MetricCategory.ERROR_RATE: analyze_error_rate_pattern,
    MetricCategory.CONNECTIONS: analyze_connection_pattern,
    MetricCategory.CPU: analyze_cpu_pattern,
}


def analyze(
    category: MetricCategory,
    values: list[float],
    min_samples: int = MIN_ANALYSIS_SAMPLES,
) -> PatternAnalysis:
    """Dispatch to the analyzer registered for *category*."""
    return ANALYZERS[category](values, min_samples)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _insufficient(pattern: str, values: list[float]) -> PatternAnalysis:
    return PatternAnalysis(
        pattern=pattern,
        confidence=INSUFFICIENT_DATA_CONFIDENCE,
        severity=Severity.INFO,
        details={"reason": "insufficient_data", "samples": len(values)},
    )


def _analysis(
    pattern: str,
    confidence: float,
    severity: Severity,
    summary: dict[str, float],
    **extra: float,
) -> PatternAnalysis:
    details: dict[str, Any] = dict(summary)
    for key, value in extra.items():
        details[key] = value if math.isinf(value) else round(value, 6)
    return PatternAnalysis(
        pattern=pattern,
        confidence=round(max(0.0, min(1.0, confidence)), 4),
        severity=severity,
        details=details,
    )


def _spike_confidence(z: float) -> float:
    if math.isinf(z):
        return 0.95
    return min(0.99, 0.6 + (z - SPIKE_SIGMA) * 0.05)


def _stable_confidence(rel_std: float) -> float:
    return max(0.5, 1 - rel_std)


def _json_safe(details: dict[str, Any]) -> dict[str, Any]:
    """Replace infinities so details survive ``json.dumps`` into JSONB."""
    return {
        k: ("inf" if isinstance(v, float) and math.isinf(v) else v) for k, v in details.items()
    }
