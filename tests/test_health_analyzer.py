"""Tests for the per-category pattern analyzers in repair_brain.health.analyzer."""

from __future__ import annotations

import math
from datetime import UTC, datetime

import pytest

from repair_brain.health.analyzer import (
    ConnectionPattern,
    CpuPattern,
    ErrorRatePattern,
    HealthReport,
    Issue,
    LatencyPattern,
    MemoryPattern,
    PatternAnalysis,
    analyze,
    analyze_connection_pattern,
    analyze_cpu_pattern,
    analyze_error_rate_pattern,
    analyze_latency_pattern,
    analyze_memory_pattern,
)
from repair_brain.health.storage import MetricCategory, Severity

MEMORY_GROWTH = [100.0, 105.0, 112.0, 121.0, 132.0, 145.0, 160.0, 177.0, 196.0, 217.0]


def _linear(start: float, step: float, n: int = 10) -> list[float]:
    return [start + step * i for i in range(n)]


# ---------------------------------------------------------------------------
# Insufficient data
# ---------------------------------------------------------------------------


class TestInsufficientData:
    """Windows shorter than the minimum never raise an issue."""

    @pytest.mark.parametrize(
        ("category", "expected"),
        [
            (MetricCategory.MEMORY, MemoryPattern.STABLE),
            (MetricCategory.LATENCY, LatencyPattern.STABLE),
            (MetricCategory.ERROR_RATE, ErrorRatePattern.NONE),
            (MetricCategory.CONNECTIONS, ConnectionPattern.STABLE),
            (MetricCategory.CPU, CpuPattern.NORMAL),
        ],
    )
    def test_short_window_is_info(self, category: MetricCategory, expected: str) -> None:
        result = analyze(category, [1.0, 500.0, 2.0, 900.0])
        assert result.pattern == expected
        assert result.severity is Severity.INFO
        assert result.confidence == pytest.approx(0.1)
        assert result.details["reason"] == "insufficient_data"

    def test_min_samples_is_configurable(self) -> None:
        result = analyze_memory_pattern(_linear(100, 10, 3), min_samples=3)
        assert result.details.get("reason") != "insufficient_data"


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class TestMemoryPattern:
    """Tests for analyze_memory_pattern()."""

    def test_linear_growth_scenario(self) -> None:
        result = analyze_memory_pattern(MEMORY_GROWTH)
        assert result.pattern == MemoryPattern.LINEAR_GROWTH
        assert result.severity.at_least(Severity.MEDIUM)
        assert result.confidence == pytest.approx(0.9635, abs=1e-3)
        assert result.details["slope"] == pytest.approx(13.0)
        assert result.details["drop_ratio"] == 0.0

    @pytest.mark.parametrize(
        ("step", "severity"),
        [(1.0, Severity.LOW), (3.0, Severity.MEDIUM), (10.0, Severity.HIGH)],
    )
    def test_growth_severity_follows_slope(self, step: float, severity: Severity) -> None:
        result = analyze_memory_pattern(_linear(100, step))
        assert result.pattern == MemoryPattern.LINEAR_GROWTH
        assert result.severity is severity
        assert result.confidence == pytest.approx(1.0)

    def test_spike_critical_when_far_out(self) -> None:
        result = analyze_memory_pattern([100.0, 101.0, 99.0, 100.0, 101.0, 100.0, 180.0])
        assert result.pattern == MemoryPattern.SPIKE
        assert result.severity is Severity.CRITICAL
        assert result.details["z_score"] > 6

    def test_spike_high_just_past_threshold(self) -> None:
        result = analyze_memory_pattern([100.0, 102.0, 98.0, 101.0, 99.0, 100.0, 105.0])
        assert result.pattern == MemoryPattern.SPIKE
        assert result.severity is Severity.HIGH

    def test_sawtooth(self) -> None:
        result = analyze_memory_pattern([100.0, 150.0] * 4)
        assert result.pattern == MemoryPattern.SAWTOOTH
        assert result.severity is Severity.MEDIUM

    def test_stable(self) -> None:
        result = analyze_memory_pattern([100.0, 100.5, 100.0, 100.5, 100.0, 100.5])
        assert result.pattern == MemoryPattern.STABLE
        assert result.severity is Severity.INFO

    def test_deterministic(self) -> None:
        assert analyze_memory_pattern(MEMORY_GROWTH) == analyze_memory_pattern(MEMORY_GROWTH)


# ---------------------------------------------------------------------------
# Latency
# ---------------------------------------------------------------------------


class TestLatencyPattern:
    """Tests for analyze_latency_pattern()."""

    def test_sudden_jump(self) -> None:
        result = analyze_latency_pattern([50.0, 52.0, 51.0, 49.0, 50.0, 200.0])
        assert result.pattern == LatencyPattern.SUDDEN_JUMP
        assert result.severity is Severity.HIGH

    def test_gradual_degradation_medium(self) -> None:
        result = analyze_latency_pattern(_linear(100, 2, 6))
        assert result.pattern == LatencyPattern.GRADUAL_DEGRADATION
        assert result.severity is Severity.MEDIUM

    def test_gradual_degradation_high_on_steep_slope(self) -> None:
        result = analyze_latency_pattern(_linear(100, 10, 6))
        assert result.pattern == LatencyPattern.GRADUAL_DEGRADATION
        assert result.severity is Severity.HIGH

    def test_periodic_spikes(self) -> None:
        result = analyze_latency_pattern([50.0, 50.0, 120.0, 50.0, 50.0, 120.0, 50.0, 50.0])
        assert result.pattern == LatencyPattern.PERIODIC_SPIKES
        assert result.severity is Severity.MEDIUM

    def test_stable(self) -> None:
        result = analyze_latency_pattern([50.0, 51.0, 50.0, 51.0, 50.0, 51.0])
        assert result.pattern == LatencyPattern.STABLE


# ---------------------------------------------------------------------------
# Error rate
# ---------------------------------------------------------------------------


class TestErrorRatePattern:
    """Tests for analyze_error_rate_pattern()."""

    def test_near_zero_is_none(self) -> None:
        result = analyze_error_rate_pattern([0.0, 0.0, 0.0, 0.0, 0.001])
        assert result.pattern == ErrorRatePattern.NONE
        assert result.severity is Severity.INFO

    def test_burst_is_critical(self) -> None:
        result = analyze_error_rate_pattern([0.01, 0.012, 0.011, 0.01, 0.2])
        assert result.pattern == ErrorRatePattern.BURST
        assert result.severity is Severity.CRITICAL

    def test_cascading(self) -> None:
        result = analyze_error_rate_pattern([0.01, 0.02, 0.03, 0.04, 0.05, 0.06])
        assert result.pattern == ErrorRatePattern.CASCADING
        assert result.severity is Severity.HIGH

    def test_steady(self) -> None:
        result = analyze_error_rate_pattern([0.02, 0.021, 0.019, 0.02, 0.021, 0.019])
        assert result.pattern == ErrorRatePattern.STEADY
        assert result.severity is Severity.MEDIUM

    def test_isolated(self) -> None:
        result = analyze_error_rate_pattern([0.0, 0.0, 0.0, 0.02, 0.0, 0.0])
        assert result.pattern == ErrorRatePattern.ISOLATED
        assert result.severity is Severity.LOW


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class TestConnectionPattern:
    """Tests for analyze_connection_pattern()."""

    def test_leak_medium(self) -> None:
        result = analyze_connection_pattern(_linear(10, 1, 6))
        assert result.pattern == ConnectionPattern.LEAK
        assert result.severity is Severity.MEDIUM

    def test_leak_high(self) -> None:
        result = analyze_connection_pattern(_linear(10, 3, 6))
        assert result.pattern == ConnectionPattern.LEAK
        assert result.severity is Severity.HIGH

    def test_thrashing(self) -> None:
        result = analyze_connection_pattern([10.0, 40.0] * 3)
        assert result.pattern == ConnectionPattern.THRASHING

    def test_saturation(self) -> None:
        result = analyze_connection_pattern([150.0, 151.0] * 3)
        assert result.pattern == ConnectionPattern.SATURATION
        assert result.severity is Severity.HIGH

    def test_stable(self) -> None:
        result = analyze_connection_pattern([10.0, 10.0, 11.0, 10.0, 10.0, 11.0])
        assert result.pattern == ConnectionPattern.STABLE


# ---------------------------------------------------------------------------
# CPU
# ---------------------------------------------------------------------------


class TestCpuPattern:
    """Tests for analyze_cpu_pattern()."""

    def test_spike_scenario(self) -> None:
        result = analyze_cpu_pattern([20.0, 22.0, 21.0, 23.0, 95.0])
        assert result.pattern == CpuPattern.SPIKE
        assert result.severity is Severity.HIGH

    def test_spike_needs_high_latest(self) -> None:
        result = analyze_cpu_pattern([5.0, 6.0, 5.0, 6.0, 40.0])
        assert result.pattern != CpuPattern.SPIKE

    def test_sustained_high(self) -> None:
        result = analyze_cpu_pattern([90.0, 91.0, 92.0, 90.0, 91.0, 92.0])
        assert result.pattern == CpuPattern.SUSTAINED_HIGH
        assert result.severity is Severity.HIGH

    def test_gradual_increase(self) -> None:
        result = analyze_cpu_pattern(_linear(20, 1, 6))
        assert result.pattern == CpuPattern.GRADUAL_INCREASE
        assert result.severity is Severity.MEDIUM

    def test_normal(self) -> None:
        result = analyze_cpu_pattern([30.0, 31.0] * 3)
        assert result.pattern == CpuPattern.NORMAL
        assert result.severity is Severity.INFO


# ---------------------------------------------------------------------------
# Report models
# ---------------------------------------------------------------------------


class TestReportModels:
    """Tests for PatternAnalysis / Issue / HealthReport serialisation."""

    def test_infinite_z_score_is_json_safe(self) -> None:
        analysis = PatternAnalysis(
            pattern="spike", confidence=0.95, severity=Severity.HIGH, details={"z_score": math.inf}
        )
        assert analysis.to_dict()["details"]["z_score"] == "inf"

    def test_issue_type(self) -> None:
        issue = Issue(category="memory", analysis=analyze_memory_pattern(MEMORY_GROWTH))
        assert issue.issue_type == "memory_linear_growth"
        assert issue.to_dict()["severity"] == issue.severity.value

    def test_report_to_dict(self) -> None:
        analysis = analyze_cpu_pattern([20.0, 22.0, 21.0, 23.0, 95.0])
        report = HealthReport(
            timestamp=datetime(2026, 2, 11, tzinfo=UTC),
            healthy=False,
            analyses={MetricCategory.CPU: analysis},
            issues=[Issue(category="cpu", analysis=analysis)],
        )
        data = report.to_dict()
        assert data["analyses"]["cpu"]["pattern"] == "spike"
        assert data["issues"][0]["issue_type"] == "cpu_spike"
