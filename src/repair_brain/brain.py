"""Repair Brain orchestrator.

``RepairBrain`` is the context object a host process constructs once and
drives on its heartbeat.  Each tick:

1. Records the supplied metrics and builds a ``HealthReport``
2. Diagnoses the report and ranks repair options
3. Predicts failures from precursor signatures (independently of repair)
4. Applies and verifies the recommended fix
5. Feeds the outcome into the knowledge table

The remaining public methods are the operator surface: manual pattern
submission, outcome verification, trends, listings and a self check.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from repair_brain.config import Settings, get_settings
from repair_brain.constants import (
    DEFAULT_PAGE_LIMIT,
    DEFAULT_TREND_HOURS,
    MAX_PAGE_LIMIT,
    TREND_SLOPE_EPSILON,
)
from repair_brain.errors import ErrorCode, RepairError, Result, guarded
from repair_brain.health import stats
from repair_brain.health.collector import SnapshotCollector
from repair_brain.health.monitor import Monitor
from repair_brain.health.storage import KnowledgeEntry, RepairPattern, Severity
from repair_brain.logging import get_logger
from repair_brain.repair.diagnosis import DiagnosisEngine, SymptomMatch
from repair_brain.repair.executor import ActionRegistry, RepairExecutor
from repair_brain.repair.learner import CompressionReport, Learner, LearningResult
from repair_brain.repair.predictor import Predictor
from repair_brain.utils import generate_id, timed_operation, utcnow

if TYPE_CHECKING:
    from repair_brain.health.analyzer import HealthReport, Issue
    from repair_brain.health.storage import MetricSample, Prediction, RepairStorage
    from repair_brain.repair.diagnosis import Diagnosis
    from repair_brain.repair.executor import RepairResult

log = get_logger("repair_brain.brain")


class RepairPhase(StrEnum):
    IDLE = "idle"
    DIAGNOSING = "diagnosing"
    REPAIRING = "repairing"
    VERIFYING = "verifying"
    LEARNED = "learned"


@dataclass
class CycleResult:
    """Everything one ``full_repair_cycle`` call produced."""

    timestamp: datetime
    phase: RepairPhase
    health_report: HealthReport | None = None
    diagnosis: Diagnosis | None = None
    repair: RepairResult | None = None
    predictions: list[Prediction] = field(default_factory=list)
    learning: LearningResult | None = None
    error: RepairError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase.value,
            "health_report": self.health_report.to_dict() if self.health_report else None,
            "diagnosis": self.diagnosis.to_dict() if self.diagnosis else None,
            "repair": self.repair.to_dict() if self.repair else None,
            "predictions": [p.to_dict() for p in self.predictions],
            "learning": self.learning.to_dict() if self.learning else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class MetricTrend:
    metric: str
    hours: int
    count: int = 0
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    stddev: float = 0.0
    slope: float | None = None
    intercept: float | None = None
    r2: float | None = None
    trend: str | None = None
    points: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "hours": self.hours,
            "count": self.count,
            "stats": {"min": self.min, "max": self.max, "avg": self.avg, "stddev": self.stddev},
            "regression": None
            if self.slope is None
            else {
                "slope": self.slope,
                "intercept": self.intercept,
                "r2": self.r2,
                "trend": self.trend,
            },
            "points": self.points,
        }


@dataclass
class Page:
    """One page of a listing plus the unpaged total."""

    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int
    active: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "items": self.items,
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }
        if self.active is not None:
            data["active"] = self.active
        return data


@dataclass
class SubsystemCheck:
    name: str
    passed: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "message": self.message}


@dataclass
class HealthCheckReport:
    healthy: bool
    timestamp: datetime
    checks: list[SubsystemCheck] = field(default_factory=list)

    @property
    def passed(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @property
    def failed(self) -> int:
        return sum(1 for c in self.checks if not c.passed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "timestamp": self.timestamp.isoformat(),
            "checks": [c.to_dict() for c in self.checks],
            "passed": self.passed,
            "failed": self.failed,
        }


class RepairBrain:
    """Self-healing context object: monitor, diagnose, repair, predict, learn."""

    def __init__(
        self,
        storage: RepairStorage | None = None,
        registry: ActionRegistry | None = None,
        settings: Settings | None = None,
        id_factory: Callable[[str], str] = generate_id,
        collector: SnapshotCollector | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._storage = storage
        self.monitor = Monitor(
            storage=storage,
            capacity=self._settings.window_capacity,
            min_samples=self._settings.min_samples,
        )
        self.diagnosis = DiagnosisEngine(storage=storage, id_factory=id_factory)
        self.executor = RepairExecutor(
            storage=storage,
            registry=registry,
            collector=collector or SnapshotCollector(metrics_source=self.monitor.latest_values),
            timeout=self._settings.fix_timeout_seconds,
            id_factory=id_factory,
        )
        self.predictor = Predictor(
            storage=storage,
            sample_interval_seconds=self._settings.sample_interval_seconds,
            id_factory=id_factory,
        )
        self.learner = Learner(storage=storage, id_factory=id_factory)
        self._id_factory = id_factory
        self._cycle_lock = asyncio.Lock()
        self._phase = RepairPhase.IDLE

    @property
    def phase(self) -> RepairPhase:
        return self._phase

    @property
    def registry(self) -> ActionRegistry:
        return self.executor.registry

    # ------------------------------------------------------------------
    # Heartbeat entry point
    # ------------------------------------------------------------------

    async def full_repair_cycle(
        self,
        metrics: dict[str, Any],
        extra: Issue | dict[str, Any] | None = None,
    ) -> CycleResult:
        """Run monitor, diagnose, predict, repair and learn once.

        Cycles are serialized so a diagnosis always sees the report of its
        own monitor pass.  Never raises.
        """
        async with self._cycle_lock:
            try:
                async with timed_operation("full_repair_cycle", log=log, metrics=len(metrics)):
                    return await self._run_cycle(metrics, extra)
            except Exception as exc:
                log.error("full_repair_cycle_failed", phase=self._phase.value, error=str(exc))
                self._phase = RepairPhase.IDLE
                return CycleResult(
                    timestamp=utcnow(),
                    phase=RepairPhase.IDLE,
                    error=RepairError(ErrorCode.FIX_FAILED, f"repair cycle aborted: {exc}"),
                )

    async def _run_cycle(
        self,
        metrics: dict[str, Any],
        extra: Issue | dict[str, Any] | None,
    ) -> CycleResult:
        self._phase = RepairPhase.IDLE
        report = await self.monitor.monitor(metrics)

        self._phase = RepairPhase.DIAGNOSING
        diagnosis = await self.diagnosis.diagnose(report, extra)
        predictions = await self.predictor.predict_issues(report)

        result = CycleResult(
            timestamp=utcnow(),
            phase=RepairPhase.IDLE,
            health_report=report,
            diagnosis=diagnosis,
            predictions=predictions,
        )

        if not diagnosis.classification.classified:
            self._phase = RepairPhase.IDLE
            return result

        if not self._settings.self_healing_enabled:
            log.info("self_healing_disabled", issue_type=diagnosis.issue_type)
            self._phase = RepairPhase.IDLE
            return result

        self._phase = RepairPhase.REPAIRING
        repair = await self.executor.repair(diagnosis, on_verify=self._enter_verifying)
        result.repair = repair

        self._phase = RepairPhase.LEARNED
        result.learning = await self.learner.learn_from_repair(repair, diagnosis)
        result.phase = RepairPhase.LEARNED
        return result

    def _enter_verifying(self) -> None:
        self._phase = RepairPhase.VERIFYING

    # ------------------------------------------------------------------
    # Component pass-throughs
    # ------------------------------------------------------------------

    def enhanced_check(self) -> HealthReport:
        return self.monitor.enhanced_check()

    async def record_metric(
        self, name: str, value: float, metadata: dict[str, Any] | None = None
    ) -> MetricSample:
        return await self.monitor.record_metric(name, value, metadata)

    async def match_symptoms(self, symptoms: list[str] | str) -> list[SymptomMatch]:
        return await self.diagnosis.match_symptoms(symptoms)

    async def apply_preventive_fix(
        self, prediction_id: str, outcome: str | None = None
    ) -> Result[Prediction]:
        return await self.predictor.apply_preventive_fix(prediction_id, outcome)

    async def rollback(self, repair_id: str) -> Result[bool]:
        return await self.executor.rollback(repair_id)

    async def record_outcome(
        self, repair_id: str, success: bool, repair_time_ms: int | None = None
    ) -> Result[LearningResult]:
        return await self.learner.record_outcome(repair_id, success, repair_time_ms)

    async def get_repair_stats(self) -> dict[str, Any]:
        return await self.learner.get_repair_stats()

    async def get_knowledge(self, category: str | None = None) -> list[dict[str, Any]]:
        return await self.learner.get_knowledge(category)

    async def compress_repair_knowledge(self) -> CompressionReport:
        return await self.learner.compress_repair_knowledge()

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    async def submit_error_pattern(
        self,
        category: str,
        subcategory: str = "general",
        name: str = "unnamed",
        symptoms: list[str] | str | None = None,
        resolution: str | None = None,
        severity: str | Severity = Severity.MEDIUM,
        confidence: float = 0.5,
    ) -> Result[RepairPattern]:
        """Store an operator-curated pattern and seed its knowledge entry."""
        if not category or not category.strip():
            return Result.failure(ErrorCode.VALIDATION, "Pattern category is required")
        try:
            level = severity if isinstance(severity, Severity) else Severity(severity)
        except ValueError:
            level = Severity.INFO
        if level is Severity.INFO:
            valid = ", ".join(s.value for s in Severity if s is not Severity.INFO)
            return Result.failure(
                ErrorCode.VALIDATION, f"Invalid severity: {severity}. Must be one of: {valid}"
            )
        if not 0.0 <= confidence <= 1.0:
            return Result.failure(ErrorCode.VALIDATION, "Confidence must be between 0 and 1")
        if self._storage is None:
            return Result.failure(ErrorCode.STORE_UNAVAILABLE, "no repair store configured")

        if isinstance(symptoms, str):
            symptoms = [symptoms]
        symptom_list = [s for s in (symptoms or []) if s]
        now = utcnow()

        pattern = RepairPattern(
            id=self._id_factory("pattern"),
            category=category.strip(),
            subcategory=subcategory or "general",
            name=name or "unnamed",
            signature=" ".join(symptom_list),
            severity=level,
            confidence=confidence,
            resolution=resolution,
            created_at=now,
        )
        saved = await guarded("save_pattern", self._storage.save_pattern(pattern), log)
        if not saved.ok:
            return Result(error=saved.error)

        seed = KnowledgeEntry(
            id=self._id_factory("know"),
            category=pattern.category,
            issue_type=f"{pattern.category}_{pattern.subcategory}",
            symptoms=", ".join(symptom_list),
            fix_description=resolution or "",
            created_at=now,
        )
        seeded = await guarded("save_knowledge", self._storage.save_knowledge(seed), log)
        if not seeded.ok:
            return Result(error=seeded.error)

        log.info(
            "error_pattern_submitted",
            pattern_id=pattern.id,
            category=pattern.category,
            severity=level.value,
        )
        return Result.success(pattern)

    async def get_metric_trend(self, name: str, hours: int = DEFAULT_TREND_HOURS) -> MetricTrend:
        """Stored samples of *name* over the last *hours*, with a fitted trend."""
        trend = MetricTrend(metric=name, hours=hours)
        if self._storage is None:
            return trend

        since = utcnow() - timedelta(hours=hours)
        loaded = await guarded(
            "load_metric_history", self._storage.get_metric_history(name, since), log, metric=name
        )
        samples = loaded.unwrap_or([])
        values = [s.value for s in samples]

        trend.count = len(values)
        trend.points = [
            {"value": s.value, "metadata": s.metadata, "recorded_at": s.recorded_at.isoformat()}
            for s in samples
        ]
        if not values:
            return trend

        trend.min = round(min(values), 4)
        trend.max = round(max(values), 4)
        trend.avg = round(stats.mean(values), 4)
        trend.stddev = round(stats.sample_stddev(values), 4)

        if len(values) >= 3:
            reg = stats.linear_regression(values)
            trend.slope = round(reg.slope, 4)
            trend.intercept = round(reg.intercept, 4)
            trend.r2 = round(reg.r2, 3)
            if reg.slope > TREND_SLOPE_EPSILON:
                trend.trend = "increasing"
            elif reg.slope < -TREND_SLOPE_EPSILON:
                trend.trend = "decreasing"
            else:
                trend.trend = "stable"
        return trend

    async def get_history(
        self,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        success: bool | None = None,
    ) -> Page:
        limit, offset = _clamp_page(limit, offset)
        if self._storage is None:
            return Page(items=[], total=0, limit=limit, offset=offset)

        rows = await guarded(
            "list_repair_history", self._storage.list_repair_history(limit, offset, success), log
        )
        total = await guarded("count_repairs", self._storage.count_repairs(success=success), log)
        return Page(
            items=[r.to_dict() for r in rows.unwrap_or([])],
            total=total.unwrap_or(0),
            limit=limit,
            offset=offset,
        )

    async def get_predictions(
        self,
        min_confidence: float = 0.0,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> Page:
        limit, offset = _clamp_page(limit, offset)
        if self._storage is None:
            return Page(items=[], total=0, limit=limit, offset=offset, active=0)

        rows = await guarded(
            "list_predictions",
            self._storage.list_predictions(min_confidence, limit, offset),
            log,
        )
        total = await guarded("count_predictions", self._storage.count_predictions(), log)
        active = await guarded(
            "count_predictions", self._storage.count_predictions(active_only=True), log
        )
        return Page(
            items=[p.to_dict() for p in rows.unwrap_or([])],
            total=total.unwrap_or(0),
            limit=limit,
            offset=offset,
            active=active.unwrap_or(0),
        )

    async def run_health_check(self) -> HealthCheckReport:
        """Probe the store and each table the brain depends on."""
        report = HealthCheckReport(healthy=False, timestamp=utcnow())
        if self._storage is None:
            report.checks.append(
                SubsystemCheck("database_connectivity", False, "No repair store configured")
            )
            return report

        storage = self._storage
        probes: list[tuple[str, Callable[[], Any], str]] = [
            ("database_connectivity", storage.ping, "Database is accessible"),
            (
                "pattern_registry",
                storage.count_patterns,
                "Pattern registry accessible ({} patterns)",
            ),
            ("repair_history", storage.count_repairs, "Repair history accessible ({} records)"),
            ("knowledge_base", storage.count_knowledge, "Knowledge base accessible ({} entries)"),
            (
                "prediction_engine",
                storage.count_predictions,
                "Prediction engine ready ({} predictions)",
            ),
            ("metric_store", storage.count_metrics, "Metric store accessible ({} data points)"),
        ]
        for name, probe, message in probes:
            outcome = await guarded(f"health_check_{name}", probe(), log)
            if outcome.ok and outcome.value is not False:
                report.checks.append(SubsystemCheck(name, True, message.format(outcome.value)))
            else:
                reason = outcome.error.message if outcome.error else "probe returned false"
                report.checks.append(SubsystemCheck(name, False, reason))

        report.healthy = report.failed == 0
        log.info("repair_health_check", healthy=report.healthy, failed=report.failed)
        return report


def _clamp_page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(MAX_PAGE_LIMIT, limit or DEFAULT_PAGE_LIMIT)), max(0, offset or 0)
