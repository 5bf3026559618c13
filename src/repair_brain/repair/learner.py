"""Knowledge accumulation from repair outcomes.

Learning is bookkeeping: per issue type the store keeps success and
failure counters plus a running mean of successful repair time.  Nothing
here trains a model.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from repair_brain.errors import ErrorCode, Result, guarded
from repair_brain.health.storage import KnowledgeEntry
from repair_brain.logging import get_logger
from repair_brain.utils import generate_id, utcnow

if TYPE_CHECKING:
    from repair_brain.health.storage import RepairStorage
    from repair_brain.repair.diagnosis import Diagnosis
    from repair_brain.repair.executor import RepairResult

log = get_logger("repair_brain.repair.learner")


@dataclass
class LearningResult:
    learned: bool
    issue_type: str | None = None
    knowledge_id: str | None = None
    created: bool = False
    success_count: int = 0
    failure_count: int = 0
    avg_repair_time_ms: float = 0.0
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "learned": self.learned,
            "issue_type": self.issue_type,
            "knowledge_id": self.knowledge_id,
            "created": self.created,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "avg_repair_time_ms": self.avg_repair_time_ms,
            "reason": self.reason,
        }


@dataclass
class CompressionReport:
    """Which entries would survive a merge by issue type.  Nothing is deleted."""

    total_entries: int = 0
    groups: int = 0
    compressible: int = 0
    canonical: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "groups": self.groups,
            "compressible": self.compressible,
            "canonical": self.canonical,
        }


class Learner:
    """Feeds repair outcomes into the knowledge table."""

    def __init__(
        self,
        storage: RepairStorage | None = None,
        id_factory: Callable[[str], str] = generate_id,
    ) -> None:
        self._storage = storage
        self._id_factory = id_factory

    async def learn_from_repair(self, result: RepairResult, diagnosis: Diagnosis) -> LearningResult:
        """Update (or seed) the knowledge entry for the diagnosed issue type."""
        if not result.attempted:
            return LearningResult(learned=False, reason="not_attempted")
        if not diagnosis.classification.classified or diagnosis.issue_type is None:
            return LearningResult(learned=False, reason="unclassified")

        option = diagnosis.recommended_action
        return await self._learn(
            issue_type=diagnosis.issue_type,
            category=diagnosis.category or "unknown",
            symptoms=diagnosis.symptoms,
            fix_description=option.description if option else "",
            success=result.success,
            repair_time_ms=result.repair_time_ms,
        )

    async def record_outcome(
        self,
        repair_id: str,
        success: bool,
        repair_time_ms: int | None = None,
    ) -> Result[LearningResult]:
        """Apply an externally verified outcome to a stored repair.

        The cycle already learned the repair from its immediate result, so
        this corrects that observation instead of adding another one.  A
        confirmed outcome only marks the row verified; a flipped outcome
        moves one count between success and failure.
        """
        if self._storage is None:
            return Result.failure(ErrorCode.STORE_UNAVAILABLE, "no repair store configured")

        found = await guarded(
            "load_repair_history",
            self._storage.get_repair_history(repair_id),
            log,
            repair_id=repair_id,
        )
        if not found.ok:
            return Result(error=found.error)
        record = found.value
        if record is None:
            return Result.failure(ErrorCode.NOT_FOUND, f"repair {repair_id} not found")

        elapsed = repair_time_ms if repair_time_ms is not None else (record.repair_time_ms or 0)
        updated = await guarded(
            "update_repair_outcome",
            self._storage.update_repair_outcome(repair_id, success, elapsed),
            log,
            repair_id=repair_id,
        )
        if not updated.ok:
            return Result(error=updated.error)

        if record.success == success:
            learning = LearningResult(
                learned=False, issue_type=record.issue_type, reason="unchanged"
            )
        else:
            category = record.diagnosis.get("category") or record.issue_type.split("_", 1)[0]
            learning = await self._correct(
                issue_type=record.issue_type,
                category=category,
                symptoms=record.symptoms,
                fix_description=record.fix_applied or "",
                success=success,
                previous_time_ms=record.repair_time_ms or 0,
                repair_time_ms=elapsed,
            )
        log.info(
            "repair_outcome_recorded",
            repair_id=repair_id,
            success=success,
            flipped=record.success != success,
        )
        return Result.success(learning)

    async def compress_repair_knowledge(self) -> CompressionReport:
        """Report duplicate entries per issue type.

        The entry with the highest success count is canonical; the others
        are counted as compressible.
        """
        if self._storage is None:
            return CompressionReport()

        loaded = await guarded("load_knowledge", self._storage.get_knowledge(), log)
        entries = loaded.unwrap_or([])

        groups: dict[str, list[KnowledgeEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.issue_type, []).append(entry)

        report = CompressionReport(total_entries=len(entries), groups=len(groups))
        for issue_type, group in groups.items():
            best = max(group, key=lambda e: e.success_count)
            report.canonical[issue_type] = best.id
            report.compressible += len(group) - 1

        log.info(
            "knowledge_compression_audited",
            entries=report.total_entries,
            groups=report.groups,
            compressible=report.compressible,
        )
        return report

    async def get_repair_stats(self) -> dict[str, Any]:
        """Aggregate counters across every table.  Failed reads count as zero."""
        if self._storage is None:
            return _empty_stats()

        storage = self._storage
        pattern_total = (
            await guarded("count_patterns", storage.count_patterns(), log)
        ).unwrap_or(0)
        by_category = (
            await guarded("count_patterns_by_category", storage.count_patterns_by_category(), log)
        ).unwrap_or({})
        repairs_total = (await guarded("count_repairs", storage.count_repairs(), log)).unwrap_or(0)
        successful = (
            await guarded("count_repairs", storage.count_repairs(success=True), log)
        ).unwrap_or(0)
        failed = (
            await guarded("count_repairs", storage.count_repairs(success=False), log)
        ).unwrap_or(0)
        avg_time = (
            await guarded("avg_repair_time", storage.get_avg_repair_time(), log)
        ).unwrap_or(0.0)
        predictions_total = (
            await guarded("count_predictions", storage.count_predictions(), log)
        ).unwrap_or(0)
        predictions_active = (
            await guarded("count_predictions", storage.count_predictions(active_only=True), log)
        ).unwrap_or(0)
        knowledge_total = (
            await guarded("count_knowledge", storage.count_knowledge(), log)
        ).unwrap_or(0)
        metrics_total = (await guarded("count_metrics", storage.count_metrics(), log)).unwrap_or(0)
        metric_types = (
            await guarded("metric_types", storage.get_metric_types(), log)
        ).unwrap_or([])

        return {
            "patterns": {"total": pattern_total, "by_category": by_category},
            "repairs": {
                "total": repairs_total,
                "successful": successful,
                "failed": failed,
                "success_rate": round(successful / repairs_total, 3) if repairs_total else 0.0,
                "avg_repair_time_ms": round(avg_time, 2),
            },
            "predictions": {"total": predictions_total, "active": predictions_active},
            "knowledge": {"total": knowledge_total},
            "metrics": {"total": metrics_total, "types": metric_types},
        }

    async def get_knowledge(self, category: str | None = None) -> list[dict[str, Any]]:
        """Knowledge entries (with success rate), most successful first."""
        if self._storage is None:
            return []
        loaded = await guarded("load_knowledge", self._storage.get_knowledge(category), log)
        return [entry.to_dict() for entry in loaded.unwrap_or([])]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _learn(
        self,
        issue_type: str,
        category: str,
        symptoms: list[str],
        fix_description: str,
        success: bool,
        repair_time_ms: int,
    ) -> LearningResult:
        if self._storage is None:
            return LearningResult(learned=False, issue_type=issue_type, reason="no_store")

        now = utcnow()
        existing = await guarded(
            "load_knowledge",
            self._storage.get_knowledge_by_issue_type(issue_type),
            log,
            issue_type=issue_type,
        )
        if not existing.ok:
            return LearningResult(learned=False, issue_type=issue_type, reason="store_failed")

        entries = existing.unwrap_or([])
        if entries:
            entry = entries[0]
            if success:
                success_count = entry.success_count + 1
                total = entry.avg_repair_time_ms * entry.success_count + repair_time_ms
                avg = total / success_count
                write = self._storage.record_knowledge_success(entry.id, avg, now)
                failure_count = entry.failure_count
            else:
                success_count = entry.success_count
                failure_count = entry.failure_count + 1
                avg = entry.avg_repair_time_ms
                write = self._storage.record_knowledge_failure(entry.id, now)

            saved = await guarded("update_knowledge", write, log, knowledge_id=entry.id)
            if not saved.ok:
                return LearningResult(learned=False, issue_type=issue_type, reason="store_failed")
            log.info(
                "knowledge_updated",
                issue_type=issue_type,
                success=success,
                success_count=success_count,
                failure_count=failure_count,
            )
            return LearningResult(
                learned=True,
                issue_type=issue_type,
                knowledge_id=entry.id,
                success_count=success_count,
                failure_count=failure_count,
                avg_repair_time_ms=avg,
            )

        entry = KnowledgeEntry(
            id=self._id_factory("know"),
            category=category,
            issue_type=issue_type,
            symptoms=", ".join(symptoms),
            fix_description=fix_description,
            success_count=1 if success else 0,
            failure_count=0 if success else 1,
            avg_repair_time_ms=float(repair_time_ms) if success else 0.0,
            last_used_at=now,
            created_at=now,
        )
        saved = await guarded("save_knowledge", self._storage.save_knowledge(entry), log)
        if not saved.ok:
            return LearningResult(learned=False, issue_type=issue_type, reason="store_failed")
        log.info("knowledge_created", issue_type=issue_type, knowledge_id=entry.id)
        return LearningResult(
            learned=True,
            issue_type=issue_type,
            knowledge_id=entry.id,
            created=True,
            success_count=entry.success_count,
            failure_count=entry.failure_count,
            avg_repair_time_ms=entry.avg_repair_time_ms,
        )

    async def _correct(
        self,
        issue_type: str,
        category: str,
        symptoms: list[str],
        fix_description: str,
        success: bool,
        previous_time_ms: int,
        repair_time_ms: int,
    ) -> LearningResult:
        if self._storage is None:
            return LearningResult(learned=False, issue_type=issue_type, reason="no_store")

        existing = await guarded(
            "load_knowledge",
            self._storage.get_knowledge_by_issue_type(issue_type),
            log,
            issue_type=issue_type,
        )
        if not existing.ok:
            return LearningResult(learned=False, issue_type=issue_type, reason="store_failed")

        entries = existing.unwrap_or([])
        if not entries:
            # the cycle never learned this repair
            return await self._learn(
                issue_type=issue_type,
                category=category,
                symptoms=symptoms,
                fix_description=fix_description,
                success=success,
                repair_time_ms=repair_time_ms,
            )

        entry = entries[0]
        if success:
            success_count = entry.success_count + 1
            failure_count = max(entry.failure_count - 1, 0)
            avg = (entry.avg_repair_time_ms * entry.success_count + repair_time_ms) / success_count
        else:
            success_count = max(entry.success_count - 1, 0)
            failure_count = entry.failure_count + 1
            if success_count:
                total = entry.avg_repair_time_ms * entry.success_count - previous_time_ms
                avg = max(total / success_count, 0.0)
            else:
                avg = 0.0

        saved = await guarded(
            "correct_knowledge",
            self._storage.shift_knowledge_outcome(entry.id, success, avg, utcnow()),
            log,
            knowledge_id=entry.id,
        )
        if not saved.ok:
            return LearningResult(learned=False, issue_type=issue_type, reason="store_failed")
        log.info(
            "knowledge_corrected",
            issue_type=issue_type,
            success=success,
            success_count=success_count,
            failure_count=failure_count,
        )
        return LearningResult(
            learned=True,
            issue_type=issue_type,
            knowledge_id=entry.id,
            success_count=success_count,
            failure_count=failure_count,
            avg_repair_time_ms=avg,
        )


def _empty_stats() -> dict[str, Any]:
    return {
        "patterns": {"total": 0, "by_category": {}},
        "repairs": {
            "total": 0,
            "successful": 0,
            "failed": 0,
            "success_rate": 0.0,
            "avg_repair_time_ms": 0.0,
        },
        "predictions": {"total": 0, "active": 0},
        "knowledge": {"total": 0},
        "metrics": {"total": 0, "types": []},
    }
