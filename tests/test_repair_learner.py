"""Tests for the knowledge Learner in repair_brain.repair.learner."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from repair_brain.errors import ErrorCode
from repair_brain.health.analyzer import Issue, PatternAnalysis
from repair_brain.health.storage import KnowledgeEntry, RepairHistoryRecord, Severity
from repair_brain.repair.diagnosis import Classification, Diagnosis, FixType, RepairOption
from repair_brain.repair.executor import RepairResult
from repair_brain.repair.learner import Learner

NOW = datetime(2026, 2, 11, 12, 0, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _diagnosis() -> Diagnosis:
    issue = Issue(
        category="memory",
        analysis=PatternAnalysis(pattern="linear_growth", confidence=0.9, severity=Severity.HIGH),
        metric="heap_used_mb",
    )
    option = RepairOption(
        type=FixType.GARBAGE_COLLECT,
        description="Force a full garbage collection",
        confidence=0.4,
        source="generic",
        category="memory",
    )
    return Diagnosis(
        id="diag_1",
        timestamp=NOW,
        classification=Classification(classified=True, primary_issue=issue, all_issues=[issue]),
        options=[option],
        recommended_action=option,
    )


def _entry(entry_id: str, issue_type: str, success_count: int) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=entry_id,
        category=issue_type.split("_", 1)[0],
        issue_type=issue_type,
        success_count=success_count,
    )


def _result(success: bool, repair_time_ms: int) -> RepairResult:
    return RepairResult(
        attempted=True, success=success, repair_id="repair_1", repair_time_ms=repair_time_ms
    )


@pytest.fixture()
def knowledge_store() -> AsyncMock:
    """A mock RepairStorage that keeps knowledge entries in a dict."""
    entries: dict[str, KnowledgeEntry] = {}
    storage = AsyncMock()
    storage.entries = entries

    async def by_issue_type(issue_type: str) -> list[KnowledgeEntry]:
        return [e for e in entries.values() if e.issue_type == issue_type]

    async def save(entry: KnowledgeEntry) -> str:
        entries[entry.id] = entry
        return entry.id

    async def success(entry_id: str, avg: float, used_at: datetime) -> None:
        entry = entries[entry_id]
        entries[entry_id] = replace(
            entry, success_count=entry.success_count + 1, avg_repair_time_ms=avg
        )

    async def failure(entry_id: str, used_at: datetime) -> None:
        entry = entries[entry_id]
        entries[entry_id] = replace(entry, failure_count=entry.failure_count + 1)

    async def shift(entry_id: str, success: bool, avg: float, used_at: datetime) -> None:
        entry = entries[entry_id]
        step = 1 if success else -1
        entries[entry_id] = replace(
            entry,
            success_count=max(entry.success_count + step, 0),
            failure_count=max(entry.failure_count - step, 0),
            avg_repair_time_ms=avg,
        )

    storage.get_knowledge_by_issue_type = AsyncMock(side_effect=by_issue_type)
    storage.save_knowledge = AsyncMock(side_effect=save)
    storage.record_knowledge_success = AsyncMock(side_effect=success)
    storage.record_knowledge_failure = AsyncMock(side_effect=failure)
    storage.shift_knowledge_outcome = AsyncMock(side_effect=shift)
    return storage


@pytest.fixture()
def learner(knowledge_store: AsyncMock) -> Learner:
    return Learner(storage=knowledge_store, id_factory=lambda prefix: f"{prefix}_fixed")


# ---------------------------------------------------------------------------
# learn_from_repair
# ---------------------------------------------------------------------------


class TestLearnFromRepair:
    """Tests for Learner.learn_from_repair()."""

    @pytest.mark.asyncio()
    async def test_first_success_creates_entry(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        outcome = await learner.learn_from_repair(_result(True, 120), _diagnosis())

        assert outcome.learned is True
        assert outcome.created is True
        assert outcome.knowledge_id == "know_fixed"
        entry = knowledge_store.entries["know_fixed"]
        assert entry.issue_type == "memory_linear_growth"
        assert entry.category == "memory"
        assert entry.fix_description == "Force a full garbage collection"
        assert entry.symptoms == "heap_used_mb: linear_growth (high)"
        assert entry.success_count == 1
        assert entry.avg_repair_time_ms == 120.0

    @pytest.mark.asyncio()
    async def test_two_successes_average_time(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        await learner.learn_from_repair(_result(True, 100), _diagnosis())
        outcome = await learner.learn_from_repair(_result(True, 300), _diagnosis())

        assert outcome.created is False
        assert outcome.success_count == 2
        assert outcome.failure_count == 0
        assert outcome.avg_repair_time_ms == pytest.approx(200.0)
        assert len(knowledge_store.entries) == 1
        assert knowledge_store.entries["know_fixed"].success_count == 2

    @pytest.mark.asyncio()
    async def test_failure_increments_failure_count(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        await learner.learn_from_repair(_result(True, 100), _diagnosis())
        outcome = await learner.learn_from_repair(_result(False, 900), _diagnosis())

        assert outcome.success_count == 1
        assert outcome.failure_count == 1
        assert outcome.avg_repair_time_ms == pytest.approx(100.0)
        knowledge_store.record_knowledge_failure.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_first_failure_seeds_zero_average(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        outcome = await learner.learn_from_repair(_result(False, 900), _diagnosis())

        assert outcome.created is True
        entry = knowledge_store.entries["know_fixed"]
        assert entry.failure_count == 1
        assert entry.avg_repair_time_ms == 0.0

    @pytest.mark.asyncio()
    async def test_not_attempted_is_skipped(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        outcome = await learner.learn_from_repair(
            RepairResult(attempted=False, success=False), _diagnosis()
        )
        assert outcome.learned is False
        assert outcome.reason == "not_attempted"
        knowledge_store.get_knowledge_by_issue_type.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_store_failure(self, learner: Learner, knowledge_store: AsyncMock) -> None:
        knowledge_store.get_knowledge_by_issue_type.side_effect = ConnectionError("db down")
        outcome = await learner.learn_from_repair(_result(True, 100), _diagnosis())
        assert outcome.learned is False
        assert outcome.reason == "store_failed"

    @pytest.mark.asyncio()
    async def test_without_store(self) -> None:
        outcome = await Learner().learn_from_repair(_result(True, 100), _diagnosis())
        assert outcome.learned is False
        assert outcome.reason == "no_store"


# ---------------------------------------------------------------------------
# record_outcome
# ---------------------------------------------------------------------------


class TestRecordOutcome:
    """Tests for Learner.record_outcome()."""

    @staticmethod
    def _record(success: bool = False, repair_time_ms: int = 40) -> RepairHistoryRecord:
        return RepairHistoryRecord(
            id="repair_1",
            issue_type="connections_leak",
            severity=Severity.MEDIUM,
            created_at=NOW,
            symptoms=["pool keeps growing"],
            diagnosis={"category": "connections"},
            fix_applied="Recycle idle connections",
            success=success,
            repair_time_ms=repair_time_ms,
        )

    @pytest.mark.asyncio()
    async def test_updates_history_and_learns(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        knowledge_store.get_repair_history = AsyncMock(return_value=self._record())
        knowledge_store.update_repair_outcome = AsyncMock(return_value=True)

        result = await learner.record_outcome("repair_1", True, repair_time_ms=55)

        assert result.ok
        assert result.value is not None
        assert result.value.learned is True
        knowledge_store.update_repair_outcome.assert_awaited_once_with("repair_1", True, 55)
        entry = knowledge_store.entries["know_fixed"]
        assert entry.category == "connections"
        assert entry.avg_repair_time_ms == 55.0

    @pytest.mark.asyncio()
    async def test_confirmed_outcome_is_not_counted_twice(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        knowledge_store.entries["k1"] = replace(
            _entry("k1", "connections_leak", 1), avg_repair_time_ms=40.0
        )
        knowledge_store.get_repair_history = AsyncMock(return_value=self._record(success=True))
        knowledge_store.update_repair_outcome = AsyncMock(return_value=True)

        result = await learner.record_outcome("repair_1", True)

        assert result.value is not None
        assert result.value.learned is False
        assert result.value.reason == "unchanged"
        knowledge_store.update_repair_outcome.assert_awaited_once_with("repair_1", True, 40)
        assert knowledge_store.entries["k1"].success_count == 1
        assert knowledge_store.entries["k1"].failure_count == 0
        knowledge_store.record_knowledge_success.assert_not_awaited()
        knowledge_store.shift_knowledge_outcome.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_flipped_to_failure_moves_one_count(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        knowledge_store.entries["k1"] = replace(
            _entry("k1", "connections_leak", 2), avg_repair_time_ms=200.0
        )
        knowledge_store.get_repair_history = AsyncMock(
            return_value=self._record(success=True, repair_time_ms=300)
        )
        knowledge_store.update_repair_outcome = AsyncMock(return_value=True)

        result = await learner.record_outcome("repair_1", False)

        assert result.value is not None
        assert result.value.learned is True
        assert result.value.success_count == 1
        assert result.value.failure_count == 1
        assert result.value.avg_repair_time_ms == pytest.approx(100.0)
        entry = knowledge_store.entries["k1"]
        assert (entry.success_count, entry.failure_count) == (1, 1)
        knowledge_store.record_knowledge_failure.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_flipped_to_success_moves_one_count(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        knowledge_store.entries["k1"] = replace(
            _entry("k1", "connections_leak", 0), failure_count=1
        )
        knowledge_store.get_repair_history = AsyncMock(
            return_value=self._record(success=False, repair_time_ms=80)
        )
        knowledge_store.update_repair_outcome = AsyncMock(return_value=True)

        result = await learner.record_outcome("repair_1", True)

        assert result.value is not None
        entry = knowledge_store.entries["k1"]
        assert (entry.success_count, entry.failure_count) == (1, 0)
        assert entry.avg_repair_time_ms == pytest.approx(80.0)
        assert len(knowledge_store.entries) == 1

    @pytest.mark.asyncio()
    async def test_falls_back_to_stored_time(
        self, learner: Learner, knowledge_store: AsyncMock
    ) -> None:
        knowledge_store.get_repair_history = AsyncMock(return_value=self._record())
        knowledge_store.update_repair_outcome = AsyncMock(return_value=True)

        await learner.record_outcome("repair_1", True)

        knowledge_store.update_repair_outcome.assert_awaited_once_with("repair_1", True, 40)

    @pytest.mark.asyncio()
    async def test_unknown_repair(self, learner: Learner, knowledge_store: AsyncMock) -> None:
        knowledge_store.get_repair_history = AsyncMock(return_value=None)

        result = await learner.record_outcome("repair_missing", False)

        assert result.error is not None
        assert result.error.code is ErrorCode.NOT_FOUND

    @pytest.mark.asyncio()
    async def test_without_store(self) -> None:
        result = await Learner().record_outcome("repair_1", True)
        assert result.error is not None
        assert result.error.code is ErrorCode.STORE_UNAVAILABLE


# ---------------------------------------------------------------------------
# compress / stats / knowledge
# ---------------------------------------------------------------------------


class TestCompressRepairKnowledge:
    @pytest.mark.asyncio()
    async def test_reports_duplicates_without_deleting(self) -> None:
        storage = AsyncMock()
        storage.get_knowledge = AsyncMock(
            return_value=[
                _entry("k1", "memory_leak", 2),
                _entry("k2", "memory_leak", 7),
                _entry("k3", "cpu_spike", 1),
            ]
        )

        report = await Learner(storage=storage).compress_repair_knowledge()

        assert report.total_entries == 3
        assert report.groups == 2
        assert report.compressible == 1
        assert report.canonical == {"memory_leak": "k2", "cpu_spike": "k3"}
        storage.delete_knowledge.assert_not_called()

    @pytest.mark.asyncio()
    async def test_without_store(self) -> None:
        report = await Learner().compress_repair_knowledge()
        assert report.to_dict()["total_entries"] == 0


class TestGetRepairStats:
    @pytest.mark.asyncio()
    async def test_aggregates_counts(self) -> None:
        storage = AsyncMock()
        storage.count_patterns = AsyncMock(return_value=4)
        storage.count_patterns_by_category = AsyncMock(return_value={"memory": 3, "cpu": 1})
        repairs = {None: 10, True: 7, False: 3}
        storage.count_repairs = AsyncMock(side_effect=lambda success=None: repairs[success])
        storage.get_avg_repair_time = AsyncMock(return_value=123.456)
        storage.count_predictions = AsyncMock(
            side_effect=lambda active_only=False: 2 if active_only else 5
        )
        storage.count_knowledge = AsyncMock(return_value=6)
        storage.count_metrics = AsyncMock(return_value=900)
        storage.get_metric_types = AsyncMock(return_value=["cpu_percent"])

        stats = await Learner(storage=storage).get_repair_stats()

        assert stats["patterns"] == {"total": 4, "by_category": {"memory": 3, "cpu": 1}}
        assert stats["repairs"]["successful"] == 7
        assert stats["repairs"]["failed"] == 3
        assert stats["repairs"]["success_rate"] == 0.7
        assert stats["repairs"]["avg_repair_time_ms"] == 123.46
        assert stats["predictions"] == {"total": 5, "active": 2}
        assert stats["knowledge"]["total"] == 6
        assert stats["metrics"] == {"total": 900, "types": ["cpu_percent"]}

    @pytest.mark.asyncio()
    async def test_failed_reads_default_to_zero(self) -> None:
        storage = AsyncMock()
        for name in (
            "count_patterns",
            "count_patterns_by_category",
            "count_repairs",
            "get_avg_repair_time",
            "count_predictions",
            "count_knowledge",
            "count_metrics",
            "get_metric_types",
        ):
            setattr(storage, name, AsyncMock(side_effect=ConnectionError("db down")))

        stats = await Learner(storage=storage).get_repair_stats()

        assert stats["repairs"]["total"] == 0
        assert stats["repairs"]["success_rate"] == 0.0
        assert stats["patterns"]["by_category"] == {}
        assert stats["metrics"]["types"] == []

    @pytest.mark.asyncio()
    async def test_without_store(self) -> None:
        stats = await Learner().get_repair_stats()
        assert stats["repairs"]["total"] == 0
        assert stats["knowledge"]["total"] == 0


class TestGetKnowledge:
    @pytest.mark.asyncio()
    async def test_returns_dicts_with_success_rate(self) -> None:
        storage = AsyncMock()
        storage.get_knowledge = AsyncMock(
            return_value=[
                KnowledgeEntry(
                    id="k1",
                    category="memory",
                    issue_type="memory_leak",
                    success_count=3,
                    failure_count=1,
                )
            ]
        )

        entries = await Learner(storage=storage).get_knowledge("memory")

        assert entries[0]["success_rate"] == 0.75
        storage.get_knowledge.assert_awaited_once_with("memory")
