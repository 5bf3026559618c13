"""PostgreSQL storage for repair patterns, history, predictions and knowledge.

Initialise with an asyncpg.Pool, then use async methods for reads/writes::

    storage = RepairStorage()
    await storage.initialize(pool)
    await storage.save_metric("heap_used_mb", 512.0)

Every statement is parameterized.  Callers in the repair pipeline treat all
of these methods as best effort (see ``repair_brain.errors.guarded``).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from repair_brain.logging import get_logger

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("repair_brain.health.storage")


# ------------------------------------------------------------------
# Enumerations
# ------------------------------------------------------------------


class Severity(Enum):
    """Ordered severity of a detected pattern or stored record."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @property
    def weight(self) -> float:
        """Scoring weight used when ranking issues and symptom matches."""
        return _SEVERITY_WEIGHTS[self]

    def at_least(self, other: Severity) -> bool:
        return self.rank >= other.rank


_SEVERITY_ORDER = [
    Severity.INFO,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]

_SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 1.0,
    Severity.HIGH: 0.75,
    Severity.MEDIUM: 0.5,
    Severity.LOW: 0.25,
    Severity.INFO: 0.1,
}


class MetricCategory(Enum):
    """Metric families that have a dedicated pattern analyzer."""

    MEMORY = "memory"
    LATENCY = "latency"
    ERROR_RATE = "error_rate"
    CONNECTIONS = "connections"
    CPU = "cpu"

    @classmethod
    def classify(cls, metric_name: str) -> MetricCategory | None:
        """Map a metric name to its category, or ``None`` if unrecognised."""
        lower = (metric_name or "").strip().lower()
        if not lower:
            return None
        for category, keywords in _CATEGORY_KEYWORDS:
            if any(kw in lower for kw in keywords):
                return category
        return None


# Checked in order; "error" must win over "connection" for e.g. "connection_errors"
_CATEGORY_KEYWORDS: list[tuple[MetricCategory, tuple[str, ...]]] = [
    (MetricCategory.ERROR_RATE, ("error", "failure_rate")),
    (MetricCategory.MEMORY, ("memory", "heap", "rss", "mem_")),
    (MetricCategory.LATENCY, ("latency", "response_time", "duration")),
    (MetricCategory.CONNECTIONS, ("connection", "conn", "pool", "socket")),
    (MetricCategory.CPU, ("cpu", "load")),
]


# ------------------------------------------------------------------
# Data models
# ------------------------------------------------------------------


@dataclass
class MetricSample:
    """A single persisted metric sample."""

    metric_type: str
    value: float
    recorded_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "metric_type": self.metric_type,
            "value": self.value,
            "metadata": self.metadata,
            "recorded_at": self.recorded_at.isoformat(),
        }


@dataclass
class RepairPattern:
    """A known failure (or healthy) signature and its resolution."""

    id: str
    category: str
    subcategory: str
    name: str
    signature: str
    severity: Severity = Severity.MEDIUM
    confidence: float = 0.5
    is_healthy: bool = False
    resolution: str | None = None
    typical_time_to_failure: str | None = None
    source_ref: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "subcategory": self.subcategory,
            "name": self.name,
            "signature": self.signature,
            "is_healthy": self.is_healthy,
            "resolution": self.resolution,
            "typical_time_to_failure": self.typical_time_to_failure,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "source_ref": self.source_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class RepairHistoryRecord:
    """One repair attempt and its outcome."""

    id: str
    issue_type: str
    severity: Severity
    created_at: datetime
    symptoms: list[str] = field(default_factory=list)
    diagnosis: dict[str, Any] = field(default_factory=dict)
    repair_option_used: dict[str, Any] | None = None
    fix_applied: str | None = None
    success: bool = False
    repair_time_ms: int | None = None
    rollback_needed: bool = False
    verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_type": self.issue_type,
            "symptoms": self.symptoms,
            "severity": self.severity.value,
            "diagnosis": self.diagnosis,
            "repair_option_used": self.repair_option_used,
            "fix_applied": self.fix_applied,
            "success": self.success,
            "repair_time_ms": self.repair_time_ms,
            "rollback_needed": self.rollback_needed,
            "verified": self.verified,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Prediction:
    """An early warning derived from a precursor pattern."""

    id: str
    predicted_issue: str
    confidence: float
    time_to_impact: str
    preventive_action: str
    created_at: datetime
    applied: bool = False
    outcome: str | None = None
    source_pattern_id: str | None = None
    # Not persisted; available on freshly generated predictions
    category: str | None = None
    severity: Severity | None = None
    precursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "predicted_issue": self.predicted_issue,
            "confidence": self.confidence,
            "time_to_impact": self.time_to_impact,
            "preventive_action": self.preventive_action,
            "applied": self.applied,
            "outcome": self.outcome,
            "source_pattern_id": self.source_pattern_id,
            "category": self.category,
            "severity": self.severity.value if self.severity else None,
            "precursor": self.precursor,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class KnowledgeEntry:
    """Accumulated success/failure record for one issue type."""

    id: str
    category: str
    issue_type: str
    symptoms: str = ""
    fix_description: str = ""
    success_count: int = 0
    failure_count: int = 0
    avg_repair_time_ms: float = 0.0
    last_used_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        return self.success_count / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "issue_type": self.issue_type,
            "symptoms": self.symptoms,
            "fix_description": self.fix_description,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "avg_repair_time_ms": self.avg_repair_time_ms,
            "success_rate": round(self.success_rate, 3),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ------------------------------------------------------------------
# SQL schema
# ------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS repair_patterns (
    id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    subcategory TEXT NOT NULL,
    name TEXT NOT NULL,
    signature TEXT NOT NULL,
    is_healthy BOOLEAN NOT NULL DEFAULT FALSE,
    resolution TEXT,
    typical_time_to_failure TEXT,
    severity TEXT NOT NULL DEFAULT 'medium',
    confidence REAL NOT NULL DEFAULT 0.5,
    source_ref TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS repair_history (
    id TEXT PRIMARY KEY,
    issue_type TEXT NOT NULL,
    symptoms JSONB NOT NULL DEFAULT '[]'::jsonb,
    severity TEXT NOT NULL DEFAULT 'medium',
    diagnosis JSONB NOT NULL DEFAULT '{}'::jsonb,
    repair_option_used JSONB,
    fix_applied TEXT,
    success BOOLEAN NOT NULL DEFAULT FALSE,
    repair_time_ms INTEGER,
    rollback_needed BOOLEAN NOT NULL DEFAULT FALSE,
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS repair_predictions (
    id TEXT PRIMARY KEY,
    predicted_issue TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.5,
    time_to_impact TEXT,
    preventive_action TEXT,
    applied BOOLEAN NOT NULL DEFAULT FALSE,
    outcome TEXT,
    source_pattern_id TEXT REFERENCES repair_patterns(id),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS repair_knowledge (
    id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    issue_type TEXT NOT NULL,
    symptoms TEXT NOT NULL DEFAULT '',
    fix_description TEXT NOT NULL DEFAULT '',
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    avg_repair_time_ms REAL NOT NULL DEFAULT 0,
    last_used_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS system_metrics_history (
    id BIGSERIAL PRIMARY KEY,
    metric_type TEXT NOT NULL,
    value DOUBLE PRECISION NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_repair_patterns_category
    ON repair_patterns (category);
CREATE INDEX IF NOT EXISTS idx_repair_history_type
    ON repair_history (issue_type);
CREATE INDEX IF NOT EXISTS idx_repair_history_created
    ON repair_history (created_at DESC);
CREATE INDEX IF NOT EXISTS idx_repair_predictions_applied
    ON repair_predictions (applied);
CREATE INDEX IF NOT EXISTS idx_repair_knowledge_category
    ON repair_knowledge (category);
CREATE INDEX IF NOT EXISTS idx_repair_knowledge_type
    ON repair_knowledge (issue_type);
CREATE INDEX IF NOT EXISTS idx_metrics_type_recorded
    ON system_metrics_history (metric_type, recorded_at DESC);
"""

_PATTERN_COLUMNS = (
    "id, category, subcategory, name, signature, is_healthy, resolution, "
    "typical_time_to_failure, severity, confidence, source_ref, created_at"
)
_HISTORY_COLUMNS = (
    "id, issue_type, symptoms, severity, diagnosis, repair_option_used, fix_applied, "
    "success, repair_time_ms, rollback_needed, verified, created_at"
)
_PREDICTION_COLUMNS = (
    "id, predicted_issue, confidence, time_to_impact, preventive_action, "
    "applied, outcome, source_pattern_id, created_at"
)
_KNOWLEDGE_COLUMNS = (
    "id, category, issue_type, symptoms, fix_description, success_count, "
    "failure_count, avg_repair_time_ms, last_used_at, created_at"
)


# ------------------------------------------------------------------
# Storage class
# ------------------------------------------------------------------


class RepairStorage:
    """PostgreSQL storage for the repair subsystem."""

    def __init__(self) -> None:
        self._pool: asyncpg.Pool | None = None

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create tables and store the connection pool reference."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_SCHEMA)
        log.info("repair_storage.initialized")

    async def ping(self) -> bool:
        """Round-trip a trivial query."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            value = await conn.fetchval("SELECT 1")
        return value == 1

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def save_metric(
        self,
        metric_type: str,
        value: float,
        recorded_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Append a metric sample. Returns the row id."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                """
                INSERT INTO system_metrics_history (metric_type, value, metadata, recorded_at)
                VALUES ($1, $2, $3, $4)
                RETURNING id
                """,
                metric_type,
                value,
                json.dumps(metadata or {}),
                recorded_at,
            )
        return row["id"]  # type: ignore[index,no-any-return]

    async def get_metric_history(self, metric_type: str, since: datetime) -> list[MetricSample]:
        """Samples of one metric recorded at or after *since*, oldest first."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                """
                SELECT id, metric_type, value, metadata, recorded_at
                FROM system_metrics_history
                WHERE metric_type = $1 AND recorded_at >= $2
                ORDER BY recorded_at ASC
                """,
                metric_type,
                since,
            )
        return [
            MetricSample(
                id=row["id"],
                metric_type=row["metric_type"],
                value=row["value"],
                metadata=json.loads(row["metadata"]),
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]

    async def count_metrics(self) -> int:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            return await conn.fetchval(  # type: ignore[no-any-return]
                "SELECT COUNT(*) FROM system_metrics_history"
            )

    async def get_metric_types(self) -> list[str]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                "SELECT DISTINCT metric_type FROM system_metrics_history ORDER BY metric_type"
            )
        return [row["metric_type"] for row in rows]

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    async def save_pattern(self, pattern: RepairPattern) -> str:
        """Insert a repair pattern. Returns its id."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                f"""
                INSERT INTO repair_patterns ({_PATTERN_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                pattern.id,
                pattern.category,
                pattern.subcategory,
                pattern.name,
                pattern.signature,
                pattern.is_healthy,
                pattern.resolution,
                pattern.typical_time_to_failure,
                pattern.severity.value,
                pattern.confidence,
                pattern.source_ref,
                pattern.created_at,
            )
        return pattern.id

    async def get_patterns(
        self,
        category: str | None = None,
        severity: Severity | None = None,
    ) -> list[RepairPattern]:
        """Stored patterns, newest first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if category is not None:
            params.append(category)
            clauses.append(f"category = ${len(params)}")
        if severity is not None:
            params.append(severity.value)
            clauses.append(f"severity = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"SELECT {_PATTERN_COLUMNS} FROM repair_patterns {where} "
                "ORDER BY created_at DESC",
                *params,
            )
        return [_pattern_from_row(row) for row in rows]

    async def count_patterns(self) -> int:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            return await conn.fetchval(  # type: ignore[no-any-return]
                "SELECT COUNT(*) FROM repair_patterns"
            )

    async def count_patterns_by_category(self) -> dict[str, int]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                "SELECT category, COUNT(*) AS count FROM repair_patterns GROUP BY category"
            )
        return {row["category"]: row["count"] for row in rows}

    # ------------------------------------------------------------------
    # Repair history
    # ------------------------------------------------------------------

    async def save_repair_history(self, record: RepairHistoryRecord) -> str:
        """Insert one repair attempt. Returns its id."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                f"""
                INSERT INTO repair_history ({_HISTORY_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                record.id,
                record.issue_type,
                json.dumps(record.symptoms),
                record.severity.value,
                json.dumps(record.diagnosis),
                json.dumps(record.repair_option_used)
                if record.repair_option_used is not None
                else None,
                record.fix_applied,
                record.success,
                record.repair_time_ms,
                record.rollback_needed,
                record.verified,
                record.created_at,
            )
        return record.id

    async def get_repair_history(self, repair_id: str) -> RepairHistoryRecord | None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"SELECT {_HISTORY_COLUMNS} FROM repair_history WHERE id = $1",
                repair_id,
            )
        if row is None:
            return None
        return _history_from_row(row)

    async def list_repair_history(
        self,
        limit: int = 50,
        offset: int = 0,
        success: bool | None = None,
    ) -> list[RepairHistoryRecord]:
        """Repair attempts, newest first."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            if success is None:
                rows = await conn.fetch(
                    f"SELECT {_HISTORY_COLUMNS} FROM repair_history "
                    "ORDER BY created_at DESC LIMIT $1 OFFSET $2",
                    limit,
                    offset,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_HISTORY_COLUMNS} FROM repair_history WHERE success = $1 "
                    "ORDER BY created_at DESC LIMIT $2 OFFSET $3",
                    success,
                    limit,
                    offset,
                )
        return [_history_from_row(row) for row in rows]

    async def count_repairs(self, success: bool | None = None) -> int:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            if success is None:
                return await conn.fetchval(  # type: ignore[no-any-return]
                    "SELECT COUNT(*) FROM repair_history"
                )
            return await conn.fetchval(  # type: ignore[no-any-return]
                "SELECT COUNT(*) FROM repair_history WHERE success = $1",
                success,
            )

    async def get_avg_repair_time(self) -> float:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            value = await conn.fetchval(
                "SELECT AVG(repair_time_ms) FROM repair_history "
                "WHERE repair_time_ms IS NOT NULL AND repair_time_ms > 0"
            )
        return float(value) if value is not None else 0.0

    async def update_repair_outcome(
        self,
        repair_id: str,
        success: bool,
        repair_time_ms: int | None,
    ) -> None:
        """Record a verified outcome for an earlier repair attempt."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                UPDATE repair_history
                SET success = $1, verified = TRUE,
                    repair_time_ms = COALESCE($2, repair_time_ms)
                WHERE id = $3
                """,
                success,
                repair_time_ms,
                repair_id,
            )

    async def mark_rollback_needed(self, repair_id: str) -> bool:
        """Flag a repair for rollback. Returns False if the id is unknown."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            result = await conn.execute(
                "UPDATE repair_history SET rollback_needed = TRUE WHERE id = $1",
                repair_id,
            )
        return _affected(result) > 0

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    async def save_prediction(self, prediction: Prediction) -> str:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                f"""
                INSERT INTO repair_predictions ({_PREDICTION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                prediction.id,
                prediction.predicted_issue,
                prediction.confidence,
                prediction.time_to_impact,
                prediction.preventive_action,
                prediction.applied,
                prediction.outcome,
                prediction.source_pattern_id,
                prediction.created_at,
            )
        return prediction.id

    async def get_prediction(self, prediction_id: str) -> Prediction | None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"SELECT {_PREDICTION_COLUMNS} FROM repair_predictions WHERE id = $1",
                prediction_id,
            )
        if row is None:
            return None
        return _prediction_from_row(row)

    async def list_predictions(
        self,
        min_confidence: float = 0.0,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Prediction]:
        """Predictions ordered by confidence, then recency."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"SELECT {_PREDICTION_COLUMNS} FROM repair_predictions "
                "WHERE confidence >= $1 "
                "ORDER BY confidence DESC, created_at DESC LIMIT $2 OFFSET $3",
                min_confidence,
                limit,
                offset,
            )
        return [_prediction_from_row(row) for row in rows]

    async def count_predictions(self, active_only: bool = False) -> int:
        query = "SELECT COUNT(*) FROM repair_predictions"
        if active_only:
            query += " WHERE applied = FALSE"
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            return await conn.fetchval(query)  # type: ignore[no-any-return]

    async def mark_prediction_applied(self, prediction_id: str, outcome: str) -> bool:
        """Transition a prediction to applied. Returns False if the id is unknown."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            result = await conn.execute(
                "UPDATE repair_predictions SET applied = TRUE, outcome = $1 WHERE id = $2",
                outcome,
                prediction_id,
            )
        return _affected(result) > 0

    # ------------------------------------------------------------------
    # Knowledge
    # ------------------------------------------------------------------

    async def save_knowledge(self, entry: KnowledgeEntry) -> str:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                f"""
                INSERT INTO repair_knowledge ({_KNOWLEDGE_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                entry.id,
                entry.category,
                entry.issue_type,
                entry.symptoms,
                entry.fix_description,
                entry.success_count,
                entry.failure_count,
                entry.avg_repair_time_ms,
                entry.last_used_at,
                entry.created_at,
            )
        return entry.id

    async def get_knowledge(self, category: str | None = None) -> list[KnowledgeEntry]:
        """Knowledge entries, most successful first."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            if category is None:
                rows = await conn.fetch(
                    f"SELECT {_KNOWLEDGE_COLUMNS} FROM repair_knowledge "
                    "ORDER BY success_count DESC"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_KNOWLEDGE_COLUMNS} FROM repair_knowledge "
                    "WHERE category = $1 ORDER BY success_count DESC",
                    category,
                )
        return [_knowledge_from_row(row) for row in rows]

    async def get_knowledge_by_issue_type(self, issue_type: str) -> list[KnowledgeEntry]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"SELECT {_KNOWLEDGE_COLUMNS} FROM repair_knowledge "
                "WHERE issue_type = $1 ORDER BY success_count DESC",
                issue_type,
            )
        return [_knowledge_from_row(row) for row in rows]

    async def record_knowledge_success(
        self,
        entry_id: str,
        avg_repair_time_ms: float,
        used_at: datetime,
    ) -> None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                UPDATE repair_knowledge
                SET success_count = success_count + 1,
                    avg_repair_time_ms = $1,
                    last_used_at = $2
                WHERE id = $3
                """,
                avg_repair_time_ms,
                used_at,
                entry_id,
            )

    async def record_knowledge_failure(self, entry_id: str, used_at: datetime) -> None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                UPDATE repair_knowledge
                SET failure_count = failure_count + 1, last_used_at = $1
                WHERE id = $2
                """,
                used_at,
                entry_id,
            )

    async def shift_knowledge_outcome(
        self,
        entry_id: str,
        success: bool,
        avg_repair_time_ms: float,
        used_at: datetime,
    ) -> None:
        """Move one observation between the failure and success counters."""
        step = 1 if success else -1
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                UPDATE repair_knowledge
                SET success_count = GREATEST(success_count + $1, 0),
                    failure_count = GREATEST(failure_count - $1, 0),
                    avg_repair_time_ms = $2,
                    last_used_at = $3
                WHERE id = $4
                """,
                step,
                avg_repair_time_ms,
                used_at,
                entry_id,
            )

    async def count_knowledge(self) -> int:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            return await conn.fetchval(  # type: ignore[no-any-return]
                "SELECT COUNT(*) FROM repair_knowledge"
            )


# ------------------------------------------------------------------
# Row mapping
# ------------------------------------------------------------------


def _affected(status: str | None) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0


def _pattern_from_row(row: Any) -> RepairPattern:
    return RepairPattern(
        id=row["id"],
        category=row["category"],
        subcategory=row["subcategory"],
        name=row["name"],
        signature=row["signature"],
        is_healthy=row["is_healthy"],
        resolution=row["resolution"],
        typical_time_to_failure=row["typical_time_to_failure"],
        severity=Severity(row["severity"]),
        confidence=row["confidence"],
        source_ref=row["source_ref"],
        created_at=row["created_at"],
    )


def _history_from_row(row: Any) -> RepairHistoryRecord:
    option = row["repair_option_used"]
    return RepairHistoryRecord(
        id=row["id"],
        issue_type=row["issue_type"],
        symptoms=json.loads(row["symptoms"]),
        severity=Severity(row["severity"]),
        diagnosis=json.loads(row["diagnosis"]),
        repair_option_used=json.loads(option) if option is not None else None,
        fix_applied=row["fix_applied"],
        success=row["success"],
        repair_time_ms=row["repair_time_ms"],
        rollback_needed=row["rollback_needed"],
        verified=row["verified"],
        created_at=row["created_at"],
    )


def _prediction_from_row(row: Any) -> Prediction:
    return Prediction(
        id=row["id"],
        predicted_issue=row["predicted_issue"],
        confidence=row["confidence"],
        time_to_impact=row["time_to_impact"],
        preventive_action=row["preventive_action"],
        applied=row["applied"],
        outcome=row["outcome"],
        source_pattern_id=row["source_pattern_id"],
        created_at=row["created_at"],
    )


def _knowledge_from_row(row: Any) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=row["id"],
        category=row["category"],
        issue_type=row["issue_type"],
        symptoms=row["symptoms"],
        fix_description=row["fix_description"],
        success_count=row["success_count"],
        failure_count=row["failure_count"],
        avg_repair_time_ms=row["avg_repair_time_ms"] or 0.0,
        last_used_at=row["last_used_at"],
        created_at=row["created_at"],
    )
