"""Issue classification and repair-option ranking.

The engine is stateless apart from its store handle: it reads stored
patterns and knowledge entries to rank fixes for the primary issue of a
``HealthReport`` and falls back to category-specific generic fixes so that
at least one option always exists.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from repair_brain.errors import guarded
from repair_brain.health.analyzer import HealthReport, Issue, PatternAnalysis
from repair_brain.health.storage import RepairPattern, Severity
from repair_brain.logging import get_logger
from repair_brain.utils import generate_id, overlap_score, tokenize, utcnow

if TYPE_CHECKING:
    from repair_brain.health.storage import RepairStorage

log = get_logger("repair_brain.repair.diagnosis")


class FixType(StrEnum):
    """Closed set of fix kinds the executor can dispatch on."""

    OBSERVATION = "observation"
    GARBAGE_COLLECT = "garbage_collect"
    CLEAR_CACHES = "clear_caches"
    RESET_CONNECTIONS = "reset_connections"
    THROTTLE = "throttle"
    CIRCUIT_BREAK = "circuit_break"
    RESTART_COMPONENT = "restart_component"

    @classmethod
    def infer(cls, text: str | None, category: str) -> FixType:
        """Pick a fix type from free-text resolution, else the category default."""
        tokens = set(tokenize(text))
        for fix_type, keywords in _FIX_KEYWORDS:
            if tokens & keywords:
                return fix_type
        return _CATEGORY_DEFAULT_FIX.get(category, cls.RESTART_COMPONENT)


_FIX_KEYWORDS: list[tuple[FixType, set[str]]] = [
    (FixType.GARBAGE_COLLECT, {"gc", "garbage", "collect", "collection", "heap"}),
    (FixType.CLEAR_CACHES, {"cache", "caches", "evict", "flush"}),
    (FixType.RESET_CONNECTIONS, {"connection", "connections", "pool", "socket", "reconnect"}),
    (FixType.CIRCUIT_BREAK, {"circuit", "breaker", "fallback", "failover"}),
    (FixType.THROTTLE, {"throttle", "rate", "backoff", "shed", "concurrency"}),
    (FixType.RESTART_COMPONENT, {"restart", "reload", "reinitialize", "reinitialise"}),
]

_CATEGORY_DEFAULT_FIX: dict[str, FixType] = {
    "memory": FixType.GARBAGE_COLLECT,
    "latency": FixType.THROTTLE,
    "error_rate": FixType.CIRCUIT_BREAK,
    "connections": FixType.RESET_CONNECTIONS,
    "cpu": FixType.THROTTLE,
}

# (fix type, description, confidence) per category
_GENERIC_FIXES: dict[str, list[tuple[FixType, str, float]]] = {
    "memory": [
        (FixType.GARBAGE_COLLECT, "Force a full garbage collection", 0.4),
        (FixType.CLEAR_CACHES, "Clear in-process caches to release memory", 0.3),
    ],
    "latency": [
        (FixType.THROTTLE, "Throttle non-critical work to shed load", 0.35),
        (FixType.CLEAR_CACHES, "Flush stale caches that may slow lookups", 0.25),
    ],
    "error_rate": [
        (FixType.CIRCUIT_BREAK, "Open the circuit breaker for the failing dependency", 0.4),
        (FixType.RESTART_COMPONENT, "Restart the component producing errors", 0.3),
    ],
    "connections": [
        (FixType.RESET_CONNECTIONS, "Expire idle connections and rebuild the pool", 0.4),
        (FixType.THROTTLE, "Cap concurrent connection acquisition", 0.2),
    ],
    "cpu": [
        (FixType.THROTTLE, "Throttle background jobs to relieve CPU pressure", 0.35),
        (FixType.RESTART_COMPONENT, "Restart the busiest worker", 0.2),
    ],
}


# ------------------------------------------------------------------
# Models
# ------------------------------------------------------------------


@dataclass
class RepairOption:
    """One candidate fix with its ranking confidence."""

    type: FixType
    description: str
    confidence: float
    source: str  # pattern | knowledge | symptom_match | generic | observation
    category: str | None = None
    pattern_id: str | None = None
    knowledge_id: str | None = None
    matched_tokens: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "confidence": self.confidence,
            "source": self.source,
            "category": self.category,
            "pattern_id": self.pattern_id,
            "knowledge_id": self.knowledge_id,
            "matched_tokens": self.matched_tokens,
        }


@dataclass
class SymptomMatch:
    """A stored pattern that shares vocabulary with reported symptoms."""

    pattern: RepairPattern
    score: float
    matched_tokens: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern.to_dict(),
            "score": self.score,
            "matched_tokens": self.matched_tokens,
        }


@dataclass
class Classification:
    classified: bool
    primary_issue: Issue | None = None
    all_issues: list[Issue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "classified": self.classified,
            "primary_issue": self.primary_issue.to_dict() if self.primary_issue else None,
            "all_issues": [i.to_dict() for i in self.all_issues],
        }


@dataclass
class Diagnosis:
    """Classification plus ranked fixes for one health report."""

    id: str
    timestamp: datetime
    classification: Classification
    options: list[RepairOption] = field(default_factory=list)
    recommended_action: RepairOption | None = None

    @property
    def primary_issue(self) -> Issue | None:
        return self.classification.primary_issue

    @property
    def issue_type(self) -> str | None:
        issue = self.primary_issue
        return issue.issue_type if issue is not None else None

    @property
    def category(self) -> str | None:
        issue = self.primary_issue
        return issue.category if issue is not None else None

    @property
    def severity(self) -> Severity:
        issue = self.primary_issue
        return issue.severity if issue is not None else Severity.INFO

    @property
    def symptoms(self) -> list[str]:
        issue = self.primary_issue
        if issue is None:
            return []
        if issue.symptoms:
            return list(issue.symptoms)
        label = issue.metric or issue.category
        return [f"{label}: {issue.pattern} ({issue.severity.value})"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "issue_type": self.issue_type,
            "category": self.category,
            "severity": self.severity.value,
            "symptoms": self.symptoms,
            "classification": self.classification.to_dict(),
            "options": [o.to_dict() for o in self.options],
            "recommended_action": self.recommended_action.to_dict()
            if self.recommended_action
            else None,
        }


# ------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------


class DiagnosisEngine:
    """Classifies issues and ranks repair options."""

    def __init__(
        self,
        storage: RepairStorage | None = None,
        id_factory: Callable[[str], str] = generate_id,
    ) -> None:
        self._storage = storage
        self._id_factory = id_factory

    def classify_issue(
        self,
        report: HealthReport,
        extra: Issue | dict[str, Any] | None = None,
    ) -> Classification:
        """Merge report issues with optional manual context and rank them.

        Issues sort by severity weight, then confidence, both descending.
        """
        issues = list(report.issues)
        manual = _coerce_issue(extra) if extra is not None else None
        if manual is not None:
            issues.append(manual)

        if not issues:
            return Classification(classified=False)

        ranked = sorted(issues, key=lambda i: (i.severity.weight, i.confidence), reverse=True)
        return Classification(classified=True, primary_issue=ranked[0], all_issues=ranked)

    async def rank_repair_options(self, classification: Classification) -> list[RepairOption]:
        """Gather pattern, knowledge and generic options, best first."""
        primary = classification.primary_issue
        if not classification.classified or primary is None:
            return [
                RepairOption(
                    type=FixType.OBSERVATION,
                    description="No issue detected; continue monitoring",
                    confidence=1.0,
                    source="observation",
                )
            ]

        category = primary.category
        options: list[RepairOption] = []
        index: dict[str, int] = {}

        def add(option: RepairOption, learned: bool = False) -> None:
            at = index.get(option.description)
            if at is None:
                index[option.description] = len(options)
                options.append(option)
            elif learned and options[at].source != "knowledge":
                # learned success rate replaces the static confidence
                option.pattern_id = options[at].pattern_id
                options[at] = option

        if self._storage is not None:
            patterns = await guarded(
                "load_patterns", self._storage.get_patterns(category=category), log
            )
            for pattern in patterns.unwrap_or([]):
                if pattern.is_healthy or not pattern.resolution:
                    continue
                add(
                    RepairOption(
                        type=FixType.infer(pattern.resolution, category),
                        description=pattern.resolution,
                        confidence=round(pattern.confidence, 4),
                        source="pattern",
                        category=category,
                        pattern_id=pattern.id,
                    )
                )

            if primary.symptoms:
                for match in await self.match_symptoms(primary.symptoms):
                    resolution = match.pattern.resolution
                    if match.pattern.is_healthy or not resolution:
                        continue
                    add(
                        RepairOption(
                            type=FixType.infer(resolution, match.pattern.category),
                            description=resolution,
                            confidence=match.score,
                            source="symptom_match",
                            category=match.pattern.category,
                            pattern_id=match.pattern.id,
                            matched_tokens=match.matched_tokens,
                        )
                    )

            knowledge = await guarded(
                "load_knowledge", self._storage.get_knowledge(category=category), log
            )
            for entry in knowledge.unwrap_or([]):
                if not entry.fix_description:
                    continue
                add(
                    RepairOption(
                        type=FixType.infer(entry.fix_description, category),
                        description=entry.fix_description,
                        confidence=round(entry.success_rate, 4),
                        source="knowledge",
                        category=category,
                        knowledge_id=entry.id,
                    ),
                    learned=entry.success_count + entry.failure_count > 0,
                )

        for fix_type, description, confidence in _GENERIC_FIXES.get(category, []):
            add(
                RepairOption(
                    type=fix_type,
                    description=description,
                    confidence=confidence,
                    source="generic",
                    category=category,
                )
            )
        if not options:
            add(
                RepairOption(
                    type=FixType.RESTART_COMPONENT,
                    description=f"Restart the subsystem affected by {primary.issue_type}",
                    confidence=0.2,
                    source="generic",
                    category=category,
                )
            )

        options.sort(key=lambda o: o.confidence, reverse=True)
        return options

    async def diagnose(
        self,
        report: HealthReport,
        extra: Issue | dict[str, Any] | None = None,
    ) -> Diagnosis:
        classification = self.classify_issue(report, extra)
        options = await self.rank_repair_options(classification)
        diagnosis = Diagnosis(
            id=self._id_factory("diag"),
            timestamp=utcnow(),
            classification=classification,
            options=options,
            recommended_action=options[0] if options else None,
        )
        log.info(
            "diagnosis_complete",
            diagnosis_id=diagnosis.id,
            classified=classification.classified,
            issue_type=diagnosis.issue_type,
            options=len(options),
        )
        return diagnosis

    async def match_symptoms(self, symptoms: list[str] | str) -> list[SymptomMatch]:
        """Score stored patterns by token overlap with *symptoms*.

        score = overlap * 0.6 + severity weight * 0.2 + pattern confidence * 0.2
        """
        if isinstance(symptoms, str):
            symptoms = [symptoms]
        symptom_tokens: list[str] = []
        for symptom in symptoms:
            symptom_tokens.extend(tokenize(symptom))
        if not symptom_tokens or self._storage is None:
            return []

        patterns = await guarded("load_patterns", self._storage.get_patterns(), log)
        symptom_set = set(symptom_tokens)
        matches: list[SymptomMatch] = []
        for pattern in patterns.unwrap_or([]):
            pattern_tokens = [
                *tokenize(pattern.signature),
                *tokenize(pattern.name),
                *tokenize(pattern.resolution),
                *tokenize(pattern.category),
                *tokenize(pattern.subcategory),
            ]
            overlap = overlap_score(symptom_tokens, pattern_tokens)
            if overlap <= 0:
                continue
            score = overlap * 0.6 + pattern.severity.weight * 0.2 + pattern.confidence * 0.2
            pattern_set = set(pattern_tokens)
            matches.append(
                SymptomMatch(
                    pattern=pattern,
                    score=round(score, 3),
                    matched_tokens=sorted(symptom_set & pattern_set),
                )
            )

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches


def _coerce_issue(extra: Issue | dict[str, Any]) -> Issue | None:
    """Turn manually reported context into an ``Issue``."""
    if isinstance(extra, Issue):
        return extra

    category = str(extra.get("category") or "").strip()
    if not category:
        log.warning("manual_issue_ignored", reason="missing_category")
        return None

    raw_severity = extra.get("severity", Severity.MEDIUM)
    try:
        severity = (
            raw_severity if isinstance(raw_severity, Severity) else Severity(str(raw_severity))
        )
    except ValueError:
        log.warning("manual_issue_severity_defaulted", severity=raw_severity)
        severity = Severity.MEDIUM

    symptoms = extra.get("symptoms") or []
    if isinstance(symptoms, str):
        symptoms = [symptoms]

    return Issue(
        category=category,
        analysis=PatternAnalysis(
            pattern=str(extra.get("pattern") or "reported"),
            confidence=float(extra.get("confidence", 0.5)),
            severity=severity,
            details=dict(extra.get("details") or {}),
        ),
        metric=extra.get("metric"),
        symptoms=[str(s) for s in symptoms],
        source="manual",
    )
