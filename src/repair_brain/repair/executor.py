"""Fix application, verification and repair history.

Fixes are dispatched through a typed ``ActionRegistry`` so the host decides
what each ``FixType`` actually does.  Every attempt is bracketed by two
snapshots and verified with a per-category strategy; exactly one history
record is written per attempted repair.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from repair_brain.constants import DEFAULT_FIX_TIMEOUT_SECONDS
from repair_brain.errors import ErrorCode, RepairError, Result, guarded
from repair_brain.health.collector import Snapshot, SnapshotCollector
from repair_brain.health.storage import RepairHistoryRecord
from repair_brain.logging import get_logger
from repair_brain.repair.diagnosis import Diagnosis, FixType, RepairOption
from repair_brain.utils import generate_id, utcnow

if TYPE_CHECKING:
    from repair_brain.health.storage import RepairStorage

log = get_logger("repair_brain.repair.executor")

# (option) -> bool | dict | None, sync or async
FixHandler = Callable[[RepairOption], Any]
# (repair_id) -> Any, sync or async
RollbackHook = Callable[[str], Any]


def _noop_handler(option: RepairOption) -> dict[str, Any]:
    return {"success": True, "simulated": True}


class ActionRegistry:
    """Maps each ``FixType`` to the host callable that performs it.

    Unregistered fix types resolve to a no-op handler that reports a
    simulated success, so ranking and history still work in hosts that
    register nothing.
    """

    def __init__(
        self,
        handlers: dict[FixType, FixHandler] | None = None,
        rollback_hook: RollbackHook | None = None,
    ) -> None:
        self._handlers: dict[FixType, FixHandler] = dict(handlers or {})
        self.rollback_hook = rollback_hook

    def register(self, fix_type: FixType, handler: FixHandler) -> None:
        self._handlers[fix_type] = handler
        log.debug("fix_handler_registered", fix_type=fix_type.value)

    def unregister(self, fix_type: FixType) -> None:
        self._handlers.pop(fix_type, None)

    def get(self, fix_type: FixType) -> FixHandler:
        return self._handlers.get(fix_type, _noop_handler)

    def __contains__(self, fix_type: object) -> bool:
        return fix_type in self._handlers


# ------------------------------------------------------------------
# Results
# ------------------------------------------------------------------


@dataclass
class FixResult:
    success: bool
    fix_type: FixType
    description: str
    duration_ms: int = 0
    simulated: bool = False
    details: dict[str, Any] = field(default_factory=dict)
    error: RepairError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "fix_type": self.fix_type.value,
            "description": self.description,
            "duration_ms": self.duration_ms,
            "simulated": self.simulated,
            "details": self.details,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class Verification:
    """Before/after comparison; ``delta`` is positive when the value fell.

    ``improved`` is None while verification is deferred to a later sample.
    """

    improved: bool | None
    delta: float
    method: str
    before: float | None = None
    after: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "improved": self.improved,
            "delta": self.delta,
            "method": self.method,
            "before": self.before,
            "after": self.after,
        }


@dataclass
class RepairResult:
    attempted: bool
    success: bool
    repair_id: str | None = None
    fix: FixResult | None = None
    verification: Verification | None = None
    before: Snapshot | None = None
    after: Snapshot | None = None
    repair_time_ms: int = 0
    persisted: bool = False
    error: RepairError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "success": self.success,
            "repair_id": self.repair_id,
            "fix": self.fix.to_dict() if self.fix else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "before": self.before.to_dict() if self.before else None,
            "after": self.after.to_dict() if self.after else None,
            "repair_time_ms": self.repair_time_ms,
            "persisted": self.persisted,
            "error": self.error.to_dict() if self.error else None,
        }


# ------------------------------------------------------------------
# Verification strategies
# ------------------------------------------------------------------


def _snapshot_field(attr: str) -> Callable[[Snapshot, str], float | None]:
    def read(snapshot: Snapshot, category: str) -> float | None:
        return float(getattr(snapshot, attr))

    return read


def _latest_metric(snapshot: Snapshot, category: str) -> float | None:
    return snapshot.metrics.get(category)


# Window-backed categories only change when the host records a new sample,
# which cannot happen while the repair holds the lock.  Their outcome is
# settled later through record_outcome.
_DEFERRED = frozenset({"latency", "error_rate"})


_VERIFIERS: dict[str, tuple[str, Callable[[Snapshot, str], float | None]]] = {
    "memory": ("memory_rss", _snapshot_field("memory_rss_mb")),
    "cpu": ("cpu_percent", _snapshot_field("cpu_percent")),
    "connections": ("connection_count", _snapshot_field("connection_count")),
}


# ------------------------------------------------------------------
# Executor
# ------------------------------------------------------------------


class RepairExecutor:
    """Applies recommended fixes one at a time."""

    def __init__(
        self,
        storage: RepairStorage | None = None,
        registry: ActionRegistry | None = None,
        collector: SnapshotCollector | None = None,
        timeout: float = DEFAULT_FIX_TIMEOUT_SECONDS,
        id_factory: Callable[[str], str] = generate_id,
    ) -> None:
        self._storage = storage
        self._registry = registry or ActionRegistry()
        self._collector = collector or SnapshotCollector()
        self._timeout = timeout
        self._id_factory = id_factory
        self._lock = asyncio.Lock()

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

    def capture_snapshot(self) -> Snapshot:
        return self._collector.capture()

    async def apply_fix(self, option: RepairOption) -> FixResult:
        """Run the handler registered for ``option.type``.

        Never raises: handler exceptions and timeouts come back as a failed
        ``FixResult``.  Sync handlers run in a worker thread so the timeout
        applies to them too; a timed out thread is abandoned, not killed.
        """
        handler = self._registry.get(option.type)
        simulated = option.type not in self._registry
        start = time.perf_counter()

        try:
            outcome = await asyncio.wait_for(_invoke(handler, option), timeout=self._timeout)
        except TimeoutError:
            log.warning("fix_timeout", fix_type=option.type.value, timeout=self._timeout)
            return FixResult(
                success=False,
                fix_type=option.type,
                description=option.description,
                duration_ms=_elapsed_ms(start),
                error=RepairError(
                    ErrorCode.FIX_TIMEOUT, f"{option.type.value} exceeded {self._timeout}s"
                ),
            )
        except Exception as exc:
            log.error("fix_failed", fix_type=option.type.value, error=str(exc))
            return FixResult(
                success=False,
                fix_type=option.type,
                description=option.description,
                duration_ms=_elapsed_ms(start),
                error=RepairError(ErrorCode.FIX_FAILED, str(exc)),
            )

        success, details = _interpret(outcome)
        result = FixResult(
            success=success,
            fix_type=option.type,
            description=option.description,
            duration_ms=_elapsed_ms(start),
            simulated=simulated,
            details=details,
            error=None
            if success
            else RepairError(ErrorCode.FIX_FAILED, f"{option.type.value} reported failure"),
        )
        log.info(
            "fix_applied",
            fix_type=option.type.value,
            success=success,
            simulated=simulated,
            duration_ms=result.duration_ms,
        )
        return result

    def verify_repair(
        self, before: Snapshot, after: Snapshot, category: str | None
    ) -> Verification:
        """Compare the category's key vital across the two snapshots."""
        if category is not None and category in _DEFERRED:
            return Verification(
                improved=None, delta=0.0, method="deferred", before=_latest_metric(before, category)
            )
        method, read = _VERIFIERS.get(category or "", ("unverifiable", _latest_metric))
        before_value = read(before, category or "")
        after_value = read(after, category or "")
        if before_value is None or after_value is None:
            return Verification(
                improved=False, delta=0.0, method=method, before=before_value, after=after_value
            )
        delta = round(before_value - after_value, 6)
        return Verification(
            improved=delta > 0,
            delta=delta,
            method=method,
            before=before_value,
            after=after_value,
        )

    async def repair(
        self, diagnosis: Diagnosis, on_verify: Callable[[], None] | None = None
    ) -> RepairResult:
        """Apply the recommended action of *diagnosis* and record the outcome.

        *on_verify* is called once the fix has run, before the second
        snapshot is taken.
        """
        option = diagnosis.recommended_action
        if option is None or option.type is FixType.OBSERVATION:
            return RepairResult(
                attempted=False,
                success=False,
                error=RepairError(ErrorCode.NO_ACTION, "no repair action recommended"),
            )

        async with self._lock:
            before = self.capture_snapshot()
            fix = await self.apply_fix(option)
            if on_verify is not None:
                on_verify()
            after = self.capture_snapshot()
            verification = self.verify_repair(before, after, diagnosis.category)

            record = RepairHistoryRecord(
                id=self._id_factory("repair"),
                issue_type=diagnosis.issue_type or "unknown",
                severity=diagnosis.severity,
                created_at=utcnow(),
                symptoms=diagnosis.symptoms,
                diagnosis=diagnosis.to_dict(),
                repair_option_used=option.to_dict(),
                fix_applied=option.description,
                success=fix.success,
                repair_time_ms=fix.duration_ms,
                verified=verification.improved is True,
            )

            persisted = False
            if self._storage is not None:
                saved = await guarded(
                    "persist_repair_history",
                    self._storage.save_repair_history(record),
                    log,
                    repair_id=record.id,
                )
                persisted = saved.ok

        log.info(
            "repair_complete",
            repair_id=record.id,
            issue_type=record.issue_type,
            success=fix.success,
            improved=verification.improved,
        )
        return RepairResult(
            attempted=True,
            success=fix.success,
            repair_id=record.id,
            fix=fix,
            verification=verification,
            before=before,
            after=after,
            repair_time_ms=fix.duration_ms,
            persisted=persisted,
            error=fix.error,
        )

    async def rollback(self, repair_id: str) -> Result[bool]:
        """Flag a stored repair for rollback and notify the host hook."""
        if self._storage is None:
            return Result.failure(ErrorCode.STORE_UNAVAILABLE, "no repair store configured")

        marked = await guarded(
            "mark_rollback", self._storage.mark_rollback_needed(repair_id), log, repair_id=repair_id
        )
        if not marked.ok:
            return Result(error=marked.error)
        if not marked.value:
            return Result.failure(ErrorCode.NOT_FOUND, f"repair {repair_id} not found")

        hook = self._registry.rollback_hook
        if hook is not None:
            try:
                outcome = hook(repair_id)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                log.error("rollback_hook_failed", repair_id=repair_id, error=str(exc))
                return Result.failure(ErrorCode.FIX_FAILED, f"rollback hook: {exc}")

        log.info("repair_rollback_flagged", repair_id=repair_id)
        return Result.success(True)


async def _invoke(handler: FixHandler, option: RepairOption) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(option)
    outcome = await asyncio.to_thread(handler, option)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def _interpret(outcome: Any) -> tuple[bool, dict[str, Any]]:
    """``False`` or ``{"success": False}`` is failure; anything else succeeds."""
    if outcome is False:
        return False, {}
    if isinstance(outcome, dict):
        return outcome.get("success", True) is not False, dict(outcome)
    if outcome is None or outcome is True:
        return True, {}
    return True, {"result": outcome}


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
