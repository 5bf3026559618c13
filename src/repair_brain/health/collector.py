"""Point-in-time process vitals for before/after repair comparison.

Reads the current process through psutil and folds in the latest sample of
each monitored category, so every verification strategy has something to
compare.  Snapshots are never persisted on their own.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import psutil

from repair_brain.logging import get_logger
from repair_brain.utils import utcnow

log = get_logger("repair_brain.health.collector")


@dataclass
class Snapshot:
    """Process vitals at one instant."""

    timestamp: datetime
    memory_rss_mb: float = 0.0
    memory_vms_mb: float = 0.0
    heap_used_mb: float = 0.0
    memory_percent: float = 0.0
    cpu_percent: float = 0.0
    connection_count: int = 0
    uptime_seconds: float = 0.0
    metrics: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "memory_rss_mb": self.memory_rss_mb,
            "memory_vms_mb": self.memory_vms_mb,
            "heap_used_mb": self.heap_used_mb,
            "memory_percent": self.memory_percent,
            "cpu_percent": self.cpu_percent,
            "connection_count": self.connection_count,
            "uptime_seconds": self.uptime_seconds,
            "metrics": self.metrics,
        }


class SnapshotCollector:
    """Captures ``Snapshot`` objects for the executor.

    Designed for graceful degradation: a vital that cannot be read stays at
    zero rather than raising.
    """

    def __init__(self, metrics_source: Callable[[], dict[str, float]] | None = None) -> None:
        self._metrics_source = metrics_source
        self._process = psutil.Process()

    def capture(self) -> Snapshot:
        snapshot = Snapshot(timestamp=utcnow())

        try:
            with self._process.oneshot():
                mem_info = self._process.memory_info()
                snapshot.memory_rss_mb = round(mem_info.rss / (1024 * 1024), 2)
                snapshot.memory_vms_mb = round(mem_info.vms / (1024 * 1024), 2)
                shared = getattr(mem_info, "shared", 0)
                snapshot.heap_used_mb = round((mem_info.rss - shared) / (1024 * 1024), 2)
                snapshot.memory_percent = round(self._process.memory_percent(), 2)
                snapshot.cpu_percent = round(self._process.cpu_percent(interval=None), 2)
                snapshot.uptime_seconds = round(time.time() - self._process.create_time(), 1)
        except psutil.Error as exc:
            log.debug("snapshot_memory_failed", error=str(exc))

        try:
            snapshot.connection_count = len(self._process.net_connections(kind="inet"))
        except (psutil.Error, AttributeError) as exc:
            log.debug("snapshot_connections_failed", error=str(exc))

        if self._metrics_source is not None:
            try:
                snapshot.metrics = dict(self._metrics_source())
            except Exception as exc:
                log.warning("snapshot_metrics_failed", error=str(exc))

        return snapshot
