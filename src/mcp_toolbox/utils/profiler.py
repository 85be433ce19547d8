"""Performance metrics collection for MCP Toolbox.

A ``Profiler`` is created once by the host process and handed to the
components that report to it (the tool source manager and the toolbox).
"""

import math
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Literal

InitStateName = Literal["idle", "initializing", "partial", "ready", "degraded"]


@dataclass
class PerformanceStats:
    """Summary statistics for a series of durations in milliseconds."""

    count: int
    min: float
    max: float
    avg: float
    p50: float
    p95: float
    p99: float
    total: float


@dataclass
class ServerMetrics:
    """Connection metrics for one tool source."""

    name: str
    connect_time: float  # -1 when the connection failed
    tool_count: int
    status: Literal["connected", "error", "connecting"]
    error: str | None = None


def percentile(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile of an ascending list."""
    if not sorted_values:
        return 0.0
    index = math.ceil((p / 100) * len(sorted_values)) - 1
    return sorted_values[max(0, index)]


def calculate_stats(measurements: list[float]) -> PerformanceStats | None:
    if not measurements:
        return None

    ordered = sorted(measurements)
    total = sum(ordered)
    return PerformanceStats(
        count=len(ordered),
        min=ordered[0],
        max=ordered[-1],
        avg=total / len(ordered),
        p50=percentile(ordered, 50),
        p95=percentile(ordered, 95),
        p99=percentile(ordered, 99),
        total=total,
    )


def _now_ms() -> float:
    return time.perf_counter() * 1000


class Profiler:
    """Collects timings for initialization, indexing, searches and executions."""

    def __init__(self) -> None:
        self._start_time = _now_ms()
        self.reset()

    def reset(self) -> None:
        """Clear all collected metrics."""
        self._marks: dict[str, float] = {}
        self._measures: dict[str, list[float]] = {}
        self._server_metrics: dict[str, ServerMetrics] = {}
        self._init_start: float | None = None
        self._init_end: float | None = None
        self._init_state: InitStateName = "idle"
        self._index_build_time: float | None = None
        self._tool_count = 0
        self._incremental_updates = 0

    # ------------------------------------------------------------------
    # Durations
    # ------------------------------------------------------------------

    def mark(self, name: str) -> None:
        """Remember the current time under ``name``."""
        self._marks[name] = _now_ms()

    def measure(self, name: str, start_mark: str) -> float:
        """Record the time elapsed since ``start_mark``.

        Returns:
            The duration in milliseconds, or -1 if the mark does not exist.
        """
        start = self._marks.get(start_mark)
        if start is None:
            return -1
        duration = _now_ms() - start
        self.record(name, duration)
        return duration

    def record(self, name: str, duration: float) -> None:
        """Record a pre-computed duration in milliseconds."""
        self._measures.setdefault(name, []).append(duration)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Time the enclosed block and record it under ``name``."""
        start = _now_ms()
        try:
            yield
        finally:
            self.record(name, _now_ms() - start)

    def get_stats(self, name: str) -> PerformanceStats | None:
        measurements = self._measures.get(name)
        if not measurements:
            return None
        return calculate_stats(measurements)

    # ------------------------------------------------------------------
    # Initialization and indexing
    # ------------------------------------------------------------------

    def init_start(self) -> None:
        self._init_start = _now_ms()
        self._init_end = None
        self._init_state = "initializing"

    def init_complete(self, state: InitStateName) -> None:
        self._init_end = _now_ms()
        self._init_state = state

    @property
    def init_state(self) -> InitStateName:
        return self._init_state

    def init_duration(self) -> float | None:
        """Initialization time so far, or in total once complete."""
        if self._init_start is None:
            return None
        end = self._init_end if self._init_end is not None else _now_ms()
        return end - self._init_start

    def record_server_connect(
        self,
        name: str,
        connect_time: float,
        tool_count: int,
        status: Literal["connected", "error"],
        error: str | None = None,
    ) -> None:
        self._server_metrics[name] = ServerMetrics(
            name=name,
            connect_time=connect_time,
            tool_count=tool_count,
            status=status,
            error=error,
        )

    def record_index_build(self, duration: float, tool_count: int) -> None:
        self._index_build_time = duration
        self._tool_count = tool_count

    def record_incremental_update(self, tool_count: int) -> None:
        self._incremental_updates += 1
        self._tool_count += tool_count

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def export(self) -> dict[str, Any]:
        """Export a JSON-serialisable performance report."""

        def stats(name: str) -> dict[str, Any] | None:
            result = self.get_stats(name)
            return asdict(result) if result else None

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": _now_ms() - self._start_time,
            "initialization": {
                "start_time": self._init_start or 0,
                "end_time": self._init_end,
                "duration": self.init_duration(),
                "state": self._init_state,
                "servers": [asdict(m) for m in self._server_metrics.values()],
            },
            "indexing": {
                "build_time": self._index_build_time,
                "tool_count": self._tool_count,
                "incremental_updates": self._incremental_updates,
            },
            "searches": {
                "bm25": stats("search.bm25"),
                "regex": stats("search.regex"),
            },
            "executions": stats("tool.execute"),
        }
