"""
Per-operation timing metrics (count, total, min, max, avg, last execution).
"""

import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")


class _OpMetrics:
    __slots__ = ("count", "total_ms", "min_ms", "max_ms", "last_execution")

    def __init__(self, duration_ms: float) -> None:
        self.count = 1
        self.total_ms = duration_ms
        self.min_ms = duration_ms
        self.max_ms = duration_ms
        self.last_execution = time.time()

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.last_execution = time.time()

    def as_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total_ms": self.total_ms,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "avg_ms": round(self.avg_ms, 2),
            "last_execution": self.last_execution,
        }


class PerformanceMonitor:
    def __init__(self) -> None:
        self._metrics: dict[str, _OpMetrics] = {}
        self._lock = threading.Lock()

    def record(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            m = self._metrics.get(operation)
            if m is None:
                self._metrics[operation] = _OpMetrics(duration_ms)
            else:
                m.add(duration_ms)

    def metrics(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {op: m.as_dict() for op, m in self._metrics.items()}

    def slow_operations(self, threshold_ms: float = 1000) -> list[tuple[str, dict[str, Any]]]:
        """Operations whose avg exceeds threshold or max exceeds twice it, slowest first."""
        with self._lock:
            slow = [
                (op, m.as_dict())
                for op, m in self._metrics.items()
                if m.avg_ms > threshold_ms or m.max_ms > threshold_ms * 2
            ]
        return sorted(slow, key=lambda item: item[1]["avg_ms"], reverse=True)

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


def monitored(monitor: PerformanceMonitor | None, name: str, fn: Callable[[], T]) -> T:
    """Run ``fn`` and record its duration as ``name`` (or ``name_error`` on failure)."""
    if monitor is None:
        return fn()
    start = time.monotonic()
    try:
        result = fn()
    except Exception:
        monitor.record(f"{name}_error", (time.monotonic() - start) * 1000)
        raise
    monitor.record(name, (time.monotonic() - start) * 1000)
    return result
