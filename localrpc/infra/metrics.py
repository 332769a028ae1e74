"""
Performance Metrics
-------------------
Bounded ring of per-invocation timing and size samples.

Design:
- One ring shared by all tools; the oldest sample is dropped first
- Queries filter by tool name and preserve recording order
- Passive: nothing here acts on the numbers
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional
import logging
import threading
import time


@dataclass
class ToolMetrics:
    """Metrics for a single tool execution."""
    tool_name: str
    execution_time_ms: float
    validation_time_ms: float
    input_size_bytes: int
    output_size_bytes: int
    timestamp: float = field(default_factory=time.time)


class PerformanceMonitor:
    """
    Collects tool execution metrics.

    Thread-safe; sync handlers finish on worker threads.
    """

    def __init__(self, metrics_limit: int = 1000):
        if metrics_limit < 1:
            raise ValueError("metrics_limit must be at least 1")
        self.metrics_limit = metrics_limit
        self._samples: Deque[ToolMetrics] = deque(maxlen=metrics_limit)
        self._lock = threading.Lock()
        self._logger = logging.getLogger("localrpc.infra.metrics")

    def record_tool_metrics(self, metrics: ToolMetrics) -> None:
        with self._lock:
            self._samples.append(metrics)

    def get_tool_metrics(self) -> List[ToolMetrics]:
        with self._lock:
            return list(self._samples)

    def get_tool_metrics_for_tool(self, tool_name: str) -> List[ToolMetrics]:
        with self._lock:
            return [m for m in self._samples if m.tool_name == tool_name]

    def get_average_execution_time(self, tool_name: str) -> Optional[float]:
        """Mean execution time in ms, or None if the tool has no samples."""
        samples = self.get_tool_metrics_for_tool(tool_name)
        if not samples:
            return None
        return sum(m.execution_time_ms for m in samples) / len(samples)

    def get_summary(self, tool_name: str) -> Dict[str, Any]:
        """Count, mean and p99 execution time for a tool."""
        samples = self.get_tool_metrics_for_tool(tool_name)
        latencies = sorted(m.execution_time_ms for m in samples)

        p99 = None
        if latencies:
            idx = int(len(latencies) * 0.99)
            p99 = latencies[min(idx, len(latencies) - 1)]

        return {
            "tool_name": tool_name,
            "count": len(samples),
            "avg_execution_time_ms": self.get_average_execution_time(tool_name),
            "p99_execution_time_ms": p99,
            "avg_validation_time_ms": (
                sum(m.validation_time_ms for m in samples) / len(samples) if samples else None
            ),
        }

    def clear_metrics(self) -> None:
        with self._lock:
            self._samples.clear()
        self._logger.debug("Metrics cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)
